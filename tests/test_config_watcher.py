"""测试配置监控器"""

import asyncio
import os
import tempfile

import pytest
import yaml
from unittest.mock import Mock

from uptime_probe.services.config_manager import ConfigManager
from uptime_probe.services.config_watcher import ConfigWatcher, ConfigFileHandler

CONFIG = {
    'backend': {
        'base_url': 'http://backend.local',
        'discovery_auth': {'scheme': 'api_key', 'credential': 'k'},
        'report_auth': {'scheme': 'node_token', 'credential': 't'},
    },
    'probe': {'health_check_interval': 5},
}


class TestConfigWatcher:
    """测试ConfigWatcher类"""

    def setup_method(self):
        """测试前准备"""
        self.temp_dir = tempfile.TemporaryDirectory()
        self.config_path = os.path.join(self.temp_dir.name, 'config.yaml')
        self.write_config(CONFIG)

        self.config_manager = ConfigManager(self.config_path, environ={})
        self.config_manager.load_config()
        self.config_watcher = ConfigWatcher(self.config_manager)

    def teardown_method(self):
        """测试后清理"""
        self.config_watcher.stop_watching()
        self.temp_dir.cleanup()

    def write_config(self, config, bump_mtime=0):
        with open(self.config_path, 'w', encoding='utf-8') as f:
            yaml.dump(config, f)
        if bump_mtime:
            mtime = os.path.getmtime(self.config_path) + bump_mtime
            os.utime(self.config_path, (mtime, mtime))

    def test_add_remove_callback(self):
        """测试添加和移除回调函数"""
        callback = Mock()
        self.config_watcher.add_change_callback(callback)
        assert self.config_watcher.change_callbacks == [callback]

        self.config_watcher.remove_change_callback(callback)
        self.config_watcher.remove_change_callback(callback)
        assert self.config_watcher.change_callbacks == []

    def test_config_change_notifies_callbacks(self):
        """测试配置变更时通知回调"""
        callback = Mock()
        failing_callback = Mock(side_effect=RuntimeError("callback failed"))
        self.config_watcher.add_change_callback(failing_callback)
        self.config_watcher.add_change_callback(callback)

        self.write_config(dict(CONFIG, probe={'health_check_interval': 15}), bump_mtime=10)

        assert self.config_watcher._on_config_changed() is True

        old_config, new_config = callback.call_args.args
        assert old_config['probe']['health_check_interval'] == 5
        assert new_config['probe']['health_check_interval'] == 15
        assert self.config_watcher.reload_count == 1

    def test_invalid_change_keeps_old_config(self):
        """测试无效的配置变更不通知回调，且不会反复重试"""
        callback = Mock()
        self.config_watcher.add_change_callback(callback)

        self.write_config({'backend': {'base_url': 'broken'}}, bump_mtime=10)

        self.config_watcher._reload_if_changed()

        callback.assert_not_called()
        assert self.config_manager.get_backend_config()['base_url'] == 'http://backend.local'
        assert self.config_manager.is_config_changed() is False

    def test_file_handler_filters_paths(self):
        """测试事件处理器只响应配置文件"""
        callback = Mock()
        handler = ConfigFileHandler(os.path.abspath(self.config_path), callback)

        other = Mock(is_directory=False, src_path=os.path.join(self.temp_dir.name, 'other.yaml'))
        handler.on_modified(other)
        callback.assert_not_called()

        event = Mock(is_directory=False, src_path=self.config_path)
        handler.on_modified(event)
        callback.assert_called_once()

        moved = Mock(is_directory=False, src_path=self.config_path + '.tmp',
                     dest_path=self.config_path)
        handler.on_moved(moved)
        assert callback.call_count == 2

    def test_start_stop_watching(self):
        """测试启动和停止文件监控"""
        self.config_watcher.start_watching()
        assert self.config_watcher.is_running()

        self.config_watcher.start_watching()
        assert self.config_watcher.is_running()

        self.config_watcher.stop_watching()
        assert not self.config_watcher.is_running()
        assert self.config_watcher.observer is None

    @pytest.mark.asyncio
    async def test_async_polling_reloads(self):
        """测试轮询方式检测配置变更"""
        callback = Mock()
        self.config_watcher.add_change_callback(callback)

        task = asyncio.create_task(self.config_watcher.watch_config_changes_async(0.01))
        await asyncio.sleep(0.02)
        self.write_config(dict(CONFIG, probe={'health_check_interval': 30}), bump_mtime=10)
        await asyncio.sleep(0.05)

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        callback.assert_called_once()
        assert self.config_manager.get_probe_config()['health_check_interval'] == 30
