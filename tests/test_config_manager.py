"""测试配置管理器"""

import os
import tempfile

import pytest
import yaml

from uptime_probe.services.config_manager import ConfigManager
from uptime_probe.utils.exceptions import ConfigError, ErrorCode

BASE_CONFIG = {
    'global': {'log_level': 'DEBUG'},
    'backend': {
        'base_url': 'https://backend.example.com/api',
        'discovery_auth': {'scheme': 'api_key', 'credential': 'key-from-file'},
        'report_auth': {'scheme': 'node_token', 'credential': 'token-from-file'},
    },
    'probe': {'region': 'cn-east', 'health_check_interval': 10},
}


class TestConfigManager:
    """测试ConfigManager类"""

    def setup_method(self):
        """测试前准备"""
        self.temp_dir = tempfile.TemporaryDirectory()
        self.config_path = os.path.join(self.temp_dir.name, 'config.yaml')

    def teardown_method(self):
        self.temp_dir.cleanup()

    def write_config(self, config):
        with open(self.config_path, 'w', encoding='utf-8') as f:
            if isinstance(config, str):
                f.write(config)
            else:
                yaml.dump(config, f, allow_unicode=True)

    def test_load_config_with_defaults(self):
        """测试加载配置并合并默认值"""
        self.write_config(BASE_CONFIG)
        manager = ConfigManager(self.config_path, environ={})

        config = manager.load_config()

        assert config['global']['log_level'] == 'DEBUG'
        assert config['global']['shutdown_grace_period'] == 5
        assert manager.get_backend_config()['status_method'] == 'POST'
        assert manager.get_backend_config()['discovery_auth'] == {
            'scheme': 'api_key', 'credential': 'key-from-file'}

        probe = manager.get_probe_config()
        assert probe['health_check_interval'] == 10
        assert probe['peer_fetch_interval'] == 60
        assert probe['max_concurrent_checks'] == 32
        assert probe['retirement'] == {'enabled': True, 'missed_fetches': 1}
        assert manager.get_cache_config()['path'] == 'data/peers.json'

    def test_env_overrides(self):
        """测试环境变量覆盖配置"""
        self.write_config(BASE_CONFIG)
        environ = {
            'BACKEND_BASE_URL': 'http://10.1.1.1:8080',
            'API_KEY': 'env-key',
            'NODE_TOKEN': 'env-token',
            'REGION': 'us-west',
            'PEER_FETCH_INTERVAL': '120',
            'STATUS_REPORT_INTERVAL': '15.5',
            'HEALTH_CHECK_INTERVAL': '',
            'DATABASE_PATH': '/var/lib/probe/peers.json',
        }
        manager = ConfigManager(self.config_path, environ=environ)

        config = manager.load_config()

        assert config['backend']['base_url'] == 'http://10.1.1.1:8080'
        assert config['backend']['discovery_auth']['credential'] == 'env-key'
        assert config['backend']['report_auth']['credential'] == 'env-token'
        assert config['probe']['region'] == 'us-west'
        assert config['probe']['peer_fetch_interval'] == 120
        assert config['probe']['status_report_interval'] == 15.5
        # 空值的环境变量被忽略
        assert config['probe']['health_check_interval'] == 10
        assert config['cache']['path'] == '/var/lib/probe/peers.json'

    def test_credentials_only_from_env(self):
        """测试凭据只通过环境变量提供"""
        self.write_config({'backend': {'base_url': 'http://b'}})
        manager = ConfigManager(self.config_path,
                                environ={'API_KEY': 'k', 'NODE_TOKEN': 't'})

        config = manager.load_config()
        assert config['backend']['report_auth'] == {'scheme': 'node_token', 'credential': 't'}

    def test_invalid_numeric_env(self):
        """测试无效的数值环境变量"""
        self.write_config(BASE_CONFIG)
        manager = ConfigManager(self.config_path, environ={'PEER_FETCH_INTERVAL': 'soon'})

        with pytest.raises(ConfigError):
            manager.load_config()

    def test_missing_credential(self):
        """测试缺少凭据"""
        self.write_config({'backend': {'base_url': 'http://b',
                                       'discovery_auth': {'credential': 'k'}}})
        manager = ConfigManager(self.config_path, environ={})

        with pytest.raises(ConfigError) as exc_info:
            manager.load_config()
        assert exc_info.value.error_code == ErrorCode.MISSING_CREDENTIAL

    def test_file_not_found(self):
        """测试配置文件不存在"""
        manager = ConfigManager(self.config_path, environ={})

        with pytest.raises(ConfigError) as exc_info:
            manager.load_config()
        assert "配置文件不存在" in str(exc_info.value)
        assert exc_info.value.error_code == ErrorCode.CONFIG_FILE_NOT_FOUND

    def test_invalid_yaml(self):
        """测试无效的YAML格式"""
        self.write_config("backend: [unclosed")
        manager = ConfigManager(self.config_path, environ={})

        with pytest.raises(ConfigError) as exc_info:
            manager.load_config()
        assert "YAML格式错误" in str(exc_info.value)

    def test_empty_config(self):
        """测试空配置文件"""
        self.write_config("")
        manager = ConfigManager(self.config_path, environ={})

        with pytest.raises(ConfigError) as exc_info:
            manager.load_config()
        assert "配置文件为空" in str(exc_info.value)

    def test_root_must_be_mapping(self):
        """测试根节点必须是字典"""
        self.write_config("- a\n- b\n")
        manager = ConfigManager(self.config_path, environ={})

        with pytest.raises(ConfigError):
            manager.load_config()

    def test_is_config_changed_and_reload(self):
        """测试配置变更检测与重新加载"""
        self.write_config(BASE_CONFIG)
        manager = ConfigManager(self.config_path, environ={})
        manager.load_config()
        assert manager.is_config_changed() is False

        updated = dict(BASE_CONFIG, probe={'health_check_interval': 20})
        self.write_config(updated)
        os.utime(self.config_path, (manager.last_modified + 10, manager.last_modified + 10))

        assert manager.is_config_changed() is True
        assert manager.reload_config()['probe']['health_check_interval'] == 20
        assert manager.is_config_changed() is False

    def test_failed_reload_keeps_old_config(self):
        """测试重新加载失败时保留原配置"""
        self.write_config(BASE_CONFIG)
        manager = ConfigManager(self.config_path, environ={})
        manager.load_config()

        self.write_config({'backend': {'base_url': 'nope'}})
        with pytest.raises(ConfigError):
            manager.reload_config()

        assert manager.get_backend_config()['base_url'] == 'https://backend.example.com/api'
