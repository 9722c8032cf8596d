"""配置文件监控器"""

import asyncio
import os
from typing import Callable, List, Optional
from watchdog.observers import Observer
from watchdog.events import FileSystemEventHandler
from .config_manager import ConfigManager
from ..utils.exceptions import ConfigError
from ..utils.log_manager import get_logger


class ConfigFileHandler(FileSystemEventHandler):
    """配置文件变更事件处理器，运行在 watchdog 的观察者线程中"""

    def __init__(self, config_path: str, callback: Callable[[], None]):
        self.config_path = config_path
        self.callback = callback
        self.logger = get_logger('config_watcher')

    def _matches(self, path) -> bool:
        return os.path.abspath(os.fsdecode(path)) == self.config_path

    def on_modified(self, event):
        if not event.is_directory and self._matches(event.src_path):
            self.logger.info(f"检测到配置文件变更: {self.config_path}")
            self.callback()

    def on_created(self, event):
        self.on_modified(event)

    def on_moved(self, event):
        # 编辑器常用 "写临时文件再改名" 的方式保存
        if not event.is_directory and self._matches(event.dest_path):
            self.logger.info(f"检测到配置文件被替换: {self.config_path}")
            self.callback()


class ConfigWatcher:
    """配置文件监控器，支持热更新

    文件事件来自 watchdog 线程，回调统一切回事件循环执行；
    另有一个基于修改时间的轮询任务作为补充。
    """

    def __init__(self, config_manager: ConfigManager):
        """
        初始化配置监控器

        Args:
            config_manager: 配置管理器实例
        """
        self.config_manager = config_manager
        self.observer: Optional[Observer] = None
        self.loop: Optional[asyncio.AbstractEventLoop] = None
        self.change_callbacks: List[Callable] = []
        self.reload_count = 0
        self.logger = get_logger('config_watcher')
        self._running = False

    def add_change_callback(self, callback: Callable):
        """
        添加配置变更回调函数

        Args:
            callback: 回调函数，签名为 callback(old_config, new_config)
        """
        self.change_callbacks.append(callback)

    def remove_change_callback(self, callback: Callable):
        if callback in self.change_callbacks:
            self.change_callbacks.remove(callback)

    def _on_file_event(self):
        """从观察者线程转交到事件循环"""
        if self.loop is not None and not self.loop.is_closed():
            self.loop.call_soon_threadsafe(self._reload_if_changed)
        else:
            self._reload_if_changed()

    def _reload_if_changed(self):
        if self.config_manager.is_config_changed():
            self._on_config_changed()

    def _on_config_changed(self) -> bool:
        """
        重新加载配置并通知所有回调

        重新加载失败时保留原配置继续运行。

        Returns:
            bool: 是否成功应用了新配置
        """
        old_config = self.config_manager.config
        try:
            new_config = self.config_manager.reload_config()
        except ConfigError as e:
            self.logger.error(f"配置重新加载失败，继续使用原配置: {e.format_error()}")
            # 避免同一次无效修改被反复重试
            self.config_manager.last_modified = self._current_mtime()
            return False

        self.reload_count += 1
        self.logger.info("配置文件已重新加载")

        for callback in self.change_callbacks:
            try:
                callback(old_config, new_config)
            except Exception as e:
                self.logger.error(f"配置变更回调执行失败: {e}", exc_info=True)
        return True

    def _current_mtime(self) -> Optional[float]:
        try:
            return os.path.getmtime(self.config_manager.config_path)
        except OSError:
            return self.config_manager.last_modified

    def start_watching(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        """
        开始监控配置文件

        Args:
            loop: 执行回调的事件循环，为None时在观察者线程中直接执行

        Raises:
            ConfigError: 无法启动文件监控
        """
        if self._running:
            self.logger.warning("配置监控器已经在运行")
            return

        self.loop = loop
        config_path = os.path.abspath(self.config_manager.config_path)
        config_dir = os.path.dirname(config_path)

        try:
            self.observer = Observer()
            event_handler = ConfigFileHandler(config_path, self._on_file_event)
            self.observer.schedule(event_handler, config_dir, recursive=False)
            self.observer.start()
        except OSError as e:
            self.observer = None
            self.logger.error(f"启动配置监控失败: {e}")
            raise ConfigError(f"启动配置监控失败: {e}", config_path=config_path, cause=e)

        self._running = True
        self.logger.info(f"开始监控配置文件: {self.config_manager.config_path}")

    def stop_watching(self):
        """停止监控配置文件"""
        if not self._running:
            return

        if self.observer:
            self.observer.stop()
            self.observer.join(timeout=5)
            self.observer = None

        self._running = False
        self.loop = None
        self.logger.info("配置文件监控已停止")

    def is_running(self) -> bool:
        return self._running

    async def watch_config_changes_async(self, check_interval: float = 5):
        """
        异步方式监控配置变更（轮询方式）

        Args:
            check_interval: 检查间隔（秒）
        """
        self.logger.info(f"开始异步监控配置文件变更，检查间隔: {check_interval}秒")

        try:
            while True:
                self._reload_if_changed()
                await asyncio.sleep(check_interval)
        except asyncio.CancelledError:
            self.logger.info("配置监控任务已取消")
            raise

    def __enter__(self):
        self.start_watching()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.stop_watching()
