"""
日志管理器模块

为探测代理的各个组件提供统一的日志记录器，支持控制台与轮转文件输出，
并允许在配置热更新时调整日志级别。
"""

import logging
import logging.handlers
import os
import sys
from pathlib import Path
from typing import Optional, Dict, Any, Set
from enum import Enum

LOGGER_PREFIX = 'uptime_probe'


class LogLevel(Enum):
    """日志级别枚举"""
    DEBUG = logging.DEBUG
    INFO = logging.INFO
    WARNING = logging.WARNING
    ERROR = logging.ERROR
    CRITICAL = logging.CRITICAL

    @classmethod
    def parse(cls, value: str) -> 'LogLevel':
        """
        从字符串解析日志级别

        Args:
            value: 日志级别名称，不区分大小写

        Returns:
            LogLevel: 对应的日志级别

        Raises:
            ValueError: 日志级别无效
        """
        level_str = str(value).upper()
        if not hasattr(cls, level_str):
            raise ValueError(f"无效的日志级别: {value}")
        return cls[level_str]


class CredentialMaskingFilter(logging.Filter):
    """将日志中出现的凭据替换为掩码，凭据只允许出现在请求头中"""

    def __init__(self, credentials: Set[str]):
        super().__init__()
        self.credentials = credentials

    def filter(self, record: logging.LogRecord) -> bool:
        if not self.credentials:
            return True
        message = record.getMessage()
        masked = message
        for secret in self.credentials:
            masked = masked.replace(secret, mask_credential(secret))
        if masked != message:
            record.msg = masked
            record.args = None
        return True


def mask_credential(secret: str) -> str:
    """保留末尾4位，其余替换为*"""
    if len(secret) <= 4:
        return '*' * len(secret)
    return '*' * (len(secret) - 4) + secret[-4:]


class LogManager:
    """
    日志管理器类（单例）

    所有组件通过 get_logger 获取带统一前缀的记录器，
    文件输出使用 RotatingFileHandler 控制大小。
    """

    _instance: Optional['LogManager'] = None
    _initialized: bool = False

    def __new__(cls) -> 'LogManager':
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self):
        if self._initialized:
            return

        self._loggers: Dict[str, logging.Logger] = {}
        self._file_format = (
            '%(asctime)s - %(name)s - %(levelname)s - '
            '[%(filename)s:%(lineno)d] - %(message)s'
        )
        self._console_format = '%(asctime)s - %(levelname)s - %(name)s - %(message)s'
        self._date_format = '%Y-%m-%d %H:%M:%S'

        self._log_level = LogLevel.INFO
        self._log_file: Optional[str] = None
        self._max_file_size = 10 * 1024 * 1024  # 10MB
        self._backup_count = 5
        self._enable_console = True
        self._enable_file = False

        self._credentials: Set[str] = set()
        self._masking_filter = CredentialMaskingFilter(self._credentials)

        self._initialized = True

    def configure(self, config: Dict[str, Any]) -> None:
        """
        配置日志管理器，已创建的记录器会按新配置重建处理器

        Args:
            config: 日志配置字典，可选键：
                - log_level: 日志级别 (DEBUG, INFO, WARNING, ERROR, CRITICAL)
                - log_file: 日志文件路径
                - max_file_size: 最大文件大小（字节）
                - backup_count: 备份文件数量
                - enable_console: 是否启用控制台输出
                - enable_file: 是否启用文件输出
        """
        if 'log_level' in config:
            self._log_level = LogLevel.parse(config['log_level'])

        if config.get('log_file'):
            self._log_file = config['log_file']
            self._enable_file = True

        if 'max_file_size' in config:
            self._max_file_size = config['max_file_size']

        if 'backup_count' in config:
            self._backup_count = config['backup_count']

        if 'enable_console' in config:
            self._enable_console = config['enable_console']

        if 'enable_file' in config:
            self._enable_file = config['enable_file']

        for logger in self._loggers.values():
            self._install_handlers(logger)

    def get_logger(self, name: str) -> logging.Logger:
        """
        获取指定名称的日志记录器

        Args:
            name: 组件名称，会自动加上 uptime_probe 前缀

        Returns:
            配置好的日志记录器实例
        """
        full_name = name if name.startswith(LOGGER_PREFIX) else f'{LOGGER_PREFIX}.{name}'
        if full_name in self._loggers:
            return self._loggers[full_name]

        logger = logging.getLogger(full_name)
        self._install_handlers(logger)
        self._loggers[full_name] = logger
        return logger

    def _install_handlers(self, logger: logging.Logger) -> None:
        """按当前配置为记录器安装处理器"""
        for handler in list(logger.handlers):
            logger.removeHandler(handler)
            handler.close()

        logger.setLevel(self._log_level.value)

        if self._enable_console:
            self._attach(logger, logging.StreamHandler(sys.stdout), self._console_format)

        if self._enable_file and self._log_file:
            Path(self._log_file).parent.mkdir(parents=True, exist_ok=True)
            self._attach(logger, logging.handlers.RotatingFileHandler(
                self._log_file,
                maxBytes=self._max_file_size,
                backupCount=self._backup_count,
                encoding='utf-8'
            ), self._file_format)

        # 不向根记录器传播，避免重复输出
        logger.propagate = False

    def _attach(self, logger: logging.Logger, handler: logging.Handler, fmt: str) -> None:
        handler.setLevel(self._log_level.value)
        handler.setFormatter(logging.Formatter(fmt, datefmt=self._date_format))
        handler.addFilter(self._masking_filter)
        logger.addHandler(handler)

    def register_credentials(self, *credentials: Optional[str]) -> None:
        """
        登记需要在日志中掩码的凭据

        Args:
            credentials: API密钥、节点令牌等，空值会被忽略
        """
        self._credentials.update(c for c in credentials if c)

    def set_level(self, level: LogLevel) -> None:
        """
        设置全局日志级别

        Args:
            level: 新的日志级别
        """
        self._log_level = level
        for logger in self._loggers.values():
            logger.setLevel(level.value)
            for handler in logger.handlers:
                handler.setLevel(level.value)

    def get_level(self) -> LogLevel:
        return self._log_level

    def get_log_stats(self) -> Dict[str, Any]:
        """
        获取日志统计信息

        Returns:
            包含日志统计信息的字典
        """
        stats = {
            'loggers_count': len(self._loggers),
            'log_level': self._log_level.name,
            'file_logging_enabled': self._enable_file,
            'console_logging_enabled': self._enable_console,
            'log_file': self._log_file,
            'masked_credentials': len(self._credentials),
        }

        if self._log_file and os.path.exists(self._log_file):
            stats['current_log_size'] = os.path.getsize(self._log_file)

        return stats

    def cleanup(self) -> None:
        """关闭所有处理器"""
        for logger in self._loggers.values():
            for handler in list(logger.handlers):
                logger.removeHandler(handler)
                handler.close()

        self._loggers.clear()


# 全局日志管理器实例
log_manager = LogManager()


def get_logger(name: str) -> logging.Logger:
    """获取日志记录器的便捷函数"""
    return log_manager.get_logger(name)


def configure_logging(config: Dict[str, Any]) -> None:
    """配置日志系统的便捷函数"""
    log_manager.configure(config)
