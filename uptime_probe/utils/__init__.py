"""工具模块"""

from .exceptions import (
    ProbeAgentError, ConfigError, BackendError, BackendUnreachable,
    BackendAuthError, BackendProtocolError, ProbeEngineError, StoreError
)
from .log_manager import LogManager, LogLevel, get_logger, configure_logging, log_manager

__all__ = [
    'ProbeAgentError', 'ConfigError', 'BackendError', 'BackendUnreachable',
    'BackendAuthError', 'BackendProtocolError', 'ProbeEngineError', 'StoreError',
    'LogManager', 'LogLevel', 'get_logger', 'configure_logging', 'log_manager'
]
