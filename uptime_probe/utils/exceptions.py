"""自定义异常类和错误分类"""

import traceback
from enum import Enum
from typing import Optional, Dict, Any
from datetime import datetime


class ErrorCode(Enum):
    """错误代码枚举"""
    # 通用错误 (1000-1999)
    UNKNOWN_ERROR = 1000
    VALIDATION_ERROR = 1002

    # 配置错误 (2000-2999)
    CONFIG_FILE_NOT_FOUND = 2000
    CONFIG_PARSE_ERROR = 2001
    CONFIG_VALIDATION_ERROR = 2002
    MISSING_CREDENTIAL = 2004

    # 后端通信错误 (3000-3999)
    BACKEND_UNREACHABLE = 3000
    BACKEND_TIMEOUT = 3001
    BACKEND_AUTH_ERROR = 3002
    BACKEND_PROTOCOL_ERROR = 3003

    # 探测引擎错误 (4000-4999)
    PROBE_ENGINE_ERROR = 4000
    PROBE_UNSUPPORTED_PROTOCOL = 4002

    # 本地存储错误 (6000-6999)
    STORE_ERROR = 6000
    STORE_LOAD_ERROR = 6001
    STORE_CONFLICT = 6003


class ProbeAgentError(Exception):
    """探测代理基础异常类"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.UNKNOWN_ERROR,
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
        recoverable: bool = True
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        self.cause = cause
        self.recoverable = recoverable
        self.timestamp = datetime.now()

    def to_dict(self) -> Dict[str, Any]:
        """将异常转换为字典格式"""
        return {
            'error_code': self.error_code.value,
            'error_name': self.error_code.name,
            'message': self.message,
            'details': self.details,
            'recoverable': self.recoverable,
            'timestamp': self.timestamp.isoformat(),
            'cause': str(self.cause) if self.cause else None,
            'traceback': traceback.format_exc() if self.cause else None
        }

    def format_error(self) -> str:
        """格式化错误信息"""
        error_msg = f"[{self.error_code.name}] {self.message}"
        if self.details:
            details_str = ", ".join([f"{k}={v}" for k, v in self.details.items()])
            error_msg += f" (详情: {details_str})"
        if self.cause:
            error_msg += f" (原因: {str(self.cause)})"
        return error_msg


class ConfigError(ProbeAgentError):
    """配置相关异常，启动阶段出现即为致命错误"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.CONFIG_VALIDATION_ERROR,
        config_path: Optional[str] = None,
        **kwargs
    ):
        details = kwargs.pop('details', {})
        if config_path:
            details['config_path'] = config_path
        kwargs.setdefault('recoverable', False)
        super().__init__(message, error_code, details, **kwargs)


class BackendError(ProbeAgentError):
    """后端通信相关异常"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.BACKEND_UNREACHABLE,
        url: Optional[str] = None,
        status_code: Optional[int] = None,
        **kwargs
    ):
        details = kwargs.pop('details', {})
        if url:
            details['url'] = url
        if status_code is not None:
            details['status_code'] = status_code
        self.status_code = status_code
        super().__init__(message, error_code, details, **kwargs)


class BackendUnreachable(BackendError):
    """后端不可达（连接失败或超时），下一个周期自动重试"""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault('error_code', ErrorCode.BACKEND_UNREACHABLE)
        super().__init__(message, recoverable=True, **kwargs)


class BackendAuthError(BackendError):
    """后端认证失败（401/403），需要运维介入才能恢复"""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            error_code=ErrorCode.BACKEND_AUTH_ERROR,
            recoverable=True,
            **kwargs
        )


class BackendProtocolError(BackendError):
    """后端响应不符合约定（非2xx状态码、响应体无法解析或业务码错误）"""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            error_code=ErrorCode.BACKEND_PROTOCOL_ERROR,
            recoverable=True,
            **kwargs
        )


class ProbeEngineError(ProbeAgentError):
    """探测引擎异常，只会被记录为不可达结果，不会向上传播"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.PROBE_ENGINE_ERROR,
        peer: Optional[str] = None,
        **kwargs
    ):
        details = kwargs.pop('details', {})
        if peer:
            details['peer'] = peer
        super().__init__(message, error_code, details, **kwargs)


class StoreError(ProbeAgentError):
    """本地节点存储异常"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.STORE_ERROR,
        path: Optional[str] = None,
        **kwargs
    ):
        details = kwargs.pop('details', {})
        if path:
            details['path'] = path
        super().__init__(message, error_code, details, **kwargs)
