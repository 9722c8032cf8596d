"""配置验证工具"""

from typing import Dict, Any
from urllib.parse import urlparse

from .exceptions import ConfigError, ErrorCode

VALID_LOG_LEVELS = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
VALID_AUTH_SCHEMES = ['api_key', 'bearer', 'node_token']
VALID_STATUS_METHODS = ['PUT', 'POST']

INTERVAL_FIELDS = [
    'peer_fetch_interval',
    'status_report_interval',
    'peer_report_interval',
    'health_check_interval',
]


def _require_positive_number(section: str, key: str, value: Any) -> None:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise ConfigError(f"{section}.{key} 必须是正数")


class ConfigValidator:
    """配置验证器"""

    @staticmethod
    def validate_global_config(global_config: Dict[str, Any]) -> None:
        """
        验证全局配置

        Args:
            global_config: 全局配置

        Raises:
            ConfigError: 配置验证失败
        """
        if not isinstance(global_config, dict):
            raise ConfigError("全局配置必须是字典类型")

        log_level = global_config.get('log_level')
        if log_level is not None and str(log_level).upper() not in VALID_LOG_LEVELS:
            raise ConfigError(f"log_level 必须是以下值之一: {VALID_LOG_LEVELS}")

        for key in ('max_log_size', 'log_backup_count'):
            value = global_config.get(key)
            if value is not None and (not isinstance(value, int) or value < 0):
                raise ConfigError(f"global.{key} 必须是非负整数")

        grace = global_config.get('shutdown_grace_period')
        if grace is not None:
            _require_positive_number('global', 'shutdown_grace_period', grace)

    @staticmethod
    def validate_backend_config(backend_config: Dict[str, Any]) -> None:
        """
        验证后端配置

        节点目录接口与状态上报接口必须使用不同的认证方式。

        Args:
            backend_config: 后端配置

        Raises:
            ConfigError: 配置验证失败
        """
        if not isinstance(backend_config, dict):
            raise ConfigError("backend 配置必须是字典类型")

        base_url = backend_config.get('base_url')
        if not base_url:
            raise ConfigError("backend 缺少必需的配置项: base_url")

        parsed_url = urlparse(str(base_url))
        if parsed_url.scheme not in ('http', 'https') or not parsed_url.netloc:
            raise ConfigError(f"backend.base_url 格式无效: {base_url}")

        schemes = {}
        for section in ('discovery_auth', 'report_auth'):
            auth = backend_config.get(section)
            if not isinstance(auth, dict):
                raise ConfigError(f"backend 缺少必需的配置项: {section}",
                                  error_code=ErrorCode.MISSING_CREDENTIAL)

            scheme = str(auth.get('scheme', '')).lower()
            if scheme not in VALID_AUTH_SCHEMES:
                raise ConfigError(
                    f"backend.{section}.scheme 必须是以下值之一: {VALID_AUTH_SCHEMES}")

            if not auth.get('credential'):
                raise ConfigError(f"backend.{section} 缺少认证凭据",
                                  error_code=ErrorCode.MISSING_CREDENTIAL)
            schemes[section] = scheme

        if schemes['discovery_auth'] == schemes['report_auth']:
            raise ConfigError(
                f"节点目录接口与状态上报接口不能使用相同的认证方式: {schemes['report_auth']}")

        method = backend_config.get('status_method')
        if method is not None and str(method).upper() not in VALID_STATUS_METHODS:
            raise ConfigError(f"backend.status_method 必须是以下值之一: {VALID_STATUS_METHODS}")

        timeout = backend_config.get('request_timeout')
        if timeout is not None:
            _require_positive_number('backend', 'request_timeout', timeout)

        for key in ('peers_path', 'status_path'):
            path = backend_config.get(key)
            if path is not None and (not isinstance(path, str) or not path.startswith('/')):
                raise ConfigError(f"backend.{key} 必须是以 / 开头的路径")

    @staticmethod
    def validate_probe_config(probe_config: Dict[str, Any]) -> None:
        """
        验证探测配置

        Args:
            probe_config: 探测配置

        Raises:
            ConfigError: 配置验证失败
        """
        if not isinstance(probe_config, dict):
            raise ConfigError("probe 配置必须是字典类型")

        for key in INTERVAL_FIELDS + ['probe_timeout', 'stale_after_factor', 'stop_grace_period']:
            value = probe_config.get(key)
            if value is not None:
                _require_positive_number('probe', key, value)

        for key in ('max_concurrent_checks', 'failure_escalation_threshold'):
            value = probe_config.get(key)
            if value is not None and (isinstance(value, bool) or not isinstance(value, int)
                                      or value <= 0):
                raise ConfigError(f"probe.{key} 必须是正整数")

        probe_timeout = probe_config.get('probe_timeout')
        check_interval = probe_config.get('health_check_interval')
        if probe_timeout is not None and check_interval is not None \
                and probe_timeout >= check_interval:
            raise ConfigError(
                f"probe.probe_timeout ({probe_timeout}) 必须小于 health_check_interval ({check_interval})")

        engine = probe_config.get('engine')
        if engine is not None and not isinstance(engine, str):
            raise ConfigError("probe.engine 必须是字符串")

        engine_options = probe_config.get('engine_options')
        if engine_options is not None and not isinstance(engine_options, dict):
            raise ConfigError("probe.engine_options 必须是字典类型")

        retirement = probe_config.get('retirement')
        if retirement is not None:
            if not isinstance(retirement, dict):
                raise ConfigError("probe.retirement 必须是字典类型")
            missed = retirement.get('missed_fetches')
            if missed is not None and (isinstance(missed, bool) or not isinstance(missed, int)
                                       or missed <= 0):
                raise ConfigError("probe.retirement.missed_fetches 必须是正整数")

    @staticmethod
    def validate_cache_config(cache_config: Dict[str, Any]) -> None:
        if not isinstance(cache_config, dict):
            raise ConfigError("cache 配置必须是字典类型")

        path = cache_config.get('path')
        if path is not None and not isinstance(path, str):
            raise ConfigError("cache.path 必须是字符串")

        retention_days = cache_config.get('retention_days')
        if retention_days is not None and (isinstance(retention_days, bool)
                                           or not isinstance(retention_days, int)
                                           or retention_days <= 0):
            raise ConfigError("cache.retention_days 必须是正整数")
