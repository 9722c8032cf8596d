"""配置管理器"""

import copy
import os
import yaml
from typing import Dict, Any, Mapping, Optional
from ..utils.exceptions import ConfigError, ErrorCode
from ..utils.config_validator import ConfigValidator
from ..utils.log_manager import get_logger

DEFAULT_CONFIG: Dict[str, Dict[str, Any]] = {
    'global': {
        'log_level': 'INFO',
        'max_log_size': 10 * 1024 * 1024,
        'log_backup_count': 5,
        'shutdown_grace_period': 5,
    },
    'backend': {
        'request_timeout': 10,
        'peers_path': '/peers',
        'status_path': '/status',
        'status_method': 'POST',
        'discovery_auth': {'scheme': 'api_key'},
        'report_auth': {'scheme': 'node_token'},
    },
    'probe': {
        'region': None,
        'peer_fetch_interval': 60,
        'status_report_interval': 30,
        'peer_report_interval': 30,
        'health_check_interval': 5,
        'max_concurrent_checks': 32,
        'probe_timeout': None,
        'stale_after_factor': 2,
        'engine': 'tcp',
        'engine_options': {},
        'stop_grace_period': 2,
        'failure_escalation_threshold': 5,
        'self_report_enabled': True,
        'peer_report_enabled': True,
        'retirement': {'enabled': True, 'missed_fetches': 1},
    },
    'cache': {
        'path': 'data/peers.json',
        'retention_days': 30,
    },
}

# 环境变量 -> (配置段路径, 是否为数值)
ENV_OVERRIDES = {
    'BACKEND_BASE_URL': (('backend', 'base_url'), False),
    'API_KEY': (('backend', 'discovery_auth', 'credential'), False),
    'NODE_TOKEN': (('backend', 'report_auth', 'credential'), False),
    'REGION': (('probe', 'region'), False),
    'PEER_FETCH_INTERVAL': (('probe', 'peer_fetch_interval'), True),
    'STATUS_REPORT_INTERVAL': (('probe', 'status_report_interval'), True),
    'HEALTH_CHECK_INTERVAL': (('probe', 'health_check_interval'), True),
    'DATABASE_PATH': (('cache', 'path'), False),
}


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """递归合并字典，override 中的值优先"""
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def _parse_number(name: str, raw: str) -> float:
    try:
        value = float(raw)
    except ValueError:
        raise ConfigError(f"环境变量 {name} 必须是数字: {raw!r}")
    return int(value) if value.is_integer() else value


class ConfigManager:
    """配置管理器，负责YAML配置文件的加载、环境变量覆盖和验证"""

    def __init__(self, config_path: str, environ: Optional[Mapping[str, str]] = None):
        """
        初始化配置管理器

        Args:
            config_path: 配置文件路径
            environ: 环境变量来源，默认使用 os.environ
        """
        self.config_path = config_path
        self.environ = os.environ if environ is None else environ
        self.config: Dict[str, Any] = {}
        self.last_modified: Optional[float] = None
        self.logger = get_logger('config_manager')

    def load_config(self) -> Dict[str, Any]:
        """
        加载YAML配置文件，合并默认值并应用环境变量覆盖

        Returns:
            Dict[str, Any]: 完整的配置字典

        Raises:
            ConfigError: 配置加载或验证失败
        """
        self.logger.info(f"开始加载配置文件: {self.config_path}")

        try:
            if not os.path.exists(self.config_path):
                raise ConfigError(f"配置文件不存在: {self.config_path}",
                                  error_code=ErrorCode.CONFIG_FILE_NOT_FOUND,
                                  config_path=self.config_path)

            with open(self.config_path, 'r', encoding='utf-8') as file:
                raw_config = yaml.safe_load(file)

        except yaml.YAMLError as e:
            self.logger.error(f"YAML格式错误: {e}")
            raise ConfigError(f"YAML格式错误: {e}", error_code=ErrorCode.CONFIG_PARSE_ERROR,
                              config_path=self.config_path, cause=e)
        except PermissionError as e:
            self.logger.error(f"没有权限读取配置文件: {self.config_path}")
            raise ConfigError(f"没有权限读取配置文件: {self.config_path}",
                              config_path=self.config_path, cause=e)
        except OSError as e:
            self.logger.error(f"读取配置文件失败: {e}")
            raise ConfigError(f"读取配置文件失败: {e}", config_path=self.config_path, cause=e)
        except ConfigError as e:
            self.logger.error(e.message)
            raise

        if raw_config is None:
            self.logger.error("配置文件为空")
            raise ConfigError("配置文件为空", config_path=self.config_path)

        if not isinstance(raw_config, dict):
            raise ConfigError("配置文件根节点必须是字典类型", config_path=self.config_path)

        config = _deep_merge(DEFAULT_CONFIG, raw_config)
        self._apply_env_overrides(config)
        self._validate_config(config)

        old_config = self.config
        self.config = config
        self.last_modified = os.path.getmtime(self.config_path)

        if old_config:
            self._log_config_changes(old_config, config)
        else:
            self.logger.info(
                f"配置加载成功，后端={config['backend'].get('base_url')}, "
                f"区域={config['probe'].get('region')}")

        return self.config

    def _apply_env_overrides(self, config: Dict[str, Any]) -> None:
        """用环境变量覆盖配置项，空值的环境变量被忽略"""
        for name, (path, numeric) in ENV_OVERRIDES.items():
            raw = self.environ.get(name)
            if raw is None or raw == '':
                continue

            value = _parse_number(name, raw) if numeric else raw
            section = config
            for key in path[:-1]:
                section = section.setdefault(key, {})
            section[path[-1]] = value
            self.logger.debug(f"环境变量 {name} 覆盖了配置项 {'.'.join(path)}")

    def _validate_config(self, config: Dict[str, Any]) -> None:
        """
        验证配置文件内容

        Raises:
            ConfigError: 配置验证失败
        """
        ConfigValidator.validate_global_config(config['global'])
        ConfigValidator.validate_backend_config(config['backend'])
        ConfigValidator.validate_probe_config(config['probe'])
        ConfigValidator.validate_cache_config(config['cache'])

    def get_global_config(self) -> Dict[str, Any]:
        return self.config.get('global', {})

    def get_backend_config(self) -> Dict[str, Any]:
        return self.config.get('backend', {})

    def get_probe_config(self) -> Dict[str, Any]:
        return self.config.get('probe', {})

    def get_cache_config(self) -> Dict[str, Any]:
        return self.config.get('cache', {})

    def is_config_changed(self) -> bool:
        """
        检查配置文件是否已修改

        Returns:
            bool: 配置文件是否已修改
        """
        try:
            if not os.path.exists(self.config_path):
                return False

            current_modified = os.path.getmtime(self.config_path)
            return self.last_modified is None or current_modified > self.last_modified

        except OSError:
            return False

    def reload_config(self) -> Dict[str, Any]:
        """
        重新加载配置文件

        Raises:
            ConfigError: 配置重新加载失败，此时保留原配置
        """
        self.logger.info("重新加载配置文件")
        return self.load_config()

    def _log_config_changes(self, old_config: Dict[str, Any], new_config: Dict[str, Any]) -> None:
        for section in ('global', 'backend', 'probe', 'cache'):
            old_section = old_config.get(section, {})
            new_section = new_config.get(section, {})
            changed = sorted(
                key for key in set(old_section) | set(new_section)
                if old_section.get(key) != new_section.get(key)
            )
            if changed:
                self.logger.info(f"{section} 配置已修改: {', '.join(changed)}")
