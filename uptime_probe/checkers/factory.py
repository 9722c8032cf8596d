"""探测引擎工厂"""

from typing import Dict, Type, Any
from .base import BaseProbeEngine
from ..utils.exceptions import ConfigError


class ProbeEngineFactory:
    """探测引擎工厂类，按配置中的引擎类型创建探测引擎"""

    def __init__(self):
        self._engines: Dict[str, Type[BaseProbeEngine]] = {}

    def register_engine(self, engine_type: str, engine_class: Type[BaseProbeEngine]):
        """
        注册探测引擎类

        Args:
            engine_type: 引擎类型名称
            engine_class: 探测引擎类

        Raises:
            ConfigError: 注册失败
        """
        if not issubclass(engine_class, BaseProbeEngine):
            raise ConfigError(f"探测引擎类 {engine_class.__name__} 必须继承自 BaseProbeEngine")

        if engine_type in self._engines:
            raise ConfigError(f"引擎类型 '{engine_type}' 已经注册")

        self._engines[engine_type] = engine_class

    def unregister_engine(self, engine_type: str):
        self._engines.pop(engine_type, None)

    def create_engine(self, engine_type: str, engine_config: Dict[str, Any]) -> BaseProbeEngine:
        """
        创建探测引擎实例

        Args:
            engine_type: 引擎类型
            engine_config: 引擎配置

        Returns:
            BaseProbeEngine: 探测引擎实例

        Raises:
            ConfigError: 类型不支持或配置无效
        """
        if engine_type not in self._engines:
            raise ConfigError(
                f"不支持的探测引擎类型: '{engine_type}'，支持的类型: {self.get_supported_types()}")

        engine = self._engines[engine_type](engine_type, engine_config)
        if not engine.validate_config():
            raise ConfigError(f"探测引擎 '{engine_type}' 的配置验证失败")

        return engine

    def get_supported_types(self) -> list:
        return list(self._engines.keys())

    def is_type_supported(self, engine_type: str) -> bool:
        return engine_type in self._engines


# 全局工厂实例
probe_engine_factory = ProbeEngineFactory()


def register_probe_engine(engine_type: str):
    """
    装饰器：注册探测引擎类

    Args:
        engine_type: 引擎类型名称
    """
    def decorator(engine_class: Type[BaseProbeEngine]):
        probe_engine_factory.register_engine(engine_type, engine_class)
        return engine_class

    return decorator
