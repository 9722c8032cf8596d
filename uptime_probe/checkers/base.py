"""探测引擎基类"""

from abc import ABC, abstractmethod
from typing import Dict, Any, Tuple
from ..models.peer import ConnectionDescriptor, ProbeOutcome
from ..utils.exceptions import ProbeEngineError, ErrorCode
from ..utils.log_manager import get_logger


class BaseProbeEngine(ABC):
    """探测引擎抽象基类

    协调器只依赖 probe() 的返回值：可达性和以微秒为单位的延迟。
    """

    # 子类声明自己能够探测的传输协议
    supported_protocols: Tuple[str, ...] = ()

    def __init__(self, name: str, config: Dict[str, Any]):
        """
        初始化探测引擎

        Args:
            name: 引擎名称
            config: 引擎配置参数
        """
        self.name = name
        self.config = config
        self.engine_type = self.__class__.__name__.replace('ProbeEngine', '').lower()
        self.logger = get_logger(f'probe.{self.engine_type}')

    @abstractmethod
    async def probe(self, descriptor: ConnectionDescriptor) -> ProbeOutcome:
        """
        探测一个节点

        Args:
            descriptor: 节点连接信息

        Returns:
            ProbeOutcome: 探测结果，不可达时 reachable=False 并附带错误描述

        Raises:
            ProbeEngineError: 引擎自身无法完成探测（与节点是否可达无关）
        """
        pass

    @abstractmethod
    def validate_config(self) -> bool:
        """
        验证配置参数是否有效

        Returns:
            bool: 配置是否有效
        """
        pass

    def get_timeout(self) -> float:
        """
        获取单次探测的超时时间

        Returns:
            float: 超时时间（秒）
        """
        return self.config.get('timeout', 3)

    def ensure_supported(self, descriptor: ConnectionDescriptor):
        """协议不受支持时抛出 ProbeEngineError"""
        if self.supported_protocols and descriptor.protocol not in self.supported_protocols:
            raise ProbeEngineError(
                f"探测引擎 {self.name} 不支持协议: {descriptor.protocol}",
                error_code=ErrorCode.PROBE_UNSUPPORTED_PROTOCOL,
                peer=descriptor.address
            )
