"""TCP建连探测引擎"""

import asyncio
import time
from typing import Dict, Any

from .base import BaseProbeEngine
from .factory import register_probe_engine
from ..models.peer import ConnectionDescriptor, ProbeOutcome


@register_probe_engine('tcp')
class TcpProbeEngine(BaseProbeEngine):
    """以TCP三次握手耗时作为往返时延的探测引擎"""

    supported_protocols = ('tcp', 'ws', 'wss', 'http', 'https')

    def __init__(self, name: str, config: Dict[str, Any]):
        super().__init__(name, config)

    def validate_config(self) -> bool:
        timeout = self.config.get('timeout', 3)
        return isinstance(timeout, (int, float)) and timeout > 0

    async def probe(self, descriptor: ConnectionDescriptor) -> ProbeOutcome:
        """
        建立一次TCP连接并测量耗时

        Args:
            descriptor: 节点连接信息

        Returns:
            ProbeOutcome: 建连成功即视为可达，延迟单位为微秒
        """
        self.ensure_supported(descriptor)

        start = time.perf_counter()
        try:
            _, writer = await asyncio.wait_for(
                asyncio.open_connection(descriptor.host, descriptor.port),
                timeout=self.get_timeout()
            )
        except asyncio.TimeoutError:
            return ProbeOutcome(reachable=False, error=f"连接超时 ({self.get_timeout()}s)")
        except OSError as e:
            return ProbeOutcome(reachable=False, error=f"连接失败: {e}")

        latency_us = int((time.perf_counter() - start) * 1_000_000)

        writer.close()
        try:
            await writer.wait_closed()
        except OSError as e:
            self.logger.debug(f"关闭到 {descriptor.address} 的连接时出错: {e}")

        return ProbeOutcome(reachable=True, latency_us=latency_us)
