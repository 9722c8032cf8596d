"""HTTP探测引擎"""

import asyncio
import time
from typing import Dict, Any, Optional

import aiohttp

from .base import BaseProbeEngine
from .factory import register_probe_engine
from ..models.peer import ConnectionDescriptor, ProbeOutcome

# websocket 端点先走普通HTTP请求，能收到响应即说明服务在线
_SCHEME_MAP = {
    'http': 'http',
    'https': 'https',
    'ws': 'http',
    'wss': 'https',
}


@register_probe_engine('http')
class HttpProbeEngine(BaseProbeEngine):
    """以HTTP请求收到响应头的耗时作为往返时延的探测引擎"""

    supported_protocols = tuple(_SCHEME_MAP.keys())

    def __init__(self, name: str, config: Dict[str, Any]):
        super().__init__(name, config)
        self.path = config.get('path', '/')
        self.method = config.get('method', 'GET').upper()
        self.ssl_verify = config.get('ssl_verify', True)

    def validate_config(self) -> bool:
        if self.method not in ['GET', 'HEAD', 'OPTIONS']:
            return False

        if not isinstance(self.path, str) or not self.path.startswith('/'):
            return False

        expected_status = self.config.get('expected_status')
        if expected_status is None:
            return True
        if isinstance(expected_status, list):
            return all(isinstance(s, int) and 100 <= s <= 599 for s in expected_status)
        return isinstance(expected_status, int) and 100 <= expected_status <= 599

    def build_url(self, descriptor: ConnectionDescriptor) -> str:
        scheme = _SCHEME_MAP[descriptor.protocol]
        return f"{scheme}://{descriptor.host}:{descriptor.port}{self.path}"

    def _is_status_expected(self, status_code: int) -> bool:
        """未配置期望状态码时，任何HTTP响应都说明节点可达"""
        expected_status: Optional[Any] = self.config.get('expected_status')
        if expected_status is None:
            return True
        if isinstance(expected_status, list):
            return status_code in expected_status
        return status_code == expected_status

    async def probe(self, descriptor: ConnectionDescriptor) -> ProbeOutcome:
        self.ensure_supported(descriptor)

        url = self.build_url(descriptor)
        timeout = aiohttp.ClientTimeout(total=self.get_timeout())
        connector = aiohttp.TCPConnector(ssl=bool(self.ssl_verify))

        try:
            async with aiohttp.ClientSession(timeout=timeout, connector=connector) as session:
                start = time.perf_counter()
                async with session.request(self.method, url, allow_redirects=False) as response:
                    latency_us = int((time.perf_counter() - start) * 1_000_000)
                    if not self._is_status_expected(response.status):
                        return ProbeOutcome(
                            reachable=False,
                            error=f"HTTP状态码不符合期望: {response.status}"
                        )
                    return ProbeOutcome(reachable=True, latency_us=latency_us)

        except aiohttp.ClientError as e:
            return ProbeOutcome(reachable=False, error=f"HTTP客户端错误: {e}")
        except asyncio.TimeoutError:
            return ProbeOutcome(reachable=False, error="HTTP请求超时")
