"""测试公共夹具"""

import asyncio
import os
from typing import Dict, Any, Union

import pytest
import yaml

from uptime_probe.checkers.base import BaseProbeEngine
from uptime_probe.models.peer import ConnectionDescriptor, ProbeOutcome, Peer
from uptime_probe.services.peer_store import LocalPeerStore


class FakeProbeEngine(BaseProbeEngine):
    """确定性的探测引擎，按主机名返回预设结果"""

    def __init__(self, name: str = 'fake', config: Dict[str, Any] = None):
        super().__init__(name, config or {})
        self.outcomes: Dict[str, Union[ProbeOutcome, Exception]] = {}
        self.default = ProbeOutcome(reachable=True, latency_us=1000)
        self.delay = 0
        self.calls = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def probe(self, descriptor: ConnectionDescriptor) -> ProbeOutcome:
        self.calls.append(descriptor)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            outcome = self.outcomes.get(descriptor.host, self.default)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome
        finally:
            self.in_flight -= 1

    def validate_config(self) -> bool:
        return True


def make_peer(backend_id: int, host: str = None, port: int = 9000, **kwargs) -> Peer:
    """创建测试节点"""
    return Peer(backend_id=backend_id, host=host or f'10.0.0.{backend_id}', port=port,
                name=kwargs.pop('name', f'peer-{backend_id}'), **kwargs)


def catalog_entry(backend_id: int, **overrides) -> Dict[str, Any]:
    """后端节点目录中的一条记录"""
    entry = {
        'id': backend_id,
        'name': f'peer-{backend_id}',
        'host': f'10.0.0.{backend_id}',
        'port': 9000,
        'protocol': 'tcp',
        'region': 'cn-east',
        'ISP': 'telecom',
    }
    entry.update(overrides)
    return entry


def write_app_config(directory: str, **probe_overrides) -> str:
    """写入测试用配置文件，返回路径"""
    probe = {
        'region': 'cn-east',
        'peer_fetch_interval': 0.05,
        'status_report_interval': 0.05,
        'peer_report_interval': 0.05,
        'health_check_interval': 0.02,
        'stop_grace_period': 1,
    }
    probe.update(probe_overrides)
    config_data = {
        'global': {'log_level': 'INFO', 'shutdown_grace_period': 1},
        'backend': {
            'base_url': 'http://127.0.0.1:9',
            'discovery_auth': {'scheme': 'api_key', 'credential': 'test-key'},
            'report_auth': {'scheme': 'node_token', 'credential': 'test-token'},
        },
        'probe': probe,
        'cache': {'path': os.path.join(directory, 'cache', 'peers.json')},
    }
    config_path = os.path.join(directory, 'config.yaml')
    with open(config_path, 'w', encoding='utf-8') as f:
        yaml.dump(config_data, f, default_flow_style=False)
    return config_path


@pytest.fixture
def fake_engine():
    return FakeProbeEngine()


@pytest.fixture
def store():
    """内存中的节点存储"""
    return LocalPeerStore()
