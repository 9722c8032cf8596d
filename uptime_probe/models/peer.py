"""节点、健康检查结果与上报负载相关的数据模型"""

from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import Dict, Any, Optional

STATUS_ONLINE = "Online"
STATUS_OFFLINE = "Offline"


def us_to_ms(latency_us: int) -> int:
    """微秒转换为整数毫秒（向下取整），上报到后端的延迟只能走这个转换"""
    return int(latency_us) // 1000


@dataclass(frozen=True)
class ConnectionDescriptor:
    """探测引擎连接节点所需的信息"""
    host: str
    port: int
    protocol: str = 'tcp'
    network_name: Optional[str] = None
    network_secret: Optional[str] = None

    @property
    def address(self) -> str:
        return f"{self.protocol}://{self.host}:{self.port}"


@dataclass
class Peer:
    """被监控的远端节点"""
    backend_id: int
    host: str
    port: int
    protocol: str = 'tcp'
    name: str = ''
    network_name: Optional[str] = None
    network_secret: Optional[str] = None
    region: Optional[str] = None
    isp: Optional[str] = None
    local_id: Optional[int] = None
    active: bool = True
    last_seen_in_catalog: Optional[datetime] = None
    missed_fetches: int = 0
    created_at: datetime = field(default_factory=datetime.now)
    deactivated_at: Optional[datetime] = None

    @property
    def descriptor(self) -> ConnectionDescriptor:
        return ConnectionDescriptor(
            host=self.host,
            port=self.port,
            protocol=self.protocol,
            network_name=self.network_name,
            network_secret=self.network_secret
        )

    @property
    def display_name(self) -> str:
        return self.name or f"{self.host}:{self.port}"

    def catalog_fields(self) -> Dict[str, Any]:
        """后端目录下发的字段，用于判断描述或元数据是否变化"""
        return {
            'host': self.host,
            'port': self.port,
            'protocol': self.protocol,
            'name': self.name,
            'network_name': self.network_name,
            'network_secret': self.network_secret,
            'region': self.region,
            'isp': self.isp,
        }

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        for key in ('last_seen_in_catalog', 'created_at', 'deactivated_at'):
            value = data[key]
            data[key] = value.isoformat() if value else None
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Peer':
        values = dict(data)
        for key in ('last_seen_in_catalog', 'deactivated_at'):
            values[key] = datetime.fromisoformat(values[key]) if values.get(key) else None
        if values.get('created_at'):
            values['created_at'] = datetime.fromisoformat(values['created_at'])
        else:
            values.pop('created_at', None)
        return cls(**values)

    @classmethod
    def from_catalog(cls, entry: Dict[str, Any]) -> 'Peer':
        """
        从后端节点目录的单条记录构建节点

        Args:
            entry: 后端返回的节点字典

        Returns:
            Peer: 尚未分配 local_id 的节点

        Raises:
            KeyError/TypeError/ValueError: 记录缺少必需字段或字段类型错误
        """
        port = int(entry['port'])
        if not 0 < port < 65536:
            raise ValueError(f"端口超出范围: {port}")

        return cls(
            backend_id=int(entry['id']),
            host=str(entry['host']),
            port=port,
            protocol=str(entry.get('protocol') or 'tcp').lower(),
            name=str(entry.get('name') or ''),
            network_name=entry.get('network_name'),
            network_secret=entry.get('network_secret'),
            region=entry.get('region'),
            isp=entry.get('ISP', entry.get('isp')),
        )


@dataclass(frozen=True)
class ProbeOutcome:
    """探测引擎单次探测的返回值"""
    reachable: bool
    latency_us: Optional[int] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class HealthResult:
    """单个节点最近一次的健康检查结果，整体替换而不原地修改"""
    peer_local_id: int
    reachable: bool
    latency_us: Optional[int] = None
    observed_at: datetime = field(default_factory=datetime.now)
    error_detail: Optional[str] = None

    @property
    def latency_ms(self) -> Optional[int]:
        if not self.reachable or self.latency_us is None:
            return None
        return us_to_ms(self.latency_us)

    def is_fresh(self, now: datetime, max_age_seconds: float) -> bool:
        return (now - self.observed_at).total_seconds() <= max_age_seconds


@dataclass(frozen=True)
class AggregationSnapshot:
    """自身健康汇总，延迟只统计可达节点"""
    peers_count: int
    reachable_peers: int
    avg_latency_ms: Optional[int] = None
    max_latency_ms: Optional[int] = None
    taken_at: datetime = field(default_factory=datetime.now)


@dataclass
class ReportState:
    """上报循环的记账信息"""
    consecutive_failures: int = 0
    total_reports: int = 0
    total_failures: int = 0
    last_success_at: Optional[datetime] = None
    last_error: Optional[str] = None

    def record_success(self):
        self.consecutive_failures = 0
        self.total_reports += 1
        self.last_success_at = datetime.now()

    def record_failure(self, error: Exception):
        self.consecutive_failures += 1
        self.total_reports += 1
        self.total_failures += 1
        self.last_error = str(error)


@dataclass
class SelfStatusPayload:
    """探测节点自身状态上报负载"""
    version: str
    peers_count: int
    reachable_peers: int
    status: str = STATUS_ONLINE
    region: Optional[str] = None
    avg_peer_rtt: Optional[int] = None
    max_peer_rtt: Optional[int] = None

    @property
    def kind(self) -> str:
        return 'self'

    def to_dict(self) -> Dict[str, Any]:
        metadata: Dict[str, Any] = {
            'version': self.version,
            'peers_count': self.peers_count,
            'reachable_peers': self.reachable_peers,
        }
        if self.region:
            metadata['region'] = self.region
        if self.avg_peer_rtt is not None:
            metadata['avg_peer_rtt'] = self.avg_peer_rtt
        if self.max_peer_rtt is not None:
            metadata['max_peer_rtt'] = self.max_peer_rtt

        payload: Dict[str, Any] = {'status': self.status, 'metadata': metadata}
        if self.avg_peer_rtt is not None:
            payload['response_time'] = self.avg_peer_rtt
        return payload


@dataclass
class PeerStatusPayload:
    """单个节点状态上报负载"""
    peer_id: int
    status: str
    peer_name: str
    host: str
    port: int
    protocol: str
    probe_version: str
    response_time: Optional[int] = None
    network_name: Optional[str] = None
    region: Optional[str] = None
    isp: Optional[str] = None
    probe_region: Optional[str] = None
    error_message: Optional[str] = None

    @property
    def kind(self) -> str:
        return 'peer'

    def to_dict(self) -> Dict[str, Any]:
        metadata: Dict[str, Any] = {
            'peer_name': self.peer_name,
            'host': self.host,
            'port': self.port,
            'protocol': self.protocol,
            'probe_version': self.probe_version,
        }
        optional = {
            'network_name': self.network_name,
            'region': self.region,
            'ISP': self.isp,
            'probe_region': self.probe_region,
            'error_message': self.error_message,
        }
        metadata.update({k: v for k, v in optional.items() if v is not None})

        payload: Dict[str, Any] = {
            'id': self.peer_id,
            'status': self.status,
            'metadata': metadata,
        }
        if self.response_time is not None:
            payload['response_time'] = self.response_time
        return payload
