"""数据模型模块"""

from .peer import (
    ConnectionDescriptor, Peer, ProbeOutcome, HealthResult, AggregationSnapshot,
    ReportState, SelfStatusPayload, PeerStatusPayload, us_to_ms,
    STATUS_ONLINE, STATUS_OFFLINE
)

__all__ = ['ConnectionDescriptor', 'Peer', 'ProbeOutcome', 'HealthResult',
           'AggregationSnapshot', 'ReportState', 'SelfStatusPayload',
           'PeerStatusPayload', 'us_to_ms', 'STATUS_ONLINE', 'STATUS_OFFLINE']
