"""数据模型测试"""

import pytest
from datetime import datetime, timedelta

from uptime_probe.models.peer import (
    Peer, HealthResult, ReportState, SelfStatusPayload, PeerStatusPayload,
    us_to_ms, STATUS_ONLINE, STATUS_OFFLINE
)


class TestUnitConversion:
    """微秒到毫秒的转换"""

    @pytest.mark.parametrize('latency_us, expected_ms', [
        (0, 0),
        (999, 0),
        (1000, 1),
        (45000, 45),
        (45999, 45),
        (1234567, 1234),
    ])
    def test_us_to_ms_floors(self, latency_us, expected_ms):
        """测试转换向下取整"""
        assert us_to_ms(latency_us) == expected_ms

    def test_health_result_latency_ms(self):
        """测试结果的毫秒延迟"""
        result = HealthResult(peer_local_id=1, reachable=True, latency_us=45999)
        assert result.latency_ms == 45

    def test_unreachable_result_has_no_latency(self):
        """测试不可达结果没有延迟"""
        result = HealthResult(peer_local_id=1, reachable=False, error_detail="连接失败")
        assert result.latency_ms is None


class TestPeer:
    """测试Peer类"""

    def test_from_catalog(self):
        """测试从目录记录构建节点"""
        peer = Peer.from_catalog({
            'id': 7, 'name': 'tokyo-1', 'host': 'example.org', 'port': '11010',
            'protocol': 'WSS', 'network_name': 'net', 'network_secret': 's3cret',
            'region': 'jp', 'ISP': 'ntt', 'status': 'Online', 'response_time': 12,
        })

        assert peer.backend_id == 7
        assert peer.port == 11010
        assert peer.protocol == 'wss'
        assert peer.isp == 'ntt'
        assert peer.local_id is None
        assert peer.descriptor.address == 'wss://example.org:11010'
        assert peer.descriptor.network_secret == 's3cret'

    def test_from_catalog_defaults(self):
        """测试缺省字段"""
        peer = Peer.from_catalog({'id': 1, 'host': 'h', 'port': 80})
        assert peer.protocol == 'tcp'
        assert peer.name == ''
        assert peer.display_name == 'h:80'

    def test_from_catalog_invalid(self):
        """测试无效记录"""
        with pytest.raises(KeyError):
            Peer.from_catalog({'id': 1, 'port': 80})

        with pytest.raises(ValueError):
            Peer.from_catalog({'id': 1, 'host': 'h', 'port': 70000})

        with pytest.raises(ValueError):
            Peer.from_catalog({'id': 'abc', 'host': 'h', 'port': 80})

    def test_dict_roundtrip_keeps_bookkeeping(self):
        """测试持久化字段的序列化"""
        now = datetime(2024, 5, 1, 12, 0, 0)
        peer = Peer(backend_id=3, host='h', port=1, local_id=9, active=False,
                    last_seen_in_catalog=now, missed_fetches=2, created_at=now,
                    deactivated_at=now + timedelta(minutes=1))

        data = peer.to_dict()
        assert data['last_seen_in_catalog'] == '2024-05-01T12:00:00'
        assert Peer.from_dict(data) == peer

    def test_catalog_fields_ignore_bookkeeping(self):
        """测试目录字段不包含本地记账字段"""
        a = Peer(backend_id=1, host='h', port=1, local_id=1, missed_fetches=3)
        b = Peer(backend_id=1, host='h', port=1, local_id=2, active=False)
        assert a.catalog_fields() == b.catalog_fields()


class TestHealthResult:
    """测试HealthResult类"""

    def test_is_fresh(self):
        """测试结果是否过期"""
        now = datetime.now()
        result = HealthResult(peer_local_id=1, reachable=True, latency_us=1000,
                              observed_at=now - timedelta(seconds=10))

        assert result.is_fresh(now, 10)
        assert not result.is_fresh(now, 9.9)


class TestReportState:
    """测试ReportState类"""

    def test_failure_then_success_resets(self):
        """测试成功后连续失败计数归零"""
        state = ReportState()
        state.record_failure(RuntimeError("boom"))
        state.record_failure(RuntimeError("boom again"))

        assert state.consecutive_failures == 2
        assert state.total_failures == 2
        assert state.last_error == "boom again"

        state.record_success()
        assert state.consecutive_failures == 0
        assert state.total_reports == 3
        assert state.total_failures == 2
        assert state.last_success_at is not None


class TestPayloads:
    """测试上报负载"""

    def test_self_payload_with_latency(self):
        """测试有可达节点时的自身状态负载"""
        payload = SelfStatusPayload(version='1.0.0', peers_count=2, reachable_peers=1,
                                    region='cn-east', avg_peer_rtt=45, max_peer_rtt=45)

        assert payload.to_dict() == {
            'status': STATUS_ONLINE,
            'response_time': 45,
            'metadata': {
                'version': '1.0.0',
                'region': 'cn-east',
                'peers_count': 2,
                'reachable_peers': 1,
                'avg_peer_rtt': 45,
                'max_peer_rtt': 45,
            },
        }

    def test_self_payload_omits_absent_latency(self):
        """测试没有可达节点时延迟字段缺省而不是0"""
        data = SelfStatusPayload(version='1.0.0', peers_count=3, reachable_peers=0).to_dict()

        assert 'response_time' not in data
        assert 'avg_peer_rtt' not in data['metadata']
        assert 'max_peer_rtt' not in data['metadata']
        assert 'region' not in data['metadata']

    def test_peer_payload(self):
        """测试节点状态负载"""
        payload = PeerStatusPayload(
            peer_id=2, status=STATUS_OFFLINE, peer_name='peer-2', host='10.0.0.2',
            port=9000, protocol='tcp', probe_version='1.0.0', isp='telecom',
            probe_region='cn-east', error_message='连接失败')

        data = payload.to_dict()
        assert data['id'] == 2
        assert data['status'] == STATUS_OFFLINE
        assert 'response_time' not in data
        assert data['metadata']['ISP'] == 'telecom'
        assert data['metadata']['error_message'] == '连接失败'
        assert 'network_name' not in data['metadata']
        assert payload.kind == 'peer'
