"""健康检查协调器测试"""

import asyncio
import logging
from dataclasses import replace
from datetime import datetime, timedelta

import pytest

from uptime_probe.checkers.tcp_probe import TcpProbeEngine
from uptime_probe.models.peer import ProbeOutcome, HealthResult
from uptime_probe.services.health_coordinator import HealthCheckCoordinator
from uptime_probe.utils.exceptions import ProbeEngineError

from conftest import make_peer


class TestHealthCheckCoordinator:
    """测试HealthCheckCoordinator类"""

    def make_coordinator(self, store, engine, **kwargs):
        kwargs.setdefault('check_interval', 0.05)
        kwargs.setdefault('stop_grace_period', 1)
        return HealthCheckCoordinator(store, engine, **kwargs)

    def test_invalid_parameters(self, store, fake_engine):
        """测试无效参数"""
        with pytest.raises(ValueError):
            HealthCheckCoordinator(store, fake_engine, check_interval=0)
        with pytest.raises(ValueError):
            HealthCheckCoordinator(store, fake_engine, max_concurrent_checks=0)
        with pytest.raises(ValueError):
            HealthCheckCoordinator(store, fake_engine, check_interval=5, probe_timeout=5)

    def test_default_probe_timeout_below_interval(self, store, fake_engine):
        """测试未配置探测超时时取检查间隔的80%"""
        coordinator = self.make_coordinator(store, fake_engine, check_interval=5)
        assert coordinator.effective_probe_timeout == 4

        coordinator.update_check_interval(10)
        assert coordinator.effective_probe_timeout == 8

        explicit = self.make_coordinator(store, fake_engine, check_interval=5, probe_timeout=3)
        assert explicit.effective_probe_timeout == 3
        with pytest.raises(ValueError):
            explicit.update_check_interval(3, probe_timeout=3)
        assert explicit.check_interval == 5
        assert explicit.probe_timeout == 3

        explicit.update_check_interval(2)
        assert explicit.effective_probe_timeout == 1.6

    @pytest.mark.asyncio
    async def test_start_peer_is_idempotent(self, store, fake_engine):
        """测试重复启动不会创建重复任务"""
        coordinator = self.make_coordinator(store, fake_engine)
        peer = store.upsert(make_peer(1))

        assert coordinator.start_peer(peer) is True
        assert coordinator.start_peer(peer) is False
        assert len(coordinator.tasks) == 1

        await coordinator.stop()
        assert coordinator.tasks == {}

    @pytest.mark.asyncio
    async def test_loop_records_results(self, store, fake_engine):
        """测试检查循环持续写入结果"""
        fake_engine.outcomes['10.0.0.1'] = ProbeOutcome(reachable=True, latency_us=45000)
        coordinator = self.make_coordinator(store, fake_engine, check_interval=0.01)
        peer = store.upsert(make_peer(1))

        coordinator.start_peer(peer)
        await asyncio.sleep(0.1)
        await coordinator.stop()

        result = coordinator.get_result(peer.local_id)
        assert result.reachable is True
        assert result.latency_us == 45000
        assert coordinator.total_checks >= 2

    @pytest.mark.asyncio
    async def test_stop_peer_keeps_result(self, store, fake_engine):
        """测试停止节点检查后结果保留"""
        coordinator = self.make_coordinator(store, fake_engine)
        peer = store.upsert(make_peer(1))

        coordinator.start_peer(peer)
        await asyncio.sleep(0.02)

        assert await coordinator.stop_peer(peer.local_id) is True
        assert await coordinator.stop_peer(peer.local_id) is False
        assert not coordinator.is_checking(peer.local_id)
        assert coordinator.get_result(peer.local_id) is not None

    @pytest.mark.asyncio
    async def test_loop_exits_when_peer_deactivated(self, store, fake_engine):
        """测试节点停用后检查循环自行退出"""
        coordinator = self.make_coordinator(store, fake_engine, check_interval=0.01)
        peer = store.upsert(make_peer(1))

        coordinator.start_peer(peer)
        await asyncio.sleep(0.02)
        store.deactivate(peer.local_id)
        await asyncio.sleep(0.05)

        assert not coordinator.is_checking(peer.local_id)
        assert peer.local_id not in coordinator.tasks

    @pytest.mark.asyncio
    async def test_loop_uses_refreshed_descriptor(self, store, fake_engine):
        """测试每轮检查使用最新的连接信息"""
        coordinator = self.make_coordinator(store, fake_engine, check_interval=0.01)
        peer = store.upsert(make_peer(1))

        coordinator.start_peer(peer)
        await asyncio.sleep(0.02)
        store.upsert(replace(store.get(peer.local_id), host='192.168.1.1'))
        await asyncio.sleep(0.05)
        await coordinator.stop()

        assert fake_engine.calls[-1].host == '192.168.1.1'

    @pytest.mark.asyncio
    async def test_concurrency_ceiling(self, store, fake_engine):
        """测试同时进行中的探测数量不超过上限"""
        fake_engine.delay = 0.05
        coordinator = self.make_coordinator(store, fake_engine, check_interval=5,
                                            max_concurrent_checks=3)
        for backend_id in range(1, 11):
            store.upsert(make_peer(backend_id))

        results = await coordinator.check_all_now()

        assert len(results) == 10
        assert all(r.reachable for r in results.values())
        assert fake_engine.max_in_flight == 3
        assert coordinator.in_flight == 0

    @pytest.mark.asyncio
    async def test_engine_failures_become_unreachable(self, store, fake_engine):
        """测试探测引擎异常被记录为不可达"""
        fake_engine.outcomes['10.0.0.1'] = ProbeEngineError("不支持的协议")
        fake_engine.outcomes['10.0.0.2'] = RuntimeError("engine crashed")
        fake_engine.outcomes['10.0.0.3'] = ProbeOutcome(reachable=False, error="连接被拒绝")
        fake_engine.outcomes['10.0.0.4'] = ProbeOutcome(reachable=True, latency_us=None)
        coordinator = self.make_coordinator(store, fake_engine)
        for backend_id in range(1, 5):
            store.upsert(make_peer(backend_id))

        results = await coordinator.check_all_now()

        assert [r.reachable for r in results.values()] == [False, False, False, False]
        assert results[1].error_detail == "不支持的协议"
        assert "engine crashed" in results[2].error_detail
        assert results[3].error_detail == "连接被拒绝"
        assert "延迟无效" in results[4].error_detail

    @pytest.mark.asyncio
    async def test_invalid_latency_becomes_unreachable(self, store, fake_engine, caplog):
        """测试引擎返回可达但延迟无法转换时记录为不可达并报错"""
        fake_engine.outcomes['10.0.0.1'] = ProbeOutcome(reachable=True, latency_us='abc')
        fake_engine.outcomes['10.0.0.2'] = ProbeOutcome(reachable=True, latency_us=-5)
        coordinator = self.make_coordinator(store, fake_engine)
        p1 = store.upsert(make_peer(1))
        p2 = store.upsert(make_peer(2))
        coordinator.logger.propagate = True

        with caplog.at_level(logging.ERROR, logger=coordinator.logger.name):
            bad = await coordinator.check_peer_now(p1.local_id)
            clamped = await coordinator.check_peer_now(p2.local_id)
        coordinator.logger.propagate = False

        assert bad.reachable is False
        assert bad.error_detail == "探测引擎返回的延迟无效: 'abc'"
        assert any("'abc'" in r.getMessage() for r in caplog.records
                   if r.levelno == logging.ERROR)
        assert clamped.reachable is True
        assert clamped.latency_us == 0

    @pytest.mark.asyncio
    async def test_unsupported_protocol_warned_once(self, store, caplog):
        """测试协议不受支持的节点只提示一次"""
        coordinator = self.make_coordinator(store, TcpProbeEngine('tcp', {}))
        peer = store.upsert(make_peer(1, protocol='udp'))
        coordinator.logger.propagate = True

        with caplog.at_level(logging.DEBUG, logger=coordinator.logger.name):
            for _ in range(3):
                result = await coordinator.check_peer_now(peer.local_id)
                assert result.reachable is False
                assert "udp" in result.error_detail
        coordinator.logger.propagate = False

        records = [r for r in caplog.records if r.name == coordinator.logger.name]
        assert len([r for r in records if r.levelno == logging.WARNING]) == 1
        assert len([r for r in records if "跳过节点" in r.getMessage()]) == 2

    @pytest.mark.asyncio
    async def test_fixed_rate_schedule(self, store, fake_engine):
        """测试检查耗时不累加到间隔上"""
        fake_engine.delay = 0.05
        coordinator = self.make_coordinator(store, fake_engine, check_interval=0.1)
        peer = store.upsert(make_peer(1))

        coordinator.start_peer(peer)
        await asyncio.sleep(1.0)
        await coordinator.stop()

        # 固定频率约10轮，间隔后再等待则只有约7轮
        assert len(fake_engine.calls) >= 9

    @pytest.mark.asyncio
    async def test_results_stay_fresh_with_hanging_engine(self, store, fake_engine):
        """测试引擎一直挂起时结果仍在过期前刷新"""
        fake_engine.delay = 10
        coordinator = self.make_coordinator(store, fake_engine, check_interval=0.1)
        peer = store.upsert(make_peer(1))

        coordinator.start_peer(peer)
        while coordinator.get_result(peer.local_id) is None:
            await asyncio.sleep(0.005)

        stale_samples = 0
        for _ in range(100):
            if coordinator.get_fresh_result(peer.local_id) is None:
                stale_samples += 1
            await asyncio.sleep(0.005)
        await coordinator.stop()

        assert stale_samples == 0
        assert "超时" in coordinator.get_result(peer.local_id).error_detail

    @pytest.mark.asyncio
    async def test_probe_timeout(self, store, fake_engine):
        """测试探测超时"""
        fake_engine.delay = 1
        coordinator = self.make_coordinator(store, fake_engine, probe_timeout=0.02)
        peer = store.upsert(make_peer(1))

        result = await coordinator.check_peer_now(peer.local_id)

        assert result.reachable is False
        assert "超时" in result.error_detail

    @pytest.mark.asyncio
    async def test_check_missing_peer(self, store, fake_engine):
        """测试检查不存在的节点"""
        coordinator = self.make_coordinator(store, fake_engine)
        assert await coordinator.check_peer_now(42) is None
        assert await coordinator.check_all_now() == {}

    def test_snapshot_scenario(self, store, fake_engine):
        """测试汇总：节点1可达45000微秒，节点2不可达"""
        coordinator = self.make_coordinator(store, fake_engine, check_interval=5)
        now = datetime.now()
        p1 = store.upsert(make_peer(1))
        p2 = store.upsert(make_peer(2))
        coordinator.results[p1.local_id] = HealthResult(p1.local_id, True, 45000, observed_at=now)
        coordinator.results[p2.local_id] = HealthResult(p2.local_id, False, observed_at=now,
                                                        error_detail="超时")

        snapshot = coordinator.snapshot(now)

        assert snapshot.peers_count == 2
        assert snapshot.reachable_peers == 1
        assert snapshot.avg_latency_ms == 45
        assert snapshot.max_latency_ms == 45

    def test_snapshot_average_of_floored_values(self, store, fake_engine):
        """测试平均延迟按毫秒值整数平均"""
        coordinator = self.make_coordinator(store, fake_engine, check_interval=5)
        now = datetime.now()
        for backend_id, latency_us in ((1, 10999), (2, 20500), (3, 31000)):
            peer = store.upsert(make_peer(backend_id))
            coordinator.results[peer.local_id] = HealthResult(peer.local_id, True, latency_us,
                                                              observed_at=now)

        snapshot = coordinator.snapshot(now)

        assert snapshot.reachable_peers == 3
        assert snapshot.avg_latency_ms == (10 + 20 + 31) // 3
        assert snapshot.max_latency_ms == 31

    def test_snapshot_excludes_stale_results(self, store, fake_engine):
        """测试过期结果不计入汇总"""
        coordinator = self.make_coordinator(store, fake_engine, check_interval=5)
        now = datetime.now()
        p1 = store.upsert(make_peer(1))
        p2 = store.upsert(make_peer(2))
        coordinator.results[p1.local_id] = HealthResult(
            p1.local_id, True, 45000, observed_at=now - timedelta(seconds=11))
        coordinator.results[p2.local_id] = HealthResult(
            p2.local_id, True, 20000, observed_at=now - timedelta(seconds=9))

        snapshot = coordinator.snapshot(now)

        assert coordinator.stale_after == 10
        assert snapshot.peers_count == 2
        assert snapshot.reachable_peers == 1
        assert snapshot.avg_latency_ms == 20
        assert coordinator.get_fresh_result(p1.local_id, now) is None

    def test_snapshot_without_reachable_peers(self, store, fake_engine):
        """测试没有可达节点时延迟缺省"""
        coordinator = self.make_coordinator(store, fake_engine)
        store.upsert(make_peer(1))

        snapshot = coordinator.snapshot()

        assert snapshot.peers_count == 1
        assert snapshot.reachable_peers == 0
        assert snapshot.avg_latency_ms is None
        assert snapshot.max_latency_ms is None

    def test_snapshot_ignores_inactive_peers(self, store, fake_engine):
        """测试停用节点的结果不计入汇总"""
        coordinator = self.make_coordinator(store, fake_engine, check_interval=5)
        now = datetime.now()
        p1 = store.upsert(make_peer(1))
        coordinator.results[p1.local_id] = HealthResult(p1.local_id, True, 5000, observed_at=now)
        store.deactivate(p1.local_id)

        snapshot = coordinator.snapshot(now)

        assert snapshot.peers_count == 0
        assert snapshot.reachable_peers == 0

    def test_update_check_interval(self, store, fake_engine):
        """测试更新检查间隔"""
        coordinator = self.make_coordinator(store, fake_engine, check_interval=5)
        coordinator.update_check_interval(10)

        assert coordinator.check_interval == 10
        assert coordinator.stale_after == 20
        with pytest.raises(ValueError):
            coordinator.update_check_interval(-1)
