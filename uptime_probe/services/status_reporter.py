"""状态上报模块

周期性地向后端上报探测节点自身状态和每个被监控节点的状态
"""

import asyncio
import logging
from datetime import datetime
from typing import Dict, Any, Optional, Tuple

from ..models.peer import (
    Peer, HealthResult, AggregationSnapshot, ReportState,
    SelfStatusPayload, PeerStatusPayload, STATUS_ONLINE, STATUS_OFFLINE
)
from ..utils.exceptions import BackendError, BackendAuthError
from ..utils.log_manager import get_logger
from .backend_client import BackendClient
from .health_coordinator import HealthCheckCoordinator
from .peer_store import LocalPeerStore


class StatusReporter:
    """状态上报器

    自身状态和节点状态是两个独立的循环，上报失败只记录日志和失败计数，
    不重试、不退避，也不会影响其他上报或健康检查。
    """

    def __init__(self, backend_client: BackendClient, store: LocalPeerStore,
                 coordinator: HealthCheckCoordinator, version: str,
                 region: Optional[str] = None,
                 self_report_interval: float = 30,
                 peer_report_interval: float = 30,
                 failure_escalation_threshold: int = 5,
                 self_report_enabled: bool = True,
                 peer_report_enabled: bool = True):
        """
        初始化状态上报器

        Args:
            backend_client: 后端客户端
            store: 本地节点存储
            coordinator: 健康检查协调器
            version: 代理版本
            region: 探测节点所在区域
            self_report_interval: 自身状态上报间隔（秒）
            peer_report_interval: 节点状态上报间隔（秒）
            failure_escalation_threshold: 连续失败多少次后以ERROR级别记录
            self_report_enabled: 是否上报自身状态
            peer_report_enabled: 是否上报节点状态
        """
        self.backend_client = backend_client
        self.store = store
        self.coordinator = coordinator
        self.version = version
        self.region = region
        self.self_report_interval = self_report_interval
        self.peer_report_interval = peer_report_interval
        self.failure_escalation_threshold = failure_escalation_threshold
        self.self_report_enabled = self_report_enabled
        self.peer_report_enabled = peer_report_enabled

        self.report_state = ReportState()
        self.logger = get_logger('status_reporter')

    def build_self_payload(self, snapshot: AggregationSnapshot) -> SelfStatusPayload:
        # 能发出上报说明探测节点本身在线
        return SelfStatusPayload(
            version=self.version,
            peers_count=snapshot.peers_count,
            reachable_peers=snapshot.reachable_peers,
            status=STATUS_ONLINE,
            region=self.region,
            avg_peer_rtt=snapshot.avg_latency_ms,
            max_peer_rtt=snapshot.max_latency_ms,
        )

    def build_peer_payload(self, peer: Peer, result: HealthResult) -> PeerStatusPayload:
        """
        根据检查结果构建单个节点的上报负载

        Args:
            peer: 节点
            result: 该节点最近的检查结果

        Returns:
            PeerStatusPayload: 上报负载，延迟已转换为毫秒
        """
        return PeerStatusPayload(
            peer_id=peer.backend_id,
            status=STATUS_ONLINE if result.reachable else STATUS_OFFLINE,
            peer_name=peer.display_name,
            host=peer.host,
            port=peer.port,
            protocol=peer.protocol,
            probe_version=self.version,
            response_time=result.latency_ms,
            network_name=peer.network_name,
            region=peer.region,
            isp=peer.isp,
            probe_region=self.region,
            error_message=None if result.reachable else result.error_detail,
        )

    async def report_self_once(self, now: Optional[datetime] = None) -> bool:
        """
        上报一次自身状态

        Returns:
            bool: 上报是否成功
        """
        try:
            snapshot = self.coordinator.snapshot(now)
            await self.backend_client.report_status(self.build_self_payload(snapshot))
        except BackendError as e:
            self._record_failure("自身状态", e)
            return False
        except Exception as e:
            self._record_unexpected_failure("自身状态", e)
            return False

        self._record_success()
        self.logger.debug(
            f"自身状态上报成功: 节点数={snapshot.peers_count}, "
            f"可达={snapshot.reachable_peers}, 平均延迟={snapshot.avg_latency_ms}ms")
        return True

    async def report_peers_once(self, now: Optional[datetime] = None) -> Tuple[int, int]:
        """
        为每个有未过期结果的活跃节点上报一次状态

        单个节点上报失败不影响其他节点。

        Returns:
            Tuple[int, int]: (成功数, 失败数)
        """
        now = now or datetime.now()
        succeeded = 0
        failed = 0

        for peer in self.store.list_active():
            result = self.coordinator.get_fresh_result(peer.local_id, now)
            if result is None:
                continue

            try:
                await self.backend_client.report_status(self.build_peer_payload(peer, result))
            except BackendError as e:
                failed += 1
                self._record_failure(f"节点 {peer.display_name} 状态", e)
                continue
            except Exception as e:
                failed += 1
                self._record_unexpected_failure(f"节点 {peer.display_name} 状态", e)
                continue

            succeeded += 1
            self._record_success()

        if succeeded or failed:
            self.logger.debug(f"节点状态上报完成: 成功 {succeeded} 个, 失败 {failed} 个")
        return succeeded, failed

    async def run_self_reports(self):
        """自身状态上报循环，直到被取消"""
        self.logger.info(f"启动自身状态上报，间隔={self.self_report_interval}秒")
        try:
            while True:
                await self.report_self_once()
                await asyncio.sleep(self.self_report_interval)
        except asyncio.CancelledError:
            self.logger.info("自身状态上报任务已取消")
            raise

    async def run_peer_reports(self):
        """节点状态上报循环，直到被取消"""
        self.logger.info(f"启动节点状态上报，间隔={self.peer_report_interval}秒")
        try:
            while True:
                # 先等一个间隔，让首轮健康检查产生结果
                await asyncio.sleep(self.peer_report_interval)
                await self.report_peers_once()
        except asyncio.CancelledError:
            self.logger.info("节点状态上报任务已取消")
            raise

    def _record_success(self):
        if self.report_state.consecutive_failures:
            self.logger.info(
                f"状态上报在连续失败 {self.report_state.consecutive_failures} 次后恢复")
        self.report_state.record_success()

    def _record_failure(self, what: str, error: BackendError):
        self.report_state.record_failure(error)
        failures = self.report_state.consecutive_failures

        level = logging.ERROR if failures >= self.failure_escalation_threshold else logging.WARNING
        if isinstance(error, BackendAuthError):
            self.logger.error(
                f"{what}上报认证失败，请检查 report_auth 凭据 "
                f"(连续失败 {failures} 次): {error.format_error()}")
        else:
            self.logger.log(level, f"{what}上报失败 (连续失败 {failures} 次): {error.format_error()}")

    def _record_unexpected_failure(self, what: str, error: Exception):
        self.report_state.record_failure(error)
        self.logger.error(
            f"{what}上报时发生异常 (连续失败 {self.report_state.consecutive_failures} 次): {error}",
            exc_info=True)

    def update_intervals(self, self_report_interval: Optional[float] = None,
                         peer_report_interval: Optional[float] = None):
        """
        更新上报间隔，运行中的循环在下一轮生效

        Raises:
            ValueError: 间隔值无效
        """
        for interval in (self_report_interval, peer_report_interval):
            if interval is not None and interval <= 0:
                raise ValueError("上报间隔必须是正数")

        if self_report_interval is not None and self_report_interval != self.self_report_interval:
            self.logger.info(
                f"更新自身状态上报间隔: {self.self_report_interval}s -> {self_report_interval}s")
            self.self_report_interval = self_report_interval

        if peer_report_interval is not None and peer_report_interval != self.peer_report_interval:
            self.logger.info(
                f"更新节点状态上报间隔: {self.peer_report_interval}s -> {peer_report_interval}s")
            self.peer_report_interval = peer_report_interval

    def get_stats(self) -> Dict[str, Any]:
        state = self.report_state
        return {
            'self_report_enabled': self.self_report_enabled,
            'peer_report_enabled': self.peer_report_enabled,
            'self_report_interval': self.self_report_interval,
            'peer_report_interval': self.peer_report_interval,
            'consecutive_failures': state.consecutive_failures,
            'total_reports': state.total_reports,
            'total_failures': state.total_failures,
            'last_success_at': state.last_success_at.isoformat() if state.last_success_at else None,
            'last_error': state.last_error,
        }
