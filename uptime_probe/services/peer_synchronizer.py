"""节点同步器模块

周期性地从后端拉取节点目录，并与本地节点存储进行对账
"""

import asyncio
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Dict, Any, List, Optional

from ..models.peer import Peer
from ..utils.exceptions import BackendError, BackendAuthError, StoreError
from ..utils.log_manager import get_logger
from .backend_client import BackendClient
from .health_coordinator import HealthCheckCoordinator
from .peer_store import LocalPeerStore


class SyncState(Enum):
    """同步周期状态"""
    IDLE = "idle"
    FETCHING = "fetching"
    RECONCILING = "reconciling"


@dataclass
class RetirementPolicy:
    """节点退役策略

    节点连续 missed_fetches 次未出现在目录中时标记为非活跃；
    enabled 为 False 时从不退役。
    """
    enabled: bool = True
    missed_fetches: int = 1

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> 'RetirementPolicy':
        return cls(
            enabled=bool(config.get('enabled', True)),
            missed_fetches=int(config.get('missed_fetches', 1)),
        )


@dataclass
class ReconcileSummary:
    """一次对账的变更统计"""
    added: List[int] = field(default_factory=list)
    updated: List[int] = field(default_factory=list)
    reactivated: List[int] = field(default_factory=list)
    deactivated: List[int] = field(default_factory=list)
    skipped: int = 0

    @property
    def changed(self) -> bool:
        return bool(self.added or self.updated or self.reactivated or self.deactivated)

    def __str__(self) -> str:
        return (f"新增={len(self.added)}, 更新={len(self.updated)}, "
                f"重新激活={len(self.reactivated)}, 退役={len(self.deactivated)}, "
                f"跳过={self.skipped}")


class PeerSynchronizer:
    """节点同步器

    拉取失败时不修改本地存储，已有节点继续按最后已知的连接信息被监控。
    """

    def __init__(self, backend_client: BackendClient, store: LocalPeerStore,
                 coordinator: HealthCheckCoordinator, region: Optional[str] = None,
                 fetch_interval: float = 60,
                 retirement_policy: Optional[RetirementPolicy] = None,
                 failure_escalation_threshold: int = 5):
        """
        初始化节点同步器

        Args:
            backend_client: 后端客户端
            store: 本地节点存储
            coordinator: 健康检查协调器
            region: 节点目录的区域过滤条件
            fetch_interval: 拉取间隔（秒）
            retirement_policy: 节点退役策略
            failure_escalation_threshold: 连续失败多少次后提升日志级别
        """
        self.backend_client = backend_client
        self.store = store
        self.coordinator = coordinator
        self.region = region
        self.fetch_interval = fetch_interval
        self.retirement_policy = retirement_policy or RetirementPolicy()
        self.failure_escalation_threshold = failure_escalation_threshold

        self.state = SyncState.IDLE
        self.consecutive_failures = 0
        self.last_sync_at: Optional[datetime] = None
        self.last_summary: Optional[ReconcileSummary] = None
        self.is_running = False
        self.logger = get_logger('peer_synchronizer')

    def resume_from_store(self) -> int:
        """
        为缓存中的活跃节点启动检查任务，不等待第一次拉取

        Returns:
            int: 恢复监控的节点数量
        """
        peers = self.store.list_active()
        for peer in peers:
            self.coordinator.start_peer(peer)

        if peers:
            self.logger.info(f"从本地缓存恢复了 {len(peers)} 个节点的监控")
        return len(peers)

    async def run(self):
        """同步循环，直到被取消"""
        self.is_running = True
        self.logger.info(f"启动节点同步，间隔={self.fetch_interval}秒，区域={self.region}")
        try:
            while self.is_running:
                await self.sync_once()
                await asyncio.sleep(self.fetch_interval)
        except asyncio.CancelledError:
            self.logger.info("节点同步任务已取消")
            raise
        finally:
            self.is_running = False
            self.state = SyncState.IDLE

    async def sync_once(self) -> bool:
        """
        执行一次同步周期

        Returns:
            bool: 是否成功完成拉取与对账
        """
        self.state = SyncState.FETCHING
        try:
            peers, more_available = await self.backend_client.fetch_peers(self.region)
        except BackendError as e:
            self._record_fetch_failure(e)
            self.state = SyncState.IDLE
            return False
        except Exception as e:
            self.consecutive_failures += 1
            self.logger.error(f"拉取节点目录时发生未知错误: {e}", exc_info=True)
            self.state = SyncState.IDLE
            return False

        if self.consecutive_failures:
            self.logger.info(f"节点目录拉取在连续失败 {self.consecutive_failures} 次后恢复")
        self.consecutive_failures = 0

        self.state = SyncState.RECONCILING
        try:
            summary = await self.reconcile(peers, more_available)
        except StoreError as e:
            self.logger.error(f"节点对账失败: {e.format_error()}")
            return False
        finally:
            self.state = SyncState.IDLE

        self.last_sync_at = datetime.now()
        self.last_summary = summary
        log_level = logging.INFO if summary.changed else logging.DEBUG
        self.logger.log(log_level, f"拉取到 {len(peers)} 个节点，对账完成: {summary}")
        return True

    def _record_fetch_failure(self, error: BackendError):
        self.consecutive_failures += 1
        level = (logging.ERROR if self.consecutive_failures >= self.failure_escalation_threshold
                 else logging.WARNING)

        if isinstance(error, BackendAuthError):
            # 认证错误不会自行恢复
            self.logger.error(
                f"拉取节点目录认证失败，请检查 discovery_auth 凭据 "
                f"(连续失败 {self.consecutive_failures} 次): {error.format_error()}")
        else:
            self.logger.log(
                level,
                f"拉取节点目录失败 (连续失败 {self.consecutive_failures} 次)，"
                f"继续监控已知节点: {error.format_error()}")

    async def reconcile(self, fetched: List[Peer], more_available: bool = False) -> ReconcileSummary:
        """
        将拉取到的节点目录与本地存储对账

        存储变更在一个批次内完成，之后再启动或停止检查任务。
        重复应用同一份目录不会产生新的变更。

        Args:
            fetched: 后端返回的节点列表
            more_available: 后端是否还有未返回的批次，为True时不退役任何节点

        Returns:
            ReconcileSummary: 变更统计
        """
        summary = ReconcileSummary()
        now = datetime.now()
        seen_backend_ids = set()
        to_stop: List[int] = []

        with self.store.batch():
            for incoming in fetched:
                if incoming.backend_id in seen_backend_ids:
                    self.logger.warning(f"节点目录中存在重复的后端id {incoming.backend_id}，已忽略")
                    summary.skipped += 1
                    continue
                seen_backend_ids.add(incoming.backend_id)

                existing = self.store.find_by_backend_id(incoming.backend_id)
                if existing is None:
                    stored = self.store.upsert(replace(
                        incoming, local_id=None, active=True,
                        last_seen_in_catalog=now, missed_fetches=0))
                    summary.added.append(stored.local_id)
                    self.logger.info(
                        f"新增节点 {stored.display_name} (后端id={stored.backend_id}, "
                        f"本地id={stored.local_id})")
                    continue

                catalog_changed = existing.catalog_fields() != incoming.catalog_fields()
                reactivating = not existing.active
                refreshed = replace(
                    existing, **incoming.catalog_fields(),
                    active=True, deactivated_at=None,
                    last_seen_in_catalog=now, missed_fetches=0)
                self.store.upsert(refreshed)

                if reactivating:
                    summary.reactivated.append(existing.local_id)
                    self.logger.info(f"节点 {refreshed.display_name} 重新出现在目录中，恢复监控")
                elif catalog_changed:
                    summary.updated.append(existing.local_id)
                    self.logger.info(f"节点 {refreshed.display_name} 的连接信息或元数据已更新")

            if more_available:
                self.logger.warning("后端返回的节点目录不完整 (next_batch_available)，本轮不退役节点")
            else:
                to_stop = self._apply_retirement(seen_backend_ids, summary)

        for local_id in to_stop:
            await self.coordinator.stop_peer(local_id)

        for peer in self.store.list_active():
            self.coordinator.start_peer(peer)

        return summary

    def _apply_retirement(self, seen_backend_ids: set, summary: ReconcileSummary) -> List[int]:
        """处理本轮未出现在目录中的活跃节点，返回需要停止检查的本地 id"""
        to_stop = []
        for peer in self.store.list_active():
            if peer.backend_id in seen_backend_ids:
                continue

            missed = peer.missed_fetches + 1
            if self.retirement_policy.enabled and missed >= self.retirement_policy.missed_fetches:
                self.store.deactivate(peer.local_id)
                summary.deactivated.append(peer.local_id)
                to_stop.append(peer.local_id)
                self.logger.info(
                    f"节点 {peer.display_name} (后端id={peer.backend_id}) "
                    f"连续 {missed} 次未出现在目录中，已退役")
            else:
                self.store.upsert(replace(peer, missed_fetches=missed))
                self.logger.debug(f"节点 {peer.display_name} 本轮未出现在目录中 (连续 {missed} 次)")
        return to_stop

    def update_fetch_interval(self, interval: float):
        if interval <= 0:
            raise ValueError("拉取间隔必须是正数")
        self.logger.info(f"更新节点拉取间隔: {self.fetch_interval}s -> {interval}s")
        self.fetch_interval = interval

    def get_stats(self) -> Dict[str, Any]:
        return {
            'state': self.state.value,
            'is_running': self.is_running,
            'region': self.region,
            'fetch_interval': self.fetch_interval,
            'consecutive_failures': self.consecutive_failures,
            'last_sync_at': self.last_sync_at.isoformat() if self.last_sync_at else None,
            'last_summary': str(self.last_summary) if self.last_summary else None,
            'retirement_policy': {
                'enabled': self.retirement_policy.enabled,
                'missed_fetches': self.retirement_policy.missed_fetches,
            },
        }
