"""健康检查协调器模块

为每个活跃节点维护一个独立的周期性检查任务，并汇总最近的检查结果
"""

import asyncio
from datetime import datetime
from typing import Dict, Any, Optional, List, Set

from ..checkers.base import BaseProbeEngine
from ..models.peer import Peer, HealthResult, AggregationSnapshot, us_to_ms
from ..utils.exceptions import ProbeEngineError, ErrorCode
from ..utils.log_manager import get_logger
from .peer_store import LocalPeerStore

# 未配置探测超时时取检查间隔的比例，保证每轮都能在下一轮开始前得到结果
DEFAULT_PROBE_TIMEOUT_RATIO = 0.8


class HealthCheckCoordinator:
    """健康检查协调器

    每个节点一个检查任务，各自按固定间隔运行；全局信号量限制同时进行中的探测数量，
    超出上限的检查在各自任务内排队，不会阻塞其他节点。
    """

    def __init__(self, store: LocalPeerStore, probe_engine: BaseProbeEngine,
                 check_interval: float = 5, max_concurrent_checks: int = 32,
                 probe_timeout: Optional[float] = None,
                 stale_after_factor: float = 2.0,
                 stop_grace_period: float = 2.0):
        """初始化健康检查协调器

        Args:
            store: 本地节点存储
            probe_engine: 探测引擎
            check_interval: 每个节点的检查间隔（秒）
            max_concurrent_checks: 同时进行中的探测数量上限
            probe_timeout: 单次探测的超时时间，必须小于检查间隔，默认为检查间隔的80%
            stale_after_factor: 结果超过 检查间隔×该系数 后视为过期
            stop_grace_period: 停止任务时等待其退出的最长时间（秒）
        """
        if check_interval <= 0:
            raise ValueError("检查间隔必须是正数")
        if max_concurrent_checks <= 0:
            raise ValueError("最大并发检查数必须是正整数")
        if probe_timeout is not None and probe_timeout >= check_interval:
            raise ValueError("探测超时必须小于检查间隔")

        self.store = store
        self.probe_engine = probe_engine
        self.check_interval = check_interval
        self.max_concurrent_checks = max_concurrent_checks
        self.probe_timeout = probe_timeout
        self.stale_after_factor = stale_after_factor
        self.stop_grace_period = stop_grace_period

        self.tasks: Dict[int, asyncio.Task] = {}  # 本地 id -> 检查任务
        self.results: Dict[int, HealthResult] = {}  # 本地 id -> 最近结果
        self.semaphore = asyncio.Semaphore(max_concurrent_checks)
        self.in_flight = 0
        self.total_checks = 0
        self.unsupported_warned: Set[int] = set()  # 已提示过协议不受支持的本地 id
        self.logger = get_logger('health_coordinator')

    @property
    def stale_after(self) -> float:
        return self.check_interval * self.stale_after_factor

    @property
    def effective_probe_timeout(self) -> float:
        return self.probe_timeout or self.check_interval * DEFAULT_PROBE_TIMEOUT_RATIO

    def start_peer(self, peer: Peer) -> bool:
        """启动节点的检查任务，重复调用不会创建重复任务

        Args:
            peer: 活跃节点

        Returns:
            是否新建了任务
        """
        local_id = peer.local_id
        existing = self.tasks.get(local_id)
        if existing is not None and not existing.done():
            return False

        task = asyncio.create_task(self._peer_loop(local_id),
                                   name=f'health-check-{local_id}')
        self.tasks[local_id] = task
        task.add_done_callback(lambda t, lid=local_id: self._on_task_done(lid, t))

        self.logger.info(
            f"启动节点 {peer.display_name} (本地id={local_id}, 后端id={peer.backend_id}) 的健康检查，"
            f"间隔={self.check_interval}秒")
        return True

    async def stop_peer(self, local_id: int) -> bool:
        """停止节点的检查任务，最近的结果保留

        Args:
            local_id: 本地 id

        Returns:
            是否存在并停止了任务
        """
        task = self.tasks.pop(local_id, None)
        self.unsupported_warned.discard(local_id)
        if task is None:
            return False

        if not task.done():
            task.cancel()
            done, _ = await asyncio.wait({task}, timeout=self.stop_grace_period)
            if not done:
                self.logger.warning(
                    f"节点 {local_id} 的检查任务在 {self.stop_grace_period} 秒内未退出")

        self.logger.info(f"已停止节点 {local_id} 的健康检查")
        return True

    async def stop(self):
        """停止所有检查任务"""
        if not self.tasks:
            return

        self.logger.info(f"正在停止 {len(self.tasks)} 个健康检查任务...")
        tasks = list(self.tasks.values())
        self.tasks.clear()

        for task in tasks:
            if not task.done():
                task.cancel()

        _, pending = await asyncio.wait(tasks, timeout=self.stop_grace_period)
        if pending:
            self.logger.warning(f"{len(pending)} 个检查任务未能在宽限期内退出")

        self.logger.info("健康检查任务已全部停止")

    def is_checking(self, local_id: int) -> bool:
        task = self.tasks.get(local_id)
        return task is not None and not task.done()

    def _on_task_done(self, local_id: int, task: asyncio.Task):
        """任务结束时清理登记，只移除仍然指向该任务的条目"""
        if self.tasks.get(local_id) is task:
            del self.tasks[local_id]

        if not task.cancelled() and task.exception() is not None:
            self.logger.error(f"节点 {local_id} 的检查任务异常退出: {task.exception()}")

    async def _peer_loop(self, local_id: int):
        """单个节点的检查循环，每轮重新读取节点以获取最新的连接信息"""
        loop = asyncio.get_running_loop()
        next_run = loop.time()
        while True:
            peer = self.store.get(local_id)
            if peer is None or not peer.active:
                self.logger.debug(f"节点 {local_id} 已不再活跃，检查循环退出")
                return

            await self._run_check(peer)

            # 按固定频率调度，探测耗时不累加到间隔上；落后超过一轮时不补跑
            next_run = max(next_run + self.check_interval, loop.time())
            await asyncio.sleep(next_run - loop.time())

    async def _run_check(self, peer: Peer) -> HealthResult:
        """执行一次探测并写入结果槽位

        Args:
            peer: 待检查的节点

        Returns:
            本次检查结果
        """
        async with self.semaphore:  # 控制同时进行中的探测数量
            self.in_flight += 1
            try:
                result = await self._probe(peer)
            finally:
                self.in_flight -= 1

        self.results[peer.local_id] = result
        self.total_checks += 1

        if result.reachable:
            self.logger.debug(
                f"节点 {peer.display_name} 可达, 延迟: {result.latency_ms}ms")
        else:
            self.logger.debug(
                f"节点 {peer.display_name} 不可达: {result.error_detail}")
        return result

    async def _probe(self, peer: Peer) -> HealthResult:
        timeout = self.effective_probe_timeout
        try:
            outcome = await asyncio.wait_for(self.probe_engine.probe(peer.descriptor),
                                             timeout=timeout)
        except asyncio.TimeoutError:
            return HealthResult(peer_local_id=peer.local_id, reachable=False,
                                error_detail=f"探测超时 ({timeout}s)")
        except ProbeEngineError as e:
            self._log_engine_error(peer, e)
            return HealthResult(peer_local_id=peer.local_id, reachable=False,
                                error_detail=e.message)
        except Exception as e:
            self.logger.error(f"探测节点 {peer.display_name} 时发生异常: {e}")
            return HealthResult(peer_local_id=peer.local_id, reachable=False,
                                error_detail=f"探测引擎异常: {e}")

        if not outcome.reachable:
            return HealthResult(peer_local_id=peer.local_id, reachable=False,
                                error_detail=outcome.error or "节点不可达")

        try:
            latency_us = max(0, int(outcome.latency_us))
        except (TypeError, ValueError):
            self.logger.error(
                f"探测引擎对节点 {peer.display_name} 返回了可达但延迟无效的结果: "
                f"{outcome.latency_us!r}")
            return HealthResult(peer_local_id=peer.local_id, reachable=False,
                                error_detail=f"探测引擎返回的延迟无效: {outcome.latency_us!r}")

        return HealthResult(peer_local_id=peer.local_id, reachable=True, latency_us=latency_us)

    def _log_engine_error(self, peer: Peer, error: ProbeEngineError):
        # 协议不受支持的节点每轮都会失败，只在第一次提示
        if error.error_code == ErrorCode.PROBE_UNSUPPORTED_PROTOCOL:
            if peer.local_id in self.unsupported_warned:
                self.logger.debug(f"跳过节点 {peer.display_name}: {error.message}")
                return
            self.unsupported_warned.add(peer.local_id)
        self.logger.warning(f"探测节点 {peer.display_name} 失败: {error.format_error()}")

    def get_result(self, local_id: int) -> Optional[HealthResult]:
        return self.results.get(local_id)

    def get_fresh_result(self, local_id: int,
                         now: Optional[datetime] = None) -> Optional[HealthResult]:
        """获取未过期的最近结果

        Args:
            local_id: 本地 id
            now: 当前时间，默认取系统时间

        Returns:
            未过期的结果，没有结果或已过期时返回None
        """
        result = self.results.get(local_id)
        if result is None:
            return None
        if not result.is_fresh(now or datetime.now(), self.stale_after):
            return None
        return result

    def snapshot(self, now: Optional[datetime] = None) -> AggregationSnapshot:
        """计算自身健康汇总

        只统计活跃节点；过期结果不计入可达数量和延迟统计。

        Args:
            now: 当前时间，默认取系统时间

        Returns:
            汇总快照，没有可达节点时平均/最大延迟为None
        """
        now = now or datetime.now()
        active_peers = self.store.list_active()

        latencies_ms: List[int] = []
        for peer in active_peers:
            result = self.get_fresh_result(peer.local_id, now)
            if result is not None and result.reachable and result.latency_us is not None:
                latencies_ms.append(us_to_ms(result.latency_us))

        if not latencies_ms:
            return AggregationSnapshot(peers_count=len(active_peers), reachable_peers=0,
                                       taken_at=now)

        return AggregationSnapshot(
            peers_count=len(active_peers),
            reachable_peers=len(latencies_ms),
            avg_latency_ms=sum(latencies_ms) // len(latencies_ms),
            max_latency_ms=max(latencies_ms),
            taken_at=now
        )

    async def check_peer_now(self, local_id: int) -> Optional[HealthResult]:
        """立即检查指定节点

        Args:
            local_id: 本地 id

        Returns:
            检查结果，节点不存在时返回None
        """
        peer = self.store.get(local_id)
        if peer is None:
            self.logger.error(f"节点 {local_id} 不存在")
            return None

        self.logger.info(f"立即检查节点: {peer.display_name}")
        return await self._run_check(peer)

    async def check_all_now(self) -> Dict[int, Optional[HealthResult]]:
        """立即检查所有活跃节点

        Returns:
            本地 id 到检查结果的字典
        """
        peers = self.store.list_active()
        if not peers:
            return {}

        task_results = await asyncio.gather(
            *(self.check_peer_now(peer.local_id) for peer in peers),
            return_exceptions=True
        )

        results = {}
        for peer, result in zip(peers, task_results):
            if isinstance(result, Exception):
                self.logger.error(f"检查节点 {peer.display_name} 异常: {result}")
                results[peer.local_id] = None
            else:
                results[peer.local_id] = result
        return results

    def update_check_interval(self, interval: float, probe_timeout: Optional[float] = None):
        """更新检查间隔和探测超时，运行中的任务在下一轮生效

        Args:
            interval: 新的检查间隔（秒）
            probe_timeout: 新的探测超时，None 表示取检查间隔的80%

        Raises:
            ValueError: 间隔值无效或探测超时不小于间隔
        """
        if interval <= 0:
            raise ValueError("检查间隔必须是正数")
        if probe_timeout is not None and probe_timeout >= interval:
            raise ValueError("探测超时必须小于检查间隔")

        old_interval = self.check_interval
        self.check_interval = interval
        self.probe_timeout = probe_timeout
        self.logger.info(f"更新健康检查间隔: {old_interval}s -> {interval}s")

    def get_stats(self) -> Dict[str, Any]:
        """获取协调器统计信息"""
        return {
            'running_tasks_count': sum(1 for t in self.tasks.values() if not t.done()),
            'monitored_peers': sorted(self.tasks.keys()),
            'check_interval': self.check_interval,
            'max_concurrent_checks': self.max_concurrent_checks,
            'in_flight_checks': self.in_flight,
            'total_checks': self.total_checks,
            'results_count': len(self.results),
        }
