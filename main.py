#!/usr/bin/env python3
"""
健康探测代理主应用程序入口

组装节点同步、健康检查和状态上报组件，
处理信号、配置热更新和优雅关闭。
"""

import argparse
import asyncio
import logging
import signal
import sys
from typing import Optional, Dict, Any

from uptime_probe import __version__
from uptime_probe.checkers import probe_engine_factory
from uptime_probe.services.backend_client import BackendClient
from uptime_probe.services.config_manager import ConfigManager
from uptime_probe.services.config_watcher import ConfigWatcher
from uptime_probe.services.health_coordinator import HealthCheckCoordinator
from uptime_probe.services.peer_store import LocalPeerStore
from uptime_probe.services.peer_synchronizer import PeerSynchronizer, RetirementPolicy
from uptime_probe.services.status_reporter import StatusReporter
from uptime_probe.utils.exceptions import ProbeAgentError, ConfigError, StoreError
from uptime_probe.utils.log_manager import log_manager, get_logger, configure_logging, LogLevel


class ProbeAgentApp:
    """健康探测代理主应用程序类"""

    def __init__(self, config_path: str):
        """初始化应用程序

        Args:
            config_path: 配置文件路径
        """
        self.config_path = config_path
        self.logger: Optional[logging.Logger] = None
        self.is_running = False
        self.shutdown_event = asyncio.Event()
        self.shutdown_grace_period = 5.0

        # 命令行参数对日志配置的覆盖
        self.log_overrides: Dict[str, Any] = {}

        # 核心组件
        self.config_manager: Optional[ConfigManager] = None
        self.config_watcher: Optional[ConfigWatcher] = None
        self.store: Optional[LocalPeerStore] = None
        self.backend_client: Optional[BackendClient] = None
        self.coordinator: Optional[HealthCheckCoordinator] = None
        self.synchronizer: Optional[PeerSynchronizer] = None
        self.reporter: Optional[StatusReporter] = None

        # 任务管理
        self.background_tasks = set()

    async def initialize(self):
        """初始化应用程序组件

        Raises:
            ConfigError: 配置无效
            StoreError: 本地节点缓存无法加载
        """
        try:
            self.config_manager = ConfigManager(self.config_path)
            config = self.config_manager.load_config()

            self._configure_logging(self.config_manager.get_global_config())
            self.logger = get_logger('main')
            self.logger.info(f"开始初始化健康探测代理 v{__version__}")

            global_config = self.config_manager.get_global_config()
            backend_config = self.config_manager.get_backend_config()
            probe_config = self.config_manager.get_probe_config()
            cache_config = self.config_manager.get_cache_config()
            log_manager.register_credentials(
                backend_config.get('discovery_auth', {}).get('credential'),
                backend_config.get('report_auth', {}).get('credential'))
            self.shutdown_grace_period = global_config.get('shutdown_grace_period', 5)

            # 本地缓存，加载失败是致命错误
            self.store = LocalPeerStore(cache_config.get('path'))
            self.store.load()
            self.store.cleanup_inactive(cache_config.get('retention_days', 30))

            self.backend_client = BackendClient.from_config(backend_config, __version__)

            engine_config = dict(probe_config.get('engine_options') or {})
            if probe_config.get('probe_timeout'):
                engine_config.setdefault('timeout', probe_config['probe_timeout'])
            probe_engine = probe_engine_factory.create_engine(
                probe_config.get('engine', 'tcp'), engine_config)

            self.coordinator = HealthCheckCoordinator(
                self.store, probe_engine,
                check_interval=probe_config['health_check_interval'],
                max_concurrent_checks=probe_config['max_concurrent_checks'],
                probe_timeout=probe_config.get('probe_timeout'),
                stale_after_factor=probe_config['stale_after_factor'],
                stop_grace_period=probe_config['stop_grace_period'],
            )

            self.synchronizer = PeerSynchronizer(
                self.backend_client, self.store, self.coordinator,
                region=probe_config.get('region'),
                fetch_interval=probe_config['peer_fetch_interval'],
                retirement_policy=RetirementPolicy.from_config(probe_config.get('retirement', {})),
                failure_escalation_threshold=probe_config['failure_escalation_threshold'],
            )

            self.reporter = StatusReporter(
                self.backend_client, self.store, self.coordinator,
                version=__version__,
                region=probe_config.get('region'),
                self_report_interval=probe_config['status_report_interval'],
                peer_report_interval=probe_config['peer_report_interval'],
                failure_escalation_threshold=probe_config['failure_escalation_threshold'],
                self_report_enabled=probe_config['self_report_enabled'],
                peer_report_enabled=probe_config['peer_report_enabled'],
            )

            self.config_watcher = ConfigWatcher(self.config_manager)
            self.config_watcher.add_change_callback(self._on_config_changed_callback)

            self.logger.info(f"应用程序组件初始化完成，后端: {config['backend']['base_url']}")

        except ProbeAgentError as e:
            if self.logger:
                self.logger.error(f"应用程序初始化失败: {e.format_error()}")
            else:
                print(f"应用程序初始化失败: {e.format_error()}", file=sys.stderr)
            raise

    def _configure_logging(self, global_config: Dict[str, Any]):
        """配置日志系统

        Args:
            global_config: 全局配置
        """
        global_config = {**global_config, **self.log_overrides}
        log_config = {
            'log_level': global_config.get('log_level', 'INFO'),
            'enable_console': True,
            'enable_file': bool(global_config.get('log_file'))
        }

        if global_config.get('log_file'):
            log_config['log_file'] = global_config['log_file']
            log_config['max_file_size'] = global_config.get('max_log_size', 10 * 1024 * 1024)
            log_config['backup_count'] = global_config.get('log_backup_count', 5)

        configure_logging(log_config)

    def _on_config_changed_callback(self, old_config: Dict[str, Any],
                                    new_config: Dict[str, Any]):
        """配置文件变更回调，日志级别和各项间隔立即生效"""
        self.logger.info("检测到配置文件变更，应用新配置")

        new_global = new_config.get('global', {})
        if 'log_level' not in self.log_overrides:
            log_manager.set_level(LogLevel.parse(new_global.get('log_level', 'INFO')))

        probe_config = new_config.get('probe', {})
        self.coordinator.update_check_interval(probe_config['health_check_interval'],
                                               probe_timeout=probe_config.get('probe_timeout'))
        self.synchronizer.update_fetch_interval(probe_config['peer_fetch_interval'])
        self.synchronizer.retirement_policy = RetirementPolicy.from_config(
            probe_config.get('retirement', {}))
        self.reporter.update_intervals(
            self_report_interval=probe_config['status_report_interval'],
            peer_report_interval=probe_config['peer_report_interval'],
        )

        if old_config.get('probe', {}).get('region') != probe_config.get('region'):
            self.logger.warning("probe.region 的修改需要重启后生效")
        if old_config.get('backend') != new_config.get('backend'):
            self.logger.warning("backend 配置的修改需要重启后生效")
        if old_config.get('cache') != new_config.get('cache'):
            self.logger.warning("cache 配置的修改需要重启后生效")

        self.logger.info("配置重新加载完成")

    def _spawn(self, coro, name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self.background_tasks.add(task)
        task.add_done_callback(self._on_background_task_done)
        return task

    def _on_background_task_done(self, task: asyncio.Task):
        self.background_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            self.logger.error(f"后台任务 {task.get_name()} 异常退出: {task.exception()}")

    async def start(self):
        """启动应用程序并等待关闭信号"""
        if self.is_running:
            self.logger.warning("应用程序已经在运行")
            return

        try:
            self.is_running = True
            self.logger.info("启动健康探测代理")

            # 后端不可用时也能立即恢复对已知节点的监控
            self.synchronizer.resume_from_store()

            self.config_watcher.start_watching(asyncio.get_running_loop())
            self._spawn(self.config_watcher.watch_config_changes_async(), 'config-watcher')

            self._spawn(self.synchronizer.run(), 'peer-sync')
            if self.reporter.self_report_enabled:
                self._spawn(self.reporter.run_self_reports(), 'self-report')
            else:
                self.logger.info("自身状态上报已禁用")
            if self.reporter.peer_report_enabled:
                self._spawn(self.reporter.run_peer_reports(), 'peer-report')
            else:
                self.logger.info("节点状态上报已禁用")

            self.logger.info("健康探测代理启动完成")

            await self.shutdown_event.wait()

        finally:
            await self.stop()

    async def stop(self):
        """停止应用程序，在宽限期内等待所有任务退出"""
        if not self.is_running:
            return

        self.logger.info("正在停止健康探测代理...")
        self.is_running = False

        if self.config_watcher:
            self.config_watcher.stop_watching()

        tasks = list(self.background_tasks)
        for task in tasks:
            if not task.done():
                task.cancel()

        if tasks:
            _, pending = await asyncio.wait(tasks, timeout=self.shutdown_grace_period)
            if pending:
                self.logger.warning(f"{len(pending)} 个后台任务未能在 {self.shutdown_grace_period} 秒内退出")
        self.background_tasks.clear()

        if self.coordinator:
            await self.coordinator.stop()

        self.logger.info("健康探测代理已停止")
        log_manager.cleanup()

    def shutdown(self):
        """触发应用程序关闭"""
        if self.logger:
            self.logger.info("收到关闭信号")
        self.shutdown_event.set()

    def get_status(self) -> Dict[str, Any]:
        """获取应用程序状态

        Returns:
            应用程序状态信息
        """
        status = {
            'version': __version__,
            'is_running': self.is_running,
            'config_path': self.config_path,
            'background_tasks_count': len(self.background_tasks)
        }

        if self.store:
            status['store_stats'] = self.store.get_stats()
        if self.coordinator:
            status['coordinator_stats'] = self.coordinator.get_stats()
            snapshot = self.coordinator.snapshot()
            status['snapshot'] = {
                'peers_count': snapshot.peers_count,
                'reachable_peers': snapshot.reachable_peers,
                'avg_latency_ms': snapshot.avg_latency_ms,
                'max_latency_ms': snapshot.max_latency_ms,
            }
        if self.synchronizer:
            status['sync_stats'] = self.synchronizer.get_stats()
        if self.reporter:
            status['report_stats'] = self.reporter.get_stats()

        return status


def create_argument_parser() -> argparse.ArgumentParser:
    """创建命令行参数解析器"""
    parser = argparse.ArgumentParser(
        prog='uptime-probe',
        description='健康探测代理 - 从后端获取节点列表，持续探测节点可达性与延迟并上报',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
示例用法:
  %(prog)s config.yaml                    # 使用指定配置文件启动代理
  %(prog)s --validate config.yaml        # 验证配置文件格式
  %(prog)s --test-backend config.yaml    # 测试后端连接与认证
  %(prog)s --check-once config.yaml      # 同步一次节点并检查一次后退出
  %(prog)s --version                      # 显示版本信息

支持的环境变量覆盖:
  BACKEND_BASE_URL, API_KEY, NODE_TOKEN, REGION,
  PEER_FETCH_INTERVAL, STATUS_REPORT_INTERVAL,
  HEALTH_CHECK_INTERVAL, DATABASE_PATH

配置文件格式请参考 config/example.yaml
        """
    )

    parser.add_argument(
        'config_file',
        nargs='?',
        help='YAML配置文件路径'
    )

    parser.add_argument(
        '--version', '-v',
        action='version',
        version=f'%(prog)s {__version__}'
    )

    parser.add_argument(
        '--validate',
        action='store_true',
        help='验证配置文件格式并退出'
    )

    parser.add_argument(
        '--test-backend',
        action='store_true',
        help='测试后端连接与节点目录认证并退出'
    )

    parser.add_argument(
        '--check-once',
        action='store_true',
        help='同步一次节点目录并执行一次健康检查后退出'
    )

    parser.add_argument(
        '--log-level',
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'],
        help='设置日志级别（覆盖配置文件设置）'
    )

    parser.add_argument(
        '--log-file',
        help='日志文件路径（覆盖配置文件设置）'
    )

    return parser


def validate_config_file(config_path: str) -> bool:
    """验证配置文件

    Args:
        config_path: 配置文件路径

    Returns:
        验证是否成功
    """
    print(f"正在验证配置文件: {config_path}")

    try:
        config_manager = ConfigManager(config_path)
        config = config_manager.load_config()
        BackendClient.from_config(config['backend'], __version__)

        probe_config = config['probe']
        engine_config = dict(probe_config.get('engine_options') or {})
        probe_engine_factory.create_engine(probe_config.get('engine', 'tcp'), engine_config)
    except ConfigError as e:
        print(f"❌ 配置验证失败: {e.format_error()}")
        return False

    print("✅ 配置文件验证成功!")
    print(f"   后端地址: {config['backend']['base_url']}")
    print(f"   节点目录认证: {config['backend']['discovery_auth']['scheme']}")
    print(f"   状态上报认证: {config['backend']['report_auth']['scheme']}")
    print(f"   区域: {config['probe'].get('region') or '全部'}")
    print(f"   探测引擎: {config['probe'].get('engine', 'tcp')}")
    print(f"   健康检查间隔: {config['probe']['health_check_interval']}秒")
    return True


async def run_backend_test(config_path: str) -> bool:
    """测试后端连接

    Args:
        config_path: 配置文件路径

    Returns:
        测试是否成功
    """
    print(f"正在测试后端连接: {config_path}")

    try:
        config_manager = ConfigManager(config_path)
        config = config_manager.load_config()
        client = BackendClient.from_config(config['backend'], __version__)
    except ConfigError as e:
        print(f"❌ 配置错误: {e.format_error()}")
        return False

    success = await client.test_connection()
    if success:
        print("✅ 后端连接测试成功!")
    else:
        print("❌ 后端连接测试失败!")
    return success


async def check_once(config_path: str) -> bool:
    """同步一次节点目录并执行一次健康检查

    Args:
        config_path: 配置文件路径

    Returns:
        所有节点是否都可达
    """
    print(f"正在执行健康检查: {config_path}")

    app = ProbeAgentApp(config_path)
    try:
        await app.initialize()
    except (ConfigError, StoreError) as e:
        print(f"❌ 初始化失败: {e.format_error()}")
        return False

    try:
        if not await app.synchronizer.sync_once():
            print("⚠️ 节点目录拉取失败，使用本地缓存中的节点")

        results = await app.coordinator.check_all_now()
        await app.coordinator.stop()
    finally:
        log_manager.cleanup()

    print(f"✅ 健康检查完成，共检查 {len(results)} 个节点:")

    all_reachable = True
    for local_id, result in results.items():
        peer = app.store.get(local_id)
        name = peer.display_name if peer else str(local_id)
        if result is None:
            print(f"   ❌ {name}: 检查失败")
            all_reachable = False
        elif result.reachable:
            print(f"   ✅ {name}: 可达 (延迟: {result.latency_ms}ms)")
        else:
            print(f"   ❌ {name}: 不可达 - {result.error_detail}")
            all_reachable = False

    return all_reachable


def install_signal_handlers(app: ProbeAgentApp):
    """SIGINT/SIGTERM 触发优雅关闭"""
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, app.shutdown)
        except NotImplementedError:
            # Windows 事件循环不支持 add_signal_handler
            signal.signal(sig, lambda signum, frame: loop.call_soon_threadsafe(app.shutdown))


async def main() -> int:
    """主函数

    Returns:
        进程退出码
    """
    parser = create_argument_parser()
    args = parser.parse_args()

    if not args.config_file:
        parser.print_help()
        return 1

    config_path = args.config_file

    if args.validate:
        return 0 if validate_config_file(config_path) else 1

    if args.test_backend:
        return 0 if await run_backend_test(config_path) else 1

    if args.check_once:
        return 0 if await check_once(config_path) else 1

    app = ProbeAgentApp(config_path)
    if args.log_level:
        app.log_overrides['log_level'] = args.log_level
    if args.log_file:
        app.log_overrides['log_file'] = args.log_file

    try:
        await app.initialize()
    except ConfigError as e:
        print(f"配置错误: {e.format_error()}", file=sys.stderr)
        return 1
    except StoreError as e:
        print(f"本地缓存错误: {e.format_error()}", file=sys.stderr)
        return 1

    install_signal_handlers(app)

    print(f"健康探测代理 v{__version__} 已启动")
    print(f"配置文件: {config_path}")
    print("按 Ctrl+C 停止程序")

    await app.start()
    return 0


def run():
    """命令行入口"""
    # 设置事件循环策略（Windows兼容性）
    if sys.platform == "win32":
        asyncio.set_event_loop_policy(asyncio.WindowsProactorEventLoopPolicy())

    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
