#!/usr/bin/env python3
"""
Pool Keeper - Autonomous Rotating-Savings Pool Agent

Watches every pool created by the savings-pool factory, keeps a cached view of
each pool's round, and acts when a pool needs attention:
1. event scan (every few seconds) - follow the chain block window by block
   window, registering new pools and refreshing pools that emitted events
2. decision sweep (every few minutes) - refresh all active pools, classify
   each one, and trigger payouts, reminders or stall alerts at most once a day

State is rebuilt from the chain on every start; nothing is persisted.

Usage:
    poolkeeper start [--once] [--poll-interval 5] [--scan-interval-minutes 5]
    poolkeeper status
    poolkeeper config list
    poolkeeper config validate [name]
"""

import argparse
import logging
import signal
import sys
import threading
import time
from typing import Callable, Optional

from backoff_executor import BackoffExecutor, RetryPolicy
from chain_gateway import ChainGateway
from checkpoint_tracker import DEFAULT_BLOCK_LAG, DEFAULT_MAX_BLOCK_RANGE, CheckpointTracker
from condition_evaluator import DEFAULT_REMINDER_WINDOW_SECONDS, evaluate, evaluate_all
from config_manager import ConfigManager, get_config_manager, reset_config_manager_instance
from decision_engine import DEFAULT_GAS_MULTIPLIER_PERCENT, DEFAULT_RECEIPT_TIMEOUT, DecisionEngine, ProcessStats
from event_scanner import EventScanner, ScanResult
from logger_utils import setup_logging
from notifier import DiscordNotifier, Notifier, format_timestamp
from pool_registry import DEFAULT_PAGE_SIZE, PoolRegistry
from rpc_failover import EVMProviderPool
from web3_gateway import Web3ChainGateway

logger = logging.getLogger(__name__)


class PoolKeeper:
    def __init__(
        self,
        gateway: ChainGateway,
        notifier: Notifier,
        backoff: BackoffExecutor,
        poll_interval: float = 5.0,
        scan_interval: float = 300.0,
        reminder_window_seconds: int = DEFAULT_REMINDER_WINDOW_SECONDS,
        block_lag: int = DEFAULT_BLOCK_LAG,
        max_block_range: int = DEFAULT_MAX_BLOCK_RANGE,
        max_workers: int = 4,
        sweep_timeout: Optional[float] = None,
        pool_page_size: int = DEFAULT_PAGE_SIZE,
        gas_multiplier_percent: int = DEFAULT_GAS_MULTIPLIER_PERCENT,
        receipt_timeout: float = DEFAULT_RECEIPT_TIMEOUT,
        shutdown_timeout: float = 30.0,
        clock: Callable[[], float] = time.time,
    ):
        self.gateway = gateway
        self.notifier = notifier
        self.backoff = backoff
        self.poll_interval = poll_interval
        self.scan_interval = scan_interval
        self.reminder_window_seconds = reminder_window_seconds
        self.block_lag = block_lag
        self.max_block_range = max_block_range
        self.pool_page_size = pool_page_size
        self.shutdown_timeout = shutdown_timeout
        self._clock = clock

        self.registry = PoolRegistry(gateway, backoff, max_workers=max_workers, sweep_timeout=sweep_timeout, clock=clock)
        self.engine = DecisionEngine(
            gateway,
            notifier,
            backoff,
            gas_multiplier_percent=gas_multiplier_percent,
            receipt_timeout=receipt_timeout,
            clock=clock,
        )
        self.checkpoint: Optional[CheckpointTracker] = None
        self.scanner: Optional[EventScanner] = None

        self._stop = threading.Event()
        self._scan_guard = threading.Lock()
        self._sweep_guard = threading.Lock()
        self._closed = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Connect, place the checkpoint at the current tip and load existing pools

        Any failure here propagates: the keeper is useless without chain access.
        """
        logger.info("🤖 Starting pool keeper...")

        height = self.backoff.run(self.gateway.current_height, context="initial eth_blockNumber")
        self.checkpoint = CheckpointTracker(height, block_lag=self.block_lag, max_range=self.max_block_range)
        self.scanner = EventScanner(self.gateway, self.checkpoint, self.registry, self.backoff)

        logger.info("🔍 Loading existing pools...")
        self.registry.load_existing_pools(self.pool_page_size)
        logger.info(f"✅ Pool keeper started | monitoring {len(self.registry)} pool(s) from block {height}")

    def request_shutdown(self, signum=None, frame=None) -> None:
        """Stop scheduling new cycles; the cycle in progress is allowed to finish"""
        if signum is not None:
            logger.info(f"Received signal {signum}, shutting down gracefully...")
        self._stop.set()

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    def shutdown(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._stop.set()
        logger.info("🛑 Shutting down pool keeper...")

        closer = threading.Thread(target=self.registry.close, name="registry-close", daemon=True)
        closer.start()
        closer.join(self.shutdown_timeout)
        if closer.is_alive():
            logger.warning(f"Pool refreshes still running after {self.shutdown_timeout}s; abandoning them")

        self.gateway.close()
        logger.info("👋 Goodbye!")

    # ------------------------------------------------------------------
    # Cycles
    # ------------------------------------------------------------------

    def run_scan_cycle(self) -> Optional[ScanResult]:
        """Scan the next block window; returns None if skipped or failed"""
        if self.scanner is None:
            raise RuntimeError("PoolKeeper.start() must be called before running cycles")
        if not self._scan_guard.acquire(blocking=False):
            logger.debug("Event scan still running; skipping this tick")
            return None
        try:
            result = self.scanner.scan_once()
            if result.window:
                logger.debug(
                    f"Scanned blocks {result.window[0]}-{result.window[1]} | new pools: {result.pools_registered} "
                    f"| pool events: {result.pool_events}"
                )
            return result
        except Exception as e:
            logger.error(f"⚠️ Event scan failed: {e}")
            return None
        finally:
            self._scan_guard.release()

    def run_sweep_cycle(self) -> Optional[ProcessStats]:
        """Refresh every active pool, evaluate, and act; returns None if skipped or failed"""
        if not self._sweep_guard.acquire(blocking=False):
            logger.debug("Decision sweep still running; skipping this tick")
            return None
        try:
            logger.info("🔍 Running pool sweep...")
            if self.registry.pending_addresses():
                recovered = self.registry.retry_pending()
                if recovered:
                    logger.info(f"♻️ Recovered {recovered} pool(s) that failed to load earlier")
            self.registry.sweep_all()

            now = self._clock()
            conditions = evaluate_all(self.registry.snapshots(), now, self.reminder_window_seconds)
            if not conditions:
                logger.info("✓ No actions needed at this time")
                return ProcessStats()

            logger.info(f"🎯 Found {len(conditions)} actionable condition(s)")
            return self.engine.process(conditions, now)
        except Exception as e:
            logger.error(f"⚠️ Error during pool sweep: {e}")
            return None
        finally:
            self._sweep_guard.release()

    def run_once(self) -> bool:
        scan = self.run_scan_cycle()
        sweep = self.run_sweep_cycle()
        return scan is not None and sweep is not None

    def run_forever(self) -> None:
        """Poll events and sweep pools on their own cadences until shutdown is requested"""
        logger.info(
            f"🚀 Starting continuous monitoring (event poll: {self.poll_interval}s, "
            f"sweep: {self.scan_interval / 60:g} min)"
        )
        next_poll = next_sweep = time.monotonic()

        try:
            while not self._stop.is_set():
                if time.monotonic() >= next_poll:
                    self.run_scan_cycle()
                    next_poll = time.monotonic() + self.poll_interval

                if self._stop.is_set():
                    break

                if time.monotonic() >= next_sweep:
                    self.run_sweep_cycle()
                    next_sweep = time.monotonic() + self.scan_interval

                self._stop.wait(max(0.0, min(next_poll, next_sweep) - time.monotonic()))
        finally:
            self.shutdown()

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def show_status(self) -> None:
        """Log every cached pool and the condition it would produce right now"""
        now = self._clock()
        logger.info("=" * 60)
        logger.info(f"📊 {len(self.registry)} pool(s) | checkpoint block: "
                    f"{self.checkpoint.last_block_checked if self.checkpoint else 'n/a'}")
        for snapshot in self.registry.snapshots():
            condition = evaluate(snapshot, now, self.reminder_window_seconds)
            logger.info(
                f"  {snapshot.address} | round {snapshot.current_round} | "
                f"{len(snapshot.contributions_this_cycle)}/{snapshot.member_count} paid | "
                f"payout {format_timestamp(snapshot.next_payout_time)} | "
                f"{'active' if snapshot.is_active else 'completed'} | "
                f"next action: {condition.type.value if condition else 'none'}"
            )
        for address in self.registry.pending_addresses():
            logger.info(f"  {address} | not loaded yet (first refresh failed)")
        logger.info("=" * 60)


def build_keeper(
    config_manager: ConfigManager,
    disable_discord: bool = False,
    read_only: bool = False,
    poll_interval: Optional[float] = None,
    scan_interval_minutes: Optional[float] = None,
    reminder_window_hours: Optional[float] = None,
) -> PoolKeeper:
    """Wire a PoolKeeper from the active configuration profile"""
    provider_pool = EVMProviderPool(
        config_manager.get_rpc_urls(),
        request_timeout_s=config_manager.get_request_timeout(),
        preference_reset_minutes=config_manager.get_rpc_preference_reset_minutes(),
    )
    gateway = Web3ChainGateway(
        provider_pool,
        config_manager.get_factory_contract(),
        operator_private_key=None if read_only else config_manager.get_operator_private_key(),
        chain_id=config_manager.get_chain_id(),
    )

    webhooks = config_manager.get_discord_webhooks()
    explorer = config_manager.get_explorer_tx_url()
    if disable_discord:
        logger.warning("Discord notices disabled via --no-discord")
        notifier = Notifier(explorer)
    elif webhooks:
        notifier = DiscordNotifier(webhooks, explorer)
    else:
        logger.info("No Discord webhooks configured; notices go to the log only")
        notifier = Notifier(explorer)

    backoff = BackoffExecutor(RetryPolicy(
        max_attempts=config_manager.get_max_retries(),
        base_delay=config_manager.get_retry_base_delay(),
        max_delay=config_manager.get_retry_max_delay(),
        max_total_seconds=config_manager.get_max_retry_seconds(),
    ))

    if scan_interval_minutes is None:
        scan_interval_minutes = config_manager.get_scan_interval_minutes()
    if reminder_window_hours is None:
        reminder_window_hours = config_manager.get_reminder_window_hours()

    return PoolKeeper(
        gateway,
        notifier,
        backoff,
        poll_interval=poll_interval if poll_interval is not None else config_manager.get_poll_interval_seconds(),
        scan_interval=float(scan_interval_minutes) * 60,
        reminder_window_seconds=int(float(reminder_window_hours) * 3600),
        block_lag=config_manager.get_block_lag(),
        max_block_range=config_manager.get_max_block_range(),
        max_workers=config_manager.get_max_workers(),
        sweep_timeout=config_manager.get_sweep_timeout(),
        pool_page_size=config_manager.get_pool_page_size(),
        gas_multiplier_percent=config_manager.get_gas_multiplier_percent(),
        receipt_timeout=config_manager.get_receipt_timeout(),
        shutdown_timeout=config_manager.get_shutdown_timeout(),
    )


def _add_common_args(parser: argparse.ArgumentParser, subcommand: bool = True) -> None:
    # subcommand copies must not reset flags given before the subcommand name
    default = argparse.SUPPRESS if subcommand else None
    parser.add_argument('--verbose', '-v', action='store_true', default=default or False, help='Enable verbose logging')
    parser.add_argument('--no-color', action='store_true', default=default or False, help='Disable colored output')
    parser.add_argument('--config', type=str, default=default, help='Configuration profile to use (overrides ACTIVE_CONFIG)')


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description='Autonomous keeper for rotating-savings pools',
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    _add_common_args(parser, subcommand=False)
    subparsers = parser.add_subparsers(dest='command')

    start_parser = subparsers.add_parser('start', help='Start the keeper')
    _add_common_args(start_parser)
    start_parser.add_argument('--once', action='store_true', help='Run one event scan and one sweep, then exit')
    start_parser.add_argument('--poll-interval', type=float, help='Seconds between event scans')
    start_parser.add_argument('--scan-interval-minutes', type=float, help='Minutes between decision sweeps')
    start_parser.add_argument('--reminder-window-hours', type=float, help='Hours before payout that reminders start')
    start_parser.add_argument('--no-discord', action='store_true', help='Disable Discord notices')
    start_parser.add_argument('--log-dir', type=str, help='Also write error.log and combined.log to this directory')

    status_parser = subparsers.add_parser('status', help='Show every pool and its pending action without acting')
    _add_common_args(status_parser)

    config_parser = subparsers.add_parser('config', help='Configuration management')
    _add_common_args(config_parser)
    config_subparsers = config_parser.add_subparsers(dest='config_command')
    config_subparsers.add_parser('list', help='List available configurations')
    validate_parser = config_subparsers.add_parser('validate', help='Validate a configuration')
    validate_parser.add_argument('config_name', nargs='?', help='Configuration to validate (default: active config)')

    return parser.parse_args(argv)


def _run_config_command(args: argparse.Namespace, config_manager: ConfigManager) -> int:
    if args.config_command == 'list':
        active = config_manager.get_active_config_name()
        for name, display_name in config_manager.list_configs().items():
            marker = '*' if name == active else ' '
            logger.info(f"{marker} {name}: {display_name}")
        return 0

    if args.config_command == 'validate':
        result = config_manager.validate_config(args.config_name)
        for error in result['errors']:
            logger.error(f"❌ {error}")
        for warning in result['warnings']:
            logger.warning(f"⚠️  {warning}")
        if result['valid']:
            logger.info(f"✅ Configuration '{result['config_name']}' is valid")
            return 0
        return 1

    logger.error("❌ No config subcommand specified (use 'list' or 'validate')")
    return 1


def main(argv=None) -> None:
    args = parse_args(argv)

    setup_logging(
        verbose=args.verbose,
        no_color=getattr(args, 'no_color', False),
        log_dir=getattr(args, 'log_dir', None),
    )

    if args.command is None:
        logger.error("No command given; use 'start', 'status' or 'config'")
        sys.exit(1)

    try:
        if args.config:
            config_manager = reset_config_manager_instance(args.config)
            logger.info(f"🔧 Using configuration: {args.config}")
        else:
            config_manager = get_config_manager()
    except Exception as e:
        logger.error(f"❌ Failed to load configuration: {e}")
        sys.exit(1)

    if args.command == 'config':
        sys.exit(_run_config_command(args, config_manager))

    read_only = args.command == 'status'
    validation = config_manager.validate_config()
    errors = validation['errors']
    if read_only:
        errors = [error for error in errors if 'operator_private_key' not in error]
    if errors:
        for error in errors:
            logger.error(f"Configuration error: {error}")
        sys.exit(1)

    try:
        keeper = build_keeper(
            config_manager,
            disable_discord=getattr(args, 'no_discord', False),
            read_only=read_only,
            poll_interval=getattr(args, 'poll_interval', None),
            scan_interval_minutes=getattr(args, 'scan_interval_minutes', None),
            reminder_window_hours=getattr(args, 'reminder_window_hours', None),
        )
        logger.info(f"📋 Active Config: {config_manager.get_display_name()}")
        logger.info(f"📍 Factory: {config_manager.get_factory_contract()}")
        keeper.start()
    except Exception as e:
        logger.error(f"💥 Fatal error starting pool keeper: {e}")
        sys.exit(1)

    if args.command == 'status':
        keeper.show_status()
        keeper.shutdown()
        return

    if args.once:
        success = keeper.run_once()
        keeper.shutdown()
        if success:
            logger.info("✅ Single keeper cycle completed successfully")
            sys.exit(0)
        logger.error("❌ Single keeper cycle failed")
        sys.exit(1)

    signal.signal(signal.SIGINT, keeper.request_shutdown)
    signal.signal(signal.SIGTERM, keeper.request_shutdown)
    keeper.run_forever()


if __name__ == "__main__":
    main()
