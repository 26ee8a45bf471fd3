#!/usr/bin/env python3
"""
Event Scanner

Polls the chain block window by block window:
1. ask the checkpoint tracker for the next window below the lagged tip
2. read factory PoolCreated events and register every new pool
3. read membership/contribution/payout events of all registered pools
4. refresh the cached snapshot of every pool touched by an event
5. commit the window

If steps 1-3 raise, the window is not committed and is scanned again in full
on the next cycle. Log queries are range-pure, so a retried window yields the
same events and registration is idempotent.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional, Tuple

from backoff_executor import BackoffExecutor
from chain_gateway import ChainGateway
from checkpoint_tracker import CheckpointTracker
from notifier import format_amount
from pool_registry import PoolRegistry
from pool_types import PoolEvent

logger = logging.getLogger(__name__)


@dataclass
class ScanResult:
    window: Optional[Tuple[int, int]] = None
    pools_created: int = 0
    pools_registered: int = 0
    pool_events: int = 0
    pools_refreshed: int = 0


class EventScanner:
    def __init__(
        self,
        gateway: ChainGateway,
        checkpoint: CheckpointTracker,
        registry: PoolRegistry,
        backoff: BackoffExecutor,
    ):
        self.gateway = gateway
        self.checkpoint = checkpoint
        self.registry = registry
        self.backoff = backoff

    def scan_once(self) -> ScanResult:
        """Process the next due block window, if any"""
        height = self.backoff.run(self.gateway.current_height, context="eth_blockNumber")
        window = self.checkpoint.next_window(height)
        if window is None:
            return ScanResult()

        from_block, to_block = window
        try:
            result = self._process_window(from_block, to_block)
        except Exception as e:
            logger.error(
                f"Failed processing blocks {from_block}-{to_block}; "
                f"checkpoint stays at {self.checkpoint.last_block_checked}: {e}"
            )
            raise

        self.checkpoint.commit(to_block)
        return result

    def _process_window(self, from_block: int, to_block: int) -> ScanResult:
        logger.debug(f"Scanning blocks {from_block} → {to_block}")
        result = ScanResult(window=(from_block, to_block))

        created = self.backoff.run(
            lambda: self.gateway.get_pool_created_events(from_block, to_block),
            context=f"PoolCreated logs {from_block}-{to_block}",
        )
        result.pools_created = len(created)
        for event in created:
            logger.info(
                f"🆕 New pool created! pool={event.pool} | creator={event.creator} | "
                f"tx={event.tx_hash} | block={event.block_number}"
            )
            if self.registry.register_pool(event.pool):
                result.pools_registered += 1

        pools = self.registry.addresses()
        if not pools:
            return result

        events = self.backoff.run(
            lambda: self.gateway.get_pool_events(pools, from_block, to_block),
            context=f"pool logs {from_block}-{to_block}",
        )
        result.pool_events = len(events)

        touched: List[str] = []
        for event in events:
            self._log_pool_event(event)
            if event.pool not in touched:
                touched.append(event.pool)

        if touched:
            stats = self.registry.refresh_many(touched)
            result.pools_refreshed = len(stats.refreshed)

        return result

    @staticmethod
    def _log_pool_event(event: PoolEvent) -> None:
        args = event.args
        if event.name == "MemberJoined":
            logger.info(f"👥 Member joined pool | pool={event.pool} | member={args.get('member')} | tx={event.tx_hash}")
        elif event.name == "ContributionMade":
            logger.info(
                f"💰 Contribution made | pool={event.pool} | member={args.get('member')} | "
                f"amount={format_amount(args.get('amount'))} | round={args.get('round')} | tx={event.tx_hash}"
            )
        elif event.name == "PayoutDistributed":
            logger.info(
                f"✅ Payout distributed | pool={event.pool} | recipient={args.get('recipient')} | "
                f"amount={format_amount(args.get('amount'))} | round={args.get('round')} | tx={event.tx_hash}"
            )
        else:
            logger.debug(f"Ignoring {event.name} event from {event.pool}")
