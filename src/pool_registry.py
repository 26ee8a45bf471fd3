#!/usr/bin/env python3
"""
Pool Registry & State Cache

Keeps the set of known pool addresses and the latest PoolSnapshot for each.

Features:
- register_pool() is idempotent; a new pool is only added once its first refresh succeeds
- pools whose first refresh failed during enumeration are retried by retry_pending()
- refresh() reads the full pool state and swaps the cached snapshot in one step
- a read that started before the cached snapshot's read never replaces it
- sweep_all() refreshes every active pool with bounded concurrency
- one broken pool never aborts the refresh of the others; its last snapshot stays cached
- a pool whose previous refresh is still running is not submitted again
- startup enumeration through the factory's paginated getPools(offset, limit)
"""

import itertools
import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field, replace
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

from backoff_executor import BackoffExecutor
from chain_gateway import ChainGateway
from pool_types import PoolSnapshot

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 50


@dataclass
class RefreshStats:
    refreshed: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    timed_out: List[str] = field(default_factory=list)
    still_running: List[str] = field(default_factory=list)
    skipped_inactive: int = 0

    @property
    def total(self) -> int:
        return len(self.refreshed) + len(self.failed) + len(self.timed_out)


class PoolRegistry:
    def __init__(
        self,
        gateway: ChainGateway,
        backoff: BackoffExecutor,
        max_workers: int = 4,
        sweep_timeout: Optional[float] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.gateway = gateway
        self.backoff = backoff
        self.sweep_timeout = sweep_timeout
        self._clock = clock
        self._snapshots: Dict[str, PoolSnapshot] = {}
        # read sequence number of the cached snapshot, per pool
        self._read_seq: Dict[str, int] = {}
        self._seq = itertools.count(1)
        self._pending: Set[str] = set()
        self._in_flight: Dict[str, Future] = {}
        self._lock = threading.Lock()
        self._executor = ThreadPoolExecutor(max_workers=max(1, max_workers), thread_name_prefix="pool-refresh")

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    def __contains__(self, address: str) -> bool:
        with self._lock:
            return address in self._snapshots

    def __len__(self) -> int:
        with self._lock:
            return len(self._snapshots)

    def addresses(self) -> List[str]:
        with self._lock:
            return list(self._snapshots.keys())

    def get(self, address: str) -> Optional[PoolSnapshot]:
        with self._lock:
            return self._snapshots.get(address)

    def snapshots(self) -> List[PoolSnapshot]:
        with self._lock:
            return list(self._snapshots.values())

    def pending_addresses(self) -> List[str]:
        """Pools the factory reported whose first refresh has not succeeded yet"""
        with self._lock:
            return sorted(self._pending)

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register_pool(self, address: str) -> bool:
        """Start tracking a pool; returns False if it was already known

        Raises whatever the initial refresh raised, leaving the pool unregistered.
        """
        if address in self:
            return False

        snapshot = self.refresh(address)
        with self._lock:
            self._pending.discard(address)
        logger.info(
            f"📊 Added pool to monitoring: {address} "
            f"(round {snapshot.current_round}, {snapshot.member_count} members, active={snapshot.is_active})"
        )
        return True

    def load_existing_pools(self, page_size: int = DEFAULT_PAGE_SIZE) -> int:
        """Register every pool the factory already knows about; returns how many were added

        Pools that fail their first refresh are kept as pending for retry_pending().
        """
        page_size = max(1, int(page_size))
        count = self.backoff.run(self.gateway.get_pool_count, context="factory getPoolCount")
        logger.info(f"📥 Factory reports {count} existing pool(s)")

        added = 0
        for offset in range(0, count, page_size):
            page = self.backoff.run(
                lambda offset=offset: self.gateway.list_pools(offset, page_size),
                context=f"factory getPools({offset}, {page_size})",
            )
            for address in page:
                if self._try_register(address):
                    added += 1

        pending = len(self.pending_addresses())
        logger.info(
            f"✅ Loaded {added} pool(s); monitoring {len(self)} in total"
            + (f" | {pending} pending retry" if pending else "")
        )
        return added

    def retry_pending(self) -> int:
        """Retry registration of pools whose first refresh failed; returns how many were added"""
        added = 0
        for address in self.pending_addresses():
            if self._try_register(address):
                added += 1
        return added

    def _try_register(self, address: str) -> bool:
        try:
            return self.register_pool(address)
        except Exception as e:
            with self._lock:
                self._pending.add(address)
            logger.error(f"Failed to load pool {address}, will retry on the next sweep: {e}")
            return False

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------

    def refresh(self, address: str) -> PoolSnapshot:
        """Re-read a pool from the chain and replace its cached snapshot

        If a read that started later has already been cached, that snapshot is
        kept and returned instead.
        """
        seq, fresh = self.backoff.run(lambda: self._read_stamped(address), context=f"refresh pool {address}")

        with self._lock:
            cached_seq = self._read_seq.get(address, 0)
            if seq < cached_seq:
                logger.debug(f"Discarding outdated read of pool {address} (read #{seq} < cached #{cached_seq})")
                return self._snapshots[address]
            snapshot = self._reconcile(self._snapshots.get(address), fresh)
            self._snapshots[address] = snapshot
            self._read_seq[address] = seq
        return snapshot

    def _read_stamped(self, address: str) -> Tuple[int, PoolSnapshot]:
        with self._lock:
            seq = next(self._seq)
        return seq, self._read_snapshot(address)

    def _read_snapshot(self, address: str) -> PoolSnapshot:
        info = self.gateway.get_pool_info(address)
        max_members = self.gateway.get_max_members(address)
        members = tuple(self.gateway.get_members(address))

        # contributions are always read for the current round only
        contributions: Dict[str, int] = {}
        payouts: Dict[str, bool] = {}
        for member in members:
            if self.gateway.has_contributed(address, member, info.current_round):
                contributions[member] = info.contribution_amount
            payouts[member] = self.gateway.has_received_payout(address, member)

        return PoolSnapshot(
            address=address,
            current_round=info.current_round,
            next_payout_time=info.next_payout_time,
            contribution_amount=info.contribution_amount,
            members=members,
            contributions_this_cycle=contributions,
            has_received_payout=payouts,
            is_active=info.is_active,
            last_checked=self._clock(),
            cycle_duration=info.cycle_duration,
            max_members=max_members,
            token=info.token,
        )

    @staticmethod
    def _reconcile(previous: Optional[PoolSnapshot], current: PoolSnapshot) -> PoolSnapshot:
        if previous is None:
            return current

        if not previous.is_active and current.is_active:
            logger.warning(f"Pool {current.address} reported active again after completing; keeping it inactive")
            current = replace(current, is_active=False)

        if current.member_count < previous.member_count:
            logger.warning(
                f"Pool {current.address} member list shrank from {previous.member_count} to {current.member_count}"
            )

        if current.is_active and current.next_payout_time < previous.next_payout_time:
            logger.warning(
                f"Pool {current.address} next payout time moved backwards "
                f"({previous.next_payout_time} -> {current.next_payout_time})"
            )

        for member, received in previous.has_received_payout.items():
            if received and not current.has_received_payout.get(member, False):
                logger.warning(f"Pool {current.address} payout flag for {member} reverted to false")

        return current

    def refresh_many(self, addresses: Iterable[str]) -> RefreshStats:
        """Refresh the given pools concurrently, isolating per-pool failures"""
        stats = RefreshStats()
        futures: Dict[Future, str] = {}
        for address in addresses:
            future = self._submit(address)
            if future is None:
                stats.still_running.append(address)
            else:
                futures[future] = address

        if stats.still_running:
            logger.warning(
                f"{len(stats.still_running)} pool refresh(es) from an earlier pass still running; "
                f"not resubmitting: {', '.join(stats.still_running)}"
            )
        if not futures:
            return stats

        done, not_done = wait(futures, timeout=self.sweep_timeout)

        for future in done:
            address = futures[future]
            try:
                future.result()
                stats.refreshed.append(address)
            except Exception as e:
                stats.failed.append(address)
                previous = self.get(address)
                age = f"{self._clock() - previous.last_checked:.0f}s old" if previous else "none cached"
                logger.warning(f"Failed to refresh pool {address}, keeping last snapshot ({age}): {e}")

        for future in not_done:
            address = futures[future]
            future.cancel()
            stats.timed_out.append(address)
            logger.warning(f"Refresh of pool {address} did not finish within {self.sweep_timeout}s")

        return stats

    def _submit(self, address: str) -> Optional[Future]:
        """Submit a refresh unless one for the same pool is still running"""
        with self._lock:
            running = self._in_flight.get(address)
            if running is not None and not running.done():
                return None
            future = self._executor.submit(self.refresh, address)
            self._in_flight[address] = future
        future.add_done_callback(lambda f, address=address: self._forget(address, f))
        return future

    def _forget(self, address: str, future: Future) -> None:
        with self._lock:
            if self._in_flight.get(address) is future:
                del self._in_flight[address]

    def sweep_all(self) -> RefreshStats:
        """Refresh every active pool; completed pools are terminal and skipped"""
        snapshots = self.snapshots()
        active = [snapshot.address for snapshot in snapshots if snapshot.is_active]

        stats = self.refresh_many(active)
        stats.skipped_inactive = len(snapshots) - len(active)

        logger.info(
            f"🔄 Sweep refreshed {len(stats.refreshed)}/{len(active)} active pool(s) "
            f"| failed: {len(stats.failed)} | timed out: {len(stats.timed_out)} "
            f"| still running: {len(stats.still_running)} | inactive: {stats.skipped_inactive}"
        )
        return stats

    def close(self, wait_for_refreshes: bool = True) -> None:
        self._executor.shutdown(wait=wait_for_refreshes, cancel_futures=True)
