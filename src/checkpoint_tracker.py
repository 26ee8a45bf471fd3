#!/usr/bin/env python3
"""
Checkpoint Tracker

Owns the "last confirmed block processed" cursor for the event scan loop and
hands out the next block window to scan.

Window rules:
- from_block = last_block_checked + 1
- to_block   = min(current_height - block_lag, from_block + max_range - 1)
- an empty window (to_block < from_block) means nothing is due yet

The lag keeps queries a few blocks behind the tip, since some providers
report a height before their log index can serve it. The range cap bounds the
cost of a catch-up scan after downtime.

The cursor only moves through commit(); a window that failed part-way is
simply handed out again on the next call.
"""

import logging
import threading
from typing import Optional, Tuple

logger = logging.getLogger(__name__)

DEFAULT_BLOCK_LAG = 5
DEFAULT_MAX_BLOCK_RANGE = 100


class CheckpointTracker:
    def __init__(self, start_block: int, block_lag: int = DEFAULT_BLOCK_LAG, max_range: int = DEFAULT_MAX_BLOCK_RANGE):
        """Initialize the tracker

        Args:
            start_block: Block treated as already processed (normally the chain
                height at startup, so history before the agent started is skipped)
            block_lag: Blocks to stay behind the reported tip
            max_range: Maximum number of blocks in one window
        """
        if start_block < 0:
            raise ValueError("start_block must be non-negative")
        if block_lag < 0:
            raise ValueError("block_lag must be non-negative")
        if max_range < 1:
            raise ValueError("max_range must be at least 1")

        self.block_lag = block_lag
        self.max_range = max_range
        self._last_block_checked = start_block
        self._lock = threading.Lock()

        logger.info(f"Checkpoint initialized at block {start_block} (lag={block_lag}, max range={max_range})")

    @property
    def last_block_checked(self) -> int:
        with self._lock:
            return self._last_block_checked

    def next_window(self, current_height: int) -> Optional[Tuple[int, int]]:
        """Return the inclusive (from_block, to_block) window to scan, or None if nothing is due"""
        with self._lock:
            from_block = self._last_block_checked + 1
            to_block = min(current_height - self.block_lag, from_block + self.max_range - 1)

        if to_block < from_block:
            logger.debug(f"No new blocks to process (from_block={from_block}, safe tip={current_height - self.block_lag})")
            return None
        return from_block, to_block

    def commit(self, to_block: int) -> None:
        """Mark everything up to and including `to_block` as processed"""
        with self._lock:
            if to_block <= self._last_block_checked:
                logger.debug(f"Ignoring stale commit of block {to_block} (checkpoint at {self._last_block_checked})")
                return
            if to_block > self._last_block_checked + self.max_range:
                raise ValueError(
                    f"Commit of block {to_block} skips past the window starting at {self._last_block_checked + 1}"
                )
            self._last_block_checked = to_block
        logger.debug(f"Checkpoint advanced to block {to_block}")
