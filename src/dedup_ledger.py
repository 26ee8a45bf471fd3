#!/usr/bin/env python3
"""
Dedup Ledger

Remembers which actions were already carried out so that the same action for
the same pool runs at most once per UTC calendar day. Entries carry their own
expiry timestamp and are purged lazily on lookup.
"""

import logging
import threading
from datetime import datetime
from typing import Dict, Optional

import pytz

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 24 * 3600


def make_action_key(action_type: str, pool_address: str, now: float) -> str:
    """Build the `type|pool|YYYY-MM-DD` key for an action at time `now` (UTC day)"""
    day = datetime.fromtimestamp(now, tz=pytz.utc).strftime("%Y-%m-%d")
    return f"{action_type}|{pool_address}|{day}"


class DedupLedger:
    def __init__(self, ttl_seconds: float = DEFAULT_TTL_SECONDS):
        self.ttl_seconds = ttl_seconds
        self._expiry_by_key: Dict[str, float] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._expiry_by_key)

    def contains(self, key: str, now: float) -> bool:
        with self._lock:
            expires_at = self._expiry_by_key.get(key)
            if expires_at is None:
                return False
            if expires_at <= now:
                del self._expiry_by_key[key]
                return False
            return True

    def mark(self, key: str, now: float, ttl_seconds: Optional[float] = None) -> None:
        ttl = self.ttl_seconds if ttl_seconds is None else ttl_seconds
        with self._lock:
            self._expiry_by_key[key] = now + ttl

    def purge_expired(self, now: float) -> int:
        with self._lock:
            expired = [key for key, expires_at in self._expiry_by_key.items() if expires_at <= now]
            for key in expired:
                del self._expiry_by_key[key]
        if expired:
            logger.debug(f"Purged {len(expired)} expired dedup entr{'y' if len(expired) == 1 else 'ies'}")
        return len(expired)
