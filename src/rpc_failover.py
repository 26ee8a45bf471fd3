#!/usr/bin/env python3
import logging
import threading
import time
from typing import Any, Callable, Dict, List, Optional, TypeVar

from web3 import Web3

logger = logging.getLogger(__name__)

T = TypeVar("T")


class EVMProviderPool:
    """Ordered set of RPC endpoints with a sticky preferred endpoint.

    Calls go to the endpoint that last worked; when it fails the pool scans the
    list from the top and sticks to the first endpoint that answers. The
    preference is cleared periodically so a recovered primary is used again.
    """

    def __init__(self, urls: List[str], request_timeout_s: int = 15, preference_reset_minutes: int = 60):
        if not urls:
            raise ValueError("EVMProviderPool requires at least one URL")
        self.urls = urls
        self.request_timeout_s = request_timeout_s
        self.preference_reset_sec = max(1, int(preference_reset_minutes) * 60)
        self._last_reset_ts = 0.0
        self._sticky_index: Optional[int] = None
        self._clients: Dict[int, Web3] = {}
        self._lock = threading.Lock()

    def _should_reset_preferences(self) -> bool:
        now = time.time()
        if self._last_reset_ts == 0.0:
            self._last_reset_ts = now
            return False
        return (now - self._last_reset_ts) >= self.preference_reset_sec

    def _build_web3(self, index: int) -> Web3:
        with self._lock:
            client = self._clients.get(index)
            if client is None:
                provider = Web3.HTTPProvider(
                    self.urls[index], request_kwargs={"timeout": self.request_timeout_s}
                )
                client = Web3(provider)
                self._clients[index] = client
            return client

    def _preferred_order(self) -> List[int]:
        with self._lock:
            if self._should_reset_preferences():
                self._last_reset_ts = time.time()
                self._sticky_index = None
            sticky = self._sticky_index

        order = list(range(len(self.urls)))
        if sticky is not None:
            order.remove(sticky)
            order.insert(0, sticky)
        return order

    def with_web3(self, fn: Callable[[Web3], T]) -> T:
        """Run `fn` against the preferred endpoint, falling back through the list

        Errors that come from the node itself (reverts, nonce and balance
        rejections) are not endpoint problems and are re-raised at once.
        """
        last_error: Optional[Exception] = None

        for i in self._preferred_order():
            try:
                result = fn(self._build_web3(i))
            except (ConnectionError, TimeoutError, OSError) as e:
                last_error = e
                logger.debug(f"RPC endpoint #{i} failed: {e}")
                with self._lock:
                    if self._sticky_index == i:
                        self._sticky_index = None
                continue
            with self._lock:
                self._sticky_index = i
            return result

        raise ConnectionError(f"All EVM RPC endpoints failed: {last_error}")

    def close(self) -> None:
        with self._lock:
            self._clients.clear()
            self._sticky_index = None
