#!/usr/bin/env python3
"""
Backoff Executor

Wraps a fallible remote call with bounded exponential retry. Used underneath
every chain read and write so that transient node errors never reach the
monitoring loop, while errors that no amount of retrying can fix are surfaced
on the first attempt.

Retry schedule (defaults):
- 3 attempts in total
- delay 1s, then 2s, then 4s ... capped at 10s
- optional cap on the total time spent in one run() call

Non-retryable classes:
- NONCE_EXPIRED: the operator's transaction sequence number was already used
- INSUFFICIENT_FUNDS: the operator cannot pay for gas
- UNPREDICTABLE_GAS_LIMIT: gas estimation failed, the call would revert
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

NONCE_EXPIRED = "NONCE_EXPIRED"
INSUFFICIENT_FUNDS = "INSUFFICIENT_FUNDS"
UNPREDICTABLE_GAS_LIMIT = "UNPREDICTABLE_GAS_LIMIT"

NON_RETRYABLE_CODES = frozenset({NONCE_EXPIRED, INSUFFICIENT_FUNDS, UNPREDICTABLE_GAS_LIMIT})

# raw node error messages that map onto the non-retryable classes
_MESSAGE_PATTERNS = (
    ("nonce too low", NONCE_EXPIRED),
    ("nonce has already been used", NONCE_EXPIRED),
    ("nonce expired", NONCE_EXPIRED),
    ("insufficient funds", INSUFFICIENT_FUNDS),
    ("gas required exceeds allowance", UNPREDICTABLE_GAS_LIMIT),
    ("always failing transaction", UNPREDICTABLE_GAS_LIMIT),
)


class NonRetryableError(Exception):
    """An error that retrying cannot fix; the operator or the chain must change first"""
    code = "NON_RETRYABLE"

    def __init__(self, message: str, reason: Optional[str] = None):
        super().__init__(message)
        self.reason = reason


class NonceExpiredError(NonRetryableError):
    code = NONCE_EXPIRED


class InsufficientFundsError(NonRetryableError):
    code = INSUFFICIENT_FUNDS


class GasEstimationError(NonRetryableError):
    code = UNPREDICTABLE_GAS_LIMIT


class RetryTimeoutError(Exception):
    """The total retry budget for one call ran out before an attempt succeeded"""


_ERROR_BY_CODE = {
    NONCE_EXPIRED: NonceExpiredError,
    INSUFFICIENT_FUNDS: InsufficientFundsError,
    UNPREDICTABLE_GAS_LIMIT: GasEstimationError,
}


def classify_error(exc: BaseException) -> Optional[str]:
    """Return the non-retryable code for an error, or None if it may be retried"""
    if isinstance(exc, NonRetryableError):
        return exc.code

    code = getattr(exc, "code", None)
    if isinstance(code, str) and code in NON_RETRYABLE_CODES:
        return code

    message = str(exc).lower()
    for pattern, pattern_code in _MESSAGE_PATTERNS:
        if pattern in message:
            return pattern_code
    return None


def as_non_retryable(exc: BaseException, code: str) -> NonRetryableError:
    if isinstance(exc, NonRetryableError):
        return exc
    error_cls = _ERROR_BY_CODE.get(code, NonRetryableError)
    return error_cls(str(exc))


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 1.0
    factor: float = 2.0
    max_delay: float = 10.0
    max_total_seconds: Optional[float] = 60.0

    def delay_for(self, attempt: int) -> float:
        """Delay to wait after failed attempt number `attempt` (1-based)"""
        return min(self.base_delay * (self.factor ** (attempt - 1)), self.max_delay)


class BackoffExecutor:
    def __init__(
        self,
        policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], Any] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.policy = policy or RetryPolicy()
        if self.policy.max_attempts < 1:
            raise ValueError("RetryPolicy.max_attempts must be at least 1")
        self._sleep = sleep
        self._clock = clock

    def run(self, operation: Callable[[], T], context: str = "operation") -> T:
        """Call `operation` until it succeeds, a non-retryable error occurs, or attempts run out

        Args:
            operation: Zero-argument callable performing the remote call
            context: Human readable label used in log lines

        Raises:
            NonRetryableError: on the first non-retryable failure
            RetryTimeoutError: when the next delay would exceed the total budget
            Exception: the last error once all attempts are exhausted
        """
        policy = self.policy
        started = self._clock()
        last_error: Optional[Exception] = None

        for attempt in range(1, policy.max_attempts + 1):
            try:
                return operation()
            except Exception as exc:
                code = classify_error(exc)
                if code is not None:
                    logger.warning(f"Non-retryable error in {context} ({code}): {exc}")
                    error = as_non_retryable(exc, code)
                    if error is exc:
                        raise
                    raise error from exc

                last_error = exc
                if attempt >= policy.max_attempts:
                    break

                delay = policy.delay_for(attempt)
                elapsed = self._clock() - started
                if policy.max_total_seconds is not None and elapsed + delay > policy.max_total_seconds:
                    logger.error(
                        f"Retry budget of {policy.max_total_seconds}s exhausted for {context} "
                        f"after {attempt} attempt(s): {exc}"
                    )
                    raise RetryTimeoutError(f"{context} did not succeed within {policy.max_total_seconds}s") from exc

                logger.warning(
                    f"Attempt {attempt}/{policy.max_attempts} failed for {context}: {exc} "
                    f"(retrying in {delay:.1f}s)"
                )
                self._sleep(delay)

        logger.error(f"All {policy.max_attempts} attempts failed for {context}: {last_error}")
        raise last_error
