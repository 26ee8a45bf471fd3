#!/usr/bin/env python3
"""
Decision Engine

Executes actionable conditions produced by the evaluator, at most once per
action type, pool and UTC day.

Dispatch:
- PAYOUT_READY  -> estimate gas, add 20%, sign, send distributePot(), wait for one confirmation, notify
- REMINDER_DUE  -> one reminder per missing contributor (no on-chain call)
- POOL_STALLED  -> stall alert with hours overdue and missing members (no on-chain call)

An action is recorded in the dedup ledger only after its dispatch completed,
either successfully or with a recognised on-chain failure (the call would
revert, or the mined transaction reverted). Anything else is logged and left
unrecorded so the next sweep can try again. One failing condition never stops
the rest of the batch.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, List, Optional

from backoff_executor import BackoffExecutor, GasEstimationError, NonRetryableError
from chain_gateway import ChainGateway
from dedup_ledger import DedupLedger, make_action_key
from notifier import Notifier
from pool_types import ActionableCondition, ConditionType

logger = logging.getLogger(__name__)

DEFAULT_GAS_MULTIPLIER_PERCENT = 120
DEFAULT_RECEIPT_TIMEOUT = 120


@dataclass
class ProcessStats:
    dispatched: int = 0
    skipped: int = 0
    failed: int = 0


class DecisionEngine:
    def __init__(
        self,
        gateway: ChainGateway,
        notifier: Notifier,
        backoff: BackoffExecutor,
        ledger: Optional[DedupLedger] = None,
        gas_multiplier_percent: int = DEFAULT_GAS_MULTIPLIER_PERCENT,
        receipt_timeout: float = DEFAULT_RECEIPT_TIMEOUT,
        clock: Callable[[], float] = time.time,
    ):
        self.gateway = gateway
        self.notifier = notifier
        self.backoff = backoff
        self.ledger = ledger if ledger is not None else DedupLedger()
        self.gas_multiplier_percent = gas_multiplier_percent
        self.receipt_timeout = receipt_timeout
        self._clock = clock

    def process(self, conditions: List[ActionableCondition], now: Optional[float] = None) -> ProcessStats:
        stats = ProcessStats()
        if not conditions:
            return stats

        now = self._clock() if now is None else now
        self.ledger.purge_expired(now)

        logger.info(f"🤔 Processing {len(conditions)} actionable condition(s)...")

        for condition in conditions:
            key = make_action_key(condition.type.value, condition.pool_address, now)
            if self.ledger.contains(key, now):
                logger.debug(f"Skipping {key}: already handled today")
                stats.skipped += 1
                continue

            try:
                self._dispatch(condition)
            except NonRetryableError as e:
                stats.failed += 1
                logger.error(
                    f"❌ {condition.type.value} for {condition.pool_address} needs operator attention ({e.code}): {e}"
                )
                self._notify(
                    "log_warning",
                    f"{condition.type.value} blocked: {e.code}",
                    {"pool": condition.pool_address, "error": str(e)},
                )
                continue
            except Exception as e:
                stats.failed += 1
                logger.error(f"Failed to process action {condition.type.value} for {condition.pool_address}: {e}")
                continue

            self.ledger.mark(key, now)
            stats.dispatched += 1

        logger.info(
            f"Decision pass complete | dispatched: {stats.dispatched} | "
            f"already handled: {stats.skipped} | failed: {stats.failed}"
        )
        return stats

    def _dispatch(self, condition: ActionableCondition) -> None:
        if condition.type == ConditionType.PAYOUT_READY:
            self._trigger_payout(condition)
        elif condition.type == ConditionType.REMINDER_DUE:
            self._send_reminders(condition)
        elif condition.type == ConditionType.POOL_STALLED:
            self._alert_stalled(condition)
        else:
            raise ValueError(f"Unknown condition type: {condition.type}")

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------

    def _trigger_payout(self, condition: ActionableCondition) -> None:
        pool = condition.pool_address
        logger.info(f"⚡ Attempting to trigger payout for pool: {pool}")

        try:
            estimated_gas = self.backoff.run(
                lambda: self.gateway.estimate_payout_gas(pool), context=f"estimate distributePot {pool}"
            )
        except GasEstimationError as e:
            logger.warning(f"Payout for {pool} would revert; not submitting. Revert reason: {e.reason or e}")
            return

        gas_limit = estimated_gas * self.gas_multiplier_percent // 100
        logger.info(f"💡 Estimated gas: {estimated_gas} (limit with buffer: {gas_limit})")

        signed = self.backoff.run(lambda: self.gateway.sign_payout(pool, gas_limit), context=f"sign distributePot {pool}")
        tx_hash = self.backoff.run(lambda: self.gateway.send_transaction(signed), context=f"send distributePot {pool}")
        logger.info(f"📤 Transaction sent: {tx_hash} (nonce {signed.nonce}); waiting for confirmation...")

        receipt = self.backoff.run(
            lambda: self.gateway.wait_for_receipt(tx_hash, self.receipt_timeout),
            context=f"receipt {tx_hash}",
        )

        if not receipt.succeeded:
            logger.warning(f"❌ Payout transaction reverted on-chain | pool={pool} | tx={receipt.tx_hash}")
            return

        logger.info(
            f"✅ Payout triggered successfully | pool={pool} | tx={receipt.tx_hash} | "
            f"block={receipt.block_number} | gas used={receipt.gas_used}"
        )
        amount = receipt.amount if receipt.amount is not None else condition.details.get("pot_amount")
        self._notify("notify_payout", pool, receipt.recipient, amount, receipt.tx_hash)

    def _send_reminders(self, condition: ActionableCondition) -> None:
        pool = condition.pool_address
        missing = condition.details.get("missing_contributors", [])
        amount = condition.details.get("contribution_amount", 0)
        due_time = condition.details.get("next_payout_time", 0)

        logger.info(f"🔔 Sending reminders for pool: {pool}")
        for member in missing:
            self._notify("send_reminder", member, pool, amount, due_time)
        logger.info(f"✅ Sent {len(missing)} reminder(s)")

    def _alert_stalled(self, condition: ActionableCondition) -> None:
        self._notify(
            "alert_stalled",
            condition.pool_address,
            condition.details.get("hours_overdue", 0.0),
            condition.details.get("missing_contributors", []),
        )

    def _notify(self, method: str, *args) -> None:
        try:
            getattr(self.notifier, method)(*args)
        except Exception as e:
            logger.warning(f"Notifier {method} failed: {e}")
