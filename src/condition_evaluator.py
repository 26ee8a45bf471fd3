#!/usr/bin/env python3
"""
Condition Evaluator

Classifies a pool snapshot at a point in time into at most one actionable
condition. Rules are checked in order and the first match wins:

1. PAYOUT_READY  - payout time reached and every member has contributed
2. REMINDER_DUE  - inside the reminder window before the payout time, with members still to pay
3. POOL_STALLED  - payout time passed with members still to pay

Inactive pools never produce a condition. The evaluator does no I/O.
"""

from typing import Iterable, List, Optional

from pool_types import ActionableCondition, ConditionType, PoolSnapshot

DEFAULT_REMINDER_WINDOW_SECONDS = 24 * 3600


def missing_contributors(snapshot: PoolSnapshot) -> List[str]:
    """Members (in member order) who have not paid into the current round"""
    return [member for member in snapshot.members if not snapshot.has_contributed(member)]


def evaluate(
    snapshot: PoolSnapshot,
    now: float,
    reminder_window_seconds: int = DEFAULT_REMINDER_WINDOW_SECONDS,
) -> Optional[ActionableCondition]:
    if not snapshot.is_active:
        return None

    missing = missing_contributors(snapshot)
    payout_time = snapshot.next_payout_time

    if now >= payout_time and not missing:
        return ActionableCondition(
            pool_address=snapshot.address,
            type=ConditionType.PAYOUT_READY,
            details={
                "pot_amount": snapshot.contribution_amount * snapshot.member_count,
                "round": snapshot.current_round,
            },
        )

    reminder_time = payout_time - reminder_window_seconds
    if reminder_time <= now < payout_time and missing:
        return ActionableCondition(
            pool_address=snapshot.address,
            type=ConditionType.REMINDER_DUE,
            details={
                "missing_contributors": missing,
                "contribution_amount": snapshot.contribution_amount,
                "next_payout_time": payout_time,
                "round": snapshot.current_round,
            },
        )

    if now > payout_time and missing:
        return ActionableCondition(
            pool_address=snapshot.address,
            type=ConditionType.POOL_STALLED,
            details={
                "hours_overdue": (now - payout_time) / 3600,
                "missing_contributors": missing,
                "round": snapshot.current_round,
            },
        )

    return None


def evaluate_all(
    snapshots: Iterable[PoolSnapshot],
    now: float,
    reminder_window_seconds: int = DEFAULT_REMINDER_WINDOW_SECONDS,
) -> List[ActionableCondition]:
    """Evaluate every snapshot; results are ordered payouts first, then reminders, then stalls"""
    conditions = []
    for snapshot in snapshots:
        condition = evaluate(snapshot, now, reminder_window_seconds)
        if condition is not None:
            conditions.append(condition)
    conditions.sort(key=lambda condition: condition.priority.rank)
    return conditions
