import pytest

from condition_evaluator import evaluate, evaluate_all, missing_contributors
from conftest import ALICE, BOB, CAROL, NOW, POOL_A, POOL_B, POOL_C
from pool_types import ConditionType, Priority

HOUR = 3600
DAY = 24 * HOUR


def test_payout_ready_when_everyone_paid_and_time_reached(make_snapshot) -> None:
    snapshot = make_snapshot(contributed=(ALICE, BOB, CAROL), next_payout_time=NOW - 1)

    condition = evaluate(snapshot, NOW, DAY)

    assert condition.type == ConditionType.PAYOUT_READY
    assert condition.details["pot_amount"] == 30
    assert condition.priority == Priority.HIGH


def test_reminder_inside_window(make_snapshot) -> None:
    snapshot = make_snapshot(contributed=(ALICE, BOB), next_payout_time=NOW + 23 * HOUR)

    condition = evaluate(snapshot, NOW, DAY)

    assert condition.type == ConditionType.REMINDER_DUE
    assert condition.details["missing_contributors"] == [CAROL]
    assert condition.details["contribution_amount"] == 10
    assert condition.priority == Priority.MEDIUM


def test_stalled_after_payout_time(make_snapshot) -> None:
    snapshot = make_snapshot(contributed=(ALICE, BOB), next_payout_time=NOW - HOUR)

    condition = evaluate(snapshot, NOW, DAY)

    assert condition.type == ConditionType.POOL_STALLED
    assert condition.details["hours_overdue"] == pytest.approx(1.0)
    assert condition.details["missing_contributors"] == [CAROL]
    assert condition.priority == Priority.LOW


def test_nothing_before_reminder_window(make_snapshot) -> None:
    snapshot = make_snapshot(contributed=(ALICE,), next_payout_time=NOW + 25 * HOUR)

    assert evaluate(snapshot, NOW, DAY) is None


def test_nothing_when_everyone_paid_early(make_snapshot) -> None:
    snapshot = make_snapshot(contributed=(ALICE, BOB, CAROL), next_payout_time=NOW + HOUR)

    assert evaluate(snapshot, NOW, DAY) is None


def test_reminder_window_boundaries(make_snapshot) -> None:
    snapshot = make_snapshot(contributed=(ALICE,), next_payout_time=NOW + DAY)

    assert evaluate(snapshot, NOW, DAY).type == ConditionType.REMINDER_DUE
    assert evaluate(snapshot, NOW - 1, DAY) is None


def test_exactly_at_payout_time_with_missing_members_is_not_stalled(make_snapshot) -> None:
    snapshot = make_snapshot(contributed=(ALICE,), next_payout_time=NOW)

    assert evaluate(snapshot, NOW, DAY) is None
    assert evaluate(snapshot, NOW + 1, DAY).type == ConditionType.POOL_STALLED


def test_inactive_pool_never_produces_a_condition(make_snapshot) -> None:
    ready = make_snapshot(contributed=(ALICE, BOB, CAROL), next_payout_time=NOW - 1, is_active=False)
    stalled = make_snapshot(contributed=(), next_payout_time=NOW - DAY, is_active=False)

    assert evaluate(ready, NOW, DAY) is None
    assert evaluate(stalled, NOW, DAY) is None


def test_empty_pool_is_vacuously_ready(make_snapshot) -> None:
    snapshot = make_snapshot(members=(), next_payout_time=NOW - 1)

    condition = evaluate(snapshot, NOW, DAY)

    assert condition.type == ConditionType.PAYOUT_READY
    assert condition.details["pot_amount"] == 0


def test_missing_contributors_keep_member_order(make_snapshot) -> None:
    snapshot = make_snapshot(members=(CAROL, ALICE, BOB), contributed=(ALICE,))

    assert missing_contributors(snapshot) == [CAROL, BOB]


@pytest.mark.parametrize("offset", [-3 * DAY, -HOUR, -1, 0, 1, HOUR, 23 * HOUR, DAY, DAY + 1, 3 * DAY])
@pytest.mark.parametrize("contributed", [(), (ALICE,), (ALICE, BOB, CAROL)])
def test_at_most_one_condition_and_payout_wins(make_snapshot, offset, contributed) -> None:
    snapshot = make_snapshot(contributed=contributed, next_payout_time=NOW + offset)

    condition = evaluate(snapshot, NOW, DAY)

    if len(contributed) == 3 and offset <= 0:
        assert condition.type == ConditionType.PAYOUT_READY
    elif len(contributed) < 3 and offset < 0:
        assert condition.type == ConditionType.POOL_STALLED


def test_evaluate_all_orders_by_priority(make_snapshot) -> None:
    stalled = make_snapshot(address=POOL_A, contributed=(ALICE,), next_payout_time=NOW - HOUR)
    reminder = make_snapshot(address=POOL_B, contributed=(ALICE,), next_payout_time=NOW + HOUR)
    ready = make_snapshot(address=POOL_C, contributed=(ALICE, BOB, CAROL), next_payout_time=NOW - HOUR)

    conditions = evaluate_all([stalled, reminder, ready], NOW, DAY)

    assert [(c.pool_address, c.type) for c in conditions] == [
        (POOL_C, ConditionType.PAYOUT_READY),
        (POOL_B, ConditionType.REMINDER_DUE),
        (POOL_A, ConditionType.POOL_STALLED),
    ]
