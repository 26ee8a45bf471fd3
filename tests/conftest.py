from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Set, Tuple

import pytest

from backoff_executor import BackoffExecutor, RetryPolicy
from chain_gateway import ChainGateway
from pool_types import (
    PoolCreatedEvent,
    PoolEvent,
    PoolInfo,
    PoolSnapshot,
    SignedTransaction,
    TxReceiptSummary,
)

NOW = 1_700_000_000.0

ALICE = "0x" + "a" * 40
BOB = "0x" + "b" * 40
CAROL = "0x" + "c" * 40
POOL_A = "0x" + "1" * 40
POOL_B = "0x" + "2" * 40
POOL_C = "0x" + "3" * 40


@dataclass
class FakePool:
    contribution_amount: int
    members: List[str]
    next_payout_time: int
    current_round: int = 1
    cycle_duration: int = 7 * 24 * 3600
    is_active: bool = True
    max_members: int = 3
    contributed: Set[Tuple[str, int]] = field(default_factory=set)
    paid_out: Set[str] = field(default_factory=set)


class FakeGateway(ChainGateway):
    """In-memory chain with scriptable failures"""

    def __init__(self, height: int = 100):
        self.height = height
        self.pools: Dict[str, FakePool] = {}
        self.pool_order: List[str] = []
        self.created_events: List[PoolCreatedEvent] = []
        self.pool_events: List[PoolEvent] = []
        self.failures: Dict[str, List[Exception]] = {}
        self.broken_pools: Set[str] = set()
        self.calls: List[str] = []
        self.gas_estimate = 100_000
        self.receipt_status = 1
        self.signed: List[SignedTransaction] = []
        self.sent: List[str] = []
        self.nonce = 0
        self.closed = False

    # test helpers

    def add_pool(
        self,
        address: str,
        members: Sequence[str] = (ALICE, BOB, CAROL),
        contributed: Sequence[str] = (),
        contribution_amount: int = 10,
        next_payout_time: float = NOW,
        current_round: int = 1,
        is_active: bool = True,
    ) -> FakePool:
        pool = FakePool(
            contribution_amount=contribution_amount,
            members=list(members),
            next_payout_time=int(next_payout_time),
            current_round=current_round,
            is_active=is_active,
            max_members=max(3, len(members)),
            contributed={(member, current_round) for member in contributed},
        )
        self.pools[address] = pool
        self.pool_order.append(address)
        return pool

    def create_pool_at(self, block: int, address: str, **kwargs) -> FakePool:
        pool = self.add_pool(address, **kwargs)
        self.created_events.append(PoolCreatedEvent(pool=address, creator=ALICE, tx_hash=f"0xcreate{block}", block_number=block))
        return pool

    def emit(self, pool: str, name: str, block: int, **args) -> None:
        self.pool_events.append(
            PoolEvent(pool=pool, name=name, args=args, tx_hash=f"0x{name.lower()}{block}", block_number=block)
        )

    def fail(self, method: str, *errors: Exception) -> None:
        self.failures.setdefault(method, []).extend(errors)

    def _call(self, method: str) -> None:
        self.calls.append(method)
        queue = self.failures.get(method)
        if queue:
            raise queue.pop(0)

    def _pool(self, address: str) -> FakePool:
        if address in self.broken_pools:
            raise ConnectionError(f"node unreachable for {address}")
        return self.pools[address]

    # ChainGateway

    def current_height(self) -> int:
        self._call("current_height")
        return self.height

    def get_pool_created_events(self, from_block: int, to_block: int) -> List[PoolCreatedEvent]:
        self._call("get_pool_created_events")
        return [event for event in self.created_events if from_block <= event.block_number <= to_block]

    def get_pool_events(self, pools: Sequence[str], from_block: int, to_block: int) -> List[PoolEvent]:
        self._call("get_pool_events")
        return [
            event for event in self.pool_events
            if event.pool in pools and from_block <= event.block_number <= to_block
        ]

    def get_pool_count(self) -> int:
        self._call("get_pool_count")
        return len(self.pool_order)

    def list_pools(self, offset: int, limit: int) -> List[str]:
        self._call("list_pools")
        return self.pool_order[offset:offset + limit]

    def get_pool_info(self, pool: str) -> PoolInfo:
        self._call("get_pool_info")
        state = self._pool(pool)
        return PoolInfo(
            contribution_amount=state.contribution_amount,
            cycle_duration=state.cycle_duration,
            current_round=state.current_round,
            next_payout_time=state.next_payout_time,
            is_active=state.is_active,
        )

    def get_max_members(self, pool: str) -> int:
        return self._pool(pool).max_members

    def get_members(self, pool: str) -> List[str]:
        return list(self._pool(pool).members)

    def has_contributed(self, pool: str, member: str, round_number: int) -> bool:
        return (member, round_number) in self._pool(pool).contributed

    def has_received_payout(self, pool: str, member: str) -> bool:
        return member in self._pool(pool).paid_out

    def estimate_payout_gas(self, pool: str) -> int:
        self._call("estimate_payout_gas")
        return self.gas_estimate

    def sign_payout(self, pool: str, gas_limit: int) -> SignedTransaction:
        self._call("sign_payout")
        signed = SignedTransaction(
            pool=pool, tx_hash=f"0xtx{len(self.signed)}", raw=b"\x01", nonce=self.nonce, gas_limit=gas_limit
        )
        self.nonce += 1
        self.signed.append(signed)
        return signed

    def send_transaction(self, signed: SignedTransaction) -> str:
        self._call("send_transaction")
        self.sent.append(signed.tx_hash)
        return signed.tx_hash

    def wait_for_receipt(self, tx_hash: str, timeout: float) -> TxReceiptSummary:
        self._call("wait_for_receipt")
        pool_address = next(signed.pool for signed in self.signed if signed.tx_hash == tx_hash)
        pool = self.pools[pool_address]
        succeeded = self.receipt_status == 1
        return TxReceiptSummary(
            tx_hash=tx_hash,
            status=self.receipt_status,
            block_number=self.height,
            gas_used=self.gas_estimate,
            recipient=pool.members[0] if succeeded and pool.members else None,
            amount=pool.contribution_amount * len(pool.members) if succeeded else None,
            round=pool.current_round if succeeded else None,
        )

    def close(self) -> None:
        self.closed = True


class RecordingNotifier:
    """Collects every notice instead of delivering it"""

    def __init__(self):
        self.reminders = []
        self.payouts = []
        self.stalls = []
        self.warnings = []

    def send_reminder(self, member, pool, amount, due_time):
        self.reminders.append((member, pool, amount, due_time))

    def notify_payout(self, pool, recipient, amount, tx_hash):
        self.payouts.append((pool, recipient, amount, tx_hash))

    def alert_stalled(self, pool, hours_overdue, missing_members):
        self.stalls.append((pool, hours_overdue, list(missing_members)))

    def log_warning(self, message, metadata=None):
        self.warnings.append((message, metadata))


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def sleeps() -> List[float]:
    return []


@pytest.fixture
def backoff(sleeps) -> BackoffExecutor:
    return BackoffExecutor(RetryPolicy(max_attempts=3, max_total_seconds=None), sleep=sleeps.append)


@pytest.fixture
def make_snapshot():
    def _make(
        address: str = POOL_A,
        members=(ALICE, BOB, CAROL),
        contributed=(),
        contribution_amount: int = 10,
        next_payout_time: float = NOW,
        current_round: int = 1,
        is_active: bool = True,
        has_received_payout: Optional[Dict[str, bool]] = None,
    ) -> PoolSnapshot:
        return PoolSnapshot(
            address=address,
            current_round=current_round,
            next_payout_time=int(next_payout_time),
            contribution_amount=contribution_amount,
            members=tuple(members),
            contributions_this_cycle={member: contribution_amount for member in contributed},
            has_received_payout=has_received_payout or {member: False for member in members},
            is_active=is_active,
            last_checked=NOW,
        )

    return _make
