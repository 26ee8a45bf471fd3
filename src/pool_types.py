#!/usr/bin/env python3
"""
Pool Types

Plain data records shared by the pool keeper components: the cached pool
snapshot, the evaluator's actionable condition, and the values the chain
gateway hands back for reads, logs and transactions.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Tuple


class ConditionType(str, Enum):
    PAYOUT_READY = "PAYOUT_READY"
    REMINDER_DUE = "REMINDER_DUE"
    POOL_STALLED = "POOL_STALLED"


class Priority(str, Enum):
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {Priority.HIGH: 0, Priority.MEDIUM: 1, Priority.LOW: 2}

PRIORITY_BY_TYPE = {
    ConditionType.PAYOUT_READY: Priority.HIGH,
    ConditionType.REMINDER_DUE: Priority.MEDIUM,
    ConditionType.POOL_STALLED: Priority.LOW,
}


@dataclass(frozen=True)
class PoolSnapshot:
    """Point-in-time view of one pool, replaced wholesale on every refresh.

    `contributions_this_cycle` only ever holds entries for `current_round`;
    it is rebuilt from the chain on each refresh and never carried forward.
    """
    address: str
    current_round: int
    next_payout_time: int
    contribution_amount: int
    members: Tuple[str, ...]
    contributions_this_cycle: Dict[str, int]
    has_received_payout: Dict[str, bool]
    is_active: bool
    last_checked: float
    cycle_duration: int = 0
    max_members: int = 0
    token: Optional[str] = None

    @property
    def member_count(self) -> int:
        return len(self.members)

    def has_contributed(self, member: str) -> bool:
        return member in self.contributions_this_cycle


@dataclass(frozen=True)
class ActionableCondition:
    pool_address: str
    type: ConditionType
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def priority(self) -> Priority:
        return PRIORITY_BY_TYPE[self.type]


@dataclass(frozen=True)
class PoolInfo:
    contribution_amount: int
    cycle_duration: int
    current_round: int
    next_payout_time: int
    is_active: bool
    token: Optional[str] = None


@dataclass(frozen=True)
class PoolCreatedEvent:
    pool: str
    creator: str
    tx_hash: str
    block_number: int


@dataclass(frozen=True)
class PoolEvent:
    pool: str
    name: str
    args: Dict[str, Any]
    tx_hash: str
    block_number: int
    log_index: int = 0


@dataclass(frozen=True)
class SignedTransaction:
    pool: str
    tx_hash: str
    raw: bytes
    nonce: int
    gas_limit: int


@dataclass(frozen=True)
class TxReceiptSummary:
    tx_hash: str
    status: int
    block_number: int
    gas_used: int
    recipient: Optional[str] = None
    amount: Optional[int] = None
    round: Optional[int] = None

    @property
    def succeeded(self) -> bool:
        return self.status == 1
