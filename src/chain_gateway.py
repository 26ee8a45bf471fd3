#!/usr/bin/env python3
"""
Chain Gateway

Capability interface between the pool keeper and a remote ledger node. The
monitoring core only depends on this interface; each transport (HTTP polling
over web3, a test double, ...) provides one implementation.

Reads are range-pure: querying the same block window twice returns the same
logs, which is what lets the checkpoint tracker retry a window wholesale.
"""

from abc import ABC, abstractmethod
from typing import List, Sequence

from pool_types import (
    PoolCreatedEvent,
    PoolEvent,
    PoolInfo,
    SignedTransaction,
    TxReceiptSummary,
)

POOL_EVENT_NAMES = ("MemberJoined", "ContributionMade", "PayoutDistributed")


class ChainGateway(ABC):
    # block height and logs

    @abstractmethod
    def current_height(self) -> int:
        """Latest block number reported by the node"""

    @abstractmethod
    def get_pool_created_events(self, from_block: int, to_block: int) -> List[PoolCreatedEvent]:
        """Factory PoolCreated events in the inclusive range"""

    @abstractmethod
    def get_pool_events(self, pools: Sequence[str], from_block: int, to_block: int) -> List[PoolEvent]:
        """Membership, contribution and payout events of the given pools in the inclusive range"""

    # factory enumeration

    @abstractmethod
    def get_pool_count(self) -> int:
        """Number of pools the factory has created"""

    @abstractmethod
    def list_pools(self, offset: int, limit: int) -> List[str]:
        """One page of pool addresses in creation order"""

    # pool state

    @abstractmethod
    def get_pool_info(self, pool: str) -> PoolInfo:
        """Configuration and dynamic round fields of a pool"""

    @abstractmethod
    def get_max_members(self, pool: str) -> int:
        """Member cap configured at pool creation"""

    @abstractmethod
    def get_members(self, pool: str) -> List[str]:
        """Ordered member list"""

    @abstractmethod
    def has_contributed(self, pool: str, member: str, round_number: int) -> bool:
        """Whether `member` paid into `round_number`"""

    @abstractmethod
    def has_received_payout(self, pool: str, member: str) -> bool:
        """Whether `member` has already received a pot"""

    # payout transaction

    @abstractmethod
    def estimate_payout_gas(self, pool: str) -> int:
        """Gas estimate for distributePot() from the operator account.

        Raises GasEstimationError when the call would revert.
        """

    @abstractmethod
    def sign_payout(self, pool: str, gas_limit: int) -> SignedTransaction:
        """Build and sign a distributePot() transaction with the operator key"""

    @abstractmethod
    def send_transaction(self, signed: SignedTransaction) -> str:
        """Broadcast a signed transaction and return its hash.

        Re-sending a transaction the node already knows returns the same hash.
        """

    @abstractmethod
    def wait_for_receipt(self, tx_hash: str, timeout: float) -> TxReceiptSummary:
        """Block until the transaction has one confirmation or the timeout passes"""

    def close(self) -> None:
        """Release any held connections"""
