#!/usr/bin/env python3
"""
Web3 Chain Gateway

HTTP polling implementation of the ChainGateway interface on top of web3.py.

Features:
- All node access goes through EVMProviderPool (sticky endpoint + failover)
- Factory PoolCreated and pool events fetched with eth_getLogs per block window
- One getLogs call per window for every registered pool at once
- Paginated factory enumeration via getPoolCount()/getPools(offset, limit)
- distributePot() transactions signed locally with the operator key
- Node rejections mapped onto the non-retryable error classes
"""

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from eth_account import Account
from web3 import Web3
from web3.exceptions import ContractLogicError
from web3.logs import DISCARD

from backoff_executor import GasEstimationError, as_non_retryable, classify_error
from chain_gateway import POOL_EVENT_NAMES, ChainGateway
from pool_types import (
    PoolCreatedEvent,
    PoolEvent,
    PoolInfo,
    SignedTransaction,
    TxReceiptSummary,
)
from rpc_failover import EVMProviderPool

logger = logging.getLogger(__name__)

ABI_DIR = Path(__file__).parent.parent / "abis"

POOL_CREATED_TOPIC = Web3.keccak(text="PoolCreated(address,address)").hex()
POOL_EVENT_TOPICS = {
    Web3.keccak(text="MemberJoined(address)").hex(): "MemberJoined",
    Web3.keccak(text="ContributionMade(address,uint256,uint256)").hex(): "ContributionMade",
    Web3.keccak(text="PayoutDistributed(address,uint256,uint256)").hex(): "PayoutDistributed",
}

ALREADY_KNOWN_MESSAGES = ("already known", "known transaction", "already imported")


def load_abi(contract_name: str, abi_dir: Optional[Path] = None) -> List[Dict[str, Any]]:
    """Load the `abi` list from abis/<contract_name>.json"""
    path = Path(abi_dir or ABI_DIR) / f"{contract_name}.json"
    try:
        with open(path, "r", encoding="utf-8") as abi_file:
            abi_data = json.load(abi_file)
        return abi_data["abi"]
    except Exception as exc:
        raise RuntimeError(f"Failed to load {contract_name} ABI from {path}: {exc}")


def _hex(value: Any) -> str:
    if isinstance(value, str):
        return value
    return value.hex()


def _raise_translated(exc: Exception) -> None:
    code = classify_error(exc)
    if code is not None:
        raise as_non_retryable(exc, code) from exc
    raise exc


class Web3ChainGateway(ChainGateway):
    def __init__(
        self,
        provider_pool: EVMProviderPool,
        factory_address: str,
        operator_private_key: Optional[str] = None,
        chain_id: Optional[int] = None,
        abi_dir: Optional[Path] = None,
    ):
        self.provider_pool = provider_pool
        self.factory_address = Web3.to_checksum_address(factory_address)
        self.chain_id = chain_id
        self.factory_abi = load_abi("SusuFactory", abi_dir)
        self.pool_abi = load_abi("SusuPool", abi_dir)

        self._private_key = operator_private_key
        self.operator_address: Optional[str] = None
        if operator_private_key:
            self.operator_address = Account.from_key(operator_private_key).address

        logger.debug(f"Web3ChainGateway ready | factory={self.factory_address} | operator={self.operator_address}")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _factory(self, w3: Web3):
        return w3.eth.contract(address=self.factory_address, abi=self.factory_abi)

    def _pool(self, w3: Web3, pool: str):
        return w3.eth.contract(address=Web3.to_checksum_address(pool), abi=self.pool_abi)

    def _require_operator(self) -> str:
        if not self._private_key or not self.operator_address:
            raise RuntimeError("No operator key configured; gateway is read-only")
        return self.operator_address

    # ------------------------------------------------------------------
    # Blocks and logs
    # ------------------------------------------------------------------

    def current_height(self) -> int:
        return int(self.provider_pool.with_web3(lambda w3: w3.eth.block_number))

    def get_pool_created_events(self, from_block: int, to_block: int) -> List[PoolCreatedEvent]:
        filter_params = {
            "fromBlock": from_block,
            "toBlock": to_block,
            "address": self.factory_address,
            "topics": [POOL_CREATED_TOPIC],
        }

        def _fetch(w3: Web3):
            logs = w3.eth.get_logs(filter_params)
            return logs, self._factory(w3).events.PoolCreated()

        logs, event_type = self.provider_pool.with_web3(_fetch)

        events: List[PoolCreatedEvent] = []
        for raw_log in logs:
            try:
                decoded = event_type.process_log(raw_log)
            except Exception as exc:
                logger.warning(f"Failed to decode PoolCreated log: {exc}")
                continue
            args = decoded["args"]
            events.append(
                PoolCreatedEvent(
                    pool=Web3.to_checksum_address(args["pool"]),
                    creator=Web3.to_checksum_address(args["creator"]),
                    tx_hash=_hex(decoded["transactionHash"]),
                    block_number=int(decoded["blockNumber"]),
                )
            )
        return events

    def get_pool_events(self, pools: Sequence[str], from_block: int, to_block: int) -> List[PoolEvent]:
        if not pools:
            return []

        filter_params = {
            "fromBlock": from_block,
            "toBlock": to_block,
            "address": [Web3.to_checksum_address(pool) for pool in pools],
            "topics": [list(POOL_EVENT_TOPICS.keys())],
        }

        def _fetch(w3: Web3):
            logs = w3.eth.get_logs(filter_params)
            decoder = w3.eth.contract(abi=self.pool_abi)
            return logs, decoder

        logs, decoder = self.provider_pool.with_web3(_fetch)

        events: List[PoolEvent] = []
        for raw_log in logs:
            topics = raw_log.get("topics") or []
            name = POOL_EVENT_TOPICS.get(_hex(topics[0])) if topics else None
            if name not in POOL_EVENT_NAMES:
                continue
            try:
                decoded = getattr(decoder.events, name)().process_log(raw_log)
            except Exception as exc:
                logger.warning(f"Failed to decode {name} log: {exc}")
                continue
            events.append(
                PoolEvent(
                    pool=Web3.to_checksum_address(decoded["address"]),
                    name=name,
                    args=dict(decoded["args"]),
                    tx_hash=_hex(decoded["transactionHash"]),
                    block_number=int(decoded["blockNumber"]),
                    log_index=int(decoded["logIndex"]),
                )
            )
        return events

    # ------------------------------------------------------------------
    # Factory enumeration
    # ------------------------------------------------------------------

    def get_pool_count(self) -> int:
        return int(self.provider_pool.with_web3(lambda w3: self._factory(w3).functions.getPoolCount().call()))

    def list_pools(self, offset: int, limit: int) -> List[str]:
        addresses = self.provider_pool.with_web3(
            lambda w3: self._factory(w3).functions.getPools(offset, limit).call()
        )
        return [Web3.to_checksum_address(address) for address in addresses]

    # ------------------------------------------------------------------
    # Pool state
    # ------------------------------------------------------------------

    def get_pool_info(self, pool: str) -> PoolInfo:
        (
            contribution_amount,
            cycle_duration,
            current_round,
            next_payout_time,
            is_active,
            token,
        ) = self.provider_pool.with_web3(lambda w3: self._pool(w3, pool).functions.getPoolInfo().call())
        return PoolInfo(
            contribution_amount=int(contribution_amount),
            cycle_duration=int(cycle_duration),
            current_round=int(current_round),
            next_payout_time=int(next_payout_time),
            is_active=bool(is_active),
            token=token,
        )

    def get_max_members(self, pool: str) -> int:
        return int(self.provider_pool.with_web3(lambda w3: self._pool(w3, pool).functions.maxMembers().call()))

    def get_members(self, pool: str) -> List[str]:
        members = self.provider_pool.with_web3(lambda w3: self._pool(w3, pool).functions.getMembers().call())
        return [Web3.to_checksum_address(member) for member in members]

    def has_contributed(self, pool: str, member: str, round_number: int) -> bool:
        return bool(
            self.provider_pool.with_web3(
                lambda w3: self._pool(w3, pool).functions.hasContributed(member, round_number).call()
            )
        )

    def has_received_payout(self, pool: str, member: str) -> bool:
        return bool(
            self.provider_pool.with_web3(
                lambda w3: self._pool(w3, pool).functions.hasReceivedPayout(member).call()
            )
        )

    # ------------------------------------------------------------------
    # Payout transaction
    # ------------------------------------------------------------------

    def estimate_payout_gas(self, pool: str) -> int:
        operator = self._require_operator()

        def _estimate(w3: Web3) -> int:
            try:
                return self._pool(w3, pool).functions.distributePot().estimate_gas({"from": operator})
            except ContractLogicError as exc:
                reason = getattr(exc, "message", None) or str(exc)
                raise GasEstimationError(f"distributePot() would revert for {pool}: {reason}", reason=reason) from exc
            except ValueError as exc:
                _raise_translated(exc)

        return int(self.provider_pool.with_web3(_estimate))

    def sign_payout(self, pool: str, gas_limit: int) -> SignedTransaction:
        operator = self._require_operator()

        def _build(w3: Web3) -> SignedTransaction:
            nonce = w3.eth.get_transaction_count(operator, "pending")
            tx = self._pool(w3, pool).functions.distributePot().build_transaction({
                "from": operator,
                "nonce": nonce,
                "gas": gas_limit,
                "chainId": self.chain_id if self.chain_id is not None else w3.eth.chain_id,
            })
            signed = w3.eth.account.sign_transaction(tx, self._private_key)
            return SignedTransaction(
                pool=pool,
                tx_hash=_hex(signed.hash),
                raw=bytes(signed.rawTransaction),
                nonce=nonce,
                gas_limit=gas_limit,
            )

        return self.provider_pool.with_web3(_build)

    def send_transaction(self, signed: SignedTransaction) -> str:
        def _send(w3: Web3) -> str:
            try:
                return _hex(w3.eth.send_raw_transaction(signed.raw))
            except ValueError as exc:
                message = str(exc).lower()
                if any(known in message for known in ALREADY_KNOWN_MESSAGES):
                    logger.info(f"Transaction {signed.tx_hash} already known to node; treating as sent")
                    return signed.tx_hash
                _raise_translated(exc)

        return self.provider_pool.with_web3(_send)

    def wait_for_receipt(self, tx_hash: str, timeout: float) -> TxReceiptSummary:
        def _wait(w3: Web3) -> TxReceiptSummary:
            receipt = w3.eth.wait_for_transaction_receipt(tx_hash, timeout=timeout)
            recipient = amount = round_number = None
            if receipt["status"] == 1:
                payouts = w3.eth.contract(abi=self.pool_abi).events.PayoutDistributed().process_receipt(
                    receipt, errors=DISCARD
                )
                if payouts:
                    args = payouts[0]["args"]
                    recipient = Web3.to_checksum_address(args["recipient"])
                    amount = int(args["amount"])
                    round_number = int(args["round"])
            return TxReceiptSummary(
                tx_hash=_hex(receipt["transactionHash"]),
                status=int(receipt["status"]),
                block_number=int(receipt["blockNumber"]),
                gas_used=int(receipt["gasUsed"]),
                recipient=recipient,
                amount=amount,
                round=round_number,
            )

        return self.provider_pool.with_web3(_wait)

    def close(self) -> None:
        self.provider_pool.close()
