# backend/vericall/services/chain.py
from __future__ import annotations

import logging
import os
import time
from enum import IntEnum
from typing import Optional

from eth_account import Account
from web3 import AsyncHTTPProvider, AsyncWeb3, Web3
from web3.exceptions import TimeExhausted

from ..errors import ChainSubmissionError, ConfigurationError, UnmappedDecisionError
from ..schemas.common import utcnow
from ..schemas.proof import ChainReceipt, ChainSubmission, OnChainVerification, RegistryRecord, RegistryStats
from .registry_abi import REGISTRY_ABI

logger = logging.getLogger(__name__)

RPC_URL = os.getenv("ETHEREUM_RPC_URL", "https://sepolia.base.org")
CHAIN_ID = int(os.getenv("CHAIN_ID", "84532"))  # Base Sepolia
CONTRACT_ADDRESS = os.getenv("VERICALL_CONTRACT_ADDRESS", "")
DEPLOYER_MNEMONIC = os.getenv("DEPLOYER_MNEMONIC", "")
DEPLOYER_PRIVATE_KEY = os.getenv("DEPLOYER_PRIVATE_KEY", "")
RECEIPT_TIMEOUT = float(os.getenv("CHAIN_RECEIPT_TIMEOUT_SECONDS", "120"))


class ChainDecision(IntEnum):
    """Registry decision codes. ACCEPT has no registry code."""

    UNMAPPED = 0
    BLOCK = 2
    RECORD = 3

    @classmethod
    def from_outcome(cls, outcome: str) -> "ChainDecision":
        return _OUTCOME_CODES.get((outcome or "").strip().upper(), cls.UNMAPPED)

    @classmethod
    def require(cls, outcome: str) -> "ChainDecision":
        code = cls.from_outcome(outcome)
        if code is cls.UNMAPPED:
            raise UnmappedDecisionError(outcome)
        return code


_OUTCOME_CODES = {
    "BLOCK": ChainDecision.BLOCK,
    "RECORD": ChainDecision.RECORD,
}


def truncate_reason(reason: str, limit: int) -> str:
    """Bound the reason stored on-chain to ``limit`` UTF-8 bytes, cutting on a character boundary."""
    raw = reason.encode("utf-8")
    if limit <= 0 or len(raw) <= limit:
        return reason
    # a multi-byte character split by the cut is dropped whole
    head = raw[: max(limit - 3, 0)].decode("utf-8", errors="ignore")
    return head + "..."


# index is the registry's uint8 decision code
_REGISTRY_LABELS = ("UNKNOWN", "ACCEPT", "BLOCK", "RECORD")


def registry_label(code: int) -> str:
    return _REGISTRY_LABELS[code] if 0 <= code < len(_REGISTRY_LABELS) else "UNKNOWN"


class RegistryClient:
    """Writes decisions to, and reads from, the VeriCallRegistry contract."""

    def __init__(
        self,
        *,
        rpc_url: str = RPC_URL,
        contract_address: str = CONTRACT_ADDRESS,
        chain_id: int = CHAIN_ID,
        mnemonic: str = DEPLOYER_MNEMONIC,
        private_key: str = DEPLOYER_PRIVATE_KEY,
        receipt_timeout: float = RECEIPT_TIMEOUT,
        web3: Optional[AsyncWeb3] = None,
    ):
        self.rpc_url = rpc_url
        self.contract_address = contract_address
        self.chain_id = chain_id
        self._mnemonic = mnemonic.strip()
        self._private_key = private_key.strip()
        self.receipt_timeout = receipt_timeout
        self._w3 = web3

    @property
    def w3(self) -> AsyncWeb3:
        if self._w3 is None:
            self._w3 = AsyncWeb3(AsyncHTTPProvider(self.rpc_url))
        return self._w3

    def _account(self):
        try:
            if self._mnemonic:
                Account.enable_unaudited_hdwallet_features()
                return Account.from_mnemonic(self._mnemonic)
            if self._private_key:
                return Account.from_key(self._private_key)
        except ValueError as e:
            raise ConfigurationError(f"invalid wallet material: {e}") from e
        raise ConfigurationError("No wallet configured: set DEPLOYER_MNEMONIC or DEPLOYER_PRIVATE_KEY")

    def _contract(self):
        if not self.contract_address:
            raise ConfigurationError("VERICALL_CONTRACT_ADDRESS not configured")
        try:
            address = Web3.to_checksum_address(self.contract_address)
        except ValueError as e:
            raise ConfigurationError(f"invalid contract address {self.contract_address!r}") from e
        return self.w3.eth.contract(address=address, abi=REGISTRY_ABI)

    async def submit_decision(self, submission: ChainSubmission) -> ChainReceipt:
        account = self._account()
        contract = self._contract()

        # unique per submission so a re-attested call gets its own registry slot
        registry_call_id = Web3.keccak(text=f"vericall_{submission.call_id}_{int(time.time() * 1000)}")
        caller_hash = Web3.keccak(text=submission.caller_hash)

        try:
            fn = contract.functions.registerCallDecision(
                registry_call_id,
                caller_hash,
                submission.decision_code,
                submission.reason,
                Web3.to_bytes(hexstr=submission.zk_proof_seal),
                Web3.to_bytes(hexstr=submission.journal_data_abi),
                submission.source_url,
            )
            nonce = await self.w3.eth.get_transaction_count(account.address, "pending")
            tx = await fn.build_transaction({"from": account.address, "nonce": nonce, "chainId": self.chain_id})
            signed = account.sign_transaction(tx)
            tx_hash = await self.w3.eth.send_raw_transaction(signed.raw_transaction)
        except Exception as e:
            raise ChainSubmissionError(f"transaction rejected before broadcast: {e}", broadcast=False) from e

        tx_id = Web3.to_hex(tx_hash)
        logger.info("registry tx broadcast for %s: %s", submission.call_id, tx_id)
        try:
            receipt = await self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=self.receipt_timeout)
        except TimeExhausted as e:
            raise ChainSubmissionError(
                f"transaction {tx_id} not confirmed within {self.receipt_timeout:g}s",
                broadcast=True,
                transaction_id=tx_id,
            ) from e
        except Exception as e:
            raise ChainSubmissionError(
                f"lost track of transaction {tx_id}: {e}", broadcast=True, transaction_id=tx_id
            ) from e

        if receipt["status"] != 1:
            raise ChainSubmissionError(f"transaction {tx_id} reverted", broadcast=True, transaction_id=tx_id)

        return ChainReceipt(
            transaction_id=tx_id,
            block_number=int(receipt["blockNumber"]),
            contract_address=contract.address,
            registry_call_id=Web3.to_hex(registry_call_id),
        )

    async def get_stats(self) -> RegistryStats:
        contract = self._contract()
        try:
            total, accepted, blocked, recorded = await contract.functions.getStats().call()
        except Exception as e:
            raise ChainSubmissionError(f"getStats failed: {e}", broadcast=False) from e
        return RegistryStats(
            total=total, accepted=accepted, blocked=blocked, recorded=recorded, fetched_at=utcnow()
        )

    async def get_record(self, registry_call_id: str) -> Optional[RegistryRecord]:
        """Registry entry for ``registry_call_id``; ``None`` when nothing was registered under it."""
        contract = self._contract()
        try:
            row = await contract.functions.getRecord(Web3.to_bytes(hexstr=registry_call_id)).call()
            caller_hash, decision, reason, journal_hash, seal, journal, source_url, timestamp, submitter = row
        except Exception as e:
            raise ChainSubmissionError(f"getRecord failed: {e}", broadcast=False) from e
        if int(timestamp) == 0:
            return None
        return RegistryRecord(
            registry_call_id=registry_call_id,
            caller_hash=Web3.to_hex(caller_hash),
            decision=registry_label(int(decision)),
            reason=reason,
            journal_hash=Web3.to_hex(journal_hash),
            zk_proof_seal=Web3.to_hex(seal),
            journal_data_abi=Web3.to_hex(journal),
            source_url=source_url,
            timestamp=int(timestamp),
            submitter=submitter,
        )

    async def verify_journal(self, registry_call_id: str, journal_data_abi: str) -> bool:
        contract = self._contract()
        try:
            return bool(
                await contract.functions.verifyJournal(
                    Web3.to_bytes(hexstr=registry_call_id),
                    Web3.to_bytes(hexstr=journal_data_abi),
                ).call()
            )
        except Exception as e:
            raise ChainSubmissionError(f"verifyJournal failed: {e}", broadcast=False) from e

    async def read_back(self, registry_call_id: str, expected_decision: Optional[str] = None) -> OnChainVerification:
        """
        Re-read a submitted decision from the registry and check it.

        The journal stored with the record is fed back to verifyJournal, so
        a tampered or missing entry reads as unverified. Configuration and
        RPC errors are reported in the result, not raised.
        """
        result = OnChainVerification(registry_call_id=registry_call_id, checked_at=utcnow())
        try:
            record = await self.get_record(registry_call_id)
            if record is None:
                return result
            journal_ok = await self.verify_journal(registry_call_id, record.journal_data_abi)
        except (ConfigurationError, ChainSubmissionError) as e:
            logger.warning("registry read-back for %s failed: %s", registry_call_id, e)
            return result.model_copy(update={"error": e.as_dict()})
        return result.model_copy(
            update={
                "recorded": True,
                "record": record,
                "journal_verified": journal_ok,
                "decision_matches": (record.decision == expected_decision.upper()) if expected_decision else None,
            }
        )
