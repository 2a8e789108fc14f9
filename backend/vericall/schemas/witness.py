from datetime import datetime
from enum import Enum

from .common import WireModel


class WitnessStatus(str, Enum):
    pending = "pending"
    web_proof_complete = "web-proof-complete"
    zk_proof_complete = "zk-proof-complete"
    on_chain_complete = "on-chain-complete"
    failed = "failed"

    @property
    def terminal(self) -> bool:
        return self in (WitnessStatus.failed, WitnessStatus.on_chain_complete)

    def can_advance_to(self, nxt: "WitnessStatus") -> bool:
        """Forward by exactly one stage, or to ``failed`` from any non-terminal state."""
        if self.terminal:
            return False
        if nxt is WitnessStatus.failed:
            return True
        return _STAGE_ORDER.index(nxt) == _STAGE_ORDER.index(self) + 1


_STAGE_ORDER = [
    WitnessStatus.pending,
    WitnessStatus.web_proof_complete,
    WitnessStatus.zk_proof_complete,
    WitnessStatus.on_chain_complete,
]


class WebProofStage(WireModel):
    proof_id: str
    completed_at: datetime


class ZkProofStage(WireModel):
    digest: str
    completed_at: datetime


class OnChainStage(WireModel):
    transaction_id: str
    block_number: int
    contract_address: str
    submitted_at: datetime
    registry_call_id: str | None = None


class WitnessRecord(WireModel):
    id: str
    call_id: str
    status: WitnessStatus = WitnessStatus.pending
    created_at: datetime
    updated_at: datetime | None = None
    web_proof: WebProofStage | None = None
    zk_proof: ZkProofStage | None = None
    on_chain: OnChainStage | None = None
    error: str | None = None


class DecisionSummary(WireModel):
    """What the pipeline needs to know about a decision."""

    call_id: str
    decision: str
    reason: str = ""
    caller_hash_short: str = ""
    # overrides the configured proof source for this witness
    source_url: str | None = None


class WitnessList(WireModel):
    total: int
    records: list[WitnessRecord]


class WitnessVerification(WitnessRecord):
    verified: bool = False

    @classmethod
    def of(cls, record: WitnessRecord) -> "WitnessVerification":
        return cls(**record.model_dump(), verified=record.status is WitnessStatus.on_chain_complete)
