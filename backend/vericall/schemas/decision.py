import hashlib
from datetime import datetime
from enum import Enum

from pydantic import Field, computed_field

from .common import WireModel
from .proof import OnChainVerification
from .witness import DecisionSummary, WitnessRecord, WitnessVerification


class DecisionOutcome(str, Enum):
    ACCEPT = "ACCEPT"
    BLOCK = "BLOCK"
    RECORD = "RECORD"


class DecisionIn(WireModel):
    call_id: str = Field(min_length=1)
    decision: DecisionOutcome
    reason: str = ""
    transcript: str = ""
    caller_hash_short: str = ""
    conversation_turns: int = Field(default=0, ge=0)


class DecisionRecord(DecisionIn):
    policy_hash: str
    source_version: str = "unknown"
    created_at: datetime
    expires_at: datetime

    @computed_field(alias="transcriptHash")
    @property
    def transcript_hash(self) -> str:
        return hashlib.sha256(self.transcript.encode("utf-8")).hexdigest()

    def summary(self) -> DecisionSummary:
        return DecisionSummary(
            call_id=self.call_id,
            decision=self.decision.value,
            reason=self.reason,
            caller_hash_short=self.caller_hash_short,
        )


class DecisionAccepted(WireModel):
    call_id: str
    decision: DecisionOutcome
    attested: bool
    witness: WitnessRecord | None = None


class CallVerification(WireModel):
    """Best-known attestation state for one call."""

    call_id: str
    decision: DecisionOutcome | None = None
    timestamp: datetime | None = None
    witness: WitnessVerification | None = None
    witness_count: int = 0
    on_chain: OnChainVerification | None = None
