import hashlib
from datetime import datetime

from pydantic import ConfigDict, Field

from .common import WireModel


def short_digest(data: str) -> str:
    return hashlib.sha256(data.encode("utf-8")).hexdigest()[:16]


class WebProofMeta(WireModel):
    model_config = ConfigDict(extra="allow")

    notary_url: str = ""


class WebProof(WireModel):
    """Presentation returned by the web prover. Sent back verbatim for compression."""

    model_config = ConfigDict(extra="allow")

    data: str = Field(min_length=1)
    version: str
    meta: WebProofMeta = Field(default_factory=WebProofMeta)

    @property
    def proof_id(self) -> str:
        return f"wp_{short_digest(self.data)}"


class ZkProofPayload(WireModel):
    zk_proof: str = Field(min_length=1)
    journal_data_abi: str = Field(min_length=1)


class CompressErrorBody(WireModel):
    code: str = ""
    message: str = ""


class CompressResult(WireModel):
    success: bool
    data: ZkProofPayload | None = None
    error: CompressErrorBody | None = None


class ZkProof(WireModel):
    seal: str
    journal_data_abi: str

    @property
    def digest(self) -> str:
        return short_digest(self.seal)


class ChainSubmission(WireModel):
    call_id: str
    caller_hash: str
    decision_code: int = Field(gt=0)
    reason: str
    zk_proof_seal: str
    journal_data_abi: str
    source_url: str


class ChainReceipt(WireModel):
    transaction_id: str
    block_number: int
    contract_address: str
    registry_call_id: str


class RegistryStats(WireModel):
    total: int
    accepted: int
    blocked: int
    recorded: int
    fetched_at: datetime


class RegistryRecord(WireModel):
    """A decision as the registry contract stores it."""

    registry_call_id: str
    caller_hash: str
    decision: str
    reason: str
    journal_hash: str
    zk_proof_seal: str
    journal_data_abi: str
    source_url: str
    timestamp: int
    submitter: str


class OnChainVerification(WireModel):
    registry_call_id: str
    checked_at: datetime
    recorded: bool = False
    journal_verified: bool = False
    # None when there is no live local decision to compare against
    decision_matches: bool | None = None
    record: RegistryRecord | None = None
    error: dict | None = None
