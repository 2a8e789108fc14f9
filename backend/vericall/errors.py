"""Error taxonomy for the attestation backend.

Every error carries a stable ``code`` for programmatic handling and an
``as_dict()`` rendering. Errors raised inside a detached pipeline run are
never propagated to the producer; the pipeline writes ``str(err)`` into the
witness record instead.
"""
from __future__ import annotations

from typing import Any, Dict, Optional

VC_E_CONFIG = "VC_E_CONFIG"
VC_E_STORAGE = "VC_E_STORAGE"
VC_E_WITNESS_ID_COLLISION = "VC_E_WITNESS_ID_COLLISION"
VC_E_ILLEGAL_TRANSITION = "VC_E_ILLEGAL_TRANSITION"
VC_E_PROOF_SERVICE = "VC_E_PROOF_SERVICE"
VC_E_CHAIN = "VC_E_CHAIN"
VC_E_UNMAPPED_DECISION = "VC_E_UNMAPPED_DECISION"


class VeriCallError(Exception):
    code = "VC_E_INTERNAL"

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = {k: v for k, v in details.items() if v is not None}

    def as_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            d["details"] = self.details
        return d

    def __str__(self) -> str:
        return self.message


class ConfigurationError(VeriCallError):
    """Missing credentials or wallet material. Raised before any network call."""

    code = VC_E_CONFIG


class StorageError(VeriCallError):
    code = VC_E_STORAGE


class WitnessIdCollisionError(StorageError):
    code = VC_E_WITNESS_ID_COLLISION


class IllegalTransitionError(StorageError):
    code = VC_E_ILLEGAL_TRANSITION


class ProofServiceError(VeriCallError):
    """Web Proof or ZK Compression failure."""

    code = VC_E_PROOF_SERVICE

    def __init__(
        self,
        message: str,
        *,
        stage: str,
        status_code: Optional[int] = None,
        body: Optional[str] = None,
    ):
        super().__init__(message, stage=stage, status_code=status_code, body=body)
        self.stage = stage
        self.status_code = status_code
        self.body = body


class ChainSubmissionError(VeriCallError):
    """Registry write failure. ``broadcast`` tells whether the tx left this process."""

    code = VC_E_CHAIN

    def __init__(self, message: str, *, broadcast: bool, transaction_id: Optional[str] = None):
        super().__init__(message, broadcast=broadcast, transaction_id=transaction_id)
        self.broadcast = broadcast
        self.transaction_id = transaction_id


class UnmappedDecisionError(VeriCallError):
    """The decision outcome has no on-chain code. Not a pipeline failure."""

    code = VC_E_UNMAPPED_DECISION

    def __init__(self, outcome: str):
        super().__init__(f"decision {outcome!r} has no on-chain representation", outcome=outcome)
        self.outcome = outcome
