# backend/vericall/services/pipeline.py
"""
Attestation pipeline: Web Proof -> ZK Proof -> on-chain registry.

create_witness() writes a `pending` witness and returns at once; the stages
run detached (an asyncio task in `inline` mode, a Celery task in `celery`
mode). Every outcome of a run, including crashes, ends up in the witness
record. Nothing is raised back to the caller that started it.
"""
from __future__ import annotations

import asyncio
import hashlib
import logging
import os
from pathlib import Path
from typing import Any, Callable, List, Optional, Protocol, Set

import yaml
from celery import shared_task
from kombu.exceptions import OperationalError
from pydantic import BaseModel, Field

from ..errors import StorageError, UnmappedDecisionError, VeriCallError
from ..models import _id
from ..schemas.common import utcnow
from ..schemas.proof import ChainReceipt, ChainSubmission, WebProof, ZkProof
from ..schemas.witness import (
    DecisionSummary,
    OnChainStage,
    WebProofStage,
    WitnessRecord,
    WitnessStatus,
    ZkProofStage,
)
from .chain import ChainDecision, RegistryClient, truncate_reason
from .witness_store import SqlWitnessStore, WitnessStore

logger = logging.getLogger(__name__)

PIPELINE_MODE = os.getenv("PIPELINE_MODE", "inline").lower()
PUBLIC_BASE_URL = os.getenv("PUBLIC_BASE_URL", "http://localhost:8000")
ATTESTATION_CONFIG_PATH = os.getenv("ATTESTATION_CONFIG_PATH", "")

MODE_INLINE = "inline"
MODE_CELERY = "celery"


def _default_config_path() -> Path:
    return Path(__file__).resolve().parents[3] / "configs" / "attestation.yaml"


def _split(v: str) -> List[str]:
    return [p.strip() for p in v.split(",") if p.strip()]


class AttestationPolicy(BaseModel):
    proof_fields: List[str] = Field(
        default_factory=lambda: ["decision", "reason", "policyHash", "transcriptHash"], min_length=1
    )
    attested_decisions: List[str] = Field(default_factory=lambda: ["BLOCK", "RECORD"])
    reason_max_bytes: int = Field(default=256, gt=3)
    proof_source_url: str = ""

    @classmethod
    def load(cls, path: Optional[str] = None) -> "AttestationPolicy":
        cfg_path = Path(path or ATTESTATION_CONFIG_PATH or _default_config_path())
        cfg = {}
        if cfg_path.exists():
            with cfg_path.open(encoding="utf-8") as f:
                cfg = yaml.safe_load(f) or {}
        if os.getenv("VLAYER_PROOF_JMESPATH"):
            cfg["proof_fields"] = _split(os.environ["VLAYER_PROOF_JMESPATH"])
        if os.getenv("ATTESTED_DECISIONS"):
            cfg["attested_decisions"] = _split(os.environ["ATTESTED_DECISIONS"])
        if os.getenv("PROOF_SOURCE_URL"):
            cfg["proof_source_url"] = os.environ["PROOF_SOURCE_URL"]
        return cls.model_validate(cfg)


class ProofService(Protocol):
    async def generate_web_proof(self, url: str) -> WebProof: ...
    async def compress_web_proof(self, web_proof: WebProof, jmespath: List[str]) -> ZkProof: ...


class ChainSubmitter(Protocol):
    async def submit_decision(self, submission: ChainSubmission) -> ChainReceipt: ...


def hash_caller(phone: str) -> str:
    """Privacy-preserving short caller id: SHA-256, truncated."""
    return hashlib.sha256(phone.encode("utf-8")).hexdigest()[:16]


class AttestationPipeline:
    def __init__(
        self,
        store: WitnessStore,
        *,
        proofs: ProofService,
        registry: ChainSubmitter,
        policy: Optional[AttestationPolicy] = None,
        mode: str = PIPELINE_MODE,
        public_base_url: str = PUBLIC_BASE_URL,
        archiver: Optional[Callable[[WitnessRecord], Any]] = None,
    ):
        if mode not in (MODE_INLINE, MODE_CELERY):
            raise ValueError(f"PIPELINE_MODE={mode} not supported. Use 'inline' or 'celery'.")
        self.store = store
        self.proofs = proofs
        self.registry = registry
        self.policy = policy or AttestationPolicy.load()
        self.mode = mode
        self.public_base_url = public_base_url.rstrip("/")
        self._archiver = archiver
        self._tasks: Set[asyncio.Task] = set()

    # ---- configuration -------------------------------------------------

    def should_attest(self, outcome: str) -> bool:
        wanted = {d.upper() for d in self.policy.attested_decisions}
        return (outcome or "").upper() in wanted

    def proof_source_url(self, call_id: str) -> str:
        template = self.policy.proof_source_url or f"{self.public_base_url}/api/witness/decision/{{call_id}}"
        return template.format(call_id=call_id)

    # ---- public API ----------------------------------------------------

    def create_witness(self, call_id: str, summary: DecisionSummary) -> WitnessRecord:
        """Start attesting a decision. Returns the `pending` record without waiting on any stage."""
        loop = asyncio.get_running_loop() if self.mode == MODE_INLINE else None
        summary = summary.model_copy(update={"call_id": call_id})

        record = WitnessRecord(id=_id("wit"), call_id=call_id, status=WitnessStatus.pending, created_at=utcnow())
        self.store.save(record)

        if loop is not None:
            task = loop.create_task(self.run_detached(record.id, summary), name=f"witness-{record.id}")
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
        else:
            try:
                task_attest.apply_async(args=[record.id, summary.model_dump(mode="json")])
            except OperationalError as e:
                logger.error("[witness %s] could not dispatch to worker: %s", record.id, e)
                return self._fail(record.id, f"dispatch failed: {e}")
        return record

    async def wait_idle(self) -> None:
        """Join every in-flight inline run. There is no cancel."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    # ---- stages --------------------------------------------------------

    async def run_detached(self, witness_id: str, summary: DecisionSummary) -> WitnessRecord:
        try:
            record = await self.run(witness_id, summary)
        except Exception as e:
            logger.exception("[witness %s] pipeline crashed", witness_id)
            record = self.store.get(witness_id)
            if record is None or not record.status.terminal:
                record = self._fail(witness_id, f"{type(e).__name__}: {e}")
        await self._archive(record)
        return record

    async def run(self, witness_id: str, summary: DecisionSummary) -> WitnessRecord:
        tag = f"[witness {witness_id}]"
        source_url = summary.source_url or self.proof_source_url(summary.call_id)

        # 1/3 web proof
        logger.info("%s Step 1/3: generating Web Proof from %s", tag, source_url)
        try:
            web_proof = await self.proofs.generate_web_proof(source_url)
        except VeriCallError as e:
            logger.error("%s Web Proof failed: %s", tag, e)
            return self._fail(witness_id, str(e))
        self.store.update_status(
            witness_id,
            WitnessStatus.web_proof_complete,
            web_proof=WebProofStage(proof_id=web_proof.proof_id, completed_at=utcnow()),
        )
        logger.info("%s Web Proof generated (%d chars)", tag, len(web_proof.data))

        # 2/3 zk compression
        fields = list(self.policy.proof_fields)
        logger.info("%s Step 2/3: compressing to ZK Proof [%s]", tag, ", ".join(fields))
        try:
            zk = await self.proofs.compress_web_proof(web_proof, fields)
        except VeriCallError as e:
            logger.error("%s ZK compression failed: %s", tag, e)
            return self._fail(witness_id, str(e))
        record = self.store.update_status(
            witness_id,
            WitnessStatus.zk_proof_complete,
            zk_proof=ZkProofStage(digest=zk.digest, completed_at=utcnow()),
        )
        logger.info("%s ZK Proof compressed (seal digest %s)", tag, zk.digest)

        # 3/3 on-chain
        try:
            code = ChainDecision.require(summary.decision)
        except UnmappedDecisionError as e:
            logger.warning("%s %s, skipping on-chain submission", tag, e)
            return record

        logger.info("%s Step 3/3: submitting to registry (decision=%s)", tag, code.name)
        try:
            submission = ChainSubmission(
                call_id=summary.call_id,
                caller_hash=summary.caller_hash_short,
                decision_code=int(code),
                reason=truncate_reason(summary.reason, self.policy.reason_max_bytes),
                zk_proof_seal=zk.seal,
                journal_data_abi=zk.journal_data_abi,
                source_url=source_url,
            )
            receipt = await self.registry.submit_decision(submission)
        except VeriCallError as e:
            logger.error("%s On-chain submission failed: %s", tag, e)
            return self._fail(witness_id, f"On-chain failed: {e}")
        except Exception as e:
            logger.exception("%s On-chain submission crashed", tag)
            return self._fail(witness_id, f"On-chain failed: {type(e).__name__}: {e}")

        record = self.store.update_status(
            witness_id,
            WitnessStatus.on_chain_complete,
            on_chain=OnChainStage(
                transaction_id=receipt.transaction_id,
                block_number=receipt.block_number,
                contract_address=receipt.contract_address,
                submitted_at=utcnow(),
                registry_call_id=receipt.registry_call_id,
            ),
        )
        logger.info("%s On-chain: tx %s in block %d", tag, receipt.transaction_id, receipt.block_number)
        return record

    def _fail(self, witness_id: str, message: str) -> WitnessRecord:
        return self.store.update_status(witness_id, WitnessStatus.failed, error=message)

    async def _archive(self, record: WitnessRecord) -> None:
        if self._archiver is None:
            return
        try:
            await asyncio.to_thread(self._archiver, record)
        except StorageError as e:
            logger.warning("[witness %s] archive failed: %s", record.id, e)


def build_worker_pipeline() -> AttestationPipeline:
    """Pipeline as wired inside a Celery worker: durable store, stages run in-process."""
    from .storage import archive_enabled, archive_witness
    from .vlayer import VlayerClient

    return AttestationPipeline(
        SqlWitnessStore(),
        proofs=VlayerClient(),
        registry=RegistryClient(),
        mode=MODE_INLINE,
        archiver=archive_witness if archive_enabled() else None,
    )


# name must stay stable; producers address the task by it
@shared_task(name="vericall.services.pipeline.task_attest")
def task_attest(witness_id: str, summary: dict):
    pipeline = build_worker_pipeline()
    record = asyncio.run(pipeline.run_detached(witness_id, DecisionSummary.model_validate(summary)))
    return record.status.value
