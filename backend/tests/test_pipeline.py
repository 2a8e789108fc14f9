import asyncio
import time
from unittest.mock import MagicMock

import httpx
import pytest
from kombu.exceptions import OperationalError

import vericall.services.pipeline as pipeline_mod
from vericall.errors import ChainSubmissionError, ProofServiceError, StorageError
from vericall.schemas.witness import DecisionSummary, WitnessStatus
from vericall.services.pipeline import AttestationPolicy, hash_caller
from vericall.services.vlayer import VlayerClient

from fakes import CONTRACT, TX_HASH, FakeProofs, FakeRegistry, RecordingStore, make_pipeline

S = WitnessStatus
STAGES = [S.pending, S.web_proof_complete, S.zk_proof_complete, S.on_chain_complete]


def _summary(decision="BLOCK", reason="spam", call_id="CA123"):
    return DecisionSummary(call_id=call_id, decision=decision, reason=reason, caller_hash_short="abc123")


def _assert_legal_path(path):
    # forward through the stage order without skipping, optionally ending in failed
    if path[-1] is S.failed:
        path = path[:-1]
    assert path == STAGES[: len(path)]


@pytest.mark.asyncio
async def test_all_stages_succeed_reach_on_chain():
    proofs, registry = FakeProofs(), FakeRegistry()
    pipeline = make_pipeline(proofs, registry)

    initial = pipeline.create_witness("CA123", _summary())
    assert initial.status is S.pending
    assert initial.id.startswith("wit_")
    await pipeline.wait_idle()

    final = pipeline.store.get(initial.id)
    assert final.status is S.on_chain_complete
    assert final.on_chain.transaction_id == TX_HASH
    assert final.on_chain.block_number == 4242
    assert final.on_chain.contract_address == CONTRACT
    assert final.web_proof.proof_id.startswith("wp_")
    assert len(final.zk_proof.digest) == 16
    assert final.error is None
    assert pipeline.store.history[initial.id] == STAGES

    assert proofs.calls[0] == ("web", "https://vericall.test/api/witness/decision/CA123")
    assert proofs.calls[1] == ("zk", ["decision", "reason", "policyHash", "transcriptHash"])
    sub = registry.submissions[0]
    assert sub.call_id == "CA123"
    assert sub.decision_code == 2
    assert sub.caller_hash == "abc123"
    assert sub.zk_proof_seal == "0x" + "ab" * 32
    assert sub.source_url == "https://vericall.test/api/witness/decision/CA123"


@pytest.mark.asyncio
async def test_create_witness_does_not_wait_for_stages():
    gate = asyncio.Event()
    pipeline = make_pipeline(FakeProofs(gate=gate))

    t0 = time.monotonic()
    rec = pipeline.create_witness("CA123", _summary())
    elapsed = time.monotonic() - t0

    assert elapsed < 0.5
    assert rec.status is S.pending
    await asyncio.sleep(0.05)
    assert pipeline.store.get(rec.id).status is S.pending
    assert pipeline.in_flight == 1

    gate.set()
    await pipeline.wait_idle()
    assert pipeline.store.get(rec.id).status is S.on_chain_complete
    assert pipeline.in_flight == 0


@pytest.mark.asyncio
async def test_create_witness_with_slow_adapter_returns_immediately():
    pipeline = make_pipeline(FakeProofs(delay=2.0))

    t0 = time.monotonic()
    rec = pipeline.create_witness("CA123", _summary())
    assert time.monotonic() - t0 < 0.5
    assert rec.status is S.pending

    await pipeline.wait_idle()
    assert pipeline.store.get(rec.id).status is S.on_chain_complete


@pytest.mark.asyncio
async def test_web_proof_failure_leaves_no_artifacts():
    err = ProofServiceError("Web Proof failed (502): bad gateway", stage="web-proof", status_code=502)
    proofs, registry = FakeProofs(web_error=err), FakeRegistry()
    pipeline = make_pipeline(proofs, registry)

    rec = pipeline.create_witness("CA123", _summary())
    await pipeline.wait_idle()

    final = pipeline.store.get(rec.id)
    assert final.status is S.failed
    assert final.web_proof is None
    assert final.zk_proof is None
    assert final.on_chain is None
    assert "502" in final.error
    assert [c[0] for c in proofs.calls] == ["web"]
    assert registry.submissions == []
    assert pipeline.store.history[rec.id] == [S.pending, S.failed]


@pytest.mark.asyncio
async def test_missing_credentials_fail_before_any_request():
    seen = []
    client = VlayerClient(
        api_key="",
        client_id="",
        transport=httpx.MockTransport(lambda request: seen.append(request) or httpx.Response(200, json={})),
    )
    pipeline = make_pipeline(proofs=client)

    rec = pipeline.create_witness("CA123", _summary())
    await pipeline.wait_idle()

    final = pipeline.store.get(rec.id)
    assert final.status is S.failed
    assert "credentials not configured" in final.error
    assert seen == []


@pytest.mark.asyncio
async def test_zk_failure_keeps_web_proof():
    err = ProofServiceError("ZK Proof compression error: quota exceeded", stage="zk-proof")
    registry = FakeRegistry()
    pipeline = make_pipeline(FakeProofs(zk_error=err), registry)

    rec = pipeline.create_witness("CA123", _summary())
    await pipeline.wait_idle()

    final = pipeline.store.get(rec.id)
    assert final.status is S.failed
    assert final.web_proof is not None
    assert final.zk_proof is None
    assert final.on_chain is None
    assert final.error == "ZK Proof compression error: quota exceeded"
    assert registry.submissions == []
    assert pipeline.store.history[rec.id] == [S.pending, S.web_proof_complete, S.failed]


@pytest.mark.asyncio
async def test_chain_failure_keeps_both_proofs():
    err = ChainSubmissionError("transaction 0xabc not confirmed within 120s", broadcast=True, transaction_id="0xabc")
    pipeline = make_pipeline(registry=FakeRegistry(error=err))

    rec = pipeline.create_witness("CA123", _summary())
    await pipeline.wait_idle()

    final = pipeline.store.get(rec.id)
    assert final.status is S.failed
    assert final.web_proof is not None
    assert final.zk_proof is not None
    assert final.on_chain is None
    assert final.error.startswith("On-chain failed: ")
    assert "not confirmed" in final.error


@pytest.mark.asyncio
async def test_unexpected_chain_exception_keeps_on_chain_prefix():
    store = RecordingStore()
    pipeline = make_pipeline(registry=FakeRegistry(error=TimeoutError("rpc timed out")), store=store)

    rec = pipeline.create_witness("CA123", _summary())
    await pipeline.wait_idle()

    final = store.get(rec.id)
    assert final.status is S.failed
    assert final.error == "On-chain failed: TimeoutError: rpc timed out"
    assert final.web_proof is not None
    assert final.zk_proof is not None
    assert store.history[rec.id] == STAGES[:3] + [S.failed]


@pytest.mark.asyncio
async def test_unmapped_decision_stops_before_chain_without_failing():
    registry = FakeRegistry()
    pipeline = make_pipeline(registry=registry)

    rec = pipeline.create_witness("CA123", _summary(decision="ACCEPT"))
    await pipeline.wait_idle()

    final = pipeline.store.get(rec.id)
    assert final.status is S.zk_proof_complete
    assert final.error is None
    assert final.zk_proof is not None
    assert registry.submissions == []


@pytest.mark.asyncio
async def test_unexpected_exception_is_recorded_not_raised():
    pipeline = make_pipeline(FakeProofs(web_error=RuntimeError("boom")))

    rec = pipeline.create_witness("CA123", _summary())
    await pipeline.wait_idle()

    final = pipeline.store.get(rec.id)
    assert final.status is S.failed
    assert final.error == "RuntimeError: boom"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "proofs,registry",
    [
        (FakeProofs(), FakeRegistry()),
        (FakeProofs(web_error=ProofServiceError("x", stage="web-proof")), FakeRegistry()),
        (FakeProofs(zk_error=ProofServiceError("x", stage="zk-proof")), FakeRegistry()),
        (FakeProofs(), FakeRegistry(error=ChainSubmissionError("x", broadcast=False))),
    ],
)
async def test_status_path_is_forward_only(proofs, registry):
    pipeline = make_pipeline(proofs, registry)
    rec = pipeline.create_witness("CA123", _summary())
    await pipeline.wait_idle()

    path = pipeline.store.history[rec.id]
    _assert_legal_path(path)
    assert path[-1].terminal


@pytest.mark.asyncio
async def test_reason_is_truncated_for_chain():
    registry = FakeRegistry()
    pipeline = make_pipeline(registry=registry, policy=AttestationPolicy(reason_max_bytes=20))

    pipeline.create_witness("CA123", _summary(reason="Caller asked for bank details repeatedly and hung up"))
    await pipeline.wait_idle()

    reason = registry.submissions[0].reason
    assert len(reason) == 20
    assert reason.endswith("...")


@pytest.mark.asyncio
async def test_fixed_oracle_source_and_per_witness_override():
    proofs = FakeProofs()
    pipeline = make_pipeline(proofs, policy=AttestationPolicy(proof_source_url="https://oracle.test/price"))

    pipeline.create_witness("CA1", _summary(call_id="CA1"))
    override = _summary(call_id="CA2").model_copy(update={"source_url": "https://other.test/CA2"})
    pipeline.create_witness("CA2", override)
    await pipeline.wait_idle()

    web_urls = sorted(url for kind, url in proofs.calls if kind == "web")
    assert web_urls == ["https://oracle.test/price", "https://other.test/CA2"]


@pytest.mark.asyncio
async def test_same_call_can_have_several_witnesses():
    pipeline = make_pipeline()

    first = pipeline.create_witness("CA123", _summary())
    await pipeline.wait_idle()
    second = pipeline.create_witness("CA123", _summary())
    await pipeline.wait_idle()

    assert first.id != second.id
    assert len(pipeline.store.list_by_call_id("CA123")) == 2
    assert pipeline.store.get_by_call_id("CA123").id == second.id


@pytest.mark.asyncio
async def test_independent_witnesses_run_concurrently():
    gate = asyncio.Event()
    pipeline = make_pipeline(FakeProofs(gate=gate))

    ids = [pipeline.create_witness(f"CA{i}", _summary(call_id=f"CA{i}")).id for i in range(5)]
    assert pipeline.in_flight == 5
    gate.set()
    await pipeline.wait_idle()

    assert all(pipeline.store.get(i).status is S.on_chain_complete for i in ids)


def test_create_witness_needs_running_loop_in_inline_mode():
    pipeline = make_pipeline()
    with pytest.raises(RuntimeError):
        pipeline.create_witness("CA123", _summary())
    assert pipeline.store.get_all() == []


def test_celery_mode_dispatches_task(monkeypatch):
    task = MagicMock()
    monkeypatch.setattr(pipeline_mod, "task_attest", task)
    pipeline = make_pipeline(mode="celery")

    rec = pipeline.create_witness("CA123", _summary())

    assert rec.status is S.pending
    args = task.apply_async.call_args.kwargs["args"]
    assert args[0] == rec.id
    assert args[1]["call_id"] == "CA123"
    assert args[1]["decision"] == "BLOCK"


def test_celery_dispatch_failure_marks_witness_failed(monkeypatch):
    task = MagicMock()
    task.apply_async.side_effect = OperationalError("broker down")
    monkeypatch.setattr(pipeline_mod, "task_attest", task)
    pipeline = make_pipeline(mode="celery")

    rec = pipeline.create_witness("CA123", _summary())

    assert rec.status is S.failed
    assert "dispatch failed" in rec.error


def test_unknown_mode_rejected():
    with pytest.raises(ValueError):
        make_pipeline(mode="threads")


@pytest.mark.asyncio
async def test_archiver_gets_final_record_and_its_failure_is_contained():
    archived = []
    pipeline = make_pipeline(archiver=archived.append)
    rec = pipeline.create_witness("CA123", _summary())
    await pipeline.wait_idle()
    assert [r.status for r in archived] == [S.on_chain_complete]
    assert archived[0].id == rec.id

    def broken(record):
        raise StorageError("bucket missing")

    pipeline = make_pipeline(archiver=broken)
    rec = pipeline.create_witness("CA123", _summary())
    await pipeline.wait_idle()
    assert pipeline.store.get(rec.id).status is S.on_chain_complete


def test_should_attest_follows_policy():
    pipeline = make_pipeline()
    assert pipeline.should_attest("BLOCK")
    assert pipeline.should_attest("record")
    assert not pipeline.should_attest("ACCEPT")

    pipeline = make_pipeline(policy=AttestationPolicy(attested_decisions=["ACCEPT", "BLOCK", "RECORD"]))
    assert pipeline.should_attest("ACCEPT")


def test_policy_loads_yaml_and_env_overrides(tmp_path, monkeypatch):
    cfg = tmp_path / "attestation.yaml"
    cfg.write_text(
        "proof_fields: [decision, reason]\n"
        "attested_decisions: [BLOCK]\n"
        "reason_max_bytes: 64\n",
        encoding="utf-8",
    )
    monkeypatch.delenv("VLAYER_PROOF_JMESPATH", raising=False)
    monkeypatch.delenv("ATTESTED_DECISIONS", raising=False)
    monkeypatch.delenv("PROOF_SOURCE_URL", raising=False)

    policy = AttestationPolicy.load(str(cfg))
    assert policy.proof_fields == ["decision", "reason"]
    assert policy.attested_decisions == ["BLOCK"]
    assert policy.reason_max_bytes == 64

    monkeypatch.setenv("VLAYER_PROOF_JMESPATH", "price, symbol")
    monkeypatch.setenv("ATTESTED_DECISIONS", "BLOCK,RECORD,ACCEPT")
    policy = AttestationPolicy.load(str(cfg))
    assert policy.proof_fields == ["price", "symbol"]
    assert policy.attested_decisions == ["BLOCK", "RECORD", "ACCEPT"]


def test_repo_policy_file_matches_defaults(monkeypatch):
    for var in ("VLAYER_PROOF_JMESPATH", "ATTESTED_DECISIONS", "PROOF_SOURCE_URL", "ATTESTATION_CONFIG_PATH"):
        monkeypatch.delenv(var, raising=False)
    assert AttestationPolicy.load() == AttestationPolicy()


def test_hash_caller_is_short_and_stable():
    h = hash_caller("+15550100123")
    assert len(h) == 16
    assert h == hash_caller("+15550100123")
    assert h != hash_caller("+15550100124")
