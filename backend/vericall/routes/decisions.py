# backend/vericall/routes/decisions.py
import logging

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse

from ..deps import decision_store_dep, pipeline_dep, require_api_key
from ..errors import StorageError
from ..schemas.decision import DecisionAccepted, DecisionIn
from ..services.decisions import DecisionStore, decision_document
from ..services.pipeline import AttestationPipeline

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["decisions"])


@router.post("/decisions", response_model=DecisionAccepted, dependencies=[Depends(require_api_key)])
async def submit_decision(
    body: DecisionIn,
    decisions: DecisionStore = Depends(decision_store_dep),
    pipeline: AttestationPipeline = Depends(pipeline_dep),
):
    """Intake for a finalized screening decision: store it, then attest it if configured to."""
    try:
        record = decisions.put(body)
    except StorageError as e:
        logger.error("decision intake failed for %s: %s", body.call_id, e)
        raise HTTPException(status_code=503, detail="Decision store unavailable")

    if not pipeline.should_attest(record.decision.value):
        return DecisionAccepted(call_id=record.call_id, decision=record.decision, attested=False)

    witness = pipeline.create_witness(record.call_id, record.summary())
    return DecisionAccepted(call_id=record.call_id, decision=record.decision, attested=True, witness=witness)


@router.get("/witness/decision/{call_id}")
def decision_for_proof(call_id: str, decisions: DecisionStore = Depends(decision_store_dep)):
    """
    The document the web prover attests. TLSNotary proves this server
    returned exactly these bytes, so field set and order must stay stable.
    """
    try:
        record = decisions.get(call_id)
    except StorageError as e:
        logger.error("decision lookup failed for %s: %s", call_id, e)
        raise HTTPException(status_code=503, detail="Decision unavailable")
    if record is None:
        raise HTTPException(status_code=404, detail="Decision not found or expired")
    return JSONResponse(content=decision_document(record), headers={"Cache-Control": "no-store"})
