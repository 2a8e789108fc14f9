# backend/vericall/routes/verify.py
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException

from ..deps import decision_store_dep, registry_dep, witness_store_dep
from ..errors import ChainSubmissionError, ConfigurationError, StorageError
from ..schemas.decision import CallVerification
from ..schemas.proof import RegistryStats
from ..schemas.witness import WitnessStatus, WitnessVerification
from ..services.chain import RegistryClient
from ..services.decisions import DecisionStore
from ..services.witness_store import WitnessStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["verify"])


@router.get("/verify/{call_id}", response_model=CallVerification)
async def verify_call(
    call_id: str,
    decisions: DecisionStore = Depends(decision_store_dep),
    witnesses: WitnessStore = Depends(witness_store_dep),
    registry: RegistryClient = Depends(registry_dep),
) -> CallVerification:
    """
    Best-known attestation state for a call: the live decision (if not yet
    expired) and the newest witness, including the error and whatever proof
    artifacts a failed witness produced before it stopped. When the newest
    witness reached the registry, the record is read back from the contract
    and its journal re-verified.
    """
    try:
        decision = decisions.get(call_id)
    except StorageError as e:
        logger.warning("decision lookup failed for %s: %s", call_id, e)
        decision = None
    records = witnesses.list_by_call_id(call_id)

    if decision is None and not records:
        raise HTTPException(status_code=404, detail="Call not found")

    on_chain = None
    newest = records[0] if records else None
    if newest and newest.status is WitnessStatus.on_chain_complete and newest.on_chain and newest.on_chain.registry_call_id:
        on_chain = await registry.read_back(
            newest.on_chain.registry_call_id, decision.decision.value if decision else None
        )

    return CallVerification(
        call_id=call_id,
        decision=decision.decision if decision else None,
        timestamp=decision.created_at if decision else None,
        witness=WitnessVerification.of(newest) if newest else None,
        witness_count=len(records),
        on_chain=on_chain,
    )


@router.get("/registry/stats", response_model=RegistryStats)
async def registry_stats(registry: RegistryClient = Depends(registry_dep)) -> RegistryStats:
    try:
        return await registry.get_stats()
    except ConfigurationError as e:
        raise HTTPException(status_code=503, detail=e.as_dict())
    except ChainSubmissionError as e:
        logger.error("registry stats failed: %s", e)
        raise HTTPException(status_code=502, detail=e.as_dict())
