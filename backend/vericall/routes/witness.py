from fastapi import APIRouter, Depends, HTTPException
from ..deps import witness_store_dep
from ..schemas.witness import WitnessList, WitnessRecord, WitnessVerification
from ..services.witness_store import WitnessStore

router = APIRouter(prefix="/witness", tags=["witness"])

@router.get("/list", response_model=WitnessList)
def list_witnesses(store: WitnessStore = Depends(witness_store_dep)):
    records = store.get_all()
    return WitnessList(total=len(records), records=records)

@router.get("/verify/{witness_id}", response_model=WitnessVerification)
def verify_witness(witness_id: str, store: WitnessStore = Depends(witness_store_dep)):
    # accepts a witness id or, failing that, a call id
    record = store.get(witness_id) or store.get_by_call_id(witness_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Witness record not found")
    return WitnessVerification.of(record)

@router.get("/call/{call_id}", response_model=list[WitnessRecord])
def witnesses_for_call(call_id: str, store: WitnessStore = Depends(witness_store_dep)):
    records = store.list_by_call_id(call_id)
    if not records:
        raise HTTPException(status_code=404, detail="No witness for this call")
    return records
