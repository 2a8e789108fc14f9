import os
from fastapi import Header, HTTPException, Request
from .services.chain import RegistryClient
from .services.decisions import DecisionStore
from .services.pipeline import AttestationPipeline
from .services.witness_store import WitnessStore

_API = os.getenv("API_KEY")

def require_api_key(x_api_key: str = Header(None)):
    if _API and x_api_key != _API:
        raise HTTPException(status_code=401, detail="Unauthorized")

def decision_store_dep(request: Request) -> DecisionStore:
    return request.app.state.decisions

def witness_store_dep(request: Request) -> WitnessStore:
    return request.app.state.witnesses

def pipeline_dep(request: Request) -> AttestationPipeline:
    return request.app.state.pipeline

def registry_dep(request: Request) -> RegistryClient:
    return request.app.state.registry
