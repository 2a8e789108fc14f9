# backend/vericall/services/vlayer.py
from __future__ import annotations
import logging
import os
from typing import Any, Dict, List, Optional

import httpx
from pydantic import ValidationError

from ..errors import ConfigurationError, ProofServiceError
from ..schemas.proof import CompressResult, WebProof, ZkProof

logger = logging.getLogger(__name__)

WEB_PROVER_URL = os.getenv("VLAYER_WEB_PROVER_URL", "https://web-prover.vlayer.xyz")
ZK_PROVER_URL = os.getenv("VLAYER_ZK_PROVER_URL", "https://zk-prover.vlayer.xyz")
VLAYER_API_KEY = os.getenv("VLAYER_API_KEY", "")
VLAYER_CLIENT_ID = os.getenv("VLAYER_CLIENT_ID", "")
# proving over TLSNotary routinely takes tens of seconds
VLAYER_TIMEOUT = float(os.getenv("VLAYER_TIMEOUT_SECONDS", "180"))

STAGE_WEB_PROOF = "web-proof"
STAGE_ZK_PROOF = "zk-proof"


class VlayerClient:
    """
    REST client for the vlayer provers.

    - generate_web_proof: POST {web}/api/v1/prove, TLSNotary attestation of a URL
    - compress_web_proof: POST {zk}/api/v0/compress-web-proof, web proof -> succinct
      ZK proof exposing the fields selected by JMESPath queries

    Every failure is raised as ProofServiceError (or ConfigurationError when
    credentials are missing, before anything goes on the wire).
    """

    def __init__(
        self,
        *,
        web_prover_url: str = WEB_PROVER_URL,
        zk_prover_url: str = ZK_PROVER_URL,
        api_key: str = VLAYER_API_KEY,
        client_id: str = VLAYER_CLIENT_ID,
        timeout: float = VLAYER_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.web_prover_url = web_prover_url.rstrip("/")
        self.zk_prover_url = zk_prover_url.rstrip("/")
        self.api_key = api_key
        self.client_id = client_id
        self.timeout = timeout
        self._transport = transport

    def _headers(self) -> Dict[str, str]:
        if not self.api_key or not self.client_id:
            raise ConfigurationError("vlayer credentials not configured (VLAYER_API_KEY / VLAYER_CLIENT_ID)")
        return {
            "Content-Type": "application/json",
            "x-client-id": self.client_id,
            "Authorization": f"Bearer {self.api_key}",
        }

    async def _post(self, stage: str, url: str, payload: Dict[str, Any]) -> Any:
        headers = self._headers()
        label = "Web Proof" if stage == STAGE_WEB_PROOF else "ZK Proof compression"
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                r = await client.post(url, json=payload, headers=headers)
        except httpx.HTTPError as e:
            raise ProofServiceError(f"{label} request failed: {type(e).__name__}: {e}", stage=stage) from e

        if not r.is_success:
            raise ProofServiceError(
                f"{label} failed ({r.status_code}): {r.text}",
                stage=stage,
                status_code=r.status_code,
                body=r.text,
            )
        try:
            return r.json()
        except ValueError as e:
            raise ProofServiceError(
                f"{label} returned a non-JSON body", stage=stage, status_code=r.status_code, body=r.text
            ) from e

    async def generate_web_proof(self, url: str) -> WebProof:
        data = await self._post(STAGE_WEB_PROOF, f"{self.web_prover_url}/api/v1/prove", {"url": url, "headers": []})
        try:
            proof = WebProof.model_validate(data)
        except ValidationError as e:
            raise ProofServiceError(f"Web Proof response malformed: {e.error_count()} error(s)", stage=STAGE_WEB_PROOF) from e
        logger.debug("web proof for %s: %d chars, notary %s", url, len(proof.data), proof.meta.notary_url)
        return proof

    async def compress_web_proof(self, web_proof: WebProof, jmespath: List[str]) -> ZkProof:
        payload = {
            "presentation": web_proof.model_dump(by_alias=True),
            "extraction": {"response.body": {"jmespath": list(jmespath)}},
        }
        data = await self._post(STAGE_ZK_PROOF, f"{self.zk_prover_url}/api/v0/compress-web-proof", payload)
        try:
            result = CompressResult.model_validate(data)
        except ValidationError as e:
            raise ProofServiceError(f"ZK Proof response malformed: {e.error_count()} error(s)", stage=STAGE_ZK_PROOF) from e

        if not result.success or result.data is None:
            code = result.error.code if result.error else ""
            message = (result.error.message if result.error else "") or "Unknown"
            raise ProofServiceError(
                f"ZK Proof compression error: {message}",
                stage=STAGE_ZK_PROOF,
                body=code or None,
            )
        return ZkProof(seal=result.data.zk_proof, journal_data_abi=result.data.journal_data_abi)
