# backend/vericall/services/decisions.py
from __future__ import annotations

import hashlib
import logging
import os
from collections import OrderedDict
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from sqlalchemy import delete, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from ..db import SessionLocal
from ..errors import StorageError
from ..models import DecisionRecordRow
from ..schemas.common import isoformat_z, utcnow
from ..schemas.decision import DecisionIn, DecisionRecord

logger = logging.getLogger(__name__)

DECISION_TTL_SECONDS = int(os.getenv("DECISION_TTL_SECONDS", "3600"))
SCREENING_POLICY_PATH = os.getenv("SCREENING_POLICY_PATH", "")
SOURCE_CODE_COMMIT = os.getenv("SOURCE_CODE_COMMIT") or "unknown"

SERVICE_NAME = "VeriCall"
DOCUMENT_VERSION = "1.0"

DEFAULT_SCREENING_POLICY = (
    "You are VeriCall, a phone screening assistant. Ask the caller who they are "
    "and why they are calling. Decide BLOCK for spam, scams and robocalls, "
    "RECORD when the caller should leave a message, and ACCEPT only for callers "
    "with a clear, legitimate reason to reach the owner now. Give a short reason."
)


def load_policy_text() -> str:
    """Screening policy currently in effect: the file at SCREENING_POLICY_PATH, or the built-in prompt."""
    if SCREENING_POLICY_PATH:
        return Path(SCREENING_POLICY_PATH).read_text(encoding="utf-8")
    return DEFAULT_SCREENING_POLICY


def policy_hash(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def _insert_for(dialect_name: str):
    if dialect_name == "postgresql":
        return postgresql.insert
    if dialect_name == "sqlite":
        return sqlite.insert
    raise StorageError(f"no atomic upsert for dialect {dialect_name!r}")


class DecisionStore:
    """Time-bounded decision snapshots, one live row per call id.

    ``put`` is a single ``INSERT ... ON CONFLICT DO UPDATE`` so concurrent
    writers for the same call id never interleave; the last write wins.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session] = SessionLocal,
        *,
        ttl_seconds: int = DECISION_TTL_SECONDS,
        policy_text: Callable[[], str] = load_policy_text,
        source_version: str = SOURCE_CODE_COMMIT,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._session_factory = session_factory
        self.ttl = timedelta(seconds=ttl_seconds)
        self._policy_text = policy_text
        self.source_version = source_version or "unknown"
        self._clock = clock

    def put(self, decision: DecisionIn) -> DecisionRecord:
        now = self._clock()
        values: Dict[str, Any] = {
            "call_id": decision.call_id,
            "decision": decision.decision.value,
            "reason": decision.reason,
            "transcript": decision.transcript,
            "policy_hash": policy_hash(self._policy_text()),
            "source_version": self.source_version,
            "caller_hash_short": decision.caller_hash_short,
            "conversation_turns": decision.conversation_turns,
            "created_at": now,
            "expires_at": now + self.ttl,
        }
        db = self._session_factory()
        try:
            insert = _insert_for(db.get_bind().dialect.name)
            stmt = insert(DecisionRecordRow).values(**values)
            stmt = stmt.on_conflict_do_update(
                index_elements=[DecisionRecordRow.call_id],
                set_={k: stmt.excluded[k] for k in values if k != "call_id"},
            )
            db.execute(stmt)
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            raise StorageError(f"failed to store decision for {decision.call_id}: {e}") from e
        finally:
            db.close()

        logger.info("Stored decision for %s: %s", decision.call_id, decision.decision.value)
        return DecisionRecord(**values)

    def get(self, call_id: str) -> Optional[DecisionRecord]:
        """Live record for ``call_id``; ``None`` when missing or expired."""
        db = self._session_factory()
        try:
            row = db.execute(
                select(DecisionRecordRow).where(
                    DecisionRecordRow.call_id == call_id,
                    DecisionRecordRow.expires_at > self._clock(),
                )
            ).scalar_one_or_none()
        except SQLAlchemyError as e:
            raise StorageError(f"failed to load decision for {call_id}: {e}") from e
        finally:
            db.close()

        if row is None:
            return None
        return DecisionRecord(
            call_id=row.call_id,
            decision=row.decision,
            reason=row.reason,
            transcript=row.transcript,
            policy_hash=row.policy_hash,
            source_version=row.source_version or "unknown",
            caller_hash_short=row.caller_hash_short,
            conversation_turns=row.conversation_turns,
            created_at=row.created_at,
            expires_at=row.expires_at,
        )

    def purge_expired(self) -> int:
        db = self._session_factory()
        try:
            res = db.execute(delete(DecisionRecordRow).where(DecisionRecordRow.expires_at <= self._clock()))
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            raise StorageError(f"failed to purge expired decisions: {e}") from e
        finally:
            db.close()
        return res.rowcount or 0


def decision_document(record: DecisionRecord) -> "OrderedDict[str, Any]":
    """
    The JSON served at /api/witness/decision/{call_id}.

    This exact document is what the web prover attests, so the key set and
    order are part of the verified contract. Bump DOCUMENT_VERSION when
    changing either.
    """
    return OrderedDict(
        [
            ("service", SERVICE_NAME),
            ("version", DOCUMENT_VERSION),
            ("callId", record.call_id),
            ("decision", record.decision.value),
            ("reason", record.reason),
            ("transcript", record.transcript),
            ("policyHash", record.policy_hash),
            ("transcriptHash", record.transcript_hash),
            ("callerHashShort", record.caller_hash_short),
            ("timestamp", isoformat_z(record.created_at)),
            ("conversationTurns", record.conversation_turns),
        ]
    )
