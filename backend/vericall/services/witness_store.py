# backend/vericall/services/witness_store.py
from __future__ import annotations

import itertools
import logging
import threading
from typing import Any, Dict, List, Optional, Protocol

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from ..db import SessionLocal
from ..errors import IllegalTransitionError, StorageError, WitnessIdCollisionError
from ..models import WitnessRecordRow
from ..schemas.common import utcnow
from ..schemas.witness import (
    OnChainStage,
    WebProofStage,
    WitnessRecord,
    WitnessStatus,
    ZkProofStage,
)

logger = logging.getLogger(__name__)

_STAGE_FIELDS = {"web_proof", "zk_proof", "on_chain", "error"}


class WitnessStore(Protocol):
    def save(self, record: WitnessRecord) -> None: ...
    def get(self, witness_id: str) -> Optional[WitnessRecord]: ...
    def get_by_call_id(self, call_id: str) -> Optional[WitnessRecord]: ...
    def list_by_call_id(self, call_id: str) -> List[WitnessRecord]: ...
    def get_all(self) -> List[WitnessRecord]: ...
    def update_status(
        self, witness_id: str, status: WitnessStatus, *, force: bool = False, **fields: Any
    ) -> WitnessRecord: ...


def _check_fields(fields: Dict[str, Any]) -> None:
    unknown = set(fields) - _STAGE_FIELDS
    if unknown:
        raise ValueError(f"unknown witness fields: {sorted(unknown)}")


def _check_transition(record: WitnessRecord, status: WitnessStatus, force: bool) -> None:
    if force:
        logger.warning("Administrative override on witness %s: %s -> %s", record.id, record.status.value, status.value)
        return
    if not record.status.can_advance_to(status):
        raise IllegalTransitionError(
            f"witness {record.id}: illegal transition {record.status.value} -> {status.value}",
            witness_id=record.id,
        )


def _newest_first(rows) -> List[WitnessRecord]:
    return [r for r, _ in sorted(rows, key=lambda p: (p[0].created_at, p[1]), reverse=True)]


class InMemoryWitnessStore:
    """Process-local witness records. Readers always get copies."""

    def __init__(self):
        self._records: Dict[str, WitnessRecord] = {}
        # insertion sequence, breaks created_at ties newest-first
        self._seq: Dict[str, int] = {}
        self._counter = itertools.count()
        self._lock = threading.Lock()

    def save(self, record: WitnessRecord) -> None:
        with self._lock:
            if record.id in self._records:
                raise WitnessIdCollisionError(f"witness id collision: {record.id}", witness_id=record.id)
            self._records[record.id] = record.model_copy(deep=True)
            self._seq[record.id] = next(self._counter)
        logger.info("Witness recorded: %s %s", record.id, record.status.value)

    def get(self, witness_id: str) -> Optional[WitnessRecord]:
        with self._lock:
            rec = self._records.get(witness_id)
            return rec.model_copy(deep=True) if rec else None

    def list_by_call_id(self, call_id: str) -> List[WitnessRecord]:
        with self._lock:
            rows = [
                (r.model_copy(deep=True), self._seq[r.id]) for r in self._records.values() if r.call_id == call_id
            ]
        return _newest_first(rows)

    def get_by_call_id(self, call_id: str) -> Optional[WitnessRecord]:
        rows = self.list_by_call_id(call_id)
        return rows[0] if rows else None

    def get_all(self) -> List[WitnessRecord]:
        with self._lock:
            rows = [(r.model_copy(deep=True), self._seq[r.id]) for r in self._records.values()]
        return _newest_first(rows)

    def update_status(
        self, witness_id: str, status: WitnessStatus, *, force: bool = False, **fields: Any
    ) -> WitnessRecord:
        _check_fields(fields)
        with self._lock:
            current = self._records.get(witness_id)
            if current is None:
                raise StorageError(f"unknown witness {witness_id}", witness_id=witness_id)
            _check_transition(current, status, force)
            updated = current.model_copy(update={**fields, "status": status, "updated_at": utcnow()}, deep=True)
            self._records[witness_id] = updated
            return updated.model_copy(deep=True)


class SqlWitnessStore:
    """Same contract as InMemoryWitnessStore, backed by the witness_records table.

    Used when the pipeline runs in a Celery worker, i.e. in another process.
    """

    def __init__(self, session_factory: sessionmaker[Session] = SessionLocal):
        self._session_factory = session_factory

    @staticmethod
    def _to_record(row: WitnessRecordRow) -> WitnessRecord:
        return WitnessRecord(
            id=row.id,
            call_id=row.call_id,
            status=WitnessStatus(row.status),
            created_at=row.created_at,
            updated_at=row.updated_at,
            web_proof=WebProofStage.model_validate(row.web_proof) if row.web_proof else None,
            zk_proof=ZkProofStage.model_validate(row.zk_proof) if row.zk_proof else None,
            on_chain=OnChainStage.model_validate(row.on_chain) if row.on_chain else None,
            error=row.error,
        )

    @staticmethod
    def _dump(stage) -> Optional[dict]:
        return stage.model_dump(mode="json") if stage is not None else None

    def save(self, record: WitnessRecord) -> None:
        db = self._session_factory()
        try:
            db.add(WitnessRecordRow(
                id=record.id,
                call_id=record.call_id,
                status=record.status.value,
                web_proof=self._dump(record.web_proof),
                zk_proof=self._dump(record.zk_proof),
                on_chain=self._dump(record.on_chain),
                error=record.error,
                created_at=record.created_at,
                updated_at=record.updated_at,
            ))
            db.commit()
        except IntegrityError as e:
            db.rollback()
            raise WitnessIdCollisionError(f"witness id collision: {record.id}", witness_id=record.id) from e
        except SQLAlchemyError as e:
            db.rollback()
            raise StorageError(f"failed to save witness {record.id}: {e}") from e
        finally:
            db.close()
        logger.info("Witness recorded: %s %s", record.id, record.status.value)

    def _query(self, stmt) -> List[WitnessRecord]:
        db = self._session_factory()
        try:
            return [self._to_record(r) for r in db.execute(stmt).scalars().all()]
        except SQLAlchemyError as e:
            raise StorageError(f"failed to read witness records: {e}") from e
        finally:
            db.close()

    def get(self, witness_id: str) -> Optional[WitnessRecord]:
        rows = self._query(select(WitnessRecordRow).where(WitnessRecordRow.id == witness_id))
        return rows[0] if rows else None

    def list_by_call_id(self, call_id: str) -> List[WitnessRecord]:
        return self._query(
            select(WitnessRecordRow)
            .where(WitnessRecordRow.call_id == call_id)
            .order_by(WitnessRecordRow.created_at.desc())
        )

    def get_by_call_id(self, call_id: str) -> Optional[WitnessRecord]:
        rows = self.list_by_call_id(call_id)
        return rows[0] if rows else None

    def get_all(self) -> List[WitnessRecord]:
        return self._query(select(WitnessRecordRow).order_by(WitnessRecordRow.created_at.desc()))

    def update_status(
        self, witness_id: str, status: WitnessStatus, *, force: bool = False, **fields: Any
    ) -> WitnessRecord:
        _check_fields(fields)
        db = self._session_factory()
        try:
            row = db.get(WitnessRecordRow, witness_id, with_for_update=True)
            if row is None:
                raise StorageError(f"unknown witness {witness_id}", witness_id=witness_id)
            _check_transition(self._to_record(row), status, force)
            row.status = status.value
            row.updated_at = utcnow()
            for name, value in fields.items():
                setattr(row, name, self._dump(value) if name != "error" else value)
            updated = self._to_record(row)
            db.commit()
            return updated
        except SQLAlchemyError as e:
            db.rollback()
            raise StorageError(f"failed to update witness {witness_id}: {e}") from e
        finally:
            db.close()
