from sqlalchemy import String, Integer, DateTime, Text, JSON
from sqlalchemy.orm import Mapped, mapped_column
from datetime import datetime
import uuid
from .db import Base

def _id(prefix="id"): return f"{prefix}_{uuid.uuid4().hex[:10]}"

class DecisionRecordRow(Base):
    __tablename__ = "decision_records"
    call_id: Mapped[str] = mapped_column(String, primary_key=True)
    decision: Mapped[str] = mapped_column(String)
    reason: Mapped[str] = mapped_column(Text, default="")
    transcript: Mapped[str] = mapped_column(Text, default="")
    policy_hash: Mapped[str] = mapped_column(String(64))
    source_version: Mapped[str] = mapped_column(String, default="unknown")
    caller_hash_short: Mapped[str] = mapped_column(String, default="")
    conversation_turns: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime)
    expires_at: Mapped[datetime] = mapped_column(DateTime, index=True)

class WitnessRecordRow(Base):
    # durable variant of the witness store; stage payloads are kept as JSON
    __tablename__ = "witness_records"
    id: Mapped[str] = mapped_column(String, primary_key=True)
    call_id: Mapped[str] = mapped_column(String, index=True)
    status: Mapped[str] = mapped_column(String, default="pending")
    web_proof: Mapped[dict | None] = mapped_column(JSON, default=None)
    zk_proof: Mapped[dict | None] = mapped_column(JSON, default=None)
    on_chain: Mapped[dict | None] = mapped_column(JSON, default=None)
    error: Mapped[str | None] = mapped_column(Text, default=None)
    created_at: Mapped[datetime] = mapped_column(DateTime)
    updated_at: Mapped[datetime | None] = mapped_column(DateTime, default=None)
