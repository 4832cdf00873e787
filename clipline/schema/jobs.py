from __future__ import annotations

from datetime import datetime

from sqlalchemy import CheckConstraint, DateTime, ForeignKey, Index, Integer, String, Text, func, text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from clipline.core.database import Base


class Job(Base):
  __tablename__ = "jobs"
  __table_args__ = (
    CheckConstraint("status IN ('pending', 'running', 'completed', 'failed')", name="ck_jobs_status"),
    Index("ix_jobs_status_next_run_at", "status", "next_run_at"),
    Index("ix_jobs_kind_idempotency_key", "job_kind", "idempotency_key"),
  )

  job_id: Mapped[str] = mapped_column(String, primary_key=True)
  job_kind: Mapped[str] = mapped_column(String, nullable=False, index=True)
  user_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
  status: Mapped[str] = mapped_column(String, nullable=False)
  payload_json: Mapped[dict] = mapped_column(JSONB, nullable=False)
  attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))
  last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
  next_run_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
  error: Mapped[str | None] = mapped_column(Text, nullable=True)
  result_summary: Mapped[str | None] = mapped_column(Text, nullable=True)
  result_json: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
  idempotency_key: Mapped[str | None] = mapped_column(String, nullable=True)
  created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
  updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class JobEvent(Base):
  __tablename__ = "job_events"

  id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
  job_id: Mapped[str] = mapped_column(ForeignKey("jobs.job_id", ondelete="CASCADE"), nullable=False, index=True)
  event_type: Mapped[str] = mapped_column(String, nullable=False, index=True)
  message: Mapped[str] = mapped_column(Text, nullable=False)
  from_status: Mapped[str | None] = mapped_column(String, nullable=True)
  to_status: Mapped[str | None] = mapped_column(String, nullable=True)
  created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
