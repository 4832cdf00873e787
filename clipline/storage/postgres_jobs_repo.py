"""Postgres-backed repository for pipeline jobs using SQLAlchemy."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from datetime import datetime
from typing import Any

from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from clipline.core.database import get_session_factory
from clipline.jobs.errors import ConflictError, JobNotFoundError
from clipline.jobs.models import JobEventRecord, JobRecord, JobStatus
from clipline.schema.jobs import Job, JobEvent
from clipline.storage.jobs_repo import JobsRepository, validate_update_fields

ACTIVE_STATUSES = ("pending", "running")


class PostgresJobsRepository(JobsRepository):
  """Persist jobs and their audit events to Postgres using SQLAlchemy."""

  def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
    self._session_factory = session_factory or get_session_factory()
    if self._session_factory is None:
      raise RuntimeError("Database not initialized")

  async def create_job(self, record: JobRecord) -> None:
    async with self._session_factory() as session:
      job = Job(
        job_id=record.job_id,
        job_kind=record.job_kind,
        user_id=record.user_id,
        status=record.status,
        payload_json=record.payload,
        attempts=record.attempts,
        last_error=record.last_error,
        next_run_at=record.next_run_at,
        error=record.error,
        result_summary=record.result_summary,
        result_json=record.result_json,
        idempotency_key=record.idempotency_key,
        created_at=record.created_at,
        updated_at=record.updated_at,
      )
      session.add(job)
      session.add(JobEvent(job_id=record.job_id, event_type="created", message=f"Job created ({record.job_kind})", from_status=None, to_status=record.status))
      await session.commit()

  async def get_job(self, job_id: str) -> JobRecord | None:
    async with self._session_factory() as session:
      row = await session.get(Job, job_id)
      if row is None:
        return None
      return self._model_to_record(row)

  async def update_job(self, job_id: str, fields: Mapping[str, Any], *, expected_status: JobStatus, event: JobEventRecord | None = None) -> JobRecord:
    validate_update_fields(fields)
    async with self._session_factory() as session:
      # The status predicate makes this a single-statement compare-and-set.
      stmt = update(Job).where(Job.job_id == job_id, Job.status == expected_status).values(**dict(fields), updated_at=func.now()).returning(Job).execution_options(synchronize_session=False)
      row = (await session.execute(stmt)).scalar_one_or_none()
      if row is None:
        await session.rollback()
        actual = await session.scalar(select(Job.status).where(Job.job_id == job_id))
        if actual is None:
          raise JobNotFoundError(job_id)
        raise ConflictError(job_id, expected_status, actual)

      if event is not None:
        session.add(JobEvent(job_id=job_id, event_type=event.event_type, message=event.message, from_status=event.from_status, to_status=event.to_status))
      record = self._model_to_record(row)
      await session.commit()
      return record

  async def find_due(self, now: datetime, *, job_kinds: Iterable[str] | None = None, limit: int = 5) -> list[JobRecord]:
    async with self._session_factory() as session:
      stmt = select(Job).where(Job.status == "pending", or_(Job.next_run_at.is_(None), Job.next_run_at <= now))
      if job_kinds is not None:
        stmt = stmt.where(Job.job_kind.in_(list(job_kinds)))
      stmt = stmt.order_by(Job.created_at.asc()).limit(limit)
      rows = (await session.execute(stmt)).scalars().all()
      return [self._model_to_record(row) for row in rows]

  async def find_active_by_idempotency_key(self, job_kind: str, idempotency_key: str) -> JobRecord | None:
    async with self._session_factory() as session:
      stmt = select(Job).where(Job.job_kind == job_kind, Job.idempotency_key == idempotency_key, Job.status.in_(ACTIVE_STATUSES)).order_by(Job.created_at.desc()).limit(1)
      row = (await session.execute(stmt)).scalar_one_or_none()
      if row is None:
        return None
      return self._model_to_record(row)

  async def find_failed(self, *, limit: int = 200) -> list[JobRecord]:
    async with self._session_factory() as session:
      stmt = select(Job).where(Job.status == "failed").order_by(Job.updated_at.desc()).limit(limit)
      rows = (await session.execute(stmt)).scalars().all()
      return [self._model_to_record(row) for row in rows]

  async def list_events(self, *, job_id: str, limit: int = 100) -> list[JobEventRecord]:
    async with self._session_factory() as session:
      stmt = select(JobEvent).where(JobEvent.job_id == job_id).order_by(JobEvent.created_at.desc(), JobEvent.id.desc()).limit(limit)
      rows = (await session.execute(stmt)).scalars().all()
      return [self._event_to_record(row) for row in reversed(rows)]

  def _event_to_record(self, row: JobEvent) -> JobEventRecord:
    return JobEventRecord(
      job_id=row.job_id,
      event_type=row.event_type,
      message=row.message,
      from_status=row.from_status,
      to_status=row.to_status,
      created_at=row.created_at,
    )

  def _model_to_record(self, row: Job) -> JobRecord:
    return JobRecord(
      job_id=row.job_id,
      job_kind=row.job_kind,
      status=row.status,  # type: ignore[arg-type]
      created_at=row.created_at,
      updated_at=row.updated_at,
      payload=dict(row.payload_json or {}),
      user_id=row.user_id,
      idempotency_key=row.idempotency_key,
      attempts=int(row.attempts or 0),
      last_error=row.last_error,
      next_run_at=row.next_run_at,
      error=row.error,
      result_summary=row.result_summary,
      result_json=row.result_json,
    )
