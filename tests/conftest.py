"""Shared fixtures: an in-memory jobs repository with compare-and-set semantics and settings helpers."""

from __future__ import annotations

import asyncio
from collections.abc import Iterable, Mapping
from dataclasses import replace
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from clipline.config import Settings
from clipline.jobs.circuit_breaker import reset_breakers_for_testing
from clipline.jobs.errors import ConflictError, JobNotFoundError
from clipline.jobs.models import JobEventRecord, JobRecord, JobStatus
from clipline.storage.jobs_repo import validate_update_fields

BASE_TIME = datetime(2026, 1, 1, 12, 0, tzinfo=UTC)


def make_settings(**overrides: Any) -> Settings:
  values: dict[str, Any] = {
    "environment": "test",
    "debug": False,
    "log_dir": "./logs",
    "log_max_bytes": 1024 * 1024,
    "log_backup_count": 1,
    "pg_dsn": None,
    "pg_connect_timeout": 5,
    "max_job_attempts": 3,
    "job_retry_base_ms": 1000,
    "job_retry_max_ms": 60000,
    "breaker_failure_threshold": 3,
    "breaker_cooldown_ms": 30000,
    "breaker_overrides": {},
    "worker_poll_ms": 10,
    "worker_batch_size": 5,
    "worker_max_concurrency": 2,
    "worker_job_max_runtime_ms": 60000,
    "task_secret": "test-secret",
  }
  values.update(overrides)
  return Settings(**values)


def make_job(job_id: str = "job-1", *, status: JobStatus = "pending", job_kind: str = "script_generation", **fields: Any) -> JobRecord:
  return JobRecord(job_id=job_id, job_kind=job_kind, status=status, created_at=BASE_TIME, updated_at=BASE_TIME, **fields)


class FakeClock:
  """Settable wall clock for executor and retry tests."""

  def __init__(self, now: datetime = BASE_TIME) -> None:
    self.now = now

  def __call__(self) -> datetime:
    return self.now

  def advance(self, **delta: float) -> None:
    self.now = self.now + timedelta(**delta)


class InMemoryJobsRepo:
  """In-memory jobs repository mirroring the Postgres compare-and-set contract."""

  def __init__(self) -> None:
    self._jobs: dict[str, JobRecord] = {}
    self._events: list[JobEventRecord] = []
    self._lock = asyncio.Lock()
    self.update_calls = 0

  async def create_job(self, record: JobRecord) -> None:
    async with self._lock:
      self._jobs[record.job_id] = record
      self._events.append(JobEventRecord(job_id=record.job_id, event_type="created", message=f"Job created ({record.job_kind})", to_status=record.status))

  async def get_job(self, job_id: str) -> JobRecord | None:
    return self._jobs.get(job_id)

  async def update_job(self, job_id: str, fields: Mapping[str, Any], *, expected_status: JobStatus, event: JobEventRecord | None = None) -> JobRecord:
    validate_update_fields(fields)
    async with self._lock:
      self.update_calls += 1
      record = self._jobs.get(job_id)
      if record is None:
        raise JobNotFoundError(job_id)
      if record.status != expected_status:
        raise ConflictError(job_id, expected_status, record.status)
      updated = replace(record, **dict(fields), updated_at=datetime.now(UTC))
      self._jobs[job_id] = updated
      if event is not None:
        self._events.append(event)
      return updated

  async def find_due(self, now: datetime, *, job_kinds: Iterable[str] | None = None, limit: int = 5) -> list[JobRecord]:
    kinds = set(job_kinds) if job_kinds is not None else None
    due = [job for job in self._jobs.values() if job.status == "pending" and (job.next_run_at is None or job.next_run_at <= now) and (kinds is None or job.job_kind in kinds)]
    return sorted(due, key=lambda job: job.created_at)[:limit]

  async def find_active_by_idempotency_key(self, job_kind: str, idempotency_key: str) -> JobRecord | None:
    for job in self._jobs.values():
      if job.job_kind == job_kind and job.idempotency_key == idempotency_key and job.status in ("pending", "running"):
        return job
    return None

  async def find_failed(self, *, limit: int = 200) -> list[JobRecord]:
    failed = [job for job in self._jobs.values() if job.status == "failed"]
    return sorted(failed, key=lambda job: job.updated_at, reverse=True)[:limit]

  async def list_events(self, *, job_id: str, limit: int = 100) -> list[JobEventRecord]:
    return [event for event in self._events if event.job_id == job_id][-limit:]

  def seed(self, record: JobRecord) -> JobRecord:
    self._jobs[record.job_id] = record
    return record

  def force_status(self, job_id: str, status: JobStatus, **fields: Any) -> None:
    """Simulate a write from another process."""
    self._jobs[job_id] = replace(self._jobs[job_id], status=status, **fields)


@pytest.fixture
def anyio_backend() -> str:
  return "asyncio"


@pytest.fixture
def jobs_repo() -> InMemoryJobsRepo:
  return InMemoryJobsRepo()


@pytest.fixture
def settings() -> Settings:
  return make_settings()


@pytest.fixture
def clock() -> FakeClock:
  return FakeClock()


@pytest.fixture(autouse=True)
def _reset_breakers() -> Iterable[None]:
  reset_breakers_for_testing()
  yield
  reset_breakers_for_testing()
