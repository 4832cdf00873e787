"""Storage interfaces for pipeline jobs."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from datetime import datetime
from typing import Any, Protocol

from clipline.jobs.models import JobEventRecord, JobRecord, JobStatus

# Columns a status write may touch; job_id, job_kind, payload and created_at are immutable.
UPDATABLE_FIELDS: frozenset[str] = frozenset({"status", "attempts", "last_error", "next_run_at", "error", "result_summary", "result_json"})


def validate_update_fields(fields: Mapping[str, Any]) -> None:
  """Reject writes to columns outside the mutable set."""
  unknown = set(fields) - UPDATABLE_FIELDS
  if unknown:
    raise ValueError(f"Unsupported job update fields: {', '.join(sorted(unknown))}")


class JobsRepository(Protocol):
  """Repository contract for job persistence."""

  async def create_job(self, record: JobRecord) -> None:
    """Persist an initial job record."""

  async def get_job(self, job_id: str) -> JobRecord | None:
    """Fetch a job by identifier."""

  async def update_job(self, job_id: str, fields: Mapping[str, Any], *, expected_status: JobStatus, event: JobEventRecord | None = None) -> JobRecord:
    """
    Compare-and-set update.

    Applies `fields` only while the stored status still equals `expected_status`, writing `event`
    in the same transaction. Raises JobNotFoundError for an unknown id and ConflictError when the
    stored status differs.
    """

  async def find_due(self, now: datetime, *, job_kinds: Iterable[str] | None = None, limit: int = 5) -> list[JobRecord]:
    """Return pending jobs whose next_run_at is unset or not after `now`, oldest first."""

  async def find_active_by_idempotency_key(self, job_kind: str, idempotency_key: str) -> JobRecord | None:
    """Return a pending or running job created with the given (kind, key), if present."""

  async def find_failed(self, *, limit: int = 200) -> list[JobRecord]:
    """Return failed jobs, most recently updated first."""

  async def list_events(self, *, job_id: str, limit: int = 100) -> list[JobEventRecord]:
    """List recent audit events for a job, oldest first."""
