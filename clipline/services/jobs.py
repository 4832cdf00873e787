"""Operator-facing job operations: enqueue, lookup, reset, cancel and the dead-letter queue."""

from __future__ import annotations

import logging
from typing import Any

from clipline.jobs.errors import InvalidTransitionError, JobNotFoundError
from clipline.jobs.models import JOB_KINDS, JobEventRecord, JobRecord, utc_now
from clipline.jobs.state_machine import JobStateMachine, is_terminal
from clipline.storage.jobs_repo import JobsRepository
from clipline.utils.ids import generate_job_id

logger = logging.getLogger(__name__)


async def enqueue_job(repo: JobsRepository, job_kind: str, payload: dict[str, Any], *, user_id: str | None = None, idempotency_key: str | None = None) -> JobRecord:
  """Create a pending job, or return the active job already holding the idempotency key."""
  if job_kind not in JOB_KINDS:
    raise ValueError(f"Unsupported job kind: {job_kind}")

  if idempotency_key:
    existing = await repo.find_active_by_idempotency_key(job_kind, idempotency_key)
    if existing is not None:
      logger.info("Retrieved existing job %s for idempotency key %s", existing.job_id, idempotency_key)
      return existing

  now = utc_now()
  record = JobRecord(
    job_id=generate_job_id(),
    job_kind=job_kind,
    status="pending",
    created_at=now,
    updated_at=now,
    payload=dict(payload),
    user_id=user_id,
    idempotency_key=idempotency_key,
    attempts=0,
  )
  await repo.create_job(record)
  logger.info("Enqueued job job_id=%s kind=%s user_id=%s", record.job_id, job_kind, user_id)
  return record


async def get_job(repo: JobsRepository, job_id: str) -> JobRecord:
  record = await repo.get_job(job_id)
  if record is None:
    raise JobNotFoundError(job_id)
  return record


async def list_job_events(repo: JobsRepository, job_id: str, *, limit: int = 50) -> list[JobEventRecord]:
  await get_job(repo, job_id)
  return await repo.list_events(job_id=job_id, limit=limit)


async def reset_job(repo: JobsRepository, job_id: str, *, actor: str) -> JobRecord:
  """
  Make a failed job runnable again.

  Clears the error and any backoff but keeps the attempt count, so a job that exhausted its
  retries gets one more attempt per reset. Jobs failed by a configuration error had their count
  zeroed already and start from scratch.
  """
  record = await get_job(repo, job_id)
  if record.status != "failed":
    raise InvalidTransitionError(job_id, record.status, "pending", message=f"Only failed jobs can be reset (job {job_id} is {record.status}).")

  state_machine = JobStateMachine(repo)
  updated = await state_machine.apply(job_id, "pending", {"error": None, "next_run_at": None}, expected_status="failed", message=f"Manual reset by {actor}")
  logger.info("Job reset job_id=%s actor=%s attempts=%s", job_id, actor, updated.attempts)
  return updated


async def cancel_job(repo: JobsRepository, job_id: str, *, reason: str) -> JobRecord:
  """Fail a pending or running job; a running attempt's late completion is then discarded."""
  record = await get_job(repo, job_id)
  if is_terminal(record.status):
    raise InvalidTransitionError(job_id, record.status, "failed", message=f"Job {job_id} is already finalized and cannot be canceled.")

  state_machine = JobStateMachine(repo)
  error = f"Canceled: {reason}"
  updated = await state_machine.apply(job_id, "failed", {"error": error, "next_run_at": None}, event_type="canceled", message=error)
  logger.info("Job canceled job_id=%s reason=%s", job_id, reason)
  return updated


async def list_failed_jobs(repo: JobsRepository, *, limit: int = 200) -> list[JobRecord]:
  """Dead-letter view: failed jobs, most recently updated first."""
  return await repo.find_failed(limit=limit)


async def clear_attempts(repo: JobsRepository, job_id: str, *, actor: str) -> JobRecord:
  """
  Zero the attempt count of a failed job without making it runnable.

  The job stays failed; a later reset then gets the full retry budget. The write is pinned to the
  failed status so a concurrent reset is not overwritten.
  """
  record = await get_job(repo, job_id)
  if record.status != "failed":
    raise InvalidTransitionError(job_id, record.status, record.status, message=f"Only failed jobs can have attempts cleared (job {job_id} is {record.status}).")

  event = JobEventRecord(job_id=job_id, event_type="attempts_cleared", message=f"Attempts cleared by {actor}", from_status="failed", to_status="failed")
  updated = await repo.update_job(job_id, {"attempts": 0, "next_run_at": None}, expected_status="failed", event=event)
  logger.info("Job attempts cleared job_id=%s actor=%s previous_attempts=%s", job_id, actor, record.attempts)
  return updated
