"""Job status transitions and the guarded writer that applies them."""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from typing import Any

from clipline.jobs.errors import ConflictError, InvalidTransitionError, JobNotFoundError, TerminalStateViolationError
from clipline.jobs.models import TERMINAL_STATUSES, JobEventRecord, JobRecord, JobStatus
from clipline.storage.jobs_repo import JobsRepository

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
  "pending": frozenset({"running", "failed"}),
  # running -> pending is reserved for the retry engine rescheduling a failed attempt under backoff.
  "running": frozenset({"completed", "failed", "pending"}),
  "completed": frozenset(),
  # Only the operator reset leaves a terminal state.
  "failed": frozenset({"pending"}),
}

_EVENT_TYPES: dict[tuple[str, str], str] = {
  ("pending", "running"): "started",
  ("pending", "failed"): "failed",
  ("running", "completed"): "completed",
  ("running", "failed"): "failed",
  ("running", "pending"): "retry_scheduled",
  ("failed", "pending"): "manual_reset",
}

FieldsArg = Mapping[str, Any] | Callable[[JobRecord], Mapping[str, Any]] | None


def can_transition(current: str, proposed: str) -> bool:
  return proposed in ALLOWED_TRANSITIONS.get(current, frozenset())


def is_terminal(status: str) -> bool:
  return status in TERMINAL_STATUSES


def assert_valid_transition(job_id: str, current: str, proposed: str) -> None:
  """Raise TerminalStateViolationError or InvalidTransitionError unless the edge is allowed."""
  if can_transition(current, proposed):
    return
  if is_terminal(current):
    raise TerminalStateViolationError(job_id, current, proposed)
  raise InvalidTransitionError(job_id, current, proposed)


class JobStateMachine:
  """
  Applies validated status transitions through the repository's compare-and-set write.

  Every write re-reads the job, validates the edge against the fresh status and then updates
  with that status as the expected value, so concurrent writers cannot both win. A lost race is
  retried from a fresh read a bounded number of times. Each applied transition is written with
  an audit event in the same storage call.
  """

  def __init__(self, jobs_repo: JobsRepository, *, max_conflict_retries: int = 3) -> None:
    self._jobs_repo = jobs_repo
    self._max_conflict_retries = max_conflict_retries

  async def apply(
    self,
    job_id: str,
    proposed: JobStatus,
    fields: FieldsArg = None,
    *,
    expected_status: JobStatus | None = None,
    event_type: str | None = None,
    message: str | None = None,
  ) -> JobRecord:
    """
    Move `job_id` to `proposed`, writing `fields` alongside the status.

    `fields` may be a callable receiving the freshly read record, for updates derived from the
    current row (such as incrementing attempts). `expected_status` pins the status the caller
    observed; a mismatch raises ConflictError instead of re-validating.
    """
    lost_races = 0
    while True:
      job = await self._jobs_repo.get_job(job_id)
      if job is None:
        raise JobNotFoundError(job_id)
      if expected_status is not None and job.status != expected_status:
        raise ConflictError(job_id, expected_status, job.status)

      assert_valid_transition(job_id, job.status, proposed)

      values = dict(fields(job) if callable(fields) else (fields or {}))
      values["status"] = proposed
      event = JobEventRecord(
        job_id=job_id,
        event_type=event_type or _EVENT_TYPES.get((job.status, proposed), "transition"),
        message=message or f"{job.status} -> {proposed}",
        from_status=job.status,
        to_status=proposed,
      )

      try:
        updated = await self._jobs_repo.update_job(job_id, values, expected_status=job.status, event=event)
      except ConflictError as exc:
        lost_races += 1
        logger.info("Job transition raced job_id=%s expected=%s actual=%s lost_races=%s", job_id, exc.expected_status, exc.actual_status, lost_races)
        if lost_races > self._max_conflict_retries:
          raise
        continue

      logger.info("Job transition job_id=%s from=%s to=%s attempts=%s", job_id, job.status, proposed, updated.attempts)
      return updated
