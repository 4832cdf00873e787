"""Run one job attempt end to end: claim, invoke, then complete or hand off to the retry engine."""

from __future__ import annotations

import json
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any

from clipline.jobs.classifier import describe_error
from clipline.jobs.errors import ConflictError, InvalidTransitionError, JobNotFoundError
from clipline.jobs.models import JobRecord, RunOutcome, WorkResult, utc_now
from clipline.jobs.retry import RetryEngine
from clipline.jobs.state_machine import JobStateMachine
from clipline.storage.jobs_repo import JobsRepository

logger = logging.getLogger(__name__)

WorkFn = Callable[[], Awaitable[Any]]


def _to_json_value(value: Any) -> Any:
  """Round-trip through JSON so stored results never hold live objects."""
  return json.loads(json.dumps(value, default=str))


class JobExecutor:
  """
  Executes a single job attempt.

  Expected failure paths (already done, in backoff, claimed by someone else, work failures)
  come back as a RunOutcome. Only programmer errors raise: an unknown job id or a transition the
  state machine rejects outright. Task cancellation propagates and leaves the job running so
  the next delivery resumes it.
  """

  def __init__(
    self,
    jobs_repo: JobsRepository,
    *,
    retry_engine: RetryEngine,
    state_machine: JobStateMachine | None = None,
    clock: Callable[[], datetime] = utc_now,
  ) -> None:
    self._jobs_repo = jobs_repo
    self._retry_engine = retry_engine
    self._state_machine = state_machine or JobStateMachine(jobs_repo)
    self._clock = clock

  async def run(self, job_id: str, work_fn: WorkFn) -> RunOutcome:
    job = await self._jobs_repo.get_job(job_id)
    if job is None:
      raise JobNotFoundError(job_id)

    skipped = self._skip_reason(job)
    if skipped is not None:
      return skipped

    if job.status == "pending":
      claimed = await self._claim(job)
      if isinstance(claimed, RunOutcome):
        return claimed
      job = claimed
    else:
      logger.info("Resuming running job job_id=%s attempts=%s", job.job_id, job.attempts)

    try:
      result = await work_fn()
    except Exception as exc:  # noqa: BLE001
      error = describe_error(exc)
      decision = await self._retry_engine.record_failure(job.job_id, exc)
      return RunOutcome(ok=False, error=error, retry=decision, next_run_at=decision.next_run_at)

    return await self._complete(job, result)

  def _skip_reason(self, job: JobRecord) -> RunOutcome | None:
    if job.status == "completed":
      return RunOutcome(ok=True, result=job.result_json, skipped="already_completed")
    if job.status == "failed":
      return RunOutcome(ok=False, error=job.error, skipped="already_failed")
    if job.backoff_active(self._clock()):
      logger.debug("Job in backoff job_id=%s next_run_at=%s", job.job_id, job.next_run_at)
      return RunOutcome(ok=False, skipped="backoff_active", next_run_at=job.next_run_at)
    return None

  async def _claim(self, job: JobRecord) -> JobRecord | RunOutcome:
    """pending -> running with the attempt counted in the same write."""
    try:
      return await self._state_machine.apply(
        job.job_id,
        "running",
        lambda current: {"attempts": current.attempts + 1, "error": None},
        expected_status="pending",
        message=f"Attempt {job.attempts + 1} started",
      )
    except ConflictError as exc:
      logger.info("Job claim lost job_id=%s status=%s", job.job_id, exc.actual_status)
      if exc.actual_status == "completed":
        return RunOutcome(ok=True, skipped="already_completed")
      if exc.actual_status == "failed":
        return RunOutcome(ok=False, skipped="already_failed")
      return RunOutcome(ok=False, skipped="claimed_elsewhere")

  async def _complete(self, job: JobRecord, result: Any) -> RunOutcome:
    if isinstance(result, WorkResult):
      fields = {"result_json": _to_json_value(result.payload), "result_summary": result.summary}
      returned = result.payload
    else:
      fields = {"result_json": _to_json_value(result) if result is not None else None}
      returned = result
    fields.update({"next_run_at": None, "error": None})

    try:
      await self._state_machine.apply(job.job_id, "completed", fields, expected_status="running")
    except (ConflictError, InvalidTransitionError) as exc:
      # The job moved while the work ran, typically an operator cancel.
      current = await self._jobs_repo.get_job(job.job_id)
      status = current.status if current is not None else None
      logger.warning("Dropping result for job that moved during execution job_id=%s status=%s error=%s", job.job_id, status, exc)
      if status == "completed":
        return RunOutcome(ok=True, result=current.result_json, skipped="already_completed")
      if status == "failed":
        return RunOutcome(ok=False, error=current.error, skipped="already_failed")
      return RunOutcome(ok=False, skipped="claimed_elsewhere")

    logger.info("Job completed job_id=%s kind=%s attempts=%s", job.job_id, job.job_kind, job.attempts)
    return RunOutcome(ok=True, result=returned)
