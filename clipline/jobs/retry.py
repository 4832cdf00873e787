"""Failure bookkeeping: decide between rescheduling a job and failing it for good."""

from __future__ import annotations

import logging
import math
import random
from collections.abc import Callable
from datetime import datetime, timedelta

from clipline.jobs.backoff import BackoffPolicy
from clipline.jobs.classifier import Classification, ErrorClass, classify_exception, classify_message, describe_error
from clipline.jobs.errors import ConflictError, JobNotFoundError
from clipline.jobs.models import JobRecord, RetryDecision, utc_now
from clipline.jobs.state_machine import JobStateMachine
from clipline.storage.jobs_repo import JobsRepository

logger = logging.getLogger(__name__)


class RetryEngine:
  """Records a failed attempt and moves the job to pending (with backoff) or failed."""

  def __init__(
    self,
    jobs_repo: JobsRepository,
    *,
    policy: BackoffPolicy,
    state_machine: JobStateMachine | None = None,
    clock: Callable[[], datetime] = utc_now,
    rng: random.Random | None = None,
  ) -> None:
    self._jobs_repo = jobs_repo
    self._policy = policy
    self._state_machine = state_machine or JobStateMachine(jobs_repo)
    self._clock = clock
    self._rng = rng

  async def record_failure(self, job_id: str, error: str | BaseException) -> RetryDecision:
    """
    Record a failed attempt for `job_id`.

    `attempts` on the record already counts the attempt that just failed (it is incremented when
    the job is claimed), so the job is exhausted once attempts >= max_attempts. Permanent errors
    fail the job immediately. Configuration errors also reset attempts to 0 so a reset after the
    credentials are fixed starts from a clean slate. Only a running job is written; any other
    status means another writer already settled this attempt and the call is a no-op.
    """
    if isinstance(error, BaseException):
      classification = classify_exception(error)
      message = describe_error(error)
      retry_after = getattr(error, "retry_after", None)
    else:
      classification = classify_message(error)
      message = str(error)
      retry_after = None

    job = await self._jobs_repo.get_job(job_id)
    if job is None:
      raise JobNotFoundError(job_id)
    if job.status != "running":
      # Terminal, or already rescheduled by another delivery of the same job.
      logger.info("Ignoring failure for job that is not running job_id=%s status=%s", job_id, job.status)
      return self._noop(job, classification)

    exhausted = job.attempts >= self._policy.max_attempts
    if classification.error_class is ErrorClass.PERMANENT or exhausted:
      return await self._fail(job, classification, message, exhausted=exhausted)
    return await self._reschedule(job, classification, message, retry_after)

  async def _fail(self, job: JobRecord, classification: Classification, message: str, *, exhausted: bool) -> RetryDecision:
    permanent = classification.error_class is ErrorClass.PERMANENT
    error_text = message if permanent else f"Max attempts exceeded: {message}"
    fields: dict[str, object] = {"error": error_text, "last_error": message, "next_run_at": None}
    if classification.category == "configuration":
      fields["attempts"] = 0

    try:
      updated = await self._state_machine.apply(job.job_id, "failed", fields, expected_status="running", message=error_text)
    except ConflictError as exc:
      return await self._resolve_conflict(job.job_id, exc, classification)

    logger.error(
      "Job failed job_id=%s kind=%s attempts=%s class=%s category=%s exhausted=%s error=%s",
      job.job_id,
      job.job_kind,
      job.attempts,
      classification.error_class.value,
      classification.category,
      exhausted and not permanent,
      message,
    )
    return RetryDecision(will_retry=False, attempts=updated.attempts, backoff_ms=None, error_class=classification.error_class.value, category=classification.category)

  async def _reschedule(self, job: JobRecord, classification: Classification, message: str, retry_after: float | None) -> RetryDecision:
    backoff_ms = self._policy.compute_delay_ms(max(job.attempts, 1), rng=self._rng)
    if retry_after is not None and retry_after > 0:
      backoff_ms = max(backoff_ms, math.ceil(retry_after * 1000))
    next_run_at = self._clock() + timedelta(milliseconds=backoff_ms)

    try:
      updated = await self._state_machine.apply(
        job.job_id,
        "pending",
        {"last_error": message, "next_run_at": next_run_at},
        expected_status="running",
        message=f"Retry {job.attempts}/{self._policy.max_attempts} in {backoff_ms}ms: {message}",
      )
    except ConflictError as exc:
      return await self._resolve_conflict(job.job_id, exc, classification)

    logger.warning(
      "Job attempt failed, retrying job_id=%s kind=%s attempts=%s/%s backoff_ms=%s category=%s error=%s",
      job.job_id,
      job.job_kind,
      updated.attempts,
      self._policy.max_attempts,
      backoff_ms,
      classification.category,
      message,
    )
    return RetryDecision(
      will_retry=True,
      attempts=updated.attempts,
      backoff_ms=backoff_ms,
      error_class=classification.error_class.value,
      category=classification.category,
      next_run_at=next_run_at,
    )

  async def _resolve_conflict(self, job_id: str, exc: ConflictError, classification: Classification) -> RetryDecision:
    """A concurrent writer moved the job off running; its outcome wins."""
    job = await self._jobs_repo.get_job(job_id)
    if job is None:
      raise JobNotFoundError(job_id)
    if job.status == "running":
      raise exc
    logger.info("Job moved concurrently, dropping failure job_id=%s status=%s", job_id, job.status)
    return self._noop(job, classification)

  def _noop(self, job: JobRecord, classification: Classification) -> RetryDecision:
    return RetryDecision(will_retry=False, attempts=job.attempts, backoff_ms=None, error_class=classification.error_class.value, category=classification.category)
