"""Polling worker that feeds due pipeline jobs to the executor."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import random
from collections.abc import Callable
from datetime import datetime

from clipline.config import Settings
from clipline.jobs.backoff import BackoffPolicy
from clipline.jobs.circuit_breaker import CircuitBreakerRegistry, get_breaker_registry
from clipline.jobs.dispatch import JobHandlerRegistry
from clipline.jobs.executor import JobExecutor
from clipline.jobs.models import RunOutcome, utc_now
from clipline.jobs.retry import RetryEngine
from clipline.jobs.state_machine import JobStateMachine
from clipline.storage.jobs_repo import JobsRepository


def build_executor(jobs_repo: JobsRepository, settings: Settings, *, clock: Callable[[], datetime] = utc_now, rng: random.Random | None = None) -> JobExecutor:
  """Wire the state machine, retry engine and executor from settings."""
  state_machine = JobStateMachine(jobs_repo)
  retry_engine = RetryEngine(jobs_repo, policy=BackoffPolicy.from_settings(settings), state_machine=state_machine, clock=clock, rng=rng)
  return JobExecutor(jobs_repo, retry_engine=retry_engine, state_machine=state_machine, clock=clock)


class JobWorker:
  """Coordinates polling and bounded-concurrency execution of due jobs."""

  def __init__(
    self,
    *,
    jobs_repo: JobsRepository,
    registry: JobHandlerRegistry,
    settings: Settings,
    executor: JobExecutor | None = None,
    breakers: CircuitBreakerRegistry | None = None,
    clock: Callable[[], datetime] = utc_now,
    worker_name: str = "worker",
  ) -> None:
    self._jobs_repo = jobs_repo
    self._registry = registry
    self._settings = settings
    self._executor = executor or build_executor(jobs_repo, settings, clock=clock)
    self._breakers = breakers or get_breaker_registry()
    self._clock = clock
    self._worker_name = worker_name
    self._semaphore = asyncio.Semaphore(settings.worker_max_concurrency)
    self._logger = logging.getLogger(__name__)

  async def process_job(self, job_id: str) -> RunOutcome:
    """Run one attempt of `job_id`; safe to call for redelivered or duplicate handles."""
    job = await self._jobs_repo.get_job(job_id)
    if job is None:
      self._logger.warning("Job not found, dropping handle job_id=%s worker=%s", job_id, self._worker_name)
      return RunOutcome(ok=False, error=f"Job not found: {job_id}")

    work_fn = self._registry.build_work_fn(job, breakers=self._breakers, max_runtime_ms=self._settings.worker_job_max_runtime_ms)
    async with self._semaphore:
      outcome = await self._executor.run(job_id, work_fn)

    if outcome.skipped:
      self._logger.info("Job skipped job_id=%s reason=%s worker=%s", job_id, outcome.skipped, self._worker_name)
    return outcome

  async def run_once(self) -> list[RunOutcome]:
    """Fetch one batch of due jobs and run them with bounded concurrency."""
    due = await self._jobs_repo.find_due(self._clock(), job_kinds=self._registry.kinds(), limit=self._settings.worker_batch_size)
    if not due:
      return []

    self._logger.info("Processing due jobs count=%s worker=%s", len(due), self._worker_name)
    results = await asyncio.gather(*(self.process_job(job.job_id) for job in due), return_exceptions=True)

    outcomes: list[RunOutcome] = []
    for job, result in zip(due, results, strict=True):
      if isinstance(result, BaseException):
        if isinstance(result, asyncio.CancelledError):
          raise result
        self._logger.error("Job processing crashed job_id=%s worker=%s", job.job_id, self._worker_name, exc_info=result)
        continue
      outcomes.append(result)
    return outcomes

  async def run_forever(self, stop_event: asyncio.Event) -> None:
    """Poll until `stop_event` is set, surviving errors raised by a single tick."""
    poll_seconds = self._settings.worker_poll_ms / 1000
    self._logger.info("Worker started worker=%s kinds=%s poll_ms=%s", self._worker_name, ",".join(self._registry.kinds()), self._settings.worker_poll_ms)
    while not stop_event.is_set():
      try:
        await self.run_once()
      except Exception:  # noqa: BLE001
        self._logger.error("Worker tick failed worker=%s", self._worker_name, exc_info=True)
      with contextlib.suppress(TimeoutError):
        await asyncio.wait_for(stop_event.wait(), timeout=poll_seconds)
    self._logger.info("Worker stopped worker=%s", self._worker_name)
