"""Job handler registry and the work functions it builds for the executor."""

from __future__ import annotations

import asyncio
import functools
import logging
import os
from collections.abc import Awaitable, Callable, Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from clipline.jobs.circuit_breaker import CircuitBreakerRegistry
from clipline.jobs.errors import ConfigurationError, TransientError
from clipline.jobs.models import JobRecord
from clipline.utils.env import missing_env

logger = logging.getLogger(__name__)

JobHandler = Callable[[JobRecord], Awaitable[Any]]


@dataclass(frozen=True)
class HandlerRegistration:
  """Handler plus the provider label it calls and the credentials it needs."""

  job_kind: str
  handler: JobHandler
  provider: str | None = None
  required_env: tuple[str, ...] = ()


class JobHandlerRegistry:
  """Registry mapping job kinds to handler coroutines."""

  def __init__(self) -> None:
    self._registrations: dict[str, HandlerRegistration] = {}

  def register(self, job_kind: str, handler: JobHandler, *, provider: str | None = None, required_env: Iterable[str] = ()) -> None:
    if job_kind in self._registrations:
      raise ValueError(f"Handler already registered for job kind: {job_kind}")
    self._registrations[job_kind] = HandlerRegistration(job_kind=job_kind, handler=handler, provider=provider, required_env=tuple(required_env))

  def kinds(self) -> list[str]:
    return sorted(self._registrations)

  def resolve(self, job_kind: str) -> HandlerRegistration:
    registration = self._registrations.get(job_kind)
    if registration is None:
      raise ConfigurationError(f"No handler registered for job kind: {job_kind}")
    return registration

  def build_work_fn(
    self,
    job: JobRecord,
    *,
    breakers: CircuitBreakerRegistry,
    max_runtime_ms: int,
    environ: Mapping[str, str] | None = None,
  ) -> Callable[[], Awaitable[Any]]:
    """
    Return the zero-argument work function for one attempt of `job`.

    Configuration problems (unknown kind, missing credentials) are raised from inside the work
    function so the executor records them against the job as permanent failures instead of
    leaving it pending forever.
    """
    env = os.environ if environ is None else environ

    async def work() -> Any:
      registration = self.resolve(job.job_kind)
      missing = missing_env(registration.required_env, env)
      if missing:
        raise ConfigurationError(f"Missing {', '.join(missing)}", provider=registration.provider)

      call = functools.partial(_run_with_max_runtime, registration.handler, job, max_runtime_ms)
      if registration.provider is None:
        return await call()
      return await breakers.execute(registration.provider, call)

    return work


async def _run_with_max_runtime(handler: JobHandler, job: JobRecord, max_runtime_ms: int) -> Any:
  try:
    return await asyncio.wait_for(handler(job), timeout=max_runtime_ms / 1000)
  except TimeoutError as exc:
    logger.warning("Job exceeded max runtime job_id=%s kind=%s max_runtime_ms=%s", job.job_id, job.job_kind, max_runtime_ms)
    raise TransientError(f"Job exceeded max runtime of {max_runtime_ms}ms") from exc
