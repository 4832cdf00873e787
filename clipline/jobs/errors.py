"""Error taxonomy for the job execution core.

Two families live here:

- Core errors (`JobCoreError`) are raised by the state machine and storage layer. They signal
  programmer errors or lost races and are the only exceptions that cross the executor boundary.
- Work errors (`JobWorkError`) are raised by work functions and provider adapters. Each carries
  an `error_class` (permanent/transient/unknown) and a `category` so the retry engine can switch
  on a closed set instead of pattern-matching error text.
"""

from __future__ import annotations

PERMANENT = "permanent"
TRANSIENT = "transient"
UNKNOWN = "unknown"


class JobCoreError(Exception):
  """Base class for state machine and persistence failures."""


class JobNotFoundError(JobCoreError, LookupError):
  def __init__(self, job_id: str) -> None:
    super().__init__(f"Job not found: {job_id}")
    self.job_id = job_id


class InvalidTransitionError(JobCoreError):
  """Requested status edge is not in the allowed transition set."""

  def __init__(self, job_id: str, current: str, proposed: str, message: str | None = None) -> None:
    super().__init__(message or f"Invalid job state transition for {job_id}: {current} -> {proposed}")
    self.job_id = job_id
    self.current = current
    self.proposed = proposed


class TerminalStateViolationError(InvalidTransitionError):
  """Job already reached completed/failed and only the operator reset may move it."""

  def __init__(self, job_id: str, current: str, proposed: str) -> None:
    super().__init__(job_id, current, proposed, message=f"Job {job_id} is in terminal state: {current} (attempted -> {proposed})")


class ConflictError(JobCoreError):
  """Persisted status no longer matches what the writer expected."""

  def __init__(self, job_id: str, expected_status: str, actual_status: str) -> None:
    super().__init__(f"Job {job_id} status changed concurrently: expected {expected_status}, found {actual_status}")
    self.job_id = job_id
    self.expected_status = expected_status
    self.actual_status = actual_status


class JobWorkError(Exception):
  """Base class for typed failures raised by work functions."""

  error_class = UNKNOWN
  category = "unknown"

  def __init__(self, message: str, *, provider: str | None = None) -> None:
    super().__init__(message)
    self.provider = provider


class ConfigurationError(JobWorkError):
  """Missing credentials or provider configuration. Also resets the attempt count."""

  error_class = PERMANENT
  category = "configuration"


class AuthorizationError(JobWorkError):
  error_class = PERMANENT
  category = "authorization"


class ValidationError(JobWorkError):
  error_class = PERMANENT
  category = "validation"


class TransientError(JobWorkError):
  """Failure expected to clear with time; `retry_after` (seconds) is a minimum backoff hint."""

  error_class = TRANSIENT
  category = "transient"

  def __init__(self, message: str, *, provider: str | None = None, retry_after: float | None = None) -> None:
    super().__init__(message, provider=provider)
    self.retry_after = retry_after


class CircuitOpenError(TransientError):
  category = "circuit_open"

  def __init__(self, label: str, *, retry_after: float | None = None) -> None:
    super().__init__(f"Circuit breaker OPEN for {label}", provider=label, retry_after=retry_after)
    self.label = label


class UnknownError(JobWorkError):
  error_class = UNKNOWN
  category = "unknown"


class ExternalServiceError(JobWorkError):
  """Failure reported by a provider adapter that knows whether the call is retryable."""

  category = "external"

  def __init__(self, message: str, *, provider: str, status: int | None = None, retryable: bool = False, raw_snippet: str | None = None) -> None:
    super().__init__(message, provider=provider)
    self.status = status
    self.retryable = retryable
    self.raw_snippet = raw_snippet
    self.error_class = TRANSIENT if retryable else PERMANENT
