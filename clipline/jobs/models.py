"""Domain models for pipeline background jobs."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal, get_args

JobStatus = Literal["pending", "running", "completed", "failed"]
JobKind = Literal[
  "customer_research",
  "ad_performance",
  "pattern_analysis",
  "script_generation",
  "storyboard_generation",
  "video_prompt_generation",
  "video_image_generation",
  "video_generation",
]
SkipReason = Literal["already_completed", "already_failed", "backoff_active", "claimed_elsewhere"]

JOB_STATUSES: tuple[JobStatus, ...] = ("pending", "running", "completed", "failed")
JOB_KINDS: tuple[str, ...] = get_args(JobKind)
TERMINAL_STATUSES: frozenset[str] = frozenset({"completed", "failed"})


def utc_now() -> datetime:
  return datetime.now(UTC)


@dataclass
class JobRecord:
  """Represents one unit of pipeline work tracked by status and retry metadata."""

  job_id: str
  job_kind: str
  status: JobStatus
  created_at: datetime
  updated_at: datetime
  payload: dict[str, Any] = field(default_factory=dict)
  user_id: str | None = None
  idempotency_key: str | None = None
  attempts: int = 0
  last_error: str | None = None
  next_run_at: datetime | None = None
  error: str | None = None
  result_summary: str | None = None
  result_json: dict[str, Any] | None = None

  def backoff_active(self, now: datetime) -> bool:
    """Return True while the job is still waiting out a retry delay."""
    return self.next_run_at is not None and now < self.next_run_at


@dataclass(frozen=True)
class JobEventRecord:
  """Audit row written alongside every status transition."""

  job_id: str
  event_type: str
  message: str
  from_status: str | None = None
  to_status: str | None = None
  created_at: datetime | None = None


@dataclass(frozen=True)
class WorkResult:
  """Optional return type for work functions that want a human-readable summary."""

  payload: dict[str, Any]
  summary: str | None = None


@dataclass(frozen=True)
class RetryDecision:
  """What the retry engine decided after a failed attempt."""

  will_retry: bool
  attempts: int
  backoff_ms: int | None
  error_class: str
  category: str
  next_run_at: datetime | None = None


@dataclass(frozen=True)
class RunOutcome:
  """Structured result of one executor run; expected failures never raise."""

  ok: bool
  result: Any = None
  error: str | None = None
  skipped: SkipReason | None = None
  retry: RetryDecision | None = None
  next_run_at: datetime | None = None
