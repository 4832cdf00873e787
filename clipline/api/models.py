from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, StrictStr

from clipline.jobs.models import JobEventRecord, JobRecord, JobStatus


class JobEventResponse(BaseModel):
  """One audit row for a job."""

  event_type: StrictStr
  message: StrictStr
  from_status: StrictStr | None = None
  to_status: StrictStr | None = None
  created_at: datetime | None = None

  @classmethod
  def from_record(cls, record: JobEventRecord) -> JobEventResponse:
    return cls(event_type=record.event_type, message=record.message, from_status=record.from_status, to_status=record.to_status, created_at=record.created_at)


class JobStatusResponse(BaseModel):
  """Status payload for a pipeline job."""

  job_id: StrictStr
  job_kind: StrictStr
  status: JobStatus
  attempts: int
  user_id: StrictStr | None = None
  last_error: StrictStr | None = None
  error: StrictStr | None = None
  next_run_at: datetime | None = None
  result_summary: StrictStr | None = None
  result: Any = None
  created_at: datetime
  updated_at: datetime
  events: list[JobEventResponse] = Field(default_factory=list)

  @classmethod
  def from_record(cls, record: JobRecord, *, events: list[JobEventRecord] | None = None) -> JobStatusResponse:
    return cls(
      job_id=record.job_id,
      job_kind=record.job_kind,
      status=record.status,
      attempts=record.attempts,
      user_id=record.user_id,
      last_error=record.last_error,
      error=record.error,
      next_run_at=record.next_run_at,
      result_summary=record.result_summary,
      result=record.result_json,
      created_at=record.created_at,
      updated_at=record.updated_at,
      events=[JobEventResponse.from_record(event) for event in events or []],
    )


class JobResetRequest(BaseModel):
  """Operator reset of a failed job."""

  actor: StrictStr = Field(min_length=1, max_length=200)
  model_config = ConfigDict(extra="forbid")


class JobClearAttemptsRequest(BaseModel):
  """Operator request to zero the attempt count of a failed job."""

  actor: StrictStr = Field(min_length=1, max_length=200)
  model_config = ConfigDict(extra="forbid")


class JobCancelRequest(BaseModel):
  """Operator cancellation of a pending or running job."""

  reason: StrictStr = Field(min_length=1, max_length=500)
  model_config = ConfigDict(extra="forbid")


class BreakerSnapshot(BaseModel):
  label: StrictStr
  state: StrictStr
  failure_count: int
  failure_threshold: int
  cooldown_ms: int
  cooldown_remaining_ms: int
  probe_in_flight: bool
