from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Query, status

from clipline.api.deps import get_breakers, get_jobs_repo, require_task_secret
from clipline.api.models import BreakerSnapshot, JobCancelRequest, JobClearAttemptsRequest, JobResetRequest, JobStatusResponse
from clipline.jobs.circuit_breaker import CircuitBreakerRegistry
from clipline.services.jobs import cancel_job, clear_attempts, get_job, list_failed_jobs, list_job_events, reset_job
from clipline.storage.jobs_repo import JobsRepository

router = APIRouter(dependencies=[Depends(require_task_secret)])

_EVENT_LIMIT = 50


@router.get("/breakers", response_model=list[BreakerSnapshot])
async def list_breakers(breakers: Annotated[CircuitBreakerRegistry, Depends(get_breakers)]) -> list[BreakerSnapshot]:
  """Return the state of every provider breaker in this process."""
  return [BreakerSnapshot(**snapshot) for snapshot in breakers.snapshot_all()]


@router.get("/dead-letter", response_model=list[JobStatusResponse])
async def list_dead_letter_jobs(repo: Annotated[JobsRepository, Depends(get_jobs_repo)], limit: Annotated[int, Query(ge=1, le=500)] = 200) -> list[JobStatusResponse]:
  """List failed jobs awaiting operator action, most recently updated first."""
  records = await list_failed_jobs(repo, limit=limit)
  return [JobStatusResponse.from_record(record) for record in records]


@router.get("/{job_id}", response_model=JobStatusResponse)
async def get_job_status(job_id: str, repo: Annotated[JobsRepository, Depends(get_jobs_repo)]) -> JobStatusResponse:
  """Fetch a job with its most recent audit events."""
  record = await get_job(repo, job_id)
  events = await list_job_events(repo, job_id, limit=_EVENT_LIMIT)
  return JobStatusResponse.from_record(record, events=events)


@router.post("/{job_id}/reset", response_model=JobStatusResponse, status_code=status.HTTP_200_OK)
async def reset_failed_job(job_id: str, payload: JobResetRequest, repo: Annotated[JobsRepository, Depends(get_jobs_repo)]) -> JobStatusResponse:
  """Move a failed job back to pending so the worker picks it up again."""
  record = await reset_job(repo, job_id, actor=payload.actor)
  return JobStatusResponse.from_record(record)


@router.post("/{job_id}/cancel", response_model=JobStatusResponse, status_code=status.HTTP_200_OK)
async def cancel_active_job(job_id: str, payload: JobCancelRequest, repo: Annotated[JobsRepository, Depends(get_jobs_repo)]) -> JobStatusResponse:
  """Fail a pending or running job on operator request."""
  record = await cancel_job(repo, job_id, reason=payload.reason)
  return JobStatusResponse.from_record(record)


@router.post("/{job_id}/clear-attempts", response_model=JobStatusResponse, status_code=status.HTTP_200_OK)
async def clear_failed_job_attempts(job_id: str, payload: JobClearAttemptsRequest, repo: Annotated[JobsRepository, Depends(get_jobs_repo)]) -> JobStatusResponse:
  record = await clear_attempts(repo, job_id, actor=payload.actor)
  return JobStatusResponse.from_record(record)
