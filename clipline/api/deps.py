"""Shared FastAPI dependencies for storage access and internal auth."""

from __future__ import annotations

import logging
import secrets
from typing import Annotated

from fastapi import Depends, Header, HTTPException, status

from clipline.config import Settings, get_settings
from clipline.jobs.circuit_breaker import CircuitBreakerRegistry, get_breaker_registry
from clipline.storage.factory import _get_jobs_repo
from clipline.storage.jobs_repo import JobsRepository

logger = logging.getLogger(__name__)


def get_jobs_repo(settings: Annotated[Settings, Depends(get_settings)]) -> JobsRepository:
  """Dependency to get the jobs repository."""
  return _get_jobs_repo(settings)


def get_breakers() -> CircuitBreakerRegistry:
  return get_breaker_registry()


def require_task_secret(settings: Annotated[Settings, Depends(get_settings)], x_clipline_task_secret: str | None = Header(default=None)) -> None:
  """Authenticate internal callers with the shared task secret."""
  # Internal job endpoints stay closed until a secret is configured.
  if not settings.task_secret:
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Task authentication is not configured.")
  if not secrets.compare_digest((x_clipline_task_secret or "").encode(), settings.task_secret.encode()):
    logger.warning("Unauthorized access attempt to internal jobs API")
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid task secret.")
