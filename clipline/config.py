"""Application configuration loaded from environment variables."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any

from clipline.utils.env import default_env_path, load_env_file

load_env_file(default_env_path(), override=False)


@dataclass(frozen=True)
class Settings:
  """Typed settings for the Clipline job runtime."""

  environment: str
  debug: bool
  log_dir: str
  log_max_bytes: int
  log_backup_count: int
  pg_dsn: str | None
  pg_connect_timeout: int
  max_job_attempts: int
  job_retry_base_ms: int
  job_retry_max_ms: int
  breaker_failure_threshold: int
  breaker_cooldown_ms: int
  breaker_overrides: dict[str, dict[str, int]] = field(hash=False)
  worker_poll_ms: int
  worker_batch_size: int
  worker_max_concurrency: int
  worker_job_max_runtime_ms: int
  task_secret: str | None


@dataclass(frozen=True)
class DatabaseSettings:
  """Typed settings for database connectivity."""

  debug: bool
  pg_dsn: str | None
  pg_connect_timeout: int


def _parse_bool(raw: str | None) -> bool:
  """Parse a boolean-ish string from environment variables."""

  if raw is None:
    return False

  normalized = raw.strip().lower()
  return normalized in {"1", "true", "yes", "on"}


def _optional_str(raw: str | None) -> str | None:
  if raw is None:
    return None
  value = raw.strip()
  if value == "":
    return None
  return value


def _env_first(*names: str) -> str | None:
  """Return the first non-empty value among several variable names."""
  for name in names:
    value = _optional_str(os.getenv(name))
    if value is not None:
      return value
  return None


def _positive_int(raw: str | None, default: int, *, name: str) -> int:
  value = int(raw) if raw is not None else default
  if value <= 0:
    raise ValueError(f"{name} must be a positive integer.")
  return value


def _parse_breaker_overrides(raw: str | None) -> dict[str, dict[str, int]]:
  """Parse per-provider breaker overrides such as {"anthropic": {"failure_threshold": 5}}."""
  if not raw:
    return {}

  try:
    parsed = json.loads(raw)
  except json.JSONDecodeError as exc:
    raise ValueError("CLIPLINE_BREAKER_OVERRIDES must be a JSON object.") from exc

  if not isinstance(parsed, dict):
    raise ValueError("CLIPLINE_BREAKER_OVERRIDES must be a JSON object.")

  overrides: dict[str, dict[str, int]] = {}
  for label, options in parsed.items():
    if not isinstance(options, dict):
      raise ValueError(f"Breaker override for '{label}' must be an object.")
    cleaned: dict[str, int] = {}
    for key in ("failure_threshold", "cooldown_ms"):
      if key in options:
        cleaned[key] = _positive_int(str(options[key]), 1, name=f"CLIPLINE_BREAKER_OVERRIDES[{label}].{key}")
    overrides[str(label)] = cleaned
  return overrides


@lru_cache(maxsize=1)
def get_settings() -> Settings:
  """Load settings once per process."""

  environment = os.getenv("CLIPLINE_ENV", "development").lower()
  debug = _parse_bool(os.getenv("CLIPLINE_DEBUG"))

  log_max_bytes = _positive_int(os.getenv("CLIPLINE_LOG_MAX_BYTES"), 5242880, name="CLIPLINE_LOG_MAX_BYTES")  # 5MB default
  log_backup_count = int(os.getenv("CLIPLINE_LOG_BACKUP_COUNT", "10"))
  if log_backup_count < 0:
    raise ValueError("CLIPLINE_LOG_BACKUP_COUNT must be zero or a positive integer.")

  # Retry policy inputs; unprefixed legacy names are accepted as fallbacks.
  max_job_attempts = _positive_int(_env_first("CLIPLINE_MAX_JOB_ATTEMPTS", "MAX_JOB_ATTEMPTS"), 3, name="CLIPLINE_MAX_JOB_ATTEMPTS")
  job_retry_base_ms = _positive_int(_env_first("CLIPLINE_JOB_RETRY_BASE_MS", "JOB_RETRY_BASE_MS"), 1000, name="CLIPLINE_JOB_RETRY_BASE_MS")
  job_retry_max_ms = _positive_int(_env_first("CLIPLINE_JOB_RETRY_MAX_MS", "JOB_RETRY_MAX_MS"), 60000, name="CLIPLINE_JOB_RETRY_MAX_MS")
  if job_retry_max_ms < job_retry_base_ms:
    raise ValueError("CLIPLINE_JOB_RETRY_MAX_MS must be greater than or equal to CLIPLINE_JOB_RETRY_BASE_MS.")

  breaker_failure_threshold = _positive_int(os.getenv("CLIPLINE_BREAKER_FAILURE_THRESHOLD"), 3, name="CLIPLINE_BREAKER_FAILURE_THRESHOLD")
  breaker_cooldown_ms = _positive_int(os.getenv("CLIPLINE_BREAKER_COOLDOWN_MS"), 30000, name="CLIPLINE_BREAKER_COOLDOWN_MS")

  worker_poll_ms = _positive_int(_env_first("CLIPLINE_WORKER_POLL_MS", "WORKER_POLL_MS"), 1000, name="CLIPLINE_WORKER_POLL_MS")
  worker_batch_size = _positive_int(os.getenv("CLIPLINE_WORKER_BATCH_SIZE"), 5, name="CLIPLINE_WORKER_BATCH_SIZE")
  worker_max_concurrency = _positive_int(_env_first("CLIPLINE_WORKER_MAX_CONCURRENCY", "MAX_WORKER_CONCURRENCY"), 2, name="CLIPLINE_WORKER_MAX_CONCURRENCY")
  worker_job_max_runtime_ms = _positive_int(_env_first("CLIPLINE_WORKER_JOB_MAX_RUNTIME_MS", "WORKER_JOB_MAX_RUNTIME_MS"), 20 * 60_000, name="CLIPLINE_WORKER_JOB_MAX_RUNTIME_MS")

  return Settings(
    environment=environment,
    debug=debug,
    log_dir=(os.getenv("CLIPLINE_LOG_DIR") or "./logs").strip(),
    log_max_bytes=log_max_bytes,
    log_backup_count=log_backup_count,
    pg_dsn=_env_first("CLIPLINE_PG_DSN", "DATABASE_URL"),
    pg_connect_timeout=_positive_int(os.getenv("CLIPLINE_PG_CONNECT_TIMEOUT"), 5, name="CLIPLINE_PG_CONNECT_TIMEOUT"),
    max_job_attempts=max_job_attempts,
    job_retry_base_ms=job_retry_base_ms,
    job_retry_max_ms=job_retry_max_ms,
    breaker_failure_threshold=breaker_failure_threshold,
    breaker_cooldown_ms=breaker_cooldown_ms,
    breaker_overrides=_parse_breaker_overrides(os.getenv("CLIPLINE_BREAKER_OVERRIDES")),
    worker_poll_ms=worker_poll_ms,
    worker_batch_size=worker_batch_size,
    worker_max_concurrency=worker_max_concurrency,
    worker_job_max_runtime_ms=worker_job_max_runtime_ms,
    task_secret=_optional_str(os.getenv("CLIPLINE_TASK_SECRET")),
  )


@lru_cache(maxsize=1)
def get_database_settings() -> DatabaseSettings:
  """Load database settings without requiring worker configuration."""
  # Keep database configuration isolated so migrations and offline scripts don't require unrelated env vars.
  debug = _parse_bool(os.getenv("CLIPLINE_DEBUG"))
  pg_connect_timeout = _positive_int(os.getenv("CLIPLINE_PG_CONNECT_TIMEOUT"), 5, name="CLIPLINE_PG_CONNECT_TIMEOUT")

  # Support fallback to DATABASE_URL for backward compatibility
  pg_dsn = _env_first("CLIPLINE_PG_DSN", "DATABASE_URL")

  return DatabaseSettings(debug=debug, pg_dsn=pg_dsn, pg_connect_timeout=pg_connect_timeout)


def breaker_options_for(settings: Settings, label: str) -> dict[str, Any]:
  """Resolve the effective breaker options for one provider label."""
  options: dict[str, Any] = {"failure_threshold": settings.breaker_failure_threshold, "cooldown_ms": settings.breaker_cooldown_ms}
  options.update(settings.breaker_overrides.get(label, {}))
  return options
