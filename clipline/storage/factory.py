from clipline.config import Settings
from clipline.storage.jobs_repo import JobsRepository
from clipline.storage.postgres_jobs_repo import PostgresJobsRepository


def _get_jobs_repo(settings: Settings) -> JobsRepository:
  """Return the active jobs repository."""

  # Enforce Postgres-backed storage for jobs.

  if not settings.pg_dsn:
    raise ValueError("CLIPLINE_PG_DSN must be set to enable Postgres persistence.")

  return PostgresJobsRepository()
