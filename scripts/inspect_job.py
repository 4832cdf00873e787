"""Print a job and its audit trail."""

import argparse
import asyncio
import os
import sys

# Add the project root to the path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))


async def _inspect(job_id: str, limit: int) -> int:
  from clipline.config import get_settings
  from clipline.core.database import dispose_engine
  from clipline.storage.factory import _get_jobs_repo

  settings = get_settings()
  if not settings.pg_dsn:
    print("Error: CLIPLINE_PG_DSN not set in environment.")
    return 1

  repo = _get_jobs_repo(settings)
  try:
    job = await repo.get_job(job_id)
    if job is None:
      print(f"Job {job_id} not found.")
      return 1

    print(f"Job Kind: {job.job_kind}")
    print(f"Job Status: {job.status}")
    print(f"Attempts: {job.attempts}")
    print(f"Next Run At: {job.next_run_at.isoformat() if job.next_run_at else '-'}")
    print(f"Last Error: {job.last_error or '-'}")
    print(f"Error: {job.error or '-'}")
    if job.result_summary:
      print(f"Result Summary: {job.result_summary}")
    print("Events:")
    for event in await repo.list_events(job_id=job_id, limit=limit):
      stamp = event.created_at.isoformat() if event.created_at else "?"
      print(f" - {stamp} [{event.event_type}] {event.from_status or '-'} -> {event.to_status or '-'}: {event.message}")
    return 0
  finally:
    await dispose_engine()


def main() -> None:
  parser = argparse.ArgumentParser(description="Inspect a pipeline job.")
  parser.add_argument("job_id")
  parser.add_argument("--limit", type=int, default=50, help="Maximum number of events to print.")
  args = parser.parse_args()
  sys.exit(asyncio.run(_inspect(args.job_id, args.limit)))


if __name__ == "__main__":
  main()
