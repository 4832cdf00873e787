"""Run the pipeline job worker.

The handler registry is application code, so it is loaded from a ``module:attribute`` path
that resolves to a ``JobHandlerRegistry`` (or a zero-argument callable returning one).
"""

import argparse
import asyncio
import importlib
import logging
import os
import signal
import socket
import sys
from dataclasses import replace

# Add the project root to the path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

logger = logging.getLogger("clipline.worker")


def _load_registry(path: str):  # type: ignore[no-untyped-def]
  from clipline.jobs.dispatch import JobHandlerRegistry

  module_name, _, attr = path.partition(":")
  if not module_name or not attr:
    raise ValueError(f"Registry path must look like 'package.module:attribute', got {path!r}")
  target = getattr(importlib.import_module(module_name), attr)
  registry = target() if callable(target) and not isinstance(target, JobHandlerRegistry) else target
  if not isinstance(registry, JobHandlerRegistry):
    raise TypeError(f"{path} did not resolve to a JobHandlerRegistry")
  return registry


async def _run(args: argparse.Namespace) -> int:
  # Import after path setup so the script works when run directly.
  from clipline.config import get_settings
  from clipline.core.database import dispose_engine
  from clipline.core.logging import initialize_logging
  from clipline.jobs.worker import JobWorker
  from clipline.storage.factory import _get_jobs_repo

  settings = get_settings()
  if args.poll_ms is not None:
    settings = replace(settings, worker_poll_ms=args.poll_ms)
  initialize_logging(settings, component="worker")

  registry = _load_registry(args.registry)
  worker = JobWorker(jobs_repo=_get_jobs_repo(settings), registry=registry, settings=settings, worker_name=args.name)

  try:
    if args.once:
      outcomes = await worker.run_once()
      logger.info("Single pass finished processed=%s ok=%s", len(outcomes), sum(1 for outcome in outcomes if outcome.ok))
      return 0

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
      loop.add_signal_handler(sig, stop_event.set)
    await worker.run_forever(stop_event)
    return 0
  finally:
    await dispose_engine()


def main() -> None:
  parser = argparse.ArgumentParser(description="Poll and execute due pipeline jobs.")
  parser.add_argument("--registry", required=True, help="Handler registry as 'package.module:attribute'.")
  parser.add_argument("--once", action="store_true", help="Process one batch of due jobs and exit.")
  parser.add_argument("--poll-ms", type=int, default=None, help="Override CLIPLINE_WORKER_POLL_MS.")
  parser.add_argument("--name", default=f"{socket.gethostname()}-{os.getpid()}", help="Worker name used in logs.")
  args = parser.parse_args()
  if args.poll_ms is not None and args.poll_ms <= 0:
    parser.error("--poll-ms must be a positive integer")
  sys.exit(asyncio.run(_run(args)))


if __name__ == "__main__":
  main()
