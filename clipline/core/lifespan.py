import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from clipline.core.database import dispose_engine
from clipline.core.logging import initialize_logging


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
  """Set up logging after uvicorn starts and release the database pool on shutdown."""
  from clipline.config import get_settings

  settings = get_settings()
  logger = logging.getLogger("clipline.core.lifespan")

  try:
    initialize_logging(settings, component="api")
    logger.info("Startup complete - logging verified. environment=%s", settings.environment)
  except RuntimeError:
    # Fall back to whatever handlers uvicorn installed; requests can still be served.
    logger.warning("Initial logging setup failed.", exc_info=True)

  if not settings.task_secret:
    logger.warning("CLIPLINE_TASK_SECRET is not set; internal job endpoints will reject every request.")

  yield

  await dispose_engine()
  logger.info("Shutdown complete.")
