from __future__ import annotations

from fastapi import FastAPI, HTTPException

from clipline.api.routes import jobs
from clipline.core.exceptions import global_exception_handler, http_exception_handler, job_not_found_handler, job_transition_handler
from clipline.core.lifespan import lifespan
from clipline.core.middleware import RequestLoggingMiddleware
from clipline.jobs.errors import ConflictError, InvalidTransitionError, JobNotFoundError

app = FastAPI(lifespan=lifespan, docs_url=None, redoc_url=None, openapi_url=None)

# Add exception handlers
app.add_exception_handler(Exception, global_exception_handler)
app.add_exception_handler(HTTPException, http_exception_handler)
app.add_exception_handler(JobNotFoundError, job_not_found_handler)
app.add_exception_handler(InvalidTransitionError, job_transition_handler)
app.add_exception_handler(ConflictError, job_transition_handler)

# Add middleware
app.add_middleware(RequestLoggingMiddleware)


@app.get("/health", include_in_schema=False)
async def health_check() -> dict[str, str]:
  """Return a simple health status."""
  return {"status": "ok", "version": "0.1.0"}


app.include_router(jobs.router, prefix="/internal/jobs", tags=["jobs"])
