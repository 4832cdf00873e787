"""Schema package exports."""

from .jobs import Job, JobEvent

__all__ = ["Job", "JobEvent"]
