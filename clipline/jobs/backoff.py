"""Exponential backoff with jitter for rescheduling failed jobs."""

from __future__ import annotations

import random
from dataclasses import dataclass

from clipline.config import Settings

JITTER_MS = 250


def compute_delay_ms(attempt: int, *, base_delay_ms: int, max_delay_ms: int, rng: random.Random | None = None) -> int:
  """
  Return the delay before the next attempt, in milliseconds.

  delay = min(max_delay_ms, base_delay_ms * 2^(attempt - 1)) + jitter, with jitter uniform in
  [0, 250).
  """
  if attempt < 1:
    raise ValueError(f"attempt must be >= 1, got {attempt}")

  # Cap the exponent once it can no longer change the result to keep the integer small.
  exponent = attempt - 1
  if base_delay_ms > 0 and base_delay_ms * (2 ** min(exponent, 62)) >= max_delay_ms:
    exp_delay = max_delay_ms
  else:
    exp_delay = min(max_delay_ms, base_delay_ms * 2**exponent)

  source = rng or random
  jitter = int(source.random() * JITTER_MS)
  return exp_delay + jitter


@dataclass(frozen=True)
class BackoffPolicy:
  """Retry limits and delay bounds applied to every job kind."""

  max_attempts: int = 3
  base_delay_ms: int = 1000
  max_delay_ms: int = 60000

  @classmethod
  def from_settings(cls, settings: Settings) -> BackoffPolicy:
    return cls(max_attempts=settings.max_job_attempts, base_delay_ms=settings.job_retry_base_ms, max_delay_ms=settings.job_retry_max_ms)

  def compute_delay_ms(self, attempt: int, *, rng: random.Random | None = None) -> int:
    return compute_delay_ms(attempt, base_delay_ms=self.base_delay_ms, max_delay_ms=self.max_delay_ms, rng=rng)
