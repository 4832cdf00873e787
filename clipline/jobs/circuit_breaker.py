"""Per-provider circuit breakers guarding outbound calls made by job handlers."""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any, TypeVar

from clipline.config import Settings, breaker_options_for, get_settings
from clipline.jobs.errors import CircuitOpenError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(str, Enum):
  CLOSED = "closed"
  OPEN = "open"
  HALF_OPEN = "half_open"


@dataclass(frozen=True)
class CircuitBreakerConfig:
  failure_threshold: int = 3
  cooldown_ms: int = 30000


class CircuitBreaker:
  """
  Three-state breaker for one provider label.

  closed: calls pass; consecutive failures are counted and the breaker opens at the threshold.
  open: calls fail fast with CircuitOpenError until the cooldown elapses.
  half_open: exactly one probe call is admitted; success closes, failure reopens.

  State lives behind a threading.Lock that is never held across an await.
  """

  def __init__(self, label: str, config: CircuitBreakerConfig | None = None, *, clock: Callable[[], float] = time.monotonic) -> None:
    self.label = label
    self.config = config or CircuitBreakerConfig()
    self._clock = clock
    self._lock = threading.Lock()
    self._state = CircuitState.CLOSED
    self._failure_count = 0
    self._opened_at: float | None = None
    self._probe_in_flight = False

  @property
  def state(self) -> CircuitState:
    with self._lock:
      return self._state

  @property
  def failure_count(self) -> int:
    with self._lock:
      return self._failure_count

  def _cooldown_remaining(self, now: float) -> float:
    if self._opened_at is None:
      return 0.0
    elapsed = now - self._opened_at
    return max(0.0, self.config.cooldown_ms / 1000 - elapsed)

  def _acquire(self) -> bool:
    """Admit a call or raise CircuitOpenError. Returns True when the call is the half-open probe."""
    with self._lock:
      now = self._clock()
      if self._state is CircuitState.CLOSED:
        return False

      if self._state is CircuitState.OPEN:
        remaining = self._cooldown_remaining(now)
        if remaining > 0:
          raise CircuitOpenError(self.label, retry_after=remaining)
        self._state = CircuitState.HALF_OPEN
        logger.info("Circuit breaker half-open label=%s", self.label)

      if self._probe_in_flight:
        raise CircuitOpenError(self.label, retry_after=self.config.cooldown_ms / 1000)

      self._probe_in_flight = True
      return True

  def _record_success(self, is_probe: bool) -> None:
    with self._lock:
      if is_probe:
        self._probe_in_flight = False
        logger.info("Circuit breaker closed label=%s", self.label)
      self._state = CircuitState.CLOSED
      self._failure_count = 0
      self._opened_at = None

  def _record_failure(self, is_probe: bool) -> None:
    with self._lock:
      self._failure_count += 1
      if is_probe:
        self._probe_in_flight = False
        self._trip()
        return
      if self._state is CircuitState.CLOSED and self._failure_count >= self.config.failure_threshold:
        self._trip()

  def _trip(self) -> None:
    self._state = CircuitState.OPEN
    self._opened_at = self._clock()
    logger.warning("Circuit breaker opened label=%s failures=%s cooldown_ms=%s", self.label, self._failure_count, self.config.cooldown_ms)

  def _release_probe(self, is_probe: bool) -> None:
    if not is_probe:
      return
    with self._lock:
      self._probe_in_flight = False

  async def execute(self, fn: Callable[[], Awaitable[T]]) -> T:
    """Run `fn` through the breaker; raises CircuitOpenError without calling it while open."""
    is_probe = self._acquire()
    try:
      result = await fn()
    except asyncio.CancelledError:
      # Cancellation says nothing about provider health.
      self._release_probe(is_probe)
      raise
    except Exception:
      self._record_failure(is_probe)
      raise
    self._record_success(is_probe)
    return result

  def snapshot(self) -> dict[str, Any]:
    with self._lock:
      return {
        "label": self.label,
        "state": self._state.value,
        "failure_count": self._failure_count,
        "failure_threshold": self.config.failure_threshold,
        "cooldown_ms": self.config.cooldown_ms,
        "cooldown_remaining_ms": int(self._cooldown_remaining(self._clock()) * 1000) if self._state is CircuitState.OPEN else 0,
        "probe_in_flight": self._probe_in_flight,
      }


class CircuitBreakerRegistry:
  """Lazily creates one breaker per provider label, applying per-label overrides."""

  def __init__(
    self,
    default_config: CircuitBreakerConfig | None = None,
    overrides: Mapping[str, CircuitBreakerConfig] | None = None,
    *,
    clock: Callable[[], float] = time.monotonic,
  ) -> None:
    self._default_config = default_config or CircuitBreakerConfig()
    self._overrides = dict(overrides or {})
    self._clock = clock
    self._breakers: dict[str, CircuitBreaker] = {}
    self._lock = threading.Lock()

  @classmethod
  def from_settings(cls, settings: Settings) -> CircuitBreakerRegistry:
    default_config = CircuitBreakerConfig(failure_threshold=settings.breaker_failure_threshold, cooldown_ms=settings.breaker_cooldown_ms)
    overrides = {label: CircuitBreakerConfig(**breaker_options_for(settings, label)) for label in settings.breaker_overrides}
    return cls(default_config, overrides)

  def get(self, label: str) -> CircuitBreaker:
    with self._lock:
      breaker = self._breakers.get(label)
      if breaker is None:
        config = self._overrides.get(label, self._default_config)
        breaker = CircuitBreaker(label, config, clock=self._clock)
        self._breakers[label] = breaker
      return breaker

  async def execute(self, label: str, fn: Callable[[], Awaitable[T]]) -> T:
    return await self.get(label).execute(fn)

  def snapshot_all(self) -> list[dict[str, Any]]:
    with self._lock:
      breakers = list(self._breakers.values())
    return [breaker.snapshot() for breaker in sorted(breakers, key=lambda item: item.label)]

  def reset(self) -> None:
    with self._lock:
      self._breakers.clear()


_registry: CircuitBreakerRegistry | None = None
_registry_lock = threading.Lock()


def get_breaker_registry() -> CircuitBreakerRegistry:
  """Return the process-wide breaker registry, built from settings on first use."""
  global _registry
  with _registry_lock:
    if _registry is None:
      _registry = CircuitBreakerRegistry.from_settings(get_settings())
    return _registry


def reset_breakers_for_testing() -> None:
  global _registry
  with _registry_lock:
    if _registry is not None:
      _registry.reset()
    _registry = None
