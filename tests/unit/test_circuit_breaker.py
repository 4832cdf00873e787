from __future__ import annotations

import asyncio

import pytest
from conftest import make_settings

from clipline.jobs.circuit_breaker import CircuitBreaker, CircuitBreakerConfig, CircuitBreakerRegistry, CircuitState, get_breaker_registry, reset_breakers_for_testing
from clipline.jobs.errors import CircuitOpenError


class ManualClock:
  def __init__(self) -> None:
    self.now = 1000.0

  def __call__(self) -> float:
    return self.now

  def advance(self, seconds: float) -> None:
    self.now += seconds


class Upstream:
  """Async callable whose result is scripted per call."""

  def __init__(self) -> None:
    self.calls = 0
    self.fail = True

  async def __call__(self) -> str:
    self.calls += 1
    if self.fail:
      raise RuntimeError("upstream 503")
    return "ok"


def _breaker(clock: ManualClock, *, threshold: int = 3, cooldown_ms: int = 30000) -> CircuitBreaker:
  return CircuitBreaker("anthropic", CircuitBreakerConfig(failure_threshold=threshold, cooldown_ms=cooldown_ms), clock=clock)


async def _fail_times(breaker: CircuitBreaker, upstream: Upstream, times: int) -> None:
  for _ in range(times):
    with pytest.raises(RuntimeError):
      await breaker.execute(upstream)


@pytest.mark.anyio
async def test_opens_after_threshold_and_fails_fast() -> None:
  clock = ManualClock()
  breaker = _breaker(clock)
  upstream = Upstream()

  await _fail_times(breaker, upstream, 3)
  assert breaker.state is CircuitState.OPEN

  with pytest.raises(CircuitOpenError) as exc_info:
    await breaker.execute(upstream)

  assert upstream.calls == 3
  assert str(exc_info.value) == "Circuit breaker OPEN for anthropic"
  assert exc_info.value.retry_after == pytest.approx(30.0)


@pytest.mark.anyio
async def test_retry_after_reports_remaining_cooldown() -> None:
  clock = ManualClock()
  breaker = _breaker(clock)
  upstream = Upstream()
  await _fail_times(breaker, upstream, 3)

  clock.advance(12)

  with pytest.raises(CircuitOpenError) as exc_info:
    await breaker.execute(upstream)
  assert exc_info.value.retry_after == pytest.approx(18.0)


@pytest.mark.anyio
async def test_success_resets_consecutive_failures() -> None:
  clock = ManualClock()
  breaker = _breaker(clock)
  upstream = Upstream()

  await _fail_times(breaker, upstream, 2)
  upstream.fail = False
  assert await breaker.execute(upstream) == "ok"
  upstream.fail = True
  await _fail_times(breaker, upstream, 2)

  assert breaker.state is CircuitState.CLOSED
  assert breaker.failure_count == 2


@pytest.mark.anyio
async def test_half_open_probe_success_closes() -> None:
  clock = ManualClock()
  breaker = _breaker(clock)
  upstream = Upstream()
  await _fail_times(breaker, upstream, 3)

  clock.advance(30)
  upstream.fail = False

  assert await breaker.execute(upstream) == "ok"
  assert breaker.state is CircuitState.CLOSED
  assert breaker.failure_count == 0


@pytest.mark.anyio
async def test_half_open_probe_failure_reopens_with_fresh_cooldown() -> None:
  clock = ManualClock()
  breaker = _breaker(clock)
  upstream = Upstream()
  await _fail_times(breaker, upstream, 3)

  clock.advance(31)
  await _fail_times(breaker, upstream, 1)

  assert breaker.state is CircuitState.OPEN
  clock.advance(29)
  with pytest.raises(CircuitOpenError):
    await breaker.execute(upstream)
  assert upstream.calls == 4


@pytest.mark.anyio
async def test_half_open_admits_exactly_one_probe() -> None:
  clock = ManualClock()
  breaker = _breaker(clock)
  upstream = Upstream()
  await _fail_times(breaker, upstream, 3)
  clock.advance(30)

  release = asyncio.Event()
  probe_calls = 0

  async def slow_probe() -> str:
    nonlocal probe_calls
    probe_calls += 1
    await release.wait()
    return "ok"

  probe = asyncio.create_task(breaker.execute(slow_probe))
  await asyncio.sleep(0)
  assert breaker.state is CircuitState.HALF_OPEN

  with pytest.raises(CircuitOpenError):
    await breaker.execute(slow_probe)

  release.set()
  assert await probe == "ok"
  assert probe_calls == 1
  assert breaker.state is CircuitState.CLOSED


@pytest.mark.anyio
async def test_cancelled_probe_releases_slot_without_counting_failure() -> None:
  clock = ManualClock()
  breaker = _breaker(clock)
  upstream = Upstream()
  await _fail_times(breaker, upstream, 3)
  clock.advance(30)

  async def hang() -> str:
    await asyncio.Event().wait()
    return "never"

  probe = asyncio.create_task(breaker.execute(hang))
  await asyncio.sleep(0)
  probe.cancel()
  with pytest.raises(asyncio.CancelledError):
    await probe

  assert breaker.state is CircuitState.HALF_OPEN
  assert breaker.failure_count == 3
  upstream.fail = False
  assert await breaker.execute(upstream) == "ok"
  assert breaker.state is CircuitState.CLOSED


@pytest.mark.anyio
async def test_registry_applies_per_label_overrides() -> None:
  clock = ManualClock()
  registry = CircuitBreakerRegistry(CircuitBreakerConfig(failure_threshold=3), {"apify": CircuitBreakerConfig(failure_threshold=1, cooldown_ms=5000)}, clock=clock)
  upstream = Upstream()

  with pytest.raises(RuntimeError):
    await registry.execute("apify", upstream)
  with pytest.raises(CircuitOpenError):
    await registry.execute("apify", upstream)

  with pytest.raises(RuntimeError):
    await registry.execute("anthropic", upstream)
  assert registry.get("anthropic").state is CircuitState.CLOSED
  assert registry.get("apify") is registry.get("apify")

  snapshots = {snapshot["label"]: snapshot for snapshot in registry.snapshot_all()}
  assert snapshots["apify"]["state"] == "open"
  assert snapshots["apify"]["cooldown_remaining_ms"] == 5000
  assert snapshots["anthropic"]["failure_count"] == 1


def test_registry_from_settings_merges_overrides() -> None:
  settings = make_settings(breaker_failure_threshold=4, breaker_cooldown_ms=10000, breaker_overrides={"kie": {"cooldown_ms": 90000}})

  registry = CircuitBreakerRegistry.from_settings(settings)

  assert registry.get("kie").config == CircuitBreakerConfig(failure_threshold=4, cooldown_ms=90000)
  assert registry.get("anthropic").config == CircuitBreakerConfig(failure_threshold=4, cooldown_ms=10000)


def test_default_registry_is_process_wide(monkeypatch: pytest.MonkeyPatch) -> None:
  monkeypatch.setattr("clipline.jobs.circuit_breaker.get_settings", lambda: make_settings())

  first = get_breaker_registry()
  assert get_breaker_registry() is first

  reset_breakers_for_testing()
  assert get_breaker_registry() is not first
