from __future__ import annotations

import asyncio
import random
from datetime import timedelta

import pytest
from conftest import FakeClock, InMemoryJobsRepo, make_job

from clipline.jobs.backoff import BackoffPolicy
from clipline.jobs.errors import ConfigurationError, JobNotFoundError
from clipline.jobs.executor import JobExecutor
from clipline.jobs.models import WorkResult
from clipline.jobs.retry import RetryEngine
from clipline.jobs.state_machine import JobStateMachine
from clipline.services.jobs import cancel_job


class _NoJitter(random.Random):
  def random(self) -> float:
    return 0.0


class CountingWork:
  def __init__(self, *, error: BaseException | None = None, result: object = None) -> None:
    self.calls = 0
    self.error = error
    self.result = result

  async def __call__(self) -> object:
    self.calls += 1
    if self.error is not None:
      raise self.error
    return self.result


def _executor(repo: InMemoryJobsRepo, clock: FakeClock, *, max_attempts: int = 3) -> JobExecutor:
  state_machine = JobStateMachine(repo)
  retry_engine = RetryEngine(repo, policy=BackoffPolicy(max_attempts=max_attempts, base_delay_ms=1000, max_delay_ms=60000), state_machine=state_machine, clock=clock, rng=_NoJitter())
  return JobExecutor(repo, retry_engine=retry_engine, state_machine=state_machine, clock=clock)


async def _status_trail(repo: InMemoryJobsRepo, job_id: str) -> list[str]:
  events = await repo.list_events(job_id=job_id)
  return [event.to_status for event in events if event.to_status is not None]


@pytest.mark.anyio
async def test_success_completes_job_and_stores_result(jobs_repo: InMemoryJobsRepo, clock: FakeClock) -> None:
  jobs_repo.seed(make_job())
  work = CountingWork(result=WorkResult(payload={"script_id": "s-1"}, summary="1 script generated"))

  outcome = await _executor(jobs_repo, clock).run("job-1", work)

  assert outcome.ok
  assert outcome.result == {"script_id": "s-1"}
  assert outcome.skipped is None
  record = await jobs_repo.get_job("job-1")
  assert record is not None
  assert record.status == "completed"
  assert record.attempts == 1
  assert record.result_json == {"script_id": "s-1"}
  assert record.result_summary == "1 script generated"
  assert record.next_run_at is None


@pytest.mark.anyio
async def test_plain_result_is_json_normalised(jobs_repo: InMemoryJobsRepo, clock: FakeClock) -> None:
  jobs_repo.seed(make_job())
  work = CountingWork(result={"generated_at": clock.now, "count": 2})

  outcome = await _executor(jobs_repo, clock).run("job-1", work)

  assert outcome.ok
  record = await jobs_repo.get_job("job-1")
  assert record is not None
  assert record.result_json == {"generated_at": str(clock.now), "count": 2}


@pytest.mark.anyio
async def test_completed_job_is_skipped_without_calling_work(jobs_repo: InMemoryJobsRepo, clock: FakeClock) -> None:
  jobs_repo.seed(make_job(status="completed", attempts=1, result_json={"done": True}))
  work = CountingWork()

  outcome = await _executor(jobs_repo, clock).run("job-1", work)

  assert outcome.ok
  assert outcome.skipped == "already_completed"
  assert outcome.result == {"done": True}
  assert work.calls == 0
  assert jobs_repo.update_calls == 0


@pytest.mark.anyio
async def test_failed_job_is_skipped(jobs_repo: InMemoryJobsRepo, clock: FakeClock) -> None:
  jobs_repo.seed(make_job(status="failed", attempts=3, error="Max attempts exceeded: boom"))
  work = CountingWork()

  outcome = await _executor(jobs_repo, clock).run("job-1", work)

  assert not outcome.ok
  assert outcome.skipped == "already_failed"
  assert outcome.error == "Max attempts exceeded: boom"
  assert work.calls == 0


@pytest.mark.anyio
async def test_backoff_active_returns_without_mutation(jobs_repo: InMemoryJobsRepo, clock: FakeClock) -> None:
  next_run_at = clock.now + timedelta(seconds=5)
  jobs_repo.seed(make_job(attempts=1, next_run_at=next_run_at, last_error="HTTP 503"))
  work = CountingWork()

  outcome = await _executor(jobs_repo, clock).run("job-1", work)

  assert not outcome.ok
  assert outcome.skipped == "backoff_active"
  assert outcome.next_run_at == next_run_at
  assert work.calls == 0
  assert jobs_repo.update_calls == 0
  record = await jobs_repo.get_job("job-1")
  assert record is not None
  assert record.attempts == 1


@pytest.mark.anyio
async def test_unknown_job_raises(jobs_repo: InMemoryJobsRepo, clock: FakeClock) -> None:
  with pytest.raises(JobNotFoundError):
    await _executor(jobs_repo, clock).run("missing", CountingWork())


@pytest.mark.anyio
async def test_three_transient_failures_exhaust_retries(jobs_repo: InMemoryJobsRepo, clock: FakeClock) -> None:
  jobs_repo.seed(make_job())
  executor = _executor(jobs_repo, clock, max_attempts=3)
  work = CountingWork(error=RuntimeError("upstream returned 503"))

  first = await executor.run("job-1", work)
  assert first.retry is not None and first.retry.will_retry
  assert first.retry.backoff_ms == 1000

  clock.advance(seconds=1)
  second = await executor.run("job-1", work)
  assert second.retry is not None and second.retry.will_retry
  assert second.retry.backoff_ms == 2000

  clock.advance(seconds=2)
  third = await executor.run("job-1", work)
  assert third.retry is not None and not third.retry.will_retry

  record = await jobs_repo.get_job("job-1")
  assert record is not None
  assert record.status == "failed"
  assert record.attempts == 3
  assert record.error == "Max attempts exceeded: upstream returned 503"
  assert work.calls == 3
  assert await _status_trail(jobs_repo, "job-1") == ["pending", "running", "pending", "running", "pending", "running", "failed"]


@pytest.mark.anyio
async def test_permanent_failure_fails_after_one_attempt(jobs_repo: InMemoryJobsRepo, clock: FakeClock) -> None:
  jobs_repo.seed(make_job())
  work = CountingWork(error=ConfigurationError("Missing ANTHROPIC_API_KEY"))

  outcome = await _executor(jobs_repo, clock, max_attempts=5).run("job-1", work)

  assert not outcome.ok
  assert outcome.error == "Missing ANTHROPIC_API_KEY"
  assert outcome.retry is not None and not outcome.retry.will_retry
  record = await jobs_repo.get_job("job-1")
  assert record is not None
  assert record.status == "failed"
  assert record.attempts == 0
  assert work.calls == 1


@pytest.mark.anyio
async def test_running_job_is_resumed_without_new_attempt(jobs_repo: InMemoryJobsRepo, clock: FakeClock) -> None:
  jobs_repo.seed(make_job(status="running", attempts=2))
  work = CountingWork(result={"ok": True})

  outcome = await _executor(jobs_repo, clock).run("job-1", work)

  assert outcome.ok
  record = await jobs_repo.get_job("job-1")
  assert record is not None
  assert record.status == "completed"
  assert record.attempts == 2


@pytest.mark.anyio
async def test_losing_the_claim_race_skips(jobs_repo: InMemoryJobsRepo, clock: FakeClock) -> None:
  jobs_repo.seed(make_job())
  original_get = jobs_repo.get_job
  reads = 0

  async def get_then_claim(job_id: str):  # type: ignore[no-untyped-def]
    nonlocal reads
    reads += 1
    record = await original_get(job_id)
    if reads == 1:
      # Another worker claims between our read and our write.
      jobs_repo.force_status(job_id, "running", attempts=1)
    return record

  jobs_repo.get_job = get_then_claim  # type: ignore[method-assign]
  work = CountingWork()

  outcome = await _executor(jobs_repo, clock).run("job-1", work)

  assert not outcome.ok
  assert outcome.skipped == "claimed_elsewhere"
  assert work.calls == 0
  record = await original_get("job-1")
  assert record is not None
  assert record.attempts == 1


@pytest.mark.anyio
async def test_cancel_during_run_discards_completion(jobs_repo: InMemoryJobsRepo, clock: FakeClock) -> None:
  jobs_repo.seed(make_job())

  async def work() -> dict[str, bool]:
    await cancel_job(jobs_repo, "job-1", reason="operator request")
    return {"late": True}

  outcome = await _executor(jobs_repo, clock).run("job-1", work)

  assert not outcome.ok
  assert outcome.skipped == "already_failed"
  assert outcome.error == "Canceled: operator request"
  record = await jobs_repo.get_job("job-1")
  assert record is not None
  assert record.status == "failed"
  assert record.result_json is None


@pytest.mark.anyio
async def test_task_cancellation_propagates_and_leaves_job_running(jobs_repo: InMemoryJobsRepo, clock: FakeClock) -> None:
  jobs_repo.seed(make_job())
  started = asyncio.Event()

  async def hang() -> None:
    started.set()
    await asyncio.Event().wait()

  task = asyncio.create_task(_executor(jobs_repo, clock).run("job-1", hang))
  await started.wait()
  task.cancel()
  with pytest.raises(asyncio.CancelledError):
    await task

  record = await jobs_repo.get_job("job-1")
  assert record is not None
  assert record.status == "running"
  assert record.attempts == 1


@pytest.mark.anyio
async def test_concurrent_resumes_of_running_job_record_one_retry(jobs_repo: InMemoryJobsRepo, clock: FakeClock) -> None:
  jobs_repo.seed(make_job(status="running", attempts=1))
  both_started = asyncio.Event()
  started = 0

  async def work() -> None:
    nonlocal started
    started += 1
    if started == 2:
      both_started.set()
    await both_started.wait()
    raise RuntimeError("upstream returned 503")

  outcomes = await asyncio.gather(_executor(jobs_repo, clock).run("job-1", work), _executor(jobs_repo, clock).run("job-1", work))

  assert [outcome.ok for outcome in outcomes] == [False, False]
  assert sorted(outcome.retry.will_retry for outcome in outcomes if outcome.retry is not None) == [False, True]
  record = await jobs_repo.get_job("job-1")
  assert record is not None
  assert record.status == "pending"
  assert record.attempts == 1
  assert record.next_run_at == clock.now + timedelta(milliseconds=1000)
  assert await _status_trail(jobs_repo, "job-1") == ["pending"]
