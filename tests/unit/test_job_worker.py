"""Unit tests for the worker loop and handler dispatch."""

from __future__ import annotations

import asyncio
from dataclasses import replace
from typing import Any

import pytest

from app.broker.queue import get_queue
from app.jobs.dispatch import JobExecution, JobHandlerRegistry
from app.jobs.errors import InvariantViolation
from app.jobs.models import JobContext, JobRecord
from app.jobs.worker import JobWorker
from app.services import jobs as job_service
from app.services.narrative import get_narrative_stream


class _AnalysisHandler:
  def __init__(self) -> None:
    self.seen: list[str] = []

  async def run(self, execution: JobExecution) -> dict[str, Any]:
    self.seen.append(execution.job_id)
    await execution.report_progress(50, current_step="Analyzing content")
    await execution.narrate("insight", "Found three audiences", progress=50)
    return {"url": execution.input["url"], "audiences": 3}


class _ProviderError(RuntimeError):
  code = "provider_timeout"


class _FailingHandler:
  async def run(self, execution: JobExecution) -> Any:
    raise _ProviderError("Model provider timed out")


class _CancelledMidRunHandler:
  async def run(self, execution: JobExecution) -> Any:
    await job_service.cancel_job(execution.job_id, JobContext(user_id="user-1"), execution.settings)
    await execution.cancellation.raise_if_cancelled()
    return {"unreachable": True}


async def _queued_job(repo, queue, job_id: str = "job-1", job_type: str = "website_analysis") -> None:
  await repo.create_job(JobRecord(job_id=job_id, type=job_type, status="queued", input={"url": "https://example.com"}, user_id="user-1"))
  await queue.enqueue(job_type, job_id, {"jobId": job_id})


def _worker(settings, handler: Any) -> JobWorker:
  return JobWorker(queue=get_queue(settings), registry=JobHandlerRegistry({"website_analysis": handler}), settings=settings)


@pytest.mark.anyio
async def test_run_once_completes_job(jobs_repo, fake_redis, settings) -> None:
  handler = _AnalysisHandler()
  worker = _worker(settings, handler)
  await _queued_job(jobs_repo, get_queue(settings))

  assert await worker.run_once() is True

  record = await jobs_repo.get_job("job-1")
  assert handler.seen == ["job-1"]
  assert record.status == "completed"
  assert record.progress == 100
  assert record.current_step == "Analyzing content"
  assert record.result == {"url": "https://example.com", "audiences": 3}
  assert record.started_at is not None
  assert record.finished_at is not None
  assert [item["type"] for item in await get_narrative_stream("job-1", settings)] == ["insight"]

  entry = await get_queue(settings).get_entry("job-1")
  assert entry.state == "completed"


@pytest.mark.anyio
async def test_handler_failure_is_recorded_on_row_and_queue(jobs_repo, fake_redis, settings) -> None:
  worker = _worker(settings, _FailingHandler())
  await _queued_job(jobs_repo, get_queue(settings))

  assert await worker.run_once() is True

  record = await jobs_repo.get_job("job-1")
  assert record.status == "failed"
  assert record.error == "Model provider timed out"
  assert record.error_code == "provider_timeout"

  entry = await get_queue(settings).get_entry("job-1")
  assert entry.state == "failed"
  assert entry.failed_reason == "Model provider timed out"


@pytest.mark.anyio
async def test_failed_job_can_be_retried_and_rerun(jobs_repo, fake_redis, settings) -> None:
  await _queued_job(jobs_repo, get_queue(settings))
  await _worker(settings, _FailingHandler()).run_once()

  await job_service.retry_job("job-1", JobContext(user_id="user-1"), settings)
  assert await _worker(settings, _AnalysisHandler()).run_once() is True

  record = await jobs_repo.get_job("job-1")
  assert record.status == "completed"
  assert record.error is None


@pytest.mark.anyio
async def test_cancellation_observed_mid_run_fails_job_as_cancelled(jobs_repo, fake_redis, settings) -> None:
  worker = _worker(settings, _CancelledMidRunHandler())
  await _queued_job(jobs_repo, get_queue(settings))

  assert await worker.run_once() is True

  record = await jobs_repo.get_job("job-1")
  assert record.status == "failed"
  assert record.error == "Cancelled"
  assert record.error_code is None
  assert record.result is None


@pytest.mark.anyio
async def test_job_cancelled_while_queued_never_runs(jobs_repo, fake_redis, settings) -> None:
  handler = _AnalysisHandler()
  worker = _worker(settings, handler)
  await _queued_job(jobs_repo, get_queue(settings))
  await job_service.cancel_job("job-1", JobContext(user_id="user-1"), settings)

  await worker.run_once()

  assert handler.seen == []
  assert (await jobs_repo.get_job("job-1")).error == "Cancelled"


@pytest.mark.anyio
async def test_process_job_skips_jobs_that_are_not_queued(jobs_repo, fake_redis, settings) -> None:
  handler = _AnalysisHandler()
  queue = get_queue(settings)
  await jobs_repo.create_job(JobRecord(job_id="job-1", type="website_analysis", status="completed", user_id="user-1"))
  await queue.enqueue("website_analysis", "job-1")
  entry = await queue.dequeue(["website_analysis"])

  record = await _worker(settings, handler).process_job(entry)

  assert record.status == "completed"
  assert handler.seen == []
  assert (await queue.get_entry("job-1")).state == "completed"

  await queue.enqueue("website_analysis", "missing")
  assert await _worker(settings, handler).process_job(await queue.dequeue(["website_analysis"])) is None
  assert (await queue.get_entry("missing")).state == "completed"


@pytest.mark.anyio
async def test_retry_while_worker_settles_failure_never_strands_job(jobs_repo, fake_redis, settings, monkeypatch: pytest.MonkeyPatch) -> None:
  queue = get_queue(settings)
  worker = _worker(settings, _FailingHandler())
  await _queued_job(jobs_repo, queue)
  settle_fail = queue.fail
  attempts: list[object] = []

  async def _try_retry(job_id: str) -> None:
    try:
      attempts.append(await job_service.retry_job(job_id, JobContext(user_id="user-1"), settings))
    except InvariantViolation as exc:
      attempts.append(exc)

  async def _retry_around_fail(job_id: str, reason: str) -> None:
    await _try_retry(job_id)
    await settle_fail(job_id, reason)
    await _try_retry(job_id)

  monkeypatch.setattr(queue, "fail", _retry_around_fail)

  assert await worker.run_once() is True

  # Until the row reads failed, a retry is refused rather than half-applied.
  assert len(attempts) == 2
  assert all(isinstance(attempt, InvariantViolation) for attempt in attempts)
  record = await jobs_repo.get_job("job-1")
  assert record.status == "failed"
  assert (await queue.get_entry("job-1")).state == "failed"

  assert await job_service.retry_job("job-1", JobContext(user_id="user-1"), settings) is not None
  assert (await jobs_repo.get_job("job-1")).status == "queued"
  entry = await queue.dequeue(["website_analysis"])
  assert entry is not None and entry.job_id == "job-1"


@pytest.mark.anyio
async def test_cancelled_entry_is_released_before_row_fails(jobs_repo, fake_redis, settings, monkeypatch: pytest.MonkeyPatch) -> None:
  queue = get_queue(settings)
  worker = _worker(settings, _CancelledMidRunHandler())
  await _queued_job(jobs_repo, queue)
  settle_complete = queue.complete
  row_status_at_settle: list[str] = []

  async def _record_row_then_complete(job_id: str) -> None:
    row_status_at_settle.append((await jobs_repo.get_job(job_id)).status)
    await settle_complete(job_id)

  monkeypatch.setattr(queue, "complete", _record_row_then_complete)

  await worker.run_once()

  assert row_status_at_settle == ["running"]
  assert (await jobs_repo.get_job("job-1")).status == "failed"
  assert await job_service.retry_job("job-1", JobContext(user_id="user-1"), settings) is not None
  assert (await queue.get_entry("job-1")).state == "waiting"


@pytest.mark.anyio
async def test_run_once_returns_false_when_queue_is_empty(jobs_repo, fake_redis, settings) -> None:
  assert await _worker(settings, _AnalysisHandler()).run_once() is False


@pytest.mark.anyio
async def test_run_forever_drains_until_stopped(jobs_repo, fake_redis, settings) -> None:
  fast = replace(settings, worker_poll_interval_seconds=0.01)
  stop_event = asyncio.Event()

  class _StoppingHandler(_AnalysisHandler):
    async def run(self, execution: JobExecution) -> dict[str, Any]:
      result = await super().run(execution)
      if len(self.seen) == 2:
        stop_event.set()
      return result

  handler = _StoppingHandler()
  worker = _worker(fast, handler)
  await _queued_job(jobs_repo, get_queue(fast), "job-1")
  await _queued_job(jobs_repo, get_queue(fast), "job-2")

  await asyncio.wait_for(worker.run_forever(stop_event), timeout=5)

  assert sorted(handler.seen) == ["job-1", "job-2"]


def test_registry_rejects_unknown_job_types() -> None:
  with pytest.raises(ValueError, match="Unsupported job types in registry: podcast"):
    JobHandlerRegistry({"podcast": _AnalysisHandler()})


def test_registry_resolve_unknown_type() -> None:
  registry = JobHandlerRegistry({"website_analysis": _AnalysisHandler()})
  assert registry.job_types == ("website_analysis",)
  with pytest.raises(ValueError, match="Unsupported job type: content_generation"):
    registry.resolve("content_generation")
