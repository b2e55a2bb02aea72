"""Reference worker loop that drains the work queue into registered job handlers."""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime

from app.broker.queue import QueueEntry, WorkQueue
from app.config import Settings
from app.jobs.dispatch import CancellationToken, JobExecution, JobHandlerRegistry
from app.jobs.errors import JobCancelledError, ServiceUnavailableError
from app.jobs.models import CANCELLED_ERROR, JobRecord
from app.services.jobs import get_job_row, is_job_cancelled, update_job_progress


def _utcnow() -> datetime:
  return datetime.now(UTC)


def _error_code(exc: BaseException) -> str | None:
  code = getattr(exc, "code", None)
  if code is None:
    return None
  return str(code)[:100]


class JobWorker:
  """Coordinates execution of queued jobs."""

  def __init__(self, *, queue: WorkQueue, registry: JobHandlerRegistry, settings: Settings) -> None:
    self._queue = queue
    self._registry = registry
    self._settings = settings
    self._logger = logging.getLogger(__name__)

  async def process_job(self, entry: QueueEntry) -> JobRecord | None:
    """Run one claimed entry to a terminal state.

    The queue entry is settled before the row is written as terminal, so a row that
    reads ``failed`` never has a live entry behind it and can be retried at once.
    Non-cancellation failures are re-raised after being recorded.
    """
    job_id = entry.job_id
    job = await get_job_row(job_id, self._settings)
    if job is None:
      self._logger.warning("Dequeued job missing from store job_id=%s", job_id)
      await self._queue.complete(job_id)
      return None
    # Duplicate deliveries and stale entries are skipped.
    if job.status != "queued":
      self._logger.info("Skipping job not in queued state job_id=%s status=%s", job_id, job.status)
      await self._queue.complete(job_id)
      return job

    await update_job_progress(job_id, self._settings, status="running", started_at=_utcnow())
    token = CancellationToken(job_id, self._settings)
    try:
      await token.raise_if_cancelled()
      handler = self._registry.resolve(job.type)
      result = await handler.run(JobExecution(job=job, settings=self._settings, cancellation=token))
      await token.raise_if_cancelled()
    except Exception as exc:
      cancelled = isinstance(exc, JobCancelledError) or await is_job_cancelled(job_id, self._settings)
      error = CANCELLED_ERROR if cancelled else (str(exc) or type(exc).__name__)
      error_code = None if cancelled else _error_code(exc)

      # Cancelled runs leave the queue as completed; the row still records the failure.
      if cancelled:
        await self._queue.complete(job_id)
      else:
        await self._queue.fail(job_id, error)
      record = await update_job_progress(job_id, self._settings, status="failed", error=error, error_code=error_code, finished_at=_utcnow())
      if not cancelled:
        raise
      self._logger.info("Job cancelled job_id=%s type=%s", job_id, job.type)
      return record

    await self._queue.complete(job_id)
    record = await update_job_progress(job_id, self._settings, status="completed", progress=100, result=result, finished_at=_utcnow())
    self._logger.info("Job completed job_id=%s type=%s", job_id, job.type)
    return record

  async def run_once(self) -> bool:
    """Claim and settle at most one entry; False when nothing was waiting."""
    entry = await self._queue.dequeue(self._registry.job_types)
    if entry is None:
      return False

    try:
      await self.process_job(entry)
    except ServiceUnavailableError:
      raise
    except Exception:  # noqa: BLE001
      # Keep draining after a failed job.
      self._logger.error("Job failed job_id=%s type=%s", entry.job_id, entry.name, exc_info=True)
    return True

  async def run_forever(self, stop_event: asyncio.Event) -> None:
    """Drain the queue until ``stop_event`` is set, idling between empty polls."""
    interval = self._settings.worker_poll_interval_seconds
    self._logger.info("Worker started queue=%s job_types=%s", self._queue.name, ",".join(self._registry.job_types))
    while not stop_event.is_set():
      try:
        processed = await self.run_once()
      except ServiceUnavailableError:
        self._logger.warning("Queue unavailable; retrying in %.1fs", interval, exc_info=True)
        processed = False

      if not processed:
        try:
          await asyncio.wait_for(stop_event.wait(), timeout=interval)
        except TimeoutError:
          continue
    self._logger.info("Worker stopped queue=%s", self._queue.name)
