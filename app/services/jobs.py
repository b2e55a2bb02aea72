"""Job lifecycle operations: create, read, retry, cancel and worker progress updates.

Every mutation re-reads the row, validates the requested change against the
current state, then writes. Ownership failures are reported as ``None`` so
callers cannot tell "missing" from "not yours".
"""

import json
import logging
from collections.abc import Sequence
from datetime import UTC, datetime
from typing import Any

from app.broker.connection import ensure_broker, get_connection
from app.broker.queue import WorkQueue, get_queue
from app.config import Settings
from app.jobs.access import has_access
from app.jobs.channels import events_channel
from app.jobs.errors import InvalidJobRequestError, InvariantViolation, ServiceUnavailableError, UserNotFoundError
from app.jobs.models import ALLOWED_TRANSITIONS, CANCELLABLE_STATUSES, JOB_STATUSES, JOB_TYPES, RETRIABLE_STATUS, CancelAck, JobContext, JobHandle, JobRecord, JobStatusView
from app.storage.factory import _get_jobs_repo, _get_user_store
from app.utils.ids import generate_job_id
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)

_NOT_FAILED_MSG = "Job is not in failed state"
_NOT_CANCELLABLE_MSG = "Job is not cancellable"
_STILL_SETTLING_MSG = "Job is still being settled by a worker; retry shortly"
_PROGRESS_FIELDS = frozenset({"status", "progress", "current_step", "estimated_seconds_remaining", "result", "error", "error_code", "started_at", "finished_at"})
# A None here means "not supplied" rather than "clear the column".
_NON_NULLABLE_PROGRESS_FIELDS = frozenset({"status", "progress"})


def _utcnow() -> datetime:
  return datetime.now(UTC)


def _isoformat(value: datetime | None) -> str | None:
  """Format timestamps as UTC ISO-8601 with millisecond precision and a Z suffix."""
  if value is None:
    return None
  if value.tzinfo is None:
    value = value.replace(tzinfo=UTC)
  return value.astimezone(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _require_queue(settings: Settings) -> WorkQueue:
  """Fail fast with a 503-class error before touching the database."""
  ensure_broker()
  queue = get_queue(settings)
  if queue is None:
    raise ServiceUnavailableError("Job queue unavailable: broker connection could not be established.")
  return queue


async def _publish_job_event(record: JobRecord) -> None:
  """Fan a progress snapshot out on the job's events channel; the row stays authoritative."""
  client = get_connection()
  if client is None:
    return

  payload = {
    "jobId": record.job_id,
    "status": record.status,
    "progress": record.progress if record.progress is not None else 0,
    "currentStep": record.current_step,
    "estimatedTimeRemaining": record.estimated_seconds_remaining,
    "error": record.error,
  }
  try:
    await client.publish(events_channel(record.job_id), json.dumps(payload))
  except RedisError:
    logger.warning("Job event publish failed job_id=%s status=%s", record.job_id, record.status, exc_info=True)


def _to_status_view(record: JobRecord) -> JobStatusView:
  return JobStatusView(
    job_id=record.job_id,
    type=record.type,
    status=record.status,
    progress=record.progress if record.progress is not None else 0,
    current_step=record.current_step,
    estimated_time_remaining=record.estimated_seconds_remaining,
    error=record.error,
    error_code=record.error_code,
    result=record.result,
    created_at=_isoformat(record.created_at),
    updated_at=_isoformat(record.updated_at),
    started_at=_isoformat(record.started_at),
    finished_at=_isoformat(record.finished_at),
    cancelled_at=_isoformat(record.cancelled_at),
  )


async def _get_owned_job(job_id: str, context: JobContext, settings: Settings) -> JobRecord | None:
  repo = _get_jobs_repo(settings)
  record = await repo.get_job(job_id)
  if record is None or not has_access(record, context):
    return None
  return record


async def create_job(job_type: str, payload: dict[str, Any] | None, context: JobContext, settings: Settings) -> JobHandle:
  """Persist a queued job and submit it to the work queue under the same id."""
  if job_type not in JOB_TYPES:
    raise InvalidJobRequestError(f"Invalid job type: {job_type}")
  if context.is_anonymous:
    raise InvalidJobRequestError("Either userId or sessionId is required")

  user_id = str(context.user_id) if context.user_id else None
  session_id = str(context.session_id) if context.session_id else None
  if user_id is not None:
    store = _get_user_store(settings)
    if not await store.user_exists(user_id):
      # A stale token falls back to the anonymous session when one is present.
      if session_id is None:
        raise UserNotFoundError(user_id)
      logger.warning("User not found; creating job for session only user_id=%s type=%s", user_id, job_type)
      user_id = None

  queue = _require_queue(settings)
  repo = _get_jobs_repo(settings)
  job_id = generate_job_id()
  record = JobRecord(job_id=job_id, type=job_type, status="queued", input=dict(payload or {}), tenant_id=context.tenant_id, user_id=user_id, session_id=session_id, progress=0)

  # Row first, then enqueue; a failure in between leaves a queued row with no entry.
  await repo.create_job(record)
  await queue.enqueue(job_type, job_id, {"jobId": job_id})
  logger.info("Job created job_id=%s type=%s user_id=%s session=%s", job_id, job_type, user_id, session_id is not None)
  return JobHandle(job_id=job_id)


async def create_voice_analysis_job(voice_sample_id: str, organization_id: str | None, user_id: str | None, settings: Settings) -> JobHandle:
  """Queue analysis of an uploaded voice sample for an organization."""
  if not user_id:
    raise InvalidJobRequestError("userId is required for voice analysis job")
  payload = {"voiceSampleId": voice_sample_id, "organizationId": organization_id}
  return await create_job("analyze_voice_sample", payload, JobContext(user_id=user_id, tenant_id=organization_id), settings)


async def create_content_calendar_job(strategy_ids: Sequence[str], user_id: str | None, settings: Settings) -> JobHandle | None:
  """Queue content calendar generation for one or more strategies; None when the user no longer exists."""
  if not strategy_ids:
    raise InvalidJobRequestError("Content calendar job requires non-empty strategyIds")
  if not user_id:
    raise InvalidJobRequestError("userId is required for content calendar job")

  store = _get_user_store(settings)
  if not await store.user_exists(str(user_id)):
    logger.warning("Skipping content calendar job for missing user user_id=%s", user_id)
    return None
  return await create_job("content_calendar", {"strategyIds": list(strategy_ids)}, JobContext(user_id=user_id), settings)


async def get_job_status(job_id: str, context: JobContext, settings: Settings) -> JobStatusView | None:
  """Return the caller-facing status of an owned job."""
  record = await _get_owned_job(job_id, context, settings)
  if record is None:
    return None
  return _to_status_view(record)


async def retry_job(job_id: str, context: JobContext, settings: Settings) -> JobHandle | None:
  """Reset a failed job to queued and resubmit it under the same id."""
  queue = _require_queue(settings)
  record = await _get_owned_job(job_id, context, settings)
  if record is None:
    return None
  if record.status != RETRIABLE_STATUS:
    raise InvariantViolation(_NOT_FAILED_MSG, 400)

  # A worker still holding the entry would settle it after our resubmission.
  entry = await queue.get_entry(job_id)
  if entry is not None and entry.state == "active":
    raise ServiceUnavailableError(_STILL_SETTLING_MSG)

  repo = _get_jobs_repo(settings)
  # error_code and estimated_seconds_remaining are left as-is.
  await repo.update_job(job_id, status="queued", progress=0, current_step=None, error=None, result=None, cancelled_at=None, started_at=None, finished_at=None)
  if not await queue.enqueue(record.type, job_id, {"jobId": job_id}):
    entry = await queue.get_entry(job_id)
    # A concurrent retry already left a waiting entry; the job will run.
    if entry is None or entry.state != "waiting":
      await repo.update_job(
        job_id,
        status=record.status,
        progress=record.progress,
        current_step=record.current_step,
        error=record.error,
        result=record.result,
        cancelled_at=record.cancelled_at,
        started_at=record.started_at,
        finished_at=record.finished_at,
      )
      raise ServiceUnavailableError(_STILL_SETTLING_MSG)
  logger.info("Job retried job_id=%s type=%s", job_id, record.type)
  return JobHandle(job_id=job_id)


async def cancel_job(job_id: str, context: JobContext, settings: Settings) -> CancelAck | None:
  """Record a cancellation request; the worker observes it and fails the job."""
  record = await _get_owned_job(job_id, context, settings)
  if record is None:
    return None
  if record.status not in CANCELLABLE_STATUSES:
    raise InvariantViolation(_NOT_CANCELLABLE_MSG, 400)

  repo = _get_jobs_repo(settings)
  await repo.update_job(job_id, cancelled_at=_utcnow())
  logger.info("Job cancellation requested job_id=%s status=%s", job_id, record.status)
  return CancelAck(cancelled=True)


async def update_job_progress(job_id: str, settings: Settings, **changes: Any) -> JobRecord | None:
  """Apply worker-reported fields; no ownership check. Returns None for a missing job."""
  unknown = set(changes) - _PROGRESS_FIELDS
  if unknown:
    raise ValueError(f"Unsupported progress fields: {', '.join(sorted(unknown))}")

  updates = {key: value for key, value in changes.items() if not (key in _NON_NULLABLE_PROGRESS_FIELDS and value is None)}
  new_status = updates.get("status")
  if new_status is not None and new_status not in JOB_STATUSES:
    raise InvariantViolation(f"Invalid job status: {new_status}", 409)
  progress = updates.get("progress")
  if progress is not None and not 0 <= int(progress) <= 100:
    raise InvariantViolation(f"Progress must be between 0 and 100, got {progress}", 409)

  repo = _get_jobs_repo(settings)
  current = await repo.get_job(job_id)
  if current is None:
    return None

  # Reporting the current status again is a no-op transition.
  if new_status is not None and new_status != current.status and new_status not in ALLOWED_TRANSITIONS.get(current.status, frozenset()):
    raise InvariantViolation(f"Illegal status transition {current.status} -> {new_status}", 409)

  if not updates:
    return current
  record = await repo.update_job(job_id, **updates)
  if record is not None:
    await _publish_job_event(record)
  return record


async def is_job_cancelled(job_id: str, settings: Settings) -> bool:
  """Return True once cancellation has been requested; False for a missing job."""
  repo = _get_jobs_repo(settings)
  return await repo.is_cancelled(job_id)


async def get_job_row(job_id: str, settings: Settings) -> JobRecord | None:
  """Return the raw job record without an ownership check (worker use)."""
  repo = _get_jobs_repo(settings)
  return await repo.get_job(job_id)
