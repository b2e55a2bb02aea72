"""Dependency-injected job handler dispatch helpers."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol

from app.config import Settings
from app.jobs.errors import JobCancelledError
from app.jobs.models import JOB_TYPES, JobRecord, NarrativeEvent
from app.services.jobs import is_job_cancelled, update_job_progress
from app.services.narrative import publish_narrative_event


class CancellationToken:
  """Cooperative cancellation flag backed by the job row's cancelled_at column."""

  def __init__(self, job_id: str, settings: Settings) -> None:
    self.job_id = job_id
    self._settings = settings
    self._cancelled = False

  async def is_cancelled(self) -> bool:
    """Poll the store; once observed, cancellation sticks for the rest of the run."""
    if not self._cancelled:
      self._cancelled = await is_job_cancelled(self.job_id, self._settings)
    return self._cancelled

  async def raise_if_cancelled(self) -> None:
    if await self.is_cancelled():
      raise JobCancelledError(self.job_id)


@dataclass
class JobExecution:
  """Everything a handler needs to run one job and report on it."""

  job: JobRecord
  settings: Settings
  cancellation: CancellationToken
  metadata: dict[str, Any] = field(default_factory=dict)

  @property
  def job_id(self) -> str:
    return self.job.job_id

  @property
  def input(self) -> dict[str, Any]:
    return self.job.input

  async def report_progress(self, progress: int | None = None, *, current_step: str | None = None, estimated_seconds_remaining: int | None = None) -> None:
    """Record progress; omitted keyword fields are left unchanged."""
    # update_job_progress drops a None progress.
    changes: dict[str, Any] = {"progress": progress}
    if current_step is not None:
      changes["current_step"] = current_step
    if estimated_seconds_remaining is not None:
      changes["estimated_seconds_remaining"] = estimated_seconds_remaining
    await update_job_progress(self.job_id, self.settings, **changes)

  async def narrate(self, event_type: str, content: str = "", *, progress: int | None = None) -> dict[str, Any]:
    """Append a narrative line and publish it to live listeners."""
    return await publish_narrative_event(self.job_id, NarrativeEvent(type=event_type, content=content, progress=progress), self.settings)


class JobHandler(Protocol):
  """Handler contract for one job type."""

  async def run(self, execution: JobExecution) -> Any:
    """Run the job and return its JSON-serializable result."""


class JobHandlerRegistry:
  """Registry mapping job types to handlers."""

  def __init__(self, handlers: dict[str, JobHandler]) -> None:
    # Every registered type must be a known job type.
    unknown = set(handlers) - set(JOB_TYPES)
    if unknown:
      raise ValueError(f"Unsupported job types in registry: {', '.join(sorted(unknown))}")
    self._handlers = dict(handlers)

  @property
  def job_types(self) -> tuple[str, ...]:
    return tuple(self._handlers)

  def resolve(self, job_type: str) -> JobHandler:
    """Resolve the handler for a job type."""
    handler = self._handlers.get(job_type)
    if handler is None:
      raise ValueError(f"Unsupported job type: {job_type}")
    return handler
