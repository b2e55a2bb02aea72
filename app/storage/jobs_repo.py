"""Storage interfaces for content jobs."""

from __future__ import annotations

from typing import Any, Protocol

from app.jobs.models import JobRecord

# Columns a caller may change after creation. id, type, input and ownership are immutable.
MUTABLE_JOB_FIELDS = frozenset(
  {
    "status",
    "progress",
    "current_step",
    "estimated_seconds_remaining",
    "result",
    "error",
    "error_code",
    "cancelled_at",
    "started_at",
    "finished_at",
  }
)


class JobsRepository(Protocol):
  """Repository contract for job persistence."""

  async def create_job(self, record: JobRecord) -> None:
    """Persist an initial job record."""

  async def get_job(self, job_id: str) -> JobRecord | None:
    """Fetch a job by identifier."""

  async def update_job(self, job_id: str, **changes: Any) -> JobRecord | None:
    """Write exactly the supplied columns (None writes NULL) and return the updated row."""

  async def is_cancelled(self, job_id: str) -> bool:
    """Return True when cancellation was requested for the job."""

  async def append_narrative(self, job_id: str, item: dict[str, Any]) -> bool:
    """Atomically append one item to the narrative stream; False when the job is missing."""

  async def get_narrative(self, job_id: str) -> Any:
    """Return the raw stored narrative value, or None when the job is missing."""
