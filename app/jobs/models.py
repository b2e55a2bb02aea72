"""Domain models for asynchronous content jobs."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal

JobStatus = Literal["queued", "running", "completed", "failed"]
JobType = Literal["website_analysis", "content_generation", "analyze_voice_sample", "content_calendar"]

JOB_TYPES: tuple[str, ...] = ("website_analysis", "content_generation", "analyze_voice_sample", "content_calendar")
JOB_STATUSES: tuple[str, ...] = ("queued", "running", "completed", "failed")
TERMINAL_STATUSES = frozenset({"completed", "failed"})
RETRIABLE_STATUS = "failed"
CANCELLABLE_STATUSES = frozenset({"queued", "running"})
CANCELLED_ERROR = "Cancelled"

# Transitions a worker may report. failed -> queued is reserved for retry.
ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
  "queued": frozenset({"running"}),
  "running": frozenset({"completed", "failed"}),
  "completed": frozenset(),
  "failed": frozenset(),
}


@dataclass(frozen=True)
class JobContext:
  """Caller identity used for ownership checks."""

  user_id: str | None = None
  session_id: str | None = None
  tenant_id: str | None = None

  @property
  def is_anonymous(self) -> bool:
    return not self.user_id and not self.session_id


@dataclass
class JobRecord:
  """A persisted content job row."""

  job_id: str
  type: JobType
  status: JobStatus
  input: dict[str, Any] = field(default_factory=dict)
  tenant_id: str | None = None
  user_id: str | None = None
  session_id: str | None = None
  progress: int | None = 0
  current_step: str | None = None
  estimated_seconds_remaining: int | None = None
  result: Any = None
  error: str | None = None
  error_code: str | None = None
  cancelled_at: datetime | None = None
  started_at: datetime | None = None
  finished_at: datetime | None = None
  created_at: datetime | None = None
  updated_at: datetime | None = None
  narrative_stream: list[dict[str, Any]] | None = None


@dataclass(frozen=True)
class JobHandle:
  """Identifier returned by create and retry."""

  job_id: str


@dataclass(frozen=True)
class CancelAck:
  """Acknowledgement that a cancellation request was recorded."""

  cancelled: bool = True


@dataclass(frozen=True)
class JobStatusView:
  """Caller-facing projection of a job row."""

  job_id: str
  type: str
  status: str
  progress: int
  current_step: str | None
  estimated_time_remaining: int | None
  error: str | None
  error_code: str | None
  result: Any
  created_at: str | None
  updated_at: str | None
  started_at: str | None = None
  finished_at: str | None = None
  cancelled_at: str | None = None


@dataclass(frozen=True)
class NarrativeEvent:
  """One entry appended to a job's narrative stream."""

  type: str
  content: str = ""
  progress: int | None = None
  timestamp: int | None = None
