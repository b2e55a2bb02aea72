"""Request and response payloads for the jobs API."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, StrictInt, StrictStr, field_validator

from app.jobs.models import JobStatusView


def _to_camel(string: str) -> str:
  """Convert snake_case to camelCase so the API accepts frontend-style payloads."""
  parts = string.split("_")
  if not parts:
    return string
  return parts[0] + "".join(part[:1].upper() + part[1:] for part in parts[1:])


class _CamelModel(BaseModel):
  model_config = ConfigDict(populate_by_name=True, alias_generator=_to_camel)


class WebsiteAnalysisRequest(_CamelModel):
  """Request payload for a website analysis job."""

  url: StrictStr = Field(min_length=1, description="Website URL to analyse.")
  session_id: StrictStr | None = Field(default=None, description="Anonymous session id; overrides the x-session-id header.")

  @field_validator("url")
  @classmethod
  def validate_url(cls, value: str) -> str:
    cleaned = value.strip()
    if not cleaned:
      raise ValueError("url is required")
    return cleaned


class ContentGenerationRequest(_CamelModel):
  """Request payload for a content generation job."""

  topic: Any = Field(description="Topic selected for the post.")
  business_info: Any = Field(description="Business context gathered during analysis.")
  organization_id: StrictStr = Field(min_length=1, description="Organization (tenant) the content belongs to.")
  additional_instructions: StrictStr | None = None
  options: dict[str, Any] = Field(default_factory=dict)

  @field_validator("topic", "business_info")
  @classmethod
  def validate_present(cls, value: Any) -> Any:
    if not value:
      raise ValueError("topic and businessInfo are required")
    return value


class JobCreateResponse(_CamelModel):
  """Response payload for job creation and retry."""

  job_id: StrictStr


class JobCancelResponse(_CamelModel):
  """Response payload for a recorded cancellation request."""

  cancelled: bool = True


class JobStatusResponse(_CamelModel):
  """Status payload for a background job."""

  job_id: StrictStr
  type: StrictStr
  status: StrictStr
  progress: StrictInt = Field(ge=0, le=100)
  current_step: StrictStr | None = None
  estimated_time_remaining: StrictInt | None = None
  error: StrictStr | None = None
  error_code: StrictStr | None = None
  result: Any = None
  created_at: StrictStr | None = None
  updated_at: StrictStr | None = None
  started_at: StrictStr | None = None
  finished_at: StrictStr | None = None
  cancelled_at: StrictStr | None = None

  @classmethod
  def from_view(cls, view: JobStatusView) -> JobStatusResponse:
    return cls(
      job_id=view.job_id,
      type=view.type,
      status=view.status,
      progress=view.progress,
      current_step=view.current_step,
      estimated_time_remaining=view.estimated_time_remaining,
      error=view.error,
      error_code=view.error_code,
      result=view.result,
      created_at=view.created_at,
      updated_at=view.updated_at,
      started_at=view.started_at,
      finished_at=view.finished_at,
      cancelled_at=view.cancelled_at,
    )


class NarrativeItem(BaseModel):
  """One stored narrative event."""

  type: StrictStr
  content: Any = ""
  progress: Any = None
  timestamp: Any = None
  model_config = ConfigDict(extra="allow")


class NarrativeResponse(_CamelModel):
  """Replay of every narrative event stored for a job."""

  job_id: StrictStr
  events: list[NarrativeItem]
