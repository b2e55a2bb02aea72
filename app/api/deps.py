"""Shared FastAPI dependencies for job caller identity."""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends, Header, HTTPException, Query, status

from app.core.security import get_optional_user_id
from app.jobs.models import JobContext

_IDENTITY_REQUIRED_MSG = "Authentication or session ID (x-session-id) is required"


def _clean(value: str | None) -> str | None:
  if value is None:
    return None
  text = value.strip()
  return text or None


async def get_job_context(
  user_id: Annotated[str | None, Depends(get_optional_user_id)],
  x_session_id: Annotated[str | None, Header(alias="x-session-id")] = None,
  session_id: Annotated[str | None, Query(alias="sessionId")] = None,
) -> JobContext:
  """Build the caller identity from the verified token and the session header or query."""
  return JobContext(user_id=_clean(user_id), session_id=_clean(x_session_id) or _clean(session_id))


async def require_job_context(context: Annotated[JobContext, Depends(get_job_context)]) -> JobContext:
  """Reject callers that present neither a user nor a session."""
  if context.is_anonymous:
    raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=_IDENTITY_REQUIRED_MSG)
  return context
