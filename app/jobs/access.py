"""Ownership checks for job rows."""

from __future__ import annotations

from app.jobs.models import JobContext, JobRecord


def _normalize(value: object) -> str | None:
  if value is None:
    return None
  text = str(value).strip()
  return text or None


def has_access(record: JobRecord, context: JobContext) -> bool:
  """Return True when the caller owns the job by user id or session id."""
  user_id = _normalize(context.user_id)
  if user_id is not None and _normalize(record.user_id) == user_id:
    return True

  session_id = _normalize(context.session_id)
  return session_id is not None and _normalize(record.session_id) == session_id
