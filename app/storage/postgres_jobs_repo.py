"""Postgres-backed repository for content jobs using SQLAlchemy."""

from __future__ import annotations

from typing import Any

from sqlalchemy import Update, bindparam, func, literal_column, select, update
from sqlalchemy.dialects.postgresql import JSONB

from app.core.database import session_scope
from app.jobs.models import JobRecord
from app.schema.jobs import Job
from app.storage.jobs_repo import MUTABLE_JOB_FIELDS, JobsRepository


def build_narrative_append(job_id: str, item: dict[str, Any]) -> Update:
  """Build the single-statement append: narrative_stream = COALESCE(narrative_stream, '[]') || [item]."""
  # Concatenating server-side keeps concurrent appends from overwriting each other.
  current = func.coalesce(Job.narrative_stream, literal_column("'[]'::jsonb"))
  appended = current.op("||", return_type=JSONB)(bindparam("narrative_item", [item], type_=JSONB))
  return update(Job).where(Job.id == job_id).values(narrative_stream=appended, updated_at=func.now()).returning(Job.id)


class PostgresJobsRepository(JobsRepository):
  """Persist jobs to Postgres using SQLAlchemy."""

  async def create_job(self, record: JobRecord) -> None:
    # Narrative starts as an empty array so appends never see NULL on new rows.
    async with session_scope() as session:
      job = Job(
        id=record.job_id,
        tenant_id=record.tenant_id,
        user_id=record.user_id,
        session_id=record.session_id,
        type=record.type,
        status=record.status,
        progress=record.progress if record.progress is not None else 0,
        current_step=record.current_step,
        estimated_seconds_remaining=record.estimated_seconds_remaining,
        input=record.input,
        narrative_stream=[],
      )
      session.add(job)
      await session.commit()

  async def get_job(self, job_id: str) -> JobRecord | None:
    async with session_scope() as session:
      row = await session.get(Job, job_id)
      if row is None:
        return None
      return self._model_to_record(row)

  async def update_job(self, job_id: str, **changes: Any) -> JobRecord | None:
    unknown = set(changes) - MUTABLE_JOB_FIELDS
    if unknown:
      raise ValueError(f"Unsupported job fields: {', '.join(sorted(unknown))}")

    async with session_scope() as session:
      row = await session.get(Job, job_id)
      if row is None:
        return None

      # None values are written through; callers decide which columns to clear.
      for column, value in changes.items():
        setattr(row, column, value)

      session.add(row)
      await session.commit()
      await session.refresh(row)
      return self._model_to_record(row)

  async def is_cancelled(self, job_id: str) -> bool:
    async with session_scope() as session:
      stmt = select(Job.cancelled_at).where(Job.id == job_id)
      cancelled_at = (await session.execute(stmt)).scalar_one_or_none()
      return cancelled_at is not None

  async def append_narrative(self, job_id: str, item: dict[str, Any]) -> bool:
    # RETURNING yields no row when the job id does not exist.
    async with session_scope() as session:
      result = await session.execute(build_narrative_append(job_id, item))
      updated = result.scalar_one_or_none()
      await session.commit()
      return updated is not None

  async def get_narrative(self, job_id: str) -> Any:
    async with session_scope() as session:
      stmt = select(Job.id, Job.narrative_stream).where(Job.id == job_id)
      row = (await session.execute(stmt)).first()
      if row is None:
        return None
      # Rows created before the column had a default may still hold NULL.
      return row.narrative_stream if row.narrative_stream is not None else []

  def _model_to_record(self, row: Job) -> JobRecord:
    return JobRecord(
      job_id=row.id,
      type=row.type,
      status=row.status,
      input=row.input or {},
      tenant_id=row.tenant_id,
      user_id=row.user_id,
      session_id=row.session_id,
      progress=row.progress,
      current_step=row.current_step,
      estimated_seconds_remaining=row.estimated_seconds_remaining,
      result=row.result,
      error=row.error,
      error_code=row.error_code,
      cancelled_at=row.cancelled_at,
      started_at=row.started_at,
      finished_at=row.finished_at,
      created_at=row.created_at,
      updated_at=row.updated_at,
    )
