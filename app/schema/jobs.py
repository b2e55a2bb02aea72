from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import CheckConstraint, DateTime, Index, Integer, String, Text, func, text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from app.core.database import Base


class Job(Base):
  __tablename__ = "jobs"
  # Type and status sets mirror app.jobs.models; keep both in sync.
  __table_args__ = (
    CheckConstraint("type IN ('website_analysis', 'content_generation', 'analyze_voice_sample', 'content_calendar')", name="ck_jobs_type"),
    CheckConstraint("status IN ('queued', 'running', 'completed', 'failed')", name="ck_jobs_status"),
    CheckConstraint("progress >= 0 AND progress <= 100", name="ck_jobs_progress_range"),
    CheckConstraint("user_id IS NOT NULL OR session_id IS NOT NULL", name="ck_jobs_owner"),
    Index("ix_jobs_status_created_at", "status", "created_at"),
  )

  id: Mapped[str] = mapped_column(String, primary_key=True)
  tenant_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
  user_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
  session_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
  type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
  status: Mapped[str] = mapped_column(String(20), nullable=False, server_default=text("'queued'"))
  progress: Mapped[int | None] = mapped_column(Integer, nullable=True, server_default=text("0"))
  current_step: Mapped[str | None] = mapped_column(String(255), nullable=True)
  estimated_seconds_remaining: Mapped[int | None] = mapped_column(Integer, nullable=True)
  input: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False, server_default=text("'{}'::jsonb"))
  result: Mapped[Any | None] = mapped_column(JSONB(none_as_null=True), nullable=True)
  error: Mapped[str | None] = mapped_column(Text, nullable=True)
  error_code: Mapped[str | None] = mapped_column(String(100), nullable=True)
  # Appended in place with jsonb concatenation, never rewritten.
  narrative_stream: Mapped[list[dict[str, Any]] | None] = mapped_column(JSONB, nullable=True, server_default=text("'[]'::jsonb"))
  cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
  started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
  finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
  created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
  updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())
