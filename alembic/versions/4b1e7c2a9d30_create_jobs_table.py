"""Create jobs table with narrative stream.

Revision ID: 4b1e7c2a9d30
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision = "4b1e7c2a9d30"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
  """Upgrade schema."""
  op.create_table(
    "jobs",
    sa.Column("id", sa.String(), nullable=False),
    sa.Column("tenant_id", sa.String(), nullable=True),
    sa.Column("user_id", sa.String(), nullable=True),
    sa.Column("session_id", sa.String(length=255), nullable=True),
    sa.Column("type", sa.String(length=50), nullable=False),
    sa.Column("status", sa.String(length=20), server_default=sa.text("'queued'"), nullable=False),
    sa.Column("progress", sa.Integer(), server_default=sa.text("0"), nullable=True),
    sa.Column("current_step", sa.String(length=255), nullable=True),
    sa.Column("estimated_seconds_remaining", sa.Integer(), nullable=True),
    sa.Column("input", postgresql.JSONB(astext_type=sa.Text()), server_default=sa.text("'{}'::jsonb"), nullable=False),
    sa.Column("result", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
    sa.Column("error", sa.Text(), nullable=True),
    sa.Column("error_code", sa.String(length=100), nullable=True),
    sa.Column("narrative_stream", postgresql.JSONB(astext_type=sa.Text()), server_default=sa.text("'[]'::jsonb"), nullable=True),
    sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    sa.CheckConstraint("type IN ('website_analysis', 'content_generation', 'analyze_voice_sample', 'content_calendar')", name="ck_jobs_type"),
    sa.CheckConstraint("status IN ('queued', 'running', 'completed', 'failed')", name="ck_jobs_status"),
    sa.CheckConstraint("progress >= 0 AND progress <= 100", name="ck_jobs_progress_range"),
    sa.CheckConstraint("user_id IS NOT NULL OR session_id IS NOT NULL", name="ck_jobs_owner"),
    sa.PrimaryKeyConstraint("id"),
  )
  op.create_index("ix_jobs_tenant_id", "jobs", ["tenant_id"], unique=False)
  op.create_index("ix_jobs_user_id", "jobs", ["user_id"], unique=False)
  op.create_index("ix_jobs_session_id", "jobs", ["session_id"], unique=False)
  op.create_index("ix_jobs_type", "jobs", ["type"], unique=False)
  op.create_index("ix_jobs_status_created_at", "jobs", ["status", "created_at"], unique=False)


def downgrade() -> None:
  """Downgrade schema."""
  op.drop_index("ix_jobs_status_created_at", table_name="jobs")
  op.drop_index("ix_jobs_type", table_name="jobs")
  op.drop_index("ix_jobs_session_id", table_name="jobs")
  op.drop_index("ix_jobs_user_id", table_name="jobs")
  op.drop_index("ix_jobs_tenant_id", table_name="jobs")
  op.drop_table("jobs")
