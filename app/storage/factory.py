"""Factory helpers for job storage backends."""

from __future__ import annotations

from app.config import Settings
from app.storage.jobs_repo import JobsRepository
from app.storage.postgres_jobs_repo import PostgresJobsRepository
from app.storage.users_repo import PostgresUserStore, UserStore


def _get_jobs_repo(settings: Settings) -> JobsRepository:
  """Return the jobs repository for the configured database."""
  if not settings.pg_dsn:
    raise RuntimeError("Job storage requires AMB_PG_DSN or DATABASE_URL.")
  return PostgresJobsRepository()


def _get_user_store(settings: Settings) -> UserStore:
  """Return the user lookup used to validate job owners."""
  if not settings.pg_dsn:
    raise RuntimeError("User lookups require AMB_PG_DSN or DATABASE_URL.")
  return PostgresUserStore()
