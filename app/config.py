"""Application configuration loaded from environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache

from app.utils.env import default_env_path, load_env_file

load_env_file(default_env_path(), override=False)


@dataclass(frozen=True)
class Settings:
  """Typed settings for the job orchestration service."""

  environment: str
  allowed_origins: tuple[str, ...]
  debug: bool
  log_max_bytes: int
  log_backup_count: int
  log_http_4xx: bool
  pg_dsn: str | None
  pg_connect_timeout: int
  firebase_project_id: str | None
  firebase_service_account_json_path: str | None
  jobs_queue_name: str
  jobs_queue_prefix: str
  jobs_keep_completed: int
  job_stream_max_age_seconds: int
  job_stream_poll_seconds: float
  worker_poll_interval_seconds: float


@dataclass(frozen=True)
class DatabaseSettings:
  """Typed settings for database connectivity."""

  debug: bool
  pg_dsn: str | None
  pg_connect_timeout: int
  pg_pool_size: int


@dataclass(frozen=True)
class BrokerSettings:
  """Raw broker connection inputs; validated by app.broker.connection."""

  url: str | None
  token: str | None


def _parse_origins(raw: str | None) -> tuple[str, ...]:
  if not raw:
    raise ValueError("AMB_ALLOWED_ORIGINS must be set to one or more origins.")

  origins = [origin.strip() for origin in raw.split(",") if origin.strip()]

  if not origins:
    raise ValueError("AMB_ALLOWED_ORIGINS must include at least one origin.")

  if "*" in origins:
    raise ValueError("AMB_ALLOWED_ORIGINS must not include wildcard origins.")

  return tuple(origins)


def _parse_bool(raw: str | None) -> bool:
  """Parse a boolean-ish string from environment variables."""

  if raw is None:
    return False

  normalized = raw.strip().lower()
  return normalized in {"1", "true", "yes", "on"}


def _positive_int(name: str, default: str) -> int:
  value = int(os.getenv(name, default))
  if value <= 0:
    raise ValueError(f"{name} must be a positive integer.")
  return value


def _positive_float(name: str, default: str) -> float:
  value = float(os.getenv(name, default))
  if value <= 0:
    raise ValueError(f"{name} must be a positive number.")
  return value


@lru_cache(maxsize=1)
def get_settings() -> Settings:
  """Load settings once per process."""

  environment = os.getenv("AMB_ENV", "development").lower()

  # Toggle verbose error output and diagnostics in non-production environments.
  debug = _parse_bool(os.getenv("AMB_DEBUG"))

  log_max_bytes = _positive_int("AMB_LOG_MAX_BYTES", "5242880")  # 5MB default
  log_backup_count = int(os.getenv("AMB_LOG_BACKUP_COUNT", "10"))
  if log_backup_count < 0:
    raise ValueError("AMB_LOG_BACKUP_COUNT must be zero or a positive integer.")

  # Allow opt-in logging of 4xx responses for diagnostics.
  log_http_4xx = _parse_bool(os.getenv("AMB_LOG_HTTP_4XX"))

  queue_name = (os.getenv("AMB_JOBS_QUEUE_NAME") or "amb-jobs").strip()
  if not queue_name:
    raise ValueError("AMB_JOBS_QUEUE_NAME must not be blank.")

  # Completed queue entries are trimmed to this many; failed entries are always kept.
  keep_completed = int(os.getenv("AMB_JOBS_KEEP_COMPLETED", "1000"))
  if keep_completed < 0:
    raise ValueError("AMB_JOBS_KEEP_COMPLETED must be zero or a positive integer.")

  return Settings(
    environment=environment,
    allowed_origins=_parse_origins(os.getenv("AMB_ALLOWED_ORIGINS")),
    debug=debug,
    log_max_bytes=log_max_bytes,
    log_backup_count=log_backup_count,
    log_http_4xx=log_http_4xx,
    pg_dsn=os.getenv("AMB_PG_DSN") or os.getenv("DATABASE_URL"),
    pg_connect_timeout=int(os.getenv("AMB_PG_CONNECT_TIMEOUT", "5")),
    firebase_project_id=_optional_str(os.getenv("FIREBASE_PROJECT_ID")),
    firebase_service_account_json_path=_optional_str(os.getenv("FIREBASE_SERVICE_ACCOUNT_JSON_PATH")),
    jobs_queue_name=queue_name,
    jobs_queue_prefix=(os.getenv("AMB_JOBS_QUEUE_PREFIX") or "amb").strip(),
    jobs_keep_completed=keep_completed,
    job_stream_max_age_seconds=_positive_int("AMB_JOB_STREAM_MAX_AGE_SECONDS", "250"),
    job_stream_poll_seconds=_positive_float("AMB_JOB_STREAM_POLL_SECONDS", "2"),
    worker_poll_interval_seconds=_positive_float("AMB_WORKER_POLL_INTERVAL_SECONDS", "1"),
  )


@lru_cache(maxsize=1)
def get_database_settings() -> DatabaseSettings:
  """Load database settings without requiring web-runtime configuration like CORS."""
  # Keep database configuration isolated so migrations and the worker don't require unrelated env vars.
  debug = _parse_bool(os.getenv("AMB_DEBUG"))
  pg_connect_timeout = int(os.getenv("AMB_PG_CONNECT_TIMEOUT", "5"))
  if pg_connect_timeout <= 0:
    raise ValueError("AMB_PG_CONNECT_TIMEOUT must be a positive integer.")

  pg_dsn = os.getenv("AMB_PG_DSN") or os.getenv("DATABASE_URL")
  pg_pool_size = _positive_int("AMB_PG_POOL_SIZE", "5")

  return DatabaseSettings(debug=debug, pg_dsn=pg_dsn, pg_connect_timeout=pg_connect_timeout, pg_pool_size=pg_pool_size)


def get_broker_settings() -> BrokerSettings:
  """Read broker inputs on every call so misconfiguration surfaces where it is used."""
  return BrokerSettings(url=os.getenv("REDIS_URL"), token=_optional_str(os.getenv("REDIS_TOKEN")))


def _optional_str(raw: str | None) -> str | None:
  if raw is None:
    return None
  value = raw.strip()
  if value == "":
    return None
  return value
