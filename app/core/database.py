"""Async SQLAlchemy engine and sessions for the jobs database.

The engine is built lazily from ``AMB_PG_DSN`` (or ``DATABASE_URL``) so the API
can start and answer ``/health`` before a database is configured. Migrations,
the API and the worker all resolve the URL through ``_database_url``.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from app.config import get_database_settings
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

logger = logging.getLogger(__name__)

_ASYNC_SCHEME = "postgresql+asyncpg://"
# Hosted Postgres providers hand out either spelling.
_PLAIN_SCHEMES = ("postgresql://", "postgres://")


class Base(DeclarativeBase):
  """Declarative base for tables owned by the job service."""


_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def _database_url() -> str | None:
  """Return the configured DSN with the asyncpg driver selected, or None when unset."""
  database_url = get_database_settings().pg_dsn
  if not database_url:
    return None

  for scheme in _PLAIN_SCHEMES:
    if database_url.startswith(scheme):
      return _ASYNC_SCHEME + database_url[len(scheme) :]
  return database_url


def get_db_engine() -> AsyncEngine | None:
  """Return the shared engine, creating it on first use; None without a DSN."""
  global _engine
  if _engine is not None:
    return _engine

  database_url = _database_url()
  if not database_url:
    return None

  settings = get_database_settings()
  # Worker connections can sit idle between polls long enough for the server to drop them.
  _engine = create_async_engine(
    database_url,
    echo=settings.debug,
    pool_size=settings.pg_pool_size,
    pool_pre_ping=True,
    connect_args={"timeout": settings.pg_connect_timeout},
  )
  logger.info("Database engine created host=%s pool_size=%d", make_url(database_url).host, settings.pg_pool_size)
  return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession] | None:
  """Return the shared session factory; None without a DSN."""
  global _session_factory
  if _session_factory is None:
    db_engine = get_db_engine()
    if db_engine is not None:
      _session_factory = async_sessionmaker(bind=db_engine, expire_on_commit=False, class_=AsyncSession)
  return _session_factory


@asynccontextmanager
async def session_scope() -> AsyncIterator[AsyncSession]:
  """Yield a session from the shared factory; raise when no database is configured."""
  session_factory = get_session_factory()
  if session_factory is None:
    raise RuntimeError("Database connection is not configured (AMB_PG_DSN or DATABASE_URL is missing).")

  async with session_factory() as session:
    yield session


async def dispose_engine() -> None:
  """Release pooled connections on shutdown."""
  global _engine, _session_factory
  if _engine is not None:
    await _engine.dispose()
    logger.info("Database engine disposed")
  _engine = None
  _session_factory = None
