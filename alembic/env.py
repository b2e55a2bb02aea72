import asyncio
import logging
import sys
from logging.config import fileConfig
from os.path import abspath, dirname
from time import perf_counter

from sqlalchemy import pool
from sqlalchemy.engine import Connection
from sqlalchemy.ext.asyncio import async_engine_from_config

from alembic import context

# Make the repo root importable so 'app' resolves when alembic runs from any directory.
sys.path.insert(0, dirname(dirname(abspath(__file__))))

# Alembic Config object for the alembic.ini in use.
config = context.config

# Route alembic's own logging through the [loggers] sections of alembic.ini.
if config.config_file_name is not None:
  fileConfig(config.config_file_name)

# The jobs table module must be imported so it registers on Base.metadata.
import app.schema.jobs  # noqa: E402, F401
from app.core.database import Base, _database_url  # noqa: E402

target_metadata = Base.metadata

# Start time of the revision currently being applied.
_MIGRATION_TIMER = {"current_start": None}

# Reuse alembic's migration logger so revision logs sit next to its own output.
_migration_logger = logging.getLogger("alembic.runtime.migration")


def _on_version_apply(*, ctx: object, step: object, heads: set[str], run_args: dict[str, object]) -> None:
  """Log each applied revision with its duration."""
  # Measure from the end of the previous revision (or the run start).
  end_time = perf_counter()
  start_time = _MIGRATION_TIMER.get("current_start")
  revision = getattr(step, "up_revision_id", None) or "unknown"
  if start_time is None:
    _migration_logger.info("Applied migration %s", revision)
  else:
    _migration_logger.info("Applied migration %s in %.3fs", revision, end_time - start_time)

  # The next revision starts timing now.
  _MIGRATION_TIMER["current_start"] = perf_counter()


def _require_url() -> str:
  """Resolve the asyncpg URL shared with the API and worker; fail loudly when unset."""
  url = _database_url()
  if not url:
    raise RuntimeError("Migrations require AMB_PG_DSN or DATABASE_URL.")
  return url


def run_migrations_offline() -> None:
  """Emit SQL for the configured database without connecting."""
  # Column type changes are compared so autogenerate notices altered job columns.
  context.configure(url=_require_url(), target_metadata=target_metadata, literal_binds=True, dialect_opts={"paramstyle": "named"}, compare_type=True)

  with context.begin_transaction():
    context.run_migrations()


def do_run_migrations(connection: Connection) -> None:
  """Run migrations on the provided connection while logging revisions."""
  context.configure(connection=connection, target_metadata=target_metadata, compare_type=True, on_version_apply=_on_version_apply)

  # Log where the run starts and which head it is heading to.
  migration_context = context.get_context()
  current_revision = migration_context.get_current_revision() or "base"
  target_list = migration_context.script.get_heads() if migration_context.script else []
  _migration_logger.info("Starting migration run from %s to %s", current_revision, ", ".join(target_list) or "none")
  _MIGRATION_TIMER["current_start"] = perf_counter()

  # All revisions of one run share a transaction.
  with context.begin_transaction():
    context.run_migrations()

  final_heads = ", ".join(migration_context.get_current_heads()) or "none"
  _migration_logger.info("Completed migration run at %s", final_heads)


async def run_async_migrations() -> None:
  """Run migrations through the same asyncpg driver the service uses."""
  configuration = config.get_section(config.config_ini_section) or {}
  configuration["sqlalchemy.url"] = _require_url()
  # NullPool: migrations open one connection and exit.
  connectable = async_engine_from_config(configuration, prefix="sqlalchemy.", poolclass=pool.NullPool)

  async with connectable.connect() as connection:
    await connection.run_sync(do_run_migrations)

  await connectable.dispose()


def run_migrations_online() -> None:
  """Run migrations online on a fresh event loop."""
  asyncio.run(run_async_migrations())


if context.is_offline_mode():
  run_migrations_offline()
else:
  run_migrations_online()
