"""Run the job worker against the configured queue.

Handlers are supplied by the deployment as an import path to a callable that
returns a mapping of job type to handler, e.g.::

  python scripts/run_worker.py --handlers mycompany.handlers:build_handlers
"""

from __future__ import annotations

import argparse
import asyncio
import importlib
import logging
import signal
import sys

from app.broker.connection import close_connection, ensure_broker
from app.broker.queue import get_queue
from app.config import get_settings
from app.core.database import dispose_engine
from app.core.logging import _initialize_logging
from app.jobs.dispatch import JobHandlerRegistry
from app.jobs.errors import ServiceUnavailableError
from app.jobs.worker import JobWorker

logger = logging.getLogger("scripts.run_worker")


def load_registry(target: str) -> JobHandlerRegistry:
  """Import ``module:attr`` and build a registry from the mapping it returns."""
  module_name, _, attr = target.partition(":")
  if not module_name or not attr:
    raise ValueError(f"Handler target must look like 'package.module:factory', got {target!r}")
  factory = getattr(importlib.import_module(module_name), attr)
  handlers = factory() if callable(factory) else factory
  if isinstance(handlers, JobHandlerRegistry):
    return handlers
  return JobHandlerRegistry(dict(handlers))


async def _run(args: argparse.Namespace) -> int:
  settings = get_settings()
  _initialize_logging(settings)
  registry = load_registry(args.handlers)

  # Exit code 2 when the broker is missing or invalid.

  try:
    ensure_broker()
  except ServiceUnavailableError as exc:
    logger.error("%s", exc)
    return 2

  queue = get_queue(settings)
  if queue is None:
    logger.error("Job queue could not be initialized.")
    return 2

  worker = JobWorker(queue=queue, registry=registry, settings=settings)
  try:
    # Single pass mode is used by cron-style schedulers and smoke checks.
    if args.once:
      processed = await worker.run_once()
      logger.info("Single pass finished processed=%s", processed)
      return 0

    # SIGTERM from the orchestrator lets the current job finish before exit.
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
      loop.add_signal_handler(signum, stop_event.set)
    await worker.run_forever(stop_event)
    return 0
  finally:
    # Release broker and database pools even when the loop exits on an error.
    await close_connection()
    await dispose_engine()


def main() -> None:
  """Parse arguments and run the worker until stopped."""
  parser = argparse.ArgumentParser(description="Process queued content jobs.")
  parser.add_argument("--handlers", required=True, help="Import path 'module:factory' returning {job_type: handler}.")
  parser.add_argument("--once", action="store_true", help="Process at most one job and exit.")
  args = parser.parse_args()
  sys.exit(asyncio.run(_run(args)))


if __name__ == "__main__":
  main()
