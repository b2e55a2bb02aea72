"""Named work queue stored in Redis.

Entries are keyed by the job's database id, so submitting the same id twice
never produces two deliverable entries. Key layout under ``{prefix}:{name}``:

- ``entry:{id}``: hash with name, data, priority, state, enqueued_at, failed_reason
- ``waiting:{type}``: sorted set of waiting ids, scored by priority then enqueue time
- ``active``: set of ids handed to a worker
- ``completed``: newest-first list, trimmed to ``keep_completed``
- ``failed``: newest-first list, never trimmed
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from app.broker.connection import get_connection
from app.config import Settings, get_settings
from app.jobs.errors import ServiceUnavailableError
from redis.asyncio import Redis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)

_PRIORITY_WEIGHT = 10_000_000_000_000
_LIVE_STATES = frozenset({"waiting", "active"})

_queue: WorkQueue | None = None


@dataclass(frozen=True)
class QueueEntry:
  """A queue entry as stored in its hash."""

  job_id: str
  name: str
  state: str
  data: dict[str, Any] = field(default_factory=dict)
  priority: int = 0
  enqueued_at: int | None = None
  failed_reason: str | None = None


def _unavailable(exc: RedisError) -> ServiceUnavailableError:
  return ServiceUnavailableError(f"Job queue unavailable: {type(exc).__name__}: {exc}")


class WorkQueue:
  """FIFO-with-priority queue over a shared Redis client."""

  def __init__(self, client: Redis, *, name: str, prefix: str = "amb", keep_completed: int = 1000) -> None:
    self.client = client
    self.name = name
    self._prefix = prefix
    self._keep_completed = keep_completed

  def _key(self, *parts: str) -> str:
    return ":".join((self._prefix, self.name, *parts))

  @staticmethod
  def _score(priority: int, enqueued_at: int) -> float:
    return float(priority * _PRIORITY_WEIGHT + enqueued_at)

  async def enqueue(self, job_type: str, job_id: str, data: dict[str, Any] | None = None, *, priority: int = 0) -> bool:
    """Make ``job_id`` deliverable; a waiting or active entry with that id is left untouched."""
    entry_key = self._key("entry", job_id)
    payload = data if data is not None else {"jobId": job_id}
    try:
      # Same id while waiting or active: the existing entry already delivers the job.
      state = await self.client.hget(entry_key, "state")
      if state in _LIVE_STATES:
        logger.info("Queue entry already %s; skipping enqueue job_id=%s", state, job_id)
        return False

      enqueued_at = int(time.time() * 1000)
      async with self.client.pipeline(transaction=True) as pipe:
        # A finished entry is replaced so retries reuse the same id.
        if state == "completed":
          pipe.lrem(self._key("completed"), 0, job_id)
        elif state == "failed":
          pipe.lrem(self._key("failed"), 0, job_id)
        pipe.delete(entry_key)
        pipe.hset(entry_key, mapping={"name": job_type, "data": json.dumps(payload), "priority": str(priority), "state": "waiting", "enqueued_at": str(enqueued_at), "failed_reason": ""})
        pipe.zadd(self._key("waiting", job_type), {job_id: self._score(priority, enqueued_at)})
        await pipe.execute()
    except RedisError as exc:
      raise _unavailable(exc) from exc

    logger.info("Enqueued job_id=%s type=%s queue=%s replaced=%s", job_id, job_type, self.name, state is not None)
    return True

  async def dequeue(self, job_types: Iterable[str]) -> QueueEntry | None:
    """Claim the next waiting entry across ``job_types`` and mark it active."""
    candidates = tuple(job_types)
    try:
      while True:
        # Lowest score across the requested types wins: priority first, then FIFO.
        best: tuple[float, str, str] | None = None
        for job_type in candidates:
          head = await self.client.zrange(self._key("waiting", job_type), 0, 0, withscores=True)
          if head:
            member, score = head[0]
            if best is None or score < best[0]:
              best = (score, member, job_type)

        if best is None:
          return None

        _, job_id, job_type = best
        # Another consumer may have claimed the head between the read and the remove.
        if await self.client.zrem(self._key("waiting", job_type), job_id) == 0:
          continue

        async with self.client.pipeline(transaction=True) as pipe:
          pipe.hset(self._key("entry", job_id), "state", "active")
          pipe.sadd(self._key("active"), job_id)
          await pipe.execute()
        return await self.get_entry(job_id)
    except RedisError as exc:
      raise _unavailable(exc) from exc

  async def complete(self, job_id: str) -> None:
    """Move an active entry to the completed list and enforce retention."""
    entry_key = self._key("entry", job_id)
    completed_key = self._key("completed")
    try:
      async with self.client.pipeline(transaction=True) as pipe:
        pipe.srem(self._key("active"), job_id)
        if self._keep_completed > 0:
          pipe.hset(entry_key, "state", "completed")
          pipe.lpush(completed_key, job_id)
        else:
          pipe.delete(entry_key)
        await pipe.execute()

      # Oldest completed entries beyond the retention limit are dropped.
      if self._keep_completed > 0:
        expired = await self.client.lrange(completed_key, self._keep_completed, -1)
        if expired:
          async with self.client.pipeline(transaction=True) as pipe:
            pipe.ltrim(completed_key, 0, self._keep_completed - 1)
            pipe.delete(*[self._key("entry", expired_id) for expired_id in expired])
            await pipe.execute()
    except RedisError as exc:
      raise _unavailable(exc) from exc

  async def fail(self, job_id: str, reason: str) -> None:
    """Move an active entry to the failed list; failed entries are kept."""
    try:
      async with self.client.pipeline(transaction=True) as pipe:
        pipe.srem(self._key("active"), job_id)
        pipe.hset(self._key("entry", job_id), mapping={"state": "failed", "failed_reason": reason})
        pipe.lpush(self._key("failed"), job_id)
        await pipe.execute()
    except RedisError as exc:
      raise _unavailable(exc) from exc

  async def get_entry(self, job_id: str) -> QueueEntry | None:
    try:
      raw = await self.client.hgetall(self._key("entry", job_id))
    except RedisError as exc:
      raise _unavailable(exc) from exc
    if not raw:
      return None

    try:
      data = json.loads(raw.get("data") or "{}")
    except json.JSONDecodeError:
      logger.warning("Queue entry has unreadable data job_id=%s", job_id)
      data = {}

    # Hash values come back as strings.
    enqueued_at = raw.get("enqueued_at")
    return QueueEntry(
      job_id=job_id,
      name=raw.get("name", ""),
      state=raw.get("state", ""),
      data=data if isinstance(data, dict) else {},
      priority=int(raw.get("priority") or 0),
      enqueued_at=int(enqueued_at) if enqueued_at else None,
      failed_reason=raw.get("failed_reason") or None,
    )

  async def counts(self, job_types: Iterable[str]) -> dict[str, int]:
    """Return entry counts per state."""
    try:
      waiting = 0
      for job_type in job_types:
        waiting += await self.client.zcard(self._key("waiting", job_type))
      return {
        "waiting": waiting,
        "active": await self.client.scard(self._key("active")),
        "completed": await self.client.llen(self._key("completed")),
        "failed": await self.client.llen(self._key("failed")),
      }
    except RedisError as exc:
      raise _unavailable(exc) from exc


def get_queue(settings: Settings | None = None) -> WorkQueue | None:
  """Return the process queue bound to the shared connection; None without a usable broker."""
  global _queue
  client = get_connection()
  if client is None:
    return None

  if _queue is None or _queue.client is not client:
    settings = settings or get_settings()
    _queue = WorkQueue(client, name=settings.jobs_queue_name, prefix=settings.jobs_queue_prefix, keep_completed=settings.jobs_keep_completed)
  return _queue


def reset_queue() -> None:
  global _queue
  _queue = None
