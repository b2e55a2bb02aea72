"""Append-only narrative log stored on the job row.

Narrative items are the human-readable progress lines a client renders while a
job runs. They are persisted so a client that reconnects mid-job can replay
everything emitted so far.
"""

import json
import logging
import time
from typing import Any

from app.broker.connection import get_connection
from app.config import Settings
from app.jobs.channels import narrative_channel
from app.jobs.models import NarrativeEvent
from app.storage.factory import _get_jobs_repo
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)


def _build_item(event: NarrativeEvent | dict[str, Any]) -> dict[str, Any]:
  if isinstance(event, NarrativeEvent):
    event_type, content, progress, timestamp = event.type, event.content, event.progress, event.timestamp
  else:
    event_type, content, progress, timestamp = event.get("type"), event.get("content"), event.get("progress"), event.get("timestamp")

  if not event_type:
    raise ValueError("Narrative events require a type.")

  item: dict[str, Any] = {"type": str(event_type), "content": content if content is not None else ""}
  if progress is not None:
    item["progress"] = progress
  item["timestamp"] = int(timestamp) if timestamp is not None else int(time.time() * 1000)
  return item


async def append_narrative_event(job_id: str, event: NarrativeEvent | dict[str, Any], settings: Settings) -> dict[str, Any]:
  """Append one item in a single atomic statement and return the stored item."""
  item = _build_item(event)
  repo = _get_jobs_repo(settings)
  if not await repo.append_narrative(job_id, item):
    logger.warning("Narrative append skipped; job not found job_id=%s type=%s", job_id, item["type"])
  return item


async def get_narrative_stream(job_id: str, settings: Settings) -> list[dict[str, Any]]:
  """Return every stored item in append order; [] when missing or malformed."""
  repo = _get_jobs_repo(settings)
  stored = await repo.get_narrative(job_id)
  if isinstance(stored, str):
    try:
      stored = json.loads(stored)
    except json.JSONDecodeError:
      logger.warning("Narrative stream is not valid JSON job_id=%s", job_id)
      return []
  if not isinstance(stored, list):
    return []
  return [item for item in stored if isinstance(item, dict)]


async def publish_narrative_event(job_id: str, event: NarrativeEvent | dict[str, Any], settings: Settings) -> dict[str, Any]:
  """Persist the item, then fan it out to live listeners on the job's narrative channel."""
  item = await append_narrative_event(job_id, event, settings)
  client = get_connection()
  if client is None:
    return item

  try:
    await client.publish(narrative_channel(job_id), json.dumps(item))
  except RedisError:
    # The item is already durable; live listeners recover it on replay.
    logger.warning("Narrative publish failed job_id=%s type=%s", job_id, item["type"], exc_info=True)
  return item
