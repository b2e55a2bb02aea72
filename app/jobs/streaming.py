"""Seam to the live stream manager and narrative replay for reconnecting clients."""

from __future__ import annotations

import json
import logging
from typing import Any, Protocol

from app.config import Settings
from app.services.narrative import get_narrative_stream

logger = logging.getLogger(__name__)


class StreamManager(Protocol):
  """Pushes named events to one connected client."""

  async def publish(self, connection_id: str, event_name: str, payload: dict[str, Any]) -> None:
    """Deliver ``payload`` as ``event_name`` to ``connection_id``."""


async def replay_narrative(job_id: str, connection_id: str, stream_manager: StreamManager, settings: Settings) -> list[dict[str, Any]]:
  """Push every stored narrative item to a (re)connecting client, in order, and return the items sent."""
  items = await get_narrative_stream(job_id, settings)
  for item in items:
    await stream_manager.publish(connection_id, item.get("type", "narrative"), item)
  logger.debug("Replayed narrative job_id=%s connection_id=%s count=%d", job_id, connection_id, len(items))
  return items


def narrative_key(item: dict[str, Any]) -> tuple[str, Any, str]:
  """Identity of a narrative item, shared by its stored and published copies."""
  return (str(item.get("type")), item.get("timestamp"), str(item.get("content", "")))


def format_sse(event_name: str, payload: dict[str, Any]) -> str:
  """Encode one server-sent event frame."""
  return f"event: {event_name}\ndata: {json.dumps(payload, separators=(',', ':'))}\n\n"


def narrative_payload(item: dict[str, Any]) -> dict[str, Any]:
  """Client-facing body of a narrative item: content plus progress when present."""
  payload: dict[str, Any] = {"content": item.get("content", "")}
  if item.get("progress") is not None:
    payload["progress"] = item["progress"]
  return payload


class SseFrameBuffer:
  """StreamManager that buffers encoded SSE frames per connection until the response drains them."""

  def __init__(self) -> None:
    self._frames: dict[str, list[str]] = {}

  async def publish(self, connection_id: str, event_name: str, payload: dict[str, Any]) -> None:
    self._frames.setdefault(connection_id, []).append(format_sse(event_name, narrative_payload(payload)))

  def drain(self, connection_id: str) -> list[str]:
    return self._frames.pop(connection_id, [])
