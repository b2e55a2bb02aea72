"""Redis pub/sub channel names for live job updates."""

from __future__ import annotations


def events_channel(job_id: str) -> str:
  return f"jobs:{job_id}:events"


def narrative_channel(job_id: str) -> str:
  return f"jobs:{job_id}:narrative"
