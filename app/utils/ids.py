"""Identifier utilities."""

from __future__ import annotations

import uuid


def generate_job_id() -> str:
  """Return a new job identifier; the same value keys the queue entry."""
  return str(uuid.uuid4())


def generate_connection_id() -> str:
  """Return an identifier for a single streaming client connection."""
  return uuid.uuid4().hex
