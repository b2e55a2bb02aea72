"""Lazily-created Redis connection shared by the queue and live streams.

The broker URL is untrusted operator input. It is validated before any client
is built so a bad value degrades job features to "unavailable" instead of
crashing the process at import or startup.
"""

from __future__ import annotations

import logging
from typing import Any
from urllib.parse import unquote, urlsplit

from app.config import get_broker_settings
from app.jobs.errors import ServiceUnavailableError
from redis.asyncio import Redis

logger = logging.getLogger(__name__)

_ALLOWED_SCHEMES = frozenset({"redis", "rediss"})
_MISSING_MSG = "Job queue unavailable: REDIS_URL is not set. Set REDIS_URL to a redis:// or rediss:// URL."
_INVALID_MSG = "Job queue unavailable: REDIS_URL is not a valid redis:// or rediss:// URL. Use the bare connection URL, not a CLI command or file path."

_client: Redis | None = None
_client_url: str | None = None
# Clients replaced after a REDIS_URL change; open streams may still hold them.
_retired: list[Redis] = []


def normalize_broker_url(raw: str | None) -> str | None:
  """Strip whitespace and wrapping quotes; return None for an empty value."""
  if raw is None:
    return None
  value = raw.strip()
  if len(value) >= 2 and value[0] == value[-1] and value[0] in {'"', "'"}:
    value = value[1:-1].strip()
  return value or None


def is_broker_url_valid(url: str | None) -> bool:
  """Return True when ``url`` is a plain redis:// or rediss:// connection string."""
  if not url:
    return False

  # Filesystem paths and unix sockets are not accepted.
  if url.startswith(("/", "./", "../", "~")):
    return False

  # A pasted CLI invocation ("redis-cli --tls -u redis://...") carries whitespace.
  if any(char.isspace() for char in url):
    return False

  try:
    parts = urlsplit(url)
    port = parts.port
  except ValueError:
    return False

  if parts.scheme not in _ALLOWED_SCHEMES:
    return False
  if not parts.hostname:
    return False
  if port is not None and port <= 0:
    return False

  database = parts.path.lstrip("/")
  return database == "" or database.isdigit()


def _client_kwargs(url: str, token: str | None) -> dict[str, Any]:
  parts = urlsplit(url)
  kwargs: dict[str, Any] = {
    "host": parts.hostname,
    "port": parts.port or 6379,
    "db": int(parts.path.lstrip("/") or 0),
    "decode_responses": True,
    "ssl": parts.scheme == "rediss",
  }
  if parts.username:
    kwargs["username"] = unquote(parts.username)
  password = token or (unquote(parts.password) if parts.password else None)
  if password:
    kwargs["password"] = password
  return kwargs


def get_connection() -> Redis | None:
  """Return the shared client, creating it on first use; None when unconfigured or invalid."""
  global _client, _client_url
  settings = get_broker_settings()
  url = normalize_broker_url(settings.url)
  if not is_broker_url_valid(url):
    return None

  if _client is not None and _client_url == url:
    return _client

  if _client is not None:
    _retired.append(_client)
    logger.info("Broker URL changed; retiring previous client host=%s", urlsplit(_client_url or "").hostname)

  # Construction does not open sockets; connections are established on first command.
  _client = Redis(**_client_kwargs(url, settings.token))
  _client_url = url
  logger.info("Broker client created host=%s tls=%s", urlsplit(url).hostname, url.startswith("rediss://"))
  return _client


def ensure_broker() -> Redis:
  """Return the shared client or raise ServiceUnavailableError with an actionable message."""
  settings = get_broker_settings()
  url = normalize_broker_url(settings.url)
  if url is None:
    raise ServiceUnavailableError(_MISSING_MSG)
  if not is_broker_url_valid(url):
    raise ServiceUnavailableError(_INVALID_MSG)

  client = get_connection()
  if client is None:
    raise ServiceUnavailableError(_INVALID_MSG)
  return client


async def close_connection() -> None:
  """Close the shared client and any retired ones, and drop the queue handle bound to them."""
  global _client, _client_url
  from app.broker.queue import reset_queue

  reset_queue()
  clients = [*_retired, _client] if _client is not None else list(_retired)
  _retired.clear()
  _client = None
  _client_url = None
  if not clients:
    return

  for client in clients:
    await client.aclose()
  logger.info("Broker connection closed clients=%d", len(clients))
