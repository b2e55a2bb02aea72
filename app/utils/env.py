"""Read the service's local ``.env`` file into the process environment.

Deployed API and worker processes get their settings from the platform; the
file only fills in what the environment leaves unset unless ``override`` is
requested.
"""

from __future__ import annotations

import os
from collections.abc import Iterable
from pathlib import Path

_ENV_FILE_VAR = "AMB_ENV_FILE"
_QUOTES = frozenset({'"', "'"})


def default_env_path() -> Path:
  """Return ``AMB_ENV_FILE`` when set, else the .env at the repo root."""

  configured = os.getenv(_ENV_FILE_VAR)
  if configured:
    return Path(configured).expanduser()
  return Path(__file__).resolve().parents[2] / ".env"


def _parse_value(raw: str) -> str:
  value = raw.strip()
  if len(value) >= 2 and value[0] == value[-1] and value[0] in _QUOTES:
    return value[1:-1]
  # Unquoted values may carry a trailing " # comment".
  return value.split(" #", 1)[0].rstrip()


def parse_env_lines(lines: Iterable[str]) -> dict[str, str]:
  """Parse ``KEY=value`` lines; comment and malformed lines are skipped."""

  values: dict[str, str] = {}
  for raw_line in lines:
    line = raw_line.strip()
    if not line or line.startswith("#"):
      continue
    # Shell-style files exported for `source .env` are accepted as-is.
    line = line.removeprefix("export ").lstrip()
    key, separator, value = line.partition("=")
    key = key.strip()
    if not separator or not key:
      continue
    values[key] = _parse_value(value)
  return values


def load_env_file(path: Path, *, override: bool = False) -> list[str]:
  """Apply a .env file to ``os.environ`` and return the keys that were set."""

  if not path.is_file():
    return []

  applied: list[str] = []
  for key, value in parse_env_lines(path.read_text(encoding="utf-8").splitlines()).items():
    if not override and key in os.environ:
      continue
    os.environ[key] = value
    applied.append(key)
  return applied
