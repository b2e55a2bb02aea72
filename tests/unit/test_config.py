"""Unit tests for environment-driven settings."""

from __future__ import annotations

import os

import pytest

from app.config import _parse_origins, get_broker_settings, get_settings
from app.core.logging import TruncatedFormatter, _build_handlers, _rotated_name
from app.utils.env import default_env_path, load_env_file, parse_env_lines


def test_parse_origins_rejects_wildcards() -> None:
  with pytest.raises(ValueError, match="wildcard"):
    _parse_origins("http://localhost,*")


def test_parse_origins_requires_a_value() -> None:
  with pytest.raises(ValueError, match="must be set"):
    _parse_origins(None)
  assert _parse_origins(" http://a.test , http://b.test ") == ("http://a.test", "http://b.test")


def test_queue_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
  for name in ("AMB_JOBS_QUEUE_NAME", "AMB_JOBS_QUEUE_PREFIX", "AMB_JOBS_KEEP_COMPLETED", "AMB_JOB_STREAM_MAX_AGE_SECONDS"):
    monkeypatch.delenv(name, raising=False)
  settings = get_settings.__wrapped__()
  assert settings.jobs_queue_name == "amb-jobs"
  assert settings.jobs_queue_prefix == "amb"
  assert settings.jobs_keep_completed == 1000
  assert settings.job_stream_max_age_seconds == 250


def test_negative_retention_is_rejected(monkeypatch: pytest.MonkeyPatch) -> None:
  monkeypatch.setenv("AMB_JOBS_KEEP_COMPLETED", "-1")
  with pytest.raises(ValueError, match="AMB_JOBS_KEEP_COMPLETED"):
    get_settings.__wrapped__()


def test_broker_settings_are_read_on_every_call(monkeypatch: pytest.MonkeyPatch) -> None:
  monkeypatch.setenv("REDIS_URL", "redis://first:6379")
  assert get_broker_settings().url == "redis://first:6379"
  monkeypatch.setenv("REDIS_URL", "redis://second:6379")
  monkeypatch.setenv("REDIS_TOKEN", "  ")
  settings = get_broker_settings()
  assert settings.url == "redis://second:6379"
  assert settings.token is None


def test_rotated_log_names_use_dash_suffix() -> None:
  assert _rotated_name("/logs/amb_jobs.log.1") == "/logs/amb_jobs.log-1"
  assert _rotated_name("/logs/amb_jobs.log") == "/logs/amb_jobs.log"


def test_log_handlers_write_to_log_dir(tmp_path, settings) -> None:
  stream_handler, file_handler, log_path = _build_handlers(settings, log_dir=tmp_path)
  try:
    assert log_path.parent == tmp_path
    assert log_path.name.startswith("amb_jobs_")
    assert log_path.exists()
    assert isinstance(stream_handler.formatter, TruncatedFormatter)
    assert file_handler.maxBytes == settings.log_max_bytes
  finally:
    file_handler.close()


def test_env_lines_handle_exports_quotes_and_comments() -> None:
  lines = [
    "# local overrides",
    "",
    "export REDIS_URL=redis://localhost:6379/0",
    "AMB_ALLOWED_ORIGINS='http://localhost:3000'",
    'REDIS_TOKEN="pa ss # not a comment"',
    "AMB_ENV=staging # trailing note",
    "not an assignment",
    "=orphan",
  ]

  assert parse_env_lines(lines) == {
    "REDIS_URL": "redis://localhost:6379/0",
    "AMB_ALLOWED_ORIGINS": "http://localhost:3000",
    "REDIS_TOKEN": "pa ss # not a comment",
    "AMB_ENV": "staging",
  }


def test_env_file_does_not_override_process_env(tmp_path, monkeypatch: pytest.MonkeyPatch) -> None:
  env_file = tmp_path / ".env"
  env_file.write_text("AMB_TEST_FROM_FILE=file\nAMB_TEST_ALREADY_SET=file\n", encoding="utf-8")
  monkeypatch.setenv("AMB_TEST_ALREADY_SET", "process")
  monkeypatch.delenv("AMB_TEST_FROM_FILE", raising=False)

  applied = load_env_file(env_file)

  assert applied == ["AMB_TEST_FROM_FILE"]
  assert os.environ["AMB_TEST_FROM_FILE"] == "file"
  assert os.environ["AMB_TEST_ALREADY_SET"] == "process"
  monkeypatch.delenv("AMB_TEST_FROM_FILE")

  assert load_env_file(tmp_path / "missing.env") == []


def test_env_file_path_can_be_configured(tmp_path, monkeypatch: pytest.MonkeyPatch) -> None:
  monkeypatch.setenv("AMB_ENV_FILE", str(tmp_path / "worker.env"))
  assert default_env_path() == tmp_path / "worker.env"

  monkeypatch.delenv("AMB_ENV_FILE")
  assert default_env_path().name == ".env"
