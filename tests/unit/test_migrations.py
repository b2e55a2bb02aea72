"""Migration graph checks run against the alembic/ directory."""

from __future__ import annotations

from pathlib import Path

from alembic.config import Config
from alembic.script import ScriptDirectory

REPO_ROOT = Path(__file__).resolve().parents[2]


def _script_directory() -> ScriptDirectory:
  config = Config(str(REPO_ROOT / "alembic.ini"))
  # Resolve scripts from the repo root regardless of the pytest working directory.
  config.set_main_option("script_location", str(REPO_ROOT / "alembic"))
  return ScriptDirectory.from_config(config)


def test_alembic_has_single_head() -> None:
  heads = _script_directory().get_heads()
  assert len(heads) == 1, f"Multiple Alembic heads detected: {', '.join(heads)}; rebase migrations onto a single head."


def test_revision_chain_starts_with_jobs_table() -> None:
  script = _script_directory()
  revisions = list(script.walk_revisions())

  base = revisions[-1]
  assert base.down_revision is None
  assert base.revision == "4b1e7c2a9d30"
  assert "jobs" in (base.doc or "").lower()
