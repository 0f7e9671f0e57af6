"""Pytest configuration -- bootstraps sys.path and isolates hook state."""
import sys
from pathlib import Path

import pytest

# Ensure tests/ directory is on sys.path so _bootstrap can be imported
sys.path.insert(0, str(Path(__file__).resolve().parent))
import _bootstrap  # noqa: F401, E402

import _commitcraft_utils  # noqa: E402
import pre_tool_use  # noqa: E402


@pytest.fixture(autouse=True)
def isolated_hook_env(monkeypatch):
    """Fresh config, rule set and env toggles for every test."""
    for name in ("CLAUDE_PROJECT_DIR", "DEBUG", "COMMITCRAFT_DEBUG", "COMMITCRAFT_DRY_RUN"):
        monkeypatch.delenv(name, raising=False)
    _commitcraft_utils.reset_config_cache()
    _commitcraft_utils.reset_emit_state()
    pre_tool_use.reset_rule_set()
    yield
    _commitcraft_utils.reset_config_cache()
    _commitcraft_utils.reset_emit_state()
    pre_tool_use.reset_rule_set()


@pytest.fixture
def project_dir(tmp_path, monkeypatch):
    """A project directory wired up through CLAUDE_PROJECT_DIR."""
    monkeypatch.setenv("CLAUDE_PROJECT_DIR", str(tmp_path))
    return tmp_path


@pytest.fixture
def write_config(project_dir):
    """Write .claude/commitcraft/config.json into the project directory."""
    import json

    def _write(config):
        config_dir = project_dir / ".claude" / "commitcraft"
        config_dir.mkdir(parents=True, exist_ok=True)
        path = config_dir / "config.json"
        if isinstance(config, str):
            path.write_text(config, encoding="utf-8")
        else:
            path.write_text(json.dumps(config), encoding="utf-8")
        return path

    return _write
