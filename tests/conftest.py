import os

import pytest

# Keep module-level config loading away from the developer's real panel config.
os.environ.setdefault("PANEL_CONFIG_PATH", os.path.join(os.path.dirname(__file__), "missing-panel.config.json"))

import audit  # noqa: E402
import scrub  # noqa: E402


@pytest.fixture(autouse=True)
def isolated_state(tmp_path, monkeypatch):
    """Send audit entries and scrub rule lookups to a per-test directory."""
    monkeypatch.setattr(audit, "AUDIT_LOG", tmp_path / "audit.jsonl")
    monkeypatch.setattr(scrub, "SCRUB_RULES_PATH", tmp_path / "scrub_rules.json")
    yield tmp_path
