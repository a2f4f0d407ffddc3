"""
Secret scrubbing and the audit log.
"""

import json

import audit
import scrub


class TestScrub:
    def test_bearer_token(self):
        assert scrub.scrub("Authorization: Bearer abcdef123456") == "Authorization: Bearer ***REDACTED***"

    def test_env_assignments(self):
        text = "-e OPENCLAW_GATEWAY_TOKEN=abc -e HOME=/home/node -e DB_PASSWORD=hunter2"
        assert scrub.scrub(text) == (
            "-e OPENCLAW_GATEWAY_TOKEN=***REDACTED*** -e HOME=/home/node -e DB_PASSWORD=***REDACTED***"
        )

    def test_recreate_plan(self):
        assert scrub.scrub("OPENCLAW_RECREATE_PLAN_B64=eyJhIjoxfQ==") == "OPENCLAW_RECREATE_PLAN_B64=***REDACTED***"

    def test_sensitive_keys_in_dict(self):
        scrubbed = scrub.scrub_dict({
            "token": "abc",
            "nested": [{"password": "pw", "name": "ok"}],
            "count": 3,
        })
        assert scrubbed == {
            "token": "***REDACTED***",
            "nested": [{"password": "***REDACTED***", "name": "ok"}],
            "count": 3,
        }

    def test_builtin_rule_can_be_disabled(self, isolated_state):
        (isolated_state / "scrub_rules.json").write_text(json.dumps({
            "builtin_overrides": [{"id": "bearer-token", "enabled": False}],
            "rules": [{"id": "hostname", "pattern": "gw\\.internal", "replacement": "[host]"}],
        }))

        assert scrub.scrub("Bearer abcdef123456 at gw.internal") == "Bearer abcdef123456 at [host]"

    def test_unreadable_rules_file_keeps_builtins(self, isolated_state):
        (isolated_state / "scrub_rules.json").write_text("not json")
        assert scrub.scrub("Bearer abcdef123456") == "Bearer ***REDACTED***"


class TestAuditLog:
    def test_entries_are_scrubbed_and_newest_first(self, isolated_state):
        audit.audit_log("first", {"n": 1})
        audit.audit_log("second", {"args": ["-e", "API_KEY=xyz"], "token": "t"})

        entries = audit.read_audit_log()

        assert [e["event"] for e in entries] == ["second", "first"]
        assert entries[0]["args"] == ["-e", "API_KEY=***REDACTED***"]
        assert entries[0]["token"] == "***REDACTED***"
        assert "timestamp" in entries[0]
        assert "xyz" not in (isolated_state / "audit.jsonl").read_text()

    def test_limit(self):
        for i in range(5):
            audit.audit_log("event", {"i": i})
        assert [e["i"] for e in audit.read_audit_log(limit=2)] == [4, 3]

    def test_empty_log(self):
        assert audit.read_audit_log() == []
