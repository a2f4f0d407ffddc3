"""
Regex scrubbing engine for redacting secrets before they reach the audit log.

Recreate plans carry the gateway container's full environment, and RPC
failures can echo bearer tokens back, so everything the panel audits goes
through scrub_dict() first.

Extra rules can be supplied in SCRUB_RULES_PATH as {"rules": [...]}.
Built-in rules can be disabled there via "builtin_overrides" but never removed.
"""

import json
import os
import re
from pathlib import Path
from typing import Any

SCRUB_RULES_PATH = Path(os.environ.get(
    "SCRUB_RULES_PATH",
    str(Path.home() / ".openclaw-panel" / "scrub_rules.json"),
))

# Built-in rules (can be disabled, never deleted)
BUILTIN_RULES = [
    {
        "id": "bearer-token",
        "name": "Bearer Tokens",
        "pattern": r"(?i)(Bearer\s+)[A-Za-z0-9_\-.=]{8,}",
        "replacement": r"\1***REDACTED***",
        "enabled": True,
        "builtin": True,
    },
    {
        "id": "secret-env-assignment",
        "name": "Secret environment assignments (FOO_TOKEN=...)",
        "pattern": r"(?i)\b([A-Z0-9_]*(?:TOKEN|PASSWORD|SECRET|API_KEY|PRIVATE_KEY)=)[^\s\"',]+",
        "replacement": r"\1***REDACTED***",
        "enabled": True,
        "builtin": True,
    },
    {
        "id": "recreate-plan",
        "name": "Serialized recreate plans",
        "pattern": r"(OPENCLAW_RECREATE_PLAN_B64=)[A-Za-z0-9+/=]+",
        "replacement": r"\1***REDACTED***",
        "enabled": True,
        "builtin": True,
    },
    {
        "id": "json-credential",
        "name": "JSON token/password values",
        "pattern": r'(?i)("(?:token|password)"\s*:\s*")[^"]{4,}(")',
        "replacement": r"\1***REDACTED***\2",
        "enabled": True,
        "builtin": True,
    },
]


def load_rules() -> list[dict]:
    """Load scrub rules from disk, merging with builtins."""
    user_rules = []
    builtin_overrides = {}

    if SCRUB_RULES_PATH.exists():
        try:
            with open(SCRUB_RULES_PATH) as f:
                data = json.load(f)
                user_rules = data.get("rules", [])
                builtin_overrides = {r["id"]: r for r in data.get("builtin_overrides", [])}
        except (OSError, ValueError, KeyError, TypeError) as e:
            print(f"[scrub] Ignoring unreadable rules file {SCRUB_RULES_PATH}: {e}")

    rules = []
    for builtin in BUILTIN_RULES:
        rule = dict(builtin)
        if rule["id"] in builtin_overrides:
            rule["enabled"] = builtin_overrides[rule["id"]].get("enabled", rule["enabled"])
        rules.append(rule)

    for rule in user_rules:
        if isinstance(rule, dict) and rule.get("pattern"):
            rules.append({**rule, "builtin": False})

    return rules


def _compile_rules() -> list[tuple[re.Pattern, str]]:
    """Compile enabled rules into regex patterns."""
    compiled = []
    for rule in load_rules():
        if not rule.get("enabled", True):
            continue
        try:
            compiled.append((re.compile(rule["pattern"]), rule.get("replacement", "***REDACTED***")))
        except re.error as e:
            print(f"[scrub] Skipping rule {rule.get('id', '?')}: {e}")
    return compiled


REDACTED = "***REDACTED***"
SENSITIVE_KEYS = {"token", "password", "privatekeypem", "private_key_pem", "signature"}


def _is_sensitive_key(key: Any) -> bool:
    return isinstance(key, str) and key.lower() in SENSITIVE_KEYS


def scrub(text: str) -> str:
    """Apply all enabled scrub rules to a string."""
    if not text:
        return text
    for pattern, replacement in _compile_rules():
        text = pattern.sub(replacement, text)
    return text


def scrub_dict(d: Any) -> Any:
    """Recursively scrub all string values in a dict/list."""
    if isinstance(d, str):
        return scrub(d)
    if isinstance(d, dict):
        return {
            k: REDACTED if _is_sensitive_key(k) and isinstance(v, str) and v else scrub_dict(v)
            for k, v in d.items()
        }
    if isinstance(d, (list, tuple)):
        return [scrub_dict(item) for item in d]
    return d
