"""
Audit log for state-changing panel operations.

One JSON object per line, scrubbed before it is written or printed.
"""

import json
import os
from datetime import datetime, timezone
from pathlib import Path

from scrub import scrub_dict

AUDIT_LOG = Path(os.environ.get(
    "AUDIT_LOG",
    str(Path.home() / ".openclaw-panel" / "audit.jsonl"),
))


def audit_log(event: str, details: dict):
    """Append an event to the audit log."""
    safe_details = scrub_dict(details)
    entry = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "event": event,
        **safe_details,
    }
    try:
        AUDIT_LOG.parent.mkdir(parents=True, exist_ok=True)
        with open(AUDIT_LOG, "a") as f:
            f.write(json.dumps(entry, default=str) + "\n")
    except OSError as e:
        print(f"[audit] Failed to write {AUDIT_LOG}: {e}")
    print(f"[audit] {event}: {safe_details}")


def read_audit_log(limit: int = 50) -> list[dict]:
    """Return the newest audit entries first."""
    if not AUDIT_LOG.exists():
        return []
    entries = []
    with open(AUDIT_LOG) as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            try:
                entries.append(json.loads(line))
            except json.JSONDecodeError:
                continue
    entries.reverse()
    return entries[:limit]
