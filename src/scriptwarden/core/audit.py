from __future__ import annotations

from datetime import datetime, timezone
import json
import os
from typing import Any, Dict, Optional

from scriptwarden.core.logging_config import append_to_file, get_audit_log_path


def log_event(
    data_dir: str,
    event_type: str,
    payload: Dict[str, Any],
    request_id: Optional[str] = None,
) -> None:
    os.makedirs(data_dir, exist_ok=True)
    path = os.path.join(data_dir, "audit.jsonl")
    record: Dict[str, Any] = {
        "ts": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        "type": event_type,
        "payload": payload,
    }
    if request_id:
        record["request_id"] = request_id
    line = json.dumps(record, default=str)
    with open(path, "a", encoding="utf-8") as handle:
        handle.write(line + "\n")
    # Mirror to centralized audit log
    try:
        central = get_audit_log_path()
        if central != path:
            append_to_file(central, line)
    except Exception:  # noqa: BLE001
        pass


def read_events(data_dir: str, limit: int = 100) -> list[Dict[str, Any]]:
    """Return the last ``limit`` audit records from ``data_dir``."""
    path = os.path.join(data_dir, "audit.jsonl")
    if not os.path.exists(path):
        return []
    events: list[Dict[str, Any]] = []
    with open(path, "r", encoding="utf-8") as handle:
        for line in handle:
            line = line.strip()
            if not line:
                continue
            events.append(json.loads(line))
    return events[-limit:]
