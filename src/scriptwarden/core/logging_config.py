"""Centralized logging configuration for scriptwarden.

Sets up Python's logging system to write to both stdout and rotating
log files in the configured log directory. Also provides dedicated
JSONL loggers for MCP calls and per-task events.

Log directory structure::

    ~/.scriptwarden/.logs/
    ├── scriptwarden.log          # All Python logger output (rotating)
    ├── mcp-calls.log             # Every MCP JSON-RPC tool call (JSONL)
    ├── task-events.log           # Progress, checkpoints and transitions (JSONL)
    └── audit.jsonl               # Structured audit events (mirror)
"""
from __future__ import annotations

import glob
import json
import logging
import logging.handlers
import os
import time
from pathlib import Path
from typing import Any, Optional

# Module-level log directory — set by setup_logging()
_log_dir: Optional[str] = None

mcp_call_logger = logging.getLogger("scriptwarden._mcp_calls")
task_event_logger = logging.getLogger("scriptwarden._task_events")


def get_log_dir() -> str:
    """Return the configured log directory, falling back to default."""
    if _log_dir:
        return _log_dir
    default = str(Path(os.path.expanduser("~")) / ".scriptwarden" / ".logs")
    return os.getenv("SCRIPTWARDEN_LOG_DIR", default)


def clear_logs(log_dir: str) -> None:
    """Remove ``*.log`` and ``*.jsonl`` files from the log directory.

    Called **before** any handlers are attached so there are no
    open-file conflicts.
    """
    if not os.path.isdir(log_dir):
        return
    for pattern in ("*.log", "*.jsonl"):
        for path in glob.glob(os.path.join(log_dir, pattern)):
            try:
                os.remove(path)
            except OSError:
                pass


def setup_logging(log_dir: str, log_level: str = "info", *, clear_on_launch: bool = False) -> None:
    """Configure the logging system with both stdout and file handlers.

    Safe to call more than once; existing root handlers are replaced.
    """
    global _log_dir
    _log_dir = log_dir

    if clear_on_launch:
        clear_logs(log_dir)

    os.makedirs(log_dir, exist_ok=True)

    level = getattr(logging, log_level.upper(), logging.INFO)

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()

    fmt = logging.Formatter(
        "%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )

    stdout_handler = logging.StreamHandler()
    stdout_handler.setLevel(level)
    stdout_handler.setFormatter(fmt)
    root.addHandler(stdout_handler)

    file_handler = logging.handlers.RotatingFileHandler(
        os.path.join(log_dir, "scriptwarden.log"),
        maxBytes=10 * 1024 * 1024,  # 10 MB
        backupCount=5,
        encoding="utf-8",
    )
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(fmt)
    root.addHandler(file_handler)

    _setup_jsonl_logger(mcp_call_logger, os.path.join(log_dir, "mcp-calls.log"))
    _setup_jsonl_logger(task_event_logger, os.path.join(log_dir, "task-events.log"))

    logging.getLogger("scriptwarden").info(
        "Logging initialized: log_dir=%s, level=%s", log_dir, log_level
    )


def _setup_jsonl_logger(logger_instance: logging.Logger, path: str) -> None:
    """Configure a logger to write raw JSONL messages to a rotating file."""
    logger_instance.setLevel(logging.INFO)
    logger_instance.propagate = False
    logger_instance.handlers.clear()

    handler = logging.handlers.RotatingFileHandler(
        path,
        maxBytes=10 * 1024 * 1024,
        backupCount=5,
        encoding="utf-8",
    )
    # message is already JSON
    handler.setFormatter(logging.Formatter("%(message)s"))
    logger_instance.addHandler(handler)


# ── Structured logging helpers ───────────────────────────────


def log_mcp_call(
    method: str,
    params: dict[str, Any],
    result: Any = None,
    error: str | None = None,
    duration_ms: float | None = None,
    tool_name: str | None = None,
    tool_args: dict[str, Any] | None = None,
) -> None:
    """Log an MCP JSON-RPC call to the dedicated MCP calls log."""
    record: dict[str, Any] = {
        "ts": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
        "method": method,
    }
    if tool_name:
        record["tool"] = tool_name
    if tool_args is not None:
        args_str = json.dumps(tool_args, default=str)
        record["tool_args"] = tool_args if len(args_str) < 10000 else args_str[:10000] + "…(truncated)"
    if duration_ms is not None:
        record["duration_ms"] = round(duration_ms, 1)
    if error:
        record["error"] = error[:5000]
    elif result is not None:
        result_str = json.dumps(result, default=str)
        if len(result_str) > 10000:
            record["result_preview"] = result_str[:10000] + "..."
        else:
            record["result"] = result
    try:
        mcp_call_logger.info(json.dumps(record, default=str))
    except Exception:  # noqa: BLE001
        pass


def log_task_event(task_id: str, event: str, message: str, **extra: Any) -> None:
    """Log a task event (progress, checkpoint, transition) to the task-events log."""
    record: dict[str, Any] = {
        "ts": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
        "task_id": task_id,
        "event": event,
        "message": message[:5000],
    }
    record.update(extra)
    try:
        task_event_logger.info(json.dumps(record, default=str))
    except Exception:  # noqa: BLE001
        pass


def get_audit_log_path() -> str:
    """Return the path to the centralized audit JSONL log."""
    return os.path.join(get_log_dir(), "audit.jsonl")


def append_to_file(path: str, line: str) -> None:
    """Append a timestamped line to a log file, flushing immediately."""
    try:
        ts = time.strftime("%Y-%m-%dT%H:%M:%S")
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        with open(path, "a", encoding="utf-8") as f:
            f.write(f"{ts} {line}\n")
            f.flush()
    except Exception:  # noqa: BLE001
        pass
