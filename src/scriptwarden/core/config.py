from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return value if value >= 0 else default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        return default


@dataclass
class Settings:
    log_level: str
    log_dir: str
    data_dir: str
    host: str
    port: int
    mcp_token: str | None
    progress_interval: float
    settle_timeout: float
    resume_settle_timeout: float
    task_retention_seconds: float
    reap_interval_seconds: float
    procedure_modules: list[str]
    clear_logs_on_launch: bool

    @staticmethod
    def from_env() -> "Settings":
        default_home = str(Path(os.path.expanduser("~")) / ".scriptwarden")
        default_log_dir = str(Path(default_home) / ".logs")
        default_data_dir = str(Path(default_home) / ".data")
        modules = os.getenv("SCRIPTWARDEN_PROCEDURE_MODULES", "")
        return Settings(
            log_level=os.getenv("SCRIPTWARDEN_LOG_LEVEL", "info"),
            log_dir=os.getenv("SCRIPTWARDEN_LOG_DIR") or default_log_dir,
            data_dir=os.getenv("SCRIPTWARDEN_DATA_DIR") or default_data_dir,
            host=os.getenv("SCRIPTWARDEN_HOST", "127.0.0.1"),
            port=_env_int("SCRIPTWARDEN_PORT", 18791),
            mcp_token=os.getenv("SCRIPTWARDEN_MCP_TOKEN") or None,
            progress_interval=_env_float("SCRIPTWARDEN_PROGRESS_INTERVAL", 5.0),
            settle_timeout=_env_float("SCRIPTWARDEN_SETTLE_TIMEOUT", 0.1),
            resume_settle_timeout=_env_float("SCRIPTWARDEN_RESUME_SETTLE_TIMEOUT", 0.2),
            task_retention_seconds=_env_float("SCRIPTWARDEN_TASK_RETENTION", 1800.0),
            reap_interval_seconds=_env_float("SCRIPTWARDEN_REAP_INTERVAL", 60.0),
            procedure_modules=[v.strip() for v in modules.split(",") if v.strip()],
            clear_logs_on_launch=os.getenv("SCRIPTWARDEN_CLEAR_LOGS_ON_LAUNCH", "false").lower() in {"1", "true", "yes"},
        )
