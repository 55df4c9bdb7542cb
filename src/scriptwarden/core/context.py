"""Task context — the object a task body talks to.

A :class:`TaskContext` wraps one task's execution. It remembers the
world snapshot at task start and at the last checkpoint, collects
progress reports and a log transcript, and provides the checkpoint
primitive that suspends the body until the supervisor answers.

Task bodies are coroutine functions that receive the context::

    async def chop(ctx: TaskContext, trees: int = 10) -> dict:
        ctx.set_action("Chopping trees")
        for i in range(trees):
            if not ctx.should_continue():
                break
            ...
            ctx.report_progress("Chopping", current=i + 1, total=trees, unit="trees")
            if (i + 1) % 3 == 0:
                feedback = await ctx.checkpoint("Progress check")
                if feedback.abort:
                    break
        return ctx.get_state_diff_from_start().to_dict()

Cancellation is cooperative: the engine never interrupts a body, it only
flips the liveness flag that :meth:`TaskContext.should_continue` reads.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
import json
import logging
import time
from typing import Any, Awaitable, Callable, List, Optional

from scriptwarden.core.formatter import format_world_state
from scriptwarden.core.logging_config import log_task_event
from scriptwarden.core.snapshot import WorldSnapshot
from scriptwarden.core.state_diff import StateDiff, compute_state_diff, empty_diff, format_state_diff
from scriptwarden.core.world import WorldSource

logger = logging.getLogger("scriptwarden.task")

DEFAULT_PROGRESS_INTERVAL = 5.0
DEFAULT_MAX_PROGRESS = 200
DEFAULT_MAX_LOG_LINES = 2000
STATUS_PROGRESS_TAIL = 10
REPORT_LOG_TAIL = 20

TERMINAL_CONTEXT_STATUSES = {"completed", "failed", "aborted"}


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ── Data models ──────────────────────────────────────────────

@dataclass
class TaskProgress:
    action: str
    status: str = "in_progress"     # starting | in_progress | completed | failed | paused
    message: str = ""
    current: Optional[int] = None
    total: Optional[int] = None
    unit: str = ""
    data: Any = None
    ts: datetime = field(default_factory=_now)

    def to_dict(self) -> dict:
        return {
            "action": self.action,
            "status": self.status,
            "message": self.message,
            "current": self.current,
            "total": self.total,
            "unit": self.unit,
            "data": self.data,
            "ts": self.ts.isoformat(),
        }

    def format_line(self) -> str:
        prog = ""
        if self.current is not None and self.total is not None:
            unit = f" {self.unit}" if self.unit else ""
            prog = f" ({self.current}/{self.total}{unit})"
        return f"- {self.action}: {self.message or self.status}{prog}"


@dataclass
class CheckpointResult:
    continue_: bool = True
    new_instructions: Optional[str] = None
    abort: bool = False
    abort_reason: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "continue": self.continue_,
            "new_instructions": self.new_instructions,
            "abort": self.abort,
            "abort_reason": self.abort_reason,
        }


@dataclass
class TaskStatus:
    task_id: str
    status: str
    current_action: str
    start_time: datetime
    elapsed_ms: int
    checkpoint_count: int
    last_progress_at: Optional[datetime]
    state_diff: StateDiff
    accumulated_diff: StateDiff
    progress_reports: List[TaskProgress]
    world_state: str
    checkpoint_reason: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "task_id": self.task_id,
            "status": self.status,
            "current_action": self.current_action,
            "start_time": self.start_time.isoformat(),
            "elapsed_ms": self.elapsed_ms,
            "checkpoint_count": self.checkpoint_count,
            "last_progress_at": self.last_progress_at.isoformat() if self.last_progress_at else None,
            "state_diff": self.state_diff.to_dict(),
            "accumulated_diff": self.accumulated_diff.to_dict(),
            "progress_reports": [p.to_dict() for p in self.progress_reports],
            "world_state": self.world_state,
            "checkpoint_reason": self.checkpoint_reason,
            "error": self.error,
        }


ProgressCallback = Callable[[TaskProgress], None]
CheckpointHandler = Callable[[str, TaskStatus], Awaitable[CheckpointResult]]


# ── TaskContext ──────────────────────────────────────────────

class TaskContext:
    """Execution context handed to a supervised task body."""

    def __init__(
        self,
        task_id: str,
        world: WorldSource,
        actions: Any = None,
        on_progress: Optional[ProgressCallback] = None,
        on_checkpoint: Optional[CheckpointHandler] = None,
        progress_interval: float = DEFAULT_PROGRESS_INTERVAL,
        max_progress_history: int = DEFAULT_MAX_PROGRESS,
        max_log_lines: int = DEFAULT_MAX_LOG_LINES,
    ) -> None:
        self.task_id = task_id
        self.world = world
        self.actions = actions  # opaque action layer, passed through to the body

        self._on_progress = on_progress
        self._on_checkpoint = on_checkpoint
        self._progress_interval = progress_interval
        self._max_progress = max_progress_history
        self._max_log_lines = max_log_lines

        self.start_time = _now()
        self._started = time.monotonic()
        self._status = "running"
        self._current_action = "initializing"
        self._checkpoint_count = 0
        self._error: Optional[str] = None
        self._last_progress_at: Optional[datetime] = None
        self._progress: List[TaskProgress] = []
        self._logs: List[str] = []

        self._start_state: Optional[WorldSnapshot] = world.get_current_snapshot()
        self._last_checkpoint_state: Optional[WorldSnapshot] = self._start_state

        self._last_auto_progress = time.monotonic()
        self._unsubscribe: Optional[Callable[[], None]] = world.subscribe(self._on_world_update)

    # ── read-only views ──

    @property
    def status(self) -> str:
        return self._status

    @property
    def current_action(self) -> str:
        return self._current_action

    @property
    def checkpoint_count(self) -> int:
        return self._checkpoint_count

    @property
    def error(self) -> Optional[str]:
        return self._error

    @property
    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self._started) * 1000)

    # ── background monitoring ──

    def _on_world_update(self, snapshot: WorldSnapshot) -> None:
        if self._status in TERMINAL_CONTEXT_STATUSES or not self._on_progress:
            return
        now = time.monotonic()
        if now - self._last_auto_progress < self._progress_interval:
            return
        self._last_auto_progress = now
        diff = self.get_state_diff_since_last_checkpoint()
        if diff.summary:
            self._emit(TaskProgress(
                action=self._current_action,
                status="in_progress",
                message=", ".join(diff.summary),
            ))

    def _emit(self, progress: TaskProgress) -> None:
        if not self._on_progress:
            return
        try:
            self._on_progress(progress)
        except Exception:  # noqa: BLE001
            logger.warning("Progress listener failed for %s", self.task_id, exc_info=True)

    # ── progress & logging ──

    def report_progress(
        self,
        action: str,
        message: str = "",
        *,
        status: str = "in_progress",
        current: Optional[int] = None,
        total: Optional[int] = None,
        unit: str = "",
        data: Any = None,
    ) -> TaskProgress:
        """Record a progress report without pausing the task."""
        progress = TaskProgress(
            action=action,
            status=status,
            message=message,
            current=current,
            total=total,
            unit=unit,
            data=data,
        )
        self._progress.append(progress)
        if len(self._progress) > self._max_progress:
            del self._progress[: len(self._progress) - self._max_progress]
        self._last_progress_at = progress.ts
        self._emit(progress)
        self.log(f"[Progress] {action}: {message}")
        return progress

    def set_action(self, action: str) -> None:
        """Set the current high-level action shown in status reports."""
        self._current_action = action
        self.report_progress(action, f"Starting: {action}", status="starting")

    @staticmethod
    def _render(args: tuple) -> str:
        parts = []
        for a in args:
            if isinstance(a, (dict, list)):
                parts.append(json.dumps(a, indent=2, default=str))
            else:
                parts.append(str(a))
        return " ".join(parts)

    def _append_log(self, line: str) -> None:
        self._logs.append(line)
        if len(self._logs) > self._max_log_lines:
            del self._logs[: len(self._logs) - self._max_log_lines]

    def log(self, *args: Any) -> None:
        message = self._render(args)
        self._append_log(message)
        logger.info("[%s] %s", self.task_id, message)
        log_task_event(self.task_id, "log", message)

    def warn(self, *args: Any) -> None:
        message = self._render(args)
        self._append_log(f"[warn] {message}")
        logger.warning("[%s] %s", self.task_id, message)
        log_task_event(self.task_id, "warn", message)

    def get_logs(self) -> List[str]:
        return list(self._logs)

    # ── checkpoints ──

    async def checkpoint(self, reason: str) -> CheckpointResult:
        """Pause at a logical breakpoint and wait for the supervisor.

        Without a checkpoint handler this is a pass-through that returns
        ``continue`` immediately.
        """
        self._checkpoint_count += 1
        self.log(f"[Checkpoint {self._checkpoint_count}] {reason}")

        status = replace(self.get_status(), status="paused", checkpoint_reason=reason)
        self._last_checkpoint_state = self.world.get_current_snapshot()

        if self._on_checkpoint is None:
            return CheckpointResult()

        try:
            result = await self._on_checkpoint(reason, status)
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001
            logger.warning("Checkpoint handler failed for %s: %s", self.task_id, exc)
            self.log(f"[Checkpoint Error] {exc}")
            return CheckpointResult()

        if result.abort:
            self.mark_aborted(result.abort_reason or "Aborted by supervisor")
            return result
        if result.new_instructions:
            self.log(f"[New Instructions] {result.new_instructions}")
        return result

    def should_continue(self) -> bool:
        """True while the task has not been aborted or finished."""
        return self._status == "running"

    def mark_aborted(self, reason: str) -> None:
        """Latch the liveness flag to ``aborted``. Later calls keep the first reason."""
        if self._status in TERMINAL_CONTEXT_STATUSES:
            return
        self._status = "aborted"
        self._error = reason
        self.log(f"[Aborted] {reason}")

    # ── diffs & status ──

    def get_state_diff_from_start(self) -> StateDiff:
        current = self.world.get_current_snapshot()
        if self._start_state is None or current is None:
            return empty_diff(0)
        return compute_state_diff(self._start_state, current)

    def get_state_diff_since_last_checkpoint(self) -> StateDiff:
        current = self.world.get_current_snapshot()
        if self._last_checkpoint_state is None or current is None:
            return empty_diff(0)
        return compute_state_diff(self._last_checkpoint_state, current)

    def get_status(self) -> TaskStatus:
        current = self.world.get_current_snapshot()
        return TaskStatus(
            task_id=self.task_id,
            status=self._status,
            current_action=self._current_action,
            start_time=self.start_time,
            elapsed_ms=self.elapsed_ms,
            checkpoint_count=self._checkpoint_count,
            last_progress_at=self._last_progress_at,
            state_diff=self.get_state_diff_since_last_checkpoint(),
            accumulated_diff=self.get_state_diff_from_start(),
            progress_reports=list(self._progress[-STATUS_PROGRESS_TAIL:]),
            world_state=format_world_state(current, self.world.get_state_age()) if current else "(no state)",
            error=self._error,
        )

    # ── terminal transitions ──

    def complete(self, result: Any = None) -> bool:
        """Mark the task completed. Returns False if it was already terminal."""
        if self._status in TERMINAL_CONTEXT_STATUSES:
            return False
        self._status = "completed"
        self.report_progress(self._current_action, "Task completed", status="completed", data=result)
        return True

    def fail(self, error: str) -> bool:
        """Mark the task failed. Returns False if it was already terminal."""
        if self._status in TERMINAL_CONTEXT_STATUSES:
            return False
        self._status = "failed"
        self._error = error
        self.report_progress(self._current_action, error, status="failed")
        return True

    def cleanup(self) -> None:
        """Stop listening to world updates. Safe to call repeatedly."""
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    # ── reporting ──

    def format_report(self, status_override: Optional[str] = None) -> str:
        status = self.get_status()
        if status_override:
            status = replace(status, status=status_override)
        lines: List[str] = [
            f"# Task Report: {self.task_id}",
            f"Status: {status.status.upper()}",
            f"Duration: {round(status.elapsed_ms / 1000)}s",
            f"Checkpoints: {status.checkpoint_count}",
        ]

        if status.error:
            lines += ["", "## Error", status.error]

        if status.accumulated_diff.summary:
            lines += ["", "## Changes This Task", format_state_diff(status.accumulated_diff)]

        if self._logs:
            lines += ["", "## Log"]
            lines.extend(self._logs[-REPORT_LOG_TAIL:])
            if len(self._logs) > REPORT_LOG_TAIL:
                lines.append(f"... and {len(self._logs) - REPORT_LOG_TAIL} more entries")

        lines += ["", status.world_state]
        return "\n".join(lines)
