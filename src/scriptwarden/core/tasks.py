"""Task registry and checkpoint rendezvous.

The :class:`TaskManager` owns the table of supervised tasks. It is the
only writer of lifecycle status and the meeting point between a task
body suspended at a checkpoint and the controller that resumes or
aborts it.

Lifecycle::

    running → awaiting_feedback → running → … → completed | failed | aborted

A pending checkpoint holds a single-use :class:`asyncio.Future`; only
:meth:`TaskManager.continue_task` and :meth:`TaskManager.abort_task`
resolve it. All methods are synchronous and must be called from the
event-loop thread, which serializes them.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
import functools
import logging
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

from scriptwarden.core.audit import log_event
from scriptwarden.core.context import (
    DEFAULT_MAX_PROGRESS,
    DEFAULT_PROGRESS_INTERVAL,
    CheckpointResult,
    TaskContext,
    TaskProgress,
    TaskStatus,
)
from scriptwarden.core.errors import TaskNotFoundError, TaskStateError
from scriptwarden.core.logging_config import log_task_event
from scriptwarden.core.world import WorldSource

logger = logging.getLogger("scriptwarden.tasks")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _base36(value: int) -> str:
    digits = "0123456789abcdefghijklmnopqrstuvwxyz"
    out = ""
    while True:
        value, rem = divmod(value, 36)
        out = digits[rem] + out
        if value == 0:
            return out


# Valid task statuses
TASK_STATUSES = {"running", "awaiting_feedback", "completed", "failed", "aborted"}
ACTIVE_STATUSES = {"running", "awaiting_feedback"}
TERMINAL_STATUSES = {"completed", "failed", "aborted"}

DEFAULT_RETENTION_SECONDS = 30 * 60


# ── Data models ──────────────────────────────────────────────

@dataclass
class PendingCheckpoint:
    """A task body parked at a checkpoint, waiting for its resolver."""
    reason: str
    status: TaskStatus
    future: "asyncio.Future[CheckpointResult]"
    created_at: datetime = field(default_factory=_now)


@dataclass
class TaskRecord:
    task_id: str
    owner: str
    description: str
    procedure: Callable[..., Any]
    context: TaskContext
    params: Dict[str, Any] = field(default_factory=dict)
    status: str = "running"

    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)

    progress_history: List[TaskProgress] = field(default_factory=list)
    pending_checkpoint: Optional[PendingCheckpoint] = None

    result: Any = None
    error: Optional[str] = None
    traceback: str = ""

    # pulsed on every status transition
    changed: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    @property
    def needs_feedback(self) -> bool:
        return self.status == "awaiting_feedback"

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def elapsed_ms(self) -> int:
        return self.context.elapsed_ms

    def touch(self) -> None:
        self.updated_at = _now()

    def to_summary(self) -> dict:
        """Read-only projection used by listings. Never exposes the resolver."""
        return {
            "id": self.task_id,
            "owner": self.owner,
            "status": self.status,
            "description": self.description,
            "elapsed_ms": self.elapsed_ms(),
            "needs_feedback": self.needs_feedback,
        }


# ── TaskManager ──────────────────────────────────────────────

class TaskManager:
    """Authoritative table of supervised tasks."""

    def __init__(
        self,
        data_dir: str | None = None,
        progress_interval: float = DEFAULT_PROGRESS_INTERVAL,
        max_progress_history: int = DEFAULT_MAX_PROGRESS,
    ) -> None:
        self.data_dir = data_dir
        self.progress_interval = progress_interval
        self.max_progress_history = max_progress_history
        self._tasks: Dict[str, TaskRecord] = {}
        self._counter = 0

    # ── helpers ──

    def generate_task_id(self) -> str:
        self._counter += 1
        return f"task-{self._counter}-{_base36(int(time.time() * 1000))}"

    def _require(self, task_id: str) -> TaskRecord:
        record = self._tasks.get(task_id)
        if record is None:
            raise TaskNotFoundError(task_id)
        return record

    def _audit(self, event_type: str, payload: Dict[str, Any]) -> None:
        if not self.data_dir:
            return
        try:
            log_event(self.data_dir, event_type, payload)
        except Exception:  # noqa: BLE001
            logger.warning("Failed to write audit event %s", event_type, exc_info=True)

    def _transition(self, record: TaskRecord, status: str) -> None:
        if status not in TASK_STATUSES:
            raise ValueError(f"Invalid status: {status}")
        old = record.status
        record.status = status
        record.touch()
        logger.info("Task %s: %s → %s", record.task_id, old, status)
        log_task_event(record.task_id, "status", f"{old} → {status}")
        self._audit(f"task.{status}", {"task_id": record.task_id, "from": old})
        record.changed.set()

    def _on_progress(self, task_id: str, progress: TaskProgress) -> None:
        record = self._tasks.get(task_id)
        if record is None:
            return
        record.progress_history.append(progress)
        if len(record.progress_history) > self.max_progress_history:
            del record.progress_history[: len(record.progress_history) - self.max_progress_history]
        record.touch()
        log_task_event(task_id, "progress", progress.format_line(), status=progress.status)

    # ── creation ──

    def start_task(
        self,
        owner: str,
        world: WorldSource,
        procedure: Callable[..., Any],
        description: str,
        params: Optional[Dict[str, Any]] = None,
        actions: Any = None,
    ) -> Tuple[str, TaskStatus]:
        """Register a new task and build its context. Does NOT run the body."""
        task_id = self.generate_task_id()
        context = TaskContext(
            task_id,
            world,
            actions=actions,
            on_progress=functools.partial(self._on_progress, task_id),
            on_checkpoint=functools.partial(self._handle_checkpoint, task_id),
            progress_interval=self.progress_interval,
            max_progress_history=self.max_progress_history,
        )
        record = TaskRecord(
            task_id=task_id,
            owner=owner,
            description=description,
            procedure=procedure,
            context=context,
            params=dict(params or {}),
        )
        self._tasks[task_id] = record
        logger.info("Task %s started for %s: %s", task_id, owner, description)
        self._audit("task.started", {"task_id": task_id, "owner": owner, "description": description})
        return task_id, self.get_status(task_id)

    # ── checkpoint rendezvous ──

    async def _handle_checkpoint(self, task_id: str, reason: str, status: TaskStatus) -> CheckpointResult:
        record = self._tasks.get(task_id)
        if record is None:
            return CheckpointResult(continue_=False, abort=True, abort_reason="Task not found")
        if record.is_terminal:
            return CheckpointResult(
                continue_=False,
                abort=True,
                abort_reason=record.error or f"Task already {record.status}",
            )
        if record.pending_checkpoint is not None:
            raise TaskStateError(task_id, record.status, f"Task {task_id} is already paused at a checkpoint")

        future: asyncio.Future[CheckpointResult] = asyncio.get_running_loop().create_future()
        record.pending_checkpoint = PendingCheckpoint(reason=reason, status=status, future=future)
        self._transition(record, "awaiting_feedback")
        log_task_event(task_id, "checkpoint", reason, count=status.checkpoint_count)
        # No timeout: the task stays parked until continue_task or abort_task.
        return await future

    def continue_task(self, task_id: str, instructions: Optional[str] = None) -> CheckpointResult:
        """Resume a task parked at a checkpoint."""
        record = self._require(task_id)
        pending = record.pending_checkpoint
        if record.status != "awaiting_feedback" or pending is None:
            raise TaskStateError(task_id, record.status)

        result = CheckpointResult(continue_=True, new_instructions=instructions)
        record.pending_checkpoint = None
        self._transition(record, "running")
        if not pending.future.done():
            pending.future.set_result(result)
        if instructions:
            log_task_event(task_id, "instructions", instructions)
        return result

    def abort_task(self, task_id: str, reason: Optional[str] = None) -> CheckpointResult:
        """Abort a running or paused task.

        A parked body is woken with a negative result; a running body
        sees the abort the next time it polls ``should_continue()``.
        """
        record = self._require(task_id)
        if record.is_terminal:
            raise TaskStateError(task_id, record.status, f"Task {task_id} already {record.status}")

        reason = reason or "Task aborted by user"
        result = CheckpointResult(continue_=False, abort=True, abort_reason=reason)
        record.error = reason
        record.context.mark_aborted(reason)
        pending = record.pending_checkpoint
        record.pending_checkpoint = None
        self._transition(record, "aborted")
        if pending is not None and not pending.future.done():
            pending.future.set_result(result)
        record.context.cleanup()
        return result

    # ── terminal transitions (called by the runner) ──

    def complete_task(self, task_id: str, result: Any = None) -> bool:
        record = self._tasks.get(task_id)
        if record is None or record.is_terminal:
            return False
        record.result = result
        record.context.complete(result)
        self._transition(record, "completed")
        record.context.cleanup()
        return True

    def fail_task(self, task_id: str, error: str, traceback: str = "") -> bool:
        record = self._tasks.get(task_id)
        if record is None or record.is_terminal:
            return False
        record.error = error
        record.traceback = traceback
        record.context.fail(error)
        self._transition(record, "failed")
        record.context.cleanup()
        return True

    # ── queries ──

    def get(self, task_id: str) -> Optional[TaskRecord]:
        return self._tasks.get(task_id)

    def get_status(self, task_id: str) -> TaskStatus:
        """Context status with the registry's lifecycle status substituted."""
        record = self._require(task_id)
        status = record.context.get_status()
        pending = record.pending_checkpoint
        return replace(
            status,
            status=record.status,
            checkpoint_reason=pending.reason if pending else None,
            error=record.error or status.error,
        )

    def list_tasks(self, status: Optional[str] = None) -> List[dict]:
        records = list(self._tasks.values())
        if status:
            records = [r for r in records if r.status == status]
        return [r.to_summary() for r in records]

    def counts_by_status(self) -> Dict[str, int]:
        counts = {s: 0 for s in sorted(TASK_STATUSES)}
        for record in self._tasks.values():
            counts[record.status] += 1
        return counts

    def format_task_report(self, task_id: str) -> str:
        record = self._tasks.get(task_id)
        if record is None:
            return f"Task {task_id} not found"
        return record.context.format_report(status_override=record.status)

    async def wait_until_settled(self, task_id: str, timeout: float) -> str:
        """Wait until the task is paused or terminal, or ``timeout`` elapses."""
        record = self._require(task_id)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while record.status == "running":
            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            record.changed.clear()
            try:
                await asyncio.wait_for(record.changed.wait(), remaining)
            except asyncio.TimeoutError:
                break
        return record.status

    # ── retention ──

    def cleanup(self, max_age_seconds: float = DEFAULT_RETENTION_SECONDS, now: Optional[datetime] = None) -> int:
        """Evict terminal tasks not updated within ``max_age_seconds``."""
        now = now or _now()
        stale = [
            r for r in self._tasks.values()
            if r.is_terminal and (now - r.updated_at).total_seconds() > max_age_seconds
        ]
        for record in stale:
            record.context.cleanup()
            del self._tasks[record.task_id]
            logger.info("Task %s evicted (status=%s)", record.task_id, record.status)
        if stale:
            self._audit("task.evicted", {"task_ids": [r.task_id for r in stale]})
        return len(stale)
