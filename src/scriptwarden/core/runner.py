"""Invocation harness — runs task bodies on the event loop.

The runner is the only place a task body is invoked. It schedules the
body as an :class:`asyncio.Task`, waits a short settle window so that
fast bodies report their outcome inline, and turns whatever the body
raises into a ``failed`` transition on the registry.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
import inspect
import logging
import traceback as tb
from typing import Any, Callable, Dict, List, Optional, Set

from scriptwarden.core.state_diff import format_state_diff
from scriptwarden.core.tasks import ACTIVE_STATUSES, TaskManager
from scriptwarden.core.world import WorldRegistry

logger = logging.getLogger("scriptwarden.runner")

DEFAULT_SETTLE_TIMEOUT = 0.1
DEFAULT_RESUME_SETTLE_TIMEOUT = 0.2
RECENT_PROGRESS = 5


@dataclass
class RunOutcome:
    """What a caller sees after starting or resuming a task."""
    task_id: str
    kind: str                       # completed | awaiting_feedback | failed | aborted | running
    description: str
    elapsed_ms: int
    checkpoint_count: int
    summary: List[str] = field(default_factory=list)
    recent_progress: List[str] = field(default_factory=list)
    checkpoint_reason: Optional[str] = None
    result: Any = None
    error: Optional[str] = None
    logs: List[str] = field(default_factory=list)
    state_diff: str = ""
    world_state: str = ""

    def to_dict(self) -> dict:
        d: Dict[str, Any] = {
            "task_id": self.task_id,
            "status": self.kind,
            "description": self.description,
            "elapsed_ms": self.elapsed_ms,
            "checkpoint_count": self.checkpoint_count,
            "summary": self.summary,
            "recent_progress": self.recent_progress,
        }
        if self.kind == "awaiting_feedback":
            d["checkpoint_reason"] = self.checkpoint_reason
            d["state_diff"] = self.state_diff
            d["world_state"] = self.world_state
        if self.kind == "completed":
            d["result"] = self.result
        if self.error:
            d["error"] = self.error
        if self.kind in ("completed", "failed", "aborted"):
            d["logs"] = self.logs
            d["state_diff"] = self.state_diff
        return d


class TaskRunner:
    """Schedules task bodies and reports their settled outcome."""

    def __init__(
        self,
        tasks: TaskManager,
        worlds: WorldRegistry,
        settle_timeout: float = DEFAULT_SETTLE_TIMEOUT,
        resume_settle_timeout: float = DEFAULT_RESUME_SETTLE_TIMEOUT,
    ) -> None:
        self.tasks = tasks
        self.worlds = worlds
        self.settle_timeout = settle_timeout
        self.resume_settle_timeout = resume_settle_timeout
        self._running: Dict[str, asyncio.Task] = {}
        self._handles: Set[asyncio.Task] = set()

    # ── body execution ──

    async def _execute(self, task_id: str, procedure: Callable[..., Any], params: Dict[str, Any]) -> None:
        record = self.tasks.get(task_id)
        if record is None:
            return
        ctx = record.context
        try:
            result = procedure(ctx, **params)
            if inspect.isawaitable(result):
                result = await result
        except asyncio.CancelledError:
            self.tasks.fail_task(task_id, "Task cancelled")
            raise
        except Exception as exc:  # noqa: BLE001
            error = f"{type(exc).__name__}: {exc}"
            trace = tb.format_exc()
            logger.error("Task %s failed: %s\n%s", task_id, error, trace)
            self.tasks.fail_task(task_id, error, traceback=trace)
            return
        if self.tasks.complete_task(task_id, result):
            logger.info("Task %s completed", task_id)
        else:
            # aborted while running; the late result is dropped
            logger.info("Task %s returned after %s", task_id, record.status)

    def _spawn(self, task_id: str, procedure: Callable[..., Any], params: Dict[str, Any]) -> asyncio.Task:
        handle = asyncio.create_task(self._execute(task_id, procedure, params), name=task_id)
        self._running[task_id] = handle
        self._handles.add(handle)

        def _done(h: asyncio.Task) -> None:
            self._handles.discard(h)
            if self._running.get(task_id) is h:
                del self._running[task_id]

        handle.add_done_callback(_done)
        return handle

    # ── public operations ──

    async def start(
        self,
        owner: str,
        procedure: Callable[..., Any],
        description: str,
        params: Optional[Dict[str, Any]] = None,
        actions: Any = None,
    ) -> RunOutcome:
        world = self.worlds.get_or_create(owner)
        task_id, _ = self.tasks.start_task(
            owner, world, procedure, description, params=params, actions=actions
        )
        record = self.tasks.get(task_id)
        self._spawn(task_id, procedure, record.params if record else dict(params or {}))
        await self.tasks.wait_until_settled(task_id, self.settle_timeout)
        return self.outcome(task_id)

    async def resume(self, task_id: str, instructions: Optional[str] = None) -> RunOutcome:
        self.tasks.continue_task(task_id, instructions)
        await self.tasks.wait_until_settled(task_id, self.resume_settle_timeout)
        return self.outcome(task_id)

    def abort(self, task_id: str, reason: Optional[str] = None) -> RunOutcome:
        self.tasks.abort_task(task_id, reason)
        return self.outcome(task_id)

    def outcome(self, task_id: str) -> RunOutcome:
        status = self.tasks.get_status(task_id)  # raises TaskNotFoundError
        record = self.tasks.get(task_id)
        ctx = record.context
        if record.status == "awaiting_feedback":
            diff = format_state_diff(status.state_diff)
        else:
            diff = format_state_diff(status.accumulated_diff)
        return RunOutcome(
            task_id=task_id,
            kind=record.status,
            description=record.description,
            elapsed_ms=status.elapsed_ms,
            checkpoint_count=status.checkpoint_count,
            summary=list(status.accumulated_diff.summary),
            recent_progress=[p.format_line() for p in record.progress_history[-RECENT_PROGRESS:]],
            checkpoint_reason=status.checkpoint_reason,
            result=record.result,
            error=record.error,
            logs=ctx.get_logs()[-20:],
            state_diff=diff,
            world_state=status.world_state,
        )

    def executing_count(self) -> int:
        """Task bodies currently scheduled on the loop, paused ones included."""
        return sum(1 for handle in self._running.values() if not handle.done())

    async def shutdown(self) -> None:
        """Abort every active task and cancel whatever is still scheduled."""
        for summary in self.tasks.list_tasks():
            if summary["status"] in ACTIVE_STATUSES:
                self.tasks.abort_task(summary["id"], "Server shutting down")
        handles = list(self._handles)
        for handle in handles:
            if not handle.done():
                handle.cancel()
        if handles:
            await asyncio.gather(*handles, return_exceptions=True)
