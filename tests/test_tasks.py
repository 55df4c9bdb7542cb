"""Tests for the task registry and the checkpoint rendezvous."""
from __future__ import annotations

import asyncio
from datetime import timedelta
import re

import pytest

from conftest import make_snapshot
from scriptwarden.core.audit import read_events
from scriptwarden.core.errors import TaskNotFoundError, TaskStateError
from scriptwarden.core.tasks import TaskManager, _now
from scriptwarden.core.world import WorldStateStore


async def _noop(ctx):
    return None


@pytest.fixture
def data_dir(tmp_path):
    return str(tmp_path / "data")


@pytest.fixture
def tm(data_dir):
    return TaskManager(data_dir=data_dir)


@pytest.fixture
def world():
    store = WorldStateStore("tester")
    store.publish(make_snapshot(tick=100))
    return store


def _start(tm, world, description="Chop trees"):
    task_id, _ = tm.start_task("tester", world, _noop, description)
    return task_id


async def _park(tm, task_id, reason):
    """Run a checkpoint on the task's context and wait until it is parked."""
    ctx = tm.get(task_id).context
    pending = asyncio.create_task(ctx.checkpoint(reason))
    await tm.wait_until_settled(task_id, 1.0)
    return pending


# ── Creation ─────────────────────────────────────────────────

class TestStartTask:
    def test_ids_are_unique_and_well_formed(self, tm, world):
        a = _start(tm, world)
        b = _start(tm, world)
        assert a != b
        assert re.fullmatch(r"task-1-[0-9a-z]+", a)
        assert re.fullmatch(r"task-2-[0-9a-z]+", b)

    def test_registered_as_running_before_execution(self, tm, world):
        task_id, status = tm.start_task("tester", world, _noop, "Mine ore", params={"ore": "iron"})
        assert status.status == "running"
        record = tm.get(task_id)
        assert record.status == "running"
        assert record.params == {"ore": "iron"}
        assert world.listener_count == 1

    def test_list_projection(self, tm, world):
        task_id = _start(tm, world)
        [summary] = tm.list_tasks()
        assert summary["id"] == task_id
        assert summary["owner"] == "tester"
        assert summary["status"] == "running"
        assert summary["description"] == "Chop trees"
        assert summary["needs_feedback"] is False
        assert "elapsed_ms" in summary
        assert "future" not in str(summary)

    def test_start_is_audited(self, tm, world, data_dir):
        task_id = _start(tm, world)
        events = read_events(data_dir)
        assert events[0]["type"] == "task.started"
        assert events[0]["payload"]["task_id"] == task_id


# ── Rendezvous ───────────────────────────────────────────────

class TestCheckpointRendezvous:
    @pytest.mark.asyncio
    async def test_checkpoint_parks_task(self, tm, world):
        task_id = _start(tm, world)
        pending = await _park(tm, task_id, "Inventory full")
        assert not pending.done()
        record = tm.get(task_id)
        assert record.status == "awaiting_feedback"
        assert record.needs_feedback is True
        status = tm.get_status(task_id)
        assert status.status == "awaiting_feedback"
        assert status.checkpoint_reason == "Inventory full"
        assert tm.list_tasks()[0]["needs_feedback"] is True
        tm.abort_task(task_id)
        await pending

    @pytest.mark.asyncio
    async def test_continue_resolves_with_instructions(self, tm, world):
        task_id = _start(tm, world)
        pending = await _park(tm, task_id, "Check")
        result = tm.continue_task(task_id, "bank the logs")
        assert result.continue_ is True
        resolved = await pending
        assert resolved.new_instructions == "bank the logs"
        record = tm.get(task_id)
        assert record.status == "running"
        assert record.pending_checkpoint is None
        assert "[New Instructions] bank the logs" in record.context.get_logs()

    @pytest.mark.asyncio
    async def test_continue_rejects_running_task(self, tm, world):
        task_id = _start(tm, world)
        with pytest.raises(TaskStateError) as excinfo:
            tm.continue_task(task_id)
        assert excinfo.value.status == "running"
        assert "is not paused" in str(excinfo.value)
        record = tm.get(task_id)
        assert record.status == "running"
        assert record.pending_checkpoint is None

    def test_continue_unknown_task(self, tm):
        with pytest.raises(TaskNotFoundError, match="Task nope not found"):
            tm.continue_task("nope")

    @pytest.mark.asyncio
    async def test_checkpoints_are_sequential(self, tm, world):
        task_id = _start(tm, world)
        ctx = tm.get(task_id).context
        reasons = []

        async def body():
            await ctx.checkpoint("A")
            await ctx.checkpoint("B")
            tm.complete_task(task_id, "done")

        runner = asyncio.create_task(body())
        await tm.wait_until_settled(task_id, 1.0)
        reasons.append(tm.get_status(task_id).checkpoint_reason)
        tm.continue_task(task_id)
        await tm.wait_until_settled(task_id, 1.0)
        reasons.append(tm.get_status(task_id).checkpoint_reason)
        assert tm.get(task_id).status == "awaiting_feedback"
        tm.continue_task(task_id)
        await runner
        assert reasons == ["A", "B"]
        assert tm.get(task_id).status == "completed"
        assert tm.get(task_id).result == "done"


# ── Abort ────────────────────────────────────────────────────

class TestAbort:
    @pytest.mark.asyncio
    async def test_abort_while_paused(self, tm, world):
        task_id = _start(tm, world)
        progress = tm.get(task_id).progress_history
        pending = await _park(tm, task_id, "Check")
        result = tm.abort_task(task_id, "wrong target")
        assert result.abort is True
        resolved = await pending
        assert resolved.continue_ is False
        assert resolved.abort is True
        assert resolved.abort_reason == "wrong target"

        record = tm.get(task_id)
        assert record.status == "aborted"
        assert record.pending_checkpoint is None
        assert record.context.should_continue() is False
        assert world.listener_count == 0

        # the body returning afterwards must not flip the outcome
        assert tm.complete_task(task_id, "late") is False
        assert tm.fail_task(task_id, "late") is False
        assert record.status == "aborted"
        assert not any(p.status in ("completed", "failed") for p in progress)

    def test_abort_running_task_uses_default_reason(self, tm, world):
        task_id = _start(tm, world)
        tm.abort_task(task_id)
        record = tm.get(task_id)
        assert record.status == "aborted"
        assert record.error == "Task aborted by user"
        assert tm.get_status(task_id).error == "Task aborted by user"

    def test_abort_unknown_task(self, tm):
        with pytest.raises(TaskNotFoundError):
            tm.abort_task("task-404-x")

    def test_abort_finished_task_is_rejected(self, tm, world):
        task_id = _start(tm, world)
        tm.complete_task(task_id)
        with pytest.raises(TaskStateError):
            tm.abort_task(task_id)
        assert tm.get(task_id).status == "completed"

    @pytest.mark.asyncio
    async def test_checkpoint_after_abort_returns_immediately(self, tm, world):
        task_id = _start(tm, world)
        tm.abort_task(task_id, "stop")
        result = await tm.get(task_id).context.checkpoint("again")
        assert result.abort is True
        assert tm.get(task_id).status == "aborted"


# ── Terminal transitions ─────────────────────────────────────

class TestTerminal:
    def test_complete(self, tm, world, data_dir):
        task_id = _start(tm, world)
        assert tm.complete_task(task_id, {"logs": 5}) is True
        record = tm.get(task_id)
        assert record.status == "completed"
        assert record.result == {"logs": 5}
        assert record.progress_history[-1].status == "completed"
        assert world.listener_count == 0
        assert "task.completed" in [e["type"] for e in read_events(data_dir)]

    def test_fail_keeps_error_and_traceback(self, tm, world):
        task_id = _start(tm, world)
        assert tm.fail_task(task_id, "RuntimeError: stuck", traceback="Traceback...") is True
        record = tm.get(task_id)
        assert record.status == "failed"
        assert record.error == "RuntimeError: stuck"
        assert record.traceback == "Traceback..."
        assert tm.complete_task(task_id) is False

    def test_unknown_task_transitions_are_noops(self, tm):
        assert tm.complete_task("missing") is False
        assert tm.fail_task("missing", "x") is False

    def test_report_uses_registry_status(self, tm, world):
        task_id = _start(tm, world)
        tm.fail_task(task_id, "boom")
        assert "Status: FAILED" in tm.format_task_report(task_id)
        assert tm.format_task_report("missing") == "Task missing not found"

    def test_counts_by_status(self, tm, world):
        a = _start(tm, world)
        _start(tm, world)
        tm.complete_task(a)
        counts = tm.counts_by_status()
        assert counts["completed"] == 1
        assert counts["running"] == 1
        assert counts["failed"] == 0


# ── Retention ────────────────────────────────────────────────

class TestCleanup:
    def test_evicts_old_terminal_tasks_once(self, tm, world):
        task_id = _start(tm, world)
        tm.complete_task(task_id)
        later = _now() + timedelta(minutes=31)
        assert tm.cleanup(now=later) == 1
        assert tm.get(task_id) is None
        assert tm.cleanup(now=later) == 0

    def test_keeps_recent_terminal_tasks(self, tm, world):
        task_id = _start(tm, world)
        tm.complete_task(task_id)
        assert tm.cleanup(now=_now() + timedelta(minutes=5)) == 0
        assert tm.get(task_id) is not None

    @pytest.mark.asyncio
    async def test_never_evicts_active_tasks(self, tm, world):
        running = _start(tm, world)
        paused = _start(tm, world)
        pending = await _park(tm, paused, "Check")
        far_future = _now() + timedelta(days=7)
        assert tm.cleanup(0, now=far_future) == 0
        assert tm.get(running) is not None
        assert tm.get(paused) is not None
        tm.abort_task(paused)
        await pending


# ── Settling ─────────────────────────────────────────────────

class TestWaitUntilSettled:
    @pytest.mark.asyncio
    async def test_times_out_while_running(self, tm, world):
        task_id = _start(tm, world)
        assert await tm.wait_until_settled(task_id, 0.01) == "running"

    @pytest.mark.asyncio
    async def test_returns_immediately_when_terminal(self, tm, world):
        task_id = _start(tm, world)
        tm.complete_task(task_id)
        assert await tm.wait_until_settled(task_id, 5.0) == "completed"
