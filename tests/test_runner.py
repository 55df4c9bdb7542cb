"""Tests for the invocation harness."""
from __future__ import annotations

import asyncio

import pytest

from conftest import make_snapshot
from scriptwarden.core.errors import TaskNotFoundError, TaskStateError
from scriptwarden.core.runner import TaskRunner
from scriptwarden.core.tasks import TaskManager
from scriptwarden.core.world import WorldRegistry


@pytest.fixture
def worlds():
    registry = WorldRegistry()
    registry.get_or_create("tester").publish(make_snapshot(tick=100))
    return registry


@pytest.fixture
def tasks():
    return TaskManager()


@pytest.fixture
def runner(tasks, worlds):
    return TaskRunner(tasks, worlds, settle_timeout=0.05, resume_settle_timeout=0.05)


async def quick(ctx, amount=1):
    ctx.set_action("Counting")
    ctx.report_progress("Counting", "done", current=amount, total=amount)
    return {"amount": amount}


def sync_body(ctx):
    return "sync ok"


async def two_checkpoints(ctx):
    first = await ctx.checkpoint("A")
    if first.abort:
        return "stopped at A"
    second = await ctx.checkpoint("B")
    if second.abort:
        return "stopped at B"
    return second.new_instructions


async def broken(ctx):
    ctx.log("about to break")
    raise RuntimeError("no axe equipped")


async def slow(ctx):
    while ctx.should_continue():
        await asyncio.sleep(0.01)
    return "noticed abort"


class TestStart:
    @pytest.mark.asyncio
    async def test_fast_body_completes_inline(self, runner, tasks):
        outcome = await runner.start("tester", quick, "Count things", params={"amount": 3})
        assert outcome.kind == "completed"
        assert outcome.result == {"amount": 3}
        d = outcome.to_dict()
        assert d["status"] == "completed"
        assert d["description"] == "Count things"
        assert d["checkpoint_count"] == 0
        assert d["recent_progress"]
        assert "logs" in d

    @pytest.mark.asyncio
    async def test_sync_body_is_supported(self, runner):
        outcome = await runner.start("tester", sync_body, "Sync")
        assert outcome.kind == "completed"
        assert outcome.result == "sync ok"

    @pytest.mark.asyncio
    async def test_unknown_owner_gets_a_fresh_world(self, runner, worlds):
        outcome = await runner.start("newcomer", quick, "Count")
        assert outcome.kind == "completed"
        assert "newcomer" in worlds.owners()

    @pytest.mark.asyncio
    async def test_body_failure_is_recorded(self, runner, tasks):
        outcome = await runner.start("tester", broken, "Break")
        assert outcome.kind == "failed"
        assert outcome.error == "RuntimeError: no axe equipped"
        record = tasks.get(outcome.task_id)
        assert "RuntimeError" in record.traceback
        assert "about to break" in outcome.to_dict()["logs"]

    @pytest.mark.asyncio
    async def test_long_body_reports_running(self, runner, tasks):
        outcome = await runner.start("tester", slow, "Idle")
        assert outcome.kind == "running"
        assert runner.executing_count() == 1
        runner.abort(outcome.task_id)
        await asyncio.sleep(0.05)
        record = tasks.get(outcome.task_id)
        assert record.status == "aborted"
        assert record.result is None
        assert runner.executing_count() == 0


class TestResume:
    @pytest.mark.asyncio
    async def test_pause_resume_complete(self, runner):
        outcome = await runner.start("tester", two_checkpoints, "Two stops")
        assert outcome.kind == "awaiting_feedback"
        assert outcome.checkpoint_reason == "A"
        assert outcome.to_dict()["checkpoint_reason"] == "A"

        outcome = await runner.resume(outcome.task_id)
        assert outcome.kind == "awaiting_feedback"
        assert outcome.checkpoint_reason == "B"
        assert outcome.checkpoint_count == 2

        outcome = await runner.resume(outcome.task_id, "go home")
        assert outcome.kind == "completed"
        assert outcome.result == "go home"

    @pytest.mark.asyncio
    async def test_abort_while_paused(self, runner, tasks):
        outcome = await runner.start("tester", two_checkpoints, "Two stops")
        aborted = runner.abort(outcome.task_id, "enough")
        assert aborted.kind == "aborted"
        assert aborted.error == "enough"
        await asyncio.sleep(0.02)
        record = tasks.get(outcome.task_id)
        assert record.status == "aborted"
        assert record.result is None
        assert not any(p.status == "completed" for p in record.progress_history)

    @pytest.mark.asyncio
    async def test_resume_running_task_is_rejected(self, runner):
        outcome = await runner.start("tester", slow, "Idle")
        with pytest.raises(TaskStateError):
            await runner.resume(outcome.task_id)
        runner.abort(outcome.task_id)

    @pytest.mark.asyncio
    async def test_unknown_task(self, runner):
        with pytest.raises(TaskNotFoundError):
            await runner.resume("task-0-none")
        with pytest.raises(TaskNotFoundError):
            runner.outcome("task-0-none")


class TestShutdown:
    @pytest.mark.asyncio
    async def test_shutdown_aborts_active_tasks(self, runner, tasks):
        paused = await runner.start("tester", two_checkpoints, "Paused")
        running = await runner.start("tester", slow, "Running")
        await runner.shutdown()
        assert tasks.get(paused.task_id).status == "aborted"
        assert tasks.get(running.task_id).status == "aborted"
        assert tasks.get(paused.task_id).error == "Server shutting down"
