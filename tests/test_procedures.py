from __future__ import annotations

import textwrap

import pytest

from conftest import make_snapshot
from scriptwarden.core.context import TaskContext
from scriptwarden.core.procedures import ProcedureCatalog, build_default_catalog, watch
from scriptwarden.core.runner import TaskRunner
from scriptwarden.core.tasks import TaskManager
from scriptwarden.core.world import WorldRegistry, WorldStateStore


def test_register_decorator_uses_docstring() -> None:
    catalog = ProcedureCatalog()

    @catalog.register()
    async def chop(ctx, trees=1):
        """Chop some trees.

        Longer description.
        """

    spec = catalog.get("chop")
    assert spec.func is chop
    assert spec.description == "Chop some trees."
    assert "chop" in catalog
    assert catalog.get("missing") is None


def test_list_is_sorted_by_name() -> None:
    catalog = ProcedureCatalog()
    catalog.add("zeta", watch)
    catalog.add("alpha", watch, "first")
    assert [p.name for p in catalog.list()] == ["alpha", "zeta"]
    assert catalog.list()[0].to_dict() == {"name": "alpha", "description": "first"}


def test_default_catalog_has_watch() -> None:
    catalog = build_default_catalog()
    assert [p.name for p in catalog.list()] == ["watch"]
    assert catalog.get("watch").description.startswith("Observe the world")


def test_load_modules(tmp_path, monkeypatch) -> None:
    (tmp_path / "extra_procs.py").write_text(textwrap.dedent('''
        async def fish(ctx):
            """Catch fish."""
            return "fish"

        def register_procedures(catalog):
            catalog.add("fish", fish)
    '''))
    monkeypatch.syspath_prepend(str(tmp_path))
    catalog = build_default_catalog(["extra_procs", " "])
    assert catalog.get("fish").description == "Catch fish."


def test_load_module_without_hook_fails(tmp_path, monkeypatch) -> None:
    (tmp_path / "no_hook_procs.py").write_text("X = 1\n")
    monkeypatch.syspath_prepend(str(tmp_path))
    with pytest.raises(ValueError, match="register_procedures"):
        ProcedureCatalog().load_modules(["no_hook_procs"])


@pytest.mark.asyncio
async def test_watch_without_supervisor_runs_all_rounds() -> None:
    world = WorldStateStore("tester")
    world.publish(make_snapshot(tick=1))
    ctx = TaskContext("task-1-w", world)
    result = await watch(ctx, rounds=3, interval=0)
    assert result["rounds"] == 3
    assert ctx.checkpoint_count == 2


@pytest.mark.asyncio
async def test_watch_under_runner_pauses_and_completes() -> None:
    worlds = WorldRegistry()
    store = worlds.get_or_create("tester")
    store.publish(make_snapshot(tick=1))
    runner = TaskRunner(TaskManager(), worlds, settle_timeout=0.1, resume_settle_timeout=0.1)

    outcome = await runner.start("tester", watch, "Watch", params={"rounds": 2, "interval": 0})
    assert outcome.kind == "awaiting_feedback"
    assert outcome.checkpoint_reason.startswith("Round 1 observed:")

    store.publish(make_snapshot(tick=5, inventory=[(1511, "Logs", 1)]))
    outcome = await runner.resume(outcome.task_id)
    assert outcome.kind == "completed"
    assert outcome.result == {"rounds": 2, "summary": ["+1 Logs"]}


@pytest.mark.asyncio
async def test_watch_stops_on_abort() -> None:
    worlds = WorldRegistry()
    worlds.get_or_create("tester").publish(make_snapshot(tick=1))
    tasks = TaskManager()
    runner = TaskRunner(tasks, worlds, settle_timeout=0.1)
    outcome = await runner.start("tester", watch, "Watch", params={"rounds": 5, "interval": 0})
    runner.abort(outcome.task_id)
    assert tasks.get(outcome.task_id).status == "aborted"
