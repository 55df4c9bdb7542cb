from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
import logging
import os
from typing import Any, Optional

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException, Request
from pydantic import AliasChoices, BaseModel, Field

from scriptwarden import __version__
from scriptwarden.core.audit import log_event
from scriptwarden.core.config import Settings
from scriptwarden.core.formatter import format_world_state
from scriptwarden.core.logging_config import setup_logging
from scriptwarden.core.procedures import build_default_catalog
from scriptwarden.core.runner import TaskRunner
from scriptwarden.core.snapshot import WorldSnapshot
from scriptwarden.core.tasks import TaskManager
from scriptwarden.core.world import WorldRegistry
from scriptwarden.mcp.protocol import MCPProtocolHandler

logger = logging.getLogger("scriptwarden.gateway")


class SnapshotPush(BaseModel):
    """World snapshot as pushed by the acquisition layer. Shape is checked by WorldSnapshot."""
    tick: int = 0
    inventory: list[dict[str, Any]] = Field(default_factory=list)
    skills: list[dict[str, Any]] = Field(default_factory=list)
    player: Optional[dict[str, Any]] = None
    nearby_entities: list[dict[str, Any]] = Field(
        default_factory=list,
        validation_alias=AliasChoices("nearby_entities", "nearbyEntities", "nearbyNpcs"),
    )
    dialog: Optional[dict[str, Any]] = None
    interface: Optional[dict[str, Any]] = None
    shop: Optional[dict[str, Any]] = None
    combat_events: list[dict[str, Any]] = Field(
        default_factory=list, validation_alias=AliasChoices("combat_events", "combatEvents")
    )
    game_messages: list[dict[str, Any]] = Field(
        default_factory=list, validation_alias=AliasChoices("game_messages", "gameMessages")
    )

    model_config = {"extra": "ignore"}


def create_app() -> FastAPI:
    # Ensure .env is loaded before anything reads os.getenv
    load_dotenv(override=False)

    settings = Settings.from_env()

    setup_logging(
        log_dir=settings.log_dir,
        log_level=settings.log_level,
        clear_on_launch=settings.clear_logs_on_launch,
    )

    os.makedirs(settings.data_dir, exist_ok=True)
    os.makedirs(settings.log_dir, exist_ok=True)

    worlds = WorldRegistry()
    task_manager = TaskManager(
        data_dir=settings.data_dir,
        progress_interval=settings.progress_interval,
    )
    runner = TaskRunner(
        task_manager,
        worlds,
        settle_timeout=settings.settle_timeout,
        resume_settle_timeout=settings.resume_settle_timeout,
    )
    procedures = build_default_catalog(settings.procedure_modules)
    mcp_handler = MCPProtocolHandler(task_manager, runner, procedures)

    # ---- background reaper ----

    async def _reaper_loop() -> None:
        while True:
            await asyncio.sleep(settings.reap_interval_seconds)
            try:
                removed = task_manager.cleanup(settings.task_retention_seconds)
                if removed:
                    logger.info("Reaper evicted %d task(s)", removed)
            except Exception:  # noqa: BLE001
                logger.exception("Task reaper iteration failed")

    # ---- lifespan ----

    @asynccontextmanager
    async def lifespan(application: FastAPI):
        reaper: Optional[asyncio.Task] = None
        if settings.reap_interval_seconds > 0:
            reaper = asyncio.create_task(_reaper_loop(), name="task-reaper")
        log_event(settings.data_dir, "app.start", {"host": settings.host, "port": settings.port})
        logger.info("scriptwarden %s ready (%d procedures)", __version__, len(procedures.list()))

        yield

        # Shutdown
        if reaper:
            reaper.cancel()
            try:
                await reaper
            except asyncio.CancelledError:
                pass
        await runner.shutdown()
        log_event(settings.data_dir, "app.stop", {})

    app = FastAPI(title="scriptwarden", version=__version__, lifespan=lifespan)

    # ---- core routes ----

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/control/status")
    async def control_status() -> dict:
        counts = task_manager.counts_by_status()
        return {
            "tasks_total": sum(counts.values()),
            "tasks_by_status": counts,
            "tasks_executing": runner.executing_count(),
            "worlds": worlds.owners(),
            "procedures": [p.name for p in procedures.list()],
        }

    # ---- world ingestion ----

    @app.post("/world/{owner}/state")
    async def push_state(owner: str, push: SnapshotPush) -> dict:
        # async: listeners and the task table live on the event-loop thread
        try:
            snapshot = WorldSnapshot.from_dict(push.model_dump())
        except (KeyError, TypeError, ValueError) as exc:
            raise HTTPException(status_code=422, detail=f"Invalid snapshot: {exc}") from exc
        store = worlds.get_or_create(owner)
        store.publish(snapshot)
        return {"owner": owner, "tick": snapshot.tick, "listeners": store.listener_count}

    @app.get("/world/{owner}/state")
    async def get_state(owner: str) -> dict:
        store = worlds.get(owner)
        snapshot = store.get_current_snapshot() if store else None
        if snapshot is None:
            raise HTTPException(status_code=404, detail=f"No state for {owner}")
        return {
            "owner": owner,
            "age_seconds": store.get_state_age(),
            "snapshot": snapshot.to_dict(),
            "text": format_world_state(snapshot, store.get_state_age()),
        }

    # ---- MCP ----

    @app.post("/mcp")
    async def mcp_jsonrpc(request: Request) -> dict:
        """MCP JSON-RPC endpoint for controller tool calls."""
        # Optional token auth
        if settings.mcp_token:
            token = request.headers.get("x-mcp-token")
            auth = request.headers.get("authorization", "")
            if not token and auth.lower().startswith("bearer "):
                token = auth.split(" ", 1)[1]
            if token != settings.mcp_token:
                raise HTTPException(status_code=401, detail="Invalid MCP token")

        body = await request.json()
        return await mcp_handler.handle_request(body)

    return app
