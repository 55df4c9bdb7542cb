"""MCP JSON-RPC protocol handler.

Implements the Model Context Protocol over HTTP (Streamable HTTP transport).
A controller POSTs JSON-RPC requests to a single endpoint and gets
JSON-RPC responses back.

Exposes the supervision tools: start a named procedure, resume it at a
checkpoint, inspect, abort, list and evict tasks, and read the audit trail.
"""
from __future__ import annotations

import json
import logging
import time
from typing import Any

from scriptwarden import __version__
from scriptwarden.core.audit import read_events
from scriptwarden.core.errors import SupervisorError
from scriptwarden.core.logging_config import log_mcp_call
from scriptwarden.core.procedures import ProcedureCatalog
from scriptwarden.core.runner import TaskRunner
from scriptwarden.core.tasks import DEFAULT_RETENTION_SECONDS, TaskManager

logger = logging.getLogger("scriptwarden.mcp.protocol")

# ── Tool definitions (returned by tools/list) ────────────────────

TOOLS = [
    {
        "name": "run_task",
        "description": "Start a named procedure as a supervised task. Returns when the task completes, "
                       "pauses at its first checkpoint, or keeps running past the settle window.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "owner": {"type": "string", "description": "World/player the task acts for"},
                "procedure": {"type": "string", "description": "Procedure name (see list_procedures)"},
                "description": {"type": "string", "description": "What the task is meant to achieve"},
                "params": {"type": "object", "description": "Keyword arguments passed to the procedure"},
            },
            "required": ["owner", "procedure", "description"],
        },
    },
    {
        "name": "continue_task",
        "description": "Resume a task paused at a checkpoint, optionally with new instructions.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "task_id": {"type": "string"},
                "instructions": {"type": "string", "description": "Guidance handed to the task body"},
            },
            "required": ["task_id"],
        },
    },
    {
        "name": "get_task_status",
        "description": "Get the status, progress and state diff of a task.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "task_id": {"type": "string"},
                "include_state": {"type": "boolean", "default": False,
                                  "description": "Include the full status record"},
            },
            "required": ["task_id"],
        },
    },
    {
        "name": "abort_task",
        "description": "Abort a running or paused task.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "task_id": {"type": "string"},
                "reason": {"type": "string"},
            },
            "required": ["task_id"],
        },
    },
    {
        "name": "list_tasks",
        "description": "List all known tasks with their status.",
        "inputSchema": {"type": "object", "properties": {}},
    },
    {
        "name": "list_procedures",
        "description": "List the procedures that run_task can start.",
        "inputSchema": {"type": "object", "properties": {}},
    },
    {
        "name": "cleanup_tasks",
        "description": "Evict finished tasks older than max_age_seconds. Returns the count removed.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "max_age_seconds": {"type": "number", "default": DEFAULT_RETENTION_SECONDS},
            },
        },
    },
    {
        "name": "audit_read",
        "description": "Read recent audit log events.",
        "inputSchema": {
            "type": "object",
            "properties": {"limit": {"type": "integer", "default": 100}},
        },
    },
]


def _require_arg(args: dict[str, Any], name: str) -> Any:
    value = args.get(name)
    if value is None or value == "":
        raise ValueError(f"Missing required argument: {name}")
    return value


class MCPProtocolHandler:
    """Handles MCP JSON-RPC requests and dispatches tool calls."""

    def __init__(
        self,
        task_manager: TaskManager,
        runner: TaskRunner,
        procedures: ProcedureCatalog,
    ) -> None:
        self.task_manager = task_manager
        self.runner = runner
        self.procedures = procedures

    async def handle_request(self, body: dict[str, Any]) -> dict[str, Any]:
        """Process a single JSON-RPC request and return a JSON-RPC response."""
        jsonrpc = body.get("jsonrpc", "2.0")
        method = body.get("method", "")
        params = body.get("params") or {}
        req_id = body.get("id")

        logger.info("MCP request: method=%s id=%s", method, req_id)
        log_mcp_call(method=method, params=params)

        try:
            result = await self._dispatch(method, params)
        except Exception as exc:  # noqa: BLE001
            logger.error("MCP method %s failed: %s", method, exc)
            return self._error_response(req_id, -32603, str(exc))

        if req_id is None:
            return {}

        return {"jsonrpc": jsonrpc, "id": req_id, "result": result}

    async def _dispatch(self, method: str, params: dict[str, Any]) -> Any:
        if method == "initialize":
            return self._handle_initialize(params)
        if method in ("initialized", "notifications/initialized"):
            return {}
        if method == "tools/list":
            return {"tools": TOOLS}
        if method == "tools/call":
            return await self._handle_tools_call(params)
        if method == "ping":
            return {}
        raise ValueError(f"Unknown method: {method}")

    def _handle_initialize(self, params: dict[str, Any]) -> dict[str, Any]:
        return {
            "protocolVersion": "2025-03-26",
            "capabilities": {"tools": {"listChanged": False}},
            "serverInfo": {"name": "scriptwarden", "version": __version__},
        }

    async def _handle_tools_call(self, params: dict[str, Any]) -> dict[str, Any]:
        name = params.get("name", "")
        arguments = params.get("arguments") or {}
        logger.info("MCP tools/call: %s args=%s", name, json.dumps(arguments, default=str)[:200])

        t0 = time.monotonic()
        try:
            result = await self._call_tool(name, arguments)
        except Exception as exc:  # noqa: BLE001
            duration_ms = (time.monotonic() - t0) * 1000
            if isinstance(exc, (SupervisorError, ValueError)):
                logger.info("Tool %s rejected: %s", name, exc)
            else:
                logger.error("Tool %s failed: %s", name, exc, exc_info=True)
            log_mcp_call(
                method="tools/call",
                params={"name": name},
                error=str(exc),
                duration_ms=duration_ms,
                tool_name=name,
                tool_args=arguments,
            )
            return {
                "content": [{"type": "text", "text": f"Error: {exc}"}],
                "isError": True,
            }

        duration_ms = (time.monotonic() - t0) * 1000
        result_str = json.dumps(result, default=str)
        log_mcp_call(
            method="tools/call",
            params={"name": name},
            result=result,
            duration_ms=duration_ms,
            tool_name=name,
            tool_args=arguments,
        )
        return {
            "content": [{"type": "text", "text": result_str}],
            "isError": False,
        }

    async def _call_tool(self, name: str, args: dict[str, Any]) -> Any:
        if name == "run_task":
            return await self._tool_run_task(args)
        if name == "continue_task":
            return await self._tool_continue_task(args)
        if name == "get_task_status":
            return self._tool_get_task_status(args)
        if name == "abort_task":
            return self._tool_abort_task(args)
        if name == "list_tasks":
            return self._tool_list_tasks(args)
        if name == "list_procedures":
            return self._tool_list_procedures(args)
        if name == "cleanup_tasks":
            return self._tool_cleanup_tasks(args)
        if name == "audit_read":
            return self._tool_audit_read(args)
        raise ValueError(f"Unknown tool: {name}")

    # ── Tool implementations ──────────────────────────────

    async def _tool_run_task(self, args: dict[str, Any]) -> dict:
        owner = _require_arg(args, "owner")
        proc_name = _require_arg(args, "procedure")
        description = _require_arg(args, "description")
        params = args.get("params") or {}
        if not isinstance(params, dict):
            raise ValueError("params must be an object")
        if proc_name not in self.procedures:
            raise ValueError(f"Unknown procedure: {proc_name}")
        spec = self.procedures.get(proc_name)
        outcome = await self.runner.start(owner, spec.func, description, params=params)
        return outcome.to_dict()

    async def _tool_continue_task(self, args: dict[str, Any]) -> dict:
        task_id = _require_arg(args, "task_id")
        outcome = await self.runner.resume(task_id, args.get("instructions") or None)
        return outcome.to_dict()

    def _tool_get_task_status(self, args: dict[str, Any]) -> dict:
        task_id = _require_arg(args, "task_id")
        if args.get("include_state"):
            return self.task_manager.get_status(task_id).to_dict()
        outcome = self.runner.outcome(task_id)
        d = outcome.to_dict()
        d["report"] = self.task_manager.format_task_report(task_id)
        return d

    def _tool_abort_task(self, args: dict[str, Any]) -> dict:
        task_id = _require_arg(args, "task_id")
        outcome = self.runner.abort(task_id, args.get("reason") or None)
        return outcome.to_dict()

    def _tool_list_tasks(self, args: dict[str, Any]) -> dict:
        tasks = self.task_manager.list_tasks()
        return {"count": len(tasks), "tasks": tasks}

    def _tool_list_procedures(self, args: dict[str, Any]) -> dict:
        return {"procedures": [p.to_dict() for p in self.procedures.list()]}

    def _tool_cleanup_tasks(self, args: dict[str, Any]) -> dict:
        max_age = args.get("max_age_seconds")
        max_age = DEFAULT_RETENTION_SECONDS if max_age is None else float(max_age)
        removed = self.task_manager.cleanup(max_age)
        return {"removed": removed}

    def _tool_audit_read(self, args: dict[str, Any]) -> dict:
        if not self.task_manager.data_dir:
            raise ValueError("data_dir not configured")
        return {"events": read_events(self.task_manager.data_dir, int(args.get("limit") or 100))}

    @staticmethod
    def _error_response(req_id: Any, code: int, message: str) -> dict[str, Any]:
        return {"jsonrpc": "2.0", "id": req_id, "error": {"code": code, "message": message}}
