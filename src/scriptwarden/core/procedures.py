"""Named task procedures.

The engine never evaluates code sent over the wire. Controllers pick a
procedure by name from a :class:`ProcedureCatalog`; extra catalogs are
plain Python modules that expose ``register_procedures(catalog)``.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
import importlib
import logging
from typing import Any, Callable, Dict, Iterable, List, Optional

from scriptwarden.core.context import TaskContext
from scriptwarden.core.state_diff import format_state_diff

logger = logging.getLogger("scriptwarden.procedures")

Procedure = Callable[..., Any]


@dataclass
class ProcedureSpec:
    name: str
    func: Procedure
    description: str = ""

    def to_dict(self) -> dict:
        return {"name": self.name, "description": self.description}


class ProcedureCatalog:
    def __init__(self) -> None:
        self._procedures: Dict[str, ProcedureSpec] = {}

    def register(self, name: Optional[str] = None, description: str = "") -> Callable[[Procedure], Procedure]:
        """Decorator registering ``func`` under ``name`` (defaults to the function name)."""
        def _decorator(func: Procedure) -> Procedure:
            key = name or func.__name__
            if key in self._procedures:
                logger.warning("Procedure %s re-registered", key)
            doc = description or (func.__doc__ or "").strip().split("\n")[0]
            self._procedures[key] = ProcedureSpec(name=key, func=func, description=doc)
            return func
        return _decorator

    def add(self, name: str, func: Procedure, description: str = "") -> None:
        self.register(name, description)(func)

    def get(self, name: str) -> Optional[ProcedureSpec]:
        return self._procedures.get(name)

    def list(self) -> List[ProcedureSpec]:
        return sorted(self._procedures.values(), key=lambda p: p.name)

    def __contains__(self, name: str) -> bool:
        return name in self._procedures

    def load_modules(self, modules: Iterable[str]) -> int:
        """Import each dotted module path and let it register procedures.

        Returns the number of modules loaded. Import errors propagate.
        """
        loaded = 0
        for path in modules:
            path = path.strip()
            if not path:
                continue
            module = importlib.import_module(path)
            hook = getattr(module, "register_procedures", None)
            if hook is None:
                raise ValueError(f"Module {path} has no register_procedures(catalog)")
            hook(self)
            loaded += 1
            logger.info("Loaded procedures from %s", path)
        return loaded


# ── Built-in procedures ──────────────────────────────────────

async def watch(ctx: TaskContext, rounds: int = 3, interval: float = 5.0, checkpoint_every: int = 1) -> dict:
    """Observe the world and report what changed each round."""
    ctx.set_action("Watching")
    done = 0
    for i in range(int(rounds)):
        if not ctx.should_continue():
            break
        await asyncio.sleep(float(interval))
        done = i + 1
        diff = ctx.get_state_diff_since_last_checkpoint()
        ctx.report_progress(
            "Watching",
            ", ".join(diff.summary) or "no changes",
            current=done,
            total=int(rounds),
            unit="rounds",
        )
        if checkpoint_every and done % int(checkpoint_every) == 0 and done < int(rounds):
            feedback = await ctx.checkpoint(f"Round {done} observed:\n{format_state_diff(diff)}")
            if feedback.abort:
                break
    return {"rounds": done, "summary": ctx.get_state_diff_from_start().summary}


def build_default_catalog(modules: Iterable[str] = ()) -> ProcedureCatalog:
    catalog = ProcedureCatalog()
    catalog.add("watch", watch)
    catalog.load_modules(modules)
    return catalog
