"""World-state boundary.

The engine only needs two things from the acquisition layer: the latest
snapshot and a way to hear about updates. :class:`WorldStateStore` is the
in-process holder that the acquisition layer (or the HTTP ingestion
route) publishes into; tasks read from it through :class:`WorldSource`.
"""
from __future__ import annotations

import logging
import time
from typing import Callable, Dict, List, Optional, Protocol

from scriptwarden.core.snapshot import WorldSnapshot

logger = logging.getLogger("scriptwarden.world")

StateListener = Callable[[WorldSnapshot], None]
Unsubscribe = Callable[[], None]


class WorldSource(Protocol):
    def get_current_snapshot(self) -> Optional[WorldSnapshot]: ...

    def subscribe(self, callback: StateListener) -> Unsubscribe: ...

    def get_state_age(self) -> Optional[float]: ...


class WorldStateStore:
    """Latest snapshot for one owner plus update fan-out."""

    def __init__(self, owner: str = "") -> None:
        self.owner = owner
        self._snapshot: Optional[WorldSnapshot] = None
        self._updated_at: Optional[float] = None
        self._listeners: List[StateListener] = []

    def get_current_snapshot(self) -> Optional[WorldSnapshot]:
        return self._snapshot

    def get_state_age(self) -> Optional[float]:
        if self._updated_at is None:
            return None
        return time.monotonic() - self._updated_at

    def publish(self, snapshot: WorldSnapshot) -> None:
        self._snapshot = snapshot
        self._updated_at = time.monotonic()
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:  # noqa: BLE001
                logger.warning("World listener failed for %s", self.owner or "(anonymous)", exc_info=True)

    def subscribe(self, callback: StateListener) -> Unsubscribe:
        self._listeners.append(callback)

        def _unsubscribe() -> None:
            try:
                self._listeners.remove(callback)
            except ValueError:
                pass

        return _unsubscribe

    @property
    def listener_count(self) -> int:
        return len(self._listeners)


class WorldRegistry:
    """One :class:`WorldStateStore` per owner, created on first use."""

    def __init__(self) -> None:
        self._stores: Dict[str, WorldStateStore] = {}

    def get_or_create(self, owner: str) -> WorldStateStore:
        store = self._stores.get(owner)
        if store is None:
            store = WorldStateStore(owner)
            self._stores[owner] = store
            logger.info("World store created for %s", owner)
        return store

    def get(self, owner: str) -> Optional[WorldStateStore]:
        return self._stores.get(owner)

    def owners(self) -> List[str]:
        return list(self._stores)
