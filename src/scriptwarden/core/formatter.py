"""Compact text rendering of a world snapshot for status reports."""
from __future__ import annotations

from typing import Dict, List, Optional, Tuple

from scriptwarden.core.snapshot import PanelState, WorldSnapshot

MAX_ENTITIES = 10
MAX_MESSAGES = 5


def _panel_line(label: str, panel: Optional[PanelState]) -> Optional[str]:
    if not panel or not panel.is_open:
        return None
    return f"{label}: open{f' ({panel.title})' if panel.title else ''}"


def format_world_state(snapshot: Optional[WorldSnapshot], state_age: Optional[float] = None) -> str:
    if snapshot is None:
        return "(no state)"

    lines: List[str] = []
    age = f", {state_age:.1f}s old" if state_age is not None else ""
    lines.append(f"## World State (tick {snapshot.tick}{age})")

    player = snapshot.player
    if player:
        combat = " [in combat]" if player.in_combat else ""
        lines.append(f"Player: {player.name or '?'} at ({player.world_x}, {player.world_z}){combat}")
    hp = snapshot.skill("Hitpoints")
    if hp:
        lines.append(f"Hitpoints: {hp.level}/{hp.base_level}")

    for label, panel in (("Dialog", snapshot.dialog), ("Interface", snapshot.interface), ("Shop", snapshot.shop)):
        line = _panel_line(label, panel)
        if line:
            lines.append(line)

    merged: Dict[int, Tuple[str, int]] = {}
    for item in snapshot.inventory:
        name, count = merged.get(item.id, (item.name, 0))
        merged[item.id] = (name, count + item.count)
    lines.append(f"Inventory ({len(snapshot.inventory)} slots):")
    if merged:
        for name, count in merged.values():
            lines.append(f"  - {name} x{count}")
    else:
        lines.append("  (empty)")

    if snapshot.skills:
        lines.append("Skills:")
        for s in snapshot.skills:
            lines.append(f"  - {s.name}: {s.base_level} ({s.experience} xp)")

    if snapshot.nearby_entities:
        nearby = sorted(snapshot.nearby_entities, key=lambda e: e.distance)[:MAX_ENTITIES]
        lines.append("Nearby:")
        for e in nearby:
            flag = " [in combat]" if e.in_combat else ""
            lines.append(f"  - {e.name} #{e.index} ({e.distance:.0f} tiles){flag}")

    if snapshot.game_messages:
        lines.append("Recent messages:")
        for m in snapshot.game_messages[-MAX_MESSAGES:]:
            lines.append(f"  > {m.text}")

    return "\n".join(lines)
