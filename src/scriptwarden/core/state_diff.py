"""State diff tracking — meaningful changes between two world snapshots.

Used to give the controller a compact view of what a script actually
did: items gained and lost, XP, combat, movement, UI transitions,
entities and new game messages. Only the two snapshots are compared,
so all deltas are net deltas over the window.

``compute_state_diff`` is pure and total: missing optional sections of
either snapshot degrade to "no change" for that field.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass, field
import math
import re
from typing import Dict, List, Optional, Tuple

from scriptwarden.core.snapshot import NearbyEntity, PanelState, WorldSnapshot

HITPOINTS_SKILL = "Hitpoints"
DEFAULT_HITPOINTS = 10
MOVE_SUMMARY_THRESHOLD = 5.0

_FORMAT_MARKER = re.compile(r"@\w+@")


# ── Diff model ───────────────────────────────────────────────

@dataclass
class TickRange:
    before: int
    after: int
    elapsed: int = 0


@dataclass
class ItemDelta:
    id: int
    name: str
    count: int


@dataclass
class ItemChange:
    id: int
    name: str
    before: int
    after: int


@dataclass
class InventoryDiff:
    gained: List[ItemDelta] = field(default_factory=list)
    lost: List[ItemDelta] = field(default_factory=list)
    changed: List[ItemChange] = field(default_factory=list)


@dataclass
class XpGain:
    name: str
    xp: int
    level_up: bool = False
    new_level: Optional[int] = None


@dataclass
class SkillDiff:
    xp_gained: List[XpGain] = field(default_factory=list)


@dataclass
class CombatDiff:
    damage_taken: int = 0
    damage_dealt: int = 0
    kills: int = 0
    health_change: int = 0


@dataclass
class PositionDiff:
    moved: bool = False
    from_: Optional[Tuple[int, int]] = None
    to: Optional[Tuple[int, int]] = None
    distance: float = 0.0


@dataclass
class UiDiff:
    dialog_opened: bool = False
    dialog_closed: bool = False
    interface_opened: bool = False
    interface_closed: bool = False
    shop_opened: bool = False
    shop_closed: bool = False


@dataclass
class EntityRef:
    index: int
    name: str


@dataclass
class EntityDiff:
    appeared: List[EntityRef] = field(default_factory=list)
    disappeared: List[EntityRef] = field(default_factory=list)
    died: List[EntityRef] = field(default_factory=list)


@dataclass
class StateDiff:
    tick: TickRange
    inventory: InventoryDiff = field(default_factory=InventoryDiff)
    skills: SkillDiff = field(default_factory=SkillDiff)
    combat: CombatDiff = field(default_factory=CombatDiff)
    position: PositionDiff = field(default_factory=PositionDiff)
    ui: UiDiff = field(default_factory=UiDiff)
    entities: EntityDiff = field(default_factory=EntityDiff)
    messages: List[str] = field(default_factory=list)
    summary: List[str] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.summary

    def to_dict(self) -> dict:
        d = asdict(self)
        pos = d["position"]
        from_ = pos.pop("from_")
        pos["from"] = list(from_) if from_ is not None else None
        if pos["to"] is not None:
            pos["to"] = list(pos["to"])
        return d


def empty_diff(tick: int = 0) -> StateDiff:
    """The canonical "nothing changed" diff."""
    return StateDiff(tick=TickRange(before=tick, after=tick, elapsed=0))


# ── Computation ──────────────────────────────────────────────

def _merge_inventory(snapshot: WorldSnapshot) -> Dict[int, ItemDelta]:
    merged: Dict[int, ItemDelta] = {}
    for item in snapshot.inventory:
        existing = merged.get(item.id)
        if existing:
            existing.count += item.count
        else:
            merged[item.id] = ItemDelta(id=item.id, name=item.name, count=item.count)
    return merged


def _is_open(panel: Optional[PanelState]) -> bool:
    return bool(panel and panel.is_open)


def _hitpoints(snapshot: WorldSnapshot) -> int:
    skill = snapshot.skill(HITPOINTS_SKILL)
    return skill.level if skill else DEFAULT_HITPOINTS


def _diff_inventory(before: WorldSnapshot, after: WorldSnapshot, diff: StateDiff) -> None:
    before_inv = _merge_inventory(before)
    after_inv = _merge_inventory(after)

    for item_id, item in after_inv.items():
        prev = before_inv.get(item_id)
        if prev is None:
            diff.inventory.gained.append(item)
            diff.summary.append(f"+{item.count} {item.name}")
        elif item.count > prev.count:
            diff.inventory.changed.append(
                ItemChange(id=item_id, name=item.name, before=prev.count, after=item.count)
            )
            diff.summary.append(f"+{item.count - prev.count} {item.name}")

    for item_id, item in before_inv.items():
        cur = after_inv.get(item_id)
        if cur is None:
            diff.inventory.lost.append(item)
            diff.summary.append(f"-{item.count} {item.name}")
        elif cur.count < item.count:
            diff.inventory.changed.append(
                ItemChange(id=item_id, name=item.name, before=item.count, after=cur.count)
            )
            diff.summary.append(f"-{item.count - cur.count} {item.name}")


def _diff_skills(before: WorldSnapshot, after: WorldSnapshot, diff: StateDiff) -> None:
    before_skills = {s.name: s for s in before.skills}
    for skill in after.skills:
        prev = before_skills.get(skill.name)
        if prev is None:
            continue
        xp_gain = skill.experience - prev.experience
        level_up = skill.base_level > prev.base_level
        if xp_gain <= 0 and not level_up:
            continue
        diff.skills.xp_gained.append(XpGain(
            name=skill.name,
            xp=max(xp_gain, 0),
            level_up=level_up,
            new_level=skill.base_level if level_up else None,
        ))
        if level_up:
            diff.summary.append(f"LEVEL UP! {skill.name} -> {skill.base_level}")
        else:
            diff.summary.append(f"+{xp_gain} {skill.name} XP")


def _diff_combat(before: WorldSnapshot, after: WorldSnapshot, diff: StateDiff) -> None:
    diff.combat.health_change = _hitpoints(after) - _hitpoints(before)
    for evt in after.combat_events:
        if evt.tick <= before.tick:
            continue
        if evt.type == "damage_taken":
            diff.combat.damage_taken += evt.damage
        elif evt.type == "damage_dealt":
            diff.combat.damage_dealt += evt.damage
        elif evt.type == "kill":
            diff.combat.kills += 1

    if diff.combat.damage_taken > 0:
        diff.summary.append(f"Took {diff.combat.damage_taken} damage")
    if diff.combat.damage_dealt > 0:
        diff.summary.append(f"Dealt {diff.combat.damage_dealt} damage")
    if diff.combat.kills > 0:
        diff.summary.append(f"Killed {diff.combat.kills} target(s)")


def _diff_position(before: WorldSnapshot, after: WorldSnapshot, diff: StateDiff) -> None:
    if before.player is None or after.player is None:
        return
    dx = after.player.world_x - before.player.world_x
    dz = after.player.world_z - before.player.world_z
    dist = math.hypot(dx, dz)
    if dist <= 0:
        return
    diff.position = PositionDiff(
        moved=True,
        from_=(before.player.world_x, before.player.world_z),
        to=(after.player.world_x, after.player.world_z),
        distance=dist,
    )
    if dist >= MOVE_SUMMARY_THRESHOLD:
        diff.summary.append(f"Moved {round(dist)} tiles")


def _diff_ui(before: WorldSnapshot, after: WorldSnapshot, diff: StateDiff) -> None:
    ui = diff.ui
    ui.dialog_opened = not _is_open(before.dialog) and _is_open(after.dialog)
    ui.dialog_closed = _is_open(before.dialog) and not _is_open(after.dialog)
    ui.interface_opened = not _is_open(before.interface) and _is_open(after.interface)
    ui.interface_closed = _is_open(before.interface) and not _is_open(after.interface)
    ui.shop_opened = not _is_open(before.shop) and _is_open(after.shop)
    ui.shop_closed = _is_open(before.shop) and not _is_open(after.shop)

    if ui.dialog_opened:
        diff.summary.append("Dialog opened")
    if ui.dialog_closed:
        diff.summary.append("Dialog closed")
    if ui.shop_opened:
        title = after.shop.title if after.shop else ""
        diff.summary.append(f"Shop opened: {title}")
    if ui.shop_closed:
        diff.summary.append("Shop closed")


def _diff_entities(before: WorldSnapshot, after: WorldSnapshot, diff: StateDiff) -> None:
    before_map: Dict[int, NearbyEntity] = {e.index: e for e in before.nearby_entities}
    after_map: Dict[int, NearbyEntity] = {}
    for ent in after.nearby_entities:
        after_map[ent.index] = ent
        if ent.index not in before_map:
            diff.entities.appeared.append(EntityRef(index=ent.index, name=ent.name))

    for idx, ent in before_map.items():
        if idx in after_map:
            continue
        diff.entities.disappeared.append(EntityRef(index=idx, name=ent.name))
        # Death and walking out of range look the same; engaged entities count as deaths.
        if ent.in_combat:
            diff.entities.died.append(EntityRef(index=idx, name=ent.name))
            diff.summary.append(f"{ent.name} died")


def compute_state_diff(before: WorldSnapshot, after: WorldSnapshot) -> StateDiff:
    """Compute the structured diff between two snapshots."""
    diff = StateDiff(tick=TickRange(
        before=before.tick,
        after=after.tick,
        elapsed=after.tick - before.tick,
    ))
    _diff_inventory(before, after, diff)
    _diff_skills(before, after, diff)
    _diff_combat(before, after, diff)
    _diff_position(before, after, diff)
    _diff_ui(before, after, diff)
    _diff_entities(before, after, diff)
    diff.messages = [
        _FORMAT_MARKER.sub("", m.text) for m in after.game_messages if m.tick > before.tick
    ]
    return diff


def format_state_diff(diff: StateDiff) -> str:
    """Render a diff as a short human-readable block."""
    if not diff.summary:
        return "(no significant changes)"

    lines = [f"Changes over {diff.tick.elapsed} ticks:"]
    lines.extend(f"  - {item}" for item in diff.summary)
    if diff.messages:
        lines.append("Messages:")
        lines.extend(f"  > {msg}" for msg in diff.messages[-3:])
    return "\n".join(lines)
