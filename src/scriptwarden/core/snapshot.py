"""World snapshot data model.

A :class:`WorldSnapshot` is an immutable point-in-time capture of the
observable game world. Snapshots are produced by the acquisition layer
(pushed over HTTP or published in-process) and only read by the engine.

``from_dict`` accepts both ``snake_case`` keys and the ``camelCase`` keys
the game client emits, and tolerates any missing optional section.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional, Tuple


def _pick(d: dict, *keys: str, default: Any = None) -> Any:
    for key in keys:
        if key in d and d[key] is not None:
            return d[key]
    return default


@dataclass(frozen=True)
class InventoryItem:
    id: int
    name: str
    count: int = 1

    def to_dict(self) -> dict:
        return {"id": self.id, "name": self.name, "count": self.count}

    @classmethod
    def from_dict(cls, d: dict) -> InventoryItem:
        return cls(id=int(d["id"]), name=str(d.get("name", "")), count=int(d.get("count", 1)))


@dataclass(frozen=True)
class SkillState:
    name: str
    experience: int = 0
    level: int = 1          # current (boostable) level
    base_level: int = 1     # trained level

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "experience": self.experience,
            "level": self.level,
            "base_level": self.base_level,
        }

    @classmethod
    def from_dict(cls, d: dict) -> SkillState:
        level = int(_pick(d, "level", default=1))
        return cls(
            name=str(d["name"]),
            experience=int(_pick(d, "experience", "xp", default=0)),
            level=level,
            base_level=int(_pick(d, "base_level", "baseLevel", default=level)),
        )


@dataclass(frozen=True)
class PlayerState:
    name: str = ""
    world_x: int = 0
    world_z: int = 0
    combat_level: int = 0
    in_combat: bool = False

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "world_x": self.world_x,
            "world_z": self.world_z,
            "combat_level": self.combat_level,
            "in_combat": self.in_combat,
        }

    @classmethod
    def from_dict(cls, d: dict) -> PlayerState:
        return cls(
            name=str(d.get("name", "")),
            world_x=int(_pick(d, "world_x", "worldX", default=0)),
            world_z=int(_pick(d, "world_z", "worldZ", default=0)),
            combat_level=int(_pick(d, "combat_level", "combatLevel", default=0)),
            in_combat=bool(_pick(d, "in_combat", "inCombat", default=False)),
        )


@dataclass(frozen=True)
class NearbyEntity:
    index: int
    name: str
    in_combat: bool = False
    distance: float = 0.0

    def to_dict(self) -> dict:
        return {"index": self.index, "name": self.name, "in_combat": self.in_combat, "distance": self.distance}

    @classmethod
    def from_dict(cls, d: dict) -> NearbyEntity:
        return cls(
            index=int(d["index"]),
            name=str(d.get("name", "")),
            in_combat=bool(_pick(d, "in_combat", "inCombat", default=False)),
            distance=float(d.get("distance", 0.0)),
        )


@dataclass(frozen=True)
class CombatEvent:
    tick: int
    type: str               # damage_taken | damage_dealt | kill
    damage: int = 0

    def to_dict(self) -> dict:
        return {"tick": self.tick, "type": self.type, "damage": self.damage}

    @classmethod
    def from_dict(cls, d: dict) -> CombatEvent:
        return cls(tick=int(d["tick"]), type=str(d["type"]), damage=int(d.get("damage", 0)))


@dataclass(frozen=True)
class GameMessage:
    tick: int
    text: str

    def to_dict(self) -> dict:
        return {"tick": self.tick, "text": self.text}

    @classmethod
    def from_dict(cls, d: dict) -> GameMessage:
        return cls(tick=int(d["tick"]), text=str(d.get("text", "")))


@dataclass(frozen=True)
class PanelState:
    """Open/closed state of a dialog, interface or shop."""
    is_open: bool = False
    title: str = ""

    def to_dict(self) -> dict:
        return {"is_open": self.is_open, "title": self.title}

    @classmethod
    def from_dict(cls, d: Optional[dict]) -> Optional[PanelState]:
        if d is None:
            return None
        return cls(
            is_open=bool(_pick(d, "is_open", "isOpen", default=False)),
            title=str(d.get("title") or ""),
        )


@dataclass(frozen=True)
class WorldSnapshot:
    tick: int
    inventory: Tuple[InventoryItem, ...] = ()
    skills: Tuple[SkillState, ...] = ()
    player: Optional[PlayerState] = None
    nearby_entities: Tuple[NearbyEntity, ...] = ()
    dialog: Optional[PanelState] = None
    interface: Optional[PanelState] = None
    shop: Optional[PanelState] = None
    combat_events: Tuple[CombatEvent, ...] = ()
    game_messages: Tuple[GameMessage, ...] = ()

    def skill(self, name: str) -> Optional[SkillState]:
        for s in self.skills:
            if s.name == name:
                return s
        return None

    def to_dict(self) -> dict:
        return {
            "tick": self.tick,
            "inventory": [i.to_dict() for i in self.inventory],
            "skills": [s.to_dict() for s in self.skills],
            "player": self.player.to_dict() if self.player else None,
            "nearby_entities": [e.to_dict() for e in self.nearby_entities],
            "dialog": self.dialog.to_dict() if self.dialog else None,
            "interface": self.interface.to_dict() if self.interface else None,
            "shop": self.shop.to_dict() if self.shop else None,
            "combat_events": [e.to_dict() for e in self.combat_events],
            "game_messages": [m.to_dict() for m in self.game_messages],
        }

    @classmethod
    def from_dict(cls, d: dict) -> WorldSnapshot:
        player = d.get("player")
        return cls(
            tick=int(d.get("tick", 0)),
            inventory=tuple(InventoryItem.from_dict(i) for i in d.get("inventory") or []),
            skills=tuple(SkillState.from_dict(s) for s in d.get("skills") or []),
            player=PlayerState.from_dict(player) if player else None,
            nearby_entities=tuple(
                NearbyEntity.from_dict(e) for e in _pick(d, "nearby_entities", "nearbyEntities", "nearbyNpcs", default=[])
            ),
            dialog=PanelState.from_dict(d.get("dialog")),
            interface=PanelState.from_dict(d.get("interface")),
            shop=PanelState.from_dict(d.get("shop")),
            combat_events=tuple(
                CombatEvent.from_dict(e) for e in _pick(d, "combat_events", "combatEvents", default=[])
            ),
            game_messages=tuple(
                GameMessage.from_dict(m) for m in _pick(d, "game_messages", "gameMessages", default=[])
            ),
        )
