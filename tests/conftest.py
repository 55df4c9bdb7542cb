from __future__ import annotations

import pytest

from scriptwarden.core.snapshot import (
    CombatEvent,
    GameMessage,
    InventoryItem,
    PlayerState,
    SkillState,
    WorldSnapshot,
)


def make_snapshot(
    tick: int = 100,
    inventory=(),
    skills=None,
    player=None,
    entities=(),
    dialog=None,
    interface=None,
    shop=None,
    combat=(),
    messages=(),
) -> WorldSnapshot:
    if skills is None:
        skills = [SkillState("Hitpoints", experience=1154, level=10, base_level=10)]
    if player is None:
        player = PlayerState(name="Tester", world_x=3200, world_z=3200)
    return WorldSnapshot(
        tick=tick,
        inventory=tuple(InventoryItem(*i) if isinstance(i, tuple) else i for i in inventory),
        skills=tuple(skills),
        player=player,
        nearby_entities=tuple(entities),
        dialog=dialog,
        interface=interface,
        shop=shop,
        combat_events=tuple(CombatEvent(*c) for c in combat),
        game_messages=tuple(GameMessage(*m) for m in messages),
    )


@pytest.fixture(autouse=True)
def _isolated_dirs(tmp_path, monkeypatch):
    monkeypatch.setenv("SCRIPTWARDEN_LOG_DIR", str(tmp_path / "logs"))
    monkeypatch.setenv("SCRIPTWARDEN_DATA_DIR", str(tmp_path / "data"))
    monkeypatch.delenv("SCRIPTWARDEN_MCP_TOKEN", raising=False)
