from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

from community_memory.engine.types import normalize_interaction
from community_memory.runtime import (
    INTERACTIONS_TABLE,
    LocalHostRuntime,
    interaction_from_memory,
    memory_from_interaction,
)


NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _interaction(interaction_id: str, user_id: str, content: str, **extra):  # type: ignore[no-untyped-def]
    payload = {
        "id": interaction_id,
        "userId": user_id,
        "interactionType": "community_help",
        "content": content,
        "platform": "discord",
        "timestamp": NOW,
    }
    payload.update(extra)
    return normalize_interaction(payload, now=NOW)


def test_memory_carries_interaction_metadata() -> None:
    interaction = _interaction("i1", "u1", "walked a newbie through setup", relatedRaidId="r9", context={"helps_newbie": True})

    memory = memory_from_interaction(interaction, agent_id="agent", quality=0.8, impact="high")

    assert memory.id == "i1"
    assert memory.entity_id == "u1"
    assert memory.room_id == "u1"
    assert memory.source == "discord"
    assert memory.metadata["type"] == "community_help"
    assert memory.metadata["raid_id"] == "r9"
    assert memory.metadata["quality_score"] == 0.8
    assert memory.metadata["community_impact"] == "high"
    assert memory.interaction_type == "community_help"


def test_interaction_rebuilt_from_memory() -> None:
    original = _interaction("i2", "u1", "shared the docs link", sentimentScore=0.4, roomId="room-5")
    memory = memory_from_interaction(original, agent_id="agent", quality=0.65)

    rebuilt, quality = interaction_from_memory(memory)

    assert rebuilt == original
    assert quality == 0.65


def test_local_runtime_filters_newest_first_and_bounds_tables() -> None:
    runtime = LocalHostRuntime("agent", max_per_table=3)

    async def _run():  # type: ignore[no-untyped-def]
        for index, user in enumerate(["u1", "u2", "u1", "u1"]):
            item = _interaction(f"m{index}", user, f"raid number {index}", timestamp=NOW + timedelta(minutes=index))
            await runtime.create_memory(memory_from_interaction(item, agent_id="agent"), INTERACTIONS_TABLE)
        return (
            await runtime.get_memories(INTERACTIONS_TABLE, entity_id="u1"),
            await runtime.get_memories(INTERACTIONS_TABLE, count=1),
            await runtime.search_memories(INTERACTIONS_TABLE, "NUMBER 2"),
            await runtime.search_memories(INTERACTIONS_TABLE, "  "),
            await runtime.get_memories("missing_table"),
        )

    for_u1, newest, found, blank, missing = asyncio.run(_run())

    assert runtime.table_size(INTERACTIONS_TABLE) == 3
    assert [memory.id for memory in for_u1] == ["m3", "m2"]
    assert [memory.id for memory in newest] == ["m3"]
    assert [memory.id for memory in found] == ["m2"]
    assert blank == []
    assert missing == []
