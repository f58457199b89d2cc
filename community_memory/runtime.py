from __future__ import annotations

import logging
from collections import defaultdict, deque
from typing import Any, Protocol

from .engine.types import (
    CommunityInteraction,
    MemoryFragment,
    UNKNOWN_INTERACTION_TYPE,
    _as_float,
    coerce_datetime,
)


logger = logging.getLogger("community_memory")

INTERACTIONS_TABLE = "community_interactions"
STANDING_TABLE = "community_standing"


class HostRuntime(Protocol):
    """Memory primitives of the agent runtime hosting the engine."""

    agent_id: str

    async def create_memory(self, memory: MemoryFragment, table_name: str) -> None: ...

    async def get_memories(
        self,
        table_name: str,
        *,
        room_id: str | None = None,
        entity_id: str | None = None,
        count: int = 50,
    ) -> list[MemoryFragment]: ...

    async def search_memories(
        self,
        table_name: str,
        query: str,
        *,
        room_id: str | None = None,
        count: int = 10,
    ) -> list[MemoryFragment]: ...


class LocalHostRuntime:
    """In-process runtime keeping a bounded deque of memories per table."""

    def __init__(self, agent_id: str = "community-memory", *, max_per_table: int = 5000) -> None:
        self.agent_id = agent_id
        self.max_per_table = max(1, int(max_per_table))
        self._tables: defaultdict[str, deque[MemoryFragment]] = defaultdict(
            lambda: deque(maxlen=self.max_per_table)
        )

    async def create_memory(self, memory: MemoryFragment, table_name: str) -> None:
        self._tables[table_name].append(memory)

    async def get_memories(
        self,
        table_name: str,
        *,
        room_id: str | None = None,
        entity_id: str | None = None,
        count: int = 50,
    ) -> list[MemoryFragment]:
        result: list[MemoryFragment] = []
        for memory in reversed(self._tables.get(table_name, ())):
            if room_id is not None and memory.room_id != room_id:
                continue
            if entity_id is not None and memory.entity_id != entity_id:
                continue
            result.append(memory)
            if len(result) >= count:
                break
        return result

    async def search_memories(
        self,
        table_name: str,
        query: str,
        *,
        room_id: str | None = None,
        count: int = 10,
    ) -> list[MemoryFragment]:
        needle = query.casefold().strip()
        if not needle:
            return []
        result: list[MemoryFragment] = []
        for memory in reversed(self._tables.get(table_name, ())):
            if room_id is not None and memory.room_id != room_id:
                continue
            if needle in memory.text.casefold() or needle in memory.interaction_type.casefold():
                result.append(memory)
                if len(result) >= count:
                    break
        return result

    def table_size(self, table_name: str) -> int:
        return len(self._tables.get(table_name, ()))


def memory_from_interaction(
    interaction: CommunityInteraction,
    *,
    agent_id: str,
    quality: float | None = None,
    impact: str | None = None,
) -> MemoryFragment:
    metadata: dict[str, Any] = {
        "type": interaction.interaction_type,
        "weight": interaction.weight,
        "sentiment_score": interaction.sentiment_score,
        "platform": interaction.platform,
        "original_user_id": interaction.original_user_id,
        "username": interaction.username,
        "raid_id": interaction.related_raid_id,
        "context": dict(interaction.context),
    }
    if quality is not None:
        metadata["quality_score"] = quality
    if impact is not None:
        metadata["community_impact"] = impact
    return MemoryFragment(
        id=interaction.id,
        entity_id=interaction.user_id,
        agent_id=agent_id,
        room_id=interaction.room_id or interaction.user_id,
        text=interaction.content,
        source=interaction.platform,
        metadata=metadata,
        created_at=interaction.timestamp,
    )


def interaction_from_memory(memory: MemoryFragment) -> tuple[CommunityInteraction, float]:
    """Rebuild a stored interaction (and its quality score) from a host memory record."""
    meta = memory.metadata
    context = meta.get("context")
    raid_id = meta.get("raid_id")
    interaction = CommunityInteraction(
        id=memory.id,
        user_id=memory.entity_id,
        original_user_id=str(meta.get("original_user_id") or memory.entity_id),
        username=str(meta.get("username") or ""),
        interaction_type=str(meta.get("type") or UNKNOWN_INTERACTION_TYPE),
        content=memory.text,
        context=dict(context) if isinstance(context, dict) else {},
        weight=_as_float(meta.get("weight"), 1.0),
        sentiment_score=_as_float(meta.get("sentiment_score"), 0.0),
        platform=str(meta.get("platform") or memory.source or "unknown"),
        timestamp=coerce_datetime(memory.created_at),
        related_raid_id=str(raid_id) if raid_id else None,
        room_id=memory.room_id if memory.room_id != memory.entity_id else None,
    )
    return interaction, _as_float(meta.get("quality_score"), 0.5)
