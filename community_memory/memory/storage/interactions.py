from __future__ import annotations

from datetime import datetime
from typing import Dict, Iterable, List, Set

import aiosqlite

from ...engine.types import CommunityInteraction
from .utils import _chunks, _clamp, _json_dumps, _sqlite_memory_connection, _to_iso, interaction_from_row


_INTERACTION_COLUMNS = """
    id, user_id, original_user_id, username, interaction_type, content, context,
    platform, weight, quality_score, sentiment_score, raid_id, room_id, timestamp
"""


class MemoryInteractionsMixin:
    async def insert_interaction(self, interaction: CommunityInteraction, *, quality: float) -> None:
        async with _sqlite_memory_connection(self.db_path) as db:
            await db.execute(
                f"""
                INSERT INTO community_interactions ({_INTERACTION_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO NOTHING
                """,
                (
                    interaction.id,
                    interaction.user_id,
                    interaction.original_user_id or interaction.user_id,
                    interaction.username,
                    interaction.interaction_type,
                    interaction.content,
                    _json_dumps(interaction.context),
                    interaction.platform,
                    float(interaction.weight),
                    _clamp(float(quality), 0.0, 1.0),
                    float(interaction.sentiment_score),
                    interaction.related_raid_id,
                    interaction.room_id,
                    _to_iso(interaction.timestamp),
                ),
            )
            await db.commit()

    async def get_user_interactions(self, user_id: str, limit: int) -> List[CommunityInteraction]:
        async with _sqlite_memory_connection(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                f"""
                SELECT {_INTERACTION_COLUMNS}
                FROM community_interactions
                WHERE user_id = ?
                ORDER BY timestamp DESC
                LIMIT ?
                """,
                (user_id, max(1, int(limit))),
            ) as cursor:
                rows = await cursor.fetchall()
        return [interaction_from_row(row) for row in rows]

    async def get_interactions_since(self, since: datetime, limit: int | None = None) -> List[CommunityInteraction]:
        query = f"""
            SELECT {_INTERACTION_COLUMNS}
            FROM community_interactions
            WHERE timestamp >= ?
            ORDER BY timestamp DESC
        """
        params: tuple[object, ...] = (_to_iso(since),)
        if limit is not None:
            query += " LIMIT ?"
            params = (_to_iso(since), max(1, int(limit)))
        async with _sqlite_memory_connection(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(query, params) as cursor:
                rows = await cursor.fetchall()
        return [interaction_from_row(row) for row in rows]

    async def find_consolidation_candidates(self, cutoff: datetime, max_weight: float) -> List[str]:
        async with _sqlite_memory_connection(self.db_path) as db:
            async with db.execute(
                """
                SELECT id
                FROM community_interactions
                WHERE timestamp < ? AND weight < ?
                ORDER BY timestamp ASC
                """,
                (_to_iso(cutoff), float(max_weight)),
            ) as cursor:
                rows = await cursor.fetchall()
        return [str(row[0]) for row in rows]

    async def archive_interactions(self, ids: Iterable[str], *, reason: str, archived_at: datetime) -> int:
        """Copy rows into archived_interactions, then delete them, inside one transaction."""
        wanted = list(dict.fromkeys(str(i) for i in ids))
        if not wanted:
            return 0
        archived_iso = _to_iso(archived_at)
        deleted = 0
        async with _sqlite_memory_connection(self.db_path) as db:
            try:
                for batch in _chunks(wanted):
                    marks = ",".join("?" for _ in batch)
                    await db.execute(
                        f"""
                        INSERT INTO archived_interactions (
                            original_id, user_id, interaction_type, weight, payload, archived_at, reason
                        )
                        SELECT
                            id, user_id, interaction_type, weight,
                            json_object(
                                'content', content,
                                'platform', platform,
                                'sentiment_score', sentiment_score,
                                'timestamp', timestamp,
                                'raid_id', raid_id
                            ),
                            ?, ?
                        FROM community_interactions
                        WHERE id IN ({marks})
                        """,
                        (archived_iso, reason, *batch),
                    )
                    cursor = await db.execute(
                        f"""
                        DELETE FROM community_interactions
                        WHERE id IN ({marks})
                          AND id IN (SELECT original_id FROM archived_interactions WHERE archived_at = ?)
                        """,
                        (*batch, archived_iso),
                    )
                    deleted += max(0, int(cursor.rowcount or 0))
                await db.commit()
            except Exception:
                await db.rollback()
                raise
        return deleted

    async def list_active_user_ids(self, since: datetime) -> List[str]:
        async with _sqlite_memory_connection(self.db_path) as db:
            async with db.execute(
                """
                SELECT user_id, MAX(timestamp) AS last_seen
                FROM community_interactions
                WHERE timestamp >= ?
                GROUP BY user_id
                ORDER BY last_seen DESC
                """,
                (_to_iso(since),),
            ) as cursor:
                rows = await cursor.fetchall()
        return [str(row[0]) for row in rows]

    async def existing_interaction_ids(self, ids: Iterable[str]) -> Set[str]:
        wanted = list(dict.fromkeys(str(i) for i in ids))
        found: Set[str] = set()
        if not wanted:
            return found
        async with _sqlite_memory_connection(self.db_path) as db:
            for batch in _chunks(wanted):
                marks = ",".join("?" for _ in batch)
                async with db.execute(
                    f"SELECT id FROM community_interactions WHERE id IN ({marks})",
                    tuple(batch),
                ) as cursor:
                    rows = await cursor.fetchall()
                found.update(str(row[0]) for row in rows)
        return found

    async def count_interactions_by_type(self, since: datetime | None) -> Dict[str, int]:
        query = "SELECT interaction_type, COUNT(*) FROM community_interactions"
        params: tuple[object, ...] = ()
        if since is not None:
            query += " WHERE timestamp >= ?"
            params = (_to_iso(since),)
        query += " GROUP BY interaction_type"
        async with _sqlite_memory_connection(self.db_path) as db:
            async with db.execute(query, params) as cursor:
                rows = await cursor.fetchall()
        return {str(row[0]): int(row[1]) for row in rows}
