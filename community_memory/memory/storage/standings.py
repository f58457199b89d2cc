from __future__ import annotations

from datetime import datetime
from typing import Dict, List

import aiosqlite

from ...engine.types import LeaderboardEntry, PersonalityProfile
from .utils import _json_dumps, _sqlite_memory_connection, _to_iso, leaderboard_from_row


class MemoryStandingsMixin:
    async def upsert_personality_snapshot(self, profile: PersonalityProfile) -> None:
        async with _sqlite_memory_connection(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO user_personalities (
                    user_id, engagement_style, communication_tone, activity_level, community_contribution,
                    reliability_score, leadership_potential, traits, interaction_patterns, last_updated
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(user_id) DO UPDATE SET
                    engagement_style = excluded.engagement_style,
                    communication_tone = excluded.communication_tone,
                    activity_level = excluded.activity_level,
                    community_contribution = excluded.community_contribution,
                    reliability_score = excluded.reliability_score,
                    leadership_potential = excluded.leadership_potential,
                    traits = excluded.traits,
                    interaction_patterns = excluded.interaction_patterns,
                    last_updated = excluded.last_updated
                """,
                (
                    profile.user_id,
                    profile.engagement_style,
                    profile.communication_tone,
                    profile.activity_level,
                    profile.community_contribution,
                    float(profile.reliability_score),
                    float(profile.leadership_potential),
                    _json_dumps(list(profile.traits)),
                    _json_dumps(dict(profile.interaction_patterns)),
                    _to_iso(profile.last_updated),
                ),
            )
            await db.commit()

    async def apply_standing_delta(self, user_id: str, weight_delta: float, at: datetime, *, username: str = "") -> None:
        async with _sqlite_memory_connection(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO leaderboards (user_id, username, total_points, last_activity)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(user_id) DO UPDATE SET
                    username = CASE WHEN excluded.username <> '' THEN excluded.username ELSE leaderboards.username END,
                    total_points = leaderboards.total_points + excluded.total_points,
                    last_activity = excluded.last_activity
                """,
                (user_id, username or "", float(weight_delta), _to_iso(at)),
            )
            await db.commit()

    async def upsert_leaderboard_entry(self, entry: LeaderboardEntry) -> None:
        async with _sqlite_memory_connection(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO leaderboards (
                    user_id, username, total_points, raids_participated, successful_engagements,
                    rank, badges, last_activity
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(user_id) DO UPDATE SET
                    username = excluded.username,
                    total_points = excluded.total_points,
                    raids_participated = excluded.raids_participated,
                    successful_engagements = excluded.successful_engagements,
                    rank = excluded.rank,
                    badges = excluded.badges,
                    last_activity = excluded.last_activity
                """,
                (
                    entry.user_id,
                    entry.username,
                    float(entry.total_points),
                    int(entry.raids_participated),
                    int(entry.successful_engagements),
                    entry.rank,
                    _json_dumps(list(entry.badges)),
                    _to_iso(entry.last_activity),
                ),
            )
            await db.commit()

    async def get_leaderboard(self, limit: int, offset: int = 0) -> List[LeaderboardEntry]:
        async with _sqlite_memory_connection(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                """
                SELECT user_id, username, total_points, raids_participated, successful_engagements,
                       rank, badges, last_activity
                FROM leaderboards
                ORDER BY total_points DESC, user_id ASC
                LIMIT ? OFFSET ?
                """,
                (max(1, int(limit)), max(0, int(offset))),
            ) as cursor:
                rows = await cursor.fetchall()
        return [leaderboard_from_row(row) for row in rows]

    async def insert_memory_fragment(
        self,
        user_id: str,
        content: str,
        *,
        category: str | None,
        weight: float,
        timestamp: datetime,
    ) -> None:
        async with _sqlite_memory_connection(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO memory_fragments (user_id, content, category, weight, timestamp)
                VALUES (?, ?, ?, ?, ?)
                """,
                (user_id, content, category, float(weight), _to_iso(timestamp)),
            )
            await db.commit()

    async def get_memory_fragments(self, user_id: str, limit: int) -> List[Dict[str, object]]:
        async with _sqlite_memory_connection(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                """
                SELECT fragment_id, user_id, content, category, weight, timestamp
                FROM memory_fragments
                WHERE user_id = ?
                ORDER BY timestamp DESC, fragment_id DESC
                LIMIT ?
                """,
                (user_id, max(1, int(limit))),
            ) as cursor:
                rows = await cursor.fetchall()
        return [
            {
                "fragment_id": int(row["fragment_id"]),
                "user_id": str(row["user_id"]),
                "content": str(row["content"]),
                "category": row["category"],
                "weight": float(row["weight"]),
                "timestamp": str(row["timestamp"]),
            }
            for row in rows
        ]
