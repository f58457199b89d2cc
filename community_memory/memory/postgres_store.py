from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Set

try:
    import asyncpg
except Exception:  # pragma: no cover - optional dependency at runtime
    asyncpg = None  # type: ignore[assignment]

from ..engine.types import (
    CommunityInteraction,
    LeaderboardEntry,
    PersonalityProfile,
    PlatformAccount,
    UserIdentity,
)
from .protocol import PlatformAccountConflict
from .storage.utils import (
    _clamp,
    _json_dumps,
    account_from_row,
    identity_from_row,
    interaction_from_row,
    leaderboard_from_row,
)


logger = logging.getLogger("community_memory")

_INTERACTION_COLUMNS = """
    id, user_id, original_user_id, username, interaction_type, content, context::text AS context,
    platform, weight, quality_score, sentiment_score, raid_id, room_id, timestamp
"""


class PostgresCommunityStore:
    """Postgres-backed community store implementing the same API as SqliteCommunityStore."""

    SCHEMA_VERSION = 2
    backend_name = "postgres"
    enabled = True

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn.strip()
        if not self.dsn:
            raise ValueError("MEMORY_POSTGRES_DSN cannot be empty")
        self._pool: "asyncpg.Pool | None" = None
        self._init_lock = asyncio.Lock()
        self._initialized = False

    async def _ensure_pool(self) -> "asyncpg.Pool":
        if asyncpg is None:
            raise RuntimeError(
                "Postgres memory backend requires asyncpg. Install with: pip install asyncpg"
            )
        if self._pool is None:
            self._pool = await asyncpg.create_pool(
                dsn=self.dsn,
                min_size=1,
                max_size=6,
                command_timeout=30.0,
            )
        return self._pool

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None
        self._initialized = False

    async def ping(self) -> None:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            await conn.execute("SELECT 1")

    async def init(self) -> None:
        async with self._init_lock:
            if self._initialized:
                return
            pool = await self._ensure_pool()
            async with pool.acquire() as conn:
                async with conn.transaction():
                    version = await self._get_schema_version(conn)
                    if version > self.SCHEMA_VERSION:
                        raise RuntimeError(
                            f"Postgres community schema version {version} is newer than supported {self.SCHEMA_VERSION}. "
                            "Upgrade before starting."
                        )
                    await self._create_schema(conn)
                    await self._migrate_schema(conn, version)
                    if version != self.SCHEMA_VERSION:
                        await self._set_schema_version(conn, self.SCHEMA_VERSION)
            self._initialized = True

    async def _get_schema_version(self, conn: "asyncpg.Connection") -> int:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS community_schema_meta (
                id SMALLINT PRIMARY KEY DEFAULT 1,
                version INTEGER NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
            )
            """
        )
        value = await conn.fetchval("SELECT version FROM community_schema_meta WHERE id = 1")
        return int(value or 0)

    async def _set_schema_version(self, conn: "asyncpg.Connection", version: int) -> None:
        await conn.execute(
            """
            INSERT INTO community_schema_meta (id, version, updated_at)
            VALUES (1, $1, NOW())
            ON CONFLICT (id) DO UPDATE SET version = EXCLUDED.version, updated_at = NOW()
            """,
            int(version),
        )

    async def _migrate_schema(self, conn: "asyncpg.Connection", from_version: int) -> None:
        # v2: archive payload copy + stored quality score (additive, idempotent).
        await conn.execute(
            """
            ALTER TABLE archived_interactions
            ADD COLUMN IF NOT EXISTS payload JSONB NOT NULL DEFAULT '{}'::jsonb;

            ALTER TABLE community_interactions
            ADD COLUMN IF NOT EXISTS quality_score DOUBLE PRECISION NOT NULL DEFAULT 0.5;
            """
        )

    async def _create_schema(self, conn: "asyncpg.Connection") -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS user_identities (
                uuid TEXT PRIMARY KEY,
                created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                last_active_at TIMESTAMPTZ,
                metadata JSONB NOT NULL DEFAULT '{}'::jsonb
            );

            CREATE TABLE IF NOT EXISTS platform_accounts (
                id TEXT PRIMARY KEY,
                user_uuid TEXT NOT NULL REFERENCES user_identities(uuid) ON DELETE CASCADE,
                platform TEXT NOT NULL,
                platform_id TEXT NOT NULL,
                platform_username TEXT,
                verified_at TIMESTAMPTZ,
                metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
                created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                CONSTRAINT platform_accounts_platform_pair_key UNIQUE (platform, platform_id)
            );

            CREATE TABLE IF NOT EXISTS community_interactions (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                original_user_id TEXT NOT NULL DEFAULT '',
                username TEXT NOT NULL DEFAULT '',
                interaction_type TEXT NOT NULL,
                content TEXT NOT NULL DEFAULT '',
                context JSONB NOT NULL DEFAULT '{}'::jsonb,
                platform TEXT NOT NULL DEFAULT 'unknown',
                weight DOUBLE PRECISION NOT NULL,
                quality_score DOUBLE PRECISION NOT NULL DEFAULT 0.5,
                sentiment_score DOUBLE PRECISION NOT NULL DEFAULT 0,
                raid_id TEXT,
                room_id TEXT,
                timestamp TIMESTAMPTZ NOT NULL
            );

            CREATE TABLE IF NOT EXISTS archived_interactions (
                archive_id BIGSERIAL PRIMARY KEY,
                original_id TEXT NOT NULL,
                user_id TEXT NOT NULL,
                interaction_type TEXT NOT NULL,
                weight DOUBLE PRECISION NOT NULL,
                payload JSONB NOT NULL DEFAULT '{}'::jsonb,
                archived_at TIMESTAMPTZ NOT NULL,
                reason TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS user_personalities (
                user_id TEXT PRIMARY KEY,
                engagement_style TEXT NOT NULL,
                communication_tone TEXT NOT NULL,
                activity_level TEXT NOT NULL,
                community_contribution TEXT NOT NULL,
                reliability_score DOUBLE PRECISION NOT NULL,
                leadership_potential DOUBLE PRECISION NOT NULL,
                traits JSONB NOT NULL DEFAULT '[]'::jsonb,
                interaction_patterns JSONB NOT NULL DEFAULT '{}'::jsonb,
                last_updated TIMESTAMPTZ NOT NULL
            );

            CREATE TABLE IF NOT EXISTS leaderboards (
                user_id TEXT PRIMARY KEY,
                username TEXT NOT NULL DEFAULT '',
                total_points DOUBLE PRECISION NOT NULL DEFAULT 0,
                raids_participated INTEGER NOT NULL DEFAULT 0,
                successful_engagements INTEGER NOT NULL DEFAULT 0,
                rank INTEGER,
                badges JSONB NOT NULL DEFAULT '[]'::jsonb,
                last_activity TIMESTAMPTZ
            );

            CREATE TABLE IF NOT EXISTS memory_fragments (
                fragment_id BIGSERIAL PRIMARY KEY,
                user_id TEXT NOT NULL,
                content TEXT NOT NULL,
                category TEXT,
                weight DOUBLE PRECISION NOT NULL DEFAULT 0,
                timestamp TIMESTAMPTZ NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_platform_accounts_user_uuid
            ON platform_accounts(user_uuid, verified_at DESC);

            CREATE INDEX IF NOT EXISTS idx_interactions_user_time
            ON community_interactions(user_id, timestamp DESC);

            CREATE INDEX IF NOT EXISTS idx_interactions_time_weight
            ON community_interactions(timestamp, weight);

            CREATE INDEX IF NOT EXISTS idx_archived_original
            ON archived_interactions(original_id);

            CREATE INDEX IF NOT EXISTS idx_leaderboards_points
            ON leaderboards(total_points DESC);

            CREATE INDEX IF NOT EXISTS idx_memory_fragments_user_time
            ON memory_fragments(user_id, timestamp DESC);
            """
        )

    # community_interactions / archived_interactions

    async def insert_interaction(self, interaction: CommunityInteraction, *, quality: float) -> None:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO community_interactions (
                    id, user_id, original_user_id, username, interaction_type, content, context,
                    platform, weight, quality_score, sentiment_score, raid_id, room_id, timestamp
                )
                VALUES ($1, $2, $3, $4, $5, $6, $7::jsonb, $8, $9, $10, $11, $12, $13, $14)
                ON CONFLICT (id) DO NOTHING
                """,
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
                interaction.timestamp,
            )

    async def get_user_interactions(self, user_id: str, limit: int) -> List[CommunityInteraction]:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                f"""
                SELECT {_INTERACTION_COLUMNS}
                FROM community_interactions
                WHERE user_id = $1
                ORDER BY timestamp DESC
                LIMIT $2
                """,
                user_id,
                max(1, int(limit)),
            )
        return [interaction_from_row(row) for row in rows]

    async def get_interactions_since(self, since: datetime, limit: int | None = None) -> List[CommunityInteraction]:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                f"""
                SELECT {_INTERACTION_COLUMNS}
                FROM community_interactions
                WHERE timestamp >= $1
                ORDER BY timestamp DESC
                LIMIT $2
                """,
                since,
                max(1, int(limit)) if limit is not None else None,
            )
        return [interaction_from_row(row) for row in rows]

    async def find_consolidation_candidates(self, cutoff: datetime, max_weight: float) -> List[str]:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT id
                FROM community_interactions
                WHERE timestamp < $1 AND weight < $2
                ORDER BY timestamp ASC
                """,
                cutoff,
                float(max_weight),
            )
        return [str(row["id"]) for row in rows]

    async def archive_interactions(self, ids: Iterable[str], *, reason: str, archived_at: datetime) -> int:
        wanted = list(dict.fromkeys(str(i) for i in ids))
        if not wanted:
            return 0
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute(
                    """
                    INSERT INTO archived_interactions (
                        original_id, user_id, interaction_type, weight, payload, archived_at, reason
                    )
                    SELECT
                        id, user_id, interaction_type, weight,
                        jsonb_build_object(
                            'content', content,
                            'platform', platform,
                            'sentiment_score', sentiment_score,
                            'timestamp', timestamp,
                            'raid_id', raid_id
                        ),
                        $2, $3
                    FROM community_interactions
                    WHERE id = ANY($1::text[])
                    """,
                    wanted,
                    archived_at,
                    reason,
                )
                status = await conn.execute(
                    """
                    DELETE FROM community_interactions
                    WHERE id = ANY($1::text[])
                      AND id IN (SELECT original_id FROM archived_interactions WHERE archived_at = $2)
                    """,
                    wanted,
                    archived_at,
                )
        try:
            return int(str(status).rsplit(" ", 1)[-1])
        except ValueError:
            return 0

    async def list_active_user_ids(self, since: datetime) -> List[str]:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT user_id, MAX(timestamp) AS last_seen
                FROM community_interactions
                WHERE timestamp >= $1
                GROUP BY user_id
                ORDER BY last_seen DESC
                """,
                since,
            )
        return [str(row["user_id"]) for row in rows]

    async def existing_interaction_ids(self, ids: Iterable[str]) -> Set[str]:
        wanted = list(dict.fromkeys(str(i) for i in ids))
        if not wanted:
            return set()
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT id FROM community_interactions WHERE id = ANY($1::text[])",
                wanted,
            )
        return {str(row["id"]) for row in rows}

    async def count_interactions_by_type(self, since: datetime | None) -> Dict[str, int]:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT interaction_type, COUNT(*) AS total
                FROM community_interactions
                WHERE $1::timestamptz IS NULL OR timestamp >= $1
                GROUP BY interaction_type
                """,
                since,
            )
        return {str(row["interaction_type"]): int(row["total"]) for row in rows}

    # user_identities / platform_accounts

    async def find_platform_account(self, platform: str, platform_id: str) -> Optional[PlatformAccount]:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT id, user_uuid, platform, platform_id, platform_username, verified_at, metadata::text AS metadata
                FROM platform_accounts
                WHERE platform = $1 AND platform_id = $2
                """,
                platform,
                platform_id,
            )
        return account_from_row(row) if row is not None else None

    async def get_user_identity(self, uuid: str) -> Optional[UserIdentity]:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT uuid, created_at, last_active_at, metadata::text AS metadata
                FROM user_identities
                WHERE uuid = $1
                """,
                uuid,
            )
        return identity_from_row(row) if row is not None else None

    async def insert_user_identity(self, identity: UserIdentity) -> None:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO user_identities (uuid, created_at, last_active_at, metadata)
                VALUES ($1, $2, $3, $4::jsonb)
                ON CONFLICT (uuid) DO NOTHING
                """,
                identity.uuid,
                identity.created_at,
                identity.last_active_at,
                _json_dumps(identity.metadata.to_dict()),
            )

    async def touch_user_identity(self, uuid: str, at: datetime) -> None:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            await conn.execute("UPDATE user_identities SET last_active_at = $2 WHERE uuid = $1", uuid, at)

    async def insert_platform_account(self, account: PlatformAccount) -> None:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            try:
                await conn.execute(
                    """
                    INSERT INTO platform_accounts (
                        id, user_uuid, platform, platform_id, platform_username, verified_at, metadata
                    )
                    VALUES ($1, $2, $3, $4, $5, $6, $7::jsonb)
                    """,
                    account.id,
                    account.user_uuid,
                    account.platform,
                    account.platform_id,
                    account.platform_username,
                    account.verified_at,
                    _json_dumps(account.metadata),
                )
            except asyncpg.UniqueViolationError as exc:
                if getattr(exc, "constraint_name", "") == "platform_accounts_platform_pair_key":
                    raise PlatformAccountConflict(
                        f"{account.platform}:{account.platform_id} is already linked"
                    ) from exc
                raise

    async def insert_identity_with_account(self, identity: UserIdentity, account: PlatformAccount) -> None:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            try:
                async with conn.transaction():
                    await conn.execute(
                        """
                        INSERT INTO user_identities (uuid, created_at, last_active_at, metadata)
                        VALUES ($1, $2, $3, $4::jsonb)
                        ON CONFLICT (uuid) DO NOTHING
                        """,
                        identity.uuid,
                        identity.created_at,
                        identity.last_active_at,
                        _json_dumps(identity.metadata.to_dict()),
                    )
                    await conn.execute(
                        """
                        INSERT INTO platform_accounts (
                            id, user_uuid, platform, platform_id, platform_username, verified_at, metadata
                        )
                        VALUES ($1, $2, $3, $4, $5, $6, $7::jsonb)
                        """,
                        account.id,
                        account.user_uuid,
                        account.platform,
                        account.platform_id,
                        account.platform_username,
                        account.verified_at,
                        _json_dumps(account.metadata),
                    )
            except asyncpg.UniqueViolationError as exc:
                if getattr(exc, "constraint_name", "") == "platform_accounts_platform_pair_key":
                    raise PlatformAccountConflict(
                        f"{account.platform}:{account.platform_id} is already linked"
                    ) from exc
                raise

    async def list_platform_accounts(self, user_uuid: str) -> List[PlatformAccount]:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT id, user_uuid, platform, platform_id, platform_username, verified_at, metadata::text AS metadata
                FROM platform_accounts
                WHERE user_uuid = $1
                ORDER BY verified_at DESC NULLS LAST
                """,
                user_uuid,
            )
        return [account_from_row(row) for row in rows]

    # user_personalities / leaderboards / memory_fragments

    async def upsert_personality_snapshot(self, profile: PersonalityProfile) -> None:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO user_personalities (
                    user_id, engagement_style, communication_tone, activity_level, community_contribution,
                    reliability_score, leadership_potential, traits, interaction_patterns, last_updated
                )
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8::jsonb, $9::jsonb, $10)
                ON CONFLICT (user_id) DO UPDATE SET
                    engagement_style = EXCLUDED.engagement_style,
                    communication_tone = EXCLUDED.communication_tone,
                    activity_level = EXCLUDED.activity_level,
                    community_contribution = EXCLUDED.community_contribution,
                    reliability_score = EXCLUDED.reliability_score,
                    leadership_potential = EXCLUDED.leadership_potential,
                    traits = EXCLUDED.traits,
                    interaction_patterns = EXCLUDED.interaction_patterns,
                    last_updated = EXCLUDED.last_updated
                """,
                profile.user_id,
                profile.engagement_style,
                profile.communication_tone,
                profile.activity_level,
                profile.community_contribution,
                float(profile.reliability_score),
                float(profile.leadership_potential),
                _json_dumps(list(profile.traits)),
                _json_dumps(dict(profile.interaction_patterns)),
                profile.last_updated,
            )

    async def apply_standing_delta(self, user_id: str, weight_delta: float, at: datetime, *, username: str = "") -> None:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO leaderboards (user_id, username, total_points, last_activity)
                VALUES ($1, $2, $3, $4)
                ON CONFLICT (user_id) DO UPDATE SET
                    username = CASE WHEN EXCLUDED.username <> '' THEN EXCLUDED.username ELSE leaderboards.username END,
                    total_points = leaderboards.total_points + EXCLUDED.total_points,
                    last_activity = EXCLUDED.last_activity
                """,
                user_id,
                username or "",
                float(weight_delta),
                at,
            )

    async def upsert_leaderboard_entry(self, entry: LeaderboardEntry) -> None:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO leaderboards (
                    user_id, username, total_points, raids_participated, successful_engagements,
                    rank, badges, last_activity
                )
                VALUES ($1, $2, $3, $4, $5, $6, $7::jsonb, $8)
                ON CONFLICT (user_id) DO UPDATE SET
                    username = EXCLUDED.username,
                    total_points = EXCLUDED.total_points,
                    raids_participated = EXCLUDED.raids_participated,
                    successful_engagements = EXCLUDED.successful_engagements,
                    rank = EXCLUDED.rank,
                    badges = EXCLUDED.badges,
                    last_activity = EXCLUDED.last_activity
                """,
                entry.user_id,
                entry.username,
                float(entry.total_points),
                int(entry.raids_participated),
                int(entry.successful_engagements),
                entry.rank,
                _json_dumps(list(entry.badges)),
                entry.last_activity,
            )

    async def get_leaderboard(self, limit: int, offset: int = 0) -> List[LeaderboardEntry]:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT user_id, username, total_points, raids_participated, successful_engagements,
                       rank, badges::text AS badges, last_activity
                FROM leaderboards
                ORDER BY total_points DESC, user_id ASC
                LIMIT $1 OFFSET $2
                """,
                max(1, int(limit)),
                max(0, int(offset)),
            )
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
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO memory_fragments (user_id, content, category, weight, timestamp)
                VALUES ($1, $2, $3, $4, $5)
                """,
                user_id,
                content,
                category,
                float(weight),
                timestamp,
            )

    async def get_memory_fragments(self, user_id: str, limit: int) -> List[Dict[str, Any]]:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT fragment_id, user_id, content, category, weight, timestamp
                FROM memory_fragments
                WHERE user_id = $1
                ORDER BY timestamp DESC, fragment_id DESC
                LIMIT $2
                """,
                user_id,
                max(1, int(limit)),
            )
        return [
            {
                "fragment_id": int(row["fragment_id"]),
                "user_id": str(row["user_id"]),
                "content": str(row["content"]),
                "category": row["category"],
                "weight": float(row["weight"]),
                "timestamp": row["timestamp"].isoformat() if row["timestamp"] is not None else "",
            }
            for row in rows
        ]
