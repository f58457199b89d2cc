from __future__ import annotations

import os
from pathlib import Path

import aiosqlite

from .utils import _sqlite_memory_connection


class MemorySchemaMixin:
    SCHEMA_VERSION = 2

    def __init__(self, db_path: Path) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    @staticmethod
    def _allow_destructive_reset_on_mismatch() -> bool:
        raw = os.getenv("MEMORY_SQLITE_RESET_ON_SCHEMA_MISMATCH", "")
        return raw.strip().lower() in {"1", "true", "yes", "y", "on"}

    async def _has_user_tables(self, db: aiosqlite.Connection) -> bool:
        async with db.execute(
            """
            SELECT 1
            FROM sqlite_master
            WHERE type = 'table'
              AND name NOT LIKE 'sqlite_%'
            LIMIT 1
            """
        ) as cursor:
            row = await cursor.fetchone()
        return bool(row)

    async def init(self) -> None:
        async with _sqlite_memory_connection(self.db_path) as db:
            await db.execute("PRAGMA journal_mode=WAL")
            async with db.execute("PRAGMA user_version") as cursor:
                row = await cursor.fetchone()
            version = int(row[0]) if row else 0
            has_tables = await self._has_user_tables(db)

            if version > self.SCHEMA_VERSION:
                if has_tables and self._allow_destructive_reset_on_mismatch():
                    await self._reset_schema(db)
                    await db.execute(f"PRAGMA user_version = {self.SCHEMA_VERSION}")
                    await db.commit()
                    return
                raise RuntimeError(
                    "SQLite schema version mismatch detected (database is newer than this build). "
                    f"Found user_version={version}, supported={self.SCHEMA_VERSION}. "
                    "Set MEMORY_SQLITE_RESET_ON_SCHEMA_MISMATCH=1 to allow destructive reset."
                )

            await self._create_schema(db)
            if has_tables:
                await self._migrate_schema(db, version)
            if version != self.SCHEMA_VERSION:
                await db.execute(f"PRAGMA user_version = {self.SCHEMA_VERSION}")
            await db.commit()

    async def _reset_schema(self, db: aiosqlite.Connection) -> None:
        tables = (
            "memory_fragments",
            "leaderboards",
            "user_personalities",
            "archived_interactions",
            "community_interactions",
            "platform_accounts",
            "user_identities",
        )
        for table in tables:
            await db.execute(f"DROP TABLE IF EXISTS {table}")
        await self._create_schema(db)

    async def _table_columns(self, db: aiosqlite.Connection, table_name: str) -> set[str]:
        cols: set[str] = set()
        async with db.execute(f"PRAGMA table_info({table_name})") as cursor:
            rows = await cursor.fetchall()
        for row in rows:
            cols.add(str(row[1]))
        return cols

    async def _add_column_if_missing(self, db: aiosqlite.Connection, table_name: str, column_sql: str) -> None:
        column_name = str(column_sql.split()[0]).strip()
        if not column_name:
            return
        cols = await self._table_columns(db, table_name)
        if column_name in cols:
            return
        await db.execute(f"ALTER TABLE {table_name} ADD COLUMN {column_sql}")

    async def _migrate_schema(self, db: aiosqlite.Connection, from_version: int) -> None:
        # v2: archive rows keep a payload copy and quality score is stored alongside weight.
        if from_version < 2:
            await self._migrate_v2_archive_payload(db)
        # Re-run idempotent migration to self-heal partial deployments.
        await self._migrate_v2_archive_payload(db)

    async def _migrate_v2_archive_payload(self, db: aiosqlite.Connection) -> None:
        await self._add_column_if_missing(db, "archived_interactions", "payload TEXT NOT NULL DEFAULT '{}'")
        await self._add_column_if_missing(db, "community_interactions", "quality_score REAL NOT NULL DEFAULT 0.5")

    async def _create_schema(self, db: aiosqlite.Connection) -> None:
        await db.executescript(
            """
            CREATE TABLE IF NOT EXISTS user_identities (
                uuid TEXT PRIMARY KEY,
                created_at TEXT NOT NULL,
                last_active_at TEXT,
                metadata TEXT NOT NULL DEFAULT '{}'
            );

            CREATE TABLE IF NOT EXISTS platform_accounts (
                id TEXT PRIMARY KEY,
                user_uuid TEXT NOT NULL,
                platform TEXT NOT NULL,
                platform_id TEXT NOT NULL,
                platform_username TEXT,
                verified_at TEXT,
                metadata TEXT NOT NULL DEFAULT '{}',
                created_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP,
                UNIQUE(platform, platform_id),
                FOREIGN KEY (user_uuid) REFERENCES user_identities(uuid) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS community_interactions (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                original_user_id TEXT NOT NULL DEFAULT '',
                username TEXT NOT NULL DEFAULT '',
                interaction_type TEXT NOT NULL,
                content TEXT NOT NULL DEFAULT '',
                context TEXT NOT NULL DEFAULT '{}',
                platform TEXT NOT NULL DEFAULT 'unknown',
                weight REAL NOT NULL,
                quality_score REAL NOT NULL DEFAULT 0.5,
                sentiment_score REAL NOT NULL DEFAULT 0,
                raid_id TEXT,
                room_id TEXT,
                timestamp TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS archived_interactions (
                archive_id INTEGER PRIMARY KEY AUTOINCREMENT,
                original_id TEXT NOT NULL,
                user_id TEXT NOT NULL,
                interaction_type TEXT NOT NULL,
                weight REAL NOT NULL,
                payload TEXT NOT NULL DEFAULT '{}',
                archived_at TEXT NOT NULL,
                reason TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS user_personalities (
                user_id TEXT PRIMARY KEY,
                engagement_style TEXT NOT NULL,
                communication_tone TEXT NOT NULL,
                activity_level TEXT NOT NULL,
                community_contribution TEXT NOT NULL,
                reliability_score REAL NOT NULL,
                leadership_potential REAL NOT NULL,
                traits TEXT NOT NULL DEFAULT '[]',
                interaction_patterns TEXT NOT NULL DEFAULT '{}',
                last_updated TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS leaderboards (
                user_id TEXT PRIMARY KEY,
                username TEXT NOT NULL DEFAULT '',
                total_points REAL NOT NULL DEFAULT 0,
                raids_participated INTEGER NOT NULL DEFAULT 0,
                successful_engagements INTEGER NOT NULL DEFAULT 0,
                rank INTEGER,
                badges TEXT NOT NULL DEFAULT '[]',
                last_activity TEXT
            );

            CREATE TABLE IF NOT EXISTS memory_fragments (
                fragment_id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                content TEXT NOT NULL,
                category TEXT,
                weight REAL NOT NULL DEFAULT 0,
                timestamp TEXT NOT NULL
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
