from __future__ import annotations

import sqlite3
from datetime import datetime
from typing import List, Optional

import aiosqlite

from ...engine.types import PlatformAccount, UserIdentity
from ..protocol import PlatformAccountConflict
from .utils import _json_dumps, _sqlite_memory_connection, _to_iso, account_from_row, identity_from_row


_INSERT_IDENTITY_SQL = """
    INSERT INTO user_identities (uuid, created_at, last_active_at, metadata)
    VALUES (?, ?, ?, ?)
    ON CONFLICT(uuid) DO NOTHING
"""

_INSERT_ACCOUNT_SQL = """
    INSERT INTO platform_accounts (
        id, user_uuid, platform, platform_id, platform_username, verified_at, metadata
    )
    VALUES (?, ?, ?, ?, ?, ?, ?)
"""


def _identity_params(identity: UserIdentity) -> tuple[object, ...]:
    return (
        identity.uuid,
        _to_iso(identity.created_at),
        _to_iso(identity.last_active_at),
        _json_dumps(identity.metadata.to_dict()),
    )


def _account_params(account: PlatformAccount) -> tuple[object, ...]:
    return (
        account.id,
        account.user_uuid,
        account.platform,
        account.platform_id,
        account.platform_username,
        _to_iso(account.verified_at),
        _json_dumps(account.metadata),
    )


class MemoryIdentityMixin:
    async def find_platform_account(self, platform: str, platform_id: str) -> Optional[PlatformAccount]:
        async with _sqlite_memory_connection(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                """
                SELECT id, user_uuid, platform, platform_id, platform_username, verified_at, metadata
                FROM platform_accounts
                WHERE platform = ? AND platform_id = ?
                """,
                (platform, platform_id),
            ) as cursor:
                row = await cursor.fetchone()
        if row is None:
            return None
        return account_from_row(row)

    async def get_user_identity(self, uuid: str) -> Optional[UserIdentity]:
        async with _sqlite_memory_connection(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                """
                SELECT uuid, created_at, last_active_at, metadata
                FROM user_identities
                WHERE uuid = ?
                """,
                (uuid,),
            ) as cursor:
                row = await cursor.fetchone()
        if row is None:
            return None
        return identity_from_row(row)

    async def insert_user_identity(self, identity: UserIdentity) -> None:
        async with _sqlite_memory_connection(self.db_path) as db:
            await db.execute(_INSERT_IDENTITY_SQL, _identity_params(identity))
            await db.commit()

    async def touch_user_identity(self, uuid: str, at: datetime) -> None:
        async with _sqlite_memory_connection(self.db_path) as db:
            await db.execute(
                "UPDATE user_identities SET last_active_at = ? WHERE uuid = ?",
                (_to_iso(at), uuid),
            )
            await db.commit()

    async def insert_platform_account(self, account: PlatformAccount) -> None:
        async with _sqlite_memory_connection(self.db_path) as db:
            try:
                await db.execute(_INSERT_ACCOUNT_SQL, _account_params(account))
            except sqlite3.IntegrityError as exc:
                if "UNIQUE" in str(exc).upper() and "platform_id" in str(exc):
                    raise PlatformAccountConflict(
                        f"{account.platform}:{account.platform_id} is already linked"
                    ) from exc
                raise
            await db.commit()

    async def insert_identity_with_account(self, identity: UserIdentity, account: PlatformAccount) -> None:
        """Insert a new identity and its first account atomically; a pair conflict leaves neither row."""
        async with _sqlite_memory_connection(self.db_path) as db:
            try:
                await db.execute(_INSERT_IDENTITY_SQL, _identity_params(identity))
                await db.execute(_INSERT_ACCOUNT_SQL, _account_params(account))
            except sqlite3.IntegrityError as exc:
                await db.rollback()
                if "UNIQUE" in str(exc).upper() and "platform_id" in str(exc):
                    raise PlatformAccountConflict(
                        f"{account.platform}:{account.platform_id} is already linked"
                    ) from exc
                raise
            await db.commit()

    async def list_platform_accounts(self, user_uuid: str) -> List[PlatformAccount]:
        async with _sqlite_memory_connection(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                """
                SELECT id, user_uuid, platform, platform_id, platform_username, verified_at, metadata
                FROM platform_accounts
                WHERE user_uuid = ?
                ORDER BY verified_at DESC
                """,
                (user_uuid,),
            ) as cursor:
                rows = await cursor.fetchall()
        return [account_from_row(row) for row in rows]
