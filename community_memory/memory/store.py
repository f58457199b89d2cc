from __future__ import annotations

import aiosqlite

from .storage.identity import MemoryIdentityMixin
from .storage.interactions import MemoryInteractionsMixin
from .storage.schema import MemorySchemaMixin
from .storage.standings import MemoryStandingsMixin


class SqliteCommunityStore(
    MemorySchemaMixin,
    MemoryIdentityMixin,
    MemoryInteractionsMixin,
    MemoryStandingsMixin,
):
    """Persistent community store: interactions, archive, identities, personalities and standings."""

    backend_name = "sqlite"
    enabled = True

    async def ping(self) -> None:
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("SELECT 1")

    async def close(self) -> None:
        # Connections are opened per call.
        return None
