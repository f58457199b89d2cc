from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable, Protocol

from ..engine.types import (
    CommunityInteraction,
    LeaderboardEntry,
    PersonalityProfile,
    PlatformAccount,
    UserIdentity,
)


class StoreError(RuntimeError):
    """Raised by store backends for failures callers may want to tell apart."""


class PlatformAccountConflict(StoreError):
    """The (platform, platform_id) pair is already bound to an identity."""


class CommunityStore(Protocol):
    """Persistent relational store shared by the SQLite, Postgres and null backends."""

    backend_name: str
    enabled: bool

    async def init(self) -> None: ...

    async def close(self) -> None: ...

    async def ping(self) -> None: ...

    # community_interactions / archived_interactions
    async def insert_interaction(self, interaction: CommunityInteraction, *, quality: float) -> None: ...

    async def get_user_interactions(self, user_id: str, limit: int) -> list[CommunityInteraction]: ...

    async def get_interactions_since(self, since: datetime, limit: int | None = None) -> list[CommunityInteraction]: ...

    async def find_consolidation_candidates(self, cutoff: datetime, max_weight: float) -> list[str]: ...

    async def archive_interactions(self, ids: Iterable[str], *, reason: str, archived_at: datetime) -> int: ...

    async def list_active_user_ids(self, since: datetime) -> list[str]: ...

    async def existing_interaction_ids(self, ids: Iterable[str]) -> set[str]: ...

    async def count_interactions_by_type(self, since: datetime | None) -> dict[str, int]: ...

    # user_identities / platform_accounts
    async def find_platform_account(self, platform: str, platform_id: str) -> PlatformAccount | None: ...

    async def get_user_identity(self, uuid: str) -> UserIdentity | None: ...

    async def insert_user_identity(self, identity: UserIdentity) -> None: ...

    async def touch_user_identity(self, uuid: str, at: datetime) -> None: ...

    async def insert_platform_account(self, account: PlatformAccount) -> None: ...

    async def insert_identity_with_account(self, identity: UserIdentity, account: PlatformAccount) -> None: ...

    async def list_platform_accounts(self, user_uuid: str) -> list[PlatformAccount]: ...

    # user_personalities / leaderboards / memory_fragments
    async def upsert_personality_snapshot(self, profile: PersonalityProfile) -> None: ...

    async def apply_standing_delta(self, user_id: str, weight_delta: float, at: datetime, *, username: str = "") -> None: ...

    async def upsert_leaderboard_entry(self, entry: LeaderboardEntry) -> None: ...

    async def get_leaderboard(self, limit: int, offset: int = 0) -> list[LeaderboardEntry]: ...

    async def insert_memory_fragment(
        self,
        user_id: str,
        content: str,
        *,
        category: str | None,
        weight: float,
        timestamp: datetime,
    ) -> None: ...

    async def get_memory_fragments(self, user_id: str, limit: int) -> list[dict[str, Any]]: ...
