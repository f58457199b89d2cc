from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable

from ..engine.types import (
    CommunityInteraction,
    LeaderboardEntry,
    PersonalityProfile,
    PlatformAccount,
    UserIdentity,
)


class NullStore:
    """Store used when no persistent backend is configured.

    Reads return empty results and writes are accepted and dropped, so callers
    run unchanged without credentials.
    """

    backend_name = "none"
    enabled = False

    async def init(self) -> None:
        return None

    async def close(self) -> None:
        return None

    async def ping(self) -> None:
        return None

    async def insert_interaction(self, interaction: CommunityInteraction, *, quality: float) -> None:
        return None

    async def get_user_interactions(self, user_id: str, limit: int) -> list[CommunityInteraction]:
        return []

    async def get_interactions_since(self, since: datetime, limit: int | None = None) -> list[CommunityInteraction]:
        return []

    async def find_consolidation_candidates(self, cutoff: datetime, max_weight: float) -> list[str]:
        return []

    async def archive_interactions(self, ids: Iterable[str], *, reason: str, archived_at: datetime) -> int:
        return 0

    async def list_active_user_ids(self, since: datetime) -> list[str]:
        return []

    async def existing_interaction_ids(self, ids: Iterable[str]) -> set[str]:
        return set()

    async def count_interactions_by_type(self, since: datetime | None) -> dict[str, int]:
        return {}

    async def find_platform_account(self, platform: str, platform_id: str) -> PlatformAccount | None:
        return None

    async def get_user_identity(self, uuid: str) -> UserIdentity | None:
        return None

    async def insert_user_identity(self, identity: UserIdentity) -> None:
        return None

    async def touch_user_identity(self, uuid: str, at: datetime) -> None:
        return None

    async def insert_platform_account(self, account: PlatformAccount) -> None:
        return None

    async def insert_identity_with_account(self, identity: UserIdentity, account: PlatformAccount) -> None:
        return None

    async def list_platform_accounts(self, user_uuid: str) -> list[PlatformAccount]:
        return []

    async def upsert_personality_snapshot(self, profile: PersonalityProfile) -> None:
        return None

    async def apply_standing_delta(self, user_id: str, weight_delta: float, at: datetime, *, username: str = "") -> None:
        return None

    async def upsert_leaderboard_entry(self, entry: LeaderboardEntry) -> None:
        return None

    async def get_leaderboard(self, limit: int, offset: int = 0) -> list[LeaderboardEntry]:
        return []

    async def insert_memory_fragment(
        self,
        user_id: str,
        content: str,
        *,
        category: str | None,
        weight: float,
        timestamp: datetime,
    ) -> None:
        return None

    async def get_memory_fragments(self, user_id: str, limit: int) -> list[dict[str, Any]]:
        return []
