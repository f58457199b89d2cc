from __future__ import annotations

import logging
import random
import time
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any, Callable, Mapping

from .config import Settings
from .engine.cache import BoundedCache
from .engine.correlator import KnowledgeMemoryCorrelator, document_view, memory_view
from .engine.identity import IdentityResolver
from .engine.personality import PersonalityAnalyzer
from .engine.scheduler import JobScheduler, MaintenanceJobs
from .engine.types import (
    CommunityInteraction,
    InsightBundle,
    LeaderboardEntry,
    MemoryFragment,
    PersonalityProfile,
    PlatformAccount,
    UserIdentity,
    coerce_datetime,
    new_uuid,
    normalize_interaction,
    utcnow,
)
from .engine.weights import community_impact, interaction_weight, quality_score
from .knowledge import KnowledgeSearch
from .memory.null_store import NullStore
from .memory.protocol import CommunityStore
from .runtime import INTERACTIONS_TABLE, STANDING_TABLE, HostRuntime, memory_from_interaction


logger = logging.getLogger("community_memory")

WARM_CACHE_WINDOW = timedelta(days=7)
MAX_QUERY_MEMORIES = 3
MAX_QUERY_DOCUMENTS = 3


class CommunityMemoryService:
    """Records community interactions and serves reputation, identity and insight queries.

    Owns the caches, identity resolver, personality analyzer, correlator and the
    maintenance scheduler. The store, host runtime and knowledge search are injected.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        store: CommunityStore,
        runtime: HostRuntime,
        knowledge: KnowledgeSearch | None = None,
        scheduler: JobScheduler | None = None,
        rng: random.Random | None = None,
        clock: Callable[[], datetime] = utcnow,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.settings = settings
        self.store = store
        self.runtime = runtime
        self.knowledge = knowledge
        self._clock = clock

        max_size = settings.cache_max_size
        self.identity_cache: BoundedCache[UserIdentity] = BoundedCache(
            "identity",
            max_size=max_size,
            ttl_seconds=settings.identity_cache_ttl_seconds,
            clock=monotonic,
        )
        self.accounts_cache: BoundedCache[list[PlatformAccount]] = BoundedCache(
            "platform_accounts",
            max_size=max_size,
            ttl_seconds=settings.identity_cache_ttl_seconds,
            clock=monotonic,
        )
        self.memory_cache: BoundedCache[list[MemoryFragment]] = BoundedCache(
            "memories",
            max_size=max_size,
            clock=monotonic,
        )
        self.personality_cache: BoundedCache[PersonalityProfile] = BoundedCache(
            "personality",
            max_size=max_size,
            ttl_seconds=settings.personality_cache_ttl_seconds,
            clock=monotonic,
        )

        self.identity = IdentityResolver(store, self.identity_cache, self.accounts_cache, clock=clock)
        self.personality = PersonalityAnalyzer(
            store,
            self.personality_cache,
            clock=clock,
            history_limit=settings.personality_history_limit,
        )
        self.correlator = KnowledgeMemoryCorrelator(rng)
        self.scheduler = scheduler or JobScheduler(clock=monotonic)
        self.jobs = MaintenanceJobs(
            store=store,
            runtime=runtime,
            memory_cache=self.memory_cache,
            personality=self.personality,
            caches=(self.identity_cache, self.accounts_cache, self.personality_cache),
            consolidation_max_age_days=settings.consolidation_max_age_days,
            consolidation_max_weight=settings.consolidation_max_weight,
            refresh_batch=settings.personality_refresh_batch,
            refresh_delay_seconds=settings.personality_refresh_delay_seconds,
            memory_list_limit=max_size,
            clock=clock,
        )
        self._jobs_registered = False
        self._started = False

    def _use_store(self, store: CommunityStore) -> None:
        self.store = store
        self.identity.store = store
        self.personality.store = store
        self.jobs.store = store

    # lifecycle

    async def start(self) -> None:
        if self._started:
            return
        try:
            await self.store.init()
        except Exception:
            logger.exception(
                "Failed to initialize %s store; continuing with no-op store",
                self.store.backend_name,
            )
            self._use_store(NullStore())

        await self.load_recent_memories()

        if not self._jobs_registered:
            self.jobs.register(
                self.scheduler,
                consolidation_interval=self.settings.consolidation_interval_seconds,
                personality_refresh_interval=self.settings.personality_refresh_interval_seconds,
                sync_interval=self.settings.memory_sync_interval_seconds,
                cache_cleanup_interval=self.settings.cache_cleanup_interval_seconds,
            )
            self._jobs_registered = True
        if self.settings.scheduler_enabled:
            self.scheduler.start()

        self._started = True
        logger.info(
            "Community memory service started (store=%s, scheduler=%s)",
            self.store.backend_name,
            "on" if self.settings.scheduler_enabled else "off",
        )

    async def stop(self) -> None:
        await self.scheduler.stop()
        for cache in (self.identity_cache, self.accounts_cache, self.memory_cache, self.personality_cache):
            cache.clear()
        try:
            await self.store.close()
        except Exception:
            logger.exception("Failed to close %s store", self.store.backend_name)
        self._started = False
        logger.info("Community memory service stopped")

    async def load_recent_memories(self) -> int:
        """Warm the memory cache with the last week of interactions, newest first per user."""
        try:
            interactions = await self.store.get_interactions_since(self._clock() - WARM_CACHE_WINDOW)
        except Exception:
            logger.exception("Failed to load recent memories")
            return 0

        grouped: dict[str, list[MemoryFragment]] = {}
        for interaction in interactions:
            grouped.setdefault(interaction.user_id, []).append(
                memory_from_interaction(interaction, agent_id=self.runtime.agent_id)
            )
        self.memory_cache.clear()
        limit = self.settings.cache_max_size
        for user_id, memories in grouped.items():
            self.memory_cache.put(user_id, memories[:limit])
        logger.info("Loaded %s recent community interactions into cache", len(interactions))
        return len(interactions)

    def health(self) -> dict[str, Any]:
        return {
            "store_enabled": bool(self.store.enabled),
            "store_backend": self.store.backend_name,
            "memory_cache_size": self.memory_cache.size(),
            "personality_cache_size": self.personality_cache.size(),
            "identity_cache_size": self.identity_cache.size(),
            "jobs": self.scheduler.snapshot(),
        }

    async def health_check(self) -> dict[str, Any]:
        report = self.health()
        try:
            await self.store.ping()
            report["store_reachable"] = True
        except Exception:
            logger.warning("Store health check failed", exc_info=True)
            report["store_reachable"] = False
        report["ok"] = bool(report["store_reachable"])
        return report

    # recording

    async def record_interaction(self, raw: Mapping[str, Any] | object) -> CommunityInteraction:
        now = self._clock()
        draft = normalize_interaction(raw, now=now)
        identity = await self.identity.get_or_create_user_identity(
            draft.platform,
            draft.original_user_id or "unknown",
            draft.username or None,
            {"original_interaction": True, "timestamp": draft.timestamp.isoformat()},
        )
        interaction = replace(
            draft,
            user_id=identity.uuid,
            username=draft.username or identity.metadata.display_name or "",
        )
        weight = interaction_weight(interaction, now=now)
        interaction.weight = weight
        quality = quality_score(interaction)
        memory = memory_from_interaction(
            interaction,
            agent_id=self.runtime.agent_id,
            quality=quality,
            impact=community_impact(weight),
        )
        memory.metadata["is_temporary_identity"] = identity.is_temporary

        try:
            await self.runtime.create_memory(memory, INTERACTIONS_TABLE)
        except Exception:
            logger.exception("Failed to write interaction %s to host runtime memory", interaction.id)

        try:
            await self.store.insert_interaction(interaction, quality=quality)
        except Exception:
            logger.exception("Failed to persist interaction %s to %s store", interaction.id, self.store.backend_name)

        self._remember(interaction.user_id, memory)

        if weight > self.settings.high_value_weight_threshold:
            await self._update_standing(interaction, weight)

        logger.debug(
            "Recorded %s interaction for %s (weight=%.3f, quality=%.2f)",
            interaction.interaction_type,
            interaction.user_id,
            weight,
            quality,
        )
        return interaction

    def _remember(self, user_id: str, memory: MemoryFragment) -> None:
        existing = self.memory_cache.get(user_id) or []
        self.memory_cache.put(user_id, [memory, *existing][: self.settings.cache_max_size])

    async def _update_standing(self, interaction: CommunityInteraction, weight: float) -> None:
        now = self._clock()
        standing = MemoryFragment(
            id=new_uuid(),
            entity_id=interaction.user_id,
            agent_id=self.runtime.agent_id,
            room_id=interaction.user_id,
            text=f"Community standing update: weight {weight:.4f}",
            source="community_memory",
            metadata={
                "type": "community_standing",
                "action": "standing_update",
                "weight": weight,
                "interaction_id": interaction.id,
            },
            created_at=now,
        )
        try:
            await self.runtime.create_memory(standing, STANDING_TABLE)
        except Exception:
            logger.exception("Failed to record community standing memory for %s", interaction.user_id)
        try:
            await self.store.apply_standing_delta(interaction.user_id, weight, now, username=interaction.username)
        except Exception:
            logger.exception("Failed to update community standing for %s", interaction.user_id)

    # reads

    async def get_personality_profile(self, user_id: str) -> PersonalityProfile:
        return await self.personality.get_personality_profile(user_id)

    async def get_user_personality(self, user_id: str) -> PersonalityProfile:
        return await self.get_personality_profile(user_id)

    async def get_user_memories(self, user_id: str, limit: int = 50) -> list[MemoryFragment]:
        cached = self.memory_cache.get(user_id)
        if cached is not None:
            return cached[:limit]
        try:
            if self.store.enabled:
                interactions = await self.store.get_user_interactions(user_id, limit)
                memories = [memory_from_interaction(item, agent_id=self.runtime.agent_id) for item in interactions]
            else:
                memories = await self.runtime.get_memories(INTERACTIONS_TABLE, entity_id=user_id, count=limit)
        except Exception:
            logger.exception("Failed to get memories for %s", user_id)
            return []
        if memories:
            self.memory_cache.put(user_id, list(memories))
        return list(memories[:limit])

    async def get_community_memories(self, user_id: str | None = None, limit: int = 50) -> list[MemoryFragment]:
        try:
            return await self.runtime.get_memories(INTERACTIONS_TABLE, entity_id=user_id, count=limit)
        except Exception:
            logger.exception("Failed to get community memories from host runtime")
            return []

    async def query_knowledge_and_memory(
        self,
        query: str,
        user_id: str | None = None,
        limit: int = 5,
    ) -> InsightBundle:
        try:
            bundle = InsightBundle()
            needle = query.casefold()
            if user_id:
                memories = self.memory_cache.get(user_id)
                if memories is None:
                    memories = await self.get_community_memories(user_id, max(limit, 50))
                relevant = [
                    memory
                    for memory in memories
                    if needle in memory.text.casefold() or needle in memory.interaction_type.casefold()
                ]
                bundle.memories = [memory_view(memory) for memory in relevant[:MAX_QUERY_MEMORIES]]

            bundle.knowledge = await self._search_knowledge(query)

            if bundle.memories and bundle.knowledge:
                bundle.combined_insights = self.correlator.correlate(query, bundle.memories, bundle.knowledge)
            return bundle
        except Exception:
            logger.exception("Failed to query knowledge and memory for %r", query)
            return InsightBundle()

    async def _search_knowledge(self, query: str) -> list[dict[str, Any]]:
        if self.knowledge is None:
            return []
        try:
            documents = await self.knowledge.search_documents(query)
        except Exception:
            logger.debug("Knowledge search unavailable for %r", query, exc_info=True)
            return []
        return [document_view(doc) for doc in documents[:MAX_QUERY_DOCUMENTS]]

    # identity

    async def get_or_create_user_identity(
        self,
        platform: str,
        platform_id: str,
        platform_username: str | None = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> UserIdentity:
        return await self.identity.get_or_create_user_identity(platform, platform_id, platform_username, metadata)

    async def link_platform_account(
        self,
        uuid: str,
        platform: str,
        platform_id: str,
        platform_username: str | None = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> bool:
        return await self.identity.link_platform_account(uuid, platform, platform_id, platform_username, metadata)

    async def get_user_platform_accounts(self, uuid: str) -> list[PlatformAccount]:
        return await self.identity.get_user_platform_accounts(uuid)

    async def platform_id_to_uuid(self, platform: str, platform_id: str) -> str | None:
        return await self.identity.platform_id_to_uuid(platform, platform_id)

    async def get_user_summary(self, uuid: str) -> dict[str, Any] | None:
        return await self.identity.get_user_summary(uuid)

    # standings and analytics

    async def get_top_contributors(self, limit: int = 10) -> list[LeaderboardEntry]:
        return await self.get_leaderboard(limit)

    async def update_leaderboard(self, entry: LeaderboardEntry | Mapping[str, Any]) -> LeaderboardEntry:
        if not isinstance(entry, LeaderboardEntry):
            entry = LeaderboardEntry.from_mapping(entry)
        if entry.last_activity is None:
            entry.last_activity = self._clock()
        await self.store.upsert_leaderboard_entry(entry)
        return entry

    async def get_leaderboard(self, limit: int = 10, offset: int = 0) -> list[LeaderboardEntry]:
        try:
            return await self.store.get_leaderboard(limit, offset)
        except Exception:
            logger.exception("Failed to load leaderboard")
            return []

    async def create_memory_fragment(
        self,
        user_id: str,
        content: str,
        *,
        category: str | None = None,
        weight: float = 0.0,
        timestamp: datetime | str | float | None = None,
    ) -> None:
        await self.store.insert_memory_fragment(
            user_id,
            content,
            category=category,
            weight=weight,
            timestamp=coerce_datetime(timestamp, default=self._clock()),
        )

    async def get_memory_fragments(self, user_id: str, limit: int = 10) -> list[dict[str, Any]]:
        try:
            return await self.store.get_memory_fragments(user_id, limit)
        except Exception:
            logger.exception("Failed to retrieve memory fragments for %s", user_id)
            return []

    async def get_community_insights(self, since_days: int = 7) -> dict[str, Any]:
        since = self._clock() - timedelta(days=since_days) if since_days and since_days > 0 else None
        try:
            by_type = await self.store.count_interactions_by_type(since)
        except Exception:
            logger.exception("Failed to get community insights")
            by_type = {}
        return {
            "total_engagements": sum(by_type.values()),
            "by_type": by_type,
            "since_days": since_days,
        }
