from __future__ import annotations

import asyncio
import random
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from community_memory.config import Settings
from community_memory.engine.types import KnowledgeDocument, LeaderboardEntry
from community_memory.memory import NullStore, SqliteCommunityStore
from community_memory.runtime import INTERACTIONS_TABLE, STANDING_TABLE, LocalHostRuntime
from community_memory.service import CommunityMemoryService


NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

RAID_START = {
    "userId": "tg-1",
    "username": "alice",
    "platform": "telegram",
    "interactionType": "raid_initiation",
    "content": "Started raid for: https://x/1",
    "sentimentScore": 0.8,
    "timestamp": NOW,
}
GREETING = {
    "userId": "tg-1",
    "platform": "telegram",
    "interactionType": "telegram_message",
    "content": "gm",
    "timestamp": NOW,
}


def _settings(tmp_path: Path, **overrides: object) -> Settings:
    values: dict[str, object] = dict(
        memory_backend="sqlite",
        sqlite_path=tmp_path / "community.db",
        postgres_dsn="",
        agent_id="test-agent",
        knowledge_dir=None,
        cache_max_size=100,
        identity_cache_ttl_seconds=3600.0,
        personality_cache_ttl_seconds=86400.0,
        personality_history_limit=200,
        high_value_weight_threshold=2.0,
        consolidation_interval_seconds=3600.0,
        consolidation_max_age_days=30,
        consolidation_max_weight=0.3,
        personality_refresh_interval_seconds=3600.0,
        personality_refresh_batch=10,
        personality_refresh_delay_seconds=0.0,
        memory_sync_interval_seconds=3600.0,
        cache_cleanup_interval_seconds=600.0,
        scheduler_enabled=False,
        log_level="INFO",
    )
    values.update(overrides)
    return Settings(**values)  # type: ignore[arg-type]


def _service(tmp_path: Path, store=None, **kwargs) -> CommunityMemoryService:  # type: ignore[no-untyped-def]
    settings = kwargs.pop("settings", None) or _settings(tmp_path)
    return CommunityMemoryService(
        settings,
        store=store if store is not None else SqliteCommunityStore(settings.sqlite_path),
        runtime=kwargs.pop("runtime", None) or LocalHostRuntime(settings.agent_id),
        clock=lambda: NOW,
        **kwargs,
    )


class _StaticKnowledge:
    def __init__(self, documents: list[KnowledgeDocument]) -> None:
        self.documents = documents
        self.queries: list[str] = []

    async def search_documents(self, query: str) -> list[KnowledgeDocument]:
        self.queries.append(query)
        return list(self.documents)


class _BrokenKnowledge:
    async def search_documents(self, query: str) -> list[KnowledgeDocument]:
        raise OSError("index unavailable")


class _UninitializableStore(NullStore):
    backend_name = "postgres"
    enabled = True

    async def init(self) -> None:
        raise ConnectionError("cannot reach database")


class _BrokenRuntime(LocalHostRuntime):
    async def create_memory(self, memory, table_name: str) -> None:  # type: ignore[no-untyped-def]
        raise RuntimeError("runtime down")


def test_record_interaction_end_to_end_with_sqlite(tmp_path: Path) -> None:
    service = _service(tmp_path)

    async def _run():  # type: ignore[no-untyped-def]
        await service.start()
        raid = await service.record_interaction(RAID_START)
        greeting = await service.record_interaction(GREETING)
        result = {
            "raid": raid,
            "greeting": greeting,
            "memories": await service.get_user_memories(raid.user_id),
            "leaderboard": await service.get_leaderboard(),
            "personality": await service.get_user_personality(raid.user_id),
            "insights": await service.get_community_insights(),
            "standing": await service.runtime.get_memories(STANDING_TABLE),
            "stored": await service.store.get_user_interactions(raid.user_id, 10),
        }
        await service.stop()
        return result

    result = asyncio.run(_run())
    raid, greeting = result["raid"], result["greeting"]

    assert raid.user_id == greeting.user_id
    assert raid.user_id != "tg-1"
    assert raid.original_user_id == "tg-1"
    assert raid.weight == pytest.approx(3.5)
    assert greeting.weight == pytest.approx(0.4)
    assert greeting.username == "alice"
    assert [memory.id for memory in result["memories"]] == [greeting.id, raid.id]
    assert result["memories"][1].metadata["community_impact"] == "high"
    assert result["memories"][1].metadata["is_temporary_identity"] is False

    # only the raid crossed the high-value threshold
    assert len(result["standing"]) == 1
    assert result["standing"][0].text == "Community standing update: weight 3.5000"
    assert len(result["leaderboard"]) == 1
    assert result["leaderboard"][0].user_id == raid.user_id
    assert result["leaderboard"][0].total_points == pytest.approx(3.5)
    assert result["leaderboard"][0].username == "alice"

    assert result["personality"].interaction_patterns == {"raid_initiation": 1, "telegram_message": 1}
    assert result["insights"] == {
        "total_engagements": 2,
        "by_type": {"raid_initiation": 1, "telegram_message": 1},
        "since_days": 7,
    }
    assert {row.id for row in result["stored"]} == {raid.id, greeting.id}


def test_restart_warms_memory_cache_from_store(tmp_path: Path) -> None:
    async def _run():  # type: ignore[no-untyped-def]
        first = _service(tmp_path)
        await first.start()
        raid = await first.record_interaction(RAID_START)
        await first.record_interaction(dict(RAID_START, timestamp=NOW - timedelta(days=10)))
        await first.stop()

        second = _service(tmp_path)
        await second.start()
        cached = second.memory_cache.get(raid.user_id)
        await second.stop()
        return raid, cached

    raid, cached = asyncio.run(_run())

    assert cached is not None
    assert [memory.id for memory in cached] == [raid.id]


def test_null_store_keeps_service_functional(tmp_path: Path) -> None:
    service = _service(tmp_path, store=NullStore())

    async def _run():  # type: ignore[no-untyped-def]
        await service.start()
        raid = await service.record_interaction(RAID_START)
        again = await service.record_interaction(RAID_START)
        service.memory_cache.clear()
        memories = await service.get_user_memories(raid.user_id)
        return raid, again, memories, await service.get_leaderboard(), await service.health_check()

    raid, again, memories, leaderboard, health = asyncio.run(_run())

    assert raid.user_id == again.user_id
    assert [memory.id for memory in memories] == [again.id, raid.id]
    assert leaderboard == []
    assert health["store_backend"] == "none"
    assert health["store_enabled"] is False
    assert health["ok"] is True


def test_store_init_failure_falls_back_to_null_store(tmp_path: Path) -> None:
    service = _service(tmp_path, store=_UninitializableStore())

    async def _run():  # type: ignore[no-untyped-def]
        await service.start()
        interaction = await service.record_interaction(RAID_START)
        return interaction

    interaction = asyncio.run(_run())

    assert isinstance(service.store, NullStore)
    assert service.identity.store is service.store
    assert service.personality.store is service.store
    assert service.jobs.store is service.store
    assert interaction.weight == pytest.approx(3.5)


def test_runtime_failure_does_not_block_store_write(tmp_path: Path) -> None:
    service = _service(tmp_path, runtime=_BrokenRuntime("agent"))

    async def _run():  # type: ignore[no-untyped-def]
        await service.start()
        raid = await service.record_interaction(RAID_START)
        return raid, await service.store.get_user_interactions(raid.user_id, 10), await service.get_leaderboard()

    raid, stored, leaderboard = asyncio.run(_run())

    assert [row.id for row in stored] == [raid.id]
    assert leaderboard[0].total_points == pytest.approx(3.5)
    assert service.memory_cache.get(raid.user_id) is not None


def test_query_knowledge_and_memory_builds_insights(tmp_path: Path) -> None:
    knowledge = _StaticKnowledge(
        [
            KnowledgeDocument(
                title="Raid Playbook",
                content="# Raid Playbook\n\nHow to coordinate a raid on twitter properly.",
                path="kb/social-raids/playbook.md",
                category="social-raids",
                tags=["raid", "twitter"],
            )
        ]
    )
    service = _service(tmp_path, store=NullStore(), knowledge=knowledge, rng=random.Random(9))
    raid = {
        "userId": "x-1",
        "platform": "twitter",
        "interactionType": "raid_participation",
        "content": "raid on twitter today",
        "timestamp": NOW,
    }

    async def _run():  # type: ignore[no-untyped-def]
        recorded = await service.record_interaction(raid)
        with_user = await service.query_knowledge_and_memory("raid", recorded.user_id)
        without_user = await service.query_knowledge_and_memory("raid")
        return with_user, without_user

    with_user, without_user = asyncio.run(_run())

    assert len(with_user.memories) == 1
    assert with_user.memories[0]["platform"] == "twitter"
    assert with_user.knowledge[0]["title"] == "Raid Playbook"
    assert len(with_user.combined_insights) == 1
    assert with_user.combined_insights[0].correlation_score == pytest.approx(0.9)
    assert without_user.memories == []
    assert len(without_user.knowledge) == 1
    assert without_user.combined_insights == []
    assert knowledge.queries == ["raid", "raid"]


def test_knowledge_failure_degrades_to_memories_only(tmp_path: Path) -> None:
    service = _service(tmp_path, store=NullStore(), knowledge=_BrokenKnowledge())

    async def _run():  # type: ignore[no-untyped-def]
        recorded = await service.record_interaction(RAID_START)
        return await service.query_knowledge_and_memory("raid", recorded.user_id)

    bundle = asyncio.run(_run())

    assert len(bundle.memories) == 1
    assert bundle.knowledge == []
    assert bundle.combined_insights == []


def test_leaderboard_updates_and_memory_fragments(tmp_path: Path) -> None:
    service = _service(tmp_path)

    async def _run():  # type: ignore[no-untyped-def]
        await service.start()
        stored = await service.update_leaderboard({"userId": "u1", "username": "alice", "totalPoints": 10})
        await service.update_leaderboard(LeaderboardEntry(user_id="u2", username="bob", total_points=20))
        await service.create_memory_fragment("u1", "likes raids", category="preference", weight=0.7)
        await service.create_memory_fragment("u1", "older note", timestamp="2026-02-01T00:00:00Z")
        return (
            stored,
            await service.get_top_contributors(5),
            await service.get_leaderboard(1, 1),
            await service.get_memory_fragments("u1"),
        )

    stored, top, second_page, fragments = asyncio.run(_run())

    assert stored.total_points == 10.0
    assert [entry.user_id for entry in top] == ["u2", "u1"]
    assert [entry.user_id for entry in second_page] == ["u1"]
    assert [fragment["content"] for fragment in fragments] == ["likes raids", "older note"]
    assert fragments[0]["category"] == "preference"


def test_update_leaderboard_propagates_store_errors(tmp_path: Path) -> None:
    class _ReadOnlyStore(NullStore):
        async def upsert_leaderboard_entry(self, entry: LeaderboardEntry) -> None:
            raise PermissionError("read only")

    service = _service(tmp_path, store=_ReadOnlyStore())

    with pytest.raises(PermissionError):
        asyncio.run(service.update_leaderboard({"userId": "u1"}))


def test_identity_operations_are_exposed(tmp_path: Path) -> None:
    service = _service(tmp_path)

    async def _run():  # type: ignore[no-untyped-def]
        await service.start()
        identity = await service.get_or_create_user_identity("telegram", "1", "alice")
        linked = await service.link_platform_account(identity.uuid, "discord", "alice#1")
        return (
            identity,
            linked,
            await service.platform_id_to_uuid("discord", "alice#1"),
            await service.get_user_platform_accounts(identity.uuid),
            await service.get_user_summary(identity.uuid),
        )

    identity, linked, resolved, accounts, summary = asyncio.run(_run())

    assert linked is True
    assert resolved == identity.uuid
    assert len(accounts) == 2
    assert summary is not None and summary["stats"]["total_platforms"] == 2


def test_start_registers_jobs_and_runs_scheduler(tmp_path: Path) -> None:
    settings = _settings(tmp_path, scheduler_enabled=True)
    service = _service(tmp_path, settings=settings)

    async def _run():  # type: ignore[no-untyped-def]
        await service.start()
        running = service.scheduler.running
        health = service.health()
        await service.stop()
        return running, health, service.scheduler.running

    running, health, running_after_stop = asyncio.run(_run())

    assert running is True
    assert set(health["jobs"]) == {"consolidation", "personality_refresh", "memory_sync", "cache_cleanup"}
    assert running_after_stop is False
    assert service.runtime.table_size(INTERACTIONS_TABLE) == 0
