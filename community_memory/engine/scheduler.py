from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Iterable, Sequence

from ..memory.protocol import CommunityStore
from ..runtime import INTERACTIONS_TABLE, HostRuntime, interaction_from_memory
from .cache import BoundedCache
from .personality import PersonalityAnalyzer
from .types import MemoryFragment, utcnow


logger = logging.getLogger("community_memory.scheduler")

JobFunc = Callable[[], Awaitable[object]]

CONSOLIDATION_REASON = "low_weight_consolidation"
MEMORY_CACHE_WINDOW = timedelta(hours=24)
ACTIVE_USER_WINDOW = timedelta(days=30)
SYNC_BATCH = 500


@dataclass(slots=True)
class ScheduledJob:
    name: str
    interval_seconds: float
    func: JobFunc
    next_run_at: float
    runs: int = 0
    failures: int = 0
    last_duration_seconds: float | None = None


class JobScheduler:
    """Interval job registry driven by an injectable monotonic clock.

    ``start()`` polls the registry from a background task and runs every due
    job in its own task, so a slow job never delays the others. Tests call
    ``run_due(now)`` directly with a fake clock instead.
    """

    def __init__(self, *, clock: Callable[[], float] = time.monotonic, poll_seconds: float = 1.0) -> None:
        self._clock = clock
        self.poll_seconds = max(0.01, float(poll_seconds))
        self._jobs: dict[str, ScheduledJob] = {}
        self._inflight: dict[str, asyncio.Task[None]] = {}
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def register(
        self,
        name: str,
        interval_seconds: float,
        job: JobFunc,
        *,
        run_immediately: bool = False,
    ) -> ScheduledJob:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be > 0")
        now = self._clock()
        entry = ScheduledJob(
            name=name,
            interval_seconds=float(interval_seconds),
            func=job,
            next_run_at=now if run_immediately else now + float(interval_seconds),
        )
        self._jobs[name] = entry
        return entry

    def cancel(self, name: str) -> bool:
        task = self._inflight.pop(name, None)
        if task is not None:
            task.cancel()
        return self._jobs.pop(name, None) is not None

    def job_names(self) -> list[str]:
        return list(self._jobs)

    def _due(self, now: float) -> list[ScheduledJob]:
        return [
            job
            for job in self._jobs.values()
            if job.next_run_at <= now and job.name not in self._inflight
        ]

    async def _execute(self, job: ScheduledJob, now: float) -> None:
        job.next_run_at = now + job.interval_seconds
        started = time.monotonic()
        try:
            await job.func()
        except Exception:
            job.failures += 1
            logger.exception("Scheduled job %s failed", job.name)
        finally:
            job.runs += 1
            job.last_duration_seconds = time.monotonic() - started

    async def run_due(self, now: float | None = None) -> list[str]:
        current = self._clock() if now is None else now
        due = self._due(current)
        if due:
            await asyncio.gather(*(self._execute(job, current) for job in due))
        return [job.name for job in due]

    async def run_job(self, name: str) -> bool:
        job = self._jobs.get(name)
        if job is None:
            return False
        await self._execute(job, self._clock())
        return True

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="community-memory-scheduler")

    async def stop(self) -> None:
        tasks = list(self._inflight.values())
        self._inflight.clear()
        if self._task is not None:
            tasks.append(self._task)
            self._task = None
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def _run(self) -> None:
        while True:
            now = self._clock()
            for job in self._due(now):
                task = asyncio.create_task(self._execute(job, now), name=f"community-job-{job.name}")
                self._inflight[job.name] = task
                task.add_done_callback(lambda _t, name=job.name: self._inflight.pop(name, None))
            await asyncio.sleep(self.poll_seconds)

    def snapshot(self) -> dict[str, dict[str, object]]:
        now = self._clock()
        return {
            job.name: {
                "interval_seconds": job.interval_seconds,
                "runs": job.runs,
                "failures": job.failures,
                "running": job.name in self._inflight,
                "next_due_in_seconds": max(0.0, job.next_run_at - now),
                "last_duration_seconds": job.last_duration_seconds,
            }
            for job in self._jobs.values()
        }


class MaintenanceJobs:
    """Consolidation, personality refresh, cross-store sync and cache cleanup."""

    def __init__(
        self,
        *,
        store: CommunityStore,
        runtime: HostRuntime,
        memory_cache: BoundedCache[list[MemoryFragment]],
        personality: PersonalityAnalyzer,
        caches: Sequence[BoundedCache[object]],
        consolidation_max_age_days: int = 30,
        consolidation_max_weight: float = 0.3,
        refresh_batch: int = 100,
        refresh_delay_seconds: float = 0.1,
        memory_list_limit: int = 1000,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    ) -> None:
        self.store = store
        self.runtime = runtime
        self.memory_cache = memory_cache
        self.personality = personality
        self.caches = list(caches)
        self.consolidation_max_age = timedelta(days=consolidation_max_age_days)
        self.consolidation_max_weight = float(consolidation_max_weight)
        self.refresh_batch = max(1, int(refresh_batch))
        self.refresh_delay_seconds = max(0.0, float(refresh_delay_seconds))
        self.memory_list_limit = max(1, int(memory_list_limit))
        self._clock = clock
        self._sleep = sleep

    def register(
        self,
        scheduler: JobScheduler,
        *,
        consolidation_interval: float,
        personality_refresh_interval: float,
        sync_interval: float,
        cache_cleanup_interval: float,
    ) -> None:
        scheduler.register("consolidation", consolidation_interval, self.consolidate)
        scheduler.register("personality_refresh", personality_refresh_interval, self.refresh_personalities)
        scheduler.register("memory_sync", sync_interval, self.sync_memories)
        scheduler.register("cache_cleanup", cache_cleanup_interval, self.cleanup_caches)

    async def consolidate(self) -> int:
        now = self._clock()
        ids = await self.store.find_consolidation_candidates(
            now - self.consolidation_max_age,
            self.consolidation_max_weight,
        )
        archived = 0
        if ids:
            archived = await self.store.archive_interactions(ids, reason=CONSOLIDATION_REASON, archived_at=now)
            logger.info("Archived %s of %s low-value interactions", archived, len(ids))
        trimmed = self.trim_memory_cache(now - MEMORY_CACHE_WINDOW)
        if trimmed:
            logger.debug("Dropped %s cached memories older than 24h", trimmed)
        return archived

    def trim_memory_cache(self, cutoff: datetime) -> int:
        trimmed = 0
        for user_id, fragments in self.memory_cache.items():
            recent = [fragment for fragment in fragments if fragment.created_at > cutoff]
            if len(recent) == len(fragments):
                continue
            trimmed += len(fragments) - len(recent)
            if recent:
                self.memory_cache.put(user_id, recent)
            else:
                self.memory_cache.delete(user_id)
        return trimmed

    async def refresh_personalities(self) -> int:
        user_ids = await self.store.list_active_user_ids(self._clock() - ACTIVE_USER_WINDOW)
        refreshed = 0
        for index, user_id in enumerate(user_ids[: self.refresh_batch]):
            if index and self.refresh_delay_seconds:
                await self._sleep(self.refresh_delay_seconds)
            try:
                profile = await self.personality.refresh(user_id)
                await self.store.upsert_personality_snapshot(profile)
            except Exception:
                logger.exception("Failed to refresh personality profile for %s", user_id)
                continue
            refreshed += 1
        logger.info("Refreshed personality profiles for %s of %s active users", refreshed, len(user_ids))
        return refreshed

    async def sync_memories(self) -> int:
        """Back-fill interactions the host runtime holds but the store is missing."""
        if not self.store.enabled:
            return 0
        cutoff = self._clock() - self.consolidation_max_age
        memories = await self.runtime.get_memories(INTERACTIONS_TABLE, count=SYNC_BATCH)
        candidates = {memory.id: memory for memory in memories if memory.created_at >= cutoff}
        if not candidates:
            return 0
        existing = await self.store.existing_interaction_ids(candidates)
        restored = 0
        for memory_id, memory in candidates.items():
            if memory_id in existing:
                continue
            interaction, quality = interaction_from_memory(memory)
            try:
                await self.store.insert_interaction(interaction, quality=quality)
            except Exception:
                logger.warning("Memory sync could not restore interaction %s", memory_id, exc_info=True)
                continue
            restored += 1
        if restored:
            logger.info("Memory sync restored %s interactions into the %s store", restored, self.store.backend_name)
        return restored

    async def cleanup_caches(self) -> dict[str, int]:
        report = {cache.name: cache.purge_expired() + cache.trim() for cache in self._all_caches()}
        capped = 0
        for user_id, fragments in self.memory_cache.items():
            if len(fragments) > self.memory_list_limit:
                self.memory_cache.put(user_id, fragments[: self.memory_list_limit])
                capped += 1
        if capped:
            report["memory_lists_capped"] = capped
        if any(report.values()):
            logger.debug("Cache cleanup: %s", report)
        return report

    def _all_caches(self) -> Iterable[BoundedCache[object]]:
        seen: set[int] = set()
        for cache in (self.memory_cache, *self.caches):
            if id(cache) in seen:
                continue
            seen.add(id(cache))
            yield cache
