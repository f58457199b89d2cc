from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv


load_dotenv()


def _env_lookup(name: str, aliases: tuple[str, ...] = ()) -> str | None:
    for key in (name, *aliases):
        # Be tolerant to UTF-8 BOM accidentally saved in .env key names.
        for candidate in (key, f"﻿{key}"):
            raw = os.getenv(candidate)
            if raw is not None:
                return raw
    return None


def _env_bool(name: str, default: bool, aliases: tuple[str, ...] = ()) -> bool:
    raw = _env_lookup(name, aliases)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int, aliases: tuple[str, ...] = ()) -> int:
    raw = _env_lookup(name, aliases)
    if raw is None:
        return default
    try:
        return int(raw.strip())
    except ValueError:
        return default


def _env_float(name: str, default: float, aliases: tuple[str, ...] = ()) -> float:
    raw = _env_lookup(name, aliases)
    if raw is None:
        return default
    try:
        return float(raw.strip())
    except ValueError:
        return default


def _env_str(name: str, default: str, aliases: tuple[str, ...] = ()) -> str:
    raw = _env_lookup(name, aliases)
    if raw is None:
        return default
    value = raw.strip()
    return value if value else default


def _clean_dsn(value: str) -> str:
    cleaned = value.strip()
    if (cleaned.startswith('"') and cleaned.endswith('"')) or (
        cleaned.startswith("'") and cleaned.endswith("'")
    ):
        cleaned = cleaned[1:-1].strip()
    return cleaned


MEMORY_BACKENDS = ("sqlite", "postgres", "none")


@dataclass(slots=True)
class Settings:
    memory_backend: str
    sqlite_path: Path
    postgres_dsn: str
    agent_id: str
    knowledge_dir: Path | None

    cache_max_size: int
    identity_cache_ttl_seconds: float
    personality_cache_ttl_seconds: float
    personality_history_limit: int
    high_value_weight_threshold: float

    consolidation_interval_seconds: float
    consolidation_max_age_days: int
    consolidation_max_weight: float
    personality_refresh_interval_seconds: float
    personality_refresh_batch: int
    personality_refresh_delay_seconds: float
    memory_sync_interval_seconds: float
    cache_cleanup_interval_seconds: float
    scheduler_enabled: bool

    log_level: str

    @classmethod
    def from_env(cls) -> "Settings":
        knowledge_dir = _env_str("KNOWLEDGE_DIR", "")
        return cls(
            memory_backend=_env_str("MEMORY_BACKEND", "sqlite").lower(),
            sqlite_path=Path(_env_str("SQLITE_PATH", "./data/community_memory.db")).expanduser(),
            postgres_dsn=_clean_dsn(_env_str("MEMORY_POSTGRES_DSN", "", aliases=("DATABASE_URL",))),
            agent_id=_env_str("AGENT_ID", "community-memory"),
            knowledge_dir=Path(knowledge_dir).expanduser() if knowledge_dir else None,
            cache_max_size=_env_int("CACHE_MAX_SIZE", 1000),
            identity_cache_ttl_seconds=_env_float("IDENTITY_CACHE_TTL_SECONDS", 3600.0),
            personality_cache_ttl_seconds=_env_float("PERSONALITY_CACHE_TTL_SECONDS", 86400.0),
            personality_history_limit=_env_int("PERSONALITY_HISTORY_LIMIT", 200),
            high_value_weight_threshold=_env_float("HIGH_VALUE_WEIGHT_THRESHOLD", 2.0),
            consolidation_interval_seconds=_env_float("CONSOLIDATION_INTERVAL_SECONDS", 6 * 3600.0),
            consolidation_max_age_days=_env_int("CONSOLIDATION_MAX_AGE_DAYS", 30),
            consolidation_max_weight=_env_float("CONSOLIDATION_MAX_WEIGHT", 0.3),
            personality_refresh_interval_seconds=_env_float("PERSONALITY_REFRESH_INTERVAL_SECONDS", 24 * 3600.0),
            personality_refresh_batch=_env_int("PERSONALITY_REFRESH_BATCH", 100),
            personality_refresh_delay_seconds=_env_float("PERSONALITY_REFRESH_DELAY_SECONDS", 0.1),
            memory_sync_interval_seconds=_env_float("MEMORY_SYNC_INTERVAL_SECONDS", 3600.0),
            cache_cleanup_interval_seconds=_env_float("CACHE_CLEANUP_INTERVAL_SECONDS", 600.0),
            scheduler_enabled=_env_bool("SCHEDULER_ENABLED", True),
            log_level=_env_str("LOG_LEVEL", "INFO").upper(),
        )

    def validate(self) -> None:
        if self.memory_backend not in MEMORY_BACKENDS:
            raise ValueError("MEMORY_BACKEND must be 'sqlite', 'postgres' or 'none'")
        if not self.agent_id.strip():
            raise ValueError("AGENT_ID cannot be empty")

        if self.cache_max_size < 1:
            raise ValueError("CACHE_MAX_SIZE must be >= 1")
        if self.identity_cache_ttl_seconds <= 0:
            raise ValueError("IDENTITY_CACHE_TTL_SECONDS must be > 0")
        if self.personality_cache_ttl_seconds <= 0:
            raise ValueError("PERSONALITY_CACHE_TTL_SECONDS must be > 0")
        if self.personality_history_limit < 1:
            raise ValueError("PERSONALITY_HISTORY_LIMIT must be >= 1")

        if self.consolidation_interval_seconds <= 0:
            raise ValueError("CONSOLIDATION_INTERVAL_SECONDS must be > 0")
        if self.consolidation_max_age_days < 1:
            raise ValueError("CONSOLIDATION_MAX_AGE_DAYS must be >= 1")
        if self.personality_refresh_interval_seconds <= 0:
            raise ValueError("PERSONALITY_REFRESH_INTERVAL_SECONDS must be > 0")
        if self.personality_refresh_batch < 1:
            raise ValueError("PERSONALITY_REFRESH_BATCH must be >= 1")
        if self.personality_refresh_delay_seconds < 0:
            raise ValueError("PERSONALITY_REFRESH_DELAY_SECONDS must be >= 0")
        if self.memory_sync_interval_seconds <= 0:
            raise ValueError("MEMORY_SYNC_INTERVAL_SECONDS must be > 0")
        if self.cache_cleanup_interval_seconds <= 0:
            raise ValueError("CACHE_CLEANUP_INTERVAL_SECONDS must be > 0")

        if self.log_level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError("LOG_LEVEL must be a standard logging level name")
