from __future__ import annotations

import dataclasses
import os
from pathlib import Path

import pytest

import community_memory.app as app_mod
from community_memory.config import Settings
from community_memory.memory import NullStore, PostgresCommunityStore, SqliteCommunityStore, build_store


_ENV_KEYS = (
    "MEMORY_BACKEND",
    "SQLITE_PATH",
    "MEMORY_POSTGRES_DSN",
    "DATABASE_URL",
    "KNOWLEDGE_DIR",
    "CACHE_MAX_SIZE",
    "SCHEDULER_ENABLED",
    "LOG_LEVEL",
    "HIGH_VALUE_WEIGHT_THRESHOLD",
)


@pytest.fixture
def clean_env(monkeypatch: pytest.MonkeyPatch) -> pytest.MonkeyPatch:
    for key in _ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
        monkeypatch.delenv(f"\ufeff{key}", raising=False)
    return monkeypatch


def test_defaults_validate(clean_env: pytest.MonkeyPatch) -> None:
    settings = Settings.from_env()

    settings.validate()
    assert settings.memory_backend == "sqlite"
    assert settings.sqlite_path == Path("./data/community_memory.db")
    assert settings.knowledge_dir is None
    assert settings.cache_max_size == 1000
    assert settings.high_value_weight_threshold == 2.0
    assert settings.scheduler_enabled is True


def test_env_overrides_and_aliases(clean_env: pytest.MonkeyPatch, tmp_path: Path) -> None:
    clean_env.setenv("MEMORY_BACKEND", "Postgres")
    clean_env.setenv("DATABASE_URL", '"postgresql://u:p@localhost/db"')
    clean_env.setenv("KNOWLEDGE_DIR", str(tmp_path))
    clean_env.setenv("\ufeffCACHE_MAX_SIZE", "25")
    clean_env.setenv("SCHEDULER_ENABLED", "off")
    clean_env.setenv("LOG_LEVEL", "debug")

    settings = Settings.from_env()

    settings.validate()
    assert settings.memory_backend == "postgres"
    assert settings.postgres_dsn == "postgresql://u:p@localhost/db"
    assert settings.knowledge_dir == tmp_path
    assert settings.cache_max_size == 25
    assert settings.scheduler_enabled is False
    assert settings.log_level == "DEBUG"


def test_unparseable_numbers_fall_back_to_defaults(clean_env: pytest.MonkeyPatch) -> None:
    clean_env.setenv("CACHE_MAX_SIZE", "lots")
    clean_env.setenv("HIGH_VALUE_WEIGHT_THRESHOLD", "high")

    settings = Settings.from_env()

    assert settings.cache_max_size == 1000
    assert settings.high_value_weight_threshold == 2.0


@pytest.mark.parametrize(
    ("field", "value", "message"),
    [
        ("memory_backend", "mongo", "MEMORY_BACKEND"),
        ("cache_max_size", 0, "CACHE_MAX_SIZE"),
        ("identity_cache_ttl_seconds", 0.0, "IDENTITY_CACHE_TTL_SECONDS"),
        ("consolidation_max_age_days", 0, "CONSOLIDATION_MAX_AGE_DAYS"),
        ("personality_refresh_delay_seconds", -1.0, "PERSONALITY_REFRESH_DELAY_SECONDS"),
        ("log_level", "VERBOSE", "LOG_LEVEL"),
        ("agent_id", "  ", "AGENT_ID"),
    ],
)
def test_validate_rejects_bad_values(clean_env: pytest.MonkeyPatch, field: str, value: object, message: str) -> None:
    settings = dataclasses.replace(Settings.from_env(), **{field: value})

    with pytest.raises(ValueError, match=message):
        settings.validate()


def test_build_store_per_backend(clean_env: pytest.MonkeyPatch, tmp_path: Path) -> None:
    base = dataclasses.replace(Settings.from_env(), sqlite_path=tmp_path / "db.sqlite")

    assert isinstance(build_store(dataclasses.replace(base, memory_backend="none")), NullStore)
    assert isinstance(build_store(base), SqliteCommunityStore)
    assert isinstance(build_store(dataclasses.replace(base, memory_backend="postgres", postgres_dsn="")), NullStore)
    postgres = build_store(
        dataclasses.replace(base, memory_backend="postgres", postgres_dsn="postgresql://localhost/x")
    )
    assert isinstance(postgres, PostgresCommunityStore)
    assert postgres.enabled is True
    with pytest.raises(ValueError):
        build_store(dataclasses.replace(base, memory_backend="redis"))


def test_build_service_wires_knowledge_dir(clean_env: pytest.MonkeyPatch, tmp_path: Path) -> None:
    settings = dataclasses.replace(
        Settings.from_env(),
        sqlite_path=tmp_path / "db.sqlite",
        knowledge_dir=tmp_path / "kb",
        agent_id="agent-7",
    )

    service = app_mod.build_service(settings)

    assert isinstance(service.store, SqliteCommunityStore)
    assert service.runtime.agent_id == "agent-7"
    assert service.knowledge is not None


def test_instance_lock_replaces_stale_pid_file(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    lock_path = tmp_path / "run" / "community_memory.pid"
    lock_path.parent.mkdir()
    lock_path.write_text("424242", encoding="utf-8")
    monkeypatch.setattr(app_mod, "_is_process_alive", lambda pid: False)

    app_mod._acquire_instance_lock(lock_path)

    assert lock_path.read_text(encoding="utf-8") == str(os.getpid())
    app_mod._release_instance_lock(lock_path)
    assert not lock_path.exists()


def test_instance_lock_refuses_live_owner(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    lock_path = tmp_path / "community_memory.pid"
    lock_path.write_text("424242", encoding="utf-8")
    monkeypatch.setattr(app_mod, "_is_process_alive", lambda pid: True)

    with pytest.raises(RuntimeError, match="already running"):
        app_mod._acquire_instance_lock(lock_path)
