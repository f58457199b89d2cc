from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from .null_store import NullStore
from .protocol import CommunityStore
from .store import SqliteCommunityStore

if TYPE_CHECKING:
    from ..config import Settings


logger = logging.getLogger("community_memory")


def _resolve_backend(settings: "Settings") -> str:
    backend = (settings.memory_backend or "sqlite").strip().lower()
    if backend in {"sqlite", "postgres", "none"}:
        return backend
    raise ValueError("MEMORY_BACKEND must be 'sqlite', 'postgres' or 'none'")


def build_store(settings: "Settings") -> CommunityStore:
    backend = _resolve_backend(settings)
    if backend == "none":
        logger.warning("Persistent store disabled (MEMORY_BACKEND=none); using no-op store")
        return NullStore()
    if backend == "sqlite":
        return SqliteCommunityStore(settings.sqlite_path)

    if not settings.postgres_dsn:
        logger.warning("MEMORY_BACKEND=postgres but MEMORY_POSTGRES_DSN is empty; using no-op store")
        return NullStore()

    from .postgres_store import PostgresCommunityStore

    return PostgresCommunityStore(settings.postgres_dsn)
