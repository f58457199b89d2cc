from __future__ import annotations

import json
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncIterator, Iterable, Mapping

try:
    import aiosqlite
except Exception:  # pragma: no cover - optional in Postgres-only deployments
    aiosqlite = None  # type: ignore[assignment]

from ...engine.types import (
    CommunityInteraction,
    IdentityMetadata,
    LeaderboardEntry,
    PlatformAccount,
    UserIdentity,
    coerce_datetime,
)


SQLITE_IN_CHUNK = 500


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def _sqlite_busy_timeout_ms() -> int:
    raw = os.getenv("MEMORY_SQLITE_BUSY_TIMEOUT_MS", "5000").strip()
    try:
        timeout = int(raw)
    except ValueError:
        timeout = 5000
    return max(0, min(timeout, 60000))


@asynccontextmanager
async def _sqlite_memory_connection(db_path: str | Path) -> AsyncIterator["aiosqlite.Connection"]:
    if aiosqlite is None:
        raise RuntimeError("SQLite memory backend requires aiosqlite")
    async with aiosqlite.connect(db_path) as db:  # type: ignore[union-attr]
        await db.execute("PRAGMA foreign_keys=ON")
        timeout_ms = _sqlite_busy_timeout_ms()
        if timeout_ms > 0:
            await db.execute(f"PRAGMA busy_timeout={timeout_ms}")
        yield db


def _chunks(values: Iterable[str], size: int = SQLITE_IN_CHUNK) -> Iterable[list[str]]:
    batch: list[str] = []
    for value in values:
        batch.append(value)
        if len(batch) >= size:
            yield batch
            batch = []
    if batch:
        yield batch


def _to_iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _parse_ts(value: object) -> datetime | None:
    if value is None or value == "":
        return None
    return coerce_datetime(value)


def _json_dumps(value: Any) -> str:
    return json.dumps(value if value is not None else {}, ensure_ascii=False, default=str)


def _json_loads(value: object, default: Any) -> Any:
    if value is None or value == "":
        return default
    if isinstance(value, (dict, list)):
        return value
    try:
        return json.loads(str(value))
    except (TypeError, ValueError):
        return default


def interaction_from_row(row: Mapping[str, Any]) -> CommunityInteraction:
    context = _json_loads(row["context"], {})
    return CommunityInteraction(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        original_user_id=str(row["original_user_id"] or ""),
        username=str(row["username"] or ""),
        interaction_type=str(row["interaction_type"]),
        content=str(row["content"] or ""),
        context=context if isinstance(context, dict) else {},
        weight=float(row["weight"]),
        sentiment_score=float(row["sentiment_score"] or 0.0),
        platform=str(row["platform"] or "unknown"),
        timestamp=_parse_ts(row["timestamp"]) or coerce_datetime(None),
        related_raid_id=str(row["raid_id"]) if row["raid_id"] is not None else None,
        room_id=str(row["room_id"]) if row["room_id"] is not None else None,
    )


def identity_from_row(row: Mapping[str, Any]) -> UserIdentity:
    return UserIdentity(
        uuid=str(row["uuid"]),
        created_at=_parse_ts(row["created_at"]) or coerce_datetime(None),
        last_active_at=_parse_ts(row["last_active_at"]),
        metadata=IdentityMetadata.from_dict(_json_loads(row["metadata"], {})),
    )


def account_from_row(row: Mapping[str, Any]) -> PlatformAccount:
    metadata = _json_loads(row["metadata"], {})
    return PlatformAccount(
        id=str(row["id"]),
        user_uuid=str(row["user_uuid"]),
        platform=str(row["platform"]),
        platform_id=str(row["platform_id"]),
        platform_username=row["platform_username"],
        verified_at=_parse_ts(row["verified_at"]),
        metadata=metadata if isinstance(metadata, dict) else {},
    )


def leaderboard_from_row(row: Mapping[str, Any]) -> LeaderboardEntry:
    badges = _json_loads(row["badges"], [])
    rank = row["rank"]
    return LeaderboardEntry(
        user_id=str(row["user_id"]),
        username=str(row["username"] or ""),
        total_points=float(row["total_points"] or 0.0),
        raids_participated=int(row["raids_participated"] or 0),
        successful_engagements=int(row["successful_engagements"] or 0),
        rank=int(rank) if rank is not None else None,
        badges=[str(badge) for badge in badges] if isinstance(badges, list) else [],
        last_activity=_parse_ts(row["last_activity"]),
    )
