from __future__ import annotations

import math
import uuid
from dataclasses import asdict, dataclass, field, is_dataclass
from datetime import datetime, timezone
from typing import Any, Mapping


KNOWN_INTERACTION_TYPES = frozenset(
    {
        "raid_participation",
        "raid_initiation",
        "quality_engagement",
        "community_help",
        "constructive_feedback",
        "spam_report",
        "toxic_behavior",
        "positive_feedback",
        "constructive_criticism",
        "mentor_behavior",
        "knowledge_sharing",
        "bug_report",
        "feature_suggestion",
        "telegram_message",
        "discord_message",
    }
)

UNKNOWN_INTERACTION_TYPE = "unknown"

_INTERACTION_TYPE_ALIASES = {
    "raid_join": "raid_participation",
    "join_raid": "raid_participation",
    "raid_start": "raid_initiation",
    "start_raid": "raid_initiation",
    "help": "community_help",
    "mentoring": "mentor_behavior",
    "mentor": "mentor_behavior",
    "spam": "spam_report",
    "toxic": "toxic_behavior",
    "feedback": "constructive_feedback",
    "suggestion": "feature_suggestion",
}

_PLATFORM_ALIASES = {
    "x": "twitter",
    "tweet": "twitter",
    "tg": "telegram",
    "discord_bot": "discord",
    "website": "web",
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_uuid() -> str:
    return str(uuid.uuid4())


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def normalize_interaction_type(value: object) -> str:
    raw = str(value or "").strip().casefold().replace("-", "_").replace(" ", "_")
    if not raw:
        return UNKNOWN_INTERACTION_TYPE
    normalized = _INTERACTION_TYPE_ALIASES.get(raw, raw)
    return normalized if normalized in KNOWN_INTERACTION_TYPES else UNKNOWN_INTERACTION_TYPE


def normalize_platform(value: object, default: str = "unknown") -> str:
    raw = str(value or "").strip().casefold()
    if not raw:
        return default
    return _PLATFORM_ALIASES.get(raw, raw)


def coerce_datetime(value: object, default: datetime | None = None) -> datetime:
    """Accept datetimes, ISO strings, or epoch seconds/milliseconds; always return aware UTC."""
    fallback = default or utcnow()
    if value is None or value == "":
        return fallback
    if isinstance(value, datetime):
        return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)
    if isinstance(value, bool):
        return fallback
    if isinstance(value, (int, float)):
        if not math.isfinite(float(value)):
            return fallback
        seconds = float(value)
        # Epoch milliseconds are what JS-based connectors send.
        if seconds > 1e11:
            seconds /= 1000.0
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return fallback
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return fallback
        return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=timezone.utc)
    return fallback


def _as_float(value: object, default: float = 0.0) -> float:
    if isinstance(value, bool) or value is None:
        return default
    try:
        result = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return default
    return result if math.isfinite(result) else default


def _pick(raw: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        value = raw.get(key)
        if value is not None and value != "":
            return value
    return None


@dataclass(slots=True)
class IdentityMetadata:
    display_name: str | None = None
    preferred_platform: str | None = None
    is_temporary: bool = False
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = dict(self.extra)
        payload["displayName"] = self.display_name
        payload["preferredPlatform"] = self.preferred_platform
        if self.is_temporary:
            payload["isTemporary"] = True
        return payload

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any] | None) -> "IdentityMetadata":
        data = dict(raw or {})
        display = data.pop("displayName", None)
        preferred = data.pop("preferredPlatform", None)
        temporary = bool(data.pop("isTemporary", False))
        return cls(
            display_name=str(display) if display else None,
            preferred_platform=str(preferred) if preferred else None,
            is_temporary=temporary,
            extra=data,
        )


@dataclass(slots=True)
class UserIdentity:
    uuid: str
    created_at: datetime
    last_active_at: datetime | None = None
    metadata: IdentityMetadata = field(default_factory=IdentityMetadata)

    @property
    def is_temporary(self) -> bool:
        return self.metadata.is_temporary


@dataclass(slots=True)
class PlatformAccount:
    id: str
    user_uuid: str
    platform: str
    platform_id: str
    platform_username: str | None = None
    verified_at: datetime | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class CommunityInteraction:
    id: str
    user_id: str
    original_user_id: str
    username: str
    interaction_type: str
    content: str
    context: dict[str, Any]
    weight: float
    sentiment_score: float
    platform: str
    timestamp: datetime
    related_raid_id: str | None = None
    room_id: str | None = None


@dataclass(slots=True)
class PersonalityProfile:
    user_id: str
    engagement_style: str
    communication_tone: str
    activity_level: str
    community_contribution: str
    reliability_score: float
    leadership_potential: float
    traits: list[str] = field(default_factory=list)
    interaction_patterns: dict[str, int] = field(default_factory=dict)
    last_updated: datetime = field(default_factory=utcnow)


@dataclass(slots=True)
class MemoryFragment:
    """Host-runtime shaped memory record."""

    id: str
    entity_id: str
    agent_id: str
    room_id: str
    text: str
    source: str = "unknown"
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)

    @property
    def interaction_type(self) -> str:
        return str(self.metadata.get("type") or self.metadata.get("interactionType") or UNKNOWN_INTERACTION_TYPE)


@dataclass(slots=True)
class KnowledgeDocument:
    title: str
    content: str
    path: str
    category: str = "general"
    tags: list[str] = field(default_factory=list)
    relevance_score: float = 1.0


@dataclass(slots=True)
class Insight:
    memory_context: dict[str, Any]
    knowledge_context: dict[str, Any]
    correlation_score: float
    text: str
    type: str = "correlation"


@dataclass(slots=True)
class InsightBundle:
    memories: list[dict[str, Any]] = field(default_factory=list)
    knowledge: list[dict[str, Any]] = field(default_factory=list)
    combined_insights: list[Insight] = field(default_factory=list)


@dataclass(slots=True)
class LeaderboardEntry:
    user_id: str
    username: str = ""
    total_points: float = 0.0
    raids_participated: int = 0
    successful_engagements: int = 0
    rank: int | None = None
    badges: list[str] = field(default_factory=list)
    last_activity: datetime | None = None

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> "LeaderboardEntry":
        """Accept connector-style stats (camelCase, legacy aliases) as well as snake_case."""
        user_id = _pick(raw, "userId", "user_id")
        if user_id is None:
            raise ValueError("leaderboard entry requires a user id")
        rank = _pick(raw, "rank")
        badges = _pick(raw, "badges", "achievements") or []
        return cls(
            user_id=str(user_id),
            username=str(_pick(raw, "username") or ""),
            total_points=_as_float(_pick(raw, "totalPoints", "total_points"), 0.0),
            raids_participated=int(_as_float(_pick(raw, "raidsParticipated", "raids_participated", "totalRaids"), 0)),
            successful_engagements=int(
                _as_float(_pick(raw, "successfulEngagements", "successful_engagements", "totalEngagements"), 0)
            ),
            rank=int(_as_float(rank, 0)) if rank is not None else None,
            badges=[str(badge) for badge in badges] if isinstance(badges, (list, tuple)) else [],
            last_activity=coerce_datetime(_pick(raw, "lastActivity", "last_activity", "lastActive")),
        )


def normalize_interaction(
    raw: Mapping[str, Any] | object,
    identity: UserIdentity | None = None,
    *,
    now: datetime | None = None,
) -> CommunityInteraction:
    """Turn heterogeneous connector payloads into the canonical interaction shape."""
    if not isinstance(raw, Mapping):
        raw = asdict(raw) if is_dataclass(raw) else dict(vars(raw))

    original_user_id = str(_pick(raw, "userId", "user_id", "originalUserId") or "")
    preferred = identity.metadata.preferred_platform if identity is not None else None
    platform = normalize_platform(_pick(raw, "platform", "source"), default=normalize_platform(preferred))
    display = identity.metadata.display_name if identity is not None else None
    context = _pick(raw, "context")
    raid_id = _pick(raw, "relatedRaidId", "related_raid_id", "raidId", "raid_id")
    room_id = _pick(raw, "roomId", "room_id")

    return CommunityInteraction(
        id=str(_pick(raw, "id") or new_uuid()),
        user_id=identity.uuid if identity is not None else original_user_id,
        original_user_id=original_user_id,
        username=str(_pick(raw, "username", "user_name") or display or ""),
        interaction_type=normalize_interaction_type(
            _pick(raw, "interactionType", "interaction_type", "actionType", "type")
        ),
        content=str(_pick(raw, "content", "text") or ""),
        context=dict(context) if isinstance(context, Mapping) else {},
        weight=_as_float(_pick(raw, "weight"), 1.0),
        sentiment_score=_clamp(_as_float(_pick(raw, "sentimentScore", "sentiment_score", "sentiment"), 0.0), -1.0, 1.0),
        platform=platform,
        timestamp=coerce_datetime(_pick(raw, "timestamp", "createdAt", "created_at"), default=now),
        related_raid_id=str(raid_id) if raid_id is not None else None,
        room_id=str(room_id) if room_id is not None else None,
    )
