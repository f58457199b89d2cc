from __future__ import annotations

import math
from datetime import datetime

from .types import CommunityInteraction, utcnow


TYPE_WEIGHTS: dict[str, float] = {
    "raid_participation": 2.0,
    "raid_initiation": 2.5,
    "quality_engagement": 1.5,
    "community_help": 2.5,
    "constructive_feedback": 2.0,
    "spam_report": -1.0,
    "toxic_behavior": -2.0,
    "positive_feedback": 1.2,
    "constructive_criticism": 1.8,
    "mentor_behavior": 3.0,
    "knowledge_sharing": 2.2,
    "bug_report": 1.8,
    "feature_suggestion": 1.5,
    "telegram_message": 0.5,
    "discord_message": 0.5,
}
DEFAULT_TYPE_WEIGHT = 1.0

QUALITY_INDICATORS = (
    "because",
    "however",
    "therefore",
    "although",
    "moreover",
    "furthermore",
    "specifically",
    "particularly",
    "detailed",
    "explanation",
    "example",
    "solution",
    "approach",
)

QUALITY_SCORE_TERMS = ("because", "however", "specifically", "detailed", "comprehensive")

CONTEXT_BONUSES = (
    ("mentions_others", 1.3),
    ("helps_newbie", 1.5),
    ("shares_resources", 1.4),
)

DECAY_HOURS = 168.0
DECAY_FLOOR = 0.1
WEIGHT_FLOOR = -0.5


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def count_terms(content: str, terms: tuple[str, ...]) -> int:
    lowered = (content or "").casefold()
    return sum(1 for term in terms if term in lowered)


def base_weight(interaction_type: str) -> float:
    return TYPE_WEIGHTS.get(interaction_type, DEFAULT_TYPE_WEIGHT)


def sentiment_factor(sentiment_score: float) -> float:
    return 1.0 + _clamp(float(sentiment_score), -1.0, 1.0) * 0.5


def length_factor(content: str) -> float:
    length = len(content or "")
    if length > 100:
        return 1.2
    if length < 20:
        return 0.8
    return 1.0


def quality_language_factor(content: str) -> float:
    return 1.0 + 0.1 * count_terms(content, QUALITY_INDICATORS)


def hours_since(timestamp: datetime, now: datetime | None = None) -> float:
    reference = now or utcnow()
    return max(0.0, (reference - timestamp).total_seconds() / 3600.0)


def decay_factor(hours_ago: float) -> float:
    return max(DECAY_FLOOR, math.exp(-max(0.0, hours_ago) / DECAY_HOURS))


def context_factor(context: dict | None) -> float:
    factor = 1.0
    for key, bonus in CONTEXT_BONUSES:
        if (context or {}).get(key):
            factor *= bonus
    return factor


def interaction_weight(interaction: CommunityInteraction, *, now: datetime | None = None) -> float:
    """Decayed, context-sensitive worth of one interaction, floored at -0.5."""
    weight = base_weight(interaction.interaction_type)
    weight *= sentiment_factor(interaction.sentiment_score)
    weight *= length_factor(interaction.content)
    weight *= quality_language_factor(interaction.content)
    weight *= decay_factor(hours_since(interaction.timestamp, now))
    weight *= context_factor(interaction.context)
    return max(WEIGHT_FLOOR, weight)


def quality_score(interaction: CommunityInteraction) -> float:
    """Additive display signal in [0, 1]; independent of the weight."""
    length = len(interaction.content or "")
    score = 0.5
    if length > 100:
        score += 0.2
    if length > 300:
        score += 0.1
    if length < 20:
        score -= 0.2
    score += count_terms(interaction.content, QUALITY_SCORE_TERMS) * 0.1
    score += _clamp(float(interaction.sentiment_score), -1.0, 1.0) * 0.2
    return _clamp(score, 0.0, 1.0)


def community_impact(weight: float) -> str:
    if weight > 1.5:
        return "high"
    if weight > 0.8:
        return "medium"
    return "low"
