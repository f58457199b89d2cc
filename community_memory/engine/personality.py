from __future__ import annotations

import logging
from collections import Counter
from datetime import datetime, timedelta
from typing import Callable, Sequence

from ..memory.protocol import CommunityStore
from .cache import BoundedCache
from .types import CommunityInteraction, PersonalityProfile, utcnow


logger = logging.getLogger("community_memory")

RECENT_ACTIVITY_WINDOW = timedelta(days=7)
DEFAULT_HISTORY_LIMIT = 200


def _clamp01(value: float) -> float:
    return max(0.0, min(1.0, value))


def default_personality_profile(user_id: str, now: datetime | None = None) -> PersonalityProfile:
    return PersonalityProfile(
        user_id=user_id,
        engagement_style="new_user",
        communication_tone="neutral",
        activity_level="low",
        community_contribution="none",
        reliability_score=0.5,
        leadership_potential=0.5,
        traits=["new_member"],
        interaction_patterns={},
        last_updated=now or utcnow(),
    )


def analyze_personality_patterns(
    user_id: str,
    interactions: Sequence[CommunityInteraction],
    now: datetime | None = None,
) -> PersonalityProfile:
    """Derive a behavioural profile from a user's interaction history in one pass."""
    now = now or utcnow()
    if not interactions:
        return default_personality_profile(user_id, now)

    patterns: Counter[str] = Counter()
    recent = 0
    positive = 0
    negative = 0
    sentiment_total = 0.0
    recent_cutoff = now - RECENT_ACTIVITY_WINDOW
    for interaction in interactions:
        patterns[interaction.interaction_type] += 1
        if interaction.timestamp > recent_cutoff:
            recent += 1
        if interaction.weight > 1:
            positive += 1
        elif interaction.weight < 0:
            negative += 1
        sentiment_total += interaction.sentiment_score or 0.0

    total = len(interactions)
    traits: list[str] = []

    if recent > 20:
        activity_level = "high"
    elif recent > 5:
        activity_level = "moderate"
    else:
        activity_level = "low"

    raid_participation = patterns["raid_participation"]
    raid_initiation = patterns["raid_initiation"]
    quality_engagement = patterns["quality_engagement"]

    engagement_style = "balanced"
    if raid_initiation > 2:
        engagement_style = "leader"
        traits.append("raid_leader")
    elif raid_participation > 10:
        engagement_style = "active_participant"
        traits.append("active_raider")
    elif quality_engagement > raid_participation:
        engagement_style = "quality_focused"
        traits.append("quality_contributor")

    community_contribution = "average"
    if patterns["community_help"] > 5:
        community_contribution = "high"
        traits.append("helpful")

    reliability = _clamp01((positive - negative) / total)
    leadership = _clamp01(
        (
            patterns["mentor_behavior"] * 0.4
            + patterns["knowledge_sharing"] * 0.3
            + patterns["constructive_feedback"] * 0.3
        )
        / 10
    )

    mean_sentiment = sentiment_total / total
    if mean_sentiment > 0.3:
        tone = "positive"
    elif mean_sentiment < -0.3:
        tone = "negative"
    else:
        tone = "neutral"

    if reliability > 0.8:
        traits.append("reliable")
    if leadership > 0.6:
        traits.append("leader")
    if mean_sentiment > 0.5:
        traits.append("positive_influence")
    if raid_participation > 20:
        traits.append("raid_veteran")

    return PersonalityProfile(
        user_id=user_id,
        engagement_style=engagement_style,
        communication_tone=tone,
        activity_level=activity_level,
        community_contribution=community_contribution,
        reliability_score=reliability,
        leadership_potential=leadership,
        traits=traits,
        interaction_patterns=dict(patterns),
        last_updated=now,
    )


class PersonalityAnalyzer:
    def __init__(
        self,
        store: CommunityStore,
        cache: BoundedCache[PersonalityProfile],
        *,
        clock: Callable[[], datetime] = utcnow,
        history_limit: int = DEFAULT_HISTORY_LIMIT,
    ) -> None:
        self.store = store
        self.cache = cache
        self._clock = clock
        self.history_limit = max(1, int(history_limit))

    async def get_personality_profile(self, user_id: str) -> PersonalityProfile:
        cached = self.cache.get(user_id)
        if cached is not None:
            logger.debug("Personality cache hit for %s", user_id)
            return cached
        try:
            return await self.refresh(user_id)
        except Exception:
            logger.exception("Failed to build personality profile for %s", user_id)
            return default_personality_profile(user_id, self._clock())

    async def refresh(self, user_id: str) -> PersonalityProfile:
        """Recompute the profile from the store and cache it. Store errors propagate."""
        interactions = await self.store.get_user_interactions(user_id, self.history_limit)
        profile = analyze_personality_patterns(user_id, interactions, self._clock())
        self.cache.put(user_id, profile)
        return profile

    def invalidate(self, user_id: str) -> None:
        self.cache.delete(user_id)
