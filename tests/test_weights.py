from __future__ import annotations

import math
from datetime import datetime, timedelta, timezone

import pytest

from community_memory.engine.types import normalize_interaction
from community_memory.engine.weights import (
    base_weight,
    community_impact,
    context_factor,
    decay_factor,
    hours_since,
    interaction_weight,
    length_factor,
    quality_language_factor,
    quality_score,
    sentiment_factor,
)


NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _interaction(**fields):  # type: ignore[no-untyped-def]
    payload = {"userId": "u1", "platform": "telegram", "timestamp": NOW}
    payload.update(fields)
    return normalize_interaction(payload, now=NOW)


def test_raid_initiation_weight_matches_each_stage() -> None:
    item = _interaction(interactionType="raid_initiation", content="Started raid for: https://x/1", sentimentScore=0.8)

    assert base_weight(item.interaction_type) == 2.5
    assert sentiment_factor(item.sentiment_score) == pytest.approx(1.4)
    assert length_factor(item.content) == 1.0
    assert quality_language_factor(item.content) == 1.0
    assert decay_factor(hours_since(item.timestamp, NOW)) == pytest.approx(1.0)
    assert context_factor(item.context) == 1.0
    assert interaction_weight(item, now=NOW) == pytest.approx(2.5 * 1.4)


def test_long_content_and_quality_terms_multiply_weight() -> None:
    content = "I fixed it because the cache was stale; however the detailed explanation is in the thread. " * 2
    item = _interaction(interactionType="knowledge_sharing", content=content)

    assert len(content) > 100
    # because, however, detailed, explanation
    assert quality_language_factor(content) == pytest.approx(1.4)
    assert interaction_weight(item, now=NOW) == pytest.approx(2.2 * 1.2 * 1.4)


def test_short_content_is_discounted() -> None:
    item = _interaction(interactionType="telegram_message", content="gm")

    assert interaction_weight(item, now=NOW) == pytest.approx(0.5 * 0.8)


def test_unknown_type_uses_default_weight() -> None:
    item = _interaction(interactionType="made_up_type", content="x" * 50)

    assert item.interaction_type == "unknown"
    assert interaction_weight(item, now=NOW) == pytest.approx(1.0)


def test_weight_never_drops_below_floor() -> None:
    for sentiment in (-1.0, 0.0, 1.0):
        item = _interaction(interactionType="toxic_behavior", content="x" * 150, sentimentScore=sentiment)
        assert interaction_weight(item, now=NOW) >= -0.5
    worst = _interaction(interactionType="toxic_behavior", content="x" * 150, sentimentScore=1.0)
    assert interaction_weight(worst, now=NOW) == -0.5


def test_decay_is_non_increasing_and_floored() -> None:
    weights = []
    for hours in (0, 1, 24, 168, 400, 2000, 10000):
        item = _interaction(
            interactionType="community_help",
            content="helped a newcomer set up their wallet",
            timestamp=NOW - timedelta(hours=hours),
        )
        weights.append(interaction_weight(item, now=NOW))

    assert weights == sorted(weights, reverse=True)
    assert decay_factor(168) == pytest.approx(math.exp(-1))
    assert decay_factor(10000) == 0.1
    assert weights[-1] == pytest.approx(2.5 * 0.1)


def test_future_timestamp_counts_as_zero_hours() -> None:
    item = _interaction(interactionType="bug_report", content="x" * 50, timestamp=NOW + timedelta(hours=5))

    assert hours_since(item.timestamp, NOW) == 0.0
    assert interaction_weight(item, now=NOW) == pytest.approx(1.8)


def test_context_bonuses_are_multiplicative() -> None:
    context = {"mentions_others": True, "helps_newbie": True, "shares_resources": True}
    item = _interaction(interactionType="community_help", content="x" * 50, context=context)

    assert context_factor(context) == pytest.approx(1.3 * 1.5 * 1.4)
    assert interaction_weight(item, now=NOW) == pytest.approx(2.5 * 1.3 * 1.5 * 1.4)
    assert context_factor({"helps_newbie": False}) == 1.0


def test_quality_score_is_additive_and_clamped() -> None:
    rich = _interaction(content=("because this is detailed " * 20), sentimentScore=0.5)
    poor = _interaction(content="ok", sentimentScore=-1.0)
    neutral = _interaction(content="a reasonably sized message here")

    assert quality_score(rich) == 1.0
    assert quality_score(poor) == pytest.approx(0.1)
    assert quality_score(neutral) == pytest.approx(0.5)


def test_community_impact_bands() -> None:
    assert community_impact(2.0) == "high"
    assert community_impact(1.5) == "medium"
    assert community_impact(0.9) == "medium"
    assert community_impact(0.8) == "low"
    assert community_impact(-0.5) == "low"
