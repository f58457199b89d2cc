from __future__ import annotations

import asyncio
import random
from pathlib import Path

import pytest

from community_memory.engine.correlator import (
    INSIGHT_TEMPLATES,
    KnowledgeMemoryCorrelator,
    summarize_document,
)
from community_memory.knowledge import DirectoryKnowledgeBase, extract_tags, extract_title


RAID_MEMORY = {
    "content": "raid on twitter today",
    "platform": "twitter",
    "type": "raid_participation",
    "timestamp": None,
}
RAID_DOC = {"title": "Raid Playbook", "category": "social-raids", "tags": ["raid", "twitter"], "relevance": 1.0}


def test_correlation_components_add_up() -> None:
    score = KnowledgeMemoryCorrelator.correlation(RAID_MEMORY, RAID_DOC, "raid")

    # query/tag overlap 0.4 + raid category 0.3 + two shared words 0.2
    assert score == pytest.approx(0.9)


def test_platform_category_affinity() -> None:
    memory = {"content": "gm", "platform": "telegram", "type": "telegram_message"}
    doc = {"category": "community", "tags": []}

    assert KnowledgeMemoryCorrelator.correlation(memory, doc, "anything") == pytest.approx(0.2)


def test_score_is_capped_at_one() -> None:
    memory = {"content": "raid raid raid twitter twitter", "platform": "twitter", "type": "raid_initiation"}
    doc = {"category": "social-raids", "tags": ["raid", "twitter"]}

    assert KnowledgeMemoryCorrelator.correlation(memory, doc, "raid twitter") == 1.0


def test_correlate_drops_pairs_at_or_below_threshold() -> None:
    weak_memory = {"content": "hello", "platform": "web", "type": "raid_participation"}

    insights = KnowledgeMemoryCorrelator(random.Random(1)).correlate("nothing", [weak_memory], [RAID_DOC])

    assert insights == []


def test_correlate_keeps_top_three_sorted() -> None:
    correlator = KnowledgeMemoryCorrelator(random.Random(3))
    memories = [RAID_MEMORY] * 4 + [{"content": "raid", "platform": "web", "type": "bug_report"}]

    insights = correlator.correlate("raid", memories, [RAID_DOC])

    assert len(insights) == 3
    assert [insight.correlation_score for insight in insights] == sorted(
        (insight.correlation_score for insight in insights), reverse=True
    )
    assert insights[0].knowledge_context["title"] == "Raid Playbook"
    assert insights[0].memory_context["platform"] == "twitter"
    assert insights[0].type == "correlation"


def test_insight_text_uses_one_of_the_templates() -> None:
    rendered = {
        template.format(
            platform="twitter",
            type="raid_participation",
            query="raid",
            category="social-raids",
            title="Raid Playbook",
        )
        for template in INSIGHT_TEMPLATES
    }
    correlator = KnowledgeMemoryCorrelator(random.Random(42))

    texts = {correlator.insight_text(RAID_MEMORY, RAID_DOC, "raid") for _ in range(30)}

    assert texts <= rendered
    assert len(texts) > 1


def test_seeded_rng_makes_insight_text_reproducible() -> None:
    first = KnowledgeMemoryCorrelator(random.Random(5)).insight_text(RAID_MEMORY, RAID_DOC, "raid")
    second = KnowledgeMemoryCorrelator(random.Random(5)).insight_text(RAID_MEMORY, RAID_DOC, "raid")

    assert first == second


def test_summary_strips_markdown_and_truncates() -> None:
    content = "# Title\n\nThis is **bold** text about [raids](http://x.y). Second sentence is here! Third one is here too."

    summary = summarize_document(content)

    assert summary.startswith("Title")
    assert "**" not in summary and "http" not in summary
    assert "Second sentence" in summary
    assert "Third" not in summary

    long_summary = summarize_document("a" * 500)
    assert len(long_summary) == 200
    assert long_summary.endswith("...")


def test_title_and_tag_extraction(tmp_path: Path) -> None:
    content = "# Welcome\n\nCommunity guide #onboarding\n\n## The Raid Rules\n"

    assert extract_title(content, tmp_path / "x.md") == "Welcome"
    assert extract_title("no heading", tmp_path / "raid-guide.md") == "Raid Guide"
    assert extract_tags(content) == ["onboarding", "community", "raid", "welcome", "rules"]


def _write_knowledge(root: Path) -> None:
    (root / "social-raids").mkdir(parents=True)
    (root / "notes").mkdir()
    (root / "intro.md").write_text("# Welcome\n\nCommunity guide #onboarding\n", encoding="utf-8")
    (root / "social-raids" / "playbook.md").write_text(
        "# Raid Playbook\n\nHow to run a raid on twitter.\n", encoding="utf-8"
    )
    (root / "notes" / "todo.txt").write_text("nothing to see", encoding="utf-8")
    (root / "logo.png").write_bytes(b"\x89PNG")


def test_directory_knowledge_base_indexes_and_ranks(tmp_path: Path) -> None:
    _write_knowledge(tmp_path)
    knowledge = DirectoryKnowledgeBase(tmp_path)

    results = asyncio.run(knowledge.search_documents("raid"))

    assert [doc.title for doc in results] == ["Raid Playbook"]
    assert results[0].category == "social-raids"
    by_title = {doc.title: doc for doc in knowledge.load()}
    assert set(by_title) == {"Welcome", "Raid Playbook", "Todo"}
    assert by_title["Welcome"].category == "general"
    assert by_title["Todo"].category == "notes"


def test_missing_knowledge_directory_returns_nothing(tmp_path: Path) -> None:
    knowledge = DirectoryKnowledgeBase(tmp_path / "absent")

    assert asyncio.run(knowledge.search_documents("raid")) == []
