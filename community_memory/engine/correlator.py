from __future__ import annotations

import random
import re
from typing import Any, Mapping, Sequence

from .types import Insight, KnowledgeDocument, MemoryFragment


CORRELATION_THRESHOLD = 0.3
MAX_INSIGHTS = 3
SUMMARY_MAX_CHARS = 200

PLATFORM_CATEGORY_AFFINITY = (
    ("telegram", "community", 0.2),
    ("twitter", "social-platforms", 0.2),
)

INSIGHT_TEMPLATES = (
    'Based on your {platform} activity about "{query}", you might find the {category} documentation helpful.',
    "Your interest in {type} relates to our knowledge on {title}.",
    "Since you've been engaging with {query} topics, this {category} information could be valuable.",
)

_SPLIT_RE = re.compile(r"\W+")
_MD_HEADING_RE = re.compile(r"^#+\s+", re.MULTILINE)
_MD_BOLD_RE = re.compile(r"\*\*(.*?)\*\*")
_MD_LINK_RE = re.compile(r"\[([^\]]+)\]\([^)]+\)")
_SENTENCE_RE = re.compile(r"[.!?]+")


def _tokens(text: str) -> list[str]:
    return [token for token in _SPLIT_RE.split(text.lower()) if token]


def summarize_document(content: str) -> str:
    clean = _MD_HEADING_RE.sub("", content)
    clean = _MD_BOLD_RE.sub(r"\1", clean)
    clean = _MD_LINK_RE.sub(r"\1", clean)
    sentences = [sentence for sentence in _SENTENCE_RE.split(clean) if len(sentence.strip()) > 10]
    summary = ". ".join(sentences[:2]).strip()
    if len(summary) > SUMMARY_MAX_CHARS:
        return summary[: SUMMARY_MAX_CHARS - 3] + "..."
    return summary


def memory_view(memory: MemoryFragment) -> dict[str, Any]:
    return {
        "id": memory.id,
        "content": memory.text,
        "type": memory.interaction_type,
        "platform": memory.source or "unknown",
        "timestamp": memory.created_at,
        "user_id": memory.entity_id,
        "metadata": dict(memory.metadata),
        "quality_score": memory.metadata.get("quality_score", 0.5),
    }


def document_view(document: KnowledgeDocument) -> dict[str, Any]:
    return {
        "title": document.title,
        "category": document.category,
        "relevance": document.relevance_score,
        "summary": summarize_document(document.content),
        "path": document.path,
        "tags": list(document.tags),
    }


class KnowledgeMemoryCorrelator:
    """Scores memory/document pairs and renders the strongest ones as insights."""

    def __init__(self, rng: random.Random | None = None) -> None:
        self._rng = rng or random.Random()

    @staticmethod
    def correlation(memory: Mapping[str, Any], doc: Mapping[str, Any], query: str) -> float:
        memory_words = _tokens(str(memory.get("content") or ""))
        doc_tags = [str(tag).lower() for tag in doc.get("tags") or ()]
        query_words = set(_tokens(query))
        platform = str(memory.get("platform") or "")
        category = str(doc.get("category") or "")

        score = 0.0
        if any(word in query_words for word in memory_words) and any(tag in query_words for tag in doc_tags):
            score += 0.4
        for affinity_platform, affinity_category, bonus in PLATFORM_CATEGORY_AFFINITY:
            if platform == affinity_platform and category == affinity_category:
                score += bonus
        if "raid" in str(memory.get("type") or "") and category == "social-raids":
            score += 0.3

        shared = [word for word in memory_words if word in doc_tags and len(word) > 3]
        score += min(len(shared) * 0.1, 0.3)
        return min(score, 1.0)

    def insight_text(self, memory: Mapping[str, Any], doc: Mapping[str, Any], query: str) -> str:
        template = self._rng.choice(INSIGHT_TEMPLATES)
        return template.format(
            platform=memory.get("platform") or "unknown",
            type=memory.get("type") or "unknown",
            query=query,
            category=doc.get("category") or "general",
            title=doc.get("title") or "",
        )

    def correlate(
        self,
        query: str,
        memories: Sequence[Mapping[str, Any]],
        documents: Sequence[Mapping[str, Any]],
    ) -> list[Insight]:
        insights: list[Insight] = []
        for memory in memories:
            for doc in documents:
                score = self.correlation(memory, doc, query)
                if score <= CORRELATION_THRESHOLD:
                    continue
                insights.append(
                    Insight(
                        memory_context={
                            "content": memory.get("content"),
                            "platform": memory.get("platform"),
                            "timestamp": memory.get("timestamp"),
                        },
                        knowledge_context={
                            "title": doc.get("title"),
                            "category": doc.get("category"),
                            "relevance": doc.get("relevance"),
                        },
                        correlation_score=score,
                        text=self.insight_text(memory, doc, query),
                    )
                )
        insights.sort(key=lambda insight: insight.correlation_score, reverse=True)
        return insights[:MAX_INSIGHTS]
