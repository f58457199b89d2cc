from __future__ import annotations

import asyncio
import logging
import re
from pathlib import Path
from typing import Protocol

from .engine.types import KnowledgeDocument


logger = logging.getLogger("community_memory.knowledge")

DOCUMENT_SUFFIXES = (".md", ".txt")
MAX_TAGS = 10
SEARCH_LIMIT = 10

_HEADING_RE = re.compile(r"^#{1,6}\s+(.+?)\s*#*\s*$", re.MULTILINE)
_TITLE_RE = re.compile(r"^#\s+(.+)$", re.MULTILINE)
_HASHTAG_RE = re.compile(r"(?<![\w#])#(\w{2,})")
_WORD_RE = re.compile(r"[a-z0-9][a-z0-9_-]{2,}")
_DOMAIN_KEYWORDS_RE = re.compile(
    r"\b(agent|plugin|memory|knowledge|community|raid|raids|twitter|telegram|discord|database|identity|reputation)\b",
    re.IGNORECASE,
)
_HEADING_STOPWORDS = frozenset({"the", "and", "for", "with", "how", "what", "why", "our", "your", "about"})


class KnowledgeSearch(Protocol):
    async def search_documents(self, query: str) -> list[KnowledgeDocument]: ...


def _read_text(path: Path) -> str:
    last_exc: Exception | None = None
    for encoding in ("utf-8-sig", "utf-8", "cp1251"):
        try:
            return path.read_text(encoding=encoding)
        except Exception as exc:
            last_exc = exc
    if last_exc is not None:
        raise last_exc
    raise RuntimeError(f"Unable to read knowledge document: {path}")


def extract_title(content: str, path: Path) -> str:
    match = _TITLE_RE.search(content)
    if match:
        return match.group(1).strip()
    return path.stem.replace("-", " ").replace("_", " ").title()


def extract_tags(content: str) -> list[str]:
    tags: dict[str, None] = {}
    for match in _HASHTAG_RE.finditer(content):
        tags.setdefault(match.group(1).lower(), None)
    for match in _DOMAIN_KEYWORDS_RE.finditer(content):
        tags.setdefault(match.group(1).lower(), None)
    for heading in _HEADING_RE.findall(content):
        for word in _WORD_RE.findall(heading.lower()):
            if word not in _HEADING_STOPWORDS:
                tags.setdefault(word, None)
    return list(tags)[:MAX_TAGS]


def score_document(document: KnowledgeDocument, query: str) -> float:
    needle = query.lower().strip()
    if not needle:
        return 0.0
    score = 0.0
    if needle in document.title.lower():
        score += 0.4
    if any(needle in tag for tag in document.tags):
        score += 0.3
    if needle in document.content.lower():
        score += 0.2
    if needle in document.category.lower():
        score += 0.1
    return score * document.relevance_score


class DirectoryKnowledgeBase:
    """Indexes markdown and text files under ``root``; the parent folder name is the category."""

    def __init__(self, root: Path) -> None:
        self.root = Path(root)
        self._documents: list[KnowledgeDocument] | None = None

    def load(self) -> list[KnowledgeDocument]:
        documents: list[KnowledgeDocument] = []
        if not self.root.is_dir():
            logger.warning("Knowledge directory not found: %s", self.root)
            self._documents = documents
            return documents

        for path in sorted(self.root.rglob("*")):
            if not path.is_file() or path.suffix.lower() not in DOCUMENT_SUFFIXES:
                continue
            try:
                content = _read_text(path)
            except Exception as exc:
                logger.warning("Failed to index knowledge document %s (%s)", path, exc)
                continue
            category = path.parent.name if path.parent != self.root else "general"
            documents.append(
                KnowledgeDocument(
                    title=extract_title(content, path),
                    content=content,
                    path=str(path),
                    category=category.lower(),
                    tags=extract_tags(content),
                )
            )

        logger.info("Indexed %s knowledge documents from %s", len(documents), self.root)
        self._documents = documents
        return documents

    def reload(self) -> None:
        self._documents = None

    async def search_documents(self, query: str) -> list[KnowledgeDocument]:
        documents = self._documents
        if documents is None:
            documents = await asyncio.to_thread(self.load)
        scored = [(score_document(doc, query), doc) for doc in documents]
        ranked = sorted((item for item in scored if item[0] > 0), key=lambda item: item[0], reverse=True)
        return [doc for _, doc in ranked[:SEARCH_LIMIT]]
