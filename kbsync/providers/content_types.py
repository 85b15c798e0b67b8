"""Provider-agnostic content types handed over by the crawler/normalizer."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from kbsync.core.errors import MalformedDocument
from kbsync.core.hashing import count_words


def normalize_category(category: str | None) -> str:
    """Lowercase and strip a category; 'general' for None/empty."""
    if not category:
        return "general"
    return category.strip().lower() or "general"


@dataclass(frozen=True)
class Document:
    """A normalized document from one scrape run. Immutable per run."""

    url: str
    canonical_text: str
    word_count: int = 0
    source_type: str = "page"
    category: str = "general"
    timestamp: str | None = None
    title: str | None = None

    @property
    def text(self) -> str:
        """Canonical text with surrounding whitespace removed (the hashed form)."""
        return self.canonical_text.strip()

    def validate(self, min_chars: int = 1) -> None:
        """Raise MalformedDocument if this document cannot be ingested."""
        if not self.url or not self.url.strip():
            raise MalformedDocument(self.url, "missing url")
        text = self.text
        if not text:
            raise MalformedDocument(self.url, "empty text")
        if len(text) < min_chars:
            raise MalformedDocument(self.url, f"text shorter than {min_chars} characters")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Document:
        """Build from the normalizer's dict (camelCase or snake_case keys)."""
        text = data.get("canonicalText")
        if text is None:
            text = data.get("canonical_text", data.get("text", ""))
        text = text or ""
        word_count = data.get("wordCount", data.get("word_count")) or count_words(text)
        return cls(
            url=(data.get("url") or "").strip(),
            canonical_text=text,
            word_count=int(word_count),
            source_type=data.get("sourceType", data.get("source_type")) or "page",
            category=normalize_category(data.get("category")),
            timestamp=data.get("timestamp"),
            title=data.get("title"),
        )
