"""Content hashing and embedding staleness checks."""

from __future__ import annotations

import hashlib
from typing import Optional

from trending.models import Article


def _clean(excerpt: Optional[str]) -> str:
    return (excerpt or "").strip()


def prepare_embedding_input(title: str, excerpt: Optional[str]) -> str:
    """Join the trimmed title and excerpt with a blank line.

    A missing or blank excerpt yields the trimmed title alone.
    """
    clean_title = (title or "").strip()
    clean_excerpt = _clean(excerpt)
    if clean_excerpt:
        return f"{clean_title}\n\n{clean_excerpt}"
    return clean_title


def content_hash(title: str, excerpt: Optional[str]) -> str:
    """SHA-256 fingerprint of an article's title and excerpt.

    None and "" excerpts hash identically.
    """
    content = f"{title or ''}|{excerpt or ''}"
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def needs_embedding_update(article: Article) -> bool:
    if not article.embedding or article.embedding_status in ("pending", "failed"):
        return True
    if article.embedding_status != "completed":
        return True
    if not article.content_hash:
        return True
    return content_hash(article.title, article.excerpt) != article.content_hash
