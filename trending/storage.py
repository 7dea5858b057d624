"""Storage contract for the pipeline and an in-process implementation.

Every queue mutation is a conditional transition: claims only move items that
are still ``pending`` (or stale ``processing``), and follow-up writes only land
if the caller still holds the claim token it was given.
"""

from __future__ import annotations

import uuid
from collections.abc import Iterable, Sequence
from dataclasses import replace
from datetime import datetime
from typing import Optional, Protocol

from trending.models import Article, Cluster, EmbeddingQueueItem, QueueStatus


class PipelineStorage(Protocol):
    async def ping(self) -> None: ...

    # Articles (ingestion side)
    async def upsert_articles(self, articles: Sequence[Article]) -> None: ...
    async def get_articles(self, article_ids: Sequence[str]) -> dict[str, Article]: ...

    # Queue
    async def enqueue_articles(
        self, article_ids: Sequence[str], now: datetime, priority: int = 0
    ) -> int: ...
    async def claim_queue_items(
        self, limit: int, now: datetime, stale_before: datetime, claim_token: str
    ) -> list[EmbeddingQueueItem]: ...
    async def retire_queue_item(self, item_id: str, claim_token: str) -> bool: ...
    async def release_queue_item(
        self,
        item_id: str,
        claim_token: str,
        attempt_count: int,
        error: str,
        not_before: datetime,
    ) -> bool: ...
    async def fail_queue_item(
        self, item_id: str, claim_token: str, attempt_count: int, error: str
    ) -> bool: ...
    async def count_queue_items(self, status: Optional[QueueStatus] = None) -> int: ...
    async def get_queue_items(self) -> list[EmbeddingQueueItem]: ...

    # Article embedding fields
    async def mark_articles_processing(self, article_ids: Sequence[str]) -> None: ...
    async def save_article_embedding(
        self,
        article_id: str,
        embedding: list[float],
        content_hash: str,
        generated_at: datetime,
    ) -> None: ...
    async def mark_article_pending(self, article_id: str, error: str) -> None: ...
    async def mark_article_embedding_failed(self, article_id: str, error: str) -> None: ...
    async def get_articles_with_embeddings(
        self, since: datetime, feed_ids: Optional[Sequence[str]] = None
    ) -> list[Article]: ...
    async def get_recent_articles(
        self, since: datetime, feed_ids: Optional[Sequence[str]] = None
    ) -> list[Article]: ...
    async def count_embedded_since(self, since: datetime) -> int: ...

    # Clusters
    async def create_cluster(self, cluster: Cluster) -> Cluster: ...
    async def get_clusters(
        self, now: datetime, include_expired: bool = False, limit: Optional[int] = None
    ) -> list[Cluster]: ...
    async def delete_expired_clusters(self, now: datetime) -> int: ...
    async def get_last_clustering_at(self) -> Optional[datetime]: ...
    async def record_clustering_run(self, at: datetime, clusters_created: int) -> None: ...


def _in_scope(article: Article, since: datetime, feed_ids: Optional[set[str]]) -> bool:
    if feed_ids is not None and article.feed_id not in feed_ids:
        return False
    if article.published_at is None:
        return False
    return article.published_at >= since


class InMemoryStorage:
    """Dict-backed store.

    No method awaits internally, so each call is atomic with respect to other
    coroutines on the same event loop.
    """

    def __init__(self, articles: Iterable[Article] = ()) -> None:
        self.articles: dict[str, Article] = {a.id: a for a in articles}
        self.queue: dict[str, EmbeddingQueueItem] = {}
        self.clusters: dict[str, Cluster] = {}
        self.clustering_runs: list[tuple[datetime, int]] = []

    async def ping(self) -> None:
        return None

    async def upsert_articles(self, articles: Sequence[Article]) -> None:
        for article in articles:
            self.articles[article.id] = article

    async def get_articles(self, article_ids: Sequence[str]) -> dict[str, Article]:
        return {i: self.articles[i] for i in article_ids if i in self.articles}

    def _item_for_article(self, article_id: str) -> Optional[EmbeddingQueueItem]:
        for item in self.queue.values():
            if item.article_id == article_id:
                return item
        return None

    async def enqueue_articles(
        self, article_ids: Sequence[str], now: datetime, priority: int = 0
    ) -> int:
        queued = 0
        for article_id in dict.fromkeys(article_ids):
            existing = self._item_for_article(article_id)
            if existing is not None and existing.is_active:
                existing.priority = max(existing.priority, priority)
                continue
            item_id = existing.id if existing is not None else str(uuid.uuid4())
            self.queue[item_id] = EmbeddingQueueItem(
                id=item_id,
                article_id=article_id,
                enqueued_at=now,
                priority=priority,
            )
            article = self.articles.get(article_id)
            if article is not None:
                self.articles[article_id] = replace(
                    article,
                    embedding=None,
                    embedding_status="pending",
                    embedding_generated_at=None,
                    embedding_error=None,
                )
            queued += 1
        return queued

    async def claim_queue_items(
        self, limit: int, now: datetime, stale_before: datetime, claim_token: str
    ) -> list[EmbeddingQueueItem]:
        def claimable(item: EmbeddingQueueItem) -> bool:
            if item.status == "pending":
                return item.not_before is None or item.not_before <= now
            if item.status == "processing":
                return item.claimed_at is not None and item.claimed_at < stale_before
            return False

        candidates = [i for i in self.queue.values() if claimable(i)]
        candidates.sort(key=lambda i: (-i.priority, i.enqueued_at or now))
        claimed = []
        for item in candidates[: max(0, limit)]:
            item.status = "processing"
            item.claimed_at = now
            item.claim_token = claim_token
            claimed.append(replace(item))
        return claimed

    def _held(self, item_id: str, claim_token: str) -> Optional[EmbeddingQueueItem]:
        item = self.queue.get(item_id)
        if item is None or item.status != "processing" or item.claim_token != claim_token:
            return None
        return item

    async def retire_queue_item(self, item_id: str, claim_token: str) -> bool:
        if self._held(item_id, claim_token) is None:
            return False
        del self.queue[item_id]
        return True

    async def release_queue_item(
        self,
        item_id: str,
        claim_token: str,
        attempt_count: int,
        error: str,
        not_before: datetime,
    ) -> bool:
        item = self._held(item_id, claim_token)
        if item is None:
            return False
        item.status = "pending"
        item.attempt_count = attempt_count
        item.last_error = error
        item.not_before = not_before
        item.claimed_at = None
        item.claim_token = None
        return True

    async def fail_queue_item(
        self, item_id: str, claim_token: str, attempt_count: int, error: str
    ) -> bool:
        item = self._held(item_id, claim_token)
        if item is None:
            return False
        item.status = "failed"
        item.attempt_count = attempt_count
        item.last_error = error
        item.claimed_at = None
        item.claim_token = None
        return True

    async def count_queue_items(self, status: Optional[QueueStatus] = None) -> int:
        if status is None:
            return len(self.queue)
        return sum(1 for i in self.queue.values() if i.status == status)

    async def get_queue_items(self) -> list[EmbeddingQueueItem]:
        return [replace(i) for i in self.queue.values()]

    async def mark_articles_processing(self, article_ids: Sequence[str]) -> None:
        for article_id in article_ids:
            article = self.articles.get(article_id)
            if article is not None and article.embedding_status != "completed":
                self.articles[article_id] = replace(article, embedding_status="processing")

    async def save_article_embedding(
        self,
        article_id: str,
        embedding: list[float],
        content_hash: str,
        generated_at: datetime,
    ) -> None:
        article = self.articles.get(article_id)
        if article is None:
            return
        self.articles[article_id] = replace(
            article,
            embedding=list(embedding),
            embedding_status="completed",
            content_hash=content_hash,
            embedding_error=None,
            embedding_generated_at=generated_at,
        )

    async def mark_article_pending(self, article_id: str, error: str) -> None:
        article = self.articles.get(article_id)
        if article is None:
            return
        self.articles[article_id] = replace(
            article,
            embedding=None,
            embedding_status="pending",
            embedding_error=error,
            embedding_generated_at=None,
        )

    async def mark_article_embedding_failed(self, article_id: str, error: str) -> None:
        article = self.articles.get(article_id)
        if article is None:
            return
        self.articles[article_id] = replace(
            article,
            embedding=None,
            embedding_status="failed",
            embedding_error=error,
            embedding_generated_at=None,
        )

    async def get_articles_with_embeddings(
        self, since: datetime, feed_ids: Optional[Sequence[str]] = None
    ) -> list[Article]:
        scope = set(feed_ids) if feed_ids is not None else None
        return [
            a
            for a in self.articles.values()
            if a.embedding_status == "completed" and a.embedding and _in_scope(a, since, scope)
        ]

    async def get_recent_articles(
        self, since: datetime, feed_ids: Optional[Sequence[str]] = None
    ) -> list[Article]:
        scope = set(feed_ids) if feed_ids is not None else None
        return [a for a in self.articles.values() if _in_scope(a, since, scope)]

    async def count_embedded_since(self, since: datetime) -> int:
        return sum(
            1
            for a in self.articles.values()
            if a.embedding_status == "completed"
            and a.embedding_generated_at is not None
            and a.embedding_generated_at >= since
        )

    async def create_cluster(self, cluster: Cluster) -> Cluster:
        self.clusters[cluster.id] = cluster
        return cluster

    async def get_clusters(
        self, now: datetime, include_expired: bool = False, limit: Optional[int] = None
    ) -> list[Cluster]:
        clusters = [c for c in self.clusters.values() if include_expired or not c.is_expired(now)]
        clusters.sort(key=lambda c: c.relevance_score, reverse=True)
        return clusters[:limit] if limit is not None else clusters

    async def delete_expired_clusters(self, now: datetime) -> int:
        expired = [cid for cid, c in self.clusters.items() if c.is_expired(now)]
        for cid in expired:
            del self.clusters[cid]
        return len(expired)

    async def get_last_clustering_at(self) -> Optional[datetime]:
        if not self.clustering_runs:
            return None
        return max(at for at, _ in self.clustering_runs)

    async def record_clustering_run(self, at: datetime, clusters_created: int) -> None:
        self.clustering_runs.append((at, clusters_created))
