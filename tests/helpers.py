"""Shared test doubles and article builders."""

from datetime import datetime, timedelta, timezone
from typing import Optional

import numpy as np

from trending.errors import ServiceUnavailable
from trending.llm import fallback_label
from trending.models import Article, ClusterLabel, EmbeddingOutcome, TopicGroup

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)
DIM = 16


class FrozenClock:
    def __init__(self, start: datetime = NOW) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


def topic_vector(topic: int, jitter: int = 0, dim: int = DIM) -> list[float]:
    """Unit vector near basis ``topic``; same-topic vectors sit well above 0.75 cosine."""
    rng = np.random.default_rng(1000 * topic + jitter)
    vec = np.zeros(dim)
    vec[topic % dim] = 1.0
    vec += rng.normal(0, 0.05, dim)
    return (vec / np.linalg.norm(vec)).tolist()


def make_article(
    article_id: str,
    feed: str = "feed-a",
    title: Optional[str] = None,
    excerpt: Optional[str] = "Some excerpt",
    hours_ago: float = 1.0,
    embedding: Optional[list[float]] = None,
    now: datetime = NOW,
) -> Article:
    return Article(
        id=article_id,
        title=title or f"Article {article_id}",
        excerpt=excerpt,
        feed_id=feed,
        feed_name=feed.replace("feed-", "Source ").upper(),
        published_at=now - timedelta(hours=hours_ago),
        embedding=embedding,
        embedding_status="completed" if embedding else "pending",
    )


class FakeEmbeddingProvider:
    def __init__(
        self,
        configured: bool = True,
        topics: Optional[dict[str, int]] = None,
        fail_ids: Optional[set[str]] = None,
    ) -> None:
        self.configured = configured
        self.topics = topics or {}
        self.fail_ids = fail_ids or set()
        self.calls: list[list[tuple[str, str]]] = []

    def is_configured(self) -> bool:
        return self.configured

    async def embed_batch(self, items):
        if not self.configured:
            raise ServiceUnavailable("not configured")
        self.calls.append(list(items))
        outcomes = []
        for n, (article_id, _) in enumerate(items):
            if article_id in self.fail_ids:
                outcomes.append(
                    EmbeddingOutcome(
                        article_id=article_id,
                        error="TransientCallFailure: Embedding API error 503",
                        transient=True,
                    )
                )
            else:
                topic = self.topics.get(article_id, n)
                outcomes.append(
                    EmbeddingOutcome(
                        article_id=article_id,
                        embedding=topic_vector(topic, jitter=sum(map(ord, article_id))),
                        token_count=12,
                    )
                )
        return outcomes


class FakeClusteringProvider:
    def __init__(
        self,
        configured: bool = True,
        groups: Optional[list[TopicGroup]] = None,
        failing_label_calls: Optional[set[int]] = None,
    ) -> None:
        self.configured = configured
        self.groups = groups or []
        self.failing_label_calls = failing_label_calls or set()
        self.label_calls = 0
        self.grouping_calls = 0

    def is_configured(self) -> bool:
        return self.configured

    async def generate_cluster_label(self, articles):
        self.label_calls += 1
        if self.label_calls in self.failing_label_calls:
            raise RuntimeError("label backend exploded")
        if not articles:
            return fallback_label(articles)
        return ClusterLabel(topic=f"Story about {articles[0].title}", summary="Summary.")

    async def group_articles_by_topic(self, articles):
        self.grouping_calls += 1
        return list(self.groups)
