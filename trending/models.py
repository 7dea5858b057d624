"""Typed data models for the embedding & clustering pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Literal, Optional, TypeAlias, TypedDict

from trending.constants import (
    CLUSTER_KEYWORD_OVERLAP_MIN,
    CLUSTER_LOOKBACK_HOURS,
    CLUSTER_MAX_MEMBERS,
    CLUSTER_MIN_ARTICLES,
    CLUSTER_MIN_SOURCES,
    CLUSTER_SIMILARITY_THRESHOLD,
    CLUSTER_TIME_WINDOW_HOURS,
    CLUSTER_TTL_HOURS,
)

EmbeddingStatus: TypeAlias = Literal["pending", "processing", "completed", "failed"]
QueueStatus: TypeAlias = Literal["pending", "processing", "completed", "failed"]
GenerationMethod: TypeAlias = Literal["vector", "text"]


class EmbeddingSummaryDict(TypedDict):
    processed: int
    succeeded: int
    failed: int


class ClusterSummaryDict(TypedDict):
    created: int
    articlesProcessed: int


class RunResultsDict(TypedDict):
    embeddings: EmbeddingSummaryDict
    clusters: ClusterSummaryDict
    errors: list[str]
    skipped: list[str]


class ClusterDict(TypedDict):
    """Serialized Cluster payload for the HTTP API."""

    id: str
    topic: str
    summary: str
    articleIds: list[str]
    articleCount: int
    sources: list[str]
    avgSimilarity: float
    relevanceScore: float
    generationMethod: str
    createdAt: str
    expiresAt: str


@dataclass
class Article:
    """An ingested article plus the embedding fields this pipeline owns."""

    id: str
    title: str
    excerpt: Optional[str] = None
    feed_id: str = ""
    feed_name: str = ""
    published_at: Optional[datetime] = None
    embedding: Optional[list[float]] = None
    embedding_status: EmbeddingStatus = "pending"
    content_hash: Optional[str] = None
    embedding_error: Optional[str] = None
    embedding_generated_at: Optional[datetime] = None


@dataclass
class EmbeddingQueueItem:
    id: str
    article_id: str
    status: QueueStatus = "pending"
    attempt_count: int = 0
    last_error: Optional[str] = None
    enqueued_at: Optional[datetime] = None
    not_before: Optional[datetime] = None  # Earliest time a retry may be claimed
    claimed_at: Optional[datetime] = None
    claim_token: Optional[str] = None
    priority: int = 0

    @property
    def is_active(self) -> bool:
        return self.status in ("pending", "processing")


@dataclass
class EmbeddingOutcome:
    """Per-item result of an embedding call: a vector or an error, never both."""

    article_id: str
    embedding: Optional[list[float]] = None
    token_count: int = 0
    error: Optional[str] = None
    transient: bool = False

    @property
    def ok(self) -> bool:
        return self.embedding is not None and self.error is None


@dataclass
class QueueProcessResult:
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    remaining_in_queue: int = 0

    def to_summary(self) -> EmbeddingSummaryDict:
        return {
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
        }


@dataclass
class ClusterCandidate:
    """A group of articles that passed formation, before labelling/persistence."""

    members: list[Article]
    avg_similarity: float
    generation_method: GenerationMethod = "vector"
    topic: Optional[str] = None  # Pre-assigned by text mode grouping
    summary: Optional[str] = None

    @property
    def sources(self) -> list[str]:
        seen: list[str] = []
        for m in self.members:
            if m.feed_name and m.feed_name not in seen:
                seen.append(m.feed_name)
        return seen


@dataclass
class Cluster:
    """A persisted, immutable trending-topic cluster."""

    id: str
    topic: str
    summary: str
    article_ids: list[str]
    sources: list[str]
    avg_similarity: float
    relevance_score: float
    generation_method: GenerationMethod
    created_at: datetime
    expires_at: datetime
    timeframe_start: Optional[datetime] = None
    timeframe_end: Optional[datetime] = None

    @property
    def member_count(self) -> int:
        return len(self.article_ids)

    @property
    def source_count(self) -> int:
        return len(self.sources)

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now

    def to_dict(self) -> ClusterDict:
        return {
            "id": self.id,
            "topic": self.topic,
            "summary": self.summary,
            "articleIds": list(self.article_ids),
            "articleCount": self.member_count,
            "sources": list(self.sources),
            "avgSimilarity": self.avg_similarity,
            "relevanceScore": self.relevance_score,
            "generationMethod": self.generation_method,
            "createdAt": self.created_at.isoformat(),
            "expiresAt": self.expires_at.isoformat(),
        }


@dataclass
class ClusterGenerationResult:
    clusters: list[Cluster] = field(default_factory=list)
    articles_processed: int = 0
    method: GenerationMethod = "vector"
    processing_time_ms: int = 0

    @property
    def clusters_created(self) -> int:
        return len(self.clusters)

    def to_summary(self) -> ClusterSummaryDict:
        return {
            "created": self.clusters_created,
            "articlesProcessed": self.articles_processed,
        }


@dataclass(frozen=True)
class TriggerDecision:
    run: bool
    reason: str


@dataclass
class SimilarArticle:
    article_id: str
    title: str
    feed_name: str
    feed_id: str
    similarity_score: float
    published_at: Optional[datetime] = None


@dataclass
class RunReport:
    """Outcome of a single orchestrator pass."""

    timestamp: datetime
    embeddings: QueueProcessResult = field(default_factory=QueueProcessResult)
    clusters: ClusterGenerationResult = field(default_factory=ClusterGenerationResult)
    errors: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    success: bool = True
    error: Optional[str] = None

    def results(self) -> RunResultsDict:
        return {
            "embeddings": self.embeddings.to_summary(),
            "clusters": self.clusters.to_summary(),
            "errors": list(self.errors),
            "skipped": list(self.skipped),
        }

    def to_envelope(self) -> dict[str, object]:
        if not self.success:
            return {
                "success": False,
                "error": self.error or "Unknown error",
                "results": self.results(),
            }
        return {
            "success": True,
            "timestamp": self.timestamp.isoformat(),
            "results": self.results(),
        }


@dataclass(frozen=True)
class ClusterLabel:
    topic: str
    summary: str


@dataclass
class TopicGroup:
    """Articles the clustering provider grouped under one topic (text mode)."""

    topic: str
    summary: str
    article_ids: list[str] = field(default_factory=list)


@dataclass
class ClusterSettings:
    """Tunable cluster formation knobs, overridable from the JSON config."""

    min_sources: int = CLUSTER_MIN_SOURCES
    min_articles: int = CLUSTER_MIN_ARTICLES
    similarity_threshold: float = CLUSTER_SIMILARITY_THRESHOLD
    keyword_overlap_min: int = CLUSTER_KEYWORD_OVERLAP_MIN  # 0 disables the keyword layer
    time_window_hours: float = CLUSTER_TIME_WINDOW_HOURS  # 0 disables the time layer
    max_members: int = CLUSTER_MAX_MEMBERS
    ttl_hours: float = CLUSTER_TTL_HOURS
    lookback_hours: float = CLUSTER_LOOKBACK_HOURS

    def __post_init__(self) -> None:
        # A trending cluster always spans at least two articles from two sources.
        self.min_sources = max(2, int(self.min_sources))
        self.min_articles = max(2, int(self.min_articles))
        self.max_members = max(self.min_articles, int(self.max_members))
        if self.ttl_hours <= 0:
            raise ValueError("ttl_hours must be positive")
