"""Group embedded articles into scored, time-limited trending clusters."""

from __future__ import annotations

import logging
import re
import time
import uuid
from collections import Counter
from collections.abc import Callable, Sequence
from datetime import datetime, timedelta
from typing import Optional

import numpy as np
from numpy.typing import NDArray
from sklearn.cluster import AgglomerativeClustering
from sklearn.metrics.pairwise import cosine_similarity

from trending.constants import (
    CLUSTER_AGGLOMERATIVE_LINKAGE,
    CLUSTER_AGGLOMERATIVE_METRIC,
    MAX_SIMILAR_ARTICLES,
    SIMILAR_ARTICLES_THRESHOLD,
)
from trending.errors import StorageFailure
from trending.llm import ClusteringProvider
from trending.models import (
    Article,
    Cluster,
    ClusterCandidate,
    ClusterGenerationResult,
    ClusterSettings,
    GenerationMethod,
    SimilarArticle,
    TopicGroup,
)
from trending.queue import utc_now
from trending.storage import PipelineStorage

logger = logging.getLogger(__name__)

_STOP_WORDS = frozenset(
    """
    the a an and or but in on at to for of with by is are was were be been being
    have has had do does did will would could should may might must can this that
    these those from into through during before after above below between under
    again further then once here there when where why how all both each few more
    most other some such only own same than too very just about says said new also
    its their his her our your them they what which who whom whose
    """.split()
)
_NON_WORD = re.compile(r"[^\w\s]")


def extract_keywords(text: str) -> set[str]:
    """Significant words plus bigram and trigram phrases (joined with ``_``)."""
    words = [w for w in _NON_WORD.sub(" ", text.lower()).split() if len(w) > 2]
    keywords = {w for w in words if len(w) > 3 and w not in _STOP_WORDS}
    for w1, w2 in zip(words, words[1:]):
        if len(w1) > 3 and len(w2) > 3 and w1 not in _STOP_WORDS and w2 not in _STOP_WORDS:
            keywords.add(f"{w1}_{w2}")
    for w1, w2, w3 in zip(words, words[1:], words[2:]):
        if not {w1, w2, w3} & _STOP_WORDS:
            keywords.add(f"{w1}_{w2}_{w3}")
    return keywords


def keyword_overlap(a: set[str], b: set[str]) -> int:
    """Shared keyword count, phrases weighted double."""
    return sum(2 if "_" in term else 1 for term in a & b)


def time_span_hours(articles: Sequence[Article]) -> Optional[float]:
    dates = [a.published_at for a in articles if a.published_at is not None]
    if not dates:
        return None
    return (max(dates) - min(dates)).total_seconds() / 3600.0


def relevance_score(member_count: int, source_count: int) -> float:
    return float(member_count * source_count)


def similarity_matrix(articles: Sequence[Article]) -> NDArray[np.float64]:
    vectors = np.asarray([a.embedding for a in articles], dtype=np.float64)
    return cosine_similarity(vectors)


def mean_pairwise_similarity(sims: NDArray[np.float64], members: Sequence[int]) -> float:
    if len(members) < 2:
        return 0.0
    idx = np.asarray(members)
    sub = sims[np.ix_(idx, idx)]
    upper = sub[np.triu_indices(len(members), k=1)]
    return float(upper.mean())


def _newest_first(articles: Sequence[Article]) -> list[Article]:
    return sorted(
        articles,
        key=lambda a: a.published_at.timestamp() if a.published_at else float("-inf"),
        reverse=True,
    )


def _passes_post_filter(candidate: ClusterCandidate, settings: ClusterSettings) -> bool:
    return (
        len(candidate.members) >= settings.min_articles
        and len(candidate.sources) >= settings.min_sources
    )


def _agglomerative_labels(
    articles: Sequence[Article], similarity_threshold: float
) -> NDArray[np.int_]:
    vectors = np.asarray([a.embedding for a in articles], dtype=np.float64)
    clustering = AgglomerativeClustering(
        n_clusters=None,
        distance_threshold=max(0.0, 1.0 - similarity_threshold),
        metric=CLUSTER_AGGLOMERATIVE_METRIC,
        linkage=CLUSTER_AGGLOMERATIVE_LINKAGE,
    )
    return clustering.fit_predict(vectors)


def _within_window(seed: Article, other: Article, window_hours: float) -> bool:
    if window_hours <= 0 or seed.published_at is None or other.published_at is None:
        return True
    gap = abs((seed.published_at - other.published_at).total_seconds()) / 3600.0
    return gap <= window_hours


def _split_group(
    members: list[int],
    ordered: Sequence[Article],
    keywords: list[set[str]],
    settings: ClusterSettings,
) -> list[list[int]]:
    """Split one linkage group into subsets that respect the extra layers.

    ``members`` is newest first, so each subset is seeded by its newest
    remaining article. A member joins when the subset is under the size cap,
    it falls within the time window of the seed, and it shares enough keywords
    with every member already in.
    """
    min_overlap = settings.keyword_overlap_min

    def shares_keywords(subset: list[int], j: int) -> bool:
        if min_overlap <= 0:
            return True
        return all(keyword_overlap(keywords[m], keywords[j]) >= min_overlap for m in subset)

    subsets: list[list[int]] = []
    remaining = list(members)
    while len(remaining) >= 2:
        seed = remaining[0]
        subset = [seed]
        leftover: list[int] = []
        for j in remaining[1:]:
            if (
                len(subset) < settings.max_members
                and _within_window(ordered[seed], ordered[j], settings.time_window_hours)
                and shares_keywords(subset, j)
            ):
                subset.append(j)
            else:
                leftover.append(j)
        if len(subset) >= 2:
            subsets.append(subset)
        remaining = leftover
    return subsets


def form_clusters(
    articles: Sequence[Article], settings: Optional[ClusterSettings] = None
) -> list[ClusterCandidate]:
    """Complete-linkage grouping over article embeddings.

    Agglomerative clustering with a cosine distance threshold puts articles
    together only when every pair clears the similarity threshold. Each group
    is then split, newest article first, so that members also share enough
    keywords (when enabled), sit within the time window of the subset's newest
    article, and stay under the member cap. Subsets that miss the
    member/source minimums are dropped.
    """
    settings = settings or ClusterSettings()
    usable = [a for a in articles if a.embedding and np.any(a.embedding)]
    if len(usable) < settings.min_articles:
        return []

    ordered = _newest_first(usable)
    dims = Counter(len(a.embedding or []) for a in ordered).most_common(1)[0][0]
    mismatched = [a.id for a in ordered if len(a.embedding or []) != dims]
    if mismatched:
        logger.warning("Skipping %d articles with mismatched embedding size", len(mismatched))
        ordered = [a for a in ordered if len(a.embedding or []) == dims]
        if len(ordered) < settings.min_articles:
            return []

    labels = _agglomerative_labels(ordered, settings.similarity_threshold)
    sims = similarity_matrix(ordered)
    if settings.keyword_overlap_min > 0:
        keywords = [extract_keywords(f"{a.title} {a.excerpt or ''}") for a in ordered]
    else:
        keywords = [set() for _ in ordered]

    groups: dict[int, list[int]] = {}
    for idx, label in enumerate(labels):
        groups.setdefault(int(label), []).append(idx)

    candidates: list[ClusterCandidate] = []
    for members in sorted(groups.values(), key=lambda g: g[0]):
        for subset in _split_group(members, ordered, keywords, settings):
            candidate = ClusterCandidate(
                members=[ordered[i] for i in subset],
                avg_similarity=mean_pairwise_similarity(sims, subset),
                generation_method="vector",
            )
            if _passes_post_filter(candidate, settings):
                candidates.append(candidate)
    return candidates


def candidates_from_groups(
    groups: Sequence[TopicGroup],
    articles: Sequence[Article],
    settings: Optional[ClusterSettings] = None,
) -> list[ClusterCandidate]:
    settings = settings or ClusterSettings()
    by_id = {a.id: a for a in articles}
    candidates: list[ClusterCandidate] = []
    for group in groups:
        members = [by_id[i] for i in dict.fromkeys(group.article_ids) if i in by_id]
        members = members[: settings.max_members]
        avg = 0.0
        if len(members) >= 2 and all(m.embedding for m in members):
            if len({len(m.embedding or []) for m in members}) == 1:
                avg = mean_pairwise_similarity(
                    similarity_matrix(members), list(range(len(members)))
                )
        candidate = ClusterCandidate(
            members=members,
            avg_similarity=avg,
            generation_method="text",
            topic=group.topic,
            summary=group.summary,
        )
        if _passes_post_filter(candidate, settings):
            candidates.append(candidate)
    return candidates


class ClusterGenerator:
    def __init__(
        self,
        storage: PipelineStorage,
        provider: ClusteringProvider,
        settings: Optional[ClusterSettings] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.storage = storage
        self.provider = provider
        self.settings = settings or ClusterSettings()
        self.clock = clock

    async def generate_clusters(
        self,
        feed_ids: Optional[Sequence[str]] = None,
        hours_back: Optional[float] = None,
    ) -> ClusterGenerationResult:
        started = time.monotonic()
        now = self.clock()
        if hours_back is None:
            hours_back = self.settings.lookback_hours
        since = now - timedelta(hours=hours_back)

        embedded = await self.storage.get_articles_with_embeddings(since, feed_ids)
        logger.info("Found %d articles with embeddings for clustering", len(embedded))

        method: GenerationMethod = "vector"
        articles_processed = len(embedded)
        candidates: list[ClusterCandidate] = []
        if len(embedded) >= self.settings.min_articles:
            candidates = form_clusters(embedded, self.settings)
            logger.info("Vector clustering found %d candidates", len(candidates))

        if not candidates and self.provider.is_configured():
            recent = _newest_first(await self.storage.get_recent_articles(since, feed_ids))
            logger.info("Falling back to text clustering over %d articles", len(recent))
            if len(recent) >= self.settings.min_articles:
                groups = await self.provider.group_articles_by_topic(recent)
                candidates = candidates_from_groups(groups, recent, self.settings)
                method = "text"
                articles_processed = len(recent)

        clusters: list[Cluster] = []
        for candidate in candidates:
            try:
                clusters.append(await self._persist(candidate, now))
            except StorageFailure:
                raise
            except Exception:
                logger.exception(
                    "Failed to persist cluster candidate with %d articles",
                    len(candidate.members),
                )
        clusters.sort(key=lambda c: c.relevance_score, reverse=True)

        elapsed_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            "Clustering complete: %d clusters (%s) from %d articles in %dms",
            len(clusters),
            method,
            articles_processed,
            elapsed_ms,
        )
        return ClusterGenerationResult(
            clusters=clusters,
            articles_processed=articles_processed,
            method=method,
            processing_time_ms=elapsed_ms,
        )

    async def _persist(self, candidate: ClusterCandidate, now: datetime) -> Cluster:
        if candidate.topic and candidate.summary:
            topic, summary = candidate.topic, candidate.summary
        else:
            label = await self.provider.generate_cluster_label(candidate.members)
            topic, summary = label.topic, label.summary

        article_ids = list(dict.fromkeys(m.id for m in candidate.members))
        sources = candidate.sources
        dates = [m.published_at for m in candidate.members if m.published_at is not None]
        cluster = Cluster(
            id=str(uuid.uuid4()),
            topic=topic,
            summary=summary,
            article_ids=article_ids,
            sources=sources,
            avg_similarity=candidate.avg_similarity,
            relevance_score=relevance_score(len(article_ids), len(sources)),
            generation_method=candidate.generation_method,
            created_at=now,
            expires_at=now + timedelta(hours=self.settings.ttl_hours),
            timeframe_start=min(dates) if dates else None,
            timeframe_end=max(dates) if dates else None,
        )
        await self.storage.create_cluster(cluster)
        logger.info(
            'Created cluster "%s" with %d articles from %d sources over %.1fh',
            topic,
            cluster.member_count,
            cluster.source_count,
            time_span_hours(candidate.members) or 0.0,
        )
        return cluster

    async def expire_old_clusters(self) -> int:
        deleted = await self.storage.delete_expired_clusters(self.clock())
        if deleted:
            logger.info("Expired %d old clusters", deleted)
        return deleted

    async def get_active_clusters(self, limit: int = 10) -> list[Cluster]:
        return await self.storage.get_clusters(self.clock(), include_expired=False, limit=limit)

    async def find_similar_articles(
        self,
        article_id: str,
        feed_ids: Optional[Sequence[str]] = None,
        threshold: float = SIMILAR_ARTICLES_THRESHOLD,
        max_results: int = MAX_SIMILAR_ARTICLES,
    ) -> list[SimilarArticle]:
        """Nearest embedded neighbours of one article within the lookback window."""
        source = (await self.storage.get_articles([article_id])).get(article_id)
        if source is None or not source.embedding:
            return []

        since = self.clock() - timedelta(hours=self.settings.lookback_hours)
        pool = [
            a
            for a in await self.storage.get_articles_with_embeddings(since, feed_ids)
            if a.id != article_id and len(a.embedding or []) == len(source.embedding)
        ]
        if not pool:
            return []

        scores = cosine_similarity(
            np.asarray([source.embedding], dtype=np.float64),
            np.asarray([a.embedding for a in pool], dtype=np.float64),
        )[0]
        ranked = sorted(
            ((float(s), a) for s, a in zip(scores, pool) if s >= threshold),
            key=lambda pair: pair[0],
            reverse=True,
        )
        return [
            SimilarArticle(
                article_id=a.id,
                title=a.title,
                feed_name=a.feed_name,
                feed_id=a.feed_id,
                similarity_score=score,
                published_at=a.published_at,
            )
            for score, a in ranked[:max_results]
        ]
