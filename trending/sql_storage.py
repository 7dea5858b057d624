"""SQLAlchemy-backed implementation of the pipeline storage contract.

Claims select candidate rows with ``FOR UPDATE SKIP LOCKED`` (a no-op on
SQLite) and then move them with a conditional UPDATE stamped with the caller's
claim token, so overlapping invocations never share a queue item.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Callable, Sequence
from datetime import datetime, timezone
from typing import Any, Optional, TypeVar

import sqlalchemy as sa
from sqlalchemy.engine import Connection, Engine, RowMapping
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from trending.errors import StorageFailure
from trending.models import Article, Cluster, EmbeddingQueueItem, QueueStatus

logger = logging.getLogger(__name__)

T = TypeVar("T")

CLAIM_ROUNDS = 8

metadata = sa.MetaData()

articles_table = sa.Table(
    "articles",
    metadata,
    sa.Column("id", sa.String(64), primary_key=True),
    sa.Column("title", sa.Text, nullable=False),
    sa.Column("excerpt", sa.Text),
    sa.Column("feed_id", sa.String(64), nullable=False, default=""),
    sa.Column("feed_name", sa.String(255), nullable=False, default=""),
    sa.Column("published_at", sa.DateTime(timezone=True)),
    sa.Column("embedding", sa.JSON(none_as_null=True)),
    sa.Column("embedding_status", sa.String(16), nullable=False, default="pending"),
    sa.Column("content_hash", sa.String(64)),
    sa.Column("embedding_error", sa.Text),
    sa.Column("embedding_generated_at", sa.DateTime(timezone=True)),
    sa.Index("idx_articles_embedding_generated", "embedding_generated_at"),
)

queue_table = sa.Table(
    "embedding_queue",
    metadata,
    sa.Column("id", sa.String(36), primary_key=True),
    sa.Column("article_id", sa.String(64), nullable=False, unique=True),
    sa.Column("status", sa.String(16), nullable=False, default="pending"),
    sa.Column("attempt_count", sa.Integer, nullable=False, default=0),
    sa.Column("last_error", sa.Text),
    sa.Column("enqueued_at", sa.DateTime(timezone=True), nullable=False),
    sa.Column("not_before", sa.DateTime(timezone=True)),
    sa.Column("claimed_at", sa.DateTime(timezone=True)),
    sa.Column("claim_token", sa.String(36)),
    sa.Column("priority", sa.Integer, nullable=False, default=0),
    sa.Index("idx_embedding_queue_claim", "status", "priority", "enqueued_at"),
)

clusters_table = sa.Table(
    "clusters",
    metadata,
    sa.Column("id", sa.String(36), primary_key=True),
    sa.Column("topic", sa.Text, nullable=False),
    sa.Column("summary", sa.Text, nullable=False),
    sa.Column("article_ids", sa.JSON, nullable=False),
    sa.Column("sources", sa.JSON, nullable=False),
    sa.Column("avg_similarity", sa.Float, nullable=False),
    sa.Column("relevance_score", sa.Float, nullable=False),
    sa.Column("generation_method", sa.String(16), nullable=False),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
    sa.Column("timeframe_start", sa.DateTime(timezone=True)),
    sa.Column("timeframe_end", sa.DateTime(timezone=True)),
    sa.CheckConstraint("expires_at > created_at", name="ck_clusters_expiry"),
    sa.Index("idx_clusters_expires_at", "expires_at"),
)

clustering_runs_table = sa.Table(
    "clustering_runs",
    metadata,
    sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
    sa.Column("ran_at", sa.DateTime(timezone=True), nullable=False),
    sa.Column("clusters_created", sa.Integer, nullable=False, default=0),
)


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; everything is stored as UTC.
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _article_from_row(row: RowMapping) -> Article:
    return Article(
        id=row["id"],
        title=row["title"],
        excerpt=row["excerpt"],
        feed_id=row["feed_id"] or "",
        feed_name=row["feed_name"] or "",
        published_at=_aware(row["published_at"]),
        embedding=list(row["embedding"]) if row["embedding"] else None,
        embedding_status=row["embedding_status"],
        content_hash=row["content_hash"],
        embedding_error=row["embedding_error"],
        embedding_generated_at=_aware(row["embedding_generated_at"]),
    )


def _item_from_row(row: RowMapping) -> EmbeddingQueueItem:
    return EmbeddingQueueItem(
        id=row["id"],
        article_id=row["article_id"],
        status=row["status"],
        attempt_count=row["attempt_count"],
        last_error=row["last_error"],
        enqueued_at=_aware(row["enqueued_at"]),
        not_before=_aware(row["not_before"]),
        claimed_at=_aware(row["claimed_at"]),
        claim_token=row["claim_token"],
        priority=row["priority"],
    )


def _cluster_from_row(row: RowMapping) -> Cluster:
    return Cluster(
        id=row["id"],
        topic=row["topic"],
        summary=row["summary"],
        article_ids=list(row["article_ids"]),
        sources=list(row["sources"]),
        avg_similarity=row["avg_similarity"],
        relevance_score=row["relevance_score"],
        generation_method=row["generation_method"],
        created_at=_aware(row["created_at"]),  # type: ignore[arg-type]
        expires_at=_aware(row["expires_at"]),  # type: ignore[arg-type]
        timeframe_start=_aware(row["timeframe_start"]),
        timeframe_end=_aware(row["timeframe_end"]),
    )


class SqlStorage:
    """Blocking SQLAlchemy calls run in worker threads via ``asyncio.to_thread``."""

    def __init__(self, engine: Engine, create_schema: bool = True) -> None:
        self.engine = engine
        self._schema_ready = not create_schema

    @classmethod
    def from_url(cls, url: str, create_schema: bool = True) -> SqlStorage:
        engine = sa.create_engine(url, pool_pre_ping=True)
        return cls(engine, create_schema=create_schema)

    async def _run(self, fn: Callable[[Connection], T]) -> T:
        def work() -> T:
            with self.engine.begin() as conn:
                if not self._schema_ready:
                    metadata.create_all(conn)
                    self._schema_ready = True
                return fn(conn)

        try:
            return await asyncio.to_thread(work)
        except SQLAlchemyError as exc:
            raise StorageFailure(str(exc)) from exc

    async def ping(self) -> None:
        await self._run(lambda conn: conn.execute(sa.text("SELECT 1")).scalar())

    async def upsert_articles(self, articles: Sequence[Article]) -> None:
        def work(conn: Connection) -> None:
            for a in articles:
                values: dict[str, Any] = {
                    "title": a.title,
                    "excerpt": a.excerpt,
                    "feed_id": a.feed_id,
                    "feed_name": a.feed_name,
                    "published_at": a.published_at,
                    "embedding": a.embedding,
                    "embedding_status": a.embedding_status,
                    "content_hash": a.content_hash,
                    "embedding_error": a.embedding_error,
                    "embedding_generated_at": a.embedding_generated_at,
                }
                updated = conn.execute(
                    sa.update(articles_table)
                    .where(articles_table.c.id == a.id)
                    .values(**values)
                )
                if not updated.rowcount:
                    conn.execute(sa.insert(articles_table).values(id=a.id, **values))

        await self._run(work)

    async def get_articles(self, article_ids: Sequence[str]) -> dict[str, Article]:
        if not article_ids:
            return {}

        def work(conn: Connection) -> dict[str, Article]:
            rows = conn.execute(
                sa.select(articles_table).where(articles_table.c.id.in_(list(article_ids)))
            ).mappings()
            return {row["id"]: _article_from_row(row) for row in rows}

        return await self._run(work)

    async def enqueue_articles(
        self, article_ids: Sequence[str], now: datetime, priority: int = 0
    ) -> int:
        q = queue_table.c

        def enqueue_one(conn: Connection, article_id: str) -> bool:
            existing = conn.execute(
                sa.select(queue_table).where(q.article_id == article_id)
            ).mappings().first()
            if existing is not None and existing["status"] in ("pending", "processing"):
                if priority > existing["priority"]:
                    conn.execute(
                        sa.update(queue_table)
                        .where(q.id == existing["id"])
                        .values(priority=priority)
                    )
                return False
            fresh = {
                "status": "pending",
                "attempt_count": 0,
                "last_error": None,
                "enqueued_at": now,
                "not_before": None,
                "claimed_at": None,
                "claim_token": None,
                "priority": priority,
            }
            if existing is not None:
                # Terminal row: replace in place, guarded against a concurrent re-enqueue.
                result = conn.execute(
                    sa.update(queue_table)
                    .where(q.id == existing["id"], q.status == existing["status"])
                    .values(**fresh)
                )
                if not result.rowcount:
                    return False
            else:
                conn.execute(
                    sa.insert(queue_table).values(
                        id=str(uuid.uuid4()), article_id=article_id, **fresh
                    )
                )
            conn.execute(
                sa.update(articles_table)
                .where(articles_table.c.id == article_id)
                .values(
                    embedding=None,
                    embedding_status="pending",
                    embedding_generated_at=None,
                    embedding_error=None,
                )
            )
            return True

        queued = 0
        for article_id in dict.fromkeys(article_ids):
            try:
                if await self._run(lambda conn, aid=article_id: enqueue_one(conn, aid)):
                    queued += 1
            except StorageFailure as exc:
                if isinstance(exc.__cause__, IntegrityError):
                    # Another invocation queued it first.
                    continue
                raise
        return queued

    async def claim_queue_items(
        self, limit: int, now: datetime, stale_before: datetime, claim_token: str
    ) -> list[EmbeddingQueueItem]:
        """Claim up to ``limit`` items for ``claim_token``.

        Each round selects candidates and claims them with a conditional
        update in its own transaction. SQLite ignores ``SKIP LOCKED``, so two
        overlapping claimers can select the same rows and the loser's update
        matches nothing. A round that loses rows is retried for the shortfall,
        up to ``CLAIM_ROUNDS`` rounds.
        """
        if limit <= 0:
            return []
        q = queue_table.c
        claimable = sa.or_(
            sa.and_(q.status == "pending", sa.or_(q.not_before.is_(None), q.not_before <= now)),
            sa.and_(q.status == "processing", q.claimed_at < stale_before),
        )

        def claim_round(conn: Connection, wanted: int) -> tuple[int, int]:
            ids = (
                conn.execute(
                    sa.select(q.id)
                    .where(claimable)
                    .order_by(q.priority.desc(), q.enqueued_at.asc())
                    .limit(wanted)
                    .with_for_update(skip_locked=True)
                )
                .scalars()
                .all()
            )
            if not ids:
                return 0, 0
            result = conn.execute(
                sa.update(queue_table)
                .where(q.id.in_(ids), claimable)
                .values(status="processing", claimed_at=now, claim_token=claim_token)
            )
            return len(ids), result.rowcount

        claimed = 0
        for _ in range(CLAIM_ROUNDS):
            selected, updated = await self._run(
                lambda conn, wanted=limit - claimed: claim_round(conn, wanted)
            )
            claimed += updated
            if claimed >= limit or selected == 0 or updated == selected:
                break
            logger.debug("Claim round lost %d rows to another claimer", selected - updated)

        def load(conn: Connection) -> list[EmbeddingQueueItem]:
            rows = conn.execute(
                sa.select(queue_table)
                .where(q.claim_token == claim_token, q.status == "processing")
                .order_by(q.priority.desc(), q.enqueued_at.asc())
            ).mappings()
            return [_item_from_row(row) for row in rows]

        return await self._run(load)

    def _held(self, item_id: str, claim_token: str) -> sa.ColumnElement[bool]:
        q = queue_table.c
        return sa.and_(q.id == item_id, q.status == "processing", q.claim_token == claim_token)

    async def retire_queue_item(self, item_id: str, claim_token: str) -> bool:
        def work(conn: Connection) -> bool:
            result = conn.execute(sa.delete(queue_table).where(self._held(item_id, claim_token)))
            return bool(result.rowcount)

        return await self._run(work)

    async def release_queue_item(
        self,
        item_id: str,
        claim_token: str,
        attempt_count: int,
        error: str,
        not_before: datetime,
    ) -> bool:
        def work(conn: Connection) -> bool:
            result = conn.execute(
                sa.update(queue_table)
                .where(self._held(item_id, claim_token))
                .values(
                    status="pending",
                    attempt_count=attempt_count,
                    last_error=error,
                    not_before=not_before,
                    claimed_at=None,
                    claim_token=None,
                )
            )
            return bool(result.rowcount)

        return await self._run(work)

    async def fail_queue_item(
        self, item_id: str, claim_token: str, attempt_count: int, error: str
    ) -> bool:
        def work(conn: Connection) -> bool:
            result = conn.execute(
                sa.update(queue_table)
                .where(self._held(item_id, claim_token))
                .values(
                    status="failed",
                    attempt_count=attempt_count,
                    last_error=error,
                    claimed_at=None,
                    claim_token=None,
                )
            )
            return bool(result.rowcount)

        return await self._run(work)

    async def count_queue_items(self, status: Optional[QueueStatus] = None) -> int:
        stmt = sa.select(sa.func.count()).select_from(queue_table)
        if status is not None:
            stmt = stmt.where(queue_table.c.status == status)
        return await self._run(lambda conn: int(conn.execute(stmt).scalar_one()))

    async def get_queue_items(self) -> list[EmbeddingQueueItem]:
        def work(conn: Connection) -> list[EmbeddingQueueItem]:
            rows = conn.execute(sa.select(queue_table)).mappings()
            return [_item_from_row(row) for row in rows]

        return await self._run(work)

    async def mark_articles_processing(self, article_ids: Sequence[str]) -> None:
        if not article_ids:
            return
        a = articles_table.c
        await self._run(
            lambda conn: conn.execute(
                sa.update(articles_table)
                .where(a.id.in_(list(article_ids)), a.embedding_status != "completed")
                .values(embedding_status="processing")
            )
        )

    async def save_article_embedding(
        self,
        article_id: str,
        embedding: list[float],
        content_hash: str,
        generated_at: datetime,
    ) -> None:
        await self._run(
            lambda conn: conn.execute(
                sa.update(articles_table)
                .where(articles_table.c.id == article_id)
                .values(
                    embedding=list(embedding),
                    embedding_status="completed",
                    content_hash=content_hash,
                    embedding_error=None,
                    embedding_generated_at=generated_at,
                )
            )
        )

    async def mark_article_pending(self, article_id: str, error: str) -> None:
        await self._run(
            lambda conn: conn.execute(
                sa.update(articles_table)
                .where(articles_table.c.id == article_id)
                .values(
                    embedding=None,
                    embedding_status="pending",
                    embedding_error=error,
                    embedding_generated_at=None,
                )
            )
        )

    async def mark_article_embedding_failed(self, article_id: str, error: str) -> None:
        await self._run(
            lambda conn: conn.execute(
                sa.update(articles_table)
                .where(articles_table.c.id == article_id)
                .values(
                    embedding=None,
                    embedding_status="failed",
                    embedding_error=error,
                    embedding_generated_at=None,
                )
            )
        )

    def _recent(self, since: datetime, feed_ids: Optional[Sequence[str]]) -> sa.Select[Any]:
        a = articles_table.c
        stmt = sa.select(articles_table).where(a.published_at >= since)
        if feed_ids is not None:
            stmt = stmt.where(a.feed_id.in_(list(feed_ids)))
        return stmt.order_by(a.published_at.desc())

    async def get_articles_with_embeddings(
        self, since: datetime, feed_ids: Optional[Sequence[str]] = None
    ) -> list[Article]:
        a = articles_table.c
        stmt = self._recent(since, feed_ids).where(
            a.embedding_status == "completed", a.embedding.is_not(None)
        )

        def work(conn: Connection) -> list[Article]:
            return [_article_from_row(row) for row in conn.execute(stmt).mappings()]

        return await self._run(work)

    async def get_recent_articles(
        self, since: datetime, feed_ids: Optional[Sequence[str]] = None
    ) -> list[Article]:
        stmt = self._recent(since, feed_ids)

        def work(conn: Connection) -> list[Article]:
            return [_article_from_row(row) for row in conn.execute(stmt).mappings()]

        return await self._run(work)

    async def count_embedded_since(self, since: datetime) -> int:
        a = articles_table.c
        stmt = (
            sa.select(sa.func.count())
            .select_from(articles_table)
            .where(a.embedding_status == "completed", a.embedding_generated_at >= since)
        )
        return await self._run(lambda conn: int(conn.execute(stmt).scalar_one()))

    async def create_cluster(self, cluster: Cluster) -> Cluster:
        await self._run(
            lambda conn: conn.execute(
                sa.insert(clusters_table).values(
                    id=cluster.id,
                    topic=cluster.topic,
                    summary=cluster.summary,
                    article_ids=list(cluster.article_ids),
                    sources=list(cluster.sources),
                    avg_similarity=cluster.avg_similarity,
                    relevance_score=cluster.relevance_score,
                    generation_method=cluster.generation_method,
                    created_at=cluster.created_at,
                    expires_at=cluster.expires_at,
                    timeframe_start=cluster.timeframe_start,
                    timeframe_end=cluster.timeframe_end,
                )
            )
        )
        return cluster

    async def get_clusters(
        self, now: datetime, include_expired: bool = False, limit: Optional[int] = None
    ) -> list[Cluster]:
        c = clusters_table.c
        stmt = sa.select(clusters_table)
        if not include_expired:
            stmt = stmt.where(c.expires_at > now)
        stmt = stmt.order_by(c.relevance_score.desc(), c.created_at.desc())
        if limit is not None:
            stmt = stmt.limit(limit)

        def work(conn: Connection) -> list[Cluster]:
            return [_cluster_from_row(row) for row in conn.execute(stmt).mappings()]

        return await self._run(work)

    async def delete_expired_clusters(self, now: datetime) -> int:
        def work(conn: Connection) -> int:
            result = conn.execute(
                sa.delete(clusters_table).where(clusters_table.c.expires_at <= now)
            )
            return int(result.rowcount or 0)

        return await self._run(work)

    async def get_last_clustering_at(self) -> Optional[datetime]:
        stmt = sa.select(sa.func.max(clustering_runs_table.c.ran_at))
        return await self._run(lambda conn: _aware(conn.execute(stmt).scalar()))

    async def record_clustering_run(self, at: datetime, clusters_created: int) -> None:
        await self._run(
            lambda conn: conn.execute(
                sa.insert(clustering_runs_table).values(
                    ran_at=at, clusters_created=clusters_created
                )
            )
        )
