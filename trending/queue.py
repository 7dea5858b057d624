"""Embedding queue: enqueue articles and drain claimed batches with retry/backoff."""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Sequence
from datetime import datetime, timedelta, timezone
from typing import Optional

from trending.constants import (
    EMBEDDING_UNAVAILABLE_REASON,
    MAX_BATCH_SIZE,
    MAX_RETRY_ATTEMPTS,
    RETRY_DELAYS_MS,
    STALE_CLAIM_TIMEOUT_SECONDS,
)
from trending.embeddings import EmbeddingProvider
from trending.errors import PipelineError, ServiceUnavailable, StorageFailure
from trending.hashing import content_hash, needs_embedding_update, prepare_embedding_input
from trending.models import (
    Article,
    EmbeddingOutcome,
    EmbeddingQueueItem,
    QueueProcessResult,
)
from trending.storage import PipelineStorage

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def retry_delay(attempt_count: int) -> timedelta:
    """Backoff before retry number ``attempt_count`` (1-based)."""
    idx = min(max(attempt_count, 1), len(RETRY_DELAYS_MS)) - 1
    return timedelta(milliseconds=RETRY_DELAYS_MS[idx])


class EmbeddingQueueManager:
    def __init__(
        self,
        storage: PipelineStorage,
        provider: EmbeddingProvider,
        clock: Callable[[], datetime] = utc_now,
        stale_claim_timeout: float = STALE_CLAIM_TIMEOUT_SECONDS,
    ) -> None:
        self.storage = storage
        self.provider = provider
        self.clock = clock
        self.stale_claim_timeout = timedelta(seconds=stale_claim_timeout)

    async def enqueue(self, article_ids: Sequence[str], priority: int = 0) -> int:
        """Queue articles for embedding; returns how many new items were created."""
        if not article_ids:
            return 0
        queued = await self.storage.enqueue_articles(article_ids, self.clock(), priority)
        logger.info(
            "Queued %d/%d articles for embedding (priority %d)",
            queued,
            len(article_ids),
            priority,
        )
        return queued

    async def enqueue_if_needed(self, articles: Sequence[Article], priority: int = 0) -> int:
        stale = [a.id for a in articles if needs_embedding_update(a)]
        if not stale:
            return 0
        return await self.enqueue(stale, priority)

    async def process_queue(self, max_items: int = MAX_BATCH_SIZE) -> QueueProcessResult:
        """Claim and embed up to ``min(max_items, 100)`` queue items.

        Item failures are recorded on the queue row and counted. A
        StorageFailure from claiming, from loading or marking the claimed
        articles, or from the final queue count escapes. Items this call already
        claimed then stay ``processing`` until the stale-claim timeout makes
        them claimable again.
        """
        limit = min(max(0, max_items), MAX_BATCH_SIZE)
        result = QueueProcessResult()
        if limit == 0:
            result.remaining_in_queue = await self.storage.count_queue_items("pending")
            return result

        now = self.clock()
        token = str(uuid.uuid4())
        items = await self.storage.claim_queue_items(
            limit, now, now - self.stale_claim_timeout, token
        )
        if items:
            await self._process_claimed(items, token, now, result)

        result.remaining_in_queue = await self.storage.count_queue_items("pending")
        logger.info(
            "Embedding queue drain: %d processed, %d succeeded, %d failed, %d remaining",
            result.processed,
            result.succeeded,
            result.failed,
            result.remaining_in_queue,
        )
        return result

    async def _process_claimed(
        self,
        items: list[EmbeddingQueueItem],
        token: str,
        now: datetime,
        result: QueueProcessResult,
    ) -> None:
        articles = await self.storage.get_articles([i.article_id for i in items])
        live: list[tuple[EmbeddingQueueItem, Article]] = []
        for item in items:
            article = articles.get(item.article_id)
            if article is None:
                logger.info("Article %s no longer exists, retiring queue item", item.article_id)
                await self.storage.retire_queue_item(item.id, token)
            else:
                live.append((item, article))
        if not live:
            return

        await self.storage.mark_articles_processing([a.id for _, a in live])
        result.processed = len(live)

        if not self.provider.is_configured():
            await self._fail_all_unavailable(live, token, result)
            return

        inputs = [(a.id, prepare_embedding_input(a.title, a.excerpt)) for _, a in live]
        try:
            outcomes = await self.provider.embed_batch(inputs)
        except ServiceUnavailable:
            await self._fail_all_unavailable(live, token, result)
            return
        except Exception as e:
            logger.exception("Embedding batch call failed")
            outcomes = [
                EmbeddingOutcome(article_id=aid, error=f"{type(e).__name__}: {e}")
                for aid, _ in inputs
            ]

        by_article = {o.article_id: o for o in outcomes}
        for item, article in live:
            outcome = by_article.get(article.id) or EmbeddingOutcome(
                article_id=article.id, error="No embedding outcome returned"
            )
            try:
                if outcome.ok and outcome.embedding is not None:
                    await self._complete(item, article, outcome.embedding, token, now)
                    result.succeeded += 1
                else:
                    await self._record_failure(item, token, outcome.error or "Unknown error", now)
                    result.failed += 1
            except PipelineError as e:
                # The claim lapses and the item is picked up again after the stale timeout.
                logger.error("Failed to persist outcome for article %s: %s", article.id, e)
                result.failed += 1

    async def _complete(
        self,
        item: EmbeddingQueueItem,
        article: Article,
        embedding: list[float],
        token: str,
        now: datetime,
    ) -> None:
        await self.storage.save_article_embedding(
            article.id,
            embedding,
            content_hash(article.title, article.excerpt),
            now,
        )
        if not await self.storage.retire_queue_item(item.id, token):
            logger.debug("Queue item %s was reclaimed before retirement", item.id)

    async def _record_failure(
        self, item: EmbeddingQueueItem, token: str, error: str, now: datetime
    ) -> None:
        attempts = item.attempt_count + 1
        if attempts >= MAX_RETRY_ATTEMPTS:
            if await self.storage.fail_queue_item(item.id, token, attempts, error):
                await self.storage.mark_article_embedding_failed(item.article_id, error)
            logger.warning(
                "Embedding for article %s failed permanently after %d attempts: %s",
                item.article_id,
                attempts,
                error,
            )
            return

        not_before = now + retry_delay(attempts)
        if await self.storage.release_queue_item(item.id, token, attempts, error, not_before):
            await self.storage.mark_article_pending(item.article_id, error)
        logger.info(
            "Embedding for article %s failed (attempt %d/%d), retry after %s: %s",
            item.article_id,
            attempts,
            MAX_RETRY_ATTEMPTS,
            not_before.isoformat(),
            error,
        )

    async def _fail_all_unavailable(
        self,
        live: list[tuple[EmbeddingQueueItem, Article]],
        token: str,
        result: QueueProcessResult,
    ) -> None:
        logger.warning(
            "Embedding service unavailable, failing %d claimed items", len(live)
        )
        for item, _ in live:
            try:
                if await self.storage.fail_queue_item(
                    item.id, token, item.attempt_count, EMBEDDING_UNAVAILABLE_REASON
                ):
                    await self.storage.mark_article_embedding_failed(
                        item.article_id, EMBEDDING_UNAVAILABLE_REASON
                    )
            except StorageFailure as e:
                logger.error("Failed to mark article %s unavailable: %s", item.article_id, e)
            result.failed += 1

    async def get_queue_stats(self) -> dict[str, int]:
        pending = await self.storage.count_queue_items("pending")
        processing = await self.storage.count_queue_items("processing")
        failed = await self.storage.count_queue_items("failed")
        return {"pending": pending, "processing": processing, "failed": failed}


def oldest_claim_age(items: Sequence[EmbeddingQueueItem], now: datetime) -> Optional[float]:
    """Seconds since the oldest outstanding claim, for stats output."""
    claimed = [i.claimed_at for i in items if i.status == "processing" and i.claimed_at]
    if not claimed:
        return None
    return (now - min(claimed)).total_seconds()
