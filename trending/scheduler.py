"""Orchestrator: one scheduled pass of embedding drain plus gated clustering."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

from trending.clustering import ClusterGenerator
from trending.config import PipelineSettings
from trending.constants import (
    SCHEDULED_EMBEDDING_BATCH,
    SCHEDULER_MAX_ERRORS,
    TRIGGER_NEW_ARTICLE_WINDOW_HOURS,
)
from trending.embeddings import EmbeddingProvider
from trending.errors import PipelineError
from trending.llm import ClusteringProvider
from trending.models import RunReport
from trending.queue import EmbeddingQueueManager, utc_now
from trending.sql_storage import SqlStorage
from trending.storage import InMemoryStorage, PipelineStorage
from trending.trigger import should_run_clustering

logger = logging.getLogger(__name__)


@dataclass
class SchedulerStats:
    """Cumulative counters across orchestrator runs in this process."""

    runs: int = 0
    failed_runs: int = 0
    last_run_at: Optional[datetime] = None
    embeddings_processed: int = 0
    embeddings_succeeded: int = 0
    embeddings_failed: int = 0
    clustering_runs: int = 0
    clusters_created: int = 0
    last_clustering_at: Optional[datetime] = None
    errors: list[str] = field(default_factory=list)
    max_errors: int = SCHEDULER_MAX_ERRORS

    def record(self, report: RunReport, clustered: bool = False) -> None:
        self.runs += 1
        self.last_run_at = report.timestamp
        if not report.success:
            self.failed_runs += 1
        self.embeddings_processed += report.embeddings.processed
        self.embeddings_succeeded += report.embeddings.succeeded
        self.embeddings_failed += report.embeddings.failed
        if clustered:
            self.clustering_runs += 1
            self.clusters_created += report.clusters.clusters_created
            self.last_clustering_at = report.timestamp
        new_errors = list(report.errors)
        if report.error:
            new_errors.append(report.error)
        self.errors = (self.errors + new_errors)[-self.max_errors :]

    def to_dict(self) -> dict[str, object]:
        return {
            "runs": self.runs,
            "failedRuns": self.failed_runs,
            "lastRunAt": self.last_run_at.isoformat() if self.last_run_at else None,
            "embeddings": {
                "processed": self.embeddings_processed,
                "succeeded": self.embeddings_succeeded,
                "failed": self.embeddings_failed,
            },
            "clusteringRuns": self.clustering_runs,
            "clustersCreated": self.clusters_created,
            "lastClusteringAt": self.last_clustering_at.isoformat()
            if self.last_clustering_at
            else None,
            "recentErrors": list(self.errors),
        }


class Orchestrator:
    def __init__(
        self,
        storage: PipelineStorage,
        queue: EmbeddingQueueManager,
        generator: ClusterGenerator,
        stats: Optional[SchedulerStats] = None,
        clock: Callable[[], datetime] = utc_now,
        embedding_batch_size: int = SCHEDULED_EMBEDDING_BATCH,
        trigger_window_hours: float = TRIGGER_NEW_ARTICLE_WINDOW_HOURS,
    ) -> None:
        self.storage = storage
        self.queue = queue
        self.generator = generator
        self.stats = stats if stats is not None else SchedulerStats()
        self.clock = clock
        self.embedding_batch_size = embedding_batch_size
        self.trigger_window = timedelta(hours=trigger_window_hours)

    async def run_once(self) -> RunReport:
        """Run both phases; only an unreachable store fails the whole pass."""
        now = self.clock()
        report = RunReport(timestamp=now)

        try:
            await self.storage.ping()
        except PipelineError as e:
            logger.error("Storage health check failed: %s", e)
            report.success = False
            report.error = f"Storage unavailable: {e}"
            self.stats.record(report)
            return report

        await self._embedding_phase(report)
        clustered = await self._clustering_phase(report, now)

        self.stats.record(report, clustered=clustered)
        logger.info(
            "AI jobs complete: %d embeddings succeeded, %d clusters created, %d errors",
            report.embeddings.succeeded,
            report.clusters.clusters_created,
            len(report.errors),
        )
        return report

    async def _embedding_phase(self, report: RunReport) -> None:
        if not self.queue.provider.is_configured():
            report.skipped.append("embeddings: embedding service not configured")
            return
        try:
            report.embeddings = await self.queue.process_queue(self.embedding_batch_size)
        except Exception as e:
            logger.exception("Embedding phase failed")
            report.errors.append(f"Embedding processing failed: {e}")

    async def _clustering_phase(self, report: RunReport, now: datetime) -> bool:
        if not self.generator.provider.is_configured():
            report.skipped.append("clustering: clustering service not configured")
            return False

        try:
            await self.generator.expire_old_clusters()
        except Exception as e:
            logger.exception("Cluster expiry failed")
            report.errors.append(f"Cluster expiry failed: {e}")

        try:
            last_run = await self.storage.get_last_clustering_at()
            new_count = await self.storage.count_embedded_since(now - self.trigger_window)
            decision = should_run_clustering(last_run, now, new_count)
            if not decision.run:
                logger.info("Skipping clustering: %s", decision.reason)
                report.skipped.append(f"clustering: {decision.reason}")
                return False

            logger.info("Running clustering: %s", decision.reason)
            report.clusters = await self.generator.generate_clusters()
            await self.storage.record_clustering_run(now, report.clusters.clusters_created)
            return True
        except Exception as e:
            logger.exception("Clustering phase failed")
            report.errors.append(f"Cluster generation failed: {e}")
            return False


def create_storage(settings: PipelineSettings) -> PipelineStorage:
    if settings.database_url:
        return SqlStorage.from_url(settings.database_url)
    logger.warning("DATABASE_URL not set, using in-memory storage")
    return InMemoryStorage()


def build_orchestrator(
    settings: PipelineSettings,
    storage: Optional[PipelineStorage] = None,
    embedding_provider: Optional[EmbeddingProvider] = None,
    clustering_provider: Optional[ClusteringProvider] = None,
    stats: Optional[SchedulerStats] = None,
) -> Orchestrator:
    storage = storage if storage is not None else create_storage(settings)
    queue = EmbeddingQueueManager(
        storage,
        embedding_provider or EmbeddingProvider(),
        stale_claim_timeout=settings.stale_claim_timeout_seconds,
    )
    generator = ClusterGenerator(
        storage, clustering_provider or ClusteringProvider(), settings.cluster
    )
    return Orchestrator(
        storage,
        queue,
        generator,
        stats=stats,
        embedding_batch_size=settings.embedding_batch_size,
        trigger_window_hours=settings.trigger_window_hours,
    )
