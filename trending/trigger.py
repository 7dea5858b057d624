"""Decide whether a clustering pass is worth running now."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from trending.constants import (
    TRIGGER_MAX_STALENESS_HOURS,
    TRIGGER_MIN_INTERVAL_HOURS,
    TRIGGER_MIN_NEW_ARTICLES,
)
from trending.models import TriggerDecision


def hours_since(then: datetime, now: datetime) -> float:
    return (now - then).total_seconds() / 3600.0


def should_run_clustering(
    last_clustering_at: Optional[datetime],
    now: datetime,
    newly_embedded_count: int,
    max_staleness_hours: float = TRIGGER_MAX_STALENESS_HOURS,
    min_interval_hours: float = TRIGGER_MIN_INTERVAL_HOURS,
    min_new_articles: int = TRIGGER_MIN_NEW_ARTICLES,
) -> TriggerDecision:
    """Rules, first match wins: bootstrap, staleness cap, enough fresh material."""
    if last_clustering_at is None:
        return TriggerDecision(True, "no previous clustering run")

    elapsed = hours_since(last_clustering_at, now)
    if elapsed >= max_staleness_hours:
        return TriggerDecision(
            True, f"{elapsed:.1f}h since last run, max staleness {max_staleness_hours:g}h"
        )

    if elapsed < min_interval_hours:
        return TriggerDecision(
            False, f"only {elapsed:.1f}h since last run, need {min_interval_hours:g}h"
        )

    if newly_embedded_count >= min_new_articles:
        return TriggerDecision(
            True,
            f"{newly_embedded_count} new articles after {elapsed:.1f}h",
        )

    return TriggerDecision(
        False,
        f"only {newly_embedded_count} new articles, need {min_new_articles}",
    )
