import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.table import Table

from trending.cache_utils import atomic_write_json
from trending.config import load_settings, save_config
from trending.logging_config import configure_logging, logger
from trending.queue import oldest_claim_age, utc_now
from trending.scheduler import Orchestrator, build_orchestrator

console = Console()


async def run_jobs(orchestrator: Orchestrator, output: Optional[Path]) -> int:
    report = await orchestrator.run_once()
    envelope = report.to_envelope()
    if output is not None:
        atomic_write_json(output, envelope)
    print(json.dumps(envelope))
    if not report.success:
        logger.error("AI jobs run failed", error=report.error)
        return 1
    return 0


async def enqueue(orchestrator: Orchestrator, article_ids: list[str], priority: int) -> int:
    queued = await orchestrator.queue.enqueue(article_ids, priority)
    console.print(
        f"[green]Queued {queued}[/] of {len(article_ids)} articles "
        f"[dim](priority {priority})[/]"
    )
    return 0


async def show_stats(orchestrator: Orchestrator) -> int:
    stats = await orchestrator.queue.get_queue_stats()
    items = await orchestrator.storage.get_queue_items()
    last_run = await orchestrator.storage.get_last_clustering_at()
    clusters = await orchestrator.generator.get_active_clusters(limit=5)

    table = Table(title="Embedding queue")
    table.add_column("Status")
    table.add_column("Count", justify="right")
    for status, count in stats.items():
        table.add_row(status, str(count))
    console.print(table)

    age = oldest_claim_age(items, utc_now())
    if age is not None:
        console.print(f"[yellow]Oldest claim: {age:.0f}s[/]")
    console.print(
        f"Last clustering run: [bold]{last_run.isoformat() if last_run else 'never'}[/]"
    )
    if clusters:
        console.print("\n[bold green]Active clusters[/]")
        for c in clusters:
            console.print(
                f"[green]{c.relevance_score:5.0f}[/] [bold]{c.topic}[/] "
                f"[dim]({c.member_count} articles, {c.source_count} sources)[/]"
            )
    return 0


async def expire(orchestrator: Orchestrator) -> int:
    deleted = await orchestrator.generator.expire_old_clusters()
    console.print(f"[green]Expired {deleted} clusters[/]")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Article embedding & trending clusters")
    sub = parser.add_subparsers(dest="command", required=True)

    run_p = sub.add_parser("run", help="Run one embedding + clustering pass")
    run_p.add_argument(
        "--output", type=Path, default=None, help="Also write the JSON envelope to a file"
    )

    enq_p = sub.add_parser("enqueue", help="Queue articles for embedding")
    enq_p.add_argument("article_ids", nargs="+", help="Article IDs to queue")
    enq_p.add_argument(
        "--priority", type=int, default=0, help="Higher runs first (default: 0)"
    )

    sub.add_parser("stats", help="Show queue and cluster status")
    sub.add_parser("expire", help="Delete expired clusters")

    cfg_p = sub.add_parser("config", help="Save a config value")
    cfg_p.add_argument("key")
    cfg_p.add_argument("value", help="JSON literal or plain string")
    return parser


def _parse_value(raw: str) -> object:
    try:
        return json.loads(raw)
    except ValueError:
        return raw


def main(argv: Optional[list[str]] = None, orchestrator: Optional[Orchestrator] = None) -> int:
    args = build_parser().parse_args(argv)

    if args.command == "config":
        save_config(args.key, _parse_value(args.value))
        console.print(f"[green]Saved {args.key}[/]")
        return 0

    settings = load_settings()
    configure_logging(settings.log_level)
    orchestrator = orchestrator or build_orchestrator(settings)

    if args.command == "run":
        return asyncio.run(run_jobs(orchestrator, args.output))
    if args.command == "enqueue":
        return asyncio.run(enqueue(orchestrator, args.article_ids, args.priority))
    if args.command == "stats":
        return asyncio.run(show_stats(orchestrator))
    return asyncio.run(expire(orchestrator))


if __name__ == "__main__":
    sys.exit(main())
