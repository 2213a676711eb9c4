"""Command-line worker: drain the embedding queue or run a repair sweep.

Examples:
    python worker.py run --max-jobs 200
    python worker.py backfill --limit 500 --force-rewrite
    python worker.py reconcile
    python worker.py reclaim --stale-after-minutes 45
"""

import argparse
import asyncio
import json
import logging
from datetime import timedelta

from ai.embeddings import get_default_provider
from talentpool.config import settings
from talentpool.db import AsyncSessionMaker, engine
from talentpool.logging_config import setup_logging
from talentpool.pipelines.processing import process_pending_jobs
from talentpool.pipelines.repair import reclaim_stale_jobs, run_merge_backfill, run_queue_reconciliation

logger = logging.getLogger("talentpool.worker")


async def _run(args: argparse.Namespace) -> dict:
    if args.command == "run":
        provider = get_default_provider()
        logger.info(f"Embedding provider: {provider.info()}")
        report = await process_pending_jobs(
            AsyncSessionMaker,
            provider,
            batch_size=args.batch_size,
            max_jobs=args.max_jobs,
            delay_seconds=args.delay,
        )
        return report.to_dict()

    async with AsyncSessionMaker() as session:
        if args.command == "backfill":
            report = await run_merge_backfill(session, limit=args.limit, force_rewrite=args.force_rewrite)
        elif args.command == "reconcile":
            report = await run_queue_reconciliation(session, limit=args.limit, base_priority=args.base_priority)
        else:
            report = await reclaim_stale_jobs(session, timedelta(minutes=args.stale_after_minutes))
    return report.to_dict()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Embedding worker and repair sweeps")
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Process pending embedding jobs once")
    run.add_argument("--batch-size", type=int, default=None)
    run.add_argument("--max-jobs", type=int, default=None)
    run.add_argument("--delay", type=float, default=None, help="Seconds between sub-batches")

    backfill = sub.add_parser("backfill", help="Replay raw payloads to fill empty identity fields")
    backfill.add_argument("--limit", type=int, default=None)
    backfill.add_argument("--force-rewrite", action="store_true")

    reconcile = sub.add_parser("reconcile", help="Remove duplicate jobs and queue missing work")
    reconcile.add_argument("--limit", type=int, default=None)
    reconcile.add_argument("--base-priority", type=int, default=None)

    reclaim = sub.add_parser("reclaim", help="Return stale in_progress jobs to the queue")
    reclaim.add_argument("--stale-after-minutes", type=int, default=settings.queue.stale_after_minutes)
    return parser


async def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    setup_logging()
    try:
        result = await _run(args)
    finally:
        await engine.dispose()
    logger.info(f"{args.command} finished")
    print(json.dumps(result, indent=2, default=str))


if __name__ == "__main__":
    asyncio.run(main())
