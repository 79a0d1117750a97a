"""
Worker entry point.

    python -m asset_pipeline.worker              # poll the in-memory queue forever
    python -m asset_pipeline.worker --backfill   # vectorize every unvectorized asset, then exit
    python -m asset_pipeline.worker --reindex    # re-vectorize every asset, then exit

The queue is in-memory, so a standalone worker only sees the jobs it queues
itself; the upload/update handlers embed a JobProcessor in their own process.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
from typing import Optional, Sequence

from asset_pipeline.core.config import get_settings
from asset_pipeline.core.logging import configure_logging
from asset_pipeline.db.session import check_db_health, dispose_engine
from asset_pipeline.observability.tracing import TracingConfig
from asset_pipeline.workers.context import build_context
from asset_pipeline.workers.processor import JobProcessor

logger = logging.getLogger(__name__)


def _parse_args(argv: Optional[Sequence[str]]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="asset-pipeline-worker")
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("--backfill", action="store_true", help="queue and process every unvectorized asset")
    mode.add_argument("--reindex", action="store_true", help="queue and process every asset")
    parser.add_argument("--batch-size", type=int, default=None)
    return parser.parse_args(argv)


async def _drain(processor: JobProcessor) -> None:
    totals = [0, 0]
    while len(processor.queue):
        result = await processor.process_jobs()
        totals[0] += result.processed
        totals[1] += result.failed
        if not result.processed and not result.failed:
            await asyncio.sleep(processor.poll_interval)
    logger.info("Drain complete | processed=%d failed=%d", *totals)


async def run(argv: Optional[Sequence[str]] = None) -> None:
    args = _parse_args(argv)
    settings = get_settings()
    configure_logging(settings)
    TracingConfig.init()

    processor = JobProcessor(build_context(settings), batch_size=args.batch_size, auto_start=False)
    try:
        health = await check_db_health()
        if health["status"] != "ok":
            logger.error("Asset database unreachable at startup | detail=%s", health.get("detail"))
            raise SystemExit(1)

        if args.backfill or args.reindex:
            if args.backfill:
                await processor.process_all_unvectorized()
            else:
                await processor.revectorize_all()
            await _drain(processor)
            return

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, lambda: asyncio.ensure_future(processor.stop()))
        logger.info("Worker polling | env=%s", settings.app_env)
        await processor.run_forever()
    finally:
        await dispose_engine()


def main(argv: Optional[Sequence[str]] = None) -> None:
    asyncio.run(run(argv))


if __name__ == "__main__":
    main()
