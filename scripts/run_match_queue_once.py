"""
Single-pass match queue worker for cron.
Drains pending items from image_match_queue in batches, then exits.

Reuses MatchQueueWorker.process_batch() for the matching itself.
"""

import asyncio
import sys

import structlog

from posbridge.utils.logger import configure_logging
from posbridge.workers.match_queue_worker import MatchQueueWorker

configure_logging()
logger = structlog.get_logger()

MAX_BATCHES = 20


async def main() -> None:
    worker = MatchQueueWorker()
    total_processed = 0
    batch_count = 0

    try:
        logger.info("Match queue drain starting")

        while batch_count < MAX_BATCHES:
            summary = await worker.process_batch()
            if summary.processed == 0:
                logger.info(
                    "No more pending items in queue",
                    total_processed=total_processed,
                    batches_run=batch_count,
                )
                break

            total_processed += summary.processed
            batch_count += 1

        if batch_count >= MAX_BATCHES:
            logger.warning(
                "Hit max batch limit, queue may still have items",
                max_batches=MAX_BATCHES,
                total_processed=total_processed,
            )

        logger.info(
            "Match queue drain done",
            total_processed=total_processed,
            batches_run=batch_count,
        )

    except Exception as e:
        logger.error("Match queue drain failed", error=str(e), total_processed=total_processed)
        sys.exit(1)


if __name__ == "__main__":
    asyncio.run(main())
