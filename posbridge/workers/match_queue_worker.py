"""
Background worker that drains the canonical product match queue.
Polls pending image_match_queue items and runs matching in bounded batches.
"""

import asyncio
from typing import Optional

import structlog

from posbridge.config import settings
from posbridge.dependencies import get_matcher
from posbridge.matching.models import QueueRunSummary
from posbridge.matching.product_matcher import ProductMatcher

logger = structlog.get_logger()


class MatchQueueWorker:
    """Worker that processes pending match queue items."""

    def __init__(self, matcher: Optional[ProductMatcher] = None):
        self.matcher = matcher or get_matcher()
        self.running = False
        self.batch_size = settings.match_queue_batch_size

    async def start(self):
        """Start the match queue worker loop."""
        self.running = True
        logger.info("Match queue worker started")

        while self.running:
            try:
                await self.process_batch()
            except Exception as e:
                logger.error("Error in match queue worker loop", error=str(e))

            await asyncio.sleep(settings.match_worker_interval_seconds)

    async def stop(self):
        self.running = False
        logger.info("Match queue worker stopped")

    async def process_batch(self) -> QueueRunSummary:
        """Process one batch of pending items across all users."""
        # Store calls are blocking; keep them off the event loop
        return await asyncio.to_thread(
            self.matcher.process_pending_queue, None, self.batch_size
        )
