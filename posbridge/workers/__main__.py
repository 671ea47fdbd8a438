"""
Entry point for running the background workers as a module.
Usage: python -m posbridge.workers
"""
import asyncio

from posbridge.config import ensure_lightspeed_configured
from posbridge.utils.logger import configure_logging
from posbridge.workers.match_queue_worker import MatchQueueWorker
from posbridge.workers.token_refresh_scheduler import TokenRefreshScheduler


async def run_workers():
    await asyncio.gather(TokenRefreshScheduler().start(), MatchQueueWorker().start())


if __name__ == "__main__":
    configure_logging()
    ensure_lightspeed_configured()
    asyncio.run(run_workers())
