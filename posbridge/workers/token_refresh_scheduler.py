"""
Scheduled job for refreshing Lightspeed OAuth tokens.
Refreshes connected accounts whose access token expires within the scheduler
threshold so interactive requests rarely pay for a refresh round-trip.
"""

import asyncio
from typing import Optional

import structlog

from posbridge.config import settings
from posbridge.dependencies import get_token_manager
from posbridge.integrations.lightspeed.token_manager import LightspeedTokenManager
from posbridge.models.database import LightspeedConnection

logger = structlog.get_logger()


class TokenRefreshScheduler:
    """Scheduler that checks Lightspeed connections and refreshes expiring tokens."""

    def __init__(self, token_manager: Optional[LightspeedTokenManager] = None):
        self.token_manager = token_manager or get_token_manager()
        self.running = False
        self.check_interval_seconds = settings.token_refresh_interval_seconds
        self.threshold_seconds = settings.token_refresh_scheduler_threshold_seconds

    async def start(self):
        """Start the token refresh scheduler loop."""
        self.running = True
        logger.info("Lightspeed token refresh scheduler started")

        while self.running:
            try:
                await self.check_and_refresh_tokens()
            except Exception as e:
                logger.error("Error in token refresh scheduler loop", error=str(e))

            await asyncio.sleep(self.check_interval_seconds)

    async def stop(self):
        self.running = False
        logger.info("Lightspeed token refresh scheduler stopped")

    def _should_refresh(self, connection: LightspeedConnection) -> bool:
        if not connection.has_tokens or connection.token_expires_at is None:
            return False
        return self.token_manager.expires_within(connection.token_expires_at, self.threshold_seconds)

    async def check_and_refresh_tokens(self) -> dict[str, int]:
        """
        One pass over connected accounts.
        A failing connection is counted and logged; the pass continues.
        """
        connections = self.token_manager.store.list_connected()
        if not connections:
            logger.debug("No connected Lightspeed accounts found")
            return {"total": 0, "refreshed": 0, "failed": 0, "skipped": 0}

        refreshed_count = 0
        failed_count = 0
        skipped_count = 0

        for connection in connections:
            try:
                if not self._should_refresh(connection):
                    skipped_count += 1
                    continue

                logger.info("Refreshing Lightspeed token", user_id=connection.user_id)
                if await self.token_manager.refresh_access_token(connection.user_id):
                    refreshed_count += 1
                else:
                    failed_count += 1
            except Exception as e:
                failed_count += 1
                logger.error(
                    "Error refreshing Lightspeed connection",
                    user_id=connection.user_id,
                    error=str(e),
                )

        logger.info(
            "Lightspeed token refresh completed",
            total=len(connections),
            refreshed=refreshed_count,
            failed=failed_count,
            skipped=skipped_count,
        )
        return {
            "total": len(connections),
            "refreshed": refreshed_count,
            "failed": failed_count,
            "skipped": skipped_count,
        }
