"""
Lightspeed connection management and sync endpoints.
"""

import structlog
from fastapi import APIRouter, Depends, HTTPException, status

from posbridge.dependencies import get_token_manager
from posbridge.integrations.lightspeed.api_client import LightspeedAPIClient
from posbridge.integrations.lightspeed.errors import (
    LightspeedError,
    RequestFailed,
    Unauthenticated,
)
from posbridge.integrations.lightspeed.models import SyncOptions
from posbridge.integrations.lightspeed.token_manager import LightspeedTokenManager
from posbridge.routers.auth import verify_token
from posbridge.utils.retry import TransientError

logger = structlog.get_logger()

router = APIRouter(prefix="/api/lightspeed", tags=["lightspeed"])


def lightspeed_http_error(error: LightspeedError) -> HTTPException:
    """Map a Lightspeed failure to the HTTP error returned to the frontend."""
    if isinstance(error, Unauthenticated):
        return HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Lightspeed reconnect required",
        )
    if isinstance(error, RequestFailed):
        return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(error))
    if isinstance(error, TransientError):
        return HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Lightspeed is temporarily unavailable",
        )
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(error))


@router.get("/connection")
async def get_connection(
    user_data: dict = Depends(verify_token),
    token_manager: LightspeedTokenManager = Depends(get_token_manager),
):
    """Connection status for the current user. Never includes tokens."""
    connection = token_manager.get_connection(user_data["user_id"])
    if connection is None:
        return {"status": "disconnected", "connected": False}

    return {
        "status": connection.status,
        "connected": connection.status == "connected" and connection.has_tokens,
        "account_id": connection.account_id,
        "account_name": connection.account_name,
        "connected_at": connection.connected_at,
        "last_sync_at": connection.last_sync_at,
        "token_expires_at": connection.token_expires_at,
        "last_error": connection.last_error,
    }


@router.post("/disconnect")
async def disconnect(
    user_data: dict = Depends(verify_token),
    token_manager: LightspeedTokenManager = Depends(get_token_manager),
):
    token_manager.disconnect_user(user_data["user_id"])
    return {"success": True, "message": "Lightspeed account disconnected"}


@router.post("/sync")
async def sync(
    options: SyncOptions,
    user_data: dict = Depends(verify_token),
    token_manager: LightspeedTokenManager = Depends(get_token_manager),
):
    """
    Fetch the selected resource families from Lightspeed.
    Families fail independently; their errors are returned alongside the counts.
    """
    user_id = user_data["user_id"]

    try:
        async with LightspeedAPIClient(user_id, token_manager) as client:
            result = await client.perform_sync(options)
    except LightspeedError as e:
        logger.error("Lightspeed sync failed", user_id=user_id, error=str(e))
        raise lightspeed_http_error(e) from e

    return {
        "success": not result.errors,
        "counts": {
            name: len(getattr(result, name)) for name in result.succeeded
        },
        "errors": result.errors,
    }
