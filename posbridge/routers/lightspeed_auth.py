"""
Lightspeed OAuth authentication endpoints.
Starts the authorization-code flow and handles the provider callback
(state validation, code exchange, encrypted token storage).
"""

import base64
import binascii
import json
from urllib.parse import urlencode

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import RedirectResponse
from pydantic import ValidationError

from posbridge.config import ensure_lightspeed_configured, settings
from posbridge.dependencies import get_token_manager
from posbridge.integrations.lightspeed.api_client import LightspeedAPIClient
from posbridge.integrations.lightspeed.errors import ConfigurationError, LightspeedError
from posbridge.integrations.lightspeed.token_manager import LightspeedTokenManager
from posbridge.routers.auth import verify_token

logger = structlog.get_logger()

router = APIRouter(prefix="/auth", tags=["lightspeed-auth"])


def _encode_state(user_id: str, token: str) -> str:
    """Pack the user id next to the CSRF token; the callback has no bearer header."""
    payload = json.dumps({"user_id": user_id, "token": token})
    return base64.urlsafe_b64encode(payload.encode()).decode()


def _decode_state(state: str | None) -> tuple[str, str]:
    """
    Decode state query param to (user_id, token).
    Returns ("", "") on failure.
    """
    if not state or not state.strip():
        return "", ""
    try:
        data = json.loads(base64.urlsafe_b64decode(state.encode()).decode())
    except (binascii.Error, UnicodeDecodeError, ValueError) as e:
        logger.warning("Failed to decode Lightspeed OAuth state", error=str(e))
        return "", ""
    if not isinstance(data, dict):
        return "", ""
    return str(data.get("user_id") or ""), str(data.get("token") or "")


def _connect_page(**params: str) -> RedirectResponse:
    base = (settings.app_base_url or "").strip().rstrip("/")
    return RedirectResponse(url=f"{base}/connect-lightspeed?{urlencode(params)}", status_code=302)


@router.get("/lightspeed")
async def lightspeed_oauth_initiate(
    user_data: dict = Depends(verify_token),
    token_manager: LightspeedTokenManager = Depends(get_token_manager),
):
    """
    Initiate Lightspeed OAuth flow.
    Stores a fresh single-use state token and redirects to the authorize page.
    """
    try:
        ensure_lightspeed_configured()
    except ConfigurationError as e:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=str(e),
        ) from e

    user_id = user_data["user_id"]
    state_token = token_manager.generate_oauth_state(user_id)
    auth_url = token_manager.build_authorization_url(_encode_state(user_id, state_token))

    logger.info("Initiating Lightspeed OAuth", user_id=user_id)
    return RedirectResponse(url=auth_url, status_code=302)


@router.get("/lightspeed/callback")
async def lightspeed_oauth_callback(
    code: str | None = Query(None, description="Authorization code from Lightspeed"),
    state: str | None = Query(None, description="State parameter"),
    error: str | None = Query(None),
    error_description: str | None = Query(None),
    token_manager: LightspeedTokenManager = Depends(get_token_manager),
):
    """
    Handle Lightspeed OAuth callback.
    Validates state, exchanges code for tokens, stores them encrypted and
    redirects back to the connect page.
    """
    logger.info(
        "Lightspeed OAuth callback received",
        has_code=bool(code),
        has_state=bool(state),
        error=error,
    )

    if error:
        return _connect_page(error=error_description or error)

    if not code or not state:
        return _connect_page(error="Missing authorization code or state")

    user_id, state_token = _decode_state(state)
    if not user_id or not token_manager.validate_oauth_state(user_id, state_token):
        return _connect_page(error="Invalid or expired state token. Please try again.")

    try:
        token_data = await token_manager.exchange_authorization_code(code.strip())
    except LightspeedError as e:
        logger.error("Lightspeed token exchange failed", user_id=user_id, error=str(e))
        token_manager.update_connection_status(user_id, "error", "Token exchange failed")
        return _connect_page(error="Failed to exchange authorization code. Please try again.")

    token_manager.store_tokens(
        user_id,
        token_data.access_token,
        token_data.refresh_token,
        token_data.expires_in,
    )

    # Account info is not required for a working connection
    try:
        async with LightspeedAPIClient(user_id, token_manager) as client:
            account = await client.get_account()
        token_manager.update_account_info(user_id, account.account_id, account.name)
    except (LightspeedError, ValidationError) as e:
        logger.warning("Could not fetch Lightspeed account info", user_id=user_id, error=str(e))

    logger.info("Lightspeed account connected", user_id=user_id)
    return _connect_page(success="true")
