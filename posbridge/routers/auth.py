"""
Supabase Auth bearer token verification shared by the API routers.
"""

import httpx
import structlog
from fastapi import Header, HTTPException, status

from posbridge.config import settings

logger = structlog.get_logger()


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


async def verify_token(authorization: str | None = Header(None)) -> dict:
    """
    Verify Supabase JWT token from Authorization header.

    Args:
        authorization: Authorization header value (Bearer <token>)

    Returns:
        User data from token

    Raises:
        HTTPException: If token is invalid or missing
    """
    if not authorization:
        raise _unauthorized("Authorization header is required")

    parts = authorization.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise _unauthorized("Invalid authorization header format")

    if not settings.supabase_url or not settings.supabase_service_key:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Supabase is not configured",
        )

    # Supabase's user endpoint validates the JWT for us
    auth_url = f"{settings.supabase_url.rstrip('/')}/auth/v1/user"
    headers = {
        "Authorization": f"Bearer {parts[1]}",
        "apikey": settings.supabase_service_key,
    }

    try:
        async with httpx.AsyncClient() as client:
            response = await client.get(auth_url, headers=headers, timeout=10.0)
    except httpx.HTTPError as http_error:
        logger.error("HTTP error during token verification", error=str(http_error))
        raise _unauthorized("Token verification failed") from http_error

    if response.status_code != 200:
        raise _unauthorized("Invalid or expired token")

    try:
        user_data = response.json()
    except ValueError as e:
        logger.error("Token verification returned invalid JSON", error=str(e))
        raise _unauthorized("Token verification failed") from e

    if not user_data or not user_data.get("id"):
        raise _unauthorized("Invalid token payload")

    return {
        "user_id": user_data["id"],
        "email": user_data.get("email"),
        "user": user_data,
    }
