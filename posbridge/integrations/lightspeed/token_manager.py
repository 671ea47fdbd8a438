"""
Lightspeed OAuth token lifecycle.
Stores tokens encrypted, refreshes them shortly before expiry and manages the
single-use OAuth state used for CSRF protection during the authorization-code exchange.
"""

import asyncio
import secrets
import weakref
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Any
from urllib.parse import urlencode

import httpx
import structlog
from pydantic import ValidationError

from posbridge.config import settings
from posbridge.integrations.lightspeed.errors import (
    NetworkError,
    RequestFailed,
    TokenDecryptionError,
)
from posbridge.integrations.lightspeed.models import RefreshedToken, TokenPair, TokenResponse
from posbridge.integrations.lightspeed.token_encryption import TokenCipher, get_token_cipher
from posbridge.models.database import ConnectionStatus, LightspeedConnection
from posbridge.services.stores import ConnectionStore

logger = structlog.get_logger()

# Conditional writes re-read and retry this many times when another writer bumps the row version
MAX_WRITE_CONFLICT_RETRIES = 3


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class LightspeedTokenManager:
    """Owns token semantics for every user's lightspeed_connections row."""

    def __init__(
        self,
        store: ConnectionStore,
        cipher: TokenCipher | None = None,
        http_client: httpx.AsyncClient | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        """
        Initialize the token manager.

        Args:
            store: Connection row persistence.
            cipher: Token cipher. Defaults to the process-wide cipher from settings.
            http_client: Client for the token endpoint. A short-lived client is used when None.
            clock: Returns the current aware UTC time.
        """
        self.store = store
        self._cipher = cipher
        self._http_client = http_client
        self._clock = clock
        # Entries vanish once no task holds or waits on the lock
        self._refresh_locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    @property
    def cipher(self) -> TokenCipher:
        if self._cipher is None:
            self._cipher = get_token_cipher()
        return self._cipher

    def _refresh_lock(self, user_id: str) -> asyncio.Lock:
        """One refresh at a time per user; refresh tokens are single-use."""
        lock = self._refresh_locks.get(user_id)
        if lock is None:
            lock = asyncio.Lock()
            self._refresh_locks[user_id] = lock
        return lock

    # Token storage

    def _token_fields(
        self,
        access_token: str,
        refresh_token: str,
        expires_in: int,
        account_id: str | None,
        account_name: str | None,
    ) -> dict[str, Any]:
        now = self._clock()
        fields: dict[str, Any] = {
            "status": "connected",
            "access_token_encrypted": self.cipher.encrypt(access_token),
            "refresh_token_encrypted": self.cipher.encrypt(refresh_token),
            "token_expires_at": now + timedelta(seconds=expires_in),
            "connected_at": now,
            "last_token_refresh_at": now,
            "oauth_state": None,
            "oauth_state_expires_at": None,
            "last_error": None,
            "last_error_at": None,
            "error_count": 0,
        }
        if account_id is not None:
            fields["account_id"] = account_id
        if account_name is not None:
            fields["account_name"] = account_name
        return fields

    def store_tokens(
        self,
        user_id: str,
        access_token: str,
        refresh_token: str,
        expires_in: int,
        account_id: str | None = None,
        account_name: str | None = None,
    ) -> LightspeedConnection:
        """
        Encrypt and store a token pair, marking the connection connected.
        Clears prior error state and any pending OAuth state.
        """
        fields = self._token_fields(access_token, refresh_token, expires_in, account_id, account_name)
        connection = self.store.upsert(user_id, fields)
        logger.info(
            "Lightspeed tokens stored",
            user_id=user_id,
            token_expires_at=connection.token_expires_at.isoformat()
            if connection.token_expires_at
            else None,
        )
        return connection

    def _load(self, user_id: str) -> tuple[LightspeedConnection, TokenPair] | None:
        connection = self.store.get(user_id)
        if connection is None or not connection.has_tokens or connection.token_expires_at is None:
            return None

        try:
            pair = TokenPair(
                access_token=self.cipher.decrypt(connection.access_token_encrypted),
                refresh_token=self.cipher.decrypt(connection.refresh_token_encrypted),
                expires_at=_as_aware(connection.token_expires_at),
            )
        except TokenDecryptionError as e:
            # Corrupt or tampered ciphertext: force the user through OAuth again
            logger.error(
                "Error decrypting Lightspeed tokens",
                user_id=user_id,
                error_type=type(e).__name__,
            )
            self.update_connection_status(user_id, "error", "Stored token could not be decrypted")
            return None
        return connection, pair

    def get_decrypted_tokens(self, user_id: str) -> TokenPair | None:
        """Decrypted token pair for a user, or None when absent or unreadable."""
        loaded = self._load(user_id)
        return loaded[1] if loaded else None

    def get_connection(self, user_id: str) -> LightspeedConnection | None:
        return self.store.get(user_id)

    # Refresh

    def expires_within(self, expires_at: datetime, seconds: float) -> bool:
        return self._clock() >= _as_aware(expires_at) - timedelta(seconds=seconds)

    def token_needs_refresh(self, expires_at: datetime) -> bool:
        """True when now is within the refresh buffer of expiry (or past it)."""
        return self.expires_within(expires_at, settings.token_refresh_buffer_seconds)

    async def get_valid_access_token(self, user_id: str) -> str | None:
        """
        Return a usable access token, refreshing first when it is about to expire.
        None means the user has to re-authorize. May perform a network round-trip.
        """
        loaded = self._load(user_id)
        if loaded is None:
            return None

        _, pair = loaded
        if self.token_needs_refresh(pair.expires_at):
            refreshed = await self.refresh_access_token(user_id)
            return refreshed.access_token if refreshed else None

        return pair.access_token

    async def _post_token(self, body: dict[str, str]) -> httpx.Response:
        if self._http_client is not None:
            return await self._http_client.post(settings.lightspeed_token_url, json=body)
        async with httpx.AsyncClient(timeout=settings.request_timeout_seconds) as client:
            return await client.post(settings.lightspeed_token_url, json=body)

    async def refresh_access_token(self, user_id: str) -> RefreshedToken | None:
        """
        Exchange the stored refresh token for a new pair and persist it.
        Refresh tokens rotate: the old one is invalid after this call.
        Never retries; on failure the connection is marked and None is returned.
        """
        requested_at = self._clock()

        async with self._refresh_lock(user_id):
            loaded = self._load(user_id)
            if loaded is None:
                logger.error("No Lightspeed tokens found for user", user_id=user_id)
                return None
            connection, pair = loaded

            # Another task refreshed while we waited on the lock
            if (
                connection.last_token_refresh_at is not None
                and _as_aware(connection.last_token_refresh_at) > requested_at
                and not self.token_needs_refresh(pair.expires_at)
            ):
                logger.debug("Lightspeed token already refreshed", user_id=user_id)
                return RefreshedToken(access_token=pair.access_token, expires_at=pair.expires_at)

            body = {
                "client_id": settings.lightspeed_client_id,
                "client_secret": settings.lightspeed_client_secret,
                "grant_type": "refresh_token",
                "refresh_token": pair.refresh_token,
            }

            try:
                response = await self._post_token(body)
            except httpx.HTTPError as e:
                logger.error(
                    "Error refreshing Lightspeed token",
                    user_id=user_id,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                self.update_connection_status(
                    user_id, "error", "Token refresh error", require_tokens=True
                )
                return None

            if response.status_code != 200:
                logger.error(
                    "Lightspeed token refresh failed",
                    user_id=user_id,
                    status_code=response.status_code,
                    response_text=response.text[:200] if response.text else "",
                )
                self.update_connection_status(
                    user_id,
                    "expired",
                    f"Token refresh failed ({response.status_code})",
                    require_tokens=True,
                )
                return None

            try:
                token_data = TokenResponse.model_validate(response.json())
            except (ValueError, ValidationError) as e:
                logger.error(
                    "Invalid Lightspeed token refresh response",
                    user_id=user_id,
                    error=str(e),
                )
                self.update_connection_status(
                    user_id, "expired", "Token refresh returned no tokens", require_tokens=True
                )
                return None

            fields = self._token_fields(
                token_data.access_token,
                token_data.refresh_token,
                token_data.expires_in,
                account_id=None,
                account_name=None,
            )
            fields.pop("connected_at")

            updated = self._write_refreshed_tokens(user_id, fields, connection)
            if updated is None:
                return None

            logger.info("Lightspeed token refreshed", user_id=user_id)
            return RefreshedToken(
                access_token=token_data.access_token,
                expires_at=_as_aware(updated.token_expires_at),
            )

    def _write_refreshed_tokens(
        self,
        user_id: str,
        fields: dict[str, Any],
        connection: LightspeedConnection,
    ) -> LightspeedConnection | None:
        """
        Conditionally write refreshed tokens against the version read before the refresh.
        A disconnect that landed in between wins: the new tokens are discarded.
        """
        current = connection
        for _ in range(MAX_WRITE_CONFLICT_RETRIES):
            updated = self.store.update(user_id, fields, expected_version=current.version)
            if updated is not None:
                return updated

            current = self.store.get(user_id)
            if current is None or current.status == "disconnected" or not current.has_tokens:
                logger.warning(
                    "Lightspeed connection changed during refresh; discarding new tokens",
                    user_id=user_id,
                )
                return None

        logger.error("Could not persist refreshed Lightspeed tokens", user_id=user_id)
        self.update_connection_status(user_id, "error", "Refreshed tokens could not be stored")
        return None

    # Connection management

    def update_connection_status(
        self,
        user_id: str,
        status: ConnectionStatus,
        error_message: str | None = None,
        require_tokens: bool = False,
    ) -> LightspeedConnection | None:
        """
        Set the connection status.
        'disconnected' clears tokens; 'error' and 'expired' increment error_count.
        With require_tokens a failure is only recorded while the connection still
        holds tokens, so a disconnect that landed meanwhile is left alone.
        """
        now = self._clock()
        fields: dict[str, Any] = {"status": status}

        if status == "disconnected":
            fields.update(
                disconnected_at=now,
                access_token_encrypted=None,
                refresh_token_encrypted=None,
                token_expires_at=None,
            )

        if error_message:
            fields.update(last_error=error_message, last_error_at=now)

        if status not in ("error", "expired"):
            return self.store.update(user_id, fields)

        for _ in range(MAX_WRITE_CONFLICT_RETRIES):
            current = self.store.get(user_id)
            if current is None:
                return None
            if require_tokens and (current.status == "disconnected" or not current.has_tokens):
                logger.warning(
                    "Lightspeed connection disconnected; not recording failure",
                    user_id=user_id,
                    status=status,
                )
                return None
            fields["error_count"] = current.error_count + 1
            updated = self.store.update(user_id, fields, expected_version=current.version)
            if updated is not None:
                return updated

        logger.error("Error updating Lightspeed connection status", user_id=user_id, status=status)
        return None

    def update_last_sync_time(self, user_id: str) -> None:
        if self.store.update(user_id, {"last_sync_at": self._clock()}) is None:
            logger.warning("No Lightspeed connection to stamp last sync on", user_id=user_id)

    def update_account_info(
        self, user_id: str, account_id: str | None, account_name: str | None
    ) -> None:
        self.store.update(user_id, {"account_id": account_id, "account_name": account_name})

    def disconnect_user(self, user_id: str) -> None:
        """Null tokens and expiry, mark disconnected and record when."""
        self.update_connection_status(user_id, "disconnected")
        logger.info("Lightspeed account disconnected", user_id=user_id)

    # OAuth state

    def generate_oauth_state(self, user_id: str) -> str:
        """Create and store a fresh state token, replacing any previous one."""
        state = secrets.token_hex(32)
        fields = {
            "oauth_state": state,
            "oauth_state_expires_at": self._clock()
            + timedelta(seconds=settings.oauth_state_ttl_seconds),
        }

        if self.store.get(user_id) is None:
            self.store.upsert(user_id, {"status": "disconnected", **fields})
        elif self.store.update(user_id, fields) is None:
            # Row vanished between the read and the write
            self.store.upsert(user_id, {"status": "disconnected", **fields})

        return state

    def validate_oauth_state(self, user_id: str, candidate: str | None) -> bool:
        """
        Validate and consume a state token. Fails closed.
        A matching state is cleared immediately so it can never validate twice.
        """
        for _ in range(MAX_WRITE_CONFLICT_RETRIES):
            connection = self.store.get(user_id)
            if connection is None or not connection.oauth_state or not candidate:
                return False

            if not secrets.compare_digest(connection.oauth_state, candidate):
                return False

            expires_at = connection.oauth_state_expires_at
            if expires_at is None or self._clock() > _as_aware(expires_at):
                logger.warning("Expired Lightspeed OAuth state", user_id=user_id)
                return False

            consumed = self.store.update(
                user_id,
                {"oauth_state": None, "oauth_state_expires_at": None},
                expected_version=connection.version,
            )
            if consumed is not None:
                return True

        return False

    # Authorization code flow

    def build_authorization_url(self, state: str) -> str:
        params = {
            "response_type": "code",
            "client_id": settings.lightspeed_client_id,
            "scope": settings.lightspeed_scope,
            "state": state,
            "redirect_uri": settings.lightspeed_redirect_uri,
        }
        return f"{settings.lightspeed_authorize_url}?{urlencode(params)}"

    async def exchange_authorization_code(self, code: str) -> TokenResponse:
        """
        Exchange an authorization code for tokens.

        Raises:
            NetworkError: If the token endpoint cannot be reached.
            RequestFailed: If the provider rejects the exchange.
        """
        body = {
            "client_id": settings.lightspeed_client_id,
            "client_secret": settings.lightspeed_client_secret,
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": settings.lightspeed_redirect_uri,
        }
        try:
            response = await self._post_token(body)
        except httpx.HTTPError as e:
            raise NetworkError(f"Token exchange failed: {e}") from e

        if response.status_code != 200:
            logger.error(
                "Lightspeed token exchange failed",
                status_code=response.status_code,
                response_text=response.text[:200] if response.text else "",
            )
            raise RequestFailed(
                response.status_code, "Token exchange failed", body=response.text
            )

        try:
            return TokenResponse.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            raise RequestFailed(response.status_code, "Invalid token response", body=response.text) from e
