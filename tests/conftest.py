import os
from datetime import datetime, timedelta, timezone

# Settings are read once at import time
os.environ.setdefault("LIGHTSPEED_CLIENT_ID", "test-client-id")
os.environ.setdefault("LIGHTSPEED_CLIENT_SECRET", "test-client-secret")
os.environ.setdefault("LIGHTSPEED_REDIRECT_URI", "https://app.example.com/auth/lightspeed/callback")
os.environ.setdefault("TOKEN_ENCRYPTION_KEY", "0123456789abcdef" * 4)
os.environ.setdefault("APP_BASE_URL", "https://app.example.com")

import httpx  # noqa: E402
import pytest  # noqa: E402

from posbridge.integrations.lightspeed.token_encryption import TokenCipher  # noqa: E402
from posbridge.integrations.lightspeed.token_manager import LightspeedTokenManager  # noqa: E402
from posbridge.services.stores import InMemoryStore  # noqa: E402

TEST_KEY = "0123456789abcdef" * 4
USER_ID = "user-1"


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class TickingClock(FakeClock):
    """Moves forward one millisecond on every read."""

    def __call__(self) -> datetime:
        self.now += timedelta(milliseconds=1)
        return self.now


def token_response(access="new-access", refresh="new-refresh", expires_in=3600):
    return httpx.Response(
        200,
        json={
            "access_token": access,
            "refresh_token": refresh,
            "expires_in": expires_in,
            "token_type": "Bearer",
        },
    )


def make_token_manager(store, cipher, clock=None, handler=None) -> LightspeedTokenManager:
    """Token manager whose token endpoint is served by `handler`."""

    def _unexpected(request: httpx.Request) -> httpx.Response:
        raise AssertionError(f"Unexpected token endpoint call: {request.url}")

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler or _unexpected))
    kwargs = {"clock": clock} if clock is not None else {}
    return LightspeedTokenManager(store, cipher=cipher, http_client=client, **kwargs)


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def cipher() -> TokenCipher:
    return TokenCipher.from_hex(TEST_KEY)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
