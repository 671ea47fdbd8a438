import base64
import json
from urllib.parse import parse_qs, urlparse

import httpx
import pytest
from fastapi.testclient import TestClient

from conftest import USER_ID, make_token_manager, token_response
from posbridge.dependencies import get_matcher, get_token_manager
from posbridge.integrations.lightspeed.errors import RequestFailed, ServerError, Unauthenticated
from posbridge.integrations.lightspeed.models import Account, Item, SyncResult
from posbridge.main import app
from posbridge.matching.product_matcher import ProductMatcher
from posbridge.models.database import CanonicalProduct, MatchQueueItem
from posbridge.routers import lightspeed_auth, lightspeed_sync
from posbridge.routers.auth import verify_token

CONNECT_PAGE = "https://app.example.com/connect-lightspeed"


class FakeLightspeedClient:
    """Stands in for LightspeedAPIClient inside the routers."""

    account = Account(accountID="42", name="Corner Bikes")
    sync_result = SyncResult()
    error: Exception | None = None

    def __init__(self, user_id, token_manager):
        self.user_id = user_id

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return False

    async def get_account(self):
        if self.error:
            raise self.error
        return self.account

    async def perform_sync(self, options):
        if self.error:
            raise self.error
        return self.sync_result


@pytest.fixture
def token_endpoint():
    """Mutable token endpoint response for the code exchange."""
    return {"response": token_response("access-1", "refresh-1")}


@pytest.fixture
def manager(store, cipher, token_endpoint):
    return make_token_manager(store, cipher, handler=lambda request: token_endpoint["response"])


@pytest.fixture
def client(store, manager):
    app.dependency_overrides[verify_token] = lambda: {"user_id": USER_ID}
    app.dependency_overrides[get_token_manager] = lambda: manager
    app.dependency_overrides[get_matcher] = lambda: ProductMatcher(store, store)
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def fake_client(monkeypatch):
    monkeypatch.setattr(FakeLightspeedClient, "error", None)
    monkeypatch.setattr(lightspeed_auth, "LightspeedAPIClient", FakeLightspeedClient)
    monkeypatch.setattr(lightspeed_sync, "LightspeedAPIClient", FakeLightspeedClient)
    return FakeLightspeedClient


def redirect_params(response) -> dict[str, str]:
    assert response.status_code == 302
    location = response.headers["location"]
    return {key: values[0] for key, values in parse_qs(urlparse(location).query).items()}


def start_oauth(client) -> str:
    response = client.get("/auth/lightspeed", follow_redirects=False)
    return redirect_params(response)["state"]


def test_health(client):
    assert client.get("/health").json() == {"status": "healthy"}


def test_requires_bearer_token():
    response = TestClient(app).get("/api/lightspeed/connection")

    assert response.status_code == 401


class TestLightspeedOAuth:
    def test_initiate_redirects_with_state(self, client, store):
        response = client.get("/auth/lightspeed", follow_redirects=False)

        assert response.headers["location"].startswith(
            "https://cloud.lightspeedapp.com/auth/oauth/authorize?"
        )
        params = redirect_params(response)
        assert params["response_type"] == "code"
        assert params["client_id"] == "test-client-id"
        assert params["scope"] == "employee:all"

        state = json.loads(base64.urlsafe_b64decode(params["state"]))
        assert state["user_id"] == USER_ID
        assert state["token"] == store.get(USER_ID).oauth_state

    def test_callback_stores_tokens_and_account(self, client, store, manager, fake_client):
        state = start_oauth(client)

        response = client.get(
            "/auth/lightspeed/callback",
            params={"code": "auth-code", "state": state},
            follow_redirects=False,
        )

        assert response.headers["location"].startswith(CONNECT_PAGE)
        assert redirect_params(response) == {"success": "true"}
        connection = store.get(USER_ID)
        assert connection.status == "connected"
        assert connection.account_id == "42"
        assert connection.account_name == "Corner Bikes"
        assert connection.oauth_state is None
        assert manager.get_decrypted_tokens(USER_ID).access_token == "access-1"

    def test_callback_succeeds_without_account_info(self, client, store, fake_client, monkeypatch):
        monkeypatch.setattr(fake_client, "error", ServerError(503, "down"))
        state = start_oauth(client)

        response = client.get(
            "/auth/lightspeed/callback",
            params={"code": "auth-code", "state": state},
            follow_redirects=False,
        )

        assert redirect_params(response) == {"success": "true"}
        assert store.get(USER_ID).status == "connected"
        assert store.get(USER_ID).account_id is None

    def test_state_is_single_use(self, client, fake_client):
        state = start_oauth(client)
        params = {"code": "auth-code", "state": state}

        first = client.get("/auth/lightspeed/callback", params=params, follow_redirects=False)
        second = client.get("/auth/lightspeed/callback", params=params, follow_redirects=False)

        assert redirect_params(first) == {"success": "true"}
        assert "error" in redirect_params(second)

    @pytest.mark.parametrize(
        "params",
        [
            {"code": "auth-code", "state": "not-base64!"},
            {
                "code": "auth-code",
                "state": base64.urlsafe_b64encode(b'{"user_id": "user-1", "token": "forged"}').decode(),
            },
            {"state": "anything"},
            {"error": "access_denied", "error_description": "User denied access"},
        ],
    )
    def test_callback_rejects_bad_requests(self, client, store, params):
        start_oauth(client)

        response = client.get("/auth/lightspeed/callback", params=params, follow_redirects=False)

        assert response.headers["location"].startswith(CONNECT_PAGE)
        assert "error" in redirect_params(response)
        assert store.get(USER_ID).has_tokens is False

    def test_failed_exchange_marks_connection_error(self, client, store, token_endpoint):
        token_endpoint["response"] = httpx.Response(400, json={"error": "invalid_grant"})
        state = start_oauth(client)

        response = client.get(
            "/auth/lightspeed/callback",
            params={"code": "stale-code", "state": state},
            follow_redirects=False,
        )

        assert "error" in redirect_params(response)
        connection = store.get(USER_ID)
        assert connection.status == "error"
        assert connection.last_error == "Token exchange failed"
        assert connection.error_count == 1


class TestConnectionEndpoints:
    def test_connection_without_row(self, client):
        assert client.get("/api/lightspeed/connection").json() == {
            "status": "disconnected",
            "connected": False,
        }

    def test_connection_never_exposes_tokens(self, client, manager):
        manager.store_tokens(USER_ID, "access-1", "refresh-1", 3600, account_id="42")

        body = client.get("/api/lightspeed/connection").json()

        assert body["status"] == "connected"
        assert body["connected"] is True
        assert body["account_id"] == "42"
        assert not any("token_encrypted" in key for key in body)
        assert "access-1" not in json.dumps(body)

    def test_disconnect_clears_tokens(self, client, store, manager):
        manager.store_tokens(USER_ID, "access-1", "refresh-1", 3600)

        response = client.post("/api/lightspeed/disconnect")

        assert response.json()["success"] is True
        connection = store.get(USER_ID)
        assert connection.status == "disconnected"
        assert connection.has_tokens is False


class TestSyncEndpoint:
    def test_sync_reports_counts_and_errors(self, client, fake_client, monkeypatch):
        result = SyncResult(
            products=[Item(itemID="1"), Item(itemID="2")],
            errors={"customers": "Lightspeed request failed"},
        )
        monkeypatch.setattr(fake_client, "sync_result", result)

        response = client.post("/api/lightspeed/sync", json={"products": True, "customers": True})

        assert response.status_code == 200
        assert response.json() == {
            "success": False,
            "counts": {"products": 2},
            "errors": {"customers": "Lightspeed request failed"},
        }

    @pytest.mark.parametrize(
        "error, status_code",
        [
            (Unauthenticated(USER_ID), 401),
            (RequestFailed(400, "bad request"), 502),
            (ServerError(503, "down"), 503),
        ],
    )
    def test_sync_maps_lightspeed_errors(self, client, fake_client, monkeypatch, error, status_code):
        monkeypatch.setattr(fake_client, "error", error)

        response = client.post("/api/lightspeed/sync", json={"products": True})

        assert response.status_code == status_code


class TestMatchQueueEndpoints:
    @pytest.fixture
    def queued(self, store):
        canonical = store.create_canonical_product(
            CanonicalProduct(normalized_name="trek marlin 5", upc="111")
        )
        mine = store.enqueue(
            MatchQueueItem(user_id=USER_ID, product_id="p-1", product_name="Trek Marlin 5", upc="111")
        )
        theirs = store.enqueue(
            MatchQueueItem(user_id="user-2", product_id="p-2", product_name="Other")
        )
        return canonical, mine, theirs

    def test_list_only_returns_own_items(self, client, queued):
        _, mine, _ = queued

        body = client.get("/api/match-queue").json()

        assert [item["id"] for item in body] == [mine.id]
        assert client.get("/api/match-queue", params={"status": "completed"}).json() == []

    def test_process_runs_a_batch(self, client, store, queued):
        _, mine, theirs = queued

        response = client.post("/api/match-queue/process", params={"limit": 5})

        assert response.json() == {"processed": 1, "matched": 1, "needs_review": 0, "failed": 0}
        assert store.get_queue_item(mine.id).status == "matched"
        assert store.get_queue_item(theirs.id).status == "pending"

    def test_confirm_own_item(self, client, store, queued):
        canonical, mine, _ = queued

        response = client.post(
            f"/api/match-queue/{mine.id}/confirm",
            json={"canonical_product_id": canonical.id},
        )

        assert response.json() == {"success": True, "canonical_product_id": canonical.id}
        assert store.get_queue_item(mine.id).status == "completed"
        assert store.product_links["p-1"] == canonical.id

    def test_cannot_touch_other_users_items(self, client, store, queued):
        canonical, _, theirs = queued

        confirm = client.post(
            f"/api/match-queue/{theirs.id}/confirm",
            json={"canonical_product_id": canonical.id},
        )
        reject = client.post(
            f"/api/match-queue/{theirs.id}/reject",
            json={"normalized_name": "Other"},
        )

        assert confirm.status_code == 404
        assert reject.status_code == 404
        assert store.get_queue_item(theirs.id).status == "pending"

    def test_reject_creates_canonical(self, client, store, queued):
        _, mine, _ = queued

        response = client.post(
            f"/api/match-queue/{mine.id}/reject",
            json={"normalized_name": "Trek Marlin 5 Blue", "category": "Bikes"},
        )

        canonical_id = response.json()["canonical_product_id"]
        assert store.get_canonical_by_name("trek marlin 5 blue").id == canonical_id
        assert store.product_links["p-1"] == canonical_id
