"""Tests for WebhookHTTPServer adapter.

Runs the real threaded server on an ephemeral port and talks to it with
httpx from the same event loop the receiver coroutines run on.
"""

import httpx
import pytest

from groupbuy.adapters.webhook.http_server import (
    ERROR_STATUS,
    WebhookHTTPServer,
    is_authorized,
)
from groupbuy.adapters.webhook.receiver import WebhookReceiver
from groupbuy.tests.fakes import FakeSweepPort, Harness, build_harness
from groupbuy.tests.fakes.harness import HOST, STORE_ID

API_KEY = "test-api-key-123"

# ============================================================================
# Test Fixtures
# ============================================================================


@pytest.fixture
def harness() -> Harness:
    return build_harness()


@pytest.fixture
def receiver(harness: Harness) -> WebhookReceiver:
    return WebhookReceiver(harness.service, harness.expiry)


@pytest.fixture
async def server(receiver: WebhookReceiver):
    server = WebhookHTTPServer(
        receiver, host="127.0.0.1", port=0, api_key=API_KEY, require_auth=True
    )
    await server.start()
    yield server
    await server.stop()


@pytest.fixture
async def client(server: WebhookHTTPServer):
    host, port = server.address
    async with httpx.AsyncClient(
        base_url=f"http://{host}:{port}", timeout=10, trust_env=False
    ) as client:
        yield client


def _auth(key: str = API_KEY) -> dict[str, str]:
    return {"Authorization": f"Bearer {key}"}


# ============================================================================
# Configuration
# ============================================================================


class TestWebhookHTTPServerInitialization:
    def test_require_auth_without_api_key_raises(self) -> None:
        receiver = WebhookReceiver(build_harness().service, FakeSweepPort())

        with pytest.raises(ValueError) as exc_info:
            WebhookHTTPServer(webhook_receiver=receiver, api_key=None, require_auth=True)

        assert "require_auth=True" in str(exc_info.value)
        assert "no API key provided" in str(exc_info.value)

    def test_require_auth_with_empty_api_key_raises(self) -> None:
        receiver = WebhookReceiver(build_harness().service, FakeSweepPort())

        with pytest.raises(ValueError):
            WebhookHTTPServer(webhook_receiver=receiver, api_key="", require_auth=True)

    def test_no_auth_needs_no_key(self) -> None:
        receiver = WebhookReceiver(build_harness().service, FakeSweepPort())

        server = WebhookHTTPServer(webhook_receiver=receiver)

        assert server.require_auth is False
        assert server.port == 8080

    def test_every_error_code_has_a_status(self) -> None:
        assert ERROR_STATUS["not_found"] == 404
        assert ERROR_STATUS["permission_denied"] == 403
        assert ERROR_STATUS["invalid_state"] == 409
        assert ERROR_STATUS["service_unavailable"] == 503


# ============================================================================
# Requests
# ============================================================================


class TestWebhookRequests:
    async def test_health_is_public(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}

    async def test_missing_key_rejected(self, client: httpx.AsyncClient) -> None:
        response = await client.post("/api/sweep", json={})

        assert response.status_code == 401

    async def test_wrong_key_rejected(self, client: httpx.AsyncClient) -> None:
        response = await client.post("/api/sweep", json={}, headers=_auth("nope"))

        assert response.status_code == 401

    async def test_x_api_key_header_accepted(self, client: httpx.AsyncClient) -> None:
        response = await client.post("/api/sweep", json={}, headers={"X-API-Key": API_KEY})

        assert response.status_code == 200
        assert response.json()["result"]["groups_examined"] == 0

    async def test_unknown_path(self, client: httpx.AsyncClient) -> None:
        response = await client.post("/api/nothing", json={}, headers=_auth())

        assert response.status_code == 404

    async def test_invalid_json(self, client: httpx.AsyncClient) -> None:
        response = await client.post(
            "/api/groups/create", content=b"{not json", headers=_auth()
        )

        assert response.status_code == 400

    async def test_body_must_be_object(self, client: httpx.AsyncClient) -> None:
        response = await client.post("/api/groups/create", json=[1, 2], headers=_auth())

        assert response.status_code == 400

    async def test_create_group(self, client: httpx.AsyncClient) -> None:
        response = await client.post(
            "/api/groups/create",
            json={"user_id": HOST, "store_id": STORE_ID, "name": "Team lunch"},
            headers=_auth(),
        )

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "success"
        assert body["group"]["name"] == "Team lunch"
        assert len(body["group"]["join_code"]) == 6

    async def test_domain_errors_map_to_status(
        self, harness: Harness, client: httpx.AsyncClient
    ) -> None:
        group = await harness.open_group(["bob"])

        forbidden = await client.post(
            "/api/groups/lock", json={"group_id": group.id, "user_id": "bob"}, headers=_auth()
        )
        missing = await client.post(
            "/api/groups/get", json={"group_id": "nope"}, headers=_auth()
        )
        invalid = await client.post("/api/groups/join", json={}, headers=_auth())

        assert forbidden.status_code == 403
        assert forbidden.json() == {
            "status": "error",
            "code": "permission_denied",
            "message": "Only the host can perform this action",
        }
        assert missing.status_code == 404
        assert invalid.status_code == 400
        assert invalid.json()["message"] == "Missing user_id"

    async def test_store_failure_is_503(
        self, harness: Harness, client: httpx.AsyncClient
    ) -> None:
        harness.groups.set_should_fail(True, "disk on fire")

        response = await client.post("/api/groups/list", json={"user_id": "bob"}, headers=_auth())

        assert response.status_code == 503
        assert response.json()["message"] == "Could not query groups"
        assert "disk on fire" not in response.text


# ============================================================================
# Authorization helper
# ============================================================================


class TestIsAuthorized:
    def test_open_server_accepts_anything(self) -> None:
        assert is_authorized({}, None, require_auth=False)

    def test_bearer_and_header_keys(self) -> None:
        assert is_authorized({"Authorization": "Bearer k1"}, "k1", require_auth=True)
        assert is_authorized({"X-API-Key": "k1"}, "k1", require_auth=True)
        assert not is_authorized({"Authorization": "Bearer k2"}, "k1", require_auth=True)
        assert not is_authorized({"Authorization": "Basic k1"}, "k1", require_auth=True)
        assert not is_authorized({}, "k1", require_auth=True)
