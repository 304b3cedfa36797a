"""Tests for the backend HTTP client."""

import httpx
import pytest

from rewards_client.core.errors import (
    AuthenticationRequiredError,
    InsufficientPointsError,
    MalformedResponseError,
    RedemptionRejectedError,
    TransientBackendError,
)
from rewards_client.infrastructure.backend.client import BackendResponse, HttpBackendClient


class TestBackendResponse:
    """Tests for status code mapping."""

    def test_ok_does_not_raise(self):
        """Test 2xx passes."""
        BackendResponse(200, {"success": True}).raise_for_error()

    @pytest.mark.parametrize("status", [401, 403])
    def test_auth_errors(self, status):
        """Test 401/403 map to authentication errors."""
        with pytest.raises(AuthenticationRequiredError):
            BackendResponse(status, {"error": "Unauthorized"}).raise_for_error()

    @pytest.mark.parametrize("status", [408, 429, 500, 502, 503])
    def test_transient_errors(self, status):
        """Test retryable statuses."""
        with pytest.raises(TransientBackendError) as exc_info:
            BackendResponse(status, {"error": "busy"}).raise_for_error()

        assert exc_info.value.retryable
        assert exc_info.value.status_code == status

    def test_insufficient_points(self):
        """Test short balance detection."""
        response = BackendResponse(
            400,
            {
                "error": "Insufficient points for redemption",
                "currentPoints": 100,
                "pointsRequired": 250,
                "pointsNeeded": 150,
            },
        )

        with pytest.raises(InsufficientPointsError) as exc_info:
            response.raise_for_error()

        assert exc_info.value.points_needed == 150
        assert not exc_info.value.retryable

    def test_rejection_uses_server_message(self):
        """Test other 4xx carry the server message verbatim."""
        with pytest.raises(RedemptionRejectedError) as exc_info:
            BackendResponse(409, {"error": "Reward already claimed"}).raise_for_error()

        assert exc_info.value.user_message == "Reward already claimed"

    def test_missing_error_message(self):
        """Test the default error text."""
        assert BackendResponse(400).error_message() == "Unknown error occurred"


class TestHttpBackendClient:
    """Tests for HttpBackendClient."""

    def make_client(self, settings, handler, token="token-1"):
        async def token_provider():
            return token

        http_client = httpx.AsyncClient(
            transport=httpx.MockTransport(handler), base_url="http://testserver"
        )
        return HttpBackendClient(settings, token_provider=token_provider, http_client=http_client)

    @pytest.mark.asyncio
    async def test_bearer_token_attached(self, settings):
        """Test authorization header and JSON body."""
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["auth"] = request.headers.get("authorization")
            seen["body"] = request.content
            return httpx.Response(200, json={"ok": True})

        client = self.make_client(settings, handler)
        response = await client.post_json("/redeem-reward", {"userId": "user-1"})

        assert response.ok
        assert response.payload == {"ok": True}
        assert seen["auth"] == "Bearer token-1"
        assert b'"userId"' in seen["body"]

    @pytest.mark.asyncio
    async def test_get_without_token_allowed(self, settings):
        """Test unauthenticated GETs are sent without a header."""
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["auth"] = request.headers.get("authorization")
            return httpx.Response(200, json={})

        client = self.make_client(settings, handler, token=None)
        await client.get_json("/reward-tier-items/250")

        assert seen["auth"] is None

    @pytest.mark.asyncio
    async def test_non_json_server_error_is_transient(self, settings):
        """Test HTML error pages from the server."""

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(502, text="<html>Bad gateway</html>")

        client = self.make_client(settings, handler)

        with pytest.raises(TransientBackendError):
            await client.get_json("/reward-tier-items/250")

    @pytest.mark.asyncio
    async def test_non_json_success_is_malformed(self, settings):
        """Test a 200 that is not JSON."""

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, text="hello")

        client = self.make_client(settings, handler)

        with pytest.raises(MalformedResponseError):
            await client.get_json("/reward-tier-items/250")

    @pytest.mark.asyncio
    async def test_json_array_success_is_malformed(self, settings):
        """Test a 200 with a JSON array."""

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json=[1, 2])

        client = self.make_client(settings, handler)

        with pytest.raises(MalformedResponseError):
            await client.get_json("/reward-tier-items/250")

    @pytest.mark.asyncio
    async def test_injected_client_not_closed(self, settings):
        """Test close leaves a caller-owned httpx client open."""
        http_client = httpx.AsyncClient(
            transport=httpx.MockTransport(lambda request: httpx.Response(200, json={}))
        )
        client = HttpBackendClient(settings, http_client=http_client)

        async with client:
            pass

        assert not http_client.is_closed
        await http_client.aclose()

    @pytest.mark.asyncio
    async def test_owned_client_uses_backend_url(self, settings):
        """Test the lazily created client targets the configured backend."""
        client = HttpBackendClient(settings)

        http_client = await client._get_http_client()

        assert str(http_client.base_url).rstrip("/") == "http://localhost:3001"
        await client.close()
        assert http_client.is_closed
