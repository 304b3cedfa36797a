"""Backend HTTP client with bearer-token authentication."""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

import httpx

from rewards_client.core.config import Settings, get_settings
from rewards_client.core.errors import (
    AuthenticationRequiredError,
    InsufficientPointsError,
    MalformedResponseError,
    RedemptionRejectedError,
    TransientBackendError,
)

logger = logging.getLogger(__name__)

# Returns the current ID token, or None when nobody is signed in
TokenProvider = Callable[[], Awaitable[str | None]]

TRANSIENT_STATUS_CODES = frozenset({408, 425, 429})
DEFAULT_ERROR_MESSAGE = "Unknown error occurred"


@dataclass
class BackendResponse:
    """Decoded backend response."""

    status_code: int
    payload: dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        """Check for a 2xx status."""
        return 200 <= self.status_code < 300

    def error_message(self) -> str:
        """Get the server-provided error text."""
        message = self.payload.get("error")
        if isinstance(message, str) and message.strip():
            return message
        return DEFAULT_ERROR_MESSAGE

    def raise_for_error(self) -> None:
        """Raise the taxonomy error matching a non-2xx response.

        Raises:
            AuthenticationRequiredError: 401/403
            TransientBackendError: 408/425/429 and 5xx
            InsufficientPointsError: 4xx reporting a short balance
            RedemptionRejectedError: any other 4xx
        """
        if self.ok:
            return

        message = self.error_message()
        status = self.status_code

        if status in (401, 403):
            raise AuthenticationRequiredError(message)

        if status in TRANSIENT_STATUS_CODES or status >= 500:
            raise TransientBackendError(message, status_code=status)

        if "pointsNeeded" in self.payload or "insufficient points" in message.lower():
            points_needed = self.payload.get("pointsNeeded")
            raise InsufficientPointsError(
                message,
                status_code=status,
                points_needed=points_needed if isinstance(points_needed, int) else None,
            )

        raise RedemptionRejectedError(message, status_code=status)


class BackendClient(ABC):
    """Abstract base class for backend transports."""

    @abstractmethod
    async def get_json(self, path: str, *, require_auth: bool = False) -> BackendResponse:
        """Issue a GET request."""
        ...

    @abstractmethod
    async def post_json(
        self, path: str, body: dict[str, Any], *, require_auth: bool = True
    ) -> BackendResponse:
        """Issue a POST request with a JSON body."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release transport resources."""
        ...


class HttpBackendClient(BackendClient):
    """httpx-based backend client."""

    def __init__(
        self,
        settings: Settings | None = None,
        token_provider: TokenProvider | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        """Initialize backend client.

        Args:
            settings: Client settings (base URL and timeout)
            token_provider: Async callable returning the bearer token
            http_client: Pre-built httpx client; not closed by this object
        """
        self.settings = settings or get_settings()
        self.token_provider = token_provider
        self._owns_client = http_client is None
        self._http_client = http_client

    async def _get_http_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                base_url=self.settings.backend_url,
                timeout=self.settings.request_timeout_seconds,
            )
        return self._http_client

    async def _build_headers(self, require_auth: bool) -> dict[str, str]:
        """Build request headers, attaching the bearer token when available."""
        headers = {"Content-Type": "application/json", "Accept": "application/json"}

        token = await self.token_provider() if self.token_provider else None
        if token:
            headers["Authorization"] = f"Bearer {token}"
        elif require_auth:
            raise AuthenticationRequiredError("No signed-in user")

        return headers

    async def _request(
        self,
        method: str,
        path: str,
        *,
        body: dict[str, Any] | None = None,
        require_auth: bool,
    ) -> BackendResponse:
        headers = await self._build_headers(require_auth)
        client = await self._get_http_client()

        try:
            response = await client.request(method, path, json=body, headers=headers)
        except httpx.TimeoutException as e:
            logger.warning(f"{method} {path} timed out: {e}")
            raise TransientBackendError(f"Request timed out: {e}") from e
        except httpx.TransportError as e:
            logger.warning(f"{method} {path} transport error: {e}")
            raise TransientBackendError(f"Network error: {e}") from e

        logger.debug(f"{method} {path} -> {response.status_code}")
        return self._decode(response)

    def _decode(self, response: httpx.Response) -> BackendResponse:
        """Decode the JSON object body of a response."""
        try:
            payload = response.json() if response.content else {}
        except ValueError as e:
            if response.status_code >= 500:
                raise TransientBackendError(
                    f"Server error {response.status_code}",
                    status_code=response.status_code,
                ) from e
            if not response.is_success:
                return BackendResponse(status_code=response.status_code)
            logger.error(f"Non-JSON response from {response.request.url}")
            raise MalformedResponseError("Response body is not JSON") from e

        if not isinstance(payload, dict):
            if response.is_success:
                logger.error(f"Unexpected JSON shape from {response.request.url}")
                raise MalformedResponseError("Response body is not a JSON object")
            payload = {}

        return BackendResponse(status_code=response.status_code, payload=payload)

    async def get_json(self, path: str, *, require_auth: bool = False) -> BackendResponse:
        """Issue a GET request."""
        return await self._request("GET", path, require_auth=require_auth)

    async def post_json(
        self, path: str, body: dict[str, Any], *, require_auth: bool = True
    ) -> BackendResponse:
        """Issue a POST request with a JSON body."""
        return await self._request("POST", path, body=body, require_auth=require_auth)

    async def close(self) -> None:
        """Close the underlying httpx client if this object created it."""
        if self._http_client is not None and self._owns_client:
            await self._http_client.aclose()
        self._http_client = None

    async def __aenter__(self) -> "HttpBackendClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()
