"""Backend HTTP infrastructure module."""

from rewards_client.infrastructure.backend.client import (
    BackendClient,
    BackendResponse,
    HttpBackendClient,
    TokenProvider,
)

__all__ = [
    "BackendClient",
    "BackendResponse",
    "HttpBackendClient",
    "TokenProvider",
]
