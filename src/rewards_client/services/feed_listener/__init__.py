"""Feed listener service module."""

from rewards_client.services.feed_listener.listener import (
    FeedListener,
    ListenerConfig,
    ListenerState,
    ListenerStats,
)

__all__ = [
    "FeedListener",
    "ListenerConfig",
    "ListenerState",
    "ListenerStats",
]
