"""Push-feed infrastructure module."""

from rewards_client.infrastructure.feed.memory import (
    InMemoryDocumentStore,
    MemorySubscription,
)
from rewards_client.infrastructure.feed.source import (
    DocumentSnapshot,
    FeedQuery,
    QuerySnapshot,
    SnapshotSource,
    SortDirection,
    Subscription,
)

__all__ = [
    # Source contract
    "DocumentSnapshot",
    "FeedQuery",
    "QuerySnapshot",
    "SnapshotSource",
    "SortDirection",
    "Subscription",
    # In-memory store
    "InMemoryDocumentStore",
    "MemorySubscription",
]
