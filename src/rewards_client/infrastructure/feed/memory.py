"""In-process document store that serves live queries.

Used for local runs and tests in place of the hosted document database.
"""

import asyncio
import copy
import logging
from typing import Any

from rewards_client.core.errors import SubscriptionFailedError
from rewards_client.infrastructure.feed.source import (
    DocumentSnapshot,
    FeedQuery,
    QuerySnapshot,
    SnapshotSource,
    Subscription,
)

logger = logging.getLogger(__name__)

_CLOSED = object()


class MemorySubscription(Subscription):
    """Queue-backed subscription handed out by ``InMemoryDocumentStore``."""

    def __init__(self, store: "InMemoryDocumentStore", query: FeedQuery):
        self.query = query
        self._store = store
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def _push(self, snapshot: QuerySnapshot) -> None:
        if not self._closed:
            self._queue.put_nowait(snapshot)

    def _fail(self, error: Exception) -> None:
        if self._closed:
            return
        self._closed = True
        self._store._detach(self)
        self._queue.put_nowait(error)

    async def __anext__(self) -> QuerySnapshot:
        if self._closed and self._queue.empty():
            raise StopAsyncIteration

        item = await self._queue.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        if isinstance(item, Exception):
            raise item
        return item

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._store._detach(self)
        self._queue.put_nowait(_CLOSED)


class InMemoryDocumentStore(SnapshotSource):
    """Dictionary-backed collections with live query delivery."""

    def __init__(self):
        """Initialize empty store."""
        self._collections: dict[str, dict[str, dict[str, Any]]] = {}
        self._subscriptions: list[MemorySubscription] = []
        self._subscribe_error: Exception | None = None

    @property
    def subscriber_count(self) -> int:
        """Get number of open subscriptions."""
        return len(self._subscriptions)

    async def subscribe(self, query: FeedQuery) -> Subscription:
        """Start a live query; the current result set is delivered first."""
        if self._subscribe_error is not None:
            raise self._subscribe_error

        subscription = MemorySubscription(self, query)
        self._subscriptions.append(subscription)
        subscription._push(self._snapshot(query))
        logger.debug(f"Subscribed to {query.collection} ({self.subscriber_count} open)")
        return subscription

    def _detach(self, subscription: MemorySubscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    def _snapshot(self, query: FeedQuery) -> QuerySnapshot:
        collection = self._collections.get(query.collection, {})
        documents = [
            DocumentSnapshot(id=doc_id, data=copy.deepcopy(data))
            for doc_id, data in collection.items()
        ]
        return QuerySnapshot(documents=query.select(documents))

    def _notify(self, collection: str) -> None:
        for subscription in list(self._subscriptions):
            if subscription.query.collection == collection:
                subscription._push(self._snapshot(subscription.query))

    def get_document(self, collection: str, document_id: str) -> dict[str, Any] | None:
        """Get a copy of a stored document."""
        data = self._collections.get(collection, {}).get(document_id)
        return copy.deepcopy(data) if data is not None else None

    def set_document(self, collection: str, document_id: str, data: dict[str, Any]) -> None:
        """Create or replace a document and notify subscribers."""
        self._collections.setdefault(collection, {})[document_id] = copy.deepcopy(data)
        self._notify(collection)

    def update_document(self, collection: str, document_id: str, fields: dict[str, Any]) -> None:
        """Merge fields into an existing document and notify subscribers.

        Raises:
            KeyError: If the document does not exist
        """
        document = self._collections.get(collection, {})[document_id]
        document.update(copy.deepcopy(fields))
        self._notify(collection)

    def delete_document(self, collection: str, document_id: str) -> None:
        """Delete a document if present and notify subscribers."""
        if self._collections.get(collection, {}).pop(document_id, None) is not None:
            self._notify(collection)

    def redeliver(self, collection: str) -> None:
        """Push the current snapshot again without any change."""
        self._notify(collection)

    def fail_subscriptions(self, error: Exception | None = None) -> None:
        """Drop every open subscription with an error."""
        error = error or SubscriptionFailedError("Feed connection lost")
        for subscription in list(self._subscriptions):
            subscription._fail(error)

    def reject_subscriptions(self, error: Exception | None) -> None:
        """Make subsequent ``subscribe`` calls fail (``None`` to allow again)."""
        self._subscribe_error = error
