"""Push-feed abstraction: live queries that deliver full snapshots."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class SortDirection(str, Enum):
    """Sort direction for feed queries."""

    ASC = "asc"
    DESC = "desc"


@dataclass(frozen=True)
class DocumentSnapshot:
    """One document as delivered by the feed."""

    id: str
    data: dict[str, Any]


@dataclass
class QuerySnapshot:
    """Full result set of a live query at one point in time."""

    documents: list[DocumentSnapshot]
    received_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __len__(self) -> int:
        return len(self.documents)


@dataclass(frozen=True)
class FeedQuery:
    """Live query against one collection.

    Either ``document_id`` selects a single document, or ``filters``
    (field equality), ``order_by`` and ``limit`` describe a list query.
    """

    collection: str
    filters: tuple[tuple[str, Any], ...] = ()
    order_by: str | None = None
    direction: SortDirection = SortDirection.DESC
    limit: int | None = None
    document_id: str | None = None

    @classmethod
    def document(cls, collection: str, document_id: str) -> "FeedQuery":
        """Build a single-document query."""
        return cls(collection=collection, document_id=document_id)

    def matches(self, document_id: str, data: dict[str, Any]) -> bool:
        """Check whether a document belongs to the result set."""
        if self.document_id is not None:
            return document_id == self.document_id
        return all(data.get(name) == value for name, value in self.filters)

    def select(self, documents: list[DocumentSnapshot]) -> list[DocumentSnapshot]:
        """Filter, order and limit candidate documents.

        ``order_by`` names a timestamp field. Values in any accepted timestamp
        shape are compared as instants; unparseable values sort with the
        missing ones, after the rest.
        """
        selected = [doc for doc in documents if self.matches(doc.id, doc.data)]

        if self.order_by is not None:
            keyed = [(doc, _order_instant(doc.data.get(self.order_by))) for doc in selected]
            present = [(doc, instant) for doc, instant in keyed if instant is not None]
            missing = [doc for doc, instant in keyed if instant is None]
            present.sort(
                key=lambda pair: pair[1],
                reverse=self.direction == SortDirection.DESC,
            )
            selected = [doc for doc, _ in present] + missing

        if self.limit is not None:
            selected = selected[: self.limit]

        return selected


def _order_instant(value: Any) -> datetime | None:
    # Imported here: the redemption package imports this module
    from rewards_client.services.redemption.timestamps import parse_timestamp

    parsed = parse_timestamp(value)
    return parsed.value if parsed is not None else None


class Subscription(ABC):
    """Async iterator of snapshots for one live query.

    Iteration raises ``SubscriptionFailedError`` when the feed drops and
    stops once ``close()`` has been called.
    """

    def __aiter__(self) -> "Subscription":
        return self

    @abstractmethod
    async def __anext__(self) -> QuerySnapshot:
        """Wait for the next snapshot."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Stop delivery and release the subscription."""
        ...


class SnapshotSource(ABC):
    """Abstract base class for push-feed backends."""

    @abstractmethod
    async def subscribe(self, query: FeedQuery) -> Subscription:
        """Start a live query.

        Args:
            query: Query to evaluate on every change

        Returns:
            Subscription whose first snapshot is the current result set

        Raises:
            SubscriptionFailedError: If the subscription cannot be established
        """
        ...
