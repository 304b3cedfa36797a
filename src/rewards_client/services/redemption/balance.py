"""Points balance fed by the user document.

The balance is read only from the push feed. Redemption, refund and
cancellation responses carry balances too, but those are never shown, so the
displayed number always reflects what the server currently stores.
"""

import logging
from enum import Enum
from typing import Callable

from pydantic import BaseModel, ConfigDict

from rewards_client.core.config import Settings, get_settings
from rewards_client.infrastructure.feed.source import FeedQuery, QuerySnapshot, SnapshotSource
from rewards_client.services.feed_listener.listener import (
    FeedListener,
    ListenerConfig,
    ListenerState,
    Sleep,
)

logger = logging.getLogger(__name__)


class BalanceStatus(str, Enum):
    """Balance load status."""

    LOADING = "loading"
    READY = "ready"
    ERROR = "error"


class BalanceState(BaseModel):
    """Displayed balance; ``points`` is None until the first snapshot."""

    model_config = ConfigDict(frozen=True)

    status: BalanceStatus = BalanceStatus.LOADING
    points: int | None = None
    error: str | None = None

    @property
    def is_stale(self) -> bool:
        """Check whether a known value is shown alongside an error."""
        return self.status == BalanceStatus.ERROR and self.points is not None


BalanceListener = Callable[[BalanceState], None]


class PointsBalanceTracker:
    """Live points balance of the signed-in user."""

    def __init__(
        self,
        source: SnapshotSource,
        settings: Settings | None = None,
        sleep: Sleep | None = None,
    ):
        self.source = source
        self.settings = settings or get_settings()
        self._sleep = sleep
        self._state = BalanceState()
        self._listeners: list[BalanceListener] = []
        self._listener: FeedListener | None = None

    @property
    def state(self) -> BalanceState:
        """Get the current balance state."""
        return self._state

    @property
    def listener_state(self) -> ListenerState:
        """Get the feed listener state."""
        return self._listener.state if self._listener else ListenerState.STOPPED

    @property
    def degraded(self) -> bool:
        """Check whether live updates are paused after repeated failures."""
        return self._listener is not None and self._listener.degraded

    def add_listener(self, listener: BalanceListener) -> None:
        """Register a callback receiving every balance change."""
        self._listeners.append(listener)

    def remove_listener(self, listener: BalanceListener) -> None:
        """Remove a balance callback."""
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def start(self, user_id: str) -> None:
        """Subscribe to the user document."""
        await self.stop()

        kwargs = {"sleep": self._sleep} if self._sleep is not None else {}
        self._listener = FeedListener(
            self.source,
            FeedQuery.document(self.settings.users_collection, user_id),
            on_snapshot=self.apply_snapshot,
            on_failure=self.handle_feed_failure,
            config=ListenerConfig.from_settings(self.settings),
            **kwargs,
        )
        await self._listener.start()

    async def stop(self) -> None:
        """Unsubscribe and go back to loading."""
        if self._listener is not None:
            await self._listener.stop()
            self._listener = None
        self._set(BalanceState())

    async def resume(self) -> None:
        """Resubscribe now if the feed is backing off or degraded."""
        if self._listener is not None:
            await self._listener.resume()

    def apply_snapshot(self, snapshot: QuerySnapshot) -> None:
        """Read the points field of the user document."""
        if not snapshot.documents:
            logger.warning("User document not found, balance unavailable")
            self._fail("User profile not found")
            return

        points = snapshot.documents[0].data.get(self.settings.points_field)
        if isinstance(points, bool) or not isinstance(points, (int, float)):
            logger.error(f"Invalid points value in user document: {points!r}")
            self._fail("Invalid points balance")
            return

        self._set(BalanceState(status=BalanceStatus.READY, points=int(points)))

    def handle_feed_failure(self, error: Exception) -> None:
        """Flag the balance as unreliable, keeping the last known value."""
        self._fail(str(error))

    def _fail(self, message: str) -> None:
        self._set(
            BalanceState(status=BalanceStatus.ERROR, points=self._state.points, error=message)
        )

    def _set(self, state: BalanceState) -> None:
        if state == self._state:
            return
        self._state = state
        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception as e:
                logger.error(f"Balance listener failed: {e}")
