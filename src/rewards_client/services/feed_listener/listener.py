"""Live feed listener with capped exponential-backoff resubscription."""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Awaitable, Callable

from rewards_client.core.config import Settings
from rewards_client.core.errors import SubscriptionFailedError
from rewards_client.infrastructure.feed.source import (
    FeedQuery,
    QuerySnapshot,
    SnapshotSource,
    Subscription,
)

logger = logging.getLogger(__name__)


class ListenerState(str, Enum):
    """Feed listener state."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    RECONNECTING = "reconnecting"
    DEGRADED = "degraded"


@dataclass
class ListenerConfig:
    """Configuration for feed listener."""

    # First resubscription delay (seconds), doubled per consecutive failure
    backoff_initial: float = 1.0

    # Resubscription delay cap (seconds)
    backoff_max: float = 60.0

    # Consecutive failures before giving up until resume()
    max_reconnect_attempts: int = 8

    @classmethod
    def from_settings(cls, settings: Settings) -> "ListenerConfig":
        """Build config from client settings."""
        return cls(
            backoff_initial=settings.feed_backoff_initial_seconds,
            backoff_max=settings.feed_backoff_max_seconds,
            max_reconnect_attempts=settings.feed_max_reconnect_attempts,
        )

    def backoff_delay(self, attempt: int) -> float:
        """Get delay before resubscription attempt ``attempt`` (1-based)."""
        return min(self.backoff_initial * 2 ** (attempt - 1), self.backoff_max)


@dataclass
class ListenerStats:
    """Statistics for feed listener."""

    state: ListenerState = ListenerState.STOPPED
    snapshots_received: int = 0
    failures: int = 0
    handler_errors: int = 0
    reconnect_attempts: int = 0
    last_error: str = ""
    last_snapshot_time: datetime | None = None
    started_at: datetime | None = None


SnapshotHandler = Callable[[QuerySnapshot], None]
FailureHandler = Callable[[Exception], None]
StateHandler = Callable[[ListenerState], None]
Sleep = Callable[[float], Awaitable[None]]


class FeedListener:
    """Keeps one live query subscribed and delivers its snapshots.

    Features:
    - Snapshots delivered in feed order on the event loop
    - Failure callback before each resubscription
    - Capped exponential backoff, DEGRADED once attempts are exhausted
    - resume() for app-foreground reconnection
    """

    def __init__(
        self,
        source: SnapshotSource,
        query: FeedQuery,
        on_snapshot: SnapshotHandler,
        on_failure: FailureHandler | None = None,
        config: ListenerConfig | None = None,
        on_state_change: StateHandler | None = None,
        sleep: Sleep = asyncio.sleep,
    ):
        """Initialize feed listener.

        Args:
            source: Push-feed backend
            query: Live query to keep subscribed
            on_snapshot: Called with every delivered snapshot
            on_failure: Called when the subscription drops
            config: Backoff configuration
            on_state_change: Called on every state change
            sleep: Awaitable delay, replaceable in tests
        """
        self.source = source
        self.query = query
        self.config = config or ListenerConfig()
        self._on_snapshot = on_snapshot
        self._on_failure = on_failure
        self._on_state_change = on_state_change
        self._sleep = sleep

        self._state = ListenerState.STOPPED
        self._stats = ListenerStats()
        self._task: asyncio.Task | None = None
        self._subscription: Subscription | None = None

    @property
    def state(self) -> ListenerState:
        """Get current listener state."""
        return self._state

    @property
    def degraded(self) -> bool:
        """Check whether backoff is exhausted (reduced connectivity)."""
        return self._state == ListenerState.DEGRADED

    @property
    def stats(self) -> ListenerStats:
        """Get listener statistics."""
        self._stats.state = self._state
        return self._stats

    def _set_state(self, state: ListenerState) -> None:
        if state == self._state:
            return
        self._state = state
        if self._on_state_change is not None:
            try:
                self._on_state_change(state)
            except Exception as e:
                logger.error(f"Listener state callback failed: {e}")

    async def start(self) -> None:
        """Start the subscription loop."""
        if self._task is not None and not self._task.done():
            logger.warning(f"Feed listener for {self.query.collection} is already running")
            return

        self._set_state(ListenerState.STARTING)
        self._stats.started_at = datetime.now(timezone.utc)
        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        """Cancel the loop and close the subscription."""
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        await self._close_subscription()
        self._set_state(ListenerState.STOPPED)

    async def resume(self) -> None:
        """Resubscribe immediately after a drop (app returned to foreground)."""
        if self._state in (ListenerState.DEGRADED, ListenerState.RECONNECTING):
            logger.info(f"Resuming feed listener for {self.query.collection}")
            await self.stop()
            await self.start()

    async def _close_subscription(self) -> None:
        if self._subscription is not None:
            subscription, self._subscription = self._subscription, None
            try:
                await subscription.close()
            except Exception as e:
                logger.warning(f"Failed to close subscription: {e}")

    async def _run(self) -> None:
        """Main subscription loop."""
        attempts = 0

        while True:
            try:
                self._subscription = await self.source.subscribe(self.query)
                self._set_state(ListenerState.RUNNING)

                async for snapshot in self._subscription:
                    attempts = 0
                    self._stats.reconnect_attempts = 0
                    self._deliver(snapshot)

                raise SubscriptionFailedError("Feed closed by source")

            except asyncio.CancelledError:
                raise

            except Exception as e:
                self._stats.failures += 1
                self._stats.last_error = str(e)
                logger.warning(f"Feed subscription for {self.query.collection} failed: {e}")

                await self._close_subscription()
                self._report_failure(e)

                attempts += 1
                self._stats.reconnect_attempts = attempts
                if attempts >= self.config.max_reconnect_attempts:
                    logger.error(
                        f"Max reconnect attempts reached for {self.query.collection}, "
                        "waiting for resume"
                    )
                    self._set_state(ListenerState.DEGRADED)
                    return

                self._set_state(ListenerState.RECONNECTING)
                delay = self.config.backoff_delay(attempts)
                logger.info(f"Resubscribing in {delay}s (attempt {attempts})")
                await self._sleep(delay)

    def _deliver(self, snapshot: QuerySnapshot) -> None:
        self._stats.snapshots_received += 1
        self._stats.last_snapshot_time = snapshot.received_at
        try:
            self._on_snapshot(snapshot)
        except Exception as e:
            self._stats.handler_errors += 1
            logger.error(f"Snapshot handler error: {e}")

    def _report_failure(self, error: Exception) -> None:
        if self._on_failure is None:
            return
        try:
            self._on_failure(error)
        except Exception as e:
            logger.error(f"Failure handler error: {e}")
