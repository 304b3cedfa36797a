"""Active redemption tracker.

Holds the locally known set of active redemptions for the signed-in user,
derived from a live query on the redemption collection. The set is keyed by
redemption code, the value staff type or scan, so a replayed or duplicated
document never produces a second banner.

Only this class mutates the set. The UI and the countdown engine request
changes through ``mark_expired``, ``complete`` and ``cancel``.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from pydantic import ValidationError

from rewards_client.core.config import Settings, get_settings
from rewards_client.infrastructure.feed.source import (
    FeedQuery,
    QuerySnapshot,
    SnapshotSource,
    SortDirection,
)
from rewards_client.services.feed_listener.listener import (
    FeedListener,
    ListenerConfig,
    ListenerState,
    Sleep,
)
from rewards_client.services.redemption.schemas import (
    ActiveRedemption,
    RedemptionDetail,
    RedemptionRecord,
    RedemptionRequest,
    RedemptionResult,
    RedemptionState,
)
from rewards_client.services.redemption.timestamps import Clock, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RedemptionTransition:
    """One lifecycle change of a redemption.

    ``previous`` is None for records seen for the first time. ``provisional``
    marks expiries predicted locally and not yet confirmed by the server.
    """

    redemption_code: str
    previous: RedemptionState | None
    current: RedemptionState
    record: RedemptionRecord
    provisional: bool = False


@dataclass
class _Entry:
    record: RedemptionRecord
    state: RedemptionState
    admitted_at: datetime


ChangeListener = Callable[[list[ActiveRedemption]], None]
TransitionListener = Callable[[RedemptionTransition], None]


def active_redemptions_query(user_id: str, settings: Settings) -> FeedQuery:
    """Build the live query for a user's unused, unexpired redemptions."""
    return FeedQuery(
        collection=settings.redeemed_rewards_collection,
        filters=(("userId", user_id), ("isUsed", False), ("isExpired", False)),
        order_by="redeemedAt",
        direction=SortDirection.DESC,
        limit=settings.active_redemption_limit,
    )


class ActiveRedemptionTracker:
    """Authoritative local view of a user's active redemptions."""

    def __init__(
        self,
        source: SnapshotSource,
        settings: Settings | None = None,
        clock: Clock = utcnow,
        sleep: Sleep | None = None,
    ):
        """Initialize tracker.

        Args:
            source: Push feed the redemption query runs against
            settings: Collection names, limits and backoff
            clock: Current UTC time
            sleep: Backoff delay override for the feed listener
        """
        self.source = source
        self.settings = settings or get_settings()
        self._clock = clock
        self._sleep = sleep

        self._entries: dict[str, _Entry] = {}
        # Hidden by a local countdown, waiting for the server to agree
        self._predicted_expired: dict[str, RedemptionRecord] = {}
        # Already expired when first seen; refund path notified once
        self._stale: set[str] = set()
        # Completed or cancelled by the user; ignored while stale snapshots still list them
        self._dismissed: set[str] = set()
        # On screen when the feed dropped; reconciled by the next snapshot
        self._hidden_by_failure: dict[str, _Entry] = {}

        self._change_listeners: list[ChangeListener] = []
        self._transition_listeners: list[TransitionListener] = []
        self._published: list[ActiveRedemption] = []
        self._listener: FeedListener | None = None
        self._user_id: str | None = None

    # Subscription lifecycle

    @property
    def user_id(self) -> str | None:
        """Get the user whose redemptions are tracked."""
        return self._user_id

    @property
    def listener_state(self) -> ListenerState:
        """Get the feed listener state."""
        return self._listener.state if self._listener else ListenerState.STOPPED

    @property
    def degraded(self) -> bool:
        """Check whether live updates are paused after repeated failures."""
        return self._listener is not None and self._listener.degraded

    async def start(self, user_id: str) -> None:
        """Subscribe to the user's active redemptions."""
        if self._listener is not None:
            if self._user_id == user_id:
                return
            await self.stop()

        self._user_id = user_id
        kwargs = {"sleep": self._sleep} if self._sleep is not None else {}
        self._listener = FeedListener(
            self.source,
            active_redemptions_query(user_id, self.settings),
            on_snapshot=self.apply_snapshot,
            on_failure=self.handle_feed_failure,
            config=ListenerConfig.from_settings(self.settings),
            **kwargs,
        )
        logger.info(f"Tracking active redemptions for user {user_id}")
        await self._listener.start()

    async def stop(self) -> None:
        """Unsubscribe and drop all local state."""
        if self._listener is not None:
            await self._listener.stop()
            self._listener = None
        self._user_id = None
        self.reset()

    async def resume(self) -> None:
        """Resubscribe now if the feed is backing off or degraded."""
        if self._listener is not None:
            await self._listener.resume()

    # Listeners

    def add_change_listener(self, listener: ChangeListener) -> None:
        """Register a callback receiving the ordered active list on change."""
        self._change_listeners.append(listener)

    def remove_change_listener(self, listener: ChangeListener) -> None:
        """Remove a change callback."""
        if listener in self._change_listeners:
            self._change_listeners.remove(listener)

    def add_transition_listener(self, listener: TransitionListener) -> None:
        """Register a callback receiving every lifecycle transition."""
        self._transition_listeners.append(listener)

    def remove_transition_listener(self, listener: TransitionListener) -> None:
        """Remove a transition callback."""
        if listener in self._transition_listeners:
            self._transition_listeners.remove(listener)

    # Reads

    @property
    def active(self) -> list[ActiveRedemption]:
        """Get visible redemptions, newest first."""
        entries = sorted(
            self._entries.values(),
            key=lambda entry: (entry.record.redeemed_at, entry.record.redemption_code),
            reverse=True,
        )
        return [entry.record.to_active() for entry in entries]

    def get(self, redemption_code: str) -> ActiveRedemption | None:
        """Look up a visible redemption by code."""
        entry = self._entries.get(redemption_code)
        return entry.record.to_active() if entry else None

    def detail(self, redemption_code: str) -> RedemptionDetail | None:
        """Get the full code screen data of a visible redemption."""
        entry = self._entries.get(redemption_code)
        return entry.record.to_detail() if entry else None

    def state_of(self, redemption_code: str) -> RedemptionState | None:
        """Get the state of a visible redemption."""
        entry = self._entries.get(redemption_code)
        return entry.state if entry else None

    def is_tracking(self, redemption_code: str) -> bool:
        """Check whether the code is visible or awaiting server confirmation."""
        return (
            redemption_code in self._entries
            or redemption_code in self._predicted_expired
            or redemption_code in self._stale
            or redemption_code in self._hidden_by_failure
        )

    # Transitions from the feed

    def apply_snapshot(self, snapshot: QuerySnapshot) -> None:
        """Reconcile local state with a full snapshot.

        Applying the same snapshot twice is a no-op.
        """
        now = self._clock()
        transitions: list[RedemptionTransition] = []

        seen: dict[str, RedemptionRecord] = {}
        for document in snapshot.documents:
            try:
                record = RedemptionRecord.from_document(document.id, document.data, now)
            except ValidationError as e:
                logger.warning(f"Skipping redemption document {document.id}: {e}")
                continue
            # Feed order is newest first; the first document for a code wins
            if record.redemption_code not in seen:
                seen[record.redemption_code] = record

        hidden, self._hidden_by_failure = self._hidden_by_failure, {}

        for code, record in seen.items():
            if code in self._dismissed:
                continue
            entry = hidden.pop(code, None)
            if entry is not None:
                if record.server_active and not record.is_active_at(now):
                    self._expire_hidden(code, entry, record, transitions)
                    continue
                self._entries.setdefault(code, entry)
            if not record.server_active:
                state = RedemptionState.USED if record.is_used else RedemptionState.EXPIRED
                self._retire(code, state, record, transitions)
                continue
            self._admit_from_feed(code, record, now, transitions)

        # Gone while the feed was down: retired like any other vanished record
        for code, entry in hidden.items():
            if code not in self._dismissed:
                self._entries.setdefault(code, entry)

        grace = timedelta(seconds=self.settings.pending_grace_seconds)
        for code, entry in list(self._entries.items()):
            if code in seen:
                continue
            if entry.state == RedemptionState.PENDING and now - entry.admitted_at < grace:
                continue
            state = (
                RedemptionState.EXPIRED
                if entry.record.expires_at <= now
                else RedemptionState.USED
            )
            self._retire(code, state, entry.record, transitions)

        for code in list(self._predicted_expired):
            if code not in seen:
                record = self._predicted_expired.pop(code)
                logger.info(f"Server confirmed expiry of {code}")
                transitions.append(
                    RedemptionTransition(
                        code, RedemptionState.EXPIRED, RedemptionState.EXPIRED, record
                    )
                )

        self._stale &= set(seen)
        self._dismissed &= set(seen)

        self._publish(transitions)

    def _admit_from_feed(
        self,
        code: str,
        record: RedemptionRecord,
        now: datetime,
        transitions: list[RedemptionTransition],
    ) -> None:
        entry = self._entries.get(code)
        if entry is not None:
            if entry.state == RedemptionState.PENDING:
                entry.record = record
                entry.state = RedemptionState.ACTIVE
                transitions.append(
                    RedemptionTransition(code, RedemptionState.PENDING, RedemptionState.ACTIVE, record)
                )
            return

        if code in self._predicted_expired:
            # Server still lists it as active: the local prediction was early
            del self._predicted_expired[code]
            self._entries[code] = _Entry(record, RedemptionState.ACTIVE, now)
            logger.info(f"Re-admitting {code}, server reports it still active")
            transitions.append(
                RedemptionTransition(code, RedemptionState.EXPIRED, RedemptionState.ACTIVE, record)
            )
            return

        if code in self._stale:
            return

        if record.is_active_at(now):
            self._entries[code] = _Entry(record, RedemptionState.ACTIVE, now)
            transitions.append(RedemptionTransition(code, None, RedemptionState.ACTIVE, record))
        else:
            self._stale.add(code)
            logger.info(f"Redemption {code} already past expiry when first seen")
            transitions.append(
                RedemptionTransition(
                    code, None, RedemptionState.EXPIRED, record, provisional=True
                )
            )

    def _expire_hidden(
        self,
        code: str,
        entry: _Entry,
        record: RedemptionRecord,
        transitions: list[RedemptionTransition],
    ) -> None:
        # Deadline passed while the feed was down; the banner was on screen
        self._stale.add(code)
        logger.info(f"Redemption {code} expired while the feed was unavailable")
        transitions.append(
            RedemptionTransition(
                code, entry.state, RedemptionState.EXPIRED, record, provisional=True
            )
        )

    def _retire(
        self,
        code: str,
        state: RedemptionState,
        record: RedemptionRecord,
        transitions: list[RedemptionTransition],
    ) -> None:
        self._predicted_expired.pop(code, None)
        self._stale.discard(code)
        entry = self._entries.pop(code, None)
        if entry is None:
            return
        logger.info(f"Redemption {code} {entry.state.value} -> {state.value}")
        transitions.append(RedemptionTransition(code, entry.state, state, record))

    def handle_feed_failure(self, error: Exception) -> None:
        """Clear the visible set when the subscription drops.

        Cleared redemptions are remembered, so one whose deadline passes before
        the feed returns still reports an expiry from the state it was shown in.
        """
        logger.warning(f"Redemption feed failed, clearing active set: {error}")
        self._hidden_by_failure.update(self._entries)
        self._entries.clear()
        self._publish([])

    # Transitions requested locally

    def admit_from_ledger(
        self, result: RedemptionResult, request: RedemptionRequest
    ) -> ActiveRedemption:
        """Show a just-redeemed reward before the feed delivers it."""
        code = result.redemption_code
        entry = self._entries.get(code)
        if entry is None:
            now = self._clock()
            record = RedemptionRecord.from_result(result, request, now)
            self._dismissed.discard(code)
            self._entries[code] = _Entry(record, RedemptionState.PENDING, now)
            self._publish([RedemptionTransition(code, None, RedemptionState.PENDING, record)])
            entry = self._entries[code]
        return entry.record.to_active()

    def mark_expired(self, redemption_code: str) -> bool:
        """Hide a redemption whose local countdown reached zero.

        The record comes back if the next snapshot still lists it as active.

        Returns:
            True if the redemption was visible
        """
        entry = self._entries.pop(redemption_code, None)
        if entry is None:
            return False

        self._predicted_expired[redemption_code] = entry.record
        self._publish([
            RedemptionTransition(
                redemption_code,
                entry.state,
                RedemptionState.EXPIRED,
                entry.record,
                provisional=True,
            )
        ])
        return True

    def complete(self, redemption_code: str) -> bool:
        """Remove a redemption the user finished using."""
        return self._dismiss(redemption_code, RedemptionState.USED)

    def cancel(self, redemption_code: str) -> bool:
        """Remove a redemption the backend agreed to cancel."""
        return self._dismiss(redemption_code, RedemptionState.CANCELLED)

    def _dismiss(self, redemption_code: str, state: RedemptionState) -> bool:
        entry = self._entries.pop(redemption_code, None)
        self._predicted_expired.pop(redemption_code, None)
        self._hidden_by_failure.pop(redemption_code, None)
        if entry is None:
            return False

        self._dismissed.add(redemption_code)
        self._publish([
            RedemptionTransition(redemption_code, entry.state, state, entry.record)
        ])
        return True

    def reset(self) -> None:
        """Drop all local state."""
        self._entries.clear()
        self._predicted_expired.clear()
        self._stale.clear()
        self._dismissed.clear()
        self._hidden_by_failure.clear()
        self._publish([])

    # Notification

    def _publish(self, transitions: list[RedemptionTransition]) -> None:
        for transition in transitions:
            for listener in list(self._transition_listeners):
                try:
                    listener(transition)
                except Exception as e:
                    logger.error(f"Transition listener failed: {e}")

        active = self.active
        if active == self._published:
            return
        self._published = active

        for listener in list(self._change_listeners):
            try:
                listener(active)
            except Exception as e:
                logger.error(f"Change listener failed: {e}")
