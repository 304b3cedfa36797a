"""Rewards screen session.

Wires the ledger, tracker, countdown engine and balance tracker together for
the lifetime of one rewards screen. ``enter`` subscribes both feeds and
``leave`` tears everything down, so nothing survives between visits except
what the server reports on the next one.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable

from rewards_client.core.config import Settings, get_settings
from rewards_client.core.errors import FeedUnavailableError, RewardsClientError
from rewards_client.infrastructure.backend.client import BackendClient
from rewards_client.infrastructure.feed.source import SnapshotSource
from rewards_client.services.redemption.balance import BalanceState, PointsBalanceTracker
from rewards_client.services.redemption.countdown import CountdownEngine, CountdownTick
from rewards_client.services.redemption.ledger import RedemptionLedgerClient
from rewards_client.services.redemption.schemas import (
    ActiveRedemption,
    CancellationResult,
    RedemptionIntent,
    RedemptionRecord,
    RedemptionResult,
    RedemptionState,
)
from rewards_client.services.redemption.tracker import (
    ActiveRedemptionTracker,
    RedemptionTransition,
)

logger = logging.getLogger(__name__)

REFUNDED_MESSAGE = "{points} points refunded - reward expired"
REFUND_UNCONFIRMED_MESSAGE = "Reward expired - checking refund status"
EXPIRED_MESSAGE = "Reward expired"

Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class RefundNotice:
    """Short-lived message shown after an expired reward's refund request."""

    redemption_code: str
    message: str
    points_refunded: int = 0


class RedemptionSession:
    """One visit to the rewards screen."""

    def __init__(
        self,
        ledger: RedemptionLedgerClient,
        tracker: ActiveRedemptionTracker,
        engine: CountdownEngine,
        balance: PointsBalanceTracker,
        on_expired: Callable[[ActiveRedemption], None] | None = None,
        on_refund_notice: Callable[[RefundNotice], None] | None = None,
        on_tick: Callable[[CountdownTick], None] | None = None,
        settings: Settings | None = None,
        sleep: Sleep = asyncio.sleep,
    ):
        """Initialize session.

        Args:
            ledger: Redemption endpoints
            tracker: Active redemption set
            engine: Countdown scheduler
            balance: Points balance feed
            on_expired: Shows the expired interstitial, once per redemption
            on_refund_notice: Shows the refund outcome
            on_tick: Receives every countdown tick
            settings: Refund re-check delay
            sleep: Awaitable delay, replaceable in tests
        """
        self.ledger = ledger
        self.tracker = tracker
        self.engine = engine
        self.balance = balance
        self._on_expired = on_expired
        self._on_refund_notice = on_refund_notice
        self._on_tick = on_tick
        self.settings = settings or get_settings()
        self._sleep = sleep

        self._user_id: str | None = None
        self._expired_codes: set[str] = set()
        self._refund_tasks: set[asyncio.Task] = set()
        # Codes with a refund request in flight, and codes whose refund is settled
        self._refunding: set[str] = set()
        self._refund_settled: set[str] = set()
        self._rechecks: dict[str, asyncio.Task] = {}

        tracker.add_change_listener(self._sync_countdowns)
        tracker.add_transition_listener(self._handle_transition)

    @property
    def user_id(self) -> str | None:
        """Get the signed-in user, or None outside the screen."""
        return self._user_id

    @property
    def active(self) -> list[ActiveRedemption]:
        """Get redemptions to render as banners."""
        return self.tracker.active

    @property
    def balance_state(self) -> BalanceState:
        """Get the points balance to display."""
        return self.balance.state

    @property
    def degraded(self) -> bool:
        """Check whether live updates are paused."""
        return self.tracker.degraded or self.balance.degraded

    @property
    def connectivity_error(self) -> FeedUnavailableError | None:
        """Get the reduced-connectivity error to show, if any."""
        if not self.degraded:
            return None
        return FeedUnavailableError("Live updates paused after repeated feed failures")

    # Lifecycle

    async def enter(self, user_id: str) -> None:
        """Subscribe to the user's redemptions and balance."""
        if self._user_id == user_id:
            return
        if self._user_id is not None:
            await self.leave()

        logger.info(f"Entering rewards screen for user {user_id}")
        self._user_id = user_id
        await self.tracker.start(user_id)
        await self.balance.start(user_id)

    async def leave(self) -> None:
        """Cancel all timers and unsubscribe both feeds."""
        if self._user_id is None:
            return

        logger.info(f"Leaving rewards screen for user {self._user_id}")
        self._user_id = None
        await self.engine.close()
        await self.tracker.stop()
        await self.balance.stop()

        rechecks = list(self._rechecks.values())
        for task in list(self._refund_tasks) + rechecks:
            task.cancel()
        if self._refund_tasks or rechecks:
            await asyncio.gather(*self._refund_tasks, *rechecks, return_exceptions=True)
        self._rechecks.clear()
        self._expired_codes.clear()
        self._refunding.clear()
        self._refund_settled.clear()

    async def resume(self) -> None:
        """Reconnect feeds when the app returns to the foreground."""
        await self.tracker.resume()
        await self.balance.resume()

    async def wait_for_refunds(self) -> None:
        """Wait until every requested expiry refund has been answered."""
        while self._refund_tasks:
            await asyncio.gather(*list(self._refund_tasks), return_exceptions=True)

    # User actions

    async def redeem(self, intent: RedemptionIntent) -> RedemptionResult:
        """Redeem a reward and show it before the feed catches up."""
        result = await self.ledger.redeem(intent)
        if self._user_id is not None:
            self.tracker.admit_from_ledger(result, intent.request)
        return result

    async def cancel(self, redemption_code: str) -> CancellationResult:
        """Cancel a redemption the backend allows to be cancelled."""
        result = await self.ledger.cancel_redemption(redemption_code)
        self.tracker.cancel(redemption_code)
        return result

    # Tracker callbacks

    def _sync_countdowns(self, active: list[ActiveRedemption]) -> None:
        codes = {redemption.redemption_code for redemption in active}
        for code in self.engine.attached_codes - codes:
            self.engine.detach(code)

        for redemption in active:
            if self.engine.is_attached(redemption.redemption_code):
                continue
            if self.engine.has_fired(redemption.redemption_code):
                # Re-admitted after an early local expiry; shows 0:00 until the server settles it
                continue
            self.engine.attach(redemption, self._countdown_expired, self._on_tick)

    def _countdown_expired(self, redemption: ActiveRedemption) -> None:
        # Runs inside tracker callbacks when attach finds a past deadline
        asyncio.get_running_loop().call_soon(self._expire, redemption.redemption_code)

    def _expire(self, redemption_code: str) -> None:
        if self._user_id is None:
            return
        self.tracker.mark_expired(redemption_code)

    def _handle_transition(self, transition: RedemptionTransition) -> None:
        code = transition.redemption_code

        if transition.current.is_terminal and not transition.provisional:
            self.engine.forget(code)

        if transition.previous == RedemptionState.EXPIRED:
            if transition.current == RedemptionState.ACTIVE:
                logger.info(f"Redemption {code} is still active on the server")
                self._schedule_refund_recheck(transition.record)
            elif transition.current == RedemptionState.EXPIRED:
                self._retry_refund(transition.record)
            return

        if transition.current != RedemptionState.EXPIRED:
            return

        if code in self._expired_codes:
            # Server settled a redemption it had re-admitted; no second interstitial
            self._retry_refund(transition.record)
            return

        self._expired_codes.add(code)
        if transition.previous is not None and self._on_expired is not None:
            try:
                self._on_expired(transition.record.to_active())
            except Exception as e:
                logger.error(f"Expiry handler for {code} failed: {e}")

        self._request_refund(transition.record)

    # Refunds

    def _request_refund(self, record: RedemptionRecord, announce_failure: bool = True) -> None:
        self._refunding.add(record.redemption_code)
        task = asyncio.get_running_loop().create_task(self._refund(record, announce_failure))
        self._refund_tasks.add(task)
        task.add_done_callback(self._refund_done)

    def _refund_done(self, task: asyncio.Task) -> None:
        self._refund_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Refund request crashed: {task.exception()}")

    def _retry_refund(self, record: RedemptionRecord) -> None:
        """Request the refund again, silently, unless it is settled or in flight."""
        code = record.redemption_code
        recheck = self._rechecks.pop(code, None)
        if recheck is not None and recheck is not asyncio.current_task():
            recheck.cancel()
        if self._user_id is None or code in self._refund_settled or code in self._refunding:
            return
        logger.info(f"Re-requesting refund for expired {code}")
        self._request_refund(record, announce_failure=False)

    def _schedule_refund_recheck(self, record: RedemptionRecord) -> None:
        code = record.redemption_code
        if code in self._refund_settled or code in self._rechecks:
            return
        self._rechecks[code] = asyncio.get_running_loop().create_task(
            self._recheck_refund(record)
        )

    async def _recheck_refund(self, record: RedemptionRecord) -> None:
        await self._sleep(self.settings.refund_recheck_seconds)
        self._retry_refund(record)

    async def _refund(self, record: RedemptionRecord, announce_failure: bool = True) -> None:
        code = record.redemption_code
        try:
            result = await self.ledger.request_expiry_refund(
                reward_id=record.document_id or None, redemption_code=code
            )
        except RewardsClientError as e:
            logger.warning(f"Refund for expired {code} failed: {e}")
            if not announce_failure:
                return
            # An error status means the server answered; it may have refunded already
            if getattr(e, "status_code", None) is not None:
                notice = RefundNotice(code, REFUND_UNCONFIRMED_MESSAGE)
            else:
                notice = RefundNotice(code, EXPIRED_MESSAGE)
        else:
            self._refund_settled.add(code)
            if result.already_refunded:
                logger.info(f"Points for {code} were already refunded")
                return
            logger.info(f"Refunded {result.points_refunded} points for expired {code}")
            notice = RefundNotice(
                code,
                REFUNDED_MESSAGE.format(points=result.points_refunded),
                points_refunded=result.points_refunded,
            )
        finally:
            self._refunding.discard(code)

        if self._on_refund_notice is not None:
            try:
                self._on_refund_notice(notice)
            except Exception as e:
                logger.error(f"Refund notice handler failed: {e}")


def create_session(
    backend: BackendClient,
    source: SnapshotSource,
    settings: Settings | None = None,
    **callbacks: Callable,
) -> RedemptionSession:
    """Build a session with its own ledger, tracker, engine and balance feed.

    Args:
        backend: Backend transport
        source: Push feed for redemptions and the user document
        settings: Client settings
        **callbacks: ``on_expired``, ``on_refund_notice`` and ``on_tick``

    Returns:
        A session not yet entered
    """
    settings = settings or get_settings()
    return RedemptionSession(
        ledger=RedemptionLedgerClient(backend, settings),
        tracker=ActiveRedemptionTracker(source, settings),
        engine=CountdownEngine(settings),
        balance=PointsBalanceTracker(source, settings),
        settings=settings,
        **callbacks,
    )
