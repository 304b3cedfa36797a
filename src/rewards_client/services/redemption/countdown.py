"""Countdown engine for active redemptions.

One asyncio task per attached redemption recomputes the remaining time from
the wall clock on every tick. Expiry fires once per redemption code, however
many ticks observe a non-positive remaining time and however often the code
is detached and attached again, until ``forget`` is called.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable

from rewards_client.core.config import Settings, get_settings
from rewards_client.services.redemption.schemas import ActiveRedemption
from rewards_client.services.redemption.timestamps import Clock, utcnow

logger = logging.getLogger(__name__)


class Urgency(str, Enum):
    """Display emphasis of a countdown."""

    NORMAL = "normal"
    WARNING = "warning"
    URGENT = "urgent"
    CRITICAL = "critical"
    EXPIRED = "expired"


@dataclass(frozen=True)
class UrgencyThresholds:
    """Upper bounds (seconds, inclusive) of each urgency bucket."""

    warning: int = 300
    urgent: int = 120
    critical: int = 60

    @classmethod
    def from_settings(cls, settings: Settings) -> "UrgencyThresholds":
        """Build thresholds from client settings."""
        return cls(
            warning=settings.urgency_warning_seconds,
            urgent=settings.urgency_urgent_seconds,
            critical=settings.urgency_critical_seconds,
        )


DEFAULT_THRESHOLDS = UrgencyThresholds()


def format_remaining(seconds: float) -> str:
    """Render remaining time as ``m:ss``, clamped to ``0:00``."""
    total = max(0, int(seconds))
    minutes, secs = divmod(total, 60)
    return f"{minutes}:{secs:02d}"


def classify_urgency(
    seconds: float, thresholds: UrgencyThresholds = DEFAULT_THRESHOLDS
) -> Urgency:
    """Bucket remaining time for display emphasis."""
    if seconds <= 0:
        return Urgency.EXPIRED
    if seconds <= thresholds.critical:
        return Urgency.CRITICAL
    if seconds <= thresholds.urgent:
        return Urgency.URGENT
    if seconds <= thresholds.warning:
        return Urgency.WARNING
    return Urgency.NORMAL


@dataclass(frozen=True)
class CountdownTick:
    """One recomputation of a redemption's remaining time."""

    redemption_code: str
    remaining_seconds: float
    display: str
    urgency: Urgency

    @property
    def expired(self) -> bool:
        return self.remaining_seconds <= 0


ExpiryCallback = Callable[[ActiveRedemption], None]
TickCallback = Callable[[CountdownTick], None]
Sleep = Callable[[float], Awaitable[None]]


@dataclass
class _Timer:
    redemption: ActiveRedemption
    on_expired: ExpiryCallback
    on_tick: TickCallback | None
    task: asyncio.Task | None = None


class CountdownEngine:
    """Scheduler of per-redemption countdowns keyed by redemption code."""

    def __init__(
        self,
        settings: Settings | None = None,
        clock: Clock = utcnow,
        sleep: Sleep = asyncio.sleep,
    ):
        """Initialize countdown engine.

        Args:
            settings: Tick interval and urgency thresholds
            clock: Current UTC time
            sleep: Awaitable delay, replaceable in tests
        """
        settings = settings or get_settings()
        self.tick_interval = settings.countdown_tick_seconds
        self.thresholds = UrgencyThresholds.from_settings(settings)
        self._clock = clock
        self._sleep = sleep
        self._timers: dict[str, _Timer] = {}
        self._fired: set[str] = set()

    def is_attached(self, redemption_code: str) -> bool:
        """Check whether a countdown is running for the code."""
        return redemption_code in self._timers

    def has_fired(self, redemption_code: str) -> bool:
        """Check whether expiry already fired for the code."""
        return redemption_code in self._fired

    @property
    def attached_codes(self) -> set[str]:
        """Get codes with a running countdown."""
        return set(self._timers)

    def attach(
        self,
        redemption: ActiveRedemption,
        on_expired: ExpiryCallback,
        on_tick: TickCallback | None = None,
    ) -> CountdownTick:
        """Start counting down a redemption.

        An already expired redemption fires at once and no timer is started.
        Attaching a code again replaces its callbacks.

        Returns:
            The initial tick
        """
        code = redemption.redemption_code
        self.detach(code)

        timer = _Timer(redemption=redemption, on_expired=on_expired, on_tick=on_tick)
        self._timers[code] = timer

        tick = self.tick(code)
        if code in self._timers:
            timer.task = asyncio.get_running_loop().create_task(self._run(code, timer))
        return tick

    def detach(self, redemption_code: str) -> bool:
        """Stop a countdown; its callbacks never run afterwards."""
        timer = self._timers.pop(redemption_code, None)
        if timer is None:
            return False
        if timer.task is not None and timer.task is not asyncio.current_task():
            timer.task.cancel()
        return True

    def detach_all(self) -> None:
        """Stop every countdown."""
        for code in list(self._timers):
            self.detach(code)

    def forget(self, redemption_code: str) -> None:
        """Drop the fired flag once the redemption is gone for good."""
        self._fired.discard(redemption_code)

    async def close(self) -> None:
        """Stop every countdown and wait for the tasks to finish."""
        tasks = [timer.task for timer in self._timers.values() if timer.task is not None]
        self.detach_all()
        self._fired.clear()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def tick(self, redemption_code: str) -> CountdownTick | None:
        """Recompute one countdown from the wall clock.

        Returns:
            The tick, or None if the code is not attached
        """
        timer = self._timers.get(redemption_code)
        if timer is None:
            return None

        remaining = (timer.redemption.expires_at - self._clock()).total_seconds()
        tick = CountdownTick(
            redemption_code=redemption_code,
            remaining_seconds=remaining,
            display=format_remaining(remaining),
            urgency=classify_urgency(remaining, self.thresholds),
        )

        if timer.on_tick is not None:
            try:
                timer.on_tick(tick)
            except Exception as e:
                logger.error(f"Tick callback for {redemption_code} failed: {e}")

        if tick.expired:
            self.detach(redemption_code)
            self._fire(timer)

        return tick

    def _fire(self, timer: _Timer) -> None:
        code = timer.redemption.redemption_code
        if code in self._fired:
            return

        self._fired.add(code)
        logger.info(f"Countdown for {code} reached zero")
        try:
            timer.on_expired(timer.redemption)
        except Exception as e:
            logger.error(f"Expiry callback for {code} failed: {e}")

    async def _run(self, redemption_code: str, timer: _Timer) -> None:
        while True:
            await self._sleep(self.tick_interval)
            if self._timers.get(redemption_code) is not timer:
                return
            tick = self.tick(redemption_code)
            if tick is None or tick.expired:
                return
