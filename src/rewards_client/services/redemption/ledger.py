"""Redemption ledger client.

Performs the point-deducting redemption call exactly once per user intent
and fetches the menu items eligible for a reward tier. Results are handed to
the tracker; nothing here touches timers or view state.
"""

import asyncio
import logging
from typing import Awaitable, Callable
from urllib.parse import quote

from pydantic import ValidationError

from rewards_client.core.config import Settings, get_settings
from rewards_client.core.errors import (
    MalformedResponseError,
    RedemptionRejectedError,
    RewardsClientError,
    TransientBackendError,
)
from rewards_client.infrastructure.backend.client import BackendClient, BackendResponse
from rewards_client.services.redemption.pending_store import PendingRedemptionStore
from rewards_client.services.redemption.schemas import (
    CancellationResult,
    EligibleItem,
    RedemptionIntent,
    RedemptionResult,
    RefundResult,
    RewardTierItems,
)
from rewards_client.services.redemption.timestamps import Clock, utcnow

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


class RedemptionLedgerClient:
    """Client for the reward redemption endpoints."""

    def __init__(
        self,
        backend: BackendClient,
        settings: Settings | None = None,
        pending_store: PendingRedemptionStore | None = None,
        clock: Clock = utcnow,
        sleep: Sleep = asyncio.sleep,
    ):
        """Initialize ledger client.

        Args:
            backend: Backend transport
            settings: Retry settings
            pending_store: Where in-flight intents are persisted
            clock: Current UTC time
            sleep: Awaitable delay, replaceable in tests
        """
        self.backend = backend
        self.settings = settings or get_settings()
        self.pending_store = pending_store or PendingRedemptionStore(
            self.settings.pending_redemptions_path
        )
        self._clock = clock
        self._sleep = sleep
        self._inflight: dict[str, asyncio.Future[RedemptionResult]] = {}

    # Eligible items

    async def fetch_eligible_items(
        self, points_required: int, tier_id: str | None = None
    ) -> list[EligibleItem]:
        """Fetch the menu items selectable for a reward tier.

        An empty list is a valid outcome: the reward has no item-level choice
        and the caller shows a generic confirmation instead.

        Args:
            points_required: Points cost of the reward
            tier_id: Tier identifier; takes precedence when given

        Returns:
            Eligible items in server order

        Raises:
            TransientBackendError: Network failure or 5xx
            RedemptionRejectedError: Other non-2xx answer
            MalformedResponseError: Unexpected payload
        """
        if tier_id:
            path = f"/reward-tier-items/by-id/{quote(tier_id, safe='')}"
            label = f"tier {tier_id}"
        else:
            path = f"/reward-tier-items/{points_required}"
            label = f"{points_required} point tier"

        logger.info(f"Fetching eligible items for {label}")
        response = await self.backend.get_json(path)
        self._raise_for_error(response, f"fetching {label}")

        try:
            tier = RewardTierItems.model_validate(response.payload)
        except ValidationError as e:
            logger.error(f"Malformed tier items response for {label}: {e}")
            raise MalformedResponseError(f"Invalid tier items payload: {e}") from e

        if not tier.eligible_items:
            logger.warning(f"{label} returned 0 items; the tier may not be configured")
        else:
            logger.info(f"Fetched {len(tier.eligible_items)} eligible items for {label}")

        return tier.eligible_items

    # Redemption

    async def redeem(self, intent: RedemptionIntent) -> RedemptionResult:
        """Redeem a reward for one user intent.

        Concurrent calls with the same intent share one request. Transient
        failures are retried with the same idempotency key; the intent stays
        in the pending store if retries run out.

        Raises:
            AuthenticationRequiredError: Not signed in
            InsufficientPointsError: Balance too low
            RedemptionRejectedError: Other business-rule rejection
            TransientBackendError: Retries exhausted
            MalformedResponseError: Unexpected payload
        """
        key = intent.idempotency_key
        future = self._inflight.get(key)

        if future is None or future.done():
            future = asyncio.ensure_future(self._redeem_with_retry(intent))
            self._inflight[key] = future

            def _forget(done: asyncio.Future, key: str = key) -> None:
                if self._inflight.get(key) is done:
                    del self._inflight[key]

            future.add_done_callback(_forget)
        else:
            logger.info(f"Redemption {key} already in flight, joining it")

        return await asyncio.shield(future)

    async def _redeem_with_retry(self, intent: RedemptionIntent) -> RedemptionResult:
        key = intent.idempotency_key
        max_attempts = self.settings.redeem_max_attempts
        self.pending_store.add(intent)

        logger.info(
            f"Redeeming '{intent.request.reward_title}' for "
            f"{intent.request.points_required} points (key {key})"
        )

        last_error: TransientBackendError | None = None
        for attempt in range(1, max_attempts + 1):
            try:
                result = await self._post_redemption(intent)
            except TransientBackendError as e:
                last_error = e
                logger.warning(
                    f"Redemption attempt {attempt}/{max_attempts} failed (key {key}): {e}"
                )
                if attempt < max_attempts:
                    await self._sleep(self.settings.redeem_retry_delay_seconds * attempt)
                continue
            except RewardsClientError as e:
                self.pending_store.remove(key)
                logger.error(f"Redemption failed (key {key}): {e}")
                raise

            self.pending_store.remove(key)
            logger.info(
                f"Redeemed code {result.redemption_code}, "
                f"new balance {result.new_points_balance}"
            )
            return result

        logger.error(f"Redemption retries exhausted (key {key}), intent kept for retry")
        raise last_error or TransientBackendError("Redemption retries exhausted")

    async def _post_redemption(self, intent: RedemptionIntent) -> RedemptionResult:
        response = await self.backend.post_json("/redeem-reward", intent.to_payload())
        self._raise_for_error(response, "redeeming reward")

        # A refusal carries only success/error, so it is checked before validation
        if response.payload.get("success") is False:
            raise RedemptionRejectedError(
                response.payload.get("error")
                or response.payload.get("message")
                or "Redemption was not accepted",
                status_code=response.status_code,
            )

        try:
            result = RedemptionResult.from_payload(response.payload, self._clock())
        except ValidationError as e:
            logger.error(f"Malformed redemption response: {e}")
            raise MalformedResponseError(f"Invalid redemption payload: {e}") from e

        if not result.success:
            raise RedemptionRejectedError(
                result.error or result.message or "Redemption was not accepted",
                status_code=response.status_code,
            )

        return result

    def pending_intents(self) -> list[RedemptionIntent]:
        """Get intents interrupted before a definitive outcome.

        Retry each with ``redeem`` to reuse its original idempotency key.
        """
        return self.pending_store.intents()

    # Expiry refund / cancellation

    async def request_expiry_refund(
        self, reward_id: str | None = None, redemption_code: str | None = None
    ) -> RefundResult:
        """Ask the backend to refund the points of an expired redemption.

        Raises:
            ValueError: If neither identifier is given
        """
        if not reward_id and not redemption_code:
            raise ValueError("Must provide either reward_id or redemption_code")

        body: dict[str, str] = {}
        if reward_id:
            body["rewardId"] = reward_id
        if redemption_code:
            body["redemptionCode"] = redemption_code

        logger.info(f"Requesting refund for expired reward {reward_id or redemption_code}")
        response = await self.backend.post_json("/refund-expired-reward", body)
        self._raise_for_error(response, "refunding expired reward")

        try:
            return RefundResult.model_validate(response.payload)
        except ValidationError as e:
            raise MalformedResponseError(f"Invalid refund payload: {e}") from e

    async def cancel_redemption(self, redemption_code: str) -> CancellationResult:
        """Cancel an active redemption, when the reward type allows it.

        Raises:
            RedemptionRejectedError: The reward cannot be cancelled
        """
        logger.info(f"Cancelling redemption {redemption_code}")
        response = await self.backend.post_json(
            "/cancel-redemption", {"redemptionCode": redemption_code}
        )
        self._raise_for_error(response, f"cancelling {redemption_code}")

        try:
            result = CancellationResult.model_validate(response.payload)
        except ValidationError as e:
            raise MalformedResponseError(f"Invalid cancellation payload: {e}") from e

        if not result.cancelled:
            raise RedemptionRejectedError(
                result.message or "This reward cannot be cancelled",
                status_code=response.status_code,
            )

        return result

    def _raise_for_error(self, response: BackendResponse, action: str) -> None:
        if not response.ok:
            logger.error(
                f"Error {action}: {response.status_code} {response.error_message()}"
            )
            response.raise_for_error()
