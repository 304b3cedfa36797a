"""Pytest configuration and fixtures."""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx
import pytest
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from rewards_client.core.config import Settings
from rewards_client.infrastructure.backend.client import HttpBackendClient
from rewards_client.infrastructure.feed.memory import InMemoryDocumentStore

START_TIME = datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
VALID_TOKEN = "test-token"
USER_ID = "user-1"


async def settle(rounds: int = 20) -> None:
    """Let pending tasks and callbacks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


class FakeClock:
    """Wall clock that only moves when told to."""

    def __init__(self, now: datetime = START_TIME):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class ManualSleep:
    """Sleep replacement that returns only when the test releases it."""

    def __init__(self):
        self.delays: list[float] = []
        self._waiters: list[asyncio.Future] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        waiter = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        await waiter

    @property
    def pending(self) -> int:
        return sum(1 for waiter in self._waiters if not waiter.done())

    async def release(self) -> None:
        waiters, self._waiters = self._waiters, []
        for waiter in waiters:
            if not waiter.done():
                waiter.set_result(None)
        await settle()


async def no_sleep(delay: float) -> None:
    """Sleep replacement that only yields to the loop."""
    await asyncio.sleep(0)


def iso(value: datetime) -> str:
    """Format like the backend: fractional seconds and a Z suffix."""
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"


def redemption_document(
    code: str,
    *,
    user_id: str = USER_ID,
    redeemed_at: datetime = START_TIME,
    expires_at: datetime | None = None,
    title: str = "Free Dumplings",
    **fields: Any,
) -> dict[str, Any]:
    """Build a redeemedRewards document."""
    data = {
        "userId": user_id,
        "rewardTitle": title,
        "rewardDescription": "6 pieces",
        "rewardCategory": "Food",
        "pointsRequired": 250,
        "redemptionCode": code,
        "redeemedAt": iso(redeemed_at),
        "expiresAt": iso(expires_at or redeemed_at + timedelta(minutes=15)),
        "isUsed": False,
        "isExpired": False,
    }
    data.update(fields)
    return data


class FakeRewardsBackend:
    """State behind the fake backend app.

    ``fail_before_processing`` answers 503 without touching state;
    ``lose_responses`` processes the request, then answers 503 as if the
    response was lost on the way back.
    """

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.points: dict[str, int] = {USER_ID: 1000}
        self.tiers: dict[int, dict[str, Any]] = {
            250: {
                "pointsRequired": 250,
                "tierName": "Dumplings",
                "eligibleItems": [
                    {"itemId": "dumpling-pork", "itemName": "Pork Dumplings", "categoryId": "dumplings"},
                    {"itemId": "dumpling-veg", "itemName": "Veggie Dumplings", "imageURL": "https://img/veg.png"},
                ],
            },
            450: {"pointsRequired": 450, "tierName": "Drinks", "eligibleItems": []},
        }
        self.tiers_by_id: dict[str, dict[str, Any]] = {
            "tier_dumplings_250": self.tiers[250],
        }
        self.redemptions: dict[str, dict[str, Any]] = {}
        self.deductions = 0
        self.redeem_calls = 0
        self.fail_before_processing = 0
        self.lose_responses = 0
        self.expires_in = timedelta(minutes=15)
        self.refund_calls: list[dict[str, Any]] = []
        self.refunded: set[str] = set()
        self.refund_status = 200
        self.cancellable: set[str] = set()
        self.cancel_calls: list[str] = []
        self.requests: list[str] = []

    def redeem(self, body: dict[str, Any]) -> tuple[int, dict[str, Any]]:
        self.redeem_calls += 1
        if self.fail_before_processing > 0:
            self.fail_before_processing -= 1
            return 503, {"error": "Service temporarily unavailable"}

        key = body["idempotencyKey"]
        payload = self.redemptions.get(key)
        if payload is None:
            user_id = body["userId"]
            balance = self.points.get(user_id, 0)
            cost = body["pointsRequired"]
            if balance < cost:
                return 400, {
                    "error": "Insufficient points for redemption",
                    "currentPoints": balance,
                    "pointsRequired": cost,
                    "pointsNeeded": cost - balance,
                }

            self.points[user_id] = balance - cost
            self.deductions += 1
            payload = {
                "success": True,
                "redemptionCode": f"{len(self.redemptions) + 1:08d}",
                "newPointsBalance": self.points[user_id],
                "pointsDeducted": cost,
                "rewardTitle": body["rewardTitle"],
                "selectedItemName": body.get("selectedItemName"),
                "expiresAt": iso(self.clock() + self.expires_in),
                "message": "Reward redeemed successfully!",
            }
            self.redemptions[key] = payload

        if self.lose_responses > 0:
            self.lose_responses -= 1
            return 503, {"error": "Gateway timeout"}

        return 200, payload

    def refund(self, body: dict[str, Any]) -> tuple[int, dict[str, Any]]:
        self.refund_calls.append(body)
        if self.refund_status != 200:
            return self.refund_status, {"error": "Reward is not expired"}

        code = body.get("redemptionCode") or body.get("rewardId")
        if code in self.refunded:
            return 200, {"pointsRefunded": 0, "alreadyRefunded": True}

        self.refunded.add(code)
        self.points[USER_ID] = self.points.get(USER_ID, 0) + 250
        return 200, {
            "pointsRefunded": 250,
            "newPointsBalance": self.points[USER_ID],
            "alreadyRefunded": False,
        }

    def cancel(self, body: dict[str, Any]) -> tuple[int, dict[str, Any]]:
        code = body["redemptionCode"]
        self.cancel_calls.append(code)
        if code not in self.cancellable:
            return 200, {"cancelled": False, "message": "This reward cannot be cancelled"}
        self.cancellable.discard(code)
        return 200, {"cancelled": True, "pointsRefunded": 250}


def create_fake_app(backend: FakeRewardsBackend) -> FastAPI:
    """Build the fake backend application."""
    app = FastAPI()

    @app.middleware("http")
    async def record_request(request: Request, call_next):
        backend.requests.append(f"{request.method} {request.url.path}")
        return await call_next(request)

    def authorized(request: Request) -> bool:
        return request.headers.get("authorization") == f"Bearer {VALID_TOKEN}"

    @app.get("/reward-tier-items/by-id/{tier_id}")
    async def tier_items_by_id(tier_id: str):
        tier = backend.tiers_by_id.get(tier_id)
        if tier is None:
            return JSONResponse({"error": "Tier not found"}, status_code=404)
        return tier

    @app.get("/reward-tier-items/{points_required}")
    async def tier_items(points_required: int):
        tier = backend.tiers.get(points_required)
        if tier is None:
            return JSONResponse({"error": "Tier not found"}, status_code=404)
        return tier

    @app.post("/redeem-reward")
    async def redeem_reward(request: Request):
        if not authorized(request):
            return JSONResponse({"error": "Unauthorized"}, status_code=401)
        status, payload = backend.redeem(await request.json())
        return JSONResponse(payload, status_code=status)

    @app.post("/refund-expired-reward")
    async def refund_expired_reward(request: Request):
        if not authorized(request):
            return JSONResponse({"error": "Unauthorized"}, status_code=401)
        status, payload = backend.refund(await request.json())
        return JSONResponse(payload, status_code=status)

    @app.post("/cancel-redemption")
    async def cancel_redemption(request: Request):
        if not authorized(request):
            return JSONResponse({"error": "Unauthorized"}, status_code=401)
        status, payload = backend.cancel(await request.json())
        return JSONResponse(payload, status_code=status)

    return app


def make_backend_client(
    app: FastAPI, settings: Settings, token: str | None = VALID_TOKEN
) -> HttpBackendClient:
    """Build a backend client that calls ``app`` in-process."""

    async def token_provider() -> str | None:
        return token

    http_client = httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app), base_url="http://testserver"
    )
    return HttpBackendClient(settings, token_provider=token_provider, http_client=http_client)


@pytest.fixture(scope="function")
def settings():
    """Create settings instance for testing."""
    return Settings(
        environment="testing",
        backend_environment="local",
        pending_redemptions_path=None,
        redeem_retry_delay_seconds=0,
        feed_max_reconnect_attempts=3,
    )


@pytest.fixture
def clock():
    """Create a controllable wall clock."""
    return FakeClock()


@pytest.fixture
def fake_backend(clock):
    """Create fake backend state."""
    return FakeRewardsBackend(clock)


@pytest.fixture
def fake_app(fake_backend):
    """Create fake backend application."""
    return create_fake_app(fake_backend)


@pytest.fixture
def backend_client(fake_app, settings):
    """Create backend client wired to the fake backend."""
    return make_backend_client(fake_app, settings)


@pytest.fixture
def store():
    """Create in-memory document store."""
    return InMemoryDocumentStore()
