"""Reward redemption schemas."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from rewards_client.services.redemption.timestamps import parse_expiry, parse_timestamp


class CamelModel(BaseModel):
    """Base model mapping snake_case fields to the backend's camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class RedemptionState(str, Enum):
    """Lifecycle state of one redemption."""

    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    USED = "USED"
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        """Check whether the record has left the visible set for good."""
        return self in (RedemptionState.USED, RedemptionState.EXPIRED, RedemptionState.CANCELLED)


# Eligible items


class EligibleItem(CamelModel):
    """Menu item selectable for a reward tier."""

    item_id: str = Field(..., description="Menu item ID")
    item_name: str = Field(..., description="Display name")
    category_id: str | None = Field(None, description="Menu category")
    image_url: str | None = Field(None, alias="imageURL", description="Item image")


class RewardTierItems(CamelModel):
    """Response of the reward-tier-items endpoints."""

    points_required: int = Field(..., description="Points cost of the tier")
    tier_name: str | None = Field(None, description="Tier display name")
    eligible_items: list[EligibleItem] = Field(..., description="Selectable items")


# Redemption request / result


class RedemptionRequest(CamelModel):
    """What the user asked to redeem."""

    user_id: str
    reward_title: str
    reward_description: str = ""
    points_required: int = Field(..., ge=0)
    reward_category: str = ""
    selected_item_id: str | None = None
    selected_item_name: str | None = None
    selected_topping_id: str | None = None
    selected_topping_name: str | None = None
    selected_item_id2: str | None = None
    selected_item_name2: str | None = None
    cooking_method: str | None = None
    drink_type: str | None = None
    selected_drink_item_id: str | None = None
    selected_drink_item_name: str | None = None


class RedemptionIntent(BaseModel):
    """One user-initiated redemption attempt.

    The idempotency key is generated once, when the user taps redeem, and is
    reused for every automatic retry of that attempt.
    """

    request: RedemptionRequest
    idempotency_key: str = Field(default_factory=lambda: uuid4().hex)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def to_payload(self) -> dict[str, Any]:
        """Build the POST /redeem-reward body."""
        payload = self.request.model_dump(by_alias=True, exclude_none=True)
        payload["idempotencyKey"] = self.idempotency_key
        return payload


class RedemptionResult(CamelModel):
    """Server answer to a successful redemption."""

    success: bool
    redemption_code: str = Field(..., min_length=1)
    new_points_balance: int
    points_deducted: int
    reward_title: str
    selected_item_name: str | None = None
    selected_topping_name: str | None = None
    selected_item_name2: str | None = None
    cooking_method: str | None = None
    drink_type: str | None = None
    expires_at: datetime
    message: str = ""
    error: str | None = None

    @classmethod
    def from_payload(cls, payload: dict[str, Any], now: datetime) -> "RedemptionResult":
        """Validate a response body, decoding ``expiresAt`` leniently.

        Raises:
            pydantic.ValidationError: If required fields are missing
        """
        data = dict(payload)
        data["expiresAt"] = parse_expiry(payload.get("expiresAt"), now).value
        return cls.model_validate(data)

    @property
    def display_name(self) -> str:
        """Selected item name when present, otherwise the reward title."""
        return self.selected_item_name or self.reward_title


# Records from the push feed


class RedemptionRecord(BaseModel):
    """One redeemed-but-unconsumed reward as stored server-side.

    Display fields are a snapshot taken at redemption time.
    """

    model_config = ConfigDict(frozen=True)

    document_id: str
    user_id: str = ""
    redemption_code: str
    reward_title: str = ""
    reward_description: str = ""
    reward_category: str = ""
    points_deducted: int = 0
    selected_item_id: str | None = None
    selected_item_name: str | None = None
    redeemed_at: datetime
    expires_at: datetime
    is_used: bool = False
    is_expired: bool = False

    @field_validator("redemption_code")
    @classmethod
    def _code_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("redemption code is empty")
        return value

    @classmethod
    def from_document(
        cls, document_id: str, data: dict[str, Any], now: datetime
    ) -> "RedemptionRecord":
        """Build a record from a feed document.

        Raises:
            pydantic.ValidationError: If the document has no usable code
        """
        redeemed_at = parse_timestamp(data.get("redeemedAt"))
        points = data.get("pointsRequired", data.get("pointsDeducted", 0))

        return cls(
            document_id=document_id,
            user_id=data.get("userId") or "",
            redemption_code=str(data.get("redemptionCode") or ""),
            reward_title=data.get("rewardTitle") or "",
            reward_description=data.get("rewardDescription") or "",
            reward_category=data.get("rewardCategory") or "",
            points_deducted=points if isinstance(points, int) else 0,
            selected_item_id=data.get("selectedItemId"),
            selected_item_name=data.get("selectedItemName"),
            redeemed_at=redeemed_at.value if redeemed_at else now,
            expires_at=parse_expiry(data.get("expiresAt"), now).value,
            is_used=bool(data.get("isUsed", False)),
            is_expired=bool(data.get("isExpired", False)),
        )

    @classmethod
    def from_result(
        cls, result: RedemptionResult, request: RedemptionRequest, now: datetime
    ) -> "RedemptionRecord":
        """Build a provisional record from a ledger response."""
        return cls(
            document_id="",
            user_id=request.user_id,
            redemption_code=result.redemption_code,
            reward_title=result.reward_title,
            reward_description=request.reward_description,
            reward_category=request.reward_category,
            points_deducted=result.points_deducted,
            selected_item_id=request.selected_item_id,
            selected_item_name=result.selected_item_name,
            redeemed_at=now,
            expires_at=result.expires_at,
        )

    @property
    def server_active(self) -> bool:
        """Check the server-maintained flags only."""
        return not self.is_used and not self.is_expired

    def is_active_at(self, now: datetime) -> bool:
        """Check the full active predicate at ``now``."""
        return self.server_active and self.expires_at > now

    def to_active(self) -> "ActiveRedemption":
        """Project to the view-facing model."""
        return ActiveRedemption(
            reward_id=self.document_id,
            reward_title=self.reward_title,
            redemption_code=self.redemption_code,
            expires_at=self.expires_at,
        )

    def to_detail(self) -> "RedemptionDetail":
        """Project to the full code screen model."""
        return RedemptionDetail(
            redemption_code=self.redemption_code,
            reward_title=self.reward_title,
            reward_description=self.reward_description,
            points_deducted=self.points_deducted,
            expires_at=self.expires_at,
            selected_item_name=self.selected_item_name,
        )


class ActiveRedemption(BaseModel):
    """View-facing projection rendered as one countdown banner."""

    model_config = ConfigDict(frozen=True)

    reward_id: str
    reward_title: str
    redemption_code: str
    expires_at: datetime


class RedemptionDetail(BaseModel):
    """Data for the full redemption code screen."""

    model_config = ConfigDict(frozen=True)

    redemption_code: str
    reward_title: str
    reward_description: str
    points_deducted: int
    expires_at: datetime
    selected_item_name: str | None = None

    @property
    def display_name(self) -> str:
        """Selected item name when present, otherwise the reward title."""
        return self.selected_item_name or self.reward_title


# Refund / cancellation


class RefundResult(CamelModel):
    """Server answer to an expiry refund request.

    ``new_points_balance`` is informational only; the displayed balance
    comes from the points feed.
    """

    points_refunded: int = 0
    new_points_balance: int | None = None
    already_refunded: bool = False


class CancellationResult(CamelModel):
    """Server answer to a cancellation request."""

    cancelled: bool
    points_refunded: int = 0
    message: str | None = None
