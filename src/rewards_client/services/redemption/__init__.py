"""Reward redemption service module."""

from rewards_client.services.redemption.balance import (
    BalanceState,
    BalanceStatus,
    PointsBalanceTracker,
)
from rewards_client.services.redemption.countdown import (
    CountdownEngine,
    CountdownTick,
    Urgency,
    UrgencyThresholds,
    classify_urgency,
    format_remaining,
)
from rewards_client.services.redemption.ledger import RedemptionLedgerClient
from rewards_client.services.redemption.pending_store import PendingRedemptionStore
from rewards_client.services.redemption.schemas import (
    ActiveRedemption,
    CancellationResult,
    EligibleItem,
    RedemptionDetail,
    RedemptionIntent,
    RedemptionRecord,
    RedemptionRequest,
    RedemptionResult,
    RedemptionState,
    RefundResult,
    RewardTierItems,
)
from rewards_client.services.redemption.session import (
    RedemptionSession,
    RefundNotice,
    create_session,
)
from rewards_client.services.redemption.timestamps import (
    ParsedTimestamp,
    TimestampFormat,
    parse_expiry,
    parse_timestamp,
)
from rewards_client.services.redemption.tracker import (
    ActiveRedemptionTracker,
    RedemptionTransition,
    active_redemptions_query,
)

__all__ = [
    # Enums
    "RedemptionState",
    "BalanceStatus",
    "Urgency",
    "TimestampFormat",
    # Schemas
    "EligibleItem",
    "RewardTierItems",
    "RedemptionRequest",
    "RedemptionIntent",
    "RedemptionResult",
    "RedemptionRecord",
    "ActiveRedemption",
    "RedemptionDetail",
    "RefundResult",
    "CancellationResult",
    "RedemptionTransition",
    "CountdownTick",
    "BalanceState",
    "RefundNotice",
    "ParsedTimestamp",
    # Functions
    "parse_timestamp",
    "parse_expiry",
    "format_remaining",
    "classify_urgency",
    "active_redemptions_query",
    # Services
    "RedemptionLedgerClient",
    "PendingRedemptionStore",
    "ActiveRedemptionTracker",
    "CountdownEngine",
    "UrgencyThresholds",
    "PointsBalanceTracker",
    "RedemptionSession",
    "create_session",
]
