"""Persistence of in-flight redemption intents.

An intent is stored before its first request and removed once the outcome
is definitive, so a redemption interrupted by an app restart is retried with
its original idempotency key.
"""

import json
import logging
from datetime import datetime, timezone
from pathlib import Path

from pydantic import BaseModel, Field

from rewards_client.services.redemption.schemas import RedemptionIntent

logger = logging.getLogger(__name__)


class PendingRedemptions(BaseModel):
    """Stored intents keyed by idempotency key."""

    intents: dict[str, RedemptionIntent] = Field(default_factory=dict)
    last_updated: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class PendingRedemptionStore:
    """File-backed store; with no path it only keeps intents in memory."""

    def __init__(self, path: str | Path | None = None):
        """Initialize pending redemption store.

        Args:
            path: JSON file location, or None for memory only
        """
        self.path = Path(path) if path else None
        self._state: PendingRedemptions | None = None

    def _load(self) -> PendingRedemptions:
        if self._state is not None:
            return self._state

        self._state = PendingRedemptions()
        if self.path and self.path.exists():
            try:
                with open(self.path, "r") as f:
                    self._state = PendingRedemptions.model_validate(json.load(f))
            except Exception as e:
                logger.error(f"Failed to load pending redemptions from {self.path}: {e}")

        return self._state

    def _save(self) -> bool:
        state = self._load()
        state.last_updated = datetime.now(timezone.utc)

        if not self.path:
            return False

        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "w") as f:
                json.dump(state.model_dump(mode="json"), f, indent=2)
            return True
        except OSError as e:
            logger.error(f"Failed to save pending redemptions to {self.path}: {e}")
            return False

    def add(self, intent: RedemptionIntent) -> None:
        """Store an intent before its first attempt."""
        self._load().intents[intent.idempotency_key] = intent
        self._save()

    def remove(self, idempotency_key: str) -> None:
        """Forget an intent after a definitive outcome."""
        if self._load().intents.pop(idempotency_key, None) is not None:
            self._save()

    def get(self, idempotency_key: str) -> RedemptionIntent | None:
        """Get a stored intent."""
        return self._load().intents.get(idempotency_key)

    def intents(self) -> list[RedemptionIntent]:
        """Get stored intents, oldest first."""
        return sorted(self._load().intents.values(), key=lambda intent: intent.created_at)

    def clear(self) -> None:
        """Forget every stored intent."""
        self._load().intents.clear()
        self._save()
