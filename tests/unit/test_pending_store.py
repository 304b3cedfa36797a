"""Tests for pending redemption persistence."""

import json
from datetime import datetime, timedelta, timezone

import pytest

from rewards_client.services.redemption.pending_store import PendingRedemptionStore
from rewards_client.services.redemption.schemas import RedemptionIntent, RedemptionRequest


def make_intent(created_at: datetime | None = None) -> RedemptionIntent:
    request = RedemptionRequest(user_id="user-1", reward_title="Free Drink", points_required=100)
    if created_at is None:
        return RedemptionIntent(request=request)
    return RedemptionIntent(request=request, created_at=created_at)


class TestPendingRedemptionStore:
    """Tests for PendingRedemptionStore."""

    @pytest.fixture
    def path(self, tmp_path):
        """Create path for the store file."""
        return tmp_path / "state" / "pending.json"

    def test_memory_only_without_path(self):
        """Test the store works without a file."""
        store = PendingRedemptionStore()
        intent = make_intent()

        store.add(intent)

        assert store.get(intent.idempotency_key) == intent
        assert store.path is None

    def test_save_and_reload(self, path):
        """Test intents survive a new store instance."""
        intent = make_intent()
        PendingRedemptionStore(path).add(intent)

        reloaded = PendingRedemptionStore(path)

        assert path.exists()
        assert reloaded.get(intent.idempotency_key) == intent

    def test_remove(self, path):
        """Test removal is persisted."""
        store = PendingRedemptionStore(path)
        intent = make_intent()
        store.add(intent)

        store.remove(intent.idempotency_key)

        assert PendingRedemptionStore(path).intents() == []

    def test_remove_unknown_key_is_noop(self, path):
        """Test removing an unknown key does not write."""
        store = PendingRedemptionStore(path)

        store.remove("missing")

        assert not path.exists()

    def test_intents_oldest_first(self):
        """Test ordering by creation time."""
        now = datetime.now(timezone.utc)
        newer = make_intent(now)
        older = make_intent(now - timedelta(minutes=1))
        store = PendingRedemptionStore()
        store.add(newer)
        store.add(older)

        assert store.intents() == [older, newer]

    def test_clear(self, path):
        """Test clearing every intent."""
        store = PendingRedemptionStore(path)
        store.add(make_intent())
        store.add(make_intent())

        store.clear()

        assert PendingRedemptionStore(path).intents() == []

    def test_corrupt_file_starts_empty(self, path):
        """Test an unreadable file does not break the store."""
        path.parent.mkdir(parents=True)
        path.write_text("{not json")

        store = PendingRedemptionStore(path)

        assert store.intents() == []

    def test_file_format(self, path):
        """Test intents are stored by key as JSON."""
        intent = make_intent()
        PendingRedemptionStore(path).add(intent)

        data = json.loads(path.read_text())

        assert list(data["intents"]) == [intent.idempotency_key]
        assert data["intents"][intent.idempotency_key]["request"]["reward_title"] == "Free Drink"
