"""Tests for the points balance tracker."""

from unittest.mock import MagicMock

import pytest

from conftest import USER_ID, no_sleep, settle
from rewards_client.core.errors import SubscriptionFailedError
from rewards_client.infrastructure.feed.source import DocumentSnapshot, QuerySnapshot
from rewards_client.services.redemption.balance import (
    BalanceState,
    BalanceStatus,
    PointsBalanceTracker,
)


def user_snapshot(**data) -> QuerySnapshot:
    return QuerySnapshot(documents=[DocumentSnapshot(USER_ID, data)])


class TestPointsBalanceTracker:
    """Tests for PointsBalanceTracker."""

    @pytest.fixture
    def balance(self, store, settings):
        return PointsBalanceTracker(store, settings, sleep=no_sleep)

    def test_loading_until_first_snapshot(self, balance):
        """Test no zero default before data arrives."""
        assert balance.state == BalanceState(status=BalanceStatus.LOADING)
        assert balance.state.points is None

    def test_snapshot_sets_points(self, balance):
        """Test points are read from the user document."""
        balance.apply_snapshot(user_snapshot(points=1250, name="Sam"))

        assert balance.state.status == BalanceStatus.READY
        assert balance.state.points == 1250

    def test_failure_keeps_last_value(self, balance):
        """Test a feed drop flags the balance without zeroing it."""
        balance.apply_snapshot(user_snapshot(points=1250))

        balance.handle_feed_failure(SubscriptionFailedError("lost"))

        assert balance.state.status == BalanceStatus.ERROR
        assert balance.state.points == 1250
        assert balance.state.is_stale

    def test_failure_before_data(self, balance):
        """Test an error with no known value shows no number."""
        balance.handle_feed_failure(SubscriptionFailedError("permission denied"))

        assert balance.state.status == BalanceStatus.ERROR
        assert balance.state.points is None
        assert not balance.state.is_stale

    @pytest.mark.parametrize("data", [{}, {"points": "lots"}, {"points": True}])
    def test_invalid_points_is_error(self, balance, data):
        """Test a missing or non-numeric field is an error, not zero."""
        balance.apply_snapshot(user_snapshot(**data))

        assert balance.state.status == BalanceStatus.ERROR
        assert balance.state.points is None

    def test_missing_user_document(self, balance):
        """Test an absent profile."""
        balance.apply_snapshot(QuerySnapshot(documents=[]))

        assert balance.state.status == BalanceStatus.ERROR
        assert balance.state.error == "User profile not found"

    def test_listeners_notified_on_change_only(self, balance):
        """Test identical snapshots notify once."""
        on_change = MagicMock()
        balance.add_listener(on_change)

        balance.apply_snapshot(user_snapshot(points=10))
        balance.apply_snapshot(user_snapshot(points=10))
        balance.apply_snapshot(user_snapshot(points=20))

        assert [call.args[0].points for call in on_change.call_args_list] == [10, 20]

    @pytest.mark.asyncio
    async def test_live_updates(self, balance, store):
        """Test balance follows the user document."""
        store.set_document("users", USER_ID, {"points": 500})

        await balance.start(USER_ID)
        await settle()
        assert balance.state.points == 500

        store.update_document("users", USER_ID, {"points": 250})
        await settle()
        assert balance.state.points == 250

        await balance.stop()
        assert balance.state.status == BalanceStatus.LOADING
        assert store.subscriber_count == 0
