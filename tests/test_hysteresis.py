"""
Tests for the threshold hysteresis engine.

============================================================
PURPOSE
============================================================
Verify fire / disarm / re-arm transitions and the
one-notification-per-subscriber rule.

============================================================
"""

import pytest

from health_monitor.hysteresis import decide, should_fire, should_rearm
from health_monitor.models import MetricKind, MonitoredAccount, Subscriber, Threshold


ADDRESS = "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA"


# ============================================================
# FIXTURES
# ============================================================

def make_account(last_metric, *subscribers):
    return MonitoredAccount(address=ADDRESS, last_metric=last_metric, subscribers=tuple(subscribers))


def make_subscriber(recipient_id, *thresholds, subscriber_id=None):
    return Subscriber(id=subscriber_id or recipient_id, recipient_id=recipient_id, thresholds=tuple(thresholds))


@pytest.fixture
def two_level_account():
    """Subscriber 100 armed at 25 and 10, metric at 30."""
    return make_account(
        30,
        make_subscriber(100, Threshold(id=1, level=25, armed=True), Threshold(id=2, level=10, armed=True)),
    )


# ============================================================
# FIRING
# ============================================================

class TestFiring:
    """Tests for armed thresholds crossing downward."""

    def test_single_crossing_fires_once_and_disarms(self):
        """Test M0 > L then M1 <= L gives one notification and disarms."""
        account = make_account(30, make_subscriber(100, Threshold(id=1, level=25, armed=True)))

        decision = decide(account, 25, margin=5, metric_max=100)

        assert len(decision.notifications) == 1
        assert decision.notifications[0].recipient_id == 100
        assert [(u.threshold_id, u.armed) for u in decision.updated_thresholds] == [(1, False)]
        assert decision.disarmed_levels == {25}

    def test_multiple_crossings_cite_lowest_level(self, two_level_account):
        """Test 30 -> 5 across {10, 25} notifies once about level 10."""
        decision = decide(two_level_account, 5, margin=5, metric_max=100)

        assert len(decision.notifications) == 1
        message = decision.notifications[0].message
        assert "dropped to 5%" in message
        assert "your 10% threshold" in message
        assert "25%" not in message
        assert "🚨" in message
        assert {u.threshold_id for u in decision.updated_thresholds if not u.armed} == {1, 2}
        assert decision.disarmed_levels == {10, 25}

    def test_single_crossing_names_level(self):
        """Test 60 -> 45 across {50} cites the 50% threshold."""
        account = make_account(60, make_subscriber(100, Threshold(id=1, level=50, armed=True)))

        decision = decide(account, 45, margin=5, metric_max=100)

        message = decision.notifications[0].message
        assert "dropped to 45%" in message
        assert "your 50% threshold" in message
        assert "🚨" not in message

    def test_disarmed_threshold_does_not_fire_again(self):
        """Test a further drop below a disarmed level is silent."""
        account = make_account(20, make_subscriber(100, Threshold(id=1, level=25, armed=False)))

        decision = decide(account, 15, margin=5, metric_max=100)

        assert decision.notifications == []
        assert decision.updated_thresholds == []
        assert decision.changed

    def test_each_subscriber_notified_independently(self):
        """Test two subscribers on one account each get one message."""
        account = make_account(
            50,
            make_subscriber(100, Threshold(id=1, level=40, armed=True)),
            make_subscriber(200, Threshold(id=2, level=20, armed=True), Threshold(id=3, level=45, armed=True)),
        )

        decision = decide(account, 18, margin=5, metric_max=100)

        assert sorted(n.recipient_id for n in decision.notifications) == [100, 200]
        assert len(decision.updated_thresholds) == 3

    def test_metric_above_level_does_not_fire(self):
        account = make_account(50, make_subscriber(100, Threshold(id=1, level=25, armed=True)))

        decision = decide(account, 26, margin=5, metric_max=100)

        assert decision.notifications == []
        assert decision.updated_thresholds == []


# ============================================================
# RE-ARMING
# ============================================================

class TestRearming:
    """Tests for silent re-arm transitions."""

    def test_recovery_past_margin_rearms_silently(self):
        """Test M0 < L then M1 >= L + margin re-arms with no notification."""
        account = make_account(20, make_subscriber(100, Threshold(id=1, level=25, armed=False)))

        decision = decide(account, 30, margin=5, metric_max=100)

        assert decision.notifications == []
        assert [(u.threshold_id, u.armed) for u in decision.updated_thresholds] == [(1, True)]

    def test_recovery_inside_margin_stays_disarmed(self):
        """Test oscillation around the level does not re-arm."""
        account = make_account(24, make_subscriber(100, Threshold(id=1, level=25, armed=False)))

        decision = decide(account, 29, margin=5, metric_max=100)

        assert decision.updated_thresholds == []

    def test_metric_maximum_rearms_even_within_margin(self):
        """Test reaching the maximum re-arms a level near the top."""
        account = make_account(96, make_subscriber(100, Threshold(id=1, level=98, armed=False)))

        decision = decide(account, 100, margin=5, metric_max=100)

        assert [(u.threshold_id, u.armed) for u in decision.updated_thresholds] == [(1, True)]

    def test_unbounded_metric_uses_margin_only(self):
        """Test available credit (no maximum) re-arms at level + margin."""
        account = make_account(2_000, make_subscriber(100, Threshold(id=1, level=3_000, armed=False)))

        below = decide(account, 3_400, margin=500, metric_max=None, kind=MetricKind.AVAILABLE_CREDIT)
        at_margin = decide(account, 3_500, margin=500, metric_max=None, kind=MetricKind.AVAILABLE_CREDIT)

        assert below.updated_thresholds == []
        assert [u.armed for u in at_margin.updated_thresholds] == [True]

    def test_flapping_produces_single_notification(self):
        """Test 26 -> 24 -> 26 -> 24 around a 25 level notifies only once."""
        account = make_account(26, make_subscriber(100, Threshold(id=1, level=25, armed=True)))
        notifications = 0

        for metric in (24, 26, 24, 26, 24):
            decision = decide(account, metric, margin=5, metric_max=100)
            notifications += len(decision.notifications)
            armed = {u.threshold_id: u.armed for u in decision.updated_thresholds}
            threshold = account.subscribers[0].thresholds[0]
            updated = Threshold(id=threshold.id, level=threshold.level, armed=armed.get(threshold.id, threshold.armed))
            account = make_account(metric, make_subscriber(100, updated))

        assert notifications == 1


# ============================================================
# IDEMPOTENCE
# ============================================================

class TestIdempotence:
    """Tests for unchanged metric short-circuit."""

    def test_unchanged_metric_is_noop(self, two_level_account):
        """Test feeding the recorded metric produces nothing."""
        decision = decide(two_level_account, 30, margin=5, metric_max=100)

        assert decision.is_noop
        assert decision.notifications == []
        assert decision.updated_thresholds == []

    def test_second_identical_value_is_noop(self, two_level_account):
        """Test the same value twice in a row only acts once."""
        first = decide(two_level_account, 5, margin=5, metric_max=100)
        after = make_account(
            5,
            make_subscriber(100, Threshold(id=1, level=25, armed=False), Threshold(id=2, level=10, armed=False)),
        )
        second = decide(after, 5, margin=5, metric_max=100)

        assert len(first.notifications) == 1
        assert second.is_noop


class TestPredicates:
    """Tests for the per-threshold predicates."""

    def test_should_fire_requires_armed(self):
        assert should_fire(Threshold(id=1, level=25, armed=True), 25)
        assert not should_fire(Threshold(id=1, level=25, armed=False), 10)

    def test_should_rearm_ignores_armed(self):
        assert not should_rearm(Threshold(id=1, level=25, armed=True), 100, 5, 100)
