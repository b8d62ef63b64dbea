"""
Tests for domain models and message text.
"""

import pytest

from health_monitor import messages
from health_monitor.exceptions import (
    BatchUnavailableError,
    DirectoryError,
    ExistingThresholdError,
    RecordNotFoundError,
    TransientBackendError,
    ValidationError,
)
from health_monitor.models import MetricKind, MonitoredAccount, Subscriber, Threshold


ADDRESS = "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA"


class TestMetricKind:
    """Tests for level parsing and display."""

    def test_health_bounds(self):
        assert MetricKind.HEALTH.maximum == 100
        assert MetricKind.HEALTH.default_margin == 5
        assert MetricKind.AVAILABLE_CREDIT.maximum is None
        assert MetricKind.AVAILABLE_CREDIT.default_margin == 500

    @pytest.mark.parametrize("raw, expected", [("0", 0), ("25", 25), (" 25% ", 25), ("100", 100)])
    def test_parse_health(self, raw, expected):
        assert MetricKind.HEALTH.parse_level(raw) == expected

    @pytest.mark.parametrize("raw, expected", [("30", 3_000), ("$10.5", 1_050), ("0.01", 1)])
    def test_parse_credit(self, raw, expected):
        assert MetricKind.AVAILABLE_CREDIT.parse_level(raw) == expected

    @pytest.mark.parametrize("raw", ["nan", "inf", "1.001", "-1", "ten"])
    def test_parse_credit_rejects(self, raw):
        with pytest.raises(ValueError):
            MetricKind.AVAILABLE_CREDIT.parse_level(raw)

    def test_format_value(self):
        assert MetricKind.HEALTH.format_value(42) == "42%"
        assert MetricKind.AVAILABLE_CREDIT.format_value(123_456) == "$1,234.56"


class TestMonitoredAccount:
    """Tests for account snapshots."""

    def test_thresholds_sorted_by_level(self):
        subscriber = Subscriber(id=1, recipient_id=100, thresholds=(Threshold(1, 25), Threshold(2, 10)))

        assert subscriber.levels == [10, 25]

    def test_view_for_recipient(self):
        account = MonitoredAccount(
            address=ADDRESS,
            last_metric=50,
            subscribers=(
                Subscriber(id=1, recipient_id=100, thresholds=(Threshold(1, 25),)),
                Subscriber(id=2, recipient_id=200, thresholds=(Threshold(2, 10),)),
            ),
        )

        view = account.view_for(200)

        assert view.recipient_ids == [200]
        assert account.recipient_ids == [100, 200]
        assert account.subscriber_for(300) is None


class TestMessages:
    """Tests for notification wording."""

    def test_display_address(self):
        assert messages.display_address(ADDRESS) == "(Toke...Q5DA)"

    def test_urgent_wording_at_low_levels(self):
        urgent = messages.threshold_crossed(MetricKind.HEALTH, ADDRESS, 8, 10)
        normal = messages.threshold_crossed(MetricKind.HEALTH, ADDRESS, 20, 25)

        assert urgent.startswith("🚨")
        assert not normal.startswith("🚨")
        assert "dropped to 20%" in normal
        assert "your 25% threshold" in normal
        assert "your 10% threshold" in urgent

    def test_credit_wording_cites_level(self):
        text = messages.threshold_crossed(MetricKind.AVAILABLE_CREDIT, ADDRESS, 2_500, 3_000)

        assert "$25.00" in text
        assert "$30.00" in text


class TestErrors:
    """Tests for the error taxonomy."""

    def test_to_dict(self):
        error = ExistingThresholdError(25, ADDRESS)

        data = error.to_dict()

        assert data["error_type"] == "ExistingThresholdError"
        assert data["details"] == {"level": 25, "address": ADDRESS}
        assert isinstance(error, ValidationError)

    def test_batch_unavailable_is_transient(self):
        assert issubclass(BatchUnavailableError, TransientBackendError)
        assert issubclass(RecordNotFoundError, DirectoryError)
