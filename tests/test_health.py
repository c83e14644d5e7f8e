"""
Unit tests for health reporting.
"""

import pytest

from token_usage_tracker.core.health import HealthMonitor, HealthState, format_elapsed


@pytest.mark.parametrize("seconds,expected", [
    (0, "0s ago"),
    (12, "12s ago"),
    (59, "59s ago"),
    (60, "1m ago"),
    (3 * 60 + 10, "3m ago"),
    (3600, "1h ago"),
    (2 * 3600, "2h ago"),
    (86400, "1d ago"),
    (3 * 86400, "3d ago"),
])
def test_format_elapsed(seconds, expected):
    assert format_elapsed(seconds) == expected


class TestHealthMonitor:
    """Test status derivation."""

    def test_fresh_monitor_is_healthy(self, health):
        status = health.status()

        assert status.status == HealthState.HEALTHY
        assert status.last_activity is None
        assert status.has_recorded_activity is False
        assert status.last_error is None

    def test_last_activity_humanised(self, health, clock):
        health.record_success()
        clock.advance(125)

        status = health.status()

        assert status.has_recorded_activity is True
        assert status.last_activity == "2m ago"

    def test_recent_error_is_warning(self, health, clock):
        health.record_error("Price catalog unreachable")
        clock.advance(60)

        status = health.status()

        assert status.status == HealthState.WARNING
        assert status.last_error == "Price catalog unreachable"

    def test_old_error_forgotten(self, health, clock):
        health.record_error("Price catalog unreachable")
        clock.advance(5 * 60 + 1)

        status = health.status()

        assert status.status == HealthState.HEALTHY
        assert status.last_error is None
        assert health.last_error_message == "Price catalog unreachable"

    def test_missing_tokenizer_is_error(self, time_source):
        monitor = HealthMonitor(time_source, tokenizer_available=False)

        status = monitor.status()

        assert status.status == HealthState.ERROR
        assert status.tokenizer_available is False

    def test_recent_error_outranks_missing_tokenizer(self, time_source):
        monitor = HealthMonitor(time_source, tokenizer_available=False)
        monitor.record_error("boom")

        assert monitor.status().status == HealthState.WARNING

    def test_store_writes_mark_activity(self, usage_store, health):
        usage_store.record(10, 5)

        assert health.status().last_activity == "0s ago"
