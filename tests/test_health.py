"""Tests for the infrastructure health audit."""

import pytest

from factloom.storage import HealthAuditor
from factloom.storage.health import AUDIT_FAILURE_LESSON


@pytest.fixture
def auditor(store, clock):
    return HealthAuditor(store, now_fn=clock)


class TestPerformAudit:
    """Tests for the infrastructure health audit."""

    def test_empty_store_is_healthy(self, auditor, store):
        """Should report a store with no metrics as healthy and record nothing."""
        result = auditor.perform_audit()
        assert result.healthy is True
        assert result.issues == []
        assert store.list_reflections() == []

    def test_high_recent_cost(self, auditor, store):
        """Should flag more than 1.0 of cost in the trailing hour."""
        store.record_metric("total_cost", 0.75)
        store.record_metric("total_cost", 0.75)
        result = auditor.perform_audit()
        assert result.healthy is False
        assert result.issues == ["Critical: High cost detected ($1.50 in the last hour)"]

    def test_old_cost_is_ignored(self, auditor, store, clock):
        """Should ignore cost recorded more than an hour ago."""
        store.record_metric("total_cost", 5.0)
        clock.advance(hours=2)
        assert auditor.perform_audit().healthy is True

    def test_collapsed_success_rate(self, auditor, store):
        """Should flag an average success rate under 50%."""
        store.record_metric("success_rate", 0.2)
        store.record_metric("success_rate", 0.4)
        result = auditor.perform_audit()
        assert result.issues == ["Critical: Success rate dropped to 30%"]

    def test_zero_success_rate_is_unhealthy(self, auditor, store):
        """Should treat a zero success rate as a reading, not as missing data."""
        store.record_metric("success_rate", 0.0)
        assert auditor.perform_audit().healthy is False

    def test_failure_is_recorded_as_reflection(self, auditor, store):
        """Should record every issue in one audit-failure reflection."""
        store.record_metric("total_cost", 2.0)
        store.record_metric("success_rate", 0.1)
        auditor.perform_audit()

        [reflection] = store.list_reflections()
        assert reflection.session_id is None
        assert reflection.outcome == "failure"
        assert reflection.lessons_learned == AUDIT_FAILURE_LESSON
        assert reflection.suggested_actions == [
            "Issues found: Critical: High cost detected ($2.00 in the last hour); "
            "Critical: Success rate dropped to 10%"
        ]

    def test_custom_thresholds(self, store, clock):
        """Should use the thresholds it was built with."""
        store.record_metric("total_cost", 2.0)
        store.record_metric("success_rate", 0.6)
        strict = HealthAuditor(store, now_fn=clock, cost_ceiling=5.0, min_success_rate=0.7)
        assert strict.perform_audit().issues == ["Critical: Success rate dropped to 60%"]
