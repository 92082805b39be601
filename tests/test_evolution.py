"""Tests for the evolutionary controller cycle."""

import sqlite3
from unittest.mock import MagicMock

import pytest

from factloom.features import EvolutionaryController
from factloom.features.evolution import (
    MESSAGE_INDEX_NAME,
    UNHEALTHY_WARNING,
    z_score_of_latest,
)
from factloom.storage import HealthAuditor
from factloom.types import AuditResult


@pytest.fixture
def auditor(store, clock):
    return HealthAuditor(store, now_fn=clock)


@pytest.fixture
def controller(store, auditor):
    return EvolutionaryController(store, auditor=auditor)


def _latencies(store, values):
    # recorded oldest first; the last value is the newest sample
    for v in values:
        store.record_metric("query_latency", v)


class TestZScore:
    """Tests for scoring the newest latency sample."""

    def test_newest_sample_is_scored(self):
        """Should use population statistics and score the first value."""
        mean, std_dev, z = z_score_of_latest([190.0] + [100.0] * 19)
        assert mean == pytest.approx(104.5)
        assert std_dev == pytest.approx(19.615, abs=1e-3)
        assert z == pytest.approx(4.359, abs=1e-3)

    def test_flat_series_scores_zero(self):
        """Should score zero when every sample is equal."""
        assert z_score_of_latest([5.0, 5.0, 5.0]) == (5.0, 0.0, 0.0)


class TestRunCycle:
    """Tests for one observe, decide, evolve and audit cycle."""

    def test_too_few_samples_is_a_no_op(self, controller, store):
        """Should do nothing with fewer than the minimum number of samples."""
        _latencies(store, [900.0] * 4)
        result = controller.run_cycle()
        assert result.evolved is False
        assert result.changes == []
        assert result.mean is None

    def test_stable_latency_does_not_evolve(self, controller, store):
        """Should leave a store with flat, low latency alone."""
        _latencies(store, [100.0] * 20)
        result = controller.run_cycle()
        assert result.evolved is False
        assert result.mean == pytest.approx(100.0)
        assert not store.index_exists(MESSAGE_INDEX_NAME)

    def test_high_mean_evolves_and_indexes_messages(self, controller, store):
        """Should optimise and add the message index when mean latency is high."""
        _latencies(store, [550.0, 650.0] * 10)
        result = controller.run_cycle()
        assert result.evolved is True
        assert result.z_score == pytest.approx(1.0)
        assert result.changes == [
            "Applied self-optimization",
            "Applied composite index to agent_messages",
        ]
        assert store.index_exists(MESSAGE_INDEX_NAME)

    def test_index_is_only_reported_when_created(self, controller, store):
        """Should not report an index that already existed."""
        _latencies(store, [550.0, 650.0] * 10)
        controller.run_cycle()
        assert controller.run_cycle().changes == ["Applied self-optimization"]

    def test_latency_spike_evolves_without_index(self, controller, store):
        """Should optimise on a spike without indexing when the mean is fine."""
        _latencies(store, [100.0] * 19 + [190.0])
        result = controller.run_cycle()
        assert result.evolved is True
        assert result.z_score == pytest.approx(4.359, abs=1e-3)
        assert result.changes == ["Applied self-optimization"]
        assert not store.index_exists(MESSAGE_INDEX_NAME)

    def test_tables_without_primary_key_are_flagged(self, controller, store, db_path):
        """Should list tables lacking a primary key among the changes."""
        conn = sqlite3.connect(db_path)
        try:
            conn.execute("CREATE TABLE legacy_log (line TEXT)")
            conn.commit()
        finally:
            conn.close()
        _latencies(store, [100.0] * 19 + [190.0])
        assert "Flagged table 'legacy_log' without a primary key" in controller.run_cycle().changes

    def test_unhealthy_audit_is_reported(self, controller, store):
        """Should end the change log with the warning when the audit fails."""
        store.record_metric("total_cost", 5.0)
        _latencies(store, [100.0] * 19 + [190.0])
        result = controller.run_cycle()
        assert result.changes[-1] == UNHEALTHY_WARNING

    def test_audit_runs_only_when_evolving(self, store):
        """Should only audit after an evolution step."""
        auditor = MagicMock()
        auditor.perform_audit.return_value = AuditResult(healthy=True)
        controller = EvolutionaryController(store, auditor=auditor)
        _latencies(store, [100.0] * 20)
        controller.run_cycle()
        auditor.perform_audit.assert_not_called()

        _latencies(store, [5000.0])
        assert controller.run_cycle().evolved is True
        auditor.perform_audit.assert_called_once()

    def test_store_without_self_optimize(self, store, auditor):
        """Should skip self-optimisation on stores lacking the capability."""
        store.supports_self_optimize = False
        controller = EvolutionaryController(store, auditor=auditor)
        _latencies(store, [100.0] * 19 + [190.0])
        assert controller.run_cycle().changes == []
