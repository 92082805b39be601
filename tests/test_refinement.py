"""Tests for the action refiner."""

import threading
from unittest.mock import MagicMock

import pytest

from factloom.features import ActionRefiner
from factloom.protocols import StorageError


@pytest.fixture
def refiner(store, clock):
    return ActionRefiner(store, now_fn=clock)


def _record(store, tool, successes=0, failures=0, error="timeout"):
    for _ in range(successes):
        store.record_action(tool, "success")
    for _ in range(failures):
        store.record_action(tool, "failure", error=error)


class TestRefineActions:
    """Tests for the refinement pass over recent actions."""

    def test_failing_tool_gets_rule(self, refiner, store):
        """Should propose an audit rule for a tool failing half its calls."""
        _record(store, "search", successes=2, failures=2)

        assert refiner.refine_actions() == [
            "Tool 'search' has a 50% failure rate. Suggesting automatic reflection rule."
        ]
        [rule] = store.list_rules()
        assert rule.table_name == "agent_actions"
        assert rule.operation == "insert"
        assert rule.action == "audit"
        assert rule.metadata["target_tool"] == "search"

    def test_rule_is_proposed_once(self, refiner, store):
        """Should not propose a second rule for the same tool."""
        _record(store, "search", successes=2, failures=2)
        refiner.refine_actions()
        messages = refiner.refine_actions()
        assert len(messages) == 1
        assert len(store.list_rules()) == 1

    def test_too_few_actions_is_ignored(self, refiner, store):
        """Should wait for the minimum number of actions before judging a tool."""
        _record(store, "search", successes=1, failures=2)
        assert refiner.refine_actions() == []
        assert store.list_rules() == []

    def test_healthy_tool_is_ignored(self, refiner, store):
        """Should leave tools under the failure threshold alone."""
        _record(store, "search", successes=9, failures=1)
        assert refiner.refine_actions() == []

    def test_actions_outside_window_are_ignored(self, refiner, store, clock):
        """Should only look at the trailing 24 hours."""
        _record(store, "search", failures=5)
        clock.advance(hours=25)
        assert refiner.refine_actions() == []

    def test_capability_denial_records_reflection(self, refiner, store):
        """Should record a capability-gap reflection for permission failures."""
        _record(store, "read_file", failures=1, error="Permission denied: /etc/shadow")

        assert refiner.refine_actions() == [
            "Detected repeated access/existence failures for tool 'read_file'. "
            "Proposing capability expansion."
        ]
        [reflection] = store.list_reflections()
        assert reflection.session_id == "system"
        assert reflection.outcome == "failure"
        assert reflection.lessons_learned == "Architectural Gap: Missing Capability for 'read_file'"

    def test_failure_rate_messages_come_first(self, refiner, store):
        """Should list failure-rate findings before capability findings."""
        _record(store, "search", successes=2, failures=2)
        _record(store, "deploy", failures=1, error="Unknown tool: deploy")
        messages = refiner.refine_actions()
        assert messages[0].startswith("Tool 'search'")
        assert messages[1].startswith("Detected repeated access/existence failures for tool 'deploy'")


class TestProposals:
    """Tests for the individual proposal steps."""

    def test_capability_update_is_best_effort(self, clock):
        """Should swallow storage failures when proposing a capability update."""
        store = MagicMock()
        store.transaction.side_effect = StorageError("disk full", operation="insert")
        refiner = ActionRefiner(store, now_fn=clock)
        assert refiner.propose_capability_update("search") is None

    def test_reflection_rule_returns_none_when_present(self, refiner):
        """Should return None when the tool already has a rule."""
        assert refiner.propose_reflection_rule("search") is not None
        assert refiner.propose_reflection_rule("search") is None

    def test_concurrent_proposals_create_one_rule(self, refiner, store):
        """Racing proposals for one tool must leave exactly one rule behind."""
        workers = 8
        barrier = threading.Barrier(workers)
        results = []
        errors = []
        lock = threading.Lock()

        def worker():
            barrier.wait()
            try:
                rule = refiner.propose_reflection_rule("search")
            except Exception as e:
                with lock:
                    errors.append(e)
                return
            with lock:
                results.append(rule)

        threads = [threading.Thread(target=worker) for _ in range(workers)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        created = [rule for rule in results if rule is not None]
        assert len(created) == 1
        assert results.count(None) == workers - 1
        [stored] = store.list_rules()
        assert stored.id == created[0].id
        assert stored.metadata["target_tool"] == "search"
