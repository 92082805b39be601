"""Tests for guard policy definition and evaluation."""

import time

import pytest

from factloom.features import PolicyEnforcer, validate_pattern
from factloom.features.policy import CIRCULAR_DEPENDENCY, DANGEROUS_PATTERN, PATTERN_TOO_LONG
from factloom.protocols import PolicyValidationError
from factloom.types import BudgetPeriod, PolicyType


@pytest.fixture
def enforcer():
    return PolicyEnforcer()


@pytest.fixture
def budgets(store, clock):
    """An enforcer whose budget policies read the test store."""
    return PolicyEnforcer(store=store, now_fn=clock)


class TestValidatePattern:
    """Tests for the length and catastrophic-backtracking checks."""

    @pytest.mark.parametrize("pattern", [r"(a+)+", r"(\w*)*", r"(x{2,})+", r"(a|b+)*"])
    def test_nested_quantifiers_rejected(self, pattern):
        """Should reject a quantified group whose body is itself quantified."""
        with pytest.raises(PolicyValidationError, match=DANGEROUS_PATTERN):
            validate_pattern(pattern)

    @pytest.mark.parametrize(
        "pattern",
        [r"(([a-z])+)+$", r"((a+))+$", r"(?:(a)+)+$", r"([(a]+)+$", r"(?=(a+)+)b", r"(a(b|c+))*"],
    )
    def test_nesting_hidden_behind_groups_or_classes_rejected(self, pattern):
        """Should see through extra groups, lookarounds and parentheses inside classes."""
        with pytest.raises(PolicyValidationError, match=DANGEROUS_PATTERN):
            validate_pattern(pattern)

    def test_overlong_pattern_rejected(self):
        """Should reject anything longer than 500 characters before parsing it."""
        with pytest.raises(PolicyValidationError, match=PATTERN_TOO_LONG):
            validate_pattern("a" * 501)

    @pytest.mark.parametrize(
        "pattern",
        [r"password", r"\d{3}-\d{4}", r"(drop|delete) table", r"(ab){2,3}", r"(a+){2}", r"[+*]+"],
    )
    def test_safe_patterns_pass(self, pattern):
        """Should accept single quantifiers and bounded repeats around them."""
        validate_pattern(pattern)

    def test_unparseable_pattern_rejected(self):
        """Should report a regex syntax error as a validation failure."""
        with pytest.raises(PolicyValidationError, match="invalid regex pattern"):
            validate_pattern("(unclosed")


class TestDefinePolicy:
    """Tests for define_policy validation and replacement."""

    def test_invalid_regex_rejected(self, enforcer):
        """Should leave no policy behind when the pattern does not compile."""
        with pytest.raises(PolicyValidationError):
            enforcer.define_policy("bad", pattern="([")
        assert enforcer.get_policy("bad") is None

    def test_unknown_flag_rejected(self, enforcer):
        """Should refuse regex flags outside i, m, s and x."""
        with pytest.raises(ValueError):
            enforcer.define_policy("bad", pattern="x", flags="q")

    def test_redos_pattern_never_becomes_a_policy(self, enforcer):
        """A grouped nested quantifier must be refused, so no slow match can ever run."""
        with pytest.raises(PolicyValidationError, match=DANGEROUS_PATTERN):
            enforcer.define_policy("p", pattern=r"(([a-z])+)+$")
        assert enforcer.get_policy("p") is None

        start = time.perf_counter()
        decision = enforcer.check_policy("p", "a" * 30 + "!")
        assert decision.allowed is True
        assert time.perf_counter() - start < 0.5

    def test_cycle_rejected_and_previous_definition_kept(self, enforcer):
        """Should restore the earlier definition when a replacement closes a cycle."""
        enforcer.define_policy("a", depends_on=["b"])
        enforcer.define_policy("b", pattern="x")
        with pytest.raises(PolicyValidationError, match=CIRCULAR_DEPENDENCY):
            enforcer.define_policy("b", depends_on=["a"])
        assert enforcer.get_policy("b").pattern == "x"

    def test_self_dependency_rejected(self, enforcer):
        """Should treat a policy depending on itself as a cycle."""
        with pytest.raises(PolicyValidationError, match=CIRCULAR_DEPENDENCY):
            enforcer.define_policy("a", depends_on=["a"])
        assert enforcer.get_policy("a") is None

    def test_remove_policy(self, enforcer):
        """Should report whether a policy was there to remove."""
        enforcer.define_policy("a", pattern="x")
        assert enforcer.remove_policy("a") is True
        assert enforcer.remove_policy("a") is False

    def test_budget_policy_needs_metric_name(self, budgets):
        """Should refuse a budget with nothing to sum."""
        with pytest.raises(ValueError, match="metric_name"):
            budgets.define_policy("spend", policy_type="budget", limit=1.0)

    def test_budget_policy_needs_a_store(self, enforcer):
        """Should refuse budgets on an enforcer that has no metrics to read."""
        with pytest.raises(ValueError, match="store"):
            enforcer.define_policy("spend", policy_type="budget", metric_name="total_cost")

    def test_unknown_type_rejected(self, enforcer):
        """Should refuse policy types it does not know."""
        with pytest.raises(ValueError):
            enforcer.define_policy("p", policy_type="quota")

    def test_type_defaults_to_safety(self, enforcer):
        """Should default to a safety policy."""
        assert enforcer.define_policy("p", pattern="x").policy_type == PolicyType.SAFETY


class TestCheckPolicy:
    """Tests for single-policy evaluation."""

    def test_unknown_policy_allows(self, enforcer):
        """Should allow values checked against an undefined policy."""
        assert enforcer.check_policy("nothing", "anything").allowed is True

    def test_forbidden_pattern_is_case_insensitive_by_default(self, enforcer):
        """Should deny a forbidden match regardless of case unless flags say otherwise."""
        enforcer.define_policy("fact", pattern="password")
        decision = enforcer.check_policy("fact", "my PASSWORD is hunter2")
        assert decision.allowed is False
        assert decision.reason == "Value contains forbidden pattern for policy 'fact'"
        assert enforcer.check_policy("fact", "the sky is blue").allowed is True

    def test_required_pattern(self, enforcer):
        """Should deny values that miss a must_match pattern."""
        enforcer.define_policy("ticket", pattern=r"^[A-Z]+-\d+$", must_match=True, flags="")
        assert enforcer.check_policy("ticket", "OPS-12").allowed is True
        decision = enforcer.check_policy("ticket", "ops-12")
        assert decision.reason == "Value does not match required pattern for policy 'ticket'"

    def test_numeric_bounds(self, enforcer):
        """Should apply min and max thresholds to numeric values."""
        enforcer.define_policy("budget", min_value=1, max_value=100)
        assert enforcer.check_policy("budget", 50).allowed is True
        assert (
            enforcer.check_policy("budget", 150).reason
            == "Value 150 exceeds max 100 for policy 'budget'"
        )
        assert enforcer.check_policy("budget", 0).reason == "Value 0 below min 1 for policy 'budget'"

    def test_disabled_policy_allows(self, enforcer):
        """Should allow everything while a policy is disabled."""
        enforcer.define_policy("fact", pattern="password", is_enabled=False)
        assert enforcer.check_policy("fact", "password").allowed is True

    def test_dependency_failure_is_composite(self, enforcer):
        """Should name both the policy and the dependency that blocked it."""
        enforcer.define_policy("no_drop", pattern="drop table")
        enforcer.define_policy("sql", depends_on=["no_drop"], pattern="truncate")
        decision = enforcer.check_policy("sql", "DROP TABLE users")
        assert decision.allowed is False
        assert decision.reason == (
            "Composite failure: sql blocked by no_drop -> "
            "Value contains forbidden pattern for policy 'no_drop'"
        )

    def test_own_rule_applies_after_dependencies_pass(self, enforcer):
        """Should fall through to the policy's own pattern once its dependencies allow."""
        enforcer.define_policy("no_drop", pattern="drop table")
        enforcer.define_policy("sql", depends_on=["no_drop"], pattern="truncate")
        decision = enforcer.check_policy("sql", "TRUNCATE users")
        assert decision.reason == "Value contains forbidden pattern for policy 'sql'"


class TestBudgetPolicies:
    """Tests for cumulative metric budgets."""

    def test_daily_total_over_limit_denies(self, budgets, store):
        """Should deny once today's spend plus the new value passes the limit."""
        budgets.define_policy("spend", policy_type="budget", metric_name="total_cost", limit=1.0)
        store.record_metric("total_cost", 0.6)
        store.record_metric("total_cost", 0.3)

        assert budgets.check_policy("spend", 0.05).allowed is True
        decision = budgets.check_policy("spend", 0.2)
        assert decision.allowed is False
        assert decision.reason == "Cumulative budget for 'total_cost' exceeded (0.9000 / 1)"

    def test_non_numeric_value_checks_the_running_total(self, budgets, store):
        """Should deny text values once the recorded total alone passes the limit."""
        budgets.define_policy("spend", policy_type="budget", metric_name="total_cost", limit=0.5)
        store.record_metric("total_cost", 0.75)
        assert budgets.check_policy("spend", "any text").allowed is False

    def test_daily_window_resets_at_midnight(self, budgets, store, clock):
        """Should ignore spend recorded before the current day started."""
        budgets.define_policy("spend", policy_type="budget", metric_name="total_cost", limit=1.0)
        store.record_metric("total_cost", 5.0)
        clock.advance(hours=12)

        assert budgets.check_policy("spend", 0.5).allowed is True

    def test_hourly_window(self, budgets, store, clock):
        """Should only count the trailing hour for hourly budgets."""
        budgets.define_policy(
            "spend", policy_type="budget", metric_name="total_cost", period="hourly", limit=1.0
        )
        store.record_metric("total_cost", 2.0)
        assert budgets.check_policy("spend", 0).allowed is False
        clock.advance(hours=2)
        assert budgets.check_policy("spend", 0).allowed is True

    def test_all_time_window_never_resets(self, budgets, store, clock):
        """Should count every recorded value for all-time budgets."""
        budgets.define_policy(
            "spend",
            policy_type=PolicyType.BUDGET,
            metric_name="total_cost",
            period=BudgetPeriod.ALL,
            limit=1.0,
        )
        store.record_metric("total_cost", 2.0)
        clock.advance(days=30)
        assert budgets.check_policy("spend", 0).allowed is False

    def test_threshold_is_checked_before_budget(self, budgets, store):
        """Should report the max threshold when both would deny."""
        budgets.define_policy(
            "spend", policy_type="budget", metric_name="total_cost", limit=1.0, max_value=0.5
        )
        store.record_metric("total_cost", 2.0)
        assert budgets.check_policy("spend", 0.75).reason == (
            "Value 0.75 exceeds max 0.5 for policy 'spend'"
        )

    def test_other_metrics_do_not_count(self, budgets, store):
        """Should only sum the metric the budget names."""
        budgets.define_policy("spend", policy_type="budget", metric_name="total_cost", limit=1.0)
        store.record_metric("tokens", 500.0)
        assert budgets.check_policy("spend", 0.5).allowed is True


class TestEvaluateContext:
    """Tests for evaluating every relevant policy against a context mapping."""

    def test_only_named_policies_are_checked(self, enforcer):
        """Should skip policies whose name is not a context key."""
        enforcer.define_policy("fact", pattern="password")
        enforcer.define_policy("entity", pattern="admin")
        allowed, violations = enforcer.evaluate_context({"fact": "my password"})
        assert allowed is False
        assert violations == ["Value contains forbidden pattern for policy 'fact'"]

    def test_all_clear(self, enforcer):
        """Should allow a context no policy objects to."""
        enforcer.define_policy("fact", pattern="password")
        assert enforcer.evaluate_context({"fact": "fine", "other": 1}) == (True, [])

    def test_privacy_policy_checks_content(self, enforcer):
        """Should apply privacy policies to the content even when not named in the context."""
        enforcer.define_policy("no_ssn", pattern=r"\d{3}-\d{2}-\d{4}", policy_type="privacy")
        allowed, violations = enforcer.evaluate_context({"content": "SSN is 123-45-6789"})
        assert allowed is False
        assert violations == ["Value contains forbidden pattern for policy 'no_ssn'"]
        assert enforcer.evaluate_context({"content": "nothing personal"}) == (True, [])

    def test_safety_policy_ignores_content(self, enforcer):
        """Should not apply non-privacy policies to the content."""
        enforcer.define_policy("no_ssn", pattern=r"\d{3}-\d{2}-\d{4}")
        assert enforcer.evaluate_context({"content": "SSN is 123-45-6789"}) == (True, [])

    def test_privacy_policy_named_in_context_runs_once(self, enforcer):
        """Should not report the same privacy violation twice."""
        enforcer.define_policy("content", pattern="secret", policy_type="privacy")
        allowed, violations = enforcer.evaluate_context({"content": "a secret"})
        assert allowed is False
        assert len(violations) == 1
