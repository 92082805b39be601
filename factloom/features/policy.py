"""Named guard policies evaluated against agent-authored values.

A policy may carry a regex ``pattern`` (forbidden, or required when
``must_match``), numeric ``min_value``/``max_value`` bounds, and a list of
policies it depends on, which are evaluated first. Budget policies also cap
the cumulative total of a metric over an hour, a day or all time. Privacy
policies are applied to the ``content`` of every evaluated context.

Patterns are validated before they are compiled. Overlong patterns and
patterns with catastrophic-backtracking shapes are rejected, and so are
dependency cycles. Every rejection fails closed.
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from re import _constants as sre_constants
from re import _parser as sre_parse
from typing import (
    Any,
    Callable,
    Dict,
    Iterable,
    List,
    Mapping,
    Optional,
    Pattern,
    Set,
    Tuple,
    Union,
)

from ..protocols import KnowledgeStore, PolicyValidationError
from ..types import BudgetPeriod, PolicyDecision, PolicyType, utc_now

MAX_PATTERN_LENGTH = 500

PATTERN_TOO_LONG = "regex pattern too long"
DANGEROUS_PATTERN = "dangerous ReDoS pattern"
CIRCULAR_DEPENDENCY = "circular policy dependency detected"

_FLAG_BITS = {
    "i": re.IGNORECASE,
    "m": re.MULTILINE,
    "s": re.DOTALL,
    "x": re.VERBOSE,
}

_REPEATS = frozenset(
    {sre_constants.MAX_REPEAT, sre_constants.MIN_REPEAT, sre_constants.POSSESSIVE_REPEAT}
)


def _children(op, av) -> List[Any]:
    """Sub-patterns nested directly under one parsed node."""
    if op in _REPEATS:
        return [av[2]]
    if op is sre_constants.SUBPATTERN:
        return [av[-1]]
    if op is sre_constants.BRANCH:
        return list(av[1])
    if op in (sre_constants.ASSERT, sre_constants.ASSERT_NOT):
        return [av[1]]
    if op is sre_constants.ATOMIC_GROUP:
        return [av]
    if op is sre_constants.GROUPREF_EXISTS:
        return [p for p in av[1:] if p is not None]
    return []


def _is_unbounded(op, av) -> bool:
    return op in _REPEATS and av[1] == sre_constants.MAXREPEAT


def _has_unbounded_repeat(subpattern) -> bool:
    for op, av in subpattern:
        if _is_unbounded(op, av):
            return True
        if any(_has_unbounded_repeat(child) for child in _children(op, av)):
            return True
    return False


def _has_nested_unbounded_repeat(subpattern) -> bool:
    # An open-ended repeat whose body holds another one: (a+)+ ((a+))+ ([a]*)*
    for op, av in subpattern:
        if _is_unbounded(op, av) and _has_unbounded_repeat(av[2]):
            return True
        if any(_has_nested_unbounded_repeat(child) for child in _children(op, av)):
            return True
    return False


def validate_pattern(pattern: str, flags: int = 0) -> None:
    """Reject patterns that are too long, invalid or structurally prone to ReDoS.

    The pattern is parsed with the interpreter's own regex parser, so groups,
    escapes and character classes are seen exactly as ``re.compile`` sees
    them.

    Raises:
        PolicyValidationError: With a fixed message naming the reason.
    """
    if len(pattern) > MAX_PATTERN_LENGTH:
        raise PolicyValidationError(PATTERN_TOO_LONG)
    try:
        parsed = sre_parse.parse(pattern, flags)
    except re.error as e:
        raise PolicyValidationError(f"invalid regex pattern: {e}") from e
    if _has_nested_unbounded_repeat(parsed):
        raise PolicyValidationError(DANGEROUS_PATTERN)


def _compile(pattern: str, flags: str) -> Pattern:
    bits = 0
    for flag in flags or "":
        if flag not in _FLAG_BITS:
            raise ValueError(f"Unsupported regex flag: {flag!r}")
        bits |= _FLAG_BITS[flag]
    validate_pattern(pattern, bits)
    try:
        return re.compile(pattern, bits)
    except re.error as e:
        raise PolicyValidationError(f"invalid regex pattern: {e}") from e


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


@dataclass
class Policy:
    name: str
    pattern: Optional[str] = None
    must_match: bool = False
    depends_on: Tuple[str, ...] = ()
    min_value: Optional[float] = None
    max_value: Optional[float] = None
    flags: str = "i"
    is_enabled: bool = True
    policy_type: PolicyType = PolicyType.SAFETY
    metric_name: Optional[str] = None
    period: BudgetPeriod = BudgetPeriod.DAILY
    limit: float = 0.0
    compiled: Optional[Pattern] = field(default=None, repr=False, compare=False)


class PolicyEnforcer:
    """Registry and evaluator of guard policies.

    Unknown or disabled policy names allow everything. Apart from budget
    policies, which read the metrics table of ``store``, evaluation is
    deterministic and has no side effects.

    Args:
        store: Store whose metrics budget policies sum. Only needed once a
            budget policy is defined.
        now_fn: Clock placing the hourly and daily budget windows.
        logger: Observability sink; defaults to this module's logger.
    """

    def __init__(
        self,
        *,
        store: Optional[KnowledgeStore] = None,
        now_fn: Callable[[], datetime] = utc_now,
        logger: Optional[logging.Logger] = None,
    ):
        self.store = store
        self._now = now_fn
        self._policies: Dict[str, Policy] = {}
        self.log = logger or logging.getLogger(__name__)

    def define_policy(
        self,
        name: str,
        pattern: Optional[str] = None,
        must_match: bool = False,
        depends_on: Iterable[str] = (),
        min_value: Optional[float] = None,
        max_value: Optional[float] = None,
        flags: str = "i",
        is_enabled: bool = True,
        policy_type: Union[PolicyType, str] = PolicyType.SAFETY,
        metric_name: Optional[str] = None,
        period: Union[BudgetPeriod, str] = BudgetPeriod.DAILY,
        limit: float = 0.0,
    ) -> Policy:
        """Define or replace a policy.

        Raises:
            PolicyValidationError: If the pattern is too long, unsafe or
                invalid, or if the dependencies would form a cycle.
            ValueError: On an unknown type, period or flag, and for a budget
                policy lacking a metric name or a store to read it from.
        """
        if not name:
            raise ValueError("policy name cannot be empty")
        policy_type = PolicyType(policy_type)
        period = BudgetPeriod(period)
        if policy_type == PolicyType.BUDGET:
            if not metric_name:
                raise ValueError(f"budget policy {name!r} needs a metric_name")
            if self.store is None:
                raise ValueError(f"budget policy {name!r} needs an enforcer with a store")

        policy = Policy(
            name=name,
            pattern=pattern,
            must_match=must_match,
            depends_on=tuple(depends_on),
            min_value=min_value,
            max_value=max_value,
            flags=flags,
            is_enabled=is_enabled,
            policy_type=policy_type,
            metric_name=metric_name,
            period=period,
            limit=float(limit),
        )
        if pattern is not None:
            policy.compiled = _compile(pattern, flags)

        previous = self._policies.get(name)
        self._policies[name] = policy
        if self._has_cycle(name, set()):
            if previous is None:
                del self._policies[name]
            else:
                self._policies[name] = previous
            self.log.warning(f"Rejected policy {name!r}: {CIRCULAR_DEPENDENCY}")
            raise PolicyValidationError(CIRCULAR_DEPENDENCY)

        self.log.debug(f"Defined {policy_type.value} policy {name!r}")
        return policy

    def get_policy(self, name: str) -> Optional[Policy]:
        return self._policies.get(name)

    def remove_policy(self, name: str) -> bool:
        return self._policies.pop(name, None) is not None

    def check_policy(self, name: str, value: Any) -> PolicyDecision:
        """Evaluate ``value`` against policy ``name`` and, first, its dependencies."""
        return self._evaluate(name, value, set())

    def evaluate_context(self, context: Mapping[str, Any]) -> Tuple[bool, List[str]]:
        """Check every enabled policy whose name is a key of ``context``.

        Privacy policies not named in ``context`` are checked against its
        ``content`` value when one is present. Each policy runs at most once.

        Returns:
            (allowed, violations)
        """
        violations: List[str] = []
        content = context.get("content")
        for name, policy in self._policies.items():
            if not policy.is_enabled:
                continue
            if name in context:
                value = context[name]
            elif policy.policy_type == PolicyType.PRIVACY and content:
                value = content
            else:
                continue
            decision = self.check_policy(name, value)
            if not decision.allowed:
                violations.append(decision.reason or f"Denied by policy '{name}'")
        return not violations, violations

    # === Internals ===

    def _has_cycle(self, name: str, path: Set[str]) -> bool:
        if name in path:
            return True
        policy = self._policies.get(name)
        if policy is None:
            return False
        path.add(name)
        try:
            return any(self._has_cycle(dep, path) for dep in policy.depends_on)
        finally:
            path.discard(name)

    def _evaluate(self, name: str, value: Any, path: Set[str]) -> PolicyDecision:
        if name in path:
            return PolicyDecision(allowed=False, reason=CIRCULAR_DEPENDENCY)
        policy = self._policies.get(name)
        if policy is None or not policy.is_enabled:
            return PolicyDecision(allowed=True)

        path.add(name)
        try:
            for dep in policy.depends_on:
                decision = self._evaluate(dep, value, path)
                if not decision.allowed:
                    if decision.reason == CIRCULAR_DEPENDENCY:
                        return decision
                    return PolicyDecision(
                        allowed=False,
                        reason=f"Composite failure: {name} blocked by {dep} -> {decision.reason}",
                    )
        finally:
            path.discard(name)

        decision = self._check_value(policy, value)
        if decision.allowed and policy.policy_type == PolicyType.BUDGET:
            decision = self._check_budget(policy, value)
        return decision

    def _check_value(self, policy: Policy, value: Any) -> PolicyDecision:
        name = policy.name
        if _is_number(value):
            if policy.max_value is not None and value > policy.max_value:
                return PolicyDecision(
                    allowed=False,
                    reason=f"Value {value} exceeds max {policy.max_value} for policy '{name}'",
                )
            if policy.min_value is not None and value < policy.min_value:
                return PolicyDecision(
                    allowed=False,
                    reason=f"Value {value} below min {policy.min_value} for policy '{name}'",
                )

        if isinstance(value, str) and policy.compiled is not None:
            matched = policy.compiled.search(value) is not None
            if policy.must_match and not matched:
                return PolicyDecision(
                    allowed=False,
                    reason=f"Value does not match required pattern for policy '{name}'",
                )
            if not policy.must_match and matched:
                return PolicyDecision(
                    allowed=False,
                    reason=f"Value contains forbidden pattern for policy '{name}'",
                )

        return PolicyDecision(allowed=True)

    def _check_budget(self, policy: Policy, value: Any) -> PolicyDecision:
        """Deny when the metric's total in the window plus ``value`` passes the limit."""
        since = self._budget_window_start(policy.period)
        with self.store.transaction() as tx:
            total = tx.sum_metric(policy.metric_name, since)
        projected = total + (value if _is_number(value) else 0.0)
        if projected <= policy.limit:
            return PolicyDecision(allowed=True)

        self.log.info(
            f"Budget policy {policy.name!r} denied: {policy.metric_name} at {total:.4f} "
            f"of {policy.limit:g} ({policy.period.value})"
        )
        return PolicyDecision(
            allowed=False,
            reason=(
                f"Cumulative budget for '{policy.metric_name}' exceeded "
                f"({total:.4f} / {policy.limit:g})"
            ),
        )

    def _budget_window_start(self, period: BudgetPeriod) -> Optional[datetime]:
        now = self._now()
        if period == BudgetPeriod.HOURLY:
            return now - timedelta(hours=1)
        if period == BudgetPeriod.DAILY:
            # Window start is exclusive; step back one tick so midnight itself counts
            midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
            return midnight - timedelta(microseconds=1)
        return None
