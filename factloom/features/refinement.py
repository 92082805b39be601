"""Mines the action log for failing tools and proposes corrective rules."""

import logging
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Sequence

from ..protocols import FactloomError, KnowledgeStore
from ..types import Reflection, Rule, utc_now

# Error text fragments that indicate an access or capability gap
CAPABILITY_DENIAL_PATTERNS = (
    "permission denied",
    "unknown tool",
    "missing capability",
    "not authorized",
)

RULE_OPERATION = "insert"
RULE_ACTION = "audit"
RULE_REASON = "High failure rate detected by ActionRefiner"


class ActionRefiner:
    """Turns tool failure patterns into rule proposals and capability reflections.

    Args:
        store: Transactional store holding the action log and the rule/reflection sinks.
        failure_rate_threshold: Tools failing more often than this are flagged.
        min_actions: Tools need strictly more actions than this in the window.
        window_hours: Length of the trailing window examined.
        denial_patterns: Error fragments treated as capability gaps.
        now_fn: Clock that anchors the window.
        logger: Observability sink; defaults to this module's logger.
    """

    def __init__(
        self,
        store: KnowledgeStore,
        *,
        failure_rate_threshold: float = 0.3,
        min_actions: int = 3,
        window_hours: int = 24,
        denial_patterns: Sequence[str] = CAPABILITY_DENIAL_PATTERNS,
        now_fn: Callable[[], datetime] = utc_now,
        logger: Optional[logging.Logger] = None,
    ):
        self.store = store
        self.failure_rate_threshold = failure_rate_threshold
        self.min_actions = min_actions
        self.window = timedelta(hours=window_hours)
        self.denial_patterns = tuple(denial_patterns)
        self._now = now_fn
        self.log = logger or logging.getLogger(__name__)

    def refine_actions(self) -> List[str]:
        """Analyze the trailing window and propose improvements.

        Returns:
            Human-readable recommendations, failing tools first.
        """
        recommendations: List[str] = []
        since = self._now() - self.window

        with self.store.transaction() as tx:
            stats = tx.tool_failure_stats(since)

        for stat in stats:
            rate = stat.failure_rate
            if rate > self.failure_rate_threshold and stat.total > self.min_actions:
                recommendations.append(
                    f"Tool '{stat.tool_name}' has a {round(rate * 100)}% failure rate. "
                    "Suggesting automatic reflection rule."
                )
                self.propose_reflection_rule(stat.tool_name)

        with self.store.transaction() as tx:
            denied = tx.capability_denied_tools(since, self.denial_patterns)

        for tool_name in denied:
            recommendations.append(
                f"Detected repeated access/existence failures for tool '{tool_name}'. "
                "Proposing capability expansion."
            )
            self.propose_capability_update(tool_name)

        return recommendations

    def propose_reflection_rule(self, tool_name: str) -> Optional[Rule]:
        """Define an audit rule for ``tool_name`` unless one already exists.

        The existence check and the insert share one locked transaction, so
        concurrent refinement runs cannot both propose.

        Returns:
            The new rule, or None if the tool already had one.
        """
        target_table = self.store.table_name("actions")
        with self.store.transaction() as tx:
            existing = tx.find_rule_for_tool(
                target_table, RULE_OPERATION, tool_name, for_update=True
            )
            if existing is not None:
                return None
            rule = tx.define_rule(
                Rule(
                    id=None,
                    table_name=target_table,
                    operation=RULE_OPERATION,
                    action=RULE_ACTION,
                    metadata={"target_tool": tool_name, "reason": RULE_REASON},
                )
            )
        self.log.info(f"Proposed reflection rule for tool: {tool_name}")
        return rule

    def propose_capability_update(self, tool_name: str) -> Optional[Reflection]:
        """Record a capability-gap reflection for ``tool_name``.

        Best-effort: a storage failure is logged and None is returned.
        """
        reflection = Reflection(
            id=None,
            session_id="system",
            outcome="failure",
            lessons_learned=f"Architectural Gap: Missing Capability for '{tool_name}'",
            suggested_actions=[
                f"Identified repeated failures using tool '{tool_name}'.",
                "Resolution: Inspect permission sets and ensure the tool is "
                "correctly registered with the capability manager.",
            ],
        )
        try:
            with self.store.transaction() as tx:
                tx.reflect(reflection)
        except FactloomError as e:
            self.log.warning(f"Could not record capability reflection for {tool_name}: {e}")
            return None
        self.log.info(f"Proposed capability expansion for tool: {tool_name}")
        return reflection
