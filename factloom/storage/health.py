"""Infrastructure health audit over the metrics log.

The evolutionary controller runs this after every evolution attempt. It is a
"panic check": it looks for cost overruns in the trailing hour and for a
collapsed success rate. It reports what it finds but never repairs anything.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from ..protocols import KnowledgeStore
from ..types import (
    METRIC_SUCCESS_RATE,
    METRIC_TOTAL_COST,
    AuditResult,
    Reflection,
    utc_now,
)

AUDIT_FAILURE_LESSON = "Infrastructure Audit Failure"


class HealthAuditor:
    """Checks recent cost and success-rate metrics against fixed ceilings.

    Args:
        store: Store to read metrics from and record the failure reflection in.
        now_fn: Clock used for the trailing cost window.
        cost_ceiling: Maximum ``total_cost`` summed over the last hour.
        min_success_rate: Minimum average ``success_rate`` across all samples.
        logger: Observability sink; defaults to this module's logger.
    """

    def __init__(
        self,
        store: KnowledgeStore,
        *,
        now_fn: Callable[[], datetime] = utc_now,
        cost_ceiling: float = 1.0,
        min_success_rate: float = 0.5,
        logger: Optional[logging.Logger] = None,
    ):
        self.store = store
        self._now = now_fn
        self.cost_ceiling = cost_ceiling
        self.min_success_rate = min_success_rate
        self.log = logger or logging.getLogger(__name__)

    def perform_audit(self) -> AuditResult:
        issues: List[str] = []
        since = self._now() - timedelta(hours=1)

        with self.store.transaction() as tx:
            cost = tx.sum_metric(METRIC_TOTAL_COST, since=since)
            avg_success = tx.avg_metric(METRIC_SUCCESS_RATE)

        if cost > self.cost_ceiling:
            issues.append(f"Critical: High cost detected (${cost:.2f} in the last hour)")

        # No samples at all counts as healthy
        success = 1.0 if avg_success is None else avg_success
        if success < self.min_success_rate:
            issues.append(f"Critical: Success rate dropped to {round(success * 100)}%")

        if issues:
            self.log.warning(f"Audit failed: {', '.join(issues)}")
            with self.store.transaction() as tx:
                tx.reflect(
                    Reflection(
                        id=None,
                        session_id=None,
                        outcome="failure",
                        lessons_learned=AUDIT_FAILURE_LESSON,
                        suggested_actions=[f"Issues found: {'; '.join(issues)}"],
                    )
                )

        return AuditResult(healthy=not issues, issues=issues)
