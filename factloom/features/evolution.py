"""Evolutionary controller: observe latency, adapt the schema, then audit.

One cycle:

1. Observe: pull the most recent latency samples and baseline them.
2. Decide: evolve when the newest sample is an outlier (z-score) or the
   mean itself is too high.
3. Evolve: self-optimize if the store declares the capability, flag tables
   without a primary key, index the message table when latency is high.
4. Audit: run the health auditor. An unhealthy result is reported in the
   cycle's changes; nothing is rolled back.
"""

import logging
import math
from typing import List, Optional, Tuple

from ..protocols import HealthAuditor, KnowledgeStore
from ..storage.health import HealthAuditor as StoreHealthAuditor
from ..types import METRIC_QUERY_LATENCY, EvolutionResult

MESSAGE_INDEX_NAME = "idx_agent_msg_session_time"
MESSAGE_INDEX_COLUMNS = ("session_id", "created_at")

UNHEALTHY_WARNING = "WARNING: Unhealthy state detected after evolution"


def z_score_of_latest(values: List[float]) -> Tuple[float, float, float]:
    """Mean, population std-dev and z-score of ``values[0]`` (the newest sample)."""
    mean = sum(values) / len(values)
    std_dev = math.sqrt(sum((v - mean) ** 2 for v in values) / len(values))
    z_score = 0.0 if std_dev == 0 else (values[0] - mean) / std_dev
    return mean, std_dev, z_score


class EvolutionaryController:
    """Runs the observe/decide/evolve/audit cycle over one store.

    Args:
        store: Store to observe and adapt.
        auditor: Health check run after every evolution; defaults to the
            store-backed ``HealthAuditor``.
        sample_size: Latency samples pulled per cycle.
        min_samples: Fewer samples than this and the cycle is a no-op.
        z_threshold: Newest-sample z-score above which evolution triggers.
        mean_threshold: Mean latency above which evolution triggers.
        index_latency_threshold: Mean latency above which the message table is indexed.
        logger: Observability sink; defaults to this module's logger.
    """

    def __init__(
        self,
        store: KnowledgeStore,
        *,
        auditor: Optional[HealthAuditor] = None,
        sample_size: int = 20,
        min_samples: int = 5,
        z_threshold: float = 1.5,
        mean_threshold: float = 500.0,
        index_latency_threshold: float = 200.0,
        logger: Optional[logging.Logger] = None,
    ):
        self.store = store
        self.auditor = auditor or StoreHealthAuditor(store)
        self.sample_size = sample_size
        self.min_samples = min_samples
        self.z_threshold = z_threshold
        self.mean_threshold = mean_threshold
        self.index_latency_threshold = index_latency_threshold
        self.log = logger or logging.getLogger(__name__)

    def run_cycle(self) -> EvolutionResult:
        with self.store.transaction() as tx:
            samples = tx.recent_metrics(self.sample_size, metric_name=METRIC_QUERY_LATENCY)

        if len(samples) < self.min_samples:
            self.log.debug(
                f"Evolution skipped: {len(samples)} latency samples (need {self.min_samples})"
            )
            return EvolutionResult(evolved=False)

        values = [m.metric_value for m in samples]
        mean, std_dev, z_score = z_score_of_latest(values)
        self.log.info(
            f"Baselining {METRIC_QUERY_LATENCY}: mean={mean:.2f}, std_dev={std_dev:.2f}, "
            f"current={values[0]:.2f}, z={z_score:.2f}"
        )

        result = EvolutionResult(evolved=False, mean=mean, std_dev=std_dev, z_score=z_score)
        if not (z_score > self.z_threshold or mean > self.mean_threshold):
            return result

        result.evolved = True
        result.changes.extend(self._evolve(mean))

        audit = self.auditor.perform_audit()
        if not audit.healthy:
            self.log.warning(f"Evolution resulted in unhealthy state: {'; '.join(audit.issues)}")
            result.changes.append(UNHEALTHY_WARNING)
        return result

    def _evolve(self, mean: float) -> List[str]:
        changes: List[str] = []

        if getattr(self.store, "supports_self_optimize", False):
            self.store.optimize()
            changes.append("Applied self-optimization")

        for table in self.store.list_tables():
            if not table.has_primary_key:
                self.log.warning(f"Table '{table.name}' has no primary key")
                changes.append(f"Flagged table '{table.name}' without a primary key")

        if mean > self.index_latency_threshold:
            messages = self.store.table_name("messages")
            if self.store.create_index(MESSAGE_INDEX_NAME, messages, MESSAGE_INDEX_COLUMNS):
                changes.append(f"Applied composite index to {messages}")

        return changes
