"""Per-persona performance analysis against a rolling global baseline."""

import logging
import math
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Sequence

from ..protocols import FailureReporter, KnowledgeStore
from ..types import (
    METRIC_QUERY_LATENCY,
    METRIC_TASK_SUCCESS_RATE,
    BaselineStats,
    FailureReportEntry,
    Metric,
    PerformanceReport,
    Recommendation,
    utc_now,
)

PERSONA_SAMPLE_SIZE = 50
GLOBAL_SAMPLE_SIZE = 200
MIN_BASELINE_SAMPLES = 10

# Used when the global sample is too small to baseline
FALLBACK_BASELINES: Dict[str, BaselineStats] = {
    METRIC_TASK_SUCCESS_RATE: BaselineStats(mean=0.9, std_dev=0.1),
    METRIC_QUERY_LATENCY: BaselineStats(mean=500.0, std_dev=0.1),
}

# Standard deviation substituted when every sample is identical
ZERO_SPREAD_STD_DEV = 0.05

CRITICAL_SIGMAS = 2.5
ACCURACY_SIGMAS = 1.0
EFFICIENCY_SIGMAS = 2.0


def compute_baseline(
    metric_name: str,
    samples: Sequence[Metric],
    min_samples: int = MIN_BASELINE_SAMPLES,
) -> BaselineStats:
    """Mean and population standard deviation of ``metric_name`` in ``samples``."""
    values = [m.metric_value for m in samples if m.metric_name == metric_name]
    if len(values) < min_samples:
        fallback = FALLBACK_BASELINES.get(metric_name, BaselineStats(mean=0.0, std_dev=0.1))
        return BaselineStats(mean=fallback.mean, std_dev=fallback.std_dev)
    mean = sum(values) / len(values)
    variance = sum((v - mean) ** 2 for v in values) / len(values)
    return BaselineStats(mean=mean, std_dev=math.sqrt(variance) or ZERO_SPREAD_STD_DEV)


def _average(samples: Sequence[Metric], metric_name: str, default: float) -> float:
    values = [m.metric_value for m in samples if m.metric_name == metric_name]
    return sum(values) / len(values) if values else default


class StoreFailureReporter:
    """``FailureReporter`` over the store's action log, for a trailing window."""

    def __init__(
        self,
        store: KnowledgeStore,
        *,
        window_days: int = 7,
        now_fn: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.window = timedelta(days=window_days)
        self._now = now_fn

    def get_failure_report(self) -> List[FailureReportEntry]:
        with self.store.transaction() as tx:
            return tx.failure_report(self._now() - self.window)


class PerformanceAnalyst:
    """Recommends an intervention tier for a persona.

    Args:
        store: Store holding the metrics log.
        failure_reporter: Collaborator for ``analyze_failure_patterns``;
            defaults to a 7-day ``StoreFailureReporter`` over ``store``.
        persona_sample: Recent persona samples considered.
        global_sample: Recent global samples used for the baseline.
        min_baseline_samples: Below this, fixed fallback baselines are used.
        logger: Observability sink; defaults to this module's logger.
    """

    def __init__(
        self,
        store: KnowledgeStore,
        *,
        failure_reporter: Optional[FailureReporter] = None,
        persona_sample: int = PERSONA_SAMPLE_SIZE,
        global_sample: int = GLOBAL_SAMPLE_SIZE,
        min_baseline_samples: int = MIN_BASELINE_SAMPLES,
        logger: Optional[logging.Logger] = None,
    ):
        self.store = store
        self.failure_reporter = failure_reporter or StoreFailureReporter(store)
        self.persona_sample = persona_sample
        self.global_sample = global_sample
        self.min_baseline_samples = min_baseline_samples
        self.log = logger or logging.getLogger(__name__)

    def analyze(self, persona_id: str) -> PerformanceReport:
        persona_id = str(persona_id)
        with self.store.transaction() as tx:
            recent = tx.recent_metrics(self.persona_sample, persona_id=persona_id)
            global_metrics = tx.recent_metrics(self.global_sample)

        success = compute_baseline(
            METRIC_TASK_SUCCESS_RATE, global_metrics, self.min_baseline_samples
        )
        latency = compute_baseline(METRIC_QUERY_LATENCY, global_metrics, self.min_baseline_samples)

        if not recent:
            return PerformanceReport(
                persona_id=persona_id,
                success_rate=success.mean,
                average_latency=latency.mean,
                sample_size=0,
                recommendation=Recommendation.MAINTAIN,
            )

        avg_success = _average(recent, METRIC_TASK_SUCCESS_RATE, success.mean)
        avg_latency = _average(recent, METRIC_QUERY_LATENCY, latency.mean)

        if avg_success < success.mean - CRITICAL_SIGMAS * success.std_dev:
            recommendation = Recommendation.CRITICAL_INTERVENTION
        elif avg_success < success.mean - ACCURACY_SIGMAS * success.std_dev:
            recommendation = Recommendation.OPTIMIZE_ACCURACY
        elif avg_latency > latency.mean + EFFICIENCY_SIGMAS * latency.std_dev:
            recommendation = Recommendation.OPTIMIZE_EFFICIENCY
        else:
            recommendation = Recommendation.MAINTAIN

        if recommendation != Recommendation.MAINTAIN:
            self.log.info(
                f"Persona {persona_id}: {recommendation.value} "
                f"(success {avg_success:.3f}, latency {avg_latency:.1f})"
            )
        return PerformanceReport(
            persona_id=persona_id,
            success_rate=avg_success,
            average_latency=avg_latency,
            sample_size=len(recent),
            recommendation=recommendation,
        )

    def analyze_failure_patterns(self, persona_id: str) -> List[str]:
        """``tool_failure_<name>`` tags for tools that failed more than once.

        Best-effort: if the failure reporter raises, the error is logged and
        an empty list is returned.
        """
        try:
            report = self.failure_reporter.get_failure_report()
        except Exception as e:
            self.log.warning(f"Failure pattern collection failed for persona {persona_id}: {e}")
            return []
        return [f"tool_failure_{entry.tool_name}" for entry in report if entry.failure_count > 1]
