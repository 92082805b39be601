"""
Shared types for factloom.

All record dataclasses live here. These are the shared vocabulary between
the storage layer and the feature components: a component builds a
KnowledgeItem, the store persists it. The types are the contract between them.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Set, Tuple

from .metadata import KnowledgeMetadata

# === Shared Utility Functions ===


def utc_now() -> datetime:
    """Get current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_iso(dt: Optional[datetime]) -> Optional[str]:
    """Serialize a datetime for storage as fixed-width UTC ISO-8601.

    Fixed width keeps stored timestamps lexicographically ordered. Naive
    datetimes are taken to be UTC.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_datetime(s: Optional[str]) -> Optional[datetime]:
    """Parse an ISO datetime string, returning None when unparseable."""
    if not s:
        return None
    try:
        return datetime.fromisoformat(s.replace("Z", "+00:00"))
    except (TypeError, ValueError):
        return None


def clamp_confidence(value: float) -> float:
    """Clamp a confidence value into [0.0, 1.0]."""
    return max(0.0, min(1.0, float(value)))


# === Enums ===


class KnowledgeStatus(str, Enum):
    """Lifecycle stage of a knowledge item.

    proposed -> verified -> disputed | deprecated are the only forward
    transitions. Nothing moves an item back to proposed or verified once
    it has been disputed or deprecated.
    """

    PROPOSED = "proposed"
    VERIFIED = "verified"
    DISPUTED = "disputed"
    DEPRECATED = "deprecated"


VALID_STATUS_VALUES = frozenset(s.value for s in KnowledgeStatus)


class KnowledgeSource(str, Enum):
    """Who asserted a fact."""

    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class Relationship(str, Enum):
    """Built-in link relationships. Any other string is also accepted."""

    MENTIONS = "mentions"
    SEMANTICALLY_RELATED = "semantically_related"


class Recommendation(str, Enum):
    """Intervention tier recommended by the performance analyst."""

    MAINTAIN = "maintain"
    OPTIMIZE_EFFICIENCY = "optimize_efficiency"
    OPTIMIZE_ACCURACY = "optimize_accuracy"
    CRITICAL_INTERVENTION = "critical_intervention"


class ActionStatus(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"


class PolicyType(str, Enum):
    """Kind of guard policy.

    Every type runs the pattern and threshold checks. Budget policies also
    cap a metric's cumulative total over a period. Privacy policies are
    additionally applied to the ``content`` of an evaluated context.
    """

    SAFETY = "safety"
    BUDGET = "budget"
    PRIVACY = "privacy"
    PERFORMANCE = "performance"


class BudgetPeriod(str, Enum):
    """Window a budget policy sums its metric over."""

    HOURLY = "hourly"
    DAILY = "daily"
    ALL = "all"


# Marker tag carried by every globally promoted item
HIVE_MIND_TAG = "hive_mind"

# Metric names shared between the analyst, controller and health audit
METRIC_TASK_SUCCESS_RATE = "task_success_rate"
METRIC_QUERY_LATENCY = "query_latency"
METRIC_SUCCESS_RATE = "success_rate"
METRIC_TOTAL_COST = "total_cost"


# === Records ===


@dataclass
class KnowledgeItem:
    """A fact about an entity, with a confidence and lifecycle status.

    ``source_session_id`` of None means the item has been promoted to the
    global scope.
    """

    id: Optional[str]
    entity: str
    fact: str
    confidence: float = 0.5
    status: KnowledgeStatus = KnowledgeStatus.PROPOSED
    tags: Set[str] = field(default_factory=set)
    metadata: KnowledgeMetadata = field(default_factory=KnowledgeMetadata)
    source_session_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_global(self) -> bool:
        return self.source_session_id is None


@dataclass
class KnowledgeLink:
    """A typed, directed link between two knowledge items (weak references by id)."""

    id: Optional[str]
    source_id: str
    target_id: str
    relationship: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: Optional[datetime] = None


@dataclass
class AgentAction:
    """One entry of the action/outcome log."""

    id: Optional[str]
    tool_name: str
    status: ActionStatus
    error: Optional[str] = None
    session_id: Optional[str] = None
    created_at: Optional[datetime] = None


@dataclass
class Metric:
    """A named numeric sample, optionally associated with a persona."""

    id: Optional[str]
    metric_name: str
    metric_value: float
    persona_id: Optional[str] = None
    created_at: Optional[datetime] = None


@dataclass
class Reflection:
    """A free-text lesson recorded after observing an outcome."""

    id: Optional[str]
    session_id: Optional[str]
    outcome: str
    lessons_learned: str
    suggested_actions: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: Optional[datetime] = None


@dataclass
class Rule:
    """A proposed corrective rule targeting a table/operation."""

    id: Optional[str]
    table_name: str
    operation: str
    action: str
    priority: int = 0
    is_enabled: bool = True
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: Optional[datetime] = None


@dataclass
class ToolFailureStat:
    """Per-tool aggregate over the action log."""

    tool_name: str
    total: int
    failures: int

    @property
    def failure_rate(self) -> float:
        return self.failures / self.total if self.total else 0.0


@dataclass
class FailureReportEntry:
    tool_name: str
    failure_count: int
    last_failure: Optional[datetime] = None


@dataclass
class TableInfo:
    """Introspected table metadata."""

    name: str
    columns: List[str] = field(default_factory=list)
    primary_key: List[str] = field(default_factory=list)

    @property
    def has_primary_key(self) -> bool:
        return len(self.primary_key) > 0


# === Results ===


@dataclass
class BaselineStats:
    mean: float
    std_dev: float


@dataclass
class PerformanceReport:
    """Result of analyzing one persona against the global baseline."""

    persona_id: str
    success_rate: float
    average_latency: float
    sample_size: int
    recommendation: Recommendation


@dataclass
class AuditResult:
    healthy: bool
    issues: List[str] = field(default_factory=list)


@dataclass
class EvolutionResult:
    """Outcome of one evolutionary cycle."""

    evolved: bool
    changes: List[str] = field(default_factory=list)
    mean: Optional[float] = None
    std_dev: Optional[float] = None
    z_score: Optional[float] = None


@dataclass
class PolicyDecision:
    allowed: bool
    reason: Optional[str] = None


@dataclass
class KnowledgeGraph:
    """An item and its outgoing one-hop relations."""

    item: KnowledgeItem
    relations: List[Tuple[str, KnowledgeItem]] = field(default_factory=list)
