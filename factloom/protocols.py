"""
factloom Protocol Definitions
=============================

Interface contracts between the feature components and the collaborators
they consume but do not own.

- Store: the transactional persistence layer (``KnowledgeStore``). Every
  component holds a store handle; there is no class hierarchy between
  components.
- Metrics / Actions / Reflections: read-only logs and a write-only sink,
  all served by the store in the bundled SQLite backend.
- FailureReporter / HealthAuditor: narrow collaborators the analyst and
  the evolutionary controller call out to.

Error handling philosophy:
- Normal absence (missing id) is signalled with ``None``, never raised.
- Invalid arguments raise ValueError.
- Storage failures raise StorageError and are propagated to the caller.
- Guard-policy rejections raise PolicyValidationError (fail closed).
"""

from __future__ import annotations

from contextlib import AbstractContextManager
from datetime import datetime
from typing import (
    TYPE_CHECKING,
    Any,
    Iterable,
    List,
    Mapping,
    Optional,
    Protocol,
    Sequence,
    runtime_checkable,
)

if TYPE_CHECKING:
    from factloom.types import (
        AgentAction,
        AuditResult,
        FailureReportEntry,
        KnowledgeItem,
        KnowledgeLink,
        Metric,
        Reflection,
        Rule,
        TableInfo,
        ToolFailureStat,
    )


# =============================================================================
# ERRORS
# =============================================================================


class FactloomError(Exception):
    """Base for all factloom errors."""

    pass


class StorageError(FactloomError):
    """Raised by store implementations on any query or transaction failure.

    Carries enough context (table, operation, offending id) to act on.
    """

    def __init__(
        self,
        message: str,
        *,
        table: Optional[str] = None,
        operation: Optional[str] = None,
        record_id: Optional[str] = None,
    ):
        self.table = table
        self.operation = operation
        self.record_id = record_id
        context = ", ".join(
            f"{k}={v}"
            for k, v in (("table", table), ("operation", operation), ("id", record_id))
            if v is not None
        )
        super().__init__(f"{message} ({context})" if context else message)


class PolicyValidationError(FactloomError, ValueError):
    """Raised when a guard policy is rejected (pattern too long, unsafe, circular)."""

    pass


class PolicyViolationError(FactloomError):
    """Raised when agent-authored input is denied by one or more guard policies."""

    def __init__(self, violations: List[str]):
        self.violations = list(violations)
        super().__init__("; ".join(self.violations) or "denied by policy")


class MetadataValidationError(FactloomError, ValueError):
    """Raised when knowledge metadata does not match the metadata schema."""

    pass


# =============================================================================
# STORE
# =============================================================================


@runtime_checkable
class StoreTransaction(Protocol):
    """Operations available inside one atomic store transaction.

    All writes performed through one transaction commit together or not
    at all. ``for_update`` lookups hold a pessimistic lock on the matching
    record until the transaction ends.
    """

    # --- knowledge items ---

    def get_item(self, item_id: str, *, for_update: bool = False) -> Optional[KnowledgeItem]: ...

    def find_exact(self, entity: str, fact: str) -> Optional[KnowledgeItem]: ...

    def find_global(
        self, entity: str, fact: str, *, for_update: bool = False
    ) -> Optional[KnowledgeItem]: ...

    def list_by_entity(self, entity: str, limit: Optional[int] = None) -> List[KnowledgeItem]: ...

    def list_by_entities(self, entities: Iterable[str]) -> List[KnowledgeItem]: ...

    def list_link_candidates(
        self, exclude_id: str, min_confidence: float, limit: int
    ) -> List[KnowledgeItem]: ...

    def list_local_above(self, min_confidence: float) -> List[KnowledgeItem]: ...

    def duplicate_entities(self, limit: int) -> List[str]: ...

    def insert_item(self, item: KnowledgeItem) -> KnowledgeItem: ...

    def update_item(self, item: KnowledgeItem) -> bool: ...

    def delete_item(self, item_id: str) -> bool: ...

    def boost_tag(self, tag: str, boost: float) -> int: ...

    # --- links ---

    def find_link(self, source_id: str, target_id: str, relationship: str) -> Optional[KnowledgeLink]: ...

    def insert_link(self, link: KnowledgeLink) -> KnowledgeLink: ...

    def update_link_metadata(self, link_id: str, metadata: Mapping[str, Any]) -> bool: ...

    def list_links_from(self, source_id: str) -> List[KnowledgeLink]: ...

    # --- telemetry ---

    def tool_failure_stats(self, since: datetime) -> List[ToolFailureStat]: ...

    def capability_denied_tools(self, since: datetime, patterns: Sequence[str]) -> List[str]: ...

    def failure_report(self, since: datetime) -> List[FailureReportEntry]: ...

    def recent_metrics(
        self, limit: int, *, metric_name: Optional[str] = None, persona_id: Optional[str] = None
    ) -> List[Metric]: ...

    def sum_metric(self, metric_name: str, since: Optional[datetime] = None) -> float: ...

    def avg_metric(self, metric_name: str) -> Optional[float]: ...

    def record_action(self, action: AgentAction) -> AgentAction: ...

    def record_metric(self, metric: Metric) -> Metric: ...

    def reflect(self, reflection: Reflection) -> Reflection: ...

    def define_rule(self, rule: Rule) -> Rule: ...

    def find_rule_for_tool(
        self, table_name: str, operation: str, tool_name: str, *, for_update: bool = False
    ) -> Optional[Rule]: ...


@runtime_checkable
class KnowledgeStore(Protocol):
    """A transactional store with introspection and schema operations.

    ``supports_self_optimize`` is the capability flag the evolutionary
    controller consults before calling ``optimize``.
    """

    supports_self_optimize: bool

    def transaction(self) -> AbstractContextManager[StoreTransaction]: ...

    def list_tables(self) -> List[TableInfo]: ...

    def optimize(self) -> None: ...

    def create_index(self, name: str, table: str, columns: Sequence[str]) -> bool: ...

    def table_name(self, logical: str) -> str: ...


# =============================================================================
# COLLABORATORS
# =============================================================================


@runtime_checkable
class FailureReporter(Protocol):
    """Yields per-tool failure counts over a recent window."""

    def get_failure_report(self) -> List[FailureReportEntry]: ...


@runtime_checkable
class HealthAuditor(Protocol):
    """Independent post-change health check."""

    def perform_audit(self) -> AuditResult: ...


__all__: List[str] = [
    "FactloomError",
    "StorageError",
    "PolicyValidationError",
    "MetadataValidationError",
    "PolicyViolationError",
    "StoreTransaction",
    "KnowledgeStore",
    "FailureReporter",
    "HealthAuditor",
]