"""
factloom Core - the ``Loom`` facade.

Wires every feature component over one store and exposes the full
ingestion path (``distill``) that composes them inside a single
transaction. Components stay independent: ``Loom`` only holds references,
it adds no behaviour of its own beyond ``distill``.
"""

import logging
from datetime import datetime
from typing import Any, Callable, Iterable, List, Mapping, Optional, Tuple, Union

from factloom.config import FactloomSettings, get_settings
from factloom.features import (
    ActionRefiner,
    Consolidator,
    DomainBooster,
    EvolutionaryController,
    KnowledgeLifecycle,
    PerformanceAnalyst,
    PolicyEnforcer,
    PromotionGateway,
    RelationshipBuilder,
    StoreFailureReporter,
)
from factloom.protocols import KnowledgeStore, PolicyViolationError
from factloom.storage import HealthAuditor, SQLiteStore
from factloom.types import (
    AuditResult,
    EvolutionResult,
    KnowledgeGraph,
    KnowledgeItem,
    KnowledgeLink,
    KnowledgeSource,
    PerformanceReport,
    PolicyDecision,
    utc_now,
)


class Loom:
    """Self-maintaining knowledge base over one store.

    Args:
        store: Store to operate on. Defaults to a ``SQLiteStore`` at
            ``settings.db_path`` with the configured table names.
        settings: Tuning knobs; defaults to ``get_settings()``.
        now_fn: Clock shared by every component (and the default store).
        logger: Observability sink passed to every component.
        policies: Guard policies consulted by every ingesting call
            (``distill``, ``ingest`` and ``challenge``). Policies named
            ``entity``, ``fact`` or ``content`` are checked against the
            incoming entity and fact; privacy policies see the fact as
            ``content``. Defaults to an enforcer whose budget policies read
            this store's metrics.
    """

    def __init__(
        self,
        store: Optional[KnowledgeStore] = None,
        *,
        settings: Optional[FactloomSettings] = None,
        now_fn: Callable[[], datetime] = utc_now,
        logger: Optional[logging.Logger] = None,
        policies: Optional[PolicyEnforcer] = None,
    ):
        self.settings = settings or get_settings()
        s = self.settings
        self.store: KnowledgeStore = store or SQLiteStore(
            s.db_path, table_names=s.table_names(), now_fn=now_fn
        )
        self.log = logger or logging.getLogger(__name__)

        self.policies = policies or PolicyEnforcer(store=self.store, now_fn=now_fn, logger=logger)
        self.lifecycle = KnowledgeLifecycle(self.store, now_fn=now_fn, logger=logger)
        self.consolidator = Consolidator(
            self.store,
            entity_limit=s.consolidation_entity_limit,
            group_limit=s.consolidation_group_limit,
            threshold=s.consolidation_threshold,
            now_fn=now_fn,
            logger=logger,
        )
        self.relationships = RelationshipBuilder(
            self.store,
            candidate_limit=s.link_candidate_limit,
            min_confidence=s.link_min_confidence,
            similarity_threshold=s.link_similarity_threshold,
            logger=logger,
        )
        self.domains = DomainBooster(self.store, logger=logger)
        self.promotion = PromotionGateway(
            self.store,
            broadcast_min_confidence=s.broadcast_min_confidence,
            now_fn=now_fn,
            logger=logger,
        )
        self.refiner = ActionRefiner(
            self.store,
            failure_rate_threshold=s.failure_rate_threshold,
            min_actions=s.min_actions,
            window_hours=s.refinement_window_hours,
            now_fn=now_fn,
            logger=logger,
        )
        self.analyst = PerformanceAnalyst(
            self.store,
            failure_reporter=StoreFailureReporter(
                self.store, window_days=s.failure_report_window_days, now_fn=now_fn
            ),
            logger=logger,
        )
        self.auditor = HealthAuditor(
            self.store,
            now_fn=now_fn,
            cost_ceiling=s.audit_cost_ceiling,
            min_success_rate=s.audit_min_success_rate,
            logger=logger,
        )
        self.evolution = EvolutionaryController(
            self.store,
            auditor=self.auditor,
            sample_size=s.evolution_sample_size,
            min_samples=s.evolution_min_samples,
            z_threshold=s.evolution_z_threshold,
            mean_threshold=s.evolution_mean_threshold,
            index_latency_threshold=s.index_latency_threshold,
            logger=logger,
        )

    # === Full ingestion path ===

    def distill(
        self,
        entity: str,
        fact: str,
        confidence: float = 0.5,
        source_session_id: Optional[str] = None,
        tags: Optional[Iterable[str]] = None,
        metadata: Optional[Mapping[str, Any]] = None,
        source: Union[KnowledgeSource, str] = KnowledgeSource.ASSISTANT,
    ) -> KnowledgeItem:
        """Ingest a fact with contradiction handling and auto-linking.

        In one transaction: reinforce an exact match and stop, or else
        challenge the entity's other facts, create the item and link it.

        Raises:
            PolicyViolationError: If a guard policy denies the entity or fact.
            MetadataValidationError: If ``metadata`` sets a key factloom manages.
            ValueError: On invalid arguments.
        """
        entity, fact, confidence, session_id, tag_set, source = self.lifecycle.normalize_input(
            entity, fact, confidence, source_session_id, tags, source
        )
        self._guard(entity, fact)

        with self.store.transaction() as tx:
            existing = tx.find_exact(entity, fact)
            if existing is not None:
                return self.lifecycle.reinforce_tx(
                    tx, existing, session_id, tag_set, metadata, source
                )
            self.lifecycle.challenge_tx(tx, entity, fact, confidence)
            item = self.lifecycle.create_tx(
                tx, entity, fact, confidence, session_id, tag_set, metadata, source
            )
            self.relationships.auto_link_tx(tx, item)
        return item

    # === Lifecycle ===

    def ingest(self, entity: str, fact: str, confidence: float = 0.5, **kwargs) -> KnowledgeItem:
        self._guard(entity, fact)
        return self.lifecycle.ingest(entity, fact, confidence, **kwargs)

    def verify(self, item_id: str, reinforcement: float = 0.1) -> Optional[KnowledgeItem]:
        return self.lifecycle.verify(item_id, reinforcement)

    def challenge(self, entity: str, competing_fact: str, confidence: float) -> List[KnowledgeItem]:
        self._guard(entity, competing_fact)
        return self.lifecycle.challenge(entity, competing_fact, confidence)

    def get_by_entity(
        self,
        entity: str,
        filter_tags: Optional[Iterable[str]] = None,
        record_hits: bool = True,
    ) -> List[KnowledgeItem]:
        return self.lifecycle.get_by_entity(entity, filter_tags, record_hits)

    def record_hit(self, item_id: str) -> bool:
        return self.lifecycle.record_hit(item_id)

    # === Maintenance ===

    def consolidate(self) -> int:
        return self.consolidator.consolidate()

    def auto_link(self, item: KnowledgeItem) -> List[KnowledgeLink]:
        return self.relationships.auto_link(item)

    def link(
        self,
        source_id: str,
        target_id: str,
        relationship: str,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> Optional[KnowledgeLink]:
        return self.relationships.link(source_id, target_id, relationship, metadata)

    def knowledge_graph(self, item_id: str) -> Optional[KnowledgeGraph]:
        return self.relationships.knowledge_graph(item_id)

    def boost_domain(self, domain_tag: str, boost_factor: float = 0.05) -> int:
        return self.domains.boost_domain(domain_tag, boost_factor)

    # === Promotion ===

    def promote(self, item: KnowledgeItem) -> bool:
        return self.promotion.promote(item)

    def broadcast(self, min_confidence: Optional[float] = None) -> int:
        return self.promotion.broadcast(min_confidence)

    # === Feedback loop ===

    def refine_actions(self) -> List[str]:
        return self.refiner.refine_actions()

    def analyze(self, persona_id: str) -> PerformanceReport:
        return self.analyst.analyze(persona_id)

    def analyze_failure_patterns(self, persona_id: str) -> List[str]:
        return self.analyst.analyze_failure_patterns(persona_id)

    def run_evolution_cycle(self) -> EvolutionResult:
        return self.evolution.run_cycle()

    def perform_audit(self) -> AuditResult:
        return self.auditor.perform_audit()

    # === Policies ===

    def check_policy(self, name: str, value: Any) -> PolicyDecision:
        return self.policies.check_policy(name, value)

    def evaluate_context(self, context: Mapping[str, Any]) -> Tuple[bool, List[str]]:
        return self.policies.evaluate_context(context)

    def _guard(self, entity: Any, fact: Any) -> None:
        allowed, violations = self.policies.evaluate_context(
            {"entity": entity, "fact": fact, "content": fact}
        )
        if not allowed:
            self.log.warning(f"Rejected fact for {entity!r}: {'; '.join(violations)}")
            raise PolicyViolationError(violations)
