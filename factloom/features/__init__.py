"""Feature components for factloom.

Each component is a free-standing service holding a store handle. None of
them inherit from each other; ``factloom.core.Loom`` wires them together.
"""

from factloom.features.consolidation import Consolidator
from factloom.features.domain import DomainBooster
from factloom.features.evolution import EvolutionaryController
from factloom.features.lifecycle import KnowledgeLifecycle
from factloom.features.performance import PerformanceAnalyst, StoreFailureReporter
from factloom.features.policy import Policy, PolicyEnforcer, validate_pattern
from factloom.features.promotion import PromotionGateway
from factloom.features.refinement import ActionRefiner
from factloom.features.relationships import RelationshipBuilder, extract_entities

__all__ = [
    "ActionRefiner",
    "Consolidator",
    "DomainBooster",
    "EvolutionaryController",
    "KnowledgeLifecycle",
    "PerformanceAnalyst",
    "Policy",
    "PolicyEnforcer",
    "PromotionGateway",
    "RelationshipBuilder",
    "StoreFailureReporter",
    "extract_entities",
    "validate_pattern",
]
