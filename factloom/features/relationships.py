"""Typed links between knowledge items.

Two discovery passes feed ``link``:

1. Structural: entity-like phrases in the fact text (capitalized runs,
   quoted phrases, camelCase tokens) that name an existing entity produce
   "mentions" links.
2. Semantic: recently updated items whose fact scores above a similarity
   threshold produce "semantically_related" links.

At most one link exists per (source, target, relationship). Rediscovery
rewrites the link's metadata instead of adding a duplicate.
"""

import logging
import re
from typing import Any, Dict, List, Mapping, Optional

from ..protocols import KnowledgeStore, StoreTransaction
from ..similarity import calculate_similarity
from ..types import KnowledgeGraph, KnowledgeItem, KnowledgeLink, Relationship

# Capitalized word runs | "quoted phrases" | camelCase tokens
_ENTITY_PATTERN = re.compile(r'([A-Z][a-z]+(?:\s[A-Z][a-z]+)*)|("[^"]+")|([a-z]+[A-Z][a-z]+)')

MIN_ENTITY_CHARS = 3

# Version tag carried by semantic links
SEMANTIC_LINK_VERSION = "2.0"

STRUCTURAL_LINK_METADATA: Dict[str, Any] = {"auto": True, "source": "structural_extraction"}


def extract_entities(text: str, exclude: Optional[str] = None) -> List[str]:
    """Entity-like candidate phrases in ``text``, in order of first appearance.

    Quotes are stripped, candidates of two characters or fewer are dropped,
    and ``exclude`` (the item's own entity) is never returned.
    """
    found: Dict[str, None] = {}
    for match in _ENTITY_PATTERN.finditer(text or ""):
        candidate = match.group(0).replace('"', "").strip()
        if len(candidate) < MIN_ENTITY_CHARS or candidate == exclude:
            continue
        found.setdefault(candidate, None)
    return list(found)


class RelationshipBuilder:
    """Discovers and persists links between knowledge items.

    Args:
        store: Transactional store.
        candidate_limit: Most recently updated items scanned by the semantic pass.
        min_confidence: Candidates must have confidence strictly above this.
        similarity_threshold: Scores strictly above this produce a link.
        logger: Observability sink; defaults to this module's logger.
    """

    def __init__(
        self,
        store: KnowledgeStore,
        *,
        candidate_limit: int = 50,
        min_confidence: float = 0.4,
        similarity_threshold: float = 0.75,
        logger: Optional[logging.Logger] = None,
    ):
        self.store = store
        self.candidate_limit = candidate_limit
        self.min_confidence = min_confidence
        self.similarity_threshold = similarity_threshold
        self.log = logger or logging.getLogger(__name__)

    def auto_link(self, item: KnowledgeItem) -> List[KnowledgeLink]:
        """Run both discovery passes for ``item``.

        Returns:
            Every link created or refreshed.
        """
        with self.store.transaction() as tx:
            return self.auto_link_tx(tx, item)

    def auto_link_tx(self, tx: StoreTransaction, item: KnowledgeItem) -> List[KnowledgeLink]:
        links: List[KnowledgeLink] = []

        candidates = extract_entities(item.fact, exclude=item.entity)
        if candidates:
            for match in tx.list_by_entities(candidates):
                link = self.link_tx(
                    tx, item.id, match.id, Relationship.MENTIONS.value, STRUCTURAL_LINK_METADATA
                )
                if link is not None:
                    links.append(link)

        for other in tx.list_link_candidates(item.id, self.min_confidence, self.candidate_limit):
            score = calculate_similarity(item.fact, other.fact)
            if score > self.similarity_threshold:
                link = self.link_tx(
                    tx,
                    item.id,
                    other.id,
                    Relationship.SEMANTICALLY_RELATED.value,
                    {"similarity": score, "version": SEMANTIC_LINK_VERSION},
                )
                if link is not None:
                    links.append(link)

        if links:
            self.log.debug(f"Auto-linked knowledge {item.id} to {len(links)} item(s)")
        return links

    def link(
        self,
        source_id: str,
        target_id: str,
        relationship: str,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> Optional[KnowledgeLink]:
        """Create or refresh the (source, target, relationship) link.

        Returns:
            The stored link, or None for a self-link (which is never stored).
        """
        with self.store.transaction() as tx:
            return self.link_tx(tx, source_id, target_id, relationship, metadata)

    def link_tx(
        self,
        tx: StoreTransaction,
        source_id: str,
        target_id: str,
        relationship: str,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> Optional[KnowledgeLink]:
        if source_id == target_id:
            return None
        if isinstance(relationship, Relationship):
            relationship = relationship.value
        if not relationship:
            raise ValueError("relationship cannot be empty")

        existing = tx.find_link(source_id, target_id, relationship)
        if existing is not None:
            tx.update_link_metadata(existing.id, metadata or {})
            existing.metadata = dict(metadata or {})
            return existing
        return tx.insert_link(
            KnowledgeLink(
                id=None,
                source_id=source_id,
                target_id=target_id,
                relationship=relationship,
                metadata=dict(metadata or {}),
            )
        )

    def knowledge_graph(self, item_id: str) -> Optional[KnowledgeGraph]:
        """The item and its outgoing one-hop relations.

        Links whose target no longer exists are skipped. Returns None if
        ``item_id`` does not exist.
        """
        with self.store.transaction() as tx:
            item = tx.get_item(item_id)
            if item is None:
                return None
            graph = KnowledgeGraph(item=item)
            for link in tx.list_links_from(item_id):
                target = tx.get_item(link.target_id)
                if target is None:
                    continue
                graph.relations.append((link.relationship, target))
        return graph
