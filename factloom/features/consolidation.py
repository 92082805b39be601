"""Near-duplicate consolidation for knowledge items of the same entity.

A periodic maintenance pass. Work is bounded per run: at most
``entity_limit`` entity groups, and within each group at most
``group_limit`` items compared pairwise. Later runs pick up whatever this
one did not reach.
"""

import logging
from datetime import datetime
from typing import Callable, List, Optional, Set

from ..metadata import KnowledgeMetadata
from ..protocols import FactloomError, KnowledgeStore
from ..similarity import calculate_similarity
from ..types import KnowledgeItem, to_iso, utc_now

# Safety caps, matching the defaults in FactloomSettings
MAX_ENTITY_GROUPS = 500
MAX_GROUP_ITEMS = 100
MERGE_THRESHOLD = 0.85


class Consolidator:
    """Merges near-duplicate facts within each entity.

    Args:
        store: Transactional store.
        entity_limit: Entity groups examined per run.
        group_limit: Items per group compared pairwise.
        threshold: Similarity above which two facts are merged.
        now_fn: Clock for the ``consolidated_at`` marker.
        logger: Observability sink; defaults to this module's logger.
    """

    def __init__(
        self,
        store: KnowledgeStore,
        *,
        entity_limit: int = MAX_ENTITY_GROUPS,
        group_limit: int = MAX_GROUP_ITEMS,
        threshold: float = MERGE_THRESHOLD,
        now_fn: Callable[[], datetime] = utc_now,
        logger: Optional[logging.Logger] = None,
    ):
        self.store = store
        self.entity_limit = entity_limit
        self.group_limit = group_limit
        self.threshold = threshold
        self._now = now_fn
        self.log = logger or logging.getLogger(__name__)

    def consolidate(self) -> int:
        """Run one consolidation pass.

        Each merge is its own transaction. A merge that fails is logged and
        skipped; the pass carries on with the next pair.

        Returns:
            Number of successful merges.
        """
        with self.store.transaction() as tx:
            entities = tx.duplicate_entities(self.entity_limit)

        total = 0
        for entity in entities:
            total += self._consolidate_entity(entity)

        if total:
            self.log.info(f"Consolidation merged {total} item(s) across {len(entities)} entities")
        return total

    def _consolidate_entity(self, entity: str) -> int:
        with self.store.transaction() as tx:
            items: List[KnowledgeItem] = tx.list_by_entity(entity, limit=self.group_limit)

        merged_ids: Set[str] = set()
        merged = 0
        for i in range(len(items)):
            if items[i].id in merged_ids:
                continue
            for j in range(i + 1, len(items)):
                if items[j].id in merged_ids:
                    continue
                score = calculate_similarity(items[i].fact, items[j].fact)
                if score <= self.threshold:
                    continue
                try:
                    result = self.merge(items[i], items[j])
                except FactloomError as e:
                    self.log.warning(
                        f"Skipping merge of {items[j].id} into {items[i].id} ({entity!r}): {e}"
                    )
                    continue
                if result is None:
                    continue
                self.log.debug(
                    f"Merged {items[j].id} into {items[i].id} ({entity!r}, similarity {score:.3f})"
                )
                items[i] = result
                merged_ids.add(items[j].id)
                merged += 1
        return merged

    def merge(
        self, primary: KnowledgeItem, secondary: KnowledgeItem
    ) -> Optional[KnowledgeItem]:
        """Fold ``secondary`` into ``primary`` and delete ``secondary``.

        Both items are re-read inside the transaction. Returns None (and
        changes nothing) if either one has disappeared since the scan.
        """
        with self.store.transaction() as tx:
            keep = tx.get_item(primary.id, for_update=True)
            lose = tx.get_item(secondary.id, for_update=True)
            if keep is None or lose is None:
                self.log.debug(f"Merge of {secondary.id} into {primary.id} skipped, row gone")
                return None

            # Primary's keys override the secondary's
            keep.metadata = KnowledgeMetadata.from_dict(
                {
                    **lose.metadata.to_dict(),
                    **keep.metadata.to_dict(),
                    "consolidated_from": lose.id,
                    "consolidated_at": to_iso(self._now()),
                }
            )
            keep.tags = set(keep.tags) | set(lose.tags)
            keep.confidence = max(keep.confidence, lose.confidence)

            tx.update_item(keep)
            tx.delete_item(lose.id)
        return keep
