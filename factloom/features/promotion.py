"""Promotion of session-scoped knowledge into the global ("hive mind") scope.

Exactly one global item may exist per (entity, fact). ``promote`` looks the
global item up under a lock before deciding between insert and reinforce,
so concurrent promotions of the same fact yield one insert and N-1
reinforcements.
"""

import logging
from datetime import datetime
from typing import Callable, Optional

from ..metadata import KnowledgeMetadata
from ..protocols import KnowledgeStore, StoreTransaction
from ..types import HIVE_MIND_TAG, KnowledgeItem, clamp_confidence, to_iso, utc_now

# Reinforced global confidence never reaches certainty
GLOBAL_CONFIDENCE_CAP = 0.99
GLOBAL_REINFORCEMENT = 0.01


class PromotionGateway:
    """Moves knowledge from session scope to global scope.

    Args:
        store: Transactional store.
        broadcast_min_confidence: Default threshold for ``broadcast``.
        now_fn: Clock for the ``promoted_at`` marker.
        logger: Observability sink; defaults to this module's logger.
    """

    def __init__(
        self,
        store: KnowledgeStore,
        *,
        broadcast_min_confidence: float = 0.9,
        now_fn: Callable[[], datetime] = utc_now,
        logger: Optional[logging.Logger] = None,
    ):
        self.store = store
        self.broadcast_min_confidence = broadcast_min_confidence
        self._now = now_fn
        self.log = logger or logging.getLogger(__name__)

    def promote(self, item: KnowledgeItem) -> bool:
        """Promote ``item`` to global scope.

        Returns:
            True if a new global item was created, False if an existing one
            was reinforced.
        """
        with self.store.transaction() as tx:
            return self.promote_tx(tx, item)

    def promote_tx(self, tx: StoreTransaction, item: KnowledgeItem) -> bool:
        existing = tx.find_global(item.entity, item.fact, for_update=True)
        if existing is not None:
            existing.confidence = min(
                GLOBAL_CONFIDENCE_CAP,
                max(existing.confidence, item.confidence) + GLOBAL_REINFORCEMENT,
            )
            tx.update_item(existing)
            self.log.debug(f"Reinforced global knowledge {existing.id} to {existing.confidence:.2f}")
            return False

        metadata = KnowledgeMetadata.from_dict(
            {
                **item.metadata.to_dict(),
                "promoted_from": item.id,
                "promoted_at": to_iso(self._now()),
            }
        )
        promoted = KnowledgeItem(
            id=None,
            entity=item.entity,
            fact=item.fact,
            confidence=clamp_confidence(item.confidence),
            status=item.status,
            tags=set(item.tags) | {HIVE_MIND_TAG},
            metadata=metadata,
            source_session_id=None,
        )
        tx.insert_item(promoted)
        self.log.info(f"Promoted knowledge {item.id} to global {promoted.id} ({item.entity!r})")
        return True

    def broadcast(self, min_confidence: Optional[float] = None) -> int:
        """Promote every session-scoped item at or above ``min_confidence``.

        Each promotion runs in its own transaction.

        Returns:
            Number of newly created global items.
        """
        threshold = self.broadcast_min_confidence if min_confidence is None else min_confidence
        with self.store.transaction() as tx:
            candidates = tx.list_local_above(threshold)

        created = sum(1 for item in candidates if self.promote(item))
        self.log.info(
            f"Broadcast {len(candidates)} item(s) with confidence >= {threshold}: {created} new"
        )
        return created
