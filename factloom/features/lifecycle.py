"""Knowledge lifecycle: ingestion, reinforcement, verification and contradiction.

Owns the confidence/status state machine for individual knowledge items:

    proposed -> verified -> disputed | deprecated

Reinforcement and verification only ever move an item forward to verified.
Contradiction moves it to disputed or deprecated. Nothing moves a disputed
or deprecated item back.

Every public method runs in its own store transaction. The ``*_tx`` variants
take an open transaction so that callers (``Loom.distill``) can compose
several steps atomically.
"""

import logging
from datetime import datetime
from typing import Any, Callable, Iterable, List, Mapping, Optional, Union

from ..metadata import KnowledgeMetadata, caller_metadata
from ..protocols import KnowledgeStore, StorageError, StoreTransaction
from ..types import (
    KnowledgeItem,
    KnowledgeSource,
    KnowledgeStatus,
    Metric,
    clamp_confidence,
    to_iso,
    utc_now,
)
from ..validation import (
    MAX_ENTITY_LENGTH,
    MAX_FACT_LENGTH,
    sanitize_fact,
    sanitize_number,
    sanitize_string,
    sanitize_tags,
)

# Confidence floor for user-asserted facts on creation
USER_MIN_CONFIDENCE = 0.8

# Reinforcement boosts by source
USER_BOOST = 0.2
DEFAULT_BOOST = 0.05

# Independent sessions needed before a fact counts as corroborated
CORROBORATION_SESSIONS = 3

# Hallucination guard: ceiling for uncorroborated, non-user facts
UNCORROBORATED_CEILING = 0.85
VERIFIED_THRESHOLD = 0.9

# Contradiction handling
CHALLENGE_MIN_CONFIDENCE = 0.8
DISPUTE_ABOVE = 0.7
DISPUTE_PENALTY = 0.1
DEPRECATE_PENALTY = 0.4

_FORWARD_TO_VERIFIED = frozenset({KnowledgeStatus.PROPOSED, KnowledgeStatus.VERIFIED})


def _corroborated(metadata: KnowledgeMetadata) -> bool:
    return metadata.session_count >= CORROBORATION_SESSIONS


class KnowledgeLifecycle:
    """Confidence/status state machine over the knowledge table.

    Args:
        store: Transactional store.
        now_fn: Clock for metadata timestamps.
        logger: Observability sink; defaults to this module's logger.
    """

    def __init__(
        self,
        store: KnowledgeStore,
        *,
        now_fn: Callable[[], datetime] = utc_now,
        logger: Optional[logging.Logger] = None,
    ):
        self.store = store
        self._now = now_fn
        self.log = logger or logging.getLogger(__name__)

    # === Ingestion ===

    def ingest(
        self,
        entity: str,
        fact: str,
        confidence: float = 0.5,
        source_session_id: Optional[str] = None,
        tags: Optional[Iterable[str]] = None,
        metadata: Optional[Mapping[str, Any]] = None,
        source: Union[KnowledgeSource, str] = KnowledgeSource.ASSISTANT,
    ) -> KnowledgeItem:
        """Record an observation of ``fact`` about ``entity``.

        Reinforces the existing item when (entity, fact) is already known,
        otherwise creates a new one.

        Raises:
            ValueError: On an empty entity/fact, a non-finite confidence or an
                unknown source.
            MetadataValidationError: If ``metadata`` sets a key factloom manages.
        """
        with self.store.transaction() as tx:
            return self.ingest_tx(
                tx, entity, fact, confidence, source_session_id, tags, metadata, source
            )

    def ingest_tx(
        self,
        tx: StoreTransaction,
        entity: str,
        fact: str,
        confidence: float = 0.5,
        source_session_id: Optional[str] = None,
        tags: Optional[Iterable[str]] = None,
        metadata: Optional[Mapping[str, Any]] = None,
        source: Union[KnowledgeSource, str] = KnowledgeSource.ASSISTANT,
    ) -> KnowledgeItem:
        entity, fact, confidence, session_id, tag_set, source = self.normalize_input(
            entity, fact, confidence, source_session_id, tags, source
        )
        existing = tx.find_exact(entity, fact)
        if existing is not None:
            return self.reinforce_tx(tx, existing, session_id, tag_set, metadata, source)
        return self.create_tx(tx, entity, fact, confidence, session_id, tag_set, metadata, source)

    def create_tx(
        self,
        tx: StoreTransaction,
        entity: str,
        fact: str,
        confidence: float,
        source_session_id: Optional[str],
        tags: Iterable[str],
        metadata: Optional[Mapping[str, Any]],
        source: KnowledgeSource,
    ) -> KnowledgeItem:
        """Insert a first observation. Inputs must already be validated."""
        is_user = source == KnowledgeSource.USER
        if is_user:
            confidence = max(confidence, USER_MIN_CONFIDENCE)

        meta = KnowledgeMetadata.from_dict(caller_metadata(metadata))
        meta.source = source.value
        meta.sessions = []
        meta = meta.with_session(source_session_id)

        item = KnowledgeItem(
            id=None,
            entity=entity,
            fact=fact,
            confidence=clamp_confidence(confidence),
            status=KnowledgeStatus.VERIFIED if is_user else KnowledgeStatus.PROPOSED,
            tags=set(tags),
            metadata=meta,
            source_session_id=source_session_id,
        )
        tx.insert_item(item)
        self.log.debug(f"Created {item.status.value} knowledge {item.id} for {entity!r}")
        return item

    def reinforce_tx(
        self,
        tx: StoreTransaction,
        existing: KnowledgeItem,
        source_session_id: Optional[str],
        tags: Iterable[str],
        metadata: Optional[Mapping[str, Any]],
        source: KnowledgeSource,
    ) -> KnowledgeItem:
        """Fold a repeated observation into ``existing``."""
        is_user = source == KnowledgeSource.USER
        previous_sessions = list(existing.metadata.sessions)

        # New metadata values win; the session set is recomputed as a union
        meta = existing.metadata.merged(caller_metadata(metadata))
        meta.sessions = previous_sessions
        meta = meta.with_session(source_session_id)

        existing.tags = set(existing.tags) | set(tags)
        existing.metadata = meta
        existing.confidence = clamp_confidence(
            existing.confidence + (USER_BOOST if is_user else DEFAULT_BOOST)
        )
        if is_user or _corroborated(meta):
            existing.status = self._advance_to_verified(existing)
        if source_session_id is not None:
            existing.source_session_id = source_session_id

        tx.update_item(existing)
        self.log.debug(
            f"Reinforced knowledge {existing.id} to {existing.confidence:.2f} "
            f"({meta.session_count} sessions, {existing.status.value})"
        )
        return existing

    # === Verification ===

    def verify(self, item_id: str, reinforcement: float = 0.1) -> Optional[KnowledgeItem]:
        """Reinforce an item by id, subject to the hallucination guard.

        Returns:
            The updated item, or None if ``item_id`` does not exist.
        """
        reinforcement = sanitize_number(reinforcement, "reinforcement")
        with self.store.transaction() as tx:
            item = tx.get_item(item_id, for_update=True)
            if item is None:
                return None

            meta = item.metadata
            trusted = meta.source == KnowledgeSource.USER.value or _corroborated(meta)
            ceiling = 1.0 if trusted else UNCORROBORATED_CEILING

            item.confidence = clamp_confidence(min(ceiling, item.confidence + reinforcement))
            if item.confidence >= VERIFIED_THRESHOLD or _corroborated(meta):
                item.status = self._advance_to_verified(item)

            tx.update_item(item)
        self.log.debug(f"Verified knowledge {item_id}: confidence {item.confidence:.2f}")
        return item

    # === Contradiction ===

    def challenge(
        self,
        entity: str,
        competing_fact: str,
        confidence: float,
        sanitize: Callable[[str], str] = sanitize_fact,
    ) -> List[KnowledgeItem]:
        """Demote every other fact about ``entity`` in favour of ``competing_fact``.

        Returns:
            The demoted items (empty when ``confidence`` is too low to challenge).
        """
        with self.store.transaction() as tx:
            return self.challenge_tx(tx, entity, competing_fact, confidence, sanitize)

    def challenge_tx(
        self,
        tx: StoreTransaction,
        entity: str,
        competing_fact: str,
        confidence: float,
        sanitize: Callable[[str], str] = sanitize_fact,
    ) -> List[KnowledgeItem]:
        confidence = sanitize_number(confidence, "confidence")
        if confidence <= CHALLENGE_MIN_CONFIDENCE:
            return []

        safe_fact = sanitize(competing_fact)
        demoted: List[KnowledgeItem] = []
        for item in tx.list_by_entity(entity):
            if item.fact == competing_fact:
                continue
            if item.confidence > DISPUTE_ABOVE:
                item.status = KnowledgeStatus.DISPUTED
                reason = f"Contradicted by: {safe_fact}"
                penalty = DISPUTE_PENALTY
            else:
                item.status = KnowledgeStatus.DEPRECATED
                reason = f"Superseded by: {safe_fact}"
                penalty = DEPRECATE_PENALTY

            item.metadata = item.metadata.merged({"status_reason": reason})
            item.confidence = clamp_confidence(max(0.0, item.confidence - penalty))
            tx.update_item(item)
            demoted.append(item)

        if demoted:
            self.log.info(f"Challenge on {entity!r} demoted {len(demoted)} item(s)")
        return demoted

    # === Retrieval ===

    def get_by_entity(
        self,
        entity: str,
        filter_tags: Optional[Iterable[str]] = None,
        record_hits: bool = True,
    ) -> List[KnowledgeItem]:
        """Items for ``entity``, highest confidence first.

        With ``filter_tags``, keeps items sharing at least one of them. Each
        returned item counts as retrieved (see ``record_hit``) unless
        ``record_hits`` is False. Hit bookkeeping runs in its own transaction
        after the read; a storage failure there is logged and the items are
        still returned.
        """
        with self.store.transaction() as tx:
            items = tx.list_by_entity(entity)
        wanted = set(filter_tags or ())
        if wanted:
            items = [item for item in items if item.tags & wanted]
        if record_hits and items:
            try:
                with self.store.transaction() as tx:
                    for item in items:
                        self._record_hit_tx(tx, item.id)
            except StorageError as e:
                self.log.warning(f"Could not record retrieval hits for {entity!r}: {e}")
        return items

    def record_hit(self, item_id: str) -> bool:
        """Count a retrieval of ``item_id`` and emit an ``entity_hit_<entity>`` metric.

        Returns:
            False if the item does not exist.
        """
        with self.store.transaction() as tx:
            return self._record_hit_tx(tx, item_id)

    def _record_hit_tx(self, tx: StoreTransaction, item_id: str) -> bool:
        item = tx.get_item(item_id, for_update=True)
        if item is None:
            return False
        item.metadata.hit_count += 1
        item.metadata.last_retrieved_at = to_iso(self._now())
        tx.update_item(item)
        tx.record_metric(
            Metric(id=None, metric_name=f"entity_hit_{item.entity}", metric_value=1.0)
        )
        return True

    # === Helpers ===

    def _advance_to_verified(self, item: KnowledgeItem) -> KnowledgeStatus:
        if item.status in _FORWARD_TO_VERIFIED:
            return KnowledgeStatus.VERIFIED
        self.log.debug(f"Knowledge {item.id} stays {item.status.value}; no way back to verified")
        return item.status

    def normalize_input(self, entity, fact, confidence, source_session_id, tags, source):
        """Validate ingestion arguments and coerce them to their stored types."""
        entity = sanitize_string(entity, "entity", MAX_ENTITY_LENGTH)
        fact = sanitize_string(fact, "fact", MAX_FACT_LENGTH)
        confidence = clamp_confidence(sanitize_number(confidence, "confidence"))
        session_id = str(source_session_id) if source_session_id is not None else None
        try:
            source = KnowledgeSource(source)
        except ValueError:
            raise ValueError(f"Unknown knowledge source: {source!r}") from None
        return entity, fact, confidence, session_id, sanitize_tags(tags), source
