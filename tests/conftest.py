"""
Pytest fixtures and test configuration for factloom tests.
"""

from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional

import pytest

from factloom.metadata import KnowledgeMetadata
from factloom.storage import SQLiteStore
from factloom.types import KnowledgeItem, KnowledgeStatus


class TickingClock:
    """Deterministic clock: every read advances by ``step``.

    Keeps stored timestamps strictly ordered by write order without
    depending on wall time.
    """

    def __init__(self, start: datetime, step: timedelta = timedelta(milliseconds=1)):
        self.current = start
        self.step = step

    def __call__(self) -> datetime:
        value = self.current
        self.current = self.current + self.step
        return value

    def advance(self, **kwargs) -> None:
        self.current = self.current + timedelta(**kwargs)


@pytest.fixture
def clock():
    return TickingClock(datetime(2025, 6, 1, 12, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "factloom_test.db"


@pytest.fixture
def store(db_path, clock):
    """File-backed SQLite store on a fresh database."""
    return SQLiteStore(db_path, now_fn=clock)


@pytest.fixture
def seed(store):
    """Insert a knowledge item directly, bypassing the lifecycle rules."""

    def _seed(
        entity: str,
        fact: str,
        confidence: float = 0.5,
        tags: Iterable[str] = (),
        session: Optional[str] = "session-1",
        status: KnowledgeStatus = KnowledgeStatus.PROPOSED,
        source: str = "assistant",
    ) -> KnowledgeItem:
        metadata = KnowledgeMetadata(source=source)
        if session is not None:
            metadata = metadata.with_session(session)
        item = KnowledgeItem(
            id=None,
            entity=entity,
            fact=fact,
            confidence=confidence,
            status=status,
            tags=set(tags),
            metadata=metadata,
            source_session_id=session,
        )
        with store.transaction() as tx:
            return tx.insert_item(item)

    return _seed
