"""Knowledge item CRUD operations for SQLite storage.

All functions receive the open connection and the physical table name
explicitly, so one transaction can compose several of them. Confidence is
clamped and metadata is schema-validated here, before anything is written.
"""

import json
import logging
import sqlite3
import uuid
from datetime import datetime
from typing import Iterable, List, Optional

from ..metadata import KnowledgeMetadata, validate_metadata
from ..types import (
    KnowledgeItem,
    KnowledgeStatus,
    clamp_confidence,
    parse_datetime,
    to_iso,
)

logger = logging.getLogger(__name__)

_COLUMNS = (
    "id, entity, fact, confidence, status, source_session_id, "
    "tags, metadata, created_at, updated_at"
)


def row_to_item(row: sqlite3.Row) -> KnowledgeItem:
    """Convert a row into a KnowledgeItem."""
    raw_meta = json.loads(row["metadata"]) if row["metadata"] else {}
    raw_tags = json.loads(row["tags"]) if row["tags"] else []
    return KnowledgeItem(
        id=row["id"],
        entity=row["entity"],
        fact=row["fact"],
        confidence=float(row["confidence"]),
        status=KnowledgeStatus(row["status"]),
        tags=set(raw_tags),
        metadata=KnowledgeMetadata.from_dict(raw_meta),
        source_session_id=row["source_session_id"],
        created_at=parse_datetime(row["created_at"]),
        updated_at=parse_datetime(row["updated_at"]),
    )


def _serialize_tags(tags: Iterable[str]) -> str:
    return json.dumps(sorted(set(tags)))


def _serialize_metadata(metadata: KnowledgeMetadata) -> str:
    data = metadata.to_dict()
    validate_metadata(data)
    return json.dumps(data, sort_keys=True)


def get_item(conn: sqlite3.Connection, table: str, item_id: str) -> Optional[KnowledgeItem]:
    row = conn.execute(f"SELECT {_COLUMNS} FROM {table} WHERE id = ?", (item_id,)).fetchone()
    return row_to_item(row) if row else None


def find_exact(
    conn: sqlite3.Connection, table: str, entity: str, fact: str
) -> Optional[KnowledgeItem]:
    """Find the oldest item with this exact (entity, fact), in any scope."""
    row = conn.execute(
        f"""SELECT {_COLUMNS} FROM {table}
            WHERE entity = ? AND fact = ?
            ORDER BY created_at ASC, id ASC LIMIT 1""",
        (entity, fact),
    ).fetchone()
    return row_to_item(row) if row else None


def find_global(
    conn: sqlite3.Connection, table: str, entity: str, fact: str
) -> Optional[KnowledgeItem]:
    """Find the globally promoted item (source_session_id IS NULL) for (entity, fact)."""
    row = conn.execute(
        f"""SELECT {_COLUMNS} FROM {table}
            WHERE entity = ? AND fact = ? AND source_session_id IS NULL
            ORDER BY created_at ASC, id ASC LIMIT 1""",
        (entity, fact),
    ).fetchone()
    return row_to_item(row) if row else None


def list_by_entity(
    conn: sqlite3.Connection, table: str, entity: str, limit: Optional[int] = None
) -> List[KnowledgeItem]:
    """Items for an entity, highest confidence first."""
    sql = f"""SELECT {_COLUMNS} FROM {table}
              WHERE entity = ?
              ORDER BY confidence DESC, created_at ASC, id ASC"""
    params: tuple = (entity,)
    if limit is not None:
        sql += " LIMIT ?"
        params = (entity, limit)
    return [row_to_item(r) for r in conn.execute(sql, params).fetchall()]


def list_by_entities(
    conn: sqlite3.Connection, table: str, entities: Iterable[str]
) -> List[KnowledgeItem]:
    names = sorted(set(entities))
    if not names:
        return []
    placeholders = ", ".join("?" for _ in names)
    rows = conn.execute(
        f"""SELECT {_COLUMNS} FROM {table}
            WHERE entity IN ({placeholders})
            ORDER BY entity ASC, created_at ASC, id ASC""",
        names,
    ).fetchall()
    return [row_to_item(r) for r in rows]


def list_link_candidates(
    conn: sqlite3.Connection,
    table: str,
    exclude_id: str,
    min_confidence: float,
    limit: int,
) -> List[KnowledgeItem]:
    """Most recently updated other items above a confidence floor."""
    rows = conn.execute(
        f"""SELECT {_COLUMNS} FROM {table}
            WHERE id != ? AND confidence > ?
            ORDER BY updated_at DESC, id ASC
            LIMIT ?""",
        (exclude_id, min_confidence, limit),
    ).fetchall()
    return [row_to_item(r) for r in rows]


def list_local_above(
    conn: sqlite3.Connection, table: str, min_confidence: float
) -> List[KnowledgeItem]:
    """Session-scoped items at or above a confidence threshold."""
    rows = conn.execute(
        f"""SELECT {_COLUMNS} FROM {table}
            WHERE confidence >= ? AND source_session_id IS NOT NULL
            ORDER BY confidence DESC, created_at ASC, id ASC""",
        (min_confidence,),
    ).fetchall()
    return [row_to_item(r) for r in rows]


def duplicate_entities(conn: sqlite3.Connection, table: str, limit: int) -> List[str]:
    """Entities that have more than one item, bounded to ``limit`` groups."""
    rows = conn.execute(
        f"""SELECT entity FROM {table}
            GROUP BY entity
            HAVING COUNT(id) > 1
            ORDER BY entity ASC
            LIMIT ?""",
        (limit,),
    ).fetchall()
    return [r["entity"] for r in rows]


def insert_item(
    conn: sqlite3.Connection, table: str, item: KnowledgeItem, now: datetime
) -> KnowledgeItem:
    """Insert a new item. Assigns the id and timestamps."""
    item.id = item.id or str(uuid.uuid4())
    item.confidence = clamp_confidence(item.confidence)
    item.created_at = item.created_at or now
    item.updated_at = now
    conn.execute(
        f"""INSERT INTO {table}
            (id, entity, fact, confidence, status, source_session_id,
             tags, metadata, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        (
            item.id,
            item.entity,
            item.fact,
            item.confidence,
            KnowledgeStatus(item.status).value,
            item.source_session_id,
            _serialize_tags(item.tags),
            _serialize_metadata(item.metadata),
            to_iso(item.created_at),
            to_iso(item.updated_at),
        ),
    )
    logger.debug(f"Inserted knowledge {item.id} for entity {item.entity!r}")
    return item


def update_item(
    conn: sqlite3.Connection, table: str, item: KnowledgeItem, now: datetime
) -> bool:
    """Write back every mutable field of ``item``. Returns False if the row is gone."""
    item.confidence = clamp_confidence(item.confidence)
    item.updated_at = now
    cursor = conn.execute(
        f"""UPDATE {table}
            SET confidence = ?, status = ?, source_session_id = ?,
                tags = ?, metadata = ?, updated_at = ?
            WHERE id = ?""",
        (
            item.confidence,
            KnowledgeStatus(item.status).value,
            item.source_session_id,
            _serialize_tags(item.tags),
            _serialize_metadata(item.metadata),
            to_iso(item.updated_at),
            item.id,
        ),
    )
    return cursor.rowcount > 0


def delete_item(conn: sqlite3.Connection, table: str, item_id: str) -> bool:
    cursor = conn.execute(f"DELETE FROM {table} WHERE id = ?", (item_id,))
    return cursor.rowcount > 0


def boost_tag(
    conn: sqlite3.Connection, table: str, tag: str, boost: float, now: datetime
) -> int:
    """Raise confidence of every item tagged ``tag`` in one bulk statement.

    The clamp happens inside the UPDATE, so no row can leave [0, 1].

    Returns:
        Number of rows changed.
    """
    cursor = conn.execute(
        f"""UPDATE {table}
            SET confidence = MAX(0.0, MIN(1.0, confidence + ?)),
                updated_at = ?
            WHERE confidence < 1.0
              AND EXISTS (SELECT 1 FROM json_each({table}.tags) WHERE json_each.value = ?)""",
        (boost, to_iso(now), tag),
    )
    return cursor.rowcount
