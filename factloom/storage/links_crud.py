"""Knowledge link CRUD operations for SQLite storage.

Links reference knowledge items by id only; deleting an item does not
cascade. At most one link exists per (source, target, relationship).
"""

import json
import logging
import sqlite3
import uuid
from datetime import datetime
from typing import Any, List, Mapping, Optional

from ..types import KnowledgeLink, parse_datetime, to_iso

logger = logging.getLogger(__name__)


def row_to_link(row: sqlite3.Row) -> KnowledgeLink:
    return KnowledgeLink(
        id=row["id"],
        source_id=row["source_id"],
        target_id=row["target_id"],
        relationship=row["relationship"],
        metadata=json.loads(row["metadata"]) if row["metadata"] else {},
        created_at=parse_datetime(row["created_at"]),
    )


def find_link(
    conn: sqlite3.Connection, table: str, source_id: str, target_id: str, relationship: str
) -> Optional[KnowledgeLink]:
    row = conn.execute(
        f"""SELECT id, source_id, target_id, relationship, metadata, created_at
            FROM {table}
            WHERE source_id = ? AND target_id = ? AND relationship = ?""",
        (source_id, target_id, relationship),
    ).fetchone()
    return row_to_link(row) if row else None


def insert_link(
    conn: sqlite3.Connection, table: str, link: KnowledgeLink, now: datetime
) -> KnowledgeLink:
    link.id = link.id or str(uuid.uuid4())
    link.created_at = link.created_at or now
    conn.execute(
        f"""INSERT INTO {table}
            (id, source_id, target_id, relationship, metadata, created_at)
            VALUES (?, ?, ?, ?, ?, ?)""",
        (
            link.id,
            link.source_id,
            link.target_id,
            link.relationship,
            json.dumps(link.metadata, sort_keys=True) if link.metadata else None,
            to_iso(link.created_at),
        ),
    )
    logger.debug(f"Linked {link.source_id} -[{link.relationship}]-> {link.target_id}")
    return link


def update_link_metadata(
    conn: sqlite3.Connection, table: str, link_id: str, metadata: Optional[Mapping[str, Any]]
) -> bool:
    cursor = conn.execute(
        f"UPDATE {table} SET metadata = ? WHERE id = ?",
        (json.dumps(dict(metadata), sort_keys=True) if metadata else None, link_id),
    )
    return cursor.rowcount > 0


def list_links_from(conn: sqlite3.Connection, table: str, source_id: str) -> List[KnowledgeLink]:
    rows = conn.execute(
        f"""SELECT id, source_id, target_id, relationship, metadata, created_at
            FROM {table}
            WHERE source_id = ?
            ORDER BY created_at ASC, id ASC""",
        (source_id,),
    ).fetchall()
    return [row_to_link(r) for r in rows]
