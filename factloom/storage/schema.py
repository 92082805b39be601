"""Database schema for factloom SQLite storage.

Contains:
- Schema version tracking (SCHEMA_VERSION)
- Table-name validation (validate_table_name)
- Schema DDL, templated on the configured table names (build_schema)
- Database initialization (init_db)
"""

import logging
import re
import sqlite3
from typing import Dict, Mapping, Optional

logger = logging.getLogger(__name__)

# Schema version for migrations
SCHEMA_VERSION = 1

# Logical table names every store must map to a physical table
LOGICAL_TABLES = (
    "knowledge",
    "links",
    "actions",
    "metrics",
    "reflections",
    "rules",
    "messages",
)

DEFAULT_TABLE_NAMES: Dict[str, str] = {
    "knowledge": "agent_knowledge_base",
    "links": "agent_knowledge_links",
    "actions": "agent_actions",
    "metrics": "agent_metrics",
    "reflections": "agent_reflections",
    "rules": "agent_rules",
    "messages": "agent_messages",
}

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]{0,62}$")


def validate_table_name(table: str) -> str:
    """Validate a table name before it is interpolated into SQL.

    Table names are configurable, so an allowlist is not possible; instead
    only plain identifiers are accepted.

    Raises:
        ValueError: If table name is not a plain identifier
    """
    if not isinstance(table, str) or not _IDENTIFIER.match(table):
        raise ValueError(f"Invalid table name: {table!r}")
    if table.lower().startswith("sqlite_"):
        raise ValueError(f"Invalid table name: {table!r}")
    return table


def resolve_table_names(overrides: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
    """Merge configured table names over the defaults and validate them all."""
    names = dict(DEFAULT_TABLE_NAMES)
    for logical, physical in (overrides or {}).items():
        if logical not in DEFAULT_TABLE_NAMES:
            raise ValueError(f"Unknown logical table: {logical}")
        names[logical] = physical
    for physical in names.values():
        validate_table_name(physical)
    if len(set(names.values())) != len(names):
        raise ValueError("Each logical table must map to a distinct physical table")
    return names


def build_schema(t: Mapping[str, str]) -> str:
    """Render the DDL for the given physical table names."""
    return f"""
-- Schema version tracking
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

-- Knowledge items (facts about entities)
CREATE TABLE IF NOT EXISTS {t['knowledge']} (
    id TEXT PRIMARY KEY,
    entity TEXT NOT NULL,
    fact TEXT NOT NULL,
    confidence REAL NOT NULL DEFAULT 0.5
        CHECK (confidence >= 0.0 AND confidence <= 1.0),
    status TEXT NOT NULL DEFAULT 'proposed'
        CHECK (status IN ('proposed', 'verified', 'disputed', 'deprecated')),
    source_session_id TEXT,  -- NULL = globally promoted
    tags TEXT NOT NULL DEFAULT '[]',  -- JSON array
    metadata TEXT,  -- JSON object, schema-versioned
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_{t['knowledge']}_entity_fact ON {t['knowledge']}(entity, fact);
CREATE INDEX IF NOT EXISTS idx_{t['knowledge']}_session ON {t['knowledge']}(source_session_id);
CREATE INDEX IF NOT EXISTS idx_{t['knowledge']}_updated ON {t['knowledge']}(updated_at);

-- Typed links between knowledge items (weak references by id)
CREATE TABLE IF NOT EXISTS {t['links']} (
    id TEXT PRIMARY KEY,
    source_id TEXT NOT NULL,
    target_id TEXT NOT NULL,
    relationship TEXT NOT NULL,
    metadata TEXT,
    created_at TEXT NOT NULL
);
CREATE UNIQUE INDEX IF NOT EXISTS idx_{t['links']}_triple
    ON {t['links']}(source_id, target_id, relationship);

-- Action/outcome log
CREATE TABLE IF NOT EXISTS {t['actions']} (
    id TEXT PRIMARY KEY,
    session_id TEXT,
    tool_name TEXT NOT NULL,
    status TEXT NOT NULL,  -- success | failure
    error TEXT,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_{t['actions']}_created ON {t['actions']}(created_at);

-- Operational metrics
CREATE TABLE IF NOT EXISTS {t['metrics']} (
    id TEXT PRIMARY KEY,
    metric_name TEXT NOT NULL,
    metric_value REAL NOT NULL,
    persona_id TEXT,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_{t['metrics']}_name_time ON {t['metrics']}(metric_name, created_at);
CREATE INDEX IF NOT EXISTS idx_{t['metrics']}_persona_time ON {t['metrics']}(persona_id, created_at);

-- Reflections (free-text lessons)
CREATE TABLE IF NOT EXISTS {t['reflections']} (
    id TEXT PRIMARY KEY,
    session_id TEXT,
    outcome TEXT NOT NULL,
    lessons_learned TEXT NOT NULL,
    suggested_actions TEXT,  -- JSON array
    metadata TEXT,
    created_at TEXT NOT NULL
);

-- Proposed corrective rules
CREATE TABLE IF NOT EXISTS {t['rules']} (
    id TEXT PRIMARY KEY,
    table_name TEXT NOT NULL,
    operation TEXT NOT NULL,
    action TEXT NOT NULL,
    priority INTEGER NOT NULL DEFAULT 0,
    is_enabled INTEGER NOT NULL DEFAULT 1,
    metadata TEXT,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_{t['rules']}_target ON {t['rules']}(table_name, operation);

-- High-traffic session message table (indexed on demand by evolution)
CREATE TABLE IF NOT EXISTS {t['messages']} (
    id TEXT PRIMARY KEY,
    session_id TEXT NOT NULL,
    role TEXT NOT NULL,
    content TEXT NOT NULL,
    created_at TEXT NOT NULL
);
"""


def init_db(conn: sqlite3.Connection, table_names: Mapping[str, str]) -> None:
    """Create tables and record the schema version.

    Args:
        conn: Open connection in autocommit mode.
        table_names: Validated logical -> physical table mapping.
    """
    conn.executescript(build_schema(table_names))
    row = conn.execute("SELECT MAX(version) FROM schema_version").fetchone()
    current = row[0] if row else None
    if current is None:
        conn.execute("INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,))
        logger.debug(f"Initialized schema at version {SCHEMA_VERSION}")
    elif current < SCHEMA_VERSION:
        conn.execute("INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,))
        logger.info(f"Migrated schema from version {current} to {SCHEMA_VERSION}")
