"""Storage layer for factloom.

The feature components only see the ``KnowledgeStore`` protocol. The SQLite
backend here is the bundled implementation.
"""

from factloom.storage.health import HealthAuditor
from factloom.storage.schema import (
    DEFAULT_TABLE_NAMES,
    SCHEMA_VERSION,
    validate_table_name,
)
from factloom.storage.sqlite import SQLiteStore, SQLiteTransaction

__all__ = [
    "DEFAULT_TABLE_NAMES",
    "HealthAuditor",
    "SCHEMA_VERSION",
    "SQLiteStore",
    "SQLiteTransaction",
    "validate_table_name",
]
