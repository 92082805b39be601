"""SQLite storage backend for factloom.

Local-first storage with:
- One short-lived connection per transaction (WAL journal, busy timeout)
- ``BEGIN IMMEDIATE`` transactions standing in for row-level locks
- Table/column introspection and idempotent index creation

SQLite has no ``SELECT ... FOR UPDATE``. Every transaction here takes the
database write lock before its first read, so a ``for_update`` lookup holds
its record stable until commit or rollback, the same guarantee a row lock
gives. The ``for_update`` flags are accepted for protocol parity.
"""

import contextlib
import logging
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Union

from ..protocols import StorageError
from ..types import (
    AgentAction,
    FailureReportEntry,
    KnowledgeItem,
    KnowledgeLink,
    Metric,
    Reflection,
    Rule,
    TableInfo,
    ToolFailureStat,
    utc_now,
)
from . import knowledge_crud, links_crud, telemetry_crud
from .schema import init_db, resolve_table_names, validate_table_name

logger = logging.getLogger(__name__)

MEMORY_DB = ":memory:"


@contextlib.contextmanager
def _storage_errors(operation: str, table: Optional[str] = None, record_id: Optional[str] = None):
    """Re-raise sqlite3 errors as StorageError with actionable context."""
    try:
        yield
    except sqlite3.Error as e:
        raise StorageError(str(e), table=table, operation=operation, record_id=record_id) from e


class SQLiteTransaction:
    """The operations available inside one ``SQLiteStore.transaction()``.

    Thin delegation to the CRUD modules. Each call passes the configured
    physical table name and the injected clock, and wraps sqlite3 errors.
    """

    def __init__(
        self,
        conn: sqlite3.Connection,
        tables: Mapping[str, str],
        now_fn: Callable[[], datetime],
    ):
        self._conn = conn
        self._tables = tables
        self._now = now_fn

    @property
    def connection(self) -> sqlite3.Connection:
        return self._conn

    # === Knowledge items ===

    def get_item(self, item_id: str, *, for_update: bool = False) -> Optional[KnowledgeItem]:
        table = self._tables["knowledge"]
        with _storage_errors("get_item", table, item_id):
            return knowledge_crud.get_item(self._conn, table, item_id)

    def find_exact(self, entity: str, fact: str) -> Optional[KnowledgeItem]:
        table = self._tables["knowledge"]
        with _storage_errors("find_exact", table):
            return knowledge_crud.find_exact(self._conn, table, entity, fact)

    def find_global(
        self, entity: str, fact: str, *, for_update: bool = False
    ) -> Optional[KnowledgeItem]:
        table = self._tables["knowledge"]
        with _storage_errors("find_global", table):
            return knowledge_crud.find_global(self._conn, table, entity, fact)

    def list_by_entity(self, entity: str, limit: Optional[int] = None) -> List[KnowledgeItem]:
        table = self._tables["knowledge"]
        with _storage_errors("list_by_entity", table):
            return knowledge_crud.list_by_entity(self._conn, table, entity, limit)

    def list_by_entities(self, entities: Iterable[str]) -> List[KnowledgeItem]:
        table = self._tables["knowledge"]
        with _storage_errors("list_by_entities", table):
            return knowledge_crud.list_by_entities(self._conn, table, entities)

    def list_link_candidates(
        self, exclude_id: str, min_confidence: float, limit: int
    ) -> List[KnowledgeItem]:
        table = self._tables["knowledge"]
        with _storage_errors("list_link_candidates", table, exclude_id):
            return knowledge_crud.list_link_candidates(
                self._conn, table, exclude_id, min_confidence, limit
            )

    def list_local_above(self, min_confidence: float) -> List[KnowledgeItem]:
        table = self._tables["knowledge"]
        with _storage_errors("list_local_above", table):
            return knowledge_crud.list_local_above(self._conn, table, min_confidence)

    def duplicate_entities(self, limit: int) -> List[str]:
        table = self._tables["knowledge"]
        with _storage_errors("duplicate_entities", table):
            return knowledge_crud.duplicate_entities(self._conn, table, limit)

    def insert_item(self, item: KnowledgeItem) -> KnowledgeItem:
        table = self._tables["knowledge"]
        with _storage_errors("insert", table, item.id):
            return knowledge_crud.insert_item(self._conn, table, item, self._now())

    def update_item(self, item: KnowledgeItem) -> bool:
        table = self._tables["knowledge"]
        with _storage_errors("update", table, item.id):
            return knowledge_crud.update_item(self._conn, table, item, self._now())

    def delete_item(self, item_id: str) -> bool:
        table = self._tables["knowledge"]
        with _storage_errors("delete", table, item_id):
            return knowledge_crud.delete_item(self._conn, table, item_id)

    def boost_tag(self, tag: str, boost: float) -> int:
        table = self._tables["knowledge"]
        with _storage_errors("boost_tag", table):
            return knowledge_crud.boost_tag(self._conn, table, tag, boost, self._now())

    # === Links ===

    def find_link(
        self, source_id: str, target_id: str, relationship: str
    ) -> Optional[KnowledgeLink]:
        table = self._tables["links"]
        with _storage_errors("find_link", table, source_id):
            return links_crud.find_link(self._conn, table, source_id, target_id, relationship)

    def insert_link(self, link: KnowledgeLink) -> KnowledgeLink:
        table = self._tables["links"]
        with _storage_errors("insert", table, link.source_id):
            return links_crud.insert_link(self._conn, table, link, self._now())

    def update_link_metadata(self, link_id: str, metadata: Mapping[str, Any]) -> bool:
        table = self._tables["links"]
        with _storage_errors("update", table, link_id):
            return links_crud.update_link_metadata(self._conn, table, link_id, metadata)

    def list_links_from(self, source_id: str) -> List[KnowledgeLink]:
        table = self._tables["links"]
        with _storage_errors("list_links_from", table, source_id):
            return links_crud.list_links_from(self._conn, table, source_id)

    # === Telemetry ===

    def tool_failure_stats(self, since: datetime) -> List[ToolFailureStat]:
        table = self._tables["actions"]
        with _storage_errors("tool_failure_stats", table):
            return telemetry_crud.tool_failure_stats(self._conn, table, since)

    def capability_denied_tools(self, since: datetime, patterns: Sequence[str]) -> List[str]:
        table = self._tables["actions"]
        with _storage_errors("capability_denied_tools", table):
            return telemetry_crud.capability_denied_tools(self._conn, table, since, patterns)

    def failure_report(self, since: datetime) -> List[FailureReportEntry]:
        table = self._tables["actions"]
        with _storage_errors("failure_report", table):
            return telemetry_crud.failure_report(self._conn, table, since)

    def recent_metrics(
        self,
        limit: int,
        *,
        metric_name: Optional[str] = None,
        persona_id: Optional[str] = None,
    ) -> List[Metric]:
        table = self._tables["metrics"]
        with _storage_errors("recent_metrics", table):
            return telemetry_crud.recent_metrics(
                self._conn, table, limit, metric_name=metric_name, persona_id=persona_id
            )

    def sum_metric(self, metric_name: str, since: Optional[datetime] = None) -> float:
        table = self._tables["metrics"]
        with _storage_errors("sum_metric", table):
            return telemetry_crud.sum_metric(self._conn, table, metric_name, since)

    def avg_metric(self, metric_name: str) -> Optional[float]:
        table = self._tables["metrics"]
        with _storage_errors("avg_metric", table):
            return telemetry_crud.avg_metric(self._conn, table, metric_name)

    def record_action(self, action: AgentAction) -> AgentAction:
        table = self._tables["actions"]
        with _storage_errors("insert", table, action.id):
            return telemetry_crud.record_action(self._conn, table, action, self._now())

    def record_metric(self, metric: Metric) -> Metric:
        table = self._tables["metrics"]
        with _storage_errors("insert", table, metric.id):
            return telemetry_crud.record_metric(self._conn, table, metric, self._now())

    def reflect(self, reflection: Reflection) -> Reflection:
        table = self._tables["reflections"]
        with _storage_errors("insert", table, reflection.id):
            return telemetry_crud.reflect(self._conn, table, reflection, self._now())

    def list_reflections(self, limit: int = 100) -> List[Reflection]:
        table = self._tables["reflections"]
        with _storage_errors("list_reflections", table):
            return telemetry_crud.list_reflections(self._conn, table, limit)

    def define_rule(self, rule: Rule) -> Rule:
        table = self._tables["rules"]
        with _storage_errors("insert", table, rule.id):
            return telemetry_crud.define_rule(self._conn, table, rule, self._now())

    def find_rule_for_tool(
        self, table_name: str, operation: str, tool_name: str, *, for_update: bool = False
    ) -> Optional[Rule]:
        table = self._tables["rules"]
        with _storage_errors("find_rule_for_tool", table, tool_name):
            return telemetry_crud.find_rule_for_tool(
                self._conn, table, table_name, operation, tool_name
            )

    def list_rules(self) -> List[Rule]:
        table = self._tables["rules"]
        with _storage_errors("list_rules", table):
            return telemetry_crud.list_rules(self._conn, table)


class SQLiteStore:
    """SQLite implementation of ``KnowledgeStore``.

    Args:
        db_path: Database file. ``":memory:"`` keeps one shared connection
            for the life of the store, with transactions serialized by a lock.
        table_names: Optional logical -> physical table name overrides.
        now_fn: Clock used for every stored timestamp.
    """

    supports_self_optimize = True

    def __init__(
        self,
        db_path: Union[str, Path],
        *,
        table_names: Optional[Mapping[str, str]] = None,
        now_fn: Callable[[], datetime] = utc_now,
    ):
        self._now = now_fn
        self._tables: Dict[str, str] = resolve_table_names(table_names)
        self._memory_conn: Optional[sqlite3.Connection] = None
        self._memory_lock = threading.RLock()

        if str(db_path) == MEMORY_DB:
            self.db_path: Optional[Path] = None
            self._memory_conn = self._open(MEMORY_DB)
        else:
            self.db_path = Path(db_path).expanduser()
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._init_db()

    # === Connections ===

    def _open(self, target: str) -> sqlite3.Connection:
        # isolation_level=None: transactions are begun explicitly
        conn = sqlite3.connect(target, isolation_level=None, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA busy_timeout=5000")
        conn.execute("PRAGMA journal_mode=WAL")
        return conn

    @contextlib.contextmanager
    def _get_conn(self) -> Iterator[sqlite3.Connection]:
        """Yield a connection for one unit of work, closing it afterwards."""
        if self._memory_conn is not None:
            with self._memory_lock:
                yield self._memory_conn
            return
        conn = self._open(str(self.db_path))
        try:
            yield conn
        finally:
            conn.close()

    @contextlib.contextmanager
    def transaction(self) -> Iterator[SQLiteTransaction]:
        """Context manager for one atomic unit of work.

        - ``BEGIN IMMEDIATE`` takes the write lock before the first read
        - Commit on success
        - Rollback on exception, then re-raise (sqlite3 errors as StorageError)
        """
        with self._get_conn() as conn:
            with _storage_errors("begin"):
                conn.execute("BEGIN IMMEDIATE")
            try:
                yield SQLiteTransaction(conn, self._tables, self._now)
            except BaseException as e:
                logger.debug(f"Transaction failed, rolling back: {e}")
                conn.rollback()
                if isinstance(e, sqlite3.Error):
                    raise StorageError(str(e), operation="transaction") from e
                raise
            else:
                with _storage_errors("commit"):
                    conn.commit()

    def _init_db(self) -> None:
        """Initialize the database schema. Delegates to schema.init_db()."""
        with self._get_conn() as conn:
            with _storage_errors("init_db"):
                init_db(conn, self._tables)

    def close(self) -> None:
        """Close the shared in-memory connection, if any.

        File-backed stores open connections per transaction, so there is
        nothing else to release.
        """
        if self._memory_conn is not None:
            self._memory_conn.close()
            self._memory_conn = None

    # === Introspection and schema operations ===

    def table_name(self, logical: str) -> str:
        """Physical table name for a logical table ("knowledge", "messages", ...)."""
        try:
            return self._tables[logical]
        except KeyError:
            raise ValueError(f"Unknown logical table: {logical}") from None

    def list_tables(self) -> List[TableInfo]:
        with self._get_conn() as conn:
            with _storage_errors("list_tables", "sqlite_master"):
                names = [
                    r["name"]
                    for r in conn.execute(
                        """SELECT name FROM sqlite_master
                           WHERE type = 'table' AND name NOT LIKE 'sqlite_%'
                           ORDER BY name"""
                    ).fetchall()
                ]
                tables = []
                for name in names:
                    try:
                        validate_table_name(name)
                    except ValueError:
                        logger.debug(f"Skipping table with non-identifier name {name!r}")
                        continue
                    cols = conn.execute(f"PRAGMA table_info({name})").fetchall()
                    tables.append(
                        TableInfo(
                            name=name,
                            columns=[c["name"] for c in cols],
                            primary_key=[
                                c["name"] for c in sorted(cols, key=lambda c: c["pk"]) if c["pk"]
                            ],
                        )
                    )
        return tables

    def index_exists(self, name: str) -> bool:
        with self._get_conn() as conn:
            with _storage_errors("index_exists", "sqlite_master", name):
                row = conn.execute(
                    "SELECT 1 FROM sqlite_master WHERE type = 'index' AND name = ?", (name,)
                ).fetchone()
        return row is not None

    def create_index(self, name: str, table: str, columns: Sequence[str]) -> bool:
        """Create an index if it does not exist yet.

        Returns:
            True if the index was created, False if it already existed.
        """
        validate_table_name(name)
        validate_table_name(table)
        if not columns:
            raise ValueError("An index needs at least one column")
        for col in columns:
            validate_table_name(col)

        with self.transaction() as tx:
            conn = tx.connection
            with _storage_errors("create_index", table, name):
                exists = conn.execute(
                    "SELECT 1 FROM sqlite_master WHERE type = 'index' AND name = ?", (name,)
                ).fetchone()
                if exists:
                    return False
                conn.execute(f"CREATE INDEX {name} ON {table}({', '.join(columns)})")
        logger.info(f"Created index {name} on {table}({', '.join(columns)})")
        return True

    def optimize(self) -> None:
        """Let SQLite refresh query planner statistics."""
        with self._get_conn() as conn:
            with _storage_errors("optimize"):
                conn.execute("PRAGMA optimize")
        logger.debug("Ran PRAGMA optimize")

    # === Convenience wrappers (one transaction each) ===

    def failure_report(self, since: datetime) -> List[FailureReportEntry]:
        with self.transaction() as tx:
            return tx.failure_report(since)

    def record_action(
        self,
        tool_name: str,
        status: str,
        error: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> AgentAction:
        with self.transaction() as tx:
            return tx.record_action(
                AgentAction(
                    id=None, tool_name=tool_name, status=status, error=error, session_id=session_id
                )
            )

    def record_metric(
        self, metric_name: str, metric_value: float, persona_id: Optional[str] = None
    ) -> Metric:
        with self.transaction() as tx:
            return tx.record_metric(
                Metric(
                    id=None,
                    metric_name=metric_name,
                    metric_value=metric_value,
                    persona_id=str(persona_id) if persona_id is not None else None,
                )
            )

    def reflect(
        self,
        session_id: Optional[str],
        outcome: str,
        lessons_learned: str,
        suggested_actions: Optional[List[str]] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Reflection:
        with self.transaction() as tx:
            return tx.reflect(
                Reflection(
                    id=None,
                    session_id=session_id,
                    outcome=outcome,
                    lessons_learned=lessons_learned,
                    suggested_actions=list(suggested_actions or []),
                    metadata=dict(metadata or {}),
                )
            )

    def define_rule(
        self,
        table_name: str,
        operation: str,
        action: str,
        priority: int = 0,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Rule:
        with self.transaction() as tx:
            return tx.define_rule(
                Rule(
                    id=None,
                    table_name=table_name,
                    operation=operation,
                    action=action,
                    priority=priority,
                    metadata=dict(metadata or {}),
                )
            )

    def list_reflections(self, limit: int = 100) -> List[Reflection]:
        with self.transaction() as tx:
            return tx.list_reflections(limit)

    def list_rules(self) -> List[Rule]:
        with self.transaction() as tx:
            return tx.list_rules()

    def get_item(self, item_id: str) -> Optional[KnowledgeItem]:
        with self.transaction() as tx:
            return tx.get_item(item_id)

    def list_by_entity(self, entity: str) -> List[KnowledgeItem]:
        with self.transaction() as tx:
            return tx.list_by_entity(entity)

    def list_links_from(self, source_id: str) -> List[KnowledgeLink]:
        with self.transaction() as tx:
            return tx.list_links_from(source_id)
