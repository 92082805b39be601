"""Action, metric, reflection and rule operations for SQLite storage.

The action and metric tables are logs the feature components read but do
not own; the writers here exist for the surrounding agent runtime (and for
tests). Every scan is bounded by a time window or a row limit.
"""

import json
import logging
import sqlite3
import uuid
from datetime import datetime
from typing import List, Optional, Sequence

from ..types import (
    ActionStatus,
    AgentAction,
    FailureReportEntry,
    Metric,
    Reflection,
    Rule,
    ToolFailureStat,
    parse_datetime,
    to_iso,
)

logger = logging.getLogger(__name__)


# === Actions ===


def record_action(
    conn: sqlite3.Connection, table: str, action: AgentAction, now: datetime
) -> AgentAction:
    action.id = action.id or str(uuid.uuid4())
    action.created_at = action.created_at or now
    conn.execute(
        f"""INSERT INTO {table} (id, session_id, tool_name, status, error, created_at)
            VALUES (?, ?, ?, ?, ?, ?)""",
        (
            action.id,
            action.session_id,
            action.tool_name,
            ActionStatus(action.status).value,
            action.error,
            to_iso(action.created_at),
        ),
    )
    return action


def tool_failure_stats(
    conn: sqlite3.Connection, table: str, since: datetime
) -> List[ToolFailureStat]:
    """Per-tool totals and failure counts since ``since``."""
    rows = conn.execute(
        f"""SELECT tool_name,
                   COUNT(id) AS total,
                   SUM(CASE WHEN status = 'failure' THEN 1 ELSE 0 END) AS failures
            FROM {table}
            WHERE created_at >= ?
            GROUP BY tool_name
            ORDER BY tool_name ASC""",
        (to_iso(since),),
    ).fetchall()
    return [
        ToolFailureStat(
            tool_name=r["tool_name"],
            total=int(r["total"] or 0),
            failures=int(r["failures"] or 0),
        )
        for r in rows
    ]


def capability_denied_tools(
    conn: sqlite3.Connection, table: str, since: datetime, patterns: Sequence[str]
) -> List[str]:
    """Tools whose failures since ``since`` carry an access/capability-denial error.

    ``patterns`` are matched as case-insensitive substrings of the error text.
    """
    if not patterns:
        return []
    clauses = " OR ".join("LOWER(error) LIKE ?" for _ in patterns)
    params = [to_iso(since)] + [f"%{p.lower()}%" for p in patterns]
    rows = conn.execute(
        f"""SELECT tool_name FROM {table}
            WHERE status = 'failure'
              AND created_at >= ?
              AND error IS NOT NULL
              AND ({clauses})
            GROUP BY tool_name
            ORDER BY tool_name ASC""",
        params,
    ).fetchall()
    return [r["tool_name"] for r in rows]


def failure_report(
    conn: sqlite3.Connection, table: str, since: datetime
) -> List[FailureReportEntry]:
    """Failure counts per tool since ``since``, most failures first."""
    rows = conn.execute(
        f"""SELECT tool_name,
                   COUNT(id) AS failure_count,
                   MAX(created_at) AS last_failure
            FROM {table}
            WHERE status = 'failure' AND created_at > ?
            GROUP BY tool_name
            ORDER BY COUNT(id) DESC, tool_name ASC""",
        (to_iso(since),),
    ).fetchall()
    return [
        FailureReportEntry(
            tool_name=r["tool_name"],
            failure_count=int(r["failure_count"]),
            last_failure=parse_datetime(r["last_failure"]),
        )
        for r in rows
    ]


# === Metrics ===


def _row_to_metric(row: sqlite3.Row) -> Metric:
    return Metric(
        id=row["id"],
        metric_name=row["metric_name"],
        metric_value=float(row["metric_value"]),
        persona_id=row["persona_id"],
        created_at=parse_datetime(row["created_at"]),
    )


def record_metric(conn: sqlite3.Connection, table: str, metric: Metric, now: datetime) -> Metric:
    metric.id = metric.id or str(uuid.uuid4())
    metric.created_at = metric.created_at or now
    conn.execute(
        f"""INSERT INTO {table} (id, metric_name, metric_value, persona_id, created_at)
            VALUES (?, ?, ?, ?, ?)""",
        (
            metric.id,
            metric.metric_name,
            float(metric.metric_value),
            metric.persona_id,
            to_iso(metric.created_at),
        ),
    )
    return metric


def recent_metrics(
    conn: sqlite3.Connection,
    table: str,
    limit: int,
    metric_name: Optional[str] = None,
    persona_id: Optional[str] = None,
) -> List[Metric]:
    """Most recent samples first. Ties on timestamp resolve by insertion order."""
    where = []
    params: list = []
    if metric_name is not None:
        where.append("metric_name = ?")
        params.append(metric_name)
    if persona_id is not None:
        where.append("persona_id = ?")
        params.append(str(persona_id))
    clause = f"WHERE {' AND '.join(where)}" if where else ""
    params.append(limit)
    rows = conn.execute(
        f"""SELECT id, metric_name, metric_value, persona_id, created_at
            FROM {table}
            {clause}
            ORDER BY created_at DESC, rowid DESC
            LIMIT ?""",
        params,
    ).fetchall()
    return [_row_to_metric(r) for r in rows]


def sum_metric(
    conn: sqlite3.Connection, table: str, metric_name: str, since: Optional[datetime] = None
) -> float:
    sql = f"SELECT SUM(metric_value) AS total FROM {table} WHERE metric_name = ?"
    params: list = [metric_name]
    if since is not None:
        sql += " AND created_at > ?"
        params.append(to_iso(since))
    row = conn.execute(sql, params).fetchone()
    return float(row["total"] or 0.0)


def avg_metric(conn: sqlite3.Connection, table: str, metric_name: str) -> Optional[float]:
    row = conn.execute(
        f"SELECT AVG(metric_value) AS avg FROM {table} WHERE metric_name = ?",
        (metric_name,),
    ).fetchone()
    return float(row["avg"]) if row["avg"] is not None else None


# === Reflections ===


def reflect(
    conn: sqlite3.Connection, table: str, reflection: Reflection, now: datetime
) -> Reflection:
    reflection.id = reflection.id or str(uuid.uuid4())
    reflection.created_at = reflection.created_at or now
    conn.execute(
        f"""INSERT INTO {table}
            (id, session_id, outcome, lessons_learned, suggested_actions, metadata, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)""",
        (
            reflection.id,
            reflection.session_id,
            reflection.outcome,
            reflection.lessons_learned,
            json.dumps(reflection.suggested_actions) if reflection.suggested_actions else None,
            json.dumps(reflection.metadata, sort_keys=True) if reflection.metadata else None,
            to_iso(reflection.created_at),
        ),
    )
    return reflection


def list_reflections(conn: sqlite3.Connection, table: str, limit: int = 100) -> List[Reflection]:
    rows = conn.execute(
        f"""SELECT id, session_id, outcome, lessons_learned, suggested_actions, metadata, created_at
            FROM {table}
            ORDER BY created_at DESC, rowid DESC
            LIMIT ?""",
        (limit,),
    ).fetchall()
    return [
        Reflection(
            id=r["id"],
            session_id=r["session_id"],
            outcome=r["outcome"],
            lessons_learned=r["lessons_learned"],
            suggested_actions=json.loads(r["suggested_actions"]) if r["suggested_actions"] else [],
            metadata=json.loads(r["metadata"]) if r["metadata"] else {},
            created_at=parse_datetime(r["created_at"]),
        )
        for r in rows
    ]


# === Rules ===


def _row_to_rule(row: sqlite3.Row) -> Rule:
    return Rule(
        id=row["id"],
        table_name=row["table_name"],
        operation=row["operation"],
        action=row["action"],
        priority=int(row["priority"]),
        is_enabled=bool(row["is_enabled"]),
        metadata=json.loads(row["metadata"]) if row["metadata"] else {},
        created_at=parse_datetime(row["created_at"]),
    )


def define_rule(conn: sqlite3.Connection, table: str, rule: Rule, now: datetime) -> Rule:
    rule.id = rule.id or str(uuid.uuid4())
    rule.created_at = rule.created_at or now
    conn.execute(
        f"""INSERT INTO {table}
            (id, table_name, operation, action, priority, is_enabled, metadata, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
        (
            rule.id,
            rule.table_name,
            rule.operation,
            rule.action,
            rule.priority,
            1 if rule.is_enabled else 0,
            json.dumps(rule.metadata, sort_keys=True) if rule.metadata else None,
            to_iso(rule.created_at),
        ),
    )
    logger.debug(f"Defined {rule.action} rule {rule.id} on {rule.table_name}/{rule.operation}")
    return rule


def find_rule_for_tool(
    conn: sqlite3.Connection, table: str, table_name: str, operation: str, tool_name: str
) -> Optional[Rule]:
    """Active rule on (table_name, operation) whose metadata targets ``tool_name``."""
    row = conn.execute(
        f"""SELECT id, table_name, operation, action, priority, is_enabled, metadata, created_at
            FROM {table}
            WHERE table_name = ?
              AND operation IN (?, 'all')
              AND is_enabled = 1
              AND json_extract(metadata, '$.target_tool') = ?
            ORDER BY created_at ASC, rowid ASC
            LIMIT 1""",
        (table_name, operation, tool_name),
    ).fetchone()
    return _row_to_rule(row) if row else None


def list_rules(conn: sqlite3.Connection, table: str) -> List[Rule]:
    rows = conn.execute(
        f"""SELECT id, table_name, operation, action, priority, is_enabled, metadata, created_at
            FROM {table}
            ORDER BY created_at ASC, rowid ASC"""
    ).fetchall()
    return [_row_to_rule(r) for r in rows]
