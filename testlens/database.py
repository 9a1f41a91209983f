"""
PostgreSQL storage for testlens.

Provides DatabaseConnection, a thin wrapper around a psycopg connection,
the schema for execution history and anomalies, and the PostgreSQL
implementations of HistoryStore and AnomalyStore.
"""

import logging
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Optional, List, Dict, Any, Sequence

import psycopg
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb

from .models import (
    Anomaly,
    AnomalyFilter,
    AnomalyType,
    ExecutionHistoryEntry,
    Severity,
    TestStatus,
)
from .store import (
    AnomalyNotFoundError,
    AnomalyStore,
    HistoryStore,
    DEFAULT_HISTORY_LIMIT,
    DEFAULT_QUERY_LIMIT,
    new_id,
)

logger = logging.getLogger(__name__)


CONNECT_TIMEOUT = 10

SCHEMA_SQL = [
    """
    CREATE TABLE IF NOT EXISTS test_executions (
        seq           BIGSERIAL PRIMARY KEY,
        id            TEXT NOT NULL UNIQUE,
        project_id    TEXT NOT NULL,
        run_id        TEXT,
        test_name     TEXT NOT NULL,
        file          TEXT,
        line          INTEGER,
        status        TEXT NOT NULL,
        duration_ms   DOUBLE PRECISION NOT NULL DEFAULT 0,
        error         TEXT,
        error_details TEXT,
        recorded_at   TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS test_executions_project_idx "
    "ON test_executions (project_id, seq)",
    """
    CREATE TABLE IF NOT EXISTS anomalies (
        id                    TEXT PRIMARY KEY,
        project_id            TEXT NOT NULL,
        test_id               TEXT NOT NULL,
        test_name             TEXT NOT NULL,
        type                  TEXT NOT NULL,
        severity              TEXT NOT NULL,
        detected_at           TIMESTAMPTZ NOT NULL,
        details               JSONB NOT NULL DEFAULT '{}'::jsonb,
        resolved              BOOLEAN NOT NULL DEFAULT FALSE,
        resolved_at           TIMESTAMPTZ,
        insights              TEXT,
        root_cause            TEXT,
        suggested_fix         TEXT,
        confidence            DOUBLE PRECISION,
        insights_generated_at TIMESTAMPTZ
    )
    """,
    # At most one unresolved anomaly per (test_id, type)
    "CREATE UNIQUE INDEX IF NOT EXISTS anomalies_unresolved_uniq "
    "ON anomalies (test_id, type) WHERE NOT resolved",
    "CREATE INDEX IF NOT EXISTS anomalies_project_idx ON anomalies (project_id)",
    "CREATE INDEX IF NOT EXISTS anomalies_type_idx ON anomalies (type)",
    "CREATE INDEX IF NOT EXISTS anomalies_resolved_idx ON anomalies (resolved)",
]


class DatabaseError(Exception):
    """Exception raised for database-related errors."""
    pass


class DatabaseConnection:
    """
    Wrapper around psycopg connection with helper methods.

    Rows come back as dicts. Statements auto-commit unless they run inside
    ``transaction()``. One lock serialises use of the connection across
    threads.
    """

    def __init__(self, conninfo: str):
        self.conninfo = conninfo
        self._conn: Optional[psycopg.Connection] = None
        self._lock = threading.RLock()
        self._depth = 0

    def connect(self) -> None:
        """Establish connection to the database."""
        try:
            self._conn = psycopg.connect(
                self.conninfo,
                row_factory=dict_row,
                autocommit=False,
                connect_timeout=CONNECT_TIMEOUT,
            )
        except psycopg.OperationalError as e:
            raise DatabaseError(f"Cannot connect to PostgreSQL: {e}") from e

    def close(self) -> None:
        """Close the database connection."""
        if self._conn:
            try:
                self._conn.close()
            except psycopg.Error as e:
                logger.warning("Error closing connection: %s", e)
            self._conn = None

    @property
    def connected(self) -> bool:
        return self._conn is not None and not self._conn.closed

    def _require(self) -> psycopg.Connection:
        if not self._conn:
            raise DatabaseError("Not connected to database")
        return self._conn

    def _finish(self, conn: psycopg.Connection) -> None:
        # Only auto-commit if not in an explicit transaction
        if self._depth == 0:
            conn.commit()

    def execute(self, sql: str, params: Optional[Sequence[Any]] = None) -> int:
        """
        Execute a statement without returning rows.

        Returns:
            Number of affected rows
        """
        conn = self._require()
        with self._lock:
            try:
                with conn.cursor() as cur:
                    cur.execute(sql, params)
                    rowcount = cur.rowcount
                self._finish(conn)
            except psycopg.Error:
                if self._depth == 0:
                    conn.rollback()
                raise
        return rowcount

    def execute_many(self, sql: str, params_seq: Sequence[Sequence[Any]]) -> int:
        """Execute SQL with multiple parameter sets, returning the affected row count."""
        conn = self._require()
        with self._lock:
            try:
                with conn.cursor() as cur:
                    cur.executemany(sql, params_seq)
                    rowcount = cur.rowcount
                self._finish(conn)
                return rowcount
            except psycopg.Error:
                if self._depth == 0:
                    conn.rollback()
                raise

    def fetchone(
        self,
        sql: str,
        params: Optional[Sequence[Any]] = None
    ) -> Optional[Dict[str, Any]]:
        """
        Execute query and return single row as dict.

        Returns None if no rows found.
        """
        conn = self._require()
        with self._lock:
            try:
                with conn.cursor() as cur:
                    cur.execute(sql, params)
                    result = cur.fetchone()
                self._finish(conn)
            except psycopg.Error:
                if self._depth == 0:
                    conn.rollback()
                raise
        return result

    def fetchall(
        self,
        sql: str,
        params: Optional[Sequence[Any]] = None
    ) -> List[Dict[str, Any]]:
        """
        Execute query and return all rows as list of dicts.

        Returns empty list if no rows found.
        """
        conn = self._require()
        with self._lock:
            try:
                with conn.cursor() as cur:
                    cur.execute(sql, params)
                    result = cur.fetchall()
                self._finish(conn)
            except psycopg.Error:
                if self._depth == 0:
                    conn.rollback()
                raise
        return result

    def fetchval(
        self,
        sql: str,
        params: Optional[Sequence[Any]] = None
    ) -> Any:
        """
        Execute query and return single value from first column of first row.

        Returns None if no rows found.
        """
        row = self.fetchone(sql, params)
        if row:
            return next(iter(row.values()))
        return None

    @contextmanager
    def transaction(self):
        """
        Context manager for explicit transaction control.

        Example:
            with db.transaction():
                db.execute("INSERT INTO ...")
                db.execute("UPDATE ...")
                # Commits on exit, rolls back on exception
        """
        conn = self._require()
        with self._lock:
            self._depth += 1
            try:
                yield self
            except BaseException:
                self._depth -= 1
                if self._depth == 0:
                    conn.rollback()
                raise
            else:
                self._depth -= 1
                if self._depth == 0:
                    conn.commit()

    def __enter__(self) -> "DatabaseConnection":
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()


def create_schema(db: DatabaseConnection) -> None:
    """Create tables and indexes if they do not exist."""
    with db.transaction():
        for statement in SCHEMA_SQL:
            db.execute(statement)
    logger.debug("Schema verified")


def check_postgres_connection(conninfo: str) -> bool:
    """
    Check if PostgreSQL is reachable.

    Returns:
        True if connection succeeds, False otherwise
    """
    try:
        with DatabaseConnection(conninfo) as db:
            db.fetchval("SELECT 1")
            return True
    except (DatabaseError, psycopg.Error):
        return False


def _row_to_entry(row: Dict[str, Any]) -> ExecutionHistoryEntry:
    return ExecutionHistoryEntry(
        test_id=row["id"],
        test_name=row["test_name"],
        status=TestStatus(row["status"]),
        duration_ms=row["duration_ms"],
        file=row["file"],
        line=row["line"],
        project_id=row["project_id"],
        run_id=row["run_id"],
        error=row["error"],
        error_details=row["error_details"],
        recorded_at=row["recorded_at"],
    )


def _row_to_anomaly(row: Dict[str, Any]) -> Anomaly:
    return Anomaly(
        id=row["id"],
        project_id=row["project_id"],
        test_id=row["test_id"],
        test_name=row["test_name"],
        type=AnomalyType(row["type"]),
        severity=Severity(row["severity"]),
        detected_at=row["detected_at"],
        details=row["details"] or {},
        resolved=row["resolved"],
        resolved_at=row["resolved_at"],
        insights=row["insights"],
        root_cause=row["root_cause"],
        suggested_fix=row["suggested_fix"],
        confidence=row["confidence"],
        insights_generated_at=row["insights_generated_at"],
    )


class PostgresHistoryStore(HistoryStore):
    """Execution history in the ``test_executions`` table."""

    def __init__(self, db: DatabaseConnection):
        self.db = db

    def append(self, entries: Sequence[ExecutionHistoryEntry]) -> int:
        if not entries:
            return 0
        inserted = self.db.execute_many(
            """
            INSERT INTO test_executions
                (id, project_id, run_id, test_name, file, line, status,
                 duration_ms, error, error_details, recorded_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, COALESCE(%s, now()))
            ON CONFLICT (id) DO NOTHING
            """,
            [
                (
                    e.test_id, e.project_id, e.run_id, e.test_name, e.file,
                    e.line, e.status.value, e.duration_ms, e.error,
                    e.error_details, e.recorded_at,
                )
                for e in entries
            ],
        )
        if inserted < len(entries):
            logger.debug("Skipped %d already recorded executions", len(entries) - inserted)
        return inserted

    def for_project(
        self,
        project_id: str,
        limit: int = DEFAULT_HISTORY_LIMIT,
    ) -> List[ExecutionHistoryEntry]:
        rows = self.db.fetchall(
            "SELECT * FROM test_executions WHERE project_id = %s ORDER BY seq LIMIT %s",
            (project_id, limit),
        )
        return [_row_to_entry(row) for row in rows]


class PostgresAnomalyStore(AnomalyStore):
    """
    Anomalies in the ``anomalies`` table.

    The partial unique index ``anomalies_unresolved_uniq`` enforces the
    one-unresolved-per-(test_id, type) rule, so concurrent detection
    passes cannot both insert.
    """

    def __init__(self, db: DatabaseConnection):
        self.db = db

    def insert_if_absent(self, anomaly: Anomaly) -> Optional[Anomaly]:
        anomaly_id = anomaly.id or new_id()
        row = self.db.fetchone(
            """
            INSERT INTO anomalies
                (id, project_id, test_id, test_name, type, severity,
                 detected_at, details, resolved)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, FALSE)
            ON CONFLICT (test_id, type) WHERE NOT resolved DO NOTHING
            RETURNING *
            """,
            (
                anomaly_id, anomaly.project_id, anomaly.test_id,
                anomaly.test_name, anomaly.type.value, anomaly.severity.value,
                anomaly.detected_at, Jsonb(anomaly.details),
            ),
        )
        return _row_to_anomaly(row) if row else None

    def find_unresolved(self, test_id: str, anomaly_type: AnomalyType) -> Optional[Anomaly]:
        row = self.db.fetchone(
            "SELECT * FROM anomalies WHERE test_id = %s AND type = %s AND NOT resolved",
            (test_id, anomaly_type.value),
        )
        return _row_to_anomaly(row) if row else None

    def get(self, anomaly_id: str) -> Anomaly:
        row = self.db.fetchone("SELECT * FROM anomalies WHERE id = %s", (anomaly_id,))
        if row is None:
            raise AnomalyNotFoundError(f"Anomaly not found: {anomaly_id}")
        return _row_to_anomaly(row)

    def resolve(self, anomaly_id: str, resolved_at: Optional[datetime] = None) -> Anomaly:
        row = self.db.fetchone(
            """
            UPDATE anomalies
            SET resolved = TRUE,
                resolved_at = COALESCE(resolved_at, %s, now())
            WHERE id = %s
            RETURNING *
            """,
            (resolved_at, anomaly_id),
        )
        if row is None:
            raise AnomalyNotFoundError(f"Anomaly not found: {anomaly_id}")
        return _row_to_anomaly(row)

    def update_insights(
        self,
        anomaly_id: str,
        insights: str,
        root_cause: Optional[str],
        suggested_fix: Optional[str],
        confidence: float,
        generated_at: Optional[datetime] = None,
    ) -> Anomaly:
        row = self.db.fetchone(
            """
            UPDATE anomalies
            SET insights = %s,
                root_cause = %s,
                suggested_fix = %s,
                confidence = %s,
                insights_generated_at = COALESCE(%s, now())
            WHERE id = %s
            RETURNING *
            """,
            (insights, root_cause, suggested_fix, confidence, generated_at, anomaly_id),
        )
        if row is None:
            raise AnomalyNotFoundError(f"Anomaly not found: {anomaly_id}")
        return _row_to_anomaly(row)

    def list(
        self,
        filter: Optional[AnomalyFilter] = None,
        limit: int = DEFAULT_QUERY_LIMIT,
    ) -> List[Anomaly]:
        filter = filter or AnomalyFilter()
        clauses = []
        params: List[Any] = []
        if filter.project_id is not None:
            clauses.append("project_id = %s")
            params.append(filter.project_id)
        if filter.type is not None:
            clauses.append("type = %s")
            params.append(filter.type.value)
        if filter.resolved is not None:
            clauses.append("resolved = %s")
            params.append(filter.resolved)

        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(limit)
        rows = self.db.fetchall(
            f"SELECT * FROM anomalies {where} ORDER BY detected_at DESC LIMIT %s",
            params,
        )
        return [_row_to_anomaly(row) for row in rows]
