"""
Shared pytest fixtures for testlens tests.

Most tests run entirely in memory. Tests marked ``@pytest.mark.postgres``
need a PostgreSQL server; each of them gets its own throwaway database via
the ``pg_db`` fixture.

Configuration via environment variables:
    TESTLENS_TEST_DATABASE_URL   Admin connection URL, e.g.
                                 postgresql://postgres@localhost:5432/postgres
                                 (postgres tests are skipped when unset)

Run tests:
    pytest                          # all tests
    pytest -m "not postgres"        # memory-only tests
    pytest -k "flaky"               # filter by name
"""

from __future__ import annotations

import os
import uuid
from datetime import datetime, timedelta, timezone
from typing import Callable, Generator, Sequence

import psycopg
import pytest
from psycopg import sql
from psycopg.conninfo import make_conninfo

from testlens.database import DatabaseConnection, create_schema
from testlens.detector import AnomalyDetector
from testlens.ingest import IngestionService
from testlens.models import ExecutionHistoryEntry, TestStatus
from testlens.store import MemoryAnomalyStore, MemoryHistoryStore


# ---------------------------------------------------------------------------
# Connection settings (from environment)
# ---------------------------------------------------------------------------

TEST_DATABASE_URL = os.environ.get("TESTLENS_TEST_DATABASE_URL") or None

FIXED_NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Sample logs
# ---------------------------------------------------------------------------

VITEST_LOG = """\
 RUN  v1.6.0 /home/runner/work/app

 PASS  src/math.test.ts > math > adds numbers (12ms)
 FAIL  src/math.test.ts > math > divides by zero (8ms)
AssertionError: expected Infinity to be NaN
    at src/math.test.ts:14:20
    at processTicksAndRejections (node:internal/process/task_queues:95:5)
 SKIP  src/math.test.ts > math > handles bigint

 Test Files  1 failed (1)
"""

PLAYWRIGHT_LOG = """\
Running 3 tests using 1 worker

  ✓ login page renders (1.5s)
  × checkout completes (2m)
    Error: Timed out waiting for selector "#pay"
      at tests/checkout.spec.ts:42
  ✓ logout works
"""

JOB_LOG = """\
##[group]Set up job
Current runner version: '2.317.0'
##[endgroup]
##[group]Install dependencies
##[command]npm ci
added 812 packages in 14s
##[endgroup]
##[group]Run unit tests
##[command]npx vitest run
 PASS  src/a.test.ts > suite > does X (120ms)
 FAIL  src/a.test.ts > suite > does Y
Error: boom
    at src/a.test.ts:20:5
##[error]Process completed with exit code 1.
##[endgroup]
"""


# ---------------------------------------------------------------------------
# Test helpers (importable by tests as plain functions)
# ---------------------------------------------------------------------------

def make_history(
    name: str,
    statuses: Sequence[str],
    durations: Sequence[float] | None = None,
    *,
    file: str | None = "src/a.test.ts",
    project_id: str = "proj",
    id_prefix: str | None = None,
) -> list[ExecutionHistoryEntry]:
    """
    Build a run of history entries for one test.

    *statuses* are ``"passed"``/``"failed"``/``"skipped"`` strings; entry ids
    are ``<prefix>-0``, ``<prefix>-1``, ... so the first id is predictable.

    Example::

        make_history("does X", ["passed"] * 6 + ["failed"] * 4)
        make_history("slow", ["passed"] * 3, durations=[6000] * 3)
    """
    prefix = id_prefix or name.replace(" ", "-")
    durations = list(durations) if durations is not None else [100.0] * len(statuses)
    return [
        ExecutionHistoryEntry(
            test_id=f"{prefix}-{i}",
            test_name=name,
            status=TestStatus(status),
            duration_ms=duration,
            file=file,
            project_id=project_id,
            recorded_at=FIXED_NOW + timedelta(minutes=i),
        )
        for i, (status, duration) in enumerate(zip(statuses, durations))
    ]


def fixed_clock(start: datetime = FIXED_NOW, step: timedelta = timedelta(seconds=1)) -> Callable[[], datetime]:
    """Clock returning *start*, *start + step*, ... on successive calls."""
    state = {"now": start - step}

    def _now() -> datetime:
        state["now"] += step
        return state["now"]

    return _now


# ---------------------------------------------------------------------------
# In-memory fixtures
# ---------------------------------------------------------------------------

@pytest.fixture()
def history_store() -> MemoryHistoryStore:
    return MemoryHistoryStore()


@pytest.fixture()
def anomaly_store() -> MemoryAnomalyStore:
    return MemoryAnomalyStore()


@pytest.fixture()
def detector() -> AnomalyDetector:
    """Detector with a deterministic clock."""
    return AnomalyDetector(clock=fixed_clock())


@pytest.fixture()
def service(
    history_store: MemoryHistoryStore,
    anomaly_store: MemoryAnomalyStore,
    detector: AnomalyDetector,
) -> IngestionService:
    """IngestionService wired to fresh in-memory stores."""
    return IngestionService(history_store, anomaly_store, detector=detector)


# ---------------------------------------------------------------------------
# PostgreSQL lifecycle helpers
# ---------------------------------------------------------------------------

def _admin_conn() -> psycopg.Connection:
    """Autocommit connection for DDL (CREATE/DROP DATABASE)."""
    return psycopg.connect(TEST_DATABASE_URL, autocommit=True, connect_timeout=10)


def _create_database(name: str) -> None:
    with _admin_conn() as conn:
        conn.execute(sql.SQL("CREATE DATABASE {}").format(sql.Identifier(name)))


def _drop_database(name: str) -> None:
    """Drop a database, force-terminating all connections (PG 13+)."""
    with _admin_conn() as conn:
        conn.execute(
            sql.SQL("DROP DATABASE IF EXISTS {} WITH (FORCE)").format(sql.Identifier(name))
        )


@pytest.fixture()
def pg_url() -> Generator[str, None, None]:
    """
    Connection URL of a fresh, empty database.

    The database has a unique UUID-based name and is dropped (WITH FORCE)
    after the test regardless of outcome.
    """
    db_name = f"testlens_{uuid.uuid4().hex[:12]}"
    _create_database(db_name)
    try:
        yield make_conninfo(TEST_DATABASE_URL, dbname=db_name)
    finally:
        _drop_database(db_name)


@pytest.fixture()
def pg_db(pg_url: str) -> Generator[DatabaseConnection, None, None]:
    """Connected DatabaseConnection with the testlens schema created."""
    with DatabaseConnection(pg_url) as db:
        create_schema(db)
        yield db


# ---------------------------------------------------------------------------
# Pytest hooks
# ---------------------------------------------------------------------------

def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """
    Skip ``@pytest.mark.postgres`` tests when no test database is configured,
    and run the remaining ones after all in-memory tests.
    """
    memory: list[pytest.Item] = []
    postgres: list[pytest.Item] = []
    skip = pytest.mark.skip(reason="TESTLENS_TEST_DATABASE_URL not set")

    for item in items:
        if item.get_closest_marker("postgres"):
            if TEST_DATABASE_URL is None:
                item.add_marker(skip)
            postgres.append(item)
        else:
            memory.append(item)

    items[:] = memory + postgres
