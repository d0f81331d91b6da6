from __future__ import annotations

import re
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, Optional, Sequence

from filing_sync.schema import FILING_TABLES, CHILD_TABLES, assert_filing_table, get_schema_sql
from filing_sync.util.redact import redact
from filing_sync.util.time import utcnow_iso

_SQLITE_PREFIX = "sqlite:///"
_DDL_LOCK_KEY = 2147483646

# Quoted literals are matched first so a '?' or '%' inside them is not a placeholder.
_PLACEHOLDER_RE = re.compile(r"'(?:[^']|'')*'|\"(?:[^\"]|\"\")*\"|\?|%")


def _debug(msg: str) -> None:
    print(f"[db] {redact(msg)}")


def is_postgres_dsn(dsn: str | None) -> bool:
    return (dsn or "").strip().lower().split(":", 1)[0] in ("postgres", "postgresql")


def dialect_of(conn: Any) -> str:
    return "postgres" if isinstance(conn, PostgresConnection) else "sqlite"


def _to_pyformat(sql: str) -> str:
    """Rewrite sqlite3 qmark SQL for psycopg2 ('?' -> '%s', '%' -> '%%')."""

    def sub(m: re.Match) -> str:
        tok = m.group(0)
        if tok == "?":
            return "%s"
        if tok == "%":
            return "%%"
        return tok.replace("%", "%%")

    return _PLACEHOLDER_RE.sub(sub, sql)


class PostgresConnection:
    """psycopg2 connection exposing the sqlite3-style calls used in this package.

    `execute` returns the psycopg2 cursor itself; with RealDictCursor its rows are
    dicts, so `row["col"]` works the same on both backends.
    """

    def __init__(self, raw: Any):
        self.raw = raw

    def execute(self, sql: str, params: Sequence[Any] | None = None) -> Any:
        cur = self.raw.cursor()
        cur.execute(_to_pyformat(sql), tuple(params or ()))
        return cur

    def executemany(self, sql: str, rows: Sequence[Sequence[Any]]) -> Any:
        cur = self.raw.cursor()
        cur.executemany(_to_pyformat(sql), [tuple(r) for r in rows])
        return cur

    def commit(self) -> None:
        self.raw.commit()

    def rollback(self) -> None:
        self.raw.rollback()

    def close(self) -> None:
        self.raw.close()


def _open_postgres(dsn: str) -> PostgresConnection:
    try:
        import psycopg2
        import psycopg2.extras
    except ImportError as e:
        raise RuntimeError("DB_DSN points at Postgres; install the 'postgres' extra (psycopg2-binary).") from e
    return PostgresConnection(psycopg2.connect(dsn, cursor_factory=psycopg2.extras.RealDictCursor))


def _open_sqlite(dsn: str) -> sqlite3.Connection:
    path = dsn[len(_SQLITE_PREFIX):] if dsn.lower().startswith(_SQLITE_PREFIX) else dsn
    if path != ":memory:":
        Path(path).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(path, timeout=30, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    # The API process and the cron CLI may share one file.
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    conn.execute("PRAGMA busy_timeout=5000;")
    return conn


@contextmanager
def connect(db_dsn: str) -> Iterator[Any]:
    """Open SQLite or Postgres (by DSN scheme); commit on clean exit, roll back on error."""
    dsn = (db_dsn or "").strip()
    conn = _open_postgres(dsn) if is_postgres_dsn(dsn) else _open_sqlite(dsn)
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


@contextmanager
def batch_transaction(conn: Any) -> Iterator[Any]:
    """One transaction per merge batch.

    Pending work is committed first so a rollback here only discards this batch.
    """
    conn.commit()
    if dialect_of(conn) == "sqlite":
        # psycopg2 opens transactions implicitly; sqlite3 needs an explicit BEGIN
        # so savepoints below nest inside it instead of committing on RELEASE.
        conn.execute("BEGIN")
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise


@contextmanager
def savepoint(conn: Any, name: str) -> Iterator[Any]:
    """Roll back just the statements inside the block when it raises."""
    conn.execute(f"SAVEPOINT {name}")
    try:
        yield conn
    except Exception:
        conn.execute(f"ROLLBACK TO SAVEPOINT {name}")
        conn.execute(f"RELEASE SAVEPOINT {name}")
        raise
    conn.execute(f"RELEASE SAVEPOINT {name}")


def init_db(db_dsn: str) -> None:
    """Create all tables (idempotent)."""
    with connect(db_dsn) as conn:
        dialect = dialect_of(conn)
        _debug(f"creating schema ({dialect}) at {db_dsn}")
        ddl = get_schema_sql(dialect)
        if dialect == "sqlite":
            # DDL takes SQLite's exclusive lock on its own.
            conn.executescript(ddl)
            return
        # Concurrent API workers may all start up at once.
        conn.execute(f"SELECT pg_advisory_lock({_DDL_LOCK_KEY})")
        try:
            for stmt in filter(None, (s.strip() for s in ddl.split(";"))):
                conn.execute(stmt)
        finally:
            conn.execute(f"SELECT pg_advisory_unlock({_DDL_LOCK_KEY})")


def table_count(conn: Any, table: str) -> int:
    assert_filing_table(table)
    row = conn.execute(f"SELECT COUNT(*) AS n FROM {table}").fetchone()
    return int(row["n"] or 0) if row is not None else 0


def filing_table_counts(conn: Any) -> Dict[str, int]:
    return {t: table_count(conn, t) for t in [*FILING_TABLES, *CHILD_TABLES]}


def upsert_app_config(conn: Any, key: str, value: str) -> None:
    conn.execute(
        """
        INSERT INTO app_config (key, value, updated_at) VALUES (?, ?, ?)
        ON CONFLICT(key) DO UPDATE SET value=excluded.value, updated_at=excluded.updated_at
        """,
        (key, value, utcnow_iso()),
    )


def get_app_config(conn: Any, key: str) -> Optional[str]:
    row = conn.execute("SELECT value FROM app_config WHERE key = ?", (key,)).fetchone()
    return None if row is None else str(row["value"])
