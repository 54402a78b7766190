"""
db.py

Small PostgreSQL helper module (psycopg2) for the graph sink.

Sessions
--------
The pool is an explicit object created by the caller (the ingest driver) and
passed around; there is no process-global connection. ``pooled_conn`` checks
a connection out for the duration of a ``with`` block, and a
``ThreadedConnectionPool`` lets each ingest worker hold its own session.

Inserts
-------
``insert_ignore_conn`` is the only write primitive the pipeline needs: one
``INSERT ... ON CONFLICT (...) DO NOTHING`` statement per batch, so a key
conflict drops that row without affecting the rest of the batch.
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Iterator, Optional, Sequence

from apps.backend.db_metrics import measure_query
from infra.config import DatabaseConfig, get_settings


def open_pool(
    config: Optional[DatabaseConfig] = None,
    *,
    url: Optional[str] = None,
    maxconn: Optional[int] = None,
) -> Any:
    """Create a thread-safe psycopg2 pool from settings.

    ``url`` overrides the configured DSN; ``maxconn`` overrides ``pool_maxconn``.
    """
    cfg = config or get_settings().db
    dsn = (url or cfg.url or "").strip()
    if not dsn:
        raise RuntimeError("DB_URL is not set. Use --db-url or set DB_URL.")

    from psycopg2.pool import ThreadedConnectionPool  # type: ignore

    return ThreadedConnectionPool(
        minconn=1,
        maxconn=maxconn or cfg.pool_maxconn,
        dsn=dsn,
        connect_timeout=cfg.connect_timeout,
    )


def close_pool(pool: Any) -> None:
    """Close every connection held by the pool."""
    if pool is not None and not getattr(pool, "closed", False):
        pool.closeall()


@contextmanager
def pooled_conn(pool: Any) -> Iterator[Any]:
    """Yield a pooled psycopg2 connection.

    - Callers should NOT close the connection; it is returned to the pool.
    - Any open transaction is rolled back before the connection goes back,
      so uncommitted work never leaks into the next checkout.
    """
    conn = pool.getconn()
    try:
        yield conn
    finally:
        try:
            conn.rollback()
        except Exception:  # connection may already be broken
            pass
        try:
            pool.putconn(conn)
        except Exception:
            try:
                conn.close()
            except Exception:
                pass


def _query_name(sql: str, *, operation: str) -> str:
    """Return a stable query label for metrics/logging."""
    text = " ".join(str(sql or "").strip().split())
    if not text:
        return operation
    first_token = text.split(" ", 1)[0].lower()
    return f"{operation}:{first_token}"


def execute_conn(conn: Any, sql: str, params: Optional[Sequence[Any]] = None) -> None:
    """Execute a statement on an existing connection (no returned rows)."""
    with conn.cursor() as cur:
        with measure_query(_query_name(sql, operation="execute_conn")):
            cur.execute(sql, params or ())


def insert_ignore_sql(table: str, columns: Sequence[str], key: Sequence[str]) -> str:
    """Build the ``execute_values`` statement for an insert-if-absent batch."""
    # NOTE: table/columns are internal constants; do not pass user input here.
    cols_sql = ", ".join(columns)
    key_sql = ", ".join(key)
    return f"INSERT INTO {table} ({cols_sql}) VALUES %s ON CONFLICT ({key_sql}) DO NOTHING"


def insert_ignore_conn(
    conn: Any,
    table: str,
    columns: Sequence[str],
    key: Sequence[str],
    rows: Sequence[Sequence[Any]],
) -> int:
    """Insert ``rows`` in one statement, skipping key conflicts. Returns rows actually inserted."""
    if not rows:
        return 0
    from psycopg2.extras import execute_values  # type: ignore

    sql = insert_ignore_sql(table, columns, key)
    with conn.cursor() as cur:
        with measure_query(f"insert:{table}"):
            execute_values(cur, sql, list(rows), page_size=len(rows))
        return max(0, int(cur.rowcount or 0))
