"""
apps.worker.graph_writer

Idempotent writes of derived entities into the Postgres graph tables.

Every batch is inserted with ``ON CONFLICT (<key>) DO NOTHING``: rows whose
key already exists are discarded one by one and the stored row is kept as is
(first writer wins, never an upsert). Each entity batch commits on success,
so a failure in a later batch leaves earlier batches of the same record in
place. Replaying a record is always safe.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator, Sequence
from typing import Any, Callable, List, Optional

import psycopg2  # type: ignore

from apps.backend.db import execute_conn, insert_ignore_conn
from contracts.entities import Author, Citation, Paper, PaperAuthor
from contracts.errors import SinkFault
from contracts.schema import AUTHORS, CITATIONS, PAPER_AUTHORS, PAPERS, TableSpec, schema_statements

logger = logging.getLogger(__name__)

# (conn, table, columns, key, rows) -> rows inserted
InsertFn = Callable[[Any, str, Sequence[str], Sequence[str], Sequence[Sequence[Any]]], int]

DEFAULT_CHUNK_SIZE = 1000


def _chunks(rows: List[tuple], size: int) -> Iterator[List[tuple]]:
    for start in range(0, len(rows), size):
        yield rows[start : start + size]


def _unique_rows_in_key_order(table: TableSpec, rows: Iterable[tuple]) -> List[tuple]:
    """Drop repeated keys inside one batch (first occurrence wins) and sort by key.

    Concurrent batches then take row locks in the same order, so two sessions
    inserting overlapping keys wait on each other instead of deadlocking.
    """
    key_idx = [table.columns.index(col) for col in table.key]
    by_key: dict[tuple, tuple] = {}
    for row in rows:
        by_key.setdefault(tuple(row[i] for i in key_idx), row)
    return [by_key[key] for key in sorted(by_key)]


def _rollback_quietly(conn: Any) -> None:
    try:
        conn.rollback()
    except psycopg2.Error as exc:
        logger.warning("Rollback failed after sink fault: %s", exc)


class GraphWriter:
    """Insert-if-absent writer bound to one sink session (connection).

    The writer keeps no state between calls; ordering across the four write
    operations is the caller's responsibility.
    """

    def __init__(
        self,
        conn: Any,
        *,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        insert: InsertFn = insert_ignore_conn,
    ) -> None:
        if int(chunk_size) <= 0:
            raise ValueError("chunk_size must be >= 1")
        self._conn = conn
        self._chunk_size = int(chunk_size)
        self._insert = insert

    def write_papers(self, papers: Sequence[Paper], *, record_id: Optional[str] = None) -> int:
        return self._write(PAPERS, papers, record_id)

    def write_authors(self, authors: Sequence[Author], *, record_id: Optional[str] = None) -> int:
        return self._write(AUTHORS, authors, record_id)

    def write_paper_authors(self, edges: Sequence[PaperAuthor], *, record_id: Optional[str] = None) -> int:
        return self._write(PAPER_AUTHORS, edges, record_id)

    def write_citations(self, citations: Sequence[Citation], *, record_id: Optional[str] = None) -> int:
        return self._write(CITATIONS, citations, record_id)

    def _write(self, table: TableSpec, items: Sequence[Any], record_id: Optional[str]) -> int:
        """Insert one entity batch in chunks and commit; raise SinkFault on any sink error."""
        rows = _unique_rows_in_key_order(table, (item.as_row() for item in items))
        if not rows:
            return 0

        inserted = 0
        try:
            for chunk in _chunks(rows, self._chunk_size):
                inserted += self._insert(self._conn, table.name, table.columns, table.key, chunk)
            self._conn.commit()
        except psycopg2.Error as exc:
            _rollback_quietly(self._conn)
            raise SinkFault(entity=table.name, record_id=record_id, reason=str(exc).strip()) from exc
        return inserted


def ensure_graph_schema(conn: Any) -> None:
    """Create the four graph tables if they do not exist yet."""
    for stmt in schema_statements():
        execute_conn(conn, stmt)
    conn.commit()
