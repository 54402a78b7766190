from dataclasses import dataclass

import pyarrow as pa

# -----------------------------
# Storage schemas (one per table)
# -----------------------------

# Publication years are stored in a SMALLINT column.
YEAR = pa.int16()

PAPERS_SCHEMA = pa.schema([
    pa.field("id", pa.string(), nullable=False),        # corpus paper id
    pa.field("title", pa.string(), nullable=False),
    pa.field("year", YEAR),
])

AUTHORS_SCHEMA = pa.schema([
    pa.field("id", pa.string(), nullable=False),        # first external author id
    pa.field("name", pa.string(), nullable=False),
])

PAPER_AUTHORS_SCHEMA = pa.schema([
    pa.field("paper_id", pa.string(), nullable=False),
    pa.field("author_id", pa.string(), nullable=False),
])

CITATIONS_SCHEMA = pa.schema([
    pa.field("from_paper", pa.string(), nullable=False),
    pa.field("to_paper", pa.string(), nullable=False),
])


@dataclass(frozen=True)
class TableSpec:
    """Name, storage schema and conflict key of one sink table."""

    name: str
    schema: pa.Schema
    key: tuple[str, ...]

    @property
    def columns(self) -> tuple[str, ...]:
        return tuple(self.schema.names)


PAPERS = TableSpec("papers", PAPERS_SCHEMA, ("id",))
AUTHORS = TableSpec("authors", AUTHORS_SCHEMA, ("id",))
PAPER_AUTHORS = TableSpec("paper_authors", PAPER_AUTHORS_SCHEMA, ("paper_id", "author_id"))
CITATIONS = TableSpec("citations", CITATIONS_SCHEMA, ("from_paper", "to_paper"))

# Dependency order used by the writer for a single record.
TABLES: tuple[TableSpec, ...] = (PAPERS, AUTHORS, PAPER_AUTHORS, CITATIONS)

# -----------------------------
# DDL
# -----------------------------
# No foreign keys: edges may point at papers/authors that arrive later.
SCHEMA_DDL = """
CREATE TABLE IF NOT EXISTS papers (
  id    TEXT PRIMARY KEY,
  title TEXT NOT NULL,
  year  SMALLINT
);

CREATE TABLE IF NOT EXISTS authors (
  id   TEXT PRIMARY KEY,
  name TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS paper_authors (
  paper_id  TEXT NOT NULL,
  author_id TEXT NOT NULL,
  PRIMARY KEY (paper_id, author_id)
);

CREATE TABLE IF NOT EXISTS citations (
  from_paper TEXT NOT NULL,
  to_paper   TEXT NOT NULL,
  PRIMARY KEY (from_paper, to_paper)
);
"""


def schema_statements() -> list[str]:
    """Split SCHEMA_DDL into individual statements."""
    return [stmt.strip() for stmt in SCHEMA_DDL.split(";") if stmt.strip()]
