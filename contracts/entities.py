"""Persisted entity rows: papers, authors and the two edge tables."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Optional

from contracts.errors import StorageCastError, YearRangeError
from contracts.schema import AUTHORS, CITATIONS, PAPER_AUTHORS, PAPERS, TableSpec
from contracts.storage_cast import cast_for_storage, cast_value


def narrow_year(year: Optional[int]) -> Optional[int]:
    """Narrow a publication year to the SMALLINT year column, failing loudly on overflow."""
    if year is None:
        return None
    try:
        return cast_value(year, PAPERS.schema.field("year"))
    except StorageCastError as exc:
        raise YearRangeError(year) from exc


class _Row:
    """Mixin: storage tuple in table column order."""

    TABLE: TableSpec

    def as_row(self) -> tuple[Any, ...]:
        return cast_for_storage(asdict(self), self.TABLE.schema)  # type: ignore[call-overload]

    def key(self) -> tuple[Any, ...]:
        values = asdict(self)  # type: ignore[call-overload]
        return tuple(values[col] for col in self.TABLE.key)


@dataclass(frozen=True)
class Paper(_Row):
    TABLE = PAPERS

    id: str
    title: str
    year: Optional[int] = None


@dataclass(frozen=True)
class Author(_Row):
    TABLE = AUTHORS

    id: str
    name: str


@dataclass(frozen=True)
class PaperAuthor(_Row):
    TABLE = PAPER_AUTHORS

    paper_id: str
    author_id: str


@dataclass(frozen=True)
class Citation(_Row):
    TABLE = CITATIONS

    from_paper: str
    to_paper: str
