"""Error taxonomy for the ingest pipeline.

Key conflicts on insert are not errors and have no exception type here: the
writer treats them as successful no-ops.
"""

from __future__ import annotations

from typing import Any, Optional


class PapergraphError(Exception):
    """Base error for the ingest pipeline."""


class InputDecodeError(PapergraphError, ValueError):
    """Raised when an input line cannot be decoded into a record.

    Always fatal for the run (strict decoding).
    """

    def __init__(self, message: str, *, line_no: Optional[int] = None) -> None:
        self.line_no = line_no
        if line_no is not None:
            message = f"line {line_no}: {message}"
        super().__init__(message)


class RangeError(PapergraphError, ValueError):
    """Raised when a value does not fit its narrower storage type."""


class StorageCastError(RangeError):
    """Raised when a derived row cannot be cast to the storage schema."""


class YearRangeError(RangeError):
    """Raised when a publication year does not fit the SMALLINT year column."""

    def __init__(self, year: Any) -> None:
        self.year = year
        super().__init__(f"year {year!r} is outside the SMALLINT range")


class SinkFault(PapergraphError):
    """Raised when the relational sink fails for a reason other than a key conflict."""

    def __init__(self, *, entity: str, record_id: Optional[str], reason: str) -> None:
        self.entity = entity
        self.record_id = record_id
        self.reason = reason
        super().__init__(f"sink fault writing {entity} for record {record_id!r}: {reason}")
