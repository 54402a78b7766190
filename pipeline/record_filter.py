"""Admission filter for decoded records."""

from __future__ import annotations

from collections.abc import Collection

from contracts.records import Record


def admit(record: Record, min_citations: int, allowed_fields_of_study: Collection[str]) -> bool:
    """Return True if the record should be ingested.

    A record is admitted when it has strictly more than ``min_citations``
    incoming citations and at least one of its fields of study is allowed.
    """
    if len(record.in_citations) <= min_citations:
        return False
    allowed = frozenset(allowed_fields_of_study)
    return any(field in allowed for field in record.fields_of_study)
