"""Wire-format bibliographic records.

One record per input line, following the Semantic Scholar corpus export
(camelCase keys). snake_case keys are accepted as well so hand-written
fixtures stay readable.
"""

from __future__ import annotations

from typing import Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

from contracts.errors import InputDecodeError


def _string_tuple(value: object, *, field: str) -> tuple[str, ...]:
    """Accept null or a list of scalars and return a tuple of stripped strings."""
    if value is None:
        return ()
    if isinstance(value, (str, bytes)) or not isinstance(value, (list, tuple)):
        raise ValueError(f"{field} must be a list of strings")
    out: list[str] = []
    for item in value:
        if item is None:
            continue
        text = str(item).strip()
        if text:
            out.append(text)
    return tuple(out)


class RecordAuthor(BaseModel):
    """An author entry as it appears inside a record."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    name: str = Field(default="")
    ids: tuple[str, ...] = Field(default=())

    @field_validator("name", mode="before")
    @classmethod
    def _normalize_name(cls, value: object) -> str:
        return str(value or "").strip()

    @field_validator("ids", mode="before")
    @classmethod
    def _normalize_ids(cls, value: object) -> tuple[str, ...]:
        return _string_tuple(value, field="ids")


class Record(BaseModel):
    """A decoded input record: one paper with its authors and citation lists."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    id: str = Field(min_length=1)
    title: str = Field(default="")
    year: Optional[int] = Field(default=None)
    fields_of_study: tuple[str, ...] = Field(
        default=(), validation_alias=AliasChoices("fieldsOfStudy", "fields_of_study")
    )
    authors: tuple[RecordAuthor, ...] = Field(default=())
    out_citations: tuple[str, ...] = Field(
        default=(), validation_alias=AliasChoices("outCitations", "out_citations")
    )
    in_citations: tuple[str, ...] = Field(
        default=(), validation_alias=AliasChoices("inCitations", "in_citations")
    )

    @field_validator("id", mode="before")
    @classmethod
    def _normalize_id(cls, value: object) -> str:
        if value is None:
            raise ValueError("id is required")
        return str(value).strip()

    @field_validator("title", mode="before")
    @classmethod
    def _normalize_title(cls, value: object) -> str:
        return str(value or "")

    @field_validator("authors", mode="before")
    @classmethod
    def _normalize_authors(cls, value: object) -> object:
        return () if value is None else value

    @field_validator("fields_of_study", mode="before")
    @classmethod
    def _normalize_fields(cls, value: object) -> tuple[str, ...]:
        return _string_tuple(value, field="fields_of_study")

    @field_validator("out_citations", "in_citations", mode="before")
    @classmethod
    def _normalize_citations(cls, value: object) -> tuple[str, ...]:
        return _string_tuple(value, field="citations")


def decode_record(line: str | bytes, *, line_no: Optional[int] = None) -> Record:
    """Decode one JSON line into a Record, raising InputDecodeError on any failure."""
    try:
        return Record.model_validate_json(line)
    except ValidationError as exc:
        first = exc.errors()[0] if exc.errors() else {}
        loc = ".".join(str(part) for part in first.get("loc", ())) or "record"
        msg = first.get("msg") or str(exc)
        raise InputDecodeError(f"invalid record ({loc}: {msg})", line_no=line_no) from exc
