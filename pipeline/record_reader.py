"""Line-delimited JSON record source.

Decoding is strict: the first undecodable line raises InputDecodeError and
ends the stream. Blank lines are ignored.
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from pathlib import Path
from typing import Tuple

from contracts.errors import InputDecodeError
from contracts.records import Record, decode_record


def iter_lines(lines: Iterable[str]) -> Iterator[Tuple[int, Record]]:
    """Yield ``(line_no, record)`` for each non-blank line (1-based numbering)."""
    for line_no, line in enumerate(lines, start=1):
        if not line.strip():
            continue
        yield line_no, decode_record(line, line_no=line_no)


def iter_records(path: str | Path) -> Iterator[Tuple[int, Record]]:
    """Open ``path`` and yield its decoded records."""
    p = Path(path)
    try:
        handle = p.open("r", encoding="utf-8")
    except OSError as exc:
        raise InputDecodeError(f"cannot open record source {p}: {exc}") from exc
    with handle:
        try:
            yield from iter_lines(handle)
        except UnicodeDecodeError as exc:
            raise InputDecodeError(f"{p} is not valid UTF-8: {exc}") from exc
