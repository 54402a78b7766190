"""Contracts and canonical schema.

The contracts package defines:
- the wire-format input record and its strict decoder
- the four persisted entity rows and their storage schemas
- storage casting (integer narrowing is range-checked)
- the pipeline error taxonomy

Main exports:
- Record, RecordAuthor, decode_record
- Paper, Author, PaperAuthor, Citation
- InputDecodeError, RangeError, YearRangeError, SinkFault
"""

from contracts import entities
from contracts import errors
from contracts import records

# Explicit re-exports to satisfy ruff F401
__all__ = [
    "Author",
    "Citation",
    "InputDecodeError",
    "Paper",
    "PaperAuthor",
    "PapergraphError",
    "RangeError",
    "Record",
    "RecordAuthor",
    "SinkFault",
    "StorageCastError",
    "YearRangeError",
    "decode_record",
]

Record = records.Record
RecordAuthor = records.RecordAuthor
decode_record = records.decode_record

Paper = entities.Paper
Author = entities.Author
PaperAuthor = entities.PaperAuthor
Citation = entities.Citation

PapergraphError = errors.PapergraphError
InputDecodeError = errors.InputDecodeError
RangeError = errors.RangeError
StorageCastError = errors.StorageCastError
YearRangeError = errors.YearRangeError
SinkFault = errors.SinkFault
