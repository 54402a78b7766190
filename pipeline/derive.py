"""
pipeline.derive

Map one admitted record onto the rows it contributes to the graph store:
the paper itself, its keyed authors, the paper-author edges and the
citation edges in both directions.

Derivation is pure and deterministic so a record can be replayed safely.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List

from contracts.entities import Author, Citation, Paper, PaperAuthor, narrow_year
from contracts.records import Record


@dataclass(frozen=True)
class DerivedEntities:
    """All rows derived from one record, in write order."""

    paper: Paper
    authors: List[Author]
    paper_authors: List[PaperAuthor]
    citations: List[Citation]


def derive_paper(record: Record) -> Paper:
    """Build the paper row; raises YearRangeError if the year overflows SMALLINT."""
    return Paper(id=record.id, title=record.title, year=narrow_year(record.year))


def derive_authors(record: Record) -> List[Author]:
    """Key each author by its first external id.

    Authors without any id cannot be keyed stably and are dropped.
    """
    return [Author(id=a.ids[0], name=a.name) for a in record.authors if a.ids]


def derive_citations(record: Record) -> List[Citation]:
    """Outgoing edges first, then incoming ones. Duplicates are kept."""
    citations = [Citation(from_paper=record.id, to_paper=target) for target in record.out_citations]
    citations.extend(Citation(from_paper=source, to_paper=record.id) for source in record.in_citations)
    return citations


def derive(record: Record) -> DerivedEntities:
    """Derive every row contributed by ``record``."""
    paper = derive_paper(record)
    authors = derive_authors(record)
    paper_authors = [PaperAuthor(paper_id=paper.id, author_id=a.id) for a in authors]
    return DerivedEntities(
        paper=paper,
        authors=authors,
        paper_authors=paper_authors,
        citations=derive_citations(record),
    )
