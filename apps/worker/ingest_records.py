"""
apps.worker.ingest_records

Ingest line-delimited bibliographic records into the Postgres graph tables.

Each record goes through:

    decoded -> rejected
            -> derived -> paper_written -> authors_written
                       -> edges_written -> citations_written
            -> failed(stage)

Records are processed one at a time over a single session, or by a thread
pool where every task checks out its own pooled connection. Stopping is only
honoured between records; because every write is insert-if-absent, a stopped
or crashed run can simply be restarted from the beginning of the input.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from contextlib import AbstractContextManager
from dataclasses import dataclass, field
from enum import Enum
from functools import partial
from pathlib import Path
from typing import Any, Callable, Iterable, List, Literal, Optional, Tuple

from apps.backend.db import close_pool, open_pool, pooled_conn
from apps.worker.graph_writer import GraphWriter
from contracts.errors import RangeError, SinkFault
from contracts.records import Record
from infra.config import IngestConfig, get_settings
from infra.logging_config import StructuredLogger, set_run_context
from pipeline.derive import derive
from pipeline.record_filter import admit
from pipeline.record_reader import iter_records

logger = logging.getLogger(__name__)
events = StructuredLogger(__name__)

SessionFactory = Callable[[], AbstractContextManager[Any]]
WriterFactory = Callable[[Any], GraphWriter]


class RecordState(str, Enum):
    DECODED = "decoded"
    REJECTED = "rejected"
    DERIVED = "derived"
    PAPER_WRITTEN = "paper_written"
    AUTHORS_WRITTEN = "authors_written"
    EDGES_WRITTEN = "edges_written"
    CITATIONS_WRITTEN = "citations_written"
    FAILED = "failed"


@dataclass(frozen=True)
class RecordOutcome:
    """Terminal state of one record."""

    record_id: str
    state: RecordState
    line_no: Optional[int] = None
    failed_stage: Optional[str] = None
    error: Optional[str] = None
    rows_inserted: int = 0


@dataclass(frozen=True)
class IngestOptions:
    """Input options for one ingest run."""

    min_citations: int = 1
    fields_of_study: frozenset[str] = frozenset({"Computer Science"})
    chunk_size: int = 1000
    workers: int = 1
    on_sink_fault: Literal["abort", "skip"] = "abort"
    progress_every: int = 10_000

    def __post_init__(self) -> None:
        if self.min_citations < 0:
            raise ValueError("min_citations must be >= 0")
        if not self.fields_of_study:
            raise ValueError("fields_of_study must contain at least one field")
        if self.chunk_size < 1:
            raise ValueError("chunk_size must be >= 1")
        if self.workers < 1:
            raise ValueError("workers must be >= 1")
        if self.on_sink_fault not in ("abort", "skip"):
            raise ValueError(f"unknown on_sink_fault policy: {self.on_sink_fault!r}")

    @classmethod
    def from_config(cls, cfg: IngestConfig, **overrides: Any) -> IngestOptions:
        """Build options from settings; ``None`` overrides are ignored."""
        values: dict[str, Any] = {
            "min_citations": cfg.min_citations,
            "fields_of_study": frozenset(cfg.fields_of_study),
            "chunk_size": cfg.write_chunk_size,
            "workers": cfg.workers,
            "on_sink_fault": cfg.on_sink_fault,
            "progress_every": cfg.progress_every,
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        values["fields_of_study"] = frozenset(values["fields_of_study"])
        return cls(**values)


@dataclass
class IngestStats:
    """Run counters; updated only from the driver thread."""

    read: int = 0
    admitted: int = 0
    rejected: int = 0
    written: int = 0
    failed: int = 0
    rows_inserted: int = 0
    stopped: bool = False
    failed_ids: List[str] = field(default_factory=list)

    def record(self, outcome: RecordOutcome) -> None:
        if outcome.state is RecordState.REJECTED:
            self.rejected += 1
            return
        self.admitted += 1
        self.rows_inserted += outcome.rows_inserted
        if outcome.state is RecordState.CITATIONS_WRITTEN:
            self.written += 1
        else:
            self.failed += 1
            self.failed_ids.append(outcome.record_id)

    def as_dict(self) -> dict[str, Any]:
        return {
            "read": self.read,
            "admitted": self.admitted,
            "rejected": self.rejected,
            "written": self.written,
            "failed": self.failed,
            "rows_inserted": self.rows_inserted,
            "stopped": self.stopped,
        }


def process_record(
    record: Record,
    *,
    writer: GraphWriter,
    options: IngestOptions,
    line_no: Optional[int] = None,
) -> RecordOutcome:
    """Filter, derive and write one record.

    A RangeError fails the record before anything is written. A SinkFault
    fails the record at the batch that raised it; earlier batches stay
    committed. The fault is returned on the outcome so the caller can apply
    its abort/skip policy.
    """
    if not admit(record, options.min_citations, options.fields_of_study):
        return RecordOutcome(record_id=record.id, state=RecordState.REJECTED, line_no=line_no)

    try:
        entities = derive(record)
    except RangeError as exc:
        return RecordOutcome(
            record_id=record.id,
            state=RecordState.FAILED,
            line_no=line_no,
            failed_stage="derive",
            error=str(exc),
        )

    # Order matters: a paper row exists before any edge that names it.
    steps = (
        ("papers", writer.write_papers, [entities.paper]),
        ("authors", writer.write_authors, entities.authors),
        ("paper_authors", writer.write_paper_authors, entities.paper_authors),
        ("citations", writer.write_citations, entities.citations),
    )
    inserted = 0
    for stage, write, items in steps:
        try:
            inserted += write(items, record_id=record.id)
        except SinkFault as exc:
            raise _RecordFailed(
                RecordOutcome(
                    record_id=record.id,
                    state=RecordState.FAILED,
                    line_no=line_no,
                    failed_stage=stage,
                    error=exc.reason,
                    rows_inserted=inserted,
                ),
                exc,
            ) from exc

    logger.debug("inserted %s [%s citations]", record.id, len(entities.citations))
    return RecordOutcome(
        record_id=record.id,
        state=RecordState.CITATIONS_WRITTEN,
        line_no=line_no,
        rows_inserted=inserted,
    )


class _RecordFailed(Exception):
    """Internal carrier for a sink fault together with the record outcome."""

    def __init__(self, outcome: RecordOutcome, fault: SinkFault) -> None:
        super().__init__(str(fault))
        self.outcome = outcome
        self.fault = fault


class _Driver:
    """Shared bookkeeping for the sequential and pooled run loops."""

    def __init__(self, options: IngestOptions, stop_event: Optional[threading.Event]) -> None:
        self.options = options
        self.stop_event = stop_event or threading.Event()
        self.stats = IngestStats()
        self.fault: Optional[SinkFault] = None

    def should_stop(self) -> bool:
        if self.fault is not None:
            return True
        if self.stop_event.is_set():
            self.stats.stopped = True
            return True
        return False

    def on_read(self) -> None:
        self.stats.read += 1
        every = self.options.progress_every
        if every and self.stats.read % every == 0:
            logger.info(
                "progress read=%s admitted=%s written=%s failed=%s",
                self.stats.read,
                self.stats.admitted,
                self.stats.written,
                self.stats.failed,
            )

    def on_outcome(self, outcome: RecordOutcome, fault: Optional[SinkFault] = None) -> None:
        self.stats.record(outcome)
        if outcome.state is not RecordState.FAILED:
            return
        events.warning(
            "record_failed",
            record_id=outcome.record_id,
            line_no=outcome.line_no,
            stage=outcome.failed_stage,
            error=outcome.error,
        )
        if fault is not None and self.options.on_sink_fault == "abort" and self.fault is None:
            self.fault = fault


def _run_one(record: Record, line_no: int, writer: GraphWriter, options: IngestOptions) -> Tuple[RecordOutcome, Optional[SinkFault]]:
    try:
        return process_record(record, writer=writer, options=options, line_no=line_no), None
    except _RecordFailed as failed:
        return failed.outcome, failed.fault


def _run_sequential(
    driver: _Driver,
    records: Iterable[Tuple[int, Record]],
    session_factory: SessionFactory,
    writer_factory: WriterFactory,
) -> None:
    with session_factory() as conn:
        writer = writer_factory(conn)
        for line_no, record in records:
            if driver.should_stop():
                break
            driver.on_read()
            outcome, fault = _run_one(record, line_no, writer, driver.options)
            driver.on_outcome(outcome, fault)


def _run_pooled(
    driver: _Driver,
    records: Iterable[Tuple[int, Record]],
    session_factory: SessionFactory,
    writer_factory: WriterFactory,
) -> None:
    options = driver.options

    def _task(record: Record, line_no: int) -> Tuple[RecordOutcome, Optional[SinkFault]]:
        with session_factory() as conn:
            return _run_one(record, line_no, writer_factory(conn), options)

    max_in_flight = options.workers * 2
    in_flight: set[Future] = set()
    errors: List[BaseException] = []

    def _harvest(done: Iterable[Future]) -> None:
        # Every finished task is counted even when a sibling task raised.
        for fut in done:
            in_flight.discard(fut)
            try:
                outcome, fault = fut.result()
            except Exception as exc:  # re-raised once the pool has drained
                errors.append(exc)
                continue
            driver.on_outcome(outcome, fault)

    with ThreadPoolExecutor(max_workers=options.workers, thread_name_prefix="ingest") as pool:
        try:
            for line_no, record in records:
                if errors or driver.should_stop():
                    break
                driver.on_read()
                in_flight.add(pool.submit(_task, record, line_no))
                if len(in_flight) >= max_in_flight:
                    done, _ = wait(in_flight, return_when=FIRST_COMPLETED)
                    _harvest(done)
        finally:
            # In-flight records always run to completion; no record is cut mid-write.
            if in_flight:
                done, _ = wait(in_flight)
                _harvest(done)
    if errors:
        raise errors[0]


def ingest_records(
    records: Iterable[Tuple[int, Record]],
    *,
    options: IngestOptions,
    session_factory: SessionFactory,
    writer_factory: Optional[WriterFactory] = None,
    stop_event: Optional[threading.Event] = None,
) -> IngestStats:
    """Drive ``(line_no, record)`` pairs through filter, derive and write.

    Raises the first SinkFault when ``on_sink_fault == "abort"`` (after
    in-flight records finish). InputDecodeError from the record source
    propagates unchanged.
    """
    if writer_factory is None:
        writer_factory = partial(_default_writer, chunk_size=options.chunk_size)

    driver = _Driver(options, stop_event)
    runner = _run_sequential if options.workers == 1 else _run_pooled
    try:
        runner(driver, records, session_factory, writer_factory)
    except Exception:
        events.error("ingest_aborted", **driver.stats.as_dict())
        raise

    if driver.fault is not None:
        events.error("ingest_aborted", **driver.stats.as_dict())
        raise driver.fault
    if driver.stats.stopped:
        events.warning("ingest_stopped", **driver.stats.as_dict())
    else:
        events.info("ingest_completed", **driver.stats.as_dict())
    return driver.stats


def _default_writer(conn: Any, *, chunk_size: int) -> GraphWriter:
    return GraphWriter(conn, chunk_size=chunk_size)


def run_ingest(
    data_path: str | Path,
    *,
    options: Optional[IngestOptions] = None,
    db_url: Optional[str] = None,
    stop_event: Optional[threading.Event] = None,
) -> IngestStats:
    """Open the sink pool, ingest every record in ``data_path`` and close the pool."""
    settings = get_settings()
    opts = options or IngestOptions.from_config(settings.ingest)
    set_run_context(data_path=str(data_path), workers=opts.workers)

    logger.info("establishing db connection")
    # Every worker holds one connection for the whole record; a smaller pool raises PoolError.
    pool = open_pool(settings.db, url=db_url, maxconn=max(settings.db.pool_maxconn, opts.workers))
    try:
        logger.info("reading records from %s", data_path)
        return ingest_records(
            iter_records(data_path),
            options=opts,
            session_factory=partial(pooled_conn, pool),
            stop_event=stop_event,
        )
    finally:
        close_pool(pool)
