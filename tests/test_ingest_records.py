"""Tests for the record ingest driver over an in-memory sink."""

from __future__ import annotations

import itertools
import logging
import threading
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from types import SimpleNamespace
from typing import Any

import psycopg2  # type: ignore
import psycopg2.extensions  # type: ignore
import psycopg2.pool  # type: ignore
import pytest

import apps.worker.ingest_records as ingest_mod
from apps.worker.ingest_records import (
    IngestOptions,
    RecordState,
    ingest_records,
    process_record,
)
from contracts.errors import InputDecodeError, SinkFault
from infra.config import IngestConfig
from pipeline.record_reader import iter_lines
from tests.factories import make_line, make_record
from tests.fake_sink import FakeConn, FakeSink


def _run(sink: FakeSink, lines: Sequence[str], **options: Any) -> ingest_mod.IngestStats:
    opts = IngestOptions(**options)
    return ingest_records(
        iter_lines(lines),
        options=opts,
        session_factory=sink.session,
        writer_factory=lambda conn: sink.writer(conn, chunk_size=opts.chunk_size),
    )


def test_process_record_writes_all_four_tables() -> None:
    sink = FakeSink()
    record = make_record(id="p", outCitations=["b", "c"], inCitations=["a", "z"])

    outcome = process_record(record, writer=sink.writer(FakeConn()), options=IngestOptions())

    assert outcome.state is RecordState.CITATIONS_WRITTEN
    assert outcome.rows_inserted == 1 + 1 + 1 + 4
    assert sink.snapshot() == {
        "papers": {("p", "A paper", 2019)},
        "authors": {("a1", "Ada Lovelace")},
        "paper_authors": {("p", "a1")},
        "citations": {("p", "b"), ("p", "c"), ("a", "p"), ("z", "p")},
    }


def test_process_record_rejected_writes_nothing() -> None:
    sink = FakeSink()
    record = make_record(fieldsOfStudy=["Biology"])

    outcome = process_record(record, writer=sink.writer(FakeConn()), options=IngestOptions())

    assert outcome.state is RecordState.REJECTED
    assert sink.insert_calls == []


def test_process_record_logs_inserted_line(caplog: Any) -> None:
    sink = FakeSink()
    caplog.set_level(logging.DEBUG, logger="apps.worker.ingest_records")

    process_record(make_record(id="p"), writer=sink.writer(FakeConn()), options=IngestOptions())

    assert any(r.getMessage() == "inserted p [4 citations]" for r in caplog.records)


def test_rerun_yields_identical_tables() -> None:
    lines = [make_line(id="p1"), make_line(id="p2", outCitations=["p1"]), make_line(id="p3", fieldsOfStudy=[])]
    sink = FakeSink()

    first = _run(sink, lines)
    after_first = sink.snapshot()
    second = _run(sink, lines)

    assert sink.snapshot() == after_first
    assert first.written == second.written == 2
    assert first.rejected == 1
    assert first.rows_inserted > 0
    assert second.rows_inserted == 0


def test_same_author_in_two_records_keeps_first_name() -> None:
    lines = [
        make_line(id="p1", authors=[{"name": "First Name", "ids": ["a1"]}]),
        make_line(id="p2", authors=[{"name": "Second Name", "ids": ["a1"]}]),
    ]
    sink = FakeSink()

    stats = _run(sink, lines)

    assert stats.written == 2
    assert sink.rows("authors") == {("a1", "First Name")}
    assert sink.rows("paper_authors") == {("p1", "a1"), ("p2", "a1")}


def test_unkeyed_author_never_stored() -> None:
    lines = [make_line(id="p", authors=[{"name": "Anonymous", "ids": []}])]
    sink = FakeSink()

    _run(sink, lines)

    assert sink.rows("authors") == set()
    assert sink.rows("paper_authors") == set()
    assert sink.rows("papers") == {("p", "A paper", 2019)}


def test_concurrent_records_sharing_an_author_store_one_row() -> None:
    lines = [make_line(id=f"p{i}", authors=[{"name": f"Name {i}", "ids": ["shared"]}]) for i in range(40)]
    sink = FakeSink()

    stats = _run(sink, lines, workers=4)

    assert stats.written == 40
    assert stats.failed == 0
    authors = sink.rows("authors")
    assert len(authors) == 1
    assert next(iter(authors))[0] == "shared"
    assert len(sink.rows("paper_authors")) == 40
    # each pooled task checks out its own session
    assert len(sink.sessions) == 40


def test_year_overflow_fails_record_and_run_continues() -> None:
    lines = [make_line(id="bad", year=40000), make_line(id="good")]
    sink = FakeSink()

    stats = _run(sink, lines)

    assert stats.failed == 1
    assert stats.written == 1
    assert stats.failed_ids == ["bad"]
    assert {row[0] for row in sink.rows("papers")} == {"good"}
    assert ("bad", "b") not in sink.rows("citations")


def test_sink_fault_aborts_by_default_and_keeps_earlier_batches() -> None:
    lines = [make_line(id="p1"), make_line(id="p2")]
    sink = FakeSink(fail_on={"authors"})

    with pytest.raises(SinkFault) as exc:
        _run(sink, lines)

    assert exc.value.entity == "authors"
    assert exc.value.record_id == "p1"
    # paper batch was committed before the author batch failed; no rollback of it
    assert sink.rows("papers") == {("p1", "A paper", 2019)}
    assert sink.rows("citations") == set()


def test_sink_fault_skip_policy_continues() -> None:
    lines = [make_line(id="p1"), make_line(id="p2", outCitations=["q"])]
    sink = FakeSink(fail_on={"citations"}, fail_for={"p1"})

    stats = _run(sink, lines, on_sink_fault="skip")

    assert stats.failed == 1
    assert stats.written == 1
    assert stats.failed_ids == ["p1"]
    assert ("p2", "q") in sink.rows("citations")


def test_sink_fault_abort_with_workers() -> None:
    lines = [make_line(id=f"p{i}") for i in range(20)]
    sink = FakeSink(fail_on={"papers"}, fail_for={"p3"})

    with pytest.raises(SinkFault):
        _run(sink, lines, workers=3)


def test_record_failed_event_identifies_record(caplog: Any) -> None:
    caplog.set_level(logging.WARNING)
    sink = FakeSink()

    _run(sink, [make_line(id="bad", year=-40000)])

    failed = [r for r in caplog.records if getattr(r, "event", None) == "record_failed"]
    assert len(failed) == 1
    assert failed[0].record_id == "bad"
    assert failed[0].stage == "derive"
    assert failed[0].line_no == 1


def test_decode_error_aborts_run_after_earlier_records() -> None:
    lines = [make_line(id="p1"), "{broken", make_line(id="p3")]
    sink = FakeSink()

    with pytest.raises(InputDecodeError) as exc:
        _run(sink, lines)

    assert exc.value.line_no == 2
    assert {row[0] for row in sink.rows("papers")} == {"p1"}


def test_stop_event_is_honoured_between_records() -> None:
    sink = FakeSink()
    stop = threading.Event()
    opts = IngestOptions()

    def _writer(conn: Any) -> Any:
        writer = sink.writer(conn)
        original = writer.write_citations

        def _write_and_stop(items: Any, *, record_id: Any = None) -> int:
            stop.set()
            return original(items, record_id=record_id)

        writer.write_citations = _write_and_stop  # type: ignore[method-assign]
        return writer

    stats = ingest_records(
        iter_lines([make_line(id="p1"), make_line(id="p2")]),
        options=opts,
        session_factory=sink.session,
        writer_factory=_writer,
        stop_event=stop,
    )

    assert stats.stopped is True
    assert stats.read == 1
    assert stats.written == 1
    # the interrupted record was completed, the next one never started
    assert {row[0] for row in sink.rows("papers")} == {"p1"}
    assert len(sink.rows("citations")) == 4


def test_stop_before_start_reads_nothing() -> None:
    sink = FakeSink()
    stop = threading.Event()
    stop.set()

    stats = ingest_records(
        iter_lines([make_line(id="p1")]),
        options=IngestOptions(workers=2),
        session_factory=sink.session,
        writer_factory=sink.writer,
        stop_event=stop,
    )

    assert stats.stopped is True
    assert stats.read == 0
    assert sink.snapshot()["papers"] == set()


def test_progress_is_logged(caplog: Any) -> None:
    caplog.set_level(logging.INFO, logger="apps.worker.ingest_records")
    lines = [make_line(id=f"p{i}") for i in range(4)]

    _run(FakeSink(), lines, progress_every=2)

    progress = [r.getMessage() for r in caplog.records if r.getMessage().startswith("progress ")]
    assert len(progress) == 2


def test_options_from_config_applies_overrides() -> None:
    cfg = IngestConfig(min_citations=3, fields_of_study=["Medicine"], workers=2)

    opts = IngestOptions.from_config(cfg, min_citations=None, workers=8, fields_of_study=["Physics", "Biology"])

    assert opts.min_citations == 3
    assert opts.workers == 8
    assert opts.fields_of_study == frozenset({"Physics", "Biology"})
    assert opts.on_sink_fault == "abort"


@pytest.mark.parametrize(
    "kwargs",
    [{"workers": 0}, {"chunk_size": 0}, {"min_citations": -1}, {"on_sink_fault": "retry"}, {"fields_of_study": frozenset()}],
)
def test_invalid_options_rejected(kwargs: dict[str, Any]) -> None:
    with pytest.raises(ValueError):
        IngestOptions(**kwargs)


class _Pool:
    def __init__(self) -> None:
        self.closed = False
        self.conn = FakeConn()

    def getconn(self) -> FakeConn:
        return self.conn

    def putconn(self, conn: FakeConn) -> None:
        assert conn is self.conn

    def closeall(self) -> None:
        self.closed = True


def test_run_ingest_opens_and_closes_pool(monkeypatch: Any, tmp_path: Any, caplog: Any) -> None:
    path = tmp_path / "papers.jsonl"
    path.write_text(make_line(id="p1") + "\n", encoding="utf-8")
    pool = _Pool()
    sink = FakeSink()
    monkeypatch.setattr(ingest_mod, "open_pool", lambda cfg, url=None, maxconn=None: pool)
    monkeypatch.setattr(ingest_mod, "close_pool", lambda p: p.closeall())
    monkeypatch.setattr(ingest_mod, "_default_writer", lambda conn, chunk_size: sink.writer(conn, chunk_size=chunk_size))
    caplog.set_level(logging.INFO, logger="apps.worker.ingest_records")

    stats = ingest_mod.run_ingest(path, options=IngestOptions(), db_url="postgresql://unused")

    assert stats.written == 1
    assert pool.closed is True
    messages = [r.getMessage() for r in caplog.records]
    assert "establishing db connection" in messages
    assert f"reading records from {path}" in messages


def test_run_ingest_closes_pool_on_input_error(monkeypatch: Any, tmp_path: Any) -> None:
    pool = _Pool()
    monkeypatch.setattr(ingest_mod, "open_pool", lambda cfg, url=None, maxconn=None: pool)
    monkeypatch.setattr(ingest_mod, "close_pool", lambda p: p.closeall())

    with pytest.raises(InputDecodeError):
        ingest_mod.run_ingest(tmp_path / "missing.jsonl", options=IngestOptions())

    assert pool.closed is True


def test_pooled_run_counts_finished_records_when_a_task_raises(caplog: Any) -> None:
    sink = FakeSink()
    calls = itertools.count(1)
    lock = threading.Lock()

    @contextmanager
    def _sessions() -> Iterator[FakeConn]:
        with lock:
            n = next(calls)
        if n == 6:
            raise psycopg2.pool.PoolError("connection pool exhausted")
        with sink.session() as conn:
            yield conn

    caplog.set_level(logging.ERROR, logger="apps.worker.ingest_records")

    with pytest.raises(psycopg2.pool.PoolError):
        ingest_records(
            iter_lines([make_line(id=f"p{i}") for i in range(6)]),
            options=IngestOptions(workers=2),
            session_factory=_sessions,
            writer_factory=sink.writer,
        )

    aborted = [r for r in caplog.records if getattr(r, "event", None) == "ingest_aborted"]
    assert len(aborted) == 1
    assert aborted[0].read == 6
    assert aborted[0].written == 5
    assert len(sink.rows("papers")) == 5


class _PgConn(FakeConn):
    """Just enough of a psycopg2 connection for ThreadedConnectionPool bookkeeping."""

    def __init__(self) -> None:
        super().__init__()
        self.closed = 0
        self.info = SimpleNamespace(transaction_status=psycopg2.extensions.TRANSACTION_STATUS_IDLE)

    def get_transaction_status(self) -> int:
        return self.info.transaction_status

    def close(self) -> None:
        self.closed = 1


def test_run_ingest_pool_holds_one_connection_per_worker(monkeypatch: Any, tmp_path: Any) -> None:
    """More workers than DB_POOL_MAXCONN must not exhaust the pool."""
    path = tmp_path / "papers.jsonl"
    path.write_text("\n".join(make_line(id=f"p{i}") for i in range(12)) + "\n", encoding="utf-8")
    monkeypatch.setenv("DB_POOL_MAXCONN", "2")
    monkeypatch.setattr(psycopg2, "connect", lambda *args, **kwargs: _PgConn())

    sink = FakeSink()
    # the first four records hold their connections at the same time
    together = threading.Barrier(4, timeout=10)
    opened = itertools.count(1)
    lock = threading.Lock()

    def _writer(conn: Any, chunk_size: int) -> Any:
        with lock:
            n = next(opened)
        if n <= 4:
            together.wait()
        return sink.writer(conn, chunk_size=chunk_size)

    monkeypatch.setattr(ingest_mod, "_default_writer", _writer)

    stats = ingest_mod.run_ingest(path, options=IngestOptions(workers=4), db_url="postgresql://fake/db")

    assert stats.written == 12
    assert stats.failed == 0
    assert len(sink.rows("papers")) == 12
