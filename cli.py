"""
papergraph CLI (flat-layout friendly).

Usage
-----
papergraph insert -d data/papers.jsonl --db-url "postgresql://..."
papergraph insert -d data/papers.jsonl --min-citations 5 --field-of-study Medicine --workers 4
papergraph init-db --db-url "postgresql://..."

Exit codes
----------
0  run completed (or stopped cleanly between records)
1  sink fault with the abort policy, or the sink could not be reached
2  input error (undecodable record, unreadable file, bad configuration)
"""

from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading
from typing import List, Optional

from contracts.errors import InputDecodeError, SinkFault
from infra.config import ValidationError, get_settings
from infra.logging_config import setup_logging
from version import ENGINE_NAME, ENGINE_VERSION, SCHEMA_VERSION

logger = logging.getLogger("papergraph.cli")

EXIT_OK = 0
EXIT_SINK_FAULT = 1
EXIT_INPUT_ERROR = 2


def _install_stop_handlers(stop_event: threading.Event) -> None:
    """Request a stop between records on SIGINT/SIGTERM."""

    def _handler(signum: int, _frame: object) -> None:
        if stop_event.is_set():
            raise KeyboardInterrupt
        logger.warning("received signal %s, stopping after the current record", signum)
        stop_event.set()

    signal.signal(signal.SIGINT, _handler)
    if hasattr(signal, "SIGTERM"):
        signal.signal(signal.SIGTERM, _handler)


def cmd_insert(args: argparse.Namespace) -> int:
    import psycopg2  # type: ignore

    from apps.worker.ingest_records import IngestOptions, run_ingest

    settings = get_settings()
    try:
        options = IngestOptions.from_config(
            settings.ingest,
            min_citations=args.min_citations,
            fields_of_study=args.fields_of_study,
            chunk_size=args.chunk_size,
            workers=args.workers,
            on_sink_fault=args.on_sink_fault,
        )
    except ValueError as exc:
        logger.error("invalid ingest options: %s", exc)
        return EXIT_INPUT_ERROR

    stop_event = threading.Event()
    _install_stop_handlers(stop_event)

    try:
        stats = run_ingest(args.data, options=options, db_url=args.db_url, stop_event=stop_event)
    except InputDecodeError as exc:
        logger.error("input error: %s", exc)
        return EXIT_INPUT_ERROR
    except SinkFault as exc:
        logger.error("aborting run: %s", exc)
        return EXIT_SINK_FAULT
    except (RuntimeError, psycopg2.Error) as exc:
        logger.error("cannot reach the sink: %s", exc)
        return EXIT_SINK_FAULT

    print(
        f"read={stats.read} admitted={stats.admitted} rejected={stats.rejected} "
        f"written={stats.written} failed={stats.failed}"
    )
    for record_id in stats.failed_ids:
        print(f"failed {record_id}")
    return EXIT_OK


def cmd_init_db(args: argparse.Namespace) -> int:
    import psycopg2  # type: ignore

    from apps.backend.db import close_pool, open_pool, pooled_conn
    from apps.worker.graph_writer import ensure_graph_schema

    try:
        pool = open_pool(get_settings().db, url=args.db_url)
    except (RuntimeError, psycopg2.Error) as exc:
        logger.error("%s", exc)
        return EXIT_SINK_FAULT
    try:
        with pooled_conn(pool) as conn:
            ensure_graph_schema(conn)
    except psycopg2.Error as exc:
        logger.error("schema bootstrap failed: %s", exc)
        return EXIT_SINK_FAULT
    finally:
        close_pool(pool)

    logger.info("graph schema ready (schema_version=%s)", SCHEMA_VERSION)
    return EXIT_OK


def _positive_int(text: str) -> int:
    value = int(text)
    if value < 1:
        raise argparse.ArgumentTypeError("must be >= 1")
    return value


def _non_negative_int(text: str) -> int:
    value = int(text)
    if value < 0:
        raise argparse.ArgumentTypeError("must be >= 0")
    return value


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="papergraph", description="Citation graph ingest CLI")
    p.add_argument("--version", action="version", version=f"{ENGINE_NAME} {ENGINE_VERSION}")
    sub = p.add_subparsers(dest="cmd", required=True)

    sp = sub.add_parser("insert", help="Insert line-delimited JSON records into the graph tables.")
    sp.add_argument("-d", "--data", required=True, help="Path to the line-delimited JSON record file.")
    sp.add_argument(
        "--min-citations",
        type=_non_negative_int,
        default=None,
        help="Admit records with strictly more incoming citations than this (or MIN_CITATIONS). Default: 1",
    )
    sp.add_argument(
        "--field-of-study",
        dest="fields_of_study",
        action="append",
        default=None,
        help="Allowed field of study; repeat for several (or FIELDS_OF_STUDY). Default: Computer Science",
    )
    sp.add_argument("--workers", type=_positive_int, default=None, help="Concurrent writers (or INGEST_WORKERS).")
    sp.add_argument(
        "--chunk-size", type=_positive_int, default=None, help="Max rows per insert statement (or WRITE_CHUNK_SIZE)."
    )
    sp.add_argument(
        "--on-sink-fault",
        choices=("abort", "skip"),
        default=None,
        help="Abort the run or skip the record on a sink fault (or ON_SINK_FAULT). Default: abort",
    )
    sp.add_argument("--db-url", default=None, help="Database URL (or DB_URL env var).")
    sp.set_defaults(func=cmd_insert)

    sp = sub.add_parser("init-db", help="Create the graph tables if they do not exist.")
    sp.add_argument("--db-url", default=None, help="Database URL (or DB_URL env var).")
    sp.set_defaults(func=cmd_init_db)

    return p


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        setup_logging()
    except ValidationError as exc:
        print(f"invalid configuration: {exc}", file=sys.stderr)
        return EXIT_INPUT_ERROR
    return int(args.func(args))


if __name__ == "__main__":
    sys.exit(main())
