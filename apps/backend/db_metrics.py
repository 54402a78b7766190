"""
db_metrics.py

Query-timing helpers for the sink layer.

- Slow statements are logged with stable, machine-parseable fields.
- An optional histogram emitter hook lets callers forward timings to a
  metrics backend.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager

from infra.config import get_settings

_LOGGER = logging.getLogger(__name__)
_HISTOGRAM_NAME = "db_query_duration_ms"
_METRIC_EMITTER: Callable[[str, float, Sequence[str]], None] | None = None


def register_histogram_emitter(emitter: Callable[[str, float, Sequence[str]], None] | None) -> None:
    """Register (or clear, with None) a histogram callback.

    The callback receives the metric name, the duration in milliseconds and
    tags such as ``["query:insert:papers"]``.
    """
    global _METRIC_EMITTER
    _METRIC_EMITTER = emitter


def _emit_histogram(value: float, tags: Sequence[str]) -> None:
    if _METRIC_EMITTER is None:
        return
    try:
        _METRIC_EMITTER(_HISTOGRAM_NAME, value, tags)
    except (TypeError, ValueError, RuntimeError) as exc:
        _LOGGER.debug("db metric emitter failed: %s", exc)


@contextmanager
def measure_query(name: str) -> Iterator[None]:
    """Time the wrapped statement, warn when it is slow and emit a histogram sample."""
    cfg = get_settings().db_metrics
    if not cfg.metrics_enabled:
        yield
        return

    start = time.perf_counter()
    try:
        yield
    finally:
        duration_ms = round((time.perf_counter() - start) * 1000.0, 2)
        if duration_ms >= cfg.slow_query_threshold_ms:
            _LOGGER.warning("slow_query query_name=%s duration_ms=%.2f", name, duration_ms)
        _emit_histogram(duration_ms, [f"query:{name}"])
