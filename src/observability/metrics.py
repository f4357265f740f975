"""Prometheus metrics for poller observability.

Counters and histograms are module-level collectors registered once per
process. The HTTP exporter is started explicitly by long-running entry
points (the poll loop), never on import.
"""

from __future__ import annotations

import os
import threading
from typing import Final

from prometheus_client import Counter, Histogram, start_http_server

from src.config.logging_config import get_logger

logger = get_logger(__name__)

POLL_RUNS_TOTAL: Final[Counter] = Counter(
    "celebration_poll_runs_total",
    "Total number of poller invocations",
    labelnames=("variant", "status"),
)

POLL_EVENTS_TOTAL: Final[Counter] = Counter(
    "celebration_poll_events_total",
    "Sale events seen by pollers, by outcome",
    labelnames=("variant", "outcome"),
)

CELEBRATIONS_TOTAL: Final[Counter] = Counter(
    "celebration_deliveries_total",
    "Per-channel celebration delivery attempts, by outcome",
    labelnames=("celebration_type", "outcome"),
)

POLL_RUN_DURATION_SECONDS: Final[Histogram] = Histogram(
    "celebration_poll_run_duration_seconds",
    "Duration of poller invocations in seconds",
    labelnames=("variant",),
)

_EXPORTER_LOCK = threading.Lock()
_EXPORTER_STARTED = False
_DEFAULT_METRICS_PORT: Final[int] = 9000
_METRICS_PORT_ENV: Final[str] = "METRICS_PORT"


def _resolve_metrics_port(port: int | None) -> int:
    if port is not None:
        return port
    port_raw = os.getenv(_METRICS_PORT_ENV)
    try:
        return int(port_raw) if port_raw else _DEFAULT_METRICS_PORT
    except ValueError:
        logger.warning("invalid_metrics_port", port=port_raw)
        return _DEFAULT_METRICS_PORT


def ensure_metrics_exporter(port: int | None = None) -> None:
    """Start Prometheus HTTP exporter once per process."""

    global _EXPORTER_STARTED
    with _EXPORTER_LOCK:
        if _EXPORTER_STARTED:
            return

        resolved_port = _resolve_metrics_port(port)

        try:
            start_http_server(resolved_port)
        except OSError as exc:
            logger.error(
                "metrics_exporter_start_failed",
                port=resolved_port,
                error=str(exc),
            )
            raise

        _EXPORTER_STARTED = True
        logger.info("metrics_exporter_started", port=resolved_port)


__all__ = [
    "CELEBRATIONS_TOTAL",
    "POLL_EVENTS_TOTAL",
    "POLL_RUNS_TOTAL",
    "POLL_RUN_DURATION_SECONDS",
    "ensure_metrics_exporter",
]
