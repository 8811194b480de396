"""Prometheus metrics for the relay.

All metric objects are module-level singletons registered on the default
registry and exposed by the ``/metrics`` route.
"""

from __future__ import annotations

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest

ACTIVE_CONNECTIONS = Gauge("ccrelay_active_connections", "Currently open client connections")
CONNECTIONS_REFUSED_TOTAL = Counter(
    "ccrelay_connections_refused_total",
    "Client connections refused at accept time",
    ["reason"],
)
TURNS_STARTED_TOTAL = Counter("ccrelay_turns_started_total", "CLI turns spawned")
TURNS_FINISHED_TOTAL = Counter(
    "ccrelay_turns_finished_total",
    "CLI turns finished, by outcome",
    ["outcome"],
)
TURN_DURATION_SECONDS = Histogram(
    "ccrelay_turn_duration_seconds",
    "Wall time from spawn to process exit",
)
DECODER_OVERFLOWS_TOTAL = Counter(
    "ccrelay_decoder_overflows_total",
    "Turns aborted because the stream decoder buffer overflowed",
)

METRICS_CONTENT_TYPE = CONTENT_TYPE_LATEST


def metrics_generate_latest() -> bytes:
    return generate_latest()


__all__ = [
    "ACTIVE_CONNECTIONS",
    "CONNECTIONS_REFUSED_TOTAL",
    "DECODER_OVERFLOWS_TOTAL",
    "METRICS_CONTENT_TYPE",
    "TURNS_FINISHED_TOTAL",
    "TURNS_STARTED_TOTAL",
    "TURN_DURATION_SECONDS",
    "metrics_generate_latest",
]
