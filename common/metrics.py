from __future__ import annotations

"""
Prometheus metrics for the loyalty workers.

Collectors are created lazily on first use so importing this module never
touches the default registry (tests import it many times across workers).
"""

import logging
import time
from contextlib import contextmanager
from typing import TYPE_CHECKING, Iterator, Optional

if TYPE_CHECKING:  # pragma: no cover - type hints only
    from prometheus_client import Counter as _Counter, Histogram as _Histogram

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Lazy singletons
# ---------------------------------------------------------------------------

_MESSAGES_COUNTER: Optional["_Counter"] = None
_EMITTED_COUNTER: Optional["_Counter"] = None
_PROCESSING_LATENCY_SECONDS: Optional["_Histogram"] = None


def _get_messages_counter() -> "_Counter":
    global _MESSAGES_COUNTER
    if _MESSAGES_COUNTER is None:
        from prometheus_client import Counter

        _MESSAGES_COUNTER = Counter(
            "loyalty_messages_total",
            "Inbound loyalty messages handled, by rule and outcome.",
            labelnames=("rule", "outcome"),
        )
    return _MESSAGES_COUNTER


def _get_emitted_counter() -> "_Counter":
    global _EMITTED_COUNTER
    if _EMITTED_COUNTER is None:
        from prometheus_client import Counter

        _EMITTED_COUNTER = Counter(
            "loyalty_events_emitted_total",
            "Derived events acknowledged by the broker.",
            labelnames=("rule", "topic"),
        )
    return _EMITTED_COUNTER


def _get_processing_latency() -> "_Histogram":
    global _PROCESSING_LATENCY_SECONDS
    if _PROCESSING_LATENCY_SECONDS is None:
        from prometheus_client import Histogram

        _PROCESSING_LATENCY_SECONDS = Histogram(
            "loyalty_processing_latency_seconds",
            "Time spent handling one inbound message, including publish and commit.",
            labelnames=("rule",),
        )
    return _PROCESSING_LATENCY_SECONDS


# ---------------------------------------------------------------------------
# Public helpers
# ---------------------------------------------------------------------------


def record_message(rule: str, outcome: str) -> None:
    _get_messages_counter().labels(rule=rule, outcome=outcome).inc()


def record_emitted(rule: str, topic: str) -> None:
    _get_emitted_counter().labels(rule=rule, topic=topic).inc()


@contextmanager
def track_processing(rule: str) -> Iterator[None]:
    start = time.perf_counter()
    try:
        yield
    finally:
        _get_processing_latency().labels(rule=rule).observe(time.perf_counter() - start)


def start_metrics_server(port: int) -> None:
    from prometheus_client import start_http_server

    start_http_server(port)
    logger.info("Prometheus metrics exposed on port %d", port)


__all__ = [
    "record_emitted",
    "record_message",
    "start_metrics_server",
    "track_processing",
]
