"""
monitoring/logger.py
Structured logging, Prometheus metrics, timing decorators.
"""
import functools
import logging
import time
from typing import Any, Callable


def get_logger(name: str):
    """Return a structlog logger. Imports structlog on first call only."""
    import structlog
    return structlog.get_logger(name)


def _ensure_configured():
    """Configure structlog once. Called lazily."""
    import structlog
    if structlog.is_configured():
        return
    from config.settings import settings
    structlog.configure(
        processors=[
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(message)s",
    )


_ensure_configured()


# ── Prometheus Metrics (created lazily on first access) ───────────────────────

class _LazyMetric:
    """Wraps a Prometheus metric and creates it on first use."""
    def __init__(self, factory, *args, **kwargs):
        self._factory = factory
        self._args = args
        self._kwargs = kwargs
        self._metric = None

    def _get(self):
        if self._metric is None:
            self._metric = self._factory(*self._args, **self._kwargs)
        return self._metric

    def labels(self, **kw):
        return self._get().labels(**kw)

    def inc(self):
        self._get().inc()

    def observe(self, v):
        self._get().observe(v)


def _make_counter(name, desc, labels=()):
    from prometheus_client import Counter
    return _LazyMetric(Counter, name, desc, list(labels))

def _make_histogram(name, desc, labels=(), buckets=None):
    from prometheus_client import Histogram
    kw = {}
    if buckets:
        kw["buckets"] = buckets
    return _LazyMetric(Histogram, name, desc, list(labels), **kw)


LIFECYCLE_OPERATIONS = _make_counter(
    "parking_lifecycle_operations_total", "Reservation lifecycle operations", ["operation", "status"]
)
PRICING_LATENCY = _make_histogram(
    "parking_pricing_duration_seconds", "Calculator latency", ["calculator"],
    [0.0005, 0.001, 0.005, 0.01, 0.05, 0.1],
)
LEDGER_ENTRIES   = _make_counter("parking_ledger_entries_total", "Billing entries written", ["kind"])
PAYMENT_FAILURES = _make_counter("parking_payment_failures_total", "Gateway declines and timeouts", ["operation"])

metrics = {
    "lifecycle_operations": LIFECYCLE_OPERATIONS,
    "pricing_latency":      PRICING_LATENCY,
    "ledger_entries":       LEDGER_ENTRIES,
    "payment_failures":     PAYMENT_FAILURES,
}


def start_metrics_server(port: int = 9090) -> None:
    try:
        from prometheus_client import start_http_server
        start_http_server(port)
        get_logger("monitoring").info("Prometheus metrics server started", port=port)
    except OSError as exc:
        get_logger("monitoring").warning("Could not start metrics server", error=str(exc))


def timed(label: str = "unknown") -> Callable:
    def decorator(fn: Callable) -> Callable:
        @functools.wraps(fn)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            t0 = time.perf_counter()
            try:
                return fn(*args, **kwargs)
            finally:
                PRICING_LATENCY.labels(calculator=label).observe(time.perf_counter() - t0)
        return wrapper
    return decorator


logger = get_logger("parking")
