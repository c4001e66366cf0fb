import time
import os
import threading
from typing import Callable, Any, Dict, Optional, TypeVar, cast
import functools
from prometheus_client import (
    CollectorRegistry, Counter, Gauge, Histogram,
    push_to_gateway, start_http_server, REGISTRY,
    multiprocess, generate_latest
)
import logging

logger = logging.getLogger(__name__)

# Type variable for function signatures
F = TypeVar('F', bound=Callable[..., Any])

# Metrics configuration
METRICS_ENABLED = os.getenv("METRICS_ENABLED", "true").lower() == "true"
METRICS_HTTP_ENABLED = os.getenv("METRICS_HTTP_ENABLED", "true").lower() == "true"
METRICS_PORT = int(os.getenv("METRICS_PORT", "9090"))
PUSH_GATEWAY_URL = os.getenv("PUSH_GATEWAY_URL", "")
PUSH_INTERVAL_SECONDS = int(os.getenv("METRICS_PUSH_INTERVAL", "15"))
METRICS_JOB_NAME = os.getenv("METRICS_JOB_NAME", "command_scheduler")
METRICS_INSTANCE = os.getenv("METRICS_INSTANCE", os.getenv("HOSTNAME", "unknown"))

# Set when Celery runs prefork children; each child writes its samples here
MULTIPROC_DIR = os.getenv("PROMETHEUS_MULTIPROC_DIR", "")

# Run metrics
SCHEDULE_RUN_COUNT = Counter(
    "schedule_run_count",
    "Number of finished schedule runs",
    ["command_slug", "status"]
)

SCHEDULE_RUN_DURATION = Histogram(
    "schedule_run_duration_seconds",
    "Duration of schedule runs in seconds",
    ["command_slug"],
    buckets=(0.1, 0.5, 1, 2, 5, 10, 30, 60, 120, 300, 600, 1800, 3600)
)

# Scheduler loop metrics
LEASE_CONTENTION_COUNT = Counter(
    "lease_contention_count",
    "Number of lease acquisitions lost to another worker"
)

TICK_DURATION = Histogram(
    "scheduler_tick_duration_seconds",
    "Duration of scheduler ticks in seconds",
    buckets=(0.01, 0.05, 0.1, 0.5, 1, 5, 10, 30, 60, 300)
)

DUE_SCHEDULES = Gauge(
    "due_schedules",
    "Number of schedules in the due set at the last tick"
)

STUCK_RUNS = Gauge(
    "stuck_runs",
    "Number of runs left running for longer than the lease TTL"
)


def setup_metrics(
    enable_http: bool = METRICS_HTTP_ENABLED,
    push_interval: int = PUSH_INTERVAL_SECONDS,
) -> Optional[CollectorRegistry]:
    """
    Start exporting scheduler metrics from this process.

    In multiprocess mode (PROMETHEUS_MULTIPROC_DIR set) a dedicated registry
    aggregates the samples written by every worker child. Metrics are pushed
    to a Pushgateway as well when PUSH_GATEWAY_URL is configured.

    Returns the registry being exported, or None when metrics are disabled.
    """
    if not METRICS_ENABLED:
        logger.info("Metrics collection is disabled")
        return None

    registry = REGISTRY
    if MULTIPROC_DIR:
        logger.info(f"Collecting multiprocess metrics from {MULTIPROC_DIR}")
        registry = CollectorRegistry()
        multiprocess.MultiProcessCollector(registry)

    if enable_http:
        try:
            start_http_server(METRICS_PORT, registry=registry)
            logger.info(f"Metrics HTTP server listening on port {METRICS_PORT}")
        except OSError as e:
            logger.error(f"Failed to start metrics HTTP server on port {METRICS_PORT}: {str(e)}")

    if PUSH_GATEWAY_URL:
        logger.info(f"Pushing metrics to {PUSH_GATEWAY_URL} every {push_interval}s")
        thread = threading.Thread(
            target=_push_loop, args=(registry, push_interval), name="metrics-push", daemon=True
        )
        thread.start()

    return registry


def _push_loop(registry: CollectorRegistry, interval: int) -> None:
    while True:
        try:
            push_to_gateway(
                PUSH_GATEWAY_URL,
                job=METRICS_JOB_NAME,
                registry=registry,
                grouping_key={"instance": METRICS_INSTANCE}
            )
        except OSError as e:
            logger.error(f"Failed to push metrics to gateway: {str(e)}")
        time.sleep(interval)


def timing_metric(
    histogram: Histogram,
    labels: Optional[Dict[str, str]] = None,
) -> Callable[[F], F]:
    """
    Decorator to measure and record the execution time of a function.

    Args:
        histogram: The Prometheus histogram to record to
        labels: Labels to apply to the metric
    """
    def decorator(func: F) -> F:
        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            if not METRICS_ENABLED:
                return func(*args, **kwargs)

            started = time.monotonic()
            try:
                return func(*args, **kwargs)
            finally:
                duration = time.monotonic() - started
                if labels:
                    histogram.labels(**labels).observe(duration)
                else:
                    histogram.observe(duration)

        return cast(F, wrapper)

    return decorator


def record_run_metrics(command_slug: str, status: str, duration: float) -> None:
    """Record one finished run. ``duration`` is in seconds."""
    if not METRICS_ENABLED:
        return

    SCHEDULE_RUN_COUNT.labels(command_slug=command_slug, status=status).inc()
    SCHEDULE_RUN_DURATION.labels(command_slug=command_slug).observe(duration)


def record_lease_contention() -> None:
    if not METRICS_ENABLED:
        return

    LEASE_CONTENTION_COUNT.inc()


def set_due_schedules(count: int) -> None:
    if not METRICS_ENABLED:
        return

    DUE_SCHEDULES.set(count)


def set_stuck_runs(count: int) -> None:
    if not METRICS_ENABLED:
        return

    STUCK_RUNS.set(count)


def get_metrics() -> bytes:
    """Get the current metrics in Prometheus text format."""
    if not METRICS_ENABLED:
        return b""

    return generate_latest(REGISTRY)
