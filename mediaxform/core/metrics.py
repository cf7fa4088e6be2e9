"""
Prometheus Metrics for Observability

Tracks pipeline stage latency, transform outcomes and cache effectiveness.
Exposes /api/v1/metrics for Prometheus scraping.
"""

import time
from contextlib import contextmanager

from prometheus_client import (
    Counter,
    Histogram,
    Info,
    generate_latest,
    CONTENT_TYPE_LATEST,
    REGISTRY
)

# =============================================================================
# Metrics Definitions
# =============================================================================

# Pipeline Latency - Per Stage
pipeline_latency_seconds = Histogram(
    "pipeline_stage_latency_seconds",
    "Time spent in each pipeline stage",
    labelnames=["stage", "status"],
    buckets=[0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0]
)

# Dispatcher outcomes (queued, not_found, invalid_spec, ...)
transform_requests_total = Counter(
    "transform_requests_total",
    "Transform requests seen by the dispatcher",
    labelnames=["outcome"]
)

# Worker outcomes (cache_hit, completed, lease_held, dropped_<error>)
transform_jobs_total = Counter(
    "transform_jobs_total",
    "Transform messages handled by workers",
    labelnames=["outcome"]
)

# Cache Metrics
cache_hits_total = Counter(
    "cache_hits_total",
    "Total cache hits",
    labelnames=["cache_type"]
)

cache_misses_total = Counter(
    "cache_misses_total",
    "Total cache misses",
    labelnames=["cache_type"]
)

# API Request Metrics
http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "endpoint", "status"]
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration",
    labelnames=["method", "endpoint"],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0]
)

# Application Info
app_info = Info(
    "media_transform_app",
    "Application information"
)


# =============================================================================
# Helper Functions
# =============================================================================

def set_app_info(version: str, environment: str):
    """Set application info metric."""
    app_info.info({
        "version": version,
        "environment": environment
    })


@contextmanager
def track_stage_latency(stage: str):
    """
    Context manager to track stage latency.

    Usage:
        with track_stage_latency("resize"):
            # do work
    """
    start = time.perf_counter()
    status = "success"
    try:
        yield
    except Exception:
        status = "error"
        raise
    finally:
        pipeline_latency_seconds.labels(stage=stage, status=status).observe(time.perf_counter() - start)


def record_cache_lookup(cache_type: str, hit: bool):
    """Record a read-through cache lookup for a key family (obj, list, xform)."""
    if hit:
        cache_hits_total.labels(cache_type=cache_type).inc()
    else:
        cache_misses_total.labels(cache_type=cache_type).inc()


def record_transform_request(outcome: str):
    transform_requests_total.labels(outcome=outcome).inc()


def record_transform_job(outcome: str):
    transform_jobs_total.labels(outcome=outcome).inc()


def get_metrics() -> bytes:
    """Generate Prometheus metrics output."""
    return generate_latest(REGISTRY)


def get_metrics_content_type() -> str:
    """Get the content type for Prometheus metrics."""
    return CONTENT_TYPE_LATEST
