"""
Prometheus Metrics for Observability

Tracks pipeline stage latency, job outcomes, queue dead-letters and result
cache effectiveness. Exposes /api/v1/metrics for Prometheus scraping.
"""

import time
from contextlib import contextmanager

from prometheus_client import (
    Counter,
    Histogram,
    Gauge,
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
    "pipeline_latency_seconds",
    "Time spent in each transformation stage",
    labelnames=["stage", "status"],
    buckets=[0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0]
)

# Jobs Counter
jobs_total = Counter(
    "transform_jobs_total",
    "Transformation jobs by outcome",
    labelnames=["outcome"]
)

# Active Jobs
active_jobs_gauge = Gauge(
    "transform_active_jobs",
    "Number of jobs currently executing in this process"
)

jobs_dead_lettered_total = Counter(
    "transform_jobs_dead_lettered_total",
    "Jobs routed to the dead-letter queue",
    labelnames=["reason"]
)

# Cache Metrics
cache_requests_total = Counter(
    "result_cache_requests_total",
    "Result cache lookups",
    labelnames=["backend", "result"]  # result: hit, miss, error
)

cache_evictions_total = Counter(
    "result_cache_evictions_total",
    "Entries evicted from the result cache",
    labelnames=["backend", "reason"]  # reason: capacity, expired
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
    "imagery_transform",
    "Application information"
)


# =============================================================================
# Helper Functions
# =============================================================================

def set_app_info(version: str, environment: str):
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
    start = time.time()
    status = "success"
    try:
        yield
    except Exception:
        status = "error"
        raise
    finally:
        pipeline_latency_seconds.labels(stage=stage, status=status).observe(time.time() - start)


def record_job_outcome(outcome: str):
    """Record a worker outcome: completed, failed, retry, skipped."""
    jobs_total.labels(outcome=outcome).inc()


def record_dead_letter(reason: str):
    jobs_dead_lettered_total.labels(reason=reason).inc()


def record_cache_lookup(backend: str, result: str):
    cache_requests_total.labels(backend=backend, result=result).inc()


def record_cache_eviction(backend: str, reason: str, count: int = 1):
    if count:
        cache_evictions_total.labels(backend=backend, reason=reason).inc(count)


def get_metrics() -> bytes:
    """Generate Prometheus metrics output."""
    return generate_latest(REGISTRY)


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
