"""Prometheus counters and histograms for the capture pipeline."""

from __future__ import annotations

from prometheus_client import Counter, Histogram

JOBS_TOTAL = Counter(
    "pagesnap_jobs_total",
    "Capture jobs that reached a terminal state",
    labelnames=("status",),
)
CAPTURE_SECONDS = Histogram(
    "pagesnap_capture_seconds",
    "Wall-clock time spent in the capture pipeline",
    buckets=(0.5, 1, 2, 5, 10, 20, 30, 60, 120),
)
BROWSER_LAUNCHES_TOTAL = Counter(
    "pagesnap_browser_launches_total",
    "Chromium launches performed by the renderer controller",
)
READINESS_DEGRADED_TOTAL = Counter(
    "pagesnap_readiness_degraded_total",
    "Readiness heuristic runs that fell back to a flat wait",
)
STORAGE_UPLOADS_TOTAL = Counter(
    "pagesnap_storage_uploads_total",
    "Object storage uploads by outcome",
    labelnames=("result",),
)


def record_job_completion(status: str) -> None:
    JOBS_TOTAL.labels(status=status).inc()


def observe_capture_seconds(seconds: float) -> None:
    CAPTURE_SECONDS.observe(max(0.0, seconds))


def record_browser_launch() -> None:
    BROWSER_LAUNCHES_TOTAL.inc()


def record_readiness_degraded() -> None:
    READINESS_DEGRADED_TOTAL.inc()


def record_storage_upload(success: bool) -> None:
    STORAGE_UPLOADS_TOTAL.labels(result="success" if success else "failure").inc()
