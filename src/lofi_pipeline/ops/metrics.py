from __future__ import annotations

import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager, suppress

from prometheus_client import CollectorRegistry, Counter, Histogram

REGISTRY = CollectorRegistry()

# Latency buckets (seconds) for ffmpeg / download stages.
PIPELINE_BUCKETS = (
    0.25,
    0.5,
    1.0,
    2.5,
    5.0,
    10.0,
    20.0,
    30.0,
    60.0,
    120.0,
    300.0,
    600.0,
    900.0,
)

# Jobs
jobs_submitted = Counter("lofi_jobs_submitted_total", "Jobs accepted", registry=REGISTRY)
jobs_finished = Counter(
    "lofi_jobs_finished_total",
    "Jobs finished by final status",
    labelnames=("status",),
    registry=REGISTRY,
)
job_failures = Counter(
    "lofi_job_failures_total",
    "Failed jobs by error code",
    labelnames=("code",),
    registry=REGISTRY,
)
attempts_retried = Counter(
    "lofi_attempts_retried_total", "Queue-level attempt retries", registry=REGISTRY
)

# Pipeline
stage_seconds = Histogram(
    "lofi_stage_seconds",
    "Pipeline stage latency (seconds)",
    labelnames=("stage",),
    registry=REGISTRY,
    buckets=PIPELINE_BUCKETS,
)
loudness_repairs = Counter(
    "lofi_loudness_repairs_total",
    "Corrective gain boosts applied",
    labelnames=("stage",),
    registry=REGISTRY,
)
textures_skipped = Counter(
    "lofi_textures_skipped_total",
    "Texture layering skipped or discarded",
    labelnames=("reason",),
    registry=REGISTRY,
)


@contextmanager
def time_hist(h: Histogram) -> Iterator[Callable[[], float]]:
    """
    Context manager to time a block and observe into a histogram.
    Usage:
        with time_hist(stage_seconds.labels(stage="transform")) as elapsed:
            ...
        dt = elapsed()
    """
    t0 = time.perf_counter()
    dt: float | None = None

    def elapsed() -> float:
        return float(dt or 0.0)

    try:
        yield elapsed
    finally:
        dt = max(0.0, time.perf_counter() - t0)
        with suppress(Exception):
            h.observe(dt)
