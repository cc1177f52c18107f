"""Prometheus metrics helpers for directory sync."""

from __future__ import annotations

from typing import Literal, Mapping

from prometheus_client import Counter, Histogram

_sync_runs_counter = Counter(
    "identity_sync_runs_total",
    "Directory sync runs by type and terminal status.",
    ["sync_type", "status"],
)
_sync_run_duration = Histogram(
    "identity_sync_run_duration_seconds",
    "Wall-clock duration of directory sync runs in seconds.",
    ["sync_type"],
    buckets=(1, 5, 15, 30, 60, 120, 300, 600, 1800),
)
_sync_records_counter = Counter(
    "identity_sync_records_total",
    "Directory records reconciled by outcome.",
    ["outcome"],
)
_protected_skip_counter = Counter(
    "identity_sync_protected_field_skips_total",
    "Directory values withheld because the local field was protected.",
    ["field"],
)
_lock_rejections_counter = Counter(
    "identity_sync_lock_rejections_total",
    "Sync start requests rejected because another run held the lock.",
)


def record_sync_run(
    *,
    sync_type: str,
    status: Literal["completed", "failed"],
    duration_seconds: float | None,
) -> None:
    _sync_runs_counter.labels(sync_type=sync_type, status=status).inc()
    if duration_seconds is not None:
        _sync_run_duration.labels(sync_type=sync_type).observe(duration_seconds)


def record_sync_outcomes(counts: Mapping[str, int]) -> None:
    """Add per-outcome record counts (``created``, ``updated``...) from a finished run."""

    for outcome, count in counts.items():
        if outcome == "seen" or not count:
            continue
        _sync_records_counter.labels(outcome=outcome).inc(count)


def record_protected_skip(field: str) -> None:
    _protected_skip_counter.labels(field=field).inc()


def record_lock_rejection() -> None:
    _lock_rejections_counter.inc()
