"""Prometheus metrics helpers for the sync engine."""

from __future__ import annotations

from typing import Literal

from prometheus_client import Counter, Gauge, Histogram

_sync_runs_counter = Counter(
    "sync_runs_total",
    "Sync runs by terminal status.",
    ["status", "dry_run"],
)
_sync_run_duration = Histogram(
    "sync_run_duration_seconds",
    "Duration of sync runs in seconds.",
    buckets=(0.5, 1, 2, 5, 10, 30, 60, 120, 300, 600),
)
_sync_rows_counter = Counter(
    "sync_rows_total",
    "Rows handled by the sync engine by outcome.",
    ["entity", "outcome"],
)
_sync_lock_conflicts = Counter(
    "sync_lock_conflicts_total",
    "Sync attempts rejected because the tab lock was held.",
)
_lineage_writes_counter = Counter(
    "sync_lineage_writes_total",
    "Field lineage rows written.",
    ["entity"],
)
_reconciliation_counter = Counter(
    "partner_type_reconciliation_total",
    "Partner-type reconciliation outcomes per partner.",
    ["outcome"],
)
_stale_runs_gauge = Gauge(
    "sync_stale_runs_reaped_last",
    "Number of stale sync runs reaped on the last sweep.",
)


def record_sync_run(*, status: str, dry_run: bool, duration_seconds: float) -> None:
    """Capture one finished sync run."""

    _sync_runs_counter.labels(status=status, dry_run="true" if dry_run else "false").inc()
    _sync_run_duration.observe(duration_seconds)


def record_sync_rows(entity: str, *, created: int, updated: int, skipped: int) -> None:
    for outcome, count in (("created", created), ("updated", updated), ("skipped", skipped)):
        if count:
            _sync_rows_counter.labels(entity=entity, outcome=outcome).inc(count)


def record_lock_conflict() -> None:
    _sync_lock_conflicts.inc()


def record_lineage_writes(entity: str, count: int) -> None:
    if count:
        _lineage_writes_counter.labels(entity=entity).inc(count)


def record_reconciliation(outcome: Literal["updated", "unchanged", "failed"], count: int = 1) -> None:
    if count:
        _reconciliation_counter.labels(outcome=outcome).inc(count)


def record_stale_runs_reaped(count: int) -> None:
    _stale_runs_gauge.set(count)
