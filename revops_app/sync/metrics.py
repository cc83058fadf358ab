"""Prometheus metrics helpers for the sync pipeline and payment recovery."""

from __future__ import annotations

from typing import Literal

try:
    from prometheus_client import Counter, Histogram

    _PROMETHEUS_AVAILABLE = True
except ImportError:  # pragma: no cover - metrics optional in some deployments
    Counter = Histogram = None  # type: ignore
    _PROMETHEUS_AVAILABLE = False


if _PROMETHEUS_AVAILABLE:
    _pages_counter = Counter(
        "sync_pages_total",
        "Source pages processed by outcome.",
        ["source", "outcome"],
    )
    _page_duration = Histogram(
        "sync_page_duration_seconds",
        "Duration of fetching, staging, and resolving one page.",
        ["source"],
        buckets=(0.1, 0.5, 1, 2, 5, 10, 30, 60, 120),
    )
    _records_counter = Counter(
        "sync_records_total",
        "Records resolved by action.",
        ["source", "action"],
    )
    _runs_finished_counter = Counter(
        "sync_runs_finished_total",
        "Sync runs reaching a terminal or paused state.",
        ["source", "status"],
    )
    _swept_counter = Counter(
        "sync_runs_swept_total",
        "Active runs reclaimed by the idle sweep.",
        ["source"],
    )
    _recovery_batches_counter = Counter(
        "recovery_batches_total",
        "Payment recovery batches processed by outcome.",
        ["outcome"],
    )
    _recovery_amount_counter = Counter(
        "recovery_amount_cents_total",
        "Invoice amounts seen by the recovery job, by result.",
        ["result"],
    )
else:  # pragma: no cover - fallbacks when prometheus_client missing
    _pages_counter = None
    _page_duration = None
    _records_counter = None
    _runs_finished_counter = None
    _swept_counter = None
    _recovery_batches_counter = None
    _recovery_amount_counter = None


def record_page(*, source: str, outcome: Literal["ok", "failed"], duration_seconds: float) -> None:
    """Count a processed page and observe its duration."""

    if _pages_counter is not None:
        _pages_counter.labels(source=source, outcome=outcome).inc()
    if _page_duration is not None:
        _page_duration.labels(source=source).observe(max(duration_seconds, 0.0))


def record_resolve_action(source: str, action: str, count: int = 1) -> None:
    if _records_counter is None or count <= 0:
        return
    _records_counter.labels(source=source, action=action).inc(count)


def record_run_finished(source: str, status: str) -> None:
    if _runs_finished_counter is None:
        return
    _runs_finished_counter.labels(source=source, status=status).inc()


def record_swept(source: str) -> None:
    if _swept_counter is None:
        return
    _swept_counter.labels(source=source).inc()


def record_recovery_batch(
    *,
    outcome: Literal["ok", "failed"],
    recovered_cents: int = 0,
    failed_cents: int = 0,
    skipped_cents: int = 0,
) -> None:
    """Capture totals for one recovery batch."""

    if _recovery_batches_counter is not None:
        _recovery_batches_counter.labels(outcome=outcome).inc()
    if _recovery_amount_counter is None:
        return
    for result, amount in (("recovered", recovered_cents), ("failed", failed_cents), ("skipped", skipped_cents)):
        if amount > 0:
            _recovery_amount_counter.labels(result=result).inc(amount)
