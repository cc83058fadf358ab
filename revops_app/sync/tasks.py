"""
Sync Celery tasks.

``continue_run`` processes one page per invocation and re-enqueues itself while
the run reports more pages, so no single task holds a worker for a whole sync.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

from celery import shared_task
from flask import current_app

from revops_app.models import SyncRun, SyncRunStatus, db

from .pipeline.controller import SyncRunController


@shared_task(name="sync.healthcheck", bind=True)
def sync_healthcheck(self) -> dict[str, Any]:
    """Heartbeat task used by worker health checks."""
    return {
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "worker_hostname": self.request.hostname,
        "app_version": getattr(self.app, "user_options", {}).get("version"),
    }


@shared_task(name="sync.pipeline.continue_run", bind=True)
def continue_run(self, *, run_id: str, chain: bool = True) -> dict[str, Any]:
    """Process the next page of ``run_id`` and schedule the following one."""

    controller = SyncRunController()
    try:
        outcome = controller.process_next_page(run_id)
    except Exception as exc:
        # controller already recorded the failure when the run existed
        db.session.rollback()
        run = db.session.get(SyncRun, run_id)
        if run is not None and run.is_active:
            run.status = SyncRunStatus.FAILED
            run.error_message = str(exc)
            run.completed_at = datetime.now(timezone.utc)
            db.session.commit()
        current_app.logger.exception(
            "Sync page task failed",
            extra={"sync_run_id": run_id, "sync_task_id": self.request.id},
        )
        raise

    current_app.logger.info(
        "Sync page processed",
        extra={
            "sync_run_id": run_id,
            "sync_status": outcome.status.value,
            "sync_has_more": outcome.has_more,
            "sync_records_processed": outcome.records_processed,
        },
    )
    if chain and outcome.has_more:
        self.apply_async(kwargs={"run_id": run_id, "chain": True})
    return outcome.as_dict()


@shared_task(name="sync.maintenance.sweep_stale", bind=True)
def sweep_stale_runs(self, *, source: str | None = None, idle_minutes: int | None = None) -> dict[str, Any]:
    """Fail active runs whose heartbeat is older than the stale timeout."""

    idle_threshold = timedelta(minutes=int(idle_minutes)) if idle_minutes else None
    cleaned = SyncRunController().sweep_stale(source=source, idle_threshold=idle_threshold)
    if cleaned:
        current_app.logger.warning(
            "Stale sync runs reclaimed",
            extra={"sync_source": source, "sync_cleaned_count": cleaned},
        )
    return {"cleaned_count": cleaned}
