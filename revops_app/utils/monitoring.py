"""
Health checks and Prometheus exposition for the sync service.
"""

from __future__ import annotations

import os
import time
from datetime import datetime, timezone

from flask import Response, g, jsonify, request
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from config.monitoring import SyncMonitoring
from revops_app.models import SyncRun, db
from revops_app.models.sync import ACTIVE_STATUSES

try:  # pragma: no cover - optional dependency at runtime
    from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
except ImportError:  # pragma: no cover
    CONTENT_TYPE_LATEST = "text/plain"
    generate_latest = None


class HealthChecker:
    """Database and sync-state probes used by ``/health`` and ``/ready``."""

    @staticmethod
    def basic_health_check() -> tuple[dict, int]:
        try:
            db.session.execute(text("SELECT 1"))
        except SQLAlchemyError as exc:
            db.session.rollback()
            return {"status": "unhealthy", "database": "error", "error": str(exc)}, 503
        return {
            "status": "healthy",
            "database": "ok",
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }, 200

    @staticmethod
    def detailed_health_check(app) -> tuple[dict, int]:
        payload, status = HealthChecker.basic_health_check()
        if status != 200:
            return payload, status
        try:
            active = (
                db.session.query(SyncRun.source, SyncRun.id)
                .filter(SyncRun.status.in_(tuple(ACTIVE_STATUSES)))
                .all()
            )
        except SQLAlchemyError as exc:
            db.session.rollback()
            return {"status": "degraded", "database": "ok", "error": str(exc)}, 503
        payload["active_runs"] = {source: run_id for source, run_id in active}
        payload["sync_enabled"] = bool(app.config.get("SYNC_ENABLED"))
        payload["log_dir_exists"] = os.path.exists(app.config.get("LOG_DIR", "logs"))
        payload["version"] = app.config.get("APP_VERSION", "1.0.0")
        return payload, 200


def init_monitoring(app) -> None:
    """Register health endpoints, ``/metrics`` and request timing."""

    if "monitoring" in app.extensions:
        return
    app.extensions["monitoring"] = HealthChecker

    health_path = app.config.get("HEALTH_CHECK_ENDPOINT", "/health")

    @app.get(health_path, endpoint="health")
    def health():
        payload, status = HealthChecker.basic_health_check()
        return jsonify(payload), status

    @app.get(f"{health_path}/detailed", endpoint="health_detailed")
    def health_detailed():
        payload, status = HealthChecker.detailed_health_check(app)
        return jsonify(payload), status

    if app.config.get("MONITORING_ENABLED") and generate_latest is not None:

        @app.get(app.config.get("METRICS_ENDPOINT", "/metrics"), endpoint="metrics")
        def metrics():
            return Response(generate_latest(), mimetype=CONTENT_TYPE_LATEST)

    @app.before_request
    def _start_timer():
        g._request_started = time.perf_counter()

    @app.after_request
    def _record_request(response):
        started = g.pop("_request_started", None)
        if started is not None and request.blueprint == "sync":
            elapsed = time.perf_counter() - started
            SyncMonitoring.record_api_request(
                endpoint=request.endpoint or request.path,
                method=request.method,
                status_code=response.status_code,
                duration_seconds=elapsed,
            )
            threshold = float(app.config.get("SLOW_REQUEST_THRESHOLD_SECONDS") or 0)
            if threshold and elapsed > threshold:
                app.logger.warning(
                    "Slow sync request %s %s took %.2fs",
                    request.method,
                    request.path,
                    elapsed,
                    extra={"endpoint": request.endpoint, "duration_seconds": round(elapsed, 3)},
                )
        return response
