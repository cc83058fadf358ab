"""
Sync blueprint: admin JSON API for runs, identity unification, and recovery.
"""

from __future__ import annotations

from datetime import timedelta
from http import HTTPStatus
from typing import Any, Mapping

from celery.exceptions import TimeoutError as CeleryTimeoutError
from flask import Blueprint, current_app, jsonify, request
from flask_login import current_user

from config.monitoring import SyncMonitoring
from revops_app.auth import is_admin_key_configured
from revops_app.models import db

from .celery_app import DEFAULT_QUEUE_NAME, get_celery_app
from .errors import (
    AuthError,
    ConflictError,
    InvalidTransition,
    RunNotFound,
    SyncError,
    TransportError,
    ValidationError,
)
from .pipeline.controller import SyncRunController
from .pipeline.resolver import (
    DEFAULT_WEBHOOK_SOURCE,
    IdentityResolver,
    build_record_from_unify_payload,
    unify_identity,
)
from .pipeline.run_service import RunFilters, SyncRunService
from .recovery.service import RecoveryInterrupted, RevenueRecoveryService
from .registry import SourceDescriptor

sync_blueprint = Blueprint("sync", __name__, url_prefix="/sync")

UNIFY_CHUNK_SIZE = 10
MAX_ERROR_DETAILS = 10

_ERROR_STATUS: tuple[tuple[type[SyncError], HTTPStatus], ...] = (
    (ConflictError, HTTPStatus.CONFLICT),
    (InvalidTransition, HTTPStatus.CONFLICT),
    (RunNotFound, HTTPStatus.NOT_FOUND),
    (ValidationError, HTTPStatus.BAD_REQUEST),
    (AuthError, HTTPStatus.BAD_GATEWAY),
    (TransportError, HTTPStatus.BAD_GATEWAY),
)


def _json_error(message: str, status: HTTPStatus, **extra: Any):
    return jsonify({"error": message, **extra}), status


def _sync_error_response(exc: SyncError):
    for error_cls, status in _ERROR_STATUS:
        if isinstance(exc, error_cls):
            break
    else:
        status = HTTPStatus.INTERNAL_SERVER_ERROR
    extra: dict[str, Any] = {"code": exc.code}
    if isinstance(exc, ConflictError) and exc.active_run_id:
        extra["active_run_id"] = exc.active_run_id
    return _json_error(str(exc), status, **extra)


def _json_body() -> Mapping[str, Any]:
    payload = request.get_json(silent=True)
    return payload if isinstance(payload, Mapping) else {}


def _serialize_source(source: SourceDescriptor) -> dict:
    return {
        "name": source.name,
        "title": source.title,
        "summary": source.summary,
        "has_adapter": source.has_adapter,
    }


@sync_blueprint.before_request
def _ensure_admin_api():
    if not is_admin_key_configured(current_app):
        return _json_error("Sync admin key is not configured.", HTTPStatus.SERVICE_UNAVAILABLE)
    if not current_user.is_authenticated:
        return _json_error("Authentication required.", HTTPStatus.UNAUTHORIZED)
    return None


# ----------------------------------------------------------------------
# Health
# ----------------------------------------------------------------------
@sync_blueprint.get("/health")
def sync_healthcheck():
    """Report the sources mounted by this deployment."""
    state = current_app.extensions.get("sync", {})
    return (
        jsonify(
            {
                "status": "ok",
                "enabled": state.get("enabled", False),
                "sources": [_serialize_source(source) for source in state.get("active_sources", ())],
                "missing_config": state.get("missing_config", {}),
            }
        ),
        200,
    )


@sync_blueprint.get("/worker_health")
def sync_worker_health():
    """Validate sync worker availability via the heartbeat task."""
    state = current_app.extensions.get("sync", {})
    worker_enabled = state.get("worker_enabled", False)
    timeout_seconds = float(request.args.get("timeout", 5))
    payload: dict[str, Any] = {
        "sync_enabled": state.get("enabled", False),
        "worker_enabled": worker_enabled,
        "queue": DEFAULT_QUEUE_NAME,
        "timeout_seconds": timeout_seconds,
    }
    if not worker_enabled:
        payload["status"] = "disabled"
        payload["message"] = "Worker flag disabled; start the worker or set SYNC_WORKER_ENABLED=true."
        return jsonify(payload), 200

    celery_app = get_celery_app(current_app)
    if celery_app is None:
        payload.update(status="error", error="celery_app_unavailable")
        return jsonify(payload), 500
    task = celery_app.tasks.get("sync.healthcheck")
    if task is None:
        payload.update(status="error", error="heartbeat_task_missing")
        return jsonify(payload), 500

    result = task.apply_async()
    try:
        payload["heartbeat"] = result.get(timeout=timeout_seconds)
        payload["status"] = "ok"
        return jsonify(payload), 200
    except CeleryTimeoutError:
        payload["status"] = "timeout"
        return jsonify(payload), 504
    except Exception as exc:  # pragma: no cover
        current_app.logger.exception("Sync worker health check failed.", exc_info=exc)
        payload.update(status="error", error=str(exc))
        return jsonify(payload), 500


# ----------------------------------------------------------------------
# Runs
# ----------------------------------------------------------------------
def _split_csv(value: str | None) -> list[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


@sync_blueprint.post("/runs")
def sync_runs_start():
    body = _json_body()
    source = body.get("source")
    if not source:
        return _json_error("source is required.", HTTPStatus.BAD_REQUEST)
    params = dict(body.get("params") or {})
    params.setdefault("triggered_by", "api")
    try:
        run = SyncRunController().start(source, dry_run=bool(body.get("dry_run", False)), params=params)
    except SyncError as exc:
        return _sync_error_response(exc)

    payload = {"sync_run_id": run.id, "status": run.status.value, "source": run.source, "dry_run": run.dry_run}
    if body.get("enqueue") and current_app.extensions.get("sync", {}).get("worker_enabled"):
        celery_app = get_celery_app(current_app)
        if celery_app is not None:
            payload["task_id"] = celery_app.send_task("sync.pipeline.continue_run", kwargs={"run_id": run.id}).id
    return jsonify(payload), HTTPStatus.CREATED


@sync_blueprint.get("/runs")
def sync_runs_list():
    try:
        filters = RunFilters.coerce(
            page=request.args.get("page"),
            page_size=request.args.get("page_size"),
            statuses=_split_csv(request.args.get("status")),
            sources=_split_csv(request.args.get("source")),
            include_dry_runs=request.args.get("include_dry_runs"),
        )
    except ValueError as exc:
        return _json_error(str(exc), HTTPStatus.BAD_REQUEST)
    result = SyncRunService().list_runs(filters)
    return jsonify(result.as_dict()), 200


@sync_blueprint.get("/runs/<run_id>")
def sync_run_detail(run_id: str):
    try:
        run = SyncRunService().get_run(run_id)
    except SyncError as exc:
        return _sync_error_response(exc)
    return jsonify(run.to_dict()), 200


@sync_blueprint.post("/runs/<run_id>/continue")
def sync_run_continue(run_id: str):
    controller = SyncRunController()
    try:
        outcome = controller.process_next_page(run_id)
    except SyncError as exc:
        return _sync_error_response(exc)
    except Exception:
        current_app.logger.exception("Sync page failed", extra={"sync_run_id": run_id})
        return _json_error("Sync page failed; run marked failed.", HTTPStatus.INTERNAL_SERVER_ERROR)
    payload = outcome.as_dict()
    status = HTTPStatus.OK if outcome.error is None else HTTPStatus.BAD_GATEWAY
    return jsonify(payload), status


@sync_blueprint.post("/runs/<run_id>/cancel")
def sync_run_cancel(run_id: str):
    try:
        run = SyncRunController().cancel(run_id)
    except SyncError as exc:
        return _sync_error_response(exc)
    return jsonify({"ok": True, "sync_run_id": run.id, "status": run.status.value}), 200


@sync_blueprint.post("/runs/<run_id>/pause")
def sync_run_pause(run_id: str):
    try:
        run = SyncRunController().pause(run_id)
    except SyncError as exc:
        return _sync_error_response(exc)
    return jsonify({"ok": True, "sync_run_id": run.id, "status": run.status.value}), 200


@sync_blueprint.post("/runs/<run_id>/resume")
def sync_run_resume(run_id: str):
    try:
        run = SyncRunController().resume(run_id)
    except SyncError as exc:
        return _sync_error_response(exc)
    return jsonify({"ok": True, "sync_run_id": run.id, "status": run.status.value, "checkpoint": run.checkpoint}), 200


@sync_blueprint.post("/sweep")
def sync_sweep():
    body = _json_body()
    idle_minutes = body.get("idle_minutes")
    try:
        threshold = timedelta(minutes=int(idle_minutes)) if idle_minutes not in (None, "") else None
    except (TypeError, ValueError):
        return _json_error("idle_minutes must be an integer.", HTTPStatus.BAD_REQUEST)
    if threshold is not None and threshold <= timedelta(0):
        return _json_error("idle_minutes must be positive.", HTTPStatus.BAD_REQUEST)
    try:
        cleaned = SyncRunController().sweep_stale(source=body.get("source") or None, idle_threshold=threshold)
    except ValueError as exc:
        return _json_error(str(exc), HTTPStatus.BAD_REQUEST)
    return jsonify({"cleaned_count": cleaned}), 200


# ----------------------------------------------------------------------
# Identity
# ----------------------------------------------------------------------
@sync_blueprint.post("/merge-contact")
def sync_merge_contact():
    """Merge one contact, into ``client_id`` when given or via normal resolution."""
    body = _json_body()
    source = str(body.get("source") or DEFAULT_WEBHOOK_SOURCE).strip().lower()
    contact = body.get("contact") if isinstance(body.get("contact"), Mapping) else body
    if body.get("external_id") not in (None, "") and "external_id" not in contact:
        contact = {**contact, "external_id": body["external_id"]}
    resolver = IdentityResolver()
    try:
        record = build_record_from_unify_payload(contact, source)
        client_id = body.get("client_id")
        if client_id not in (None, ""):
            result = resolver.merge_contact(int(client_id), record, source)
        else:
            result = resolver.resolve(record, source, dry_run=bool(body.get("dry_run", False)))
        db.session.commit()
    except SyncError as exc:
        db.session.rollback()
        return _sync_error_response(exc)
    except (TypeError, ValueError) as exc:
        db.session.rollback()
        return _json_error(str(exc), HTTPStatus.BAD_REQUEST)
    return jsonify(_result_payload(result)), 200


def _result_payload(result) -> dict[str, Any]:
    payload = result.as_dict()
    conflict = result.conflict_error()
    if conflict is not None:
        payload.update(conflict.as_dict())
    return payload


def _unify_single(payload: Mapping[str, Any], source: str, resolver: IdentityResolver) -> dict[str, Any]:
    try:
        with db.session.begin_nested():
            result = unify_identity(payload, source=source, resolver=resolver)
    except ValidationError as exc:
        return {"success": False, "action": "skipped", "client_id": None, "error": str(exc)}
    response: dict[str, Any] = {"success": True, "action": result.action, "client_id": result.client_id}
    conflict = result.conflict_error()
    if conflict is not None:
        response.update(conflict.as_dict())
    return response


@sync_blueprint.post("/unify-identity")
def sync_unify_identity():
    """
    Unify one webhook contact, or a batch under ``contacts``.

    The source comes from the ``X-Source`` header (default ``webhook``). Batch
    requests are processed in chunks with a commit per chunk; only the first
    few error details are returned.
    """
    body = _json_body()
    source = (request.headers.get("X-Source") or body.get("source") or DEFAULT_WEBHOOK_SOURCE).strip().lower()
    resolver = IdentityResolver()

    contacts = body.get("contacts")
    if contacts is None:
        result = _unify_single(body, source, resolver)
        db.session.commit()
        status = HTTPStatus.OK if result["success"] else HTTPStatus.BAD_REQUEST
        return jsonify(result), status

    if not isinstance(contacts, list):
        return _json_error("contacts must be a list.", HTTPStatus.BAD_REQUEST)
    SyncMonitoring.record_unify_batch(contact_count=len(contacts))

    totals = {"processed": 0, "created": 0, "updated": 0, "conflicts": 0, "errors": 0}
    error_details: list[dict[str, Any]] = []
    for start in range(0, len(contacts), UNIFY_CHUNK_SIZE):
        for index, contact in enumerate(contacts[start : start + UNIFY_CHUNK_SIZE], start=start):
            totals["processed"] += 1
            if not isinstance(contact, Mapping):
                outcome = {"success": False, "error": "Contact must be an object."}
            else:
                outcome = _unify_single(contact, source, resolver)
            if not outcome["success"]:
                totals["errors"] += 1
                if len(error_details) < MAX_ERROR_DETAILS:
                    error_details.append({"index": index, "error": outcome["error"]})
            elif outcome["action"] == "created":
                totals["created"] += 1
            elif outcome["action"] == "updated":
                totals["updated"] += 1
            elif outcome["action"] == "conflict":
                totals["conflicts"] += 1
        db.session.commit()

    return jsonify({"success": True, **totals, "error_details": error_details}), 200


# ----------------------------------------------------------------------
# Conflicts
# ----------------------------------------------------------------------
@sync_blueprint.get("/conflicts")
def sync_conflicts_list():
    status = request.args.get("status", "open")
    try:
        limit = int(request.args.get("limit", 100))
        conflicts = SyncRunService().list_conflicts(
            status=None if status == "all" else status,
            source=request.args.get("source"),
            limit=limit,
        )
    except ValueError as exc:
        return _json_error(str(exc), HTTPStatus.BAD_REQUEST)
    return jsonify({"items": [conflict.to_dict() for conflict in conflicts], "total": len(conflicts)}), 200


@sync_blueprint.post("/conflicts/<int:conflict_id>/resolve")
def sync_conflict_resolve(conflict_id: int):
    body = _json_body()
    client_id = body.get("client_id")
    try:
        conflict = SyncRunService().resolve_conflict(
            conflict_id,
            client_id=int(client_id) if client_id not in (None, "") else None,
            note=body.get("note"),
        )
    except SyncError as exc:
        db.session.rollback()
        return _sync_error_response(exc)
    except (TypeError, ValueError):
        return _json_error("client_id must be an integer.", HTTPStatus.BAD_REQUEST)
    return jsonify(conflict.to_dict()), 200


# ----------------------------------------------------------------------
# Revenue recovery
# ----------------------------------------------------------------------
@sync_blueprint.post("/recover-revenue")
def sync_recover_revenue():
    """Process one page of open invoices; the caller loops on ``has_more``."""
    body = _json_body()
    if not current_app.config.get("STRIPE_SECRET_KEY"):
        return _json_error("STRIPE_SECRET_KEY not configured", HTTPStatus.SERVICE_UNAVAILABLE)
    exclude_recent_hours = body.get("exclude_recent_hours")
    try:
        service = RevenueRecoveryService()
        page = service.recover_revenue(
            body.get("hours_lookback", 24),
            cursor=body.get("starting_after") or None,
            sync_run_id=body.get("sync_run_id") or None,
            exclude_recent_hours=int(exclude_recent_hours) if exclude_recent_hours else None,
        )
    except RecoveryInterrupted as exc:
        return jsonify({**exc.page.as_dict(), "code": exc.code}), HTTPStatus.BAD_GATEWAY
    except SyncError as exc:
        return _sync_error_response(exc)
    except (TypeError, ValueError):
        return _json_error("exclude_recent_hours must be an integer.", HTTPStatus.BAD_REQUEST)
    return jsonify(page.as_dict()), 200
