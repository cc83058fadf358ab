"""
Sync run controller: the state machine that drives one source, page by page.

Each call to ``process_next_page`` fetches a single adapter page, stages the
raw payloads, resolves every record, then commits the new checkpoint and
counters together. A page is never half-committed, so re-running the page
after a failure is safe.

Status transitions::

    (none) --start--> running --page, more--> continuing --page, done--> completed[_with_errors]
    running/continuing --cancel--> canceled
    running/continuing --pause--> paused
    running/continuing --page error / sweep--> failed
    paused/canceled/failed --resume--> continuing
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterable, Iterator, Mapping, Sequence, TypeVar

from flask import current_app, has_app_context
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from revops_app.models import (
    ACTIVE_STATUSES,
    RESUMABLE_STATUSES,
    SyncRun,
    SyncRunStatus,
    SyncSource,
    db,
)
from revops_app.utils.error_handler import alert_sync_failure
from revops_app.utils.sync import DEFAULT_STALE_TIMEOUT_MINUTES, config_int

from ..adapters import build_adapter
from ..adapters.base import NormalizedRecord, SourceAdapter
from ..errors import (
    AuthError,
    ConflictError,
    InvalidTransition,
    RunNotFound,
    SyncError,
    TimeoutAbandonment,
    ValidationError,
    classify_exception,
)
from ..metrics import record_page, record_resolve_action, record_run_finished, record_swept
from .resolver import IdentityResolver
from .staging import stage_records

DEFAULT_MAX_PAGES = 5000
DEFAULT_RESOLVE_BATCH_SIZE = 10
NOT_FOUND_MESSAGE = "Sync not found or already completed"

_ACTION_COUNTERS = {
    "created": "total_inserted",
    "updated": "total_updated",
    "conflict": "total_conflicts",
    "skipped": "total_skipped",
}

T = TypeVar("T")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _chunked(items: Sequence[T], size: int) -> Iterator[Sequence[T]]:
    size = max(1, int(size))
    for start in range(0, len(items), size):
        yield items[start : start + size]


def empty_checkpoint() -> dict[str, Any]:
    return {"cursor": None, "page": 0, "last_error": None, "last_error_code": None}


@dataclass(frozen=True)
class PageOutcome:
    """Result of one ``process_next_page`` call."""

    sync_run_id: str
    status: SyncRunStatus
    has_more: bool
    next_checkpoint: Mapping[str, Any]
    counters: Mapping[str, int]
    records_processed: int = 0
    error: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "sync_run_id": self.sync_run_id,
            "status": self.status.value,
            "has_more": self.has_more,
            "next_checkpoint": dict(self.next_checkpoint),
            "counters": dict(self.counters),
            "records_processed": self.records_processed,
            "error": self.error,
        }


class SyncRunController:
    """Drive sync runs through their lifecycle with single-flight per source."""

    def __init__(
        self,
        adapter_factory: Callable[[SyncRun], SourceAdapter] | None = None,
        resolver: IdentityResolver | None = None,
        session=None,
        *,
        config: Mapping[str, Any] | None = None,
        now_fn: Callable[[], datetime] = _utcnow,
        logger: logging.Logger | None = None,
    ) -> None:
        self.session = session or db.session
        if config is None:
            config = current_app.config if has_app_context() else {}
        self.config = config
        self.adapter_factory = adapter_factory or self._default_adapter_factory
        self.resolver = resolver or IdentityResolver(self.session)
        self.now_fn = now_fn
        if logger is not None:
            self.logger = logger
        elif has_app_context():
            self.logger = current_app.logger
        else:
            self.logger = logging.getLogger(__name__)
        self._adapters: dict[str, SourceAdapter] = {}

    # ------------------------------------------------------------------
    # Configuration helpers
    # ------------------------------------------------------------------
    def _config_int(self, key: str, default: int) -> int:
        return config_int(self.config, key, default)

    def _default_adapter_factory(self, run: SyncRun) -> SourceAdapter:
        return build_adapter(run.source, self.config, params=run.params_json or {})

    def _adapter_for(self, run: SyncRun) -> SourceAdapter:
        adapter = self._adapters.get(run.id)
        if adapter is None:
            adapter = self.adapter_factory(run)
            self._adapters[run.id] = adapter
        return adapter

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------
    def get_run(self, run_id: str) -> SyncRun:
        run = self.session.get(SyncRun, run_id)
        if run is None:
            raise RunNotFound(NOT_FOUND_MESSAGE)
        return run

    def active_run(self, source: str) -> SyncRun | None:
        return self.session.scalar(
            select(SyncRun).where(SyncRun.source == source, SyncRun.status.in_(list(ACTIVE_STATUSES)))
        )

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------
    def start(
        self,
        source: SyncSource | str,
        *,
        dry_run: bool = False,
        params: Mapping[str, Any] | None = None,
    ) -> SyncRun:
        """Create a running sync run, or raise ``ConflictError`` if one is active."""

        try:
            source_value = SyncSource.coerce(source).value
        except ValueError as exc:
            raise ValidationError(str(exc), field="source") from exc

        existing = self.active_run(source_value)
        if existing is not None:
            raise ConflictError(f"A sync for '{source_value}' is already running.", active_run_id=existing.id)

        now = self.now_fn()
        run = SyncRun(
            source=source_value,
            status=SyncRunStatus.RUNNING,
            dry_run=bool(dry_run),
            started_at=now,
            last_heartbeat_at=now,
            checkpoint=empty_checkpoint(),
            params_json=dict(params or {}),
        )
        try:
            with self.session.begin_nested():
                self.session.add(run)
                self.session.flush()
        except IntegrityError as exc:
            winner = self.active_run(source_value)
            raise ConflictError(
                f"A sync for '{source_value}' is already running.",
                active_run_id=winner.id if winner else None,
            ) from exc
        self.session.commit()
        self.logger.info(
            "Sync run started",
            extra={"sync_run_id": run.id, "sync_source": source_value, "dry_run": run.dry_run},
        )
        return run

    def cancel(self, run_id: str) -> SyncRun:
        """Cancel an active run; inactive or unknown runs raise ``RunNotFound``."""

        run = self._transition_active(run_id, SyncRunStatus.CANCELED, terminal=True)
        if run is None:
            raise RunNotFound(NOT_FOUND_MESSAGE)
        self.logger.info("Sync run canceled", extra={"sync_run_id": run.id, "sync_source": run.source})
        record_run_finished(run.source, run.status.value)
        return run

    def pause(self, run_id: str) -> SyncRun:
        run = self._transition_active(run_id, SyncRunStatus.PAUSED, terminal=False)
        if run is None:
            current = self.get_run(run_id)
            raise InvalidTransition(f"Cannot pause a run in status '{current.status.value}'.")
        self.logger.info("Sync run paused", extra={"sync_run_id": run.id, "sync_source": run.source})
        record_run_finished(run.source, run.status.value)
        return run

    def _transition_active(self, run_id: str, status: SyncRunStatus, *, terminal: bool) -> SyncRun | None:
        now = self.now_fn()
        values: dict[str, Any] = {"status": status, "updated_at": now}
        if terminal:
            values["completed_at"] = now
        result = self.session.execute(
            update(SyncRun)
            .where(SyncRun.id == run_id, SyncRun.status.in_(list(ACTIVE_STATUSES)))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        self.session.commit()
        if result.rowcount == 0:
            return None
        run = self.session.get(SyncRun, run_id)
        self.session.refresh(run)
        return run

    def resume(self, run_id: str) -> SyncRun:
        """Move a paused, canceled or failed run back to ``continuing`` at its checkpoint."""

        run = self.get_run(run_id)
        if run.status not in RESUMABLE_STATUSES:
            raise InvalidTransition(f"Cannot resume a run in status '{run.status.value}'.")
        existing = self.active_run(run.source)
        if existing is not None and existing.id != run.id:
            raise ConflictError(f"A sync for '{run.source}' is already running.", active_run_id=existing.id)

        try:
            with self.session.begin_nested():
                run.status = SyncRunStatus.CONTINUING
                run.completed_at = None
                run.error_message = None
                run.last_heartbeat_at = self.now_fn()
                self.session.flush()
        except IntegrityError as exc:
            self.session.refresh(run)
            winner = self.active_run(run.source)
            raise ConflictError(
                f"A sync for '{run.source}' is already running.",
                active_run_id=winner.id if winner else None,
            ) from exc
        self.session.commit()
        self.logger.info(
            "Sync run resumed",
            extra={"sync_run_id": run.id, "sync_source": run.source, "checkpoint": run.checkpoint},
        )
        return run

    # ------------------------------------------------------------------
    # Page processing
    # ------------------------------------------------------------------
    def _outcome(self, run: SyncRun, *, records_processed: int = 0, error: str | None = None) -> PageOutcome:
        return PageOutcome(
            sync_run_id=run.id,
            status=run.status,
            has_more=run.status in ACTIVE_STATUSES,
            next_checkpoint=dict(run.checkpoint or empty_checkpoint()),
            counters=run.counters(),
            records_processed=records_processed,
            error=error,
        )

    def process_next_page(self, run_id: str) -> PageOutcome:
        """
        Fetch, stage and resolve one page for ``run_id``.

        Inactive runs are returned untouched. Adapter failures mark the run
        failed while keeping the checkpoint of the last good page.
        """

        run = self.get_run(run_id)
        if not run.is_active:
            return self._outcome(run)

        checkpoint = dict(run.checkpoint or empty_checkpoint())
        cursor = checkpoint.get("cursor")
        page_number = int(checkpoint.get("page") or 0)
        max_pages = self._config_int("SYNC_MAX_PAGES", DEFAULT_MAX_PAGES)
        if page_number >= max_pages:
            return self._fail(run, SyncError(f"Page ceiling of {max_pages} reached without exhausting the source."))

        started = time.monotonic()
        try:
            adapter = self._adapter_for(run)
            page = adapter.fetch_page(cursor)
        except (AuthError, ValidationError) as exc:
            record_page(source=run.source, outcome="failed", duration_seconds=time.monotonic() - started)
            return self._fail(run, exc)
        except Exception as exc:
            self.session.rollback()
            self._fail(self.get_run(run_id), exc)
            self.logger.exception("Unexpected adapter failure", extra={"sync_run_id": run_id})
            raise
        if page.error is not None:
            record_page(source=run.source, outcome="failed", duration_seconds=time.monotonic() - started)
            return self._fail(run, page.error)

        try:
            records = list(page.records)
            if not run.dry_run:
                self._stage(run, records)
            tallies = self._resolve_page(run, records)
        except SQLAlchemyError as exc:
            self.session.rollback()
            run = self.get_run(run_id)
            return self._fail(run, exc)

        run.total_fetched = (run.total_fetched or 0) + len(records) + page.dropped
        run.total_skipped = (run.total_skipped or 0) + page.dropped
        for counter_name, amount in tallies.items():
            setattr(run, counter_name, (getattr(run, counter_name) or 0) + amount)

        has_more = bool(page.has_more)
        if has_more and not records and page.next_cursor == cursor:
            # A non-advancing empty page would loop forever.
            has_more = False
        now = self.now_fn()
        run.checkpoint = {
            "cursor": page.next_cursor,
            "page": page_number + 1,
            "last_error": None,
            "last_error_code": None,
        }
        run.last_heartbeat_at = now

        current_status = self.session.scalar(select(SyncRun.status).where(SyncRun.id == run.id))
        if current_status in ACTIVE_STATUSES:
            if has_more:
                run.status = SyncRunStatus.CONTINUING
            else:
                run.status = (
                    SyncRunStatus.COMPLETED_WITH_ERRORS if (run.total_errors or 0) > 0 else SyncRunStatus.COMPLETED
                )
                run.completed_at = now
        else:
            # Canceled or paused while the page was in flight; keep that status.
            run.status = current_status
        self.session.commit()

        record_page(source=run.source, outcome="ok", duration_seconds=time.monotonic() - started)
        if not run.is_active:
            record_run_finished(run.source, run.status.value)
            self._adapters.pop(run.id, None)
        self.logger.info(
            "Sync page processed",
            extra={
                "sync_run_id": run.id,
                "sync_source": run.source,
                "page": page_number + 1,
                "records": len(records),
                "status": run.status.value,
            },
        )
        return self._outcome(run, records_processed=len(records))

    def _stage(self, run: SyncRun, records: Sequence[NormalizedRecord]) -> None:
        try:
            with self.session.begin_nested():
                stage_records(run, records, session=self.session)
        except SQLAlchemyError:
            self.logger.warning(
                "Raw staging failed; continuing without staged payloads",
                exc_info=True,
                extra={"sync_run_id": run.id, "sync_source": run.source},
            )

    def _resolve_page(self, run: SyncRun, records: Sequence[NormalizedRecord]) -> dict[str, int]:
        tallies = {name: 0 for name in (*_ACTION_COUNTERS.values(), "total_errors")}
        batch_size = self._config_int("SYNC_RESOLVE_BATCH_SIZE", DEFAULT_RESOLVE_BATCH_SIZE)
        for chunk in _chunked(records, batch_size):
            for record in chunk:
                action = self._resolve_one(run, record)
                tallies[_ACTION_COUNTERS.get(action, "total_errors")] += 1
        for action, counter_name in _ACTION_COUNTERS.items():
            record_resolve_action(run.source, action, tallies[counter_name])
        record_resolve_action(run.source, "error", tallies["total_errors"])
        return tallies

    def _resolve_one(self, run: SyncRun, record: NormalizedRecord) -> str:
        try:
            with self.session.begin_nested():
                result = self.resolver.resolve(record, run.source, dry_run=run.dry_run, sync_run_id=run.id)
        except ValidationError as exc:
            self.logger.debug(
                "Record skipped",
                extra={"sync_run_id": run.id, "external_id": record.external_id, "reason": str(exc)},
            )
            return "skipped"
        except (SQLAlchemyError, SyncError, ValueError, TypeError, KeyError) as exc:
            self.logger.warning(
                "Record resolution failed",
                exc_info=True,
                extra={
                    "sync_run_id": run.id,
                    "sync_source": run.source,
                    "external_id": record.external_id,
                    "error_code": classify_exception(exc),
                },
            )
            return "error"
        return result.action

    def _fail(self, run: SyncRun, exc: BaseException) -> PageOutcome:
        now = self.now_fn()
        checkpoint = dict(run.checkpoint or empty_checkpoint())
        checkpoint["last_error"] = str(exc)
        checkpoint["last_error_code"] = classify_exception(exc)
        run.checkpoint = checkpoint
        run.status = SyncRunStatus.FAILED
        run.error_message = str(exc)
        run.completed_at = now
        run.last_heartbeat_at = now
        self.session.commit()
        self._adapters.pop(run.id, None)
        record_run_finished(run.source, run.status.value)
        self.logger.error(
            "Sync run failed",
            extra={
                "sync_run_id": run.id,
                "sync_source": run.source,
                "error_code": checkpoint["last_error_code"],
                "error_message": run.error_message,
            },
        )
        alert_sync_failure(run, exc)
        return self._outcome(run, error=str(exc))

    # ------------------------------------------------------------------
    # Drivers and maintenance
    # ------------------------------------------------------------------
    def run_to_completion(self, run_id: str, *, max_pages: int | None = None) -> PageOutcome:
        """Process pages inline until the run leaves the active states."""

        outcome = self.process_next_page(run_id)
        pages = 1
        while outcome.has_more and (max_pages is None or pages < max_pages):
            outcome = self.process_next_page(run_id)
            pages += 1
        return outcome

    def sweep_stale(
        self,
        *,
        source: SyncSource | str | None = None,
        idle_threshold: timedelta | None = None,
    ) -> int:
        """
        Fail active runs whose last checkpoint is older than ``idle_threshold``.

        Returns the number of runs reclaimed.
        """

        if idle_threshold is None:
            idle_threshold = timedelta(
                minutes=self._config_int("SYNC_STALE_TIMEOUT_MINUTES", DEFAULT_STALE_TIMEOUT_MINUTES)
            )
        minutes = int(idle_threshold.total_seconds() // 60)
        now = self.now_fn()
        cutoff = now - idle_threshold

        stmt = select(SyncRun).where(
            SyncRun.status.in_(list(ACTIVE_STATUSES)),
            func.coalesce(SyncRun.last_heartbeat_at, SyncRun.started_at) < cutoff,
        )
        if source is not None:
            stmt = stmt.where(SyncRun.source == SyncSource.coerce(source).value)
        stale_runs: Iterable[SyncRun] = list(self.session.scalars(stmt))

        message = f"Stale/timeout - no heartbeat for {minutes} minutes"
        cleaned = 0
        for run in stale_runs:
            checkpoint = dict(run.checkpoint or empty_checkpoint())
            checkpoint["last_error"] = message
            checkpoint["last_error_code"] = TimeoutAbandonment.code
            run.checkpoint = checkpoint
            run.status = SyncRunStatus.FAILED
            run.error_message = message
            run.completed_at = now
            cleaned += 1
            record_swept(run.source)
            self.logger.warning(
                "Stale sync run reclaimed",
                extra={"sync_run_id": run.id, "sync_source": run.source, "idle_minutes": minutes},
            )
        self.session.commit()
        return cleaned


__all__ = ["PageOutcome", "SyncRunController", "empty_checkpoint", "NOT_FOUND_MESSAGE"]
