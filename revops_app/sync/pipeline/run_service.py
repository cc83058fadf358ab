"""
Service helpers for querying sync runs and merge conflicts.

The JSON API and CLI share these so filtering and pagination semantics stay
identical across surfaces.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from revops_app.models import (
    CanonicalClient,
    ConflictStatus,
    MergeConflict,
    SyncRun,
    SyncRunStatus,
    SyncSource,
    db,
)

from ..errors import InvalidTransition, RunNotFound, ValidationError

DEFAULT_PAGE = 1
DEFAULT_PAGE_SIZE = 25
MAX_PAGE_SIZE = 100


@dataclass(frozen=True)
class RunFilters:
    """Canonical set of filter options applied to sync run queries."""

    page: int = DEFAULT_PAGE
    page_size: int = DEFAULT_PAGE_SIZE
    statuses: tuple[SyncRunStatus, ...] = field(default_factory=tuple)
    sources: tuple[str, ...] = field(default_factory=tuple)
    include_dry_runs: bool = True

    @classmethod
    def coerce(
        cls,
        *,
        page: int | str | None = None,
        page_size: int | str | None = None,
        statuses: Iterable[str] | None = None,
        sources: Iterable[str] | None = None,
        include_dry_runs: str | bool | None = None,
    ) -> "RunFilters":
        """Coerce mixed user input into a validated ``RunFilters`` instance."""

        resolved_page = _coerce_positive_int(page, fallback=DEFAULT_PAGE)
        resolved_size = min(_coerce_positive_int(page_size, fallback=DEFAULT_PAGE_SIZE), MAX_PAGE_SIZE)

        resolved_statuses: list[SyncRunStatus] = []
        for value in statuses or ():
            if value is None or value == "":
                continue
            resolved_statuses.append(_coerce_status(value))

        resolved_sources = tuple(
            sorted({SyncSource.coerce(value).value for value in (sources or ()) if value})
        )

        return cls(
            page=resolved_page,
            page_size=resolved_size,
            statuses=tuple(resolved_statuses),
            sources=resolved_sources,
            include_dry_runs=_coerce_bool(include_dry_runs, default=True),
        )


@dataclass(slots=True)
class RunListResult:
    items: list[SyncRun]
    total: int
    page: int
    page_size: int
    total_pages: int

    def as_dict(self) -> dict[str, Any]:
        return {
            "items": [run.to_dict() for run in self.items],
            "total": self.total,
            "page": self.page,
            "page_size": self.page_size,
            "total_pages": self.total_pages,
        }


class SyncRunService:
    """Facade for querying runs and administering merge conflicts."""

    def __init__(self, session: Session | None = None) -> None:
        self.session: Session = session or db.session

    def list_runs(self, filters: RunFilters) -> RunListResult:
        stmt = select(SyncRun)
        if filters.statuses:
            stmt = stmt.where(SyncRun.status.in_(filters.statuses))
        if filters.sources:
            stmt = stmt.where(SyncRun.source.in_(filters.sources))
        if not filters.include_dry_runs:
            stmt = stmt.where(SyncRun.dry_run.is_(False))

        total = self.session.scalar(select(func.count()).select_from(stmt.subquery())) or 0
        if total == 0:
            return RunListResult(items=[], total=0, page=filters.page, page_size=filters.page_size, total_pages=0)

        items = list(
            self.session.scalars(
                stmt.order_by(SyncRun.started_at.desc(), SyncRun.id.desc())
                .offset((filters.page - 1) * filters.page_size)
                .limit(filters.page_size)
            )
        )
        total_pages = (total + filters.page_size - 1) // filters.page_size
        return RunListResult(
            items=items, total=total, page=filters.page, page_size=filters.page_size, total_pages=total_pages
        )

    def get_run(self, run_id: str) -> SyncRun:
        run = self.session.get(SyncRun, run_id)
        if run is None:
            raise RunNotFound(f"Sync run {run_id} not found.")
        return run

    def list_conflicts(self, *, status: str | None = "open", source: str | None = None, limit: int = 100) -> list[MergeConflict]:
        stmt = select(MergeConflict)
        if status:
            try:
                stmt = stmt.where(MergeConflict.status == ConflictStatus(str(status).strip().lower()))
            except ValueError:
                raise ValidationError(f"Unsupported conflict status '{status}'.", field="status") from None
        if source:
            stmt = stmt.where(MergeConflict.source == str(source).strip().lower())
        stmt = stmt.order_by(MergeConflict.created_at.desc(), MergeConflict.id.desc()).limit(max(1, min(limit, 500)))
        return list(self.session.scalars(stmt))

    def resolve_conflict(
        self,
        conflict_id: int,
        *,
        client_id: int | None = None,
        note: str | None = None,
    ) -> MergeConflict:
        """
        Close an open conflict, optionally recording the client an administrator chose.

        The chosen client must be one of the recorded candidates.
        """

        conflict = self.session.get(MergeConflict, conflict_id)
        if conflict is None:
            raise RunNotFound(f"Conflict {conflict_id} not found.")
        if conflict.status != ConflictStatus.OPEN:
            raise InvalidTransition(f"Conflict {conflict_id} is already resolved.")
        if client_id is not None:
            if client_id not in (conflict.candidate_client_ids or []):
                raise ValidationError(
                    f"Client {client_id} is not a candidate for conflict {conflict_id}.", field="client_id"
                )
            if self.session.get(CanonicalClient, client_id) is None:
                raise ValidationError(f"Client {client_id} does not exist.", field="client_id")
        conflict.status = ConflictStatus.RESOLVED
        conflict.resolved_client_id = client_id
        conflict.resolution_note = note
        conflict.resolved_at = datetime.now(timezone.utc)
        conflict.save()
        return conflict


# -------------------------------------------------------------------------
# Helper functions
# -------------------------------------------------------------------------


def _coerce_positive_int(candidate: int | str | None, *, fallback: int) -> int:
    if candidate in (None, ""):
        return fallback
    if isinstance(candidate, int):
        return max(1, candidate)
    if isinstance(candidate, str) and candidate.isdigit():
        return max(1, int(candidate))
    raise ValueError(f"Expected positive integer for pagination, received '{candidate}'.")


def _coerce_status(value: str | SyncRunStatus) -> SyncRunStatus:
    if isinstance(value, SyncRunStatus):
        return value
    normalized = str(value).strip().lower()
    try:
        return SyncRunStatus(normalized)
    except ValueError:
        raise ValueError(f"Unsupported status filter '{value}'.") from None


def _coerce_bool(candidate: str | bool | None, *, default: bool) -> bool:
    if candidate is None:
        return default
    if isinstance(candidate, bool):
        return candidate
    normalized = candidate.strip().lower()
    if normalized in ("1", "true", "yes", "y", "on"):
        return True
    if normalized in ("0", "false", "no", "n", "off"):
        return False
    return default


__all__ = ["RunFilters", "RunListResult", "SyncRunService"]
