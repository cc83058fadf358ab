"""
Error taxonomy for the sync pipeline.

Adapters, the resolver, and the run controller raise these so views, Celery
tasks, and CLI commands can translate failures consistently.
"""

from __future__ import annotations

from typing import Any, Mapping, Sequence


class SyncError(RuntimeError):
    """Base error for sync pipeline failures."""

    retryable: bool = False
    code: str = "sync_error"

    def as_dict(self) -> dict[str, Any]:
        return {"error": self.code, "message": str(self), "retryable": self.retryable}


class TransportError(SyncError):
    """Adapter or network failure; fails the run but keeps its checkpoint."""

    retryable = True
    code = "transport_error"

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class AuthError(SyncError):
    """Credential rejected by a remote system or the admin boundary."""

    code = "auth_error"


class ConflictError(SyncError):
    """Single-flight violation: another run for the source is active."""

    code = "conflict"

    def __init__(self, message: str, *, active_run_id: str | None = None) -> None:
        super().__init__(message)
        self.active_run_id = active_run_id

    def as_dict(self) -> dict[str, Any]:
        payload = super().as_dict()
        payload["active_run_id"] = self.active_run_id
        return payload


class ResolutionConflict(SyncError):
    """Ambiguous identity recorded for manual resolution."""

    code = "resolution_conflict"

    def __init__(
        self,
        message: str,
        *,
        reason: str,
        candidate_ids: Sequence[int] = (),
        conflict_id: int | None = None,
    ) -> None:
        super().__init__(message)
        self.reason = reason
        self.candidate_ids = tuple(candidate_ids)
        self.conflict_id = conflict_id

    def as_dict(self) -> dict[str, Any]:
        payload = super().as_dict()
        payload.update(reason=self.reason, candidate_ids=list(self.candidate_ids), conflict_id=self.conflict_id)
        return payload


class ValidationError(SyncError, ValueError):
    """Malformed input record; skipped and counted."""

    code = "validation_error"

    def __init__(self, message: str, *, field: str | None = None, context: Mapping[str, Any] | None = None) -> None:
        super().__init__(message)
        self.field = field
        self.context = dict(context or {})


class TimeoutAbandonment(SyncError):
    """Classification stored on runs reclaimed by the idle sweep. Never raised at runtime."""

    code = "timeout_abandonment"


class RunNotFound(SyncError, LookupError):
    code = "not_found"


class InvalidTransition(SyncError):
    """Requested state change is not allowed from the run's current status."""

    code = "invalid_transition"


def classify_exception(exc: BaseException) -> str:
    """Return the taxonomy code stored in checkpoints for ``exc``."""

    if isinstance(exc, SyncError):
        return exc.code
    return "internal_error"
