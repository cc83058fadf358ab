"""
Client-local persisted state for the payment recovery job.

State is written after every batch so an interrupted job can pick up where it
stopped. Storage is a best-effort cache: read and write failures are logged
and never abort the job.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Mapping

JOB_TYPE = "smart_recovery"
IN_FLIGHT_TTL = timedelta(hours=2)
COMPLETED_TTL = timedelta(hours=24)

STATUS_RUNNING = "running"
STATUS_PAUSED = "paused"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class RecoveryJobState:
    """Progress of one recovery job, accumulated across batches."""

    hours_lookback: int
    job_type: str = JOB_TYPE
    sync_run_id: str | None = None
    cursor: str | None = None
    batches: int = 0
    processed: int = 0
    recovered_amount: int = 0
    failed_amount: int = 0
    skipped_amount: int = 0
    succeeded: list[dict[str, Any]] = field(default_factory=list)
    failed: list[dict[str, Any]] = field(default_factory=list)
    skipped: list[dict[str, Any]] = field(default_factory=list)
    status: str = STATUS_RUNNING
    last_error: str | None = None
    timestamp: str = field(default_factory=lambda: _utcnow().isoformat())

    @property
    def is_in_flight(self) -> bool:
        return self.status in (STATUS_RUNNING, STATUS_PAUSED, STATUS_FAILED)

    def touch(self, now: datetime | None = None) -> None:
        self.timestamp = (now or _utcnow()).isoformat()

    def saved_at(self) -> datetime | None:
        try:
            parsed = datetime.fromisoformat(self.timestamp)
        except (TypeError, ValueError):
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)

    def is_expired(self, now: datetime | None = None) -> bool:
        saved = self.saved_at()
        if saved is None:
            return True
        ttl = COMPLETED_TTL if self.status == STATUS_COMPLETED else IN_FLIGHT_TTL
        return (now or _utcnow()) - saved > ttl

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "RecoveryJobState":
        known = {name for name in cls.__dataclass_fields__}
        values = {key: value for key, value in payload.items() if key in known}
        if "hours_lookback" not in values:
            raise ValueError("Recovery job state is missing hours_lookback.")
        values["hours_lookback"] = int(values["hours_lookback"])
        return cls(**values)


class JsonFileJobStateStore:
    """
    Keep job states in a single JSON file, one entry per job type.

    Writes go through a temporary file and ``os.replace`` so a crash never
    leaves a truncated document behind.
    """

    def __init__(self, path: str | os.PathLike[str], *, logger: logging.Logger | None = None) -> None:
        self.path = Path(path)
        self.logger = logger or logging.getLogger(__name__)

    def _read_all(self) -> dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            self.logger.warning("Unable to read recovery job state", exc_info=True, extra={"path": str(self.path)})
            return {}
        return data if isinstance(data, dict) else {}

    def _write_all(self, data: Mapping[str, Any]) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(prefix=".recovery-", dir=str(self.path.parent))
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(data, handle, default=str)
            os.replace(tmp_name, self.path)
        except OSError:
            self.logger.warning("Unable to persist recovery job state", exc_info=True, extra={"path": str(self.path)})

    def load(self, job_type: str = JOB_TYPE) -> RecoveryJobState | None:
        raw = self._read_all().get(job_type)
        if not isinstance(raw, Mapping):
            return None
        try:
            return RecoveryJobState.from_dict(raw)
        except (TypeError, ValueError):
            self.logger.warning("Discarding malformed recovery job state", extra={"job_type": job_type})
            return None

    def save(self, state: RecoveryJobState) -> None:
        data = self._read_all()
        data[state.job_type] = state.to_dict()
        self._write_all(data)

    def clear(self, job_type: str = JOB_TYPE) -> None:
        data = self._read_all()
        if data.pop(job_type, None) is not None:
            self._write_all(data)


__all__ = [
    "COMPLETED_TTL",
    "IN_FLIGHT_TTL",
    "JOB_TYPE",
    "JsonFileJobStateStore",
    "RecoveryJobState",
    "STATUS_COMPLETED",
    "STATUS_FAILED",
    "STATUS_PAUSED",
    "STATUS_RUNNING",
]
