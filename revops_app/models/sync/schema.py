"""
SQLAlchemy models for sync runs, raw staging, the identity map, and merge conflicts.

Sync runs are keyed by UUID so checkpoints can be handed to callers and
resumed later. Staging rows are a cache of the latest observation per
``(source, external_id)`` rather than a history table.
"""

from __future__ import annotations

import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import Enum, ForeignKey, Index, UniqueConstraint, text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ..base import BaseModel, db


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


def _new_run_id() -> str:
    return str(uuid.uuid4())


class SyncSource(str, enum.Enum):
    """External systems the pipeline ingests from."""

    GHL = "ghl"
    MANYCHAT = "manychat"
    STRIPE = "stripe"
    PAYPAL = "paypal"
    INVOICES = "invoices"
    DUNNING = "dunning"
    SMART_RECOVERY = "smart_recovery"

    @classmethod
    def coerce(cls, value: "SyncSource | str") -> "SyncSource":
        if isinstance(value, cls):
            return value
        token = str(value or "").strip().lower().replace("-", "_")
        try:
            return cls(token)
        except ValueError as exc:
            raise ValueError(f"Unsupported sync source '{value}'.") from exc


class SyncRunStatus(str, enum.Enum):
    """Lifecycle states for a sync run."""

    RUNNING = "running"
    CONTINUING = "continuing"
    COMPLETED = "completed"
    COMPLETED_WITH_ERRORS = "completed_with_errors"
    FAILED = "failed"
    CANCELED = "canceled"
    PAUSED = "paused"


ACTIVE_STATUSES: frozenset[SyncRunStatus] = frozenset({SyncRunStatus.RUNNING, SyncRunStatus.CONTINUING})
RESUMABLE_STATUSES: frozenset[SyncRunStatus] = frozenset(
    {SyncRunStatus.PAUSED, SyncRunStatus.CANCELED, SyncRunStatus.FAILED}
)
TERMINAL_STATUSES: frozenset[SyncRunStatus] = frozenset(
    {
        SyncRunStatus.COMPLETED,
        SyncRunStatus.COMPLETED_WITH_ERRORS,
        SyncRunStatus.FAILED,
        SyncRunStatus.CANCELED,
    }
)

COUNTER_FIELDS: tuple[str, ...] = (
    "total_fetched",
    "total_inserted",
    "total_updated",
    "total_skipped",
    "total_conflicts",
    "total_errors",
)

_ACTIVE_STATUS_SQL = "status IN ('running', 'continuing')"


class SyncRun(BaseModel):
    """One execution of one source's ingestion."""

    __tablename__ = "sync_runs"

    id: Mapped[str] = mapped_column(db.String(36), primary_key=True, default=_new_run_id)
    source: Mapped[str] = mapped_column(db.String(50), nullable=False, index=True)
    status: Mapped[SyncRunStatus] = mapped_column(
        Enum(SyncRunStatus, name="sync_run_status_enum", values_callable=_enum_values),
        nullable=False,
        default=SyncRunStatus.RUNNING,
        index=True,
    )
    dry_run: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=False)
    started_at: Mapped[datetime | None] = mapped_column(
        db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    completed_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))
    last_heartbeat_at: Mapped[datetime | None] = mapped_column(
        db.DateTime(timezone=True),
        nullable=True,
        comment="Updated on every checkpoint write; the idle sweep reads this.",
    )
    checkpoint: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)
    total_fetched: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    total_inserted: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    total_updated: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    total_skipped: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    total_conflicts: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    total_errors: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    error_message: Mapped[str | None] = mapped_column(db.Text, nullable=True)
    params_json: Mapped[dict | None] = mapped_column(
        db.JSON,
        nullable=True,
        comment="Run parameters (date window, hours_lookback, triggered_by).",
    )

    staged_records = relationship("RawStagedRecord", back_populates="sync_run", passive_deletes=True)

    __table_args__ = (
        Index(
            "uq_sync_runs_active_source",
            "source",
            unique=True,
            sqlite_where=text(_ACTIVE_STATUS_SQL),
            postgresql_where=text(_ACTIVE_STATUS_SQL),
        ),
    )

    def __repr__(self) -> str:
        return f"<SyncRun id={self.id} source={self.source} status={self.status}>"

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    def counters(self) -> dict[str, int]:
        return {name: int(getattr(self, name) or 0) for name in COUNTER_FIELDS}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sync_run_id": self.id,
            "source": self.source,
            "status": self.status.value if self.status else None,
            "dry_run": self.dry_run,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "last_heartbeat_at": self.last_heartbeat_at.isoformat() if self.last_heartbeat_at else None,
            "checkpoint": self.checkpoint or {},
            "counters": self.counters(),
            "error_message": self.error_message,
            "params": self.params_json or {},
        }


class RawStagedRecord(BaseModel):
    """Most recent raw payload fetched for a source record."""

    __tablename__ = "raw_staged_records"

    id: Mapped[int] = mapped_column(primary_key=True)
    source: Mapped[str] = mapped_column(db.String(50), nullable=False)
    external_id: Mapped[str] = mapped_column(db.String(255), nullable=False)
    payload: Mapped[dict] = mapped_column(db.JSON, nullable=False)
    payload_checksum: Mapped[str | None] = mapped_column(db.String(64), nullable=True)
    sync_run_id: Mapped[str | None] = mapped_column(
        ForeignKey("sync_runs.id", ondelete="SET NULL"), nullable=True, index=True
    )
    fetched_at: Mapped[datetime] = mapped_column(
        db.DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc)
    )

    sync_run = relationship("SyncRun", back_populates="staged_records")

    __table_args__ = (UniqueConstraint("source", "external_id", name="uq_raw_staged_source_external"),)


class ContactIdentity(BaseModel):
    """Maps a source's external identifier to the canonical client it resolved to."""

    __tablename__ = "contact_identities"

    id: Mapped[int] = mapped_column(primary_key=True)
    source: Mapped[str] = mapped_column(db.String(50), nullable=False)
    external_id: Mapped[str] = mapped_column(db.String(255), nullable=False)
    client_id: Mapped[int] = mapped_column(ForeignKey("clients.id", ondelete="CASCADE"), nullable=False, index=True)
    sync_run_id: Mapped[str | None] = mapped_column(db.String(36), nullable=True)
    first_seen_at: Mapped[datetime] = mapped_column(
        db.DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc)
    )
    last_seen_at: Mapped[datetime] = mapped_column(
        db.DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc)
    )
    amount_cents: Mapped[int | None] = mapped_column(db.BigInteger, nullable=True)
    currency: Mapped[str | None] = mapped_column(db.String(10), nullable=True)
    payment_status: Mapped[str | None] = mapped_column(db.String(20), nullable=True)

    client = relationship("CanonicalClient")

    __table_args__ = (UniqueConstraint("source", "external_id", name="uq_contact_identity_source_external"),)


class ConflictStatus(str, enum.Enum):
    OPEN = "open"
    RESOLVED = "resolved"


class ConflictReason(str, enum.Enum):
    """Why the resolver refused to pick a single candidate."""

    AMBIGUOUS_EMAIL = "ambiguous_email"
    AMBIGUOUS_PLATFORM_ID = "ambiguous_platform_id"
    AMBIGUOUS_PHONE = "ambiguous_phone"
    SIGNAL_MISMATCH = "signal_mismatch"
    PLATFORM_ID_MISMATCH = "platform_id_mismatch"


class MergeConflict(BaseModel):
    """Unresolved identity collision awaiting an administrator."""

    __tablename__ = "merge_conflicts"

    id: Mapped[int] = mapped_column(primary_key=True)
    source: Mapped[str] = mapped_column(db.String(50), nullable=False, index=True)
    external_id: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    candidate_client_ids: Mapped[list] = mapped_column(db.JSON, nullable=False, default=list)
    reason: Mapped[ConflictReason] = mapped_column(
        Enum(ConflictReason, name="merge_conflict_reason_enum", values_callable=_enum_values),
        nullable=False,
    )
    incoming_record: Mapped[dict] = mapped_column(db.JSON, nullable=False)
    status: Mapped[ConflictStatus] = mapped_column(
        Enum(ConflictStatus, name="merge_conflict_status_enum", values_callable=_enum_values),
        nullable=False,
        default=ConflictStatus.OPEN,
        index=True,
    )
    resolved_client_id: Mapped[int | None] = mapped_column(ForeignKey("clients.id"), nullable=True)
    resolution_note: Mapped[str | None] = mapped_column(db.Text, nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)
    sync_run_id: Mapped[str | None] = mapped_column(db.String(36), nullable=True, index=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "source": self.source,
            "external_id": self.external_id,
            "candidate_client_ids": list(self.candidate_client_ids or []),
            "reason": self.reason.value if self.reason else None,
            "incoming_record": self.incoming_record or {},
            "status": self.status.value if self.status else None,
            "resolved_client_id": self.resolved_client_id,
            "resolution_note": self.resolution_note,
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
            "sync_run_id": self.sync_run_id,
        }
