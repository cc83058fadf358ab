"""
Sync-specific SQLAlchemy models: runs, raw staging, identity map, and conflicts.
"""

from .schema import (
    ACTIVE_STATUSES,
    COUNTER_FIELDS,
    RESUMABLE_STATUSES,
    TERMINAL_STATUSES,
    ConflictReason,
    ConflictStatus,
    ContactIdentity,
    MergeConflict,
    RawStagedRecord,
    SyncRun,
    SyncRunStatus,
    SyncSource,
)

__all__ = [
    "ACTIVE_STATUSES",
    "COUNTER_FIELDS",
    "RESUMABLE_STATUSES",
    "TERMINAL_STATUSES",
    "ConflictReason",
    "ConflictStatus",
    "ContactIdentity",
    "MergeConflict",
    "RawStagedRecord",
    "SyncRun",
    "SyncRunStatus",
    "SyncSource",
]
