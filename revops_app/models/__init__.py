# revops_app/models/__init__.py
"""
Database models package
"""

from .base import BaseModel, db
from .client import PLATFORM_ID_FIELDS, TRACKING_FIELDS, CanonicalClient, LifecycleStage
from .sync import (
    ACTIVE_STATUSES,
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
    "db",
    "BaseModel",
    # Client models
    "CanonicalClient",
    "LifecycleStage",
    "PLATFORM_ID_FIELDS",
    "TRACKING_FIELDS",
    # Sync models
    "SyncRun",
    "SyncRunStatus",
    "SyncSource",
    "RawStagedRecord",
    "ContactIdentity",
    "MergeConflict",
    "ConflictReason",
    "ConflictStatus",
    "ACTIVE_STATUSES",
    "RESUMABLE_STATUSES",
    "TERMINAL_STATUSES",
]
