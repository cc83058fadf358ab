"""Helpers for caching raw source payloads in ``raw_staged_records``."""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable, Mapping

from sqlalchemy import select

from revops_app.models import RawStagedRecord, SyncRun, db

from ..adapters.base import NormalizedRecord


@dataclass(slots=True)
class StagingSummary:
    """Outcome statistics for staging one page."""

    rows_received: int = 0
    rows_inserted: int = 0
    rows_refreshed: int = 0
    rows_unchanged: int = 0


def compute_checksum(payload: Mapping[str, object | None]) -> str:
    """Return a stable checksum for a payload to support idempotency."""

    serialized = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(serialized.encode("utf-8")).hexdigest()


def _json_safe(payload: Mapping[str, object]) -> dict:
    return json.loads(json.dumps(dict(payload), default=str))


def stage_records(
    sync_run: SyncRun,
    records: Iterable[NormalizedRecord],
    *,
    session=None,
) -> StagingSummary:
    """
    Upsert raw payloads keyed by ``(source, external_id)``.

    Rows whose checksum has not changed are left alone apart from the
    ``fetched_at`` timestamp. The caller owns the transaction.
    """

    session = session or db.session
    summary = StagingSummary()
    records_by_id: dict[str, NormalizedRecord] = {}
    for record in records:
        summary.rows_received += 1
        records_by_id[record.external_id] = record
    if not records_by_id:
        return summary

    existing = {
        row.external_id: row
        for row in session.scalars(
            select(RawStagedRecord).where(
                RawStagedRecord.source == sync_run.source,
                RawStagedRecord.external_id.in_(list(records_by_id)),
            )
        )
    }
    now = datetime.now(timezone.utc)
    for external_id, record in records_by_id.items():
        payload = _json_safe(record.raw or record.to_dict())
        checksum = compute_checksum(payload)
        row = existing.get(external_id)
        if row is None:
            session.add(
                RawStagedRecord(
                    source=sync_run.source,
                    external_id=external_id,
                    payload=payload,
                    payload_checksum=checksum,
                    sync_run_id=sync_run.id,
                    fetched_at=now,
                )
            )
            summary.rows_inserted += 1
            continue
        row.fetched_at = now
        row.sync_run_id = sync_run.id
        if row.payload_checksum == checksum:
            summary.rows_unchanged += 1
            continue
        row.payload = payload
        row.payload_checksum = checksum
        summary.rows_refreshed += 1
    session.flush()
    return summary
