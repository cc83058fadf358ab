"""
Client side of payment recovery: drive the remote page endpoint to completion.

The processor calls a page function repeatedly, accumulates the results into
a ``RecoveryJobState``, persists that state after every batch, and stops at a
hard batch ceiling even if the remote side keeps reporting more work.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from typing import Any, Callable, Mapping

import requests

from ..errors import AuthError, TransportError
from .job_state import (
    JOB_TYPE,
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_PAUSED,
    STATUS_RUNNING,
    JsonFileJobStateStore,
    RecoveryJobState,
)
from .service import RecoveryInterrupted, RecoveryPage

DEFAULT_MAX_BATCHES = 500
DEFAULT_INTER_BATCH_DELAY_SECONDS = 1.0

PageFetcher = Callable[..., "RecoveryPage | Mapping[str, Any]"]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RecoveryApiClient:
    """Call ``POST /sync/recover-revenue`` on a remote deployment."""

    def __init__(
        self,
        base_url: str,
        admin_key: str,
        *,
        session: requests.Session | None = None,
        timeout: float = 120.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.admin_key = admin_key
        self.session = session or requests.Session()
        self.timeout = timeout

    def __call__(
        self,
        *,
        hours_lookback: int,
        cursor: str | None = None,
        sync_run_id: str | None = None,
        exclude_recent_hours: int | None = None,
    ) -> RecoveryPage:
        body: dict[str, Any] = {"hours_lookback": hours_lookback}
        if cursor:
            body["starting_after"] = cursor
        if sync_run_id:
            body["sync_run_id"] = sync_run_id
        if exclude_recent_hours:
            body["exclude_recent_hours"] = exclude_recent_hours
        try:
            response = self.session.post(
                f"{self.base_url}/sync/recover-revenue",
                json=body,
                headers={"X-ADMIN-KEY": self.admin_key},
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise TransportError(f"recovery request failed: {exc}") from exc
        if response.status_code in (401, 403):
            raise AuthError("Recovery endpoint rejected the admin key.")
        if response.status_code >= 400:
            partial = self._partial_page(response)
            if partial is not None:
                cause_cls = AuthError if partial.error_code == AuthError.code else TransportError
                raise RecoveryInterrupted(partial, cause_cls(partial.error or "recovery page interrupted"))
            raise TransportError(
                f"recovery endpoint error: {response.status_code} - {(response.text or '')[:200]}",
                status_code=response.status_code,
            )
        return RecoveryPage.from_dict(response.json())

    @staticmethod
    def _partial_page(response: requests.Response) -> RecoveryPage | None:
        try:
            payload = response.json()
        except ValueError:
            return None
        if not isinstance(payload, Mapping) or payload.get("ok", True) or not payload.get("sync_run_id"):
            return None
        return RecoveryPage.from_dict(payload)


class RecoveryBatchProcessor:
    """Loop recovery pages with persistence, cancellation, and a batch ceiling."""

    def __init__(
        self,
        fetch_page: PageFetcher,
        store: JsonFileJobStateStore,
        *,
        max_batches: int = DEFAULT_MAX_BATCHES,
        inter_batch_delay: float = DEFAULT_INTER_BATCH_DELAY_SECONDS,
        sleep_fn: Callable[[float], None] | None = None,
        cancel_event: threading.Event | None = None,
        now_fn: Callable[[], datetime] = _utcnow,
        on_progress: Callable[[RecoveryJobState], None] | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.fetch_page = fetch_page
        self.store = store
        self.max_batches = max(1, int(max_batches))
        self.inter_batch_delay = max(0.0, float(inter_batch_delay))
        self.sleep_fn = sleep_fn
        self.cancel_event = cancel_event or threading.Event()
        self.now_fn = now_fn
        self.on_progress = on_progress
        self.logger = logger or logging.getLogger(__name__)
        self.served_from_cache = False

    def cancel(self) -> None:
        self.cancel_event.set()

    def load_resumable(self, hours_lookback: int) -> RecoveryJobState | None:
        """Return saved state worth reusing for ``hours_lookback``, if any."""

        state = self.store.load(JOB_TYPE)
        if state is None:
            return None
        if state.is_expired(self.now_fn()) or state.hours_lookback != int(hours_lookback):
            self.store.clear(JOB_TYPE)
            return None
        return state

    def run(
        self,
        hours_lookback: int,
        *,
        fresh: bool = False,
        exclude_recent_hours: int | None = None,
    ) -> RecoveryJobState:
        """
        Process batches until the remote side is exhausted, the job is
        canceled, or the batch ceiling is hit.

        A cancel leaves a ``paused`` state behind. Errors after partial
        progress are persisted on the state before being re-raised.
        """

        state = None if fresh else self.load_resumable(hours_lookback)
        self.served_from_cache = state is not None and state.status == STATUS_COMPLETED
        if self.served_from_cache:
            self.logger.info(
                "Returning cached recovery result saved at %s; pass fresh=True to run again",
                state.timestamp or "unknown time",
                extra={"sync_run_id": state.sync_run_id},
            )
            return state
        if state is None:
            if fresh:
                self.store.clear(JOB_TYPE)
            state = RecoveryJobState(hours_lookback=int(hours_lookback))
        state.status = STATUS_RUNNING
        state.last_error = None
        self.cancel_event.clear()

        while state.batches < self.max_batches:
            if self.cancel_event.is_set():
                state.status = STATUS_PAUSED
                self._persist(state)
                self.logger.info("Recovery job paused", extra={"batches": state.batches})
                return state

            try:
                raw_page = self.fetch_page(
                    hours_lookback=state.hours_lookback,
                    cursor=state.cursor,
                    sync_run_id=state.sync_run_id,
                    exclude_recent_hours=exclude_recent_hours,
                )
            except Exception as exc:
                if isinstance(exc, RecoveryInterrupted):
                    self._accumulate(state, exc.page)
                state.status = STATUS_FAILED
                state.last_error = str(exc)
                if state.batches > 0:
                    self._persist(state)
                self.logger.error(
                    "Recovery batch failed",
                    extra={"batches": state.batches, "sync_run_id": state.sync_run_id, "error_message": str(exc)},
                )
                raise

            page = raw_page if isinstance(raw_page, RecoveryPage) else RecoveryPage.from_dict(raw_page)
            self._accumulate(state, page)
            if not page.has_more:
                state.status = STATUS_COMPLETED
                self._persist(state)
                return state
            self._persist(state)
            if self.inter_batch_delay:
                self._wait_between_batches()

        state.status = STATUS_COMPLETED
        state.last_error = f"Batch ceiling of {self.max_batches} reached"
        self._persist(state)
        self.logger.warning(
            "Recovery job stopped at batch ceiling",
            extra={"batches": state.batches, "sync_run_id": state.sync_run_id},
        )
        return state

    def _wait_between_batches(self) -> None:
        """Wait out the inter-batch delay; a ``cancel()`` ends the wait early."""
        if self.sleep_fn is not None:
            self.sleep_fn(self.inter_batch_delay)
        else:
            self.cancel_event.wait(self.inter_batch_delay)

    def _accumulate(self, state: RecoveryJobState, page: RecoveryPage) -> None:
        state.batches += 1
        state.sync_run_id = page.sync_run_id or state.sync_run_id
        state.cursor = page.next_cursor
        state.processed += page.processed
        state.recovered_amount += page.recovered_amount
        state.failed_amount += page.failed_amount
        state.skipped_amount += page.skipped_amount
        state.succeeded.extend(page.succeeded)
        state.failed.extend(page.failed)
        state.skipped.extend(page.skipped)

    def _persist(self, state: RecoveryJobState) -> None:
        state.touch(self.now_fn())
        self.store.save(state)
        if self.on_progress is not None:
            self.on_progress(state)


__all__ = ["RecoveryApiClient", "RecoveryBatchProcessor"]
