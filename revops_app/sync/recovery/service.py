"""
Server side of payment recovery: retry one page of open Stripe invoices.

Each call processes at most ``RECOVERY_BATCH_SIZE`` invoices and records its
progress on the ``smart_recovery`` sync run, so a client can drive the job
page by page and resume after interruptions.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Mapping

from flask import current_app, has_app_context
from sqlalchemy import select

from revops_app.models import SyncRun, SyncRunStatus, SyncSource, db
from revops_app.models.sync import RESUMABLE_STATUSES
from revops_app.utils.error_handler import alert_sync_failure

from ..errors import RunNotFound, SyncError, ValidationError, classify_exception
from ..metrics import record_recovery_batch, record_run_finished
from ..pipeline.controller import NOT_FOUND_MESSAGE, SyncRunController, empty_checkpoint
from .billing import PaymentAttemptFailed, StripeBillingClient

VALID_HOURS_LOOKBACK: tuple[int, ...] = (24, 168, 360, 720, 1440)
SKIP_SUBSCRIPTION_STATUSES = frozenset({"canceled", "incomplete_expired"})
SKIP_INVOICE_STATUSES = frozenset({"paid", "void", "uncollectible"})
DEFAULT_BATCH_SIZE = 15
MAX_SAVED_CARDS = 2


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class RecoveryPage:
    """Outcome of one recovery page."""

    ok: bool
    sync_run_id: str
    processed: int = 0
    has_more: bool = False
    next_cursor: str | None = None
    recovered_amount: int = 0
    failed_amount: int = 0
    skipped_amount: int = 0
    excluded: int = 0
    succeeded: list[dict[str, Any]] = field(default_factory=list)
    failed: list[dict[str, Any]] = field(default_factory=list)
    skipped: list[dict[str, Any]] = field(default_factory=list)
    error: str | None = None
    error_code: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "sync_run_id": self.sync_run_id,
            "processed": self.processed,
            "has_more": self.has_more,
            "next_cursor": self.next_cursor,
            "recovered_amount": self.recovered_amount,
            "failed_amount": self.failed_amount,
            "skipped_amount": self.skipped_amount,
            "excluded": self.excluded,
            "succeeded": list(self.succeeded),
            "failed": list(self.failed),
            "skipped": list(self.skipped),
            "error": self.error,
            "error_code": self.error_code,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "RecoveryPage":
        return cls(
            ok=bool(payload.get("ok", True)),
            sync_run_id=str(payload.get("sync_run_id") or ""),
            processed=int(payload.get("processed") or 0),
            has_more=bool(payload.get("has_more")),
            next_cursor=payload.get("next_cursor"),
            recovered_amount=int(payload.get("recovered_amount") or 0),
            failed_amount=int(payload.get("failed_amount") or 0),
            skipped_amount=int(payload.get("skipped_amount") or 0),
            excluded=int(payload.get("excluded") or 0),
            succeeded=list(payload.get("succeeded") or []),
            failed=list(payload.get("failed") or []),
            skipped=list(payload.get("skipped") or []),
            error=payload.get("error"),
            error_code=payload.get("error_code"),
        )


class RecoveryInterrupted(SyncError):
    """A page stopped part way; ``page`` holds what was done and was saved on the run."""

    def __init__(self, page: RecoveryPage, cause: SyncError) -> None:
        super().__init__(str(cause))
        self.page = page
        self.cause = cause
        self.code = cause.code
        self.retryable = cause.retryable


def _customer_fields(invoice: Mapping[str, Any]) -> tuple[str | None, str | None]:
    customer = invoice.get("customer")
    if isinstance(customer, Mapping):
        return customer.get("id"), customer.get("email")
    if isinstance(customer, str):
        return customer, invoice.get("customer_email")
    return None, invoice.get("customer_email")


def _card_label(method: Mapping[str, Any]) -> str:
    card = method.get("card") or {}
    return f"{card.get('brand') or 'card'} ****{card.get('last4') or '????'}"


class RevenueRecoveryService:
    """Retry collection of open invoices, one bounded page at a time."""

    def __init__(
        self,
        billing: StripeBillingClient | None = None,
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
        self.billing = billing or StripeBillingClient(
            config.get("STRIPE_SECRET_KEY") or "",
            api_delay_ms=int(config.get("RECOVERY_API_DELAY_MS") or 150),
        )
        self.batch_size = int(config.get("RECOVERY_BATCH_SIZE") or DEFAULT_BATCH_SIZE)
        self.now_fn = now_fn
        if logger is not None:
            self.logger = logger
        elif has_app_context():
            self.logger = current_app.logger
        else:
            self.logger = logging.getLogger(__name__)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def recover_revenue(
        self,
        hours_lookback: int,
        *,
        cursor: str | None = None,
        sync_run_id: str | None = None,
        exclude_recent_hours: int | None = None,
    ) -> RecoveryPage:
        """
        Process one page of open invoices created within ``hours_lookback``.

        The first call (no ``sync_run_id``) opens a ``smart_recovery`` run;
        later calls pass the returned id and ``next_cursor`` back in.
        """

        try:
            hours = int(hours_lookback)
        except (TypeError, ValueError):
            hours = -1
        if hours not in VALID_HOURS_LOOKBACK:
            raise ValidationError(
                "Invalid hours_lookback. Valid values: " + ", ".join(str(value) for value in VALID_HOURS_LOOKBACK),
                field="hours_lookback",
            )

        run = self._load_or_start_run(hours, sync_run_id, exclude_recent_hours)
        checkpoint = dict(run.checkpoint or empty_checkpoint())
        if cursor is None:
            cursor = checkpoint.get("cursor")
        excluded_ids = self._recently_processed_ids(exclude_recent_hours, current_run_id=run.id)
        created_gte = int((self.now_fn() - timedelta(hours=hours)).timestamp())

        page = RecoveryPage(ok=True, sync_run_id=run.id, next_cursor=cursor)
        try:
            listing = self.billing.list_open_invoices(
                created_gte=created_gte,
                limit=self.batch_size,
                starting_after=cursor,
            )
        except SyncError as exc:
            self._fail_run(run, exc)
            record_recovery_batch(outcome="failed")
            raise

        invoices = [invoice for invoice in listing.get("data") or [] if isinstance(invoice, Mapping)]
        for invoice in invoices:
            if invoice.get("id") in excluded_ids:
                page.excluded += 1
            else:
                try:
                    self._process_invoice(invoice, page)
                except SyncError as exc:
                    page.ok = False
                    page.has_more = True
                    page.error = str(exc)
                    page.error_code = classify_exception(exc)
                    self._record_progress(run, page, fetched=page.processed + page.excluded, error=exc)
                    record_recovery_batch(
                        outcome="failed",
                        recovered_cents=page.recovered_amount,
                        failed_cents=page.failed_amount,
                        skipped_cents=page.skipped_amount,
                    )
                    raise RecoveryInterrupted(page, exc) from exc
                page.processed += 1
            page.next_cursor = invoice.get("id")
        page.has_more = bool(listing.get("has_more")) and bool(invoices)

        self._record_progress(run, page, fetched=len(invoices))
        record_recovery_batch(
            outcome="ok",
            recovered_cents=page.recovered_amount,
            failed_cents=page.failed_amount,
            skipped_cents=page.skipped_amount,
        )
        return page

    # ------------------------------------------------------------------
    # Run bookkeeping
    # ------------------------------------------------------------------
    def _load_or_start_run(self, hours: int, sync_run_id: str | None, exclude_recent_hours: int | None) -> SyncRun:
        controller = SyncRunController(
            session=self.session,
            config=self.config,
            now_fn=self.now_fn,
            logger=self.logger,
        )
        if sync_run_id:
            run = self.session.get(SyncRun, sync_run_id)
            if run is None or run.source != SyncSource.SMART_RECOVERY.value:
                raise RunNotFound(NOT_FOUND_MESSAGE)
            if run.status in RESUMABLE_STATUSES:
                return controller.resume(run.id)
            if not run.is_active:
                raise RunNotFound(NOT_FOUND_MESSAGE)
            return run
        return controller.start(
            SyncSource.SMART_RECOVERY,
            params={"hours_lookback": hours, "exclude_recent_hours": exclude_recent_hours or 0},
        )

    def _recently_processed_ids(self, exclude_recent_hours: int | None, *, current_run_id: str) -> set[str]:
        if not exclude_recent_hours or int(exclude_recent_hours) <= 0:
            return set()
        cutoff = self.now_fn() - timedelta(hours=int(exclude_recent_hours))
        runs = self.session.scalars(
            select(SyncRun).where(
                SyncRun.source == SyncSource.SMART_RECOVERY.value,
                SyncRun.status.in_([SyncRunStatus.COMPLETED, SyncRunStatus.COMPLETED_WITH_ERRORS]),
                SyncRun.completed_at >= cutoff,
                SyncRun.id != current_run_id,
            )
        )
        processed: set[str] = set()
        for run in runs:
            processed.update((run.checkpoint or {}).get("invoice_ids") or [])
        return processed

    def _record_progress(
        self, run: SyncRun, page: RecoveryPage, *, fetched: int, error: SyncError | None = None
    ) -> None:
        """Fold ``page`` into the run. With ``error`` the run is failed at the last finished invoice."""
        now = self.now_fn()
        checkpoint = dict(run.checkpoint or empty_checkpoint())
        invoice_ids = list(checkpoint.get("invoice_ids") or [])
        invoice_ids.extend(item["invoice_id"] for item in (*page.succeeded, *page.failed, *page.skipped))
        checkpoint.update(
            {
                "cursor": page.next_cursor,
                "page": int(checkpoint.get("page") or 0) + 1,
                "last_error": str(error) if error else None,
                "last_error_code": classify_exception(error) if error else None,
                "recovered_amount": int(checkpoint.get("recovered_amount") or 0) + page.recovered_amount,
                "failed_amount": int(checkpoint.get("failed_amount") or 0) + page.failed_amount,
                "skipped_amount": int(checkpoint.get("skipped_amount") or 0) + page.skipped_amount,
                "processed": int(checkpoint.get("processed") or 0) + page.processed,
                "invoice_ids": invoice_ids,
            }
        )
        run.checkpoint = checkpoint
        run.last_heartbeat_at = now
        run.total_fetched = (run.total_fetched or 0) + fetched
        run.total_inserted = (run.total_inserted or 0) + len(page.succeeded)
        run.total_updated = (run.total_updated or 0) + len(page.failed)
        run.total_skipped = (run.total_skipped or 0) + len(page.skipped) + page.excluded
        if error is not None:
            run.status = SyncRunStatus.FAILED
            run.error_message = str(error)
            run.completed_at = now
            record_run_finished(run.source, run.status.value)
        elif page.has_more:
            run.status = SyncRunStatus.CONTINUING
        else:
            run.status = SyncRunStatus.COMPLETED
            run.completed_at = now
            record_run_finished(run.source, run.status.value)
        self.session.commit()
        if error is not None:
            self.logger.error(
                "Recovery page interrupted after partial progress",
                extra={
                    "sync_run_id": run.id,
                    "sync_source": run.source,
                    "processed": page.processed,
                    "recovered_amount": page.recovered_amount,
                    "error_message": str(error),
                },
            )
            alert_sync_failure(run, error)
            return
        self.logger.info(
            "Recovery page processed",
            extra={
                "sync_run_id": run.id,
                "sync_source": run.source,
                "processed": page.processed,
                "recovered_amount": page.recovered_amount,
                "has_more": page.has_more,
            },
        )

    def _fail_run(self, run: SyncRun, exc: BaseException) -> None:
        self.session.rollback()
        run = self.session.get(SyncRun, run.id)
        checkpoint = dict(run.checkpoint or empty_checkpoint())
        checkpoint["last_error"] = str(exc)
        checkpoint["last_error_code"] = classify_exception(exc)
        run.checkpoint = checkpoint
        run.status = SyncRunStatus.FAILED
        run.error_message = str(exc)
        run.completed_at = self.now_fn()
        self.session.commit()
        record_run_finished(run.source, run.status.value)
        self.logger.error(
            "Recovery page failed",
            extra={"sync_run_id": run.id, "sync_source": run.source, "error_message": str(exc)},
        )
        alert_sync_failure(run, exc)

    # ------------------------------------------------------------------
    # Per-invoice processing
    # ------------------------------------------------------------------
    def _process_invoice(self, invoice: Mapping[str, Any], page: RecoveryPage) -> None:
        invoice_id = invoice.get("id")
        customer_id, customer_email = _customer_fields(invoice)
        amount_due = int(invoice.get("amount_due") or 0)
        currency = str(invoice.get("currency") or "usd")

        status = invoice.get("status")
        if status in SKIP_INVOICE_STATUSES:
            page.skipped.append(
                {
                    "invoice_id": invoice_id,
                    "customer_email": customer_email,
                    "amount_due": amount_due,
                    "currency": currency,
                    "reason": f"Invoice is {status}",
                }
            )
            page.skipped_amount += amount_due
            return

        subscription = invoice.get("subscription")
        if isinstance(subscription, Mapping) and subscription.get("status") in SKIP_SUBSCRIPTION_STATUSES:
            page.skipped.append(
                {
                    "invoice_id": invoice_id,
                    "customer_email": customer_email,
                    "amount_due": amount_due,
                    "currency": currency,
                    "reason": f"Subscription is {subscription.get('status')}",
                    "subscription_status": subscription.get("status"),
                }
            )
            page.skipped_amount += amount_due
            return

        saved_cards: list[Mapping[str, Any]] = []
        if customer_id:
            try:
                saved_cards = self.billing.list_card_payment_methods(customer_id)
            except SyncError:
                self.logger.warning(
                    "Could not list saved cards", exc_info=True, extra={"invoice_id": invoice_id}
                )

        cards_tried = 0
        last_error = ""
        attempts: list[tuple[str, str | None]] = [("default", None)]
        attempts.extend((_card_label(method), method.get("id")) for method in saved_cards[:MAX_SAVED_CARDS])
        for label, payment_method_id in attempts:
            try:
                if payment_method_id:
                    self.billing.set_default_payment_method(invoice_id, payment_method_id)
                paid = self.billing.pay_invoice(invoice_id)
            except PaymentAttemptFailed as exc:
                cards_tried += 1
                last_error = str(exc)
                continue
            if paid.get("status") == "paid":
                amount_paid = int(paid.get("amount_paid") or amount_due)
                page.succeeded.append(
                    {
                        "invoice_id": invoice_id,
                        "customer_email": customer_email,
                        "amount_recovered": amount_paid,
                        "currency": str(paid.get("currency") or currency),
                        "payment_method_used": label,
                    }
                )
                page.recovered_amount += amount_paid
                return
            cards_tried += 1
            last_error = f"Invoice status after payment attempt: {paid.get('status')}"

        page.failed.append(
            {
                "invoice_id": invoice_id,
                "customer_email": customer_email,
                "amount_due": amount_due,
                "currency": currency,
                "error": last_error,
                "cards_tried": cards_tried,
            }
        )
        page.failed_amount += amount_due


__all__ = [
    "RecoveryInterrupted",
    "RecoveryPage",
    "RevenueRecoveryService",
    "SKIP_INVOICE_STATUSES",
    "SKIP_SUBSCRIPTION_STATUSES",
    "VALID_HOURS_LOOKBACK",
]
