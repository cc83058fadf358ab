"""
PayPal transaction-search adapter (payment processor B).

Authenticates with client credentials and pages the reporting API by page
number within a fixed date window (PayPal caps windows at 31 days).
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Mapping

import requests

from revops_app.models import LifecycleStage, SyncSource

from ..errors import AuthError, TransportError
from ..pipeline.normalize import build_full_name, normalize_email, sanitize_string
from .base import HttpSourceAdapter, NormalizedRecord, PageResult, PaymentObservation

PAYPAL_BASE_URL = "https://api-m.paypal.com"
DEFAULT_PAGE_SIZE = 100
MAX_WINDOW_DAYS = 31


def map_paypal_status(status: str | None, event_code: str | None = None) -> str:
    status_lower = (status or "").lower()
    event_lower = (event_code or "").lower()
    if status_lower in {"s", "success", "completed"} or "completed" in event_lower:
        return "paid"
    if status_lower in {"d", "denied", "failed", "f", "r", "reversed", "refunded"}:
        return "failed"
    return "pending"


def format_paypal_date(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _amount_to_cents(raw: object | None) -> int:
    try:
        return int(round(abs(float(raw or 0)) * 100))
    except (TypeError, ValueError):
        return 0


def normalize_paypal_transaction(detail: Mapping[str, Any]) -> NormalizedRecord | None:
    info = detail.get("transaction_info") or {}
    payer = detail.get("payer_info") or {}
    transaction_id = sanitize_string(info.get("transaction_id"))
    email = normalize_email(payer.get("email_address"))
    if transaction_id is None or email is None:
        return None

    payer_name = payer.get("payer_name") or {}
    amount = info.get("transaction_amount") or {}
    status = map_paypal_status(info.get("transaction_status"), info.get("transaction_event_code"))
    account_id = sanitize_string(payer.get("account_id"))
    cart_items = (detail.get("cart_info") or {}).get("item_details") or []
    product = None
    if cart_items and isinstance(cart_items[0], Mapping):
        product = sanitize_string(cart_items[0].get("item_name"))
    product = product or sanitize_string(info.get("transaction_subject"))

    return NormalizedRecord(
        external_id=transaction_id,
        email=email,
        full_name=build_full_name(
            payer_name.get("alternate_full_name"), payer_name.get("given_name"), payer_name.get("surname")
        ),
        platform_ids={"paypal_customer_id": account_id} if account_id else {},
        lifecycle_stage=LifecycleStage.CUSTOMER if status == "paid" else LifecycleStage.LEAD,
        payment=PaymentObservation(
            amount_cents=_amount_to_cents(amount.get("value")),
            currency=str(amount.get("currency_code") or "usd").lower(),
            status=status,
        ),
        extra_data={"last_payment_product": product} if product else {},
        raw=dict(detail),
    )


class PayPalTransactionsAdapter(HttpSourceAdapter):
    """Fetch PayPal transactions for a date window; the cursor is the page number."""

    source = SyncSource.PAYPAL.value

    def __init__(
        self,
        *,
        client_id: str,
        client_secret: str,
        start_date: datetime | None = None,
        end_date: datetime | None = None,
        page_size: int = DEFAULT_PAGE_SIZE,
        base_url: str = PAYPAL_BASE_URL,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self.client_id = client_id
        self.client_secret = client_secret
        self.end_date = end_date or datetime.now(timezone.utc)
        self.start_date = start_date or self.end_date - timedelta(days=MAX_WINDOW_DAYS)
        if self.end_date - self.start_date > timedelta(days=MAX_WINDOW_DAYS):
            self.start_date = self.end_date - timedelta(days=MAX_WINDOW_DAYS)
        self.page_size = max(1, min(500, int(page_size)))
        self.base_url = base_url.rstrip("/")
        self._access_token: str | None = None

    def _get_access_token(self) -> str:
        if self._access_token:
            return self._access_token
        try:
            response = self.session.post(
                f"{self.base_url}/v1/oauth2/token",
                auth=(self.client_id, self.client_secret),
                headers={"Content-Type": "application/x-www-form-urlencoded"},
                data={"grant_type": "client_credentials"},
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise TransportError(f"paypal token request failed: {exc}") from exc
        if response.status_code in (400, 401, 403):
            raise AuthError(f"paypal rejected client credentials (status={response.status_code}).")
        if response.status_code >= 400:
            raise TransportError(f"paypal token error: {response.status_code}", status_code=response.status_code)
        token = (response.json() or {}).get("access_token")
        if not token:
            raise AuthError("paypal token response did not include an access_token.")
        self._access_token = token
        return token

    def _fetch_page(self, cursor: Any) -> PageResult:
        page = int(cursor or 1)
        token = self._get_access_token()
        try:
            payload = self._get_json(
                f"{self.base_url}/v1/reporting/transactions",
                headers={"Authorization": f"Bearer {token}", "Content-Type": "application/json"},
                params={
                    "start_date": format_paypal_date(self.start_date),
                    "end_date": format_paypal_date(self.end_date),
                    "page_size": self.page_size,
                    "page": page,
                    "fields": "transaction_info,payer_info,cart_info",
                },
            )
        except TransportError as exc:
            # PayPal answers 404 when the window holds no transactions.
            if exc.status_code == 404:
                return PageResult(records=(), next_cursor=page, has_more=False)
            raise
        if not isinstance(payload, Mapping):
            raise TransportError("paypal returned an unexpected payload shape.")

        details = payload.get("transaction_details") or []
        total_pages = int(payload.get("total_pages") or 1)
        records = []
        dropped = 0
        for detail in details:
            record = normalize_paypal_transaction(detail) if isinstance(detail, Mapping) else None
            if record is None:
                dropped += 1
                continue
            records.append(record)
        return PageResult(
            records=records,
            next_cursor=page + 1,
            has_more=page < total_pages,
            dropped=dropped,
        )
