"""
Stripe payment-intents adapter (payment processor A).

Uses Stripe's opaque ``starting_after`` cursor. Each payment intent becomes a
record carrying a ``PaymentObservation`` so the resolver can maintain the
client's monetary aggregates.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Mapping

from revops_app.models import LifecycleStage, SyncSource

from ..errors import TransportError
from ..pipeline.normalize import normalize_email, normalize_phone, sanitize_string
from .base import HttpSourceAdapter, NormalizedRecord, PageResult, PaymentObservation

STRIPE_BASE_URL = "https://api.stripe.com/v1"
DEFAULT_PAGE_SIZE = 100

_STATUS_MAP = {
    "succeeded": "paid",
    "requires_payment_method": "failed",
    "requires_action": "pending",
    "requires_confirmation": "pending",
    "processing": "pending",
    "canceled": "canceled",
}


def map_payment_intent_status(status: str | None) -> str:
    return _STATUS_MAP.get(status or "", "failed")


def normalize_payment_intent(intent: Mapping[str, Any]) -> NormalizedRecord | None:
    """Translate a payment intent; intents without any email are dropped."""

    intent_id = sanitize_string(intent.get("id"))
    if intent_id is None:
        return None

    customer = intent.get("customer")
    customer_id: str | None = None
    name = phone = None
    email = intent.get("receipt_email")
    if isinstance(customer, Mapping):
        customer_id = sanitize_string(customer.get("id"))
        email = email or customer.get("email")
        name = sanitize_string(customer.get("name"))
        phone = normalize_phone(customer.get("phone"))
    elif isinstance(customer, str):
        customer_id = sanitize_string(customer)

    normalized_email = normalize_email(email)
    if normalized_email is None:
        return None

    status = map_payment_intent_status(intent.get("status"))
    extra: dict[str, Any] = {}
    if sanitize_string(intent.get("description")):
        extra["last_payment_description"] = sanitize_string(intent.get("description"))
    last_error = intent.get("last_payment_error") or {}
    if status == "failed" and isinstance(last_error, Mapping):
        extra["last_failure_code"] = last_error.get("decline_code") or last_error.get("code")
    created = intent.get("created")
    if isinstance(created, (int, float)):
        extra["last_payment_at"] = datetime.fromtimestamp(created, tz=timezone.utc).isoformat()

    return NormalizedRecord(
        external_id=intent_id,
        email=normalized_email,
        phone=phone,
        full_name=name,
        platform_ids={"stripe_customer_id": customer_id} if customer_id else {},
        lifecycle_stage=LifecycleStage.CUSTOMER if status == "paid" else LifecycleStage.LEAD,
        payment=PaymentObservation(
            amount_cents=int(intent.get("amount") or 0),
            currency=str(intent.get("currency") or "usd").lower(),
            status=status,
        ),
        extra_data=extra,
        raw=dict(intent),
    )


class StripePaymentsAdapter(HttpSourceAdapter):
    """List payment intents, optionally bounded by a creation window."""

    source = SyncSource.STRIPE.value

    def __init__(
        self,
        *,
        secret_key: str,
        page_size: int = DEFAULT_PAGE_SIZE,
        created_gte: int | None = None,
        created_lte: int | None = None,
        base_url: str = STRIPE_BASE_URL,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self.secret_key = secret_key
        self.page_size = max(1, min(100, int(page_size)))
        self.created_gte = created_gte
        self.created_lte = created_lte
        self.base_url = base_url.rstrip("/")

    def _fetch_page(self, cursor: Any) -> PageResult:
        params: list[tuple[str, Any]] = [
            ("limit", self.page_size),
            ("expand[]", "data.customer"),
        ]
        if self.created_gte is not None:
            params.append(("created[gte]", int(self.created_gte)))
        if self.created_lte is not None:
            params.append(("created[lte]", int(self.created_lte)))
        if cursor:
            params.append(("starting_after", str(cursor)))

        payload = self._get_json(
            f"{self.base_url}/payment_intents",
            headers={"Authorization": f"Bearer {self.secret_key}"},
            params=params,
        )
        if not isinstance(payload, Mapping):
            raise TransportError("stripe returned an unexpected payload shape.")
        intents = payload.get("data") or []
        records = []
        dropped = 0
        for intent in intents:
            record = normalize_payment_intent(intent) if isinstance(intent, Mapping) else None
            if record is None:
                dropped += 1
                continue
            records.append(record)
        last_id = intents[-1].get("id") if intents and isinstance(intents[-1], Mapping) else cursor
        return PageResult(
            records=records,
            next_cursor=last_id,
            has_more=bool(payload.get("has_more")) and bool(intents),
            dropped=dropped,
        )
