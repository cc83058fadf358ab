"""
Minimal Stripe billing client used by the payment recovery job.

Only the calls recovery needs are wrapped: listing open invoices, listing a
customer's saved cards, switching an invoice's payment method, and paying it.
Every call is preceded by a fixed delay to stay under Stripe's rate limits.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Mapping, Sequence

import requests

from ..errors import AuthError, SyncError, TransportError

STRIPE_BASE_URL = "https://api.stripe.com/v1"
DEFAULT_API_DELAY_MS = 150


class PaymentAttemptFailed(SyncError):
    """Stripe refused to collect an invoice (card declined, no method, etc.)."""

    code = "payment_failed"


class StripeBillingClient:
    def __init__(
        self,
        secret_key: str,
        *,
        session: requests.Session | None = None,
        base_url: str = STRIPE_BASE_URL,
        api_delay_ms: int = DEFAULT_API_DELAY_MS,
        timeout: float = 30.0,
        sleep_fn: Callable[[float], None] = time.sleep,
        logger: logging.Logger | None = None,
    ) -> None:
        if not secret_key:
            raise AuthError("STRIPE_SECRET_KEY not configured")
        self.secret_key = secret_key
        self.session = session or requests.Session()
        self.base_url = base_url.rstrip("/")
        self.api_delay_ms = max(0, int(api_delay_ms))
        self.timeout = timeout
        self.sleep_fn = sleep_fn
        self.logger = logger or logging.getLogger(__name__)

    def _throttle(self) -> None:
        if self.api_delay_ms:
            self.sleep_fn(self.api_delay_ms / 1000.0)

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: Sequence[tuple[str, Any]] | None = None,
        data: Mapping[str, Any] | None = None,
    ) -> Any:
        self._throttle()
        try:
            response = self.session.request(
                method,
                f"{self.base_url}{path}",
                headers={"Authorization": f"Bearer {self.secret_key}"},
                params=params,
                data=data,
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise TransportError(f"stripe request failed: {exc}") from exc

        if response.status_code in (401, 403):
            raise AuthError(f"stripe rejected credentials (status={response.status_code}).")
        try:
            payload = response.json()
        except ValueError:
            payload = {}
        if response.status_code == 402 or (
            response.status_code == 400 and isinstance(payload, Mapping) and path.endswith("/pay")
        ):
            error = payload.get("error") if isinstance(payload, Mapping) else None
            message = (error or {}).get("message") if isinstance(error, Mapping) else None
            raise PaymentAttemptFailed(message or "Payment attempt failed")
        if response.status_code >= 400:
            body = (getattr(response, "text", "") or "")[:200]
            raise TransportError(
                f"stripe API error: {response.status_code} - {body}",
                status_code=response.status_code,
            )
        return payload

    def list_open_invoices(
        self,
        *,
        created_gte: int,
        limit: int,
        starting_after: str | None = None,
    ) -> Mapping[str, Any]:
        params: list[tuple[str, Any]] = [
            ("status", "open"),
            ("limit", int(limit)),
            ("created[gte]", int(created_gte)),
            ("expand[]", "data.subscription"),
            ("expand[]", "data.customer"),
        ]
        if starting_after:
            params.append(("starting_after", starting_after))
        payload = self._request("GET", "/invoices", params=params)
        if not isinstance(payload, Mapping):
            raise TransportError("stripe returned an unexpected invoice list payload.")
        return payload

    def list_card_payment_methods(self, customer_id: str) -> list[Mapping[str, Any]]:
        payload = self._request("GET", "/payment_methods", params=[("customer", customer_id), ("type", "card")])
        return list((payload or {}).get("data") or [])

    def set_default_payment_method(self, invoice_id: str, payment_method_id: str) -> Mapping[str, Any]:
        return self._request("POST", f"/invoices/{invoice_id}", data={"default_payment_method": payment_method_id})

    def pay_invoice(self, invoice_id: str) -> Mapping[str, Any]:
        return self._request("POST", f"/invoices/{invoice_id}/pay")


__all__ = ["PaymentAttemptFailed", "StripeBillingClient"]
