"""Source adapters and the factory that builds them from app config."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, Dict, Mapping

import requests

from revops_app.models import SyncSource

from ..errors import ValidationError
from ..registry import get_source_registry, missing_config
from .base import (
    DEFAULT_TIMEOUT_SECONDS,
    HttpSourceAdapter,
    NormalizedRecord,
    PageResult,
    PaymentObservation,
    SourceAdapter,
)
from .ghl import GHLContactsAdapter, normalize_ghl_contact
from .manychat import ManyChatSubscribersAdapter, normalize_manychat_subscriber
from .paypal import PayPalTransactionsAdapter, map_paypal_status, normalize_paypal_transaction
from .stripe import StripePaymentsAdapter, map_payment_intent_status, normalize_payment_intent


def _build_ghl(config: Mapping[str, Any], params: Mapping[str, Any], **kwargs: Any) -> SourceAdapter:
    return GHLContactsAdapter(
        api_key=config["GHL_API_KEY"],
        location_id=config["GHL_LOCATION_ID"],
        page_size=int(params.get("page_size") or config.get("GHL_PAGE_SIZE") or 100),
        **kwargs,
    )


def _build_manychat(config: Mapping[str, Any], params: Mapping[str, Any], **kwargs: Any) -> SourceAdapter:
    return ManyChatSubscribersAdapter(
        api_key=config["MANYCHAT_API_KEY"],
        page_size=int(params.get("page_size") or config.get("MANYCHAT_PAGE_SIZE") or 100),
        **kwargs,
    )


def _build_stripe(config: Mapping[str, Any], params: Mapping[str, Any], **kwargs: Any) -> SourceAdapter:
    return StripePaymentsAdapter(
        secret_key=config["STRIPE_SECRET_KEY"],
        page_size=int(params.get("page_size") or 100),
        created_gte=params.get("created_gte"),
        created_lte=params.get("created_lte"),
        **kwargs,
    )


def _build_paypal(config: Mapping[str, Any], params: Mapping[str, Any], **kwargs: Any) -> SourceAdapter:
    def _parse(value: Any) -> datetime | None:
        if not value:
            return None
        if isinstance(value, datetime):
            return value
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))

    return PayPalTransactionsAdapter(
        client_id=config["PAYPAL_CLIENT_ID"],
        client_secret=config["PAYPAL_CLIENT_SECRET"],
        start_date=_parse(params.get("start_date")),
        end_date=_parse(params.get("end_date")),
        page_size=int(params.get("page_size") or 100),
        **kwargs,
    )


ADAPTER_BUILDERS: Dict[str, Callable[..., SourceAdapter]] = {
    SyncSource.GHL.value: _build_ghl,
    SyncSource.MANYCHAT.value: _build_manychat,
    SyncSource.STRIPE.value: _build_stripe,
    SyncSource.PAYPAL.value: _build_paypal,
}


def build_adapter(
    source: SyncSource | str,
    config: Mapping[str, Any],
    *,
    params: Mapping[str, Any] | None = None,
    session: requests.Session | None = None,
) -> SourceAdapter:
    """
    Construct the adapter for ``source`` using credentials from ``config``.

    Raises ``ValidationError`` when the source has no page adapter or its
    credentials are not configured.
    """

    source_value = SyncSource.coerce(source).value
    descriptor = get_source_registry()[source_value]
    builder = ADAPTER_BUILDERS.get(source_value)
    if builder is None or not descriptor.has_adapter:
        raise ValidationError(f"Source '{source_value}' has no page adapter.", field="source")
    missing = missing_config(descriptor, config)
    if missing:
        raise ValidationError(
            f"Source '{source_value}' is not configured; missing {', '.join(missing)}.",
            field="source",
        )
    timeout = float(config.get("SYNC_HTTP_TIMEOUT_SECONDS") or DEFAULT_TIMEOUT_SECONDS)
    return builder(config, params or {}, session=session, timeout=timeout)


__all__ = [
    "ADAPTER_BUILDERS",
    "GHLContactsAdapter",
    "HttpSourceAdapter",
    "ManyChatSubscribersAdapter",
    "NormalizedRecord",
    "PageResult",
    "PayPalTransactionsAdapter",
    "PaymentObservation",
    "SourceAdapter",
    "StripePaymentsAdapter",
    "build_adapter",
    "map_payment_intent_status",
    "map_paypal_status",
    "normalize_ghl_contact",
    "normalize_manychat_subscriber",
    "normalize_payment_intent",
    "normalize_paypal_transaction",
]
