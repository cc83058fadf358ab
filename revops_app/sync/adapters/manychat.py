"""ManyChat subscribers adapter (the chat-subscriber source)."""

from __future__ import annotations

from typing import Any, Mapping

from revops_app.models import LifecycleStage, SyncSource

from ..errors import TransportError
from ..pipeline.normalize import build_full_name, normalize_email, normalize_phone, sanitize_string, sanitize_tags
from .base import HttpSourceAdapter, NormalizedRecord, PageResult

MANYCHAT_BASE_URL = "https://api.manychat.com"
DEFAULT_PAGE_SIZE = 100


def normalize_manychat_subscriber(subscriber: Mapping[str, Any]) -> NormalizedRecord | None:
    subscriber_id = sanitize_string(subscriber.get("id") or subscriber.get("subscriber_id"))
    if subscriber_id is None:
        return None
    extra: dict[str, Any] = {}
    if subscriber.get("custom_fields"):
        extra["custom_fields"] = subscriber.get("custom_fields")
    return NormalizedRecord(
        external_id=subscriber_id,
        email=normalize_email(subscriber.get("email")),
        phone=normalize_phone(subscriber.get("phone") or subscriber.get("whatsapp_phone")),
        full_name=build_full_name(None, subscriber.get("first_name"), subscriber.get("last_name"))
        or sanitize_string(subscriber.get("name")),
        tags=tuple(sanitize_tags(subscriber.get("tags"))),
        opt_ins={
            "wa_opt_in": subscriber.get("optin_whatsapp") is True,
            "sms_opt_in": subscriber.get("optin_sms") is True,
            "email_opt_in": subscriber.get("optin_email") is not False,
        },
        platform_ids={"manychat_subscriber_id": subscriber_id},
        lifecycle_stage=LifecycleStage.LEAD,
        extra_data=extra,
        raw=dict(subscriber),
    )


class ManyChatSubscribersAdapter(HttpSourceAdapter):
    """Page-number pagination over ``getSubscribers``; the cursor is the next page number."""

    source = SyncSource.MANYCHAT.value

    def __init__(
        self,
        *,
        api_key: str,
        page_size: int = DEFAULT_PAGE_SIZE,
        base_url: str = MANYCHAT_BASE_URL,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self.api_key = api_key
        self.page_size = max(1, int(page_size))
        self.base_url = base_url.rstrip("/")

    def _fetch_page(self, cursor: Any) -> PageResult:
        page = int(cursor or 1)
        payload = self._get_json(
            f"{self.base_url}/fb/subscriber/getSubscribers",
            headers={"Authorization": f"Bearer {self.api_key}", "Accept": "application/json"},
            params={"page": page, "limit": self.page_size},
        )
        if not isinstance(payload, Mapping) or payload.get("status") != "success":
            message = payload.get("message") if isinstance(payload, Mapping) else None
            raise TransportError(f"manychat returned an unsuccessful response: {message or 'unknown error'}")
        subscribers = payload.get("data") or []
        records = []
        dropped = 0
        for subscriber in subscribers:
            record = normalize_manychat_subscriber(subscriber) if isinstance(subscriber, Mapping) else None
            if record is None:
                dropped += 1
                continue
            records.append(record)
        return PageResult(
            records=records,
            next_cursor=page + 1,
            has_more=len(subscribers) >= self.page_size,
            dropped=dropped,
        )
