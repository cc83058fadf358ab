"""
GoHighLevel contacts adapter (the contacts CRM source).

Pages through ``/contacts/`` with offset (``skip``) pagination. A short page
means the location has been exhausted.
"""

from __future__ import annotations

from typing import Any, Mapping

from revops_app.models import LifecycleStage, SyncSource

from ..errors import TransportError
from ..pipeline.normalize import build_full_name, normalize_email, normalize_phone, sanitize_string, sanitize_tags
from .base import HttpSourceAdapter, NormalizedRecord, PageResult

GHL_BASE_URL = "https://services.leadconnectorhq.com"
GHL_API_VERSION = "2021-07-28"
DEFAULT_PAGE_SIZE = 100

_DND_CHANNELS = {"wa_opt_in": "whatsApp", "sms_opt_in": "sms", "email_opt_in": "email"}


def _opt_in_from_dnd(dnd_settings: Mapping[str, Any] | None, channel: str) -> bool:
    """A channel is opted in unless its DND status is ``active``."""

    settings = (dnd_settings or {}).get(channel) or {}
    return settings.get("status") != "active"


def normalize_ghl_contact(contact: Mapping[str, Any]) -> NormalizedRecord | None:
    contact_id = sanitize_string(contact.get("id"))
    if contact_id is None:
        return None
    dnd_settings = contact.get("dndSettings") if isinstance(contact.get("dndSettings"), Mapping) else None
    extra: dict[str, Any] = {}
    if contact.get("customFields"):
        extra["custom_fields"] = contact.get("customFields")
    if sanitize_string(contact.get("source")):
        extra["ghl_source"] = sanitize_string(contact.get("source"))
    return NormalizedRecord(
        external_id=contact_id,
        email=normalize_email(contact.get("email")),
        phone=normalize_phone(contact.get("phone")),
        full_name=build_full_name(None, contact.get("firstName"), contact.get("lastName"))
        or sanitize_string(contact.get("name")),
        tags=tuple(sanitize_tags(contact.get("tags"))),
        opt_ins={field: _opt_in_from_dnd(dnd_settings, channel) for field, channel in _DND_CHANNELS.items()},
        platform_ids={"ghl_contact_id": contact_id},
        lifecycle_stage=LifecycleStage.LEAD,
        extra_data=extra,
        raw=dict(contact),
    )


class GHLContactsAdapter(HttpSourceAdapter):
    """Fetch GoHighLevel contacts for a single location."""

    source = SyncSource.GHL.value

    def __init__(
        self,
        *,
        api_key: str,
        location_id: str,
        page_size: int = DEFAULT_PAGE_SIZE,
        base_url: str = GHL_BASE_URL,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self.api_key = api_key
        self.location_id = location_id
        self.page_size = max(1, int(page_size))
        self.base_url = base_url.rstrip("/")

    def _fetch_page(self, cursor: Any) -> PageResult:
        offset = int(cursor or 0)
        payload = self._get_json(
            f"{self.base_url}/contacts/",
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "Version": GHL_API_VERSION,
                "Accept": "application/json",
            },
            params={"locationId": self.location_id, "limit": self.page_size, "skip": offset},
        )
        if not isinstance(payload, Mapping):
            raise TransportError("ghl returned an unexpected payload shape.")
        contacts = payload.get("contacts") or []
        records = []
        dropped = 0
        for contact in contacts:
            record = normalize_ghl_contact(contact) if isinstance(contact, Mapping) else None
            if record is None:
                dropped += 1
                continue
            records.append(record)
        return PageResult(
            records=records,
            next_cursor=offset + len(contacts),
            has_more=len(contacts) >= self.page_size,
            dropped=dropped,
        )
