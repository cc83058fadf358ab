"""
Source adapter contract and the normalized record shape every adapter emits.

Vendor field names stop at this boundary: adapters translate payloads into
``NormalizedRecord`` instances and report pagination via ``PageResult``.
Adapters never read or write sync run state.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Mapping, Sequence

import requests

from revops_app.models import LifecycleStage

from ..errors import AuthError, TransportError

DEFAULT_TIMEOUT_SECONDS = 30.0


@dataclass(frozen=True)
class PaymentObservation:
    """Payment facts carried by processor records."""

    amount_cents: int
    currency: str
    status: str

    @property
    def is_paid(self) -> bool:
        return self.status == "paid"


@dataclass(frozen=True)
class NormalizedRecord:
    """Common record shape handed to the identity resolver."""

    external_id: str
    email: str | None = None
    phone: str | None = None
    full_name: str | None = None
    tags: tuple[str, ...] = ()
    opt_ins: Mapping[str, bool | None] = field(default_factory=dict)
    platform_ids: Mapping[str, str] = field(default_factory=dict)
    tracking: Mapping[str, Any] = field(default_factory=dict)
    lifecycle_stage: LifecycleStage | None = None
    payment: PaymentObservation | None = None
    extra_data: Mapping[str, Any] = field(default_factory=dict)
    raw: Mapping[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """JSON-safe representation without the raw vendor payload."""
        return {
            "external_id": self.external_id,
            "email": self.email,
            "phone": self.phone,
            "full_name": self.full_name,
            "tags": list(self.tags),
            "opt_ins": dict(self.opt_ins),
            "platform_ids": dict(self.platform_ids),
            "tracking": dict(self.tracking),
            "lifecycle_stage": self.lifecycle_stage.value if self.lifecycle_stage else None,
            "payment": (
                {
                    "amount_cents": self.payment.amount_cents,
                    "currency": self.payment.currency,
                    "status": self.payment.status,
                }
                if self.payment
                else None
            ),
            "extra_data": dict(self.extra_data),
        }


@dataclass(frozen=True)
class PageResult:
    """One page of normalized records plus the cursor for the next page."""

    records: Sequence[NormalizedRecord]
    next_cursor: Any
    has_more: bool
    error: TransportError | None = None
    dropped: int = 0

    @classmethod
    def failed(cls, error: TransportError, *, cursor: Any = None) -> "PageResult":
        return cls(records=(), next_cursor=cursor, has_more=False, error=error)


class SourceAdapter(ABC):
    """Fetch one page at a time from a single external source."""

    source: str = ""

    @abstractmethod
    def fetch_page(self, cursor: Any) -> PageResult:
        """Return the page starting at ``cursor`` (``None`` for the first page)."""


class HttpSourceAdapter(SourceAdapter):
    """Adapter base that owns a ``requests`` session and error classification."""

    def __init__(
        self,
        *,
        session: requests.Session | None = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        logger: logging.Logger | None = None,
    ) -> None:
        self.session = session or requests.Session()
        self.timeout = timeout
        self.logger = logger or logging.getLogger(__name__)

    def fetch_page(self, cursor: Any) -> PageResult:
        try:
            return self._fetch_page(cursor)
        except TransportError as exc:
            return PageResult.failed(exc, cursor=cursor)

    @abstractmethod
    def _fetch_page(self, cursor: Any) -> PageResult:
        """Vendor-specific page fetch; may raise ``TransportError``/``AuthError``."""

    def _get_json(
        self,
        url: str,
        *,
        headers: Mapping[str, str] | None = None,
        params: Mapping[str, Any] | Sequence[tuple[str, Any]] | None = None,
    ) -> Any:
        """
        Issue a GET and decode JSON, translating failures into the sync taxonomy.

        401/403 raise ``AuthError``; any other HTTP or network failure raises
        ``TransportError`` carrying the status code when available.
        """

        try:
            response = self.session.get(url, headers=dict(headers or {}), params=params, timeout=self.timeout)
        except requests.RequestException as exc:
            raise TransportError(f"{self.source} request failed: {exc}") from exc

        if response.status_code in (401, 403):
            raise AuthError(f"{self.source} rejected credentials (status={response.status_code}).")
        if response.status_code >= 400:
            body = (getattr(response, "text", "") or "")[:200]
            self.logger.warning(
                "Source API error",
                extra={"sync_source": self.source, "status_code": response.status_code, "body": body},
            )
            raise TransportError(
                f"{self.source} API error: {response.status_code} - {body}",
                status_code=response.status_code,
            )
        try:
            return response.json()
        except ValueError as exc:
            raise TransportError(f"{self.source} returned invalid JSON.") from exc
