"""
Canonical client model: the unified customer identity every sync converges on.
"""

from __future__ import annotations

import enum
from datetime import datetime
from decimal import Decimal

from sqlalchemy import Enum, Index
from sqlalchemy.orm import Mapped, mapped_column

from .base import BaseModel, db


class LifecycleStage(str, enum.Enum):
    """Customer lifecycle stages. LEAD -> TRIAL -> CUSTOMER only moves forward."""

    LEAD = "LEAD"
    TRIAL = "TRIAL"
    CUSTOMER = "CUSTOMER"
    CHURN = "CHURN"


PLATFORM_ID_FIELDS: tuple[str, ...] = (
    "ghl_contact_id",
    "manychat_subscriber_id",
    "stripe_customer_id",
    "paypal_customer_id",
)

TRACKING_FIELDS: tuple[str, ...] = (
    "utm_source",
    "utm_medium",
    "utm_campaign",
    "utm_content",
    "utm_term",
    "fbp",
    "fbc",
    "gclid",
)


class CanonicalClient(BaseModel):
    """Single unified customer record."""

    __tablename__ = "clients"

    id: Mapped[int] = mapped_column(primary_key=True)
    email: Mapped[str | None] = mapped_column(db.String(255), unique=True, nullable=True)
    phone: Mapped[str | None] = mapped_column(db.String(50), nullable=True)
    phone_last10: Mapped[str | None] = mapped_column(
        db.String(10),
        nullable=True,
        index=True,
        comment="Trailing ten digits of the phone number used for matching.",
    )
    full_name: Mapped[str | None] = mapped_column(db.String(255), nullable=True)

    ghl_contact_id: Mapped[str | None] = mapped_column(db.String(100), unique=True, nullable=True)
    manychat_subscriber_id: Mapped[str | None] = mapped_column(db.String(100), unique=True, nullable=True)
    stripe_customer_id: Mapped[str | None] = mapped_column(db.String(100), unique=True, nullable=True)
    paypal_customer_id: Mapped[str | None] = mapped_column(db.String(100), unique=True, nullable=True)

    utm_source: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    utm_medium: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    utm_campaign: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    utm_content: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    utm_term: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    fbp: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    fbc: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    gclid: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    tracking_captured_at: Mapped[str | None] = mapped_column(db.String(40), nullable=True)

    wa_opt_in: Mapped[bool | None] = mapped_column(db.Boolean, nullable=True)
    sms_opt_in: Mapped[bool | None] = mapped_column(db.Boolean, nullable=True)
    email_opt_in: Mapped[bool | None] = mapped_column(db.Boolean, nullable=True)

    tags: Mapped[list | None] = mapped_column(db.JSON, nullable=True, default=list)
    lifecycle_stage: Mapped[LifecycleStage] = mapped_column(
        Enum(LifecycleStage, name="client_lifecycle_stage_enum", values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=LifecycleStage.LEAD,
    )
    total_spend: Mapped[Decimal] = mapped_column(db.Numeric(12, 2), nullable=False, default=Decimal("0"))
    total_paid: Mapped[Decimal] = mapped_column(db.Numeric(12, 2), nullable=False, default=Decimal("0"))
    extra_data: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)
    last_sync_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)

    __table_args__ = (Index("idx_clients_lifecycle_stage", "lifecycle_stage"),)

    def __repr__(self) -> str:
        return f"<CanonicalClient id={self.id} email={self.email!r} stage={self.lifecycle_stage}>"

    def snapshot(self) -> dict:
        """Plain mapping of mergeable attributes."""
        return {
            "email": self.email,
            "phone": self.phone,
            "full_name": self.full_name,
            **{name: getattr(self, name) for name in PLATFORM_ID_FIELDS},
            **{name: getattr(self, name) for name in TRACKING_FIELDS},
            "tracking_captured_at": self.tracking_captured_at,
            "wa_opt_in": self.wa_opt_in,
            "sms_opt_in": self.sms_opt_in,
            "email_opt_in": self.email_opt_in,
            "tags": list(self.tags or []),
            "lifecycle_stage": self.lifecycle_stage,
            "total_spend": self.total_spend,
            "total_paid": self.total_paid,
            "extra_data": dict(self.extra_data or {}),
        }

    def to_dict(self) -> dict:
        payload = self.snapshot()
        payload["id"] = self.id
        payload["lifecycle_stage"] = self.lifecycle_stage.value if self.lifecycle_stage else None
        payload["total_spend"] = float(self.total_spend or 0)
        payload["total_paid"] = float(self.total_paid or 0)
        payload["last_sync_at"] = self.last_sync_at.isoformat() if self.last_sync_at else None
        return payload
