"""
Identity resolution: fold a normalized source record into at most one canonical client.

Candidates are gathered per matching signal (email, platform identifiers and
the identity map, last-10 phone digits). A record that points at exactly one
client is merged into it; zero candidates create a new client; anything more
ambiguous is parked as a ``MergeConflict`` without touching any client.
"""

from __future__ import annotations

import logging
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Iterable, Mapping

from flask import current_app, has_app_context
from sqlalchemy import func, select

from config.merge_policy import DEFAULT_POLICY, MergePolicy
from revops_app.models import (
    PLATFORM_ID_FIELDS,
    TRACKING_FIELDS,
    CanonicalClient,
    ConflictReason,
    ConflictStatus,
    ContactIdentity,
    LifecycleStage,
    MergeConflict,
    db,
)

from ..adapters.base import NormalizedRecord
from ..errors import ResolutionConflict, ValidationError
from .merge import apply_merge_policy
from .normalize import (
    build_full_name,
    coerce_optional_bool,
    normalize_email,
    normalize_phone,
    phone_last10,
    sanitize_string,
    sanitize_tags,
)

SOURCE_PLATFORM_FIELD: Mapping[str, str] = {
    "ghl": "ghl_contact_id",
    "manychat": "manychat_subscriber_id",
    "stripe": "stripe_customer_id",
    "paypal": "paypal_customer_id",
}

OPT_IN_FIELDS: tuple[str, ...] = ("wa_opt_in", "sms_opt_in", "email_opt_in")

# Precedence used to report which signal produced the match.
SIGNAL_ORDER: tuple[str, ...] = ("email", "platform", "phone")

_AMBIGUOUS_REASONS = {
    "email": ConflictReason.AMBIGUOUS_EMAIL,
    "platform": ConflictReason.AMBIGUOUS_PLATFORM_ID,
    "phone": ConflictReason.AMBIGUOUS_PHONE,
}

_CENTS = Decimal("100")


@dataclass(frozen=True)
class ResolveResult:
    action: str
    client_id: int | None = None
    matched_by: str | None = None
    reason: str | None = None
    conflict_id: int | None = None
    changed_fields: tuple[str, ...] = ()
    candidate_ids: tuple[int, ...] = ()

    def as_dict(self) -> dict[str, Any]:
        return {
            "action": self.action,
            "client_id": self.client_id,
            "matched_by": self.matched_by,
            "reason": self.reason,
            "conflict_id": self.conflict_id,
            "changed_fields": list(self.changed_fields),
        }

    def conflict_error(self) -> ResolutionConflict | None:
        """The parked conflict as a ``ResolutionConflict``, or ``None`` when the record resolved."""
        if self.action != "conflict":
            return None
        return ResolutionConflict(
            f"Identity is ambiguous ({self.reason}); parked for manual resolution.",
            reason=self.reason or "",
            candidate_ids=self.candidate_ids,
            conflict_id=self.conflict_id,
        )


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _active_policy() -> MergePolicy:
    """The policy loaded by ``init_sync``, or the defaults outside an app context."""
    if not has_app_context():
        return DEFAULT_POLICY
    state = current_app.extensions.get("sync") or {}
    return state.get("merge_policy") or DEFAULT_POLICY


class IdentityResolver:
    """Resolve normalized records against ``clients`` using the merge policy."""

    def __init__(self, session=None, *, policy: MergePolicy | None = None, logger: logging.Logger | None = None):
        self.session = session or db.session
        self.policy = policy or _active_policy()
        if logger is not None:
            self.logger = logger
        elif has_app_context():
            self.logger = current_app.logger
        else:
            self.logger = logging.getLogger(__name__)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def resolve(
        self,
        record: NormalizedRecord,
        source: str,
        *,
        dry_run: bool = False,
        sync_run_id: str | None = None,
    ) -> ResolveResult:
        """
        Resolve ``record`` observed from ``source``.

        Raises ``ValidationError`` when the record carries no usable identity
        signal. In dry-run mode the would-be action is returned and nothing is
        written.
        """

        source = str(source)
        email = normalize_email(record.email)
        phone = normalize_phone(record.phone)
        last10 = phone_last10(phone)
        platform_ids = self._platform_ids(record)
        if not email and not last10 and not platform_ids:
            raise ValidationError(
                "Record has no usable identity signal (email, phone, or platform id).",
                field="identity",
                context={"source": source, "external_id": record.external_id},
            )

        candidates = self._collect_candidates(source, record.external_id, email, last10, platform_ids)
        for signal in SIGNAL_ORDER:
            if len(candidates[signal]) > 1:
                return self._conflict(
                    record,
                    source,
                    _AMBIGUOUS_REASONS[signal],
                    candidates[signal],
                    dry_run=dry_run,
                    sync_run_id=sync_run_id,
                )

        distinct = sorted({client_id for ids in candidates.values() for client_id in ids})
        if len(distinct) > 1:
            return self._conflict(
                record,
                source,
                ConflictReason.SIGNAL_MISMATCH,
                distinct,
                dry_run=dry_run,
                sync_run_id=sync_run_id,
            )

        incoming = self._incoming_values(record, email=email, phone=phone, platform_ids=platform_ids)
        if not distinct:
            return self._create(record, source, incoming, dry_run=dry_run, sync_run_id=sync_run_id)

        client = self.session.get(CanonicalClient, distinct[0])
        matched_by = next(signal for signal in SIGNAL_ORDER if client.id in candidates[signal])
        return self._merge(
            client,
            record,
            source,
            incoming,
            matched_by=matched_by,
            dry_run=dry_run,
            sync_run_id=sync_run_id,
        )

    def merge_contact(
        self,
        client_id: int,
        record: NormalizedRecord,
        source: str,
        *,
        sync_run_id: str | None = None,
    ) -> ResolveResult:
        """Merge ``record`` into a known client, bypassing candidate search."""

        client = self.session.get(CanonicalClient, client_id)
        if client is None:
            raise ValidationError(f"Client {client_id} does not exist.", field="client_id")
        email = normalize_email(record.email)
        phone = normalize_phone(record.phone)
        incoming = self._incoming_values(record, email=email, phone=phone, platform_ids=self._platform_ids(record))
        if email and client.email != email:
            owner = self.session.scalar(select(CanonicalClient.id).where(CanonicalClient.email == email))
            if owner is not None and owner != client.id:
                return self._conflict(
                    record, source, ConflictReason.SIGNAL_MISMATCH, [client.id, owner], sync_run_id=sync_run_id
                )
        return self._merge(client, record, source, incoming, matched_by="explicit", sync_run_id=sync_run_id)

    # ------------------------------------------------------------------
    # Candidate search
    # ------------------------------------------------------------------
    @staticmethod
    def _platform_ids(record: NormalizedRecord) -> dict[str, str]:
        cleaned: dict[str, str] = {}
        for field_name, value in (record.platform_ids or {}).items():
            token = sanitize_string(value)
            if field_name in PLATFORM_ID_FIELDS and token:
                cleaned[field_name] = token
        return cleaned

    def _collect_candidates(
        self,
        source: str,
        external_id: str,
        email: str | None,
        last10: str | None,
        platform_ids: Mapping[str, str],
    ) -> "OrderedDict[str, list[int]]":
        candidates: "OrderedDict[str, list[int]]" = OrderedDict((signal, []) for signal in SIGNAL_ORDER)

        if email:
            candidates["email"] = list(
                self.session.scalars(select(CanonicalClient.id).where(func.lower(CanonicalClient.email) == email))
            )

        platform_hits: set[int] = set()
        mapped = self.session.scalar(
            select(ContactIdentity.client_id).where(
                ContactIdentity.source == source,
                ContactIdentity.external_id == external_id,
            )
        )
        if mapped is not None:
            platform_hits.add(mapped)
        for field_name, value in platform_ids.items():
            column = getattr(CanonicalClient, field_name)
            platform_hits.update(self.session.scalars(select(CanonicalClient.id).where(column == value)))
        candidates["platform"] = sorted(platform_hits)

        if last10:
            candidates["phone"] = sorted(
                self.session.scalars(select(CanonicalClient.id).where(CanonicalClient.phone_last10 == last10))
            )
        return candidates

    # ------------------------------------------------------------------
    # Merge helpers
    # ------------------------------------------------------------------
    @staticmethod
    def _incoming_values(
        record: NormalizedRecord,
        *,
        email: str | None,
        phone: str | None,
        platform_ids: Mapping[str, str],
    ) -> dict[str, Any]:
        incoming: dict[str, Any] = {
            "email": email,
            "phone": phone,
            "full_name": sanitize_string(record.full_name),
        }
        incoming.update(platform_ids)
        tracking = record.tracking or {}
        for field_name in TRACKING_FIELDS + ("tracking_captured_at",):
            if field_name in tracking:
                incoming[field_name] = sanitize_string(tracking.get(field_name))
        opt_ins = record.opt_ins or {}
        for field_name in OPT_IN_FIELDS:
            if field_name in opt_ins:
                incoming[field_name] = coerce_optional_bool(opt_ins.get(field_name))
        if record.tags:
            incoming["tags"] = list(record.tags)
        if record.lifecycle_stage is not None:
            incoming["lifecycle_stage"] = record.lifecycle_stage
        if record.extra_data:
            incoming["extra_data"] = dict(record.extra_data)
        return incoming

    def _upsert_identity(self, client_id: int, record: NormalizedRecord, source: str, sync_run_id: str | None) -> None:
        identity = self.session.scalar(
            select(ContactIdentity).where(
                ContactIdentity.source == source,
                ContactIdentity.external_id == record.external_id,
            )
        )
        now = _utcnow()
        if identity is None:
            identity = ContactIdentity(
                source=source,
                external_id=record.external_id,
                client_id=client_id,
                first_seen_at=now,
            )
            self.session.add(identity)
        identity.client_id = client_id
        identity.last_seen_at = now
        identity.sync_run_id = sync_run_id
        if record.payment is not None:
            identity.amount_cents = record.payment.amount_cents
            identity.currency = record.payment.currency
            identity.payment_status = record.payment.status
        self.session.flush()

    def _ledger_totals(self, client_id: int) -> dict[str, Decimal]:
        """Recompute monetary aggregates from the payment ledger."""

        rows = self.session.execute(
            select(ContactIdentity.payment_status, func.coalesce(func.sum(ContactIdentity.amount_cents), 0))
            .where(ContactIdentity.client_id == client_id, ContactIdentity.amount_cents.is_not(None))
            .group_by(ContactIdentity.payment_status)
        ).all()
        by_status = {status: int(total or 0) for status, total in rows}
        paid = by_status.get("paid", 0)
        failed = by_status.get("failed", 0)
        return {
            "total_paid": Decimal(paid) / _CENTS,
            "total_spend": Decimal(paid + failed) / _CENTS,
        }

    def _apply_values(self, client: CanonicalClient, values: Mapping[str, Any]) -> None:
        for field_name, value in values.items():
            setattr(client, field_name, value)
            if field_name == "phone":
                client.phone_last10 = phone_last10(value)

    def _apply_payment_totals(self, client: CanonicalClient, record: NormalizedRecord) -> tuple[str, ...]:
        if record.payment is None:
            return ()
        result = apply_merge_policy(
            client.snapshot(),
            self._ledger_totals(client.id),
            policy=self.policy,
            payment_source=True,
        )
        self._apply_values(client, result.values)
        return tuple(result.values)

    def _create(
        self,
        record: NormalizedRecord,
        source: str,
        incoming: Mapping[str, Any],
        *,
        dry_run: bool,
        sync_run_id: str | None,
    ) -> ResolveResult:
        empty = {"tags": [], "extra_data": {}, "total_spend": Decimal("0"), "total_paid": Decimal("0")}
        result = apply_merge_policy(empty, incoming, policy=self.policy)
        if dry_run:
            return ResolveResult(action="created", changed_fields=tuple(result.values))

        client = CanonicalClient(
            lifecycle_stage=LifecycleStage.LEAD,
            tags=[],
            total_spend=Decimal("0"),
            total_paid=Decimal("0"),
        )
        self._apply_values(client, result.values)
        client.last_sync_at = _utcnow()
        self.session.add(client)
        self.session.flush()
        self._upsert_identity(client.id, record, source, sync_run_id)
        changed = tuple(result.values) + self._apply_payment_totals(client, record)
        self.session.flush()
        self.logger.debug(
            "Created canonical client",
            extra={"client_id": client.id, "sync_source": source, "sync_run_id": sync_run_id},
        )
        return ResolveResult(action="created", client_id=client.id, changed_fields=changed)

    def _merge(
        self,
        client: CanonicalClient,
        record: NormalizedRecord,
        source: str,
        incoming: Mapping[str, Any],
        *,
        matched_by: str,
        dry_run: bool = False,
        sync_run_id: str | None = None,
    ) -> ResolveResult:
        result = apply_merge_policy(client.snapshot(), incoming, policy=self.policy)
        if result.conflicting_fields:
            return self._conflict(
                record,
                source,
                ConflictReason.PLATFORM_ID_MISMATCH,
                [client.id],
                dry_run=dry_run,
                sync_run_id=sync_run_id,
                detail={"fields": list(result.conflicting_fields)},
            )
        if dry_run:
            return ResolveResult(
                action="updated",
                client_id=client.id,
                matched_by=matched_by,
                changed_fields=tuple(result.values),
            )

        self._apply_values(client, result.values)
        client.last_sync_at = _utcnow()
        self._upsert_identity(client.id, record, source, sync_run_id)
        changed = tuple(result.values) + self._apply_payment_totals(client, record)
        self.session.flush()
        return ResolveResult(action="updated", client_id=client.id, matched_by=matched_by, changed_fields=changed)

    # ------------------------------------------------------------------
    # Conflicts
    # ------------------------------------------------------------------
    def _conflict(
        self,
        record: NormalizedRecord,
        source: str,
        reason: ConflictReason,
        candidate_ids: Iterable[int],
        *,
        dry_run: bool = False,
        sync_run_id: str | None = None,
        detail: Mapping[str, Any] | None = None,
    ) -> ResolveResult:
        candidates = sorted(set(candidate_ids))
        if dry_run:
            return ResolveResult(action="conflict", reason=reason.value, candidate_ids=tuple(candidates))

        incoming_record = record.to_dict()
        if detail:
            incoming_record["conflict_detail"] = dict(detail)
        conflict = self.session.scalar(
            select(MergeConflict).where(
                MergeConflict.source == source,
                MergeConflict.external_id == record.external_id,
                MergeConflict.status == ConflictStatus.OPEN,
            )
        )
        if conflict is None:
            conflict = MergeConflict(source=source, external_id=record.external_id, status=ConflictStatus.OPEN)
            self.session.add(conflict)
        conflict.reason = reason
        conflict.candidate_client_ids = candidates
        conflict.incoming_record = incoming_record
        conflict.sync_run_id = sync_run_id
        self.session.flush()
        self.logger.info(
            "Identity conflict recorded",
            extra={
                "sync_source": source,
                "sync_run_id": sync_run_id,
                "conflict_reason": reason.value,
                "candidate_client_ids": candidates,
            },
        )
        return ResolveResult(
            action="conflict", reason=reason.value, conflict_id=conflict.id, candidate_ids=tuple(candidates)
        )


# ----------------------------------------------------------------------
# Unify-identity webhook payloads
# ----------------------------------------------------------------------

_MANYCHAT_ID_KEYS = ("manychat_subscriber_id", "manychat_user_id", "subscriber_id")
DEFAULT_WEBHOOK_SOURCE = "webhook"


def build_record_from_unify_payload(payload: Mapping[str, Any], source: str = DEFAULT_WEBHOOK_SOURCE) -> NormalizedRecord:
    """
    Translate a unify-identity webhook payload into a ``NormalizedRecord``.

    Placeholder strings and malformed emails are dropped; at least one of
    email, phone, or a platform identifier must survive sanitation. An
    explicit ``external_id`` keys the identity map for ``source`` and fills
    that source's platform id column.
    """

    if not isinstance(payload, Mapping):
        raise ValidationError("Payload must be a JSON object.", field="payload")

    email = normalize_email(payload.get("email"))
    if payload.get("email") and email is None and sanitize_string(payload.get("email")):
        raise ValidationError("Invalid email format.", field="email")
    phone = normalize_phone(payload.get("phone"))

    platform_ids: dict[str, str] = {}
    ghl_id = sanitize_string(payload.get("ghl_contact_id"))
    if ghl_id:
        platform_ids["ghl_contact_id"] = ghl_id
    for key in _MANYCHAT_ID_KEYS:
        manychat_id = sanitize_string(payload.get(key))
        if manychat_id:
            platform_ids["manychat_subscriber_id"] = manychat_id
            break
    for key in ("stripe_customer_id", "paypal_customer_id"):
        token = sanitize_string(payload.get(key))
        if token:
            platform_ids[key] = token

    source_field = SOURCE_PLATFORM_FIELD.get(source)
    explicit_id = sanitize_string(payload.get("external_id"))
    if explicit_id and source_field:
        platform_ids[source_field] = explicit_id

    if not email and not phone and not platform_ids and not explicit_id:
        raise ValidationError(
            "At least one identifier required (email, phone, ghl_contact_id, or manychat_subscriber_id).",
            field="identity",
        )

    tracking: dict[str, Any] = {}
    for key in ("utm_source", "utm_medium", "utm_campaign", "utm_content", "utm_term", "fbp", "gclid"):
        token = sanitize_string(payload.get(key))
        if token:
            tracking[key] = token
    click_id = sanitize_string(payload.get("fbc")) or sanitize_string(payload.get("fbclid"))
    if click_id:
        tracking["fbc"] = click_id
    if tracking:
        tracking["tracking_captured_at"] = sanitize_string(payload.get("captured_at")) or _utcnow().isoformat()

    opt_ins = {
        field_name: coerce_optional_bool(payload.get(field_name))
        for field_name in OPT_IN_FIELDS
        if payload.get(field_name) is not None
    }

    extra: dict[str, Any] = {}
    for key in ("custom_fields", "metadata"):
        if isinstance(payload.get(key), Mapping) and payload.get(key):
            extra[key] = dict(payload[key])

    stage = None
    raw_stage = sanitize_string(payload.get("lifecycle_stage"))
    if raw_stage:
        try:
            stage = LifecycleStage(raw_stage.upper())
        except ValueError as exc:
            raise ValidationError(f"Unknown lifecycle_stage '{raw_stage}'.", field="lifecycle_stage") from exc

    external_id = (
        explicit_id
        or (platform_ids.get(source_field) if source_field else None)
        or next(iter(platform_ids.values()), None)
        or email
        or phone
    )
    return NormalizedRecord(
        external_id=str(external_id),
        email=email,
        phone=phone,
        full_name=build_full_name(payload.get("full_name"), payload.get("first_name"), payload.get("last_name")),
        tags=tuple(sanitize_tags(payload.get("tags"))),
        opt_ins=opt_ins,
        platform_ids=platform_ids,
        tracking=tracking,
        lifecycle_stage=stage,
        extra_data=extra,
        raw=dict(payload),
    )


def unify_identity(
    payload: Mapping[str, Any],
    *,
    source: str | None = None,
    resolver: IdentityResolver | None = None,
) -> ResolveResult:
    """Resolve a single webhook payload; the caller commits."""

    source_name = (sanitize_string(source) or DEFAULT_WEBHOOK_SOURCE).lower()
    record = build_record_from_unify_payload(payload, source_name)
    resolver = resolver or IdentityResolver()
    return resolver.resolve(record, source_name)


__all__ = [
    "DEFAULT_WEBHOOK_SOURCE",
    "IdentityResolver",
    "ResolveResult",
    "SOURCE_PLATFORM_FIELD",
    "build_record_from_unify_payload",
    "unify_identity",
]
