"""
Field merge policy for folding source records into canonical clients.

The resolver looks up each canonical field here to decide how an incoming
value combines with the stored one. Every field names exactly one strategy:

``fill_if_null``
    Keep the stored value; only fill when it is empty.
``last_write_wins``
    A non-null incoming value replaces the stored one.
``overwrite_if_not_null``
    Same as ``last_write_wins`` but reserved for boolean consent flags, where
    ``False`` is a real value and only ``None`` is skipped.
``union``
    Set union preserving first-seen order (tags).
``monotonic``
    Lifecycle stage only moves forward by rank.
``fill_or_conflict``
    Platform identifiers: fill when empty, report a conflict on mismatch.
``payment_guarded``
    Monetary aggregates; only payment-observing sources may raise them.
``shallow_merge``
    Top-level dictionary merge with incoming keys winning.

Operators can override the defaults by pointing ``SYNC_MERGE_POLICY_PATH`` at
a JSON or YAML file with the same ``field_groups`` shape.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Mapping, MutableMapping, Sequence

try:
    import yaml  # type: ignore
except ImportError:  # pragma: no cover - optional dependency
    yaml = None


STRATEGIES: frozenset[str] = frozenset(
    {
        "fill_if_null",
        "last_write_wins",
        "overwrite_if_not_null",
        "union",
        "monotonic",
        "fill_or_conflict",
        "payment_guarded",
        "shallow_merge",
    }
)


# ---------------------------------------------------------------------------
# Data structures
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FieldRule:
    """
    Merge behaviour for a single canonical field.

    Attributes:
        field_name: Attribute on ``CanonicalClient``.
        strategy: One of ``STRATEGIES``.
    """

    field_name: str
    strategy: str


@dataclass(frozen=True)
class FieldGroup:
    name: str
    display_name: str
    fields: Sequence[FieldRule]


@dataclass(frozen=True)
class MergePolicy:
    key: str
    label: str
    field_groups: Sequence[FieldGroup]

    def find_rule(self, field_name: str) -> FieldRule | None:
        for group in self.field_groups:
            for rule in group.fields:
                if rule.field_name == field_name:
                    return rule
        return None

    def fields(self) -> tuple[str, ...]:
        return tuple(rule.field_name for group in self.field_groups for rule in group.fields)


# ---------------------------------------------------------------------------
# Default policy
# ---------------------------------------------------------------------------

IDENTITY_FIELDS: tuple[FieldRule, ...] = (
    FieldRule("email", "fill_if_null"),
    FieldRule("phone", "fill_if_null"),
    FieldRule("full_name", "fill_if_null"),
)

PLATFORM_FIELDS: tuple[FieldRule, ...] = (
    FieldRule("ghl_contact_id", "fill_or_conflict"),
    FieldRule("manychat_subscriber_id", "fill_or_conflict"),
    FieldRule("stripe_customer_id", "fill_or_conflict"),
    FieldRule("paypal_customer_id", "fill_or_conflict"),
)

TRACKING_FIELDS: tuple[FieldRule, ...] = (
    FieldRule("utm_source", "last_write_wins"),
    FieldRule("utm_medium", "last_write_wins"),
    FieldRule("utm_campaign", "last_write_wins"),
    FieldRule("utm_content", "last_write_wins"),
    FieldRule("utm_term", "last_write_wins"),
    FieldRule("fbp", "last_write_wins"),
    FieldRule("fbc", "last_write_wins"),
    FieldRule("gclid", "last_write_wins"),
    FieldRule("tracking_captured_at", "last_write_wins"),
)

CONSENT_FIELDS: tuple[FieldRule, ...] = (
    FieldRule("wa_opt_in", "overwrite_if_not_null"),
    FieldRule("sms_opt_in", "overwrite_if_not_null"),
    FieldRule("email_opt_in", "overwrite_if_not_null"),
)

LIFECYCLE_FIELDS: tuple[FieldRule, ...] = (
    FieldRule("tags", "union"),
    FieldRule("lifecycle_stage", "monotonic"),
    FieldRule("extra_data", "shallow_merge"),
)

PAYMENT_FIELDS: tuple[FieldRule, ...] = (
    FieldRule("total_spend", "payment_guarded"),
    FieldRule("total_paid", "payment_guarded"),
)

DEFAULT_POLICY = MergePolicy(
    key="default",
    label="Default merge policy",
    field_groups=(
        FieldGroup("identity", "Identity", IDENTITY_FIELDS),
        FieldGroup("platform", "Platform IDs", PLATFORM_FIELDS),
        FieldGroup("tracking", "Attribution", TRACKING_FIELDS),
        FieldGroup("consent", "Consent", CONSENT_FIELDS),
        FieldGroup("lifecycle", "Lifecycle", LIFECYCLE_FIELDS),
        FieldGroup("payments", "Payments", PAYMENT_FIELDS),
    ),
)


# ---------------------------------------------------------------------------
# Loading helpers
# ---------------------------------------------------------------------------


class MergePolicyConfigError(RuntimeError):
    """Raised when a merge policy override cannot be parsed."""


def _load_override(path: Path) -> MutableMapping[str, object]:
    if not path.exists():
        raise MergePolicyConfigError(f"Merge policy override file {path} does not exist.")
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:  # pragma: no cover - filesystem failure
        raise MergePolicyConfigError(f"Unable to read merge policy override file {path}: {exc}") from exc

    if path.suffix.lower() in {".yaml", ".yml"}:
        if yaml is None:
            raise MergePolicyConfigError("PyYAML is required to load YAML merge policy overrides.")
        data = yaml.safe_load(text)
    else:
        data = json.loads(text)

    if not isinstance(data, Mapping):
        raise MergePolicyConfigError("Merge policy override must be a JSON/YAML object.")
    return dict(data)


def _coerce_field_rule(raw: Mapping[str, object]) -> FieldRule:
    name = str(raw.get("field_name") or "").strip()
    if not name:
        raise MergePolicyConfigError("Each field rule requires a non-empty field_name.")
    strategy = str(raw.get("strategy") or "").strip().lower()
    if strategy not in STRATEGIES:
        raise MergePolicyConfigError(f"Field {name} uses unknown strategy '{strategy}'.")
    default_rule = DEFAULT_POLICY.find_rule(name)
    # Monetary and lifecycle guards cannot be weakened by configuration.
    if default_rule and default_rule.strategy in {"payment_guarded", "monotonic"} and strategy != default_rule.strategy:
        raise MergePolicyConfigError(f"Field {name} must keep strategy '{default_rule.strategy}'.")
    return FieldRule(field_name=name, strategy=strategy)


def _coerce_field_group(raw: Mapping[str, object]) -> FieldGroup:
    name = str(raw.get("name") or "").strip()
    if not name:
        raise MergePolicyConfigError("Each field group requires a non-empty name.")
    display_name = str(raw.get("display_name") or name).strip()
    fields_raw = raw.get("fields") or ()
    if not isinstance(fields_raw, Iterable) or isinstance(fields_raw, (str, bytes)):
        raise MergePolicyConfigError(f"Group {name} fields must be a sequence.")
    rules = tuple(_coerce_field_rule(rule) for rule in fields_raw)  # type: ignore[arg-type]
    return FieldGroup(name=name, display_name=display_name or name.title(), fields=rules)


def _coerce_policy(raw: Mapping[str, object]) -> MergePolicy:
    key = str(raw.get("key") or DEFAULT_POLICY.key).strip() or DEFAULT_POLICY.key
    label = str(raw.get("label") or DEFAULT_POLICY.label).strip() or DEFAULT_POLICY.label
    raw_groups = raw.get("field_groups") or ()
    if not isinstance(raw_groups, Iterable) or isinstance(raw_groups, (str, bytes)):
        raise MergePolicyConfigError("field_groups must be a sequence.")
    groups = tuple(_coerce_field_group(group) for group in raw_groups)  # type: ignore[arg-type]
    if not groups:
        return DEFAULT_POLICY

    # Fields the override does not mention keep their default rule.
    overridden = {rule.field_name for group in groups for rule in group.fields}
    remaining = tuple(
        FieldGroup(
            group.name,
            group.display_name,
            tuple(rule for rule in group.fields if rule.field_name not in overridden),
        )
        for group in DEFAULT_POLICY.field_groups
    )
    remaining = tuple(group for group in remaining if group.fields)
    return MergePolicy(key=key, label=label, field_groups=groups + remaining)


def load_policy(env: Mapping[str, str] | None = None) -> MergePolicy:
    """
    Load the active merge policy.

    ``SYNC_MERGE_POLICY_PATH`` points at an optional JSON/YAML override;
    otherwise the built-in defaults are used.
    """

    env_map = env or {}
    override_path = env_map.get("SYNC_MERGE_POLICY_PATH")
    if not override_path:
        return DEFAULT_POLICY
    return _coerce_policy(_load_override(Path(override_path)))


__all__ = [
    "DEFAULT_POLICY",
    "FieldGroup",
    "FieldRule",
    "MergePolicy",
    "MergePolicyConfigError",
    "STRATEGIES",
    "load_policy",
]
