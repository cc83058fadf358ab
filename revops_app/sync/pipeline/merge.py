"""
Field-level merge of an incoming source record into a canonical client.

Each field is combined according to its strategy in the active merge policy.
The engine is pure: it reads a snapshot of the stored client plus the
incoming values and returns the values to write, never touching the session.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Mapping, Sequence

from config.merge_policy import DEFAULT_POLICY, MergePolicy
from revops_app.models import LifecycleStage

LIFECYCLE_RANK: Mapping[LifecycleStage, int] = {
    LifecycleStage.LEAD: 0,
    LifecycleStage.TRIAL: 1,
    LifecycleStage.CUSTOMER: 2,
    LifecycleStage.CHURN: 2,
}


def _normalize_value(value: Any) -> Any:
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    return value


def _is_effectively_null(value: Any) -> bool:
    value = _normalize_value(value)
    if isinstance(value, (list, tuple, dict, set)):
        return not value
    return value is None


def _as_stage(value: Any) -> LifecycleStage | None:
    if value is None or isinstance(value, LifecycleStage):
        return value
    try:
        return LifecycleStage(str(value).strip().upper())
    except ValueError:
        return None


def _as_decimal(value: Any) -> Decimal:
    if value is None:
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


@dataclass(frozen=True)
class FieldDecision:
    field_name: str
    strategy: str
    existing: Any
    incoming: Any
    winner: Any
    changed: bool
    reason: str


@dataclass(frozen=True)
class MergeResult:
    values: Mapping[str, Any]
    decisions: Sequence[FieldDecision]
    stats: Mapping[str, int]
    conflicting_fields: Sequence[str] = ()

    @property
    def changed(self) -> bool:
        return bool(self.values)


def _fill_if_null(existing, incoming, **_):
    if _is_effectively_null(existing) and not _is_effectively_null(incoming):
        return incoming, "filled_empty"
    return existing, "kept_existing"


def _last_write_wins(existing, incoming, **_):
    if _is_effectively_null(incoming):
        return existing, "incoming_null"
    return incoming, "incoming_wins"


def _overwrite_if_not_null(existing, incoming, **_):
    if incoming is None:
        return existing, "incoming_null"
    return incoming, "incoming_wins"


def _union(existing, incoming, **_):
    merged = list(existing or [])
    for item in incoming or ():
        if item not in merged:
            merged.append(item)
    return merged, "union"


def _monotonic(existing, incoming, **_):
    current = _as_stage(existing)
    proposed = _as_stage(incoming)
    if proposed is None:
        return current, "incoming_null"
    if current is None:
        return proposed, "filled_empty"
    current_rank = LIFECYCLE_RANK[current]
    proposed_rank = LIFECYCLE_RANK[proposed]
    if proposed_rank > current_rank:
        return proposed, "advanced"
    # CUSTOMER and CHURN share the top rank and may move between each other.
    if proposed_rank == current_rank and proposed_rank == LIFECYCLE_RANK[LifecycleStage.CUSTOMER]:
        return proposed, "lateral"
    return current, "regression_blocked"


def _fill_or_conflict(existing, incoming, **_):
    if _is_effectively_null(incoming):
        return existing, "incoming_null"
    if _is_effectively_null(existing):
        return incoming, "filled_empty"
    if str(existing) != str(incoming):
        return existing, "conflict"
    return existing, "kept_existing"


def _payment_guarded(existing, incoming, *, payment_source: bool = False, **_):
    if incoming is None:
        return existing, "incoming_null"
    current = _as_decimal(existing)
    proposed = _as_decimal(incoming)
    if payment_source:
        if proposed > current:
            return proposed, "raised_by_payment"
        return existing, "kept_existing"
    if current == 0 and proposed > 0:
        return proposed, "filled_empty"
    return existing, "guarded"


def _shallow_merge(existing, incoming, **_):
    if not incoming:
        return existing, "incoming_null"
    merged = dict(existing or {})
    merged.update({key: value for key, value in dict(incoming).items() if value is not None})
    return merged, "merged"


_STRATEGY_HANDLERS = {
    "fill_if_null": _fill_if_null,
    "last_write_wins": _last_write_wins,
    "overwrite_if_not_null": _overwrite_if_not_null,
    "union": _union,
    "monotonic": _monotonic,
    "fill_or_conflict": _fill_or_conflict,
    "payment_guarded": _payment_guarded,
    "shallow_merge": _shallow_merge,
}


def _values_equal(left: Any, right: Any) -> bool:
    if isinstance(left, Decimal) or isinstance(right, Decimal):
        return _as_decimal(left) == _as_decimal(right)
    return left == right


def apply_merge_policy(
    existing: Mapping[str, Any],
    incoming: Mapping[str, Any],
    *,
    policy: MergePolicy | None = None,
    payment_source: bool = False,
) -> MergeResult:
    """
    Combine ``incoming`` into ``existing`` field by field.

    Only fields present in ``incoming`` are considered. The returned
    ``values`` holds just the fields whose stored value must change;
    ``conflicting_fields`` lists ``fill_or_conflict`` fields whose stored
    and incoming values disagree.
    """

    policy = policy or DEFAULT_POLICY
    values: dict[str, Any] = {}
    decisions: list[FieldDecision] = []
    conflicting: list[str] = []
    stats: Counter[str] = Counter()

    for field_name, incoming_value in incoming.items():
        rule = policy.find_rule(field_name)
        if rule is None:
            stats["fields_unmapped"] += 1
            continue
        handler = _STRATEGY_HANDLERS[rule.strategy]
        existing_value = existing.get(field_name)
        incoming_value = _normalize_value(incoming_value)
        winner, reason = handler(existing_value, incoming_value, payment_source=payment_source)
        changed = not _values_equal(winner, existing_value)
        if reason == "conflict":
            conflicting.append(field_name)
            stats["fields_conflicting"] += 1
        if changed:
            values[field_name] = winner
            stats["fields_changed"] += 1
        else:
            stats["fields_unchanged"] += 1
        decisions.append(
            FieldDecision(
                field_name=field_name,
                strategy=rule.strategy,
                existing=existing_value,
                incoming=incoming_value,
                winner=winner,
                changed=changed,
                reason=reason,
            )
        )

    return MergeResult(
        values=values,
        decisions=tuple(decisions),
        stats=dict(stats),
        conflicting_fields=tuple(conflicting),
    )


__all__ = ["FieldDecision", "LIFECYCLE_RANK", "MergeResult", "apply_merge_policy"]
