from __future__ import annotations

import json
from decimal import Decimal

import pytest

from config.merge_policy import DEFAULT_POLICY, MergePolicyConfigError, load_policy
from revops_app.models import LifecycleStage
from revops_app.sync.pipeline.merge import apply_merge_policy


def test_default_policy_covers_every_mergeable_field():
    fields = set(DEFAULT_POLICY.fields())
    assert {"email", "phone", "full_name", "tags", "lifecycle_stage", "total_spend", "extra_data"} <= fields
    assert DEFAULT_POLICY.find_rule("utm_source").strategy == "last_write_wins"
    assert DEFAULT_POLICY.find_rule("email").strategy == "fill_if_null"
    assert DEFAULT_POLICY.find_rule("wa_opt_in").strategy == "overwrite_if_not_null"
    assert DEFAULT_POLICY.find_rule("unknown") is None


def test_identity_fields_fill_only_when_empty():
    result = apply_merge_policy(
        {"email": "old@example.com", "full_name": None},
        {"email": "new@example.com", "full_name": "Ada Lovelace"},
    )

    assert result.values == {"full_name": "Ada Lovelace"}
    assert result.stats["fields_unchanged"] == 1


def test_tracking_fields_last_write_wins_but_ignore_nulls():
    result = apply_merge_policy(
        {"utm_source": "google", "utm_campaign": "spring"},
        {"utm_source": "facebook", "utm_campaign": "  "},
    )

    assert result.values == {"utm_source": "facebook"}


def test_consent_flags_accept_false_and_skip_none():
    result = apply_merge_policy(
        {"wa_opt_in": True, "sms_opt_in": True},
        {"wa_opt_in": False, "sms_opt_in": None},
    )

    assert result.values == {"wa_opt_in": False}


def test_tags_union_preserves_order():
    result = apply_merge_policy({"tags": ["lead", "vip"]}, {"tags": ["vip", "buyer"]})

    assert result.values["tags"] == ["lead", "vip", "buyer"]


def test_lifecycle_never_regresses():
    result = apply_merge_policy(
        {"lifecycle_stage": LifecycleStage.CUSTOMER},
        {"lifecycle_stage": LifecycleStage.LEAD},
    )

    assert "lifecycle_stage" not in result.values
    assert result.decisions[0].reason == "regression_blocked"


def test_lifecycle_advances_and_moves_between_top_ranks():
    advanced = apply_merge_policy({"lifecycle_stage": LifecycleStage.LEAD}, {"lifecycle_stage": "trial"})
    churned = apply_merge_policy({"lifecycle_stage": LifecycleStage.CUSTOMER}, {"lifecycle_stage": LifecycleStage.CHURN})

    assert advanced.values["lifecycle_stage"] == LifecycleStage.TRIAL
    assert churned.values["lifecycle_stage"] == LifecycleStage.CHURN


def test_platform_id_mismatch_is_reported_not_overwritten():
    result = apply_merge_policy({"ghl_contact_id": "ghl-1"}, {"ghl_contact_id": "ghl-2"})

    assert result.values == {}
    assert result.conflicting_fields == ("ghl_contact_id",)


def test_payment_totals_guarded_outside_payment_sources():
    existing = {"total_paid": Decimal("50.00")}

    blocked = apply_merge_policy(existing, {"total_paid": Decimal("10.00")})
    lowered = apply_merge_policy(existing, {"total_paid": Decimal("10.00")}, payment_source=True)
    raised = apply_merge_policy(existing, {"total_paid": Decimal("75.00")}, payment_source=True)

    assert blocked.values == {}
    assert lowered.values == {}
    assert raised.values == {"total_paid": Decimal("75.00")}


def test_extra_data_shallow_merge():
    result = apply_merge_policy(
        {"extra_data": {"plan": "basic", "source": "ghl"}},
        {"extra_data": {"plan": "pro", "note": None}},
    )

    assert result.values["extra_data"] == {"plan": "pro", "source": "ghl"}


def test_unmapped_fields_are_counted_and_ignored():
    result = apply_merge_policy({}, {"favorite_color": "green"})

    assert result.values == {}
    assert result.stats["fields_unmapped"] == 1


def test_load_policy_without_override_returns_default():
    assert load_policy({}) is DEFAULT_POLICY


def test_load_policy_override_keeps_unmentioned_defaults(tmp_path):
    path = tmp_path / "policy.json"
    path.write_text(
        json.dumps(
            {
                "key": "custom",
                "field_groups": [
                    {"name": "identity", "fields": [{"field_name": "full_name", "strategy": "last_write_wins"}]}
                ],
            }
        )
    )

    policy = load_policy({"SYNC_MERGE_POLICY_PATH": str(path)})

    assert policy.key == "custom"
    assert policy.find_rule("full_name").strategy == "last_write_wins"
    assert policy.find_rule("email").strategy == "fill_if_null"


def test_load_policy_yaml_override(tmp_path):
    path = tmp_path / "policy.yaml"
    path.write_text(
        "field_groups:\n"
        "  - name: tracking\n"
        "    fields:\n"
        "      - field_name: utm_source\n"
        "        strategy: fill_if_null\n"
    )

    policy = load_policy({"SYNC_MERGE_POLICY_PATH": str(path)})

    assert policy.find_rule("utm_source").strategy == "fill_if_null"


@pytest.mark.parametrize(
    "rule",
    [
        {"field_name": "total_paid", "strategy": "last_write_wins"},
        {"field_name": "lifecycle_stage", "strategy": "fill_if_null"},
        {"field_name": "email", "strategy": "coin_flip"},
        {"strategy": "union"},
    ],
)
def test_load_policy_rejects_invalid_rules(tmp_path, rule):
    path = tmp_path / "policy.json"
    path.write_text(json.dumps({"field_groups": [{"name": "broken", "fields": [rule]}]}))

    with pytest.raises(MergePolicyConfigError):
        load_policy({"SYNC_MERGE_POLICY_PATH": str(path)})


def test_load_policy_missing_file(tmp_path):
    with pytest.raises(MergePolicyConfigError):
        load_policy({"SYNC_MERGE_POLICY_PATH": str(tmp_path / "absent.json")})
