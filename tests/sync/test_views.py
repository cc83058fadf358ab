from __future__ import annotations

import pytest
from sync_fakes import FakeBilling, ScriptedAdapter, subscriber_page

from revops_app.models import (
    CanonicalClient,
    ConflictReason,
    ContactIdentity,
    MergeConflict,
    SyncRun,
    SyncRunStatus,
    db,
)
from revops_app.sync.errors import TransportError
from revops_app.sync.recovery.service import RevenueRecoveryService


@pytest.fixture
def scripted_source(monkeypatch):
    """Route the controller's default adapter factory to a scripted adapter."""

    def _install(adapter):
        monkeypatch.setattr(
            "revops_app.sync.pipeline.controller.build_adapter",
            lambda source, config, params=None: adapter,
        )
        return adapter

    return _install


# ----------------------------------------------------------------------
# Authentication
# ----------------------------------------------------------------------
def test_requests_without_key_are_rejected(client):
    response = client.get("/sync/runs")

    assert response.status_code == 401
    assert response.get_json()["error"] == "Authentication required."


def test_wrong_key_is_rejected(client):
    response = client.get("/sync/runs", headers={"X-ADMIN-KEY": "nope"})

    assert response.status_code == 401


def test_bearer_token_is_accepted(client):
    response = client.get("/sync/runs", headers={"Authorization": "Bearer test-admin-key"})

    assert response.status_code == 200


def test_unconfigured_admin_key_returns_503(app, client, admin_headers, monkeypatch):
    monkeypatch.setitem(app.config, "SYNC_ADMIN_API_KEY", None)

    response = client.get("/sync/runs", headers=admin_headers)

    assert response.status_code == 503


# ----------------------------------------------------------------------
# Health
# ----------------------------------------------------------------------
def test_sync_health_lists_sources(client, admin_headers):
    response = client.get("/sync/health", headers=admin_headers)

    payload = response.get_json()
    assert response.status_code == 200
    assert payload["status"] == "ok"
    assert payload["enabled"] is True
    assert {source["name"] for source in payload["sources"]} >= {"ghl", "manychat", "stripe"}


def test_worker_health_disabled(app, client, admin_headers, monkeypatch):
    monkeypatch.setitem(app.extensions["sync"], "worker_enabled", False)

    response = client.get("/sync/worker_health", headers=admin_headers)

    assert response.status_code == 200
    assert response.get_json()["status"] == "disabled"


def test_worker_health_runs_heartbeat_task(app, client, admin_headers, monkeypatch):
    monkeypatch.setitem(app.extensions["sync"], "worker_enabled", True)

    response = client.get("/sync/worker_health", headers=admin_headers)

    payload = response.get_json()
    assert response.status_code == 200
    assert payload["status"] == "ok"
    assert payload["heartbeat"]["status"] == "ok"


# ----------------------------------------------------------------------
# Runs
# ----------------------------------------------------------------------
def test_start_run(client, admin_headers):
    response = client.post("/sync/runs", json={"source": "manychat", "dry_run": True}, headers=admin_headers)

    payload = response.get_json()
    assert response.status_code == 201
    assert payload["status"] == "running"
    assert payload["dry_run"] is True
    run = db.session.get(SyncRun, payload["sync_run_id"])
    assert run.params_json["triggered_by"] == "api"


def test_start_run_requires_source(client, admin_headers):
    response = client.post("/sync/runs", json={}, headers=admin_headers)

    assert response.status_code == 400


def test_start_run_unknown_source(client, admin_headers):
    response = client.post("/sync/runs", json={"source": "myspace"}, headers=admin_headers)

    assert response.status_code == 400
    assert response.get_json()["code"] == "validation_error"


def test_start_run_conflict_reports_active_run(client, admin_headers):
    first = client.post("/sync/runs", json={"source": "ghl"}, headers=admin_headers).get_json()

    response = client.post("/sync/runs", json={"source": "ghl"}, headers=admin_headers)

    payload = response.get_json()
    assert response.status_code == 409
    assert payload["code"] == "conflict"
    assert payload["active_run_id"] == first["sync_run_id"]


def test_list_and_get_runs(client, admin_headers, run_factory):
    run = run_factory(source="paypal", status=SyncRunStatus.FAILED)
    run_factory(source="ghl", status=SyncRunStatus.COMPLETED)

    listing = client.get("/sync/runs?status=failed&source=paypal", headers=admin_headers).get_json()
    detail = client.get(f"/sync/runs/{run.id}", headers=admin_headers)

    assert listing["total"] == 1
    assert listing["items"][0]["sync_run_id"] == run.id
    assert detail.status_code == 200
    assert detail.get_json()["status"] == "failed"


def test_list_runs_invalid_filter(client, admin_headers):
    response = client.get("/sync/runs?status=exploded", headers=admin_headers)

    assert response.status_code == 400


def test_get_missing_run(client, admin_headers):
    response = client.get("/sync/runs/missing", headers=admin_headers)

    assert response.status_code == 404
    assert response.get_json()["code"] == "not_found"


def test_continue_processes_pages(client, admin_headers, scripted_source):
    scripted_source(ScriptedAdapter("manychat", [subscriber_page(0, 3), subscriber_page(3, 2)]))
    run_id = client.post("/sync/runs", json={"source": "manychat"}, headers=admin_headers).get_json()["sync_run_id"]

    first = client.post(f"/sync/runs/{run_id}/continue", headers=admin_headers).get_json()
    second = client.post(f"/sync/runs/{run_id}/continue", headers=admin_headers).get_json()

    assert first["has_more"] is True
    assert first["status"] == "continuing"
    assert second["has_more"] is False
    assert second["status"] == "completed"
    assert second["counters"]["total_fetched"] == 5
    assert db.session.query(CanonicalClient).count() == 5


def test_continue_reports_page_failure(client, admin_headers, scripted_source):
    scripted_source(ScriptedAdapter("ghl", [[]], fail_on_page=0))
    run_id = client.post("/sync/runs", json={"source": "ghl"}, headers=admin_headers).get_json()["sync_run_id"]

    response = client.post(f"/sync/runs/{run_id}/continue", headers=admin_headers)

    assert response.status_code == 502
    assert response.get_json()["error"] == "upstream 503"


def test_cancel_pause_resume(client, admin_headers):
    run_id = client.post("/sync/runs", json={"source": "stripe"}, headers=admin_headers).get_json()["sync_run_id"]

    paused = client.post(f"/sync/runs/{run_id}/pause", headers=admin_headers)
    resumed = client.post(f"/sync/runs/{run_id}/resume", headers=admin_headers)
    canceled = client.post(f"/sync/runs/{run_id}/cancel", headers=admin_headers)
    again = client.post(f"/sync/runs/{run_id}/cancel", headers=admin_headers)

    assert paused.get_json()["status"] == "paused"
    assert resumed.get_json()["status"] == "continuing"
    assert resumed.get_json()["checkpoint"]["cursor"] is None
    assert canceled.get_json() == {"ok": True, "sync_run_id": run_id, "status": "canceled"}
    assert again.status_code == 404
    assert again.get_json()["error"] == "Sync not found or already completed"


def test_resume_completed_run_is_invalid(client, admin_headers, run_factory):
    run = run_factory(source="ghl", status=SyncRunStatus.COMPLETED)

    response = client.post(f"/sync/runs/{run.id}/resume", headers=admin_headers)

    assert response.status_code == 409
    assert response.get_json()["code"] == "invalid_transition"


def test_sweep_endpoint(client, admin_headers):
    client.post("/sync/runs", json={"source": "ghl"}, headers=admin_headers)

    quiet = client.post("/sync/sweep", json={"source": "ghl"}, headers=admin_headers)
    bad = client.post("/sync/sweep", json={"idle_minutes": "soon"}, headers=admin_headers)

    assert quiet.get_json() == {"cleaned_count": 0}
    assert bad.status_code == 400


# ----------------------------------------------------------------------
# Identity
# ----------------------------------------------------------------------
def test_unify_identity_single_contact(client, admin_headers):
    headers = dict(admin_headers, **{"X-Source": "ManyChat"})

    created = client.post(
        "/sync/unify-identity",
        json={"email": "Lead@Example.com", "manychat_subscriber_id": "mc-1", "utm_source": "ig"},
        headers=headers,
    )
    updated = client.post("/sync/unify-identity", json={"email": "lead@example.com"}, headers=headers)

    assert created.status_code == 200
    assert created.get_json()["action"] == "created"
    assert updated.get_json()["action"] == "updated"
    assert updated.get_json()["client_id"] == created.get_json()["client_id"]
    client_row = db.session.get(CanonicalClient, created.get_json()["client_id"])
    assert client_row.utm_source == "ig"


def test_unify_identity_rejects_contact_without_identifier(client, admin_headers):
    response = client.post("/sync/unify-identity", json={"full_name": "Nobody"}, headers=admin_headers)

    payload = response.get_json()
    assert response.status_code == 400
    assert payload["success"] is False
    assert payload["action"] == "skipped"


def test_unify_identity_batch(client, admin_headers, client_factory):
    client_factory(email="known@example.com")
    contacts = [
        {"email": "known@example.com"},
        {"email": "new@example.com"},
        {"full_name": "No identifiers"},
        "not-an-object",
    ]

    response = client.post("/sync/unify-identity", json={"contacts": contacts}, headers=admin_headers)

    payload = response.get_json()
    assert response.status_code == 200
    assert payload["processed"] == 4
    assert payload["created"] == 1
    assert payload["updated"] == 1
    assert payload["errors"] == 2
    assert [detail["index"] for detail in payload["error_details"]] == [2, 3]


def test_unify_identity_conflict_is_reported(client, admin_headers, client_factory):
    client_factory(email="a@example.com")
    client_factory(phone="5550102030", phone_last10="5550102030")

    response = client.post(
        "/sync/unify-identity",
        json={"email": "a@example.com", "phone": "+1 555 010 2030"},
        headers=admin_headers,
    )

    payload = response.get_json()
    assert payload["action"] == "conflict"
    assert payload["reason"] == ConflictReason.SIGNAL_MISMATCH.value
    assert db.session.get(MergeConflict, payload["conflict_id"]) is not None
    assert payload["error"] == "resolution_conflict"
    assert len(payload["candidate_ids"]) == 2


def test_merge_contact_into_explicit_client(client, admin_headers, client_factory):
    target = client_factory(email="target@example.com")

    response = client.post(
        "/sync/merge-contact",
        json={"source": "ghl", "client_id": target.id, "contact": {"phone": "555 222 3333", "ghl_contact_id": "g-1"}},
        headers=admin_headers,
    )

    payload = response.get_json()
    assert response.status_code == 200
    assert payload["action"] == "updated"
    assert payload["client_id"] == target.id
    assert db.session.get(CanonicalClient, target.id).ghl_contact_id == "g-1"


def test_merge_contact_keys_on_external_id(client, admin_headers):
    first = client.post(
        "/sync/merge-contact",
        json={"source": "manychat", "external_id": "sub_1", "contact": {"email": "a@example.com"}},
        headers=admin_headers,
    ).get_json()
    second = client.post(
        "/sync/merge-contact",
        json={"source": "manychat", "external_id": "sub_1", "contact": {"email": "renamed@example.com"}},
        headers=admin_headers,
    ).get_json()

    assert first["action"] == "created"
    assert second["action"] == "updated"
    assert second["client_id"] == first["client_id"]
    assert db.session.query(CanonicalClient).count() == 1
    merged = db.session.get(CanonicalClient, first["client_id"])
    assert merged.manychat_subscriber_id == "sub_1"
    identities = [(row.source, row.external_id) for row in db.session.query(ContactIdentity).all()]
    assert identities == [("manychat", "sub_1")]


def test_merge_contact_reports_resolution_conflict(client, admin_headers, client_factory):
    target = client_factory(email="target@example.com")
    other = client_factory(email="taken@example.com")

    response = client.post(
        "/sync/merge-contact",
        json={"source": "ghl", "client_id": target.id, "contact": {"email": "taken@example.com"}},
        headers=admin_headers,
    )

    payload = response.get_json()
    assert response.status_code == 200
    assert payload["action"] == "conflict"
    assert payload["error"] == "resolution_conflict"
    assert payload["candidate_ids"] == sorted([target.id, other.id])
    assert db.session.get(MergeConflict, payload["conflict_id"]).status.value == "open"


def test_merge_contact_unknown_client(client, admin_headers):
    response = client.post(
        "/sync/merge-contact",
        json={"client_id": 999, "contact": {"email": "x@example.com"}},
        headers=admin_headers,
    )

    assert response.status_code == 400


# ----------------------------------------------------------------------
# Conflicts
# ----------------------------------------------------------------------
def _open_conflict(candidates) -> MergeConflict:
    conflict = MergeConflict(
        source="ghl",
        external_id="ghl-ext",
        candidate_client_ids=list(candidates),
        reason=ConflictReason.AMBIGUOUS_EMAIL,
        incoming_record={"email": "dup@example.com"},
    )
    db.session.add(conflict)
    db.session.commit()
    return conflict


def test_list_and_resolve_conflicts(client, admin_headers, client_factory):
    chosen = client_factory(email="chosen@example.com")
    conflict = _open_conflict([chosen.id])

    listing = client.get("/sync/conflicts", headers=admin_headers).get_json()
    resolved = client.post(
        f"/sync/conflicts/{conflict.id}/resolve",
        json={"client_id": chosen.id, "note": "verified by phone"},
        headers=admin_headers,
    )
    repeat = client.post(f"/sync/conflicts/{conflict.id}/resolve", json={}, headers=admin_headers)
    remaining = client.get("/sync/conflicts?status=open", headers=admin_headers).get_json()
    everything = client.get("/sync/conflicts?status=all", headers=admin_headers).get_json()

    assert listing["total"] == 1
    assert resolved.status_code == 200
    assert resolved.get_json()["resolved_client_id"] == chosen.id
    assert repeat.status_code == 409
    assert remaining["total"] == 0
    assert everything["total"] == 1


def test_resolve_conflict_bad_client_id(client, admin_headers):
    conflict = _open_conflict([1])

    response = client.post(f"/sync/conflicts/{conflict.id}/resolve", json={"client_id": "abc"}, headers=admin_headers)

    assert response.status_code == 400


def test_list_conflicts_bad_status(client, admin_headers):
    response = client.get("/sync/conflicts?status=pending", headers=admin_headers)

    assert response.status_code == 400


# ----------------------------------------------------------------------
# Revenue recovery
# ----------------------------------------------------------------------
def _install_billing(monkeypatch, billing):
    monkeypatch.setattr(
        "revops_app.sync.views.RevenueRecoveryService",
        lambda: RevenueRecoveryService(billing=billing),
    )
    return billing


def test_recover_revenue_page(client, admin_headers, monkeypatch):
    invoice = {
        "id": "in_1",
        "status": "open",
        "amount_due": 4900,
        "currency": "usd",
        "customer": {"id": "cus_1", "email": "late@example.com"},
    }
    _install_billing(monkeypatch, FakeBilling(pages=[{"data": [invoice], "has_more": False}]))

    response = client.post("/sync/recover-revenue", json={"hours_lookback": 168}, headers=admin_headers)

    payload = response.get_json()
    assert response.status_code == 200
    assert payload["ok"] is True
    assert payload["recovered_amount"] == 4900
    assert payload["has_more"] is False
    assert db.session.get(SyncRun, payload["sync_run_id"]).status == SyncRunStatus.COMPLETED


def test_recover_revenue_invalid_lookback(client, admin_headers, monkeypatch):
    _install_billing(monkeypatch, FakeBilling())

    response = client.post("/sync/recover-revenue", json={"hours_lookback": 5}, headers=admin_headers)

    assert response.status_code == 400
    assert "Valid values" in response.get_json()["error"]


def test_recover_revenue_requires_stripe_key(app, client, admin_headers, monkeypatch):
    monkeypatch.setitem(app.config, "STRIPE_SECRET_KEY", None)

    response = client.post("/sync/recover-revenue", json={"hours_lookback": 24}, headers=admin_headers)

    assert response.status_code == 503


def test_recover_revenue_reports_partial_page_on_upstream_error(client, admin_headers, monkeypatch, mock_alert):
    invoices = [
        {"id": "in_1", "status": "open", "amount_due": 1000, "currency": "usd", "customer": "cus_1"},
        {"id": "in_2", "status": "open", "amount_due": 2000, "currency": "usd", "customer": "cus_2"},
    ]
    _install_billing(
        monkeypatch,
        FakeBilling(
            pages=[{"data": invoices, "has_more": False}],
            outcomes={"in_2": [TransportError("stripe API error: 503", status_code=503)]},
        ),
    )

    response = client.post("/sync/recover-revenue", json={"hours_lookback": 24}, headers=admin_headers)

    payload = response.get_json()
    assert response.status_code == 502
    assert payload["ok"] is False
    assert payload["code"] == "transport_error"
    assert payload["recovered_amount"] == 1000
    assert payload["next_cursor"] == "in_1"
    assert db.session.get(SyncRun, payload["sync_run_id"]).status == SyncRunStatus.FAILED
