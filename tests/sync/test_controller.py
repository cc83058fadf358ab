from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import delete, func, select
from sync_fakes import ScriptedAdapter, make_record, subscriber_page

from revops_app.models import (
    CanonicalClient,
    ContactIdentity,
    MergeConflict,
    RawStagedRecord,
    SyncRun,
    SyncRunStatus,
    db,
)
from revops_app.sync.adapters.base import PageResult, SourceAdapter
from revops_app.sync.errors import AuthError, ConflictError, InvalidTransition, RunNotFound, ValidationError


def _count(model) -> int:
    return db.session.scalar(select(func.count()).select_from(model))


def _manychat_adapter() -> ScriptedAdapter:
    return ScriptedAdapter("manychat", [subscriber_page(0, 60), subscriber_page(60, 40)])


class ExplodingAdapter(SourceAdapter):
    source = "ghl"

    def __init__(self, exc: Exception):
        self.exc = exc

    def fetch_page(self, cursor):
        raise self.exc


# ----------------------------------------------------------------------
# Start and single-flight
# ----------------------------------------------------------------------
def test_start_creates_running_run(scripted_controller):
    controller = scripted_controller(_manychat_adapter())

    run = controller.start("manychat", params={"triggered_by": "test"})

    assert run.status == SyncRunStatus.RUNNING
    assert run.checkpoint == {"cursor": None, "page": 0, "last_error": None, "last_error_code": None}
    assert run.params_json == {"triggered_by": "test"}
    assert run.last_heartbeat_at is not None


def test_start_rejects_unknown_source(scripted_controller):
    with pytest.raises(ValidationError):
        scripted_controller(_manychat_adapter()).start("myspace")


def test_single_flight_per_source(scripted_controller):
    controller = scripted_controller(_manychat_adapter())
    first = controller.start("manychat")

    with pytest.raises(ConflictError) as excinfo:
        controller.start("manychat")
    assert excinfo.value.active_run_id == first.id

    # other sources are independent
    assert controller.start("ghl").status == SyncRunStatus.RUNNING

    controller.run_to_completion(first.id)
    assert controller.start("manychat").status == SyncRunStatus.RUNNING


# ----------------------------------------------------------------------
# Page processing
# ----------------------------------------------------------------------
def test_two_page_sync_completes_with_totals(scripted_controller):
    adapter = _manychat_adapter()
    controller = scripted_controller(adapter)
    run = controller.start("manychat")

    first = controller.process_next_page(run.id)
    assert first.status == SyncRunStatus.CONTINUING
    assert first.has_more is True
    assert first.next_checkpoint["cursor"] == 1
    assert first.counters["total_fetched"] == 60

    second = controller.process_next_page(run.id)
    assert second.status == SyncRunStatus.COMPLETED
    assert second.has_more is False

    stored = db.session.get(SyncRun, run.id)
    assert stored.total_fetched == 100
    assert stored.total_inserted == 100
    assert stored.completed_at is not None
    assert stored.checkpoint["page"] == 2
    assert adapter.cursors_seen == [None, 1]
    assert _count(CanonicalClient) == 100
    assert _count(RawStagedRecord) == 100


def test_interrupted_run_is_swept_then_restartable(scripted_controller):
    controller = scripted_controller(_manychat_adapter())
    run = controller.start("manychat")
    controller.process_next_page(run.id)

    later = datetime.now(timezone.utc) + timedelta(minutes=45)
    sweeper = scripted_controller(_manychat_adapter(), now_fn=lambda: later)
    cleaned = sweeper.sweep_stale(source="manychat")

    assert cleaned == 1
    swept = db.session.get(SyncRun, run.id)
    assert swept.status == SyncRunStatus.FAILED
    assert swept.error_message == "Stale/timeout - no heartbeat for 30 minutes"
    assert swept.checkpoint["last_error_code"] == "timeout_abandonment"
    assert swept.checkpoint["cursor"] == 1

    fresh = controller.start("manychat")
    assert fresh.id != run.id
    assert fresh.status == SyncRunStatus.RUNNING


def test_sweep_leaves_recent_runs_alone(scripted_controller):
    controller = scripted_controller(_manychat_adapter())
    run = controller.start("manychat")

    assert controller.sweep_stale(idle_threshold=timedelta(minutes=5)) == 0
    assert db.session.get(SyncRun, run.id).status == SyncRunStatus.RUNNING


def test_resume_matches_single_pass(scripted_controller):
    controller = scripted_controller(_manychat_adapter())
    run = controller.start("manychat")
    single_pass = controller.run_to_completion(run.id)
    expected_clients = set(db.session.scalars(select(CanonicalClient.email)))

    for model in (ContactIdentity, MergeConflict, RawStagedRecord, CanonicalClient):
        db.session.execute(delete(model))
    db.session.commit()

    resumed_controller = scripted_controller(_manychat_adapter())
    second = resumed_controller.start("manychat")
    resumed_controller.process_next_page(second.id)
    resumed_controller.pause(second.id)
    assert db.session.get(SyncRun, second.id).status == SyncRunStatus.PAUSED

    resumed_controller.resume(second.id)
    resumed = resumed_controller.run_to_completion(second.id)

    assert resumed.status == single_pass.status == SyncRunStatus.COMPLETED
    assert resumed.counters == single_pass.counters
    assert set(db.session.scalars(select(CanonicalClient.email))) == expected_clients


def test_page_failure_keeps_last_good_checkpoint(scripted_controller):
    adapter = ScriptedAdapter("manychat", [subscriber_page(0, 5), subscriber_page(5, 5)], fail_on_page=1)
    controller = scripted_controller(adapter)
    run = controller.start("manychat")
    controller.process_next_page(run.id)

    outcome = controller.process_next_page(run.id)

    assert outcome.status == SyncRunStatus.FAILED
    assert outcome.error == "upstream 503"
    assert outcome.counters["total_fetched"] == 5
    failed = db.session.get(SyncRun, run.id)
    assert failed.checkpoint["cursor"] == 1
    assert failed.checkpoint["page"] == 1
    assert failed.checkpoint["last_error_code"] == "transport_error"

    adapter.fail_on_page = None
    resumed = controller.resume(run.id)
    assert resumed.status == SyncRunStatus.CONTINUING
    assert resumed.error_message is None

    final = controller.run_to_completion(run.id)
    assert final.status == SyncRunStatus.COMPLETED
    assert final.counters["total_fetched"] == 10
    assert adapter.cursors_seen[-1] == 1


def test_auth_failure_marks_run_failed(scripted_controller):
    controller = scripted_controller(ExplodingAdapter(AuthError("ghl rejected credentials (status=401).")))
    run = controller.start("ghl")

    outcome = controller.process_next_page(run.id)

    assert outcome.status == SyncRunStatus.FAILED
    assert db.session.get(SyncRun, run.id).checkpoint["last_error_code"] == "auth_error"


def test_unexpected_adapter_error_fails_run_and_propagates(scripted_controller):
    controller = scripted_controller(ExplodingAdapter(RuntimeError("boom")))
    run = controller.start("ghl")

    with pytest.raises(RuntimeError):
        controller.process_next_page(run.id)

    failed = db.session.get(SyncRun, run.id)
    assert failed.status == SyncRunStatus.FAILED
    assert failed.checkpoint["last_error_code"] == "internal_error"


def test_invalid_records_are_skipped_not_fatal(scripted_controller):
    records = [
        make_record("ok-1", email="ok@example.com"),
        make_record("anon-1", full_name="No Identifiers"),
    ]
    controller = scripted_controller(ScriptedAdapter("ghl", [records]))
    run = controller.start("ghl")

    outcome = controller.process_next_page(run.id)

    assert outcome.status == SyncRunStatus.COMPLETED
    assert outcome.counters["total_fetched"] == 2
    assert outcome.counters["total_inserted"] == 1
    assert outcome.counters["total_skipped"] == 1


def test_dropped_records_count_as_fetched_and_skipped(scripted_controller):
    class DroppingAdapter(SourceAdapter):
        source = "stripe"

        def fetch_page(self, cursor):
            return PageResult(
                records=[make_record("pi_1", email="paid@example.com")],
                next_cursor="pi_1",
                has_more=False,
                dropped=3,
            )

    controller = scripted_controller(DroppingAdapter())
    run = controller.start("stripe")

    outcome = controller.process_next_page(run.id)

    assert outcome.counters["total_fetched"] == 4
    assert outcome.counters["total_skipped"] == 3


def test_conflicting_records_complete_with_conflict_counter(scripted_controller, client_factory):
    client_factory(email="a@example.com")
    client_factory(phone="5550102030", phone_last10="5550102030")
    record = make_record("ghl-x", email="a@example.com", phone="+15550102030")
    controller = scripted_controller(ScriptedAdapter("ghl", [[record]]))
    run = controller.start("ghl")

    outcome = controller.process_next_page(run.id)

    assert outcome.status == SyncRunStatus.COMPLETED
    assert outcome.counters["total_conflicts"] == 1
    assert _count(MergeConflict) == 1


def test_dry_run_resolves_without_writing(scripted_controller):
    controller = scripted_controller(ScriptedAdapter("manychat", [subscriber_page(0, 3)]))
    run = controller.start("manychat", dry_run=True)

    outcome = controller.process_next_page(run.id)

    assert outcome.counters["total_inserted"] == 3
    assert _count(CanonicalClient) == 0
    assert _count(RawStagedRecord) == 0


def test_page_ceiling_fails_run(scripted_controller, app):
    config = dict(app.config, SYNC_MAX_PAGES=1)
    controller = scripted_controller(_manychat_adapter(), config=config)
    run = controller.start("manychat")
    controller.process_next_page(run.id)

    outcome = controller.process_next_page(run.id)

    assert outcome.status == SyncRunStatus.FAILED
    assert "Page ceiling of 1" in outcome.error


def test_inactive_run_is_returned_untouched(scripted_controller, run_factory):
    run = run_factory(source="manychat", status=SyncRunStatus.COMPLETED, total_fetched=7)
    adapter = _manychat_adapter()

    outcome = scripted_controller(adapter).process_next_page(run.id)

    assert outcome.has_more is False
    assert outcome.counters["total_fetched"] == 7
    assert adapter.cursors_seen == []


# ----------------------------------------------------------------------
# Cancel, pause, resume
# ----------------------------------------------------------------------
def test_cancel_active_run(scripted_controller):
    controller = scripted_controller(_manychat_adapter())
    run = controller.start("manychat")

    canceled = controller.cancel(run.id)

    assert canceled.status == SyncRunStatus.CANCELED
    assert canceled.completed_at is not None
    with pytest.raises(RunNotFound):
        controller.cancel(run.id)


def test_cancel_unknown_run(scripted_controller):
    with pytest.raises(RunNotFound) as excinfo:
        scripted_controller(_manychat_adapter()).cancel("missing")
    assert str(excinfo.value) == "Sync not found or already completed"


def test_pause_requires_active_run(scripted_controller, run_factory):
    run = run_factory(source="ghl", status=SyncRunStatus.COMPLETED)

    with pytest.raises(InvalidTransition):
        scripted_controller(_manychat_adapter()).pause(run.id)


def test_resume_rejects_completed_run(scripted_controller, run_factory):
    run = run_factory(source="ghl", status=SyncRunStatus.COMPLETED)

    with pytest.raises(InvalidTransition):
        scripted_controller(_manychat_adapter()).resume(run.id)


def test_resume_blocked_while_another_run_is_active(scripted_controller, run_factory):
    paused = run_factory(source="manychat", status=SyncRunStatus.PAUSED)
    controller = scripted_controller(_manychat_adapter())
    active = controller.start("manychat")

    with pytest.raises(ConflictError) as excinfo:
        controller.resume(paused.id)
    assert excinfo.value.active_run_id == active.id


def test_canceled_run_resumes_from_checkpoint(scripted_controller):
    adapter = _manychat_adapter()
    controller = scripted_controller(adapter)
    run = controller.start("manychat")
    controller.process_next_page(run.id)
    controller.cancel(run.id)

    controller.resume(run.id)
    outcome = controller.process_next_page(run.id)

    assert outcome.status == SyncRunStatus.COMPLETED
    assert adapter.cursors_seen == [None, 1]
    assert outcome.counters["total_fetched"] == 100
