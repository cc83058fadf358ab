from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone

import pytest
from sync_fakes import FakeResponse, FakeSession

from revops_app.sync.errors import AuthError, TransportError
from revops_app.sync.recovery.job_state import (
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_PAUSED,
    JsonFileJobStateStore,
    RecoveryJobState,
)
from revops_app.sync.recovery.processor import RecoveryApiClient, RecoveryBatchProcessor
from revops_app.sync.recovery.service import RecoveryInterrupted, RecoveryPage


class PageScript:
    """Callable page fetcher returning queued pages and recording its calls."""

    def __init__(self, pages=(), *, always_more: bool = False):
        self.pages = list(pages)
        self.always_more = always_more
        self.calls: list[dict] = []

    def __call__(self, **kwargs):
        self.calls.append(kwargs)
        index = len(self.calls)
        if self.always_more:
            return RecoveryPage(ok=True, sync_run_id="run-1", processed=1, has_more=True, next_cursor=f"in_{index}")
        page = self.pages.pop(0)
        if isinstance(page, Exception):
            raise page
        return page


def _page(cursor: str, *, has_more: bool, recovered: int = 0, run_id: str = "run-1") -> RecoveryPage:
    return RecoveryPage(
        ok=True,
        sync_run_id=run_id,
        processed=1,
        has_more=has_more,
        next_cursor=cursor,
        recovered_amount=recovered,
        succeeded=[{"invoice_id": cursor, "amount_recovered": recovered}] if recovered else [],
    )


@pytest.fixture
def store(tmp_path):
    return JsonFileJobStateStore(tmp_path / "state.json")


def _processor(fetch, store, **kwargs) -> RecoveryBatchProcessor:
    kwargs.setdefault("inter_batch_delay", 0)
    return RecoveryBatchProcessor(fetch, store, **kwargs)


# ----------------------------------------------------------------------
# Batch loop
# ----------------------------------------------------------------------
def test_runs_until_remote_is_exhausted(store):
    fetch = PageScript([_page("in_1", has_more=True, recovered=1000), _page("in_2", has_more=False, recovered=500)])
    progress: list[int] = []

    state = _processor(fetch, store, on_progress=lambda s: progress.append(s.batches)).run(24)

    assert state.status == STATUS_COMPLETED
    assert state.batches == 2
    assert state.recovered_amount == 1500
    assert [item["invoice_id"] for item in state.succeeded] == ["in_1", "in_2"]
    assert progress == [1, 2]
    assert fetch.calls[0] == {"hours_lookback": 24, "cursor": None, "sync_run_id": None, "exclude_recent_hours": None}
    assert fetch.calls[1]["cursor"] == "in_1"
    assert fetch.calls[1]["sync_run_id"] == "run-1"
    assert store.load().status == STATUS_COMPLETED


def test_accepts_plain_mapping_pages(store):
    fetch = PageScript([_page("in_1", has_more=False, recovered=700).as_dict()])

    state = _processor(fetch, store).run(168, exclude_recent_hours=12)

    assert state.recovered_amount == 700
    assert fetch.calls[0]["exclude_recent_hours"] == 12


def test_stops_at_batch_ceiling(store):
    fetch = PageScript(always_more=True)
    sleeps: list[float] = []

    state = _processor(fetch, store, max_batches=3, inter_batch_delay=0.5, sleep_fn=sleeps.append).run(24)

    assert len(fetch.calls) == 3
    assert state.status == STATUS_COMPLETED
    assert state.last_error == "Batch ceiling of 3 reached"
    assert sleeps == [0.5, 0.5, 0.5]


def test_cancel_leaves_paused_state(store):
    processor = None

    def fetch(**kwargs):
        processor.cancel()
        return _page("in_1", has_more=True, recovered=300)

    processor = _processor(fetch, store)
    state = processor.run(24)

    assert state.status == STATUS_PAUSED
    assert state.batches == 1
    saved = store.load()
    assert saved.status == STATUS_PAUSED
    assert saved.cursor == "in_1"


def test_error_after_progress_is_persisted(store):
    fetch = PageScript([_page("in_1", has_more=True, recovered=400), TransportError("recovery endpoint error: 502")])

    with pytest.raises(TransportError):
        _processor(fetch, store).run(24)

    saved = store.load()
    assert saved.status == STATUS_FAILED
    assert saved.last_error == "recovery endpoint error: 502"
    assert saved.cursor == "in_1"
    assert saved.recovered_amount == 400


def test_error_on_first_batch_persists_nothing(store):
    fetch = PageScript([AuthError("Recovery endpoint rejected the admin key.")])

    with pytest.raises(AuthError):
        _processor(fetch, store).run(24)

    assert store.load() is None


def test_resumes_from_saved_state(store):
    saved = RecoveryJobState(hours_lookback=24, sync_run_id="run-1", cursor="in_5", batches=2, recovered_amount=900)
    saved.status = STATUS_PAUSED
    store.save(saved)
    fetch = PageScript([_page("in_6", has_more=False, recovered=100)])

    state = _processor(fetch, store).run(24)

    assert fetch.calls[0]["cursor"] == "in_5"
    assert fetch.calls[0]["sync_run_id"] == "run-1"
    assert state.batches == 3
    assert state.recovered_amount == 1000


def test_fresh_run_ignores_saved_state(store):
    saved = RecoveryJobState(hours_lookback=24, cursor="in_5", batches=2)
    store.save(saved)
    fetch = PageScript([_page("in_1", has_more=False)])

    state = _processor(fetch, store).run(24, fresh=True)

    assert fetch.calls[0]["cursor"] is None
    assert state.batches == 1


def test_completed_state_is_returned_from_cache(store):
    cached = RecoveryJobState(hours_lookback=24, recovered_amount=1234, status=STATUS_COMPLETED)
    store.save(cached)
    fetch = PageScript()
    processor = _processor(fetch, store)

    state = processor.run(24)

    assert state.recovered_amount == 1234
    assert fetch.calls == []
    assert processor.served_from_cache is True

    fresh_fetch = PageScript([_page("in_1", has_more=False)])
    rerun = _processor(fresh_fetch, store)
    rerun.run(24, fresh=True)
    assert rerun.served_from_cache is False
    assert len(fresh_fetch.calls) == 1


def test_expired_or_mismatched_state_is_cleared(store):
    now = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)
    stale = RecoveryJobState(hours_lookback=24, cursor="in_9")
    stale.touch(now - timedelta(hours=3))
    store.save(stale)
    processor = _processor(PageScript(), store, now_fn=lambda: now)

    assert processor.load_resumable(24) is None
    assert store.load() is None

    fresh = RecoveryJobState(hours_lookback=24, cursor="in_9")
    fresh.touch(now)
    store.save(fresh)
    assert processor.load_resumable(168) is None
    assert store.load() is None


def test_completed_state_lives_longer_than_in_flight_state():
    now = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)
    in_flight = RecoveryJobState(hours_lookback=24)
    in_flight.touch(now - timedelta(hours=3))
    done = RecoveryJobState(hours_lookback=24, status=STATUS_COMPLETED)
    done.touch(now - timedelta(hours=3))

    assert in_flight.is_in_flight
    assert in_flight.is_expired(now)
    assert not done.is_expired(now)
    done.touch(now - timedelta(hours=25))
    assert done.is_expired(now)


# ----------------------------------------------------------------------
# State store
# ----------------------------------------------------------------------
def test_store_round_trip_and_clear(store):
    state = RecoveryJobState(hours_lookback=720, sync_run_id="run-9", failed=[{"invoice_id": "in_1"}])

    store.save(state)
    loaded = store.load()

    assert loaded == state
    store.clear()
    assert store.load() is None


def test_store_tolerates_corrupt_file(tmp_path):
    path = tmp_path / "state.json"
    path.write_text("{not json")

    assert JsonFileJobStateStore(path).load() is None


def test_store_discards_state_without_lookback(tmp_path):
    path = tmp_path / "state.json"
    path.write_text(json.dumps({"smart_recovery": {"cursor": "in_1"}}))

    assert JsonFileJobStateStore(path).load() is None


# ----------------------------------------------------------------------
# Remote API client
# ----------------------------------------------------------------------
def test_api_client_posts_body_and_admin_key():
    payload = _page("in_3", has_more=True, recovered=250).as_dict()
    session = FakeSession([FakeResponse(200, payload)])
    client = RecoveryApiClient("https://revops.example.com/", "secret", session=session)

    page = client(hours_lookback=168, cursor="in_2", sync_run_id="run-1", exclude_recent_hours=6)

    call = session.calls[0]
    assert call["url"] == "https://revops.example.com/sync/recover-revenue"
    assert call["headers"] == {"X-ADMIN-KEY": "secret"}
    assert call["json"] == {
        "hours_lookback": 168,
        "starting_after": "in_2",
        "sync_run_id": "run-1",
        "exclude_recent_hours": 6,
    }
    assert page.next_cursor == "in_3"
    assert page.recovered_amount == 250


def test_api_client_first_call_sends_only_lookback():
    session = FakeSession([FakeResponse(200, {"ok": True, "sync_run_id": "run-1"})])

    RecoveryApiClient("https://revops.example.com", "secret", session=session)(hours_lookback=24)

    assert session.calls[0]["json"] == {"hours_lookback": 24}


def test_api_client_maps_errors():
    session = FakeSession([FakeResponse(401, {"error": "Unauthorized"}), FakeResponse(500, None, text="boom")])
    client = RecoveryApiClient("https://revops.example.com", "wrong", session=session)

    with pytest.raises(AuthError):
        client(hours_lookback=24)
    with pytest.raises(TransportError) as excinfo:
        client(hours_lookback=24)
    assert excinfo.value.status_code == 500


def test_interrupted_page_is_folded_into_saved_state(store):
    partial = RecoveryPage(
        ok=False,
        sync_run_id="run-1",
        processed=1,
        has_more=True,
        next_cursor="in_2",
        recovered_amount=50,
        succeeded=[{"invoice_id": "in_2", "amount_recovered": 50}],
        error="stripe API error: timeout",
        error_code="transport_error",
    )
    fetch = PageScript(
        [_page("in_1", has_more=True, recovered=100), RecoveryInterrupted(partial, TransportError("timeout"))]
    )

    with pytest.raises(RecoveryInterrupted):
        _processor(fetch, store).run(24)

    saved = store.load()
    assert saved.status == STATUS_FAILED
    assert saved.batches == 2
    assert saved.cursor == "in_2"
    assert saved.recovered_amount == 150
    assert [item["invoice_id"] for item in saved.succeeded] == ["in_1", "in_2"]


def test_cancel_cuts_the_inter_batch_wait_short(store):
    fetch = PageScript(always_more=True)
    processor = RecoveryBatchProcessor(fetch, store, inter_batch_delay=30)
    processor.on_progress = lambda state: processor.cancel()

    started = datetime.now(timezone.utc)
    state = processor.run(24)

    assert state.status == STATUS_PAUSED
    assert len(fetch.calls) == 1
    assert datetime.now(timezone.utc) - started < timedelta(seconds=5)


def test_api_client_raises_partial_page_from_error_body():
    body = {
        "ok": False,
        "sync_run_id": "run-7",
        "processed": 1,
        "has_more": True,
        "next_cursor": "in_1",
        "recovered_amount": 1000,
        "error": "stripe API error: 503",
        "error_code": "transport_error",
        "code": "transport_error",
    }
    session = FakeSession([FakeResponse(502, body)])

    with pytest.raises(RecoveryInterrupted) as excinfo:
        RecoveryApiClient("https://revops.example.com", "secret", session=session)(hours_lookback=24)

    assert excinfo.value.code == "transport_error"
    assert excinfo.value.page.sync_run_id == "run-7"
    assert excinfo.value.page.recovered_amount == 1000
