from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone

from flask import Flask
from sync_fakes import ScriptedAdapter, subscriber_page

from revops_app.models import SyncRun, SyncRunStatus, db
from revops_app.sync.celery_app import DEFAULT_QUEUE_NAME, create_celery_app, get_celery_app


def _task(app, name):
    """Look tasks up on the app's own Celery instance rather than the current default."""
    return get_celery_app(app).tasks[name]


def test_create_celery_app_defaults_to_sqlite(tmp_path):
    flask_app = Flask("sync-worker-test", instance_path=str(tmp_path))
    flask_app.config.update(SYNC_STALE_TIMEOUT_MINUTES=20)

    celery_app = create_celery_app(flask_app)

    expected = (tmp_path / "celery.sqlite").as_posix()
    assert celery_app.conf.broker_url == f"sqla+sqlite:///{expected}"
    assert celery_app.conf.result_backend == f"db+sqlite:///{expected}"
    assert celery_app.conf.task_default_queue == DEFAULT_QUEUE_NAME
    assert celery_app.conf.beat_schedule["sync-sweep-stale"]["schedule"] == timedelta(minutes=10)


def test_create_celery_app_applies_json_overrides(tmp_path):
    flask_app = Flask("sync-worker-test", instance_path=str(tmp_path))
    flask_app.config.update(
        CELERY_BROKER_URL="memory://",
        CELERY_RESULT_BACKEND="cache+memory://",
        CELERY_CONFIG=json.dumps({"task_always_eager": True}),
    )

    celery_app = create_celery_app(flask_app)

    assert celery_app.conf.broker_url == "memory://"
    assert celery_app.conf.task_always_eager is True


def test_celery_app_is_cached_on_extension(app):
    assert get_celery_app(app) is get_celery_app(app)
    assert "sync.pipeline.continue_run" in get_celery_app(app).tasks


def test_worker_ping_command(runner):
    result = runner.invoke(args=["sync", "worker", "ping", "--timeout", "2"])

    assert result.exit_code == 0, result.output
    assert '"status": "ok"' in result.output


def test_continue_run_task_chains_until_complete(app, monkeypatch, run_factory):
    adapter = ScriptedAdapter("manychat", [subscriber_page(0, 2), subscriber_page(2, 2), subscriber_page(4, 1)])
    monkeypatch.setattr(
        "revops_app.sync.pipeline.controller.build_adapter",
        lambda source, config, params=None: adapter,
    )
    run = run_factory(source="manychat", status=SyncRunStatus.RUNNING)

    _task(app, "sync.pipeline.continue_run").apply(kwargs={"run_id": run.id})

    db.session.expire_all()
    finished = db.session.get(SyncRun, run.id)
    assert finished.status == SyncRunStatus.COMPLETED
    assert finished.total_fetched == 5
    assert adapter.cursors_seen == [None, 1, 2]


def test_continue_run_task_without_chaining(app, monkeypatch, run_factory):
    adapter = ScriptedAdapter("manychat", [subscriber_page(0, 1), subscriber_page(1, 1)])
    monkeypatch.setattr(
        "revops_app.sync.pipeline.controller.build_adapter",
        lambda source, config, params=None: adapter,
    )
    run = run_factory(source="manychat", status=SyncRunStatus.RUNNING)

    outcome = _task(app, "sync.pipeline.continue_run").apply(kwargs={"run_id": run.id, "chain": False}).get()

    assert outcome["has_more"] is True
    assert adapter.cursors_seen == [None]


def test_sweep_stale_task(app, run_factory):
    stale = run_factory(
        source="ghl",
        status=SyncRunStatus.RUNNING,
        last_heartbeat_at=datetime.now(timezone.utc) - timedelta(hours=2),
    )

    result = _task(app, "sync.maintenance.sweep_stale").apply(kwargs={"idle_minutes": 30}).get()

    assert result == {"cleaned_count": 1}
    db.session.expire_all()
    assert db.session.get(SyncRun, stale.id).status == SyncRunStatus.FAILED
