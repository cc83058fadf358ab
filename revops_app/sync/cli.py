"""
CLI commands for driving and inspecting sync runs.

Every run-mutating command delegates to ``SyncRunController`` so the CLI, the
JSON API and the Celery worker share one set of transitions.
"""

from __future__ import annotations

import json
from datetime import timedelta
from pathlib import Path
from typing import Optional

import click
from celery import Celery
from celery.exceptions import TimeoutError as CeleryTimeoutError
from flask.cli import ScriptInfo

from revops_app.models import SyncSource
from revops_app.utils.sync import get_sync_sources, is_sync_enabled

from .celery_app import DEFAULT_QUEUE_NAME, get_celery_app
from .errors import SyncError
from .pipeline.controller import PageOutcome, SyncRunController
from .pipeline.run_service import SyncRunService
from .recovery import JsonFileJobStateStore, RecoveryApiClient, RecoveryBatchProcessor, RevenueRecoveryService


@click.group(name="sync", invoke_without_command=True)
@click.pass_context
def sync_cli(ctx):
    """
    Sync management commands.

    Lists configured sources when invoked without a subcommand.
    """
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    if not is_sync_enabled(app):
        raise click.ClickException("Sync is disabled via SYNC_ENABLED=false. Enable it to run sync CLI commands.")
    if ctx.invoked_subcommand is None:
        sources = get_sync_sources(app)
        if not sources:
            click.echo("No sync sources configured.")
        else:
            click.echo("Enabled sync sources:")
            for source in sources:
                click.echo(f"  - {source}")


def get_disabled_sync_group() -> click.Group:
    """Return a minimal command group that informs the operator sync is disabled."""

    @click.group(name="sync", invoke_without_command=True)
    def disabled_group():
        raise click.ClickException("Sync commands are unavailable because SYNC_ENABLED=false.")

    return disabled_group


def _resolve_celery(app) -> Optional[Celery]:
    celery_app = get_celery_app(app)
    if celery_app is None:
        raise click.ClickException(
            "Sync Celery app is unavailable. Ensure SYNC_ENABLED=true and the sync "
            "package initialises before running worker commands."
        )
    return celery_app


def _load_app(ctx):
    return ctx.ensure_object(ScriptInfo).load_app()


def _echo_outcome(outcome: PageOutcome) -> None:
    click.echo(json.dumps(outcome.as_dict(), indent=2, sort_keys=True))


def _run_controller(action, *args, **kwargs):
    try:
        return action(*args, **kwargs)
    except SyncError as exc:
        raise click.ClickException(str(exc)) from exc


@sync_cli.command("start")
@click.option("--source", required=True, type=click.Choice([source.value for source in SyncSource]))
@click.option("--dry-run", is_flag=True, help="Resolve records without writing canonical clients.")
@click.option(
    "--inline/--no-inline",
    default=False,
    help="Process every page in the CLI process instead of queueing via Celery.",
)
@click.option("--max-pages", type=int, help="Stop an inline run after this many pages.")
@click.pass_context
def sync_start(ctx, source: str, dry_run: bool, inline: bool, max_pages: Optional[int]):
    """Start a sync run for SOURCE."""
    app = _load_app(ctx)
    controller = SyncRunController()
    run = _run_controller(controller.start, source, dry_run=dry_run, params={"triggered_by": "cli"})
    run_id = run.id

    if not inline:
        celery_app = _resolve_celery(app)
        try:
            async_result = celery_app.send_task("sync.pipeline.continue_run", kwargs={"run_id": run_id})
        except Exception as exc:  # pragma: no cover - broker unavailable
            _run_controller(controller.cancel, run_id)
            raise click.ClickException(f"Failed to enqueue sync run {run_id}: {exc}") from exc
        app.logger.info(
            "Sync run queued via CLI",
            extra={"sync_run_id": run_id, "sync_task_id": async_result.id, "sync_source": source},
        )
        click.echo(json.dumps({"sync_run_id": run_id, "task_id": async_result.id, "status": "queued"}))
        return

    outcome = _run_controller(controller.run_to_completion, run_id, max_pages=max_pages)
    _echo_outcome(outcome)


@sync_cli.command("continue")
@click.option("--run-id", required=True, help="ID of the sync run to advance.")
@click.option("--all-pages", is_flag=True, help="Keep going until the run is no longer active.")
@click.pass_context
def sync_continue(ctx, run_id: str, all_pages: bool):
    """Process the next page (or all remaining pages) of a run."""
    _load_app(ctx)
    controller = SyncRunController()
    if all_pages:
        outcome = _run_controller(controller.run_to_completion, run_id)
    else:
        outcome = _run_controller(controller.process_next_page, run_id)
    _echo_outcome(outcome)


@sync_cli.command("cancel")
@click.option("--run-id", required=True)
@click.pass_context
def sync_cancel(ctx, run_id: str):
    """Cancel an active run."""
    _load_app(ctx)
    run = _run_controller(SyncRunController().cancel, run_id)
    click.echo(f"Sync run {run.id} canceled.")


@sync_cli.command("pause")
@click.option("--run-id", required=True)
@click.pass_context
def sync_pause(ctx, run_id: str):
    """Pause an active run so it can be resumed from its checkpoint."""
    _load_app(ctx)
    run = _run_controller(SyncRunController().pause, run_id)
    click.echo(f"Sync run {run.id} paused.")


@sync_cli.command("resume")
@click.option("--run-id", required=True)
@click.pass_context
def sync_resume(ctx, run_id: str):
    """Resume a paused, canceled or failed run from its saved checkpoint."""
    _load_app(ctx)
    run = _run_controller(SyncRunController().resume, run_id)
    click.echo(f"Sync run {run.id} resumed ({run.status.value}).")


@sync_cli.command("sweep")
@click.option("--source", type=click.Choice([source.value for source in SyncSource]))
@click.option("--idle-minutes", type=click.IntRange(min=1), help="Override SYNC_STALE_TIMEOUT_MINUTES.")
@click.pass_context
def sync_sweep(ctx, source: Optional[str], idle_minutes: Optional[int]):
    """Fail active runs that stopped heartbeating."""
    _load_app(ctx)
    threshold = timedelta(minutes=idle_minutes) if idle_minutes else None
    cleaned = SyncRunController().sweep_stale(source=source, idle_threshold=threshold)
    click.echo(json.dumps({"cleaned_count": cleaned}))


@sync_cli.command("conflicts")
@click.option("--status", default="open", show_default=True, type=click.Choice(["open", "resolved", "all"]))
@click.option("--source")
@click.option("--limit", default=50, show_default=True, type=click.IntRange(min=1, max=500))
@click.pass_context
def sync_conflicts(ctx, status: str, source: Optional[str], limit: int):
    """List merge conflicts awaiting review."""
    _load_app(ctx)
    conflicts = SyncRunService().list_conflicts(
        status=None if status == "all" else status,
        source=source,
        limit=limit,
    )
    if not conflicts:
        click.echo("No merge conflicts found.")
        return
    for conflict in conflicts:
        payload = conflict.to_dict()
        click.echo(
            f"#{payload['id']} [{payload['status']}] {payload['source']}:{payload['external_id']} "
            f"reason={payload['reason']} candidates={payload['candidate_client_ids']}"
        )


@sync_cli.command("recover")
@click.option(
    "--hours",
    "hours_lookback",
    required=True,
    type=click.Choice(["24", "168", "360", "720", "1440"]),
    help="Lookback window for open invoices.",
)
@click.option("--fresh", is_flag=True, help="Discard saved progress and start over.")
@click.option("--state-file", type=click.Path(path_type=Path, dir_okay=False), help="Override RECOVERY_STATE_PATH.")
@click.option("--exclude-recent-hours", type=click.IntRange(min=1), help="Skip invoices handled this recently.")
@click.option("--remote-url", help="Drive a remote deployment's /sync/recover-revenue endpoint instead.")
@click.option("--admin-key", envvar="SYNC_ADMIN_API_KEY", help="Admin key for --remote-url.")
@click.pass_context
def sync_recover(
    ctx,
    hours_lookback: str,
    fresh: bool,
    state_file: Optional[Path],
    exclude_recent_hours: Optional[int],
    remote_url: Optional[str],
    admin_key: Optional[str],
):
    """Retry collection of open invoices in resumable batches."""
    app = _load_app(ctx)
    config = app.config

    if remote_url:
        if not admin_key:
            raise click.ClickException("--admin-key (or SYNC_ADMIN_API_KEY) is required with --remote-url.")
        fetch_page = RecoveryApiClient(remote_url, admin_key)
    else:
        try:
            service = RevenueRecoveryService()
        except SyncError as exc:
            raise click.ClickException(str(exc)) from exc

        def fetch_page(*, hours_lookback, cursor=None, sync_run_id=None, exclude_recent_hours=None):
            return service.recover_revenue(
                hours_lookback,
                cursor=cursor,
                sync_run_id=sync_run_id,
                exclude_recent_hours=exclude_recent_hours,
            )

    store = JsonFileJobStateStore(state_file or config["RECOVERY_STATE_PATH"], logger=app.logger)
    processor = RecoveryBatchProcessor(
        fetch_page,
        store,
        max_batches=config.get("RECOVERY_MAX_BATCHES", 500),
        inter_batch_delay=config.get("RECOVERY_INTER_BATCH_DELAY_SECONDS", 1.0),
        on_progress=lambda state: click.echo(
            f"batch {state.batches}: processed={state.processed} "
            f"recovered={state.recovered_amount} failed={state.failed_amount}",
            err=True,
        ),
        logger=app.logger,
    )
    try:
        state = processor.run(int(hours_lookback), fresh=fresh, exclude_recent_hours=exclude_recent_hours)
    except KeyboardInterrupt:
        processor.cancel()
        raise click.ClickException("Recovery interrupted; progress saved. Re-run to resume.")
    except SyncError as exc:
        raise click.ClickException(f"Recovery failed: {exc}. Progress saved; re-run to resume.") from exc

    if processor.served_from_cache:
        click.echo(
            f"Returning the completed result saved at {state.timestamp}; pass --fresh to run recovery again.",
            err=True,
        )

    summary = state.to_dict()
    for key in ("succeeded", "failed", "skipped"):
        summary[f"{key}_count"] = len(summary.pop(key))
    summary["cached"] = processor.served_from_cache
    click.echo(json.dumps(summary, indent=2, sort_keys=True))


@sync_cli.group(name="worker")
@click.pass_context
def worker_group(ctx):
    """Manage the sync background worker."""
    app = _load_app(ctx)
    state = app.extensions.get("sync", {})
    if not state.get("worker_enabled") and not app.config.get("SYNC_WORKER_ENABLED"):
        click.echo(
            "Warning: SYNC_WORKER_ENABLED is false. Commands will still run, "
            "but enable the flag to surface accurate health status.",
            err=True,
        )


@worker_group.command("run")
@click.option("--loglevel", default="info", show_default=True)
@click.option("--concurrency", type=int, help="Number of worker processes/threads.")
@click.option("--pool", type=str, help="Celery pool implementation (e.g., 'prefork', 'solo', 'threads').")
@click.option("--queues", default=DEFAULT_QUEUE_NAME, show_default=True, help="Comma-separated queue list.")
@click.option("--beat/--no-beat", default=True, help="Embed the beat scheduler for the stale-run sweep.")
@click.pass_context
def worker_run(ctx, loglevel: str, concurrency: Optional[int], pool: Optional[str], queues: str, beat: bool):
    """Start the Celery worker in the current process."""
    app = _load_app(ctx)
    celery_app = _resolve_celery(app)

    state = app.extensions.get("sync")
    if state is not None:
        state["worker_enabled"] = True

    argv = ["worker", "--loglevel", loglevel, "-Q", queues]
    if concurrency:
        argv.extend(["--concurrency", str(concurrency)])
    if pool:
        argv.extend(["--pool", pool])
    if beat:
        argv.append("--beat")

    pool_msg = f", pool: {pool}" if pool else ""
    click.echo(f"Starting sync worker (queues: {queues}, loglevel: {loglevel}{pool_msg})")
    try:
        celery_app.worker_main(argv=argv)
    except KeyboardInterrupt:
        click.echo("Worker shutdown requested. Exiting...")


@worker_group.command("ping")
@click.option("--timeout", default=10.0, show_default=True, help="Seconds to wait for a response.")
@click.pass_context
def worker_ping(ctx, timeout: float):
    """Validate worker connectivity by executing the heartbeat task."""
    app = _load_app(ctx)
    celery_app = _resolve_celery(app)
    task = celery_app.tasks.get("sync.healthcheck")
    if task is None:
        raise click.ClickException("Heartbeat task 'sync.healthcheck' is not registered.")

    result = task.apply_async()
    try:
        payload = result.get(timeout=timeout)
    except CeleryTimeoutError as exc:
        raise click.ClickException(f"Worker did not respond within {timeout}s") from exc
    except Exception as exc:  # pragma: no cover - surfacing unexpected errors
        raise click.ClickException(f"Worker ping failed: {exc}") from exc

    click.echo(json.dumps(payload, indent=2))
