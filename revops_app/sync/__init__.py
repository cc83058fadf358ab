"""
Sync feature package.

Provides conditional blueprint and CLI registration along with source registry
validation while remaining lightweight when sync is disabled.
"""

from __future__ import annotations

from typing import Any, Iterable, Tuple

from flask import Flask

from config.merge_policy import DEFAULT_POLICY, MergePolicyConfigError, load_policy
from revops_app.utils.sync import get_sync_sources, is_sync_enabled, is_worker_enabled

from .celery_app import ensure_celery_app, get_celery_app
from .cli import get_disabled_sync_group, sync_cli
from .pipeline.controller import PageOutcome, SyncRunController
from .pipeline.resolver import IdentityResolver, unify_identity
from .pipeline.run_service import RunFilters, SyncRunService
from .registry import SourceDescriptor, get_source_registry, missing_config, resolve_sources
from .views import sync_blueprint

SYNC_EXTENSION_KEY = "sync"

__all__ = [
    "init_sync",
    "SYNC_EXTENSION_KEY",
    "get_celery_app",
    "IdentityResolver",
    "PageOutcome",
    "RunFilters",
    "SyncRunController",
    "SyncRunService",
    "unify_identity",
]


def _ensure_extension_state(app: Flask) -> dict[str, Any]:
    return app.extensions.setdefault(
        SYNC_EXTENSION_KEY,
        {
            "enabled": False,
            "configured_sources": (),
            "active_sources": (),
            "missing_config": {},
            "worker_enabled": False,
            "celery_app": None,
            "merge_policy": DEFAULT_POLICY,
        },
    )


def _set_cli(app: Flask, enabled: bool) -> None:
    """Register the appropriate CLI group based on flag state."""
    # Avoid duplicate registrations when running tests
    command_name = sync_cli.name
    if command_name in app.cli.commands:
        app.cli.commands.pop(command_name)

    if enabled:
        app.cli.add_command(sync_cli)
    else:
        app.cli.add_command(get_disabled_sync_group())


def init_sync(app: Flask) -> None:
    """
    Conditionally mount the sync blueprint, CLI and worker based on configuration.

    Records state inside ``app.extensions['sync']`` for reuse by views and CLI.
    """
    enabled = is_sync_enabled(app)
    configured_sources: Tuple[str, ...] = get_sync_sources(app)

    state = _ensure_extension_state(app)
    state.update(
        {
            "enabled": enabled,
            "configured_sources": configured_sources,
            "worker_enabled": is_worker_enabled(app),
        }
    )

    if not enabled:
        state["active_sources"] = ()
        state["missing_config"] = {}
        _set_cli(app, enabled=False)
        app.logger.info("Sync disabled via SYNC_ENABLED flag; skipping registration.")
        return

    active: Iterable[SourceDescriptor] = resolve_sources(configured_sources, get_source_registry())
    state["active_sources"] = tuple(active)
    state["missing_config"] = {}
    for descriptor in state["active_sources"]:
        missing = missing_config(descriptor, app.config)
        if missing:
            state["missing_config"][descriptor.name] = list(missing)
            app.logger.warning(
                "Sync source '%s' is missing configuration: %s",
                descriptor.name,
                ", ".join(missing),
                extra={"sync_source": descriptor.name, "sync_missing_config": list(missing)},
            )

    try:
        state["merge_policy"] = load_policy(app.config)
    except MergePolicyConfigError:
        app.logger.error(
            "Merge policy override could not be loaded",
            extra={"sync_merge_policy_path": app.config.get("SYNC_MERGE_POLICY_PATH")},
            exc_info=True,
        )
        raise
    if state["merge_policy"] is not DEFAULT_POLICY:
        app.logger.info("Using merge policy override '%s'", state["merge_policy"].key)

    ensure_celery_app(app, state)

    if sync_blueprint.name not in app.blueprints and not getattr(app, "_got_first_request", False):
        app.register_blueprint(sync_blueprint)
    elif sync_blueprint.name not in app.blueprints:
        app.logger.warning("Sync blueprint registration skipped because the app has already handled its first request.")
    _set_cli(app, enabled=True)

    source_names = ", ".join(source.name for source in state["active_sources"]) or "none"
    app.logger.info("Sync enabled with sources: %s", source_names)
