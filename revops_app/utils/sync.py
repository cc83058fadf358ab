"""
Sync settings accessors shared by the controller, worker and CLI.
"""

from __future__ import annotations

from typing import Any, Iterable, Mapping, Tuple

from flask import current_app

DEFAULT_STALE_TIMEOUT_MINUTES = 30


def _get_config(app=None) -> Mapping[str, Any]:
    if app is not None:
        return app.config
    return current_app.config


def config_int(config: Mapping[str, Any], key: str, default: int, *, minimum: int = 1) -> int:
    """Read a positive integer setting, falling back to ``default`` on blanks or junk."""
    try:
        value = int(config.get(key) or default)
    except (TypeError, ValueError):
        return default
    return value if value >= minimum else default


def is_sync_enabled(app=None) -> bool:
    return bool(_get_config(app).get("SYNC_ENABLED", False))


def is_worker_enabled(app=None) -> bool:
    return bool(_get_config(app).get("SYNC_WORKER_ENABLED", False))


def get_sync_sources(app=None) -> Tuple[str, ...]:
    """Configured source names, lowercased, order preserved, duplicates dropped."""
    sources: Iterable[str] = _get_config(app).get("SYNC_SOURCES", ())
    seen: dict[str, None] = {}
    for source in sources:
        name = str(source).strip().lower()
        if name:
            seen.setdefault(name, None)
    return tuple(seen)


def stale_timeout_minutes(app=None) -> int:
    return config_int(_get_config(app), "SYNC_STALE_TIMEOUT_MINUTES", DEFAULT_STALE_TIMEOUT_MINUTES)
