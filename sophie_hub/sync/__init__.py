"""
Sync engine feature package.

Mounts the sync blueprint and CLI, builds the Celery app when the worker is
enabled, and keeps shared state (settings cache, authority profile) inside
``app.extensions['sync']``.
"""

from __future__ import annotations

from flask import Flask

from config.authority import AuthorityConfigError, load_profile
from sophie_hub.cache import CacheService

SYNC_EXTENSION_KEY = "sync"

# Submodules import sophie_hub.partners, which imports sync helpers back;
# the blueprint and CLI are pulled in lazily from init_sync.
__all__ = ["init_sync", "SYNC_EXTENSION_KEY"]


def _ensure_extension_state(app: Flask) -> dict:
    state = app.extensions.setdefault(SYNC_EXTENSION_KEY, {})
    state.setdefault("enabled", False)
    state.setdefault("worker_enabled", False)
    state.setdefault("celery_app", None)
    state.setdefault("authority_profile", None)
    if state.get("cache") is None:
        state["cache"] = CacheService(ttl=app.config.get("SETTINGS_CACHE_TTL_SECONDS", 300))
    return state


def _set_cli(app: Flask, enabled: bool) -> None:
    """Register the appropriate CLI group based on flag state."""
    from .cli import get_disabled_sync_group, sync_cli

    command_name = sync_cli.name
    if command_name in app.cli.commands:
        app.cli.commands.pop(command_name)

    if enabled:
        app.cli.add_command(sync_cli)
    else:
        app.cli.add_command(get_disabled_sync_group())


def init_sync(app: Flask) -> None:
    """
    Conditionally mount the sync blueprint and CLI based on ``SYNC_ENABLED``.

    The authority profile is loaded once here; a broken override file fails
    app start-up rather than the first sync.
    """
    from .celery_app import ensure_celery_app
    from .cli import is_sync_enabled
    from .views import sync_blueprint

    enabled = is_sync_enabled(app)
    state = _ensure_extension_state(app)
    worker_enabled = bool(app.config.get("SYNC_WORKER_ENABLED", False))
    state.update({"enabled": enabled, "worker_enabled": worker_enabled})

    if not enabled:
        _set_cli(app, enabled=False)
        app.logger.info("Sync disabled via SYNC_ENABLED flag; skipping registration.")
        return

    try:
        state["authority_profile"] = load_profile(app.config)
    except AuthorityConfigError:
        app.logger.error(
            "Authority profile could not be loaded",
            extra={"sync_authority_profile_path": app.config.get("SYNC_AUTHORITY_PROFILE_PATH")},
        )
        raise

    if worker_enabled:
        ensure_celery_app(app, state)

    if sync_blueprint.name not in app.blueprints and not getattr(app, "_got_first_request", False):
        app.register_blueprint(sync_blueprint)
    elif sync_blueprint.name not in app.blueprints:
        app.logger.warning("Sync blueprint registration skipped because the app has already handled its first request.")
    _set_cli(app, enabled=True)

    app.logger.info(
        "Sync enabled (profile=%s, worker=%s)",
        state["authority_profile"].key,
        "on" if worker_enabled else "off",
    )
