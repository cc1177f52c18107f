"""
Directory sync feature package.

Registers the ``flask sync`` CLI and the Celery worker when ``SYNC_ENABLED``
is set, and records the resolved state in ``app.extensions['identity_sync']``.
"""

from __future__ import annotations

from typing import Any

from flask import Flask

from identity_app.utils.sync import get_orphan_policy, is_sync_enabled, is_worker_enabled

from .celery_app import SYNC_EXTENSION_KEY, ensure_celery_app, get_celery_app
from .cli import get_disabled_sync_group, sync_cli
from .errors import (
    CascadeError,
    DirectorySourceError,
    IdentityNotFound,
    MalformedDirectoryRecord,
    RoleAssignmentError,
    SyncAlreadyRunning,
    SyncDispatchError,
)
from .pipeline.coordinator import SyncCoordinator
from .pipeline.run_service import RunFilters, SyncRunService
from .registry import missing_settings, resolve_source

__all__ = [
    "init_sync",
    "SYNC_EXTENSION_KEY",
    "get_celery_app",
    "SyncCoordinator",
    "SyncRunService",
    "RunFilters",
    "CascadeError",
    "DirectorySourceError",
    "IdentityNotFound",
    "MalformedDirectoryRecord",
    "RoleAssignmentError",
    "SyncAlreadyRunning",
    "SyncDispatchError",
]


def _ensure_extension_state(app: Flask) -> dict[str, Any]:
    return app.extensions.setdefault(
        SYNC_EXTENSION_KEY,
        {
            "enabled": False,
            "worker_enabled": False,
            "source": None,
            "orphan_policy": "detach",
            "celery_app": None,
        },
    )


def _set_cli(app: Flask, enabled: bool) -> None:
    command_name = sync_cli.name
    if command_name in app.cli.commands:
        app.cli.commands.pop(command_name)
    app.cli.add_command(sync_cli if enabled else get_disabled_sync_group())


def init_sync(app: Flask) -> None:
    """Wire directory sync into ``app`` according to its configuration."""
    enabled = is_sync_enabled(app)
    state = _ensure_extension_state(app)
    state.update(
        {
            "enabled": enabled,
            "worker_enabled": is_worker_enabled(app),
            "orphan_policy": get_orphan_policy(app),
        }
    )

    if not enabled:
        state["source"] = None
        _set_cli(app, enabled=False)
        app.logger.info("Directory sync disabled via SYNC_ENABLED flag; skipping registration.")
        return

    descriptor = resolve_source(str(app.config.get("SYNC_SOURCE") or "ldap"))
    state["source"] = descriptor.name
    missing = missing_settings(descriptor, app.config)
    if missing:
        app.logger.warning(
            "Directory source '%s' is missing settings: %s",
            descriptor.name,
            ", ".join(missing),
            extra={"sync_source": descriptor.name, "sync_missing_settings": list(missing)},
        )

    ensure_celery_app(app, state)
    _set_cli(app, enabled=True)
    app.logger.info(
        "Directory sync enabled with source: %s",
        descriptor.name,
        extra={"sync_worker_enabled": state["worker_enabled"], "sync_orphan_policy": state["orphan_policy"]},
    )
