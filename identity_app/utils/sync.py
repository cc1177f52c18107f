"""
Helpers for reading directory sync flags from the Flask config.
"""

from __future__ import annotations

from flask import current_app


def _get_config(app=None):
    if app is not None:
        return app.config
    return current_app.config


def is_sync_enabled(app=None) -> bool:
    return bool(_get_config(app).get("SYNC_ENABLED", False))


def is_worker_enabled(app=None) -> bool:
    return bool(_get_config(app).get("SYNC_WORKER_ENABLED", False))


def get_orphan_policy(app=None) -> str:
    """Return ``detach`` or ``unassign`` (students left without a PI)."""
    return str(_get_config(app).get("SYNC_ORPHANED_STUDENT_POLICY") or "detach")
