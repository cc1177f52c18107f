from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

from identity_app.models import SyncRun, SyncRunStatus, SyncType, db, empty_counts
from identity_app.sync import init_sync
from identity_app.sync.errors import DirectorySourceError
from identity_app.sync.pipeline.coordinator import SyncCoordinator
from identity_app.sync.sources.base import DirectorySnapshotSource


class StaticSource(DirectorySnapshotSource):
    """In-memory snapshot source; ``fail`` simulates an unreachable directory."""

    name = "static"

    def __init__(self, entries=None, *, changed=None, fail: bool = False) -> None:
        self.entries = list(entries or [])
        self.changed = changed
        self.fail = fail
        self.since_calls: list[datetime] = []

    def list_all(self):
        if self.fail:
            raise DirectorySourceError("directory unreachable")
        return list(self.entries)

    def list_changed_since(self, since):
        if self.fail:
            raise DirectorySourceError("directory unreachable")
        self.since_calls.append(since)
        return list(self.changed if self.changed is not None else self.entries)


def directory_entry(uid: str, **attributes: Any) -> dict[str, Any]:
    """Raw LDAP-style attribute mapping for ``uid``."""
    number = sum(ord(char) for char in uid)
    entry = {
        "dn": f"uid={uid},ou=people,dc=example,dc=org",
        "uid": [uid],
        "uidNumber": str(20000 + number),
        "gidNumber": "500",
        "homeDirectory": f"/home/{uid}",
        "loginShell": "/bin/bash",
        "cn": [uid.title()],
    }
    entry.update(attributes)
    return {key: value for key, value in entry.items() if value is not None}


@pytest.fixture
def sync_app(app):
    app.config.update(
        {
            "SYNC_ENABLED": True,
            "SYNC_WORKER_ENABLED": False,
            "CELERY_CONFIG": {"task_always_eager": True, "task_eager_propagates": True},
        }
    )
    app.extensions.pop("identity_sync", None)
    init_sync(app)
    yield app


@pytest.fixture
def make_coordinator(app):
    def _factory(source: DirectorySnapshotSource | None = None, **config_overrides) -> SyncCoordinator:
        config = dict(app.config)
        config.update(config_overrides)
        return SyncCoordinator(config=config, source=source)

    return _factory


@pytest.fixture
def run_factory(app):
    def _factory(
        *,
        sync_type: SyncType = SyncType.FULL,
        status: SyncRunStatus = SyncRunStatus.COMPLETED,
        started_offset_minutes: int = 0,
        duration_seconds: int = 30,
        counts: dict[str, int] | None = None,
        errors: list[dict[str, Any]] | None = None,
    ) -> SyncRun:
        started_at = datetime.now(timezone.utc).replace(microsecond=0) - timedelta(minutes=started_offset_minutes)
        finished_at = None if status.is_active else started_at + timedelta(seconds=duration_seconds)
        run = SyncRun(
            sync_type=sync_type,
            status=status,
            source="static",
            triggered_by="tests",
            started_at=started_at,
            finished_at=finished_at,
            counts_json={**empty_counts(), **(counts or {})},
            errors_json=list(errors or []),
        )
        db.session.add(run)
        db.session.commit()
        return run

    return _factory


@pytest.fixture
def static_source():
    """Factory for ``StaticSource`` snapshots."""
    return StaticSource


@pytest.fixture
def entry():
    return directory_entry
