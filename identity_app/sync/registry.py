"""
Directory source registry.

Sources register metadata here so configuration validation can happen before
any connection to the directory is attempted.
"""

from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Tuple

from identity_app.sync.sources import DirectorySnapshotSource, FileDirectorySource, LDAPDirectorySource


@dataclass(frozen=True)
class SourceDescriptor:
    """Metadata describing a directory snapshot source."""

    name: str
    title: str
    factory: Callable[[Mapping[str, Any]], DirectorySnapshotSource]
    required_settings: Tuple[str, ...] = ()
    summary: str | None = None


def get_source_registry() -> Mapping[str, SourceDescriptor]:
    return OrderedDict(
        (
            (
                "ldap",
                SourceDescriptor(
                    name="ldap",
                    title="LDAP (posixAccount)",
                    factory=LDAPDirectorySource.from_config,
                    required_settings=("LDAP_SERVER_URL", "LDAP_USER_BASE_DN"),
                    summary="Search posixAccount entries with ldap3.",
                ),
            ),
            (
                "file",
                SourceDescriptor(
                    name="file",
                    title="Snapshot file (JSON/CSV)",
                    factory=FileDirectorySource.from_config,
                    required_settings=("SYNC_FILE_PATH",),
                    summary="Replay a captured directory export.",
                ),
            ),
        )
    )


def resolve_source(name: str, registry: Mapping[str, SourceDescriptor] | None = None) -> SourceDescriptor:
    registry = registry or get_source_registry()
    normalized = (name or "").strip().lower()
    descriptor = registry.get(normalized)
    if descriptor is None:
        raise ValueError(
            f"Unknown directory source '{name}'. Supported sources: " + ", ".join(sorted(registry)) + "."
        )
    return descriptor


def missing_settings(descriptor: SourceDescriptor, config: Mapping[str, Any]) -> Tuple[str, ...]:
    return tuple(key for key in descriptor.required_settings if not config.get(key))


def create_directory_source(config: Mapping[str, Any]) -> DirectorySnapshotSource:
    """Instantiate the source named by ``SYNC_SOURCE``."""
    descriptor = resolve_source(str(config.get("SYNC_SOURCE") or "ldap"))
    return descriptor.factory(config)
