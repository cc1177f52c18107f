"""
Flat-file directory source.

Reads a JSON array (or ``{"entries": [...]}``) or a CSV export whose header
row uses LDAP attribute names. Useful for offline environments and for
replaying a captured directory snapshot.
"""

from __future__ import annotations

import csv
import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Mapping, Sequence

from identity_app.sync.errors import DirectorySourceError
from identity_app.sync.sources.base import DirectorySnapshotSource, RawDirectoryEntry

MODIFIED_ATTRIBUTE = "modifyTimestamp"


def _sanitize_header(header: str | None) -> str:
    token = (header or "").strip()
    return token.lstrip("\ufeff")


def parse_directory_timestamp(value: Any) -> datetime | None:
    """Parse LDAP generalized time (``20240101120000Z``) or ISO-8601 text."""
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    text = str(value).strip()
    for fmt in ("%Y%m%d%H%M%SZ", "%Y%m%d%H%M%S.%fZ"):
        try:
            return datetime.strptime(text, fmt).replace(tzinfo=timezone.utc)
        except ValueError:
            continue
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


class FileDirectorySource(DirectorySnapshotSource):
    name = "file"

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "FileDirectorySource":
        path = config.get("SYNC_FILE_PATH")
        if not path:
            raise DirectorySourceError("SYNC_FILE_PATH is not configured for the file directory source.")
        return cls(path)

    def list_all(self) -> Sequence[RawDirectoryEntry]:
        return self._read()

    def list_changed_since(self, since: datetime) -> Sequence[RawDirectoryEntry]:
        threshold = parse_directory_timestamp(since)
        changed: list[RawDirectoryEntry] = []
        for entry in self._read():
            modified = parse_directory_timestamp(entry.get(MODIFIED_ATTRIBUTE))
            # Entries without a timestamp cannot be ruled out.
            if modified is None or threshold is None or modified >= threshold:
                changed.append(entry)
        return changed

    def describe(self) -> dict[str, Any]:
        return {"name": self.name, "path": str(self.path)}

    def _read(self) -> list[RawDirectoryEntry]:
        if not self.path.exists():
            raise DirectorySourceError(f"Directory snapshot file {self.path} does not exist.")
        try:
            text = self.path.read_text(encoding="utf-8")
        except OSError as exc:
            raise DirectorySourceError(f"Unable to read directory snapshot {self.path}: {exc}") from exc

        if self.path.suffix.lower() == ".csv":
            return self._read_csv(text)
        return self._read_json(text)

    def _read_json(self, text: str) -> list[RawDirectoryEntry]:
        try:
            data = json.loads(text)
        except json.JSONDecodeError as exc:
            raise DirectorySourceError(f"Directory snapshot {self.path} is not valid JSON: {exc}") from exc
        if isinstance(data, Mapping):
            data = data.get("entries")
        if not isinstance(data, list):
            raise DirectorySourceError(f"Directory snapshot {self.path} must contain a list of entries.")
        entries: list[RawDirectoryEntry] = []
        for position, item in enumerate(data, start=1):
            # Non-object items are kept so the record parser reports them per entry.
            entries.append(dict(item) if isinstance(item, Mapping) else {"_position": position})
        return entries

    def _read_csv(self, text: str) -> list[RawDirectoryEntry]:
        reader = csv.DictReader(text.splitlines())
        if reader.fieldnames is None:
            raise DirectorySourceError(f"Directory snapshot {self.path} has no header row.")
        reader.fieldnames = [_sanitize_header(header) for header in reader.fieldnames]
        entries: list[RawDirectoryEntry] = []
        for row in reader:
            if all(value in (None, "") or not str(value).strip() for value in row.values()):
                continue
            entries.append({key: value for key, value in row.items() if key})
        return entries
