"""Directory snapshot source interface."""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Iterable, Mapping, Sequence

RawDirectoryEntry = Mapping[str, Any]


def _attribute_texts(entry: RawDirectoryEntry, key: str) -> set[str]:
    value = entry.get(key)
    values = value if isinstance(value, (list, tuple)) else [value]
    texts = set()
    for item in values:
        if isinstance(item, bytes):
            item = item.decode("utf-8", errors="replace")
        if item is not None and str(item).strip():
            texts.add(str(item).strip())
    return texts


def entry_matches_selection(
    entry: RawDirectoryEntry,
    *,
    external_ids: Iterable[str] = (),
    gid_number: int | None = None,
) -> bool:
    """True when ``entry`` carries one of ``external_ids`` or belongs to ``gid_number``."""
    wanted = set(external_ids)
    if wanted and _attribute_texts(entry, "uid") & wanted:
        return True
    return gid_number is not None and str(gid_number) in _attribute_texts(entry, "gidNumber")


class DirectorySnapshotSource(ABC):
    """
    Yields the directory's view of every principal.

    Implementations return raw attribute mappings; parsing happens per record
    in the coordinator so a single bad entry never fails the whole fetch. Any
    transport failure must surface as ``DirectorySourceError``.
    """

    name: str = "directory"

    @abstractmethod
    def list_all(self) -> Sequence[RawDirectoryEntry]:
        """Return the full snapshot."""

    @abstractmethod
    def list_changed_since(self, since: datetime) -> Sequence[RawDirectoryEntry]:
        """Return entries modified at or after ``since``."""

    def list_matching(
        self,
        *,
        external_ids: Sequence[str] = (),
        gid_number: int | None = None,
    ) -> Sequence[RawDirectoryEntry]:
        """
        Return entries whose uid is in ``external_ids`` or whose gid is ``gid_number``.

        The default filters the full snapshot; sources that can ask the
        directory for a subset override it.
        """
        return [
            entry
            for entry in self.list_all()
            if entry_matches_selection(entry, external_ids=external_ids, gid_number=gid_number)
        ]

    def describe(self) -> dict[str, Any]:
        return {"name": self.name}
