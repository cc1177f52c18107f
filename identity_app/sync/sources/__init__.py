"""Directory snapshot sources and record parsing."""

from .base import DirectorySnapshotSource, RawDirectoryEntry
from .file import FileDirectorySource, parse_directory_timestamp
from .ldap import LDAPDirectorySource
from .records import DirectoryRecord, parse_directory_record

__all__ = [
    "DirectoryRecord",
    "DirectorySnapshotSource",
    "FileDirectorySource",
    "LDAPDirectorySource",
    "RawDirectoryEntry",
    "parse_directory_record",
    "parse_directory_timestamp",
]
