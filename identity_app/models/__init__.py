# identity_app/models/__init__.py
"""
Database models package
"""

from .base import BaseModel, as_utc, db, utcnow
from .identity import Identity, IdentityRole
from .profiles import DEFAULT_MAX_STUDENTS, DegreeLevel, PIProfile, StudentProfile, StudentStatus
from .requests import RequestStatus, RequestType, StudentRequest
from .sync import COUNT_KEYS, ChangeLogEntry, SyncLock, SyncRun, SyncRunStatus, SyncType, empty_counts

__all__ = [
    "db",
    "BaseModel",
    "as_utc",
    "utcnow",
    "Identity",
    "IdentityRole",
    "PIProfile",
    "StudentProfile",
    "DegreeLevel",
    "StudentStatus",
    "DEFAULT_MAX_STUDENTS",
    "StudentRequest",
    "RequestType",
    "RequestStatus",
    "SyncRun",
    "SyncRunStatus",
    "SyncType",
    "SyncLock",
    "ChangeLogEntry",
    "COUNT_KEYS",
    "empty_counts",
]
