"""Directory sync pipeline helpers."""

from __future__ import annotations

from .cascade import CascadeManager, DeactivationSummary, DeletionSummary, unit_of_work
from .changelog import record_changes, serialize_change_value
from .coordinator import SYNC_LOCK_NAME, RunTally, SyncCoordinator
from .lifecycle import LifecycleAction, LifecycleOutcome, reconcile_record
from .merge import MergePlan, apply_merge, merge
from .ownership import (
    DIRECTORY_OWNED_FIELDS,
    LOCALLY_OWNED_FIELDS,
    OWNERSHIP_TABLE,
    FieldKind,
    FieldPolicy,
    FieldScope,
    Ownership,
    SyncField,
    is_directory_owned,
    policy_for,
)
from .protection import compute_protected_fields, is_locally_set
from .roles import BatchAssignResult, RoleChangeResult, RoleService, RoleValidation
from .run_service import (
    ChangeFilters,
    ChangeHistoryResult,
    RunFilters,
    RunListResult,
    RunPurgeSummary,
    RunStats,
    SyncRunService,
    SyncRunSummary,
)

__all__ = [
    "BatchAssignResult",
    "CascadeManager",
    "ChangeFilters",
    "ChangeHistoryResult",
    "DIRECTORY_OWNED_FIELDS",
    "DeactivationSummary",
    "DeletionSummary",
    "FieldKind",
    "FieldPolicy",
    "FieldScope",
    "LOCALLY_OWNED_FIELDS",
    "LifecycleAction",
    "LifecycleOutcome",
    "MergePlan",
    "OWNERSHIP_TABLE",
    "Ownership",
    "RoleChangeResult",
    "RoleService",
    "RoleValidation",
    "RunFilters",
    "RunListResult",
    "RunPurgeSummary",
    "RunStats",
    "RunTally",
    "SYNC_LOCK_NAME",
    "SyncCoordinator",
    "SyncField",
    "SyncRunService",
    "SyncRunSummary",
    "apply_merge",
    "compute_protected_fields",
    "is_directory_owned",
    "is_locally_set",
    "merge",
    "policy_for",
    "reconcile_record",
    "record_changes",
    "serialize_change_value",
    "unit_of_work",
]
