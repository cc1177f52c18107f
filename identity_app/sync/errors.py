"""Exception taxonomy shared by the directory sync pipeline."""

from __future__ import annotations


class DirectorySourceError(RuntimeError):
    """The directory snapshot could not be fetched; the run fails without touching entities."""


class MalformedDirectoryRecord(ValueError):
    """A single directory record cannot be reconciled (missing uid, unparsable numbers)."""

    def __init__(self, message: str, *, external_id: str | None = None, dn: str | None = None) -> None:
        super().__init__(message)
        self.external_id = external_id
        self.dn = dn


class SyncAlreadyRunning(RuntimeError):
    """Another sync run holds the coordinator lock."""

    def __init__(self, active_run_id: int | None) -> None:
        detail = f" (run {active_run_id})" if active_run_id is not None else ""
        super().__init__(f"A directory sync is already running{detail}.")
        self.active_run_id = active_run_id


class SyncDispatchError(RuntimeError):
    """The run was reserved but could not be handed to the worker."""


class CascadeError(RuntimeError):
    """A unit of work failed and was rolled back; no partial state was kept."""


class IdentityNotFound(CascadeError):
    def __init__(self, identity_ref: object) -> None:
        super().__init__(f"Identity {identity_ref} not found.")
        self.identity_ref = identity_ref


class RoleAssignmentError(CascadeError):
    """Rejected role assignment/unassignment (invalid transition or profile data)."""


__all__ = [
    "CascadeError",
    "DirectorySourceError",
    "IdentityNotFound",
    "MalformedDirectoryRecord",
    "RoleAssignmentError",
    "SyncAlreadyRunning",
    "SyncDispatchError",
]
