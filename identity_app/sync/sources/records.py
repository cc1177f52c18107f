"""
Directory record parsing.

Sources hand back raw attribute mappings keyed by LDAP attribute names
(``uid``, ``uidNumber``, ``mail``...). ``parse_directory_record`` turns one of
them into a typed ``DirectoryRecord`` or raises ``MalformedDirectoryRecord``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping

from identity_app.sync.errors import MalformedDirectoryRecord
from identity_app.sync.pipeline.ownership import SyncField


@dataclass(frozen=True)
class DirectoryRecord:
    """One principal as seen by the directory. ``None`` means "not supplied"."""

    external_id: str
    distinguished_name: str | None = None
    uid_number: int | None = None
    gid_number: int | None = None
    home_directory: str | None = None
    login_shell: str | None = None
    full_name: str | None = None
    email: str | None = None
    phone: str | None = None

    def field_values(self) -> dict[SyncField, Any]:
        """Return the supplied attributes keyed by ``SyncField``."""
        candidates = {
            SyncField.EXTERNAL_ID: self.external_id,
            SyncField.DISTINGUISHED_NAME: self.distinguished_name,
            SyncField.UID_NUMBER: self.uid_number,
            SyncField.GID_NUMBER: self.gid_number,
            SyncField.HOME_DIRECTORY: self.home_directory,
            SyncField.LOGIN_SHELL: self.login_shell,
            SyncField.FULL_NAME: self.full_name,
            SyncField.EMAIL: self.email,
            SyncField.PHONE: self.phone,
        }
        return {field: value for field, value in candidates.items() if value is not None}


def _first(value: Any) -> Any:
    if isinstance(value, (list, tuple)):
        return value[0] if value else None
    return value


def _text(raw: Mapping[str, Any], *keys: str) -> str | None:
    for key in keys:
        value = _first(raw.get(key))
        if isinstance(value, bytes):
            value = value.decode("utf-8", errors="replace")
        if value is None:
            continue
        text = str(value).strip()
        if text:
            return text
    return None


def _integer(raw: Mapping[str, Any], key: str, *, external_id: str, dn: str | None) -> int | None:
    value = _text(raw, key)
    if value is None:
        return None
    try:
        return int(value)
    except ValueError:
        raise MalformedDirectoryRecord(
            f"Attribute {key}='{value}' is not an integer.",
            external_id=external_id,
            dn=dn,
        ) from None


def parse_directory_record(raw: Mapping[str, Any], *, default_login_shell: str | None = None) -> DirectoryRecord:
    dn = _text(raw, "dn", "distinguishedName")
    external_id = _text(raw, "uid")
    if external_id is None:
        raise MalformedDirectoryRecord("Directory record is missing its uid.", dn=dn)

    return DirectoryRecord(
        external_id=external_id,
        distinguished_name=dn,
        uid_number=_integer(raw, "uidNumber", external_id=external_id, dn=dn),
        gid_number=_integer(raw, "gidNumber", external_id=external_id, dn=dn),
        home_directory=_text(raw, "homeDirectory"),
        login_shell=_text(raw, "loginShell") or (default_login_shell or None),
        full_name=_text(raw, "displayName", "cn"),
        email=_text(raw, "mail"),
        phone=_text(raw, "telephoneNumber"),
    )


__all__ = ["DirectoryRecord", "parse_directory_record"]
