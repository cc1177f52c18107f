"""
LDAP directory source built on ldap3.

Searches posixAccount entries under the configured base DN. Full snapshots use
the configured user filter; incremental snapshots AND it with a
``modifyTimestamp>=`` clause, selective ones with an OR of ``uid``/``gidNumber``
matches. Results are paged when ``page_size`` is positive.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Mapping, Sequence

from ldap3 import SUBTREE, Connection, Server
from ldap3.core.exceptions import LDAPException
from ldap3.utils.conv import escape_filter_chars

from identity_app.sync.errors import DirectorySourceError
from identity_app.sync.sources.base import DirectorySnapshotSource, RawDirectoryEntry

logger = logging.getLogger(__name__)

USER_ATTRIBUTES = (
    "uid",
    "uidNumber",
    "gidNumber",
    "homeDirectory",
    "loginShell",
    "cn",
    "displayName",
    "mail",
    "telephoneNumber",
    "modifyTimestamp",
)
PAGED_RESULTS_OID = "1.2.840.113556.1.4.319"
SUCCESS_RESULT_CODES = {0}


def format_generalized_time(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y%m%d%H%M%SZ")


def build_changed_since_filter(user_filter: str, since: datetime) -> str:
    stamp = escape_filter_chars(format_generalized_time(since))
    return f"(&{user_filter}(modifyTimestamp>={stamp}))"


def build_selection_filter(user_filter: str, *, external_ids: Sequence[str] = (), gid_number: int | None = None) -> str:
    clauses = [f"(uid={escape_filter_chars(external_id)})" for external_id in external_ids]
    if gid_number is not None:
        clauses.append(f"(gidNumber={int(gid_number)})")
    if not clauses:
        raise ValueError("A selection needs at least one external id or a gid number.")
    return f"(&{user_filter}(|{''.join(clauses)}))"


class LDAPDirectorySource(DirectorySnapshotSource):
    name = "ldap"

    def __init__(
        self,
        *,
        server_url: str,
        base_dn: str,
        bind_dn: str | None = None,
        bind_password: str | None = None,
        user_filter: str = "(objectClass=posixAccount)",
        use_ssl: bool = False,
        timeout: int = 30,
        page_size: int = 500,
        connection_factory: Callable[[], Connection] | None = None,
    ) -> None:
        self.server_url = server_url
        self.base_dn = base_dn
        self.bind_dn = bind_dn
        self._bind_password = bind_password
        self.user_filter = user_filter
        self.use_ssl = use_ssl
        self.timeout = timeout
        self.page_size = page_size
        self._connection_factory = connection_factory

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "LDAPDirectorySource":
        return cls(
            server_url=config.get("LDAP_SERVER_URL") or "ldap://localhost:389",
            base_dn=config.get("LDAP_USER_BASE_DN") or "",
            bind_dn=config.get("LDAP_BIND_DN"),
            bind_password=config.get("LDAP_BIND_PASSWORD"),
            user_filter=config.get("LDAP_USER_FILTER") or "(objectClass=posixAccount)",
            use_ssl=bool(config.get("LDAP_USE_SSL", False)),
            timeout=int(config.get("LDAP_TIMEOUT_SECONDS", 30)),
            page_size=int(config.get("LDAP_PAGE_SIZE", 500)),
        )

    def list_all(self) -> Sequence[RawDirectoryEntry]:
        return self._search(self.user_filter)

    def list_changed_since(self, since: datetime) -> Sequence[RawDirectoryEntry]:
        return self._search(build_changed_since_filter(self.user_filter, since))

    def list_matching(
        self,
        *,
        external_ids: Sequence[str] = (),
        gid_number: int | None = None,
    ) -> Sequence[RawDirectoryEntry]:
        return self._search(
            build_selection_filter(self.user_filter, external_ids=external_ids, gid_number=gid_number)
        )

    def describe(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "server": self.server_url,
            "base_dn": self.base_dn,
            "user_filter": self.user_filter,
            "use_ssl": self.use_ssl,
            "page_size": self.page_size,
        }

    def _connect(self) -> Connection:
        if self._connection_factory is not None:
            return self._connection_factory()
        server = Server(self.server_url, use_ssl=self.use_ssl, connect_timeout=self.timeout)
        return Connection(
            server,
            user=self.bind_dn,
            password=self._bind_password,
            auto_bind=True,
            receive_timeout=self.timeout,
            read_only=True,
        )

    def _search(self, search_filter: str) -> list[RawDirectoryEntry]:
        try:
            conn = self._connect()
        except LDAPException as exc:
            raise DirectorySourceError(f"Unable to bind to {self.server_url}: {exc}") from exc

        entries: list[RawDirectoryEntry] = []
        try:
            cookie: bytes | None = None
            while True:
                search_kwargs: dict[str, Any] = {
                    "search_base": self.base_dn,
                    "search_filter": search_filter,
                    "search_scope": SUBTREE,
                    "attributes": list(USER_ATTRIBUTES),
                }
                if self.page_size:
                    search_kwargs["paged_size"] = self.page_size
                    search_kwargs["paged_cookie"] = cookie
                conn.search(**search_kwargs)

                result_code = (conn.result or {}).get("result", 0)
                if result_code not in SUCCESS_RESULT_CODES:
                    description = (conn.result or {}).get("description", "unknown")
                    raise DirectorySourceError(
                        f"LDAP search under {self.base_dn} failed with code {result_code} ({description})."
                    )

                entries.extend(_entry_from_response(item) for item in conn.response or () if _is_entry(item))
                cookie = _paged_cookie(conn) if self.page_size else None
                if not cookie:
                    break
        except LDAPException as exc:
            raise DirectorySourceError(f"LDAP search under {self.base_dn} failed: {exc}") from exc
        finally:
            try:
                conn.unbind()
            except LDAPException:
                logger.debug("LDAP unbind failed", exc_info=True)

        logger.info(
            "LDAP snapshot fetched",
            extra={"sync_source": self.name, "sync_entries": len(entries), "sync_filter": search_filter},
        )
        return entries


def _is_entry(item: Mapping[str, Any]) -> bool:
    return item.get("type") == "searchResEntry"


def _entry_from_response(item: Mapping[str, Any]) -> dict[str, Any]:
    entry = dict(item.get("attributes") or {})
    entry["dn"] = item.get("dn")
    return entry


def _paged_cookie(conn: Connection) -> bytes | None:
    controls = (conn.result or {}).get("controls") or {}
    return controls.get(PAGED_RESULTS_OID, {}).get("value", {}).get("cookie") or None
