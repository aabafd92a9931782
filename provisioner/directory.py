from collections.abc import Mapping
from dataclasses import dataclass, field
import logging
from typing import Protocol

from ldap3 import MODIFY_ADD, MODIFY_REPLACE, SUBTREE, Connection, Server
from ldap3.core.exceptions import LDAPException
from ldap3.utils.conv import escape_filter_chars
from ldap3.utils.dn import escape_rdn

from provisioner.errors import DirectoryOperationFailure


logger = logging.getLogger(__name__)

USER_OBJECT_CLASSES = ["top", "person", "organizationalPerson", "user"]
GROUP_OBJECT_CLASSES = ["top", "group"]
ACCOUNT_ENABLED = 512
ACCOUNT_DISABLED = 514
GLOBAL_SECURITY_GROUP = -2147483646


@dataclass(frozen=True)
class DirectoryEntry:
    dn: str
    login: str
    attributes: Mapping[str, str] = field(default_factory=dict)


@dataclass
class DirectoryGroup:
    dn: str
    name: str
    members: set[str] = field(default_factory=set)


class DirectoryService(Protocol):
    def find_by_unique_id(self, login: str) -> DirectoryEntry | None: ...

    def create_entry(
        self,
        attributes: Mapping[str, str],
        login: str,
        secret: str,
        enabled: bool,
        must_change_at_logon: bool,
    ) -> DirectoryEntry: ...

    def find_group_by_name(self, name: str) -> DirectoryGroup | None: ...

    def create_group(self, name: str) -> DirectoryGroup: ...

    def add_member(self, group: DirectoryGroup, login: str) -> None: ...


class InMemoryDirectory:
    def __init__(self, container: str = "ou=users,dc=example,dc=com") -> None:
        self.container = container
        self.users: dict[str, DirectoryEntry] = {}
        self.secrets: dict[str, str] = {}
        self.flags: dict[str, tuple[bool, bool]] = {}
        self.groups: dict[str, DirectoryGroup] = {}
        self.create_calls: list[str] = []
        self.fail_lookups = False
        self.fail_creates_for: set[str] = set()
        self.fail_group_operations = False

    def add_existing_user(self, login: str, **attributes: str) -> DirectoryEntry:
        entry = DirectoryEntry(dn=f"cn={login},{self.container}", login=login, attributes=dict(attributes))
        self.users[login.lower()] = entry
        return entry

    def find_by_unique_id(self, login: str) -> DirectoryEntry | None:
        if self.fail_lookups:
            raise DirectoryOperationFailure("search", "directory unavailable")
        return self.users.get(login.lower())

    def create_entry(
        self,
        attributes: Mapping[str, str],
        login: str,
        secret: str,
        enabled: bool,
        must_change_at_logon: bool,
    ) -> DirectoryEntry:
        self.create_calls.append(login)
        if login in self.fail_creates_for:
            raise DirectoryOperationFailure("add", "password does not meet the domain policy")
        if login.lower() in self.users:
            raise DirectoryOperationFailure("add", "entryAlreadyExists")

        common_name = attributes.get("cn") or login
        entry = DirectoryEntry(dn=f"cn={common_name},{self.container}", login=login, attributes=dict(attributes))
        self.users[login.lower()] = entry
        self.secrets[login.lower()] = secret
        self.flags[login.lower()] = (enabled, must_change_at_logon)
        return entry

    def find_group_by_name(self, name: str) -> DirectoryGroup | None:
        if self.fail_group_operations:
            raise DirectoryOperationFailure("group search", "directory unavailable")
        return self.groups.get(name.lower())

    def create_group(self, name: str) -> DirectoryGroup:
        if self.fail_group_operations:
            raise DirectoryOperationFailure("group add", "insufficient access rights")
        group = DirectoryGroup(dn=f"cn={name},{self.container}", name=name)
        self.groups[name.lower()] = group
        return group

    def add_member(self, group: DirectoryGroup, login: str) -> None:
        if self.fail_group_operations:
            raise DirectoryOperationFailure("member add", "insufficient access rights")
        if login.lower() not in self.users:
            raise DirectoryOperationFailure("member add", f"no such user: {login}")
        group.members.add(login.lower())


class DryRunDirectory:
    """Reads from the wrapped directory and keeps would-be writes in memory."""

    def __init__(self, inner: DirectoryService) -> None:
        self.inner = inner
        self.overlay = InMemoryDirectory(container="ou=dry-run")

    def find_by_unique_id(self, login: str) -> DirectoryEntry | None:
        pending = self.overlay.find_by_unique_id(login)
        if pending is not None:
            return pending
        return self.inner.find_by_unique_id(login)

    def create_entry(
        self,
        attributes: Mapping[str, str],
        login: str,
        secret: str,
        enabled: bool,
        must_change_at_logon: bool,
    ) -> DirectoryEntry:
        logger.info("dry run: would create entry", extra={"login": login})
        return self.overlay.create_entry(attributes, login, secret, enabled, must_change_at_logon)

    def find_group_by_name(self, name: str) -> DirectoryGroup | None:
        pending = self.overlay.find_group_by_name(name)
        if pending is not None:
            return pending
        return self.inner.find_group_by_name(name)

    def create_group(self, name: str) -> DirectoryGroup:
        logger.info("dry run: would create group", extra={"group": name})
        return self.overlay.create_group(name)

    def add_member(self, group: DirectoryGroup, login: str) -> None:
        logger.info("dry run: would add member", extra={"group": group.name, "login": login})


def encode_ad_password(secret: str) -> bytes:
    return f'"{secret}"'.encode("utf-16-le")


class LdapDirectory:
    def __init__(self, connection: Connection, *, base_dn: str, container: str) -> None:
        self.connection = connection
        self.base_dn = base_dn
        self.container = container or base_dn

    @classmethod
    def connect(
        cls,
        *,
        server: str,
        port: int,
        use_ssl: bool,
        bind_dn: str,
        password: str,
        base_dn: str,
        container: str,
    ) -> "LdapDirectory":
        ldap_server = Server(server, port=port, use_ssl=use_ssl, connect_timeout=10)
        connection = Connection(ldap_server, user=bind_dn, password=password, raise_exceptions=False)
        return cls(connection, base_dn=base_dn, container=container)

    def __enter__(self) -> "LdapDirectory":
        if not self.connection.bound:
            try:
                bound = self.connection.bind()
            except LDAPException as exc:
                raise DirectoryOperationFailure("bind", str(exc)) from exc
            if not bound:
                raise DirectoryOperationFailure("bind", self._last_error())
        return self

    def __exit__(self, *exc_info: object) -> None:
        if self.connection.bound:
            self.connection.unbind()

    def _last_error(self, previous: object = None) -> str:
        result = self.connection.result
        if not result or result is previous:
            return "no result returned by the server"
        description = result.get("description") or "unknown error"
        message = result.get("message")
        return f"{description} ({message})" if message else description

    def _check(self, operation: str, succeeded: bool, previous: object = None) -> None:
        if not succeeded:
            raise DirectoryOperationFailure(operation, self._last_error(previous))

    def _search(self, operation: str, search_filter: str, attributes: list[str]) -> list:
        try:
            self.connection.search(
                search_base=self.base_dn,
                search_filter=search_filter,
                search_scope=SUBTREE,
                attributes=attributes,
            )
        except LDAPException as exc:
            raise DirectoryOperationFailure(operation, str(exc)) from exc
        # An empty result set still reports success.
        if (self.connection.result or {}).get("result", 0) != 0:
            raise DirectoryOperationFailure(operation, self._last_error())
        return list(self.connection.entries)

    def find_by_unique_id(self, login: str) -> DirectoryEntry | None:
        entries = self._search(
            "user search",
            f"(&(objectClass=user)(sAMAccountName={escape_filter_chars(login)}))",
            ["sAMAccountName", "givenName", "sn"],
        )
        if not entries:
            return None
        entry = entries[0]
        attributes = {
            name: str(values[0])
            for name, values in entry.entry_attributes_as_dict.items()
            if values
        }
        return DirectoryEntry(dn=entry.entry_dn, login=login, attributes=attributes)

    def create_entry(
        self,
        attributes: Mapping[str, str],
        login: str,
        secret: str,
        enabled: bool,
        must_change_at_logon: bool,
    ) -> DirectoryEntry:
        common_name = attributes.get("cn") or login
        dn = f"cn={escape_rdn(common_name)},{self.container}"

        payload: dict[str, object] = {key: value for key, value in attributes.items() if value}
        payload["cn"] = common_name
        payload["sAMAccountName"] = login
        payload["unicodePwd"] = encode_ad_password(secret)
        payload["userAccountControl"] = str(ACCOUNT_ENABLED if enabled else ACCOUNT_DISABLED)

        previous = self.connection.result
        try:
            added = self.connection.add(dn, USER_OBJECT_CLASSES, payload)
        except LDAPException as exc:
            raise DirectoryOperationFailure("add", str(exc)) from exc
        self._check("add", added, previous)

        if must_change_at_logon:
            previous = self.connection.result
            try:
                modified = self.connection.modify(dn, {"pwdLastSet": [(MODIFY_REPLACE, ["0"])]})
                detail = None if modified else self._last_error(previous)
            except LDAPException as exc:
                detail = str(exc)
            if detail is not None:
                self._remove_partial_entry(dn, login)
                raise DirectoryOperationFailure("modify pwdLastSet", detail)

        logger.debug("directory entry added", extra={"dn": dn})
        return DirectoryEntry(dn=dn, login=login, attributes=dict(attributes))

    def _remove_partial_entry(self, dn: str, login: str) -> None:
        # A half-configured account must not outlive a failed create.
        previous = self.connection.result
        try:
            deleted = self.connection.delete(dn)
        except LDAPException as exc:
            raise DirectoryOperationFailure("rollback delete", f"{login} left at {dn}: {exc}") from exc
        if not deleted:
            raise DirectoryOperationFailure("rollback delete", f"{login} left at {dn}: {self._last_error(previous)}")
        logger.warning("partially created entry removed", extra={"dn": dn})

    def find_group_by_name(self, name: str) -> DirectoryGroup | None:
        entries = self._search(
            "group search",
            f"(&(objectClass=group)(cn={escape_filter_chars(name)}))",
            ["cn"],
        )
        if not entries:
            return None
        return DirectoryGroup(dn=entries[0].entry_dn, name=name)

    def create_group(self, name: str) -> DirectoryGroup:
        dn = f"cn={escape_rdn(name)},{self.container}"
        previous = self.connection.result
        try:
            added = self.connection.add(
                dn,
                GROUP_OBJECT_CLASSES,
                {"cn": name, "sAMAccountName": name, "groupType": str(GLOBAL_SECURITY_GROUP)},
            )
        except LDAPException as exc:
            raise DirectoryOperationFailure("group add", str(exc)) from exc
        self._check("group add", added, previous)
        return DirectoryGroup(dn=dn, name=name)

    def add_member(self, group: DirectoryGroup, login: str) -> None:
        user = self.find_by_unique_id(login)
        if user is None:
            raise DirectoryOperationFailure("member add", f"no such user: {login}")
        previous = self.connection.result
        try:
            modified = self.connection.modify(group.dn, {"member": [(MODIFY_ADD, [user.dn])]})
        except LDAPException as exc:
            raise DirectoryOperationFailure("member add", str(exc)) from exc
        self._check("member add", modified, previous)
        group.members.add(login.lower())
