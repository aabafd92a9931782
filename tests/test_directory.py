from collections.abc import Generator

from ldap3 import MOCK_SYNC, SUBTREE, Connection, Server
import pytest

from provisioner.directory import DryRunDirectory, InMemoryDirectory, LdapDirectory, encode_ad_password
from provisioner.errors import DirectoryOperationFailure


BASE_DN = "dc=example,dc=com"
CONTAINER = "ou=users,dc=example,dc=com"
ADMIN_DN = "cn=admin,dc=example,dc=com"


def _mock_connection(password: str = "secret") -> Connection:
    connection = Connection(Server("mock-ad"), user=ADMIN_DN, password=password, client_strategy=MOCK_SYNC)
    connection.strategy.add_entry(ADMIN_DN, {"userPassword": "secret", "sn": "admin"})
    connection.strategy.add_entry(BASE_DN, {"objectClass": ["top", "domain"], "dc": "example"})
    connection.strategy.add_entry(CONTAINER, {"objectClass": ["top", "organizationalUnit"], "ou": "users"})
    return connection


@pytest.fixture()
def ldap_directory() -> Generator[LdapDirectory, None, None]:
    with LdapDirectory(_mock_connection(), base_dn=BASE_DN, container=CONTAINER) as directory:
        yield directory


def test_ldap_create_then_find(ldap_directory: LdapDirectory) -> None:
    assert ldap_directory.find_by_unique_id("jdupont") is None

    entry = ldap_directory.create_entry(
        {"givenName": "Jean", "sn": "Dupont"},
        "jdupont",
        "S3cret!pass",
        enabled=True,
        must_change_at_logon=True,
    )

    assert entry.dn == f"cn=jdupont,{CONTAINER}"
    found = ldap_directory.find_by_unique_id("jdupont")
    assert found is not None
    assert found.dn == entry.dn
    assert found.attributes["givenName"] == "Jean"
    assert found.attributes["sn"] == "Dupont"


def test_ldap_failed_password_flag_removes_the_new_entry(
    ldap_directory: LdapDirectory, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setattr(ldap_directory.connection, "modify", lambda *args, **kwargs: False)

    with pytest.raises(DirectoryOperationFailure) as excinfo:
        ldap_directory.create_entry(
            {"givenName": "Jean", "sn": "Dupont"},
            "jdupont",
            "S3cret!pass",
            enabled=True,
            must_change_at_logon=True,
        )

    message = str(excinfo.value)
    assert message.startswith("modify pwdLastSet failed")
    assert "success" not in message
    assert ldap_directory.find_by_unique_id("jdupont") is None


def test_ldap_duplicate_add_raises(ldap_directory: LdapDirectory) -> None:
    ldap_directory.create_entry({}, "jdupont", "S3cret!pass", enabled=True, must_change_at_logon=False)

    with pytest.raises(DirectoryOperationFailure):
        ldap_directory.create_entry({}, "jdupont", "S3cret!pass", enabled=True, must_change_at_logon=False)


def test_ldap_group_create_and_membership(ldap_directory: LdapDirectory) -> None:
    user = ldap_directory.create_entry({}, "jdupont", "S3cret!pass", enabled=True, must_change_at_logon=False)
    assert ldap_directory.find_group_by_name("Sales") is None

    group = ldap_directory.create_group("Sales")
    assert ldap_directory.find_group_by_name("Sales") is not None
    ldap_directory.add_member(group, "jdupont")

    connection = ldap_directory.connection
    connection.search(BASE_DN, f"(&(objectClass=group)(member={user.dn}))", search_scope=SUBTREE)
    assert len(connection.entries) == 1


def test_ldap_add_member_for_unknown_user_raises(ldap_directory: LdapDirectory) -> None:
    group = ldap_directory.create_group("Sales")

    with pytest.raises(DirectoryOperationFailure):
        ldap_directory.add_member(group, "ghost")


def test_ldap_bind_failure_raises() -> None:
    directory = LdapDirectory(_mock_connection(password="wrong"), base_dn=BASE_DN, container=CONTAINER)

    with pytest.raises(DirectoryOperationFailure):
        with directory:
            pass


def test_ad_password_encoding() -> None:
    assert encode_ad_password("Ab1!") == '"Ab1!"'.encode("utf-16-le")


def test_in_memory_lookup_is_case_insensitive() -> None:
    directory = InMemoryDirectory()
    directory.add_existing_user("JDupont")

    assert directory.find_by_unique_id("jdupont") is not None


def test_dry_run_reads_through_and_keeps_writes_local() -> None:
    inner = InMemoryDirectory()
    inner.add_existing_user("jdupont")
    dry_run = DryRunDirectory(inner)

    assert dry_run.find_by_unique_id("jdupont") is not None
    dry_run.create_entry({}, "jdupont1", "S3cret!pass", True, True)
    group = dry_run.create_group("Sales")
    dry_run.add_member(group, "jdupont1")

    assert dry_run.find_by_unique_id("jdupont1") is not None
    assert inner.find_by_unique_id("jdupont1") is None
    assert inner.create_calls == []
    assert inner.find_group_by_name("Sales") is None
