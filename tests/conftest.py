from collections.abc import Generator
from pathlib import Path

import pytest

from provisioner.config import Settings
from provisioner.database import build_session_factory
from provisioner.directory import InMemoryDirectory
from provisioner.pipeline import ProvisioningRunner
from provisioner.schemas import ColumnMapping, CredentialPolicy, ProvisioningConfig


@pytest.fixture()
def temp_workspace(tmp_path: Path) -> Path:
    (tmp_path / "outputs").mkdir(parents=True, exist_ok=True)
    return tmp_path


@pytest.fixture()
def test_settings(temp_workspace: Path) -> Settings:
    return Settings(
        app_name="rosterload",
        database_url=f"sqlite:///{temp_workspace / 'test.db'}",
        log_level="INFO",
        output_dir=str(temp_workspace / "outputs"),
        directory_backend="memory",
        ldap_server="localhost",
        ldap_port=636,
        ldap_use_ssl=True,
        ldap_bind_dn="",
        ldap_bind_password="",
        ldap_base_dn="dc=example,dc=com",
        target_container="ou=users,dc=example,dc=com",
        upn_domain="example.com",
        login_format="initial-surname",
        login_template="",
        credential_mode="generated",
        credential_fixed_value="",
        credential_length=12,
        credential_include_special=True,
        credential_source_column="",
        credential_fallback="Fallback#2024",
        account_enabled=True,
        must_change_password=True,
        group_mode="none",
        group_name="",
        group_source_column="",
        group_create_missing=False,
    )


@pytest.fixture()
def directory() -> InMemoryDirectory:
    return InMemoryDirectory()


@pytest.fixture()
def runner(test_settings: Settings, directory: InMemoryDirectory) -> Generator[ProvisioningRunner, None, None]:
    session_factory = build_session_factory(test_settings.database_url)
    yield ProvisioningRunner(test_settings, session_factory, directory)


@pytest.fixture()
def name_mapping() -> ColumnMapping:
    return ColumnMapping({"GivenName": "Prénom", "Surname": "Nom", "Department": "Service"})


@pytest.fixture()
def base_config(name_mapping: ColumnMapping) -> ProvisioningConfig:
    return ProvisioningConfig(
        column_mapping=name_mapping,
        credential_policy=CredentialPolicy(),
        target_container="ou=users,dc=example,dc=com",
        upn_domain="example.com",
    )
