from dataclasses import dataclass, field, replace
from enum import Enum
import os
from typing import TypeVar

from dotenv import load_dotenv

from provisioner.errors import ConfigurationError
from provisioner.schemas import (
    ColumnMapping,
    CredentialMode,
    CredentialPolicy,
    GroupMode,
    GroupPolicy,
    LoginFormat,
    LoginPolicy,
    ProvisioningConfig,
)


load_dotenv()

E = TypeVar("E", bound=Enum)


@dataclass(frozen=True)
class Settings:
    app_name: str
    database_url: str
    log_level: str
    output_dir: str
    directory_backend: str
    ldap_server: str
    ldap_port: int
    ldap_use_ssl: bool
    ldap_bind_dn: str
    ldap_bind_password: str = field(repr=False)
    ldap_base_dn: str
    target_container: str
    upn_domain: str
    login_format: str
    login_template: str
    credential_mode: str
    credential_fixed_value: str = field(repr=False)
    credential_length: int
    credential_include_special: bool
    credential_source_column: str
    credential_fallback: str = field(repr=False)
    account_enabled: bool
    must_change_password: bool
    group_mode: str
    group_name: str
    group_source_column: str
    group_create_missing: bool


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


def get_settings() -> Settings:
    return Settings(
        app_name=os.getenv("APP_NAME", "rosterload"),
        database_url=os.getenv("DATABASE_URL", "sqlite:///./provisioning.db"),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        output_dir=os.getenv("OUTPUT_DIR", "./outputs"),
        directory_backend=os.getenv("DIRECTORY_BACKEND", "ldap"),
        ldap_server=os.getenv("LDAP_SERVER", "localhost"),
        ldap_port=int(os.getenv("LDAP_PORT", "636")),
        ldap_use_ssl=_env_bool("LDAP_USE_SSL", "true"),
        ldap_bind_dn=os.getenv("LDAP_BIND_DN", ""),
        ldap_bind_password=os.getenv("LDAP_BIND_PASSWORD", ""),
        ldap_base_dn=os.getenv("LDAP_BASE_DN", ""),
        target_container=os.getenv("TARGET_CONTAINER", ""),
        upn_domain=os.getenv("UPN_DOMAIN", ""),
        login_format=os.getenv("LOGIN_FORMAT", LoginFormat.INITIAL_SURNAME.value),
        login_template=os.getenv("LOGIN_TEMPLATE", ""),
        credential_mode=os.getenv("CREDENTIAL_MODE", CredentialMode.GENERATED.value),
        credential_fixed_value=os.getenv("CREDENTIAL_FIXED_VALUE", ""),
        credential_length=int(os.getenv("CREDENTIAL_LENGTH", "12")),
        credential_include_special=_env_bool("CREDENTIAL_INCLUDE_SPECIAL", "true"),
        credential_source_column=os.getenv("CREDENTIAL_SOURCE_COLUMN", ""),
        credential_fallback=os.getenv("CREDENTIAL_FALLBACK", "ChangeMe!2024"),
        account_enabled=_env_bool("ACCOUNT_ENABLED", "true"),
        must_change_password=_env_bool("MUST_CHANGE_PASSWORD", "true"),
        group_mode=os.getenv("GROUP_MODE", GroupMode.NONE.value),
        group_name=os.getenv("GROUP_NAME", ""),
        group_source_column=os.getenv("GROUP_SOURCE_COLUMN", ""),
        group_create_missing=_env_bool("GROUP_CREATE_MISSING", "false"),
    )


def _parse_enum(enum_type: type[E], value: str, label: str) -> E:
    try:
        return enum_type(value.strip().lower())
    except ValueError as exc:
        choices = ", ".join(member.value for member in enum_type)
        raise ConfigurationError(f"invalid {label} '{value}', expected one of: {choices}") from exc


def build_provisioning_config(
    settings: Settings,
    column_mapping: ColumnMapping,
    *,
    login_format: str | None = None,
    credential_mode: str | None = None,
    group_name: str | None = None,
    dry_run: bool = False,
) -> ProvisioningConfig:
    login_policy = LoginPolicy(
        format=_parse_enum(LoginFormat, login_format or settings.login_format, "login format"),
        template=settings.login_template or None,
    )
    credential_policy = CredentialPolicy(
        mode=_parse_enum(CredentialMode, credential_mode or settings.credential_mode, "credential mode"),
        fixed_value=settings.credential_fixed_value or None,
        length=settings.credential_length,
        include_special=settings.credential_include_special,
        source_column=settings.credential_source_column or None,
        fallback_value=settings.credential_fallback,
    )
    group_policy = GroupPolicy(
        mode=_parse_enum(GroupMode, settings.group_mode, "group mode"),
        group_name=settings.group_name or None,
        source_column=settings.group_source_column or None,
        create_missing=settings.group_create_missing,
    )
    if group_name:
        group_policy = replace(group_policy, mode=GroupMode.FIXED, group_name=group_name)

    return ProvisioningConfig(
        column_mapping=column_mapping,
        login_policy=login_policy,
        credential_policy=credential_policy,
        group_policy=group_policy,
        target_container=settings.target_container or settings.ldap_base_dn,
        upn_domain=settings.upn_domain or None,
        enabled=settings.account_enabled,
        must_change_at_logon=settings.must_change_password,
        dry_run=dry_run,
    )
