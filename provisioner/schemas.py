from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType


class LoginFormat(str, Enum):
    INITIAL_SURNAME = "initial-surname"
    NAME_INITIAL = "name-initial"
    FIRST_DOT_LAST = "first-dot-last"
    LAST_DOT_FIRST = "last-dot-first"
    FIRST_UNDERSCORE_LAST = "first-underscore-last"
    LAST_UNDERSCORE_FIRST = "last-underscore-first"
    CUSTOM_TEMPLATE = "custom-template"


class CredentialMode(str, Enum):
    FIXED = "fixed"
    GENERATED = "generated"
    SOURCED = "sourced"


class GroupMode(str, Enum):
    NONE = "none"
    FIXED = "fixed"
    COLUMN = "column"


class OutcomeStatus(str, Enum):
    CREATED = "Created"
    SKIPPED = "Skipped"
    ERROR = "Error"


@dataclass(frozen=True)
class CanonicalAttribute:
    name: str
    required: bool = False
    # None for attributes that only feed derived defaults.
    ldap_attribute: str | None = None
    aliases: tuple[str, ...] = ()


@dataclass(frozen=True)
class ColumnMapping:
    columns: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "columns", MappingProxyType(dict(self.columns)))

    def column_for(self, attribute: str) -> str | None:
        return self.columns.get(attribute)

    def __contains__(self, attribute: object) -> bool:
        return attribute in self.columns


@dataclass(frozen=True)
class LoginPolicy:
    format: LoginFormat = LoginFormat.INITIAL_SURNAME
    template: str | None = None


@dataclass(frozen=True)
class CredentialPolicy:
    mode: CredentialMode = CredentialMode.GENERATED
    fixed_value: str | None = field(default=None, repr=False)
    length: int = 12
    include_special: bool = True
    source_column: str | None = None
    fallback_value: str = field(default="ChangeMe!2024", repr=False)


@dataclass(frozen=True)
class GroupPolicy:
    mode: GroupMode = GroupMode.NONE
    group_name: str | None = None
    source_column: str | None = None
    create_missing: bool = False


@dataclass(frozen=True)
class ProvisioningConfig:
    column_mapping: ColumnMapping
    login_policy: LoginPolicy = field(default_factory=LoginPolicy)
    credential_policy: CredentialPolicy = field(default_factory=CredentialPolicy)
    group_policy: GroupPolicy = field(default_factory=GroupPolicy)
    target_container: str = ""
    upn_domain: str | None = None
    enabled: bool = True
    must_change_at_logon: bool = True
    dry_run: bool = False


@dataclass(frozen=True)
class CredentialResult:
    secret: str = field(repr=False)
    display_echo: str = field(repr=False)
    warning: str | None = None


@dataclass(frozen=True)
class OutcomeEntry:
    record_index: int
    status: OutcomeStatus
    login: str
    message: str
    credential_echo: str = field(default="", repr=False)


@dataclass(frozen=True)
class RunSummary:
    created: int
    skipped: int
    errors: int
    total: int

    @classmethod
    def from_entries(cls, entries: Sequence[OutcomeEntry]) -> "RunSummary":
        created = sum(1 for entry in entries if entry.status is OutcomeStatus.CREATED)
        skipped = sum(1 for entry in entries if entry.status is OutcomeStatus.SKIPPED)
        errors = sum(1 for entry in entries if entry.status is OutcomeStatus.ERROR)
        return cls(created=created, skipped=skipped, errors=errors, total=len(entries))


@dataclass(frozen=True)
class ProvisioningResult:
    run_id: int
    run_key: str
    status: str
    entries: tuple[OutcomeEntry, ...]
    report_path: str | None
    reused_existing_run: bool
    aborted: bool = False
    error: str | None = None

    @property
    def summary(self) -> RunSummary:
        return RunSummary.from_entries(self.entries)
