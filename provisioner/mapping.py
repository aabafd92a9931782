from collections.abc import Iterable, Mapping
from dataclasses import dataclass
import logging

from provisioner.errors import ConfigurationError
from provisioner.login import normalize_name
from provisioner.schemas import CanonicalAttribute, ColumnMapping


logger = logging.getLogger(__name__)

GIVEN_NAME = "GivenName"
SURNAME = "Surname"
LOGIN = "SamAccountName"
DISPLAY_NAME = "DisplayName"
FULL_NAME = "FullName"
COMMON_NAME = "Name"
PRINCIPAL_NAME = "UserPrincipalName"
EMAIL = "EmailAddress"

CANONICAL_ATTRIBUTES: tuple[CanonicalAttribute, ...] = (
    CanonicalAttribute(GIVEN_NAME, True, "givenName", ("firstname", "first", "prenom", "given")),
    CanonicalAttribute(SURNAME, True, "sn", ("lastname", "last", "nom", "sn", "familyname")),
    CanonicalAttribute(LOGIN, True, "sAMAccountName", ("sam", "login", "username", "identifiant", "logonname")),
    CanonicalAttribute(DISPLAY_NAME, False, "displayName", ("display", "nomaffiche")),
    CanonicalAttribute(COMMON_NAME, False, "cn", ("cn", "commonname")),
    CanonicalAttribute(PRINCIPAL_NAME, False, "userPrincipalName", ("upn", "principalname")),
    CanonicalAttribute(EMAIL, False, "mail", ("email", "mail", "courriel", "emailaddress")),
    CanonicalAttribute("Title", False, "title", ("jobtitle", "poste", "fonction")),
    CanonicalAttribute("Department", False, "department", ("dept", "service", "departement")),
    CanonicalAttribute("Company", False, "company", ("societe", "entreprise")),
    CanonicalAttribute("Office", False, "physicalDeliveryOfficeName", ("bureau", "site")),
    CanonicalAttribute("OfficePhone", False, "telephoneNumber", ("phone", "telephone", "tel")),
    CanonicalAttribute("MobilePhone", False, "mobile", ("mobile", "portable", "cell")),
    CanonicalAttribute("EmployeeID", False, "employeeID", ("employeenumber", "matricule")),
    CanonicalAttribute("Description", False, "description", ()),
    CanonicalAttribute("StreetAddress", False, "streetAddress", ("address", "adresse", "street")),
    CanonicalAttribute("City", False, "l", ("ville", "town")),
    CanonicalAttribute("PostalCode", False, "postalCode", ("zip", "zipcode", "codepostal", "cp")),
    CanonicalAttribute("Country", False, "c", ("pays",)),
    CanonicalAttribute(FULL_NAME, False, None, ("nomcomplet", "name_full", "completename")),
)

ATTRIBUTES_BY_NAME: dict[str, CanonicalAttribute] = {attr.name: attr for attr in CANONICAL_ATTRIBUTES}
REQUIRED_ATTRIBUTES: frozenset[str] = frozenset(attr.name for attr in CANONICAL_ATTRIBUTES if attr.required)


@dataclass(frozen=True)
class MappingCheck:
    missing_required: frozenset[str]

    @property
    def ok(self) -> bool:
        return not self.missing_required


def _alias_index() -> dict[str, str]:
    index: dict[str, str] = {}
    for attr in CANONICAL_ATTRIBUTES:
        index[normalize_name(attr.name)] = attr.name
        if attr.ldap_attribute:
            index.setdefault(normalize_name(attr.ldap_attribute), attr.name)
        for alias in attr.aliases:
            index.setdefault(normalize_name(alias), attr.name)
    return index


_ALIASES = _alias_index()


def resolve(column_mapping: ColumnMapping, required: Iterable[str] = REQUIRED_ATTRIBUTES) -> MappingCheck:
    missing = frozenset(name for name in required if column_mapping.column_for(name) is None)
    return MappingCheck(missing_required=missing)


def check_run_viability(check: MappingCheck) -> list[str]:
    # Login can be synthesized; missing names reject records one by one.
    warnings: list[str] = []
    for name in sorted(check.missing_required):
        if name == LOGIN:
            warnings.append(f"{LOGIN} is not mapped, logins will be synthesized from name fields")
        else:
            warnings.append(f"required attribute {name} is not mapped, records without it will be rejected")
    return warnings


def suggest_mapping(headers: Iterable[str]) -> dict[str, str]:
    suggested: dict[str, str] = {}
    for header in headers:
        attribute = _ALIASES.get(normalize_name(header))
        if attribute and attribute not in suggested:
            suggested[attribute] = header
    return suggested


def build_column_mapping(headers: Iterable[str], overrides: Mapping[str, str] | None = None) -> ColumnMapping:
    header_list = list(headers)
    columns = suggest_mapping(header_list)

    for attribute, column in (overrides or {}).items():
        if attribute not in ATTRIBUTES_BY_NAME:
            raise ConfigurationError(f"unknown canonical attribute: {attribute}")
        if column not in header_list:
            raise ConfigurationError(f"column '{column}' mapped to {attribute} is not in the input")
        columns[attribute] = column

    used: dict[str, str] = {}
    for attribute, column in columns.items():
        if column in used:
            logger.warning(
                "column mapped to several attributes",
                extra={"column": column, "attributes": [used[column], attribute]},
            )
        used.setdefault(column, attribute)

    return ColumnMapping(columns)


def apply_mapping(record: Mapping[str, str], column_mapping: ColumnMapping) -> dict[str, str]:
    resolved: dict[str, str] = {}
    for attribute, column in column_mapping.columns.items():
        value = str(record.get(column) or "").strip()
        if value:
            resolved[attribute] = value
    return resolved


def directory_attributes(resolved: Mapping[str, str]) -> dict[str, str]:
    attributes: dict[str, str] = {}
    for name, value in resolved.items():
        attr = ATTRIBUTES_BY_NAME.get(name)
        if attr is None or attr.ldap_attribute is None or not value:
            continue
        attributes[attr.ldap_attribute] = value
    return attributes
