import pytest

from provisioner.errors import ConfigurationError
from provisioner.mapping import (
    LOGIN,
    REQUIRED_ATTRIBUTES,
    apply_mapping,
    build_column_mapping,
    check_run_viability,
    directory_attributes,
    resolve,
    suggest_mapping,
)
from provisioner.schemas import ColumnMapping


def test_required_attributes_are_names_and_login() -> None:
    assert REQUIRED_ATTRIBUTES == {"GivenName", "Surname", "SamAccountName"}


def test_suggest_mapping_matches_accented_and_punctuated_headers() -> None:
    suggested = suggest_mapping(["Prénom", "Nom", "E-mail", "Job Title", "Nom complet", "Unrelated"])

    assert suggested == {
        "GivenName": "Prénom",
        "Surname": "Nom",
        "EmailAddress": "E-mail",
        "Title": "Job Title",
        "FullName": "Nom complet",
    }


def test_build_column_mapping_applies_overrides() -> None:
    mapping = build_column_mapping(["First", "Last", "Login ID"], {"SamAccountName": "Login ID"})

    assert mapping.column_for("GivenName") == "First"
    assert mapping.column_for("Surname") == "Last"
    assert mapping.column_for(LOGIN) == "Login ID"


def test_build_column_mapping_rejects_unknown_attribute_and_column() -> None:
    with pytest.raises(ConfigurationError):
        build_column_mapping(["First"], {"ShoeSize": "First"})
    with pytest.raises(ConfigurationError):
        build_column_mapping(["First"], {"GivenName": "Missing"})


def test_resolve_reports_missing_required_attributes() -> None:
    check = resolve(ColumnMapping({"GivenName": "First", "Surname": "Last"}))

    assert not check.ok
    assert check.missing_required == {LOGIN}
    assert resolve(ColumnMapping({"GivenName": "a", "Surname": "b", LOGIN: "c"})).ok


def test_missing_login_is_viable_with_a_warning() -> None:
    warnings = check_run_viability(resolve(ColumnMapping({"GivenName": "First", "Surname": "Last"})))

    assert len(warnings) == 1
    assert "synthesized" in warnings[0]


def test_apply_mapping_trims_and_drops_blank_values() -> None:
    mapping = ColumnMapping({"GivenName": "First", "Surname": "Last", "Title": "Role"})

    resolved = apply_mapping({"First": "  Ada ", "Last": "Lovelace", "Role": "   "}, mapping)

    assert resolved == {"GivenName": "Ada", "Surname": "Lovelace"}


def test_directory_attributes_skips_display_only_fields() -> None:
    attributes = directory_attributes({"GivenName": "Ada", "FullName": "Ada Lovelace", "Title": ""})

    assert attributes == {"givenName": "Ada"}


def test_column_mapping_is_immutable() -> None:
    mapping = ColumnMapping({"GivenName": "First"})

    with pytest.raises(TypeError):
        mapping.columns["Surname"] = "Last"  # type: ignore[index]
