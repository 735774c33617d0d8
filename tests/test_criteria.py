"""Tests for criteria types derived from library parameters."""

import pytest

from study_designer.schemas.criteria import (
    CriteriaType,
    LibraryParameter,
    get_ui_type_from_library_parameter,
    is_range_operator,
    new_criteria_value,
)


@pytest.mark.parametrize(
    "parameter_type, expected",
    [
        ("boolean", CriteriaType.BOOLEAN),
        ("integer", CriteriaType.INTEGER),
        ("Integer", CriteriaType.INTEGER),
        ("date", CriteriaType.DATE),
        ("dateTime", CriteriaType.DATETIME),
        ("code", CriteriaType.CODE),
        ("Coding", CriteriaType.CODING),
        ("Quantity", CriteriaType.QUANTITY),
        ("Reference", CriteriaType.BOOLEAN),
        ("", CriteriaType.BOOLEAN),
    ],
)
def test_ui_type_from_library_parameter(parameter_type, expected):
    assert get_ui_type_from_library_parameter(parameter_type) is expected


def test_new_boolean_value_starts_false():
    value = new_criteria_value(LibraryParameter(name="Smoker", use="in", type="boolean"))
    assert value.type is CriteriaType.BOOLEAN
    assert value.value is False


def test_new_quantity_value_starts_empty():
    value = new_criteria_value(LibraryParameter(name="Weight", use="in", type="Quantity"))
    assert value.value == {}


def test_value_set_kept_only_for_coded_types():
    coded = new_criteria_value(
        LibraryParameter(name="Sex", use="in", type="Coding"), "https://example.org/vs"
    )
    plain = new_criteria_value(
        LibraryParameter(name="Age", use="in", type="integer"), "https://example.org/vs"
    )
    assert coded.valueSetUrl == "https://example.org/vs"
    assert plain.valueSetUrl is None


@pytest.mark.parametrize(
    "operator, expected",
    [("between", True), ("inPeriod", True), ("notInPeriod", True), ("equals", False), (None, False)],
)
def test_range_operators(operator, expected):
    assert is_range_operator(operator) is expected
