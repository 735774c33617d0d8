"""Tests for JSON schema validation and form field checks."""

from study_designer.schemas.criteria import InclusionCriteriaValue
from study_designer.services.validation import (
    INVALID_URL_MESSAGE,
    REQUIRED_FIELD_MESSAGE,
    FormValidator,
    validate_criteria_value,
    validate_evidence_variable,
)


def test_valid_evidence_variable():
    resource = {
        "resourceType": "EvidenceVariable",
        "status": "draft",
        "title": "Adults",
        "characteristic": [
            {
                "definitionByCombination": {
                    "code": "all-of",
                    "characteristic": [{"definitionExpression": {"expression": "IsAdult"}}],
                }
            }
        ],
    }
    assert validate_evidence_variable(resource) == []


def test_missing_required_fields():
    errors = validate_evidence_variable({"title": "No type"})
    assert any("resourceType" in e for e in errors)
    assert any("status" in e for e in errors)


def test_invalid_status():
    errors = validate_evidence_variable({"resourceType": "EvidenceVariable", "status": "done"})
    assert len(errors) > 0


def test_nested_combination_needs_code():
    resource = {
        "resourceType": "EvidenceVariable",
        "status": "active",
        "characteristic": [
            {"definitionByCombination": {"characteristic": [{"definitionByCombination": {}}]}}
        ],
    }
    assert len(validate_evidence_variable(resource)) == 2


def test_criteria_value_shape_matches_type():
    assert validate_criteria_value(InclusionCriteriaValue(type="integer", value=3)) == []
    assert validate_criteria_value(InclusionCriteriaValue(type="integer", value="3")) != []
    assert validate_criteria_value(InclusionCriteriaValue(type="date", value="2020-13")) != []
    assert (
        validate_criteria_value(
            InclusionCriteriaValue(type="coding", value={"system": "s", "code": "c"})
        )
        == []
    )


def test_required_field():
    validator = FormValidator()
    assert validator.validate_field("title", "  ", is_required=True) == REQUIRED_FIELD_MESSAGE
    assert not validator.is_valid

    validator.validate_field("title", "Adults", is_required=True)
    assert validator.is_valid


def test_false_and_zero_are_not_blank():
    validator = FormValidator()
    validator.validate_field("criteriaValue", False, is_required=True)
    validator.validate_field("minValue", 0, is_required=True)
    assert validator.errors == {}


def test_url_fields_are_checked():
    validator = FormValidator()
    assert validator.validate_field("canonicalUrl", "not a url") == INVALID_URL_MESSAGE
    assert validator.validate_field("canonicalUrl", "https://example.org/ev/1") is None
    assert validator.validate_field("title", "not a url") is None
    assert validator.errors == {}
