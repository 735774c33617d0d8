"""
Validation helpers.

- Schema-driven shape checks (criteria values, EvidenceVariable resources)
- Field-scoped form validation: required fields and URL fields
- Collecting all errors rather than failing on the first one
"""

from __future__ import annotations

from typing import Any
from urllib.parse import urlparse

import jsonschema

from study_designer.schemas.criteria import InclusionCriteriaValue
from study_designer.schemas.fhir import CRITERIA_VALUE_SCHEMAS, FHIR_EVIDENCE_VARIABLE_SCHEMA

REQUIRED_FIELD_MESSAGE = "This field is required."
INVALID_URL_MESSAGE = "This URL is not valid."


def validate_against_schema(data: dict[str, Any], schema: dict[str, Any]) -> list[str]:
    """
    Validate a dict against a JSON schema.
    Returns a list of error messages (empty list = valid).
    """
    validator = jsonschema.Draft7Validator(schema)
    return [error.message for error in validator.iter_errors(data)]


def validate_criteria_value(value: InclusionCriteriaValue) -> list[str]:
    """Check that ``value``'s runtime shape matches its declared ``type``."""
    return validate_against_schema(
        value.model_dump(mode="json"), CRITERIA_VALUE_SCHEMAS[value.type]
    )


def validate_evidence_variable(resource: dict[str, Any]) -> list[str]:
    return validate_against_schema(resource, FHIR_EVIDENCE_VARIABLE_SCHEMA)


def _is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, dict)):
        return len(value) == 0
    return False


def _is_url(value: str) -> bool:
    parsed = urlparse(value.strip())
    return bool(parsed.scheme) and bool(parsed.netloc or parsed.path)


class FormValidator:
    """Accumulates field errors for one open form; keyed by field name."""

    def __init__(self) -> None:
        self.errors: dict[str, str] = {}

    @property
    def is_valid(self) -> bool:
        return not self.errors

    def validate_field(
        self, field_name: str, value: Any, is_required: bool = False
    ) -> str | None:
        error: str | None = None
        if is_required and _is_blank(value):
            error = REQUIRED_FIELD_MESSAGE
        if (
            error is None
            and "url" in field_name.lower()
            and isinstance(value, str)
            and value.strip()
            and not _is_url(value)
        ):
            error = INVALID_URL_MESSAGE

        if error:
            self.errors[field_name] = error
        else:
            self.errors.pop(field_name, None)
        return error
