"""
Typed criteria values and the library projections they are built from.

An ``InclusionCriteriaValue`` is a tagged union: ``type`` decides the shape of
``value`` (see ``study_designer.schemas.fhir.CRITERIA_VALUE_SCHEMAS``). Values
are frozen; every edit produces a new instance.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict


class CriteriaType(str, Enum):
    BOOLEAN = "boolean"
    INTEGER = "integer"
    DATE = "date"
    DATETIME = "datetime"
    CODE = "code"
    CODING = "coding"
    STRING = "string"
    QUANTITY = "quantity"


# Types whose control set starts with a comparison operator select.
COMPARABLE_TYPES = frozenset({CriteriaType.INTEGER, CriteriaType.DATE, CriteriaType.DATETIME})

RANGE_OPERATOR_MARKERS = ("between", "inperiod")

# Built-in comparator codes, offered when the comparator ValueSet is unavailable.
DEFAULT_OPERATORS: dict[CriteriaType, list[str]] = {
    CriteriaType.INTEGER: [
        "equals",
        "greaterThan",
        "lessThan",
        "greaterThanOrEqual",
        "lessThanOrEqual",
        "between",
    ],
    CriteriaType.DATE: ["equals", "before", "after", "inPeriod", "notInPeriod"],
    CriteriaType.DATETIME: ["equals", "before", "after", "inPeriod", "notInPeriod"],
}


def is_range_operator(operator: str | None) -> bool:
    """True for ``between`` / ``inPeriod`` style operators (case-insensitive)."""
    if not operator:
        return False
    lowered = operator.lower()
    return any(marker in lowered for marker in RANGE_OPERATOR_MARKERS)


class InclusionCriteriaValue(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: CriteriaType
    value: Any = None
    operator: str | None = None
    minValue: Any = None
    maxValue: Any = None
    valueSetUrl: str | None = None


class CodeOption(BaseModel):
    """One selectable code, as returned by a ValueSet expansion."""

    code: str
    display: str | None = None
    system: str | None = None


class LibraryParameter(BaseModel):
    name: str
    use: str
    type: str
    documentation: str | None = None
    min: int | None = None
    max: str | None = None


class LibraryReference(BaseModel):
    id: str
    name: str
    url: str | None = None


_LIBRARY_TYPE_TO_CRITERIA: dict[str, CriteriaType] = {
    "boolean": CriteriaType.BOOLEAN,
    "integer": CriteriaType.INTEGER,
    "decimal": CriteriaType.INTEGER,
    "date": CriteriaType.DATE,
    "period": CriteriaType.DATE,
    "datetime": CriteriaType.DATETIME,
    "code": CriteriaType.CODE,
    "coding": CriteriaType.CODING,
    "codeableconcept": CriteriaType.CODING,
    "string": CriteriaType.STRING,
    "quantity": CriteriaType.QUANTITY,
}


def get_ui_type_from_library_parameter(library_parameter_type: str) -> CriteriaType:
    """Map a FHIR ParameterDefinition.type onto a criteria type (boolean if unknown)."""
    return _LIBRARY_TYPE_TO_CRITERIA.get(
        (library_parameter_type or "").lower(), CriteriaType.BOOLEAN
    )


def new_criteria_value(
    parameter: LibraryParameter, value_set_url: str | None = None
) -> InclusionCriteriaValue:
    """Fresh, empty value for a library parameter the user just selected."""
    criteria_type = get_ui_type_from_library_parameter(parameter.type)
    initial: Any = False if criteria_type is CriteriaType.BOOLEAN else None
    if criteria_type is CriteriaType.QUANTITY:
        initial = {}
    return InclusionCriteriaValue(
        type=criteria_type,
        value=initial,
        valueSetUrl=value_set_url
        if criteria_type in (CriteriaType.CODE, CriteriaType.CODING)
        else None,
    )
