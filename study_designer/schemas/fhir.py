"""
JSON schemas used as shape contracts.

- One schema per criteria type, pinning the runtime shape of ``value``,
  ``minValue`` and ``maxValue`` to the declared ``type``.
- A pragmatic subset of the FHIR R5 EvidenceVariable resource, checked before
  a full-resource update is sent to the knowledge server.
"""

from study_designer.schemas.criteria import CriteriaType

DATE_PATTERN = r"^\d{4}-\d{2}-\d{2}$"
DATETIME_PATTERN = (
    r"^\d{4}-\d{2}-\d{2}"
    r"(T\d{2}:\d{2}(:\d{2}(\.\d+)?)?(Z|[+-]\d{2}:\d{2})?)?$"
)

CODING_SCHEMA: dict = {
    "type": "object",
    "required": ["code"],
    "properties": {
        "system": {"type": "string"},
        "code": {"type": "string", "minLength": 1},
        "display": {"type": "string"},
    },
    "additionalProperties": False,
}

QUANTITY_SCHEMA: dict = {
    "type": "object",
    "properties": {
        "value": {"type": "number"},
        "unit": {"type": "string"},
        "system": {"type": "string"},
        "code": {"type": "string"},
    },
    "additionalProperties": False,
}

_VALUE_SCHEMAS: dict[CriteriaType, dict] = {
    CriteriaType.BOOLEAN: {"type": "boolean"},
    CriteriaType.INTEGER: {"type": "integer"},
    CriteriaType.DATE: {"type": "string", "pattern": DATE_PATTERN},
    CriteriaType.DATETIME: {"type": "string", "pattern": DATETIME_PATTERN},
    CriteriaType.CODE: {"type": "string"},
    CriteriaType.CODING: CODING_SCHEMA,
    CriteriaType.STRING: {"type": "string"},
    CriteriaType.QUANTITY: QUANTITY_SCHEMA,
}


def _nullable(schema: dict) -> dict:
    return {"anyOf": [schema, {"type": "null"}]}


CRITERIA_VALUE_SCHEMAS: dict[CriteriaType, dict] = {
    criteria_type: {
        "$schema": "http://json-schema.org/draft-07/schema#",
        "title": f"Inclusion criteria value ({criteria_type.value})",
        "type": "object",
        "required": ["type"],
        "properties": {
            "type": {"type": "string", "const": criteria_type.value},
            "value": _nullable(value_schema),
            "operator": {"type": ["string", "null"]},
            "minValue": _nullable(value_schema),
            "maxValue": _nullable(value_schema),
            "valueSetUrl": {"type": ["string", "null"]},
        },
        "additionalProperties": False,
    }
    for criteria_type, value_schema in _VALUE_SCHEMAS.items()
}


FHIR_EVIDENCE_VARIABLE_SCHEMA: dict = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "title": "FHIR EvidenceVariable (simplified)",
    "description": "Subset of the HL7 FHIR R5 EvidenceVariable resource.",
    "type": "object",
    "required": ["resourceType", "status"],
    "properties": {
        "resourceType": {"type": "string", "const": "EvidenceVariable"},
        "id": {"type": "string"},
        "url": {"type": "string"},
        "title": {"type": "string"},
        "description": {"type": "string"},
        "status": {
            "type": "string",
            "enum": ["draft", "active", "retired", "unknown"],
            "description": "PublicationStatus value set.",
        },
        "characteristic": {
            "type": "array",
            "items": {"$ref": "#/definitions/characteristic"},
        },
    },
    "definitions": {
        "characteristic": {
            "type": "object",
            "properties": {
                "linkId": {"type": "string"},
                "description": {"type": "string"},
                "exclude": {"type": "boolean"},
                "definitionCanonical": {"type": "string", "minLength": 1},
                "definitionExpression": {
                    "type": "object",
                    "properties": {
                        "language": {"type": "string"},
                        "expression": {"type": "string"},
                        "reference": {"type": "string"},
                    },
                },
                "definitionByCombination": {
                    "type": "object",
                    "required": ["code"],
                    "properties": {
                        "code": {
                            "type": "string",
                            "enum": [
                                "all-of",
                                "any-of",
                                "at-least",
                                "at-most",
                                "statistical",
                                "net-effect",
                                "dataset",
                            ],
                        },
                        "characteristic": {
                            "type": "array",
                            "items": {"$ref": "#/definitions/characteristic"},
                        },
                    },
                },
            },
        }
    },
}
