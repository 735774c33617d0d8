"""Parameters resources for the cohorting and datamart engine operations."""

from __future__ import annotations

from typing import Any

from study_designer.config import Settings, settings as default_settings

CONNECTION_TYPE_SYSTEM = "http://terminology.hl7.org/CodeSystem/endpoint-connection-type"
CSV_STRUCTURE_MAP_URL = (
    "https://www.centreantoinelacassagne.org/StructureMap/SM-ListParams-2-CSV"
)


def build_endpoint(address: str) -> dict[str, Any]:
    """An active FHIR REST Endpoint pointing at ``address``."""
    return {
        "resourceType": "Endpoint",
        "status": "active",
        "connectionType": [
            {"coding": [{"system": CONNECTION_TYPE_SYSTEM, "code": "hl7-fhir-rest"}]}
        ],
        "payload": [
            {
                "type": [
                    {
                        "coding": [
                            {
                                "system": CONNECTION_TYPE_SYSTEM,
                                "code": "hl7-fhir-rest",
                                "display": "HL7 FHIR",
                            }
                        ]
                    }
                ]
            }
        ],
        "address": address,
        "header": ["Content-Type: application/json"],
    }


def create_parameters(study_url: str, config: Settings | None = None) -> dict[str, Any]:
    """Input of $cohorting / $generate-datamart: the study plus where engines fetch things."""
    config = config or default_settings
    return {
        "resourceType": "Parameters",
        "parameter": [
            {"name": "researchStudyUrl", "valueCanonical": study_url},
            {"name": "researchStudyEndpoint", "resource": build_endpoint(config.KNOWLEDGE_URL)},
            {"name": "dataEndpoint", "resource": build_endpoint(config.FHIR_URL)},
            {"name": "terminologyEndpoint", "resource": build_endpoint(config.TERMINOLOGY_URL)},
            {"name": "cqlEngineEndpoint", "resource": build_endpoint(config.CQL_URL)},
        ],
    }


def create_parameters_for_export_datamart(
    study_url: str, config: Settings | None = None
) -> dict[str, Any]:
    config = config or default_settings
    parameters = create_parameters(study_url, config)
    parameters["parameter"].extend(
        [
            {"name": "type", "valueCode": "CSV"},
            {"name": "structureMapUrl", "valueCanonical": CSV_STRUCTURE_MAP_URL},
            {"name": "remoteEndpoint", "resource": build_endpoint(config.MAPPING_URL)},
        ]
    )
    return parameters


def create_parameters_for_instantiate_study(
    study_url: str, config: Settings | None = None
) -> dict[str, Any]:
    config = config or default_settings
    return {
        "resourceType": "Parameters",
        "parameter": [
            {"name": "studyUrl", "valueCanonical": study_url},
            {"name": "researchStudyEndpoint", "resource": build_endpoint(config.FHIR_URL)},
        ],
    }


def get_parameter_value(param: dict[str, Any] | None) -> str:
    """Human-readable value of one Parameters.parameter entry ("" if none)."""
    if not param:
        return ""
    if "valueAge" in param:
        return str(param["valueAge"].get("value", ""))
    if "valueBoolean" in param:
        return "true" if param["valueBoolean"] else "false"
    if param.get("valueString"):
        return param["valueString"]
    for key in ("valueInteger", "valueDecimal", "valueDateTime", "valueDate"):
        if key in param:
            return str(param[key])
    identifier = param.get("valueIdentifier") or {}
    if identifier.get("value"):
        return str(identifier["value"])
    if "valueQuantity" in param:
        quantity = param["valueQuantity"]
        return f"{quantity.get('value')} {quantity.get('unit')}"
    return ""
