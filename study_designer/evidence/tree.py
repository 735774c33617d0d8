"""
EvidenceVariable characteristic trees.

A characteristic is either a leaf (``definitionExpression`` or
``definitionCanonical``) or a combination (``definitionByCombination`` with a
``code`` and child ``characteristic`` list). Nodes are addressed by index
paths: ``[0, 2]`` is the third child of the first root characteristic.

The root level holds at most one characteristic unless that one is a
combination; anything else is reported as ``CharacteristicTreeError``.
Mutating functions work in place on the resource dict they are given.
"""

from __future__ import annotations

import copy
import logging
from typing import Any, Sequence

from study_designer.errors import CharacteristicTreeError
from study_designer.schemas.api import (
    CombinationFormData,
    EvidenceVariableFormData,
    ExpressionFormData,
)
from study_designer.schemas.criteria import (
    CriteriaType,
    InclusionCriteriaValue,
    is_range_operator,
)

logger = logging.getLogger(__name__)

CQF_LIBRARY_EXTENSION = "http://hl7.org/fhir/StructureDefinition/cqf-library"
XOR_EXTENSION = "https://www.centreantoinelacassagne.org/StructureDefinition/EXT-Exclusive-OR"
PARAMETRISATION_EXTENSION = (
    "https://www.centreantoinelacassagne.org/StructureDefinition/EXT-EVParametrisation"
)
CQL_IDENTIFIER_LANGUAGE = "text/cql-identifier"

Characteristic = dict[str, Any]


def is_combination(characteristic: Characteristic | None) -> bool:
    return bool(characteristic) and isinstance(
        characteristic.get("definitionByCombination"), dict
    )


# ---------------------------------------------------------------------------
# Navigation
# ---------------------------------------------------------------------------

def _child_at(level: list[Characteristic], index: int, depth: int) -> Characteristic:
    if not 0 <= index < len(level):
        raise CharacteristicTreeError(
            f"Characteristic not found at path index {depth} (index {index}, "
            f"{len(level)} available)"
        )
    return level[index]


def navigate_to_characteristic(
    parent: dict[str, Any], target_path: Sequence[int]
) -> Characteristic:
    """Return the characteristic at ``target_path``; every step must go through a combination."""
    if not target_path:
        raise CharacteristicTreeError("An empty path does not address a characteristic")
    current = _child_at(parent.get("characteristic") or [], target_path[0], 0)
    for depth in range(1, len(target_path)):
        if not is_combination(current):
            raise CharacteristicTreeError(f"No combination found at path index {depth - 1}")
        children = current["definitionByCombination"].get("characteristic") or []
        current = _child_at(children, target_path[depth], depth)
    return current


def replace_characteristic(
    parent: dict[str, Any], target_path: Sequence[int], replacement: Characteristic
) -> None:
    """Swap the node at ``target_path`` for ``replacement``."""
    if not target_path:
        raise CharacteristicTreeError("targetPath is required to replace a characteristic")
    if len(target_path) == 1:
        level = parent.get("characteristic") or []
    else:
        holder = navigate_to_characteristic(parent, target_path[:-1])
        if not is_combination(holder):
            raise CharacteristicTreeError(
                f"No combination found at path index {len(target_path) - 2}"
            )
        level = holder["definitionByCombination"].get("characteristic") or []
    _child_at(level, target_path[-1], len(target_path) - 1)
    level[target_path[-1]] = replacement


# ---------------------------------------------------------------------------
# Insertion
# ---------------------------------------------------------------------------

def _append_to_combination(combination: Characteristic, new: Characteristic) -> None:
    definition = combination["definitionByCombination"]
    definition.setdefault("characteristic", [])
    if definition["characteristic"] is None:
        definition["characteristic"] = []
    definition["characteristic"].append(new)


def add_characteristic_at_root_level(parent: dict[str, Any], new: Characteristic) -> None:
    existing = parent.get("characteristic") or []
    if not existing:
        parent["characteristic"] = [new]
    elif len(existing) == 1:
        root = existing[0]
        if is_combination(root):
            _append_to_combination(root, new)
        elif is_combination(new):
            raise CharacteristicTreeError(
                "This EvidenceVariable already has a characteristic. "
                "Cannot add a combination."
            )
        else:
            raise CharacteristicTreeError(
                "This EvidenceVariable already has a characteristic. "
                "Cannot add another without creating a combination first."
            )
    else:
        raise CharacteristicTreeError("Multiple characteristics found at root level")


def add_characteristic_to_ev(
    parent: dict[str, Any],
    new: Characteristic,
    target_path: Sequence[int] | None = None,
) -> dict[str, Any]:
    """
    Insert ``new`` into ``parent``'s characteristic tree.

    Without a path the root-level rules apply. With a path, the addressed
    node must be a combination and ``new`` is appended to its children.
    Returns ``parent`` (mutated in place).
    """
    if target_path:
        target = navigate_to_characteristic(parent, target_path)
        if not is_combination(target):
            raise CharacteristicTreeError(
                f"Characteristic at path {list(target_path)} is not a combination"
            )
        _append_to_combination(target, new)
    else:
        add_characteristic_at_root_level(parent, new)
    return parent


# ---------------------------------------------------------------------------
# Form data -> FHIR
# ---------------------------------------------------------------------------

def map_form_data_to_evidence_variable(
    data: EvidenceVariableFormData, existing: dict[str, Any] | None = None
) -> dict[str, Any]:
    """Build (or overwrite the header of) an EvidenceVariable from form data."""
    resource = copy.deepcopy(existing) if existing else {"resourceType": "EvidenceVariable"}
    resource["title"] = data.title
    resource["status"] = data.status
    # description and url follow the form; a blank field clears them
    for key, new_value in (("description", data.description), ("url", data.url)):
        if new_value is None:
            resource.pop(key, None)
        else:
            resource[key] = new_value
    if data.identifier:
        resource["identifier"] = [{"value": data.identifier}]
    if data.selectedLibrary and data.selectedLibrary.url:
        resource["extension"] = [
            {"url": CQF_LIBRARY_EXTENSION, "valueCanonical": data.selectedLibrary.url}
        ]
    return resource


def map_form_data_to_combination(
    data: CombinationFormData, existing: Characteristic | None = None
) -> Characteristic:
    combination = (
        copy.deepcopy(existing)
        if existing
        else {"definitionByCombination": {"characteristic": []}}
    )
    combination["exclude"] = data.exclude
    if data.combinationId:
        combination["linkId"] = data.combinationId
    else:
        combination.pop("linkId", None)
    if data.combinationDescription is not None:
        combination["description"] = data.combinationDescription
    definition = combination.setdefault("definitionByCombination", {})
    definition["code"] = data.code

    others = [e for e in definition.get("extension") or [] if e.get("url") != XOR_EXTENSION]
    # XOR only refines "any-of"
    if data.isXor and data.code == "any-of":
        others.append({"url": XOR_EXTENSION, "valueBoolean": True})
    if others:
        definition["extension"] = others
    else:
        definition.pop("extension", None)
    return combination


def _range_bounds(value: InclusionCriteriaValue) -> dict[str, Any] | None:
    if value.type is CriteriaType.INTEGER:
        bounds: dict[str, Any] = {}
        if value.minValue is not None:
            bounds["low"] = {"value": value.minValue}
        if value.maxValue is not None:
            bounds["high"] = {"value": value.maxValue}
        return {"url": "value", "valueRange": bounds}
    if value.type in (CriteriaType.DATE, CriteriaType.DATETIME):
        period: dict[str, Any] = {}
        if value.minValue is not None:
            period["start"] = value.minValue
        if value.maxValue is not None:
            period["end"] = value.maxValue
        return {"url": "value", "valuePeriod": period}
    return None


_VALUE_KEYS: dict[CriteriaType, str] = {
    CriteriaType.BOOLEAN: "valueBoolean",
    CriteriaType.INTEGER: "valueInteger",
    CriteriaType.DATE: "valueDate",
    CriteriaType.DATETIME: "valueDateTime",
    CriteriaType.CODE: "valueCode",
    CriteriaType.CODING: "valueCoding",
    CriteriaType.STRING: "valueString",
    CriteriaType.QUANTITY: "valueQuantity",
}


def build_parametrisation_extension(
    parameter_name: str, value: InclusionCriteriaValue
) -> dict[str, Any]:
    """EV-parametrisation extension binding a library parameter to a value."""
    parts: list[dict[str, Any]] = [
        {"url": "name", "valueString": parameter_name},
        {"url": "type", "valueCode": value.type.value},
    ]
    if value.operator:
        parts.append({"url": "comparator", "valueCode": value.operator})
    if value.valueSetUrl and value.type in (CriteriaType.CODE, CriteriaType.CODING):
        parts.append({"url": "valueSet", "valueCanonical": value.valueSetUrl})

    if is_range_operator(value.operator) and _range_bounds(value) is not None:
        parts.append(_range_bounds(value))
    elif value.value is not None and value.value != {}:
        payload = value.value
        if value.type is CriteriaType.CODING and isinstance(payload, dict):
            payload = {k: v for k, v in payload.items() if k in ("system", "code") and v}
        parts.append({"url": "value", _VALUE_KEYS[value.type]: payload})
    return {"url": PARAMETRISATION_EXTENSION, "extension": parts}


def map_form_data_to_definition_expression(data: ExpressionFormData) -> dict[str, Any]:
    expression: dict[str, Any] = {
        "language": CQL_IDENTIFIER_LANGUAGE,
        "expression": data.selectedExpression,
    }
    if data.expressionName:
        expression["name"] = data.expressionName
    if data.expressionDescription:
        expression["description"] = data.expressionDescription
    if data.selectedLibrary and data.selectedLibrary.url:
        expression["reference"] = data.selectedLibrary.url
    if data.criteriaValue is not None and data.selectedParameter:
        expression["extension"] = [
            build_parametrisation_extension(data.selectedParameter, data.criteriaValue)
        ]
    return expression


def build_expression_characteristic(data: ExpressionFormData) -> Characteristic:
    characteristic: Characteristic = {
        "exclude": data.exclude,
        "definitionExpression": map_form_data_to_definition_expression(data),
    }
    if data.expressionDescription:
        characteristic["description"] = data.expressionDescription
    if data.expressionId:
        characteristic["linkId"] = data.expressionId
    return characteristic


def build_canonical_characteristic(
    canonical_url: str,
    exclude: bool = False,
    description: str | None = None,
    link_id: str | None = None,
) -> Characteristic:
    characteristic: Characteristic = {
        "definitionCanonical": canonical_url,
        "exclude": exclude,
    }
    if description:
        characteristic["description"] = description
    if link_id:
        characteristic["linkId"] = link_id
    return characteristic


# ---------------------------------------------------------------------------
# FHIR -> display
# ---------------------------------------------------------------------------

def read_parametrisation(
    definition_expression: dict[str, Any] | None,
) -> tuple[str | None, InclusionCriteriaValue | None]:
    """Inverse of ``build_parametrisation_extension``: (parameter name, value)."""
    if not definition_expression:
        return None, None
    extension = next(
        (
            e
            for e in definition_expression.get("extension") or []
            if e.get("url") == PARAMETRISATION_EXTENSION
        ),
        None,
    )
    if extension is None:
        return None, None

    parts = {p.get("url"): p for p in extension.get("extension") or []}
    name_part = parts.get("name") or {}
    name = name_part.get("valueString") or name_part.get("valueCode")
    operator = (parts.get("comparator") or {}).get("valueCode")
    value_set = (parts.get("valueSet") or {}).get("valueCanonical")
    declared = _declared_type(parts.get("type"), name)
    value_part = parts.get("value")

    if value_part is None:
        if declared is None:
            return name, None
        return name, InclusionCriteriaValue(
            type=declared,
            value={} if declared is CriteriaType.QUANTITY else None,
            operator=operator,
            valueSetUrl=value_set,
        )

    if "valueRange" in value_part:
        bounds = value_part["valueRange"]
        return name, InclusionCriteriaValue(
            type=declared or CriteriaType.INTEGER,
            operator=operator,
            minValue=(bounds.get("low") or {}).get("value"),
            maxValue=(bounds.get("high") or {}).get("value"),
        )
    if "valuePeriod" in value_part:
        period = value_part["valuePeriod"]
        if declared is None:
            # extensions written without a type marker
            sample = period.get("start") or period.get("end") or ""
            declared = CriteriaType.DATE if len(sample) == 10 else CriteriaType.DATETIME
        return name, InclusionCriteriaValue(
            type=declared,
            operator=operator,
            minValue=period.get("start"),
            maxValue=period.get("end"),
        )
    for criteria_type, key in _VALUE_KEYS.items():
        if key in value_part:
            return name, InclusionCriteriaValue(
                type=declared or criteria_type,
                value=value_part[key],
                operator=operator,
                valueSetUrl=value_set,
            )
    logger.warning("Unhandled parametrisation value for parameter %s: %s", name, value_part)
    return name, None


def _declared_type(type_part: dict[str, Any] | None, name: str | None) -> CriteriaType | None:
    code = (type_part or {}).get("valueCode")
    if not code:
        return None
    try:
        return CriteriaType(code)
    except ValueError:
        logger.warning("Unknown criteria type %r for parameter %s", code, name)
        return None


def get_logical_operator(characteristic: Characteristic) -> str:
    """AND / OR / XOR label of a combination node, empty for anything else."""
    if not is_combination(characteristic):
        return ""
    definition = characteristic["definitionByCombination"]
    code = definition.get("code")
    if code == "all-of":
        return "AND"
    if code == "any-of":
        has_xor = any(
            e.get("url") == XOR_EXTENSION and e.get("valueBoolean") is True
            for e in definition.get("extension") or []
        )
        return "XOR" if has_xor else "OR"
    return ""


def summarize_characteristics(
    characteristics: list[Characteristic] | None, path: tuple[int, ...] = ()
) -> list[dict[str, Any]]:
    """Flatten a characteristic tree into display nodes, each with its index path."""
    nodes: list[dict[str, Any]] = []
    for index, characteristic in enumerate(characteristics or []):
        node_path = [*path, index]
        node: dict[str, Any] = {
            "path": node_path,
            "description": characteristic.get("description"),
            "exclude": bool(characteristic.get("exclude", False)),
            "linkId": characteristic.get("linkId"),
        }
        if is_combination(characteristic):
            node["kind"] = "combination"
            node["operator"] = get_logical_operator(characteristic)
            node["children"] = summarize_characteristics(
                characteristic["definitionByCombination"].get("characteristic"),
                tuple(node_path),
            )
        elif "definitionCanonical" in characteristic:
            node["kind"] = "canonical"
            node["canonical"] = characteristic["definitionCanonical"]
        elif "definitionExpression" in characteristic:
            definition = characteristic["definitionExpression"]
            parameter, value = read_parametrisation(definition)
            node["kind"] = "expression"
            node["expression"] = definition.get("expression")
            node["library"] = definition.get("reference")
            node["parameter"] = parameter
            node["criteriaValue"] = value.model_dump(mode="json") if value else None
        else:
            node["kind"] = "unknown"
        nodes.append(node)
    return nodes
