"""
Typed-parameter form dispatcher.

``render_criteria_controls`` picks the control set matching a criteria
value's ``type`` and describes it as a list of ``FieldControl`` objects that
the client renders as-is. ``apply_edit`` folds one user edit back into a new
criteria value, normalizing raw form input to the type's value shape.

Validation is not decided here: callers pass the current field errors in, and
may pass a ``validate_field(name, value, required)`` callback to ``apply_edit``.
"""

from __future__ import annotations

import logging
from datetime import date, datetime
from enum import Enum
from typing import Any, Callable

from pydantic import BaseModel, Field

from study_designer.schemas.criteria import (
    COMPARABLE_TYPES,
    DEFAULT_OPERATORS,
    CodeOption,
    CriteriaType,
    InclusionCriteriaValue,
    is_range_operator,
)

logger = logging.getLogger(__name__)

ValidateField = Callable[[str, Any, bool], Any]

NO_CODES_WARNING = "No codes could be loaded for this ValueSet; enter the code manually."


class Widget(str, Enum):
    SWITCH = "switch"
    NUMBER = "number"
    DATE = "date"
    DATETIME = "datetime-local"
    TEXT = "text"
    SELECT = "select"


class ControlKind(str, Enum):
    BOOLEAN_SWITCH = "boolean-switch"
    INTEGER_INPUT = "integer-input"
    DATE_PICKER = "date-picker"
    DATETIME_PICKER = "datetime-picker"
    TEXT_INPUT = "text-input"
    QUANTITY_INPUT = "quantity-input"
    CODE_SELECT = "code-select"


class FieldControl(BaseModel):
    name: str
    widget: Widget
    label: str
    value: Any = None
    required: bool = False
    error: str | None = None
    options: list[CodeOption] = Field(default_factory=list)
    warning: str | None = None
    step: str | None = None


class RenderedCriteria(BaseModel):
    type: CriteriaType
    control: ControlKind
    fields: list[FieldControl]


class ControlOptions(BaseModel):
    """Remote data a control set may need, loaded by the caller beforehand."""

    comparators: list[CodeOption] = Field(default_factory=list)
    comparator_warning: str | None = None
    codes: list[CodeOption] = Field(default_factory=list)
    codes_warning: str | None = None


# Edited field -> key under which its validation error is reported.
ERROR_KEYS: dict[str, str] = {
    "value": "criteriaValue",
    "minValue": "minValue",
    "maxValue": "maxValue",
    "operator": "criteriaOperator",
    "valueSetUrl": "valueSetUrl",
    "code": "criteriaCode",
    "quantity.value": "criteriaQuantityValue",
}


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------

def _operator_control(
    value: InclusionCriteriaValue, errors: dict[str, str], options: ControlOptions
) -> FieldControl:
    comparators = options.comparators or [
        CodeOption(code=code) for code in DEFAULT_OPERATORS[value.type]
    ]
    return FieldControl(
        name="operator",
        widget=Widget.SELECT,
        label="Comparison operator",
        value=value.operator,
        error=errors.get(ERROR_KEYS["operator"]),
        options=comparators,
        warning=options.comparator_warning,
    )


def _comparable_controls(
    value: InclusionCriteriaValue,
    errors: dict[str, str],
    options: ControlOptions,
    widget: Widget,
) -> list[FieldControl]:
    fields = [_operator_control(value, errors, options)]
    if is_range_operator(value.operator):
        fields.append(
            FieldControl(
                name="minValue",
                widget=widget,
                label="Min",
                value=value.minValue,
                required=True,
                error=errors.get(ERROR_KEYS["minValue"]),
            )
        )
        fields.append(
            FieldControl(
                name="maxValue",
                widget=widget,
                label="Max",
                value=value.maxValue,
                required=True,
                error=errors.get(ERROR_KEYS["maxValue"]),
            )
        )
    else:
        fields.append(
            FieldControl(
                name="value",
                widget=widget,
                label="Value",
                value=value.value,
                required=True,
                error=errors.get(ERROR_KEYS["value"]),
            )
        )
    return fields


def _render_boolean(value, errors, options) -> RenderedCriteria:
    return RenderedCriteria(
        type=value.type,
        control=ControlKind.BOOLEAN_SWITCH,
        fields=[
            FieldControl(
                name="value",
                widget=Widget.SWITCH,
                label="Value",
                value=bool(value.value),
            )
        ],
    )


def _render_integer(value, errors, options) -> RenderedCriteria:
    return RenderedCriteria(
        type=value.type,
        control=ControlKind.INTEGER_INPUT,
        fields=_comparable_controls(value, errors, options, Widget.NUMBER),
    )


def _render_date(value, errors, options) -> RenderedCriteria:
    return RenderedCriteria(
        type=value.type,
        control=ControlKind.DATE_PICKER,
        fields=_comparable_controls(value, errors, options, Widget.DATE),
    )


def _render_datetime(value, errors, options) -> RenderedCriteria:
    return RenderedCriteria(
        type=value.type,
        control=ControlKind.DATETIME_PICKER,
        fields=_comparable_controls(value, errors, options, Widget.DATETIME),
    )


def _render_string(value, errors, options) -> RenderedCriteria:
    return RenderedCriteria(
        type=value.type,
        control=ControlKind.TEXT_INPUT,
        fields=[
            FieldControl(
                name="value",
                widget=Widget.TEXT,
                label="Value",
                value=value.value,
                required=True,
                error=errors.get(ERROR_KEYS["value"]),
            )
        ],
    )


def _render_quantity(value, errors, options) -> RenderedCriteria:
    quantity = value.value if isinstance(value.value, dict) else {}
    return RenderedCriteria(
        type=value.type,
        control=ControlKind.QUANTITY_INPUT,
        fields=[
            FieldControl(
                name="quantity.value",
                widget=Widget.NUMBER,
                label="Value",
                value=quantity.get("value"),
                required=True,
                error=errors.get(ERROR_KEYS["quantity.value"]),
                step="any",
            ),
            FieldControl(
                name="quantity.unit",
                widget=Widget.TEXT,
                label="Unit",
                value=quantity.get("unit"),
            ),
            FieldControl(
                name="quantity.system",
                widget=Widget.TEXT,
                label="System",
                value=quantity.get("system"),
            ),
        ],
    )


def _selected_code(value: InclusionCriteriaValue) -> str | None:
    if isinstance(value.value, dict):
        return value.value.get("code")
    return value.value


def _render_code(value, errors, options) -> RenderedCriteria:
    if options.codes:
        field = FieldControl(
            name="code",
            widget=Widget.SELECT,
            label="Code",
            value=_selected_code(value),
            required=True,
            error=errors.get(ERROR_KEYS["code"]),
            options=options.codes,
        )
    else:
        warning = options.codes_warning
        if warning is None and value.valueSetUrl:
            warning = NO_CODES_WARNING
        field = FieldControl(
            name="code",
            widget=Widget.TEXT,
            label="Code",
            value=_selected_code(value),
            required=True,
            error=errors.get(ERROR_KEYS["code"]),
            warning=warning,
        )
    return RenderedCriteria(type=value.type, control=ControlKind.CODE_SELECT, fields=[field])


_RENDERERS: dict[CriteriaType, Callable[..., RenderedCriteria]] = {
    CriteriaType.BOOLEAN: _render_boolean,
    CriteriaType.INTEGER: _render_integer,
    CriteriaType.DATE: _render_date,
    CriteriaType.DATETIME: _render_datetime,
    CriteriaType.STRING: _render_string,
    CriteriaType.QUANTITY: _render_quantity,
    CriteriaType.CODE: _render_code,
    CriteriaType.CODING: _render_code,
}


def render_criteria_controls(
    value: InclusionCriteriaValue,
    errors: dict[str, str] | None = None,
    options: ControlOptions | None = None,
) -> RenderedCriteria:
    """Describe the one control set matching ``value.type``."""
    return _RENDERERS[value.type](value, errors or {}, options or ControlOptions())


def needs_comparators(value: InclusionCriteriaValue) -> bool:
    return value.type in COMPARABLE_TYPES


def needs_codes(value: InclusionCriteriaValue) -> bool:
    return value.type in (CriteriaType.CODE, CriteriaType.CODING) and bool(value.valueSetUrl)


# ---------------------------------------------------------------------------
# Normalization of raw form input
# ---------------------------------------------------------------------------

_TRUE = {"true", "1", "on", "yes"}
_FALSE = {"false", "0", "off", "no", ""}


def _blank(raw: Any) -> bool:
    return raw is None or (isinstance(raw, str) and not raw.strip())


def _to_boolean(raw: Any) -> bool:
    if isinstance(raw, bool):
        return raw
    if raw is None:
        return False
    text = str(raw).strip().lower()
    if text in _TRUE:
        return True
    if text in _FALSE:
        return False
    raise ValueError(f"Not a boolean: {raw!r}")


def _to_integer(raw: Any) -> int | None:
    if _blank(raw):
        return None
    if isinstance(raw, bool):
        raise ValueError(f"Not an integer: {raw!r}")
    if isinstance(raw, float):
        if not raw.is_integer():
            raise ValueError(f"Not an integer: {raw!r}")
        return int(raw)
    if isinstance(raw, int):
        return raw
    try:
        return int(str(raw).strip())
    except ValueError:
        raise ValueError(f"Not an integer: {raw!r}") from None


def _to_number(raw: Any) -> float | None:
    if _blank(raw):
        return None
    if isinstance(raw, bool):
        raise ValueError(f"Not a number: {raw!r}")
    try:
        return float(raw)
    except (TypeError, ValueError):
        raise ValueError(f"Not a number: {raw!r}") from None


def _to_date(raw: Any) -> str | None:
    if _blank(raw):
        return None
    if isinstance(raw, datetime):
        return raw.date().isoformat()
    if isinstance(raw, date):
        return raw.isoformat()
    try:
        return date.fromisoformat(str(raw).strip()).isoformat()
    except ValueError:
        raise ValueError(f"Not a date (YYYY-MM-DD): {raw!r}") from None


def _to_datetime(raw: Any) -> str | None:
    if _blank(raw):
        return None
    if isinstance(raw, datetime):
        return raw.isoformat()
    if isinstance(raw, date):
        return raw.isoformat()
    text = str(raw).strip()
    try:
        if len(text) == 10:
            return date.fromisoformat(text).isoformat()
        return datetime.fromisoformat(text).isoformat()
    except ValueError:
        raise ValueError(f"Not a date-time: {raw!r}") from None


def _to_text(raw: Any) -> str | None:
    if _blank(raw):
        return None
    return str(raw)


def _to_coding(raw: Any) -> dict[str, str] | None:
    if _blank(raw):
        return None
    if isinstance(raw, dict):
        if not raw.get("code"):
            raise ValueError("A coding needs a code")
        coding = {"code": str(raw["code"])}
        if raw.get("system"):
            coding["system"] = str(raw["system"])
        return coding
    return {"code": str(raw)}


def _to_quantity(raw: Any) -> dict[str, Any]:
    if _blank(raw):
        return {}
    if not isinstance(raw, dict):
        raise ValueError(f"Not a quantity: {raw!r}")
    quantity: dict[str, Any] = {}
    number = _to_number(raw.get("value"))
    if number is not None:
        quantity["value"] = number
    for key in ("unit", "system", "code"):
        if raw.get(key):
            quantity[key] = str(raw[key])
    return quantity


_NORMALIZERS: dict[CriteriaType, Callable[[Any], Any]] = {
    CriteriaType.BOOLEAN: _to_boolean,
    CriteriaType.INTEGER: _to_integer,
    CriteriaType.DATE: _to_date,
    CriteriaType.DATETIME: _to_datetime,
    CriteriaType.CODE: _to_text,
    CriteriaType.CODING: _to_coding,
    CriteriaType.STRING: _to_text,
    CriteriaType.QUANTITY: _to_quantity,
}


def normalize_input(criteria_type: CriteriaType, raw: Any) -> Any:
    """Convert raw form input into the value shape of ``criteria_type``."""
    return _NORMALIZERS[criteria_type](raw)


# ---------------------------------------------------------------------------
# Edits
# ---------------------------------------------------------------------------

QUANTITY_FIELDS = ("quantity.value", "quantity.unit", "quantity.system")


def _edit_quantity(value: InclusionCriteriaValue, field: str, raw: Any) -> Any:
    if value.type is not CriteriaType.QUANTITY:
        raise ValueError(f"'{field}' only applies to quantity criteria, not {value.type.value}")
    quantity = dict(value.value) if isinstance(value.value, dict) else {}
    sub_field = field.split(".", 1)[1]
    new_sub = _to_number(raw) if sub_field == "value" else _to_text(raw)
    if new_sub is None:
        quantity.pop(sub_field, None)
    else:
        quantity[sub_field] = new_sub
    if sub_field == "unit":
        if new_sub is None:
            quantity.pop("code", None)
        else:
            quantity["code"] = new_sub
    return quantity


def _edit_code(value: InclusionCriteriaValue, raw: Any, code_system: str | None) -> Any:
    if value.type not in (CriteriaType.CODE, CriteriaType.CODING):
        raise ValueError(f"'code' only applies to code criteria, not {value.type.value}")
    code = _to_text(raw)
    if code is None:
        return None
    if value.type is CriteriaType.CODING:
        return {"system": code_system, "code": code} if code_system else {"code": code}
    return code


def apply_edit(
    value: InclusionCriteriaValue,
    field: str,
    raw: Any,
    validate_field: ValidateField | None = None,
    code_system: str | None = None,
) -> InclusionCriteriaValue:
    """
    Return a new criteria value with exactly ``field`` changed.

    ``field`` is one of ``operator``, ``value``, ``minValue``, ``maxValue``,
    ``valueSetUrl``, ``code`` (code selection) or ``quantity.value`` /
    ``quantity.unit`` / ``quantity.system``. ``code_system`` is the system of
    the ValueSet the code was picked from, if known.
    """
    required = True
    if field == "operator":
        key, new = "operator", _to_text(raw)
        required = False
    elif field == "valueSetUrl":
        key, new = "valueSetUrl", _to_text(raw)
        required = False
    elif field in ("value", "minValue", "maxValue"):
        key, new = field, normalize_input(value.type, raw)
    elif field in QUANTITY_FIELDS:
        key, new = "value", _edit_quantity(value, field, raw)
        required = field == "quantity.value"
    elif field == "code":
        key, new = "value", _edit_code(value, raw, code_system)
    else:
        raise ValueError(f"Unknown criteria field: {field}")

    updated = value.model_copy(update={key: new})
    if validate_field is not None:
        checked = new
        if field in QUANTITY_FIELDS:
            checked = new.get(field.split(".", 1)[1])
        elif field == "code" and isinstance(new, dict):
            checked = new.get("code")
        validate_field(ERROR_KEYS.get(field, field), checked, required)
    return updated
