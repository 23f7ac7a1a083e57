"""Helpers for customer and template records."""
from __future__ import annotations

import re
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Mapping

CUSTOMER_MANAGED_FIELDS = ("id", "consultantId", "createdAt", "updatedAt")
TEMPLATE_MANAGED_FIELDS = ("id", "createdAt", "updatedAt")
FORM_FIELD_ALIGNMENTS = ("left", "center", "right")

_NUMERIC_ID = re.compile(r"^-?\d+(?:\.\d+)?$")
_CELL_REFERENCE = re.compile(r"^[A-Z]{1,3}[1-9][0-9]*$")


class ValidationError(ValueError):
    """Raised when a record or template is malformed."""


def normalise_id(value: Any) -> str:
    """Return a comparable string form of a record id.

    ``5``, ``"5"`` and ``"5.0"`` all normalise to ``"5"``.
    """

    if value is None or isinstance(value, bool):
        return ""
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        return str(int(value)) if value.is_integer() else repr(value)
    text = str(value).strip()
    if _NUMERIC_ID.match(text):
        number = float(text)
        if number.is_integer():
            return str(int(number))
    return text


def same_id(left: Any, right: Any) -> bool:
    return normalise_id(left) == normalise_id(right)


def new_id() -> str:
    return str(uuid.uuid4())


def utc_now_iso() -> str:
    value = datetime.now(timezone.utc).isoformat(timespec="milliseconds")
    return value.replace("+00:00", "Z")


def _require_mapping(value: Any, what: str) -> Mapping[str, Any]:
    if not isinstance(value, Mapping):
        raise ValidationError(f"{what} must be a mapping")
    for key in value:
        if not isinstance(key, str) or not key:
            raise ValidationError(f"{what} has an invalid field name: {key!r}")
    return value


def _require_text(data: Mapping[str, Any], key: str, what: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{what} requires a non-empty '{key}'")
    return value.strip()


def clean_customer_fields(fields: Any, *, creating: bool) -> Dict[str, Any]:
    """Validate customer input and drop the repository-managed fields."""

    data = _require_mapping(fields, "Customer")
    cleaned = {key: value for key, value in data.items() if key not in CUSTOMER_MANAGED_FIELDS}
    if creating or "name" in cleaned:
        cleaned["name"] = _require_text(cleaned, "name", "Customer")
    for key in ("checklist", "subfolders"):
        if key in cleaned and cleaned[key] is not None and not isinstance(cleaned[key], Mapping):
            raise ValidationError(f"Customer '{key}' must be a mapping")
    return cleaned


def clean_template_fields(fields: Any, *, creating: bool, what: str) -> Dict[str, Any]:
    data = _require_mapping(fields, what)
    cleaned = {key: value for key, value in data.items() if key not in TEMPLATE_MANAGED_FIELDS}
    if creating or "name" in cleaned:
        cleaned["name"] = _require_text(cleaned, "name", what)
    return cleaned


def _optional_number(data: Dict[str, Any], key: str, *, positive: bool = False) -> None:
    if key not in data or data[key] is None:
        return
    value = data[key]
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError(f"Field '{key}' must be a number")
    if positive and value <= 0:
        raise ValidationError(f"Field '{key}' must be positive")


def clean_form_field(field: Any) -> Dict[str, Any]:
    data = dict(_require_mapping(field, "Form field"))
    data.pop("id", None)
    data["label"] = _require_text(data, "label", "Form field")
    if "customerField" in data and not isinstance(data["customerField"], str):
        raise ValidationError("Form field 'customerField' must be text")
    _optional_number(data, "x")
    _optional_number(data, "y")
    _optional_number(data, "fontSize", positive=True)
    align = data.get("align")
    if align is not None and align not in FORM_FIELD_ALIGNMENTS:
        raise ValidationError(f"Form field 'align' must be one of {', '.join(FORM_FIELD_ALIGNMENTS)}")
    return data


def clean_excel_mapping(mapping: Any) -> Dict[str, Any]:
    data = dict(_require_mapping(mapping, "Excel mapping"))
    data.pop("id", None)
    data["customerField"] = _require_text(data, "customerField", "Excel mapping")
    cell = _require_text(data, "cell", "Excel mapping").upper()
    if not _CELL_REFERENCE.match(cell):
        raise ValidationError(f"Excel mapping cell {cell!r} is not a cell reference")
    data["cell"] = cell
    sheet_name = data.get("sheetName")
    if sheet_name is not None and not isinstance(sheet_name, str):
        raise ValidationError("Excel mapping 'sheetName' must be text")
    return data


__all__ = [
    "CUSTOMER_MANAGED_FIELDS",
    "ValidationError",
    "clean_customer_fields",
    "clean_excel_mapping",
    "clean_form_field",
    "clean_template_fields",
    "new_id",
    "normalise_id",
    "same_id",
    "utc_now_iso",
]
