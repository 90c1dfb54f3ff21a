"""Field resolution and value coercion shared by conditions and actions.

Conditions read values through ``FieldResolver.resolve`` and ``normalize_value``;
actions write values through ``coerce_for_column`` / ``coerce_custom_value``.
Both sides agree on how numbers, dates and booleans look, so a value written
by an action compares equal to the same literal in a later condition.
"""

from __future__ import annotations

import math
import re
import uuid
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any

from app.crm.repositories import EntitySnapshot, column_python_type


class _NotFound:
    _instance: _NotFound | None = None

    def __new__(cls) -> _NotFound:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "NOT_FOUND"


NOT_FOUND: Any = _NotFound()

CUSTOM_FIELD_PREFIXES = ("custom_fields.", "customFields.")

FIELD_ALIASES: dict[str, dict[str, str]] = {
    "contact": {"tag": "tags", "score": "lead_score", "status": "lead_status"},
    "deal": {"amount": "value", "stage": "stage_id", "close_date": "expected_close_date"},
}

_CAMEL_BOUNDARY_RE = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")
_NUMBER_RE = re.compile(r"^[+-]?(\d+(\.\d*)?|\.\d+)([eE][+-]?\d+)?$")


def to_snake_case(name: str) -> str:
    return _CAMEL_BOUNDARY_RE.sub("_", name).lower()


def parse_number(value: str) -> float | None:
    candidate = value.strip()
    if not _NUMBER_RE.match(candidate):
        return None
    parsed = float(candidate)
    return parsed if math.isfinite(parsed) else None


def parse_iso_temporal(value: str) -> str | None:
    candidate = value.strip()
    if len(candidate) < 10:
        return None
    try:
        if len(candidate) == 10:
            return date.fromisoformat(candidate).isoformat()
        return datetime.fromisoformat(candidate).isoformat()
    except ValueError:
        return None


def normalize_value(value: Any) -> Any:
    if value is NOT_FOUND or value is None or isinstance(value, bool):
        return value
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, int):
        return float(value)
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, str):
        as_number = parse_number(value)
        if as_number is not None:
            return as_number
        as_temporal = parse_iso_temporal(value)
        if as_temporal is not None:
            return as_temporal
        return value
    if isinstance(value, dict):
        return {key: normalize_value(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [normalize_value(item) for item in value]
    return value


def coerce_for_column(entity_type: str, field_name: str, value: Any) -> Any:
    """Convert an action value to the Python type of the target column.

    Raises ``ValueError`` when the value cannot be represented.
    """

    python_type = column_python_type(entity_type, field_name)
    if value is None or python_type is None:
        return value
    if python_type is uuid.UUID:
        return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))
    if python_type is datetime:
        return value if isinstance(value, datetime) else datetime.fromisoformat(str(value))
    if python_type is date:
        if isinstance(value, datetime):
            return value.date()
        return value if isinstance(value, date) else date.fromisoformat(str(value))
    if python_type is Decimal:
        try:
            return Decimal(str(value))
        except InvalidOperation as exc:
            raise ValueError(f"invalid number for {field_name}: {value!r}") from exc
    if python_type is bool:
        if isinstance(value, bool):
            return value
        if isinstance(value, str) and value.lower() in {"true", "false"}:
            return value.lower() == "true"
        raise ValueError(f"invalid boolean for {field_name}: {value!r}")
    if python_type is int:
        if isinstance(value, bool):
            raise ValueError(f"invalid integer for {field_name}: {value!r}")
        number = float(value) if isinstance(value, (int, float, Decimal)) else parse_number(str(value))
        if number is None or not float(number).is_integer():
            raise ValueError(f"invalid integer for {field_name}: {value!r}")
        return int(number)
    if python_type is float:
        number = parse_number(str(value))
        if number is None:
            raise ValueError(f"invalid number for {field_name}: {value!r}")
        return number
    if python_type is str:
        if isinstance(value, (dict, list)):
            raise ValueError(f"invalid text for {field_name}")
        return str(value)
    return value


def coerce_custom_value(value: Any) -> Any:
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


class FieldResolver:
    """Maps ``(entity, field name)`` to a normalized value or ``NOT_FOUND``."""

    def resolve(self, entity: EntitySnapshot, field_name: str) -> Any:
        name = field_name.strip()
        for prefix in CUSTOM_FIELD_PREFIXES:
            if name.startswith(prefix):
                key = name[len(prefix):]
                if not key or key not in entity.custom_fields:
                    return NOT_FOUND
                return normalize_value(entity.custom_fields[key])

        column = self.column_name(entity.entity_type, name)
        if column is None:
            return NOT_FOUND
        if column == "tags":
            return list(entity.tags)
        if column not in entity.values:
            return NOT_FOUND
        return normalize_value(entity.values[column])

    def column_name(self, entity_type: str, field_name: str) -> str | None:
        candidate = to_snake_case(field_name.strip())
        candidate = FIELD_ALIASES.get(entity_type, {}).get(candidate, candidate)
        if candidate == "tags":
            return candidate if entity_type == "contact" else None
        if candidate in {"custom_fields", "row_version", "deleted_at"}:
            return None
        if column_python_type(entity_type, candidate) is None:
            return None
        return candidate

    @staticmethod
    def custom_field_key(field_name: str) -> str | None:
        for prefix in CUSTOM_FIELD_PREFIXES:
            if field_name.startswith(prefix):
                return field_name[len(prefix):] or None
        return None


field_resolver = FieldResolver()
