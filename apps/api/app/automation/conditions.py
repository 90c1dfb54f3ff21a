from __future__ import annotations

from collections.abc import Sequence
from typing import Any

from app.automation.fields import NOT_FOUND, FieldResolver, field_resolver, normalize_value
from app.automation.schemas import AutomationCondition
from app.crm.repositories import EntitySnapshot, serialize_value


_ABSENCE_OPERATORS = {"is_empty", "not_contains", "not_has_tag"}


def is_empty_value(value: Any) -> bool:
    if value is None or value is NOT_FOUND:
        return True
    if isinstance(value, str):
        return value.strip() == ""
    if isinstance(value, (list, tuple, set, dict)):
        return len(value) == 0
    return False


def values_equal(left: Any, right: Any) -> bool:
    if isinstance(left, bool) and isinstance(right, str) and right.lower() in {"true", "false"}:
        return left == (right.lower() == "true")
    if isinstance(right, bool) and isinstance(left, str) and left.lower() in {"true", "false"}:
        return right == (left.lower() == "true")
    if isinstance(left, bool) != isinstance(right, bool):
        return False
    return left == right


def _as_number(value: Any) -> float | None:
    if isinstance(value, bool) or not isinstance(value, float):
        return None
    return value


class ConditionEvaluator:
    """Left fold over a condition list.

    Each condition's ``logic`` joins it to the next one. A term is skipped only
    when its value cannot change the running result: ``False AND x`` and
    ``True OR x``.
    """

    def __init__(self, resolver: FieldResolver | None = None) -> None:
        self.resolver = resolver or field_resolver

    def evaluate(self, conditions: Sequence[AutomationCondition], entity: EntitySnapshot) -> bool:
        result, _ = self.trace(conditions, entity)
        return result

    def trace(
        self, conditions: Sequence[AutomationCondition], entity: EntitySnapshot
    ) -> tuple[bool, list[dict[str, Any]]]:
        if not conditions:
            return True, []

        entries: list[dict[str, Any]] = []
        accumulated = False
        for index, condition in enumerate(conditions):
            if index == 0:
                accumulated = self._record(entries, index, condition, entity)
                continue

            connector = conditions[index - 1].logic
            if (connector == "AND" and not accumulated) or (connector == "OR" and accumulated):
                entries.append(self._skipped_entry(index, condition, connector))
                continue

            outcome = self._record(entries, index, condition, entity, connector=connector)
            accumulated = (accumulated and outcome) if connector == "AND" else (accumulated or outcome)

        return accumulated, entries

    def check(self, condition: AutomationCondition, entity: EntitySnapshot) -> bool:
        outcome, _ = self._check(condition, entity)
        return outcome

    def _record(
        self,
        entries: list[dict[str, Any]],
        index: int,
        condition: AutomationCondition,
        entity: EntitySnapshot,
        *,
        connector: str | None = None,
    ) -> bool:
        outcome, actual = self._check(condition, entity)
        entries.append(
            {
                "index": index,
                "field": condition.field,
                "operator": condition.operator,
                "value": serialize_value(condition.value),
                "actual": None if actual is NOT_FOUND else serialize_value(actual),
                "found": actual is not NOT_FOUND,
                "connector": connector,
                "result": outcome,
                "skipped": False,
            }
        )
        return outcome

    def _skipped_entry(self, index: int, condition: AutomationCondition, connector: str) -> dict[str, Any]:
        return {
            "index": index,
            "field": condition.field,
            "operator": condition.operator,
            "value": serialize_value(condition.value),
            "connector": connector,
            "result": None,
            "skipped": True,
        }

    def _check(self, condition: AutomationCondition, entity: EntitySnapshot) -> tuple[bool, Any]:
        operator = condition.operator
        if operator in {"has_tag", "not_has_tag"}:
            present = condition.value is not None and str(condition.value) in entity.tags
            return (present if operator == "has_tag" else not present), list(entity.tags)

        actual = self.resolver.resolve(entity, condition.field)
        if actual is NOT_FOUND:
            return operator in _ABSENCE_OPERATORS, actual

        if operator == "is_empty":
            return is_empty_value(actual), actual
        if operator == "is_not_empty":
            return not is_empty_value(actual), actual
        if operator in {"contains", "not_contains"}:
            found = self._contains(entity, condition)
            return (found if operator == "contains" else not found), actual

        expected = normalize_value(condition.value)
        if operator == "equals":
            return values_equal(actual, expected), actual
        if operator == "not_equals":
            return not values_equal(actual, expected), actual

        left = _as_number(actual)
        right = _as_number(expected)
        if left is None or right is None:
            return False, actual
        if operator == "greater_than":
            return left > right, actual
        if operator == "less_than":
            return left < right, actual
        return False, actual

    def _contains(self, entity: EntitySnapshot, condition: AutomationCondition) -> bool:
        if condition.value is None:
            return False
        raw = self._raw_value(entity, condition.field)
        if isinstance(raw, str):
            return str(condition.value) in raw
        if isinstance(raw, (list, tuple, set)):
            expected = normalize_value(condition.value)
            return any(values_equal(normalize_value(item), expected) for item in raw)
        return False

    def _raw_value(self, entity: EntitySnapshot, field_name: str) -> Any:
        custom_key = self.resolver.custom_field_key(field_name.strip())
        if custom_key is not None:
            return entity.custom_fields.get(custom_key)
        column = self.resolver.column_name(entity.entity_type, field_name)
        if column == "tags":
            return list(entity.tags)
        if column is None:
            return None
        return entity.values.get(column)


condition_evaluator = ConditionEvaluator()
