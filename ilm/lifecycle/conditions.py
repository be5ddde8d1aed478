"""
Declarative custom conditions for lifecycle policies.

A custom condition is a small JSON document evaluated against one partition.
Leaves compare a typed partition field with a literal; composites combine
leaves with all/any/not:

    {"all": [
        {"field": "num_rows", "op": ">", "value": 1000000},
        {"not": {"field": "location", "op": "in", "value": ["TBS_COLD"]}}
    ]}

Conditions are parsed and type-checked when a policy is written, so a stored
condition can only reference known fields with literals of the right type.
"""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from typing import Any, Mapping

from ilm.lifecycle.errors import InvalidCustomCondition

# Partition fields a condition may reference, with their value types
FIELD_TYPES: dict[str, type] = {
    "age_days": int,
    "age_months": int,
    "num_rows": int,
    "read_count": int,
    "write_count": int,
    "size_mb": float,
    "location": str,
    "codec": str,
    "temperature": str,
    "partition_name": str,
    "read_only": bool,
}

ORDERING_OPERATORS = {"<", "<=", ">", ">="}
EQUALITY_OPERATORS = {"=", "!="}
MEMBERSHIP_OPERATORS = {"in", "not in"}
VALID_OPERATORS = ORDERING_OPERATORS | EQUALITY_OPERATORS | MEMBERSHIP_OPERATORS


def _is_numeric(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _literal_matches(field_type: type, value: Any) -> bool:
    if field_type in (int, float):
        return _is_numeric(value)
    return isinstance(value, field_type)


class Condition(ABC):
    """A predicate over a partition context."""

    @abstractmethod
    def matches(self, context: Mapping[str, Any]) -> bool:
        """Evaluate the condition against a partition context."""

    @abstractmethod
    def to_dict(self) -> dict[str, Any]:
        """Convert back to the document form."""

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True)


class Comparison(Condition):
    """Compare one field against a literal."""

    def __init__(self, field: str, op: str, value: Any):
        if field not in FIELD_TYPES:
            raise InvalidCustomCondition(
                f"Unknown field: {field}. Valid fields: {', '.join(sorted(FIELD_TYPES))}",
                field="custom_condition",
            )
        if op not in VALID_OPERATORS:
            raise InvalidCustomCondition(
                f"Invalid operator: {op}. Valid operators: {', '.join(sorted(VALID_OPERATORS))}",
                field="custom_condition",
            )

        field_type = FIELD_TYPES[field]
        if op in ORDERING_OPERATORS and field_type not in (int, float):
            raise InvalidCustomCondition(
                f"Operator {op} needs a numeric field, {field} is {field_type.__name__}",
                field="custom_condition",
            )
        if op in MEMBERSHIP_OPERATORS:
            if not isinstance(value, list) or not value:
                raise InvalidCustomCondition(
                    f"Operator {op} needs a non-empty list value", field="custom_condition"
                )
            literals = value
        else:
            literals = [value]
        for literal in literals:
            if not _literal_matches(field_type, literal):
                raise InvalidCustomCondition(
                    f"Value {literal!r} does not match type {field_type.__name__} of {field}",
                    field="custom_condition",
                )

        self.field = field
        self.op = op
        self.value = value

    def matches(self, context: Mapping[str, Any]) -> bool:
        actual = context.get(self.field)
        if actual is None:
            return False

        if self.op == "=":
            return actual == self.value
        elif self.op == "!=":
            return actual != self.value
        elif self.op == "<":
            return actual < self.value
        elif self.op == "<=":
            return actual <= self.value
        elif self.op == ">":
            return actual > self.value
        elif self.op == ">=":
            return actual >= self.value
        elif self.op == "in":
            return actual in self.value
        return actual not in self.value

    def to_dict(self) -> dict[str, Any]:
        return {"field": self.field, "op": self.op, "value": self.value}

    def __repr__(self) -> str:
        return f"Comparison({self.field} {self.op} {self.value!r})"


class AllOf(Condition):
    """Every inner condition must match."""

    def __init__(self, conditions: list[Condition]):
        self.conditions = conditions

    def matches(self, context: Mapping[str, Any]) -> bool:
        return all(c.matches(context) for c in self.conditions)

    def to_dict(self) -> dict[str, Any]:
        return {"all": [c.to_dict() for c in self.conditions]}


class AnyOf(Condition):
    """At least one inner condition must match."""

    def __init__(self, conditions: list[Condition]):
        self.conditions = conditions

    def matches(self, context: Mapping[str, Any]) -> bool:
        return any(c.matches(context) for c in self.conditions)

    def to_dict(self) -> dict[str, Any]:
        return {"any": [c.to_dict() for c in self.conditions]}


class Not(Condition):
    """Negate an inner condition."""

    def __init__(self, inner: Condition):
        self.inner = inner

    def matches(self, context: Mapping[str, Any]) -> bool:
        return not self.inner.matches(context)

    def to_dict(self) -> dict[str, Any]:
        return {"not": self.inner.to_dict()}


def _build(node: Any) -> Condition:
    if not isinstance(node, dict):
        raise InvalidCustomCondition(
            f"Condition must be an object, got {type(node).__name__}", field="custom_condition"
        )

    if "all" in node or "any" in node:
        key = "all" if "all" in node else "any"
        if len(node) != 1:
            raise InvalidCustomCondition(
                f"'{key}' cannot be combined with other keys", field="custom_condition"
            )
        children = node[key]
        if not isinstance(children, list) or not children:
            raise InvalidCustomCondition(
                f"'{key}' needs a non-empty list", field="custom_condition"
            )
        built = [_build(child) for child in children]
        return AllOf(built) if key == "all" else AnyOf(built)

    if "not" in node:
        if len(node) != 1:
            raise InvalidCustomCondition(
                "'not' cannot be combined with other keys", field="custom_condition"
            )
        return Not(_build(node["not"]))

    missing = {"field", "op", "value"} - set(node)
    if missing:
        raise InvalidCustomCondition(
            f"Comparison is missing {', '.join(sorted(missing))}", field="custom_condition"
        )
    return Comparison(node["field"], node["op"], node["value"])


def parse_condition(document: str | dict[str, Any]) -> Condition:
    """
    Parse a custom condition document.

    Args:
        document: JSON text or an already-decoded dict

    Returns:
        Parsed Condition tree

    Raises:
        InvalidCustomCondition: If the document is malformed or ill-typed
    """
    if isinstance(document, str):
        try:
            document = json.loads(document)
        except json.JSONDecodeError as e:
            raise InvalidCustomCondition(
                f"Custom condition is not valid JSON: {e}", field="custom_condition"
            ) from e
    return _build(document)
