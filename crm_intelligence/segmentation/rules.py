"""
Segment rule grammar.

A rule is a finite tree of four node kinds:

    Comparison(field, operator, value) | And(children) | Or(children) | Not(child)

Evaluation is total: a missing value or a type mismatch (e.g. ``contains``
on a numeric field) yields False, never an exception. And/Or short-circuit
left to right; nodes are immutable so the order is not observable.

Stored form (schema version 1):

    {"version": 1,
     "rule": {"type": "and", "children": [
         {"type": "comparison", "field": "health_score", "operator": "gte", "value": 80},
         {"type": "not", "child": {"type": "comparison", "field": "tags",
                                    "operator": "contains", "value": "wholesale"}}]}}

Version 0 is the flat row list written by the original segment builder
(``{"rules": [{"field", "operator", "value": "<string>"}]}``), implicitly
AND-ed; it is upgraded on load.
"""

import math
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Tuple, Union

from crm_intelligence.core.exceptions import ValidationError

SCHEMA_VERSION = 1
LEGACY_SCHEMA_VERSION = 0
MAX_RULE_DEPTH = 32


class RuleField(str, Enum):
    HEALTH_LABEL = "health_label"
    HEALTH_SCORE = "health_score"
    TOTAL_SPENT = "total_spent"
    TOTAL_ORDERS = "total_orders"
    AVERAGE_ORDER_VALUE = "average_order_value"
    DAYS_SINCE_LAST_ORDER = "days_since_last_order"
    DAYS_SINCE_SIGNUP = "days_since_signup"
    STATUS = "status"
    TAGS = "tags"


NUMERIC_FIELDS = frozenset({
    RuleField.HEALTH_SCORE,
    RuleField.TOTAL_SPENT,
    RuleField.TOTAL_ORDERS,
    RuleField.AVERAGE_ORDER_VALUE,
    RuleField.DAYS_SINCE_LAST_ORDER,
    RuleField.DAYS_SINCE_SIGNUP,
})


class Operator(str, Enum):
    EQ = "eq"
    NEQ = "neq"
    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"
    CONTAINS = "contains"
    IN = "in"


ScalarValue = Union[str, int, float, bool]
RuleValue = Union[ScalarValue, Tuple[ScalarValue, ...]]


@dataclass(frozen=True)
class Comparison:
    field: RuleField
    operator: Operator
    value: RuleValue


@dataclass(frozen=True)
class And:
    children: Tuple["RuleNode", ...] = ()


@dataclass(frozen=True)
class Or:
    children: Tuple["RuleNode", ...] = ()


@dataclass(frozen=True)
class Not:
    child: "RuleNode"


RuleNode = Union[Comparison, And, Or, Not]


class RuleParseError(ValidationError):
    """Stored or submitted rule document does not fit the grammar."""

    def __init__(self, message: str, path: str = "rule", **kwargs):
        super().__init__(message, field=path, **kwargs)


# ==================== Evaluation ====================

def matches(attributes: Mapping[RuleField, Any], rule: RuleNode) -> bool:
    """Evaluate ``rule`` against one customer's attribute mapping."""
    match rule:
        case Comparison(field=field, operator=op, value=expected):
            return _compare(attributes.get(field), op, expected)
        case And(children=children):
            return all(matches(attributes, child) for child in children)
        case Or(children=children):
            return any(matches(attributes, child) for child in children)
        case Not(child=child):
            return not matches(attributes, child)
    return False


def _is_number(value: Any) -> bool:
    return (
        isinstance(value, (int, float))
        and not isinstance(value, bool)
        and math.isfinite(value)
    )


def _equal(actual: Any, expected: Any) -> Optional[bool]:
    """Typed equality; None when the operands are not comparable."""
    if _is_number(actual) and _is_number(expected):
        return actual == expected
    if isinstance(actual, str) and isinstance(expected, str):
        return actual.casefold() == expected.casefold()
    if isinstance(actual, bool) and isinstance(expected, bool):
        return actual == expected
    return None


def _compare(actual: Any, op: Operator, expected: Any) -> bool:
    if actual is None or expected is None:
        return False

    if op in (Operator.EQ, Operator.NEQ):
        equal = _equal(actual, expected)
        if equal is None:
            return False
        return equal if op is Operator.EQ else not equal

    if op in (Operator.GT, Operator.GTE, Operator.LT, Operator.LTE):
        if not (_is_number(actual) and _is_number(expected)):
            return False
        if op is Operator.GT:
            return actual > expected
        if op is Operator.GTE:
            return actual >= expected
        if op is Operator.LT:
            return actual < expected
        return actual <= expected

    if op is Operator.CONTAINS:
        if not isinstance(expected, str):
            return False
        if isinstance(actual, str):
            return expected.casefold() in actual.casefold()
        if isinstance(actual, (tuple, list, frozenset, set)):
            return any(_equal(item, expected) for item in actual)
        return False

    if op is Operator.IN:
        if not isinstance(expected, (tuple, list)):
            return False
        candidates = actual if isinstance(actual, (tuple, list, frozenset, set)) else (actual,)
        return any(_equal(item, option) for item in candidates for option in expected)

    return False


# ==================== Serialization ====================

def rule_to_dict(rule: RuleNode) -> Dict[str, Any]:
    match rule:
        case Comparison(field=field, operator=op, value=value):
            return {
                "type": "comparison",
                "field": field.value,
                "operator": op.value,
                "value": list(value) if isinstance(value, tuple) else value,
            }
        case And(children=children):
            return {"type": "and", "children": [rule_to_dict(child) for child in children]}
        case Or(children=children):
            return {"type": "or", "children": [rule_to_dict(child) for child in children]}
        case Not(child=child):
            return {"type": "not", "child": rule_to_dict(child)}
    raise TypeError(f"Not a rule node: {type(rule).__name__}")


def dump_rule(rule: RuleNode) -> Dict[str, Any]:
    """Versioned document for persistence."""
    return {"version": SCHEMA_VERSION, "rule": rule_to_dict(rule)}


def load_rule(document: Any) -> RuleNode:
    """
    Parse a stored or submitted rule document of any supported version.

    Raises:
        RuleParseError: document does not fit the grammar
    """
    if isinstance(document, list):
        return _load_legacy(document)

    if not isinstance(document, Mapping):
        raise RuleParseError("Rule document must be an object")

    version = document.get("version")
    if version is None and "rules" in document:
        version = LEGACY_SCHEMA_VERSION

    if version == LEGACY_SCHEMA_VERSION:
        return _load_legacy(document.get("rules"))
    if version == SCHEMA_VERSION:
        return rule_from_dict(document.get("rule"))

    raise RuleParseError(
        f"Unsupported rule schema version: {version!r}",
        path="version",
        supported=[LEGACY_SCHEMA_VERSION, SCHEMA_VERSION],
    )


def rule_from_dict(data: Any, path: str = "rule", depth: int = 0) -> RuleNode:
    if depth > MAX_RULE_DEPTH:
        raise RuleParseError(f"Rule nesting exceeds {MAX_RULE_DEPTH} levels", path=path)
    if not isinstance(data, Mapping):
        raise RuleParseError("Rule node must be an object", path=path)

    kind = data.get("type")
    if kind == "comparison":
        return Comparison(
            field=_parse_field(data.get("field"), f"{path}.field"),
            operator=_parse_operator(data.get("operator"), f"{path}.operator"),
            value=_parse_value(data.get("value"), f"{path}.value"),
        )
    if kind in ("and", "or"):
        children = data.get("children", [])
        if not isinstance(children, list):
            raise RuleParseError("children must be a list", path=f"{path}.children")
        parsed = tuple(
            rule_from_dict(child, f"{path}.children[{i}]", depth + 1)
            for i, child in enumerate(children)
        )
        return And(parsed) if kind == "and" else Or(parsed)
    if kind == "not":
        return Not(rule_from_dict(data.get("child"), f"{path}.child", depth + 1))

    raise RuleParseError(f"Unknown rule node type: {kind!r}", path=f"{path}.type")


def _parse_field(raw: Any, path: str) -> RuleField:
    try:
        return RuleField(raw)
    except ValueError:
        raise RuleParseError(
            f"Unknown field: {raw!r}", path=path, allowed=[f.value for f in RuleField]
        ) from None


def _parse_operator(raw: Any, path: str) -> Operator:
    try:
        return Operator(raw)
    except ValueError:
        raise RuleParseError(
            f"Unknown operator: {raw!r}", path=path, allowed=[o.value for o in Operator]
        ) from None


def _parse_value(raw: Any, path: str) -> RuleValue:
    if isinstance(raw, (str, int, float, bool)):
        if isinstance(raw, float) and not math.isfinite(raw):
            raise RuleParseError("Value must be finite", path=path)
        return raw
    if isinstance(raw, list):
        items = []
        for i, item in enumerate(raw):
            if isinstance(item, list):
                raise RuleParseError("Nested lists are not allowed", path=f"{path}[{i}]")
            items.append(_parse_value(item, f"{path}[{i}]"))
        return tuple(items)
    raise RuleParseError("Value must be a string, number, boolean or list of those", path=path)


def _load_legacy(rows: Any) -> RuleNode:
    if not isinstance(rows, list):
        raise RuleParseError("Legacy rules must be a list", path="rules")

    comparisons = []
    for i, row in enumerate(rows):
        path = f"rules[{i}]"
        if not isinstance(row, Mapping):
            raise RuleParseError("Legacy rule row must be an object", path=path)
        field = _parse_field(row.get("field"), f"{path}.field")
        op = _parse_operator(row.get("operator"), f"{path}.operator")
        value = row.get("value")
        if field in NUMERIC_FIELDS and isinstance(value, str):
            value = _coerce_number(value, f"{path}.value")
        comparisons.append(Comparison(field, op, _parse_value(value, f"{path}.value")))

    return And(tuple(comparisons))


def _coerce_number(raw: str, path: str) -> Union[int, float]:
    try:
        number = float(raw.strip())
    except ValueError:
        raise RuleParseError(f"Expected a number, got {raw!r}", path=path) from None
    if not math.isfinite(number):
        raise RuleParseError("Value must be finite", path=path)
    return int(number) if number.is_integer() else number
