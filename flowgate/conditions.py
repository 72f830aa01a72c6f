"""Boolean condition trees evaluated against a context object.

A tree node is one of:

* a boolean literal;
* ``{"and": [node, ...]}``, ``{"or": [node, ...]}`` or ``{"not": node}``;
* a list of nodes, read as an implicit ``and``;
* a comparison ``{"field": "a.b.c", "operator": "==", "value": ...}``.

``evaluate`` never raises: any structural problem (unknown operator,
malformed node, nesting deeper than ``max_depth``, values that cannot be
compared) is logged and the condition evaluates to ``False``.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from typing import Any, Iterable, Optional

from .errors import ConditionError

logger = logging.getLogger(__name__)

DEFAULT_MAX_DEPTH = 10

ALLOWED_OPERATORS = (
    "==",
    "===",
    "!=",
    "!==",
    "<",
    "<=",
    ">",
    ">=",
    "in",
    "notIn",
    "contains",
    "startsWith",
    "endsWith",
    "matches",
    "exists",
    "empty",
    "between",
)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _stringify(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return ""
    return str(value)


def _loose_equals(left: Any, right: Any) -> bool:
    if _is_number(left) and isinstance(right, str):
        left, right = right, left
    if isinstance(left, str) and _is_number(right):
        try:
            return float(left) == right
        except ValueError:
            return False
    return left == right


def _strict_equals(left: Any, right: Any) -> bool:
    if _is_number(left) and _is_number(right):
        return left == right
    return type(left) is type(right) and left == right


def _ordered(left: Any, right: Any, op: str) -> bool:
    if left is None or right is None:
        return False
    try:
        if op == "<":
            return left < right
        if op == "<=":
            return left <= right
        if op == ">":
            return left > right
        return left >= right
    except TypeError:
        return False


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, tuple, set, dict)):
        return len(value) == 0
    return False


def resolve_field(path: str, context: Any) -> Any:
    """Resolve a dotted path against nested mappings and sequences.

    Missing segments resolve to ``None``.
    """
    value = context
    for part in path.split("."):
        if value is None:
            return None
        if isinstance(value, Mapping):
            value = value.get(part)
        elif isinstance(value, (list, tuple)):
            try:
                value = value[int(part)]
            except (ValueError, IndexError):
                return None
        else:
            return None
    return value


class ConditionEvaluator:
    """Evaluates condition trees, failing closed on malformed input."""

    def __init__(
        self,
        max_depth: int = DEFAULT_MAX_DEPTH,
        allowed_operators: Optional[Iterable[str]] = None,
    ) -> None:
        self.max_depth = max_depth
        self.allowed_operators = frozenset(allowed_operators or ALLOWED_OPERATORS)

    def evaluate(self, tree: Any, context: Any = None) -> bool:
        """Return the truth value of ``tree`` against ``context``."""
        try:
            return self._evaluate(tree, context if context is not None else {}, 0)
        except ConditionError as exc:
            logger.warning(f"Condition evaluation failed closed: {exc}")
            return False
        except RecursionError:
            logger.warning("Condition evaluation failed closed: recursion limit hit")
            return False
        except (TypeError, ValueError) as exc:
            logger.warning(f"Condition evaluation failed closed on incompatible values: {exc}")
            return False

    def validate(self, tree: Any) -> None:
        """Raise ``ConditionError`` if ``tree`` is structurally invalid."""
        self._check(tree, 0)

    # ------------------------------------------------------------------
    def _enter(self, depth: int) -> None:
        if depth > self.max_depth:
            raise ConditionError(f"Maximum condition depth {self.max_depth} exceeded")

    def _evaluate(self, node: Any, context: Any, depth: int) -> bool:
        self._enter(depth)
        if isinstance(node, bool):
            return node
        if isinstance(node, list):
            return all(self._evaluate(child, context, depth + 1) for child in node)
        if not isinstance(node, Mapping):
            raise ConditionError(f"Invalid condition node: {node!r}")

        if "and" in node:
            children = self._children(node["and"], "and")
            return all(self._evaluate(c, context, depth + 1) for c in children)
        if "or" in node:
            children = self._children(node["or"], "or")
            return any(self._evaluate(c, context, depth + 1) for c in children)
        if "not" in node:
            return not self._evaluate(node["not"], context, depth + 1)
        if "field" in node and "operator" in node:
            return self._compare(node, context)
        raise ConditionError(f"Invalid condition structure: {dict(node)!r}")

    def _check(self, node: Any, depth: int) -> None:
        self._enter(depth)
        if isinstance(node, bool):
            return
        if isinstance(node, list):
            for child in node:
                self._check(child, depth + 1)
            return
        if not isinstance(node, Mapping):
            raise ConditionError(f"Invalid condition node: {node!r}")
        if "and" in node or "or" in node:
            key = "and" if "and" in node else "or"
            for child in self._children(node[key], key):
                self._check(child, depth + 1)
            return
        if "not" in node:
            self._check(node["not"], depth + 1)
            return
        if "field" in node and "operator" in node:
            self._check_comparison(node)
            return
        raise ConditionError(f"Invalid condition structure: {dict(node)!r}")

    @staticmethod
    def _children(value: Any, key: str) -> list:
        if not isinstance(value, list):
            raise ConditionError(f"'{key}' requires a list of conditions")
        return value

    def _check_comparison(self, node: Mapping) -> tuple[str, str, Any]:
        field, operator, value = node["field"], node["operator"], node.get("value")
        if not isinstance(field, str) or not field:
            raise ConditionError(f"Condition field must be a non-empty string: {field!r}")
        if not isinstance(operator, str) or operator not in self.allowed_operators:
            raise ConditionError(f"Operator {operator!r} is not allowed")
        if operator == "between":
            if not isinstance(value, (list, tuple)) or len(value) != 2:
                raise ConditionError("'between' requires a two-element range")
        if operator == "matches":
            try:
                re.compile(_stringify(value))
            except re.error as exc:
                raise ConditionError(f"Invalid pattern {value!r}: {exc}") from exc
        return field, operator, value

    def _compare(self, node: Mapping, context: Any) -> bool:
        field, operator, value = self._check_comparison(node)
        actual = resolve_field(field, context)

        if operator == "==":
            return _loose_equals(actual, value)
        if operator == "!=":
            return not _loose_equals(actual, value)
        if operator == "===":
            return _strict_equals(actual, value)
        if operator == "!==":
            return not _strict_equals(actual, value)
        if operator in ("<", "<=", ">", ">="):
            return _ordered(actual, value, operator)
        if operator == "in":
            return isinstance(value, (list, tuple)) and actual in value
        if operator == "notIn":
            return isinstance(value, (list, tuple)) and actual not in value
        if operator == "contains":
            if isinstance(actual, (list, tuple, set)):
                try:
                    return value in actual
                except TypeError:
                    # unhashable value against a set
                    return False
            if actual is None:
                return False
            return _stringify(value) in _stringify(actual)
        if operator == "startsWith":
            return actual is not None and _stringify(actual).startswith(_stringify(value))
        if operator == "endsWith":
            return actual is not None and _stringify(actual).endswith(_stringify(value))
        if operator == "matches":
            return actual is not None and re.search(_stringify(value), _stringify(actual)) is not None
        if operator == "exists":
            return actual is not None
        if operator == "empty":
            return _is_empty(actual)
        if operator == "between":
            low, high = value
            return _ordered(actual, low, ">=") and _ordered(actual, high, "<=")
        raise ConditionError(f"Unknown operator: {operator}")


condition_evaluator = ConditionEvaluator()


def evaluate_condition(tree: Any, context: Any = None) -> bool:
    """Evaluate ``tree`` with the default evaluator."""
    return condition_evaluator.evaluate(tree, context)
