"""Condition evaluation over instance variables.

Evaluation is pure: the same conditions and variables always give the same
result, and nothing is mutated. A condition that cannot be evaluated (type
mismatch, bad custom expression) is false, never an error.
"""

import re
from typing import Any, Dict, Iterable, List, Optional, Union

from ..models import ConditionLogic, ConditionOperator, WorkflowCondition
from .exceptions import DefinitionInvalidError
from .logging import get_logger


logger = get_logger(__name__)

_MISSING = object()

_SAFE_BUILTINS = {
    "len": len, "str": str, "int": int, "float": float, "bool": bool,
    "abs": abs, "min": min, "max": max, "round": round,
    "any": any, "all": all, "isinstance": isinstance,
}

ConditionRef = Union[WorkflowCondition, Dict[str, Any], str]


def resolve_path(variables: Dict[str, Any], path: str) -> Any:
    """Resolve a variable name or dotted path; missing segments give None."""
    if path in variables:
        return variables[path]
    current: Any = variables
    for part in path.split("."):
        if isinstance(current, dict):
            current = current.get(part, _MISSING)
        elif isinstance(current, (list, tuple)) and part.isdigit():
            index = int(part)
            current = current[index] if index < len(current) else _MISSING
        else:
            current = _MISSING
        if current is _MISSING:
            return None
    return current


def _to_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return value
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return None
    return None


def _compare(actual: Any, expected: Any) -> Optional[int]:
    """Three-way comparison, or None when the operands are not comparable."""
    if isinstance(actual, str) and isinstance(expected, str):
        return (actual > expected) - (actual < expected)
    left, right = _to_number(actual), _to_number(expected)
    if left is None or right is None:
        return None
    return (left > right) - (left < right)


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, (str, list, tuple, dict, set)):
        return len(value) == 0
    return False


def _contains(container: Any, item: Any) -> bool:
    if container is None:
        return False
    if isinstance(container, str):
        return item is not None and str(item) in container
    if isinstance(container, (list, tuple, set, dict)):
        return item in container
    return False


class ConditionEvaluator:
    """Evaluates WorkflowCondition lists against a variable mapping."""

    def __init__(self, catalog: Optional[Iterable[WorkflowCondition]] = None):
        self._catalog: Dict[str, WorkflowCondition] = {c.id: c for c in (catalog or []) if c.id}

    def with_catalog(self, catalog: Iterable[WorkflowCondition]) -> "ConditionEvaluator":
        return ConditionEvaluator(catalog)

    def resolve(self, ref: ConditionRef) -> WorkflowCondition:
        """Turn a condition, a dict, or a catalog id into a WorkflowCondition."""
        if isinstance(ref, WorkflowCondition):
            return ref
        if isinstance(ref, dict):
            return WorkflowCondition(**ref)
        if isinstance(ref, str):
            condition = self._catalog.get(ref)
            if condition is None:
                raise DefinitionInvalidError(f"Unknown condition reference '{ref}'")
            return condition
        raise DefinitionInvalidError(f"Unsupported condition reference: {ref!r}")

    def evaluate(self, condition: WorkflowCondition, variables: Dict[str, Any]) -> bool:
        """Evaluate a single condition."""
        operator = condition.operator
        if operator == ConditionOperator.CUSTOM:
            return self._evaluate_custom(condition.expression, variables)

        actual = resolve_path(variables, condition.expression)
        expected = condition.value

        if operator == ConditionOperator.EQUALS:
            return actual == expected
        if operator == ConditionOperator.NOT_EQUALS:
            return actual != expected
        if operator == ConditionOperator.GREATER_THAN:
            result = _compare(actual, expected)
            return result is not None and result > 0
        if operator == ConditionOperator.LESS_THAN:
            result = _compare(actual, expected)
            return result is not None and result < 0
        if operator == ConditionOperator.CONTAINS:
            return _contains(actual, expected)
        if operator == ConditionOperator.NOT_CONTAINS:
            return actual is not None and not _contains(actual, expected)
        if operator == ConditionOperator.STARTS_WITH:
            return isinstance(actual, str) and expected is not None and actual.startswith(str(expected))
        if operator == ConditionOperator.ENDS_WITH:
            return isinstance(actual, str) and expected is not None and actual.endswith(str(expected))
        if operator == ConditionOperator.IS_EMPTY:
            return _is_empty(actual)
        if operator == ConditionOperator.IS_NOT_EMPTY:
            return not _is_empty(actual)
        if operator == ConditionOperator.IN:
            return _contains(expected, actual)
        if operator == ConditionOperator.NOT_IN:
            return not _contains(expected, actual)
        if operator == ConditionOperator.REGEX:
            if actual is None or expected is None:
                return False
            try:
                return re.search(str(expected), str(actual)) is not None
            except re.error as e:
                logger.warning(f"Invalid regex in condition '{condition.id or condition.expression}': {e}")
                return False
        return False

    def evaluate_all(self, conditions: List[ConditionRef], variables: Dict[str, Any]) -> bool:
        """Fold a condition list left to right; each condition's ``logic`` joins it to the result so far.

        An empty list is true.
        """
        result = True
        for index, ref in enumerate(conditions):
            condition = self.resolve(ref)
            value = self.evaluate(condition, variables)
            if index == 0:
                result = value
            elif condition.logic == ConditionLogic.OR:
                result = result or value
            else:
                result = result and value
        return result

    def _evaluate_custom(self, expression: str, variables: Dict[str, Any]) -> bool:
        try:
            context = dict(variables)
            context["variables"] = variables
            return bool(eval(expression, {"__builtins__": _SAFE_BUILTINS}, context))
        except Exception as e:
            logger.warning(f"Failed to evaluate condition '{expression}': {e}")
            return False
