"""Validation of instance variables against a definition's declared contract."""

import re
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from ..models import VariableType, WorkflowDefinition, WorkflowVariable
from .exceptions import VariableValidationError
from .logging import get_logger


logger = get_logger(__name__)

_EMAIL_PATTERN = re.compile(r'^[^@\s]+@[^@\s]+\.[^@\s]+$')
_URL_PATTERN = re.compile(r'^https?://[^\s/$.?#].[^\s]*$', re.IGNORECASE)

_SAFE_BUILTINS = {
    "len": len, "str": str, "int": int, "float": float, "bool": bool,
    "abs": abs, "min": min, "max": max, "sum": sum, "any": any, "all": all,
}


def matches_type(var_type: VariableType, value: Any) -> bool:
    """Whether ``value`` is acceptable for a variable of ``var_type``. None always is."""
    if value is None:
        return True
    if var_type == VariableType.STRING:
        return isinstance(value, str)
    if var_type == VariableType.NUMBER:
        return isinstance(value, (int, float)) and not isinstance(value, bool)
    if var_type == VariableType.BOOLEAN:
        return isinstance(value, bool)
    if var_type == VariableType.DATE:
        if isinstance(value, (date, datetime)):
            return True
        if isinstance(value, str):
            try:
                datetime.fromisoformat(value.replace("Z", "+00:00"))
                return True
            except ValueError:
                return False
        return False
    if var_type == VariableType.OBJECT:
        return isinstance(value, dict)
    if var_type == VariableType.ARRAY:
        return isinstance(value, (list, tuple))
    return True


def _is_empty(value: Any) -> bool:
    return value is None or (isinstance(value, (str, list, tuple, dict)) and len(value) == 0)


def _measure(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return value
    if isinstance(value, (str, list, tuple, dict)):
        return len(value)
    return None


def check_variable(variable: WorkflowVariable, value: Any) -> List[str]:
    """Return the violations of one variable's contract (type and rules)."""
    errors = []
    if variable.required and _is_empty(value):
        errors.append(f"Variable '{variable.name}' is required")
        return errors
    if not matches_type(variable.type, value):
        errors.append(
            f"Variable '{variable.name}' expects type {variable.type.value}, got {type(value).__name__}"
        )
        return errors
    if value is None:
        return errors

    for rule in variable.validation:
        message = rule.message or None
        if rule.type == "required":
            if _is_empty(value):
                errors.append(message or f"Variable '{variable.name}' is required")
        elif rule.type in ("min", "max"):
            measured = _measure(value)
            if measured is None or rule.value is None:
                continue
            if rule.type == "min" and measured < rule.value:
                errors.append(message or f"Variable '{variable.name}' is below minimum {rule.value}")
            if rule.type == "max" and measured > rule.value:
                errors.append(message or f"Variable '{variable.name}' exceeds maximum {rule.value}")
        elif rule.type == "pattern":
            if not isinstance(value, str) or not re.search(str(rule.value), value):
                errors.append(message or f"Variable '{variable.name}' does not match pattern {rule.value}")
        elif rule.type == "email":
            if not isinstance(value, str) or not _EMAIL_PATTERN.match(value):
                errors.append(message or f"Variable '{variable.name}' is not a valid email address")
        elif rule.type == "url":
            if not isinstance(value, str) or not _URL_PATTERN.match(value):
                errors.append(message or f"Variable '{variable.name}' is not a valid URL")
        elif rule.type == "custom":
            if not _evaluate_custom_rule(str(rule.value), variable.name, value):
                errors.append(message or f"Variable '{variable.name}' failed custom validation")
    return errors


def _evaluate_custom_rule(expression: str, name: str, value: Any) -> bool:
    try:
        return bool(eval(expression, {"__builtins__": _SAFE_BUILTINS}, {"value": value, name: value}))
    except Exception as e:
        logger.warning(f"Custom validation rule for '{name}' could not be evaluated: {e}")
        return False


def seed_variables(definition: WorkflowDefinition, initial: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Declared defaults overridden by ``initial``; undeclared initial values are kept."""
    variables: Dict[str, Any] = {}
    for variable in definition.variables:
        if variable.default is not None:
            variables[variable.name] = variable.default
    variables.update(initial or {})
    return variables


def validate_variables(definition: WorkflowDefinition, variables: Dict[str, Any]) -> None:
    """Raise VariableValidationError if ``variables`` violate the declared contract."""
    errors = []
    for variable in definition.variables:
        errors.extend(check_variable(variable, variables.get(variable.name)))
    if errors:
        raise VariableValidationError(
            f"Variables for workflow '{definition.name}' are invalid: {'; '.join(errors)}",
            variable_errors=errors,
            error_code="validation_error"
        )


def validate_write(definition: WorkflowDefinition, name: str, value: Any) -> None:
    """Validate a single variable write against its declaration (type and rules), if it has one."""
    for variable in definition.variables:
        if variable.name == name:
            errors = check_variable(variable, value)
            if errors:
                raise VariableValidationError(
                    f"Cannot write to variable '{name}': {'; '.join(errors)}",
                    variable_errors=errors,
                    error_code="validation_error"
                )
            return
