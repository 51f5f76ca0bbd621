"""Tests for the variable contract."""

import pytest

from orchestrator.core.exceptions import VariableValidationError
from orchestrator.core.variables import (
    check_variable,
    matches_type,
    seed_variables,
    validate_variables,
    validate_write,
)
from orchestrator.models import ValidationRule, VariableType, WorkflowDefinition, WorkflowStep, WorkflowVariable


def definition_with(*variables):
    return WorkflowDefinition(
        name="Variables",
        steps=[WorkflowStep(id="start", type="start")],
        variables=list(variables),
    )


class TestTypes:

    @pytest.mark.parametrize("var_type,value,expected", [
        (VariableType.STRING, "x", True),
        (VariableType.STRING, 1, False),
        (VariableType.NUMBER, 1.5, True),
        (VariableType.NUMBER, True, False),
        (VariableType.BOOLEAN, False, True),
        (VariableType.DATE, "2024-03-01T10:00:00Z", True),
        (VariableType.DATE, "yesterday", False),
        (VariableType.OBJECT, {"a": 1}, True),
        (VariableType.ARRAY, [1, 2], True),
        (VariableType.ARRAY, "12", False),
        (VariableType.OBJECT, None, True),
    ])
    def test_matches_type(self, var_type, value, expected):
        assert matches_type(var_type, value) is expected


class TestRules:

    def test_required(self):
        variable = WorkflowVariable(name="email", required=True)
        assert check_variable(variable, None) == ["Variable 'email' is required"]
        assert check_variable(variable, "") == ["Variable 'email' is required"]

    def test_min_and_max_for_numbers_and_lengths(self):
        amount = WorkflowVariable(name="amount", type=VariableType.NUMBER, validation=[
            ValidationRule(type="min", value=1), ValidationRule(type="max", value=10)
        ])
        assert check_variable(amount, 5) == []
        assert len(check_variable(amount, 0)) == 1
        assert len(check_variable(amount, 11)) == 1

        code = WorkflowVariable(name="code", validation=[ValidationRule(type="max", value=3)])
        assert check_variable(code, "ABCD") == ["Variable 'code' exceeds maximum 3"]

    def test_pattern_email_url_and_custom(self):
        variable = WorkflowVariable(name="contact", validation=[ValidationRule(type="email")])
        assert check_variable(variable, "ada@example.com") == []
        assert check_variable(variable, "not-an-email") != []

        site = WorkflowVariable(name="site", validation=[ValidationRule(type="url")])
        assert check_variable(site, "https://example.com/x") == []
        assert check_variable(site, "example") != []

        ref = WorkflowVariable(name="ref", validation=[
            ValidationRule(type="pattern", value=r"^REF-\d+$", message="Bad reference")
        ])
        assert check_variable(ref, "REF-12") == []
        assert check_variable(ref, "12") == ["Bad reference"]

        even = WorkflowVariable(name="n", type=VariableType.NUMBER, validation=[
            ValidationRule(type="custom", value="value % 2 == 0")
        ])
        assert check_variable(even, 4) == []
        assert check_variable(even, 3) != []

    def test_unknown_rule_type_is_rejected(self):
        with pytest.raises(ValueError):
            ValidationRule(type="between")


class TestSeedingAndValidation:

    def test_defaults_are_overridden_by_initial_values(self):
        definition = definition_with(
            WorkflowVariable(name="priority", default="medium"),
            WorkflowVariable(name="retries", type=VariableType.NUMBER, default=0),
        )
        variables = seed_variables(definition, {"priority": "high", "extra": 1})
        assert variables == {"priority": "high", "retries": 0, "extra": 1}

    def test_validate_variables_collects_every_error(self):
        definition = definition_with(
            WorkflowVariable(name="application_id", required=True),
            WorkflowVariable(name="score", type=VariableType.NUMBER),
        )
        with pytest.raises(VariableValidationError) as exc_info:
            validate_variables(definition, {"score": "high"})
        assert exc_info.value.error_code == "validation_error"
        assert len(exc_info.value.variable_errors) == 2

    def test_validate_write_checks_type_and_rules(self):
        definition = definition_with(WorkflowVariable(
            name="score", type=VariableType.NUMBER, validation=[ValidationRule(type="max", value=10)]
        ))
        validate_write(definition, "score", 3)
        validate_write(definition, "undeclared", object())
        with pytest.raises(VariableValidationError):
            validate_write(definition, "score", "three")
        with pytest.raises(VariableValidationError) as exc_info:
            validate_write(definition, "score", 9999)
        assert exc_info.value.variable_errors == ["Variable 'score' exceeds maximum 10"]
