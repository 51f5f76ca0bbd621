"""Tests for condition evaluation."""

import copy

import pytest

from orchestrator.core.conditions import ConditionEvaluator, resolve_path
from orchestrator.core.exceptions import DefinitionInvalidError
from orchestrator.models import ConditionLogic, ConditionOperator, WorkflowCondition


def cond(expression, operator, value=None, logic=None, id=""):
    return WorkflowCondition(id=id, expression=expression, operator=operator, value=value, logic=logic)


@pytest.fixture
def evaluator():
    return ConditionEvaluator()


class TestResolvePath:

    def test_plain_and_dotted_names(self):
        variables = {"amount": 5, "order": {"customer": {"tier": "gold"}}, "items": [{"sku": "x"}]}
        assert resolve_path(variables, "amount") == 5
        assert resolve_path(variables, "order.customer.tier") == "gold"
        assert resolve_path(variables, "items.0.sku") == "x"

    def test_missing_segments_resolve_to_none(self):
        assert resolve_path({"order": {}}, "order.customer.tier") is None
        assert resolve_path({"items": []}, "items.3") is None

    def test_literal_dotted_key_wins(self):
        assert resolve_path({"a.b": 1, "a": {"b": 2}}, "a.b") == 1


class TestOperators:

    @pytest.mark.parametrize("operator,value,variables,expected", [
        (ConditionOperator.EQUALS, "approved", {"x": "approved"}, True),
        (ConditionOperator.NOT_EQUALS, "approved", {"x": "rejected"}, True),
        (ConditionOperator.GREATER_THAN, 1000, {"x": 1500}, True),
        (ConditionOperator.GREATER_THAN, 1000, {"x": "1500"}, True),
        (ConditionOperator.LESS_THAN, 1000, {"x": 500}, True),
        (ConditionOperator.CONTAINS, "urgent", {"x": "very urgent"}, True),
        (ConditionOperator.CONTAINS, "b", {"x": ["a", "b"]}, True),
        (ConditionOperator.NOT_CONTAINS, "b", {"x": ["a"]}, True),
        (ConditionOperator.STARTS_WITH, "INV-", {"x": "INV-001"}, True),
        (ConditionOperator.ENDS_WITH, ".pdf", {"x": "cv.pdf"}, True),
        (ConditionOperator.IS_EMPTY, None, {"x": ""}, True),
        (ConditionOperator.IS_EMPTY, None, {}, True),
        (ConditionOperator.IS_NOT_EMPTY, None, {"x": [1]}, True),
        (ConditionOperator.IN, ["a", "b"], {"x": "a"}, True),
        (ConditionOperator.NOT_IN, ["a", "b"], {"x": "c"}, True),
        (ConditionOperator.REGEX, r"^\d{3}$", {"x": "123"}, True),
    ])
    def test_operator(self, evaluator, operator, value, variables, expected):
        assert evaluator.evaluate(cond("x", operator, value), variables) is expected

    def test_type_mismatch_is_false_not_an_error(self, evaluator):
        assert evaluator.evaluate(cond("x", ConditionOperator.GREATER_THAN, 5), {"x": "abc"}) is False
        assert evaluator.evaluate(cond("x", ConditionOperator.LESS_THAN, 5), {"x": None}) is False

    def test_invalid_regex_is_false(self, evaluator):
        assert evaluator.evaluate(cond("x", ConditionOperator.REGEX, "(unclosed"), {"x": "abc"}) is False

    def test_custom_expression(self, evaluator):
        condition = cond("amount > 10 and status == 'ok'", ConditionOperator.CUSTOM)
        assert evaluator.evaluate(condition, {"amount": 20, "status": "ok"}) is True
        assert evaluator.evaluate(condition, {"amount": 5, "status": "ok"}) is False

    def test_custom_expression_cannot_reach_builtins(self, evaluator):
        condition = cond("__import__('os') is not None", ConditionOperator.CUSTOM)
        assert evaluator.evaluate(condition, {}) is False

    def test_broken_custom_expression_is_false(self, evaluator):
        assert evaluator.evaluate(cond("amount >", ConditionOperator.CUSTOM), {"amount": 1}) is False


class TestConditionLists:

    def test_empty_list_is_true(self, evaluator):
        assert evaluator.evaluate_all([], {}) is True

    def test_and_is_the_default_logic(self, evaluator):
        conditions = [
            cond("a", ConditionOperator.EQUALS, 1),
            cond("b", ConditionOperator.EQUALS, 2),
        ]
        assert evaluator.evaluate_all(conditions, {"a": 1, "b": 2}) is True
        assert evaluator.evaluate_all(conditions, {"a": 1, "b": 3}) is False

    def test_or_logic_joins_with_previous_result(self, evaluator):
        conditions = [
            cond("a", ConditionOperator.EQUALS, 1),
            cond("b", ConditionOperator.EQUALS, 2, logic=ConditionLogic.OR),
        ]
        assert evaluator.evaluate_all(conditions, {"a": 0, "b": 2}) is True
        assert evaluator.evaluate_all(conditions, {"a": 0, "b": 0}) is False

    def test_dicts_and_catalog_references(self):
        catalog = [cond("amount", ConditionOperator.GREATER_THAN, 100, id="big_order")]
        evaluator = ConditionEvaluator(catalog)
        refs = ["big_order", {"expression": "region", "operator": "equals", "value": "EU"}]
        assert evaluator.evaluate_all(refs, {"amount": 200, "region": "EU"}) is True
        assert evaluator.evaluate_all(refs, {"amount": 50, "region": "EU"}) is False

    def test_unknown_catalog_reference_raises(self, evaluator):
        with pytest.raises(DefinitionInvalidError):
            evaluator.evaluate_all(["missing"], {})

    def test_evaluation_is_pure(self, evaluator):
        variables = {"order": {"total": 10, "tags": ["a"]}}
        before = copy.deepcopy(variables)
        conditions = [
            cond("order.total", ConditionOperator.GREATER_THAN, 5),
            cond("order.tags", ConditionOperator.CONTAINS, "a"),
            cond("len(order['tags']) == 1", ConditionOperator.CUSTOM),
        ]
        first = evaluator.evaluate_all(conditions, variables)
        second = evaluator.evaluate_all(conditions, variables)
        assert first is second is True
        assert variables == before
