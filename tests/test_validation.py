"""Tests for structural validation of workflow definitions."""

import pytest

from orchestrator.core.validation import DefinitionValidator
from orchestrator.models import WorkflowDefinition

from conftest import linear_workflow


@pytest.fixture
def validator():
    return DefinitionValidator()


def validate(validator, data):
    return validator.validate(WorkflowDefinition.model_validate(data))


class TestDefinitionValidator:

    def test_linear_workflow_is_valid(self, validator):
        result = validate(validator, linear_workflow())
        assert result.is_valid
        assert result.errors == []
        assert result.warnings == []

    def test_exactly_one_start_step(self, validator):
        data = linear_workflow()
        data["steps"].append({"id": "start2", "type": "start", "on_success": ["end"]})
        result = validate(validator, data)
        assert not result.is_valid
        assert "Workflow must have exactly one start step, found 2" in result.errors

    def test_missing_end_step_is_a_warning(self, validator):
        data = {"name": "No end", "steps": [
            {"id": "start", "type": "start", "on_success": ["A"]},
            {"id": "A", "type": "task"},
        ]}
        result = validate(validator, data)
        assert result.is_valid
        assert any("no end step" in w for w in result.warnings)

    def test_references_must_exist(self, validator):
        data = linear_workflow(middle=[{"id": "A", "type": "task", "on_failure": ["ghost"]}])
        result = validate(validator, data)
        assert not result.is_valid
        assert "Step 'A' references non-existent step: 'ghost'" in result.errors

    def test_decision_route_targets_must_exist(self, validator):
        data = linear_workflow(middle=[{
            "id": "decide", "type": "decision",
            "config": {"routes": [{"target": "nowhere", "conditions": []}], "default": "end"},
        }])
        result = validate(validator, data)
        assert "Step 'decide' references non-existent step: 'nowhere'" in result.errors

    def test_unreachable_steps(self, validator):
        data = linear_workflow()
        data["steps"].append({"id": "orphan", "type": "task", "on_success": ["end"]})
        result = validate(validator, data)
        assert not result.is_valid
        assert any("Unreachable steps detected: orphan" in e for e in result.errors)

    def test_steps_reached_through_parallel_branches_are_reachable(self, validator):
        data = {"name": "Fan out", "steps": [
            {"id": "start", "type": "start", "on_success": ["fork"]},
            {"id": "fork", "type": "parallel", "config": {"branches": ["B", "C"]}},
            {"id": "B", "type": "task", "on_success": ["end"]},
            {"id": "C", "type": "task", "on_success": ["end"]},
            {"id": "end", "type": "end"},
        ]}
        assert validate(validator, data).is_valid

    def test_wait_for_cycles_are_errors(self, validator):
        data = linear_workflow(middle=[
            {"id": "A", "type": "task", "wait_for": ["B"]},
            {"id": "B", "type": "task", "wait_for": ["A"]},
        ])
        result = validate(validator, data)
        assert "wait_for dependencies contain a cycle" in result.errors

    def test_graph_cycles_are_warnings(self, validator):
        data = linear_workflow(middle=[
            {"id": "A", "type": "task", "on_success": ["B"]},
            {"id": "B", "type": "task", "on_success": ["A", "end"]},
        ])
        result = validate(validator, data)
        assert result.is_valid
        assert any("cycles" in w for w in result.warnings)

    def test_trigger_configuration(self, validator):
        data = linear_workflow(triggers=[
            {"id": "nightly", "type": "schedule", "config": {"cron": "not a cron"}},
            {"id": "hook", "type": "webhook", "config": {}},
            {"id": "evt", "type": "event", "config": {"event": "order.created"}},
        ])
        result = validate(validator, data)
        assert "Schedule trigger 'nightly' has an invalid cron expression: 'not a cron'" in result.errors
        assert "Webhook trigger 'hook' must configure a url" in result.errors
        assert len(result.errors) == 2

    def test_step_specific_configuration(self, validator):
        data = linear_workflow(middle=[
            {"id": "sub", "type": "subprocess"},
            {"id": "wait", "type": "timer"},
            {"id": "custom", "type": "task", "config": {"action_type": "teleport"}},
        ])
        result = validate(validator, data)
        assert "Subprocess step 'sub' must name a workflow_id" in result.errors
        assert "Timer step 'wait' needs a duration or an until time" in result.errors
        assert "Step 'custom' uses unknown action type: 'teleport'" in result.errors

    def test_duplicate_ids_and_bad_defaults(self, validator):
        data = linear_workflow(
            middle=[{"id": "A", "type": "task"}, {"id": "A", "type": "task"}],
            variables=[{"name": "count", "type": "number", "default": "ten"}],
        )
        result = validate(validator, data)
        assert "Duplicate step id: 'A'" in result.errors
        assert "Default of variable 'count' does not match type number" in result.errors

    def test_unknown_condition_and_action_references(self, validator):
        data = linear_workflow(middle=[
            {"id": "A", "type": "task", "action_ids": ["missing_action"]},
            {"id": "decide", "type": "decision",
             "config": {"routes": [{"target": "end", "conditions": ["missing_condition"]}]}},
        ])
        result = validate(validator, data)
        assert "Step 'A' references non-existent action: 'missing_action'" in result.errors
        assert "Step 'decide' references non-existent condition: 'missing_condition'" in result.errors
