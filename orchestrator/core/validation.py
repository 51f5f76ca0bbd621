"""Structural validation of workflow definitions."""

import re
from collections import deque
from datetime import datetime
from typing import Dict, List, Set

from croniter import croniter

from ..models import (
    ActionType,
    ConditionOperator,
    StepType,
    TriggerType,
    ValidationResult,
    WorkflowCondition,
    WorkflowDefinition,
    WorkflowStep,
)
from .logging import get_logger
from .variables import matches_type


logger = get_logger(__name__)

_ACTION_TYPES = {action_type.value for action_type in ActionType}


def route_targets(step: WorkflowStep) -> List[str]:
    """Targets of a decision/gateway step's routes, default included."""
    targets = [route.get("target") for route in step.config.get("routes", []) or [] if isinstance(route, dict)]
    if step.config.get("default"):
        targets.append(step.config["default"])
    return [t for t in targets if t]


def successor_ids(step: WorkflowStep) -> List[str]:
    """Every step id reachable in one hop from ``step``."""
    ids = step.successors()
    ids.extend(t for t in route_targets(step) if t not in ids)
    return ids


class DefinitionValidator:
    """Checks the graph invariants every accepted definition must satisfy."""

    def validate(self, definition: WorkflowDefinition) -> ValidationResult:
        """
        Validate a workflow definition for structural correctness.

        Args:
            definition: The workflow definition to validate

        Returns:
            ValidationResult: Validation results with errors and warnings
        """
        logger.debug(f"Validating workflow: {definition.name}")
        errors: List[str] = []
        warnings: List[str] = []

        self._validate_start_and_end(definition, errors, warnings)
        self._validate_unique_ids(definition, errors, warnings)
        self._validate_invalid_references(definition, errors, warnings)
        if not errors:
            self._validate_unreachable_steps(definition, errors, warnings)
            self._validate_wait_for_cycles(definition, errors, warnings)
            self._validate_cycles(definition, errors, warnings)
        self._validate_triggers(definition, errors, warnings)
        self._validate_conditions(definition, errors, warnings)
        self._validate_variables(definition, errors, warnings)

        result = ValidationResult(is_valid=not errors, errors=errors, warnings=warnings)
        logger.debug(f"Workflow validation completed. Valid: {result.is_valid}, "
                     f"Errors: {len(errors)}, Warnings: {len(warnings)}")
        return result

    def _validate_start_and_end(self, definition: WorkflowDefinition, errors: List[str], warnings: List[str]):
        starts = definition.start_steps()
        if len(starts) != 1:
            errors.append(f"Workflow must have exactly one start step, found {len(starts)}")
        if not any(step.type == StepType.END for step in definition.steps):
            warnings.append("Workflow has no end step; instances complete when no steps remain")

    def _validate_unique_ids(self, definition: WorkflowDefinition, errors: List[str], warnings: List[str]):
        collections = {
            "step": [s.id for s in definition.steps],
            "condition": [c.id for c in definition.conditions if c.id],
            "action": [a.id for a in definition.actions if a.id],
            "trigger": [t.id for t in definition.triggers],
            "variable": [v.name for v in definition.variables],
        }
        for kind, ids in collections.items():
            seen: Set[str] = set()
            for item_id in ids:
                if item_id in seen:
                    errors.append(f"Duplicate {kind} id: '{item_id}'")
                seen.add(item_id)

    def _validate_invalid_references(self, definition: WorkflowDefinition, errors: List[str], warnings: List[str]):
        step_ids = {step.id for step in definition.steps}
        action_ids = {action.id for action in definition.actions if action.id}
        condition_ids = {condition.id for condition in definition.conditions if condition.id}

        for action in definition.actions:
            for target in action.on_success + action.on_failure:
                if target not in step_ids:
                    errors.append(f"Action '{action.id}' references non-existent step: '{target}'")

        for step in definition.steps:
            for target in successor_ids(step):
                if target not in step_ids:
                    errors.append(f"Step '{step.id}' references non-existent step: '{target}'")
            for target in step.wait_for:
                if target == step.id:
                    errors.append(f"Step '{step.id}' waits for itself")
                elif target not in step_ids:
                    errors.append(f"Step '{step.id}' waits for non-existent step: '{target}'")
            for action_id in step.action_ids:
                if action_id not in action_ids:
                    errors.append(f"Step '{step.id}' references non-existent action: '{action_id}'")
            if step.type in (StepType.DECISION, StepType.GATEWAY):
                for route in step.config.get("routes", []) or []:
                    if not isinstance(route, dict) or not route.get("target"):
                        errors.append(f"Decision step '{step.id}' has a route without a target")
                        continue
                    for ref in route.get("conditions", []) or []:
                        if isinstance(ref, str) and ref not in condition_ids:
                            errors.append(f"Step '{step.id}' references non-existent condition: '{ref}'")
            if "action_type" in step.config and step.config["action_type"] not in _ACTION_TYPES:
                errors.append(f"Step '{step.id}' uses unknown action type: '{step.config['action_type']}'")
            if step.type == StepType.SUBPROCESS and not step.config.get("workflow_id"):
                errors.append(f"Subprocess step '{step.id}' must name a workflow_id")
            if step.type == StepType.TIMER and not (step.config.get("duration") is not None or step.config.get("until")):
                errors.append(f"Timer step '{step.id}' needs a duration or an until time")
            if step.type == StepType.TIMER and step.config.get("until"):
                try:
                    datetime.fromisoformat(str(step.config["until"]).replace("Z", "+00:00"))
                except ValueError:
                    errors.append(f"Timer step '{step.id}' has an invalid until time")

    def _validate_unreachable_steps(self, definition: WorkflowDefinition, errors: List[str], warnings: List[str]):
        starts = definition.start_steps()
        if len(starts) != 1:
            return
        reachable = self._find_reachable_steps(definition, starts[0].id)
        unreachable = {step.id for step in definition.steps} - reachable
        if unreachable:
            errors.append(
                f"Unreachable steps detected: {', '.join(sorted(unreachable))}. "
                "All steps must be reachable from the start step."
            )

    def _find_reachable_steps(self, definition: WorkflowDefinition, start_id: str) -> Set[str]:
        steps = {step.id: step for step in definition.steps}
        reachable = {start_id}
        queue = deque([start_id])
        while queue:
            step = steps[queue.popleft()]
            targets = list(successor_ids(step))
            for action_id in step.action_ids:
                action = definition.get_action(action_id)
                if action is not None:
                    targets.extend(action.on_success + action.on_failure)
            for target in targets:
                if target in steps and target not in reachable:
                    reachable.add(target)
                    queue.append(target)
        return reachable

    def _validate_wait_for_cycles(self, definition: WorkflowDefinition, errors: List[str], warnings: List[str]):
        graph = {step.id: list(step.wait_for) for step in definition.steps}
        if self._has_cycle(graph):
            errors.append("wait_for dependencies contain a cycle")

    def _validate_cycles(self, definition: WorkflowDefinition, errors: List[str], warnings: List[str]):
        graph = {step.id: successor_ids(step) for step in definition.steps}
        if self._has_cycle(graph):
            warnings.append(
                "Workflow graph contains cycles. Steps run at most once per instance, "
                "so a cycle is only traversed once."
            )

    def _has_cycle(self, graph: Dict[str, List[str]]) -> bool:
        visiting: Set[str] = set()
        visited: Set[str] = set()

        def dfs(node: str) -> bool:
            visiting.add(node)
            for neighbor in graph.get(node, []):
                if neighbor in visiting:
                    return True
                if neighbor not in visited and neighbor in graph and dfs(neighbor):
                    return True
            visiting.discard(node)
            visited.add(node)
            return False

        return any(node not in visited and dfs(node) for node in graph)

    def _validate_triggers(self, definition: WorkflowDefinition, errors: List[str], warnings: List[str]):
        for trigger in definition.triggers:
            config = trigger.config
            if trigger.type == TriggerType.SCHEDULE:
                cron = config.get("cron")
                if not cron or not croniter.is_valid(str(cron)):
                    errors.append(f"Schedule trigger '{trigger.id}' has an invalid cron expression: {cron!r}")
            elif trigger.type == TriggerType.WEBHOOK and not config.get("url"):
                errors.append(f"Webhook trigger '{trigger.id}' must configure a url")
            elif trigger.type == TriggerType.EVENT and not config.get("event"):
                errors.append(f"Event trigger '{trigger.id}' must configure an event name")
            for condition in trigger.conditions:
                self._check_condition(condition, f"trigger '{trigger.id}'", errors)

    def _validate_conditions(self, definition: WorkflowDefinition, errors: List[str], warnings: List[str]):
        for condition in definition.conditions:
            self._check_condition(condition, "catalog", errors)
        for step in definition.steps:
            for condition in step.conditions:
                self._check_condition(condition, f"step '{step.id}'", errors)
            for route in step.config.get("routes", []) or []:
                if not isinstance(route, dict):
                    continue
                for ref in route.get("conditions", []) or []:
                    if isinstance(ref, dict):
                        try:
                            self._check_condition(WorkflowCondition(**ref), f"step '{step.id}' route", errors)
                        except ValueError as e:
                            errors.append(f"Step '{step.id}' has a malformed route condition: {e}")

    def _check_condition(self, condition: WorkflowCondition, where: str, errors: List[str]):
        if condition.operator == ConditionOperator.REGEX:
            try:
                re.compile(str(condition.value))
            except re.error as e:
                errors.append(f"Condition '{condition.id or condition.expression}' in {where} has an invalid regex: {e}")

    def _validate_variables(self, definition: WorkflowDefinition, errors: List[str], warnings: List[str]):
        for variable in definition.variables:
            if not matches_type(variable.type, variable.default):
                errors.append(
                    f"Default of variable '{variable.name}' does not match type {variable.type.value}"
                )
