"""Pytest configuration and fixtures."""

import threading
from typing import Any, Dict, List

import pytest

from orchestrator.core.actions import ActionDispatcher, ActionRequest, ActionResult
from orchestrator.core.execution_engine import ExecutionEngine
from orchestrator.core.registry import WorkflowRegistry
from orchestrator.core.triggers import TriggerDispatcher
from orchestrator.models import WorkflowDefinition
from orchestrator.storage import InMemoryInstanceStore, InMemoryWorkflowStore


class RecordingHandler:
    """Action handler that records every request and replays scripted results."""

    def __init__(self, *results):
        self.requests: List[ActionRequest] = []
        self._results = list(results)
        self._lock = threading.Lock()

    def __call__(self, request: ActionRequest):
        with self._lock:
            self.requests.append(request)
            if not self._results:
                return ActionResult.ok()
            # The last scripted result repeats
            return self._results.pop(0) if len(self._results) > 1 else self._results[0]

    @property
    def step_ids(self) -> List[str]:
        return [r.step_id for r in self.requests]


@pytest.fixture
def action_dispatcher():
    """Create a non-strict ActionDispatcher for testing."""
    dispatcher = ActionDispatcher()
    yield dispatcher
    dispatcher.shutdown()


@pytest.fixture
def registry():
    """Create a WorkflowRegistry over fresh in-memory stores."""
    return WorkflowRegistry(InMemoryWorkflowStore(), InMemoryInstanceStore())


@pytest.fixture
def sleeps():
    """Collects the retry delays the engine asked to sleep for, in seconds."""
    return []


@pytest.fixture
def engine(registry, action_dispatcher, sleeps):
    """Create an ExecutionEngine that records retry sleeps instead of sleeping."""
    execution_engine = ExecutionEngine(
        registry,
        action_dispatcher,
        max_concurrent_instances=4,
        max_queued_instances=50,
        max_parallel_branches=4,
        sleep=sleeps.append,
    )
    yield execution_engine
    execution_engine.shutdown()


@pytest.fixture
def triggers(registry, engine):
    """Create a TriggerDispatcher bound to the registry."""
    dispatcher = TriggerDispatcher(registry, engine)
    registry.bind_triggers(dispatcher)
    return dispatcher


@pytest.fixture
def deploy(registry, triggers):
    """Register and activate a definition, returning the stored copy."""
    def _deploy(definition) -> WorkflowDefinition:
        workflow_id = registry.create(definition)
        registry.activate(workflow_id)
        return registry.get(workflow_id)
    return _deploy


@pytest.fixture
def run(engine):
    """Start an instance and wait until it is terminal."""
    def _run(definition: WorkflowDefinition, variables: Dict[str, Any] = None, timeout: float = 10.0):
        instance_id = engine.start(definition, initial_variables=variables)
        return engine.wait_for_completion(instance_id, timeout=timeout)
    return _run


def linear_workflow(name: str = "Linear", middle: List[Dict[str, Any]] = None, **extra) -> Dict[str, Any]:
    """start -> middle steps (chained in order) -> end, as a definition dict."""
    middle = middle or [{"id": "A", "type": "task"}]
    ids = [step["id"] for step in middle]
    steps = [{"id": "start", "type": "start", "on_success": [ids[0]]}]
    for index, step in enumerate(middle):
        step = dict(step)
        step.setdefault("on_success", [ids[index + 1]] if index + 1 < len(ids) else ["end"])
        steps.append(step)
    steps.append({"id": "end", "type": "end"})
    return {"name": name, "steps": steps, **extra}


def history_of(instance, step_id: str = None) -> List[tuple]:
    """(step_id, action) pairs of an instance's history, optionally for one step."""
    return [
        (entry.step_id, entry.action.value)
        for entry in instance.history
        if step_id is None or entry.step_id == step_id
    ]
