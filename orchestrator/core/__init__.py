"""Core workflow engine components."""

from .exceptions import (
    WorkflowEngineError,
    DefinitionInvalidError,
    ConflictError,
    WorkflowNotActiveError,
    NotFoundError,
    WorkflowNotFoundError,
    InstanceNotFoundError,
    VariableValidationError,
    StepExecutionError,
    WorkflowTimeoutError,
    InvalidStateError,
    WorkflowCancelledError,
    StorageError,
    ResourceExhaustionError,
)
from .logging import setup_logging, get_logger
from .actions import ActionDispatcher, ActionRequest, ActionResult
from .conditions import ConditionEvaluator
from .registry import WorkflowRegistry
from .execution_engine import ExecutionEngine
from .triggers import TriggerDispatcher, TriggerEvent, TriggerResult

__all__ = [
    "WorkflowEngineError",
    "DefinitionInvalidError",
    "ConflictError",
    "WorkflowNotActiveError",
    "NotFoundError",
    "WorkflowNotFoundError",
    "InstanceNotFoundError",
    "VariableValidationError",
    "StepExecutionError",
    "WorkflowTimeoutError",
    "InvalidStateError",
    "WorkflowCancelledError",
    "StorageError",
    "ResourceExhaustionError",
    "setup_logging",
    "get_logger",
    "ActionDispatcher",
    "ActionRequest",
    "ActionResult",
    "ConditionEvaluator",
    "WorkflowRegistry",
    "ExecutionEngine",
    "TriggerDispatcher",
    "TriggerEvent",
    "TriggerResult",
]
