"""Data models for the workflow orchestration engine."""

from .core import (
    WorkflowStatus,
    InstanceStatus,
    TERMINAL_STATUSES,
    StepType,
    TriggerType,
    VariableType,
    ConditionOperator,
    ConditionLogic,
    ActionType,
    ErrorStrategy,
    HistoryAction,
    Priority,
    SuspensionKind,
    ValidationResult,
    ValidationRule,
    RetryPolicy,
    ErrorHandlingConfig,
    WorkflowCondition,
    WorkflowAction,
    WorkflowStep,
    WorkflowTrigger,
    WorkflowVariable,
    WorkflowDefinition,
    WorkflowContext,
    WorkflowHistoryEntry,
    Suspension,
    WorkflowInstance,
    WorkflowExecutionResult,
    WorkflowStats,
    DefinitionFilter,
    InstanceFilter,
    WorkflowSummary,
    utcnow,
)

__all__ = [
    "WorkflowStatus",
    "InstanceStatus",
    "TERMINAL_STATUSES",
    "StepType",
    "TriggerType",
    "VariableType",
    "ConditionOperator",
    "ConditionLogic",
    "ActionType",
    "ErrorStrategy",
    "HistoryAction",
    "Priority",
    "SuspensionKind",
    "ValidationResult",
    "ValidationRule",
    "RetryPolicy",
    "ErrorHandlingConfig",
    "WorkflowCondition",
    "WorkflowAction",
    "WorkflowStep",
    "WorkflowTrigger",
    "WorkflowVariable",
    "WorkflowDefinition",
    "WorkflowContext",
    "WorkflowHistoryEntry",
    "Suspension",
    "WorkflowInstance",
    "WorkflowExecutionResult",
    "WorkflowStats",
    "DefinitionFilter",
    "InstanceFilter",
    "WorkflowSummary",
    "utcnow",
]
