"""Exception hierarchy for the workflow orchestration engine."""

from datetime import datetime, timezone
from typing import Optional, Dict, Any, List
from enum import Enum


class ErrorSeverity(Enum):
    """Error severity levels for categorizing exceptions."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorCategory(Enum):
    """Categories of errors for better classification."""
    VALIDATION = "validation"
    EXECUTION = "execution"
    STORAGE = "storage"
    NETWORK = "network"
    CONFIGURATION = "configuration"
    RESOURCE = "resource"
    CONFLICT = "conflict"
    NOT_FOUND = "not_found"
    BUSINESS_LOGIC = "business_logic"


class WorkflowEngineError(Exception):
    """Base exception for all workflow engine errors."""

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        category: ErrorCategory = ErrorCategory.EXECUTION,
        details: Optional[Dict[str, Any]] = None,
        recoverable: bool = False,
        retry_after: Optional[int] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.__class__.__name__
        self.severity = severity
        self.category = category
        self.details = details or {}
        self.recoverable = recoverable
        self.retry_after = retry_after
        self.context = context or {}
        self.timestamp = datetime.now(timezone.utc)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging and API responses."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "severity": self.severity.value,
            "category": self.category.value,
            "details": self.details,
            "recoverable": self.recoverable,
            "retry_after": self.retry_after,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
            "exception_type": self.__class__.__name__
        }

    def add_context(self, **kwargs):
        """Add additional context to the exception."""
        self.context.update(kwargs)
        return self

    def add_details(self, **kwargs):
        """Add additional details to the exception."""
        self.details.update(kwargs)
        return self


class DefinitionInvalidError(WorkflowEngineError):
    """Raised when a workflow definition fails validation."""

    def __init__(
        self,
        message: str,
        validation_errors: Optional[List[str]] = None,
        workflow_name: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.MEDIUM,
            category=ErrorCategory.VALIDATION,
            **kwargs
        )
        self.validation_errors = validation_errors or []
        if workflow_name:
            self.add_context(workflow_name=workflow_name)
        if validation_errors:
            self.add_details(validation_errors=validation_errors)


class ConflictError(WorkflowEngineError):
    """Raised when an operation conflicts with the current state of a resource."""

    def __init__(self, message: str, workflow_id: Optional[str] = None, **kwargs):
        kwargs.setdefault("severity", ErrorSeverity.MEDIUM)
        kwargs.setdefault("category", ErrorCategory.CONFLICT)
        super().__init__(message, **kwargs)
        if workflow_id:
            self.add_context(workflow_id=workflow_id)


class WorkflowNotActiveError(ConflictError):
    """Raised when starting an instance of a definition that is not active."""

    def __init__(self, workflow_id: str, status: str, **kwargs):
        super().__init__(
            f"Workflow '{workflow_id}' is not active (status: {status})",
            workflow_id=workflow_id,
            **kwargs
        )
        self.add_details(status=status)


class NotFoundError(WorkflowEngineError):
    """Raised when a referenced resource does not exist."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("severity", ErrorSeverity.LOW)
        kwargs.setdefault("category", ErrorCategory.NOT_FOUND)
        super().__init__(message, **kwargs)


class WorkflowNotFoundError(NotFoundError):
    """Raised when a workflow definition cannot be found."""

    def __init__(self, workflow_id: str, version: Optional[str] = None, **kwargs):
        suffix = f" (version {version})" if version else ""
        super().__init__(f"Workflow '{workflow_id}' not found{suffix}", **kwargs)
        self.add_context(workflow_id=workflow_id)
        if version:
            self.add_context(version=version)


class InstanceNotFoundError(NotFoundError):
    """Raised when a workflow instance cannot be found."""

    def __init__(self, instance_id: str, **kwargs):
        super().__init__(f"Workflow instance '{instance_id}' not found", **kwargs)
        self.add_context(instance_id=instance_id)


class VariableValidationError(WorkflowEngineError):
    """Raised when instance variables violate the declared contract."""

    def __init__(self, message: str, variable_errors: Optional[List[str]] = None, **kwargs):
        super().__init__(
            message,
            severity=ErrorSeverity.MEDIUM,
            category=ErrorCategory.VALIDATION,
            **kwargs
        )
        self.variable_errors = variable_errors or []
        if variable_errors:
            self.add_details(variable_errors=variable_errors)


class StepExecutionError(WorkflowEngineError):
    """Raised when a step fails; ``error_code`` drives retry decisions."""

    def __init__(
        self,
        message: str,
        step_id: Optional[str] = None,
        instance_id: Optional[str] = None,
        execution_time: Optional[float] = None,
        **kwargs
    ):
        kwargs.setdefault("severity", ErrorSeverity.HIGH)
        kwargs.setdefault("category", ErrorCategory.EXECUTION)
        kwargs.setdefault("recoverable", True)
        super().__init__(message, **kwargs)
        if step_id:
            self.add_context(step_id=step_id)
        if instance_id:
            self.add_context(instance_id=instance_id)
        if execution_time:
            self.add_details(execution_time=execution_time)


class WorkflowTimeoutError(StepExecutionError):
    """Raised when a step or an instance exceeds its time budget."""

    def __init__(self, message: str, timeout_ms: Optional[int] = None, **kwargs):
        kwargs.setdefault("error_code", "timeout")
        super().__init__(message, **kwargs)
        if timeout_ms is not None:
            self.add_details(timeout_ms=timeout_ms)


class InvalidStateError(WorkflowEngineError):
    """Raised when a control operation does not apply to the current status."""

    def __init__(self, message: str, current_status: Optional[str] = None, **kwargs):
        super().__init__(
            message,
            severity=ErrorSeverity.MEDIUM,
            category=ErrorCategory.CONFLICT,
            **kwargs
        )
        if current_status:
            self.add_details(current_status=current_status)


class WorkflowCancelledError(InvalidStateError):
    """Raised when a control operation targets a cancelled instance."""

    def __init__(self, instance_id: str, **kwargs):
        kwargs.setdefault("error_code", "cancelled")
        super().__init__(
            f"Workflow instance '{instance_id}' was cancelled",
            current_status="cancelled",
            **kwargs
        )
        self.add_context(instance_id=instance_id)


class StorageError(WorkflowEngineError):
    """Raised when storage operations fail."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        table: Optional[str] = None,
        **kwargs
    ):
        kwargs.setdefault("recoverable", True)
        kwargs.setdefault("retry_after", 3)
        super().__init__(
            message,
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.STORAGE,
            **kwargs
        )
        if operation:
            self.add_context(operation=operation)
        if table:
            self.add_context(table=table)


class ResourceExhaustionError(WorkflowEngineError):
    """Raised when system resources are exhausted."""

    def __init__(
        self,
        message: str,
        resource_type: Optional[str] = None,
        current_usage: Optional[int] = None,
        limit: Optional[int] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.CRITICAL,
            category=ErrorCategory.RESOURCE,
            recoverable=True,
            retry_after=30,
            **kwargs
        )
        if resource_type:
            self.add_context(resource_type=resource_type)
        if current_usage is not None and limit is not None:
            self.add_details(current_usage=current_usage, limit=limit)


class ActionDispatchError(WorkflowEngineError):
    """Raised when an action cannot be dispatched at all."""

    def __init__(self, message: str, action_type: Optional[str] = None, **kwargs):
        super().__init__(
            message,
            severity=ErrorSeverity.MEDIUM,
            category=ErrorCategory.CONFIGURATION,
            **kwargs
        )
        if action_type:
            self.add_context(action_type=action_type)


def error_status_code(error: WorkflowEngineError) -> int:
    """HTTP status code for an engine error."""
    if isinstance(error, NotFoundError):
        return 404
    if isinstance(error, (ConflictError, InvalidStateError)):
        return 409
    if isinstance(error, (DefinitionInvalidError, VariableValidationError)):
        return 422
    if isinstance(error, ResourceExhaustionError):
        return 503
    return 500


def create_error_response(error: WorkflowEngineError) -> Dict[str, Any]:
    """Create a standardized error response from a WorkflowEngineError."""
    return {
        "error": error.error_code,
        "message": error.message,
        "details": {
            **error.details,
            "severity": error.severity.value,
            "category": error.category.value,
            "recoverable": error.recoverable,
            "retry_after": error.retry_after,
            "timestamp": error.timestamp.isoformat()
        },
        "context": error.context
    }
