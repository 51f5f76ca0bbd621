"""Core Pydantic models for the workflow orchestration engine."""

import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


_ID_PATTERN = re.compile(r'^[a-zA-Z0-9_.:-]+$')


def utcnow() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


class WorkflowStatus(str, Enum):
    """Lifecycle status of a workflow definition."""
    DRAFT = "draft"
    ACTIVE = "active"
    PAUSED = "paused"
    ARCHIVED = "archived"
    ERROR = "error"


class InstanceStatus(str, Enum):
    """Status of a workflow instance."""
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    PAUSED = "paused"
    CANCELLED = "cancelled"
    TIMEOUT = "timeout"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({
    InstanceStatus.COMPLETED,
    InstanceStatus.FAILED,
    InstanceStatus.CANCELLED,
    InstanceStatus.TIMEOUT,
})


class StepType(str, Enum):
    """Enumeration of workflow step types."""
    START = "start"
    END = "end"
    TASK = "task"
    DECISION = "decision"
    PARALLEL = "parallel"
    MERGE = "merge"
    TIMER = "timer"
    USER_TASK = "user_task"
    SERVICE_TASK = "service_task"
    SCRIPT = "script"
    SUBPROCESS = "subprocess"
    EVENT = "event"
    GATEWAY = "gateway"


class TriggerType(str, Enum):
    """Enumeration of inbound trigger types."""
    WEBHOOK = "webhook"
    SCHEDULE = "schedule"
    EVENT = "event"
    MANUAL = "manual"
    FILE_UPLOAD = "file_upload"
    DATA_CHANGE = "data_change"
    USER_ACTION = "user_action"
    API_CALL = "api_call"


class VariableType(str, Enum):
    """Declared types for workflow variables."""
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    DATE = "date"
    OBJECT = "object"
    ARRAY = "array"


class ConditionOperator(str, Enum):
    """Comparison operators supported by workflow conditions."""
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    CONTAINS = "contains"
    NOT_CONTAINS = "not_contains"
    STARTS_WITH = "starts_with"
    ENDS_WITH = "ends_with"
    IS_EMPTY = "is_empty"
    IS_NOT_EMPTY = "is_not_empty"
    IN = "in"
    NOT_IN = "not_in"
    REGEX = "regex"
    CUSTOM = "custom"


class ConditionLogic(str, Enum):
    """How a condition combines with the conditions before it."""
    AND = "and"
    OR = "or"


class ActionType(str, Enum):
    """External capabilities a step can invoke."""
    SEND_EMAIL = "send_email"
    SEND_NOTIFICATION = "send_notification"
    CREATE_TASK = "create_task"
    UPDATE_DATA = "update_data"
    CALL_API = "call_api"
    EXECUTE_SCRIPT = "execute_script"
    SEND_SMS = "send_sms"
    CREATE_DOCUMENT = "create_document"
    SCHEDULE_EVENT = "schedule_event"
    TRIGGER_WORKFLOW = "trigger_workflow"
    UPDATE_STATUS = "update_status"
    ASSIGN_USER = "assign_user"
    LOG_EVENT = "log_event"
    CUSTOM = "custom"


class ErrorStrategy(str, Enum):
    """Instance-level response to an unrecoverable step failure."""
    STOP = "stop"
    CONTINUE = "continue"
    RETRY = "retry"
    SKIP = "skip"
    ROLLBACK = "rollback"


class HistoryAction(str, Enum):
    """Kinds of step transitions recorded in instance history."""
    STARTED = "started"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    RETRIED = "retried"


class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class SuspensionKind(str, Enum):
    """Reasons an instance can be parked without holding a worker."""
    USER_TASK = "user_task"
    TIMER = "timer"
    SUBPROCESS = "subprocess"


class ValidationResult(BaseModel):
    """Result of definition validation."""
    is_valid: bool = Field(..., description="Whether the definition is valid")
    errors: List[str] = Field(default_factory=list, description="List of validation errors")
    warnings: List[str] = Field(default_factory=list, description="List of validation warnings")


class ValidationRule(BaseModel):
    """Validation rule applied to a variable value."""
    type: str = Field(..., description="required, min, max, pattern, email, url or custom")
    value: Any = Field(None, description="Rule argument (bound, pattern, expression)")
    message: str = Field("", description="Message reported when the rule fails")

    @field_validator('type')
    @classmethod
    def validate_rule_type(cls, rule_type):
        allowed = {"required", "min", "max", "pattern", "email", "url", "custom"}
        if rule_type not in allowed:
            raise ValueError(f"Unknown validation rule type: {rule_type}")
        return rule_type


class RetryPolicy(BaseModel):
    """Retry policy for steps and actions. Durations are in milliseconds."""
    max_attempts: int = Field(3, description="Maximum number of attempts, first attempt included")
    delay: int = Field(1000, description="Base delay before the first retry (ms)")
    backoff_multiplier: float = Field(2.0, description="Multiplier applied per retry")
    max_delay: int = Field(10000, description="Upper bound for a single delay (ms)")
    retryable_errors: List[str] = Field(
        default_factory=lambda: ["timeout", "network_error"],
        description="Error codes that may be retried"
    )

    @field_validator('max_attempts')
    @classmethod
    def validate_max_attempts(cls, max_attempts):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        return max_attempts

    @field_validator('delay', 'max_delay')
    @classmethod
    def validate_delays(cls, value):
        if value < 0:
            raise ValueError("Delays cannot be negative")
        return value

    @field_validator('backoff_multiplier')
    @classmethod
    def validate_multiplier(cls, multiplier):
        if multiplier < 1:
            raise ValueError("backoff_multiplier must be at least 1")
        return multiplier


class ErrorHandlingConfig(BaseModel):
    """Instance-level error handling configuration."""
    strategy: ErrorStrategy = Field(ErrorStrategy.STOP, description="Response to unrecoverable step failures")
    max_retries: int = Field(3, description="Retry budget reported to operators; attempts come from retry policies")
    retry_delay: int = Field(1000, description="Delay between retries (ms)")
    fallback_action: Optional[str] = Field(None, description="Action id dispatched when an instance fails")
    notification_recipients: List[str] = Field(default_factory=list, description="Notified when an instance fails")
    log_level: str = Field("error", description="Level used to log step failures")

    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, log_level):
        if log_level not in ("error", "warn", "info", "debug"):
            raise ValueError(f"Unsupported log level: {log_level}")
        return log_level


class WorkflowCondition(BaseModel):
    """A single comparison (or custom expression) over instance variables."""
    id: str = Field("", description="Condition identifier")
    name: str = Field("", description="Human readable name")
    expression: str = Field(..., description="Variable name/dotted path, or expression for custom")
    description: Optional[str] = None
    variables: List[str] = Field(default_factory=list, description="Variable names referenced")
    operator: ConditionOperator = Field(ConditionOperator.EQUALS, description="Comparison operator")
    value: Any = Field(None, description="Comparison value")
    logic: Optional[ConditionLogic] = Field(None, description="Combination with preceding conditions")

    @field_validator('expression')
    @classmethod
    def validate_expression(cls, expression):
        if not expression or not expression.strip():
            raise ValueError("Condition expression cannot be empty")
        return expression.strip()


class WorkflowAction(BaseModel):
    """Descriptor of an external capability invocation."""
    id: str = Field("", description="Action identifier")
    name: str = Field("", description="Human readable name")
    type: ActionType = Field(..., description="Capability to invoke")
    description: str = ""
    config: Dict[str, Any] = Field(default_factory=dict, description="Capability specific configuration")
    conditions: List[WorkflowCondition] = Field(default_factory=list, description="Guard conditions")
    on_success: List[str] = Field(default_factory=list, description="Steps enqueued when the action succeeds")
    on_failure: List[str] = Field(default_factory=list, description="Steps enqueued when the action fails")
    timeout: Optional[int] = Field(None, description="Timeout for the call (ms)")
    retry_policy: Optional[RetryPolicy] = None

    @field_validator('timeout')
    @classmethod
    def validate_timeout(cls, timeout):
        if timeout is not None and timeout <= 0:
            raise ValueError("Timeout must be a positive integer")
        return timeout


class WorkflowStep(BaseModel):
    """A node of the workflow graph."""
    id: str = Field(..., description="Unique identifier for the step")
    name: str = Field("", description="Human readable name")
    type: StepType = Field(..., description="Determines how the step is dispatched")
    description: str = ""
    config: Dict[str, Any] = Field(default_factory=dict, description="Type specific configuration")
    conditions: List[WorkflowCondition] = Field(default_factory=list, description="Guard conditions")
    actions: List[WorkflowAction] = Field(default_factory=list, description="Inline actions")
    action_ids: List[str] = Field(default_factory=list, description="Actions referenced from the definition")
    on_success: List[str] = Field(default_factory=list)
    on_failure: List[str] = Field(default_factory=list)
    on_timeout: List[str] = Field(default_factory=list)
    timeout: Optional[int] = Field(None, description="Step timeout (ms)")
    retry_policy: Optional[RetryPolicy] = None
    parallel: bool = Field(False, description="Fan out to every successor at once")
    wait_for: List[str] = Field(default_factory=list, description="Steps that must complete before this one runs")
    critical: bool = Field(True, description="Whether a failure may be skipped by the continue strategy")

    @field_validator('id')
    @classmethod
    def validate_id_format(cls, id_value):
        """Ensure step ID follows valid format."""
        if not id_value or not id_value.strip():
            raise ValueError("Step ID cannot be empty")
        if not _ID_PATTERN.match(id_value.strip()):
            raise ValueError("Step ID must contain only alphanumeric characters, '_', '-', '.' and ':'")
        return id_value.strip()

    @field_validator('timeout')
    @classmethod
    def validate_timeout(cls, timeout):
        if timeout is not None and timeout <= 0:
            raise ValueError("Timeout must be a positive integer")
        return timeout

    @model_validator(mode='after')
    def default_name(self):
        if not self.name:
            self.name = self.id
        return self

    def successors(self) -> List[str]:
        """All step ids this step can hand control to."""
        ids = list(self.on_success) + list(self.on_failure) + list(self.on_timeout)
        ids.extend(self.config.get("branches", []) or [])
        if self.config.get("default"):
            ids.append(self.config["default"])
        for action in self.actions:
            ids.extend(action.on_success)
            ids.extend(action.on_failure)
        return ids


class WorkflowTrigger(BaseModel):
    """Inbound event source that starts instances of a workflow."""
    id: str = Field(..., description="Trigger identifier")
    type: TriggerType = Field(..., description="Kind of inbound event")
    name: str = ""
    description: str = ""
    config: Dict[str, Any] = Field(default_factory=dict, description="Type specific configuration")
    enabled: bool = True
    conditions: List[WorkflowCondition] = Field(default_factory=list, description="Guard on the event payload")


class WorkflowVariable(BaseModel):
    """Declared contract for an instance variable."""
    id: str = ""
    name: str = Field(..., description="Variable name")
    type: VariableType = VariableType.STRING
    required: bool = False
    default: Any = None
    description: Optional[str] = None
    validation: List[ValidationRule] = Field(default_factory=list)

    @field_validator('name')
    @classmethod
    def validate_name(cls, name):
        if not name or not name.strip():
            raise ValueError("Variable name cannot be empty")
        return name.strip()


class WorkflowDefinition(BaseModel):
    """Complete, versioned description of a workflow."""
    id: str = Field("", description="Opaque, stable identifier")
    name: str = Field(..., description="Name of the workflow")
    description: str = ""
    version: str = Field("1.0.0", description="Definition version")
    status: WorkflowStatus = WorkflowStatus.DRAFT
    triggers: List[WorkflowTrigger] = Field(default_factory=list)
    steps: List[WorkflowStep] = Field(..., description="Steps of the workflow graph")
    variables: List[WorkflowVariable] = Field(default_factory=list)
    conditions: List[WorkflowCondition] = Field(default_factory=list, description="Named condition catalog")
    actions: List[WorkflowAction] = Field(default_factory=list, description="Named action catalog")
    error_handling: ErrorHandlingConfig = Field(default_factory=ErrorHandlingConfig)
    retry_policy: RetryPolicy = Field(default_factory=RetryPolicy)
    timeout: Optional[int] = Field(None, description="Instance-wide timeout (ms)")
    step_timeout: Optional[int] = Field(None, description="Default step timeout (ms)")
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    created_by: str = "system"
    updated_by: str = "system"

    @field_validator('name')
    @classmethod
    def validate_name_not_empty(cls, name):
        """Ensure workflow name is not empty."""
        if not name or not name.strip():
            raise ValueError("Workflow name cannot be empty")
        return name.strip()

    @field_validator('timeout', 'step_timeout')
    @classmethod
    def validate_timeouts(cls, timeout):
        if timeout is not None and timeout <= 0:
            raise ValueError("Timeout must be a positive integer")
        return timeout

    def get_step(self, step_id: str) -> Optional[WorkflowStep]:
        for step in self.steps:
            if step.id == step_id:
                return step
        return None

    def get_action(self, action_id: str) -> Optional[WorkflowAction]:
        for action in self.actions:
            if action.id == action_id:
                return action
        return None

    def get_condition(self, condition_id: str) -> Optional[WorkflowCondition]:
        for condition in self.conditions:
            if condition.id == condition_id:
                return condition
        return None

    def start_steps(self) -> List[WorkflowStep]:
        return [step for step in self.steps if step.type == StepType.START]


class WorkflowContext(BaseModel):
    """Who and what initiated an instance."""
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    source: str = "manual"
    priority: Priority = Priority.MEDIUM
    tags: List[str] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class WorkflowHistoryEntry(BaseModel):
    """Immutable audit record of one step transition."""
    model_config = ConfigDict(frozen=True)

    id: str
    sequence: int
    step_id: str
    step_name: str
    action: HistoryAction
    timestamp: datetime
    duration: Optional[float] = Field(None, description="Duration of the transition (ms)")
    error: Optional[str] = None
    variables: Dict[str, Any] = Field(default_factory=dict, description="Variable snapshot")
    metadata: Dict[str, Any] = Field(default_factory=dict)


class Suspension(BaseModel):
    """A step parked until an external signal or a deadline."""
    step_id: str
    kind: SuspensionKind
    since: datetime = Field(default_factory=utcnow)
    resume_at: Optional[datetime] = None
    deadline: Optional[datetime] = None
    child_instance_id: Optional[str] = None
    variables_before: Dict[str, Any] = Field(default_factory=dict)


class WorkflowInstance(BaseModel):
    """A single execution of a workflow definition."""
    id: str
    workflow_id: str
    workflow_version: str
    status: InstanceStatus = InstanceStatus.RUNNING
    current_step: Optional[str] = None
    ready: List[str] = Field(default_factory=list, description="Frontier of steps ready to run")
    waiting: List[str] = Field(default_factory=list, description="Steps blocked on wait_for")
    completed_steps: List[str] = Field(default_factory=list)
    suspensions: List[Suspension] = Field(default_factory=list)
    reached_end: bool = False
    pause_requested: bool = False
    variables: Dict[str, Any] = Field(default_factory=dict)
    context: WorkflowContext = Field(default_factory=WorkflowContext)
    retry_count: int = 0
    started_at: datetime = Field(default_factory=utcnow)
    last_activity_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    error: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    history: List[WorkflowHistoryEntry] = Field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def get_suspension(self, step_id: str) -> Optional[Suspension]:
        for suspension in self.suspensions:
            if suspension.step_id == step_id:
                return suspension
        return None


class WorkflowExecutionResult(BaseModel):
    """Summary of a finished instance."""
    instance_id: str
    success: bool
    status: InstanceStatus
    duration: float = Field(..., description="Wall time between start and completion (ms)")
    steps_executed: int = 0
    steps_skipped: int = 0
    steps_failed: int = 0
    error: Optional[str] = None
    output: Dict[str, Any] = Field(default_factory=dict)


class WorkflowStats(BaseModel):
    """Aggregate counts for the operator dashboards."""
    total_workflows: int = 0
    active_workflows: int = 0
    total_instances: int = 0
    running_instances: int = 0
    completed_instances: int = 0
    failed_instances: int = 0
    paused_instances: int = 0
    cancelled_instances: int = 0
    timeout_instances: int = 0


class DefinitionFilter(BaseModel):
    """Filter for listing definitions."""
    status: Optional[WorkflowStatus] = None
    name: Optional[str] = Field(None, description="Case-insensitive substring of the name")


class InstanceFilter(BaseModel):
    """Filter for listing instances."""
    status: Optional[InstanceStatus] = None
    workflow_id: Optional[str] = None
    started_after: Optional[datetime] = None
    started_before: Optional[datetime] = None

    def matches(self, instance: WorkflowInstance) -> bool:
        if self.status is not None and instance.status != self.status:
            return False
        if self.workflow_id is not None and instance.workflow_id != self.workflow_id:
            return False
        if self.started_after is not None and instance.started_at < self.started_after:
            return False
        if self.started_before is not None and instance.started_at > self.started_before:
            return False
        return True


class WorkflowSummary(BaseModel):
    """Summary information about a workflow definition."""
    id: str
    name: str
    description: str
    version: str
    status: WorkflowStatus
    created_at: datetime
    updated_at: datetime
    step_count: int
    trigger_count: int
