"""Built-in workflow templates.

Each template returns a fresh draft ``WorkflowDefinition`` without an id,
ready to be passed to ``WorkflowRegistry.create`` and activated.
"""

from typing import Callable, Dict, List

from .models import (
    ActionType,
    ConditionOperator,
    ErrorHandlingConfig,
    ErrorStrategy,
    RetryPolicy,
    StepType,
    TriggerType,
    VariableType,
    WorkflowAction,
    WorkflowDefinition,
    WorkflowStep,
    WorkflowTrigger,
    WorkflowVariable,
)

REVIEW_OUTCOMES = ["approved", "rejected", "needs_more_info"]


def _error_handling() -> ErrorHandlingConfig:
    return ErrorHandlingConfig(strategy=ErrorStrategy.RETRY, max_retries=3, retry_delay=5000, log_level="error")


def _retry_policy() -> RetryPolicy:
    return RetryPolicy(
        max_attempts=3,
        delay=1000,
        backoff_multiplier=2.0,
        max_delay=10000,
        retryable_errors=["timeout", "network_error"],
    )


def _required_string(name: str, description: str) -> WorkflowVariable:
    return WorkflowVariable(id=name, name=name, type=VariableType.STRING, required=True, description=description)


class WorkflowTemplates:
    """Factory for the workflows shipped with the orchestrator."""

    @staticmethod
    def application_review() -> WorkflowDefinition:
        """Review a submitted application and tell the applicant the outcome.

        The ``initial_review`` user task parks the instance until a reviewer
        completes it with a ``review_status`` of approved, rejected or
        needs_more_info.
        """
        return WorkflowDefinition(
            name="Application Review Workflow",
            description="Automated workflow for reviewing and processing applications",
            version="1.0.0",
            triggers=[
                WorkflowTrigger(
                    id="app_submitted",
                    type=TriggerType.EVENT,
                    name="Application Submitted",
                    description="Triggered when a new application is submitted",
                    config={"event": "application.submitted"},
                )
            ],
            steps=[
                WorkflowStep(id="start", name="Start", type=StepType.START, on_success=["initial_review"]),
                WorkflowStep(
                    id="initial_review",
                    name="Initial Review",
                    type=StepType.USER_TASK,
                    description="Initial review of application",
                    config={"task_type": "review", "assignee": "admin", "priority": "medium"},
                    on_success=["decision"],
                ),
                WorkflowStep(
                    id="decision",
                    name="Review Decision",
                    type=StepType.DECISION,
                    description="Route on the reviewer's decision",
                    config={
                        "routes": [
                            {
                                "target": "notify_applicant",
                                "conditions": [{
                                    "expression": "review_status",
                                    "operator": ConditionOperator.IN.value,
                                    "value": ["approved", "rejected"],
                                }],
                            },
                            {
                                "target": "request_more_info",
                                "conditions": [{
                                    "expression": "review_status",
                                    "operator": ConditionOperator.EQUALS.value,
                                    "value": "needs_more_info",
                                }],
                            },
                        ],
                    },
                ),
                WorkflowStep(
                    id="notify_applicant",
                    name="Notify Applicant",
                    type=StepType.TASK,
                    description="Notify applicant of decision",
                    actions=[
                        WorkflowAction(
                            id="send_decision",
                            type=ActionType.SEND_NOTIFICATION,
                            config={"template": "application_decision", "recipient_variable": "application_id"},
                        )
                    ],
                    on_success=["end"],
                ),
                WorkflowStep(
                    id="request_more_info",
                    name="Request More Information",
                    type=StepType.TASK,
                    description="Ask the applicant for missing details",
                    actions=[
                        WorkflowAction(
                            id="send_info_request",
                            type=ActionType.SEND_EMAIL,
                            config={"template": "application_more_info", "recipient_variable": "application_id"},
                        )
                    ],
                    on_success=["end"],
                ),
                WorkflowStep(id="end", name="End", type=StepType.END),
            ],
            variables=[
                _required_string("application_id", "Application under review"),
                _required_string("reviewer_id", "User assigned to the review"),
                WorkflowVariable(id="review_status", name="review_status", type=VariableType.STRING,
                                 description=f"One of {', '.join(REVIEW_OUTCOMES)}"),
            ],
            error_handling=_error_handling(),
            timeout=3600000,
            retry_policy=_retry_policy(),
        )

    @staticmethod
    def placement() -> WorkflowDefinition:
        """Onboard a learner into a new placement."""
        return WorkflowDefinition(
            name="Placement Workflow",
            description="Automated workflow for managing learner placements",
            version="1.0.0",
            triggers=[
                WorkflowTrigger(
                    id="placement_created",
                    type=TriggerType.EVENT,
                    name="Placement Created",
                    description="Triggered when a new placement is created",
                    config={"event": "placement.created"},
                )
            ],
            steps=[
                WorkflowStep(id="start", name="Start", type=StepType.START, on_success=["assign_supervisor"]),
                WorkflowStep(
                    id="assign_supervisor",
                    name="Assign Supervisor",
                    type=StepType.TASK,
                    description="Assign supervisor to placement",
                    config={"task_type": "assignment", "assignee": "admin", "action_type": ActionType.ASSIGN_USER.value},
                    on_success=["send_welcome_email"],
                ),
                WorkflowStep(
                    id="send_welcome_email",
                    name="Send Welcome Email",
                    type=StepType.TASK,
                    description="Send welcome email to learner",
                    config={"template": "placement_welcome", "action_type": ActionType.SEND_EMAIL.value},
                    on_success=["schedule_orientation"],
                ),
                WorkflowStep(
                    id="schedule_orientation",
                    name="Schedule Orientation",
                    type=StepType.TASK,
                    description="Schedule orientation meeting",
                    config={"task_type": "scheduling", "assignee": "supervisor",
                            "action_type": ActionType.SCHEDULE_EVENT.value},
                    on_success=["end"],
                ),
                WorkflowStep(id="end", name="End", type=StepType.END),
            ],
            variables=[
                _required_string("placement_id", "Placement being set up"),
                _required_string("learner_id", "Learner starting the placement"),
                _required_string("company_id", "Host company"),
            ],
            error_handling=_error_handling(),
            timeout=7200000,
            retry_policy=_retry_policy(),
        )

    @classmethod
    def all(cls) -> Dict[str, Callable[[], WorkflowDefinition]]:
        """Template factories keyed by template name."""
        return {
            "application_review": cls.application_review,
            "placement": cls.placement,
        }

    @classmethod
    def names(cls) -> List[str]:
        return sorted(cls.all())
