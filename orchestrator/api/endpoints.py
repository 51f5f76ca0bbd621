"""FastAPI REST endpoints for the workflow orchestrator."""

from datetime import datetime
from typing import Dict, List, Any, Optional
from fastapi import APIRouter, Body, HTTPException, Depends, Query, Response, status
from pydantic import BaseModel, Field

from ..core.actions import ActionDispatcher
from ..core.execution_engine import ExecutionEngine
from ..core.registry import WorkflowRegistry
from ..core.triggers import TriggerDispatcher, TriggerEvent
from ..core.exceptions import (
    WorkflowEngineError,
    create_error_response,
    error_status_code,
)
from ..models import (
    DefinitionFilter,
    InstanceFilter,
    InstanceStatus,
    TriggerType,
    ValidationResult,
    WorkflowContext,
    WorkflowDefinition,
    WorkflowExecutionResult,
    WorkflowHistoryEntry,
    WorkflowInstance,
    WorkflowStats,
    WorkflowStatus,
    WorkflowSummary,
)
from ..core.logging import get_logger
from ..templates import WorkflowTemplates

logger = get_logger(__name__)

# Create router
router = APIRouter(prefix="/api/v1", tags=["workflow"])

# Global instances (initialized by the application factory)
_registry: Optional[WorkflowRegistry] = None
_execution_engine: Optional[ExecutionEngine] = None
_trigger_dispatcher: Optional[TriggerDispatcher] = None
_action_dispatcher: Optional[ActionDispatcher] = None


def init_dependencies(
    registry: WorkflowRegistry,
    execution_engine: ExecutionEngine,
    trigger_dispatcher: TriggerDispatcher,
    action_dispatcher: Optional[ActionDispatcher] = None
):
    """Initialize the global dependencies."""
    global _registry, _execution_engine, _trigger_dispatcher, _action_dispatcher
    _registry = registry
    _execution_engine = execution_engine
    _trigger_dispatcher = trigger_dispatcher
    _action_dispatcher = action_dispatcher


def get_registry() -> WorkflowRegistry:
    """Dependency to get the workflow registry."""
    if _registry is None:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Workflow registry not initialized"
        )
    return _registry


def get_execution_engine() -> ExecutionEngine:
    """Dependency to get execution engine."""
    if _execution_engine is None:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Execution engine not initialized"
        )
    return _execution_engine


def get_trigger_dispatcher() -> TriggerDispatcher:
    """Dependency to get the trigger dispatcher."""
    if _trigger_dispatcher is None:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Trigger dispatcher not initialized"
        )
    return _trigger_dispatcher


def _http_error(error: WorkflowEngineError) -> HTTPException:
    logger.warning(f"Request failed with {error.error_code}: {error.message}")
    return HTTPException(status_code=error_status_code(error), detail=create_error_response(error))


# Request/Response models
class CreateWorkflowRequest(BaseModel):
    """Request model for registering a workflow definition."""
    workflow: WorkflowDefinition = Field(..., description="Workflow definition to register")
    created_by: Optional[str] = Field(None, description="Author of the definition")


class CreateWorkflowResponse(BaseModel):
    """Response model for workflow registration."""
    workflow_id: str = Field(..., description="Identifier of the registered workflow")
    message: str = Field(..., description="Success message")
    validation_warnings: List[str] = Field(default_factory=list, description="Validation warnings")


class UpdateWorkflowRequest(BaseModel):
    """Partial update of a workflow definition."""
    changes: Dict[str, Any] = Field(..., description="Fields to change")
    updated_by: Optional[str] = None


class StartWorkflowRequest(BaseModel):
    """Request model for starting an instance."""
    variables: Dict[str, Any] = Field(default_factory=dict, description="Initial variables")
    context: Optional[WorkflowContext] = Field(None, description="Who or what starts the instance")


class StartWorkflowResponse(BaseModel):
    """Response model for a started instance."""
    instance_id: str = Field(..., description="Identifier of the new instance")
    message: str = Field(..., description="Success message")
    status: InstanceStatus = Field(..., description="Initial instance status")


class CompleteTaskRequest(BaseModel):
    variables: Dict[str, Any] = Field(default_factory=dict, description="Variables written by the task")


class FailTaskRequest(BaseModel):
    error: str = Field(..., description="Why the task failed")


class TriggerDispatchResponse(BaseModel):
    """Outcome of offering an inbound event to the registered triggers."""
    matched: int = Field(..., description="Number of triggers that matched")
    results: List[Dict[str, Any]] = Field(default_factory=list)


# Workflow definitions

@router.post(
    "/workflows",
    response_model=CreateWorkflowResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Register a workflow definition",
    description="Validate and register a workflow definition in draft status"
)
async def create_workflow(
    request: CreateWorkflowRequest,
    registry: WorkflowRegistry = Depends(get_registry)
) -> CreateWorkflowResponse:
    """
    Register a new workflow definition.

    Args:
        request: The definition and its author
        registry: Workflow registry dependency

    Returns:
        Response containing the workflow id and any validation warnings

    Raises:
        HTTPException: 422 if the definition is invalid, 409 on a name/version conflict
    """
    try:
        logger.info(f"Creating new workflow: {request.workflow.name}")
        validation_result = registry.validate(request.workflow)
        workflow_id = registry.create(request.workflow, created_by=request.created_by)
        return CreateWorkflowResponse(
            workflow_id=workflow_id,
            message=f"Workflow '{request.workflow.name}' created successfully",
            validation_warnings=validation_result.warnings
        )
    except WorkflowEngineError as e:
        raise _http_error(e)


@router.post(
    "/workflows/validate",
    response_model=ValidationResult,
    summary="Validate a workflow definition without registering it"
)
async def validate_workflow(
    workflow: Dict[str, Any] = Body(...),
    registry: WorkflowRegistry = Depends(get_registry)
) -> ValidationResult:
    return registry.validate(workflow)


@router.get(
    "/workflows",
    response_model=List[WorkflowSummary],
    summary="List workflow definitions"
)
async def list_workflows(
    status_filter: Optional[WorkflowStatus] = Query(None, alias="status"),
    name: Optional[str] = Query(None, description="Case-insensitive name filter"),
    registry: WorkflowRegistry = Depends(get_registry)
) -> List[WorkflowSummary]:
    return registry.list_summaries(DefinitionFilter(status=status_filter, name=name))


@router.get(
    "/workflows/{workflow_id}",
    response_model=WorkflowDefinition,
    summary="Get a workflow definition"
)
async def get_workflow(
    workflow_id: str,
    version: Optional[str] = Query(None, description="Specific version; latest when omitted"),
    registry: WorkflowRegistry = Depends(get_registry)
) -> WorkflowDefinition:
    try:
        return registry.get(workflow_id, version)
    except WorkflowEngineError as e:
        raise _http_error(e)


@router.get(
    "/workflows/{workflow_id}/versions",
    response_model=List[WorkflowDefinition],
    summary="List every stored version of a workflow"
)
async def list_workflow_versions(
    workflow_id: str,
    registry: WorkflowRegistry = Depends(get_registry)
) -> List[WorkflowDefinition]:
    try:
        return registry.list_versions(workflow_id)
    except WorkflowEngineError as e:
        raise _http_error(e)


@router.put(
    "/workflows/{workflow_id}",
    response_model=WorkflowDefinition,
    summary="Update a workflow definition",
    description="Content changes to a published workflow are stored as a new version"
)
async def update_workflow(
    workflow_id: str,
    request: UpdateWorkflowRequest,
    registry: WorkflowRegistry = Depends(get_registry)
) -> WorkflowDefinition:
    try:
        return registry.update(workflow_id, request.changes, updated_by=request.updated_by)
    except WorkflowEngineError as e:
        raise _http_error(e)


@router.delete(
    "/workflows/{workflow_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete a workflow definition",
    description="Refused while running or paused instances reference the workflow"
)
async def delete_workflow(
    workflow_id: str,
    registry: WorkflowRegistry = Depends(get_registry)
):
    try:
        registry.delete(workflow_id)
    except WorkflowEngineError as e:
        raise _http_error(e)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/workflows/{workflow_id}/activate", response_model=WorkflowDefinition)
async def activate_workflow(workflow_id: str, registry: WorkflowRegistry = Depends(get_registry)):
    try:
        return registry.activate(workflow_id)
    except WorkflowEngineError as e:
        raise _http_error(e)


@router.post("/workflows/{workflow_id}/pause", response_model=WorkflowDefinition)
async def pause_workflow(workflow_id: str, registry: WorkflowRegistry = Depends(get_registry)):
    try:
        return registry.pause(workflow_id)
    except WorkflowEngineError as e:
        raise _http_error(e)


@router.post("/workflows/{workflow_id}/archive", response_model=WorkflowDefinition)
async def archive_workflow(workflow_id: str, registry: WorkflowRegistry = Depends(get_registry)):
    try:
        return registry.archive(workflow_id)
    except WorkflowEngineError as e:
        raise _http_error(e)


@router.post(
    "/workflows/{workflow_id}/start",
    response_model=StartWorkflowResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Start a workflow instance",
    description="Start an instance of the latest version; it runs in the background"
)
async def start_workflow(
    workflow_id: str,
    request: StartWorkflowRequest,
    triggers: TriggerDispatcher = Depends(get_trigger_dispatcher)
) -> StartWorkflowResponse:
    try:
        logger.info(f"Starting workflow: {workflow_id}")
        instance_id = triggers.fire_manual(workflow_id, request.variables, request.context)
        return StartWorkflowResponse(
            instance_id=instance_id,
            message="Workflow instance started successfully",
            status=InstanceStatus.RUNNING
        )
    except WorkflowEngineError as e:
        raise _http_error(e)


@router.get("/templates", response_model=List[str], summary="List built-in workflow templates")
async def list_templates() -> List[str]:
    return WorkflowTemplates.names()


@router.post(
    "/templates/{template_name}",
    response_model=CreateWorkflowResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Register a built-in workflow template"
)
async def create_from_template(
    template_name: str,
    registry: WorkflowRegistry = Depends(get_registry)
) -> CreateWorkflowResponse:
    factory = WorkflowTemplates.all().get(template_name)
    if factory is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Template '{template_name}' not found"
        )
    try:
        definition = factory()
        workflow_id = registry.create(definition)
        return CreateWorkflowResponse(
            workflow_id=workflow_id,
            message=f"Workflow '{definition.name}' created from template '{template_name}'",
            validation_warnings=registry.validate(definition).warnings
        )
    except WorkflowEngineError as e:
        raise _http_error(e)


# Instances

@router.get(
    "/instances",
    response_model=List[WorkflowInstance],
    summary="List workflow instances"
)
async def list_instances(
    status_filter: Optional[InstanceStatus] = Query(None, alias="status"),
    workflow_id: Optional[str] = None,
    started_after: Optional[datetime] = None,
    started_before: Optional[datetime] = None,
    registry: WorkflowRegistry = Depends(get_registry)
) -> List[WorkflowInstance]:
    return registry.list_instances(InstanceFilter(
        status=status_filter,
        workflow_id=workflow_id,
        started_after=started_after,
        started_before=started_before
    ))


@router.get("/instances/{instance_id}", response_model=WorkflowInstance)
async def get_instance(instance_id: str, registry: WorkflowRegistry = Depends(get_registry)):
    try:
        return registry.get_instance(instance_id)
    except WorkflowEngineError as e:
        raise _http_error(e)


@router.get("/instances/{instance_id}/history", response_model=List[WorkflowHistoryEntry])
async def get_instance_history(instance_id: str, registry: WorkflowRegistry = Depends(get_registry)):
    try:
        return registry.get_history(instance_id)
    except WorkflowEngineError as e:
        raise _http_error(e)


@router.get("/instances/{instance_id}/result", response_model=WorkflowExecutionResult)
async def get_instance_result(instance_id: str, engine: ExecutionEngine = Depends(get_execution_engine)):
    try:
        return engine.get_result(instance_id)
    except WorkflowEngineError as e:
        raise _http_error(e)


@router.post("/instances/{instance_id}/cancel", response_model=WorkflowInstance)
async def cancel_instance(instance_id: str, engine: ExecutionEngine = Depends(get_execution_engine)):
    try:
        return engine.cancel(instance_id)
    except WorkflowEngineError as e:
        raise _http_error(e)


@router.post("/instances/{instance_id}/pause", response_model=WorkflowInstance)
async def pause_instance(instance_id: str, engine: ExecutionEngine = Depends(get_execution_engine)):
    try:
        return engine.pause(instance_id)
    except WorkflowEngineError as e:
        raise _http_error(e)


@router.post("/instances/{instance_id}/resume", response_model=WorkflowInstance)
async def resume_instance(instance_id: str, engine: ExecutionEngine = Depends(get_execution_engine)):
    try:
        return engine.resume(instance_id)
    except WorkflowEngineError as e:
        raise _http_error(e)


@router.post(
    "/instances/{instance_id}/steps/{step_id}/complete",
    response_model=WorkflowInstance,
    summary="Complete a pending user task"
)
async def complete_user_task(
    instance_id: str,
    step_id: str,
    request: CompleteTaskRequest,
    engine: ExecutionEngine = Depends(get_execution_engine)
) -> WorkflowInstance:
    try:
        return engine.complete_user_task(instance_id, step_id, request.variables)
    except WorkflowEngineError as e:
        raise _http_error(e)


@router.post(
    "/instances/{instance_id}/steps/{step_id}/fail",
    response_model=WorkflowInstance,
    summary="Fail a pending user task"
)
async def fail_user_task(
    instance_id: str,
    step_id: str,
    request: FailTaskRequest,
    engine: ExecutionEngine = Depends(get_execution_engine)
) -> WorkflowInstance:
    try:
        return engine.fail_user_task(instance_id, step_id, request.error)
    except WorkflowEngineError as e:
        raise _http_error(e)


# Inbound triggers

@router.post(
    "/webhooks/{path:path}",
    response_model=TriggerDispatchResponse,
    summary="Receive a webhook",
    description="Start every active workflow whose webhook trigger matches the path"
)
async def receive_webhook(
    path: str,
    payload: Optional[Dict[str, Any]] = Body(None),
    triggers: TriggerDispatcher = Depends(get_trigger_dispatcher)
) -> TriggerDispatchResponse:
    results = triggers.dispatch(TriggerEvent(
        type=TriggerType.WEBHOOK,
        source="/" + path.lstrip("/"),
        method="POST",
        payload=payload or {},
        context=WorkflowContext(source="webhook")
    ))
    return TriggerDispatchResponse(matched=len(results), results=[r.to_dict() for r in results])


@router.post(
    "/events/{event_name}",
    response_model=TriggerDispatchResponse,
    summary="Publish an event"
)
async def publish_event(
    event_name: str,
    payload: Optional[Dict[str, Any]] = Body(None),
    triggers: TriggerDispatcher = Depends(get_trigger_dispatcher)
) -> TriggerDispatchResponse:
    results = triggers.dispatch(TriggerEvent(
        type=TriggerType.EVENT,
        source=event_name,
        payload=payload or {},
        context=WorkflowContext(source="event")
    ))
    return TriggerDispatchResponse(matched=len(results), results=[r.to_dict() for r in results])


@router.post("/triggers/{trigger_id}/fire", summary="Fire a trigger by id")
async def fire_trigger(
    trigger_id: str,
    payload: Optional[Dict[str, Any]] = Body(None),
    triggers: TriggerDispatcher = Depends(get_trigger_dispatcher)
) -> Dict[str, Any]:
    try:
        return triggers.fire(trigger_id, payload or {}).to_dict()
    except WorkflowEngineError as e:
        raise _http_error(e)


# System

@router.get("/stats", response_model=WorkflowStats, summary="Definition and instance counts")
async def get_stats(registry: WorkflowRegistry = Depends(get_registry)) -> WorkflowStats:
    return registry.stats()


@router.get("/health", summary="Engine health and execution metrics")
async def get_system_health(
    engine: ExecutionEngine = Depends(get_execution_engine)
) -> Dict[str, Any]:
    health = {
        "status": "healthy",
        "engine": engine.get_execution_metrics(),
    }
    if _action_dispatcher is not None:
        health["actions"] = _action_dispatcher.get_metrics()
    return health
