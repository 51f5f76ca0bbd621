"""Trigger Dispatcher: turns inbound events into workflow instances."""

import fnmatch
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from croniter import croniter

from ..models import (
    TriggerType,
    WorkflowContext,
    WorkflowDefinition,
    WorkflowStatus,
    WorkflowTrigger,
    utcnow,
)
from .conditions import ConditionEvaluator, resolve_path
from .exceptions import NotFoundError, WorkflowEngineError, WorkflowNotActiveError
from .logging import get_logger

logger = get_logger(__name__)

# Config key compared against TriggerEvent.source, per trigger type
_SOURCE_KEYS = {
    TriggerType.WEBHOOK: "url",
    TriggerType.EVENT: "event",
    TriggerType.DATA_CHANGE: "entity",
    TriggerType.FILE_UPLOAD: "pattern",
    TriggerType.USER_ACTION: "action",
    TriggerType.API_CALL: "endpoint",
}


@dataclass
class TriggerEvent:
    """An inbound event offered to every registered trigger of its type.

    ``source`` is what the trigger config is matched against: the request path
    for webhooks, the event name, the changed entity, the uploaded file name,
    the user action or the called endpoint.
    """
    type: TriggerType
    source: Optional[str] = None
    method: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)
    workflow_id: Optional[str] = None
    context: Optional[WorkflowContext] = None
    timestamp: datetime = field(default_factory=utcnow)


@dataclass
class TriggerResult:
    """Outcome of offering an event to one trigger."""
    trigger_id: str
    workflow_id: str
    success: bool
    message: str
    instance_id: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "trigger_id": self.trigger_id,
            "workflow_id": self.workflow_id,
            "success": self.success,
            "message": self.message,
            "instance_id": self.instance_id,
            "error": self.error,
        }


class TriggerDispatcher:
    """Routes webhook, event, schedule and manual inputs to the execution engine.

    Triggers are registered per workflow whenever the registry saves a
    definition. A trigger fires only when it is enabled, its event matches,
    its guard conditions hold for the payload, and the workflow is active.
    """

    def __init__(self, registry, engine, condition_evaluator: Optional[ConditionEvaluator] = None,
                 clock: Callable[[], datetime] = utcnow):
        self.registry = registry
        self.engine = engine
        self.condition_evaluator = condition_evaluator or ConditionEvaluator()
        self._clock = clock
        self._triggers: Dict[str, List[WorkflowTrigger]] = {}
        self._next_fire: Dict[Tuple[str, str], datetime] = {}
        self._lock = threading.RLock()

    def register_workflow(self, definition: WorkflowDefinition) -> None:
        """Register (or replace) the triggers of a definition."""
        now = self._clock()
        with self._lock:
            previous = {t.id: t for t in self._triggers.get(definition.id, [])}
            self._triggers[definition.id] = list(definition.triggers)
            for key in [k for k in self._next_fire if k[0] == definition.id]:
                del self._next_fire[key]
            for trigger in definition.triggers:
                if trigger.type != TriggerType.SCHEDULE:
                    continue
                expression = trigger.config.get("cron")
                if not expression or not croniter.is_valid(expression):
                    logger.warning(f"Schedule trigger '{trigger.id}' of workflow {definition.id} has no valid cron")
                    continue
                old = previous.get(trigger.id)
                if old is not None and old.config.get("cron") == expression and (definition.id, trigger.id) in self._next_fire:
                    continue
                self._next_fire[(definition.id, trigger.id)] = croniter(expression, now).get_next(datetime)
        logger.debug(f"Registered {len(definition.triggers)} triggers for workflow {definition.id}")

    def unregister_workflow(self, workflow_id: str) -> None:
        with self._lock:
            self._triggers.pop(workflow_id, None)
            for key in [k for k in self._next_fire if k[0] == workflow_id]:
                del self._next_fire[key]
        logger.debug(f"Unregistered triggers of workflow {workflow_id}")

    def registered_triggers(self) -> Dict[str, List[str]]:
        with self._lock:
            return {wid: [t.id for t in triggers] for wid, triggers in self._triggers.items()}

    def next_fire_times(self) -> Dict[str, datetime]:
        with self._lock:
            return {f"{wid}:{tid}": when for (wid, tid), when in self._next_fire.items()}

    def dispatch(self, event: TriggerEvent) -> List[TriggerResult]:
        """
        Offer an event to every matching trigger.

        Args:
            event: The inbound event

        Returns:
            One result per matching trigger; failures to start are reported, not raised
        """
        with self._lock:
            candidates = [
                (workflow_id, trigger)
                for workflow_id, triggers in self._triggers.items()
                if event.workflow_id is None or workflow_id == event.workflow_id
                for trigger in triggers
                if trigger.type == event.type and trigger.enabled and self._matches(trigger, event)
            ]
        if not candidates:
            logger.debug(f"No trigger matched {event.type.value} event '{event.source}'")
        return [self._fire(workflow_id, trigger, event.payload, event.context) for workflow_id, trigger in candidates]

    def fire(self, trigger_id: str, payload: Optional[Dict[str, Any]] = None,
             workflow_id: Optional[str] = None) -> TriggerResult:
        """Fire one trigger by id, regardless of its event matching rules.

        Raises:
            NotFoundError: If no registered trigger has this id
        """
        with self._lock:
            match = next(
                ((wid, t) for wid, triggers in self._triggers.items()
                 if workflow_id is None or wid == workflow_id
                 for t in triggers if t.id == trigger_id),
                None
            )
        if match is None:
            raise NotFoundError(f"Trigger '{trigger_id}' is not registered", error_code="trigger_not_found")
        wid, trigger = match
        if not trigger.enabled:
            return TriggerResult(trigger_id=trigger_id, workflow_id=wid, success=False,
                                 message="Trigger is disabled")
        return self._fire(wid, trigger, payload or {}, None)

    def fire_manual(self, workflow_id: str, variables: Optional[Dict[str, Any]] = None,
                    context: Optional[WorkflowContext] = None) -> str:
        """Start a workflow by hand. Errors are raised to the caller.

        Returns:
            The new instance id
        """
        definition = self.registry.get(workflow_id)
        context = context or WorkflowContext(source="manual")
        return self.engine.start(definition, context=context, initial_variables=variables)

    def tick(self, now: Optional[datetime] = None) -> List[TriggerResult]:
        """Fire every schedule trigger whose next cron time has passed."""
        now = now or self._clock()
        due: List[Tuple[str, WorkflowTrigger]] = []
        with self._lock:
            for (workflow_id, trigger_id), when in list(self._next_fire.items()):
                if when > now:
                    continue
                trigger = next((t for t in self._triggers.get(workflow_id, []) if t.id == trigger_id), None)
                if trigger is None:
                    del self._next_fire[(workflow_id, trigger_id)]
                    continue
                # Missed runs are collapsed into one firing
                self._next_fire[(workflow_id, trigger_id)] = croniter(trigger.config["cron"], now).get_next(datetime)
                if trigger.enabled:
                    due.append((workflow_id, trigger))
        results = []
        for workflow_id, trigger in due:
            payload = dict(trigger.config.get("variables", {}) or {})
            payload.setdefault("scheduled_at", now.isoformat())
            results.append(self._fire(workflow_id, trigger, payload, None))
        return results

    def _matches(self, trigger: WorkflowTrigger, event: TriggerEvent) -> bool:
        config = trigger.config
        if trigger.type == TriggerType.MANUAL:
            return True
        key = _SOURCE_KEYS.get(trigger.type)
        if key is None or event.source is None:
            return False
        expected = config.get(key)
        if trigger.type == TriggerType.FILE_UPLOAD:
            if not fnmatch.fnmatch(event.source, expected or "*"):
                return False
            types = config.get("file_types")
            return not types or event.source.rsplit(".", 1)[-1].lower() in [t.lower().lstrip(".") for t in types]
        if trigger.type in (TriggerType.WEBHOOK, TriggerType.API_CALL):
            if expected is None or expected.rstrip("/") != event.source.rstrip("/"):
                return False
            method = config.get("method")
            return not method or event.method is None or method.upper() == event.method.upper()
        if expected != event.source:
            return False
        if trigger.type == TriggerType.DATA_CHANGE and config.get("operations"):
            return event.payload.get("operation") in config["operations"]
        return True

    def _fire(self, workflow_id: str, trigger: WorkflowTrigger, payload: Dict[str, Any],
              context: Optional[WorkflowContext]) -> TriggerResult:
        try:
            definition = self.registry.get(workflow_id)
            if definition.status != WorkflowStatus.ACTIVE:
                raise WorkflowNotActiveError(workflow_id, definition.status.value)

            evaluator = self.condition_evaluator.with_catalog(definition.conditions)
            if trigger.conditions and not evaluator.evaluate_all(trigger.conditions, payload):
                logger.debug(f"Trigger '{trigger.id}' guard is false for this payload")
                return TriggerResult(trigger_id=trigger.id, workflow_id=workflow_id, success=False,
                                     message="Trigger conditions not met")

            context = context or WorkflowContext(source=trigger.type.value)
            context = context.model_copy(update={
                "metadata": {**context.metadata, "trigger_id": trigger.id, "trigger_type": trigger.type.value}
            })
            instance_id = self.engine.start(definition, context=context,
                                            initial_variables=self._initial_variables(trigger, payload))
        except WorkflowEngineError as e:
            logger.warning(f"Trigger '{trigger.id}' could not start workflow {workflow_id}: {e.message}")
            return TriggerResult(trigger_id=trigger.id, workflow_id=workflow_id, success=False,
                                 message="Workflow was not started", error=e.message)

        logger.info(f"Trigger fired: {trigger.id} -> instance {instance_id}")
        return TriggerResult(trigger_id=trigger.id, workflow_id=workflow_id, success=True,
                             message="Trigger fired successfully", instance_id=instance_id)

    @staticmethod
    def _initial_variables(trigger: WorkflowTrigger, payload: Dict[str, Any]) -> Dict[str, Any]:
        mapping = trigger.config.get("variable_mapping")
        if not mapping:
            return dict(payload)
        return {name: resolve_path(payload, path) for name, path in mapping.items()}
