"""Execution Engine: walks a workflow definition's step graph for each instance."""

import threading
import time
import uuid
from collections import Counter
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from ..models import (
    ActionType,
    ErrorStrategy,
    HistoryAction,
    InstanceFilter,
    InstanceStatus,
    StepType,
    Suspension,
    SuspensionKind,
    WorkflowAction,
    WorkflowContext,
    WorkflowDefinition,
    WorkflowExecutionResult,
    WorkflowInstance,
    WorkflowStatus,
    WorkflowStep,
    utcnow,
)
from .actions import ActionDispatcher, ActionRequest, ActionResult
from .conditions import ConditionEvaluator, resolve_path
from .exceptions import (
    InvalidStateError,
    ResourceExhaustionError,
    StepExecutionError,
    WorkflowCancelledError,
    WorkflowEngineError,
    WorkflowNotActiveError,
    WorkflowTimeoutError,
)
from .history import HistoryRecorder
from .logging import (
    ErrorRecoveryLogger,
    clear_logging_context,
    get_logger,
    level_from_name,
    set_logging_context,
)
from .registry import WorkflowRegistry
from .retry import is_retryable, resolve_step_policy, retry_delay_ms
from .validation import route_targets
from .variables import seed_variables, validate_variables, validate_write

logger = get_logger(__name__)

DEFAULT_ACTIONS = {
    StepType.TASK: ActionType.CREATE_TASK,
    StepType.SERVICE_TASK: ActionType.CALL_API,
    StepType.SCRIPT: ActionType.EXECUTE_SCRIPT,
    StepType.EVENT: ActionType.LOG_EVENT,
}

STRUCTURAL_STEPS = {StepType.START, StepType.END, StepType.MERGE, StepType.PARALLEL}


@dataclass
class StepResult:
    """Outcome of dispatching one step, applied to the instance under its lock."""
    success: bool
    error: Optional[str] = None
    error_code: Optional[str] = None
    writes: Dict[str, Any] = field(default_factory=dict)
    suspension: Optional[Suspension] = None
    selected_targets: Optional[List[str]] = None
    skipped_targets: List[str] = field(default_factory=list)
    extra_targets: List[str] = field(default_factory=list)
    failure_targets: List[str] = field(default_factory=list)
    reached_end: bool = False
    discarded: bool = False
    duration: Optional[float] = None


class ExecutionEngine:
    """Engine executing workflow instances on a bounded worker pool.

    Each instance is advanced in batches: the ready queue is drained, guards
    are evaluated, and the remaining steps are dispatched (concurrently when
    more than one is ready). Every state change is a load/mutate/save on the
    instance store under the instance's lock, so control operations such as
    cancel or pause never race with the run loop.
    """

    def __init__(
        self,
        registry: WorkflowRegistry,
        action_dispatcher: ActionDispatcher,
        condition_evaluator: Optional[ConditionEvaluator] = None,
        max_concurrent_instances: int = 100,
        max_queued_instances: int = 1000,
        max_parallel_branches: int = 10,
        default_step_timeout: Optional[int] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = utcnow
    ):
        """Initialize the execution engine.

        Args:
            registry: Registry providing definitions and the instance store
            action_dispatcher: Dispatcher for step actions
            condition_evaluator: Evaluator for guards and decision routes
            max_concurrent_instances: Instances advanced at the same time
            max_queued_instances: Instances allowed to wait for a worker
            max_parallel_branches: Branches of one batch run concurrently
            default_step_timeout: Step timeout (ms) when neither step nor definition sets one
            sleep: Function used to wait between retries, in seconds
            clock: Function returning the current UTC time
        """
        self.registry = registry
        self.instance_store = registry.instance_store
        self.action_dispatcher = action_dispatcher
        self.condition_evaluator = condition_evaluator or ConditionEvaluator()
        self.history = HistoryRecorder(clock=clock)
        self.default_step_timeout = default_step_timeout
        self._sleep = sleep
        self._clock = clock
        self._recovery_logger = ErrorRecoveryLogger("execution_engine")

        self._max_concurrent_instances = max_concurrent_instances
        self._max_queued_instances = max_queued_instances
        self._executor = ThreadPoolExecutor(max_workers=max_concurrent_instances, thread_name_prefix="instance")
        self._branch_executor = ThreadPoolExecutor(max_workers=max_parallel_branches, thread_name_prefix="branch")

        self._active_runs: Dict[str, Future] = {}
        self._run_events: Dict[str, threading.Event] = {}
        self._runs_lock = threading.RLock()

        self._run_isolation_locks: Dict[str, threading.RLock] = {}
        self._isolation_lock_manager = threading.RLock()
        self._finished_ids: Set[str] = set()

        self._definitions: Dict[Tuple[str, str], WorkflowDefinition] = {}
        self._metrics = Counter()
        self._shutdown = False

        logger.info(f"ExecutionEngine initialized with max_concurrent_instances={max_concurrent_instances}")

    # ------------------------------------------------------------------
    # Starting instances

    def start(self, definition: WorkflowDefinition, context: Optional[WorkflowContext] = None,
              initial_variables: Optional[Dict[str, Any]] = None,
              metadata: Optional[Dict[str, Any]] = None) -> str:
        """
        Start an instance of a registered, active definition.

        Args:
            definition: The definition to instantiate
            context: Who or what initiated the instance
            initial_variables: Values overriding the declared defaults
            metadata: Initial instance metadata

        Returns:
            The new instance id; the instance runs asynchronously

        Raises:
            WorkflowNotActiveError: If the definition is not active
            VariableValidationError: If the variables violate the declared contract
            ResourceExhaustionError: If the instance backlog is full
        """
        if self._shutdown:
            raise ResourceExhaustionError("Execution engine is shut down", resource_type="engine")
        if definition.status != WorkflowStatus.ACTIVE:
            raise WorkflowNotActiveError(definition.id, definition.status.value)
        # Instances always run against the stored version
        definition = self._get_definition(definition.id, definition.version)

        variables = seed_variables(definition, initial_variables)
        validate_variables(definition, variables)

        with self._runs_lock:
            backlog = len(self._active_runs)
        limit = self._max_concurrent_instances + self._max_queued_instances
        if backlog >= limit:
            raise ResourceExhaustionError(
                "Too many instances waiting for execution, please try again later",
                resource_type="instances", current_usage=backlog, limit=limit
            )

        start_step = definition.start_steps()[0]
        now = self._clock()
        instance = WorkflowInstance(
            id=str(uuid.uuid4()),
            workflow_id=definition.id,
            workflow_version=definition.version,
            current_step=start_step.id,
            ready=[start_step.id],
            variables=variables,
            context=context or WorkflowContext(),
            metadata=dict(metadata or {}),
            started_at=now,
            last_activity_at=now,
        )
        self.instance_store.create(instance)
        self._metrics["instances_started"] += 1
        logger.info(f"Started instance {instance.id} of workflow {definition.id} v{definition.version}")
        self._submit(instance.id)
        return instance.id

    def start_workflow(self, workflow_id: str, initial_variables: Optional[Dict[str, Any]] = None,
                       context: Optional[WorkflowContext] = None,
                       metadata: Optional[Dict[str, Any]] = None) -> str:
        """Look the latest version of ``workflow_id`` up and start it."""
        return self.start(self.registry.get(workflow_id), context=context,
                          initial_variables=initial_variables, metadata=metadata)

    # ------------------------------------------------------------------
    # Control operations

    def cancel(self, instance_id: str) -> WorkflowInstance:
        """Cancel an instance; results of steps still in flight are discarded."""
        with self._get_run_isolation_lock(instance_id):
            instance = self.registry.get_instance(instance_id)
            self._ensure_not_finished(instance)
            self._finish(instance, InstanceStatus.CANCELLED)
            self.instance_store.save(instance)
        logger.info(f"Cancelled instance {instance_id}")
        for suspension in instance.suspensions:
            if suspension.child_instance_id:
                self._cancel_quietly(suspension.child_instance_id)
        self._after_terminal(instance)
        return instance

    def pause(self, instance_id: str) -> WorkflowInstance:
        """Pause an instance at the next batch boundary, keeping its frontier."""
        with self._get_run_isolation_lock(instance_id):
            instance = self.registry.get_instance(instance_id)
            self._ensure_not_finished(instance)
            if instance.status != InstanceStatus.RUNNING:
                raise InvalidStateError(
                    f"Only running instances can be paused (instance '{instance_id}' is {instance.status.value})",
                    current_status=instance.status.value
                )
            if self._is_run_active(instance_id):
                instance.pause_requested = True
            else:
                instance.status = InstanceStatus.PAUSED
            instance.last_activity_at = self._clock()
            self.instance_store.save(instance)
        logger.info(f"Pause requested for instance {instance_id}")
        return instance

    def resume(self, instance_id: str) -> WorkflowInstance:
        """Resume a paused instance."""
        with self._get_run_isolation_lock(instance_id):
            instance = self.registry.get_instance(instance_id)
            self._ensure_not_finished(instance)
            if instance.status == InstanceStatus.RUNNING and instance.pause_requested:
                instance.pause_requested = False
            elif instance.status == InstanceStatus.PAUSED:
                instance.status = InstanceStatus.RUNNING
            else:
                raise InvalidStateError(
                    f"Instance '{instance_id}' is not paused (status: {instance.status.value})",
                    current_status=instance.status.value
                )
            instance.last_activity_at = self._clock()
            self.instance_store.save(instance)
        logger.info(f"Resumed instance {instance_id}")
        self._submit(instance_id)
        return instance

    def complete_user_task(self, instance_id: str, step_id: str,
                           variables: Optional[Dict[str, Any]] = None) -> WorkflowInstance:
        """Complete a suspended user task, optionally writing variables."""
        with self._get_run_isolation_lock(instance_id):
            instance, definition, step, suspension = self._load_suspended(
                instance_id, step_id, SuspensionKind.USER_TASK
            )
            for name, value in (variables or {}).items():
                validate_write(definition, name, value)
            instance.suspensions.remove(suspension)
            result = StepResult(success=True, writes=dict(variables or {}),
                                duration=self._elapsed_ms(suspension.since))
            self._apply_result(instance, definition, step, result, suspension.variables_before)
            self.instance_store.save(instance)
        logger.info(f"User task '{step_id}' of instance {instance_id} completed")
        self._continue(instance)
        return instance

    def fail_user_task(self, instance_id: str, step_id: str, error: str) -> WorkflowInstance:
        """Fail a suspended user task; the error handling policy decides what follows."""
        with self._get_run_isolation_lock(instance_id):
            instance, definition, step, suspension = self._load_suspended(
                instance_id, step_id, SuspensionKind.USER_TASK
            )
            instance.suspensions.remove(suspension)
            result = StepResult(success=False, error=error, error_code="user_task_failed",
                                duration=self._elapsed_ms(suspension.since))
            self._apply_result(instance, definition, step, result, suspension.variables_before)
            self.instance_store.save(instance)
        logger.info(f"User task '{step_id}' of instance {instance_id} failed: {error}")
        self._continue(instance)
        return instance

    def tick(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """
        Fire due timers and enforce step and instance timeouts on parked instances.

        Args:
            now: Current time; defaults to the engine clock

        Returns:
            Counts of timers fired, parked steps timed out and instances timed out
        """
        now = now or self._clock()
        fired = 0
        steps_timed_out = 0
        timed_out = 0
        for instance in self.registry.list_instances(InstanceFilter(status=InstanceStatus.RUNNING)):
            if instance.status != InstanceStatus.RUNNING or self._is_run_active(instance.id):
                continue
            finished = None
            resumed = False
            orphaned_children: List[str] = []
            with self._get_run_isolation_lock(instance.id):
                current = self.instance_store.get(instance.id)
                if current is None or current.status != InstanceStatus.RUNNING:
                    continue
                definition = self._get_definition(current.workflow_id, current.workflow_version)
                if self._timed_out(current, definition, now):
                    self._finish(current, InstanceStatus.TIMEOUT,
                                 error=f"Workflow exceeded its timeout of {definition.timeout}ms")
                    self.instance_store.save(current)
                    finished = current
                    timed_out += 1
                else:
                    for suspension in list(current.suspensions):
                        if current.is_terminal:
                            break
                        step = definition.get_step(suspension.step_id)
                        if suspension.kind == SuspensionKind.TIMER and suspension.resume_at is not None:
                            if suspension.resume_at > now:
                                continue
                            result = StepResult(success=True, duration=self._elapsed_ms(suspension.since, now))
                            fired += 1
                        elif suspension.deadline is not None and suspension.deadline <= now:
                            budget = self._parked_budget(definition, step)
                            error = WorkflowTimeoutError(f"Step '{step.id}' exceeded its timeout of {budget}ms",
                                                         timeout_ms=budget, step_id=step.id, instance_id=current.id)
                            result = StepResult(success=False, error=error.message, error_code=error.error_code,
                                                duration=self._elapsed_ms(suspension.since, now))
                            if suspension.child_instance_id:
                                orphaned_children.append(suspension.child_instance_id)
                            steps_timed_out += 1
                            logger.warning(f"Parked step '{step.id}' of instance {current.id} timed out")
                        else:
                            continue
                        current.suspensions.remove(suspension)
                        self._apply_result(current, definition, step, result, suspension.variables_before)
                        resumed = True
                    if resumed:
                        self.instance_store.save(current)
            for child_id in orphaned_children:
                self._cancel_quietly(child_id)
            if finished is not None:
                self._after_terminal(finished)
            elif resumed:
                self._continue(current)
        self._drop_finished_locks()
        if fired or steps_timed_out or timed_out:
            logger.debug(f"Tick fired {fired} timers, timed out {steps_timed_out} parked steps "
                         f"and {timed_out} instances")
        return {"timers_fired": fired, "steps_timed_out": steps_timed_out, "instances_timed_out": timed_out}

    def wait(self, instance_id: str, timeout: Optional[float] = None) -> WorkflowInstance:
        """Block until the current run of an instance yields (terminal, parked or paused)."""
        with self._runs_lock:
            event = self._run_events.get(instance_id) if instance_id in self._active_runs else None
        if event is not None and not event.wait(timeout):
            logger.warning(f"Timed out waiting for instance {instance_id}")
        return self.registry.get_instance(instance_id)

    def wait_for_completion(self, instance_id: str, timeout: float = 30.0,
                            poll_interval: float = 0.01) -> WorkflowInstance:
        """Wait across runs (subprocesses, timers) until the instance is terminal or ``timeout`` elapses."""
        deadline = time.monotonic() + timeout
        instance = self.wait(instance_id, timeout)
        while not instance.is_terminal and time.monotonic() < deadline:
            time.sleep(poll_interval)
            instance = self.wait(instance_id, max(deadline - time.monotonic(), 0))
        return instance

    def get_result(self, instance_id: str) -> WorkflowExecutionResult:
        instance = self.registry.get_instance(instance_id)
        if not instance.is_terminal:
            raise InvalidStateError(
                f"Instance '{instance_id}' has not finished (status: {instance.status.value})",
                current_status=instance.status.value
            )
        actions = Counter(entry.action for entry in instance.history)
        completed_at = instance.completed_at or instance.last_activity_at
        return WorkflowExecutionResult(
            instance_id=instance.id,
            success=instance.status == InstanceStatus.COMPLETED,
            status=instance.status,
            duration=(completed_at - instance.started_at).total_seconds() * 1000,
            steps_executed=actions[HistoryAction.COMPLETED],
            steps_skipped=actions[HistoryAction.SKIPPED],
            steps_failed=actions[HistoryAction.FAILED],
            error=instance.error,
            output=instance.variables,
        )

    def get_execution_metrics(self) -> Dict[str, Any]:
        with self._runs_lock:
            active = list(self._active_runs.keys())
        return {
            "active_runs": len(active),
            "active_run_ids": active,
            "max_concurrent_instances": self._max_concurrent_instances,
            "max_queued_instances": self._max_queued_instances,
            "isolation_locks": len(self._run_isolation_locks),
            "cached_definitions": len(self._definitions),
            **dict(self._metrics),
        }

    def shutdown(self) -> None:
        """Stop accepting instances and wait for running batches to finish."""
        self._shutdown = True
        self._executor.shutdown(wait=True, cancel_futures=True)
        self._branch_executor.shutdown(wait=True, cancel_futures=True)
        with self._isolation_lock_manager:
            self._run_isolation_locks.clear()
        logger.info("ExecutionEngine shutdown completed")

    # ------------------------------------------------------------------
    # Run loop

    def _submit(self, instance_id: str) -> None:
        if self._shutdown:
            logger.warning(f"Engine is shut down; instance {instance_id} not scheduled")
            return
        with self._get_run_isolation_lock(instance_id):
            with self._runs_lock:
                if instance_id in self._active_runs:
                    return
                self._run_events[instance_id] = threading.Event()
                self._active_runs[instance_id] = self._executor.submit(self._run_instance, instance_id)

    def _run_instance(self, instance_id: str) -> None:
        set_logging_context(instance_id=instance_id)
        exited = False
        try:
            while True:
                batch, definition = self._next_batch(instance_id)
                if batch is None:
                    exited = True
                    return
                if batch:
                    self._dispatch_batch(instance_id, definition, batch)
        except Exception as e:
            logger.exception(f"Unexpected error while running instance {instance_id}: {e}")
            self._fail_unexpectedly(instance_id, e)
        finally:
            if not exited:
                self._end_run(instance_id)
            clear_logging_context()

    def _next_batch(self, instance_id: str) -> Tuple[Optional[List[WorkflowStep]], Optional[WorkflowDefinition]]:
        """Prepare the next batch under the instance lock; ``None`` means the run ends."""
        finished = None
        with self._get_run_isolation_lock(instance_id):
            instance = self.instance_store.get(instance_id)
            if instance is None or instance.is_terminal or instance.status == InstanceStatus.PAUSED:
                self._end_run(instance_id)
                return None, None
            definition = self._get_definition(instance.workflow_id, instance.workflow_version)
            set_logging_context(workflow_id=definition.id)

            if self._timed_out(instance, definition, self._clock()):
                logger.warning(f"Instance {instance_id} exceeded its timeout of {definition.timeout}ms")
                self._finish(instance, InstanceStatus.TIMEOUT,
                             error=f"Workflow exceeded its timeout of {definition.timeout}ms")
                self.instance_store.save(instance)
                self._end_run(instance_id)
                finished = instance
            elif instance.pause_requested:
                instance.pause_requested = False
                instance.status = InstanceStatus.PAUSED
                instance.last_activity_at = self._clock()
                self.instance_store.save(instance)
                logger.info(f"Instance {instance_id} paused")
                self._end_run(instance_id)
                return None, None
            else:
                batch = self._drain_ready(instance, definition)
                if batch:
                    self.instance_store.save(instance)
                    return batch, definition
                if instance.suspensions:
                    self.instance_store.save(instance)
                    logger.debug(f"Instance {instance_id} parked on {len(instance.suspensions)} suspended steps")
                    self._end_run(instance_id)
                    return None, None
                self._complete(instance, definition)
                self.instance_store.save(instance)
                self._end_run(instance_id)
                finished = instance
        self._after_terminal(finished)
        return None, None

    def _drain_ready(self, instance: WorkflowInstance, definition: WorkflowDefinition) -> List[WorkflowStep]:
        completed = set(instance.completed_steps)
        for step_id in list(instance.waiting):
            step = definition.get_step(step_id)
            if step is not None and set(step.wait_for) <= completed:
                instance.waiting.remove(step_id)
                instance.ready.append(step_id)

        ready, instance.ready = instance.ready, []
        suspended = {s.step_id for s in instance.suspensions}
        batch: List[WorkflowStep] = []
        for step_id in ready:
            if step_id in completed or step_id in suspended or any(s.id == step_id for s in batch):
                continue
            step = definition.get_step(step_id)
            if step is None:
                logger.error(f"Instance {instance.id} references unknown step '{step_id}'")
                continue
            if not set(step.wait_for) <= completed:
                if step_id not in instance.waiting:
                    instance.waiting.append(step_id)
                continue
            if step_id in instance.waiting:
                instance.waiting.remove(step_id)
            evaluator = self.condition_evaluator.with_catalog(definition.conditions)
            if step.conditions and not evaluator.evaluate_all(step.conditions, instance.variables):
                self.history.record(instance, step, HistoryAction.SKIPPED, metadata={"reason": "guard_false"})
                continue
            batch.append(step)
        if batch:
            instance.current_step = batch[-1].id
        return batch

    def _dispatch_batch(self, instance_id: str, definition: WorkflowDefinition, batch: List[WorkflowStep]) -> None:
        snapshot = self.instance_store.get(instance_id)
        if snapshot is None:
            return
        if len(batch) == 1:
            result = self._execute_step(snapshot, definition, batch[0])
            self._apply_outcome(instance_id, definition, batch[0], result, snapshot.variables)
            return

        futures = {
            self._branch_executor.submit(self._execute_step, snapshot, definition, step): step
            for step in batch
        }
        for future in as_completed(futures):
            step = futures[future]
            try:
                result = future.result()
            except Exception as e:
                logger.exception(f"Branch '{step.id}' of instance {instance_id} crashed: {e}")
                result = StepResult(success=False, error=str(e), error_code="engine_error")
            self._apply_outcome(instance_id, definition, step, result, snapshot.variables)

    def _apply_outcome(self, instance_id: str, definition: WorkflowDefinition, step: WorkflowStep,
                       result: StepResult, variables_before: Dict[str, Any]) -> None:
        if result.discarded:
            return
        finished = None
        with self._get_run_isolation_lock(instance_id):
            instance = self.instance_store.get(instance_id)
            if instance is None or instance.is_terminal:
                logger.info(f"Discarding result of step '{step.id}': instance {instance_id} is no longer running")
                return
            if result.suspension is not None:
                self._suspend(instance, definition, step, result)
            else:
                self._apply_result(instance, definition, step, result, variables_before)
            self.instance_store.save(instance)
            if instance.is_terminal:
                finished = instance
        if finished is not None:
            self._after_terminal(finished)

    def _suspend(self, instance: WorkflowInstance, definition: WorkflowDefinition, step: WorkflowStep,
                 result: StepResult) -> None:
        suspension = result.suspension
        instance.variables.update(result.writes)
        instance.suspensions.append(suspension)
        self.history.record(instance, step, HistoryAction.STARTED,
                            metadata={"suspension": suspension.kind.value})
        logger.info(f"Step '{step.id}' of instance {instance.id} suspended ({suspension.kind.value})")

        if suspension.kind == SuspensionKind.SUBPROCESS:
            # The child may already have finished before the suspension was recorded
            child = self.instance_store.get(suspension.child_instance_id)
            if child is not None and child.is_terminal:
                instance.suspensions.remove(suspension)
                self._apply_result(instance, definition, step, self._child_result(step, child),
                                   suspension.variables_before)

    def _apply_result(self, instance: WorkflowInstance, definition: WorkflowDefinition, step: WorkflowStep,
                      result: StepResult, variables_before: Dict[str, Any]) -> None:
        """Apply a finished step to a loaded instance (caller holds the lock and saves)."""
        instance.current_step = step.id
        if result.success:
            instance.variables.update(result.writes)
            self.history.record(instance, step, HistoryAction.COMPLETED, duration=result.duration)
            self._mark_completed(instance, step)
            if result.reached_end:
                instance.reached_end = True
            for target in result.skipped_targets:
                target_step = definition.get_step(target)
                if target_step is not None:
                    self.history.record(instance, target_step, HistoryAction.SKIPPED,
                                        metadata={"reason": "route_not_taken", "decision": step.id})
            targets = step.on_success if result.selected_targets is None else result.selected_targets
            self._enqueue(instance, list(targets) + list(result.extra_targets))
            return

        instance.retry_count += 1
        self.history.record(instance, step, HistoryAction.FAILED, error=result.error, duration=result.duration,
                            metadata={"error_code": result.error_code})
        logger.log(level_from_name(definition.error_handling.log_level),
                   f"Step '{step.id}' of instance {instance.id} failed: {result.error}")
        self._handle_failure(instance, definition, step, result, variables_before)

    def _handle_failure(self, instance: WorkflowInstance, definition: WorkflowDefinition, step: WorkflowStep,
                        result: StepResult, variables_before: Dict[str, Any]) -> None:
        if result.error_code == "timeout" and step.on_timeout:
            self._enqueue(instance, step.on_timeout)
            return
        failure_targets = list(step.on_failure) + list(result.failure_targets)
        if failure_targets:
            self._enqueue(instance, failure_targets)
            return

        strategy = definition.error_handling.strategy
        if strategy == ErrorStrategy.SKIP:
            self.history.record(instance, step, HistoryAction.SKIPPED, metadata={"reason": "error_strategy_skip"})
            self._mark_completed(instance, step)
            self._enqueue(instance, step.on_success)
            return
        if strategy == ErrorStrategy.CONTINUE and not step.critical:
            logger.info(f"Continuing past non-critical step '{step.id}' of instance {instance.id}")
            self._mark_completed(instance, step)
            self._enqueue(instance, step.on_success)
            return
        if strategy == ErrorStrategy.ROLLBACK:
            instance.variables = dict(variables_before)
            instance.metadata["rolled_back_step"] = step.id

        status = InstanceStatus.TIMEOUT if result.error_code == "timeout" else InstanceStatus.FAILED
        self._finish(instance, status, error=f"Step '{step.id}' failed: {result.error}")

    def _enqueue(self, instance: WorkflowInstance, step_ids: List[str]) -> None:
        for step_id in step_ids:
            if step_id not in instance.completed_steps and step_id not in instance.ready:
                instance.ready.append(step_id)

    def _mark_completed(self, instance: WorkflowInstance, step: WorkflowStep) -> None:
        if step.id not in instance.completed_steps:
            instance.completed_steps.append(step.id)
        if step.id in instance.waiting:
            instance.waiting.remove(step.id)

    def _complete(self, instance: WorkflowInstance, definition: WorkflowDefinition) -> None:
        for step_id in list(instance.waiting):
            step = definition.get_step(step_id)
            if step is not None:
                missing = [s for s in step.wait_for if s not in instance.completed_steps]
                self.history.record(instance, step, HistoryAction.SKIPPED,
                                    metadata={"reason": "wait_for_unsatisfied", "missing": missing})
        instance.waiting = []
        if not instance.reached_end:
            logger.warning(f"Instance {instance.id} completed without reaching an end step")
            instance.metadata["ended_without_end_step"] = True
        self._finish(instance, InstanceStatus.COMPLETED)

    def _finish(self, instance: WorkflowInstance, status: InstanceStatus, error: Optional[str] = None) -> None:
        now = self._clock()
        instance.status = status
        instance.error = error if status in (InstanceStatus.FAILED, InstanceStatus.TIMEOUT) else None
        instance.pause_requested = False
        instance.completed_at = now
        instance.last_activity_at = now
        self._metrics[f"instances_{status.value}"] += 1
        with self._isolation_lock_manager:
            self._finished_ids.add(instance.id)
        log = logger.info if status == InstanceStatus.COMPLETED else logger.warning
        log(f"Instance {instance.id} finished with status {status.value}" + (f": {error}" if error else ""))

    def _end_run(self, instance_id: str) -> None:
        with self._runs_lock:
            self._active_runs.pop(instance_id, None)
            event = self._run_events.pop(instance_id, None)
        if event is not None:
            event.set()

    def _continue(self, instance: WorkflowInstance) -> None:
        """Resume work after an external signal changed an instance."""
        if instance.is_terminal:
            self._after_terminal(instance)
        elif instance.status == InstanceStatus.RUNNING:
            self._submit(instance.id)

    def _after_terminal(self, instance: Optional[WorkflowInstance]) -> None:
        if instance is None:
            return
        if instance.status in (InstanceStatus.FAILED, InstanceStatus.TIMEOUT):
            self._dispatch_failure_actions(instance)
        if instance.metadata.get("parent_instance_id"):
            self._resume_parent(instance)

    def _fail_unexpectedly(self, instance_id: str, error: Exception) -> None:
        finished = None
        try:
            with self._get_run_isolation_lock(instance_id):
                instance = self.instance_store.get(instance_id)
                if instance is not None and not instance.is_terminal:
                    self._finish(instance, InstanceStatus.FAILED, error=f"Engine error: {error}")
                    self.instance_store.save(instance)
                    finished = instance
        except WorkflowEngineError as e:
            logger.error(f"Could not mark instance {instance_id} as failed: {e}")
        self._end_run(instance_id)
        self._after_terminal(finished)

    # ------------------------------------------------------------------
    # Step execution

    def _execute_step(self, snapshot: WorkflowInstance, definition: WorkflowDefinition,
                      step: WorkflowStep) -> StepResult:
        """Run a step with its retry policy. Called without the instance lock."""
        policy, attempts = resolve_step_policy(step, definition)
        result = StepResult(success=False)
        for attempt in range(attempts):
            if self._is_stopped(snapshot.id):
                return StepResult(success=False, discarded=True)
            started = time.monotonic()
            try:
                result = self._perform(snapshot, definition, step)
            except StepExecutionError as e:
                result = StepResult(success=False, error=e.message, error_code=e.error_code,
                                    failure_targets=list(e.details.get("failure_targets", [])))
            except WorkflowEngineError as e:
                result = StepResult(success=False, error=e.message, error_code=e.error_code)
            except Exception as e:
                logger.exception(f"Step '{step.id}' raised {type(e).__name__}")
                result = StepResult(success=False, error=str(e), error_code="handler_error")
            result.duration = (time.monotonic() - started) * 1000

            if result.success or result.suspension is not None:
                if attempt:
                    self._recovery_logger.log_recovery_success(f"step '{step.id}'", attempt + 1)
                return result
            if attempt + 1 >= attempts or not is_retryable(policy, result.error_code):
                return result

            delay = retry_delay_ms(policy, attempt)
            if not self._record_retry(snapshot.id, step, result, attempt + 1, delay):
                return StepResult(success=False, discarded=True)
            self._recovery_logger.log_recovery_attempt(
                f"step '{step.id}'", RuntimeError(result.error), attempt + 1, attempts, delay_ms=delay
            )
            self._sleep(delay / 1000.0)
        return result

    def _record_retry(self, instance_id: str, step: WorkflowStep, result: StepResult,
                      attempt: int, delay: float) -> bool:
        with self._get_run_isolation_lock(instance_id):
            instance = self.instance_store.get(instance_id)
            if instance is None or instance.is_terminal:
                return False
            instance.retry_count += 1
            self.history.record(instance, step, HistoryAction.RETRIED, error=result.error,
                                duration=result.duration,
                                metadata={"attempt": attempt, "error_code": result.error_code, "delay_ms": delay})
            self.instance_store.save(instance)
        return True

    def _perform(self, snapshot: WorkflowInstance, definition: WorkflowDefinition,
                 step: WorkflowStep) -> StepResult:
        variables = dict(snapshot.variables)

        if step.type in STRUCTURAL_STEPS:
            extra = list(step.config.get("branches", []) or []) if step.type == StepType.PARALLEL else []
            return StepResult(success=True, extra_targets=extra, reached_end=step.type == StepType.END)

        if step.type in (StepType.DECISION, StepType.GATEWAY):
            return self._evaluate_routes(definition, step, variables)

        if step.type == StepType.SUBPROCESS:
            return self._start_subprocess(snapshot, definition, step, variables)

        actions = self._step_actions(definition, step)
        result = self._run_actions(snapshot, definition, step, actions, variables)
        if not result.success:
            return result

        if step.type == StepType.USER_TASK:
            now = self._clock()
            result.suspension = Suspension(step_id=step.id, kind=SuspensionKind.USER_TASK, since=now,
                                           deadline=self._parked_deadline(definition, step, now),
                                           variables_before=snapshot.variables)
        elif step.type == StepType.TIMER:
            now = self._clock()
            deadline = self._timer_deadline(step, now)
            if deadline > now:
                result.suspension = Suspension(step_id=step.id, kind=SuspensionKind.TIMER, since=now,
                                               resume_at=deadline, variables_before=snapshot.variables)
        return result

    def _step_actions(self, definition: WorkflowDefinition, step: WorkflowStep) -> List[WorkflowAction]:
        actions = list(step.actions)
        actions.extend(a for a in (definition.get_action(aid) for aid in step.action_ids) if a is not None)
        if actions:
            return actions
        if step.type == StepType.USER_TASK:
            if step.config.get("assignee"):
                return [WorkflowAction(id=f"{step.id}:assign", type=ActionType.ASSIGN_USER, config=step.config)]
            return []
        if step.type in DEFAULT_ACTIONS:
            action_type = ActionType(step.config.get("action_type", DEFAULT_ACTIONS[step.type]))
            return [WorkflowAction(id=f"{step.id}:default", type=action_type, config=step.config)]
        return []

    def _run_actions(self, snapshot: WorkflowInstance, definition: WorkflowDefinition, step: WorkflowStep,
                     actions: List[WorkflowAction], variables: Dict[str, Any]) -> StepResult:
        writes: Dict[str, Any] = {}
        extra_targets: List[str] = []
        evaluator = self.condition_evaluator.with_catalog(definition.conditions)
        timeout = step.timeout or definition.step_timeout or self.default_step_timeout
        step_deadline = time.monotonic() + timeout / 1000.0 if timeout else None

        for action in actions:
            if action.conditions and not evaluator.evaluate_all(action.conditions, variables):
                logger.debug(f"Action '{action.id or action.type.value}' of step '{step.id}' skipped by its guard")
                continue
            budget = action.timeout or timeout
            if step_deadline is not None:
                remaining = int((step_deadline - time.monotonic()) * 1000)
                if remaining <= 0:
                    raise WorkflowTimeoutError(f"Step '{step.id}' exceeded its timeout of {timeout}ms",
                                               timeout_ms=timeout, step_id=step.id, instance_id=snapshot.id)
                budget = min(budget, remaining)
            outcome = self._dispatch_action(snapshot, definition, step, action, variables, budget)
            if not outcome.success:
                raise self._action_error(snapshot, step, action, outcome)
            output_variable = action.config.get("output_variable")
            if output_variable:
                validate_write(definition, output_variable, outcome.output)
                variables[output_variable] = outcome.output
                writes[output_variable] = outcome.output
            extra_targets.extend(action.on_success)
        return StepResult(success=True, writes=writes, extra_targets=extra_targets)

    def _action_error(self, snapshot: WorkflowInstance, step: WorkflowStep, action: WorkflowAction,
                      outcome: ActionResult) -> StepExecutionError:
        message = outcome.error or f"Action '{action.id or action.type.value}' failed"
        details = {"failure_targets": list(action.on_failure)}
        if outcome.error_code == "timeout":
            return WorkflowTimeoutError(message, step_id=step.id, instance_id=snapshot.id, details=details)
        return StepExecutionError(message, error_code=outcome.error_code, step_id=step.id,
                                  instance_id=snapshot.id, details=details)

    def _dispatch_action(self, snapshot: WorkflowInstance, definition: WorkflowDefinition, step: WorkflowStep,
                         action: WorkflowAction, variables: Dict[str, Any],
                         timeout: Optional[int]) -> ActionResult:
        if action.type == ActionType.TRIGGER_WORKFLOW:
            try:
                child_id = self._start_child(snapshot, step, action.config, variables)
            except WorkflowEngineError as e:
                return ActionResult.failed(e.message, error_code=e.error_code)
            return ActionResult.ok(child_id)

        request = ActionRequest(type=action.type, config=action.config, instance_id=snapshot.id,
                                step_id=step.id, variables=dict(variables), action_id=action.id or None)
        if action.retry_policy is None:
            return self.action_dispatcher.dispatch(request, timeout_ms=timeout)

        policy = action.retry_policy
        outcome = self.action_dispatcher.dispatch(request, timeout_ms=timeout)
        for attempt in range(1, policy.max_attempts):
            if outcome.success or not is_retryable(policy, outcome.error_code):
                break
            delay = retry_delay_ms(policy, attempt - 1)
            self._recovery_logger.log_recovery_attempt(
                f"action '{action.id or action.type.value}'", RuntimeError(outcome.error),
                attempt, policy.max_attempts, delay_ms=delay
            )
            self._sleep(delay / 1000.0)
            outcome = self.action_dispatcher.dispatch(request, timeout_ms=timeout)
        return outcome

    def _evaluate_routes(self, definition: WorkflowDefinition, step: WorkflowStep,
                         variables: Dict[str, Any]) -> StepResult:
        routes = [r for r in step.config.get("routes", []) or [] if isinstance(r, dict) and r.get("target")]
        if not routes:
            return StepResult(success=True)

        evaluator = self.condition_evaluator.with_catalog(definition.conditions)
        selected: List[str] = []
        for route in routes:
            if evaluator.evaluate_all(route.get("conditions", []) or [], variables):
                selected.append(route["target"])
                # Decisions are exclusive; gateways take every matching route
                if step.type == StepType.DECISION:
                    break
        if not selected and step.config.get("default"):
            selected.append(step.config["default"])

        skipped = [t for t in route_targets(step) if t not in selected]
        skipped = list(dict.fromkeys(skipped))
        logger.debug(f"Decision '{step.id}' selected {selected}, skipped {skipped}")
        return StepResult(success=True, selected_targets=selected + list(step.on_success),
                          skipped_targets=skipped)

    def _parked_budget(self, definition: WorkflowDefinition, step: WorkflowStep) -> Optional[int]:
        # The engine-wide default bounds action calls only; parked steps wait on people and children
        return step.timeout or definition.step_timeout

    def _parked_deadline(self, definition: WorkflowDefinition, step: WorkflowStep,
                         since: datetime) -> Optional[datetime]:
        budget = self._parked_budget(definition, step)
        return since + timedelta(milliseconds=budget) if budget else None

    def _timer_deadline(self, step: WorkflowStep, now: datetime) -> datetime:
        if step.config.get("until"):
            deadline = datetime.fromisoformat(str(step.config["until"]).replace("Z", "+00:00"))
            return deadline if deadline.tzinfo else deadline.replace(tzinfo=timezone.utc)
        return now + timedelta(milliseconds=float(step.config.get("duration", 0)))

    # ------------------------------------------------------------------
    # Subprocesses

    def _start_subprocess(self, snapshot: WorkflowInstance, definition: WorkflowDefinition,
                          step: WorkflowStep, variables: Dict[str, Any]) -> StepResult:
        try:
            child_id = self._start_child(snapshot, step, step.config, variables)
        except WorkflowEngineError as e:
            return StepResult(success=False, error=e.message, error_code=e.error_code)

        if not step.config.get("wait", True):
            writes = {}
            if step.config.get("output_variable"):
                validate_write(definition, step.config["output_variable"], child_id)
                writes[step.config["output_variable"]] = child_id
            return StepResult(success=True, writes=writes)
        now = self._clock()
        return StepResult(
            success=True,
            suspension=Suspension(step_id=step.id, kind=SuspensionKind.SUBPROCESS, since=now,
                                  deadline=self._parked_deadline(definition, step, now),
                                  child_instance_id=child_id, variables_before=snapshot.variables)
        )

    def _start_child(self, snapshot: WorkflowInstance, step: WorkflowStep, config: Dict[str, Any],
                     variables: Dict[str, Any]) -> str:
        child_variables = dict(config.get("variables", {}) or {})
        for child_name, parent_path in (config.get("variable_mapping", {}) or {}).items():
            child_variables[child_name] = resolve_path(variables, parent_path)
        parent = {"parent_instance_id": snapshot.id, "parent_step_id": step.id}
        context = WorkflowContext(
            user_id=snapshot.context.user_id,
            source="subprocess",
            priority=snapshot.context.priority,
            metadata=dict(parent),
        )
        child_id = self.start_workflow(config["workflow_id"], initial_variables=child_variables,
                                       context=context, metadata=parent)
        logger.info(f"Step '{step.id}' of instance {snapshot.id} started child instance {child_id}")
        return child_id

    def _child_result(self, step: WorkflowStep, child: WorkflowInstance) -> StepResult:
        if child.status == InstanceStatus.COMPLETED:
            writes = {}
            if step.config.get("output_variable"):
                writes[step.config["output_variable"]] = dict(child.variables)
            return StepResult(success=True, writes=writes)
        return StepResult(
            success=False,
            error=f"Subprocess instance {child.id} ended with status {child.status.value}"
                  + (f": {child.error}" if child.error else ""),
            error_code="subprocess_failed"
        )

    def _resume_parent(self, child: WorkflowInstance) -> None:
        parent_id = child.metadata["parent_instance_id"]
        with self._get_run_isolation_lock(parent_id):
            parent = self.instance_store.get(parent_id)
            if parent is None or parent.is_terminal:
                return
            suspension = next((s for s in parent.suspensions if s.child_instance_id == child.id), None)
            if suspension is None:
                return
            definition = self._get_definition(parent.workflow_id, parent.workflow_version)
            step = definition.get_step(suspension.step_id)
            parent.suspensions.remove(suspension)
            result = self._child_result(step, child)
            result.duration = self._elapsed_ms(suspension.since)
            try:
                for name, value in result.writes.items():
                    validate_write(definition, name, value)
            except WorkflowEngineError as e:
                result = StepResult(success=False, error=e.message, error_code=e.error_code)
            self._apply_result(parent, definition, step, result, suspension.variables_before)
            self.instance_store.save(parent)
        logger.info(f"Parent instance {parent_id} resumed after child {child.id} finished")
        self._continue(parent)

    def _cancel_quietly(self, instance_id: str) -> None:
        try:
            self.cancel(instance_id)
        except WorkflowEngineError as e:
            logger.debug(f"Child instance {instance_id} not cancelled: {e}")

    # ------------------------------------------------------------------
    # Failure side effects

    def _dispatch_failure_actions(self, instance: WorkflowInstance) -> None:
        definition = self._get_definition(instance.workflow_id, instance.workflow_version)
        handling = definition.error_handling
        variables = dict(instance.variables)

        if handling.fallback_action:
            action = definition.get_action(handling.fallback_action)
            if action is None:
                logger.error(f"Fallback action '{handling.fallback_action}' is not defined")
            else:
                request = ActionRequest(type=action.type, config=action.config, instance_id=instance.id,
                                        step_id=instance.current_step or "", variables=variables,
                                        action_id=action.id)
                outcome = self.action_dispatcher.dispatch(request, timeout_ms=action.timeout)
                logger.info(f"Fallback action '{action.id}' for instance {instance.id}: "
                            f"{'succeeded' if outcome.success else outcome.error}")

        if handling.notification_recipients:
            request = ActionRequest(
                type=ActionType.SEND_NOTIFICATION,
                config={
                    "recipients": list(handling.notification_recipients),
                    "subject": f"Workflow '{definition.name}' instance {instance.status.value}",
                    "message": instance.error or "",
                },
                instance_id=instance.id, step_id=instance.current_step or "", variables=variables
            )
            outcome = self.action_dispatcher.dispatch(request)
            if not outcome.success:
                logger.error(f"Failure notification for instance {instance.id} failed: {outcome.error}")

    # ------------------------------------------------------------------
    # Helpers

    def _load_suspended(self, instance_id: str, step_id: str, kind: SuspensionKind):
        instance = self.registry.get_instance(instance_id)
        self._ensure_not_finished(instance)
        suspension = instance.get_suspension(step_id)
        if suspension is None or suspension.kind != kind:
            raise InvalidStateError(f"Step '{step_id}' of instance '{instance_id}' is not a pending {kind.value}")
        definition = self._get_definition(instance.workflow_id, instance.workflow_version)
        return instance, definition, definition.get_step(step_id), suspension

    def _ensure_not_finished(self, instance: WorkflowInstance) -> None:
        if instance.status == InstanceStatus.CANCELLED:
            raise WorkflowCancelledError(instance.id)
        if instance.is_terminal:
            raise InvalidStateError(
                f"Instance '{instance.id}' is already {instance.status.value}",
                current_status=instance.status.value
            )

    def _get_definition(self, workflow_id: str, version: str) -> WorkflowDefinition:
        key = (workflow_id, version)
        definition = self._definitions.get(key)
        if definition is None:
            definition = self.registry.get(workflow_id, version)
            self._definitions[key] = definition
        return definition

    def _timed_out(self, instance: WorkflowInstance, definition: WorkflowDefinition, now: datetime) -> bool:
        if not definition.timeout:
            return False
        return (now - instance.started_at).total_seconds() * 1000 > definition.timeout

    def _elapsed_ms(self, since: datetime, now: Optional[datetime] = None) -> float:
        return max(((now or self._clock()) - since).total_seconds() * 1000, 0.0)

    def _is_stopped(self, instance_id: str) -> bool:
        instance = self.instance_store.get(instance_id)
        return instance is None or instance.is_terminal

    def _is_run_active(self, instance_id: str) -> bool:
        with self._runs_lock:
            return instance_id in self._active_runs

    def _get_run_isolation_lock(self, instance_id: str) -> threading.RLock:
        """Get or create the lock serializing all changes to one instance."""
        with self._isolation_lock_manager:
            if instance_id not in self._run_isolation_locks:
                self._run_isolation_locks[instance_id] = threading.RLock()
            return self._run_isolation_locks[instance_id]

    def _drop_finished_locks(self) -> None:
        """Forget the locks of finished instances whose records have been purged.

        Locks of finished instances stay in place until then, so a late control
        operation always serializes on the same lock as the run that finished.
        """
        with self._isolation_lock_manager:
            candidates = list(self._finished_ids)
        for instance_id in candidates:
            if self._is_run_active(instance_id) or self.instance_store.get(instance_id) is not None:
                continue
            with self._isolation_lock_manager:
                self._finished_ids.discard(instance_id)
                self._run_isolation_locks.pop(instance_id, None)
