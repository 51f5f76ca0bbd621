"""Action dispatch: maps action descriptors to registered capability handlers.

Handlers are plain callables ``handler(request: ActionRequest) -> ActionResult``
registered per action type. The dispatcher never touches instance state; it
only reports the outcome of the call.
"""

import importlib
import inspect
import threading
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from typing import Any, Callable, Dict, List, Optional
from pydantic import BaseModel, Field

from ..models import ActionType
from .exceptions import ActionDispatchError, WorkflowEngineError
from .logging import get_logger

logger = get_logger(__name__)


class ActionRequest(BaseModel):
    """Everything a handler needs to perform one action call."""
    type: ActionType = Field(..., description="Capability being invoked")
    config: Dict[str, Any] = Field(default_factory=dict, description="Action configuration")
    instance_id: str = Field(..., description="Instance on whose behalf the call is made")
    step_id: str = Field(..., description="Step dispatching the action")
    variables: Dict[str, Any] = Field(default_factory=dict, description="Snapshot of instance variables")
    action_id: Optional[str] = Field(None, description="Catalog id of the action, if any")


class ActionResult(BaseModel):
    """Outcome of an action call."""
    success: bool
    output: Any = None
    error: Optional[str] = None
    error_code: Optional[str] = None

    @classmethod
    def ok(cls, output: Any = None) -> "ActionResult":
        return cls(success=True, output=output)

    @classmethod
    def failed(cls, error: str, error_code: str = "handler_error") -> "ActionResult":
        return cls(success=False, error=error, error_code=error_code)


ActionHandler = Callable[[ActionRequest], ActionResult]


class ActionDispatcher:
    """Registry of action handlers and the single entry point for calling them."""

    def __init__(self, strict: bool = False, max_workers: int = 10):
        """Initialize the dispatcher.

        Args:
            strict: Fail actions whose type has no registered handler instead of
                treating them as successful no-ops
            max_workers: Size of the pool used for calls that carry a timeout
        """
        self.strict = strict
        self._handlers: Dict[ActionType, ActionHandler] = {}
        self._lock = threading.RLock()
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="action")
        self._calls: Dict[str, int] = {}

    def register(self, action_type, handler: ActionHandler) -> None:
        """Register a handler for an action type, replacing any previous one.

        Raises:
            ActionDispatchError: If the type is unknown or the handler is not callable
        """
        action_type = self._coerce_type(action_type)
        if not callable(handler):
            raise ActionDispatchError(f"Handler for '{action_type.value}' must be callable",
                                      action_type=action_type.value)
        try:
            if len(inspect.signature(handler).parameters) == 0:
                raise ActionDispatchError(
                    f"Handler for '{action_type.value}' must accept an ActionRequest",
                    action_type=action_type.value
                )
        except (ValueError, TypeError):
            logger.debug(f"Cannot inspect handler signature for '{action_type.value}'")
        with self._lock:
            self._handlers[action_type] = handler
        logger.info(f"Registered handler for action type '{action_type.value}'")

    def register_path(self, action_type, dotted_path: str) -> None:
        """Register a handler given as ``package.module:function``."""
        module_name, _, function_name = dotted_path.partition(":")
        if not module_name or not function_name:
            raise ActionDispatchError(f"Handler path must look like 'module:function', got '{dotted_path}'")
        try:
            module = importlib.import_module(module_name)
            handler = getattr(module, function_name)
        except ImportError as e:
            raise ActionDispatchError(f"Cannot import module for handler '{dotted_path}': {e}")
        except AttributeError as e:
            raise ActionDispatchError(f"Function not found for handler '{dotted_path}': {e}")
        self.register(action_type, handler)

    def unregister(self, action_type) -> bool:
        with self._lock:
            return self._handlers.pop(self._coerce_type(action_type), None) is not None

    def has_handler(self, action_type) -> bool:
        with self._lock:
            return self._coerce_type(action_type) in self._handlers

    def registered_types(self) -> List[str]:
        with self._lock:
            return sorted(t.value for t in self._handlers)

    def dispatch(self, request: ActionRequest, timeout_ms: Optional[int] = None) -> ActionResult:
        """
        Invoke the handler registered for ``request.type``.

        Handler exceptions become failed results. With a timeout the call runs
        on the action pool; a call that overruns is reported as a ``timeout``
        failure and its eventual result is discarded.

        Args:
            request: The action request
            timeout_ms: Optional time budget in milliseconds

        Returns:
            ActionResult describing the outcome
        """
        with self._lock:
            handler = self._handlers.get(request.type)
            self._calls[request.type.value] = self._calls.get(request.type.value, 0) + 1

        if handler is None:
            if self.strict:
                logger.error(f"No handler registered for action type '{request.type.value}'")
                return ActionResult.failed(
                    f"No handler registered for action type '{request.type.value}'",
                    error_code="action_not_registered"
                )
            logger.info(f"No handler for action type '{request.type.value}' "
                        f"(instance {request.instance_id}, step {request.step_id}); treating as success")
            return ActionResult.ok()

        if timeout_ms:
            future = self._executor.submit(self._invoke, handler, request)
            try:
                return future.result(timeout=timeout_ms / 1000.0)
            except FutureTimeoutError:
                logger.warning(f"Action '{request.type.value}' for step {request.step_id} "
                               f"timed out after {timeout_ms}ms")
                return ActionResult.failed(
                    f"Action '{request.type.value}' timed out after {timeout_ms}ms",
                    error_code="timeout"
                )
        return self._invoke(handler, request)

    def _invoke(self, handler: ActionHandler, request: ActionRequest) -> ActionResult:
        try:
            result = handler(request)
        except WorkflowEngineError as e:
            logger.warning(f"Action '{request.type.value}' failed: {e.message}")
            return ActionResult.failed(e.message, error_code=e.error_code)
        except Exception as e:
            logger.warning(f"Action '{request.type.value}' raised {type(e).__name__}: {e}")
            return ActionResult.failed(str(e), error_code=getattr(e, "error_code", None) or "handler_error")

        if isinstance(result, ActionResult):
            return result
        # Bare return values count as successful output
        return ActionResult.ok(result)

    def get_metrics(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "registered_types": sorted(t.value for t in self._handlers),
                "calls_by_type": dict(self._calls),
                "strict": self.strict,
            }

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False)

    @staticmethod
    def _coerce_type(action_type) -> ActionType:
        if isinstance(action_type, ActionType):
            return action_type
        try:
            return ActionType(action_type)
        except ValueError:
            raise ActionDispatchError(f"Unknown action type '{action_type}'", action_type=str(action_type))
