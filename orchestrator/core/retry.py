"""Retry and backoff policy for steps, and a retry decorator for storage calls."""

import random
import time
from functools import wraps
from typing import Callable, Any, Optional, List, Type, Tuple

from ..models import ErrorStrategy, RetryPolicy, WorkflowDefinition, WorkflowStep
from .exceptions import WorkflowEngineError, StorageError, ResourceExhaustionError
from .logging import get_logger, ErrorRecoveryLogger


logger = get_logger(__name__)


def retry_delay_ms(policy: RetryPolicy, retry_number: int) -> float:
    """Delay before retry ``retry_number`` (0-based), capped at ``max_delay``."""
    delay = policy.delay * (policy.backoff_multiplier ** retry_number)
    return float(min(delay, policy.max_delay))


def is_retryable(policy: RetryPolicy, error_code: Optional[str]) -> bool:
    """Only error codes listed in the policy are retried; an empty list retries nothing."""
    return bool(error_code) and error_code in policy.retryable_errors


def resolve_step_policy(step: WorkflowStep, definition: WorkflowDefinition) -> Tuple[RetryPolicy, int]:
    """Return the retry policy governing ``step`` and the number of attempts it allows.

    A step's own policy always applies. Without one, the definition policy
    applies only when the error handling strategy is ``retry``; otherwise the
    step gets a single attempt.
    """
    if step.retry_policy is not None:
        return step.retry_policy, step.retry_policy.max_attempts
    if definition.error_handling.strategy == ErrorStrategy.RETRY:
        return definition.retry_policy, definition.retry_policy.max_attempts
    return definition.retry_policy, 1


class RetryConfig:
    """Configuration for retrying infrastructure calls such as storage writes."""

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 0.1,
        max_delay: float = 5.0,
        exponential_base: float = 2.0,
        jitter: bool = True,
        retryable_exceptions: Optional[List[Type[Exception]]] = None
    ):
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self.retryable_exceptions = retryable_exceptions or [StorageError, ResourceExhaustionError]

    def should_retry(self, exception: Exception, attempt: int) -> bool:
        if attempt >= self.max_attempts:
            return False
        if not any(isinstance(exception, exc_type) for exc_type in self.retryable_exceptions):
            return False
        if isinstance(exception, WorkflowEngineError):
            return exception.recoverable
        return True

    def get_delay(self, attempt: int) -> float:
        """Delay in seconds after the given 1-based attempt."""
        delay = min(self.base_delay * (self.exponential_base ** (attempt - 1)), self.max_delay)
        if self.jitter:
            delay *= (0.5 + random.random() * 0.5)
        return delay


def with_retry(config: Optional[RetryConfig] = None):
    """Decorator to add retry logic to functions."""
    if config is None:
        config = RetryConfig()

    def decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(*args, **kwargs):
            return _execute_with_retry(func, config, *args, **kwargs)
        return wrapper

    return decorator


def _execute_with_retry(func: Callable, config: RetryConfig, *args, **kwargs) -> Any:
    recovery_logger = ErrorRecoveryLogger(func.__name__)

    for attempt in range(1, config.max_attempts + 1):
        try:
            result = func(*args, **kwargs)
            if attempt > 1:
                recovery_logger.log_recovery_success(func.__name__, attempt)
            return result
        except Exception as e:
            if not config.should_retry(e, attempt):
                if attempt > 1:
                    recovery_logger.log_recovery_failure(func.__name__, e, attempt)
                raise
            delay = config.get_delay(attempt)
            recovery_logger.log_recovery_attempt(
                func.__name__, e, attempt, config.max_attempts, delay_ms=delay * 1000
            )
            time.sleep(delay)
