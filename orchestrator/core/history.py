"""Append-only history of step transitions."""

import copy
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from ..models import HistoryAction, WorkflowHistoryEntry, WorkflowInstance, WorkflowStep, utcnow
from .exceptions import StorageError
from .logging import get_logger

logger = get_logger(__name__)


class HistoryRecorder:
    """Appends frozen history entries to an instance.

    Entries of one instance carry consecutive sequence numbers and timestamps
    that never go backwards, even if the wall clock does.
    """

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self._clock = clock

    def record(
        self,
        instance: WorkflowInstance,
        step: WorkflowStep,
        action: HistoryAction,
        error: Optional[str] = None,
        duration: Optional[float] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> WorkflowHistoryEntry:
        now = self._clock()
        last = instance.history[-1] if instance.history else None
        if last is not None and now < last.timestamp:
            now = last.timestamp

        entry = WorkflowHistoryEntry(
            id=str(uuid.uuid4()),
            sequence=(last.sequence + 1) if last else 1,
            step_id=step.id,
            step_name=step.name,
            action=action,
            timestamp=now,
            duration=duration,
            error=error,
            variables=copy.deepcopy(instance.variables),
            metadata=metadata or {}
        )
        instance.history.append(entry)
        instance.last_activity_at = now
        logger.debug(f"Instance {instance.id}: step '{step.id}' {action.value}")
        return entry


def _identity(entry: WorkflowHistoryEntry):
    return entry.id, entry.sequence, entry.step_id, entry.action, entry.error


def ensure_append_only(existing: List[WorkflowHistoryEntry], updated: List[WorkflowHistoryEntry],
                       instance_id: str) -> List[WorkflowHistoryEntry]:
    """Return the entries of ``updated`` not yet in ``existing``.

    Raises:
        StorageError: If ``updated`` drops or rewrites an entry already stored
    """
    if len(updated) < len(existing):
        raise StorageError(
            f"History of instance '{instance_id}' cannot shrink "
            f"({len(existing)} stored, {len(updated)} given)",
            operation="save_instance",
            recoverable=False
        )
    for stored, given in zip(existing, updated):
        if _identity(stored) != _identity(given):
            raise StorageError(
                f"History entry {stored.sequence} of instance '{instance_id}' cannot be rewritten",
                operation="save_instance",
                recoverable=False
            )
    return updated[len(existing):]
