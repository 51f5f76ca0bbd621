"""Storage interfaces for workflow definitions and instances."""

from datetime import datetime
from typing import List, Optional, Protocol

from ..models import DefinitionFilter, InstanceFilter, WorkflowDefinition, WorkflowInstance


class WorkflowStore(Protocol):
    """Versioned catalog of workflow definitions."""

    def save(self, definition: WorkflowDefinition) -> None:
        """Insert or replace the (id, version) pair; it becomes the latest version."""

    def get(self, workflow_id: str, version: Optional[str] = None) -> Optional[WorkflowDefinition]:
        """Return the given version, or the latest one when version is None."""

    def list_versions(self, workflow_id: str) -> List[WorkflowDefinition]:
        """All stored versions of a definition, oldest first."""

    def list(self, filter: Optional[DefinitionFilter] = None) -> List[WorkflowDefinition]:
        """Latest version of every definition matching the filter."""

    def find_by_name(self, name: str, version: str) -> Optional[WorkflowDefinition]:
        """Definition with this exact name and version, if any."""

    def delete(self, workflow_id: str) -> bool:
        """Remove every version of a definition."""


class InstanceStore(Protocol):
    """Instances and their append-only history."""

    def create(self, instance: WorkflowInstance) -> None:
        """Persist a new instance."""

    def get(self, instance_id: str) -> Optional[WorkflowInstance]:
        """Return a detached copy of the instance."""

    def save(self, instance: WorkflowInstance) -> None:
        """Persist instance state; history may only grow."""

    def list(self, filter: Optional[InstanceFilter] = None) -> List[WorkflowInstance]:
        """Instances matching the filter, oldest first."""

    def has_active(self, workflow_id: str) -> bool:
        """Whether any running or paused instance references the definition."""

    def count(self, workflow_id: str) -> int:
        """Number of instances of the definition, any status."""

    def delete_completed_before(self, cutoff: datetime) -> int:
        """Delete terminal instances completed before ``cutoff``; return how many."""


def matches_definition(definition: WorkflowDefinition, filter: Optional[DefinitionFilter]) -> bool:
    if filter is None:
        return True
    if filter.status is not None and definition.status != filter.status:
        return False
    if filter.name and filter.name.lower() not in definition.name.lower():
        return False
    return True
