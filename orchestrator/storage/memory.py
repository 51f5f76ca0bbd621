"""In-memory stores, the default backend and the one used by tests."""

import threading
from datetime import datetime
from typing import Dict, List, Optional

from ..core.exceptions import StorageError
from ..core.history import ensure_append_only
from ..models import DefinitionFilter, InstanceFilter, InstanceStatus, WorkflowDefinition, WorkflowInstance
from .base import matches_definition


class InMemoryWorkflowStore:
    """Definitions kept in process memory, keyed by id then version."""

    def __init__(self):
        self._versions: Dict[str, Dict[str, WorkflowDefinition]] = {}
        self._latest: Dict[str, str] = {}
        self._lock = threading.RLock()

    def save(self, definition: WorkflowDefinition) -> None:
        with self._lock:
            self._versions.setdefault(definition.id, {})[definition.version] = definition.model_copy(deep=True)
            self._latest[definition.id] = definition.version

    def get(self, workflow_id: str, version: Optional[str] = None) -> Optional[WorkflowDefinition]:
        with self._lock:
            versions = self._versions.get(workflow_id)
            if not versions:
                return None
            definition = versions.get(version or self._latest[workflow_id])
            return definition.model_copy(deep=True) if definition else None

    def list_versions(self, workflow_id: str) -> List[WorkflowDefinition]:
        with self._lock:
            return [d.model_copy(deep=True) for d in self._versions.get(workflow_id, {}).values()]

    def list(self, filter: Optional[DefinitionFilter] = None) -> List[WorkflowDefinition]:
        with self._lock:
            latest = [self._versions[wid][version] for wid, version in self._latest.items()]
            return [d.model_copy(deep=True) for d in latest if matches_definition(d, filter)]

    def find_by_name(self, name: str, version: str) -> Optional[WorkflowDefinition]:
        with self._lock:
            for versions in self._versions.values():
                definition = versions.get(version)
                if definition is not None and definition.name == name:
                    return definition.model_copy(deep=True)
            return None

    def delete(self, workflow_id: str) -> bool:
        with self._lock:
            self._latest.pop(workflow_id, None)
            return self._versions.pop(workflow_id, None) is not None


class InMemoryInstanceStore:
    """Instances kept in process memory. Reads and writes exchange copies."""

    def __init__(self):
        self._instances: Dict[str, WorkflowInstance] = {}
        self._lock = threading.RLock()

    def create(self, instance: WorkflowInstance) -> None:
        with self._lock:
            if instance.id in self._instances:
                raise StorageError(f"Instance '{instance.id}' already exists", operation="create_instance", recoverable=False)
            self._instances[instance.id] = instance.model_copy(deep=True)

    def get(self, instance_id: str) -> Optional[WorkflowInstance]:
        with self._lock:
            instance = self._instances.get(instance_id)
            return instance.model_copy(deep=True) if instance else None

    def save(self, instance: WorkflowInstance) -> None:
        with self._lock:
            stored = self._instances.get(instance.id)
            if stored is None:
                raise StorageError(f"Instance '{instance.id}' does not exist", operation="save_instance", recoverable=False)
            ensure_append_only(stored.history, instance.history, instance.id)
            self._instances[instance.id] = instance.model_copy(deep=True)

    def list(self, filter: Optional[InstanceFilter] = None) -> List[WorkflowInstance]:
        with self._lock:
            instances = sorted(self._instances.values(), key=lambda i: i.started_at)
            return [i.model_copy(deep=True) for i in instances if filter is None or filter.matches(i)]

    def has_active(self, workflow_id: str) -> bool:
        with self._lock:
            return any(
                i.workflow_id == workflow_id and i.status in (InstanceStatus.RUNNING, InstanceStatus.PAUSED)
                for i in self._instances.values()
            )

    def count(self, workflow_id: str) -> int:
        with self._lock:
            return sum(1 for i in self._instances.values() if i.workflow_id == workflow_id)

    def delete_completed_before(self, cutoff: datetime) -> int:
        with self._lock:
            doomed = [
                i.id for i in self._instances.values()
                if i.is_terminal and i.completed_at is not None and i.completed_at < cutoff
            ]
            for instance_id in doomed:
                del self._instances[instance_id]
            return len(doomed)
