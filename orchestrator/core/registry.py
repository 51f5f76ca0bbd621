"""Registry owning the catalog of workflow definitions and the query surface over instances."""

import re
import threading
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from ..models import (
    DefinitionFilter,
    InstanceFilter,
    InstanceStatus,
    ValidationResult,
    WorkflowDefinition,
    WorkflowHistoryEntry,
    WorkflowInstance,
    WorkflowStats,
    WorkflowStatus,
    WorkflowSummary,
    utcnow,
)
from ..storage.base import InstanceStore, WorkflowStore
from .exceptions import (
    ConflictError,
    DefinitionInvalidError,
    InstanceNotFoundError,
    WorkflowNotFoundError,
)
from .logging import get_logger
from .validation import DefinitionValidator

logger = get_logger(__name__)

_STATUS_ONLY_FIELDS = {"status", "updated_by"}


def bump_version(version: str) -> str:
    """Increment the last numeric component: ``1.0.0`` -> ``1.0.1``, ``v2`` -> ``v3``."""
    match = re.search(r'(\d+)(?!.*\d)', version)
    if not match:
        return f"{version}.1"
    start, end = match.span(1)
    return f"{version[:start]}{int(match.group(1)) + 1}{version[end:]}"


class WorkflowRegistry:
    """Manages workflow definitions, their lifecycle, and read access to instances."""

    def __init__(self, workflow_store: WorkflowStore, instance_store: InstanceStore,
                 validator: Optional[DefinitionValidator] = None):
        self.workflow_store = workflow_store
        self.instance_store = instance_store
        self.validator = validator or DefinitionValidator()
        self._trigger_dispatcher = None
        self._lock = threading.RLock()

    def bind_triggers(self, trigger_dispatcher) -> None:
        """Attach the trigger dispatcher that receives trigger (un)registrations."""
        self._trigger_dispatcher = trigger_dispatcher
        for definition in self.workflow_store.list():
            trigger_dispatcher.register_workflow(definition)

    def validate(self, definition: Union[WorkflowDefinition, Dict[str, Any]]) -> ValidationResult:
        """Validate a definition without storing it."""
        try:
            definition = self._coerce(definition)
        except DefinitionInvalidError as e:
            return ValidationResult(is_valid=False, errors=e.validation_errors or [e.message])
        return self.validator.validate(definition)

    def create(self, definition: Union[WorkflowDefinition, Dict[str, Any]], created_by: Optional[str] = None) -> str:
        """
        Register a new workflow definition in draft status.

        Args:
            definition: The definition, as a model or a plain dict
            created_by: Optional author recorded on the definition

        Returns:
            str: The definition id

        Raises:
            DefinitionInvalidError: If the definition violates a graph invariant
            ConflictError: If a definition with the same name and version exists
        """
        definition = self._coerce(definition)
        logger.info(f"Creating workflow: {definition.name}")
        self._check_valid(definition)

        with self._lock:
            if not definition.id:
                definition.id = self._generate_unique_id()
            elif self.workflow_store.get(definition.id) is not None:
                raise ConflictError(f"Workflow with id '{definition.id}' already exists", workflow_id=definition.id)
            if self.workflow_store.find_by_name(definition.name, definition.version) is not None:
                raise ConflictError(
                    f"Workflow '{definition.name}' version {definition.version} already exists"
                )
            now = utcnow()
            definition.status = WorkflowStatus.DRAFT
            definition.created_at = now
            definition.updated_at = now
            if created_by:
                definition.created_by = created_by
                definition.updated_by = created_by
            self.workflow_store.save(definition)
            self._register_triggers(definition)

        logger.info(f"Created workflow '{definition.name}' with ID: {definition.id}")
        return definition.id

    def update(self, workflow_id: str, patch: Union[WorkflowDefinition, Dict[str, Any]],
               updated_by: Optional[str] = None) -> WorkflowDefinition:
        """
        Apply changes to a definition.

        Content changes to a definition that is no longer a draft, or that
        already has instances, are stored as a new version; instances started
        earlier keep their version. Status-only changes are applied in place.

        Raises:
            WorkflowNotFoundError: If the definition does not exist
            DefinitionInvalidError: If the patch changes the id or breaks an invariant
            ConflictError: If the resulting name and version are already taken
        """
        if isinstance(patch, WorkflowDefinition):
            patch = patch.model_dump(exclude={"created_at", "created_by"})
        if "id" in patch and patch["id"] and patch["id"] != workflow_id:
            raise DefinitionInvalidError(
                f"Workflow id cannot be changed ('{workflow_id}' -> '{patch['id']}')",
                validation_errors=["id is immutable"]
            )

        with self._lock:
            current = self.get(workflow_id)
            merged = current.model_dump()
            merged.update({k: v for k, v in patch.items() if k not in ("id", "created_at", "created_by")})
            updated = self._coerce(merged)
            updated.id = workflow_id
            updated.updated_at = utcnow()
            if updated_by:
                updated.updated_by = updated_by

            changed = {k for k in patch if k not in ("id", "created_at", "created_by", "updated_at")
                       and merged.get(k) != current.model_dump().get(k)}
            status_only = changed <= _STATUS_ONLY_FIELDS
            if not status_only:
                self._check_valid(updated)
                published = current.status != WorkflowStatus.DRAFT or self.instance_store.count(workflow_id) > 0
                if published and updated.version == current.version:
                    updated.version = self._next_free_version(workflow_id, current.version)
                if updated.version != current.version or updated.name != current.name:
                    existing = self.workflow_store.find_by_name(updated.name, updated.version)
                    if existing is not None and existing.id != workflow_id:
                        raise ConflictError(f"Workflow '{updated.name}' version {updated.version} already exists")
                    if updated.version != current.version and self.workflow_store.get(workflow_id, updated.version):
                        raise ConflictError(
                            f"Workflow '{workflow_id}' already has a version {updated.version}",
                            workflow_id=workflow_id
                        )
            self.workflow_store.save(updated)
            self._register_triggers(updated)

        if updated.version != current.version:
            logger.info(f"Workflow {workflow_id} updated to new version {updated.version}")
        else:
            logger.info(f"Workflow {workflow_id} updated in place")
        return updated

    def delete(self, workflow_id: str) -> None:
        """
        Delete every version of a definition.

        Raises:
            WorkflowNotFoundError: If the definition does not exist
            ConflictError: If a running or paused instance references it
        """
        with self._lock:
            self.get(workflow_id)
            if self.instance_store.has_active(workflow_id):
                raise ConflictError(
                    f"Workflow '{workflow_id}' has running or paused instances and cannot be deleted",
                    workflow_id=workflow_id
                )
            self.workflow_store.delete(workflow_id)
            if self._trigger_dispatcher is not None:
                self._trigger_dispatcher.unregister_workflow(workflow_id)
        logger.info(f"Deleted workflow {workflow_id}")

    def get(self, workflow_id: str, version: Optional[str] = None) -> WorkflowDefinition:
        definition = self.workflow_store.get(workflow_id, version)
        if definition is None:
            raise WorkflowNotFoundError(workflow_id, version)
        return definition

    def list(self, filter: Optional[DefinitionFilter] = None) -> List[WorkflowDefinition]:
        return self.workflow_store.list(filter)

    def list_versions(self, workflow_id: str) -> List[WorkflowDefinition]:
        versions = self.workflow_store.list_versions(workflow_id)
        if not versions:
            raise WorkflowNotFoundError(workflow_id)
        return versions

    def list_summaries(self, filter: Optional[DefinitionFilter] = None) -> List[WorkflowSummary]:
        return [
            WorkflowSummary(
                id=d.id, name=d.name, description=d.description, version=d.version,
                status=d.status, created_at=d.created_at, updated_at=d.updated_at,
                step_count=len(d.steps), trigger_count=len(d.triggers)
            )
            for d in self.list(filter)
        ]

    def activate(self, workflow_id: str) -> WorkflowDefinition:
        current = self.get(workflow_id)
        if current.status == WorkflowStatus.ARCHIVED:
            raise ConflictError(f"Archived workflow '{workflow_id}' cannot be activated", workflow_id=workflow_id)
        return self._set_status(workflow_id, WorkflowStatus.ACTIVE)

    def pause(self, workflow_id: str) -> WorkflowDefinition:
        """Stop new instances from starting; running instances are unaffected."""
        return self._set_status(workflow_id, WorkflowStatus.PAUSED)

    def archive(self, workflow_id: str) -> WorkflowDefinition:
        with self._lock:
            if self.instance_store.has_active(workflow_id):
                raise ConflictError(
                    f"Workflow '{workflow_id}' has running or paused instances and cannot be archived",
                    workflow_id=workflow_id
                )
            return self._set_status(workflow_id, WorkflowStatus.ARCHIVED)

    def get_instance(self, instance_id: str) -> WorkflowInstance:
        instance = self.instance_store.get(instance_id)
        if instance is None:
            raise InstanceNotFoundError(instance_id)
        return instance

    def list_instances(self, filter: Optional[InstanceFilter] = None) -> List[WorkflowInstance]:
        return self.instance_store.list(filter)

    def get_history(self, instance_id: str) -> List[WorkflowHistoryEntry]:
        return self.get_instance(instance_id).history

    def stats(self) -> WorkflowStats:
        workflows = self.workflow_store.list()
        instances = self.instance_store.list()

        def count(status: InstanceStatus) -> int:
            return sum(1 for i in instances if i.status == status)

        return WorkflowStats(
            total_workflows=len(workflows),
            active_workflows=sum(1 for w in workflows if w.status == WorkflowStatus.ACTIVE),
            total_instances=len(instances),
            running_instances=count(InstanceStatus.RUNNING),
            completed_instances=count(InstanceStatus.COMPLETED),
            failed_instances=count(InstanceStatus.FAILED),
            paused_instances=count(InstanceStatus.PAUSED),
            cancelled_instances=count(InstanceStatus.CANCELLED),
            timeout_instances=count(InstanceStatus.TIMEOUT),
        )

    def purge_instances(self, older_than: datetime) -> int:
        """Delete terminal instances completed before ``older_than``."""
        purged = self.instance_store.delete_completed_before(older_than)
        if purged:
            logger.info(f"Purged {purged} instances completed before {older_than.isoformat()}")
        return purged

    def _set_status(self, workflow_id: str, status: WorkflowStatus) -> WorkflowDefinition:
        return self.update(workflow_id, {"status": status})

    def _register_triggers(self, definition: WorkflowDefinition) -> None:
        if self._trigger_dispatcher is not None:
            self._trigger_dispatcher.register_workflow(definition)

    def _next_free_version(self, workflow_id: str, version: str) -> str:
        taken = {d.version for d in self.workflow_store.list_versions(workflow_id)}
        candidate = bump_version(version)
        while candidate in taken:
            candidate = bump_version(candidate)
        return candidate

    def _check_valid(self, definition: WorkflowDefinition) -> None:
        result = self.validator.validate(definition)
        if not result.is_valid:
            error_msg = f"Workflow validation failed: {'; '.join(result.errors)}"
            logger.error(error_msg)
            raise DefinitionInvalidError(error_msg, validation_errors=result.errors, workflow_name=definition.name)
        if result.warnings:
            logger.warning(f"Workflow validation warnings: {'; '.join(result.warnings)}")

    @staticmethod
    def _coerce(definition: Union[WorkflowDefinition, Dict[str, Any]]) -> WorkflowDefinition:
        if isinstance(definition, WorkflowDefinition):
            return definition.model_copy(deep=True)
        try:
            return WorkflowDefinition.model_validate(definition)
        except ValueError as e:
            raise DefinitionInvalidError(f"Malformed workflow definition: {e}", validation_errors=[str(e)])

    def _generate_unique_id(self) -> str:
        return str(uuid.uuid4())
