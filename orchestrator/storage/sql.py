"""SQLAlchemy-backed stores."""

from contextlib import contextmanager
from datetime import datetime
from typing import Iterator, List, Optional

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from ..core.exceptions import StorageError
from ..core.history import ensure_append_only
from ..core.logging import get_logger
from ..core.retry import RetryConfig, with_retry
from ..models import (
    DefinitionFilter,
    InstanceFilter,
    InstanceStatus,
    TERMINAL_STATUSES,
    WorkflowDefinition,
    WorkflowHistoryEntry,
    WorkflowInstance,
)
from .base import matches_definition
from .models import HistoryEntryModel, WorkflowDefinitionModel, WorkflowInstanceModel

logger = get_logger(__name__)

_storage_retry = with_retry(RetryConfig(max_attempts=3, base_delay=0.05, max_delay=0.5))

_ACTIVE = (InstanceStatus.RUNNING.value, InstanceStatus.PAUSED.value)


@contextmanager
def _session_scope(factory: sessionmaker, operation: str) -> Iterator[Session]:
    session = factory()
    try:
        yield session
        session.commit()
    except SQLAlchemyError as e:
        session.rollback()
        logger.error(f"Database error during {operation}: {e}")
        raise StorageError(f"Failed to {operation}: {e}", operation=operation)
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


class SqlWorkflowStore:
    """Definitions stored one row per version."""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    @_storage_retry
    def save(self, definition: WorkflowDefinition) -> None:
        with _session_scope(self._session_factory, "save workflow") as session:
            next_seq = (session.query(func.max(WorkflowDefinitionModel.saved_seq))
                        .filter(WorkflowDefinitionModel.id == definition.id).scalar() or 0) + 1
            session.query(WorkflowDefinitionModel).filter(
                WorkflowDefinitionModel.id == definition.id
            ).update({"is_latest": False})
            row = session.get(WorkflowDefinitionModel, (definition.id, definition.version))
            payload = definition.model_dump(mode="json")
            if row is None:
                row = WorkflowDefinitionModel(id=definition.id, version=definition.version)
                session.add(row)
            row.name = definition.name
            row.status = definition.status.value
            row.definition = payload
            row.is_latest = True
            row.saved_seq = next_seq

    @_storage_retry
    def get(self, workflow_id: str, version: Optional[str] = None) -> Optional[WorkflowDefinition]:
        with _session_scope(self._session_factory, "get workflow") as session:
            query = session.query(WorkflowDefinitionModel).filter(WorkflowDefinitionModel.id == workflow_id)
            if version is None:
                query = query.filter(WorkflowDefinitionModel.is_latest.is_(True))
            else:
                query = query.filter(WorkflowDefinitionModel.version == version)
            row = query.first()
            return WorkflowDefinition.model_validate(row.definition) if row else None

    def list_versions(self, workflow_id: str) -> List[WorkflowDefinition]:
        with _session_scope(self._session_factory, "list workflow versions") as session:
            rows = (session.query(WorkflowDefinitionModel)
                    .filter(WorkflowDefinitionModel.id == workflow_id)
                    .order_by(WorkflowDefinitionModel.saved_seq).all())
            return [WorkflowDefinition.model_validate(row.definition) for row in rows]

    def list(self, filter: Optional[DefinitionFilter] = None) -> List[WorkflowDefinition]:
        with _session_scope(self._session_factory, "list workflows") as session:
            query = session.query(WorkflowDefinitionModel).filter(WorkflowDefinitionModel.is_latest.is_(True))
            if filter is not None and filter.status is not None:
                query = query.filter(WorkflowDefinitionModel.status == filter.status.value)
            definitions = [WorkflowDefinition.model_validate(row.definition) for row in query.all()]
            return [d for d in definitions if matches_definition(d, filter)]

    def find_by_name(self, name: str, version: str) -> Optional[WorkflowDefinition]:
        with _session_scope(self._session_factory, "find workflow") as session:
            row = (session.query(WorkflowDefinitionModel)
                   .filter(WorkflowDefinitionModel.name == name, WorkflowDefinitionModel.version == version)
                   .first())
            return WorkflowDefinition.model_validate(row.definition) if row else None

    def delete(self, workflow_id: str) -> bool:
        with _session_scope(self._session_factory, "delete workflow") as session:
            deleted = session.query(WorkflowDefinitionModel).filter(
                WorkflowDefinitionModel.id == workflow_id
            ).delete()
            return deleted > 0


class SqlInstanceStore:
    """Instance rows plus insert-only history rows."""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def create(self, instance: WorkflowInstance) -> None:
        with _session_scope(self._session_factory, "create instance") as session:
            if session.get(WorkflowInstanceModel, instance.id) is not None:
                raise StorageError(f"Instance '{instance.id}' already exists", operation="create_instance", recoverable=False)
            row = WorkflowInstanceModel(id=instance.id)
            session.add(row)
            self._apply(row, instance)
            session.flush()
            self._insert_history(session, instance.id, instance.history)

    @_storage_retry
    def get(self, instance_id: str) -> Optional[WorkflowInstance]:
        with _session_scope(self._session_factory, "get instance") as session:
            row = session.get(WorkflowInstanceModel, instance_id)
            if row is None:
                return None
            return self._to_instance(row, self._load_history(session, instance_id))

    @_storage_retry
    def save(self, instance: WorkflowInstance) -> None:
        with _session_scope(self._session_factory, "save instance") as session:
            row = session.get(WorkflowInstanceModel, instance.id)
            if row is None:
                raise StorageError(f"Instance '{instance.id}' does not exist", operation="save_instance", recoverable=False)
            stored = self._load_history(session, instance.id)
            new_entries = ensure_append_only(stored, instance.history, instance.id)
            self._apply(row, instance)
            self._insert_history(session, instance.id, new_entries)

    def list(self, filter: Optional[InstanceFilter] = None) -> List[WorkflowInstance]:
        with _session_scope(self._session_factory, "list instances") as session:
            query = session.query(WorkflowInstanceModel)
            if filter is not None and filter.status is not None:
                query = query.filter(WorkflowInstanceModel.status == filter.status.value)
            if filter is not None and filter.workflow_id is not None:
                query = query.filter(WorkflowInstanceModel.workflow_id == filter.workflow_id)
            instances = [
                self._to_instance(row, self._load_history(session, row.id))
                for row in query.all()
            ]
        instances = [i for i in instances if filter is None or filter.matches(i)]
        return sorted(instances, key=lambda i: i.started_at)

    def has_active(self, workflow_id: str) -> bool:
        with _session_scope(self._session_factory, "check active instances") as session:
            return session.query(WorkflowInstanceModel.id).filter(
                WorkflowInstanceModel.workflow_id == workflow_id,
                WorkflowInstanceModel.status.in_(_ACTIVE)
            ).first() is not None

    def count(self, workflow_id: str) -> int:
        with _session_scope(self._session_factory, "count instances") as session:
            return session.query(WorkflowInstanceModel).filter(
                WorkflowInstanceModel.workflow_id == workflow_id
            ).count()

    def delete_completed_before(self, cutoff: datetime) -> int:
        terminal = [status.value for status in TERMINAL_STATUSES]
        with _session_scope(self._session_factory, "purge instances") as session:
            rows = session.query(WorkflowInstanceModel).filter(
                WorkflowInstanceModel.status.in_(terminal),
                WorkflowInstanceModel.completed_at.isnot(None)
            ).all()
            doomed = [
                row.id for row in rows
                if WorkflowInstance.model_validate({**row.state, "history": []}).completed_at < cutoff
            ]
            if doomed:
                session.query(HistoryEntryModel).filter(
                    HistoryEntryModel.instance_id.in_(doomed)
                ).delete(synchronize_session=False)
                session.query(WorkflowInstanceModel).filter(
                    WorkflowInstanceModel.id.in_(doomed)
                ).delete(synchronize_session=False)
            return len(doomed)

    @staticmethod
    def _apply(row: WorkflowInstanceModel, instance: WorkflowInstance) -> None:
        row.workflow_id = instance.workflow_id
        row.workflow_version = instance.workflow_version
        row.status = instance.status.value
        row.state = instance.model_dump(mode="json", exclude={"history"})
        row.error = instance.error
        row.started_at = instance.started_at
        row.completed_at = instance.completed_at

    @staticmethod
    def _insert_history(session: Session, instance_id: str, entries: List[WorkflowHistoryEntry]) -> None:
        for entry in entries:
            session.add(HistoryEntryModel(
                id=entry.id,
                instance_id=instance_id,
                sequence=entry.sequence,
                step_id=entry.step_id,
                action=entry.action.value,
                timestamp=entry.timestamp,
                duration=entry.duration,
                entry=entry.model_dump(mode="json")
            ))

    @staticmethod
    def _load_history(session: Session, instance_id: str) -> List[WorkflowHistoryEntry]:
        rows = (session.query(HistoryEntryModel)
                .filter(HistoryEntryModel.instance_id == instance_id)
                .order_by(HistoryEntryModel.sequence).all())
        return [WorkflowHistoryEntry.model_validate(row.entry) for row in rows]

    @staticmethod
    def _to_instance(row: WorkflowInstanceModel, history: List[WorkflowHistoryEntry]) -> WorkflowInstance:
        instance = WorkflowInstance.model_validate(row.state)
        instance.history = history
        return instance
