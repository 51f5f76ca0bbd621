"""Tests for the SQLAlchemy stores."""

from datetime import timedelta

import pytest

from orchestrator.core.actions import ActionDispatcher
from orchestrator.core.exceptions import StorageError
from orchestrator.core.execution_engine import ExecutionEngine
from orchestrator.core.registry import WorkflowRegistry
from orchestrator.models import (
    DefinitionFilter,
    HistoryAction,
    InstanceFilter,
    InstanceStatus,
    WorkflowDefinition,
    WorkflowInstance,
    WorkflowStatus,
    utcnow,
)
from orchestrator.storage import (
    SqlInstanceStore,
    SqlWorkflowStore,
    create_database_engine,
    create_session_factory,
    create_tables,
)
from orchestrator.core.history import HistoryRecorder

from conftest import history_of, linear_workflow


@pytest.fixture
def session_factory(tmp_path):
    engine = create_database_engine(f"sqlite:///{tmp_path / 'orchestrator.db'}")
    create_tables(engine)
    yield create_session_factory(engine)
    engine.dispose()


@pytest.fixture
def workflow_store(session_factory):
    return SqlWorkflowStore(session_factory)


@pytest.fixture
def instance_store(session_factory):
    return SqlInstanceStore(session_factory)


def make_definition(**overrides):
    data = linear_workflow(**overrides)
    data.setdefault("id", "wf-1")
    return WorkflowDefinition.model_validate(data)


def make_instance(instance_id="inst-1", workflow_id="wf-1", **fields):
    return WorkflowInstance(id=instance_id, workflow_id=workflow_id, workflow_version="1.0.0", **fields)


class TestSqlWorkflowStore:

    def test_save_and_get_latest(self, workflow_store):
        workflow_store.save(make_definition())
        workflow_store.save(make_definition(version="1.0.1", description="Second"))

        latest = workflow_store.get("wf-1")
        assert latest.version == "1.0.1"
        assert latest.description == "Second"
        assert workflow_store.get("wf-1", "1.0.0").description == ""
        assert [d.version for d in workflow_store.list_versions("wf-1")] == ["1.0.0", "1.0.1"]
        assert workflow_store.get("missing") is None

    def test_resaving_a_version_replaces_it(self, workflow_store):
        definition = make_definition()
        workflow_store.save(definition)
        definition.status = WorkflowStatus.ACTIVE
        workflow_store.save(definition)

        assert workflow_store.get("wf-1").status == WorkflowStatus.ACTIVE
        assert len(workflow_store.list_versions("wf-1")) == 1

    def test_list_find_and_delete(self, workflow_store):
        workflow_store.save(make_definition(name="Invoices"))
        active = make_definition(id="wf-2", name="Onboarding", status="active")
        workflow_store.save(active)

        assert {d.id for d in workflow_store.list()} == {"wf-1", "wf-2"}
        assert [d.id for d in workflow_store.list(DefinitionFilter(status=WorkflowStatus.ACTIVE))] == ["wf-2"]
        assert [d.id for d in workflow_store.list(DefinitionFilter(name="invo"))] == ["wf-1"]
        assert workflow_store.find_by_name("Onboarding", "1.0.0").id == "wf-2"
        assert workflow_store.find_by_name("Onboarding", "9.9.9") is None

        assert workflow_store.delete("wf-1") is True
        assert workflow_store.delete("wf-1") is False
        assert workflow_store.get("wf-1") is None


class TestSqlInstanceStore:

    def test_create_get_and_save(self, instance_store):
        recorder = HistoryRecorder()
        step = make_definition().steps[0]
        instance = make_instance(variables={"order": {"id": 7}})
        instance_store.create(instance)

        recorder.record(instance, step, HistoryAction.COMPLETED)
        instance.status = InstanceStatus.COMPLETED
        instance.completed_at = utcnow()
        instance_store.save(instance)

        loaded = instance_store.get("inst-1")
        assert loaded.status == InstanceStatus.COMPLETED
        assert loaded.variables == {"order": {"id": 7}}
        assert [(e.sequence, e.step_id, e.action) for e in loaded.history] == [(1, "start", HistoryAction.COMPLETED)]
        assert instance_store.get("missing") is None

    def test_create_twice_is_an_error(self, instance_store):
        instance_store.create(make_instance())
        with pytest.raises(StorageError):
            instance_store.create(make_instance())

    def test_history_is_append_only(self, instance_store):
        recorder = HistoryRecorder()
        step = make_definition().steps[0]
        instance = make_instance()
        instance_store.create(instance)
        recorder.record(instance, step, HistoryAction.STARTED)
        recorder.record(instance, step, HistoryAction.COMPLETED)
        instance_store.save(instance)

        truncated = instance_store.get("inst-1")
        truncated.history = truncated.history[:1]
        with pytest.raises(StorageError):
            instance_store.save(truncated)
        assert len(instance_store.get("inst-1").history) == 2

    def test_queries_and_purge(self, instance_store):
        old = make_instance("old", status=InstanceStatus.COMPLETED, completed_at=utcnow() - timedelta(days=10))
        running = make_instance("running")
        other = make_instance("other", workflow_id="wf-2", status=InstanceStatus.PAUSED)
        for instance in (old, running, other):
            instance_store.create(instance)

        assert instance_store.has_active("wf-1")
        assert instance_store.count("wf-1") == 2
        assert [i.id for i in instance_store.list(InstanceFilter(status=InstanceStatus.PAUSED))] == ["other"]
        assert {i.id for i in instance_store.list(InstanceFilter(workflow_id="wf-1"))} == {"old", "running"}

        assert instance_store.delete_completed_before(utcnow() - timedelta(days=1)) == 1
        assert instance_store.get("old") is None
        assert instance_store.get("running") is not None


class TestEngineOnSql:

    def test_linear_workflow_persists_history(self, workflow_store, instance_store):
        registry = WorkflowRegistry(workflow_store, instance_store)
        dispatcher = ActionDispatcher()
        engine = ExecutionEngine(registry, dispatcher, max_concurrent_instances=2)
        try:
            workflow_id = registry.create(linear_workflow())
            registry.activate(workflow_id)
            instance_id = engine.start(registry.get(workflow_id), initial_variables={"x": 1})
            instance = engine.wait_for_completion(instance_id)

            assert instance.status == InstanceStatus.COMPLETED
            assert history_of(registry.get_instance(instance_id)) == [
                ("start", "completed"), ("A", "completed"), ("end", "completed")
            ]
            assert registry.stats().completed_instances == 1
        finally:
            engine.shutdown()
            dispatcher.shutdown()
