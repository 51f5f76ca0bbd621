"""Tests for the REST API."""

import pytest
from fastapi.testclient import TestClient

from orchestrator.config import get_testing_config
from orchestrator.core.middleware import resource_ids
from orchestrator.factory import build_components, create_app
from orchestrator.models import ActionType, InstanceStatus

from conftest import RecordingHandler, linear_workflow


@pytest.fixture
def components():
    return build_components(get_testing_config())


@pytest.fixture
def client(components):
    app = create_app(state=components)
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def create_active(client):
    def _create(definition):
        response = client.post("/api/v1/workflows", json={"workflow": definition})
        assert response.status_code == 201, response.text
        workflow_id = response.json()["workflow_id"]
        assert client.post(f"/api/v1/workflows/{workflow_id}/activate").status_code == 200
        return workflow_id
    return _create


class TestWorkflowEndpoints:

    def test_create_get_and_list(self, client):
        response = client.post("/api/v1/workflows", json={"workflow": linear_workflow(), "created_by": "ada"})
        assert response.status_code == 201
        workflow_id = response.json()["workflow_id"]

        definition = client.get(f"/api/v1/workflows/{workflow_id}").json()
        assert definition["status"] == "draft"
        assert definition["created_by"] == "ada"

        summaries = client.get("/api/v1/workflows").json()
        assert [s["id"] for s in summaries] == [workflow_id]
        assert client.get("/api/v1/workflows", params={"status": "active"}).json() == []

    def test_invalid_definition_is_422(self, client):
        data = linear_workflow()
        data["steps"].append({"id": "orphan", "type": "task"})
        response = client.post("/api/v1/workflows", json={"workflow": data})
        assert response.status_code == 422
        assert response.json()["detail"]["error"] == "DefinitionInvalidError"

        malformed = client.post("/api/v1/workflows", json={"workflow": {"name": "No steps"}})
        assert malformed.status_code == 422

    def test_validate_endpoint(self, client):
        result = client.post("/api/v1/workflows/validate", json={"name": "Bad", "steps": []}).json()
        assert result["is_valid"] is False

    def test_unknown_workflow_is_404(self, client):
        response = client.get("/api/v1/workflows/missing")
        assert response.status_code == 404
        assert response.json()["detail"]["message"] == "Workflow 'missing' not found"

    def test_update_creates_new_version(self, client, create_active):
        workflow_id = create_active(linear_workflow())
        response = client.put(f"/api/v1/workflows/{workflow_id}", json={"changes": {"description": "v2"}})
        assert response.status_code == 200
        assert response.json()["version"] == "1.0.1"
        versions = client.get(f"/api/v1/workflows/{workflow_id}/versions").json()
        assert [v["version"] for v in versions] == ["1.0.0", "1.0.1"]

    def test_delete(self, client):
        workflow_id = client.post("/api/v1/workflows", json={"workflow": linear_workflow()}).json()["workflow_id"]
        assert client.delete(f"/api/v1/workflows/{workflow_id}").status_code == 204
        assert client.get(f"/api/v1/workflows/{workflow_id}").status_code == 404


class TestInstanceEndpoints:

    def test_start_and_inspect_instance(self, client, components, create_active):
        workflow_id = create_active(linear_workflow())

        response = client.post(f"/api/v1/workflows/{workflow_id}/start", json={"variables": {"x": 1}})
        assert response.status_code == 202
        instance_id = response.json()["instance_id"]
        components.execution_engine.wait_for_completion(instance_id)

        instance = client.get(f"/api/v1/instances/{instance_id}").json()
        assert instance["status"] == "completed"
        history = client.get(f"/api/v1/instances/{instance_id}/history").json()
        assert [entry["step_id"] for entry in history] == ["start", "A", "end"]
        result = client.get(f"/api/v1/instances/{instance_id}/result").json()
        assert result["success"] is True
        assert result["output"] == {"x": 1}

        listed = client.get("/api/v1/instances", params={"workflow_id": workflow_id}).json()
        assert [i["id"] for i in listed] == [instance_id]

    def test_starting_a_draft_is_409(self, client):
        workflow_id = client.post("/api/v1/workflows", json={"workflow": linear_workflow()}).json()["workflow_id"]
        response = client.post(f"/api/v1/workflows/{workflow_id}/start", json={})
        assert response.status_code == 409

    def test_invalid_variables_are_422(self, client, create_active):
        workflow_id = create_active(linear_workflow(variables=[{"name": "order_id", "required": True}]))
        response = client.post(f"/api/v1/workflows/{workflow_id}/start", json={"variables": {}})
        assert response.status_code == 422
        assert response.json()["detail"]["error"] == "validation_error"

    def test_user_task_and_cancel(self, client, components, create_active):
        workflow_id = create_active(linear_workflow(middle=[{"id": "review", "type": "user_task"}]))
        first = client.post(f"/api/v1/workflows/{workflow_id}/start", json={}).json()["instance_id"]
        second = client.post(f"/api/v1/workflows/{workflow_id}/start", json={}).json()["instance_id"]
        components.execution_engine.wait(first, timeout=5)
        components.execution_engine.wait(second, timeout=5)

        assert client.get(f"/api/v1/instances/{first}/result").status_code == 409

        response = client.post(f"/api/v1/instances/{first}/steps/review/complete",
                               json={"variables": {"decision": "ok"}})
        assert response.status_code == 200
        instance = components.execution_engine.wait_for_completion(first)
        assert instance.status == InstanceStatus.COMPLETED

        assert client.post(f"/api/v1/instances/{second}/cancel").json()["status"] == "cancelled"
        assert client.post(f"/api/v1/instances/{second}/cancel").status_code == 409
        assert client.get("/api/v1/instances/missing").status_code == 404


class TestTriggerEndpoints:

    def test_webhook_starts_matching_workflow(self, client, components, create_active):
        workflow_id = create_active(linear_workflow(triggers=[
            {"id": "hook", "type": "webhook", "config": {"url": "/orders/new"}}
        ]))

        body = client.post("/api/v1/webhooks/orders/new", json={"order_id": "o-1"}).json()

        assert body["matched"] == 1
        result = body["results"][0]
        assert result["success"] is True
        assert result["workflow_id"] == workflow_id
        instance = components.execution_engine.wait_for_completion(result["instance_id"])
        assert instance.variables == {"order_id": "o-1"}
        assert instance.context.source == "webhook"

    def test_events_and_direct_firing(self, client, components, create_active):
        handler = RecordingHandler()
        components.action_dispatcher.register(ActionType.CREATE_TASK, handler)
        create_active(linear_workflow(triggers=[
            {"id": "on_signup", "type": "event", "config": {"event": "user.signed_up"}}
        ]))

        assert client.post("/api/v1/events/user.deleted", json={}).json()["matched"] == 0
        published = client.post("/api/v1/events/user.signed_up", json={"user": "ada"}).json()
        assert published["matched"] == 1

        fired = client.post("/api/v1/triggers/on_signup/fire", json={"user": "bob"}).json()
        assert fired["success"] is True
        for instance_id in (published["results"][0]["instance_id"], fired["instance_id"]):
            components.execution_engine.wait_for_completion(instance_id)
        assert len(handler.requests) == 2

        assert client.post("/api/v1/triggers/missing/fire", json={}).status_code == 404


class TestTemplatesAndSystem:

    def test_templates(self, client):
        assert client.get("/api/v1/templates").json() == ["application_review", "placement"]

        response = client.post("/api/v1/templates/placement")
        assert response.status_code == 201
        workflow = client.get(f"/api/v1/workflows/{response.json()['workflow_id']}").json()
        assert workflow["name"] == "Placement Workflow"

        assert client.post("/api/v1/templates/unknown").status_code == 404

    def test_stats_and_health(self, client, create_active):
        create_active(linear_workflow())

        stats = client.get("/api/v1/stats").json()
        assert stats["total_workflows"] == 1
        assert stats["active_workflows"] == 1

        health = client.get("/api/v1/health").json()
        assert health["status"] == "healthy"
        assert "active_runs" in health["engine"]

        assert client.get("/health").json()["status"] == "healthy"
        assert client.get("/health/ready").json()["ready"] is True


class TestRequestTracing:

    def test_request_id_is_echoed_or_generated(self, client):
        response = client.get("/health", headers={"X-Request-ID": "req-42"})
        assert response.headers["X-Request-ID"] == "req-42"
        assert response.headers["X-Response-Time"].endswith("s")

        generated = client.get("/api/v1/workflows/missing")
        assert generated.status_code == 404
        assert len(generated.headers["X-Request-ID"]) == 36

    def test_resource_ids_from_paths(self):
        assert resource_ids("/api/v1/instances/i-1/steps/review/complete") == {
            "instance_id": "i-1", "step_id": "review"
        }
        assert resource_ids("/api/v1/workflows/wf-1/activate") == {"workflow_id": "wf-1"}
        assert resource_ids("/api/v1/workflows/validate") == {}
        assert resource_ids("/api/v1/triggers/t-9/fire") == {"trigger_id": "t-9"}
