"""Tests for the REST API."""

import pytest
from fastapi.testclient import TestClient

from taskflow.config import get_testing_config
from taskflow.factory import create_app


def definition_body(name="orders", nodes=None):
    return {
        "definition": {
            "name": name,
            "nodes": nodes or [
                {"node_id": "fetch", "executor_ref": "echo"},
                {"node_id": "store", "executor_ref": "echo", "depends_on": ["fetch"]},
            ],
            "config": {"retry_base_delay": 0},
        }
    }


@pytest.fixture
def client(engine):
    app = create_app(get_testing_config(), engine=engine)
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def published(client):
    """An active 'orders' definition."""
    assert client.post("/api/v1/definitions", json=definition_body()).status_code == 201
    response = client.post("/api/v1/definitions/orders/versions/1/publish")
    assert response.status_code == 200
    return response.json()


class TestDefinitionEndpoints:
    """Definition lifecycle over HTTP."""

    def test_create_returns_draft(self, client):
        response = client.post("/api/v1/definitions", json=definition_body())

        assert response.status_code == 201
        body = response.json()
        assert body["name"] == "orders"
        assert body["version"] == 1
        assert body["status"] == "draft"
        assert body["validation_warnings"] == []

    def test_publish_activates(self, published, client):
        assert published["status"] == "active"
        response = client.get("/api/v1/definitions/orders")
        assert response.status_code == 200
        assert [node["node_id"] for node in response.json()["nodes"]] == ["fetch", "store"]

    def test_publishing_a_cycle_is_rejected(self, client):
        nodes = [
            {"node_id": "a", "executor_ref": "echo", "depends_on": ["b"]},
            {"node_id": "b", "executor_ref": "echo", "depends_on": ["a"]},
        ]
        client.post("/api/v1/definitions", json=definition_body("loopy", nodes))

        response = client.post("/api/v1/definitions/loopy/versions/1/publish")

        assert response.status_code == 400
        assert response.json()["detail"]["error"] == "DefinitionValidationError"

    def test_active_definition_cannot_be_updated(self, published, client):
        response = client.put("/api/v1/definitions/orders/versions/1", json=definition_body())

        assert response.status_code == 409

    def test_new_version_copies_into_draft(self, published, client):
        response = client.post("/api/v1/definitions/orders/versions", json={})

        assert response.status_code == 201
        assert response.json()["version"] == 2
        assert response.json()["status"] == "draft"

    def test_list_definitions(self, published, client):
        response = client.get("/api/v1/definitions", params={"status": "active"})

        assert response.status_code == 200
        page = response.json()
        assert page["total"] == 1
        assert page["items"][0]["name"] == "orders"

    def test_unknown_definition(self, client):
        response = client.get("/api/v1/definitions/missing")

        assert response.status_code == 404


class TestInstanceEndpoints:
    """Instances created and inspected over HTTP."""

    def test_instance_runs_to_completion(self, published, client, engine):
        response = client.post(
            "/api/v1/instances",
            json={"definition_name": "orders", "input_data": {"order": 7}, "business_key": "ord-7", "start": True},
        )
        assert response.status_code == 201
        instance_id = response.json()["id"]

        engine.run(instance_id)

        instance = client.get(f"/api/v1/instances/{instance_id}").json()
        assert instance["status"] == "completed"
        assert instance["execution_path"] == ["fetch", "store"]
        assert client.get("/api/v1/instances/by-business-key/ord-7").json()["id"] == instance_id

        nodes = client.get(f"/api/v1/instances/{instance_id}/nodes").json()
        assert [(node["node_id"], node["status"]) for node in nodes] == [("fetch", "success"), ("store", "success")]

        logs = client.get(f"/api/v1/instances/{instance_id}/logs", params={"node_id": "store"}).json()
        assert logs["total"] >= 1
        assert all(entry["node_id"] == "store" for entry in logs["items"])

    def test_start_and_cancel(self, published, client):
        instance_id = client.post("/api/v1/instances", json={"definition_name": "orders"}).json()["id"]

        cancelled = client.post(f"/api/v1/instances/{instance_id}/cancel", json={"reason": "duplicate order"})

        assert cancelled.status_code == 200
        assert cancelled.json()["status"] == "cancelled"
        assert client.post(f"/api/v1/instances/{instance_id}/start").status_code == 409

    def test_cancelling_completed_instance_conflicts(self, published, client, engine):
        instance_id = client.post("/api/v1/instances", json={"definition_name": "orders", "start": True}).json()["id"]
        engine.run(instance_id)

        response = client.post(f"/api/v1/instances/{instance_id}/cancel")

        assert response.status_code == 409
        assert response.json()["detail"]["error"] == "InvalidTransitionError"

    def test_draft_definition_cannot_be_instantiated(self, client):
        client.post("/api/v1/definitions", json=definition_body("drafty"))

        response = client.post("/api/v1/instances", json={"definition_name": "drafty", "definition_version": 1})

        assert response.status_code == 409

    def test_unknown_instance(self, client):
        assert client.get("/api/v1/instances/nope").status_code == 404
        assert client.get("/api/v1/instances/nope/logs").status_code == 404

    def test_list_instances_by_status(self, published, client):
        client.post("/api/v1/instances", json={"definition_name": "orders"})

        page = client.get("/api/v1/instances", params={"status": "pending"}).json()

        assert page["total"] == 1
        assert page["items"][0]["definition_name"] == "orders"


class TestOperationalEndpoints:
    """Health, executors, scheduler and recovery."""

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_detailed_health(self, client):
        response = client.get("/health/detailed")

        assert response.status_code == 200
        body = response.json()
        assert body["overall_status"] == "healthy"
        assert set(body["checks"]) == {"database", "scheduler", "executor_registry"}

    def test_executors_are_listed(self, client):
        body = client.get("/api/v1/executors").json()

        assert body["total_count"] >= 5
        assert {"echo", "math", "sleep", "fail", "collect"} <= set(body["executors"])

    def test_scheduler_status(self, client):
        body = client.get("/api/v1/scheduler/status").json()

        assert body["engine_instance_id"] == "engine-test"
        assert body["started"] is True
        assert "scheduler" in body

    def test_recovery_sweep(self, client):
        response = client.post("/api/v1/recovery/sweep")

        assert response.status_code == 200
        assert response.json()["reclaimed"] == []


class TestScheduleEndpoints:
    """Cron schedules over HTTP."""

    def schedule_body(self, **overrides):
        body = {"name": "hourly", "definition_name": "orders", "cron_expression": "0 * * * *"}
        body.update(overrides)
        return body

    def test_create_and_get(self, published, client):
        response = client.post("/api/v1/schedules", json=self.schedule_body())

        assert response.status_code == 201
        created = response.json()
        assert created["next_run_at"] == "2024-01-01T01:00:00"
        assert client.get(f"/api/v1/schedules/{created['id']}").json()["name"] == "hourly"
        assert client.get("/api/v1/schedules", params={"enabled": True}).json()["total"] == 1

    def test_invalid_cron_is_unprocessable(self, published, client):
        response = client.post("/api/v1/schedules", json=self.schedule_body(cron_expression="hourly"))

        assert response.status_code == 422

    def test_unknown_definition(self, client):
        response = client.post("/api/v1/schedules", json=self.schedule_body(definition_name="missing"))

        assert response.status_code == 404

    def test_toggle_and_update(self, published, client):
        schedule_id = client.post("/api/v1/schedules", json=self.schedule_body()).json()["id"]

        toggled = client.post(f"/api/v1/schedules/{schedule_id}/toggle").json()
        assert toggled["enabled"] is False
        assert toggled["next_run_at"] is None

        updated = client.put(
            f"/api/v1/schedules/{schedule_id}", json={"enabled": True, "cron_expression": "30 * * * *"}
        ).json()
        assert updated["enabled"] is True
        assert updated["next_run_at"] == "2024-01-01T00:30:00"

        rejected = client.put(f"/api/v1/schedules/{schedule_id}", json={"timezone": "Nowhere/Land"})
        assert rejected.status_code == 422

    def test_poll_starts_due_schedules(self, published, client, clock, engine):
        client.post("/api/v1/schedules", json=self.schedule_body())
        clock.advance(3600)

        started = client.post("/api/v1/schedules/poll").json()["started"]

        assert len(started) == 1
        assert engine.run(started[0]).status.value == "completed"

    def test_delete(self, published, client):
        schedule_id = client.post("/api/v1/schedules", json=self.schedule_body()).json()["id"]

        assert client.delete(f"/api/v1/schedules/{schedule_id}").json()["deleted"] is True
        assert client.get(f"/api/v1/schedules/{schedule_id}").status_code == 404
