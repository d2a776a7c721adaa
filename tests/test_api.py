from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from alert24.config import Settings
from alert24.main import app, create_app

AUTH = {"Authorization": "Bearer s3cret"}


@pytest.fixture
def client(tmp_path, dispatcher):
    # Same database file as the ``engine`` fixture, so ``seed`` rows are visible
    config = Settings(data_path=str(tmp_path), database_url=None, cron_secret="s3cret")
    app = create_app(config, start_scheduler=False, dispatcher=dispatcher)
    with TestClient(app) as client:
        yield client


def test_health(client) -> None:
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "healthy"}


def test_module_exposes_app_for_uvicorn() -> None:
    paths = {route.path for route in app.routes}
    assert {"/health", "/api/check-results", "/api/incidents"} <= paths


@pytest.mark.asyncio
async def test_reported_result_updates_status_page(seed, client) -> None:
    org = await seed.organization()
    page = await seed.status_page(org, "Acme Status")
    check_id = await seed.check(org)
    service_id = await seed.service(page, "API")
    await seed.associate(service_id, check_id, failure_status="down", failure_message="API is unavailable")

    response = client.post("/api/check-results", json={
        "monitoring_check_id": check_id,
        "is_successful": False,
        "response_time": 30000,
        "error_message": "timeout",
    })

    assert response.status_code == 201
    body = response.json()
    assert body["current_status"] == "down"
    assert body["consecutive_failures"] == 1
    assert body["service_ids"] == [service_id]
    assert body["services_changed"] == 1

    page_response = client.get(f"/api/status-pages/{page}")
    assert page_response.status_code == 200
    overview = page_response.json()
    assert overview["name"] == "Acme Status"
    assert [(s["name"], s["status"]) for s in overview["services"]] == [("API", "down")]
    assert overview["services"][0]["status_since"] is not None
    assert [u["message"] for u in overview["updates"]] == ["API is unavailable"]


@pytest.mark.asyncio
async def test_result_for_unknown_check_is_404(seed, client) -> None:
    response = client.post("/api/check-results", json={"monitoring_check_id": 12345, "is_successful": True})
    assert response.status_code == 404


def test_missing_status_page_is_404(client) -> None:
    assert client.get("/api/status-pages/99").status_code == 404


@pytest.mark.parametrize("headers", [{}, {"Authorization": "Bearer wrong"}, {"Authorization": "s3cret"}])
def test_cron_requires_secret(client, headers) -> None:
    assert client.post("/api/cron/monitoring", headers=headers).status_code == 401
    assert client.get("/api/cron/escalations", headers=headers).status_code == 401


def test_cron_runs_with_secret(client) -> None:
    response = client.post("/api/cron/monitoring", headers=AUTH)
    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert [r["operation"] for r in body["reports"]] == ["run_checks", "derive_service_statuses"]

    response = client.get("/api/cron/escalations", headers=AUTH)
    assert response.status_code == 200
    assert response.json()["reports"][0]["operation"] == "advance_escalations"


@pytest.mark.asyncio
async def test_incident_lifecycle(seed, client, dispatcher) -> None:
    org = await seed.organization()
    alice = await seed.contact(org, "Alice")
    policy_id = await seed.policy(org, [
        {"delay_minutes": 0, "target_type": "user", "target_id": alice},
        {"delay_minutes": 10, "target_type": "user", "target_id": alice},
    ])

    response = client.post("/api/incidents", json={
        "organization_id": org,
        "title": "Checkout failing",
        "severity": "high",
        "escalation_policy_id": policy_id,
    })
    assert response.status_code == 201
    incident = response.json()
    assert incident["status"] == "new"
    assert incident["escalation_state"] == "escalating"

    # Step 0 is notified immediately
    assert [s.target for s in dispatcher.sent] == ["alice@example.com"]
    trail = client.get(f"/api/incidents/{incident['id']}/escalations").json()
    assert [(e["step_index"], e["status"]) for e in trail["escalations"]] == [(0, "notified")]
    assert [n["channel"] for n in trail["notifications"]] == ["email"]

    response = client.post(f"/api/incidents/{incident['id']}/acknowledge", json={"user": "alice"})
    assert response.status_code == 200
    assert response.json()["status"] == "acknowledged"
    assert response.json()["escalation_state"] == "stopped"
    assert client.post(f"/api/incidents/{incident['id']}/acknowledge", json={"user": "bob"}).status_code == 409

    response = client.post(f"/api/incidents/{incident['id']}/resolve", json={"user": "alice"})
    assert response.status_code == 200
    assert response.json()["status"] == "resolved"
    assert client.post(f"/api/incidents/{incident['id']}/resolve", json={}).status_code == 409


def test_incident_errors(client) -> None:
    assert client.get("/api/incidents/1").status_code == 404
    assert client.post("/api/incidents/1/acknowledge", json={}).status_code == 404
    response = client.post("/api/incidents", json={"organization_id": 1, "title": "x", "severity": "urgent"})
    assert response.status_code == 422


def test_incident_for_unknown_organization_is_404(client) -> None:
    response = client.post("/api/incidents", json={"organization_id": 404, "title": "Checkout failing"})
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_incident_with_unknown_policy_is_404(seed, client) -> None:
    org = await seed.organization()
    response = client.post("/api/incidents", json={
        "organization_id": org,
        "title": "Checkout failing",
        "escalation_policy_id": 77,
    })
    assert response.status_code == 404
