"""
HTTP surface tests with FastAPI's TestClient.

The app lifespan is not entered, so no scheduler starts; the database
dependency is pointed at the in-memory test session.
"""
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi.testclient import TestClient

from app.connectors.clickup import ClickUpAPIError
from app.main import app
from app.models.base import get_db
from app.services import kpi_service

from conftest import make_task


@pytest.fixture
def api(db):
    app.dependency_overrides[get_db] = lambda: db
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def connector():
    connector = MagicMock()
    connector.fetch_team_tasks = AsyncMock(return_value=[make_task(1, status="doing")])
    connector.resolve_team_id = AsyncMock(return_value=([{"id": "team-1", "name": "Acme"}], "team-1"))
    connector.fetch_navigation = AsyncMock(return_value=[])
    with patch.object(kpi_service, "get_connector", return_value=connector):
        yield connector


def test_health(api):
    body = api.get("/health").json()
    assert body["status"] == "ok"
    assert body["monitor"]["failureThreshold"] == 3


def test_status_lists_alert_counters(api):
    body = api.get("/status").json()
    assert set(body["alerts"]) == {"total_sent", "total_failed"}
    assert set(body["alert_relays"]) == {"email", "whatsapp"}


def test_register_and_list(api):
    response = api.post("/clients", json={"name": "Acme Ops", "clickupToken": "Bearer pk_1234"})
    assert response.status_code == 201
    created = response.json()
    assert created["status"] == "Not Connected"
    assert created["dashboardSlug"] == "acme-ops"
    assert created["tokenPreview"] == "...1234"

    listed = api.get("/clients").json()
    assert [c["id"] for c in listed] == [created["id"]]


def test_register_duplicate_token_conflicts(api, client_record):
    response = api.post("/clients", json={"name": "Other", "clickupToken": "pk_test_token_0001"})
    assert response.status_code == 409


def test_unknown_client_is_404(api):
    assert api.get("/clients/missing").status_code == 404
    assert api.post("/clients/missing/health-check").status_code == 404


def test_settings_validate_target_only_when_enabled(api, client_record):
    url = f"/clients/{client_record.id}/settings"
    bad = api.put(url, json={"alertEnabled": True, "alertChannel": "email", "alertTarget": "nope"})
    assert bad.status_code == 400
    assert bad.json()["detail"] == "Invalid email target format"

    saved = api.put(url, json={"alertEnabled": False, "alertChannel": "email", "alertTarget": "nope"})
    assert saved.status_code == 200
    assert saved.json()["settings"]["alertTarget"] == "nope"

    assert api.put(url, json={"alertChannel": "sms"}).status_code == 400


def test_dashboard_requires_access_key(api):
    assert api.get("/dashboard").status_code == 401
    assert api.get("/dashboard", params={"slug": "nobody"}).status_code == 404


def test_dashboard_by_slug_marks_client_connected(api, client_record, connector):
    body = api.get("/dashboard", params={"slug": "acme-ops"}).json()
    assert body["cached"] is False
    assert body["client"]["status"] == "Connected"
    assert body["totals"]["wip"] == 1

    again = api.get("/dashboard", headers={"Authorization": "Bearer pk_test_token_0001"}).json()
    assert again["cached"] is True


def test_dashboard_failure_is_recorded(api, client_record, connector):
    connector.fetch_team_tasks.side_effect = ClickUpAPIError(500, "ClickUp down")
    response = api.get("/dashboard", params={"token": "pk_test_token_0001"})
    assert response.status_code == 502

    health = api.get(f"/clients/{client_record.id}/health").json()
    assert health["client"]["status"] == "Offline"
    assert health["health"]["consecutiveFailures"] == 1


def test_kpi_export_csv(api, client_record, connector):
    response = api.get(f"/clients/{client_record.id}/kpi/export", params={"format": "csv"})
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/csv")
    assert 'filename="kpi_acme-ops.csv"' in response.headers["content-disposition"]
    header, row = response.text.splitlines()
    assert header.startswith("client,teamId,generatedAt,totalTasks")
    assert row.startswith("Acme Ops,team-1,")


def test_kpi_send_invalid_target_is_400(api, client_record):
    response = api.post(f"/clients/{client_record.id}/kpi/send", json={"channel": "whatsapp", "target": "1"})
    assert response.status_code == 400
    assert response.json()["detail"]["outcome"] == "not_attempted"


def test_manual_health_check(api, client_record, connector):
    body = api.post(f"/clients/{client_record.id}/health-check").json()
    assert body["outcome"] == "succeeded"
    assert body["client"]["health"]["successCount"] == 1


def test_pipelines(api, client_record, connector):
    body = api.get("/dashboard/pipelines", params={"slug": "acme-ops", "periodDays": 5}).json()
    assert body["periodDays"] == 5
    assert len(body["pipelines"][0]["trend"]) == 5
