"""
HTTP surface tests: root, health, metrics and the plugin admin API.

The app runs its real lifespan against a temporary SQLite database and
the in-memory queue.
"""
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine

from commerce_core.database import build_engine, build_session_factory
from commerce_core.main import app
from commerce_core.models.base import Base
from commerce_core.plugins import abandoned_cart_reminder
from commerce_core.plugins.order_status_checker import PLUGIN_ID, SCHEDULE_ID
from commerce_core.runtime import Runtime
from commerce_core.services.jwt_service import JWTService


@pytest.fixture
def client(settings, tmp_path):
    sync_engine = create_engine(f"sqlite:///{tmp_path / 'test.db'}")
    Base.metadata.create_all(sync_engine)
    sync_engine.dispose()

    session_factory = build_session_factory(build_engine(settings.DATABASE_URL))
    app.state.runtime = Runtime(settings, session_factory)
    try:
        with TestClient(app) as test_client:
            yield test_client
    finally:
        del app.state.runtime


def auth(role="admin"):
    token = JWTService().create_token("operator-1", role, "ops@example.com")
    return {"Authorization": f"Bearer {token}"}


def test_root(client):
    response = client.get("/")

    assert response.status_code == 200
    assert response.json()["status"] == "running"


def test_health_reports_memory_backend(client):
    response = client.get("/health")

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "healthy"
    assert data["queue"]["backend"] == "memory"
    assert data["queue"]["connected"] is False
    for name in ("webhook-delivery", "email", "order-processing"):
        assert data["queue"]["queues"][name] == {"waiting": 0}
    assert data["scheduler"]["running"] is True


def test_metrics_endpoint(client):
    response = client.get("/metrics")

    assert response.status_code == 200
    assert "jobs_queued_total" in response.text


def test_plugin_routes_require_a_token(client):
    assert client.get("/api/plugins/").status_code in (401, 403)
    assert client.get("/api/plugins/", headers={"Authorization": "Bearer nonsense"}).status_code == 401


def test_plugin_routes_require_admin(client):
    assert client.get("/api/plugins/", headers=auth("member")).status_code == 403


def test_plugin_lifecycle_over_http(client):
    headers = auth()

    listing = client.get("/api/plugins/", headers=headers).json()
    assert listing["installed"] == []
    assert [p["id"] for p in listing["available"]] == [PLUGIN_ID, abandoned_cart_reminder.PLUGIN_ID]

    installed = client.post(f"/api/plugins/{PLUGIN_ID}/install", headers=headers)
    assert installed.status_code == 201
    assert installed.json()["status"] == "installed"
    assert client.post(f"/api/plugins/{PLUGIN_ID}/install", headers=headers).status_code == 409

    activated = client.post(f"/api/plugins/{PLUGIN_ID}/activate", headers=headers)
    assert activated.status_code == 200
    assert activated.json()["status"] == "active"
    assert client.post(f"/api/plugins/{PLUGIN_ID}/activate", headers=headers).status_code == 409

    schedules = client.get(f"/api/plugins/{PLUGIN_ID}/schedules", headers=headers).json()["schedules"]
    assert [(s["schedule_id"], s["interval_ms"]) for s in schedules] == [(SCHEDULE_ID, 900_000)]

    run = client.post(f"/api/plugins/{PLUGIN_ID}/schedules/{SCHEDULE_ID}/run", headers=headers)
    assert run.status_code == 200
    assert run.json()["schedule"]["last_run"] is not None
    assert client.post(f"/api/plugins/{PLUGIN_ID}/schedules/missing/run", headers=headers).status_code == 404

    config = client.get(f"/api/plugins/{PLUGIN_ID}/config", headers=headers).json()["config"]
    assert config["to_status"] == "processing"
    config["check_interval_minutes"] = 30
    updated = client.put(f"/api/plugins/{PLUGIN_ID}/config", headers=headers, json={"config": config})
    assert updated.json()["config"]["check_interval_minutes"] == 30

    logs = client.get(f"/api/plugins/{PLUGIN_ID}/logs", params={"limit": 50}, headers=headers).json()["logs"]
    messages = [log["message"] for log in logs]
    assert "Pending order check complete" in messages
    assert "Order Status Checker plugin installed" in messages

    deactivated = client.post(f"/api/plugins/{PLUGIN_ID}/deactivate", headers=headers)
    assert deactivated.json()["status"] == "inactive"
    assert client.get(f"/api/plugins/{PLUGIN_ID}/schedules", headers=headers).json()["schedules"] == []

    assert client.delete(f"/api/plugins/{PLUGIN_ID}", headers=headers).status_code == 200
    assert client.get(f"/api/plugins/{PLUGIN_ID}", headers=headers).status_code == 404


def test_unknown_plugin_returns_404(client):
    headers = auth()

    assert client.get("/api/plugins/nope", headers=headers).status_code == 404
    assert client.post("/api/plugins/nope/install", headers=headers).status_code == 404
    assert client.post("/api/plugins/nope/activate", headers=headers).status_code == 404
    assert client.delete("/api/plugins/nope", headers=headers).status_code == 404
    assert client.put("/api/plugins/nope/config", headers=headers, json={"config": {}}).status_code == 404
