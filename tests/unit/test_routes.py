"""
Unit Tests: REST API + WebSocket
================================
Tests:
  1. Catalog listing and per-service templates
  2. POST /api/deploy happy path and error status codes (400 / 409 / 503)
  3. Service lifecycle endpoints; unmanaged ids are 404
  4. Health monitoring start/stop with interval validation
  5. Backup endpoints reject unsafe ids and unknown backups
  6. /api/ws answers ping and relays deployment progress
"""

import pytest
from fastapi.testclient import TestClient

from conftest import FakeRuntime
from service_commander.app import create_app
from service_commander.catalog import ServiceCatalog
from service_commander.commander import Commander
from service_commander.errors import PortBindConflict, RuntimeUnavailable

HOST = "10.0.0.9"
DEPLOY_BODY = {"service_name": "demo", "service_type": "n8n", "template": "basic"}


@pytest.fixture
def fake_runtime():
    return FakeRuntime()


@pytest.fixture
def commander(fake_runtime, tmp_path):
    return Commander(
        runtime=fake_runtime,
        catalog=ServiceCatalog.load(extra_path=""),
        host=HOST,
        backup_root=str(tmp_path / "backups"),
    )


@pytest.fixture
def client(commander):
    app = create_app(commander=commander, sweep_on_start=False)
    with TestClient(app) as test_client:
        yield test_client


def _deploy(client, **overrides):
    return client.post("/api/deploy", json={**DEPLOY_BODY, **overrides})


class TestCatalog:

    def test_list(self, client):
        resp = client.get("/api/catalog")
        assert resp.status_code == 200
        ids = {s["id"] for s in resp.json()["services"]}
        assert ids == {"n8n", "waha", "activepieces", "postgresql"}

    def test_entry(self, client):
        body = client.get("/api/catalog/n8n").json()
        assert [t["id"] for t in body["templates"]] == ["basic", "plus", "pro"]

    def test_unknown_entry(self, client):
        resp = client.get("/api/catalog/wordpress")
        assert resp.status_code == 400
        assert resp.json()["error"] == "unknown_service"


class TestDeploy:

    def test_success(self, client, fake_runtime):
        resp = _deploy(client)
        assert resp.status_code == 200
        body = resp.json()
        assert body["success"] is True
        deployment = body["deployment"]
        assert deployment["deployment_id"].startswith("deploy-")
        assert deployment["assigned_port"] == 5678
        assert deployment["url"] == f"http://{HOST}:5678"
        assert deployment["container_id"] in fake_runtime.containers

    def test_unknown_template(self, client, fake_runtime):
        resp = _deploy(client, template="gold")
        assert resp.status_code == 400
        assert resp.json()["error"] == "unknown_template"
        assert fake_runtime.containers == {}

    def test_missing_fields(self, client):
        resp = client.post("/api/deploy", json={"service_type": "n8n"})
        assert resp.status_code == 400
        assert resp.json()["error"] == "invalid_request"

    def test_invalid_json(self, client):
        resp = client.post("/api/deploy", content=b"{nope", headers={"Content-Type": "application/json"})
        assert resp.status_code == 400

    def test_port_conflict_is_409(self, client, fake_runtime):
        fake_runtime.failures["start_container"] = PortBindConflict("port is already allocated", 500)
        resp = _deploy(client)
        assert resp.status_code == 409
        body = resp.json()
        assert body["error"] == "deployment_failed"
        assert body["step"] == "container-starting"

    def test_daemon_down_is_503(self, client, fake_runtime):
        fake_runtime.failures["create_volume"] = RuntimeUnavailable("socket refused")
        resp = _deploy(client)
        assert resp.status_code == 503


class TestServices:

    def test_list_and_get(self, client):
        container_id = _deploy(client).json()["deployment"]["container_id"]
        listing = client.get("/api/services").json()
        assert listing["count"] == 1
        service = client.get(f"/api/services/{container_id}").json()
        assert service["service_type"] == "n8n"
        assert service["running"] is True

    def test_unmanaged_is_404(self, client, fake_runtime):
        container_id = fake_runtime.add_container("foreign", labels={"app": "x"})
        assert client.get(f"/api/services/{container_id}").status_code == 404
        assert client.post(f"/api/services/{container_id}/stop").status_code == 404
        assert client.delete(f"/api/services/{container_id}").status_code == 404

    def test_stop_start_restart(self, client, fake_runtime):
        container_id = _deploy(client).json()["deployment"]["container_id"]
        assert client.post(f"/api/services/{container_id}/stop").json()["success"]
        assert not fake_runtime.containers[container_id]["State"]["Running"]
        assert client.post(f"/api/services/{container_id}/start").json()["success"]
        assert client.post(f"/api/services/{container_id}/restart").json()["success"]

    def test_remove_keep_data(self, client, fake_runtime):
        deployment = _deploy(client).json()["deployment"]
        container_id = deployment["container_id"]
        resp = client.delete(f"/api/services/{container_id}", params={"keep_data": "true"})
        assert resp.status_code == 200
        assert resp.json()["volume_removed"] is False
        assert deployment["volume_name"] in fake_runtime.volumes

    def test_remove_volume_in_use_still_succeeds(self, client, fake_runtime):
        deployment = _deploy(client).json()["deployment"]
        container_id = deployment["container_id"]
        fake_runtime.volumes_in_use.add(deployment["volume_name"])
        resp = client.delete(f"/api/services/{container_id}")
        assert resp.status_code == 200
        assert resp.json()["success"] is True

    def test_logs(self, client):
        container_id = _deploy(client).json()["deployment"]["container_id"]
        body = client.get(f"/api/services/{container_id}/logs", params={"tail": 25}).json()
        assert body["logs"] == "log tail=25\n"

    def test_daemon_down(self, client, fake_runtime):
        fake_runtime.failures["list_containers"] = RuntimeUnavailable("socket refused")
        resp = client.get("/api/services")
        assert resp.status_code == 503
        assert resp.json()["error"] == "runtime_unavailable"


class TestHealth:

    def test_missing_container_is_unreachable(self, client):
        body = client.get("/api/health/nope").json()
        assert body["status"] == "unreachable"

    def test_unmanaged_container_health_hidden(self, client, fake_runtime):
        container_id = fake_runtime.add_container("someone-elses-db", labels={})
        health = client.get(f"/api/health/{container_id}").json()
        assert health["status"] == "unreachable"
        assert health["running"] is False
        metrics = client.get(f"/api/health/{container_id}/metrics").json()
        assert metrics["status"] == "unreachable"

    def test_monitor_lifecycle(self, client):
        container_id = _deploy(client).json()["deployment"]["container_id"]
        resp = client.post(f"/api/health/{container_id}/monitor", json={"interval_ms": 60000})
        assert resp.status_code == 200
        status = client.get("/api/health/monitoring").json()["monitoring"]
        assert status[container_id]["interval_ms"] == 60000

        stopped = client.delete(f"/api/health/{container_id}/monitor").json()
        assert stopped["was_active"] is True
        again = client.delete(f"/api/health/{container_id}/monitor").json()
        assert again["was_active"] is False

    @pytest.mark.parametrize("interval", [-5, 0, "fast", 1.5, True])
    def test_monitor_bad_interval(self, client, interval):
        container_id = _deploy(client).json()["deployment"]["container_id"]
        resp = client.post(f"/api/health/{container_id}/monitor", json={"interval_ms": interval})
        assert resp.status_code == 400

    def test_monitor_unmanaged_is_404(self, client, fake_runtime):
        container_id = fake_runtime.add_container("foreign", labels={})
        resp = client.post(f"/api/health/{container_id}/monitor", json={})
        assert resp.status_code == 404

    def test_all_health(self, client):
        _deploy(client)
        body = client.get("/api/health").json()
        assert body["count"] == 1
        assert body["services"][0]["health"]["status"] == "up"

    def test_metrics_shape(self, client):
        container_id = _deploy(client).json()["deployment"]["container_id"]
        body = client.get(f"/api/health/{container_id}/metrics", params={"window": "24h"}).json()
        assert body["status"] == "up"
        assert "cpu" in body["current"]

    def test_server_health(self, client):
        assert client.get("/health").json() == {"status": "ok"}


class TestBackups:

    def test_empty_listing(self, client):
        assert client.get("/api/backups/abc123").json() == {"backups": [], "count": 0}

    def test_unsafe_container_id(self, client):
        assert client.get("/api/backups/_downloads").status_code == 400

    def test_create_and_list(self, client):
        container_id = _deploy(client).json()["deployment"]["container_id"]
        resp = client.post(f"/api/backups/{container_id}", json={"name": "nightly"})
        assert resp.status_code == 200
        backup = resp.json()["backup"]
        assert backup["name"] == "nightly"
        assert backup["status"] == "completed"
        assert client.get(f"/api/backups/{container_id}").json()["count"] == 1

    def test_unknown_backup(self, client):
        container_id = _deploy(client).json()["deployment"]["container_id"]
        assert client.post(f"/api/backups/{container_id}/backup-1-missing/restore").status_code == 404
        assert client.delete(f"/api/backups/{container_id}/backup-1-missing").status_code == 404
        assert client.get(f"/api/backups/{container_id}/backup-1-missing/download").status_code == 404

    def test_storage(self, client):
        body = client.get("/api/backups/abc123/storage").json()
        assert body["used"] == 0
        assert body["total"] > 0


class TestWebSocket:

    def test_ping(self, client):
        with client.websocket_connect("/api/ws") as ws:
            ws.send_json({"type": "ping"})
            assert ws.receive_json() == {"type": "pong"}

    def test_invalid_json(self, client):
        with client.websocket_connect("/api/ws") as ws:
            ws.send_text("{oops")
            assert ws.receive_json()["type"] == "error"

    def test_deployment_progress_relayed(self, client):
        with client.websocket_connect("/api/ws") as ws:
            ws.send_json({"type": "ping"})
            ws.receive_json()
            _deploy(client)
            first = ws.receive_json()
            assert first["type"] == "event"
            assert first["event"] == "deployment-progress"
            assert first["data"]["step"] == "volume-creating"
