"""
Unit Tests: Commander Facade
============================
Tests:
  1. deploy() returns the record with its deployment id
  2. remove_service stops the container's monitor
  3. restore moves monitoring to the recreated container with the same interval
  4. A failed restore re-arms monitoring of the original container
"""

from unittest.mock import patch

import pytest

from service_commander import health as health_mod
from service_commander.catalog import ServiceCatalog
from service_commander.commander import Commander
from service_commander.errors import BackupNotFound
from service_commander.models import DeploymentRequest


@pytest.fixture
def commander(runtime, bus, tmp_path):
    cmd = Commander(runtime=runtime, catalog=ServiceCatalog.load(extra_path=""), bus=bus,
                    host="10.0.0.4", backup_root=str(tmp_path / "backups"))
    yield cmd
    cmd.shutdown()


@pytest.fixture
def deployed(commander):
    result = commander.deploy(DeploymentRequest(service_name="demo", service_type="n8n", template="basic"),
                              deployment_id="deploy-abc")
    return result["container_id"]


def test_deploy_result(commander, deployed):
    services = commander.list_services()
    assert [s["id"] for s in services] == [deployed]


def test_deploy_id_propagated(commander, bus):
    result = commander.deploy(DeploymentRequest(service_name="x", service_type="waha", template="plus"),
                              deployment_id="deploy-123")
    assert result["deployment_id"] == "deploy-123"
    assert all(e["deployment_id"] == "deploy-123" for e in bus.of("deployment-progress"))


def test_remove_stops_monitoring(commander, deployed):
    with patch.object(health_mod.threading, "Timer"):
        commander.start_monitoring(deployed, 5000)
    assert commander.monitor.is_monitoring(deployed)
    commander.remove_service(deployed)
    assert not commander.monitor.is_monitoring(deployed)


def test_restore_moves_monitoring(commander, deployed):
    backup = commander.create_backup(deployed)
    with patch.object(health_mod.threading, "Timer"):
        commander.start_monitoring(deployed, 7000)
        result = commander.restore_backup(deployed, backup.id)

    assert result.container_id != deployed
    status = commander.get_monitoring_status()
    assert deployed not in status
    assert status[result.container_id]["interval_ms"] == 7000


def test_failed_restore_keeps_old_monitor(commander, deployed):
    with patch.object(health_mod.threading, "Timer"):
        commander.start_monitoring(deployed, 7000)
        with pytest.raises(BackupNotFound):
            commander.restore_backup(deployed, "backup-1-missing")
    assert commander.monitor.interval_for(deployed) == 7000


def test_restore_without_monitor_does_not_start_one(commander, deployed):
    backup = commander.create_backup(deployed)
    result = commander.restore_backup(deployed, backup.id)
    assert not commander.monitor.is_monitoring(result.container_id)
