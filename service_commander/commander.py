"""
Service Commander — Facade
═══════════════════════════════════════════════════
One object owning the runtime adapter, catalog, event bus and every engine.
Coordinates the cross-component rules:
  - restore pauses monitoring of the old container and resumes it, with the
    same interval, on the recreated one
  - removing a service stops its monitor
"""

import logging
import threading
from typing import Dict, List, Optional

from .backup import BackupEngine
from .catalog import ServiceCatalog
from .deployer import DeploymentEngine, new_deployment_id
from .events import EventBus
from .health import HealthMonitor
from .lifecycle import ServiceManager
from .models import (
    BackupRecord,
    DeploymentRecord,
    DeploymentRequest,
    DownloadBundle,
    HealthSample,
    RemovalResult,
    RestoreResult,
    StorageUsage,
)
from .ports import PortAllocator
from .runtime import RuntimeClient

logger = logging.getLogger(__name__)


class Commander:

    def __init__(
        self,
        runtime: Optional[RuntimeClient] = None,
        catalog: Optional[ServiceCatalog] = None,
        bus: Optional[EventBus] = None,
        host: Optional[str] = None,
        backup_root: Optional[str] = None,
    ):
        self.runtime = runtime or RuntimeClient()
        self.catalog = catalog or ServiceCatalog.load()
        self.bus = bus or EventBus()
        self.allocator = PortAllocator(self.runtime)
        self.deployer = DeploymentEngine(self.runtime, self.catalog, self.allocator, self.bus, host=host)
        self.services = ServiceManager(self.runtime, host=host)
        self.monitor = HealthMonitor(self.runtime, self.bus)
        self.backups = BackupEngine(self.runtime, root=backup_root) if backup_root \
            else BackupEngine(self.runtime)

    # ── Deploy ──

    def deploy(self, request: DeploymentRequest, deployment_id: Optional[str] = None) -> Dict:
        deployment_id = deployment_id or new_deployment_id()
        record = self.deployer.deploy_request(request, deployment_id=deployment_id)
        return {"deployment_id": deployment_id, **record.model_dump(mode="json")}

    # ── Lifecycle ──

    def list_services(self) -> List[Dict]:
        return self.services.list_services()

    def get_service(self, container_id: str) -> Dict:
        return self.services.get_service(container_id)

    def start_service(self, container_id: str) -> Dict:
        return self.services.start_service(container_id)

    def stop_service(self, container_id: str) -> Dict:
        return self.services.stop_service(container_id)

    def restart_service(self, container_id: str) -> Dict:
        return self.services.restart_service(container_id)

    def remove_service(self, container_id: str, keep_data: bool = False) -> RemovalResult:
        result = self.services.remove_service(container_id, keep_data=keep_data)
        self.monitor.stop_monitoring(container_id)
        return result

    def get_service_logs(self, container_id: str, tail: int = 100) -> str:
        return self.services.get_service_logs(container_id, tail=tail)

    # ── Health ──

    def get_service_health(self, container_id: str) -> HealthSample:
        return self.monitor.get_service_health(container_id)

    def get_service_metrics(self, container_id: str, window: str = "1h") -> Dict:
        return self.monitor.get_service_metrics(container_id, window)

    def get_all_services_health(self) -> List[Dict]:
        return self.monitor.get_all_services_health()

    def start_monitoring(self, container_id: str, interval_ms: Optional[int] = None) -> None:
        # Only managed containers may be monitored
        self.services.inspect_managed(container_id)
        if interval_ms is None:
            self.monitor.start_monitoring(container_id)
        else:
            self.monitor.start_monitoring(container_id, interval_ms)

    def stop_monitoring(self, container_id: str) -> bool:
        return self.monitor.stop_monitoring(container_id)

    def get_monitoring_status(self) -> Dict[str, Dict]:
        return self.monitor.get_monitoring_status()

    def get_system_metrics(self) -> Dict:
        return self.monitor.get_system_metrics()

    # ── Backups ──

    def get_backups(self, container_id: str) -> List[BackupRecord]:
        return self.backups.get_backups(container_id)

    def create_backup(self, container_id: str, name: Optional[str] = None,
                      description: str = "") -> BackupRecord:
        return self.backups.create_backup(container_id, name, description)

    def restore_backup(self, container_id: str, backup_id: str) -> RestoreResult:
        interval = self.monitor.interval_for(container_id)
        if interval is not None:
            self.monitor.stop_monitoring(container_id)
        try:
            result = self.backups.restore_backup(container_id, backup_id)
        except Exception:
            if interval is not None:
                # The old container may still exist; keep watching it
                self.monitor.start_monitoring(container_id, interval)
            raise
        if interval is not None:
            self.monitor.start_monitoring(result.container_id, interval)
        return result

    def download_backup(self, container_id: str, backup_id: str) -> DownloadBundle:
        return self.backups.download_backup(container_id, backup_id)

    def delete_backup(self, container_id: str, backup_id: str) -> bool:
        return self.backups.delete_backup(container_id, backup_id)

    def get_storage_usage(self, container_id: str) -> StorageUsage:
        return self.backups.get_storage_usage(container_id)

    def cleanup_backups(self, max_age_days: Optional[int] = None) -> List[str]:
        return self.backups.cleanup(max_age_days)

    # ── Process ──

    def shutdown(self) -> None:
        self.monitor.shutdown()


# ── Singleton ─────────────────────────────────────────────

_commander: Optional[Commander] = None
_lock = threading.Lock()


def get_commander() -> Commander:
    global _commander
    if _commander is None:
        with _lock:
            if _commander is None:
                _commander = Commander()
    return _commander
