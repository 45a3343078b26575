"""
Service Commander — Service Lifecycle
═══════════════════════════════════════════════════
List / inspect / start / stop / restart / remove managed services.
Every operation refuses containers without the managed label: an id that
exists but was not created by this system is reported as not found.
"""

import logging
from typing import Dict, List, Optional

from .config import LABEL_PREFIX
from .errors import NotFound, VolumeInUse
from .labels import DeploymentLabels, is_managed, managed_filter
from .models import RemovalResult
from .netinfo import resolve_host_ip
from .runtime import RuntimeClient, container_name

logger = logging.getLogger(__name__)


class ServiceManager:

    def __init__(self, runtime: RuntimeClient, host: Optional[str] = None,
                 label_prefix: str = LABEL_PREFIX):
        self.runtime = runtime
        self._host = host
        self.label_prefix = label_prefix

    @property
    def host(self) -> str:
        if self._host is None:
            self._host = resolve_host_ip()
        return self._host

    def _summary(self, attrs: Dict) -> Dict:
        config = attrs.get("Config") or {}
        state = attrs.get("State") or {}
        labels = DeploymentLabels.from_docker(config.get("Labels"), self.label_prefix)
        status = state.get("Status", "unknown")
        running = bool(state.get("Running"))
        return {
            "id": attrs.get("Id", ""),
            "container_name": container_name(attrs),
            "service_name": labels.name,
            "service_type": labels.service,
            "template": labels.template,
            "image": config.get("Image", ""),
            "status": status,
            "running": running,
            "port": labels.port,
            "url": f"http://{self.host}:{labels.port}" if labels.port else None,
            "volume": labels.volume or None,
            "created_at": labels.created or attrs.get("Created", ""),
            "restored_from": labels.restored_from or None,
            "can_start": not running,
            "can_stop": running,
            "can_restart": running,
        }

    # ── Queries ──

    def list_services(self) -> List[Dict]:
        """Managed containers, running first, then newest first."""
        services = [
            self._summary(attrs)
            for attrs in self.runtime.list_containers(labels=managed_filter(self.label_prefix), all=True)
        ]
        services.sort(key=lambda s: s["created_at"], reverse=True)
        services.sort(key=lambda s: not s["running"])
        return services

    def inspect_managed(self, container_id: str) -> Dict:
        """Raw inspect dict of a managed container; NotFound otherwise."""
        attrs = self.runtime.inspect_container(container_id)
        if not is_managed((attrs.get("Config") or {}).get("Labels"), self.label_prefix):
            raise NotFound("service", container_id)
        return attrs

    def get_service(self, container_id: str) -> Dict:
        return self._summary(self.inspect_managed(container_id))

    def get_service_logs(self, container_id: str, tail: int = 100) -> str:
        self.inspect_managed(container_id)
        return self.runtime.container_logs(container_id, tail=tail)

    # ── Actions ──

    def start_service(self, container_id: str) -> Dict:
        self.inspect_managed(container_id)
        self.runtime.start_container(container_id)
        logger.info(f"[Lifecycle] Started {container_id[:12]}")
        return {"success": True, "message": "Service started successfully"}

    def stop_service(self, container_id: str) -> Dict:
        self.inspect_managed(container_id)
        try:
            self.runtime.stop_container(container_id)
        except NotFound:
            logger.info(f"[Lifecycle] {container_id[:12]} already gone")
            return {"success": True, "message": "Service already removed"}
        logger.info(f"[Lifecycle] Stopped {container_id[:12]}")
        return {"success": True, "message": "Service stopped successfully"}

    def restart_service(self, container_id: str) -> Dict:
        self.inspect_managed(container_id)
        self.runtime.restart_container(container_id)
        logger.info(f"[Lifecycle] Restarted {container_id[:12]}")
        return {"success": True, "message": "Service restarted successfully"}

    def remove_service(self, container_id: str, keep_data: bool = False) -> RemovalResult:
        """
        Remove a managed container (forced). Unless keep_data, also remove the
        data volume named by its volume label. A volume that is still in use or
        already gone does not fail the removal.
        """
        attrs = self.inspect_managed(container_id)
        labels = DeploymentLabels.from_docker((attrs.get("Config") or {}).get("Labels"), self.label_prefix)
        volume = labels.volume or None

        self.runtime.remove_container(container_id, force=True)
        logger.info(f"[Lifecycle] Removed {container_name(attrs)} ({container_id[:12]})")

        if keep_data or not volume:
            return RemovalResult(
                message="Service removed, data preserved" if volume else "Service removed",
                volume_removed=False,
                volume_name=volume,
            )

        try:
            self.runtime.remove_volume(volume)
        except VolumeInUse:
            logger.warning(f"[Lifecycle] Volume {volume} still in use, kept")
            return RemovalResult(
                message=f"Service removed, volume {volume} is still in use",
                volume_removed=False,
                volume_name=volume,
            )
        except NotFound:
            logger.warning(f"[Lifecycle] Volume {volume} already gone")
            return RemovalResult(
                message="Service removed, volume was already gone",
                volume_removed=False,
                volume_name=volume,
            )
        logger.info(f"[Lifecycle] Removed volume {volume}")
        return RemovalResult(
            message="Service and data removed",
            volume_removed=True,
            volume_name=volume,
        )
