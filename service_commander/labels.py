"""
Service Commander — Deployment Labels
═══════════════════════════════════════════════════
Container labels are the only persistence layer for deployments: which
volume belongs to which container, which template and port were used.
All label reads and writes go through this module.

Keys (with the default prefix):
  commander.managed  "true" on every container this system creates
  commander.service  catalog key (n8n, waha, ...)
  commander.name     user-facing service name
  commander.volume   data volume bound at the descriptor's mount path
  commander.template basic | plus | pro
  commander.port     assigned host port
  commander.created  ISO timestamp
  commander.backup.restored / commander.backup.source  restore markers
"""

from typing import Dict, Optional

from pydantic import BaseModel

from .config import LABEL_PREFIX


def label_key(field: str, prefix: str = LABEL_PREFIX) -> str:
    return f"{prefix}.{field}"


def managed_filter(prefix: str = LABEL_PREFIX) -> Dict[str, str]:
    """Label selector matching only containers created by this system."""
    return {label_key("managed", prefix): "true"}


def is_managed(labels: Optional[Dict[str, str]], prefix: str = LABEL_PREFIX) -> bool:
    return (labels or {}).get(label_key("managed", prefix)) == "true"


class DeploymentLabels(BaseModel):
    service: str = ""
    name: str = ""
    volume: str = ""
    template: str = ""
    port: Optional[int] = None
    created: str = ""
    restored: bool = False
    restored_from: str = ""

    def to_docker(self, prefix: str = LABEL_PREFIX) -> Dict[str, str]:
        labels = {
            label_key("managed", prefix): "true",
            label_key("service", prefix): self.service,
            label_key("name", prefix): self.name,
            label_key("volume", prefix): self.volume,
            label_key("template", prefix): self.template,
            label_key("port", prefix): str(self.port) if self.port is not None else "",
            label_key("created", prefix): self.created,
        }
        if self.restored:
            labels[label_key("backup.restored", prefix)] = "true"
            labels[label_key("backup.source", prefix)] = self.restored_from
        return labels

    @classmethod
    def from_docker(cls, labels: Optional[Dict[str, str]], prefix: str = LABEL_PREFIX) -> "DeploymentLabels":
        labels = labels or {}

        def get(field: str) -> str:
            return labels.get(label_key(field, prefix), "") or ""

        port = get("port")
        return cls(
            service=get("service"),
            name=get("name"),
            volume=get("volume"),
            template=get("template"),
            port=int(port) if port.isdigit() else None,
            created=get("created"),
            restored=get("backup.restored") == "true",
            restored_from=get("backup.source"),
        )


def restore_markers(backup_id: str, prefix: str = LABEL_PREFIX) -> Dict[str, str]:
    return {
        label_key("managed", prefix): "true",
        label_key("backup.restored", prefix): "true",
        label_key("backup.source", prefix): backup_id,
    }
