"""
Service Commander — Pydantic Models
═══════════════════════════════════════════════════
Defines the data structures for:
- ServiceDescriptor / ResourceTemplate: catalog records (image, ports, env, tiers)
- DeploymentRequest / DeploymentRecord / DeploymentEvent: deploy flow
- HealthSample / Alert: monitoring output
- BackupRecord / VolumeBackup / BackupConfig: backup metadata (metadata.json)
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .config import CPU_PERIOD
from .errors import ConfigError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Enums ──────────────────────────────────────────────────

class TemplateTier(str, Enum):
    BASIC = "basic"
    PLUS = "plus"
    PRO = "pro"


class HealthStatus(str, Enum):
    UP = "up"
    DOWN = "down"
    UNREACHABLE = "unreachable"


class AlertType(str, Enum):
    HIGH_CPU = "high_cpu"
    CRITICAL_CPU = "critical_cpu"
    HIGH_MEMORY = "high_memory"
    CRITICAL_MEMORY = "critical_memory"
    CONTAINER_DOWN = "container_down"
    CONTAINER_UNREACHABLE = "container_unreachable"
    HIGH_RESTARTS = "high_restarts"
    MONITORING_ERROR = "monitoring_error"


class AlertSeverity(str, Enum):
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class EventStatus(str, Enum):
    INFO = "info"
    SUCCESS = "success"
    ERROR = "error"


class BackupStatus(str, Enum):
    CREATING = "creating"
    COMPLETED = "completed"


# ── Catalog ───────────────────────────────────────────────

class ResourceTemplate(BaseModel):
    """CPU/RAM bundle for one tier of a service."""
    memory: str = Field(..., description="RAM limit (e.g. '512m', '2g')")
    cpus: str = Field(..., description="CPU cores (e.g. '0.5', '2.0')")
    description: str = ""

    def memory_bytes(self) -> int:
        return parse_memory(self.memory)

    def cpu_quota(self, period: int = CPU_PERIOD) -> int:
        return int(parse_cpus(self.cpus) * period)


class ServiceDescriptor(BaseModel):
    """
    How to run one kind of service.

    `environment` entries are format strings. Placeholders available:
    {host}, {port} and every key of `option_defaults` (overridable per deploy).
    """
    name: str = Field(..., description="Catalog key (e.g. 'n8n')")
    display_name: str = ""
    description: str = ""
    image: str
    default_port: int = Field(..., description="Baseline for host port allocation")
    internal_port: int = Field(..., description="Port the service listens on inside the container")
    volume_mount: str = Field(..., description="Mount path of the data volume")
    environment: List[str] = Field(default_factory=list)
    option_defaults: Dict[str, str] = Field(default_factory=dict)
    templates: Dict[str, ResourceTemplate] = Field(default_factory=dict)
    instructions: List[str] = Field(default_factory=list)

    def build_environment(self, host: str, port: int, options: Optional[Dict[str, Any]] = None) -> List[str]:
        values: Dict[str, Any] = dict(self.option_defaults)
        for key, value in (options or {}).items():
            if key in self.option_defaults and value not in (None, ""):
                values[key] = str(value)
        values["host"] = host
        values["port"] = port

        env = []
        for entry in self.environment:
            try:
                env.append(entry.format(**values))
            except (KeyError, IndexError, ValueError) as e:
                raise ConfigError(
                    f"Service '{self.name}': bad environment entry '{entry}': {e}"
                ) from e
        return env


# ── Deployment ────────────────────────────────────────────

class DeploymentRequest(BaseModel):
    """User-facing deploy request (validated against the catalog before execution)."""
    service_name: str = ""
    service_type: str = ""
    template: str = ""
    options: Dict[str, Any] = Field(default_factory=dict)


class DeploymentRecord(BaseModel):
    """Runtime-derived facts about one deployed managed container."""
    container_id: str
    container_name: str
    service_type: str
    volume_name: str
    assigned_port: int
    template: str
    url: str
    status: str = "running"
    created_at: datetime = Field(default_factory=utcnow)
    labels: Dict[str, str] = Field(default_factory=dict)
    display_name: str = ""
    instructions: List[str] = Field(default_factory=list)
    resumed: bool = False


class DeploymentEvent(BaseModel):
    deployment_id: str
    step: str
    status: EventStatus = EventStatus.INFO
    message: str = ""
    timestamp: datetime = Field(default_factory=utcnow)


class RemovalResult(BaseModel):
    success: bool = True
    message: str
    volume_removed: bool = False
    volume_name: Optional[str] = None


# ── Health ────────────────────────────────────────────────

class CpuMetrics(BaseModel):
    percentage: float = 0.0
    cores: int = 0


class MemoryMetrics(BaseModel):
    usage_bytes: int = 0
    limit_bytes: int = 0
    percentage: float = 0.0


class NetworkMetrics(BaseModel):
    rx_bytes: int = 0
    tx_bytes: int = 0
    total_bytes: int = 0


class DiskMetrics(BaseModel):
    read_bytes: int = 0
    write_bytes: int = 0
    total_bytes: int = 0


class HealthSample(BaseModel):
    """One point-in-time observation of a container."""
    container_id: str
    timestamp: datetime = Field(default_factory=utcnow)
    status: HealthStatus
    running: bool = False
    restart_count: int = 0
    exit_code: Optional[int] = None
    started_at: Optional[str] = None
    error: Optional[str] = None
    metrics_available: bool = False
    cpu: CpuMetrics = Field(default_factory=CpuMetrics)
    memory: MemoryMetrics = Field(default_factory=MemoryMetrics)
    network: NetworkMetrics = Field(default_factory=NetworkMetrics)
    disk: DiskMetrics = Field(default_factory=DiskMetrics)

    def metrics(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", include={"cpu", "memory", "network", "disk"})


class Alert(BaseModel):
    container_id: str
    type: AlertType
    severity: AlertSeverity
    message: str
    timestamp: datetime = Field(default_factory=utcnow)


# ── Backups ───────────────────────────────────────────────

class VolumeBackup(BaseModel):
    name: str
    source: str
    destination: str = ""
    type: str = "volume"
    mode: str = ""
    backup_path: Optional[str] = None
    size_bytes: int = 0
    error: Optional[str] = None


class BackupConfig(BaseModel):
    """Container configuration captured at backup time, used to recreate on restore."""
    env: List[str] = Field(default_factory=list)
    ports: Dict[str, Any] = Field(default_factory=dict)
    volumes: Optional[Dict[str, Any]] = None
    working_dir: str = ""
    cmd: Optional[List[str]] = None
    entrypoint: Optional[List[str]] = None
    labels: Dict[str, str] = Field(default_factory=dict)
    port_bindings: Dict[str, Any] = Field(default_factory=dict)
    binds: List[str] = Field(default_factory=list)
    memory: int = 0
    cpu_quota: int = 0
    cpu_period: int = 0
    restart_policy: Optional[str] = None


class BackupRecord(BaseModel):
    id: str
    name: str
    description: str = ""
    container_id: str
    container_name: str
    image: str
    created_at: datetime = Field(default_factory=utcnow)
    status: BackupStatus = BackupStatus.CREATING
    size_bytes: int = 0
    volumes: List[VolumeBackup] = Field(default_factory=list)
    config: BackupConfig = Field(default_factory=BackupConfig)

    @property
    def failed_volumes(self) -> List[VolumeBackup]:
        return [v for v in self.volumes if v.error]

    @property
    def partial(self) -> bool:
        return bool(self.failed_volumes)


class RestoreResult(BaseModel):
    success: bool = True
    container_id: str
    backup_id: str
    restored_volumes: List[str] = Field(default_factory=list)
    message: str = "Container restored successfully"


class DownloadBundle(BaseModel):
    file_path: str
    filename: str


class StorageUsage(BaseModel):
    used: int = 0
    total: int = 0
    percentage: float = 0.0


# ── Helpers ───────────────────────────────────────────────

_MEMORY_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([a-zA-Z]*)\s*$")
_MEMORY_UNITS = {
    "": 1,
    "b": 1,
    "k": 1024,
    "kb": 1024,
    "m": 1024 ** 2,
    "mb": 1024 ** 2,
    "g": 1024 ** 3,
    "gb": 1024 ** 3,
}


def parse_memory(mem_str: str) -> int:
    """Parse memory string like '512m', '1gb', '2g' to bytes."""
    match = _MEMORY_RE.match(str(mem_str))
    if not match:
        raise ConfigError(f"Invalid memory value: '{mem_str}'")
    value, unit = match.groups()
    factor = _MEMORY_UNITS.get(unit.lower())
    if factor is None:
        raise ConfigError(f"Unknown memory unit '{unit}' in '{mem_str}'")
    return int(float(value) * factor)


def parse_cpus(cpus: Any) -> float:
    try:
        value = float(cpus)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid cpus value: '{cpus}'") from e
    if value <= 0:
        raise ConfigError(f"cpus must be positive, got '{cpus}'")
    return value
