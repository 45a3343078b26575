# tests/conftest.py
"""
Pytest Fixtures - in-memory runtime, recording event bus, catalog.

FakeRuntime mirrors RuntimeClient's interface and keeps containers, volumes
and images as inspect-format dicts, so engines run unchanged without Docker.
"""

import itertools
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

# Add parent dir to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from service_commander.catalog import ServiceCatalog  # noqa: E402
from service_commander.errors import (  # noqa: E402
    NotFound,
    PortBindConflict,
    RuntimeAPIError,
    VolumeInUse,
)
from service_commander.events import EventBus  # noqa: E402


# ═══════════════════════════════════════════════════════════
# FAKES
# ═══════════════════════════════════════════════════════════

def _normalize_bindings(port_bindings: Optional[Dict[str, Any]]) -> Dict[str, List[Dict]]:
    result = {}
    for container_port, binding in (port_bindings or {}).items():
        if binding is None:
            result[container_port] = []
        elif isinstance(binding, int):
            result[container_port] = [{"HostIp": "", "HostPort": str(binding)}]
        else:
            result[container_port] = [dict(b) for b in binding]
    return result


class FakeRuntime:
    """RuntimeClient stand-in backed by dicts."""

    def __init__(self):
        self.containers: Dict[str, Dict] = {}
        self.volumes: Dict[str, Dict] = {}
        self.images = set()
        self.pulled: List[str] = []
        self.volumes_in_use = set()
        self.stats: Dict[str, Dict] = {}
        self.failures: Dict[str, Exception] = {}
        self.calls: List[tuple] = []
        self._ids = itertools.count(1)

    # ── helpers ──

    def _maybe_fail(self, op: str):
        self.calls.append((op,))
        error = self.failures.get(op)
        if error is not None:
            raise error

    def _resolve(self, ident: str) -> Dict:
        if ident in self.containers:
            return self.containers[ident]
        for attrs in self.containers.values():
            if attrs["Name"].lstrip("/") == ident:
                return attrs
        raise NotFound("container", ident)

    def add_container(self, name: str, labels: Optional[Dict[str, str]] = None, running: bool = True,
                      host_port: Optional[int] = None, internal_port: int = 80,
                      image: str = "nginx:latest", mounts: Optional[List[Dict]] = None) -> str:
        bindings = {f"{internal_port}/tcp": [{"HostIp": "", "HostPort": str(host_port)}]} if host_port else {}
        container_id = self.create_container(image, name=name, port_bindings=bindings, labels=labels or {})
        if mounts is not None:
            self.containers[container_id]["Mounts"] = mounts
        if running:
            self.start_container(container_id)
        return container_id

    # ── daemon ──

    def ping(self) -> bool:
        self._maybe_fail("ping")
        return True

    # ── containers ──

    def list_containers(self, labels: Optional[Dict[str, str]] = None, all: bool = True) -> List[Dict]:
        self._maybe_fail("list_containers")
        result = []
        for attrs in self.containers.values():
            container_labels = attrs["Config"]["Labels"]
            if labels and any(container_labels.get(k) != v for k, v in labels.items()):
                continue
            if not all and not attrs["State"]["Running"]:
                continue
            result.append(attrs)
        return result

    def inspect_container(self, container_id: str) -> Dict:
        self._maybe_fail("inspect_container")
        return self._resolve(container_id)

    def find_container(self, name: str) -> Optional[Dict]:
        error = self.failures.get("find_container")
        if error is not None:
            raise error
        try:
            return self._resolve(name)
        except NotFound:
            return None

    def create_container(self, image: str, name: str, env=None, port_bindings=None, binds=None,
                         labels=None, mem_limit=None, cpu_quota=None, cpu_period=None,
                         restart_policy=None, working_dir=None, cmd=None, entrypoint=None) -> str:
        self._maybe_fail("create_container")
        if self.find_container(name) is not None:
            raise RuntimeAPIError(f"Conflict. The container name \"/{name}\" is already in use", 409)
        container_id = f"{next(self._ids):012x}" + "a" * 52
        bindings = _normalize_bindings(port_bindings)
        mounts = []
        for bind in binds or []:
            source, destination = bind.split(":")[:2]
            if source.startswith("/"):
                mounts.append({"Type": "bind", "Source": source, "Destination": destination,
                               "Mode": "rw", "RW": True})
            else:
                mounts.append({"Type": "volume", "Name": source,
                               "Source": f"/var/lib/docker/volumes/{source}/_data",
                               "Destination": destination, "Mode": "z", "RW": True})
        self.containers[container_id] = {
            "Id": container_id,
            "Name": f"/{name}",
            "Created": datetime.now(timezone.utc).isoformat(),
            "RestartCount": 0,
            "Config": {
                "Image": image,
                "Env": list(env or []),
                "Labels": dict(labels or {}),
                "ExposedPorts": {p: {} for p in bindings},
                "WorkingDir": working_dir or "",
                "Cmd": cmd,
                "Entrypoint": entrypoint,
                "Volumes": None,
            },
            "HostConfig": {
                "PortBindings": bindings,
                "Binds": list(binds or []),
                "Memory": mem_limit or 0,
                "CpuQuota": cpu_quota or 0,
                "CpuPeriod": cpu_period or 0,
                "RestartPolicy": {"Name": restart_policy or ""},
            },
            "State": {"Status": "created", "Running": False, "ExitCode": 0, "StartedAt": ""},
            "NetworkSettings": {"Ports": {}},
            "Mounts": mounts,
        }
        return container_id

    def start_container(self, container_id: str) -> None:
        self._maybe_fail("start_container")
        attrs = self._resolve(container_id)
        wanted = {
            b.get("HostPort")
            for bindings in attrs["HostConfig"]["PortBindings"].values()
            for b in bindings
            if b.get("HostPort")
        }
        for other in self.containers.values():
            if other is attrs or not other["State"]["Running"]:
                continue
            taken = {
                b.get("HostPort")
                for bindings in other["NetworkSettings"]["Ports"].values()
                for b in bindings or []
            }
            if wanted & taken:
                raise PortBindConflict("Bind for 0.0.0.0 failed: port is already allocated", 500)
        attrs["State"].update({"Status": "running", "Running": True,
                               "StartedAt": datetime.now(timezone.utc).isoformat()})
        attrs["NetworkSettings"]["Ports"] = {k: [dict(b) for b in v]
                                             for k, v in attrs["HostConfig"]["PortBindings"].items()}

    def stop_container(self, container_id: str, timeout: Optional[int] = None) -> None:
        self._maybe_fail("stop_container")
        attrs = self._resolve(container_id)
        attrs["State"].update({"Status": "exited", "Running": False})
        attrs["NetworkSettings"]["Ports"] = {}

    def restart_container(self, container_id: str, timeout: Optional[int] = None) -> None:
        self._maybe_fail("restart_container")
        attrs = self._resolve(container_id)
        attrs["RestartCount"] += 1
        attrs["State"].update({"Status": "running", "Running": True})

    def remove_container(self, container_id: str, force: bool = False) -> None:
        self._maybe_fail("remove_container")
        attrs = self._resolve(container_id)
        del self.containers[attrs["Id"]]

    def stats_once(self, container_id: str) -> Dict:
        self._maybe_fail("stats_once")
        self._resolve(container_id)
        return self.stats.get(container_id, {})

    def container_logs(self, container_id: str, tail: int = 100) -> str:
        self._resolve(container_id)
        return f"log tail={tail}\n"

    # ── volumes ──

    def create_volume(self, name: str, labels: Optional[Dict[str, str]] = None) -> bool:
        self._maybe_fail("create_volume")
        if name in self.volumes:
            return False
        self.volumes[name] = {"Name": name, "Labels": dict(labels or {})}
        return True

    def remove_volume(self, name: str) -> None:
        self._maybe_fail("remove_volume")
        if name not in self.volumes:
            raise NotFound("volume", name)
        if name in self.volumes_in_use:
            raise VolumeInUse(f"Volume '{name}' is in use", 409)
        del self.volumes[name]

    # ── images ──

    def image_exists(self, ref: str) -> bool:
        return ref in self.images

    def pull_image_if_absent(self, ref: str) -> bool:
        self._maybe_fail("pull_image_if_absent")
        if ref in self.images:
            return False
        self.images.add(ref)
        self.pulled.append(ref)
        return True


class RecordingBus(EventBus):
    """EventBus that also keeps every published event."""

    def __init__(self):
        super().__init__()
        self.events: List[tuple] = []

    def publish(self, topic: str, payload: Dict[str, Any]) -> None:
        self.events.append((topic, payload))
        super().publish(topic, payload)

    def of(self, topic: str) -> List[Dict[str, Any]]:
        return [p for t, p in self.events if t == topic]


# ═══════════════════════════════════════════════════════════
# FIXTURES
# ═══════════════════════════════════════════════════════════

@pytest.fixture
def runtime():
    return FakeRuntime()


@pytest.fixture
def bus():
    return RecordingBus()


@pytest.fixture
def catalog():
    return ServiceCatalog.load(extra_path="")


def cpu_stats(cpu_percent: float, cores: int = 2, mem_percent: float = 10.0) -> Dict:
    """Docker stats payload that works out to the given CPU and memory percentages."""
    system_delta = 1_000_000
    cpu_delta = int(cpu_percent / 100.0 / cores * system_delta)
    limit = 1024 * 1024 * 1024
    return {
        "cpu_stats": {"cpu_usage": {"total_usage": 2_000_000 + cpu_delta},
                      "system_cpu_usage": 10_000_000 + system_delta, "online_cpus": cores},
        "precpu_stats": {"cpu_usage": {"total_usage": 2_000_000}, "system_cpu_usage": 10_000_000},
        "memory_stats": {"usage": int(limit * mem_percent / 100.0), "limit": limit},
        "networks": {"eth0": {"rx_bytes": 100, "tx_bytes": 50}},
        "blkio_stats": {"io_service_bytes_recursive": [
            {"op": "Read", "value": 4096}, {"op": "Write", "value": 1024},
        ]},
    }
