"""
Service Commander — Runtime Client Adapter
═══════════════════════════════════════════════════
Thin, typed pass-through to the Docker Engine via the Docker SDK.

Every call returns plain inspect-format dicts and translates SDK errors:
  docker.errors.NotFound / ImageNotFound      → NotFound
  409/500 "port is already allocated"         → PortBindConflict
  volume removal 409                          → VolumeInUse
  other APIError                              → RuntimeAPIError
  DockerException / connection errors         → RuntimeUnavailable

No retries here. Retry policy belongs to callers.
"""

import functools
import logging
import threading
from typing import Any, Dict, List, Optional

import docker
import requests
from docker.errors import APIError, DockerException, NotFound as DockerNotFound
from docker.utils import parse_repository_tag

from .config import CONTAINER_STOP_TIMEOUT
from .errors import (
    NotFound,
    PortBindConflict,
    RuntimeAPIError,
    RuntimeUnavailable,
    VolumeInUse,
)

logger = logging.getLogger(__name__)

_PORT_CONFLICT_MARKERS = ("port is already allocated", "address already in use")


# ── Singleton Client ──────────────────────────────────────

_client: Optional[docker.DockerClient] = None
_lock = threading.Lock()


def get_docker_client() -> docker.DockerClient:
    """Get or create the Docker client (singleton)."""
    global _client
    if _client is None:
        with _lock:
            if _client is None:
                try:
                    _client = docker.from_env()
                except DockerException as e:
                    raise RuntimeUnavailable(f"Docker daemon unreachable: {e}") from e
    return _client


# ── Error Translation ─────────────────────────────────────

def _translate(resource: str):
    """Map Docker SDK exceptions onto the Commander error taxonomy."""
    def decorator(fn):
        @functools.wraps(fn)
        def wrapper(self, *args, **kwargs):
            try:
                return fn(self, *args, **kwargs)
            except DockerNotFound as e:
                identifier = args[0] if args else next(iter(kwargs.values()), "")
                raise NotFound(resource, str(identifier)) from e
            except APIError as e:
                raise _api_error(e) from e
            except (DockerException, requests.exceptions.ConnectionError) as e:
                raise RuntimeUnavailable(f"Docker daemon unreachable: {e}") from e
        return wrapper
    return decorator


def _api_error(e: APIError) -> RuntimeAPIError:
    text = str(getattr(e, "explanation", "") or e)
    status = getattr(e, "status_code", None)
    if any(marker in text.lower() for marker in _PORT_CONFLICT_MARKERS):
        return PortBindConflict(text, status)
    return RuntimeAPIError(text, status)


def container_name(attrs: Dict) -> str:
    """Inspect output prefixes names with '/'."""
    return (attrs.get("Name") or "").lstrip("/")


def _to_sdk_ports(port_bindings: Dict[str, Any]) -> Dict[str, Any]:
    """
    Convert HostConfig.PortBindings ({"80/tcp": [{"HostIp": "", "HostPort": "8080"}]})
    into the SDK's `ports` argument ({"80/tcp": 8080}).
    Plain ints / tuples / lists are passed through unchanged.
    """
    result: Dict[str, Any] = {}
    for container_port, binding in (port_bindings or {}).items():
        if not isinstance(binding, list):
            result[container_port] = binding
            continue
        converted = []
        for entry in binding:
            if not isinstance(entry, dict):
                converted.append(entry)
                continue
            host_port = entry.get("HostPort")
            port = int(host_port) if host_port else None
            host_ip = entry.get("HostIp") or ""
            converted.append((host_ip, port) if host_ip and port else port)
        if not converted:
            continue
        result[container_port] = converted[0] if len(converted) == 1 else converted
    return result


# ── Runtime Client ────────────────────────────────────────

class RuntimeClient:
    """Docker Engine primitives used by every other component."""

    def __init__(self, client: Optional[docker.DockerClient] = None,
                 stop_timeout: int = CONTAINER_STOP_TIMEOUT):
        self._client = client
        self.stop_timeout = stop_timeout

    @property
    def client(self) -> docker.DockerClient:
        if self._client is None:
            self._client = get_docker_client()
        return self._client

    # ── Daemon ──

    def ping(self) -> bool:
        try:
            return bool(self.client.ping())
        except (DockerException, requests.exceptions.ConnectionError) as e:
            raise RuntimeUnavailable(f"Docker daemon unreachable: {e}") from e

    def info(self) -> Dict:
        try:
            return self.client.info()
        except (DockerException, requests.exceptions.ConnectionError) as e:
            raise RuntimeUnavailable(f"Docker daemon unreachable: {e}") from e

    # ── Containers ──

    def list_containers(self, labels: Optional[Dict[str, str]] = None, all: bool = True) -> List[Dict]:
        """List containers (inspect dicts). `labels` filters on key=value pairs."""
        filters = {}
        if labels:
            filters["label"] = [f"{k}={v}" for k, v in labels.items()]
        try:
            containers = self.client.containers.list(all=all, filters=filters, ignore_removed=True)
        except APIError as e:
            raise _api_error(e) from e
        except (DockerException, requests.exceptions.ConnectionError) as e:
            raise RuntimeUnavailable(f"Docker daemon unreachable: {e}") from e
        return [c.attrs for c in containers]

    @_translate("container")
    def inspect_container(self, container_id: str) -> Dict:
        return self.client.containers.get(container_id).attrs

    def find_container(self, name: str) -> Optional[Dict]:
        """Inspect by name; None if no such container."""
        try:
            return self.inspect_container(name)
        except NotFound:
            return None

    @_translate("image")
    def create_container(
        self,
        image: str,
        name: str,
        env: Optional[List[str]] = None,
        port_bindings: Optional[Dict[str, Any]] = None,
        binds: Optional[List[str]] = None,
        labels: Optional[Dict[str, str]] = None,
        mem_limit: Optional[int] = None,
        cpu_quota: Optional[int] = None,
        cpu_period: Optional[int] = None,
        restart_policy: Optional[str] = None,
        working_dir: Optional[str] = None,
        cmd: Optional[List[str]] = None,
        entrypoint: Optional[List[str]] = None,
    ) -> str:
        """Create (not start) a container. Returns its id."""
        kwargs: Dict[str, Any] = {
            "name": name,
            "environment": env or [],
            "labels": labels or {},
            "detach": True,
        }
        ports = _to_sdk_ports(port_bindings or {})
        if ports:
            kwargs["ports"] = ports
        if binds:
            kwargs["volumes"] = list(binds)
        if mem_limit:
            kwargs["mem_limit"] = mem_limit
        if cpu_quota:
            kwargs["cpu_quota"] = cpu_quota
            kwargs["cpu_period"] = cpu_period
        if restart_policy:
            kwargs["restart_policy"] = {"Name": restart_policy}
        if working_dir:
            kwargs["working_dir"] = working_dir
        if cmd:
            kwargs["command"] = cmd
        if entrypoint:
            kwargs["entrypoint"] = entrypoint

        container = self.client.containers.create(image, **kwargs)
        logger.info(f"[Runtime] Created container {name} ({container.short_id})")
        return container.id

    @_translate("container")
    def start_container(self, container_id: str) -> None:
        self.client.containers.get(container_id).start()

    @_translate("container")
    def stop_container(self, container_id: str, timeout: Optional[int] = None) -> None:
        self.client.containers.get(container_id).stop(
            timeout=self.stop_timeout if timeout is None else timeout
        )

    @_translate("container")
    def restart_container(self, container_id: str, timeout: Optional[int] = None) -> None:
        self.client.containers.get(container_id).restart(
            timeout=self.stop_timeout if timeout is None else timeout
        )

    @_translate("container")
    def remove_container(self, container_id: str, force: bool = False) -> None:
        self.client.containers.get(container_id).remove(force=force)

    @_translate("container")
    def stats_once(self, container_id: str) -> Dict:
        """Single non-streaming stats sample (includes precpu_stats)."""
        return self.client.containers.get(container_id).stats(stream=False)

    @_translate("container")
    def container_logs(self, container_id: str, tail: int = 100) -> str:
        raw = self.client.containers.get(container_id).logs(tail=tail, timestamps=True)
        return raw.decode("utf-8", errors="replace")

    # ── Volumes ──

    @_translate("volume")
    def create_volume(self, name: str, labels: Optional[Dict[str, str]] = None) -> bool:
        """Create a named volume. Returns False if it already existed."""
        try:
            self.client.volumes.get(name)
            return False
        except DockerNotFound:
            pass
        try:
            self.client.volumes.create(name=name, driver="local", labels=labels or {})
        except APIError as e:
            if getattr(e, "status_code", None) == 409 or "already exists" in str(e).lower():
                return False
            raise
        return True

    def remove_volume(self, name: str) -> None:
        try:
            self.client.volumes.get(name).remove()
        except DockerNotFound as e:
            raise NotFound("volume", name) from e
        except APIError as e:
            if getattr(e, "status_code", None) == 409 or "in use" in str(e).lower():
                raise VolumeInUse(f"Volume '{name}' is in use", 409) from e
            raise _api_error(e) from e
        except (DockerException, requests.exceptions.ConnectionError) as e:
            raise RuntimeUnavailable(f"Docker daemon unreachable: {e}") from e

    # ── Images ──

    def image_exists(self, ref: str) -> bool:
        try:
            self.client.images.get(ref)
            return True
        except DockerNotFound:
            return False
        except APIError as e:
            raise _api_error(e) from e
        except (DockerException, requests.exceptions.ConnectionError) as e:
            raise RuntimeUnavailable(f"Docker daemon unreachable: {e}") from e

    @_translate("image")
    def pull_image_if_absent(self, ref: str) -> bool:
        """Pull `ref` unless present locally. Returns True if a pull happened."""
        if self.image_exists(ref):
            logger.debug(f"[Runtime] Image {ref} already present")
            return False
        repository, tag = parse_repository_tag(ref)
        logger.info(f"[Runtime] Pulling image: {ref}")
        self.client.images.pull(repository, tag=tag or "latest")
        logger.info(f"[Runtime] Pulled image: {ref}")
        return True
