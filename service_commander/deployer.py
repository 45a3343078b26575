"""
Service Commander — Deployment Engine
═══════════════════════════════════════════════════
Turns (service type, name, tier, options) into a running, labelled
container with its own data volume and a free host port.

Progress events on "deployment-progress", in order:
  volume-creating → image-pulling → port-resolving →
  container-creating → container-starting → succeeded | failed

Failure leaves completed steps in place (volume, pulled image, created
container). Re-deploying the same container name resumes instead of
duplicating: the existing managed container is reused and started if needed.
"""

import logging
import re
import uuid
from typing import Any, Callable, Dict, Optional

from .catalog import ServiceCatalog
from .config import CONTAINER_PREFIX, CPU_PERIOD, LABEL_PREFIX, RESTART_POLICY
from .errors import CommanderError, DeploymentError, InvalidRequest
from .events import DEPLOYMENT_PROGRESS, EventBus
from .labels import DeploymentLabels, is_managed
from .models import DeploymentEvent, DeploymentRecord, DeploymentRequest, EventStatus, utcnow
from .netinfo import resolve_host_ip
from .ports import PortAllocator, published_ports
from .runtime import RuntimeClient

logger = logging.getLogger(__name__)

STEP_VOLUME = "volume-creating"
STEP_IMAGE = "image-pulling"
STEP_PORT = "port-resolving"
STEP_CREATE = "container-creating"
STEP_START = "container-starting"
STEP_SUCCEEDED = "succeeded"
STEP_FAILED = "failed"

_CONTAINER_NAME_RE = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9_.-]*$")


def sanitize_name(name: str) -> str:
    """'My Bot!' → 'my-bot'"""
    cleaned = re.sub(r"[^a-z0-9-]", "-", (name or "").lower())
    cleaned = re.sub(r"-+", "-", cleaned).strip("-")
    if not cleaned:
        raise InvalidRequest(f"Service name '{name}' has no usable characters")
    return cleaned


def make_container_name(service_type: str, service_name: str, prefix: str = CONTAINER_PREFIX) -> str:
    return f"{prefix}-{service_type}-{sanitize_name(service_name)}-{uuid.uuid4().hex[:8]}"


def volume_name_for(container_name: str) -> str:
    return f"{container_name}_data"


def new_deployment_id() -> str:
    return f"deploy-{uuid.uuid4().hex[:12]}"


class DeploymentEngine:

    def __init__(
        self,
        runtime: RuntimeClient,
        catalog: ServiceCatalog,
        allocator: Optional[PortAllocator] = None,
        bus: Optional[EventBus] = None,
        host: Optional[str] = None,
        label_prefix: str = LABEL_PREFIX,
        container_prefix: str = CONTAINER_PREFIX,
    ):
        self.runtime = runtime
        self.catalog = catalog
        self.allocator = allocator or PortAllocator(runtime)
        self.bus = bus
        self._host = host
        self.label_prefix = label_prefix
        self.container_prefix = container_prefix

    @property
    def host(self) -> str:
        if self._host is None:
            self._host = resolve_host_ip()
        return self._host

    # ── Events ──

    def _emit(self, deployment_id: str, step: str, status: EventStatus = EventStatus.INFO,
              message: str = "") -> None:
        if self.bus is None:
            return
        event = DeploymentEvent(deployment_id=deployment_id, step=step, status=status, message=message)
        self.bus.publish(DEPLOYMENT_PROGRESS, event.model_dump(mode="json"))

    def _step(self, deployment_id: str, step: str, fn: Callable[[], Any], message: str = "") -> Any:
        self._emit(deployment_id, step, EventStatus.INFO, message)
        try:
            return fn()
        except Exception as e:
            self._fail(deployment_id, step, e)

    def _fail(self, deployment_id: str, step: str, error: Exception):
        reason = str(error)
        logger.error(f"[Deploy] {deployment_id} failed at {step}: {reason}")
        self._emit(deployment_id, STEP_FAILED, EventStatus.ERROR, f"{step}: {reason}")
        raise DeploymentError(step, reason, cause=error) from error

    # ── Public API ──

    def deploy_request(self, request: DeploymentRequest,
                       deployment_id: Optional[str] = None) -> DeploymentRecord:
        """Validate a user request, derive the container name and deploy."""
        missing = [f for f in ("service_name", "service_type", "template") if not getattr(request, f)]
        if missing:
            raise InvalidRequest(f"Missing required fields: {', '.join(missing)}")

        # Unknown type/tier must fail before a name is derived
        self.catalog.template(request.service_type, request.template)
        name = make_container_name(request.service_type, request.service_name, self.container_prefix)
        return self.deploy(
            request.service_type,
            name,
            request.template,
            options=request.options,
            deployment_id=deployment_id,
            service_name=request.service_name,
        )

    def deploy(
        self,
        service_type: str,
        container_name: str,
        template_tier: str,
        options: Optional[Dict[str, Any]] = None,
        deployment_id: Optional[str] = None,
        service_name: Optional[str] = None,
    ) -> DeploymentRecord:
        deployment_id = deployment_id or new_deployment_id()

        # ── Validation: nothing touches the runtime before this passes ──
        descriptor = self.catalog.get(service_type)
        template = self.catalog.template(service_type, template_tier)
        mem_limit = template.memory_bytes()
        cpu_quota = template.cpu_quota(CPU_PERIOD)
        if not container_name or not _CONTAINER_NAME_RE.match(container_name):
            raise InvalidRequest(f"Invalid container name: '{container_name}'")

        try:
            existing = self.runtime.find_container(container_name)
        except CommanderError as e:
            self._fail(deployment_id, STEP_VOLUME, e)
        if existing is not None:
            return self._resume(deployment_id, existing, service_type, container_name, template_tier)

        volume_name = volume_name_for(container_name)
        logger.info(f"[Deploy] {deployment_id}: {service_type}/{template_tier} as {container_name}")

        self._step(
            deployment_id, STEP_VOLUME,
            lambda: self.runtime.create_volume(volume_name, labels={f"{self.label_prefix}.managed": "true"}),
            f"Creating volume {volume_name}",
        )
        self._step(
            deployment_id, STEP_IMAGE,
            lambda: self.runtime.pull_image_if_absent(descriptor.image),
            f"Ensuring image {descriptor.image}",
        )

        with self.allocator.allocation():
            port = self._step(
                deployment_id, STEP_PORT,
                lambda: self.allocator.find_available_port(descriptor.default_port),
                f"Finding a free port from {descriptor.default_port}",
            )
            host = self.host
            docker_labels = DeploymentLabels(
                service=service_type,
                name=service_name or container_name,
                volume=volume_name,
                template=template_tier,
                port=port,
                created=utcnow().isoformat(),
            ).to_docker(self.label_prefix)

            def create() -> str:
                env = descriptor.build_environment(host, port, options)
                return self.runtime.create_container(
                    image=descriptor.image,
                    name=container_name,
                    env=env,
                    port_bindings={f"{descriptor.internal_port}/tcp": [{"HostPort": str(port)}]},
                    binds=[f"{volume_name}:{descriptor.volume_mount}"],
                    labels=docker_labels,
                    mem_limit=mem_limit,
                    cpu_quota=cpu_quota,
                    cpu_period=CPU_PERIOD,
                    restart_policy=RESTART_POLICY,
                )

            container_id = self._step(deployment_id, STEP_CREATE, create, f"Creating {container_name}")
            self._step(
                deployment_id, STEP_START,
                lambda: self.runtime.start_container(container_id),
                f"Starting {container_name}",
            )

        url = f"http://{host}:{port}"
        self._emit(deployment_id, STEP_SUCCEEDED, EventStatus.SUCCESS, url)
        logger.info(f"[Deploy] {deployment_id}: {container_name} running at {url}")

        return DeploymentRecord(
            container_id=container_id,
            container_name=container_name,
            service_type=service_type,
            volume_name=volume_name,
            assigned_port=port,
            template=template_tier,
            url=url,
            labels=docker_labels,
            display_name=descriptor.display_name or descriptor.name,
            instructions=list(descriptor.instructions),
        )

    # ── Resume ──

    def _resume(self, deployment_id: str, attrs: Dict, service_type: str,
                container_name: str, template_tier: str) -> DeploymentRecord:
        container_labels = (attrs.get("Config") or {}).get("Labels") or {}
        labels = DeploymentLabels.from_docker(container_labels, self.label_prefix)

        if not is_managed(container_labels, self.label_prefix) or labels.service != service_type:
            self._fail(
                deployment_id, STEP_CREATE,
                CommanderError(f"Container name '{container_name}' is already in use"),
            )

        container_id = attrs.get("Id", "")
        volume_name = labels.volume or volume_name_for(container_name)
        logger.info(f"[Deploy] {deployment_id}: resuming existing {container_name}")

        self._step(
            deployment_id, STEP_VOLUME,
            lambda: self.runtime.create_volume(volume_name, labels={f"{self.label_prefix}.managed": "true"}),
            f"Ensuring volume {volume_name}",
        )
        running = bool((attrs.get("State") or {}).get("Running"))
        if not running:
            self._step(
                deployment_id, STEP_START,
                lambda: self.runtime.start_container(container_id),
                f"Starting existing {container_name}",
            )

        port = labels.port
        if port is None:
            ports = published_ports(attrs)
            port = min(ports) if ports else self.catalog.get(service_type).default_port
        url = f"http://{self.host}:{port}"
        self._emit(deployment_id, STEP_SUCCEEDED, EventStatus.SUCCESS, url)

        descriptor = self.catalog.get(service_type)
        return DeploymentRecord(
            container_id=container_id,
            container_name=container_name,
            service_type=service_type,
            volume_name=volume_name,
            assigned_port=port,
            template=labels.template or template_tier,
            url=url,
            labels=container_labels,
            display_name=descriptor.display_name or descriptor.name,
            instructions=list(descriptor.instructions),
            resumed=True,
        )
