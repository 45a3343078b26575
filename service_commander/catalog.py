"""
Service Commander — Service Catalog
═══════════════════════════════════════════════════
Immutable per-service-type descriptors keyed by catalog name.
Built-ins ship in catalog.yaml next to this module; CATALOG_PATH may point
at an extra YAML file whose entries are merged over the built-ins.
"""

import logging
import os
from typing import Dict, List, Optional

import yaml
from pydantic import ValidationError

from .config import CATALOG_PATH
from .errors import ConfigError, UnknownService, UnknownTemplate
from .models import ResourceTemplate, ServiceDescriptor

logger = logging.getLogger(__name__)

BUILTIN_CATALOG = os.path.join(os.path.dirname(os.path.abspath(__file__)), "catalog.yaml")


def parse_catalog(yaml_content: str) -> List[ServiceDescriptor]:
    """Parse a YAML document ({services: [...]}) into descriptors."""
    try:
        data = yaml.safe_load(yaml_content) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid catalog YAML: {e}") from e

    entries = data.get("services", []) if isinstance(data, dict) else data
    if not isinstance(entries, list):
        raise ConfigError("Catalog must contain a list of services")

    descriptors = []
    for entry in entries:
        try:
            descriptor = ServiceDescriptor(**entry)
        except (TypeError, ValidationError) as e:
            raise ConfigError(f"Invalid service definition {entry!r}: {e}") from e
        # Fail at load time rather than at deploy time
        for tier, template in descriptor.templates.items():
            template.memory_bytes()
            template.cpu_quota()
        descriptor.build_environment("localhost", descriptor.default_port)
        descriptors.append(descriptor)
    return descriptors


class ServiceCatalog:

    def __init__(self, descriptors: Optional[List[ServiceDescriptor]] = None):
        self._services: Dict[str, ServiceDescriptor] = {}
        for descriptor in descriptors or []:
            self.register(descriptor)

    @classmethod
    def load(cls, extra_path: str = CATALOG_PATH) -> "ServiceCatalog":
        catalog = cls()
        catalog.load_file(BUILTIN_CATALOG)
        if extra_path:
            catalog.load_file(extra_path)
        return catalog

    def load_file(self, path: str) -> int:
        try:
            with open(path, encoding="utf-8") as f:
                descriptors = parse_catalog(f.read())
        except OSError as e:
            raise ConfigError(f"Cannot read catalog '{path}': {e}") from e
        for descriptor in descriptors:
            self.register(descriptor)
        logger.info(f"[Catalog] Loaded {len(descriptors)} services from {path}")
        return len(descriptors)

    def register(self, descriptor: ServiceDescriptor) -> None:
        self._services[descriptor.name] = descriptor

    def names(self) -> List[str]:
        return sorted(self._services)

    def get(self, service_type: str) -> ServiceDescriptor:
        descriptor = self._services.get(service_type)
        if descriptor is None:
            raise UnknownService(service_type, self.names())
        return descriptor

    def template(self, service_type: str, tier: str) -> ResourceTemplate:
        descriptor = self.get(service_type)
        template = descriptor.templates.get(tier)
        if template is None:
            raise UnknownTemplate(service_type, tier, list(descriptor.templates))
        return template

    def is_valid(self, service_type: str, tier: Optional[str] = None) -> bool:
        descriptor = self._services.get(service_type)
        if descriptor is None:
            return False
        return tier is None or tier in descriptor.templates

    def list_services(self) -> List[Dict]:
        return [
            {
                "id": d.name,
                "name": d.display_name or d.name,
                "description": d.description,
                "path": f"/deploy/{d.name}",
            }
            for d in self._services.values()
        ]

    def describe(self, service_type: str) -> Dict:
        """Service with its tiers, shaped for the dashboard's template picker."""
        d = self.get(service_type)
        display = d.display_name or d.name
        return {
            "id": d.name,
            "name": display,
            "description": d.description,
            "default_port": d.default_port,
            "options": dict(d.option_defaults),
            "templates": [
                {
                    "id": tier,
                    "name": f"{display} {tier.capitalize()}",
                    "description": t.description,
                    "cpu": f"{t.cpus} CPU",
                    "ram": f"{t.memory.upper()} RAM",
                }
                for tier, t in d.templates.items()
            ],
        }
