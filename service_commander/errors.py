"""Exceptions raised by Service Commander components."""

from typing import Optional


class CommanderError(Exception):
    """Base exception for Service Commander."""

    code = "commander_error"


class RuntimeUnavailable(CommanderError):
    """Docker daemon or its control socket cannot be reached."""

    code = "runtime_unavailable"


class NotFound(CommanderError):
    """Container, volume, image or backup does not exist."""

    code = "not_found"

    def __init__(self, resource: str, identifier: str):
        self.resource = resource
        self.identifier = identifier
        super().__init__(f"{resource} '{identifier}' not found")


class BackupNotFound(NotFound):
    code = "backup_not_found"

    def __init__(self, container_id: str, backup_id: str):
        self.container_id = container_id
        super().__init__("backup", backup_id)


class RuntimeAPIError(CommanderError):
    """Docker engine rejected a request."""

    code = "runtime_error"

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class PortBindConflict(RuntimeAPIError):
    """Host port already taken when the container was bound."""

    code = "port_bind_conflict"


class VolumeInUse(RuntimeAPIError):
    code = "volume_in_use"


class UnknownService(CommanderError):
    code = "unknown_service"

    def __init__(self, service_type: str, available: Optional[list] = None):
        self.service_type = service_type
        self.available = available or []
        msg = f"Unknown service type '{service_type}'"
        if self.available:
            msg += f". Available services: {', '.join(self.available)}"
        super().__init__(msg)


class UnknownTemplate(CommanderError):
    code = "unknown_template"

    def __init__(self, service_type: str, template: str, available: Optional[list] = None):
        self.service_type = service_type
        self.template = template
        self.available = available or []
        msg = f"Unknown template '{template}' for service '{service_type}'"
        if self.available:
            msg += f". Available templates: {', '.join(self.available)}"
        super().__init__(msg)


class InvalidRequest(CommanderError):
    """Missing or malformed request field."""

    code = "invalid_request"


class ConfigError(CommanderError):
    """Malformed resource template or catalog definition."""

    code = "config_error"


class DeploymentError(CommanderError):
    """A deployment step failed after validation passed.

    Steps that completed before the failure are left in place.
    """

    code = "deployment_failed"

    def __init__(self, step: str, message: str, cause: Optional[Exception] = None):
        self.step = step
        self.cause = cause
        super().__init__(f"Deployment failed at '{step}': {message}")
