"""
Service Commander — REST API Routes
═══════════════════════════════════════════════════════════════
FastAPI router for catalog, deploy, service lifecycle, health and backups.
Mounted at /api in app.py.

Errors are returned as {"error": <code>, "message": <text>} with:
  404 not found · 400 validation · 409 conflicts · 503 daemon down · 500 other
"""

import asyncio
import json
import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends, Request, WebSocket
from fastapi.responses import FileResponse, JSONResponse
from pydantic import ValidationError

from .commander import Commander, get_commander
from .errors import (
    CommanderError,
    ConfigError,
    DeploymentError,
    InvalidRequest,
    NotFound,
    PortBindConflict,
    RuntimeUnavailable,
    UnknownService,
    UnknownTemplate,
    VolumeInUse,
)
from .models import DeploymentRequest

logger = logging.getLogger(__name__)
router = APIRouter()


# ═══════════════════════════════════════════════════════════
# ERROR MAPPING
# ═══════════════════════════════════════════════════════════

def status_for(error: Exception) -> int:
    if isinstance(error, DeploymentError) and error.cause is not None:
        return status_for(error.cause)
    if isinstance(error, NotFound):
        return 404
    if isinstance(error, (InvalidRequest, UnknownService, UnknownTemplate, ConfigError)):
        return 400
    if isinstance(error, (PortBindConflict, VolumeInUse)):
        return 409
    if isinstance(error, RuntimeUnavailable):
        return 503
    return 500


def error_response(error: Exception, context: str) -> JSONResponse:
    status = status_for(error)
    if isinstance(error, CommanderError):
        body: Dict[str, Any] = {"error": error.code, "message": str(error)}
        if isinstance(error, DeploymentError):
            body["step"] = error.step
    else:
        body = {"error": "internal_error", "message": str(error)}
    if status >= 500:
        logger.error(f"[API] {context}: {error}")
    else:
        logger.info(f"[API] {context}: {error}")
    return JSONResponse(body, status_code=status)


async def _json_body(request: Request) -> Dict[str, Any]:
    raw = await request.body()
    if not raw:
        return {}
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise InvalidRequest(f"Invalid JSON body: {e}") from e
    if not isinstance(data, dict):
        raise InvalidRequest("JSON body must be an object")
    return data


# ═══════════════════════════════════════════════════════════
# CATALOG
# ═══════════════════════════════════════════════════════════

@router.get("/catalog")
async def api_list_catalog(commander: Commander = Depends(get_commander)):
    return {"services": commander.catalog.list_services()}


@router.get("/catalog/{service_type}")
async def api_get_catalog_entry(service_type: str, commander: Commander = Depends(get_commander)):
    try:
        return commander.catalog.describe(service_type)
    except CommanderError as e:
        return error_response(e, "Catalog")


# ═══════════════════════════════════════════════════════════
# DEPLOY
# ═══════════════════════════════════════════════════════════

@router.post("/deploy")
async def api_deploy(request: Request, commander: Commander = Depends(get_commander)):
    """Deploy a catalog service. Progress is streamed on /ws as deployment-progress."""
    try:
        data = await _json_body(request)
        try:
            deploy_request = DeploymentRequest(
                **{k: v for k, v in data.items() if k in DeploymentRequest.model_fields}
            )
        except ValidationError as e:
            raise InvalidRequest(f"Invalid deploy request: {e}") from e
        result = await asyncio.to_thread(commander.deploy, deploy_request)
        return {"success": True, "deployment": result}
    except Exception as e:
        return error_response(e, "Deploy")


# ═══════════════════════════════════════════════════════════
# SERVICES
# ═══════════════════════════════════════════════════════════

@router.get("/services")
async def api_list_services(commander: Commander = Depends(get_commander)):
    try:
        services = await asyncio.to_thread(commander.list_services)
        return {"services": services, "count": len(services)}
    except Exception as e:
        return error_response(e, "List services")


@router.get("/services/{container_id}")
async def api_get_service(container_id: str, commander: Commander = Depends(get_commander)):
    try:
        return await asyncio.to_thread(commander.get_service, container_id)
    except Exception as e:
        return error_response(e, "Get service")


@router.post("/services/{container_id}/start")
async def api_start_service(container_id: str, commander: Commander = Depends(get_commander)):
    try:
        return await asyncio.to_thread(commander.start_service, container_id)
    except Exception as e:
        return error_response(e, "Start service")


@router.post("/services/{container_id}/stop")
async def api_stop_service(container_id: str, commander: Commander = Depends(get_commander)):
    try:
        return await asyncio.to_thread(commander.stop_service, container_id)
    except Exception as e:
        return error_response(e, "Stop service")


@router.post("/services/{container_id}/restart")
async def api_restart_service(container_id: str, commander: Commander = Depends(get_commander)):
    try:
        return await asyncio.to_thread(commander.restart_service, container_id)
    except Exception as e:
        return error_response(e, "Restart service")


@router.delete("/services/{container_id}")
async def api_remove_service(container_id: str, keep_data: bool = False,
                             commander: Commander = Depends(get_commander)):
    try:
        result = await asyncio.to_thread(commander.remove_service, container_id, keep_data)
        return result.model_dump()
    except Exception as e:
        return error_response(e, "Remove service")


@router.get("/services/{container_id}/logs")
async def api_service_logs(container_id: str, tail: int = 100,
                           commander: Commander = Depends(get_commander)):
    try:
        logs = await asyncio.to_thread(commander.get_service_logs, container_id, tail)
        return {"container_id": container_id, "logs": logs}
    except Exception as e:
        return error_response(e, "Service logs")


# ═══════════════════════════════════════════════════════════
# HEALTH
# ═══════════════════════════════════════════════════════════

@router.get("/health")
async def api_all_health(commander: Commander = Depends(get_commander)):
    try:
        services = await asyncio.to_thread(commander.get_all_services_health)
        return {"services": services, "count": len(services)}
    except Exception as e:
        return error_response(e, "All health")


@router.get("/health/system")
async def api_system_metrics(commander: Commander = Depends(get_commander)):
    try:
        return await asyncio.to_thread(commander.get_system_metrics)
    except Exception as e:
        return error_response(e, "System metrics")


@router.get("/health/monitoring")
async def api_monitoring_status(commander: Commander = Depends(get_commander)):
    return {"monitoring": commander.get_monitoring_status()}


@router.get("/health/{container_id}")
async def api_service_health(container_id: str, commander: Commander = Depends(get_commander)):
    sample = await asyncio.to_thread(commander.get_service_health, container_id)
    return sample.model_dump(mode="json")


@router.get("/health/{container_id}/metrics")
async def api_service_metrics(container_id: str, window: str = "1h",
                              commander: Commander = Depends(get_commander)):
    return await asyncio.to_thread(commander.get_service_metrics, container_id, window)


@router.post("/health/{container_id}/monitor")
async def api_start_monitoring(container_id: str, request: Request,
                               commander: Commander = Depends(get_commander)):
    try:
        data = await _json_body(request)
        interval = data.get("interval_ms")
        if interval is not None and (not isinstance(interval, int) or isinstance(interval, bool) or interval <= 0):
            raise InvalidRequest("'interval_ms' must be a positive integer")
        await asyncio.to_thread(commander.start_monitoring, container_id, interval)
        return {"monitoring": True, "container_id": container_id}
    except Exception as e:
        return error_response(e, "Start monitoring")


@router.delete("/health/{container_id}/monitor")
async def api_stop_monitoring(container_id: str, commander: Commander = Depends(get_commander)):
    was_active = commander.stop_monitoring(container_id)
    return {"monitoring": False, "container_id": container_id, "was_active": was_active}


# ═══════════════════════════════════════════════════════════
# BACKUPS
# ═══════════════════════════════════════════════════════════

@router.get("/backups/{container_id}")
async def api_list_backups(container_id: str, commander: Commander = Depends(get_commander)):
    try:
        backups = await asyncio.to_thread(commander.get_backups, container_id)
        return {"backups": [b.model_dump(mode="json") for b in backups], "count": len(backups)}
    except Exception as e:
        return error_response(e, "List backups")


@router.post("/backups/{container_id}")
async def api_create_backup(container_id: str, request: Request,
                            commander: Commander = Depends(get_commander)):
    try:
        data = await _json_body(request)
        record = await asyncio.to_thread(
            commander.create_backup, container_id, data.get("name"), data.get("description", "") or ""
        )
        return {"success": True, "backup": record.model_dump(mode="json")}
    except Exception as e:
        return error_response(e, "Create backup")


@router.get("/backups/{container_id}/storage")
async def api_storage_usage(container_id: str, commander: Commander = Depends(get_commander)):
    try:
        usage = await asyncio.to_thread(commander.get_storage_usage, container_id)
        return usage.model_dump()
    except Exception as e:
        return error_response(e, "Storage usage")


@router.post("/backups/{container_id}/{backup_id}/restore")
async def api_restore_backup(container_id: str, backup_id: str,
                             commander: Commander = Depends(get_commander)):
    try:
        result = await asyncio.to_thread(commander.restore_backup, container_id, backup_id)
        return result.model_dump()
    except Exception as e:
        return error_response(e, "Restore backup")


@router.get("/backups/{container_id}/{backup_id}/download")
async def api_download_backup(container_id: str, backup_id: str,
                              commander: Commander = Depends(get_commander)):
    try:
        bundle = await asyncio.to_thread(commander.download_backup, container_id, backup_id)
        return FileResponse(bundle.file_path, filename=bundle.filename, media_type="application/gzip")
    except Exception as e:
        return error_response(e, "Download backup")


@router.delete("/backups/{container_id}/{backup_id}")
async def api_delete_backup(container_id: str, backup_id: str,
                            commander: Commander = Depends(get_commander)):
    try:
        await asyncio.to_thread(commander.delete_backup, container_id, backup_id)
        return {"success": True, "message": "Backup deleted successfully"}
    except Exception as e:
        return error_response(e, "Delete backup")


# ═══════════════════════════════════════════════════════════
# WEBSOCKET ENDPOINT
# ═══════════════════════════════════════════════════════════

@router.websocket("/ws")
async def websocket_events(websocket: WebSocket):
    """Live deployment progress, health updates and alerts."""
    hub = getattr(websocket.app.state, "hub", None)
    if hub is None:
        await websocket.close(code=1011)
        return
    await hub.handler(websocket)
