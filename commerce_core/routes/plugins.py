"""
Plugin admin API routes.

Thin HTTP layer over the PluginManager and Scheduler. Every route needs
an admin bearer token.
"""
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel

from commerce_core.dependencies.auth import TokenPayload, require_admin
from commerce_core.exceptions import PluginError, PluginNotFoundError, PluginStateError
from commerce_core.runtime import Runtime


router = APIRouter(prefix="/api/plugins", tags=["plugins"])


class ConfigUpdateRequest(BaseModel):
    """Request model for replacing a plugin's config."""
    config: dict[str, Any]


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


def _raise_http(e: PluginError):
    if isinstance(e, PluginNotFoundError):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e
    if isinstance(e, PluginStateError):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e)) from e
    raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e


@router.get("/", response_model=dict)
async def list_plugins(
    user: TokenPayload = Depends(require_admin),
    runtime: Runtime = Depends(get_runtime),
):
    """Installed plugins plus registered plugins that are not installed yet."""
    manager = runtime.plugin_manager
    installed = await manager.list_plugins()
    installed_ids = {p["id"] for p in installed}
    available = [
        plugin.manifest.to_dict()
        for plugin in manager.list_registered()
        if plugin.id not in installed_ids
    ]
    return {"installed": installed, "available": available}


@router.get("/{plugin_id}", response_model=dict)
async def get_plugin(
    plugin_id: str,
    user: TokenPayload = Depends(require_admin),
    runtime: Runtime = Depends(get_runtime),
):
    state = await runtime.plugin_manager.get_plugin_state(plugin_id)
    if state is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Plugin {plugin_id} is not installed")
    return state


@router.post("/{plugin_id}/install", response_model=dict, status_code=status.HTTP_201_CREATED)
async def install_plugin(
    plugin_id: str,
    user: TokenPayload = Depends(require_admin),
    runtime: Runtime = Depends(get_runtime),
):
    plugin = runtime.plugin_manager.find_plugin(plugin_id)
    if plugin is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Plugin {plugin_id} is not registered")
    try:
        return await runtime.plugin_manager.install(plugin)
    except PluginError as e:
        _raise_http(e)


@router.post("/{plugin_id}/activate", response_model=dict)
async def activate_plugin(
    plugin_id: str,
    user: TokenPayload = Depends(require_admin),
    runtime: Runtime = Depends(get_runtime),
):
    try:
        return await runtime.plugin_manager.activate(plugin_id)
    except PluginError as e:
        _raise_http(e)


@router.post("/{plugin_id}/deactivate", response_model=dict)
async def deactivate_plugin(
    plugin_id: str,
    user: TokenPayload = Depends(require_admin),
    runtime: Runtime = Depends(get_runtime),
):
    try:
        return await runtime.plugin_manager.deactivate(plugin_id)
    except PluginError as e:
        _raise_http(e)


@router.delete("/{plugin_id}", response_model=dict)
async def uninstall_plugin(
    plugin_id: str,
    user: TokenPayload = Depends(require_admin),
    runtime: Runtime = Depends(get_runtime),
):
    try:
        await runtime.plugin_manager.uninstall(plugin_id)
    except PluginError as e:
        _raise_http(e)
    return {"message": f"Plugin {plugin_id} uninstalled"}


@router.get("/{plugin_id}/config", response_model=dict)
async def get_plugin_config(
    plugin_id: str,
    user: TokenPayload = Depends(require_admin),
    runtime: Runtime = Depends(get_runtime),
):
    if await runtime.plugin_manager.get_plugin_state(plugin_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Plugin {plugin_id} is not installed")
    return {"config": await runtime.plugin_manager.get_plugin_config(plugin_id)}


@router.put("/{plugin_id}/config", response_model=dict)
async def update_plugin_config(
    plugin_id: str,
    request: ConfigUpdateRequest,
    user: TokenPayload = Depends(require_admin),
    runtime: Runtime = Depends(get_runtime),
):
    try:
        config = await runtime.plugin_manager.update_plugin_config(plugin_id, request.config)
    except PluginError as e:
        _raise_http(e)
    return {"config": config}


@router.get("/{plugin_id}/logs", response_model=dict)
async def get_plugin_logs(
    plugin_id: str,
    limit: int = 100,
    user: TokenPayload = Depends(require_admin),
    runtime: Runtime = Depends(get_runtime),
):
    logs = await runtime.plugin_manager.get_plugin_logs(plugin_id, limit=max(1, min(limit, 1000)))
    return {"logs": logs}


@router.get("/{plugin_id}/schedules", response_model=dict)
async def get_plugin_schedules(
    plugin_id: str,
    user: TokenPayload = Depends(require_admin),
    runtime: Runtime = Depends(get_runtime),
):
    tasks = runtime.scheduler.get_plugin_schedules(plugin_id)
    return {"schedules": [task.to_dict() for task in tasks]}


@router.post("/{plugin_id}/schedules/{schedule_id}/run", response_model=dict)
async def run_plugin_schedule(
    plugin_id: str,
    schedule_id: str,
    user: TokenPayload = Depends(require_admin),
    runtime: Runtime = Depends(get_runtime),
):
    """Run a scheduled task now; 409 if it is still running."""
    if runtime.scheduler.get_task(plugin_id, schedule_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Schedule not found")
    if not await runtime.scheduler.run_now(plugin_id, schedule_id):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Schedule is already running")
    return {"message": "Schedule executed", "schedule": runtime.scheduler.get_task(plugin_id, schedule_id).to_dict()}
