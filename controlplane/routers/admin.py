"""Admin router: /api/status, /api/alerts, /api/plans, /api/runtimes."""

import sqlite3
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from starlette.requests import Request

from controlplane.deps import get_control_plane, require_admin
from controlplane.models import PlanRequest, RuntimeRequest

router = APIRouter(dependencies=[Depends(require_admin)])


@router.get("/api/status")
async def server_status(request: Request):
    cp = get_control_plane(request)
    return {
        "nodes": await cp.storage.nodes.count(),
        "connected_nodes": cp.channel.connected_node_ids,
        "suspend_scope": cp.billing.suspend_scope.value,
    }


@router.get("/api/alerts")
async def list_alerts(
    request: Request,
    audience: Optional[str] = None,
    organization_id: Optional[str] = None,
    event_type: Optional[str] = None,
    limit: int = 100,
):
    cp = get_control_plane(request)
    return await cp.alerts.list_alerts(
        audience=audience, organization_id=organization_id,
        event_type=event_type, limit=max(1, min(limit, 500)),
    )


@router.post("/api/plans")
async def create_plan(req: PlanRequest, request: Request):
    cp = get_control_plane(request)
    try:
        return await cp.storage.plans.create(
            req.id, req.name, req.cpu_cores, req.memory_mb, req.hourly_rate, storage_mb=req.storage_mb,
        )
    except sqlite3.IntegrityError:
        raise HTTPException(status_code=409, detail=f"Plan '{req.id}' already exists")


@router.get("/api/plans")
async def list_plans(request: Request):
    return await get_control_plane(request).storage.plans.list_all()


@router.post("/api/runtimes")
async def create_runtime(req: RuntimeRequest, request: Request):
    cp = get_control_plane(request)
    try:
        return await cp.storage.runtimes.create(
            req.id, req.name, req.runtime_type, req.base_image, version=req.version,
            build_command=req.build_command, start_command=req.start_command,
        )
    except sqlite3.IntegrityError:
        raise HTTPException(status_code=409, detail=f"Runtime '{req.id}' already exists")
