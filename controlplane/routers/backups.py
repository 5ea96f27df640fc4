"""Backups router: backup policies and manual ticks."""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from starlette.requests import Request

from controlplane.deps import get_control_plane, require_admin, unwrap
from controlplane.models import BackupPolicyRequest

router = APIRouter(prefix="/api/backups", dependencies=[Depends(require_admin)])


@router.put("/policies")
async def upsert_policy(req: BackupPolicyRequest, request: Request):
    cp = get_control_plane(request)
    if await cp.storage.organizations.get(req.organization_id) is None:
        raise HTTPException(status_code=404, detail="Organization not found")
    return unwrap(await cp.backups.upsert_policy(
        req.organization_id, req.database_id, req.frequency_minutes, req.retention_days,
    ))


@router.get("/policies")
async def list_policies(organization_id: str, request: Request):
    return await get_control_plane(request).backups.list_policies(organization_id)


@router.delete("/policies/{policy_id}")
async def deactivate_policy(policy_id: int, request: Request):
    if not await get_control_plane(request).backups.deactivate_policy(policy_id):
        raise HTTPException(status_code=404, detail="Policy not found")
    return {"policy_id": policy_id, "active": False}


@router.post("/tick")
async def tick(request: Request, now: Optional[float] = None):
    return await get_control_plane(request).backups.tick(now)
