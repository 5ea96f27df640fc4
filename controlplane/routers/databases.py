"""Databases router: create, deploy and delete managed databases."""

import sqlite3

from fastapi import APIRouter, Depends, HTTPException
from starlette.requests import Request

from controlplane.deps import get_control_plane, require_admin, unwrap
from controlplane.models import DatabaseRequest

router = APIRouter(prefix="/api/databases", dependencies=[Depends(require_admin)])


def _public(db: dict) -> dict:
    return {k: v for k, v in db.items() if k != "password"}


@router.post("")
async def create_database(req: DatabaseRequest, request: Request):
    cp = get_control_plane(request)
    if await cp.storage.organizations.get(req.organization_id) is None:
        raise HTTPException(status_code=404, detail="Organization not found")
    if req.plan_id and await cp.storage.plans.get(req.plan_id) is None:
        raise HTTPException(status_code=404, detail="Plan not found")
    try:
        db = await cp.storage.databases.create(
            req.id, req.organization_id, req.name, req.db_type, req.region,
            version=req.version, plan_id=req.plan_id, host=req.host, port=req.port,
            username=req.username,
            password=cp.secret_box.encrypt(req.password) if req.password else "",
            database_name=req.database_name,
        )
    except sqlite3.IntegrityError:
        raise HTTPException(status_code=409, detail=f"Database '{req.id}' already exists")
    return _public(db)


@router.get("/{database_id}")
async def get_database(database_id: str, request: Request):
    db = await get_control_plane(request).storage.databases.get(database_id)
    if db is None:
        raise HTTPException(status_code=404, detail="Database not found")
    return _public(db)


@router.post("/{database_id}/deploy")
async def deploy_database(database_id: str, request: Request):
    return unwrap(await get_control_plane(request).scheduler.schedule_database_creation(database_id))


@router.delete("/{database_id}")
async def delete_database(database_id: str, request: Request):
    return unwrap(await get_control_plane(request).scheduler.schedule_database_delete(database_id))


@router.get("/{database_id}/backups")
async def list_backups(database_id: str, request: Request):
    return await get_control_plane(request).backups.list_backups(database_id)


@router.post("/{database_id}/backups/{backup_id}/restore")
async def restore_backup(database_id: str, backup_id: int, request: Request):
    return unwrap(await get_control_plane(request).scheduler.schedule_database_restore(database_id, backup_id))
