"""Applications router: create, configure, deploy and control application workloads."""

import sqlite3
from typing import Optional

from fastapi import APIRouter, Body, Depends, HTTPException
from starlette.requests import Request

from controlplane.deps import get_control_plane, require_admin, unwrap
from controlplane.models import (
    ApplicationRequest,
    DeployRequest,
    EnvVarRequest,
    LinkDatabaseRequest,
    ScaleRequest,
)

router = APIRouter(prefix="/api/applications", dependencies=[Depends(require_admin)])

_SECRET_FIELDS = ("git_oauth_token", "webhook_secret")


def _public(app: dict) -> dict:
    out = {k: v for k, v in app.items() if k not in _SECRET_FIELDS}
    out["has_oauth_token"] = bool(app.get("git_oauth_token"))
    out["has_webhook_secret"] = bool(app.get("webhook_secret"))
    return out


async def _get_app(cp, application_id: str) -> dict:
    app = await cp.storage.applications.get(application_id)
    if app is None:
        raise HTTPException(status_code=404, detail="Application not found")
    return app


@router.post("")
async def create_application(req: ApplicationRequest, request: Request):
    cp = get_control_plane(request)
    if await cp.storage.organizations.get(req.organization_id) is None:
        raise HTTPException(status_code=404, detail="Organization not found")
    if await cp.storage.plans.get(req.plan_id) is None:
        raise HTTPException(status_code=404, detail="Plan not found")
    box = cp.secret_box
    try:
        app = await cp.storage.applications.create(
            req.id, req.organization_id, req.name, req.plan_id, req.region,
            runtime_id=req.runtime_id,
            instance_count=req.instance_count,
            git_repo_url=req.git_repo_url,
            git_branch=req.git_branch,
            git_oauth_token=box.encrypt(req.git_oauth_token) if req.git_oauth_token else None,
            webhook_secret=box.encrypt(req.webhook_secret) if req.webhook_secret else None,
            system_domain=req.system_domain,
            custom_domains=req.custom_domains,
            port=req.port,
        )
    except sqlite3.IntegrityError:
        raise HTTPException(status_code=409, detail=f"Application '{req.id}' already exists")
    for key, value in req.environment.items():
        await cp.storage.environment.set(req.id, key, box.encrypt(value))
    return _public(app)


@router.get("/{application_id}")
async def get_application(application_id: str, request: Request):
    return _public(await _get_app(get_control_plane(request), application_id))


@router.put("/{application_id}/env")
async def set_env_var(application_id: str, req: EnvVarRequest, request: Request):
    cp = get_control_plane(request)
    await _get_app(cp, application_id)
    await cp.storage.environment.set(application_id, req.key, cp.secret_box.encrypt(req.value))
    return {"application_id": application_id, "key": req.key}


@router.delete("/{application_id}/env/{key}")
async def delete_env_var(application_id: str, key: str, request: Request):
    cp = get_control_plane(request)
    if not await cp.storage.environment.delete(application_id, key):
        raise HTTPException(status_code=404, detail="Environment variable not found")
    return {"application_id": application_id, "key": key, "deleted": True}


@router.post("/{application_id}/databases")
async def link_database(application_id: str, req: LinkDatabaseRequest, request: Request):
    cp = get_control_plane(request)
    app = await _get_app(cp, application_id)
    db = await cp.storage.databases.get(req.database_id)
    if db is None or db["organization_id"] != app["organization_id"]:
        raise HTTPException(status_code=404, detail="Database not found")
    await cp.storage.databases.link(application_id, req.database_id, req.env_var_prefix)
    return {"application_id": application_id, "database_id": req.database_id,
            "env_var_prefix": req.env_var_prefix.upper()}


@router.post("/{application_id}/deploy")
async def deploy(application_id: str, request: Request, req: Optional[DeployRequest] = Body(default=None)):
    cp = get_control_plane(request)
    app = await _get_app(cp, application_id)
    unwrap(await cp.billing.check_sufficient_balance(
        app["organization_id"], app["plan_id"], app["instance_count"]))
    commit = None
    if req is not None and req.git_commit_sha:
        commit = {"sha": req.git_commit_sha, "message": req.git_commit_message}
    return unwrap(await cp.scheduler.schedule_deployment(application_id, commit))


@router.post("/{application_id}/start")
async def start(application_id: str, request: Request):
    return unwrap(await get_control_plane(request).scheduler.schedule_start(application_id))


@router.post("/{application_id}/stop")
async def stop(application_id: str, request: Request):
    return unwrap(await get_control_plane(request).scheduler.schedule_stop(application_id))


@router.post("/{application_id}/restart")
async def restart(application_id: str, request: Request):
    return unwrap(await get_control_plane(request).scheduler.schedule_restart(application_id))


@router.post("/{application_id}/scale")
async def scale(application_id: str, req: ScaleRequest, request: Request):
    return unwrap(await get_control_plane(request).scheduler.schedule_scale(application_id, req.instance_count))


@router.delete("/{application_id}")
async def delete(application_id: str, request: Request):
    return unwrap(await get_control_plane(request).scheduler.schedule_delete(application_id))


@router.get("/{application_id}/builds")
async def list_builds(application_id: str, request: Request):
    return await get_control_plane(request).storage.builds.list_for_application(application_id)


@router.get("/{application_id}/tasks")
async def list_tasks(application_id: str, request: Request):
    return await get_control_plane(request).storage.tasks.list_for_resource("application", application_id)
