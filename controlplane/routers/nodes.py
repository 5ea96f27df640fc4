"""Node admin router: registration tokens, fleet listing and drain/disable/enable/delete."""

from fastapi import APIRouter, Depends, HTTPException
from starlette.requests import Request

from controlplane.deps import get_control_plane, require_admin
from controlplane.models import NodeTokenRequest

router = APIRouter(prefix="/api/nodes", dependencies=[Depends(require_admin)])


@router.post("/tokens")
async def issue_token(req: NodeTokenRequest, request: Request):
    cp = get_control_plane(request)
    return await cp.registry.issue_registration_token(req.name, req.region, req.host_address)


@router.get("")
async def list_nodes(request: Request):
    cp = get_control_plane(request)
    return await cp.registry.fleet_overview(connected=set(cp.channel.connected_node_ids))


@router.get("/{node_id}")
async def get_node(node_id: str, request: Request):
    cp = get_control_plane(request)
    node = await cp.registry.get_node(node_id)
    if node is None:
        raise HTTPException(status_code=404, detail="Node not found")
    node.pop("node_secret", None)
    node.pop("registration_token", None)
    node["connected"] = cp.channel.is_online(node_id)
    return node


@router.post("/{node_id}/drain")
async def drain_node(node_id: str, request: Request):
    if not await get_control_plane(request).registry.drain_node(node_id):
        raise HTTPException(status_code=404, detail="Node not found")
    return {"node_id": node_id, "status": "draining"}


@router.post("/{node_id}/disable")
async def disable_node(node_id: str, request: Request):
    if not await get_control_plane(request).registry.disable_node(node_id):
        raise HTTPException(status_code=404, detail="Node not found")
    return {"node_id": node_id, "status": "disabled"}


@router.post("/{node_id}/enable")
async def enable_node(node_id: str, request: Request):
    if not await get_control_plane(request).registry.enable_node(node_id):
        raise HTTPException(status_code=409, detail="Node not found or not draining/disabled")
    return {"node_id": node_id, "status": "offline"}


@router.delete("/{node_id}")
async def delete_node(node_id: str, request: Request):
    cp = get_control_plane(request)
    try:
        deleted = await cp.registry.delete_node(node_id)
    except ValueError as e:
        raise HTTPException(status_code=409, detail=str(e))
    if not deleted:
        raise HTTPException(status_code=404, detail="Node not found")
    await cp.channel.drop(node_id)
    return {"node_id": node_id, "deleted": True}
