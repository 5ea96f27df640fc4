"""Node agent router: registration, HTTP heartbeats and the dispatch WebSocket."""

from fastapi import APIRouter, FastAPI, HTTPException, WebSocket
from starlette.requests import Request

from controlplane.deps import get_control_plane
from controlplane.models import AgentRegisterRequest, HeartbeatRequest
from controlplane.storage.nodes import METRIC_FIELDS

router = APIRouter(prefix="/api/agent")


@router.post("/register")
async def register_node(req: AgentRegisterRequest, request: Request):
    cp = get_control_plane(request)
    node = await cp.registry.redeem_token(req.token, req.host_address)
    if node is None:
        raise HTTPException(status_code=401, detail="Invalid or expired registration token")
    return {"node_id": node["id"], "node_secret": node["node_secret"]}


@router.post("/heartbeat")
async def heartbeat(req: HeartbeatRequest, request: Request):
    cp = get_control_plane(request)
    if await cp.registry.authenticate(req.node_id, req.node_secret) is None:
        raise HTTPException(status_code=401, detail="Invalid node credentials")
    metrics = {f: getattr(req, f) for f in METRIC_FIELDS}
    if req.status:
        metrics["status"] = req.status
    try:
        node = await cp.registry.heartbeat(req.node_id, metrics)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if node is None:
        raise HTTPException(status_code=404, detail="Node not found")
    return {"status": node["status"]}


def register(app: FastAPI):
    @app.websocket("/api/agent/nodes/{node_id}/connect")
    async def agent_connect(ws: WebSocket, node_id: str, token: str = ""):
        cp = app.state.control_plane
        if cp.channel is None:
            await ws.close(code=1013, reason="Service unavailable")
            return
        await cp.channel.handle_connection(ws, node_id, token)
