"""Webhooks router: GitHub push events trigger deployments."""

from typing import Optional

from fastapi import APIRouter, Header
from fastapi.responses import JSONResponse
from starlette.requests import Request

from controlplane.deps import get_control_plane
from controlplane.errors import http_status

router = APIRouter(prefix="/api/webhooks")


@router.post("/github/{application_id}")
async def github(
    application_id: str,
    request: Request,
    x_github_event: Optional[str] = Header(default=None),
    x_hub_signature_256: Optional[str] = Header(default=None),
):
    cp = get_control_plane(request)
    raw_body = await request.body()
    result = await cp.webhooks.handle_github(application_id, x_github_event, x_hub_signature_256, raw_body)
    return JSONResponse(result, status_code=http_status(result))
