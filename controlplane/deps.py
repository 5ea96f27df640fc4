"""Dependency helpers for router modules."""

from fastapi import Header, HTTPException
from starlette.requests import Request

from controlplane.errors import http_status


def get_control_plane(request: Request):
    return request.app.state.control_plane


async def require_admin(request: Request, x_api_key: str = Header(default="")) -> dict:
    return await get_control_plane(request).auth.require_admin(x_api_key)


def unwrap(result: dict) -> dict:
    """Return a successful result, or raise the HTTP error its code maps to."""
    if not result.get("success"):
        raise HTTPException(
            status_code=http_status(result),
            detail={k: v for k, v in result.items() if k != "success"},
        )
    return result
