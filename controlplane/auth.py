"""
auth.py - Admin API key checks and per-node agent tokens.

Two credentials exist:
  1. Admin: X-API-Key header equal to the configured admin key.
  2. Node agent: HS256 JWT signed with the node's own secret (minted at
     registration), carrying a ``node_id`` claim. Presented when opening the
     dispatch WebSocket.
"""

import hmac
import logging
import time
from typing import Optional

import jwt as pyjwt
from fastapi import Header, HTTPException

logger = logging.getLogger("auth")

DEFAULT_ADMIN_KEY = "admin-test-key-do-not-use-in-production"
AGENT_TOKEN_TTL = 3600  # 1 hour


def issue_agent_token(node_id: str, node_secret: str, ttl: int = AGENT_TOKEN_TTL) -> str:
    now = int(time.time())
    payload = {"node_id": node_id, "iat": now, "exp": now + ttl}
    return pyjwt.encode(payload, node_secret, algorithm="HS256")


def decode_agent_token(token: str, node_secret: str) -> Optional[dict]:
    try:
        return pyjwt.decode(token, node_secret, algorithms=["HS256"])
    except pyjwt.ExpiredSignatureError:
        return None
    except pyjwt.InvalidTokenError:
        return None


class AuthService:
    """Admin key verification exposed as a FastAPI dependency."""

    def __init__(self, admin_key: str = DEFAULT_ADMIN_KEY):
        if admin_key == DEFAULT_ADMIN_KEY:
            logger.warning("Using the default admin key; pass --admin-key in production")
        self._admin_key = admin_key

    def is_admin(self, x_api_key: str) -> bool:
        return bool(x_api_key) and hmac.compare_digest(x_api_key, self._admin_key)

    async def require_admin(self, x_api_key: str = Header(default="")) -> dict:
        if not x_api_key:
            raise HTTPException(status_code=401, detail="Missing X-API-Key header")
        if not self.is_admin(x_api_key):
            raise HTTPException(status_code=403, detail="Admin access required")
        return {"role": "admin"}
