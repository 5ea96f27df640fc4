"""
webhooks.py - GitHub push webhook ingest.

Verifies ``X-Hub-Signature-256`` against the application's webhook secret and
turns qualifying pushes into deployments through the scheduler, exactly as a
manual deploy would.
"""

import hashlib
import hmac
import json
import logging
import re
from typing import TYPE_CHECKING, Optional

from controlplane.errors import ErrorCode, fail, ok

if TYPE_CHECKING:
    from controlplane.crypto import SecretBox
    from controlplane.scheduler import FleetScheduler
    from controlplane.storage import ApplicationRepo

logger = logging.getLogger("webhooks")

SIGNATURE_PREFIX = "sha256="


def verify_signature(secret: str, raw_body: bytes, header: Optional[str]) -> bool:
    if not secret or not header or not header.startswith(SIGNATURE_PREFIX):
        return False
    expected = hmac.new(secret.encode(), raw_body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(SIGNATURE_PREFIX + expected, header)


def normalize_repo_url(url: Optional[str]) -> str:
    """Reduce https/ssh/git clone URLs to ``host/owner/repo``."""
    if not isinstance(url, str) or not url:
        return ""
    u = url.strip().lower()
    u = re.sub(r"^[a-z+]+://", "", u)
    u = re.sub(r"^[^@/]+@", "", u)
    u = u.replace(":", "/", 1) if "/" in u and ":" in u.split("/", 1)[0] else u
    u = u.rstrip("/")
    if u.endswith(".git"):
        u = u[:-4]
    return u


class WebhookIngest:
    def __init__(
        self,
        application_repo: "ApplicationRepo",
        scheduler: "FleetScheduler",
        secret_box: "SecretBox",
    ):
        self._apps = application_repo
        self._scheduler = scheduler
        self._secrets = secret_box

    async def handle_github(
        self,
        application_id: str,
        event: Optional[str],
        signature: Optional[str],
        raw_body: bytes,
    ) -> dict:
        app = await self._apps.get(application_id)
        if app is None or app["status"] == "deleted":
            return fail(ErrorCode.NOT_FOUND, "Application not found")

        secret = self._secrets.decrypt(app["webhook_secret"])
        if not secret or not verify_signature(secret, raw_body, signature):
            logger.warning("Webhook signature mismatch for application %s", application_id)
            return fail(ErrorCode.SIGNATURE_MISMATCH, "Invalid webhook signature")

        if event != "push":
            return ok(ignored=True, reason=f"Event ignored ({event or 'unknown'} is not a push event)")

        try:
            payload = json.loads(raw_body)
        except (json.JSONDecodeError, UnicodeDecodeError):
            return fail(ErrorCode.INVALID_REQUEST, "Malformed JSON payload")
        if not isinstance(payload, dict):
            return fail(ErrorCode.INVALID_REQUEST, "Push payload must be a JSON object")

        ref = payload.get("ref") or ""
        if not isinstance(ref, str):
            return fail(ErrorCode.INVALID_REQUEST, "Push payload has a malformed ref")
        if ref != f"refs/heads/{app['git_branch']}":
            return ok(ignored=True, reason=f"Push to {ref} does not match branch {app['git_branch']}")

        repo = payload.get("repository") or {}
        if not isinstance(repo, dict):
            return fail(ErrorCode.INVALID_REQUEST, "Push payload has a malformed repository")
        target = normalize_repo_url(app["git_repo_url"])
        candidates = {
            normalize_repo_url(repo.get(k)) for k in ("clone_url", "html_url", "ssh_url", "git_url")
        }
        if not target or target not in candidates:
            return ok(ignored=True, reason="Push is for a different repository")

        head = payload.get("head_commit")
        if not isinstance(head, dict):
            head = {}
        commit = {"sha": head.get("id") or payload.get("after"), "message": head.get("message")}
        logger.info("Push to %s@%s (%s), deploying application %s",
                    target, app["git_branch"], (commit["sha"] or "")[:7], application_id)
        result = await self._scheduler.schedule_deployment(application_id, commit)
        return result
