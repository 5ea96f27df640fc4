"""
test_webhooks.py - Unit tests for GitHub push webhook ingest.
"""

import hashlib
import hmac
import json

import pytest

from controlplane.webhooks import normalize_repo_url, verify_signature

from conftest import make_node, wait_for

pytestmark = pytest.mark.asyncio

SECRET = "whsec-test"


def _sign(body: bytes, secret: str = SECRET) -> str:
    return "sha256=" + hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def _push(ref="refs/heads/main", clone_url="https://github.com/acme/web.git", sha="0123456789abcdef"):
    return json.dumps({
        "ref": ref,
        "after": sha,
        "repository": {"clone_url": clone_url, "html_url": "https://github.com/acme/web"},
        "head_commit": {"id": sha, "message": "Update landing page"},
    }).encode()


async def _app(storage, secret_box, **kwargs):
    return await storage.applications.create(
        "app-1", "org-1", "web", "small", "eu-west",
        runtime_id="node20",
        git_repo_url=kwargs.pop("git_repo_url", "git@github.com:acme/web.git"),
        webhook_secret=secret_box.encrypt(SECRET),
        **kwargs,
    )


class TestSignature:
    def test_valid(self):
        assert verify_signature(SECRET, b"{}", _sign(b"{}")) is True

    def test_tampered_body(self):
        assert verify_signature(SECRET, b'{"a":1}', _sign(b"{}")) is False

    def test_missing_prefix_or_header(self):
        digest = _sign(b"{}")[len("sha256="):]
        assert verify_signature(SECRET, b"{}", digest) is False
        assert verify_signature(SECRET, b"{}", None) is False
        assert verify_signature("", b"{}", _sign(b"{}", "")) is False


class TestNormalizeRepoUrl:
    @pytest.mark.parametrize("url", [
        "https://github.com/Acme/Web.git",
        "git@github.com:acme/web.git",
        "ssh://git@github.com/acme/web",
        "https://github.com/acme/web/",
        "git://github.com/acme/web.git",
    ])
    def test_variants_collapse(self, url):
        assert normalize_repo_url(url) == "github.com/acme/web"

    def test_empty(self):
        assert normalize_repo_url(None) == ""


class TestHandleGithub:
    async def test_unknown_application(self, catalog, webhooks):
        result = await webhooks.handle_github("nope", "push", _sign(b"{}"), b"{}")
        assert result["code"] == "not_found"

    async def test_bad_signature_rejected(self, catalog, webhooks, secret_box):
        await _app(catalog, secret_box)
        body = _push()
        result = await webhooks.handle_github("app-1", "push", _sign(body, "other"), body)
        assert result["code"] == "signature_mismatch"

    async def test_app_without_secret_rejects_everything(self, catalog, webhooks, secret_box):
        await catalog.applications.create("app-2", "org-1", "api", "small", "eu-west")
        body = _push()
        result = await webhooks.handle_github("app-2", "push", _sign(body), body)
        assert result["code"] == "signature_mismatch"

    async def test_non_push_event_ignored(self, catalog, webhooks, secret_box):
        await _app(catalog, secret_box)
        body = b'{"zen": "Keep it logically awesome."}'
        result = await webhooks.handle_github("app-1", "ping", _sign(body), body)
        assert result["success"] is True
        assert result["ignored"] is True

    async def test_other_branch_ignored(self, catalog, webhooks, secret_box):
        await _app(catalog, secret_box)
        body = _push(ref="refs/heads/feature")
        result = await webhooks.handle_github("app-1", "push", _sign(body), body)
        assert result["ignored"] is True
        assert await catalog.builds.list_for_application("app-1") == []

    async def test_other_repository_ignored(self, catalog, webhooks, secret_box):
        await _app(catalog, secret_box)
        body = _push(clone_url="https://github.com/acme/fork.git")
        body = body.replace(b"github.com/acme/web", b"github.com/acme/fork")
        result = await webhooks.handle_github("app-1", "push", _sign(body), body)
        assert result["ignored"] is True

    async def test_malformed_json(self, catalog, webhooks, secret_box):
        await _app(catalog, secret_box)
        body = b"{not json"
        result = await webhooks.handle_github("app-1", "push", _sign(body), body)
        assert result["code"] == "invalid_request"

    @pytest.mark.parametrize("body", [
        b'["refs/heads/main"]',
        b'"push"',
        b'{"ref": "refs/heads/main", "repository": "acme/web"}',
        b'{"ref": ["refs/heads/main"]}',
    ])
    async def test_signed_payload_with_wrong_shape(self, catalog, webhooks, secret_box, body):
        await _app(catalog, secret_box)
        result = await webhooks.handle_github("app-1", "push", _sign(body), body)
        assert result["success"] is False
        assert result["code"] == "invalid_request"
        assert await catalog.builds.list_for_application("app-1") == []

    async def test_matching_push_deploys(self, catalog, registry, agents, webhooks, secret_box):
        node = await make_node(registry)
        ws = await agents.connect(node)
        await _app(catalog, secret_box)
        body = _push()
        result = await webhooks.handle_github("app-1", "push", _sign(body), body)
        assert result["success"] is True
        assert result["node_id"] == node["id"]

        build = await catalog.builds.get(result["build_id"])
        assert build["git_commit_sha"] == "0123456789abcdef"
        assert build["git_commit_message"] == "Update landing page"
        await wait_for(lambda: len(ws.tasks()) == 1)
        assert ws.tasks()[0]["git_commit_sha"] == "0123456789abcdef"

    async def test_push_without_capacity_reports_failure(self, catalog, webhooks, secret_box):
        await _app(catalog, secret_box)
        body = _push()
        result = await webhooks.handle_github("app-1", "push", _sign(body), body)
        assert result["code"] == "capacity_exhausted"
