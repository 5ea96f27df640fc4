"""
test_scheduler.py - Unit tests for FleetScheduler.

Placement, deploy payload assembly, lifecycle tasks and agent task results,
with real node agents connected through the dispatch channel.
"""

import pytest

from controlplane.scheduler import connection_string

from conftest import make_node, wait_for

pytestmark = pytest.mark.asyncio


async def _create_app(storage, secret_box, app_id="app-1", plan_id="small", region="eu-west", **kwargs):
    return await storage.applications.create(
        app_id, "org-1", "web", plan_id, region,
        runtime_id="node20",
        git_repo_url="https://github.com/acme/web.git",
        git_oauth_token=secret_box.encrypt("gho_secret"),
        system_domain=f"{app_id}.apps.example.com",
        **kwargs,
    )


async def _create_db(storage, secret_box, db_id="db-1", **kwargs):
    return await storage.databases.create(
        db_id, "org-1", "main", "postgres", "eu-west",
        version="16", host="db.internal", port=5432, username="app",
        password=secret_box.encrypt("pw"), **kwargs,
    )


class TestConnectionString:
    def test_postgres(self):
        db = {"db_type": "postgres", "username": "u", "host": "h", "port": 5432, "database_name": "d"}
        assert connection_string(db, "p") == "postgresql://u:p@h:5432/d"

    def test_without_credentials_or_port(self):
        db = {"db_type": "redis", "username": "", "host": "cache", "port": None, "database_name": "0"}
        assert connection_string(db, None) == "redis://cache/0"


class TestDeployment:
    async def test_deploy_places_and_sends_payload(self, catalog, registry, agents, scheduler, secret_box):
        node = await make_node(registry)
        ws = await agents.connect(node)
        await _create_app(catalog, secret_box)
        await catalog.environment.set("app-1", "API_KEY", secret_box.encrypt("k-123"))
        await _create_db(catalog, secret_box, status="running")
        await catalog.databases.link("app-1", "db-1", "db")

        result = await scheduler.schedule_deployment("app-1", {"sha": "abc1234", "message": "fix"})
        assert result["success"] is True
        assert result["node_id"] == node["id"]

        await wait_for(lambda: len(ws.tasks()) == 1)
        task = ws.tasks()[0]
        assert task["task_id"] == result["task_id"]
        assert task["type"] == "deploy"
        assert task["git_commit_sha"] == "abc1234"
        assert task["git_oauth_token"] == "gho_secret"
        assert task["base_image"] == "node:20-alpine"
        assert task["cpu_limit"] == 1
        env = task["environment_vars"]
        assert env["API_KEY"] == "k-123"
        assert env["DB_URL"] == "postgresql://app:pw@db.internal:5432/main"
        assert env["DB_PASSWORD"] == "pw"
        assert env["DB_PORT"] == "5432"

        app = await catalog.applications.get("app-1")
        assert app["status"] == "building"
        assert app["node_id"] == node["id"]
        assert app["current_build_id"] == result["build_id"]
        assert (await catalog.tasks.get(result["task_id"]))["status"] == "sent"
        build = await catalog.builds.get(result["build_id"])
        assert build["git_commit_message"] == "fix"

    async def test_no_capacity(self, catalog, registry, scheduler, secret_box):
        await make_node(registry, cpu_used=3.5)
        await _create_app(catalog, secret_box)
        result = await scheduler.schedule_deployment("app-1")
        assert result["success"] is False
        assert result["code"] == "capacity_exhausted"
        assert (await catalog.applications.get("app-1"))["status"] == "stopped"
        assert await catalog.builds.list_for_application("app-1") == []

    async def test_no_node_in_region(self, catalog, registry, scheduler, secret_box):
        await make_node(registry, region="us-east")
        await _create_app(catalog, secret_box)
        result = await scheduler.schedule_deployment("app-1")
        assert result["code"] == "capacity_exhausted"

    async def test_unreachable_node_restores_state(self, catalog, registry, scheduler, secret_box):
        await make_node(registry)
        await _create_app(catalog, secret_box)
        result = await scheduler.schedule_deployment("app-1")
        assert result["success"] is False
        assert result["code"] == "node_unreachable"
        assert result["retryable"] is True

        app = await catalog.applications.get("app-1")
        assert app["status"] == "stopped"
        assert app["node_id"] is None
        builds = await catalog.builds.list_for_application("app-1")
        assert [b["status"] for b in builds] == ["failed"]
        assert (await catalog.tasks.get(result["task_id"]))["status"] == "undelivered"

    async def test_unknown_application(self, catalog, scheduler):
        result = await scheduler.schedule_deployment("nope")
        assert result["code"] == "not_found"

    async def test_missing_runtime(self, catalog, registry, scheduler):
        await catalog.applications.create("app-2", "org-1", "api", "small", "eu-west")
        result = await scheduler.schedule_deployment("app-2")
        assert result["code"] == "not_found"

    async def test_deploy_success_result_marks_running(self, catalog, registry, agents, scheduler, secret_box):
        node = await make_node(registry)
        await agents.connect(node)
        await _create_app(catalog, secret_box)
        result = await scheduler.schedule_deployment("app-1")

        task = await scheduler.handle_task_result(node["id"], result["task_id"], True, {"container_id": "c1"})
        assert task is not None
        assert (await catalog.applications.get("app-1"))["status"] == "running"
        assert (await catalog.builds.get(result["build_id"]))["status"] == "success"
        assert (await catalog.tasks.get(result["task_id"]))["status"] == "completed"

    async def test_deploy_failure_result_marks_failed(self, catalog, registry, agents, scheduler, secret_box):
        node = await make_node(registry)
        await agents.connect(node)
        await _create_app(catalog, secret_box)
        result = await scheduler.schedule_deployment("app-1")

        await scheduler.handle_task_result(node["id"], result["task_id"], False, {"error": "npm ci failed"})
        assert (await catalog.applications.get("app-1"))["status"] == "failed"
        build = await catalog.builds.get(result["build_id"])
        assert build["status"] == "failed"
        assert build["error"] == "npm ci failed"


class TestTaskResults:
    async def test_result_from_other_node_ignored(self, catalog, registry, agents, scheduler, secret_box):
        node = await make_node(registry, name="a")
        other = await make_node(registry, name="b", region="us-east")
        await agents.connect(node)
        await _create_app(catalog, secret_box)
        result = await scheduler.schedule_deployment("app-1")
        assert await scheduler.handle_task_result(other["id"], result["task_id"], True) is None
        assert (await catalog.applications.get("app-1"))["status"] == "building"

    async def test_duplicate_result_ignored(self, catalog, registry, agents, scheduler, secret_box):
        node = await make_node(registry)
        await agents.connect(node)
        await _create_app(catalog, secret_box)
        result = await scheduler.schedule_deployment("app-1")
        await scheduler.handle_task_result(node["id"], result["task_id"], True)
        assert await scheduler.handle_task_result(node["id"], result["task_id"], False) is None
        assert (await catalog.applications.get("app-1"))["status"] == "running"

    async def test_unknown_task_ignored(self, catalog, registry, scheduler):
        node = await make_node(registry)
        assert await scheduler.handle_task_result(node["id"], "deploy-0-0", True) is None


class TestLifecycle:
    async def _running_app(self, catalog, registry, agents, scheduler, secret_box):
        node = await make_node(registry)
        ws = await agents.connect(node)
        await _create_app(catalog, secret_box)
        result = await scheduler.schedule_deployment("app-1")
        await scheduler.handle_task_result(node["id"], result["task_id"], True)
        return node, ws

    async def test_stop_and_start(self, catalog, registry, agents, scheduler, secret_box):
        node, ws = await self._running_app(catalog, registry, agents, scheduler, secret_box)
        assert (await scheduler.schedule_stop("app-1"))["success"] is True
        assert (await catalog.applications.get("app-1"))["status"] == "stopped"
        assert (await scheduler.schedule_start("app-1"))["success"] is True
        assert (await catalog.applications.get("app-1"))["status"] == "running"
        await wait_for(lambda: [t["type"] for t in ws.tasks()] == ["deploy", "stop", "start"])

    async def test_restart_sends_task(self, catalog, registry, agents, scheduler, secret_box):
        node, ws = await self._running_app(catalog, registry, agents, scheduler, secret_box)
        result = await scheduler.schedule_restart("app-1")
        assert result["success"] is True
        await wait_for(lambda: ws.tasks()[-1]["type"] == "restart")

    async def test_scale_bounds(self, catalog, registry, agents, scheduler, secret_box):
        await self._running_app(catalog, registry, agents, scheduler, secret_box)
        assert (await scheduler.schedule_scale("app-1", 0))["code"] == "invalid_request"
        assert (await scheduler.schedule_scale("app-1", 21))["code"] == "invalid_request"
        result = await scheduler.schedule_scale("app-1", 3)
        assert result["success"] is True
        assert (await catalog.applications.get("app-1"))["instance_count"] == 3

    async def test_lifecycle_on_undeployed_app(self, catalog, scheduler, secret_box):
        await _create_app(catalog, secret_box)
        assert (await scheduler.schedule_stop("app-1"))["code"] == "not_found"
        assert (await scheduler.schedule_restart("app-1"))["code"] == "not_found"

    async def test_delete_cancels_undelivered_tasks(self, catalog, registry, agents, scheduler, secret_box, channel):
        node, ws = await self._running_app(catalog, registry, agents, scheduler, secret_box)
        await channel.drop(node["id"])
        assert (await scheduler.schedule_restart("app-1"))["code"] == "node_unreachable"

        result = await scheduler.schedule_delete("app-1")
        assert result["cancelled_tasks"] == 1
        assert (await catalog.applications.get("app-1"))["status"] == "deleted"
        assert (await scheduler.schedule_deployment("app-1"))["code"] == "not_found"

    async def test_result_for_deleted_resource_leaves_it_deleted(
        self, catalog, registry, agents, scheduler, secret_box
    ):
        node = await make_node(registry)
        await agents.connect(node)
        await _create_app(catalog, secret_box)
        result = await scheduler.schedule_deployment("app-1")
        await scheduler.schedule_delete("app-1")
        await scheduler.handle_task_result(node["id"], result["task_id"], True)
        assert (await catalog.applications.get("app-1"))["status"] == "deleted"


class TestDatabases:
    async def test_create_places_database(self, catalog, registry, agents, scheduler, secret_box):
        node = await make_node(registry)
        ws = await agents.connect(node)
        await _create_db(catalog, secret_box)
        result = await scheduler.schedule_database_creation("db-1")
        assert result["success"] is True
        db = await catalog.databases.get("db-1")
        assert db["status"] == "deploying"
        assert db["node_id"] == node["id"]

        await wait_for(lambda: len(ws.tasks()) == 1)
        task = ws.tasks()[0]
        assert task["password"] == "pw"
        assert task["memory_limit_mb"] == 512

        await scheduler.handle_task_result(node["id"], result["task_id"], True)
        assert (await catalog.databases.get("db-1"))["status"] == "running"

    async def test_create_unreachable_restores(self, catalog, registry, scheduler, secret_box):
        await make_node(registry)
        await _create_db(catalog, secret_box)
        result = await scheduler.schedule_database_creation("db-1")
        assert result["code"] == "node_unreachable"
        db = await catalog.databases.get("db-1")
        assert db["status"] == "stopped"
        assert db["node_id"] is None

    async def test_delete_database(self, catalog, registry, agents, scheduler, secret_box):
        node = await make_node(registry)
        await agents.connect(node)
        await _create_db(catalog, secret_box, status="running", node_id=node["id"])
        result = await scheduler.schedule_database_delete("db-1")
        assert result["success"] is True
        assert (await catalog.databases.get("db-1"))["status"] == "deleted"


class TestRestore:
    async def test_restore_sends_backup_path(self, catalog, registry, agents, scheduler, secret_box):
        node = await make_node(registry)
        ws = await agents.connect(node)
        await _create_db(catalog, secret_box, status="running", node_id=node["id"])
        backup_id = await catalog.backups.record_backup("db-1", "/var/backups/db-1/0001.sql", 2048)

        result = await scheduler.schedule_database_restore("db-1", backup_id)
        assert result["success"] is True
        assert result["node_id"] == node["id"]

        await wait_for(lambda: len(ws.tasks()) == 1)
        task = ws.tasks()[0]
        assert task["type"] == "restore"
        assert task["backup_path"] == "/var/backups/db-1/0001.sql"
        assert task["backup_id"] == backup_id
        assert task["password"] == "pw"
        assert (await catalog.tasks.get(result["task_id"]))["status"] == "sent"

    async def test_backup_of_other_database_rejected(self, catalog, registry, agents, scheduler, secret_box):
        node = await make_node(registry)
        await agents.connect(node)
        await _create_db(catalog, secret_box, status="running", node_id=node["id"])
        await _create_db(catalog, secret_box, db_id="db-2", status="running", node_id=node["id"])
        other = await catalog.backups.record_backup("db-2", "/var/backups/db-2/0001.sql")
        assert (await scheduler.schedule_database_restore("db-1", other))["code"] == "not_found"
        assert (await scheduler.schedule_database_restore("db-1", 999))["code"] == "not_found"

    async def test_undeployed_database(self, catalog, scheduler, secret_box):
        await _create_db(catalog, secret_box)
        backup_id = await catalog.backups.record_backup("db-1", "/var/backups/db-1/0001.sql")
        assert (await scheduler.schedule_database_restore("db-1", backup_id))["code"] == "not_found"

    async def test_offline_node_is_retryable(self, catalog, registry, scheduler, secret_box):
        node = await make_node(registry)
        await _create_db(catalog, secret_box, status="running", node_id=node["id"])
        backup_id = await catalog.backups.record_backup("db-1", "/var/backups/db-1/0001.sql")
        result = await scheduler.schedule_database_restore("db-1", backup_id)
        assert result["code"] == "node_unreachable"
        assert result["retryable"] is True


class TestSuspendResume:
    async def test_suspend_stops_workload(self, catalog, registry, agents, scheduler, secret_box):
        node = await make_node(registry)
        ws = await agents.connect(node)
        await _create_app(catalog, secret_box, status="running", node_id=node["id"])
        result = await scheduler.schedule_suspend("application", "app-1")
        assert result == {"success": True, "stopped": True}
        assert (await catalog.applications.get("app-1"))["status"] == "suspended"
        await wait_for(lambda: len(ws.tasks()) == 1)
        assert ws.tasks()[0]["reason"] == "suspended"

    async def test_suspend_without_node_still_suspends(self, catalog, scheduler, secret_box):
        await _create_app(catalog, secret_box, status="running")
        result = await scheduler.schedule_suspend("application", "app-1")
        assert result["stopped"] is False
        assert (await catalog.applications.get("app-1"))["status"] == "suspended"

    async def test_resume_on_online_node(self, catalog, registry, agents, scheduler, secret_box):
        node = await make_node(registry)
        await agents.connect(node)
        await _create_app(catalog, secret_box, status="suspended", node_id=node["id"])
        result = await scheduler.schedule_resume("application", "app-1")
        assert result["success"] is True
        assert (await catalog.applications.get("app-1"))["status"] == "running"

    async def test_resume_redeploys_when_node_gone(self, catalog, registry, agents, scheduler, secret_box):
        gone = await make_node(registry, name="gone", memory_used_mb=4000)
        fresh = await make_node(registry, name="fresh")
        await agents.connect(fresh)
        await _create_app(catalog, secret_box, status="suspended", node_id=gone["id"])
        result = await scheduler.schedule_resume("application", "app-1")
        assert result["success"] is True
        assert result["node_id"] == fresh["id"]
        assert (await catalog.applications.get("app-1"))["status"] == "building"

    async def test_unknown_resource_type(self, scheduler):
        with pytest.raises(ValueError):
            await scheduler.schedule_suspend("volume", "v-1")
