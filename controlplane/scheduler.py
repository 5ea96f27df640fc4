"""
scheduler.py - Fleet scheduler.

Places application and database workloads on worker nodes and turns user or
billing actions into tasks on the dispatch channel. Every task is written to
the tasks table before the send is attempted, so the audit trail shows
undelivered tasks as well as delivered ones.

Node selection happens before dispatch and is not re-checked atomically
against the channel: a node can drop between the two, in which case the
caller gets a retryable ``node_unreachable`` failure.
"""

import logging
import time
import uuid
from enum import Enum
from typing import TYPE_CHECKING, Optional

from controlplane.errors import ErrorCode, fail, ok

if TYPE_CHECKING:
    from controlplane.crypto import SecretBox
    from controlplane.dispatch import TaskChannel
    from controlplane.registry import NodeRegistry
    from controlplane.storage import StorageManager

logger = logging.getLogger("scheduler")

DEFAULT_DB_CPU = 0.5
DEFAULT_DB_MEMORY_MB = 512
MAX_INSTANCES = 20

PRIORITY_DELETE = 2
PRIORITY_DEPLOY = 3
PRIORITY_SCALE = 4
PRIORITY_DEFAULT = 5

_DB_SCHEMES = {
    "postgres": "postgresql",
    "postgresql": "postgresql",
    "mysql": "mysql",
    "mariadb": "mysql",
    "mongodb": "mongodb",
    "redis": "redis",
}


class ResourceStatus(str, Enum):
    BUILDING = "building"
    DEPLOYING = "deploying"
    RUNNING = "running"
    STOPPED = "stopped"
    SUSPENDED = "suspended"
    FAILED = "failed"
    DELETED = "deleted"


class TaskType(str, Enum):
    DEPLOY = "deploy"
    START = "start"
    STOP = "stop"
    RESTART = "restart"
    SCALE = "scale"
    DELETE = "delete"
    BACKUP = "backup"
    RESTORE = "restore"


def connection_string(db: dict, password: Optional[str]) -> str:
    scheme = _DB_SCHEMES.get(db["db_type"], db["db_type"])
    auth = f"{db['username']}:{password or ''}@" if db.get("username") else ""
    port = f":{db['port']}" if db.get("port") else ""
    return f"{scheme}://{auth}{db['host']}{port}/{db['database_name']}"


class FleetScheduler:
    def __init__(
        self,
        storage: "StorageManager",
        registry: "NodeRegistry",
        channel: "TaskChannel",
        secret_box: "SecretBox",
    ):
        self._storage = storage
        self._registry = registry
        self._channel = channel
        self._secrets = secret_box

    # -------------------------------------------------------------------
    # Dispatch primitive
    # -------------------------------------------------------------------

    async def dispatch_task(
        self,
        node_id: str,
        task_type: TaskType,
        resource_type: str,
        resource_id: str,
        payload: dict,
        priority: int = PRIORITY_DEFAULT,
        task_id: Optional[str] = None,
    ) -> dict:
        task_type = TaskType(task_type)
        task_id = task_id or f"{task_type.value}-{resource_id}-{uuid.uuid4().hex[:12]}"
        await self._storage.tasks.create(
            task_id, node_id, task_type.value, resource_type, resource_id, payload, priority
        )
        envelope = {
            "task_id": task_id,
            "type": task_type.value,
            "resource_type": resource_type,
            "resource_id": resource_id,
            "priority": priority,
            **payload,
        }
        if not self._channel.send(node_id, envelope):
            await self._storage.tasks.mark_undelivered(task_id)
            logger.warning("Task %s undelivered: node %s not connected", task_id, node_id)
            return fail(
                ErrorCode.NODE_UNREACHABLE,
                f"Node {node_id} is not connected",
                retryable=True,
                task_id=task_id,
            )
        await self._storage.tasks.mark_sent(task_id)
        logger.info("Task %s (%s %s/%s) sent to %s", task_id, task_type.value,
                    resource_type, resource_id, node_id)
        return ok(task_id=task_id)

    # -------------------------------------------------------------------
    # Applications
    # -------------------------------------------------------------------

    async def schedule_deployment(self, application_id: str, git_commit: Optional[dict] = None) -> dict:
        app = await self._storage.applications.get(application_id)
        if app is None or app["status"] == ResourceStatus.DELETED.value:
            return fail(ErrorCode.NOT_FOUND, "Application not found")
        plan = await self._storage.plans.get(app["plan_id"])
        if plan is None:
            return fail(ErrorCode.NOT_FOUND, "Plan not found")
        runtime = await self._storage.runtimes.get(app["runtime_id"]) if app["runtime_id"] else None
        if runtime is None:
            return fail(ErrorCode.NOT_FOUND, "Runtime not found")

        node = await self._registry.select_node(app["region"], plan["cpu_cores"], plan["memory_mb"])
        if node is None:
            logger.warning("No capacity in %s for application %s (%.2f cpu, %.0f MB)",
                           app["region"], application_id, plan["cpu_cores"], plan["memory_mb"])
            return fail(ErrorCode.CAPACITY_EXHAUSTED, "No available nodes in region")

        git_commit = git_commit or {}
        build = await self._storage.builds.create(
            application_id, git_commit.get("sha"), git_commit.get("message")
        )
        await self._storage.applications.set_placement(
            application_id, ResourceStatus.BUILDING.value, node["id"], build["id"]
        )

        payload = {
            "application_id": application_id,
            "build_id": build["id"],
            "git_repo_url": app["git_repo_url"],
            "git_branch": app["git_branch"],
            "git_commit_sha": git_commit.get("sha"),
            "git_oauth_token": self._secrets.decrypt(app["git_oauth_token"]) if app["git_repo_url"] else None,
            "runtime_type": runtime["runtime_type"],
            "runtime_version": runtime["version"],
            "base_image": runtime["base_image"],
            "build_command": runtime["build_command"],
            "start_command": runtime["start_command"],
            "cpu_limit": plan["cpu_cores"],
            "memory_limit_mb": plan["memory_mb"],
            "storage_limit_mb": plan["storage_mb"],
            "instance_count": app["instance_count"],
            "environment_vars": await self._environment_for(application_id),
            "system_domain": app["system_domain"],
            "custom_domains": app["custom_domains"],
            "port": app["port"],
        }
        task_id = f"deploy-{build['id']}-{int(time.time() * 1000)}"
        result = await self.dispatch_task(
            node["id"], TaskType.DEPLOY, "application", application_id, payload,
            priority=PRIORITY_DEPLOY, task_id=task_id,
        )
        if not result["success"]:
            await self._storage.builds.update_status(build["id"], "failed", error=result["error"])
            await self._storage.applications.set_placement(application_id, app["status"], app["node_id"])
            return result

        logger.info("Deploying application %s build %d on node %s", application_id, build["id"], node["id"])
        return ok(build_id=build["id"], node_id=node["id"], task_id=task_id)

    async def _environment_for(self, application_id: str) -> dict:
        env = {}
        for key, sealed in (await self._storage.environment.get_all(application_id)).items():
            value = self._secrets.decrypt(sealed)
            if value is not None:
                env[key] = value
        for db in await self._storage.databases.linked_to(application_id):
            prefix = db["env_var_prefix"]
            password = self._secrets.decrypt(db["password"]) or ""
            env[f"{prefix}_URL"] = connection_string(db, password)
            env[f"{prefix}_HOST"] = db["host"] or ""
            env[f"{prefix}_PORT"] = str(db["port"]) if db["port"] else ""
            env[f"{prefix}_USER"] = db["username"] or ""
            env[f"{prefix}_PASSWORD"] = password
            env[f"{prefix}_NAME"] = db["database_name"] or ""
        return env

    async def _deployed_app(self, application_id: str) -> Optional[dict]:
        app = await self._storage.applications.get(application_id)
        if app is None or not app["node_id"] or app["status"] == ResourceStatus.DELETED.value:
            return None
        return app

    async def schedule_restart(self, application_id: str) -> dict:
        app = await self._deployed_app(application_id)
        if app is None:
            return fail(ErrorCode.NOT_FOUND, "Application not found or not deployed")
        return await self.dispatch_task(
            app["node_id"], TaskType.RESTART, "application", application_id,
            {"application_id": application_id},
        )

    async def schedule_stop(self, application_id: str) -> dict:
        app = await self._deployed_app(application_id)
        if app is None:
            return fail(ErrorCode.NOT_FOUND, "Application not found or not deployed")
        await self._storage.applications.update_status(application_id, ResourceStatus.STOPPED.value)
        return await self.dispatch_task(
            app["node_id"], TaskType.STOP, "application", application_id,
            {"application_id": application_id},
        )

    async def schedule_start(self, application_id: str) -> dict:
        app = await self._deployed_app(application_id)
        if app is None:
            return fail(ErrorCode.NOT_FOUND, "Application not found or not deployed")
        result = await self.dispatch_task(
            app["node_id"], TaskType.START, "application", application_id,
            {"application_id": application_id},
        )
        if result["success"]:
            await self._storage.applications.update_status(application_id, ResourceStatus.RUNNING.value)
        return result

    async def schedule_scale(self, application_id: str, instance_count: int) -> dict:
        app = await self._deployed_app(application_id)
        if app is None:
            return fail(ErrorCode.NOT_FOUND, "Application not found or not deployed")
        if not 1 <= instance_count <= MAX_INSTANCES:
            return fail(ErrorCode.INVALID_REQUEST, f"Instance count must be between 1 and {MAX_INSTANCES}")
        await self._storage.applications.set_instance_count(application_id, instance_count)
        return await self.dispatch_task(
            app["node_id"], TaskType.SCALE, "application", application_id,
            {"application_id": application_id, "instance_count": instance_count},
            priority=PRIORITY_SCALE,
        )

    async def schedule_delete(self, application_id: str) -> dict:
        app = await self._deployed_app(application_id)
        if app is None:
            return fail(ErrorCode.NOT_FOUND, "Application not found or not deployed")
        cancelled = await self._storage.tasks.cancel_pending("application", application_id)
        result = await self.dispatch_task(
            app["node_id"], TaskType.DELETE, "application", application_id,
            {"application_id": application_id},
            priority=PRIORITY_DELETE,
        )
        await self._storage.applications.update_status(application_id, ResourceStatus.DELETED.value)
        logger.info("Application %s deleted (%d pending task(s) cancelled)", application_id, cancelled)
        return {**result, "cancelled_tasks": cancelled}

    # -------------------------------------------------------------------
    # Databases
    # -------------------------------------------------------------------

    async def schedule_database_creation(self, database_id: str) -> dict:
        db = await self._storage.databases.get(database_id)
        if db is None or db["status"] == ResourceStatus.DELETED.value:
            return fail(ErrorCode.NOT_FOUND, "Database not found")
        plan = await self._storage.plans.get(db["plan_id"]) if db["plan_id"] else None
        cpu = plan["cpu_cores"] if plan else DEFAULT_DB_CPU
        memory_mb = plan["memory_mb"] if plan else DEFAULT_DB_MEMORY_MB

        node = await self._registry.select_node(db["region"], cpu, memory_mb)
        if node is None:
            return fail(ErrorCode.CAPACITY_EXHAUSTED, "No available nodes in region")

        await self._storage.databases.set_placement(database_id, ResourceStatus.DEPLOYING.value, node["id"])
        payload = {
            "database_id": database_id,
            "db_type": db["db_type"],
            "version": db["version"],
            "username": db["username"],
            "password": self._secrets.decrypt(db["password"]),
            "database_name": db["database_name"],
            "cpu_limit": cpu,
            "memory_limit_mb": memory_mb,
        }
        result = await self.dispatch_task(node["id"], TaskType.DEPLOY, "database", database_id, payload)
        if not result["success"]:
            await self._storage.databases.set_placement(database_id, db["status"], db["node_id"])
            return result
        return ok(node_id=node["id"], task_id=result["task_id"])

    async def schedule_database_delete(self, database_id: str) -> dict:
        db = await self._storage.databases.get(database_id)
        if db is None or not db["node_id"] or db["status"] == ResourceStatus.DELETED.value:
            return fail(ErrorCode.NOT_FOUND, "Database not found or not deployed")
        cancelled = await self._storage.tasks.cancel_pending("database", database_id)
        result = await self.dispatch_task(
            db["node_id"], TaskType.DELETE, "database", database_id,
            {"database_id": database_id}, priority=PRIORITY_DELETE,
        )
        await self._storage.databases.update_status(database_id, ResourceStatus.DELETED.value)
        return {**result, "cancelled_tasks": cancelled}

    async def schedule_database_restore(self, database_id: str, backup_id: int) -> dict:
        """Load a recorded backup into the database on the node that hosts it."""
        db = await self._storage.databases.get(database_id)
        if db is None or not db["node_id"] or db["status"] == ResourceStatus.DELETED.value:
            return fail(ErrorCode.NOT_FOUND, "Database not found or not deployed")
        backup = await self._storage.backups.get_backup(backup_id)
        if backup is None or backup["database_id"] != database_id:
            return fail(ErrorCode.NOT_FOUND, "Backup not found")
        if not self._channel.is_online(db["node_id"]):
            return fail(ErrorCode.NODE_UNREACHABLE, f"Node {db['node_id']} is not connected", retryable=True)

        payload = {
            "database_id": database_id,
            "backup_id": backup_id,
            "backup_path": backup["storage_path"],
            "db_type": db["db_type"],
            "username": db["username"],
            "password": self._secrets.decrypt(db["password"]),
            "database_name": db["database_name"],
        }
        result = await self.dispatch_task(db["node_id"], TaskType.RESTORE, "database", database_id, payload)
        if result["success"]:
            logger.info("Restore of %s from backup %d sent to %s", database_id, backup_id, db["node_id"])
            return ok(node_id=db["node_id"], task_id=result["task_id"])
        return result

    # -------------------------------------------------------------------
    # Billing-driven suspension
    # -------------------------------------------------------------------

    def _repo_for(self, resource_type: str):
        if resource_type == "application":
            return self._storage.applications
        if resource_type == "database":
            return self._storage.databases
        raise ValueError(f"Unknown resource type {resource_type!r}")

    async def schedule_suspend(self, resource_type: str, resource_id: str) -> dict:
        """Mark a resource suspended and tear its workload down with a stop task."""
        repo = self._repo_for(resource_type)
        resource = await repo.get(resource_id)
        if resource is None:
            return fail(ErrorCode.NOT_FOUND, f"{resource_type.capitalize()} not found")
        await repo.update_status(resource_id, ResourceStatus.SUSPENDED.value)
        logger.warning("Suspended %s %s", resource_type, resource_id)
        if not resource["node_id"]:
            return ok(stopped=False)
        result = await self.dispatch_task(
            resource["node_id"], TaskType.STOP, resource_type, resource_id,
            {f"{resource_type}_id": resource_id, "reason": "suspended"},
        )
        return ok(stopped=result["success"])

    async def schedule_resume(self, resource_type: str, resource_id: str) -> dict:
        """Bring a suspended resource back: start on its node, or redeploy elsewhere."""
        repo = self._repo_for(resource_type)
        resource = await repo.get(resource_id)
        if resource is None:
            return fail(ErrorCode.NOT_FOUND, f"{resource_type.capitalize()} not found")
        node_id = resource["node_id"]
        if node_id and self._channel.is_online(node_id):
            result = await self.dispatch_task(
                node_id, TaskType.START, resource_type, resource_id,
                {f"{resource_type}_id": resource_id, "reason": "resumed"},
            )
            if result["success"]:
                await repo.update_status(resource_id, ResourceStatus.RUNNING.value)
                logger.info("Resumed %s %s on node %s", resource_type, resource_id, node_id)
                return result
        if resource_type == "application":
            return await self.schedule_deployment(resource_id)
        return await self.schedule_database_creation(resource_id)

    # -------------------------------------------------------------------
    # Task outcomes
    # -------------------------------------------------------------------

    async def handle_task_result(
        self, node_id: str, task_id: str, success: bool, result: Optional[dict] = None
    ) -> Optional[dict]:
        """Apply an agent-reported task outcome. Returns the task, or None if ignored."""
        task = await self._storage.tasks.get(task_id)
        if task is None or task["node_id"] != node_id:
            logger.warning("Ignoring result for unknown task %s from node %s", task_id, node_id)
            return None
        if not await self._storage.tasks.complete(task_id, success, result):
            logger.debug("Task %s already finished", task_id)
            return None
        result = result or {}
        resource_type, resource_id = task["resource_type"], task["resource_id"]
        task_type = task["type"]
        resource = await self._repo_for(resource_type).get(resource_id)
        if resource is None or resource["status"] == ResourceStatus.DELETED.value:
            return task

        if resource_type == "application" and task_type == TaskType.DEPLOY.value:
            build_id = task["payload"].get("build_id")
            if build_id is not None:
                await self._storage.builds.update_status(
                    build_id, "success" if success else "failed",
                    error=None if success else result.get("error"),
                )
            await self._storage.applications.update_status(
                resource_id, ResourceStatus.RUNNING.value if success else ResourceStatus.FAILED.value
            )
        elif resource_type == "database" and task_type == TaskType.DEPLOY.value:
            await self._storage.databases.update_status(
                resource_id, ResourceStatus.RUNNING.value if success else ResourceStatus.FAILED.value
            )
        elif task_type == TaskType.START.value and not success:
            await self._repo_for(resource_type).update_status(resource_id, ResourceStatus.FAILED.value)

        if success:
            logger.info("Task %s completed on node %s", task_id, node_id)
        else:
            logger.warning("Task %s failed on node %s: %s", task_id, node_id, result.get("error"))
        return task
