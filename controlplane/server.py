"""
server.py - Control plane entry point.

Single-process server combining:
 - SQLite persistent storage via StorageManager
 - Node registry, dispatch channel, fleet scheduler, billing and backups
 - Periodic drivers (liveness sweep, billing cycle, backup tick)
 - REST + WebSocket API (FastAPI on uvicorn)

Usage:
    python -m controlplane.server [--port 8080] [--db-path data/controlplane.db]
"""

import argparse
import asyncio
import logging
import os
from contextlib import asynccontextmanager
from typing import List, Optional

import uvicorn
from fastapi import FastAPI

from controlplane.alerts import AlertService
from controlplane.auth import DEFAULT_ADMIN_KEY, AuthService
from controlplane.backups import BACKUP_INTERVAL, BackupScheduler
from controlplane.billing import BILLING_INTERVAL, BillingEngine, SuspendScope
from controlplane.crypto import SecretBox
from controlplane.dispatch import TaskChannel
from controlplane.registry import OFFLINE_THRESHOLD, NodeRegistry
from controlplane.routers import register_all_routers
from controlplane.scheduler import FleetScheduler, TaskType
from controlplane.storage import StorageManager
from controlplane.wallet import WalletService
from controlplane.webhooks import WebhookIngest

logger = logging.getLogger("server")

LIVENESS_INTERVAL = 30


class ControlPlane:
    """Wires storage, services, periodic drivers and the HTTP app together."""

    def __init__(
        self,
        db_path: str = "data/controlplane.db",
        admin_key: str = DEFAULT_ADMIN_KEY,
        secret_key: Optional[str] = None,
        offline_threshold: float = OFFLINE_THRESHOLD,
        billing_interval: float = BILLING_INTERVAL,
        backup_interval: float = BACKUP_INTERVAL,
        suspend_scope: str = SuspendScope.ORGANIZATION.value,
        run_drivers: bool = True,
    ):
        self.db_path = db_path
        self.offline_threshold = offline_threshold
        self.billing_interval = billing_interval
        self.backup_interval = backup_interval
        self.suspend_scope = suspend_scope
        self.run_drivers = run_drivers

        self.auth = AuthService(admin_key)
        self.secret_box = SecretBox(secret_key)

        # Storage + services are initialized async in the app lifespan
        self.storage: Optional[StorageManager] = None
        self.alerts: Optional[AlertService] = None
        self.wallet: Optional[WalletService] = None
        self.registry: Optional[NodeRegistry] = None
        self.channel: Optional[TaskChannel] = None
        self.scheduler: Optional[FleetScheduler] = None
        self.billing: Optional[BillingEngine] = None
        self.backups: Optional[BackupScheduler] = None
        self.webhooks: Optional[WebhookIngest] = None
        self._tasks: List[asyncio.Task] = []

        self.app = FastAPI(title="Fleet Control Plane", version="0.1.0", lifespan=self._lifespan)
        self.app.state.control_plane = self
        register_all_routers(self.app)

    async def _init_services(self):
        """Initialize storage and wire up services (must be called in async context)."""
        db_dir = os.path.dirname(self.db_path)
        if db_dir:
            os.makedirs(db_dir, exist_ok=True)

        self.storage = StorageManager(self.db_path)
        await self.storage.initialize()

        self.alerts = AlertService(self.storage.alerts)
        self.wallet = WalletService(self.storage.organizations)
        self.registry = NodeRegistry(self.storage.nodes, self.alerts)
        self.channel = TaskChannel(self.registry)
        self.channel.on_message(self._on_agent_message)
        self.scheduler = FleetScheduler(self.storage, self.registry, self.channel, self.secret_box)
        self.billing = BillingEngine(
            self.storage, self.wallet, self.scheduler, self.alerts, suspend_scope=self.suspend_scope,
        )
        self.backups = BackupScheduler(
            self.storage.backups, self.storage.databases, self.scheduler, self.channel,
        )
        self.webhooks = WebhookIngest(self.storage.applications, self.scheduler, self.secret_box)

        logger.info("Services initialized (db=%s)", self.db_path)

    @asynccontextmanager
    async def _lifespan(self, app: FastAPI):
        await self._init_services()
        if self.run_drivers:
            self._tasks = [
                asyncio.create_task(self._liveness_watchdog()),
                asyncio.create_task(self._billing_loop()),
                asyncio.create_task(self._backup_loop()),
            ]
        try:
            yield
        finally:
            await self.shutdown()

    async def shutdown(self):
        for task in self._tasks:
            task.cancel()
        self._tasks = []
        if self.channel:
            await self.channel.close_all()
        if self.storage:
            await self.storage.close()

    # -------------------------------------------------------------------
    # Agent message dispatcher
    # -------------------------------------------------------------------

    async def _on_agent_message(self, node_id: str, msg: dict):
        msg_type = msg.get("type")
        if msg_type == "heartbeat":
            try:
                await self.registry.heartbeat(node_id, msg.get("metrics") or {})
            except ValueError as e:
                logger.warning("Rejected heartbeat from %s: %s", node_id, e)
        elif msg_type == "task_result":
            success = bool(msg.get("success"))
            result = msg.get("result") or {}
            task = await self.scheduler.handle_task_result(node_id, msg.get("task_id", ""), success, result)
            if task and success and task["type"] == TaskType.BACKUP.value and result.get("storage_path"):
                await self.backups.record_backup(
                    task["resource_id"], result["storage_path"], result.get("size_bytes"),
                )
        else:
            logger.debug("Unhandled agent message %s from %s", msg_type, node_id)

    # -------------------------------------------------------------------
    # Periodic drivers
    # -------------------------------------------------------------------

    async def sweep_offline(self, now: Optional[float] = None) -> List[str]:
        """Mark nodes with stale heartbeats offline and drop their connections."""
        swept = await self.registry.mark_offline_nodes(self.offline_threshold, now=now)
        for node_id in swept:
            await self.channel.drop(node_id)
        return swept

    async def _liveness_watchdog(self):
        while True:
            try:
                await self.sweep_offline()
            except Exception:
                logger.exception("Error in liveness watchdog")
            await asyncio.sleep(LIVENESS_INTERVAL)

    async def _billing_loop(self):
        while True:
            await asyncio.sleep(self.billing_interval)
            try:
                await self.billing.run_billing_cycle()
            except Exception:
                logger.exception("Error in billing loop")

    async def _backup_loop(self):
        while True:
            try:
                await self.backups.tick()
            except Exception:
                logger.exception("Error in backup loop")
            await asyncio.sleep(self.backup_interval)


def main():
    """CLI entry point for the control plane."""
    env = os.environ.get
    parser = argparse.ArgumentParser(description="Fleet Control Plane")
    parser.add_argument("--host", default=env("CONTROLPLANE_HOST", "0.0.0.0"), help="Bind address")
    parser.add_argument("--port", type=int, default=int(env("CONTROLPLANE_PORT", "8080")),
                        help="REST API port (default: 8080)")
    parser.add_argument("--db-path", default=env("CONTROLPLANE_DB_PATH", "data/controlplane.db"),
                        help="SQLite database path (default: data/controlplane.db)")
    parser.add_argument("--admin-key", default=env("CONTROLPLANE_ADMIN_KEY", DEFAULT_ADMIN_KEY),
                        help="X-API-Key accepted on admin endpoints")
    parser.add_argument("--secret-key", default=env("CONTROLPLANE_SECRET_KEY", ""),
                        help="Fernet key for secrets at rest (ephemeral if omitted)")
    parser.add_argument("--offline-threshold", type=float,
                        default=float(env("CONTROLPLANE_OFFLINE_THRESHOLD", OFFLINE_THRESHOLD)),
                        help="Seconds without heartbeat before a node is offline (default: 90)")
    parser.add_argument("--billing-interval", type=float,
                        default=float(env("CONTROLPLANE_BILLING_INTERVAL", BILLING_INTERVAL)),
                        help="Seconds between billing cycles (default: 3600)")
    parser.add_argument("--backup-interval", type=float,
                        default=float(env("CONTROLPLANE_BACKUP_INTERVAL", BACKUP_INTERVAL)),
                        help="Seconds between backup ticks (default: 60)")
    parser.add_argument("--suspend-scope", choices=[s.value for s in SuspendScope],
                        default=env("CONTROLPLANE_SUSPEND_SCOPE", SuspendScope.ORGANIZATION.value),
                        help="Suspend the whole organization or only the unpaid resource")
    parser.add_argument("--log-level", default=env("CONTROLPLANE_LOG_LEVEL", "INFO"),
                        help="Logging level (default: INFO)")
    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(name)-10s] %(levelname)-5s %(message)s",
        datefmt="%H:%M:%S",
    )

    control_plane = ControlPlane(
        db_path=args.db_path,
        admin_key=args.admin_key,
        secret_key=args.secret_key or None,
        offline_threshold=args.offline_threshold,
        billing_interval=args.billing_interval,
        backup_interval=args.backup_interval,
        suspend_scope=args.suspend_scope,
    )

    logger.info("=" * 60)
    logger.info("  Fleet Control Plane")
    logger.info("  REST API:      http://%s:%d", args.host, args.port)
    logger.info("  Database:      %s", args.db_path)
    logger.info("  Suspend scope: %s", args.suspend_scope)
    logger.info("=" * 60)

    try:
        uvicorn.run(control_plane.app, host=args.host, port=args.port, log_level=args.log_level.lower())
    except KeyboardInterrupt:
        logger.info("Shutting down...")


if __name__ == "__main__":
    main()
