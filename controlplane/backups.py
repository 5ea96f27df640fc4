"""
backups.py - Recurring database backup scheduler.

A policy covers one database, or every database of its organization when it
has no database id. Each tick dispatches a ``backup`` task for every due
(policy, database) pair whose node is online, then moves the policy's
``next_run_at`` forward by whole intervals until it lies in the future. The
advance happens whether or not dispatch succeeded, so an offline node cannot
keep a policy permanently due.
"""

import logging
import math
import time
from typing import TYPE_CHECKING, List, Optional

from controlplane.errors import ErrorCode, fail, ok
from controlplane.scheduler import TaskType

if TYPE_CHECKING:
    from controlplane.dispatch import TaskChannel
    from controlplane.scheduler import FleetScheduler
    from controlplane.storage import BackupRepo, DatabaseRepo

logger = logging.getLogger("backups")

BACKUP_INTERVAL = 60  # seconds between ticks


def next_run_after(previous: float, frequency_minutes: int, now: float) -> float:
    """Advance ``previous`` by whole intervals until it is strictly after ``now``."""
    step = frequency_minutes * 60
    if previous > now:
        return previous
    intervals = math.floor((now - previous) / step) + 1
    return previous + intervals * step


class BackupScheduler:
    def __init__(
        self,
        backup_repo: "BackupRepo",
        database_repo: "DatabaseRepo",
        scheduler: "FleetScheduler",
        channel: "TaskChannel",
    ):
        self._backups = backup_repo
        self._databases = database_repo
        self._scheduler = scheduler
        self._channel = channel

    async def upsert_policy(
        self,
        organization_id: str,
        database_id: Optional[str],
        frequency_minutes: int,
        retention_days: int = 7,
        now: Optional[float] = None,
    ) -> dict:
        if frequency_minutes <= 0:
            return fail(ErrorCode.INVALID_REQUEST, "frequency_minutes must be positive")
        if database_id:
            db = await self._databases.get(database_id)
            if db is None or db["organization_id"] != organization_id:
                return fail(ErrorCode.NOT_FOUND, "Database not found")
        now = now if now is not None else time.time()
        policy = await self._backups.upsert_policy(
            organization_id, database_id, frequency_minutes, retention_days,
            next_run_at=now + frequency_minutes * 60,
        )
        logger.info("Backup policy %d for %s/%s every %d min", policy["id"], organization_id,
                    database_id or "*", frequency_minutes)
        return ok(policy=policy)

    async def list_policies(self, organization_id: str) -> List[dict]:
        return await self._backups.list_policies(organization_id)

    async def deactivate_policy(self, policy_id: int) -> bool:
        return await self._backups.deactivate_policy(policy_id)

    async def due_backups(self, now: Optional[float] = None) -> List[dict]:
        now = now if now is not None else time.time()
        return await self._backups.due(now)

    async def tick(self, now: Optional[float] = None) -> dict:
        now = now if now is not None else time.time()
        dispatched = skipped = 0
        for item in await self._backups.due(now):
            node_id = item["node_id"]
            if not node_id or not self._channel.is_online(node_id):
                skipped += 1
                logger.info("Backup of %s skipped: node %s offline", item["database_id"], node_id)
                continue
            result = await self._scheduler.dispatch_task(
                node_id, TaskType.BACKUP, "database", item["database_id"],
                {
                    "database_id": item["database_id"],
                    "db_type": item["db_type"],
                    "database_name": item["database_name"],
                    "policy_id": item["policy_id"],
                    "retention_days": item["retention_days"],
                },
            )
            if result["success"]:
                dispatched += 1
            else:
                skipped += 1

        advanced = 0
        for policy in await self._backups.due_policies(now):
            nxt = next_run_after(policy["next_run_at"], policy["frequency_minutes"], now)
            await self._backups.set_next_run(policy["id"], nxt)
            advanced += 1
        if dispatched or skipped:
            logger.info("Backup tick: %d dispatched, %d skipped, %d policies advanced",
                        dispatched, skipped, advanced)
        return {"dispatched": dispatched, "skipped": skipped, "advanced": advanced}

    async def record_backup(
        self, database_id: str, storage_path: str, size_bytes: Optional[int] = None
    ) -> int:
        backup_id = await self._backups.record_backup(database_id, storage_path, size_bytes)
        logger.info("Recorded backup %d of %s at %s", backup_id, database_id, storage_path)
        return backup_id

    async def list_backups(self, database_id: str) -> List[dict]:
        return await self._backups.list_backups(database_id)
