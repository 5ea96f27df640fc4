import asyncio
import logging
import time
from typing import List, Optional, Sequence

import aiosqlite

logger = logging.getLogger("storage")

_COLUMNS = (
    "id, name, region, host_address, status, cpu_total, memory_total_mb, disk_total_mb, "
    "cpu_used, memory_used_mb, disk_used_mb, container_count, registration_token, "
    "registration_token_expires_at, node_secret, last_heartbeat, last_capacity_alert_at, "
    "created_at, updated_at"
)

# Heartbeat fields replaced wholesale when present in a snapshot.
METRIC_FIELDS = (
    "cpu_total",
    "memory_total_mb",
    "disk_total_mb",
    "cpu_used",
    "memory_used_mb",
    "disk_used_mb",
    "container_count",
)


class NodeRepo:
    """CRUD operations for the nodes table."""

    def __init__(self, db: aiosqlite.Connection, lock: asyncio.Lock):
        self._db = db
        self._lock = lock

    async def create_pending(
        self,
        node_id: str,
        name: str,
        region: str,
        host_address: Optional[str],
        token: str,
        expires_at: float,
    ) -> dict:
        now = time.time()
        async with self._lock:
            await self._db.execute(
                "INSERT INTO nodes (id, name, region, host_address, status, registration_token, "
                "registration_token_expires_at, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, 'pending', ?, ?, ?, ?)",
                (node_id, name, region, host_address, token, expires_at, now, now),
            )
            await self._db.commit()
        return await self.get(node_id)

    async def get(self, node_id: str) -> Optional[dict]:
        async with self._db.execute(
            f"SELECT {_COLUMNS} FROM nodes WHERE id = ?", (node_id,)
        ) as cursor:
            row = await cursor.fetchone()
        return dict(row) if row else None

    async def get_by_token(self, token: str, now: float) -> Optional[dict]:
        async with self._db.execute(
            f"SELECT {_COLUMNS} FROM nodes WHERE registration_token = ? "
            "AND (registration_token_expires_at IS NULL OR registration_token_expires_at > ?)",
            (token, now),
        ) as cursor:
            row = await cursor.fetchone()
        return dict(row) if row else None

    async def redeem(
        self, node_id: str, token: str, node_secret: str, host_address: Optional[str]
    ) -> Optional[dict]:
        """Consume the registration token; None if it was already consumed."""
        async with self._lock:
            cursor = await self._db.execute(
                "UPDATE nodes SET node_secret = ?, host_address = COALESCE(?, host_address), "
                "status = 'offline', registration_token = NULL, "
                "registration_token_expires_at = NULL, updated_at = ? "
                "WHERE id = ? AND registration_token = ?",
                (node_secret, host_address, time.time(), node_id, token),
            )
            await self._db.commit()
        if cursor.rowcount == 0:
            return None
        return await self.get(node_id)

    async def apply_heartbeat(
        self,
        node_id: str,
        metrics: dict,
        status: str,
        alerted: bool,
        now: float,
    ) -> Optional[dict]:
        values = [metrics.get(f) for f in METRIC_FIELDS]
        assignments = ", ".join(f"{f} = COALESCE(?, {f})" for f in METRIC_FIELDS)
        async with self._lock:
            cursor = await self._db.execute(
                f"UPDATE nodes SET {assignments}, status = ?, last_heartbeat = ?, "
                "last_capacity_alert_at = CASE WHEN ? THEN ? ELSE last_capacity_alert_at END, "
                "updated_at = ? WHERE id = ?",
                (*values, status, now, 1 if alerted else 0, now, now, node_id),
            )
            await self._db.commit()
        if cursor.rowcount == 0:
            return None
        return await self.get(node_id)

    async def mark_offline(self, cutoff: float) -> List[dict]:
        """Flip online/degraded nodes whose last heartbeat is at or before ``cutoff``."""
        async with self._lock:
            async with self._db.execute(
                "SELECT id, name, region, last_heartbeat FROM nodes "
                "WHERE status IN ('online', 'degraded') "
                "AND (last_heartbeat IS NULL OR last_heartbeat <= ?)",
                (cutoff,),
            ) as cursor:
                stale = [dict(row) async for row in cursor]
            if stale:
                await self._db.executemany(
                    "UPDATE nodes SET status = 'offline', updated_at = ? "
                    "WHERE id = ? AND status IN ('online', 'degraded')",
                    [(time.time(), n["id"]) for n in stale],
                )
                await self._db.commit()
        return stale

    async def update_status(
        self, node_id: str, status: str, only_from: Optional[Sequence[str]] = None
    ) -> bool:
        sql = "UPDATE nodes SET status = ?, updated_at = ? WHERE id = ?"
        params: tuple = (status, time.time(), node_id)
        if only_from:
            sql += f" AND status IN ({', '.join('?' for _ in only_from)})"
            params += tuple(only_from)
        async with self._lock:
            cursor = await self._db.execute(sql, params)
            await self._db.commit()
        return cursor.rowcount == 1

    async def list_all(self) -> List[dict]:
        async with self._db.execute(
            f"SELECT {_COLUMNS} FROM nodes ORDER BY created_at"
        ) as cursor:
            return [dict(row) async for row in cursor]

    async def list_schedulable(self, region: str) -> List[dict]:
        async with self._db.execute(
            f"SELECT {_COLUMNS} FROM nodes WHERE region = ? AND status IN ('online', 'degraded') "
            "ORDER BY created_at",
            (region,),
        ) as cursor:
            return [dict(row) async for row in cursor]

    async def count_workloads(self, node_id: str) -> int:
        async with self._db.execute(
            "SELECT (SELECT COUNT(*) FROM applications WHERE node_id = ? AND status != 'deleted') + "
            "(SELECT COUNT(*) FROM databases WHERE node_id = ? AND status != 'deleted')",
            (node_id, node_id),
        ) as cursor:
            row = await cursor.fetchone()
        return row[0] if row else 0

    async def delete(self, node_id: str) -> bool:
        async with self._lock:
            cursor = await self._db.execute("DELETE FROM nodes WHERE id = ?", (node_id,))
            await self._db.commit()
        return cursor.rowcount == 1

    async def count(self) -> int:
        async with self._db.execute("SELECT COUNT(*) FROM nodes") as cursor:
            row = await cursor.fetchone()
        return row[0] if row else 0
