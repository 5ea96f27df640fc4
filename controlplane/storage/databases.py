import asyncio
import time
from typing import Iterable, List, Optional

import aiosqlite

_COLUMNS = (
    "id, organization_id, name, db_type, version, plan_id, region, node_id, status, "
    "host, port, username, password, database_name, last_billed_at, created_at, updated_at"
)


class DatabaseRepo:
    """CRUD operations for the databases and application_databases tables."""

    def __init__(self, db: aiosqlite.Connection, lock: asyncio.Lock):
        self._db = db
        self._lock = lock

    async def create(
        self,
        database_id: str,
        organization_id: str,
        name: str,
        db_type: str,
        region: str,
        version: str = "",
        plan_id: Optional[str] = None,
        host: str = "",
        port: Optional[int] = None,
        username: str = "",
        password: str = "",
        database_name: str = "",
        status: str = "stopped",
        node_id: Optional[str] = None,
        created_at: Optional[float] = None,
    ) -> dict:
        now = created_at if created_at is not None else time.time()
        async with self._lock:
            await self._db.execute(
                "INSERT INTO databases (id, organization_id, name, db_type, version, plan_id, "
                "region, node_id, status, host, port, username, password, database_name, "
                "last_billed_at, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (database_id, organization_id, name, db_type, version, plan_id, region,
                 node_id, status, host, port, username, password, database_name or name,
                 now, now, now),
            )
            await self._db.commit()
        return await self.get(database_id)

    async def get(self, database_id: str) -> Optional[dict]:
        async with self._db.execute(
            f"SELECT {_COLUMNS} FROM databases WHERE id = ?", (database_id,)
        ) as cursor:
            row = await cursor.fetchone()
        return dict(row) if row else None

    async def update_status(self, database_id: str, status: str) -> bool:
        async with self._lock:
            cursor = await self._db.execute(
                "UPDATE databases SET status = ?, updated_at = ? WHERE id = ?",
                (status, time.time(), database_id),
            )
            await self._db.commit()
        return cursor.rowcount == 1

    async def set_placement(self, database_id: str, status: str, node_id: Optional[str]):
        async with self._lock:
            await self._db.execute(
                "UPDATE databases SET status = ?, node_id = ?, updated_at = ? WHERE id = ?",
                (status, node_id, time.time(), database_id),
            )
            await self._db.commit()

    async def list_for_organization(
        self, organization_id: str, statuses: Optional[Iterable[str]] = None
    ) -> List[dict]:
        sql = f"SELECT {_COLUMNS} FROM databases WHERE organization_id = ?"
        params: tuple = (organization_id,)
        if statuses:
            statuses = tuple(statuses)
            sql += f" AND status IN ({', '.join('?' for _ in statuses)})"
            params += statuses
        async with self._db.execute(sql + " ORDER BY created_at", params) as cursor:
            return [dict(row) async for row in cursor]

    async def list_billable(self) -> List[dict]:
        """Running or suspended databases that carry a plan."""
        async with self._db.execute(
            "SELECT d.id, d.organization_id, d.plan_id, 1 AS instance_count, d.status, "
            "d.node_id, d.last_billed_at, p.hourly_rate "
            "FROM databases d JOIN plans p ON p.id = d.plan_id "
            "WHERE d.status IN ('running', 'suspended') ORDER BY d.created_at"
        ) as cursor:
            return [dict(row) async for row in cursor]

    async def advance_cursor(self, database_id: str, observed: float, new_value: float) -> bool:
        """Compare-and-swap the billing cursor. Caller owns the transaction."""
        cursor = await self._db.execute(
            "UPDATE databases SET last_billed_at = ? WHERE id = ? AND last_billed_at = ?",
            (new_value, database_id, observed),
        )
        return cursor.rowcount == 1

    async def link(self, application_id: str, database_id: str, env_var_prefix: str = "DATABASE"):
        async with self._lock:
            await self._db.execute(
                "INSERT OR REPLACE INTO application_databases "
                "(application_id, database_id, env_var_prefix) VALUES (?, ?, ?)",
                (application_id, database_id, env_var_prefix.upper()),
            )
            await self._db.commit()

    async def linked_to(self, application_id: str) -> List[dict]:
        """Databases linked to an application, with their env-var prefix."""
        async with self._db.execute(
            "SELECT l.env_var_prefix, d.id, d.db_type, d.host, d.port, d.username, "
            "d.password, d.database_name, d.status "
            "FROM application_databases l JOIN databases d ON d.id = l.database_id "
            "WHERE l.application_id = ? AND d.status != 'deleted' ORDER BY l.env_var_prefix",
            (application_id,),
        ) as cursor:
            return [dict(row) async for row in cursor]
