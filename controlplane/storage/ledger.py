import asyncio
from typing import List, Optional

import aiosqlite

_COLUMNS = (
    "id, organization_id, resource_type, resource_id, plan_id, instance_count, hourly_rate, "
    "hours_charged, total_cost, period_start, period_end, charged, failure_reason, created_at"
)


class LedgerRepo:
    """Append-only billing ledger."""

    def __init__(self, db: aiosqlite.Connection, lock: asyncio.Lock):
        self._db = db
        self._lock = lock

    async def append(
        self,
        organization_id: str,
        resource_type: str,
        resource_id: str,
        plan_id: str,
        instance_count: int,
        hourly_rate: float,
        hours_charged: int,
        total_cost: float,
        period_start: float,
        period_end: float,
        charged: bool,
        failure_reason: Optional[str],
        created_at: float,
    ) -> int:
        """Insert one entry. Caller owns the transaction."""
        cursor = await self._db.execute(
            "INSERT INTO billing_ledger (organization_id, resource_type, resource_id, plan_id, "
            "instance_count, hourly_rate, hours_charged, total_cost, period_start, period_end, "
            "charged, failure_reason, created_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (organization_id, resource_type, resource_id, plan_id, instance_count, hourly_rate,
             hours_charged, total_cost, period_start, period_end, 1 if charged else 0,
             failure_reason, created_at),
        )
        return cursor.lastrowid

    async def list_for_organization(
        self, organization_id: str, limit: int = 100, offset: int = 0
    ) -> List[dict]:
        async with self._db.execute(
            f"SELECT {_COLUMNS} FROM billing_ledger WHERE organization_id = ? "
            "ORDER BY id DESC LIMIT ? OFFSET ?",
            (organization_id, limit, offset),
        ) as cursor:
            return [dict(row) async for row in cursor]

    async def list_for_resource(self, resource_type: str, resource_id: str) -> List[dict]:
        async with self._db.execute(
            f"SELECT {_COLUMNS} FROM billing_ledger WHERE resource_type = ? AND resource_id = ? "
            "ORDER BY period_start",
            (resource_type, resource_id),
        ) as cursor:
            return [dict(row) async for row in cursor]

    async def charged_total(
        self, organization_id: str, since: Optional[float] = None, until: Optional[float] = None
    ) -> float:
        sql = (
            "SELECT COALESCE(SUM(total_cost), 0) FROM billing_ledger "
            "WHERE organization_id = ? AND charged = 1"
        )
        params: tuple = (organization_id,)
        if since is not None:
            sql += " AND created_at >= ?"
            params += (since,)
        if until is not None:
            sql += " AND created_at < ?"
            params += (until,)
        async with self._db.execute(sql, params) as cursor:
            row = await cursor.fetchone()
        return round(row[0], 4) if row else 0.0

    async def usage_by_resource(
        self, organization_id: str, since: Optional[float] = None
    ) -> List[dict]:
        sql = (
            "SELECT resource_type, resource_id, SUM(hours_charged) AS hours, "
            "SUM(CASE WHEN charged = 1 THEN total_cost ELSE 0 END) AS charged_cost, "
            "SUM(CASE WHEN charged = 0 THEN total_cost ELSE 0 END) AS failed_cost "
            "FROM billing_ledger WHERE organization_id = ?"
        )
        params: tuple = (organization_id,)
        if since is not None:
            sql += " AND created_at >= ?"
            params += (since,)
        sql += " GROUP BY resource_type, resource_id ORDER BY resource_type, resource_id"
        async with self._db.execute(sql, params) as cursor:
            return [dict(row) async for row in cursor]
