import asyncio
import json
import time
from typing import Iterable, List, Optional

import aiosqlite

_COLUMNS = (
    "id, organization_id, name, plan_id, runtime_id, region, instance_count, node_id, status, "
    "git_repo_url, git_branch, git_oauth_token, webhook_secret, system_domain, "
    "custom_domains_json, port, current_build_id, last_billed_at, created_at, updated_at"
)


def _row_to_dict(row) -> dict:
    d = dict(row)
    d["custom_domains"] = json.loads(d.pop("custom_domains_json") or "[]")
    return d


class ApplicationRepo:
    """CRUD operations for the applications table."""

    def __init__(self, db: aiosqlite.Connection, lock: asyncio.Lock):
        self._db = db
        self._lock = lock

    async def create(
        self,
        app_id: str,
        organization_id: str,
        name: str,
        plan_id: str,
        region: str,
        runtime_id: Optional[str] = None,
        instance_count: int = 1,
        git_repo_url: Optional[str] = None,
        git_branch: str = "main",
        git_oauth_token: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        system_domain: str = "",
        custom_domains: Optional[List[str]] = None,
        port: int = 3000,
        status: str = "stopped",
        node_id: Optional[str] = None,
        created_at: Optional[float] = None,
    ) -> dict:
        # The billing cursor starts at creation time.
        now = created_at if created_at is not None else time.time()
        async with self._lock:
            await self._db.execute(
                "INSERT INTO applications (id, organization_id, name, plan_id, runtime_id, region, "
                "instance_count, node_id, status, git_repo_url, git_branch, git_oauth_token, "
                "webhook_secret, system_domain, custom_domains_json, port, last_billed_at, "
                "created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (app_id, organization_id, name, plan_id, runtime_id, region, instance_count,
                 node_id, status, git_repo_url, git_branch, git_oauth_token, webhook_secret,
                 system_domain, json.dumps(custom_domains or []), port, now, now, now),
            )
            await self._db.commit()
        return await self.get(app_id)

    async def get(self, app_id: str) -> Optional[dict]:
        async with self._db.execute(
            f"SELECT {_COLUMNS} FROM applications WHERE id = ?", (app_id,)
        ) as cursor:
            row = await cursor.fetchone()
        return _row_to_dict(row) if row else None

    async def update_status(self, app_id: str, status: str) -> bool:
        async with self._lock:
            cursor = await self._db.execute(
                "UPDATE applications SET status = ?, updated_at = ? WHERE id = ?",
                (status, time.time(), app_id),
            )
            await self._db.commit()
        return cursor.rowcount == 1

    async def set_placement(
        self,
        app_id: str,
        status: str,
        node_id: Optional[str],
        current_build_id: Optional[int] = None,
    ):
        """Set status and bound node together; keeps the build id unless given."""
        async with self._lock:
            await self._db.execute(
                "UPDATE applications SET status = ?, node_id = ?, "
                "current_build_id = COALESCE(?, current_build_id), updated_at = ? WHERE id = ?",
                (status, node_id, current_build_id, time.time(), app_id),
            )
            await self._db.commit()

    async def set_instance_count(self, app_id: str, instance_count: int):
        async with self._lock:
            await self._db.execute(
                "UPDATE applications SET instance_count = ?, updated_at = ? WHERE id = ?",
                (instance_count, time.time(), app_id),
            )
            await self._db.commit()

    async def list_for_organization(
        self, organization_id: str, statuses: Optional[Iterable[str]] = None
    ) -> List[dict]:
        sql = f"SELECT {_COLUMNS} FROM applications WHERE organization_id = ?"
        params: tuple = (organization_id,)
        if statuses:
            statuses = tuple(statuses)
            sql += f" AND status IN ({', '.join('?' for _ in statuses)})"
            params += statuses
        async with self._db.execute(sql + " ORDER BY created_at", params) as cursor:
            return [_row_to_dict(row) async for row in cursor]

    async def list_billable(self) -> List[dict]:
        """Running or suspended applications joined with their plan's rate."""
        async with self._db.execute(
            "SELECT a.id, a.organization_id, a.plan_id, a.instance_count, a.status, "
            "a.node_id, a.last_billed_at, p.hourly_rate "
            "FROM applications a JOIN plans p ON p.id = a.plan_id "
            "WHERE a.status IN ('running', 'suspended') ORDER BY a.created_at"
        ) as cursor:
            return [dict(row) async for row in cursor]

    async def advance_cursor(self, app_id: str, observed: float, new_value: float) -> bool:
        """Compare-and-swap the billing cursor. Caller owns the transaction."""
        cursor = await self._db.execute(
            "UPDATE applications SET last_billed_at = ? WHERE id = ? AND last_billed_at = ?",
            (new_value, app_id, observed),
        )
        return cursor.rowcount == 1
