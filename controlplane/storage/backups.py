import asyncio
import time
from typing import List, Optional

import aiosqlite

_POLICY_COLUMNS = (
    "id, organization_id, database_id, frequency_minutes, retention_days, next_run_at, "
    "active, created_at"
)

# Stored in backup_policies.database_id for policies covering every database of the org.
ALL_DATABASES = ""


class BackupRepo:
    """Backup policies and completed backup records."""

    def __init__(self, db: aiosqlite.Connection, lock: asyncio.Lock):
        self._db = db
        self._lock = lock

    async def upsert_policy(
        self,
        organization_id: str,
        database_id: Optional[str],
        frequency_minutes: int,
        retention_days: int,
        next_run_at: float,
    ) -> dict:
        db_key = database_id or ALL_DATABASES
        async with self._lock:
            await self._db.execute(
                "INSERT INTO backup_policies (organization_id, database_id, frequency_minutes, "
                "retention_days, next_run_at, active, created_at) VALUES (?, ?, ?, ?, ?, 1, ?) "
                "ON CONFLICT (organization_id, database_id) DO UPDATE SET "
                "frequency_minutes = excluded.frequency_minutes, "
                "retention_days = excluded.retention_days, "
                "next_run_at = excluded.next_run_at, active = 1",
                (organization_id, db_key, frequency_minutes, retention_days, next_run_at, time.time()),
            )
            await self._db.commit()
        return await self.get_policy(organization_id, database_id)

    async def get_policy(self, organization_id: str, database_id: Optional[str]) -> Optional[dict]:
        async with self._db.execute(
            f"SELECT {_POLICY_COLUMNS} FROM backup_policies "
            "WHERE organization_id = ? AND database_id = ?",
            (organization_id, database_id or ALL_DATABASES),
        ) as cursor:
            row = await cursor.fetchone()
        return _policy(row) if row else None

    async def list_policies(self, organization_id: str) -> List[dict]:
        async with self._db.execute(
            f"SELECT {_POLICY_COLUMNS} FROM backup_policies WHERE organization_id = ? ORDER BY id",
            (organization_id,),
        ) as cursor:
            return [_policy(row) async for row in cursor]

    async def deactivate_policy(self, policy_id: int) -> bool:
        async with self._lock:
            cursor = await self._db.execute(
                "UPDATE backup_policies SET active = 0 WHERE id = ?", (policy_id,)
            )
            await self._db.commit()
        return cursor.rowcount == 1

    async def due(self, now: float) -> List[dict]:
        """Active due policies joined to each non-deleted database they cover."""
        async with self._db.execute(
            "SELECT p.id AS policy_id, p.organization_id, p.frequency_minutes, p.retention_days, "
            "p.next_run_at, d.id AS database_id, d.node_id, d.db_type, d.database_name "
            "FROM backup_policies p JOIN databases d ON d.organization_id = p.organization_id "
            "AND (p.database_id = '' OR p.database_id = d.id) "
            "WHERE p.active = 1 AND p.next_run_at <= ? AND d.status != 'deleted' "
            "ORDER BY p.id, d.id",
            (now,),
        ) as cursor:
            return [dict(row) async for row in cursor]

    async def due_policies(self, now: float) -> List[dict]:
        async with self._db.execute(
            f"SELECT {_POLICY_COLUMNS} FROM backup_policies WHERE active = 1 AND next_run_at <= ? "
            "ORDER BY id",
            (now,),
        ) as cursor:
            return [_policy(row) async for row in cursor]

    async def set_next_run(self, policy_id: int, next_run_at: float):
        async with self._lock:
            await self._db.execute(
                "UPDATE backup_policies SET next_run_at = ? WHERE id = ?",
                (next_run_at, policy_id),
            )
            await self._db.commit()

    async def record_backup(
        self, database_id: str, storage_path: str, size_bytes: Optional[int] = None
    ) -> int:
        async with self._lock:
            cursor = await self._db.execute(
                "INSERT INTO database_backups (database_id, storage_path, size_bytes, created_at) "
                "VALUES (?, ?, ?, ?)",
                (database_id, storage_path, size_bytes, time.time()),
            )
            await self._db.commit()
        return cursor.lastrowid

    async def get_backup(self, backup_id: int) -> Optional[dict]:
        async with self._db.execute(
            "SELECT id, database_id, storage_path, size_bytes, created_at FROM database_backups WHERE id = ?",
            (backup_id,),
        ) as cursor:
            row = await cursor.fetchone()
        return dict(row) if row else None

    async def list_backups(self, database_id: str) -> List[dict]:
        async with self._db.execute(
            "SELECT id, database_id, storage_path, size_bytes, created_at FROM database_backups "
            "WHERE database_id = ? ORDER BY created_at DESC",
            (database_id,),
        ) as cursor:
            return [dict(row) async for row in cursor]


def _policy(row) -> dict:
    d = dict(row)
    d["database_id"] = d["database_id"] or None
    d["active"] = bool(d["active"])
    return d
