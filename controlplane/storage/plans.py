import asyncio
import time
from typing import List, Optional

import aiosqlite

_COLUMNS = "id, name, cpu_cores, memory_mb, storage_mb, hourly_rate, created_at"


class PlanRepo:
    """CRUD operations for the plans table."""

    def __init__(self, db: aiosqlite.Connection, lock: asyncio.Lock):
        self._db = db
        self._lock = lock

    async def create(
        self,
        plan_id: str,
        name: str,
        cpu_cores: float,
        memory_mb: float,
        hourly_rate: float,
        storage_mb: float = 0,
    ) -> dict:
        async with self._lock:
            await self._db.execute(
                "INSERT INTO plans (id, name, cpu_cores, memory_mb, storage_mb, hourly_rate, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                (plan_id, name, cpu_cores, memory_mb, storage_mb, hourly_rate, time.time()),
            )
            await self._db.commit()
        return await self.get(plan_id)

    async def get(self, plan_id: str) -> Optional[dict]:
        async with self._db.execute(
            f"SELECT {_COLUMNS} FROM plans WHERE id = ?", (plan_id,)
        ) as cursor:
            row = await cursor.fetchone()
        return dict(row) if row else None

    async def list_all(self) -> List[dict]:
        async with self._db.execute(
            f"SELECT {_COLUMNS} FROM plans ORDER BY hourly_rate"
        ) as cursor:
            return [dict(row) async for row in cursor]
