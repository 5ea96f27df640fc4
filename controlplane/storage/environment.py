import asyncio
import time
from typing import Dict

import aiosqlite


class EnvironmentRepo:
    """Per-application environment variables. Values are stored encrypted."""

    def __init__(self, db: aiosqlite.Connection, lock: asyncio.Lock):
        self._db = db
        self._lock = lock

    async def set(self, application_id: str, key: str, encrypted_value: str):
        async with self._lock:
            await self._db.execute(
                "INSERT OR REPLACE INTO environment_vars (application_id, key, value, updated_at) "
                "VALUES (?, ?, ?, ?)",
                (application_id, key, encrypted_value, time.time()),
            )
            await self._db.commit()

    async def delete(self, application_id: str, key: str) -> bool:
        async with self._lock:
            cursor = await self._db.execute(
                "DELETE FROM environment_vars WHERE application_id = ? AND key = ?",
                (application_id, key),
            )
            await self._db.commit()
        return cursor.rowcount == 1

    async def get_all(self, application_id: str) -> Dict[str, str]:
        async with self._db.execute(
            "SELECT key, value FROM environment_vars WHERE application_id = ? ORDER BY key",
            (application_id,),
        ) as cursor:
            return {row["key"]: row["value"] async for row in cursor}
