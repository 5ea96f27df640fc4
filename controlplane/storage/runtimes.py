import asyncio
import time
from typing import Optional

import aiosqlite

_COLUMNS = "id, name, runtime_type, version, base_image, build_command, start_command, created_at"


class RuntimeRepo:
    """CRUD operations for the runtimes table."""

    def __init__(self, db: aiosqlite.Connection, lock: asyncio.Lock):
        self._db = db
        self._lock = lock

    async def create(
        self,
        runtime_id: str,
        name: str,
        runtime_type: str,
        base_image: str,
        version: str = "",
        build_command: Optional[str] = None,
        start_command: Optional[str] = None,
    ) -> dict:
        async with self._lock:
            await self._db.execute(
                "INSERT INTO runtimes (id, name, runtime_type, version, base_image, "
                "build_command, start_command, created_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (runtime_id, name, runtime_type, version, base_image,
                 build_command, start_command, time.time()),
            )
            await self._db.commit()
        return await self.get(runtime_id)

    async def get(self, runtime_id: str) -> Optional[dict]:
        async with self._db.execute(
            f"SELECT {_COLUMNS} FROM runtimes WHERE id = ?", (runtime_id,)
        ) as cursor:
            row = await cursor.fetchone()
        return dict(row) if row else None
