import asyncio
import time
from typing import List, Optional

import aiosqlite

_COLUMNS = (
    "id, application_id, status, git_commit_sha, git_commit_message, error, created_at, finished_at"
)


class BuildRepo:
    """CRUD operations for the builds table."""

    def __init__(self, db: aiosqlite.Connection, lock: asyncio.Lock):
        self._db = db
        self._lock = lock

    async def create(
        self,
        application_id: str,
        git_commit_sha: Optional[str] = None,
        git_commit_message: Optional[str] = None,
    ) -> dict:
        async with self._lock:
            cursor = await self._db.execute(
                "INSERT INTO builds (application_id, status, git_commit_sha, git_commit_message, "
                "created_at) VALUES (?, 'pending', ?, ?, ?)",
                (application_id, git_commit_sha, git_commit_message, time.time()),
            )
            await self._db.commit()
            build_id = cursor.lastrowid
        return await self.get(build_id)

    async def get(self, build_id: int) -> Optional[dict]:
        async with self._db.execute(
            f"SELECT {_COLUMNS} FROM builds WHERE id = ?", (build_id,)
        ) as cursor:
            row = await cursor.fetchone()
        return dict(row) if row else None

    async def update_status(self, build_id: int, status: str, error: Optional[str] = None):
        finished_at = time.time() if status in ("success", "failed") else None
        async with self._lock:
            await self._db.execute(
                "UPDATE builds SET status = ?, error = COALESCE(?, error), "
                "finished_at = COALESCE(?, finished_at) WHERE id = ?",
                (status, error, finished_at, build_id),
            )
            await self._db.commit()

    async def list_for_application(self, application_id: str, limit: int = 20) -> List[dict]:
        async with self._db.execute(
            f"SELECT {_COLUMNS} FROM builds WHERE application_id = ? ORDER BY id DESC LIMIT ?",
            (application_id, limit),
        ) as cursor:
            return [dict(row) async for row in cursor]
