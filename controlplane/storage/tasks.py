import asyncio
import json
import time
from typing import List, Optional

import aiosqlite

_COLUMNS = (
    "task_id, node_id, type, resource_type, resource_id, payload_json, priority, status, "
    "result_json, created_at, sent_at, completed_at"
)


def _row_to_dict(row) -> dict:
    d = dict(row)
    d["payload"] = json.loads(d.pop("payload_json") or "{}")
    result = d.pop("result_json")
    d["result"] = json.loads(result) if result else None
    return d


class TaskRepo:
    """Audit trail of tasks dispatched to nodes."""

    def __init__(self, db: aiosqlite.Connection, lock: asyncio.Lock):
        self._db = db
        self._lock = lock

    async def create(
        self,
        task_id: str,
        node_id: str,
        task_type: str,
        resource_type: str,
        resource_id: str,
        payload: dict,
        priority: int = 5,
    ) -> dict:
        async with self._lock:
            await self._db.execute(
                "INSERT INTO tasks (task_id, node_id, type, resource_type, resource_id, "
                "payload_json, priority, status, created_at) VALUES (?, ?, ?, ?, ?, ?, ?, 'pending', ?)",
                (task_id, node_id, task_type, resource_type, resource_id,
                 json.dumps(payload), priority, time.time()),
            )
            await self._db.commit()
        return await self.get(task_id)

    async def get(self, task_id: str) -> Optional[dict]:
        async with self._db.execute(
            f"SELECT {_COLUMNS} FROM tasks WHERE task_id = ?", (task_id,)
        ) as cursor:
            row = await cursor.fetchone()
        return _row_to_dict(row) if row else None

    async def mark_sent(self, task_id: str):
        async with self._lock:
            await self._db.execute(
                "UPDATE tasks SET status = 'sent', sent_at = ? WHERE task_id = ? AND status = 'pending'",
                (time.time(), task_id),
            )
            await self._db.commit()

    async def mark_undelivered(self, task_id: str):
        async with self._lock:
            await self._db.execute(
                "UPDATE tasks SET status = 'undelivered' WHERE task_id = ? AND status = 'pending'",
                (task_id,),
            )
            await self._db.commit()

    async def complete(self, task_id: str, success: bool, result: Optional[dict] = None) -> bool:
        """Record an agent-reported outcome; False for unknown or already finished tasks."""
        status = "completed" if success else "failed"
        async with self._lock:
            cursor = await self._db.execute(
                "UPDATE tasks SET status = ?, result_json = ?, completed_at = ? "
                "WHERE task_id = ? AND status IN ('pending', 'sent')",
                (status, json.dumps(result or {}), time.time(), task_id),
            )
            await self._db.commit()
        return cursor.rowcount == 1

    async def cancel_pending(self, resource_type: str, resource_id: str) -> int:
        """Cancel tasks for a resource that never reached a node."""
        async with self._lock:
            cursor = await self._db.execute(
                "UPDATE tasks SET status = 'cancelled' WHERE resource_type = ? AND resource_id = ? "
                "AND status IN ('pending', 'undelivered')",
                (resource_type, resource_id),
            )
            await self._db.commit()
        return cursor.rowcount

    async def list_for_resource(
        self, resource_type: str, resource_id: str, limit: int = 50
    ) -> List[dict]:
        async with self._db.execute(
            f"SELECT {_COLUMNS} FROM tasks WHERE resource_type = ? AND resource_id = ? "
            "ORDER BY created_at DESC LIMIT ?",
            (resource_type, resource_id, limit),
        ) as cursor:
            return [_row_to_dict(row) async for row in cursor]

    async def list_for_node(self, node_id: str, status: Optional[str] = None) -> List[dict]:
        if status:
            sql = f"SELECT {_COLUMNS} FROM tasks WHERE node_id = ? AND status = ? ORDER BY created_at"
            params: tuple = (node_id, status)
        else:
            sql = f"SELECT {_COLUMNS} FROM tasks WHERE node_id = ? ORDER BY created_at"
            params = (node_id,)
        async with self._db.execute(sql, params) as cursor:
            return [_row_to_dict(row) async for row in cursor]
