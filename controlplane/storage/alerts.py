import asyncio
import json
import time
from typing import List, Optional

import aiosqlite


class AlertRepo:
    """Stored notifications for fleet admins and organizations."""

    def __init__(self, db: aiosqlite.Connection, lock: asyncio.Lock):
        self._db = db
        self._lock = lock

    async def create(
        self,
        event_type: str,
        audience: str,
        message: str,
        organization_id: Optional[str] = None,
        entity_type: str = "",
        entity_id: Optional[str] = None,
        severity: str = "info",
        metadata: Optional[dict] = None,
    ) -> int:
        async with self._lock:
            cursor = await self._db.execute(
                "INSERT INTO alerts (event_type, audience, organization_id, entity_type, entity_id, "
                "message, severity, metadata_json, created_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (event_type, audience, organization_id, entity_type, entity_id, message,
                 severity, json.dumps(metadata or {}), time.time()),
            )
            await self._db.commit()
        return cursor.lastrowid

    async def list_recent(
        self,
        audience: Optional[str] = None,
        organization_id: Optional[str] = None,
        event_type: Optional[str] = None,
        limit: int = 100,
    ) -> List[dict]:
        clauses, params = [], []
        if audience:
            clauses.append("audience = ?")
            params.append(audience)
        if organization_id:
            clauses.append("organization_id = ?")
            params.append(organization_id)
        if event_type:
            clauses.append("event_type = ?")
            params.append(event_type)
        where = f"WHERE {' AND '.join(clauses)} " if clauses else ""
        async with self._db.execute(
            "SELECT id, event_type, audience, organization_id, entity_type, entity_id, message, "
            f"severity, metadata_json, created_at FROM alerts {where}ORDER BY id DESC LIMIT ?",
            (*params, limit),
        ) as cursor:
            rows = [dict(row) async for row in cursor]
        for r in rows:
            r["metadata"] = json.loads(r.pop("metadata_json") or "{}")
        return rows
