import asyncio
import logging
import time
from typing import List, Optional

import aiosqlite

logger = logging.getLogger("storage")

_COLUMNS = (
    "id, name, balance, low_balance_threshold, low_balance_alerted_month, created_at, updated_at"
)


class OrganizationRepo:
    """CRUD operations for the organizations (wallet) table."""

    def __init__(self, db: aiosqlite.Connection, lock: asyncio.Lock):
        self._db = db
        self._lock = lock

    async def create(
        self,
        org_id: str,
        name: str = "",
        balance: float = 0.0,
        low_balance_threshold: float = 1.0,
    ) -> Optional[dict]:
        now = time.time()
        async with self._lock:
            await self._db.execute(
                "INSERT OR IGNORE INTO organizations "
                "(id, name, balance, low_balance_threshold, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (org_id, name, balance, low_balance_threshold, now, now),
            )
            await self._db.commit()
        return await self.get(org_id)

    async def get(self, org_id: str) -> Optional[dict]:
        async with self._db.execute(
            f"SELECT {_COLUMNS} FROM organizations WHERE id = ?", (org_id,)
        ) as cursor:
            row = await cursor.fetchone()
        return dict(row) if row else None

    async def list_all(self) -> List[dict]:
        async with self._db.execute(
            f"SELECT {_COLUMNS} FROM organizations ORDER BY created_at"
        ) as cursor:
            return [dict(row) async for row in cursor]

    async def deposit(self, org_id: str, amount: float, reference: str = "") -> dict:
        if amount <= 0:
            raise ValueError("Deposit amount must be positive")
        now = time.time()
        async with self._lock:
            cursor = await self._db.execute(
                "UPDATE organizations SET balance = balance + ?, updated_at = ? WHERE id = ?",
                (amount, now, org_id),
            )
            if cursor.rowcount == 0:
                raise KeyError(f"Organization {org_id} not found")
            await self._db.execute(
                "INSERT INTO wallet_transactions "
                "(organization_id, type, amount, reference_id, description, created_at) "
                "VALUES (?, 'deposit', ?, ?, 'Wallet top-up', ?)",
                (org_id, amount, reference, now),
            )
            await self._db.commit()
        return await self.get(org_id)

    async def read_balance(self, org_id: str) -> Optional[float]:
        async with self._db.execute(
            "SELECT balance FROM organizations WHERE id = ?", (org_id,)
        ) as cursor:
            row = await cursor.fetchone()
        return row[0] if row else None

    async def debit(
        self, org_id: str, amount: float, reference: str, description: str, now: float
    ) -> bool:
        """Conditionally subtract ``amount``. Caller owns the transaction."""
        cursor = await self._db.execute(
            "UPDATE organizations SET balance = ROUND(balance - ?, 4), updated_at = ? "
            "WHERE id = ? AND balance >= ?",
            (amount, now, org_id, amount),
        )
        if cursor.rowcount == 0:
            return False
        await self._db.execute(
            "INSERT INTO wallet_transactions "
            "(organization_id, type, amount, reference_id, description, created_at) "
            "VALUES (?, 'charge', ?, ?, ?, ?)",
            (org_id, -amount, reference, description, now),
        )
        return True

    async def set_low_balance_threshold(self, org_id: str, threshold: float):
        async with self._lock:
            await self._db.execute(
                "UPDATE organizations SET low_balance_threshold = ?, updated_at = ? WHERE id = ?",
                (threshold, time.time(), org_id),
            )
            await self._db.commit()

    async def mark_low_balance_alerted(self, org_id: str, month: str) -> bool:
        """Record the low-balance alert for ``month``; False if already recorded."""
        async with self._lock:
            cursor = await self._db.execute(
                "UPDATE organizations SET low_balance_alerted_month = ?, updated_at = ? "
                "WHERE id = ? AND (low_balance_alerted_month IS NULL OR low_balance_alerted_month != ?)",
                (month, time.time(), org_id, month),
            )
            await self._db.commit()
        return cursor.rowcount == 1

    async def list_transactions(self, org_id: str, limit: int = 100) -> List[dict]:
        async with self._db.execute(
            "SELECT id, organization_id, type, amount, reference_id, description, created_at "
            "FROM wallet_transactions WHERE organization_id = ? ORDER BY id DESC LIMIT ?",
            (org_id, limit),
        ) as cursor:
            return [dict(row) async for row in cursor]
