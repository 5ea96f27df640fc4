"""
wallet.py - Organization wallet capability.

Balance reads and debits used by the billing engine, plus deposits for the
admin API. ``debit`` runs inside the caller's storage transaction and never
commits by itself.
"""

import logging
import sqlite3
import time
from typing import TYPE_CHECKING, List, Optional

if TYPE_CHECKING:
    from controlplane.storage import OrganizationRepo

logger = logging.getLogger("wallet")


class WalletError(Exception):
    """The wallet backend failed to move funds."""


class WalletService:
    """Wallet operations backed by SQLite via OrganizationRepo."""

    def __init__(self, repo: "OrganizationRepo"):
        self._repo = repo

    async def create_organization(
        self, org_id: str, name: str = "", balance: float = 0.0, low_balance_threshold: float = 1.0
    ) -> Optional[dict]:
        org = await self._repo.create(
            org_id, name, balance=balance, low_balance_threshold=low_balance_threshold
        )
        if org:
            logger.info("Created/found organization %s balance=%.4f", org_id, org["balance"])
        return org

    async def get_organization(self, org_id: str) -> Optional[dict]:
        return await self._repo.get(org_id)

    async def balance(self, org_id: str) -> Optional[float]:
        """Current balance, or None when the organization has no wallet."""
        return await self._repo.read_balance(org_id)

    async def debit(
        self, org_id: str, amount: float, reference: str, description: str = ""
    ) -> bool:
        try:
            return await self._repo.debit(org_id, amount, reference, description, time.time())
        except sqlite3.Error as e:
            raise WalletError(f"debit of {amount:.4f} for {org_id} failed: {e}") from e

    async def deposit(self, org_id: str, amount: float, reference: str = "") -> dict:
        org = await self._repo.deposit(org_id, amount, reference)
        logger.info("Deposit %.4f to %s (balance=%.4f)", amount, org_id, org["balance"])
        return org

    async def transactions(self, org_id: str, limit: int = 100) -> List[dict]:
        return await self._repo.list_transactions(org_id, limit)
