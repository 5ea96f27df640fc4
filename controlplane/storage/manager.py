import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

try:
    import aiosqlite
except ImportError:
    raise ImportError(
        "aiosqlite is required for the storage layer. "
        "Install with: pip install aiosqlite"
    )

from ._migrate import run_migrations
from .alerts import AlertRepo
from .applications import ApplicationRepo
from .backups import BackupRepo
from .builds import BuildRepo
from .databases import DatabaseRepo
from .environment import EnvironmentRepo
from .ledger import LedgerRepo
from .nodes import NodeRepo
from .organizations import OrganizationRepo
from .plans import PlanRepo
from .runtimes import RuntimeRepo
from .tasks import TaskRepo

logger = logging.getLogger("storage")


class StorageManager:
    """Top-level manager: opens the database, runs migrations, exposes repos.

    All repos share one connection and one write lock. Single-statement writes
    take the lock around execute+commit; multi-statement units of work go
    through :meth:`transaction`, which holds the lock for their whole duration
    so no other coroutine's commit can land in the middle.
    """

    def __init__(self, db_path: str = "controlplane.db"):
        self.db_path = db_path
        self._db: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()
        self.organizations: Optional[OrganizationRepo] = None
        self.nodes: Optional[NodeRepo] = None
        self.plans: Optional[PlanRepo] = None
        self.runtimes: Optional[RuntimeRepo] = None
        self.applications: Optional[ApplicationRepo] = None
        self.databases: Optional[DatabaseRepo] = None
        self.environment: Optional[EnvironmentRepo] = None
        self.builds: Optional[BuildRepo] = None
        self.tasks: Optional[TaskRepo] = None
        self.ledger: Optional[LedgerRepo] = None
        self.backups: Optional[BackupRepo] = None
        self.alerts: Optional[AlertRepo] = None

    async def initialize(self):
        self._db = await aiosqlite.connect(self.db_path)
        self._db.row_factory = aiosqlite.Row
        await self._db.execute("PRAGMA journal_mode=WAL")
        await self._db.execute("PRAGMA foreign_keys=ON")
        await run_migrations(self._db, logger)

        self.organizations = OrganizationRepo(self._db, self._lock)
        self.nodes = NodeRepo(self._db, self._lock)
        self.plans = PlanRepo(self._db, self._lock)
        self.runtimes = RuntimeRepo(self._db, self._lock)
        self.applications = ApplicationRepo(self._db, self._lock)
        self.databases = DatabaseRepo(self._db, self._lock)
        self.environment = EnvironmentRepo(self._db, self._lock)
        self.builds = BuildRepo(self._db, self._lock)
        self.tasks = TaskRepo(self._db, self._lock)
        self.ledger = LedgerRepo(self._db, self._lock)
        self.backups = BackupRepo(self._db, self._lock)
        self.alerts = AlertRepo(self._db, self._lock)

        logger.info("Storage initialized: %s", self.db_path)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Run a unit of work under BEGIN IMMEDIATE; commit on exit, roll back on error."""
        async with self._lock:
            await self._db.execute("BEGIN IMMEDIATE")
            try:
                yield self._db
            except BaseException:
                await self._db.rollback()
                raise
            else:
                await self._db.commit()

    async def close(self):
        if self._db:
            await self._db.close()
            self._db = None
            logger.info("Storage closed")
