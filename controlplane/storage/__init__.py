from ._schema import SCHEMA_VERSION, SCHEMA_SQL
from .alerts import AlertRepo
from .applications import ApplicationRepo
from .backups import ALL_DATABASES, BackupRepo
from .builds import BuildRepo
from .databases import DatabaseRepo
from .environment import EnvironmentRepo
from .ledger import LedgerRepo
from .nodes import NodeRepo
from .organizations import OrganizationRepo
from .plans import PlanRepo
from .runtimes import RuntimeRepo
from .tasks import TaskRepo
from .manager import StorageManager

__all__ = [
    "SCHEMA_VERSION",
    "SCHEMA_SQL",
    "ALL_DATABASES",
    "AlertRepo",
    "ApplicationRepo",
    "BackupRepo",
    "BuildRepo",
    "DatabaseRepo",
    "EnvironmentRepo",
    "LedgerRepo",
    "NodeRepo",
    "OrganizationRepo",
    "PlanRepo",
    "RuntimeRepo",
    "TaskRepo",
    "StorageManager",
]
