"""
Fleet Control Plane - Server Package

Registers worker nodes, places application and database workloads on them,
dispatches tasks over per-node WebSockets, bills organizations hourly and
schedules recurring database backups.
"""

__version__ = "0.1.0"

__all__ = [
    "alerts",
    "auth",
    "backups",
    "billing",
    "crypto",
    "dispatch",
    "errors",
    "registry",
    "scheduler",
    "server",
    "storage",
    "wallet",
    "webhooks",
]
