"""
alerts.py - Notifications for fleet admins and organizations.

Alerts are persisted in the alerts table and logged. Delivery to email or
chat integrations is left to whatever consumes the table.
"""

import logging
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from controlplane.storage import AlertRepo

logger = logging.getLogger("alerts")


class AlertService:
    def __init__(self, alert_repo: "AlertRepo"):
        self._repo = alert_repo

    async def notify_admins(
        self,
        event_type: str,
        message: str,
        entity_type: str = "",
        entity_id: Optional[str] = None,
        severity: str = "warning",
        metadata: Optional[dict] = None,
    ) -> int:
        logger.warning("[admins] %s: %s", event_type, message)
        return await self._repo.create(
            event_type, "admins", message,
            entity_type=entity_type, entity_id=entity_id,
            severity=severity, metadata=metadata,
        )

    async def notify_organization(
        self,
        organization_id: str,
        event_type: str,
        message: str,
        entity_type: str = "",
        entity_id: Optional[str] = None,
        severity: str = "warning",
        metadata: Optional[dict] = None,
    ) -> int:
        logger.info("[org %s] %s: %s", organization_id, event_type, message)
        return await self._repo.create(
            event_type, "organization", message,
            organization_id=organization_id,
            entity_type=entity_type, entity_id=entity_id,
            severity=severity, metadata=metadata,
        )

    async def list_alerts(self, **filters) -> list:
        return await self._repo.list_recent(**filters)
