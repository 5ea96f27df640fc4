"""
billing.py - Hourly metering and billing engine.

Every running or suspended resource with a plan carries a billing cursor
(``last_billed_at``): the end of the last wall-clock window already charged.
A cycle charges whole elapsed hours past the cursor and moves the cursor to
the end of the charged window, whether or not the debit succeeded, so a
failed hour is recorded once and never re-attempted.

The cursor compare-and-swap, balance read, debit and ledger insert commit as
one BEGIN IMMEDIATE transaction under the storage write lock, so two
overlapping cycles can never charge the same window twice.
"""

import calendar
import logging
import time
from enum import Enum
from typing import TYPE_CHECKING, List, Optional, Set

from controlplane.errors import ErrorCode, fail, ok
from controlplane.scheduler import ResourceStatus
from controlplane.wallet import WalletError

if TYPE_CHECKING:
    from controlplane.alerts import AlertService
    from controlplane.scheduler import FleetScheduler
    from controlplane.storage import StorageManager
    from controlplane.wallet import WalletService

logger = logging.getLogger("billing")

HOUR = 3600
BILLING_INTERVAL = 3600  # seconds between cycles

FAILURE_NO_WALLET = "no_wallet"
FAILURE_INSUFFICIENT = "insufficient_balance"
FAILURE_DEBIT = "debit_failed"


class SuspendScope(str, Enum):
    ORGANIZATION = "organization"
    RESOURCE = "resource"


def _month(ts: float) -> str:
    return time.strftime("%Y-%m", time.gmtime(ts))


def _month_start(ts: float) -> float:
    t = time.gmtime(ts)
    return float(calendar.timegm((t.tm_year, t.tm_mon, 1, 0, 0, 0)))


class BillingEngine:
    def __init__(
        self,
        storage: "StorageManager",
        wallet: "WalletService",
        scheduler: "FleetScheduler",
        alerts: "AlertService",
        suspend_scope: str = SuspendScope.ORGANIZATION.value,
    ):
        self._storage = storage
        self.wallet = wallet
        self._scheduler = scheduler
        self._alerts = alerts
        self.suspend_scope = SuspendScope(suspend_scope)

    def _repo_for(self, resource_type: str):
        return self._storage.applications if resource_type == "application" else self._storage.databases

    async def run_billing_cycle(self, now: Optional[float] = None) -> dict:
        now = now if now is not None else time.time()
        summary = {
            "success": True,
            "billed": 0,
            "failed": 0,
            "skipped": 0,
            "total_amount": 0.0,
            "total_hours": 0,
            "suspended": 0,
            "resumed": 0,
            "errors": [],
        }
        resources = [("application", r) for r in await self._storage.applications.list_billable()]
        resources += [("database", r) for r in await self._storage.databases.list_billable()]

        suspended_orgs: Set[str] = set()
        alerted_orgs: Set[str] = set()
        for resource_type, resource in resources:
            try:
                charge = await self._bill_resource(resource_type, resource, now)
                if charge is None:
                    summary["skipped"] += 1
                    continue
                if charge["charged"]:
                    summary["billed"] += 1
                    summary["total_amount"] += charge["amount"]
                    summary["total_hours"] += charge["hours"]
                    if await self._after_charge(charge, suspended_orgs, now):
                        summary["resumed"] += 1
                else:
                    summary["failed"] += 1
                    summary["suspended"] += await self._after_failure(
                        charge, suspended_orgs, alerted_orgs
                    )
            except Exception as e:
                logger.exception("Billing failed for %s %s", resource_type, resource["id"])
                summary["errors"].append({
                    "resource_type": resource_type,
                    "resource_id": resource["id"],
                    "error": str(e),
                })

        summary["total_amount"] = round(summary["total_amount"], 4)
        summary["success"] = not summary["errors"]
        logger.info(
            "Billing cycle: %d billed (%.4f over %d h), %d failed, %d skipped, %d suspended, %d resumed",
            summary["billed"], summary["total_amount"], summary["total_hours"],
            summary["failed"], summary["skipped"], summary["suspended"], summary["resumed"],
        )
        return summary

    async def _bill_resource(self, resource_type: str, resource: dict, now: float) -> Optional[dict]:
        """Charge whole elapsed hours for one resource; None when nothing is due."""
        cursor = resource["last_billed_at"]
        hours = int((now - cursor) // HOUR)
        if hours < 1:
            return None
        org_id = resource["organization_id"]
        amount = round(resource["hourly_rate"] * resource["instance_count"] * hours, 4)
        period_end = cursor + hours * HOUR

        failure = None
        async with self._storage.transaction():
            moved = await self._repo_for(resource_type).advance_cursor(resource["id"], cursor, period_end)
            if not moved:
                logger.info("Cursor for %s %s already advanced, skipping", resource_type, resource["id"])
                return None
            balance = await self.wallet.balance(org_id)
            if balance is None:
                failure = FAILURE_NO_WALLET
            elif balance < amount:
                failure = FAILURE_INSUFFICIENT
            else:
                reference = f"{resource_type}:{resource['id']}:{int(cursor)}-{int(period_end)}"
                description = f"{hours}h of {resource['plan_id']} x{resource['instance_count']}"
                try:
                    if not await self.wallet.debit(org_id, amount, reference, description):
                        failure = FAILURE_DEBIT
                except WalletError:
                    logger.exception("Wallet debit raised for %s", org_id)
                    failure = FAILURE_DEBIT
            await self._storage.ledger.append(
                organization_id=org_id,
                resource_type=resource_type,
                resource_id=resource["id"],
                plan_id=resource["plan_id"],
                instance_count=resource["instance_count"],
                hourly_rate=resource["hourly_rate"],
                hours_charged=hours,
                total_cost=amount,
                period_start=cursor,
                period_end=period_end,
                charged=failure is None,
                failure_reason=failure,
                created_at=now,
            )

        if failure == FAILURE_DEBIT:
            logger.error("Debit of %.4f failed for org %s (%s %s)", amount, org_id, resource_type, resource["id"])
        elif failure:
            logger.warning("Charge of %.4f for %s %s not collected: %s (balance=%s)",
                           amount, resource_type, resource["id"], failure, balance)
        else:
            logger.info("Charged %.4f to %s for %s %s (%d h)", amount, org_id, resource_type, resource["id"], hours)
        return {
            "resource_type": resource_type,
            "resource_id": resource["id"],
            "organization_id": org_id,
            "amount": amount,
            "hours": hours,
            "period_end": period_end,
            "charged": failure is None,
            "failure_reason": failure,
            "balance_after": round(balance - amount, 4) if failure is None else balance,
        }

    async def _after_failure(self, charge: dict, suspended_orgs: Set[str], alerted_orgs: Set[str]) -> int:
        org_id = charge["organization_id"]
        if org_id not in alerted_orgs:
            alerted_orgs.add(org_id)
            await self._alerts.notify_organization(
                org_id,
                "insufficient_funds",
                f"Could not collect {charge['amount']:.4f} for {charge['resource_type']} "
                f"{charge['resource_id']} ({charge['failure_reason']}); resources are being suspended",
                entity_type=charge["resource_type"],
                entity_id=charge["resource_id"],
                severity="critical",
                metadata={"amount": charge["amount"], "reason": charge["failure_reason"]},
            )

        if self.suspend_scope == SuspendScope.ORGANIZATION:
            if org_id in suspended_orgs:
                return 0
            suspended_orgs.add(org_id)
            targets = [
                ("application", a["id"])
                for a in await self._storage.applications.list_for_organization(
                    org_id, [ResourceStatus.RUNNING.value])
            ] + [
                ("database", d["id"])
                for d in await self._storage.databases.list_for_organization(
                    org_id, [ResourceStatus.RUNNING.value])
            ]
        else:
            current = await self._repo_for(charge["resource_type"]).get(charge["resource_id"])
            if current is None or current["status"] != ResourceStatus.RUNNING.value:
                return 0
            targets = [(charge["resource_type"], charge["resource_id"])]

        for resource_type, resource_id in targets:
            await self._scheduler.schedule_suspend(resource_type, resource_id)
        return len(targets)

    async def _after_charge(self, charge: dict, suspended_orgs: Set[str], now: float) -> bool:
        """Resume a suspended resource and check the low-balance threshold. True if resumed."""
        org_id = charge["organization_id"]
        resumed = False
        current = await self._repo_for(charge["resource_type"]).get(charge["resource_id"])
        if (
            current is not None
            and current["status"] == ResourceStatus.SUSPENDED.value
            and org_id not in suspended_orgs
        ):
            result = await self._scheduler.schedule_resume(charge["resource_type"], charge["resource_id"])
            resumed = result["success"]
            if not resumed:
                logger.warning("Could not resume %s %s: %s",
                               charge["resource_type"], charge["resource_id"], result.get("error"))

        org = await self._storage.organizations.get(org_id)
        if org is not None and charge["balance_after"] < org["low_balance_threshold"]:
            if await self._storage.organizations.mark_low_balance_alerted(org_id, _month(now)):
                await self._alerts.notify_organization(
                    org_id,
                    "low_balance",
                    f"Wallet balance {charge['balance_after']:.4f} is below the "
                    f"{org['low_balance_threshold']:.4f} threshold",
                    entity_type="organization",
                    entity_id=org_id,
                    metadata={"balance": charge["balance_after"], "threshold": org["low_balance_threshold"]},
                )
        return resumed

    # -------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------

    async def list_ledger(self, organization_id: str, limit: int = 100, offset: int = 0) -> List[dict]:
        return await self._storage.ledger.list_for_organization(organization_id, limit, offset)

    async def current_month_spending(self, organization_id: str, now: Optional[float] = None) -> float:
        now = now if now is not None else time.time()
        return await self._storage.ledger.charged_total(organization_id, since=_month_start(now))

    async def organization_usage(self, organization_id: str, now: Optional[float] = None) -> dict:
        now = now if now is not None else time.time()
        since = _month_start(now)
        org = await self._storage.organizations.get(organization_id)
        return {
            "organization_id": organization_id,
            "balance": org["balance"] if org else None,
            "month": _month(now),
            "month_to_date": await self._storage.ledger.charged_total(organization_id, since=since),
            "resources": await self._storage.ledger.usage_by_resource(organization_id, since=since),
        }

    async def check_sufficient_balance(self, organization_id: str, plan_id: str, instance_count: int = 1) -> dict:
        """Whether the wallet can cover at least one hour of the plan."""
        plan = await self._storage.plans.get(plan_id)
        if plan is None:
            return fail(ErrorCode.NOT_FOUND, "Plan not found")
        balance = await self.wallet.balance(organization_id)
        required = round(plan["hourly_rate"] * instance_count, 4)
        if balance is None:
            return fail(ErrorCode.NOT_FOUND, "Organization wallet not found")
        if balance < required:
            return fail(
                ErrorCode.INSUFFICIENT_FUNDS,
                f"Balance {balance:.4f} does not cover one hour ({required:.4f})",
                balance=balance, required=required,
            )
        return ok(balance=balance, required=required)
