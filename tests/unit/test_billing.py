"""
test_billing.py - Unit tests for BillingEngine.

Cycles are driven with explicit ``now`` values so the hourly cursor can be
checked window by window.
"""

import asyncio
import calendar

import pytest

from controlplane.billing import (
    FAILURE_DEBIT,
    FAILURE_INSUFFICIENT,
    FAILURE_NO_WALLET,
    BillingEngine,
)
from controlplane.wallet import WalletError

from conftest import HOUR, make_node

pytestmark = pytest.mark.asyncio

T0 = float(calendar.timegm((2024, 3, 10, 12, 0, 0)))
MINUTE = 60


async def _running_app(storage, app_id="app-1", org_id="org-1", plan_id="small", created_at=T0, **kwargs):
    return await storage.applications.create(
        app_id, org_id, app_id, plan_id, "eu-west",
        runtime_id="node20", status=kwargs.pop("status", "running"), created_at=created_at, **kwargs,
    )


class TestHourlyCursor:
    async def test_partial_hours_are_never_billed(self, catalog, billing):
        await _running_app(catalog)

        summary = await billing.run_billing_cycle(now=T0 + 65 * MINUTE)
        assert summary["billed"] == 1
        assert summary["total_amount"] == pytest.approx(0.01)
        assert (await catalog.applications.get("app-1"))["last_billed_at"] == T0 + HOUR

        summary = await billing.run_billing_cycle(now=T0 + 70 * MINUTE)
        assert summary["billed"] == 0
        assert summary["skipped"] == 1

        summary = await billing.run_billing_cycle(now=T0 + 130 * MINUTE)
        assert summary["billed"] == 1
        assert summary["total_amount"] == pytest.approx(0.01)
        assert (await catalog.applications.get("app-1"))["last_billed_at"] == T0 + 2 * HOUR

        assert await billing.wallet.balance("org-1") == pytest.approx(9.98)
        ledger = await catalog.ledger.list_for_resource("application", "app-1")
        assert [(e["period_start"], e["period_end"]) for e in ledger] == [
            (T0, T0 + HOUR),
            (T0 + HOUR, T0 + 2 * HOUR),
        ]

    async def test_multiple_elapsed_hours_charged_together(self, catalog, billing):
        await _running_app(catalog, instance_count=3)
        summary = await billing.run_billing_cycle(now=T0 + 2 * HOUR + 59 * MINUTE)
        assert summary["total_hours"] == 2
        assert summary["total_amount"] == pytest.approx(0.06)
        entry = (await catalog.ledger.list_for_resource("application", "app-1"))[0]
        assert entry["hours_charged"] == 2
        assert entry["instance_count"] == 3
        assert entry["charged"] == 1

    async def test_charge_ignores_node_utilisation(self, catalog, registry, billing):
        node = await make_node(registry, cpu_used=3.9, memory_used_mb=8000)
        await _running_app(catalog, node_id=node["id"])
        summary = await billing.run_billing_cycle(now=T0 + HOUR)
        assert summary["total_amount"] == pytest.approx(0.01)

    async def test_cursor_never_moves_backwards(self, catalog, billing):
        await _running_app(catalog)
        await billing.run_billing_cycle(now=T0 + 2 * HOUR)
        summary = await billing.run_billing_cycle(now=T0 + HOUR)
        assert summary["skipped"] == 1
        assert (await catalog.applications.get("app-1"))["last_billed_at"] == T0 + 2 * HOUR

    async def test_overlapping_cycles_charge_once(self, catalog, billing):
        await _running_app(catalog)
        await asyncio.gather(
            billing.run_billing_cycle(now=T0 + HOUR),
            billing.run_billing_cycle(now=T0 + HOUR),
        )
        assert len(await catalog.ledger.list_for_resource("application", "app-1")) == 1
        assert await billing.wallet.balance("org-1") == pytest.approx(9.99)

    async def test_stopped_and_deleted_not_billed(self, catalog, billing):
        await _running_app(catalog, "app-1", status="stopped")
        await _running_app(catalog, "app-2", status="deleted")
        summary = await billing.run_billing_cycle(now=T0 + 5 * HOUR)
        assert summary["billed"] == 0
        assert await catalog.ledger.list_for_organization("org-1") == []

    async def test_databases_with_plan_are_billed(self, catalog, billing):
        await catalog.databases.create(
            "db-1", "org-1", "main", "postgres", "eu-west",
            plan_id="large", status="running", created_at=T0,
        )
        await catalog.databases.create(
            "db-2", "org-1", "cache", "redis", "eu-west", status="running", created_at=T0,
        )
        summary = await billing.run_billing_cycle(now=T0 + HOUR)
        assert summary["billed"] == 1
        assert summary["total_amount"] == pytest.approx(0.05)
        assert (await catalog.databases.get("db-1"))["last_billed_at"] == T0 + HOUR

    async def test_wallet_transaction_recorded(self, catalog, billing):
        await _running_app(catalog)
        await billing.run_billing_cycle(now=T0 + HOUR)
        charges = [t for t in await billing.wallet.transactions("org-1") if t["type"] == "charge"]
        assert len(charges) == 1
        assert charges[0]["amount"] == pytest.approx(-0.01)


class TestFailedCharges:
    async def test_insufficient_balance_suspends_and_records(self, catalog, billing):
        await catalog.organizations.create("org-2", "Poor", balance=0.005)
        await _running_app(catalog, org_id="org-2")

        summary = await billing.run_billing_cycle(now=T0 + 65 * MINUTE)
        assert summary["failed"] == 1
        assert summary["suspended"] == 1
        assert (await catalog.applications.get("app-1"))["status"] == "suspended"
        assert (await catalog.applications.get("app-1"))["last_billed_at"] == T0 + HOUR
        assert await billing.wallet.balance("org-2") == pytest.approx(0.005)

        entry = (await catalog.ledger.list_for_organization("org-2"))[0]
        assert entry["charged"] == 0
        assert entry["failure_reason"] == FAILURE_INSUFFICIENT
        assert entry["period_end"] == T0 + HOUR

        alerts = await catalog.alerts.list_recent(organization_id="org-2", event_type="insufficient_funds")
        assert len(alerts) == 1

    async def test_failed_window_not_retried(self, catalog, billing):
        await catalog.organizations.create("org-2", "Poor", balance=0.005)
        await _running_app(catalog, org_id="org-2")
        await billing.run_billing_cycle(now=T0 + HOUR)
        await catalog.organizations.deposit("org-2", 1.0)

        summary = await billing.run_billing_cycle(now=T0 + 2 * HOUR)
        assert summary["billed"] == 1
        ledger = await catalog.ledger.list_for_resource("application", "app-1")
        assert [(e["period_start"], e["charged"]) for e in ledger] == [(T0, 0), (T0 + HOUR, 1)]
        assert await billing.wallet.balance("org-2") == pytest.approx(0.995)

    async def test_suspended_resource_still_charged(self, catalog, billing):
        await _running_app(catalog, status="suspended")
        summary = await billing.run_billing_cycle(now=T0 + HOUR)
        assert summary["billed"] == 1

    async def test_top_up_resumes_on_connected_node(self, catalog, registry, agents, billing):
        node = await make_node(registry)
        ws = await agents.connect(node)
        await catalog.organizations.create("org-2", "Poor", balance=0.005)
        await _running_app(catalog, org_id="org-2", node_id=node["id"])

        await billing.run_billing_cycle(now=T0 + HOUR)
        assert (await catalog.applications.get("app-1"))["status"] == "suspended"

        await catalog.organizations.deposit("org-2", 5.0)
        summary = await billing.run_billing_cycle(now=T0 + 2 * HOUR)
        assert summary["resumed"] == 1
        assert (await catalog.applications.get("app-1"))["status"] == "running"
        sent = [(t["type"], t["reason"]) for t in ws.tasks()]
        assert ("stop", "suspended") in sent
        assert ("start", "resumed") in sent

    async def test_debit_error_is_debit_failed(self, catalog, billing, monkeypatch):
        await _running_app(catalog)

        async def broken_debit(*args, **kwargs):
            raise WalletError("backend down")

        monkeypatch.setattr(billing.wallet, "debit", broken_debit)
        summary = await billing.run_billing_cycle(now=T0 + HOUR)
        assert summary["failed"] == 1
        assert summary["errors"] == []
        entry = (await catalog.ledger.list_for_organization("org-1"))[0]
        assert entry["failure_reason"] == FAILURE_DEBIT
        assert (await catalog.applications.get("app-1"))["last_billed_at"] == T0 + HOUR

    async def test_rejected_debit_is_debit_failed(self, catalog, billing, monkeypatch):
        await _running_app(catalog)

        async def rejected(*args, **kwargs):
            return False

        monkeypatch.setattr(billing.wallet, "debit", rejected)
        await billing.run_billing_cycle(now=T0 + HOUR)
        entry = (await catalog.ledger.list_for_organization("org-1"))[0]
        assert entry["failure_reason"] == FAILURE_DEBIT

    async def test_missing_wallet(self, catalog, billing, monkeypatch):
        await _running_app(catalog)

        async def no_wallet(org_id):
            return None

        monkeypatch.setattr(billing.wallet, "balance", no_wallet)
        await billing.run_billing_cycle(now=T0 + HOUR)
        entry = (await catalog.ledger.list_for_organization("org-1"))[0]
        assert entry["failure_reason"] == FAILURE_NO_WALLET
        assert entry["charged"] == 0


class TestSuspendScope:
    async def _two_apps(self, catalog):
        await catalog.organizations.create("org-2", "Tight", balance=0.03)
        await _running_app(catalog, "app-big", org_id="org-2", plan_id="large", created_at=T0)
        await _running_app(catalog, "app-small", org_id="org-2", plan_id="small", created_at=T0 + 1)

    async def test_organization_scope_suspends_everything(self, catalog, billing):
        await self._two_apps(catalog)
        summary = await billing.run_billing_cycle(now=T0 + HOUR + 1)
        assert summary["failed"] == 1
        assert summary["billed"] == 1
        assert summary["suspended"] == 2
        assert summary["resumed"] == 0
        assert (await catalog.applications.get("app-big"))["status"] == "suspended"
        assert (await catalog.applications.get("app-small"))["status"] == "suspended"

    async def test_resource_scope_suspends_only_unpaid(self, catalog, wallet, scheduler, alerts):
        engine = BillingEngine(catalog, wallet, scheduler, alerts, suspend_scope="resource")
        await self._two_apps(catalog)
        summary = await engine.run_billing_cycle(now=T0 + HOUR + 1)
        assert summary["suspended"] == 1
        assert (await catalog.applications.get("app-big"))["status"] == "suspended"
        assert (await catalog.applications.get("app-small"))["status"] == "running"

    async def test_one_insufficient_alert_per_cycle(self, catalog, billing):
        await catalog.organizations.create("org-2", "Broke", balance=0.0)
        await _running_app(catalog, "a1", org_id="org-2")
        await _running_app(catalog, "a2", org_id="org-2")
        await billing.run_billing_cycle(now=T0 + HOUR)
        alerts = await catalog.alerts.list_recent(organization_id="org-2", event_type="insufficient_funds")
        assert len(alerts) == 1


class TestLowBalanceAlert:
    async def test_alert_once_per_month(self, catalog, billing):
        start = float(calendar.timegm((2024, 1, 31, 20, 0, 0)))
        await catalog.organizations.set_low_balance_threshold("org-1", 9.995)
        await _running_app(catalog, created_at=start)

        await billing.run_billing_cycle(now=start + HOUR)
        await billing.run_billing_cycle(now=start + 2 * HOUR)
        alerts = await catalog.alerts.list_recent(organization_id="org-1", event_type="low_balance")
        assert len(alerts) == 1

        await billing.run_billing_cycle(now=start + 5 * HOUR)
        alerts = await catalog.alerts.list_recent(organization_id="org-1", event_type="low_balance")
        assert len(alerts) == 2
        assert (await catalog.organizations.get("org-1"))["low_balance_alerted_month"] == "2024-02"

    async def test_no_alert_above_threshold(self, catalog, billing):
        await _running_app(catalog)
        await billing.run_billing_cycle(now=T0 + HOUR)
        assert await catalog.alerts.list_recent(event_type="low_balance") == []


class TestQueries:
    async def test_month_to_date_spending(self, catalog, billing):
        await _running_app(catalog)
        await billing.run_billing_cycle(now=T0 + 3 * HOUR)
        assert await billing.current_month_spending("org-1", now=T0 + 3 * HOUR) == pytest.approx(0.03)

        usage = await billing.organization_usage("org-1", now=T0 + 3 * HOUR)
        assert usage["month"] == "2024-03"
        assert usage["balance"] == pytest.approx(9.97)
        assert usage["month_to_date"] == pytest.approx(0.03)
        assert len(usage["resources"]) == 1

    async def test_ledger_paging(self, catalog, billing):
        await _running_app(catalog)
        for h in range(1, 4):
            await billing.run_billing_cycle(now=T0 + h * HOUR)
        page = await billing.list_ledger("org-1", limit=2)
        assert len(page) == 2
        assert page[0]["period_end"] == T0 + 3 * HOUR

    async def test_sufficient_balance_check(self, catalog, billing):
        assert (await billing.check_sufficient_balance("org-1", "large", 3))["success"] is True
        await catalog.organizations.create("org-2", "Poor", balance=0.005)
        result = await billing.check_sufficient_balance("org-2", "small")
        assert result["code"] == "insufficient_funds"
        assert result["required"] == pytest.approx(0.01)
        assert (await billing.check_sufficient_balance("org-1", "nope"))["code"] == "not_found"
