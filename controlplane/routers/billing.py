"""Billing router: organizations, wallet deposits, ledger queries and manual billing cycles."""

import time
from typing import Optional

from fastapi import APIRouter, Body, Depends, HTTPException
from starlette.requests import Request

from controlplane.deps import get_control_plane, require_admin
from controlplane.models import BillingRunRequest, DepositRequest, OrganizationRequest

router = APIRouter(prefix="/api", dependencies=[Depends(require_admin)])


@router.post("/organizations")
async def create_organization(req: OrganizationRequest, request: Request):
    cp = get_control_plane(request)
    return await cp.wallet.create_organization(
        req.id, req.name, balance=req.balance, low_balance_threshold=req.low_balance_threshold,
    )


@router.get("/organizations/{org_id}")
async def get_organization(org_id: str, request: Request):
    org = await get_control_plane(request).wallet.get_organization(org_id)
    if org is None:
        raise HTTPException(status_code=404, detail="Organization not found")
    return org


@router.post("/organizations/{org_id}/deposit")
async def deposit(org_id: str, req: DepositRequest, request: Request):
    cp = get_control_plane(request)
    try:
        return await cp.wallet.deposit(org_id, req.amount, req.reference)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except KeyError:
        raise HTTPException(status_code=404, detail="Organization not found")


@router.get("/organizations/{org_id}/transactions")
async def list_transactions(org_id: str, request: Request, limit: int = 100):
    return await get_control_plane(request).wallet.transactions(org_id, max(1, min(limit, 500)))


@router.get("/organizations/{org_id}/ledger")
async def list_ledger(org_id: str, request: Request, limit: int = 100, offset: int = 0):
    cp = get_control_plane(request)
    return await cp.billing.list_ledger(org_id, max(1, min(limit, 500)), max(0, offset))


@router.get("/organizations/{org_id}/usage")
async def usage(org_id: str, request: Request):
    return await get_control_plane(request).billing.organization_usage(org_id)


@router.post("/billing/run")
async def run_billing_cycle(request: Request, req: Optional[BillingRunRequest] = Body(default=None)):
    cp = get_control_plane(request)
    now = req.now if req is not None and req.now is not None else time.time()
    return await cp.billing.run_billing_cycle(now=now)
