"""Support tooling endpoints, protected by the admin token."""
from __future__ import annotations

from fastapi import APIRouter, Depends, Header, HTTPException, status

from src.api.deps import (
    get_grant_engine,
    get_reconciliation_job,
    require_admin,
)
from src.schemas.billing import ActivatePlanBody, AdjustmentBody, TransactionRead
from src.services.grant_engine import CreditGrantEngine
from src.services.limits import ensure_idempotent
from src.services.reconciliation import ReconciliationJob


router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin)])


@router.post("/plans/activate")
async def activate_plan(
    body: ActivatePlanBody,
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
    engine: CreditGrantEngine = Depends(get_grant_engine),
):
    await ensure_idempotent(f"admin:{body.user_id}", idempotency_key)

    result = await engine.activate_plan(
        body.user_id, body.plan_id, provider_reference=body.provider_reference
    )
    balance = await engine.get_balance(body.user_id)
    return {**result.to_dict(), "balance": balance}


@router.post("/ledger/adjust", response_model=TransactionRead)
async def adjust_ledger(
    body: AdjustmentBody,
    engine: CreditGrantEngine = Depends(get_grant_engine),
):
    try:
        entry = await engine.record_adjustment(
            body.user_id,
            body.amount,
            kind=body.kind,
            reference=body.reference,
            note=body.note,
        )
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(exc),
        ) from exc
    return TransactionRead.model_validate(entry)


@router.post("/reconciliation/run")
async def run_reconciliation(job: ReconciliationJob = Depends(get_reconciliation_job)):
    report = await job.run()
    return report.to_dict()
