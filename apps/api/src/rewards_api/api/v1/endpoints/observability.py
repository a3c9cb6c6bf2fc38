"""Observability snapshots for the ledger and its sweeps."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from rewards_api.api.dependencies.security import require_admin_api_key
from rewards_api.observability.ledger import get_ledger_store
from rewards_api.observability.scheduler import get_scheduler_store

router = APIRouter(
    prefix="/observability",
    tags=["Observability"],
    dependencies=[Depends(require_admin_api_key)],
)


@router.get("/ledger", summary="Points and referral ledger counters")
async def get_ledger_snapshot() -> dict[str, object]:
    return get_ledger_store().snapshot().as_dict()


@router.get("/scheduler", summary="Ledger sweep scheduler counters")
async def get_scheduler_snapshot() -> dict[str, object]:
    return get_scheduler_store().snapshot().as_dict()
