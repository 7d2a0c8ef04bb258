from uuid import UUID

from fastapi import APIRouter, Depends, Query, status

from app.deps import (
    CurrentUser,
    can_grant_balances,
    can_process_settlements,
    can_read_ledger,
    can_read_settlements,
)
from app.orchestrator import SettlementOrchestrator, get_orchestrator
from app.schemas import (
    AdjustmentReplayResponse,
    LedgerCreditRequest,
    LedgerResponse,
    LedgerTransactionRecord,
)

router = APIRouter(prefix="/ledger", tags=["ledger"])


@router.get("/me", response_model=LedgerResponse)
async def my_ledger(
    limit: int = Query(default=100, ge=1, le=500),
    current_user: CurrentUser = Depends(can_read_ledger),
    orchestrator: SettlementOrchestrator = Depends(get_orchestrator),
):
    return await orchestrator.ledger.statement(current_user.id, limit=limit)


@router.post("/adjustments/retry", response_model=AdjustmentReplayResponse)
async def retry_ledger_adjustments(
    guest_id: UUID | None = Query(default=None),
    _: CurrentUser = Depends(can_process_settlements),
    orchestrator: SettlementOrchestrator = Depends(get_orchestrator),
):
    return await orchestrator.retry_ledger_adjustments(guest_id)


@router.get("/{guest_id}", response_model=LedgerResponse)
async def guest_ledger(
    guest_id: UUID,
    limit: int = Query(default=100, ge=1, le=500),
    _: CurrentUser = Depends(can_read_settlements),
    orchestrator: SettlementOrchestrator = Depends(get_orchestrator),
):
    return await orchestrator.ledger.statement(guest_id, limit=limit)


@router.post(
    "/{guest_id}/credits",
    response_model=LedgerTransactionRecord,
    status_code=status.HTTP_201_CREATED,
)
async def grant_balance(
    guest_id: UUID,
    data: LedgerCreditRequest,
    current_user: CurrentUser = Depends(can_grant_balances),
    orchestrator: SettlementOrchestrator = Depends(get_orchestrator),
):
    """Add goodwill credits or a promotional bonus to a guest's wallet."""
    return await orchestrator.grant_balance(guest_id, data, current_user.username)
