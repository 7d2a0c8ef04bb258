from uuid import UUID

from fastapi import APIRouter, Depends

from app.deps import (
    CurrentUser,
    can_clear_charges,
    can_process_settlements,
    can_read_settlements,
)
from app.orchestrator import SettlementOrchestrator, get_orchestrator
from app.schemas import (
    AdjustChargesRequest,
    AdjustChargesResponse,
    ApproveChargesRequest,
    ApproveChargesResponse,
    ClearChargesRequest,
    ClearChargesResponse,
    PendingChargeFilters,
    PendingChargesResponse,
    ProcessChargesRequest,
    ProcessChargesResponse,
    ResolveDisputeRequest,
    ResolveDisputeResponse,
    WaiveChargesRequest,
    WaiveChargesResponse,
)

router = APIRouter(prefix="/charges", tags=["charges"])


@router.get("/pending", response_model=PendingChargesResponse)
async def list_pending_charges(
    filters: PendingChargeFilters = Depends(),
    _: CurrentUser = Depends(can_read_settlements),
    orchestrator: SettlementOrchestrator = Depends(get_orchestrator),
):
    return await orchestrator.charges.list_pending_charges(filters)


@router.post("/process", response_model=ProcessChargesResponse)
async def process_charges(
    data: ProcessChargesRequest,
    current_user: CurrentUser = Depends(can_process_settlements),
    orchestrator: SettlementOrchestrator = Depends(get_orchestrator),
):
    """
    Batch entry point for the scheduler. Use `dry_run` to see what a run
    would charge without touching the gateway or the database.
    """
    return await orchestrator.process_charges(data)


@router.post("/{booking_id}/clear", response_model=ClearChargesResponse)
async def clear_charges(
    booking_id: UUID,
    data: ClearChargesRequest,
    current_user: CurrentUser = Depends(can_clear_charges),
    orchestrator: SettlementOrchestrator = Depends(get_orchestrator),
):
    return await orchestrator.clear_charges(booking_id, current_user.username, data.reason)


@router.post("/{booking_id}/waive", response_model=WaiveChargesResponse)
async def waive_charges(
    booking_id: UUID,
    data: WaiveChargesRequest,
    current_user: CurrentUser = Depends(can_clear_charges),
    orchestrator: SettlementOrchestrator = Depends(get_orchestrator),
):
    return await orchestrator.waive_charges(
        booking_id, data.percentage, current_user.username, data.reason
    )


@router.post("/{booking_id}/approve", response_model=ApproveChargesResponse)
async def approve_charges(
    booking_id: UUID,
    data: ApproveChargesRequest | None = None,
    current_user: CurrentUser = Depends(can_clear_charges),
    orchestrator: SettlementOrchestrator = Depends(get_orchestrator),
):
    """Charges above the auto-approval threshold wait here before any sweep captures them."""
    note = data.note if data else None
    return await orchestrator.approve_charges(booking_id, current_user.username, note)


@router.post("/{booking_id}/adjust", response_model=AdjustChargesResponse)
async def adjust_charges(
    booking_id: UUID,
    data: AdjustChargesRequest,
    current_user: CurrentUser = Depends(can_clear_charges),
    orchestrator: SettlementOrchestrator = Depends(get_orchestrator),
):
    return await orchestrator.adjust_charges(
        booking_id, data.adjustments, current_user.username, data.reason
    )


@router.post("/{booking_id}/dispute/resolve", response_model=ResolveDisputeResponse)
async def resolve_dispute(
    booking_id: UUID,
    data: ResolveDisputeRequest,
    current_user: CurrentUser = Depends(can_clear_charges),
    orchestrator: SettlementOrchestrator = Depends(get_orchestrator),
):
    return await orchestrator.resolve_dispute(booking_id, data, current_user.username)
