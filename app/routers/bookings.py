from uuid import UUID

from fastapi import APIRouter, Depends, status

from app.deps import CurrentUser, can_cancel_booking, can_dispute_charges, can_write_charges
from app.orchestrator import SettlementOrchestrator, get_orchestrator
from app.schemas import (
    CancellationResponse,
    CancelRequest,
    DisputeChargesRequest,
    DisputeChargesResponse,
    TripChargesCreate,
    TripChargesRecorded,
)

router = APIRouter(prefix="/bookings", tags=["bookings"])


@router.post("/{booking_id}/cancel", response_model=CancellationResponse)
async def cancel_booking(
    booking_id: UUID,
    data: CancelRequest | None = None,
    current_user: CurrentUser = Depends(can_cancel_booking),
    orchestrator: SettlementOrchestrator = Depends(get_orchestrator),
):
    """
    Guest cancellation. The guest who made the booking (or an admin) may
    cancel while it is PENDING or CONFIRMED; a second attempt returns 409.
    """
    reason = data.reason if data else None
    return await orchestrator.cancel_booking(booking_id, current_user, reason=reason)


@router.post(
    "/{booking_id}/trip-charges",
    response_model=TripChargesRecorded,
    status_code=status.HTTP_201_CREATED,
)
async def record_trip_charges(
    booking_id: UUID,
    data: TripChargesCreate,
    current_user: CurrentUser = Depends(can_write_charges),
    orchestrator: SettlementOrchestrator = Depends(get_orchestrator),
):
    return await orchestrator.record_trip_charges(booking_id, data, actor=str(current_user.id))


@router.post("/{booking_id}/trip-charges/dispute", response_model=DisputeChargesResponse)
async def dispute_trip_charges(
    booking_id: UUID,
    data: DisputeChargesRequest,
    current_user: CurrentUser = Depends(can_dispute_charges),
    orchestrator: SettlementOrchestrator = Depends(get_orchestrator),
):
    """
    Guest objection to post-trip charges. Only possible while the hold
    window is open; the charge is not captured until an admin resolves it.
    """
    return await orchestrator.dispute_charges(booking_id, current_user, data)
