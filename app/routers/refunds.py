from uuid import UUID

from fastapi import APIRouter, Depends, Query

from app.crud import SettlementCRUD
from app.deps import CurrentUser, can_process_settlements, can_read_settlements, get_store
from app.models import ObligationStatus
from app.orchestrator import SettlementOrchestrator, get_orchestrator
from app.schemas import RefundRequestRecord

router = APIRouter(prefix="/refunds", tags=["refunds"])


@router.get("/", response_model=list[RefundRequestRecord])
async def list_refund_requests(
    status: ObligationStatus | None = Query(default=None),
    booking_id: UUID | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    _: CurrentUser = Depends(can_read_settlements),
    store: SettlementCRUD = Depends(get_store),
):
    return await store.list_refund_requests(status=status, booking_id=booking_id, limit=limit)


@router.post("/{request_id}/retry", response_model=RefundRequestRecord)
async def retry_refund(
    request_id: UUID,
    _: CurrentUser = Depends(can_process_settlements),
    orchestrator: SettlementOrchestrator = Depends(get_orchestrator),
):
    """Re-drive a PENDING refund against the gateway. 502/504 if it fails again."""
    return await orchestrator.retry_refund(request_id)
