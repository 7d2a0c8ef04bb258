"""
Payment intent reconciliation.

The gateway is the source of truth. Every call starts by re-reading the
intent, then picks the single action that moves it towards the requested
settlement target:

  requires_capture         retain 0 -> cancel the hold
                           0 < retain < authorized -> capture retain
                           retain >= authorized -> capture everything
  succeeded                refund whatever is still owed
  requires_payment_method,
  requires_confirmation,
  requires_action          cancel
  canceled                 nothing to do

Running it twice converges on the same state: anything already returned to
the guest, refunded or never captured, is subtracted before refunding.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timezone
from decimal import Decimal

from loguru import logger

from app.crud import SettlementCRUD
from app.deps import IntentState, IntentStatus, PaymentsClient
from app.errors import ConflictError, GatewayError, RefundRequestNotFound
from app.models import ObligationStatus, PaymentStatus
from app.money import ZERO, to_cents
from app.schemas import BookingRecord, RefundRequestRecord

_CANCELLABLE = {
    IntentStatus.REQUIRES_PAYMENT_METHOD,
    IntentStatus.REQUIRES_CONFIRMATION,
    IntentStatus.REQUIRES_ACTION,
}


@dataclass(frozen=True)
class SettlementTarget:
    retain_amount: Decimal
    refund_amount: Decimal


@dataclass(frozen=True)
class ReconcileOutcome:
    action: str  # cancelled | captured | refunded | noop
    payment_status: PaymentStatus
    intent_status: IntentStatus | None
    captured_amount: Decimal = ZERO
    returned_amount: Decimal = ZERO
    gateway_refund_id: str | None = None
    refund_request: RefundRequestRecord | None = None


class PaymentIntentReconciler:
    def __init__(self, store: SettlementCRUD, gateway: PaymentsClient):
        self._store = store
        self._gateway = gateway

    async def reconcile(
        self,
        booking: BookingRecord,
        target: SettlementTarget,
        reason: str,
        refund_request: RefundRequestRecord | None = None,
    ) -> ReconcileOutcome:
        """
        Drive the booking's intent to `target`.

        Whenever money is owed back, a PENDING RefundRequest is on disk before
        the gateway is touched. Gateway failures are recorded on it and
        re-raised; the request stays PENDING for `retry_refund_request`.
        """
        if target.retain_amount < 0 or target.refund_amount < 0:
            raise ValueError(f"settlement target must be non-negative, got {target}")

        request = refund_request
        if request is None and target.refund_amount > 0:
            request = await self._ensure_refund_request(booking, target, reason)

        if not booking.payment_intent_id:
            outcome = ReconcileOutcome(
                action="noop",
                payment_status=(
                    PaymentStatus.PAID if target.retain_amount > 0 else PaymentStatus.REFUNDED
                ),
                intent_status=None,
            )
        else:
            try:
                state = await self._gateway.retrieve_status(booking.payment_intent_id)
                outcome = await self._apply(booking, state, target, request)
            except GatewayError as exc:
                logger.exception(
                    "Reconcile failed for booking={} intent={}",
                    booking.id,
                    booking.payment_intent_id,
                )
                if request is not None:
                    request = await self._store.update_refund_request(
                        request.id,
                        last_error=str(exc.detail),
                        attempts=request.attempts + 1,
                    )
                raise

        if request is not None:
            request = await self._store.update_refund_request(
                request.id,
                status=ObligationStatus.COMPLETED,
                gateway_refund_id=outcome.gateway_refund_id,
                processed_at=datetime.now(timezone.utc),
                attempts=request.attempts + 1,
                last_error=None,
            )

        logger.info(
            "Reconciled booking={} action={} payment_status={} returned={}",
            booking.id,
            outcome.action,
            outcome.payment_status,
            outcome.returned_amount,
        )
        return replace(outcome, refund_request=request)

    async def retry_refund_request(self, request_id) -> tuple[BookingRecord, ReconcileOutcome]:
        """Replay a PENDING request with the amounts it was created with."""
        request = await self._store.get_refund_request(request_id)
        if request is None:
            raise RefundRequestNotFound(request_id)
        if request.status != ObligationStatus.PENDING:
            raise ConflictError(f"Refund request {request_id} is already {request.status}")

        booking = await self._store.get_booking(request.booking_id)
        if booking is None:
            raise ConflictError(f"Refund request {request_id} points at a missing booking")
        if request.payment_intent_id:
            booking = booking.model_copy(update={"payment_intent_id": request.payment_intent_id})

        target = SettlementTarget(
            retain_amount=request.retain_amount, refund_amount=request.amount
        )
        outcome = await self.reconcile(booking, target, request.reason, refund_request=request)
        return booking, outcome

    async def _ensure_refund_request(
        self, booking: BookingRecord, target: SettlementTarget, reason: str
    ) -> RefundRequestRecord:
        existing = await self._store.get_pending_refund_request(booking.id)
        if existing is not None:
            return existing
        return await self._store.create_refund_request(
            booking_id=booking.id,
            amount=target.refund_amount,
            retain_amount=target.retain_amount,
            payment_intent_id=booking.payment_intent_id,
            reason=reason,
        )

    async def _apply(
        self,
        booking: BookingRecord,
        state: IntentState,
        target: SettlementTarget,
        request: RefundRequestRecord | None,
    ) -> ReconcileOutcome:
        if state.status == IntentStatus.REQUIRES_CAPTURE:
            return await self._settle_authorization(booking, state, target)

        if state.status == IntentStatus.SUCCEEDED:
            return await self._refund_captured(booking, state, target, request)

        if state.status in _CANCELLABLE:
            await self._gateway.cancel(state.id)
            return ReconcileOutcome(
                action="cancelled",
                payment_status=PaymentStatus.REFUNDED,
                intent_status=IntentStatus.CANCELED,
            )

        if state.status == IntentStatus.CANCELED:
            return ReconcileOutcome(
                action="noop",
                payment_status=PaymentStatus.REFUNDED,
                intent_status=IntentStatus.CANCELED,
            )

        raise GatewayError(
            f"Intent {state.id} is {state.status}; settlement must be retried later"
        )

    async def _settle_authorization(
        self, booking: BookingRecord, state: IntentState, target: SettlementTarget
    ) -> ReconcileOutcome:
        retain = target.retain_amount
        if retain <= 0:
            await self._gateway.cancel(state.id)
            return ReconcileOutcome(
                action="cancelled",
                payment_status=PaymentStatus.REFUNDED,
                intent_status=IntentStatus.CANCELED,
                returned_amount=state.amount,
            )

        key = f"capture:{booking.id}:{to_cents(retain)}"
        if retain < state.amount:
            await self._gateway.capture(state.id, retain, idempotency_key=key)
            captured = retain
        else:
            await self._gateway.capture(state.id, idempotency_key=key)
            captured = state.amount
        return ReconcileOutcome(
            action="captured",
            payment_status=PaymentStatus.PAID,
            intent_status=IntentStatus.SUCCEEDED,
            captured_amount=captured,
            returned_amount=state.amount - captured,
        )

    async def _refund_captured(
        self,
        booking: BookingRecord,
        state: IntentState,
        target: SettlementTarget,
        request: RefundRequestRecord | None,
    ) -> ReconcileOutcome:
        released = state.amount - state.amount_captured
        already_returned = released + state.amount_refunded
        remaining = min(
            target.refund_amount - already_returned,
            state.amount_captured - state.amount_refunded,
        )
        if remaining <= 0:
            return ReconcileOutcome(
                action="noop",
                payment_status=(
                    PaymentStatus.REFUNDED if already_returned > 0 else PaymentStatus.PAID
                ),
                intent_status=state.status,
            )

        key_owner = request.id if request is not None else booking.id
        refund_id = await self._gateway.refund(
            state.id,
            remaining,
            metadata={"booking_id": booking.id, "booking_code": booking.booking_code},
            idempotency_key=f"refund:{key_owner}:{to_cents(state.amount_refunded)}",
        )
        return ReconcileOutcome(
            action="refunded",
            payment_status=PaymentStatus.REFUNDED,
            intent_status=state.status,
            returned_amount=remaining,
            gateway_refund_id=refund_id,
        )
