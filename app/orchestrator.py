"""
Settlement orchestration per lifecycle event.

Cancellation runs in a fixed order: claim the booking with a conditional
status update, price the cancellation, split the penalty across funding
sources, settle the card, then restore wallet balances. Once the booking is
claimed nothing after it may turn into a 500 for the guest: gateway and
ledger failures leave durable PENDING obligations behind and the response
says so.
"""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from uuid import UUID

from fastapi import Depends
from loguru import logger
from tortoise.exceptions import BaseORMException

from app import policy
from app.allocation import clamp_sources, distribute
from app.charges import DeferredChargeQueue
from app.crud import SettlementCRUD
from app.deps import (
    CurrentUser,
    PaymentsClient,
    get_charge_lock,
    get_config,
    get_payments_client,
    get_store,
)
from app.errors import BookingNotFound, GatewayError, InvalidTransition, NotBookingOwner
from app.ledger import FundingLedger
from app.locks import ChargeLock
from app.models import BookingStatus, LedgerKind, ObligationStatus
from app.money import ZERO, fmt
from app.outbox import Notifier, get_notifier
from app.reconciler import PaymentIntentReconciler, ReconcileOutcome, SettlementTarget
from app.schemas import (
    AdjustChargesResponse,
    AdjustmentReplayResponse,
    ApproveChargesResponse,
    BalancesRestored,
    BookingRecord,
    CancellationResponse,
    ChargeAdjustments,
    ClearChargesResponse,
    DisputeChargesRequest,
    DisputeChargesResponse,
    LedgerCreditRequest,
    LedgerTransactionRecord,
    PenaltyBreakdown,
    ProcessChargesRequest,
    ProcessChargesResponse,
    RefundBreakdown,
    RefundRequestRecord,
    ResolveDisputeRequest,
    ResolveDisputeResponse,
    TripChargesCreate,
    TripChargesRecorded,
    WaiveChargesResponse,
)
from app.settings import SettlementConfig

CANCELLABLE_STATUSES = (BookingStatus.PENDING, BookingStatus.CONFIRMED)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def is_validation_only(booking: BookingRecord, ceiling: Decimal) -> bool:
    """
    A card charge that only validated the card while wallet balances paid
    the trip. Bookings predating the explicit flag fall back to the shape
    of the amounts.
    """
    if booking.is_validation_only is not None:
        return booking.is_validation_only
    return (
        booking.charge_amount <= ceiling
        and booking.credits_applied + booking.bonus_applied >= booking.trip_cost
    )


class SettlementOrchestrator:
    def __init__(
        self,
        store: SettlementCRUD,
        gateway: PaymentsClient,
        notifier: Notifier,
        lock: ChargeLock,
        config: SettlementConfig,
    ):
        self._store = store
        self._notifier = notifier
        self._config = config
        self.ledger = FundingLedger(store)
        self.reconciler = PaymentIntentReconciler(store, gateway)
        self.charges = DeferredChargeQueue(store, gateway, notifier, lock, config)

    # -- cancellation -------------------------------------------------------

    async def cancel_booking(
        self,
        booking_id: UUID,
        caller: CurrentUser,
        reason: str | None = None,
        now: datetime | None = None,
    ) -> CancellationResponse:
        now = now or _utcnow()
        booking = await self._store.get_booking(booking_id)
        if booking is None:
            raise BookingNotFound(booking_id)
        if booking.guest_id != caller.id and not caller.is_admin:
            raise NotBookingOwner()
        if booking.status not in CANCELLABLE_STATUSES:
            raise InvalidTransition(booking.status, "cancel")

        actor = "guest" if booking.guest_id == caller.id else "admin"
        claimed = await self._store.compare_and_set_booking(
            booking.id,
            CANCELLABLE_STATUSES,
            status=BookingStatus.CANCELLED,
            cancelled_at=now,
            cancelled_by=actor,
            cancellation_reason=reason,
        )
        if not claimed:
            current = await self._store.get_booking(booking.id)
            raise InvalidTransition(current.status if current else "unknown", "cancel")
        logger.info("Booking {} cancelled by {} ({})", booking.id, actor, caller.id)

        quote = policy.evaluate(
            booking.start_datetime, now, booking.subtotal, booking.number_of_days
        )
        split = clamp_sources(booking.subtotal, booking.credits_applied, booking.bonus_applied)
        dist = distribute(
            quote.penalty_amount,
            booking.subtotal,
            booking.credits_applied,
            booking.bonus_applied,
            split.card,
        )

        validation_refund = (
            booking.charge_amount
            if is_validation_only(booking, self._config.validation_charge_ceiling)
            else ZERO
        )
        card_total = min(
            dist.card_refund + validation_refund + booking.deposit_from_card,
            booking.charge_amount,
        )
        target = SettlementTarget(
            retain_amount=booking.charge_amount - card_total, refund_amount=card_total
        )

        outcome, refund_request = await self._settle_card(booking, target, quote.tier)
        payment_status = outcome.payment_status if outcome else booking.payment_status
        if outcome is not None:
            await self._store.update_booking(booking.id, payment_status=payment_status)

        ledger_ok = await self._restore_balances(
            booking,
            (
                (LedgerKind.CREDIT, dist.credits_restored),
                (LedgerKind.BONUS, dist.bonus_restored),
                (LedgerKind.DEPOSIT, booking.deposit_from_wallet),
            ),
        )

        await self._announce_cancellation(booking, actor, quote, dist.total_penalty, card_total)

        if refund_request is None:
            refund_status = "none"
        elif refund_request.status == ObligationStatus.COMPLETED:
            refund_status = "completed"
        else:
            refund_status = "pending"

        return CancellationResponse(
            booking_id=booking.id,
            status=BookingStatus.CANCELLED,
            payment_status=payment_status,
            tier=quote.tier,
            policy_label=quote.label,
            hours_until_pickup=quote.hours_until_pickup,
            penalty=PenaltyBreakdown(
                total=dist.total_penalty,
                from_card=dist.penalty_from_card,
                from_credits=dist.penalty_from_credits,
                from_bonus=dist.penalty_from_bonus,
                penalty_days=quote.penalty_days,
                average_daily_cost=quote.average_daily_cost,
            ),
            refund=RefundBreakdown(
                card_refund=dist.card_refund,
                validation_charge_refund=validation_refund,
                deposit_from_card_refund=min(booking.deposit_from_card, card_total),
                total_card_refund=card_total,
                refund_request_id=refund_request.id if refund_request else None,
                status=refund_status,
            ),
            balances_restored=BalancesRestored(
                credits=dist.credits_restored,
                bonus=dist.bonus_restored,
                deposit_wallet=booking.deposit_from_wallet,
            ),
            pending_manual_processing=outcome is None or not ledger_ok,
        )

    async def _settle_card(
        self, booking: BookingRecord, target: SettlementTarget, tier: str
    ) -> tuple[ReconcileOutcome | None, RefundRequestRecord | None]:
        try:
            outcome = await self.reconciler.reconcile(
                booking, target, reason=f"Booking cancelled ({tier})"
            )
        except GatewayError:
            logger.warning(
                "Card settlement for booking={} left pending for manual processing",
                booking.id,
            )
            return None, await self._store.get_pending_refund_request(booking.id)
        return outcome, outcome.refund_request

    async def _restore_balances(
        self, booking: BookingRecord, restorations: tuple[tuple[LedgerKind, Decimal], ...]
    ) -> bool:
        reason = f"Cancellation refund for booking {booking.booking_code}"
        async with self._store.transaction():
            adjustments = [
                await self.ledger.record_restoration(
                    booking.guest_id, kind, amount, reason, booking_id=booking.id
                )
                for kind, amount in restorations
            ]
        ok = True
        for adjustment in adjustments:
            if adjustment is not None and not await self.ledger.apply_adjustment(adjustment):
                ok = False
        return ok

    async def _announce_cancellation(
        self,
        booking: BookingRecord,
        actor: str,
        quote: policy.CancellationQuote,
        penalty: Decimal,
        card_refund: Decimal,
    ) -> None:
        data = {
            "booking_code": booking.booking_code,
            "tier": quote.tier,
            "policy": quote.label,
            "penalty": fmt(penalty),
            "card_refund": fmt(card_refund),
        }
        await self._notifier.send_host_message(
            booking.host_id,
            booking.id,
            f"Booking {booking.booking_code} was cancelled by the {actor}. "
            f"{quote.label}. Penalty retained: {fmt(penalty)}.",
        )
        await self._notifier.send_sms(booking.guest_phone, "booking_cancelled", data)
        await self._notifier.send_email(booking.guest_email, "booking_cancelled", data)
        try:
            await self._store.log_activity(
                actor,
                "BOOKING_CANCELLED",
                booking.id,
                {**data, "penalty": penalty, "card_refund": card_refund},
            )
        except BaseORMException:
            logger.warning("Activity log write failed for booking={}", booking.id, exc_info=True)

    # -- other lifecycle entry points ---------------------------------------

    async def record_trip_charges(
        self, booking_id: UUID, payload: TripChargesCreate, actor: str
    ) -> TripChargesRecorded:
        return await self.charges.record_trip_charges(booking_id, payload, actor)

    async def process_charges(self, request: ProcessChargesRequest) -> ProcessChargesResponse:
        return await self.charges.process_charges(request)

    async def clear_charges(
        self, booking_id: UUID, actor: str, reason: str
    ) -> ClearChargesResponse:
        return await self.charges.clear_charges(booking_id, actor, reason)

    async def waive_charges(
        self, booking_id: UUID, percentage: Decimal, actor: str, reason: str
    ) -> WaiveChargesResponse:
        return await self.charges.waive_charges(booking_id, percentage, actor, reason)

    async def dispute_charges(
        self, booking_id: UUID, caller: CurrentUser, request: DisputeChargesRequest
    ) -> DisputeChargesResponse:
        return await self.charges.dispute_charges(booking_id, caller, request)

    async def approve_charges(
        self, booking_id: UUID, actor: str, note: str | None = None
    ) -> ApproveChargesResponse:
        return await self.charges.approve_charges(booking_id, actor, note)

    async def adjust_charges(
        self, booking_id: UUID, adjustments: ChargeAdjustments, actor: str, reason: str
    ) -> AdjustChargesResponse:
        return await self.charges.adjust_charges(booking_id, adjustments, actor, reason)

    async def resolve_dispute(
        self, booking_id: UUID, request: ResolveDisputeRequest, actor: str
    ) -> ResolveDisputeResponse:
        return await self.charges.resolve_dispute(booking_id, request, actor)

    async def retry_refund(self, request_id: UUID) -> RefundRequestRecord:
        booking, outcome = await self.reconciler.retry_refund_request(request_id)
        if booking.payment_status != outcome.payment_status:
            await self._store.update_booking(booking.id, payment_status=outcome.payment_status)
        return outcome.refund_request

    async def retry_ledger_adjustments(
        self, guest_id: UUID | None = None
    ) -> AdjustmentReplayResponse:
        return await self.ledger.replay_pending(guest_id)

    async def grant_balance(
        self, guest_id: UUID, request: LedgerCreditRequest, actor: str
    ) -> LedgerTransactionRecord:
        """Goodwill credit or promotional bonus added by an admin."""
        async with self._store.transaction():
            tx = await self.ledger.credit(guest_id, request.kind, request.amount, request.reason)
            await self._store.log_activity(
                actor,
                "LEDGER_CREDITED",
                guest_id,
                {"kind": request.kind, "amount": request.amount, "reason": request.reason},
                entity_type="Guest",
            )
        return tx


def get_orchestrator(
    store: SettlementCRUD = Depends(get_store),
    gateway: PaymentsClient = Depends(get_payments_client),
    notifier: Notifier = Depends(get_notifier),
    lock: ChargeLock = Depends(get_charge_lock),
    config: SettlementConfig = Depends(get_config),
) -> SettlementOrchestrator:
    return SettlementOrchestrator(store, gateway, notifier, lock, config)
