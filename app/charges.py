"""
Deferred post-trip charges.

A trip that ends with extra charges (mileage, fuel, late return, damage,
cleaning, other) parks them on the booking for a hold window so the guest
can review or dispute. A scheduler then calls `process_charges`, which
captures what is owed, retries failures up to `max_retries` and escalates
to an admin once the cap is reached.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from uuid import UUID

from loguru import logger
from tortoise.exceptions import BaseORMException

from app.crud import SettlementCRUD
from app.deps import CurrentUser, IntentState, IntentStatus, PaymentsClient
from app.errors import (
    BookingNotFound,
    ConflictError,
    GatewayError,
    GatewayTimeout,
    InvalidTransition,
    NotBookingOwner,
)
from app.locks import ChargeLock
from app.models import (
    BookingStatus,
    ChargeStatus,
    NotificationPriority,
    PaymentStatus,
)
from app.money import ZERO, fmt, from_cents, quantize, to_cents
from app.outbox import Notifier
from app.schemas import (
    COMPONENT_FIELDS,
    AdjustChargesResponse,
    AdminNotificationCreate,
    ApproveChargesResponse,
    BookingRecord,
    ChargeAdjustments,
    ChargeOutcome,
    ChargeQueueFilter,
    ChargeResult,
    ClearChargesResponse,
    DisputeChargesRequest,
    DisputeChargesResponse,
    DisputeDecision,
    PendingChargeFilters,
    PendingChargeItem,
    PendingChargesResponse,
    PendingChargeStats,
    ProcessChargesRequest,
    ProcessChargesResponse,
    ProcessMode,
    ProcessSummary,
    ResolveDisputeRequest,
    ResolveDisputeResponse,
    TripChargeRecord,
    TripChargesCreate,
    TripChargesRecorded,
    WaiveChargesResponse,
)
from app.settings import ADMIN_BASE_URL, SettlementConfig

COMPONENT_LABELS = {
    "mileage": "Mileage overage",
    "fuel": "Fuel refill",
    "late": "Late return",
    "damage": "Damage",
    "cleaning": "Cleaning",
    "other": "Other charges",
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def derive_category(components: dict[str, Decimal]) -> str:
    """Display category: the single charged component, else 'multiple' or 'none'."""
    charged = [name for name, amount in components.items() if amount > 0]
    if not charged:
        return "none"
    if len(charged) == 1:
        return charged[0]
    return "multiple"


def _breakdown(components: dict[str, Decimal]) -> str:
    return "\n".join(
        f"• {COMPONENT_LABELS[name]}: {fmt(amount)}"
        for name, amount in components.items()
        if amount > 0
    )


def _admin_url(booking_id: UUID) -> str:
    return f"{ADMIN_BASE_URL}/{booking_id}"


def _authorize_key(charge_id: UUID, amount: Decimal, attempt: int) -> str:
    return f"trip-charge:{charge_id}:{to_cents(amount)}:{attempt}"


def _key_amount(key: str) -> Decimal:
    """The amount an authorize key was issued for; a replay must send it unchanged."""
    return from_cents(int(key.split(":")[2]))


# ---------------------------------------------------------------------------
# Selection (pure)
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ChargeCandidate:
    booking: BookingRecord
    charge: TripChargeRecord | None

    @property
    def amount(self) -> Decimal:
        return self.booking.pending_charges_amount or ZERO

    @property
    def ended_at(self) -> datetime | None:
        if self.booking.trip_ended_at is not None:
            return self.booking.trip_ended_at
        return self.charge.created_at if self.charge is not None else None


@dataclass
class Selection:
    ready: list[ChargeCandidate] = field(default_factory=list)
    skipped: list[tuple[ChargeCandidate, str]] = field(default_factory=list)


def hold_elapsed(candidate: ChargeCandidate, now: datetime, hold_hours: int) -> bool:
    ended = candidate.ended_at
    return ended is not None and now >= ended + timedelta(hours=hold_hours)


def select_for_processing(
    candidates: list[ChargeCandidate],
    mode: ProcessMode,
    now: datetime,
    hold_hours: int,
    max_retries: int,
) -> Selection:
    """
    Split candidates into those to attempt now and those to skip (with a
    reason). Ready candidates come back oldest trip end first, then largest
    amount first.
    """
    selection = Selection()
    for candidate in candidates:
        booking, charge = candidate.booking, candidate.charge
        if candidate.amount <= 0:
            selection.skipped.append((candidate, "no pending charges"))
        elif charge is None:
            selection.skipped.append((candidate, "no open trip charge"))
        elif charge.charge_status == ChargeStatus.DISPUTED:
            selection.skipped.append((candidate, "disputed by guest"))
        elif not booking.has_payment_method:
            selection.skipped.append((candidate, "no payment method on file"))
        elif charge.retry_count >= max_retries:
            selection.skipped.append(
                (candidate, f"exceeded max retries ({charge.retry_count}/{max_retries})")
            )
        elif charge.awaiting_approval and mode != ProcessMode.SPECIFIC:
            # naming the booking in specific mode is the admin's approval
            selection.skipped.append((candidate, "requires admin approval"))
        elif (
            mode == ProcessMode.EXPIRED
            and charge.charge_status != ChargeStatus.FAILED
            and not hold_elapsed(candidate, now, hold_hours)
        ):
            selection.skipped.append((candidate, "hold window has not elapsed"))
        else:
            selection.ready.append(candidate)

    selection.ready.sort(key=lambda c: (c.ended_at or now, -c.amount))
    return selection


# ---------------------------------------------------------------------------
# Queue
# ---------------------------------------------------------------------------


class DeferredChargeQueue:
    def __init__(
        self,
        store: SettlementCRUD,
        gateway: PaymentsClient,
        notifier: Notifier,
        lock: ChargeLock,
        config: SettlementConfig,
    ):
        self._store = store
        self._gateway = gateway
        self._notifier = notifier
        self._lock = lock
        self._config = config

    async def _get_booking(self, booking_id: UUID) -> BookingRecord:
        booking = await self._store.get_booking(booking_id)
        if booking is None:
            raise BookingNotFound(booking_id)
        return booking

    # -- enqueue ------------------------------------------------------------

    async def record_trip_charges(
        self,
        booking_id: UUID,
        payload: TripChargesCreate,
        actor: str,
        now: datetime | None = None,
    ) -> TripChargesRecorded:
        now = now or _utcnow()
        booking = await self._get_booking(booking_id)
        if booking.status != BookingStatus.CONFIRMED:
            raise InvalidTransition(booking.status, "record trip charges for")
        if await self._store.get_open_trip_charge(booking.id) is not None:
            raise ConflictError(f"Booking {booking.booking_code} already has open trip charges")

        components = {name: quantize(amount) for name, amount in payload.components.items()}
        total = sum(components.values(), ZERO)
        category = derive_category(components)
        ended_at = payload.trip_ended_at or now

        if total == 0:
            async with self._store.transaction():
                await self._store.update_booking(
                    booking.id,
                    status=BookingStatus.COMPLETED,
                    payment_status=PaymentStatus.PAID,
                    trip_ended_at=ended_at,
                    pending_charges_amount=ZERO,
                )
                await self._store.add_booking_message(
                    booking.id,
                    "Trip ended successfully with no additional charges.",
                    category="charges",
                )
                await self._store.log_activity(actor, "TRIP_ENDED", booking.id, {"total": total})
            logger.info("Trip ended without charges for booking={}", booking.id)
            return TripChargesRecorded(
                booking_id=booking.id,
                trip_charge_id=None,
                total_amount=total,
                category=category,
                payment_status=PaymentStatus.PAID,
            )

        hold_until = ended_at + timedelta(hours=self._config.hold_hours)
        requires_approval = total > self._config.approval_threshold
        has_method = booking.has_payment_method

        if has_method:
            guest_text = (
                f"Trip completed. Additional charges pending review.\n\n{_breakdown(components)}"
                f"\n\nTotal: {fmt(total)}\n\nThese charges will be processed after "
                f"{self._config.hold_hours} hours unless you dispute them."
            )
        else:
            guest_text = (
                "⚠️ Trip completed with additional charges but no payment method on file."
                f"\n\n{_breakdown(components)}\n\nTotal: {fmt(total)}\n\n"
                "Please add a payment method or our team will contact you."
            )

        async with self._store.transaction():
            charge = await self._store.create_trip_charge(
                booking.id,
                total_amount=total,
                mileage_charge=components["mileage"],
                fuel_charge=components["fuel"],
                late_charge=components["late"],
                damage_charge=components["damage"],
                cleaning_charge=components["cleaning"],
                other_charges=components["other"],
                category=category,
                charge_status=ChargeStatus.PENDING,
                hold_until=hold_until,
                requires_approval=requires_approval,
            )
            await self._store.update_booking(
                booking.id,
                payment_status=PaymentStatus.PENDING_CHARGES,
                pending_charges_amount=total,
                trip_ended_at=ended_at,
            )
            await self._store.add_booking_message(
                booking.id, guest_text, category="charges", is_urgent=not has_method
            )
            await self._store.create_admin_notification(
                AdminNotificationCreate(
                    type="PENDING_CHARGES",
                    title=f"Trip Charges Need Review - {booking.booking_code}",
                    message=(
                        f"Trip ended with {fmt(total)} in charges. "
                        + (
                            "Review required"
                            if has_method
                            else "No payment method on file - manual collection required"
                        )
                    ),
                    priority=(
                        NotificationPriority.MEDIUM
                        if has_method
                        else NotificationPriority.URGENT
                    ),
                    related_id=booking.id,
                    action_required=True,
                    action_url=_admin_url(booking.id),
                    metadata={
                        "charges": components,
                        "total": total,
                        "has_payment_method": has_method,
                        "requires_approval": requires_approval,
                    },
                )
            )
            await self._store.log_activity(
                actor,
                "TRIP_ENDED",
                booking.id,
                {"total": total, "category": category, "hold_until": hold_until},
            )

        logger.info(
            "Queued {} trip charges for booking={} hold_until={}",
            fmt(total),
            booking.id,
            hold_until,
        )
        return TripChargesRecorded(
            booking_id=booking.id,
            trip_charge_id=charge.id,
            total_amount=total,
            category=category,
            payment_status=PaymentStatus.PENDING_CHARGES,
            hold_until=hold_until,
            requires_approval=requires_approval,
        )

    # -- query --------------------------------------------------------------

    async def _candidates(self, booking_ids: list[UUID] | None = None) -> list[ChargeCandidate]:
        bookings = await self._store.list_bookings_with_pending_charges(booking_ids)
        return [
            ChargeCandidate(booking=b, charge=await self._store.get_open_trip_charge(b.id))
            for b in bookings
        ]

    def _is_ready(self, candidate: ChargeCandidate, now: datetime) -> bool:
        charge = candidate.charge
        return (
            charge is not None
            and charge.charge_status != ChargeStatus.DISPUTED
            and not charge.awaiting_approval
            and candidate.booking.has_payment_method
            and charge.retry_count < self._config.max_retries
            and (
                charge.charge_status == ChargeStatus.FAILED
                or hold_elapsed(candidate, now, self._config.hold_hours)
            )
        )

    def _matches(
        self, candidate: ChargeCandidate, filters: PendingChargeFilters, now: datetime
    ) -> bool:
        charge_status = candidate.charge.charge_status if candidate.charge else None
        if filters.status == ChargeQueueFilter.PENDING and charge_status != ChargeStatus.PENDING:
            return False
        if filters.status == ChargeQueueFilter.FAILED and charge_status not in (
            ChargeStatus.FAILED,
            ChargeStatus.REVIEW_REQUESTED,
        ):
            return False
        if filters.status == ChargeQueueFilter.EXPIRED and not (
            charge_status == ChargeStatus.PENDING
            and hold_elapsed(candidate, now, self._config.hold_hours)
        ):
            return False
        if filters.status == ChargeQueueFilter.DISPUTED and charge_status != ChargeStatus.DISPUTED:
            return False
        if filters.status == ChargeQueueFilter.AWAITING_APPROVAL and not (
            candidate.charge is not None and candidate.charge.awaiting_approval
        ):
            return False
        if filters.older_than_hours is not None:
            ended = candidate.ended_at
            if ended is None or ended > now - timedelta(hours=filters.older_than_hours):
                return False
        return True

    async def list_pending_charges(
        self, filters: PendingChargeFilters, now: datetime | None = None
    ) -> PendingChargesResponse:
        now = now or _utcnow()
        candidates = await self._candidates()
        candidates.sort(key=lambda c: (c.ended_at or now, -c.amount))

        ended = [c.ended_at for c in candidates if c.ended_at is not None]
        stats = PendingChargeStats(
            total_pending_count=len(candidates),
            total_pending_amount=sum((c.amount for c in candidates), ZERO),
            oldest_pending_at=min(ended) if ended else None,
            ready_to_process_count=sum(1 for c in candidates if self._is_ready(c, now)),
            failed_count=sum(
                1
                for c in candidates
                if c.charge is not None
                and c.charge.charge_status in (ChargeStatus.FAILED, ChargeStatus.REVIEW_REQUESTED)
            ),
            disputed_count=sum(
                1
                for c in candidates
                if c.charge is not None and c.charge.charge_status == ChargeStatus.DISPUTED
            ),
            awaiting_approval_count=sum(
                1 for c in candidates if c.charge is not None and c.charge.awaiting_approval
            ),
        )

        items = [
            PendingChargeItem(
                booking_id=c.booking.id,
                booking_code=c.booking.booking_code,
                trip_charge_id=c.charge.id if c.charge else None,
                amount=c.amount,
                category=c.charge.category if c.charge else None,
                charge_status=c.charge.charge_status if c.charge else None,
                retry_count=c.charge.retry_count if c.charge else 0,
                failure_reason=c.charge.failure_reason if c.charge else None,
                trip_ended_at=c.ended_at,
                hold_until=c.charge.hold_until if c.charge else None,
                ready_to_process=self._is_ready(c, now),
                has_payment_method=c.booking.has_payment_method,
                requires_approval=c.charge.requires_approval if c.charge else False,
                approved=c.charge.approved_at is not None if c.charge else False,
                dispute_reason=c.charge.dispute_reason if c.charge else None,
            )
            for c in candidates
            if self._matches(c, filters, now)
        ][: filters.limit]
        return PendingChargesResponse(items=items, stats=stats)

    # -- batch --------------------------------------------------------------

    async def process_charges(
        self, request: ProcessChargesRequest, now: datetime | None = None
    ) -> ProcessChargesResponse:
        now = now or _utcnow()
        max_retries = (
            request.max_retries if request.max_retries is not None else self._config.max_retries
        )
        hold_hours = (
            request.hold_hours if request.hold_hours is not None else self._config.hold_hours
        )
        booking_ids = request.booking_ids if request.mode == ProcessMode.SPECIFIC else None

        candidates = await self._candidates(booking_ids)
        selection = select_for_processing(candidates, request.mode, now, hold_hours, max_retries)
        logger.info(
            "Charge batch mode={} dry_run={} ready={} skipped={}",
            request.mode,
            request.dry_run,
            len(selection.ready),
            len(selection.skipped),
        )

        results: list[ChargeResult] = []
        for candidate in selection.ready:
            if request.dry_run:
                results.append(
                    ChargeResult(
                        booking_id=candidate.booking.id,
                        trip_charge_id=candidate.charge.id,
                        status=ChargeOutcome.SUCCESS,
                        amount=candidate.amount,
                        reason="would charge",
                        retry_count=candidate.charge.retry_count,
                        dry_run=True,
                    )
                )
            else:
                results.append(await self._attempt(candidate, max_retries, now))

        for candidate, reason in selection.skipped:
            results.append(
                ChargeResult(
                    booking_id=candidate.booking.id,
                    trip_charge_id=candidate.charge.id if candidate.charge else None,
                    status=ChargeOutcome.SKIPPED,
                    amount=candidate.amount,
                    reason=reason,
                    retry_count=candidate.charge.retry_count if candidate.charge else 0,
                    dry_run=request.dry_run,
                )
            )

        if booking_ids:
            seen = {c.booking.id for c in candidates}
            for missing in booking_ids:
                if missing not in seen:
                    results.append(
                        ChargeResult(
                            booking_id=missing,
                            status=ChargeOutcome.SKIPPED,
                            reason="no pending charges",
                            dry_run=request.dry_run,
                        )
                    )

        successful = [r for r in results if r.status == ChargeOutcome.SUCCESS]
        failed = [r for r in results if r.status == ChargeOutcome.FAILED]
        errors = [r for r in results if r.status == ChargeOutcome.ERROR]
        summary = ProcessSummary(
            processed=len(successful) + len(failed) + len(errors),
            successful=len(successful),
            failed=len(failed),
            skipped=len(results) - len(successful) - len(failed) - len(errors),
            errors=len(errors),
            total_charged=sum((r.amount for r in successful), ZERO),
        )
        logger.info(
            "Charge batch done: successful={} failed={} errors={} skipped={} total={}",
            summary.successful,
            summary.failed,
            summary.errors,
            summary.skipped,
            summary.total_charged,
        )
        return ProcessChargesResponse(
            dry_run=request.dry_run, mode=request.mode, results=results, summary=summary
        )

    async def _attempt(
        self, candidate: ChargeCandidate, max_retries: int, now: datetime
    ) -> ChargeResult:
        booking, charge = candidate.booking, candidate.charge
        if not await self._lock.acquire(booking.id, charge.id):
            return ChargeResult(
                booking_id=booking.id,
                trip_charge_id=charge.id,
                status=ChargeOutcome.SKIPPED,
                amount=candidate.amount,
                reason="already being processed",
                retry_count=charge.retry_count,
            )
        try:
            try:
                intent_id, collected = await self._capture(booking, charge, candidate.amount)
            except GatewayError as exc:
                return await self._record_failure(
                    candidate, str(exc.detail), max_retries, now
                )
            return await self._record_success(candidate, intent_id, collected, now)
        except BaseORMException as exc:
            # a stored intent id lets the next sweep pick up where this one stopped
            logger.exception("Storage error while charging booking={}", booking.id)
            return ChargeResult(
                booking_id=booking.id,
                trip_charge_id=charge.id,
                status=ChargeOutcome.ERROR,
                amount=candidate.amount,
                reason=f"storage error: {exc}",
                retry_count=charge.retry_count,
            )
        finally:
            await self._lock.release(booking.id, charge.id)

    async def _capture(
        self, booking: BookingRecord, charge: TripChargeRecord, amount: Decimal
    ) -> tuple[str, Decimal]:
        """
        Collect exactly `amount` and return the intent id with what was
        collected. The amount owed may have changed since an earlier attempt
        authorized (a waive or an adjustment), so any intent left behind is
        settled against `amount`, never against its own authorization.
        """
        if charge.gateway_intent_id:
            state = await self._gateway.retrieve_status(charge.gateway_intent_id)
            collected = await self._settle_intent(charge, state, amount)
            if collected is not None:
                return state.id, collected

        if charge.authorize_key:
            # an earlier authorization timed out; replaying its key finds that intent
            state = await self._authorize(booking, charge, charge.authorize_key)
            collected = await self._settle_intent(charge, state, amount)
            if collected is not None:
                return state.id, collected

        key = _authorize_key(charge.id, amount, charge.retry_count)
        state = await self._authorize(booking, charge, key)
        collected = await self._settle_intent(charge, state, amount)
        if collected is None:
            raise GatewayError(f"Card authorization returned {state.status}")
        return state.id, collected

    async def _authorize(
        self, booking: BookingRecord, charge: TripChargeRecord, key: str
    ) -> IntentState:
        # persisted first so a timeout leaves the key behind for the next attempt
        await self._store.update_trip_charge(charge.id, authorize_key=key)
        try:
            state = await self._gateway.authorize(
                booking.stripe_customer_id,
                booking.payment_method_id,
                _key_amount(key),
                metadata={
                    "booking_id": booking.id,
                    "booking_code": booking.booking_code,
                    "trip_charge_id": charge.id,
                    "type": "trip_charges",
                },
                idempotency_key=key,
            )
        except GatewayTimeout:
            logger.warning("Authorization for charge={} timed out; key {} kept", charge.id, key)
            raise
        except GatewayError:
            await self._store.update_trip_charge(charge.id, authorize_key=None)
            raise
        await self._store.update_trip_charge(
            charge.id, gateway_intent_id=state.id, authorize_key=None
        )
        return state

    async def _settle_intent(
        self, charge: TripChargeRecord, state: IntentState, owed: Decimal
    ) -> Decimal | None:
        """
        Bring an existing intent in line with `owed`. Returns the amount
        collected, or None when the intent cannot be used and a fresh
        authorization is needed.
        """
        if state.status == IntentStatus.SUCCEEDED:
            net = state.amount_captured - state.amount_refunded
            if net < owed:
                raise GatewayError(
                    f"Intent {state.id} collected {fmt(net)} but {fmt(owed)} is owed"
                )
            if net > owed:
                excess = net - owed
                await self._gateway.refund(
                    state.id,
                    excess,
                    metadata={"trip_charge_id": charge.id, "type": "trip_charges_excess"},
                    idempotency_key=f"trip-excess:{charge.id}:{to_cents(owed)}",
                )
                logger.warning(
                    "Intent {} held {} for charge={} owing {}; refunded {}",
                    state.id,
                    fmt(net),
                    charge.id,
                    fmt(owed),
                    fmt(excess),
                )
            return owed

        if state.status == IntentStatus.REQUIRES_CAPTURE:
            if state.amount < owed:
                await self._gateway.cancel(state.id, reason="abandoned")
                logger.info(
                    "Released {} hold {} for charge={} owing {}",
                    fmt(state.amount),
                    state.id,
                    charge.id,
                    fmt(owed),
                )
                return None
            captured = await self._gateway.capture(
                state.id,
                amount=owed if owed < state.amount else None,
                idempotency_key=f"trip-capture:{charge.id}:{to_cents(owed)}",
            )
            return captured.amount_captured

        if state.status == IntentStatus.PROCESSING:
            raise GatewayError(f"Intent {state.id} is still processing")
        if state.status != IntentStatus.CANCELED:
            # requires_payment_method / confirmation / action: never completes off-session
            await self._gateway.cancel(state.id, reason="abandoned")
        return None

    async def _record_success(
        self, candidate: ChargeCandidate, intent_id: str, amount: Decimal, now: datetime
    ) -> ChargeResult:
        booking, charge = candidate.booking, candidate.charge
        async with self._store.transaction():
            won = await self._store.compare_and_set_trip_charge(
                charge.id,
                charge.charge_status,
                charge.retry_count,
                charge_status=ChargeStatus.CHARGED,
                gateway_intent_id=intent_id,
                gateway_charge_id=intent_id,
                authorize_key=None,
                charged_at=now,
                last_attempt_at=now,
                failure_reason=None,
            )
            if not won:
                logger.error(
                    "Charge {} changed while capturing intent {}; needs review",
                    charge.id,
                    intent_id,
                )
                return ChargeResult(
                    booking_id=booking.id,
                    trip_charge_id=charge.id,
                    status=ChargeOutcome.SKIPPED,
                    amount=amount,
                    reason="charge state changed during processing",
                    charge_id=intent_id,
                    retry_count=charge.retry_count,
                )
            await self._store.update_booking(
                booking.id,
                status=BookingStatus.COMPLETED,
                payment_status=PaymentStatus.CHARGES_PAID,
                pending_charges_amount=ZERO,
                charges_processed_at=now,
                payment_failure_reason=None,
            )
            await self._store.add_booking_message(
                booking.id,
                f"✅ Additional charges of {fmt(amount)} have been processed successfully.",
                category="charges",
            )
            await self._store.log_activity(
                "system",
                "TRIP_CHARGES_CAPTURED",
                booking.id,
                {"amount": amount, "intent_id": intent_id, "trip_charge_id": charge.id},
            )

        await self._notifier.send_email(
            booking.guest_email,
            "trip_charges_processed",
            {"booking_code": booking.booking_code, "amount": fmt(amount)},
        )
        await self._notifier.send_guest_message(
            booking.guest_id,
            booking.id,
            f"Your trip charges of {fmt(amount)} for {booking.booking_code} were processed.",
        )
        logger.info("Charged {} for booking={} intent={}", fmt(amount), booking.id, intent_id)
        return ChargeResult(
            booking_id=booking.id,
            trip_charge_id=charge.id,
            status=ChargeOutcome.SUCCESS,
            amount=amount,
            charge_id=intent_id,
            retry_count=charge.retry_count,
        )

    async def _record_failure(
        self, candidate: ChargeCandidate, reason: str, max_retries: int, now: datetime
    ) -> ChargeResult:
        booking, charge, amount = candidate.booking, candidate.charge, candidate.amount
        retry_count = charge.retry_count + 1
        final = retry_count >= max_retries
        new_status = ChargeStatus.REVIEW_REQUESTED if final else ChargeStatus.FAILED

        if final:
            guest_text = (
                f"⚠️ Attempted to charge {fmt(amount)} but payment failed: {reason}. "
                "This was the final automatic attempt. Our team will contact you to resolve it."
            )
        else:
            guest_text = (
                f"⚠️ Attempted to charge {fmt(amount)} but payment failed: {reason}. "
                "We will retry automatically."
            )

        async with self._store.transaction():
            won = await self._store.compare_and_set_trip_charge(
                charge.id,
                charge.charge_status,
                charge.retry_count,
                charge_status=new_status,
                retry_count=retry_count,
                failure_reason=reason,
                last_attempt_at=now,
            )
            if not won:
                return ChargeResult(
                    booking_id=booking.id,
                    trip_charge_id=charge.id,
                    status=ChargeOutcome.SKIPPED,
                    amount=amount,
                    reason="charge state changed during processing",
                    retry_count=charge.retry_count,
                )
            await self._store.update_booking(
                booking.id,
                payment_status=PaymentStatus.PAYMENT_FAILED,
                payment_failure_reason=reason,
            )
            await self._store.add_booking_message(
                booking.id, guest_text, category="charges", is_urgent=final
            )
            if final:
                await self._store.create_admin_notification(
                    AdminNotificationCreate(
                        type="CHARGE_FAILED",
                        title=f"Trip Charge Failed - {booking.booking_code}",
                        message=(
                            f"Charging {fmt(amount)} failed after {retry_count} attempts: "
                            f"{reason}"
                        ),
                        priority=NotificationPriority.HIGH,
                        related_id=booking.id,
                        action_required=True,
                        action_url=_admin_url(booking.id),
                        metadata={
                            "amount": amount,
                            "retry_count": retry_count,
                            "failure_reason": reason,
                            "trip_charge_id": charge.id,
                        },
                    )
                )
            await self._store.log_activity(
                "system",
                "TRIP_CHARGE_FAILED",
                booking.id,
                {"amount": amount, "retry_count": retry_count, "reason": reason},
            )

        if final:
            await self._notifier.send_email(
                booking.guest_email,
                "trip_charges_failed",
                {"booking_code": booking.booking_code, "amount": fmt(amount), "reason": reason},
            )
            await self._notifier.send_guest_message(booking.guest_id, booking.id, guest_text)
        logger.warning(
            "Charge failed for booking={} attempt={}/{}: {}",
            booking.id,
            retry_count,
            max_retries,
            reason,
        )
        return ChargeResult(
            booking_id=booking.id,
            trip_charge_id=charge.id,
            status=ChargeOutcome.FAILED,
            amount=amount,
            reason=reason,
            retry_count=retry_count,
        )

    # -- guest --------------------------------------------------------------

    async def dispute_charges(
        self,
        booking_id: UUID,
        caller: CurrentUser,
        request: DisputeChargesRequest,
        now: datetime | None = None,
    ) -> DisputeChargesResponse:
        """Park a pending charge for admin review while its hold window is open."""
        now = now or _utcnow()
        booking = await self._get_booking(booking_id)
        if booking.guest_id != caller.id:
            raise NotBookingOwner("dispute its charges")
        charge = await self._store.get_open_trip_charge(booking.id)
        if charge is None or charge.charge_status != ChargeStatus.PENDING:
            raise ConflictError(f"Booking {booking.booking_code} has no disputable charges")
        hold_until = charge.hold_until or (
            (booking.trip_ended_at or charge.created_at)
            + timedelta(hours=self._config.hold_hours)
        )
        if now >= hold_until:
            raise ConflictError(
                f"The dispute window for {booking.booking_code} closed at {hold_until.isoformat()}"
            )

        items = [str(item) for item in request.items]
        labels = ", ".join(COMPONENT_LABELS[item] for item in items) or "all charges"
        pending = booking.pending_charges_amount or ZERO

        async with self._store.transaction():
            won = await self._store.compare_and_set_trip_charge(
                charge.id,
                ChargeStatus.PENDING,
                charge.retry_count,
                charge_status=ChargeStatus.DISPUTED,
                dispute_reason=request.reason,
                disputed_items=items,
                disputed_at=now,
            )
            if not won:
                raise ConflictError(
                    f"Charges on {booking.booking_code} are already being processed"
                )
            await self._store.add_booking_message(
                booking.id,
                f"Your dispute of {labels} ({fmt(pending)}) was received. "
                "Charges are on hold until our team reviews it.",
                category="charges",
            )
            await self._store.create_admin_notification(
                AdminNotificationCreate(
                    type="CHARGES_DISPUTED",
                    title=f"Trip Charges Disputed - {booking.booking_code}",
                    message=f"Guest disputed {labels} ({fmt(pending)}): {request.reason}",
                    priority=NotificationPriority.HIGH,
                    related_id=booking.id,
                    action_required=True,
                    action_url=_admin_url(booking.id),
                    metadata={
                        "trip_charge_id": charge.id,
                        "items": items,
                        "amount": pending,
                        "reason": request.reason,
                    },
                )
            )
            await self._store.log_activity(
                str(caller.id),
                "CHARGES_DISPUTED",
                booking.id,
                {"trip_charge_id": charge.id, "items": items, "reason": request.reason},
            )

        await self._notifier.send_host_message(
            booking.host_id,
            booking.id,
            f"The guest disputed trip charges on {booking.booking_code}. Our team is reviewing.",
        )
        logger.info("Guest disputed charge={} on booking={}", charge.id, booking.id)
        return DisputeChargesResponse(
            booking_id=booking.id,
            trip_charge_id=charge.id,
            charge_status=ChargeStatus.DISPUTED,
            disputed_at=now,
        )

    # -- admin --------------------------------------------------------------

    async def clear_charges(
        self, booking_id: UUID, actor: str, reason: str, now: datetime | None = None
    ) -> ClearChargesResponse:
        now = now or _utcnow()
        booking = await self._get_booking(booking_id)
        if booking.status == BookingStatus.CANCELLED:
            raise InvalidTransition(booking.status, "clear charges on")
        open_charges = await self._store.list_open_trip_charges(booking.id)
        pending = booking.pending_charges_amount or ZERO
        if not open_charges and pending <= 0:
            raise ConflictError(f"Booking {booking.booking_code} has no pending charges")

        async with self._store.transaction():
            for charge in open_charges:
                await self._store.update_trip_charge(
                    charge.id,
                    charge_status=ChargeStatus.CLEARED,
                    cleared_at=now,
                    cleared_by=actor,
                    waived_amount=charge.total_amount,
                    waive_reason=reason,
                )
            await self._store.update_booking(
                booking.id,
                status=BookingStatus.COMPLETED,
                payment_status=PaymentStatus.CHARGES_CLEARED,
                pending_charges_amount=ZERO,
                charges_processed_at=now,
                payment_failure_reason=None,
            )
            await self._store.add_booking_message(
                booking.id,
                f"✅ All additional charges ({fmt(pending)}) have been waived. Reason: {reason}",
                category="charges",
            )
            await self._store.log_activity(
                actor,
                "CHARGES_CLEARED",
                booking.id,
                {
                    "amount": pending,
                    "reason": reason,
                    "trip_charge_ids": [c.id for c in open_charges],
                },
            )

        await self._notifier.send_email(
            booking.guest_email,
            "trip_charges_waived",
            {"booking_code": booking.booking_code, "amount": fmt(pending), "reason": reason},
        )
        logger.info("Cleared {} for booking={} by {}", fmt(pending), booking.id, actor)
        return ClearChargesResponse(
            booking_id=booking.id,
            cleared_amount=pending,
            cleared_charge_ids=[c.id for c in open_charges],
            payment_status=PaymentStatus.CHARGES_CLEARED,
        )

    async def waive_charges(
        self,
        booking_id: UUID,
        percentage: Decimal,
        actor: str,
        reason: str,
        now: datetime | None = None,
    ) -> WaiveChargesResponse:
        """Waive part of the open charge; the remainder stays queued."""
        if not 0 < percentage < 100:
            raise ValueError(f"percentage must be between 0 and 100, got {percentage}")
        booking = await self._get_booking(booking_id)
        charge = await self._store.get_open_trip_charge(booking.id)
        pending = booking.pending_charges_amount or ZERO
        if charge is None or pending <= 0:
            raise ConflictError(f"Booking {booking.booking_code} has no pending charges")

        waived = quantize(pending * percentage / Decimal(100))
        remaining = pending - waived
        if remaining <= 0:
            cleared = await self.clear_charges(booking.id, actor, reason, now=now)
            return WaiveChargesResponse(
                booking_id=booking.id,
                trip_charge_id=charge.id,
                waived_amount=cleared.cleared_amount,
                remaining_amount=ZERO,
            )

        async with self._store.transaction():
            await self._store.update_trip_charge(
                charge.id,
                waived_amount=charge.waived_amount + waived,
                waive_reason=reason,
            )
            await self._store.update_booking(booking.id, pending_charges_amount=remaining)
            await self._store.add_booking_message(
                booking.id,
                f"✅ {percentage.normalize():f}% of charges waived ({fmt(waived)}). "
                f"Remaining {fmt(remaining)} will be charged to your card on file.",
                category="charges",
            )
            await self._store.log_activity(
                actor,
                "CHARGES_PARTIALLY_WAIVED",
                booking.id,
                {
                    "percentage": percentage,
                    "waived": waived,
                    "remaining": remaining,
                    "reason": reason,
                },
            )

        logger.info(
            "Waived {} of {} for booking={} by {}", fmt(waived), fmt(pending), booking.id, actor
        )
        return WaiveChargesResponse(
            booking_id=booking.id,
            trip_charge_id=charge.id,
            waived_amount=waived,
            remaining_amount=remaining,
        )

    async def approve_charges(
        self,
        booking_id: UUID,
        actor: str,
        note: str | None = None,
        now: datetime | None = None,
    ) -> ApproveChargesResponse:
        """Release a charge above the auto-approval threshold to the next sweep."""
        now = now or _utcnow()
        booking = await self._get_booking(booking_id)
        charge = await self._store.get_open_trip_charge(booking.id)
        if charge is None:
            raise ConflictError(f"Booking {booking.booking_code} has no pending charges")
        if charge.charge_status == ChargeStatus.DISPUTED:
            raise ConflictError(f"Resolve the dispute on {booking.booking_code} first")
        if not charge.awaiting_approval:
            raise ConflictError(f"Charges on {booking.booking_code} do not need approval")

        async with self._store.transaction():
            await self._store.update_trip_charge(charge.id, approved_at=now, approved_by=actor)
            await self._store.log_activity(
                actor,
                "CHARGES_APPROVED",
                booking.id,
                {
                    "trip_charge_id": charge.id,
                    "amount": booking.pending_charges_amount,
                    "note": note,
                },
            )

        logger.info("Charge {} on booking={} approved by {}", charge.id, booking.id, actor)
        return ApproveChargesResponse(
            booking_id=booking.id,
            trip_charge_id=charge.id,
            amount=booking.pending_charges_amount or ZERO,
            approved_at=now,
            approved_by=actor,
        )

    async def adjust_charges(
        self,
        booking_id: UUID,
        adjustments: ChargeAdjustments,
        actor: str,
        reason: str,
        now: datetime | None = None,
    ) -> AdjustChargesResponse:
        """Correct individual components; the new total counts as reviewed."""
        now = now or _utcnow()
        booking = await self._get_booking(booking_id)
        charge = await self._store.get_open_trip_charge(booking.id)
        if charge is None:
            raise ConflictError(f"Booking {booking.booking_code} has no pending charges")
        if charge.charge_status == ChargeStatus.DISPUTED:
            raise ConflictError(f"Resolve the dispute on {booking.booking_code} first")
        return await self._rewrite_components(booking, charge, adjustments, actor, reason, now)

    async def _rewrite_components(
        self,
        booking: BookingRecord,
        charge: TripChargeRecord,
        adjustments: ChargeAdjustments,
        actor: str,
        reason: str,
        now: datetime,
        **charge_fields,
    ) -> AdjustChargesResponse:
        components = {
            **charge.components,
            **{name: quantize(amount) for name, amount in adjustments.overrides.items()},
        }
        total = sum(components.values(), ZERO)
        category = derive_category(components)
        pending = total - charge.waived_amount

        if pending <= 0:
            if charge_fields:
                await self._store.update_trip_charge(charge.id, **charge_fields)
            cleared = await self.clear_charges(booking.id, actor, reason, now=now)
            return AdjustChargesResponse(
                booking_id=booking.id,
                trip_charge_id=charge.id,
                original_amount=charge.total_amount,
                adjusted_amount=total,
                pending_amount=ZERO,
                category=category,
                payment_status=cleared.payment_status,
            )

        async with self._store.transaction():
            await self._store.update_trip_charge(
                charge.id,
                **{COMPONENT_FIELDS[name]: amount for name, amount in components.items()},
                total_amount=total,
                category=category,
                requires_approval=total > self._config.approval_threshold,
                approved_at=now,
                approved_by=actor,
                **charge_fields,
            )
            await self._store.update_booking(booking.id, pending_charges_amount=pending)
            await self._store.add_booking_message(
                booking.id,
                f"✅ Trip charges adjusted. Original: {fmt(charge.total_amount)}, "
                f"now: {fmt(total)}.\n\n{_breakdown(components)}\n\nReason: {reason}",
                category="charges",
            )
            await self._store.log_activity(
                actor,
                "CHARGES_ADJUSTED",
                booking.id,
                {
                    "trip_charge_id": charge.id,
                    "original": charge.total_amount,
                    "adjusted": total,
                    "pending": pending,
                    "reason": reason,
                },
            )

        logger.info(
            "Adjusted charge={} from {} to {} by {}",
            charge.id,
            fmt(charge.total_amount),
            fmt(total),
            actor,
        )
        return AdjustChargesResponse(
            booking_id=booking.id,
            trip_charge_id=charge.id,
            original_amount=charge.total_amount,
            adjusted_amount=total,
            pending_amount=pending,
            category=category,
            payment_status=booking.payment_status,
        )

    async def resolve_dispute(
        self,
        booking_id: UUID,
        request: ResolveDisputeRequest,
        actor: str,
        now: datetime | None = None,
    ) -> ResolveDisputeResponse:
        now = now or _utcnow()
        booking = await self._get_booking(booking_id)
        charge = await self._store.get_open_trip_charge(booking.id)
        if charge is None or charge.charge_status != ChargeStatus.DISPUTED:
            raise ConflictError(f"Booking {booking.booking_code} has no disputed charges")
        resolution = f"{request.decision}: {request.reason}"

        if request.decision == DisputeDecision.WAIVE:
            await self._store.update_trip_charge(charge.id, dispute_resolution=resolution)
            await self.clear_charges(booking.id, actor, request.reason, now=now)
            status, pending = ChargeStatus.CLEARED, ZERO
            guest_text = f"Your dispute on {booking.booking_code} was accepted; charges waived."
        elif request.decision == DisputeDecision.ADJUST:
            adjusted = await self._rewrite_components(
                booking,
                charge,
                request.adjustments,
                actor,
                request.reason,
                now,
                charge_status=ChargeStatus.PENDING,
                dispute_resolution=resolution,
            )
            pending = adjusted.pending_amount
            status = ChargeStatus.PENDING if pending > 0 else ChargeStatus.CLEARED
            guest_text = (
                f"Your dispute on {booking.booking_code} was reviewed; "
                f"charges adjusted to {fmt(pending)}."
            )
        else:
            pending = booking.pending_charges_amount or ZERO
            async with self._store.transaction():
                won = await self._store.compare_and_set_trip_charge(
                    charge.id,
                    ChargeStatus.DISPUTED,
                    charge.retry_count,
                    charge_status=ChargeStatus.PENDING,
                    dispute_resolution=resolution,
                    approved_at=now,
                    approved_by=actor,
                )
                if not won:
                    raise ConflictError(f"Charges on {booking.booking_code} changed; reload")
                await self._store.add_booking_message(
                    booking.id,
                    f"Your dispute was reviewed and the charges of {fmt(pending)} stand. "
                    f"Reason: {request.reason}",
                    category="charges",
                )
            status = ChargeStatus.PENDING
            guest_text = (
                f"Your dispute on {booking.booking_code} was reviewed; "
                f"charges of {fmt(pending)} stand."
            )

        await self._store.log_activity(
            actor,
            "DISPUTE_RESOLVED",
            booking.id,
            {"trip_charge_id": charge.id, "decision": request.decision, "reason": request.reason},
        )
        await self._notifier.send_guest_message(booking.guest_id, booking.id, guest_text)
        logger.info(
            "Dispute on charge={} resolved ({}) by {}", charge.id, request.decision, actor
        )
        return ResolveDisputeResponse(
            booking_id=booking.id,
            trip_charge_id=charge.id,
            decision=request.decision,
            charge_status=status,
            pending_amount=pending,
        )
