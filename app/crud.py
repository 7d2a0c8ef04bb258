from __future__ import annotations

import json
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any
from uuid import UUID

from tortoise.transactions import in_transaction

from app.errors import InsufficientBalance
from app.models import (
    OPEN_CHARGE_STATUSES,
    ActivityLog,
    AdminNotification,
    Booking,
    BookingMessage,
    BookingStatus,
    GuestLedgerAccount,
    LedgerDirection,
    LedgerKind,
    LedgerTransaction,
    ObligationStatus,
    PendingLedgerAdjustment,
    RefundRequest,
    TripCharge,
)
from app.schemas import (
    AdminNotificationCreate,
    BookingRecord,
    LedgerAccountRecord,
    LedgerAdjustmentRecord,
    LedgerTransactionRecord,
    RefundRequestRecord,
    TripChargeRecord,
)

BALANCE_FIELDS: dict[LedgerKind, str] = {
    LedgerKind.CREDIT: "credit_balance",
    LedgerKind.BONUS: "bonus_balance",
    LedgerKind.DEPOSIT: "deposit_wallet_balance",
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _jsonable(metadata: dict[str, Any]) -> dict[str, Any]:
    """Decimals, UUIDs and datetimes become strings before hitting a JSON column."""
    return json.loads(json.dumps(metadata, default=str))


class SettlementCRUD:
    """
    Every query the settlement engine runs. Services receive an instance and
    never touch the ORM directly, so tests can swap in an in-memory double.
    """

    def transaction(self):
        return in_transaction()

    # -- bookings -----------------------------------------------------------

    async def get_booking(self, booking_id: UUID) -> BookingRecord | None:
        inst = await Booking.get_or_none(id=booking_id)
        if not inst:
            return None
        return BookingRecord.model_validate(inst, from_attributes=True)

    async def compare_and_set_booking(
        self,
        booking_id: UUID,
        expected_statuses: tuple[BookingStatus, ...],
        **fields: Any,
    ) -> bool:
        """
        Conditional UPDATE used as the mutual-exclusion gate for lifecycle
        transitions. Returns False when another writer got there first.
        """
        updated = await Booking.filter(
            id=booking_id, status__in=list(expected_statuses)
        ).update(**fields, updated_at=_utcnow())
        return updated == 1

    async def update_booking(self, booking_id: UUID, **fields: Any) -> BookingRecord | None:
        inst = await Booking.get_or_none(id=booking_id)
        if not inst:
            return None
        for name, value in fields.items():
            setattr(inst, name, value)
        await inst.save(update_fields=[*fields.keys(), "updated_at"])
        return BookingRecord.model_validate(inst, from_attributes=True)

    async def list_bookings_with_pending_charges(
        self, booking_ids: list[UUID] | None = None
    ) -> list[BookingRecord]:
        qs = Booking.filter(pending_charges_amount__gt=0)
        if booking_ids:
            qs = qs.filter(id__in=booking_ids)
        bookings = await qs
        return [BookingRecord.model_validate(b, from_attributes=True) for b in bookings]

    # -- trip charges -------------------------------------------------------

    async def create_trip_charge(self, booking_id: UUID, **fields: Any) -> TripChargeRecord:
        inst = await TripCharge.create(booking_id=booking_id, **fields)
        return TripChargeRecord.model_validate(inst, from_attributes=True)

    async def get_open_trip_charge(self, booking_id: UUID) -> TripChargeRecord | None:
        inst = (
            await TripCharge.filter(
                booking_id=booking_id, charge_status__in=list(OPEN_CHARGE_STATUSES)
            )
            .order_by("-created_at")
            .first()
        )
        if not inst:
            return None
        return TripChargeRecord.model_validate(inst, from_attributes=True)

    async def list_open_trip_charges(self, booking_id: UUID) -> list[TripChargeRecord]:
        charges = await TripCharge.filter(
            booking_id=booking_id, charge_status__in=list(OPEN_CHARGE_STATUSES)
        )
        return [TripChargeRecord.model_validate(c, from_attributes=True) for c in charges]

    async def compare_and_set_trip_charge(
        self,
        charge_id: UUID,
        expected_status: str,
        expected_retry_count: int,
        **fields: Any,
    ) -> bool:
        updated = await TripCharge.filter(
            id=charge_id,
            charge_status=expected_status,
            retry_count=expected_retry_count,
        ).update(**fields)
        return updated == 1

    async def update_trip_charge(self, charge_id: UUID, **fields: Any) -> TripChargeRecord | None:
        inst = await TripCharge.get_or_none(id=charge_id)
        if not inst:
            return None
        for name, value in fields.items():
            setattr(inst, name, value)
        await inst.save(update_fields=list(fields.keys()))
        return TripChargeRecord.model_validate(inst, from_attributes=True)

    # -- refund requests ----------------------------------------------------

    async def create_refund_request(
        self,
        booking_id: UUID,
        amount: Decimal,
        retain_amount: Decimal,
        payment_intent_id: str | None,
        reason: str,
    ) -> RefundRequestRecord:
        inst = await RefundRequest.create(
            booking_id=booking_id,
            amount=amount,
            retain_amount=retain_amount,
            payment_intent_id=payment_intent_id,
            reason=reason,
        )
        return RefundRequestRecord.model_validate(inst, from_attributes=True)

    async def get_refund_request(self, request_id: UUID) -> RefundRequestRecord | None:
        inst = await RefundRequest.get_or_none(id=request_id)
        if not inst:
            return None
        return RefundRequestRecord.model_validate(inst, from_attributes=True)

    async def get_pending_refund_request(self, booking_id: UUID) -> RefundRequestRecord | None:
        inst = (
            await RefundRequest.filter(
                booking_id=booking_id, status=ObligationStatus.PENDING
            )
            .order_by("-created_at")
            .first()
        )
        if not inst:
            return None
        return RefundRequestRecord.model_validate(inst, from_attributes=True)

    async def update_refund_request(
        self, request_id: UUID, **fields: Any
    ) -> RefundRequestRecord | None:
        inst = await RefundRequest.get_or_none(id=request_id)
        if not inst:
            return None
        for name, value in fields.items():
            setattr(inst, name, value)
        await inst.save(update_fields=list(fields.keys()))
        return RefundRequestRecord.model_validate(inst, from_attributes=True)

    async def list_refund_requests(
        self,
        status: ObligationStatus | None = None,
        booking_id: UUID | None = None,
        limit: int = 100,
    ) -> list[RefundRequestRecord]:
        qs = RefundRequest.all()
        if status is not None:
            qs = qs.filter(status=status)
        if booking_id is not None:
            qs = qs.filter(booking_id=booking_id)
        requests = await qs.limit(limit)
        return [RefundRequestRecord.model_validate(r, from_attributes=True) for r in requests]

    # -- ledger -------------------------------------------------------------

    async def get_or_create_account(self, guest_id: UUID) -> LedgerAccountRecord:
        inst, _ = await GuestLedgerAccount.get_or_create(guest_id=guest_id)
        return LedgerAccountRecord.model_validate(inst, from_attributes=True)

    async def apply_ledger_mutation(
        self,
        guest_id: UUID,
        kind: LedgerKind,
        direction: LedgerDirection,
        amount: Decimal,
        reason: str,
        booking_id: UUID | None = None,
    ) -> LedgerTransactionRecord:
        """
        The only writer of ledger balances. Row-locked read-modify-write plus
        exactly one LedgerTransaction, in one transaction.
        """
        field = BALANCE_FIELDS[kind]
        async with in_transaction():
            account = (
                await GuestLedgerAccount.filter(guest_id=guest_id)
                .select_for_update()
                .first()
            )
            if account is None:
                account = await GuestLedgerAccount.create(guest_id=guest_id)

            current: Decimal = getattr(account, field)
            if direction == LedgerDirection.ADD:
                balance_after = current + amount
            else:
                balance_after = current - amount
            if balance_after < 0:
                raise InsufficientBalance(
                    f"{kind} balance {current} cannot cover {amount} for guest {guest_id}"
                )

            setattr(account, field, balance_after)
            await account.save(update_fields=[field, "updated_at"])

            tx = await LedgerTransaction.create(
                account=account,
                amount=amount,
                balance_after=balance_after,
                kind=kind,
                direction=direction,
                reason=reason,
                booking_id=booking_id,
            )
        return LedgerTransactionRecord.model_validate(tx, from_attributes=True)

    async def list_ledger_transactions(
        self, guest_id: UUID, limit: int = 100
    ) -> list[LedgerTransactionRecord]:
        txs = await LedgerTransaction.filter(account__guest_id=guest_id).limit(limit)
        return [LedgerTransactionRecord.model_validate(t, from_attributes=True) for t in txs]

    async def create_ledger_adjustment(
        self,
        guest_id: UUID,
        kind: LedgerKind,
        amount: Decimal,
        reason: str,
        booking_id: UUID | None = None,
    ) -> LedgerAdjustmentRecord:
        inst = await PendingLedgerAdjustment.create(
            guest_id=guest_id,
            booking_id=booking_id,
            kind=kind,
            amount=amount,
            reason=reason,
        )
        return LedgerAdjustmentRecord.model_validate(inst, from_attributes=True)

    async def list_pending_ledger_adjustments(
        self, guest_id: UUID | None = None
    ) -> list[LedgerAdjustmentRecord]:
        qs = PendingLedgerAdjustment.filter(status=ObligationStatus.PENDING)
        if guest_id is not None:
            qs = qs.filter(guest_id=guest_id)
        return [
            LedgerAdjustmentRecord.model_validate(a, from_attributes=True) for a in await qs
        ]

    async def apply_ledger_adjustment(
        self, adjustment_id: UUID
    ) -> LedgerTransactionRecord | None:
        """
        Apply a pending adjustment and mark it COMPLETED atomically.
        Returns None if it was already applied by someone else.
        """
        async with in_transaction():
            adj = (
                await PendingLedgerAdjustment.filter(
                    id=adjustment_id, status=ObligationStatus.PENDING
                )
                .select_for_update()
                .first()
            )
            if adj is None:
                return None
            tx = await self.apply_ledger_mutation(
                guest_id=adj.guest_id,
                kind=adj.kind,
                direction=LedgerDirection.ADD,
                amount=adj.amount,
                reason=adj.reason,
                booking_id=adj.booking_id,
            )
            adj.status = ObligationStatus.COMPLETED
            adj.applied_at = _utcnow()
            adj.last_error = None
            await adj.save(update_fields=["status", "applied_at", "last_error"])
        return tx

    async def fail_ledger_adjustment(self, adjustment_id: UUID, error: str) -> None:
        await PendingLedgerAdjustment.filter(id=adjustment_id).update(last_error=error)

    # -- messages, notifications, audit ------------------------------------

    async def add_booking_message(
        self,
        booking_id: UUID,
        message: str,
        category: str = "general",
        is_urgent: bool = False,
    ) -> None:
        await BookingMessage.create(
            booking_id=booking_id, message=message, category=category, is_urgent=is_urgent
        )

    async def create_admin_notification(self, payload: AdminNotificationCreate) -> None:
        data = payload.model_dump()
        data["metadata"] = _jsonable(data["metadata"])
        await AdminNotification.create(**data)

    async def log_activity(
        self,
        actor: str,
        action: str,
        entity_id: UUID,
        metadata: dict[str, Any] | None = None,
        entity_type: str = "Booking",
    ) -> None:
        await ActivityLog.create(
            actor=actor,
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            metadata=_jsonable(metadata or {}),
        )


settlement_crud = SettlementCRUD()
