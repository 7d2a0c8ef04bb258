from decimal import Decimal
from uuid import UUID

from loguru import logger
from tortoise.exceptions import BaseORMException

from app.crud import SettlementCRUD
from app.errors import InvalidAmount
from app.models import LedgerDirection, LedgerKind
from app.money import quantize
from app.schemas import (
    AdjustmentReplayResponse,
    LedgerAdjustmentRecord,
    LedgerResponse,
    LedgerTransactionRecord,
)


class FundingLedger:
    """
    Per-guest wallet balances (credits, bonus, deposit wallet).

    Balances only move through `mutate`, which the store executes as a
    row-locked read-modify-write that also appends one LedgerTransaction.
    Restorations owed after a settlement are written as durable
    PendingLedgerAdjustment rows first and applied afterwards, so a crash
    between the two leaves something to replay rather than lost money.
    """

    def __init__(self, store: SettlementCRUD):
        self._store = store

    async def mutate(
        self,
        guest_id: UUID,
        kind: LedgerKind,
        direction: LedgerDirection,
        amount: Decimal,
        reason: str,
        booking_id: UUID | None = None,
    ) -> LedgerTransactionRecord:
        amount = quantize(amount)
        if amount <= 0:
            raise InvalidAmount(f"Ledger amount must be positive, got {amount}")
        tx = await self._store.apply_ledger_mutation(
            guest_id=guest_id,
            kind=kind,
            direction=direction,
            amount=amount,
            reason=reason,
            booking_id=booking_id,
        )
        logger.info(
            "Ledger {} {} {} for guest={} balance_after={}",
            direction,
            amount,
            kind,
            guest_id,
            tx.balance_after,
        )
        return tx

    async def credit(
        self,
        guest_id: UUID,
        kind: LedgerKind,
        amount: Decimal,
        reason: str,
        booking_id: UUID | None = None,
    ) -> LedgerTransactionRecord:
        return await self.mutate(guest_id, kind, LedgerDirection.ADD, amount, reason, booking_id)

    async def record_restoration(
        self,
        guest_id: UUID,
        kind: LedgerKind,
        amount: Decimal,
        reason: str,
        booking_id: UUID | None = None,
    ) -> LedgerAdjustmentRecord | None:
        """Persist a restoration owed to the guest. Zero amounts are not recorded."""
        amount = quantize(amount)
        if amount <= 0:
            return None
        return await self._store.create_ledger_adjustment(
            guest_id=guest_id,
            kind=kind,
            amount=amount,
            reason=reason,
            booking_id=booking_id,
        )

    async def apply_adjustment(self, adjustment: LedgerAdjustmentRecord) -> bool:
        """
        Apply one pending adjustment. A store failure leaves it PENDING with
        the error recorded; it is logged and reported as False, never raised.
        """
        try:
            tx = await self._store.apply_ledger_adjustment(adjustment.id)
        except BaseORMException as exc:
            logger.exception(
                "Ledger adjustment {} ({} {} for guest={}) left pending",
                adjustment.id,
                adjustment.amount,
                adjustment.kind,
                adjustment.guest_id,
            )
            await self._store.fail_ledger_adjustment(adjustment.id, str(exc))
            return False
        if tx is None:
            logger.debug("Ledger adjustment {} already applied", adjustment.id)
        return True

    async def replay_pending(self, guest_id: UUID | None = None) -> AdjustmentReplayResponse:
        pending = await self._store.list_pending_ledger_adjustments(guest_id=guest_id)
        applied = 0
        for adjustment in pending:
            if await self.apply_adjustment(adjustment):
                applied += 1
        logger.info("Replayed ledger adjustments: applied={} of {}", applied, len(pending))
        return AdjustmentReplayResponse(applied=applied, still_pending=len(pending) - applied)

    async def statement(self, guest_id: UUID, limit: int = 100) -> LedgerResponse:
        account = await self._store.get_or_create_account(guest_id)
        transactions = await self._store.list_ledger_transactions(guest_id, limit=limit)
        pending = await self._store.list_pending_ledger_adjustments(guest_id=guest_id)
        return LedgerResponse(
            account=account, transactions=transactions, pending_adjustments=pending
        )
