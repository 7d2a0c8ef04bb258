from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import StrEnum
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from app.models import (
    BookingStatus,
    ChargeStatus,
    LedgerDirection,
    LedgerKind,
    NotificationPriority,
    ObligationStatus,
    PaymentStatus,
)
from app.money import ZERO

# itemized trip charge component -> column
COMPONENT_FIELDS = {
    "mileage": "mileage_charge",
    "fuel": "fuel_charge",
    "late": "late_charge",
    "damage": "damage_charge",
    "cleaning": "cleaning_charge",
    "other": "other_charges",
}

# ---------------------------------------------------------------------------
# Records: what SettlementCRUD hands back to the services
# ---------------------------------------------------------------------------


class BookingRecord(BaseModel):
    id: UUID
    booking_code: str
    guest_id: UUID
    host_id: UUID
    guest_email: str | None = None
    guest_phone: str | None = None

    status: BookingStatus
    payment_status: PaymentStatus

    start_datetime: datetime
    end_datetime: datetime
    number_of_days: int

    daily_rate: Decimal
    subtotal: Decimal
    service_fee: Decimal = ZERO
    insurance_fee: Decimal = ZERO
    delivery_fee: Decimal = ZERO
    taxes: Decimal = ZERO
    security_deposit: Decimal = ZERO

    credits_applied: Decimal = ZERO
    bonus_applied: Decimal = ZERO
    charge_amount: Decimal = ZERO
    deposit_from_wallet: Decimal = ZERO
    deposit_from_card: Decimal = ZERO
    is_validation_only: bool | None = None

    payment_intent_id: str | None = None
    stripe_customer_id: str | None = None
    payment_method_id: str | None = None

    pending_charges_amount: Decimal | None = None
    trip_ended_at: datetime | None = None
    charges_processed_at: datetime | None = None
    payment_failure_reason: str | None = None

    cancelled_at: datetime | None = None
    cancelled_by: str | None = None
    cancellation_reason: str | None = None

    model_config = ConfigDict(from_attributes=True)

    @property
    def trip_cost(self) -> Decimal:
        """Everything the guest paid for the trip itself, deposit excluded."""
        return (
            self.subtotal
            + self.service_fee
            + self.insurance_fee
            + self.delivery_fee
            + self.taxes
        )

    @property
    def has_payment_method(self) -> bool:
        return bool(self.stripe_customer_id and self.payment_method_id)


class TripChargeRecord(BaseModel):
    id: UUID
    booking_id: UUID
    total_amount: Decimal
    mileage_charge: Decimal = ZERO
    fuel_charge: Decimal = ZERO
    late_charge: Decimal = ZERO
    damage_charge: Decimal = ZERO
    cleaning_charge: Decimal = ZERO
    other_charges: Decimal = ZERO
    category: str
    charge_status: ChargeStatus
    retry_count: int = 0
    failure_reason: str | None = None
    requires_approval: bool = False
    approved_at: datetime | None = None
    approved_by: str | None = None
    hold_until: datetime | None = None
    gateway_intent_id: str | None = None
    gateway_charge_id: str | None = None
    authorize_key: str | None = None
    dispute_reason: str | None = None
    disputed_items: list[str] | None = None
    disputed_at: datetime | None = None
    dispute_resolution: str | None = None
    waived_amount: Decimal = ZERO
    waive_reason: str | None = None
    created_at: datetime
    last_attempt_at: datetime | None = None
    charged_at: datetime | None = None
    cleared_at: datetime | None = None
    cleared_by: str | None = None

    model_config = ConfigDict(from_attributes=True)

    @property
    def components(self) -> dict[str, Decimal]:
        return {name: getattr(self, attr) for name, attr in COMPONENT_FIELDS.items()}

    @property
    def awaiting_approval(self) -> bool:
        return self.requires_approval and self.approved_at is None


class RefundRequestRecord(BaseModel):
    id: UUID
    booking_id: UUID
    amount: Decimal
    retain_amount: Decimal = ZERO
    payment_intent_id: str | None = None
    reason: str
    status: ObligationStatus
    gateway_refund_id: str | None = None
    last_error: str | None = None
    attempts: int = 0
    created_at: datetime
    processed_at: datetime | None = None

    model_config = ConfigDict(from_attributes=True)


class LedgerAccountRecord(BaseModel):
    id: UUID
    guest_id: UUID
    credit_balance: Decimal
    bonus_balance: Decimal
    deposit_wallet_balance: Decimal

    model_config = ConfigDict(from_attributes=True)


class LedgerTransactionRecord(BaseModel):
    id: UUID
    account_id: UUID
    amount: Decimal
    balance_after: Decimal
    kind: LedgerKind
    direction: LedgerDirection
    reason: str
    booking_id: UUID | None = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class LedgerAdjustmentRecord(BaseModel):
    id: UUID
    guest_id: UUID
    booking_id: UUID | None = None
    kind: LedgerKind
    amount: Decimal
    reason: str
    status: ObligationStatus
    last_error: str | None = None
    created_at: datetime
    applied_at: datetime | None = None

    model_config = ConfigDict(from_attributes=True)


class AdminNotificationCreate(BaseModel):
    type: str
    title: str
    message: str
    priority: NotificationPriority = NotificationPriority.MEDIUM
    related_id: UUID | None = None
    action_required: bool = False
    action_url: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------


class CancelRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=1000)


class TripChargesCreate(BaseModel):
    mileage_charge: Decimal = Field(default=ZERO, ge=0)
    fuel_charge: Decimal = Field(default=ZERO, ge=0)
    late_charge: Decimal = Field(default=ZERO, ge=0)
    damage_charge: Decimal = Field(default=ZERO, ge=0)
    cleaning_charge: Decimal = Field(default=ZERO, ge=0)
    other_charges: Decimal = Field(default=ZERO, ge=0)
    trip_ended_at: datetime | None = None

    @field_validator("trip_ended_at", mode="after")
    @classmethod
    def require_timezone(cls, v: datetime | None) -> datetime | None:
        if v is not None and v.tzinfo is None:
            raise ValueError("datetime must be timezone-aware (include UTC offset)")
        return v

    @property
    def components(self) -> dict[str, Decimal]:
        return {
            "mileage": self.mileage_charge,
            "fuel": self.fuel_charge,
            "late": self.late_charge,
            "damage": self.damage_charge,
            "cleaning": self.cleaning_charge,
            "other": self.other_charges,
        }

    @property
    def total(self) -> Decimal:
        return sum(self.components.values(), ZERO)


class ChargeQueueFilter(StrEnum):
    PENDING = "pending"
    FAILED = "failed"
    EXPIRED = "expired"
    DISPUTED = "disputed"
    AWAITING_APPROVAL = "awaiting_approval"
    ALL = "all"


class ProcessMode(StrEnum):
    EXPIRED = "expired"
    ALL = "all"
    SPECIFIC = "specific"


class PendingChargeFilters(BaseModel):
    """Bind to a FastAPI route via Depends(PendingChargeFilters)."""

    status: ChargeQueueFilter = ChargeQueueFilter.ALL
    older_than_hours: int | None = Field(default=None, ge=0)
    limit: int = Field(default=50, ge=1, le=500)


class ProcessChargesRequest(BaseModel):
    mode: ProcessMode = ProcessMode.EXPIRED
    booking_ids: list[UUID] = Field(default_factory=list)
    dry_run: bool = False
    max_retries: int | None = Field(default=None, ge=0, le=10)
    hold_hours: int | None = Field(default=None, ge=0)

    @model_validator(mode="after")
    def require_ids_for_specific(self) -> ProcessChargesRequest:
        if self.mode == ProcessMode.SPECIFIC and not self.booking_ids:
            raise ValueError("booking_ids is required when mode is 'specific'")
        return self


class ClearChargesRequest(BaseModel):
    reason: str = Field(min_length=1, max_length=1000)


class WaiveChargesRequest(BaseModel):
    percentage: Decimal = Field(gt=0, lt=100)
    reason: str = Field(min_length=1, max_length=1000)


class ChargeComponent(StrEnum):
    MILEAGE = "mileage"
    FUEL = "fuel"
    LATE = "late"
    DAMAGE = "damage"
    CLEANING = "cleaning"
    OTHER = "other"


class DisputeChargesRequest(BaseModel):
    reason: str = Field(min_length=1, max_length=2000)
    items: list[ChargeComponent] = Field(default_factory=list)


class ApproveChargesRequest(BaseModel):
    note: str | None = Field(default=None, max_length=1000)


class ChargeAdjustments(BaseModel):
    """New amounts for individual components; omitted ones stay as recorded."""

    mileage_charge: Decimal | None = Field(default=None, ge=0)
    fuel_charge: Decimal | None = Field(default=None, ge=0)
    late_charge: Decimal | None = Field(default=None, ge=0)
    damage_charge: Decimal | None = Field(default=None, ge=0)
    cleaning_charge: Decimal | None = Field(default=None, ge=0)
    other_charges: Decimal | None = Field(default=None, ge=0)

    @model_validator(mode="after")
    def require_one_component(self) -> ChargeAdjustments:
        if not self.overrides:
            raise ValueError("at least one charge component must be adjusted")
        return self

    @property
    def overrides(self) -> dict[str, Decimal]:
        return {
            name: getattr(self, attr)
            for name, attr in COMPONENT_FIELDS.items()
            if getattr(self, attr) is not None
        }


class AdjustChargesRequest(BaseModel):
    adjustments: ChargeAdjustments
    reason: str = Field(min_length=1, max_length=1000)


class DisputeDecision(StrEnum):
    UPHOLD = "uphold"  # charges stand as recorded
    ADJUST = "adjust"  # charges stand at corrected amounts
    WAIVE = "waive"  # guest owes nothing


class LedgerCreditRequest(BaseModel):
    kind: LedgerKind
    amount: Decimal = Field(gt=0, max_digits=10, decimal_places=2)
    reason: str = Field(min_length=1, max_length=500)

    @field_validator("kind")
    @classmethod
    def no_deposit_grants(cls, v: LedgerKind) -> LedgerKind:
        if v == LedgerKind.DEPOSIT:
            raise ValueError("deposit wallet balances are funded by the guest, not granted")
        return v


class ResolveDisputeRequest(BaseModel):
    decision: DisputeDecision
    reason: str = Field(min_length=1, max_length=1000)
    adjustments: ChargeAdjustments | None = None

    @model_validator(mode="after")
    def require_adjustments(self) -> ResolveDisputeRequest:
        if self.decision == DisputeDecision.ADJUST and self.adjustments is None:
            raise ValueError("adjustments is required when decision is 'adjust'")
        return self


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------


class PenaltyBreakdown(BaseModel):
    total: Decimal
    from_card: Decimal
    from_credits: Decimal
    from_bonus: Decimal
    penalty_days: Decimal
    average_daily_cost: Decimal


class RefundBreakdown(BaseModel):
    card_refund: Decimal
    validation_charge_refund: Decimal
    deposit_from_card_refund: Decimal
    total_card_refund: Decimal
    refund_request_id: UUID | None = None
    status: str


class BalancesRestored(BaseModel):
    credits: Decimal
    bonus: Decimal
    deposit_wallet: Decimal


class CancellationResponse(BaseModel):
    success: bool = True
    booking_id: UUID
    status: BookingStatus
    payment_status: PaymentStatus
    tier: str
    policy_label: str
    hours_until_pickup: Decimal
    penalty: PenaltyBreakdown
    refund: RefundBreakdown
    balances_restored: BalancesRestored
    pending_manual_processing: bool = False


class TripChargesRecorded(BaseModel):
    booking_id: UUID
    trip_charge_id: UUID | None
    total_amount: Decimal
    category: str
    payment_status: PaymentStatus
    hold_until: datetime | None = None
    requires_approval: bool = False


class PendingChargeItem(BaseModel):
    booking_id: UUID
    booking_code: str
    trip_charge_id: UUID | None
    amount: Decimal
    category: str | None
    charge_status: ChargeStatus | None
    retry_count: int
    failure_reason: str | None
    trip_ended_at: datetime | None
    hold_until: datetime | None
    ready_to_process: bool
    has_payment_method: bool
    requires_approval: bool = False
    approved: bool = False
    dispute_reason: str | None = None


class PendingChargeStats(BaseModel):
    total_pending_count: int
    total_pending_amount: Decimal
    oldest_pending_at: datetime | None
    ready_to_process_count: int
    failed_count: int
    disputed_count: int = 0
    awaiting_approval_count: int = 0


class PendingChargesResponse(BaseModel):
    items: list[PendingChargeItem]
    stats: PendingChargeStats


class ChargeOutcome(StrEnum):
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"
    ERROR = "error"  # unexpected local failure; charge left untouched


class ChargeResult(BaseModel):
    booking_id: UUID
    trip_charge_id: UUID | None = None
    status: ChargeOutcome
    amount: Decimal = ZERO
    reason: str | None = None
    charge_id: str | None = None
    retry_count: int = 0
    dry_run: bool = False


class ProcessSummary(BaseModel):
    processed: int = 0
    successful: int = 0
    failed: int = 0
    skipped: int = 0
    errors: int = 0
    total_charged: Decimal = ZERO


class ProcessChargesResponse(BaseModel):
    dry_run: bool
    mode: ProcessMode
    results: list[ChargeResult]
    summary: ProcessSummary


class ClearChargesResponse(BaseModel):
    booking_id: UUID
    cleared_amount: Decimal
    cleared_charge_ids: list[UUID]
    payment_status: PaymentStatus


class WaiveChargesResponse(BaseModel):
    booking_id: UUID
    trip_charge_id: UUID
    waived_amount: Decimal
    remaining_amount: Decimal


class LedgerResponse(BaseModel):
    account: LedgerAccountRecord
    transactions: list[LedgerTransactionRecord]
    pending_adjustments: list[LedgerAdjustmentRecord]


class AdjustmentReplayResponse(BaseModel):
    applied: int
    still_pending: int


class DisputeChargesResponse(BaseModel):
    booking_id: UUID
    trip_charge_id: UUID
    charge_status: ChargeStatus
    disputed_at: datetime


class ApproveChargesResponse(BaseModel):
    booking_id: UUID
    trip_charge_id: UUID
    amount: Decimal
    approved_at: datetime
    approved_by: str


class AdjustChargesResponse(BaseModel):
    booking_id: UUID
    trip_charge_id: UUID
    original_amount: Decimal
    adjusted_amount: Decimal
    pending_amount: Decimal
    category: str
    payment_status: PaymentStatus


class ResolveDisputeResponse(BaseModel):
    booking_id: UUID
    trip_charge_id: UUID
    decision: DisputeDecision
    charge_status: ChargeStatus
    pending_amount: Decimal
