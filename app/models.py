from enum import StrEnum

from tortoise import fields
from tortoise.models import Model


class BookingStatus(StrEnum):
    PENDING = "PENDING"  # created, awaiting host confirmation
    CONFIRMED = "CONFIRMED"  # host accepted, card authorized
    CANCELLED = "CANCELLED"  # terminal
    COMPLETED = "COMPLETED"  # trip over and settled


class PaymentStatus(StrEnum):
    PENDING = "PENDING"
    PAID = "PAID"
    PENDING_CHARGES = "PENDING_CHARGES"  # trip ended, extra charges on hold
    PAYMENT_FAILED = "PAYMENT_FAILED"
    CHARGES_PAID = "CHARGES_PAID"
    CHARGES_CLEARED = "CHARGES_CLEARED"  # admin waived the extra charges
    REFUNDED = "REFUNDED"


class ChargeStatus(StrEnum):
    PENDING = "PENDING"
    CHARGED = "CHARGED"
    FAILED = "FAILED"
    REVIEW_REQUESTED = "REVIEW_REQUESTED"
    DISPUTED = "DISPUTED"  # guest objected during the hold window
    CLEARED = "CLEARED"


OPEN_CHARGE_STATUSES = (
    ChargeStatus.PENDING,
    ChargeStatus.FAILED,
    ChargeStatus.REVIEW_REQUESTED,
    ChargeStatus.DISPUTED,
)


class ObligationStatus(StrEnum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"


class LedgerKind(StrEnum):
    CREDIT = "CREDIT"
    BONUS = "BONUS"
    DEPOSIT = "DEPOSIT"


class LedgerDirection(StrEnum):
    ADD = "ADD"
    SUBTRACT = "SUBTRACT"


class NotificationPriority(StrEnum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    URGENT = "URGENT"


class TimestampedModel(Model):
    created_at = fields.DatetimeField(auto_now_add=True)

    class Meta:  # type: ignore
        abstract = True


class Booking(TimestampedModel):
    id = fields.UUIDField(primary_key=True)
    booking_code = fields.CharField(max_length=32, unique=True)

    guest_id = fields.UUIDField(db_index=True)
    host_id = fields.UUIDField()
    guest_email = fields.CharField(max_length=255, null=True)
    guest_phone = fields.CharField(max_length=32, null=True)

    status = fields.CharEnumField(BookingStatus, default=BookingStatus.PENDING)
    payment_status = fields.CharEnumField(PaymentStatus, default=PaymentStatus.PENDING)

    start_datetime = fields.DatetimeField()
    end_datetime = fields.DatetimeField()
    number_of_days = fields.IntField()

    # pricing snapshot at booking time
    daily_rate = fields.DecimalField(max_digits=10, decimal_places=2)
    subtotal = fields.DecimalField(max_digits=10, decimal_places=2)  # refundable base
    service_fee = fields.DecimalField(max_digits=10, decimal_places=2, default=0)
    insurance_fee = fields.DecimalField(max_digits=10, decimal_places=2, default=0)
    delivery_fee = fields.DecimalField(max_digits=10, decimal_places=2, default=0)
    taxes = fields.DecimalField(max_digits=10, decimal_places=2, default=0)
    security_deposit = fields.DecimalField(max_digits=10, decimal_places=2, default=0)

    # what each funding source actually covered at authorization time
    credits_applied = fields.DecimalField(max_digits=10, decimal_places=2, default=0)
    bonus_applied = fields.DecimalField(max_digits=10, decimal_places=2, default=0)
    charge_amount = fields.DecimalField(max_digits=10, decimal_places=2, default=0)
    deposit_from_wallet = fields.DecimalField(max_digits=10, decimal_places=2, default=0)
    deposit_from_card = fields.DecimalField(max_digits=10, decimal_places=2, default=0)
    is_validation_only = fields.BooleanField(null=True)

    payment_intent_id = fields.CharField(max_length=255, null=True)
    stripe_customer_id = fields.CharField(max_length=255, null=True)
    payment_method_id = fields.CharField(max_length=255, null=True)

    pending_charges_amount = fields.DecimalField(
        max_digits=10, decimal_places=2, null=True
    )
    trip_ended_at = fields.DatetimeField(null=True)
    charges_processed_at = fields.DatetimeField(null=True)
    payment_failure_reason = fields.TextField(null=True)

    cancelled_at = fields.DatetimeField(null=True)
    cancelled_by = fields.CharField(max_length=16, null=True)
    cancellation_reason = fields.TextField(null=True)

    updated_at = fields.DatetimeField(auto_now=True)

    class Meta:  # type: ignore
        table = "bookings"
        ordering = ["-created_at"]


class TripCharge(TimestampedModel):
    id = fields.UUIDField(primary_key=True)
    booking = fields.ForeignKeyField("models.Booking", related_name="trip_charges")

    total_amount = fields.DecimalField(max_digits=10, decimal_places=2)
    mileage_charge = fields.DecimalField(max_digits=10, decimal_places=2, default=0)
    fuel_charge = fields.DecimalField(max_digits=10, decimal_places=2, default=0)
    late_charge = fields.DecimalField(max_digits=10, decimal_places=2, default=0)
    damage_charge = fields.DecimalField(max_digits=10, decimal_places=2, default=0)
    cleaning_charge = fields.DecimalField(max_digits=10, decimal_places=2, default=0)
    other_charges = fields.DecimalField(max_digits=10, decimal_places=2, default=0)
    category = fields.CharField(max_length=32)

    charge_status = fields.CharEnumField(ChargeStatus, default=ChargeStatus.PENDING)
    retry_count = fields.IntField(default=0)
    failure_reason = fields.TextField(null=True)
    requires_approval = fields.BooleanField(default=False)
    approved_at = fields.DatetimeField(null=True)
    approved_by = fields.CharField(max_length=64, null=True)

    hold_until = fields.DatetimeField(null=True)
    gateway_intent_id = fields.CharField(max_length=255, null=True)
    gateway_charge_id = fields.CharField(max_length=255, null=True)
    # reused until the authorization outcome is known
    authorize_key = fields.CharField(max_length=255, null=True)

    dispute_reason = fields.TextField(null=True)
    disputed_items = fields.JSONField(null=True)
    disputed_at = fields.DatetimeField(null=True)
    dispute_resolution = fields.TextField(null=True)

    waived_amount = fields.DecimalField(max_digits=10, decimal_places=2, default=0)
    waive_reason = fields.TextField(null=True)

    last_attempt_at = fields.DatetimeField(null=True)
    charged_at = fields.DatetimeField(null=True)
    cleared_at = fields.DatetimeField(null=True)
    cleared_by = fields.CharField(max_length=64, null=True)

    class Meta:  # type: ignore
        table = "trip_charges"
        ordering = ["-created_at"]


class RefundRequest(TimestampedModel):
    id = fields.UUIDField(primary_key=True)
    booking = fields.ForeignKeyField("models.Booking", related_name="refund_requests")

    amount = fields.DecimalField(max_digits=10, decimal_places=2)  # owed to guest
    retain_amount = fields.DecimalField(max_digits=10, decimal_places=2, default=0)
    payment_intent_id = fields.CharField(max_length=255, null=True)
    reason = fields.TextField()

    status = fields.CharEnumField(ObligationStatus, default=ObligationStatus.PENDING)
    gateway_refund_id = fields.CharField(max_length=255, null=True)
    last_error = fields.TextField(null=True)
    attempts = fields.IntField(default=0)
    processed_at = fields.DatetimeField(null=True)

    class Meta:  # type: ignore
        table = "refund_requests"
        ordering = ["-created_at"]


class GuestLedgerAccount(TimestampedModel):
    id = fields.UUIDField(primary_key=True)
    guest_id = fields.UUIDField(unique=True)

    credit_balance = fields.DecimalField(max_digits=10, decimal_places=2, default=0)
    bonus_balance = fields.DecimalField(max_digits=10, decimal_places=2, default=0)
    deposit_wallet_balance = fields.DecimalField(
        max_digits=10, decimal_places=2, default=0
    )

    updated_at = fields.DatetimeField(auto_now=True)

    class Meta:  # type: ignore
        table = "guest_ledger_accounts"


class LedgerTransaction(TimestampedModel):
    """Append-only. Never updated or deleted."""

    id = fields.UUIDField(primary_key=True)
    account = fields.ForeignKeyField(
        "models.GuestLedgerAccount", related_name="transactions"
    )
    amount = fields.DecimalField(max_digits=10, decimal_places=2)
    balance_after = fields.DecimalField(max_digits=10, decimal_places=2)
    kind = fields.CharEnumField(LedgerKind)
    direction = fields.CharEnumField(LedgerDirection)
    reason = fields.TextField()
    booking_id = fields.UUIDField(null=True)

    class Meta:  # type: ignore
        table = "ledger_transactions"
        ordering = ["-created_at"]


class PendingLedgerAdjustment(TimestampedModel):
    id = fields.UUIDField(primary_key=True)
    guest_id = fields.UUIDField(db_index=True)
    booking_id = fields.UUIDField(null=True)
    kind = fields.CharEnumField(LedgerKind)
    amount = fields.DecimalField(max_digits=10, decimal_places=2)
    reason = fields.TextField()
    status = fields.CharEnumField(ObligationStatus, default=ObligationStatus.PENDING)
    last_error = fields.TextField(null=True)
    applied_at = fields.DatetimeField(null=True)

    class Meta:  # type: ignore
        table = "pending_ledger_adjustments"
        ordering = ["created_at"]


class BookingMessage(TimestampedModel):
    id = fields.UUIDField(primary_key=True)
    booking_id = fields.UUIDField(db_index=True)
    message = fields.TextField()
    category = fields.CharField(max_length=32, default="general")
    is_urgent = fields.BooleanField(default=False)

    class Meta:  # type: ignore
        table = "booking_messages"
        ordering = ["created_at"]


class AdminNotification(TimestampedModel):
    id = fields.UUIDField(primary_key=True)
    type = fields.CharField(max_length=64)
    title = fields.CharField(max_length=255)
    message = fields.TextField()
    priority = fields.CharEnumField(
        NotificationPriority, default=NotificationPriority.MEDIUM
    )
    related_id = fields.UUIDField(null=True)
    action_required = fields.BooleanField(default=False)
    action_url = fields.CharField(max_length=512, null=True)
    metadata = fields.JSONField(default=dict)

    class Meta:  # type: ignore
        table = "admin_notifications"
        ordering = ["-created_at"]


class ActivityLog(TimestampedModel):
    id = fields.UUIDField(primary_key=True)
    actor = fields.CharField(max_length=64)
    action = fields.CharField(max_length=64)
    entity_type = fields.CharField(max_length=32, default="Booking")
    entity_id = fields.UUIDField()
    metadata = fields.JSONField(default=dict)

    class Meta:  # type: ignore
        table = "activity_logs"
        ordering = ["-created_at"]
