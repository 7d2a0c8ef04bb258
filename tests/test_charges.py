"""Tests for the deferred post-trip charge queue."""

from __future__ import annotations

from datetime import timedelta
from decimal import Decimal
from uuid import uuid4

import pytest
from pydantic import ValidationError
from tortoise.exceptions import OperationalError

from app.charges import ChargeCandidate, derive_category, select_for_processing
from app.deps import IntentStatus
from app.errors import ConflictError, GatewayError, InvalidTransition, NotBookingOwner
from app.models import (
    BookingStatus,
    ChargeStatus,
    NotificationPriority,
    PaymentStatus,
)
from app.schemas import (
    ChargeAdjustments,
    ChargeOutcome,
    ChargeQueueFilter,
    DisputeChargesRequest,
    DisputeDecision,
    PendingChargeFilters,
    ProcessChargesRequest,
    ProcessMode,
    ResolveDisputeRequest,
    TripChargesCreate,
)

from .factories import (
    GUEST_ID,
    NOW,
    OTHER_USER_ID,
    make_booking,
    make_ended_booking,
    make_guest,
    make_trip_charge,
)

D = Decimal


def queued(store, **booking_overrides):
    booking = store.add_booking(make_ended_booking(**booking_overrides))
    charge = store.add_trip_charge(make_trip_charge(booking))
    return booking, charge


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------


class TestDeriveCategory:
    def test_single_component_names_it(self):
        assert derive_category({"fuel": D("30"), "damage": D("0")}) == "fuel"

    def test_several_components_is_multiple(self):
        assert derive_category({"fuel": D("30"), "mileage": D("12")}) == "multiple"

    def test_nothing_charged_is_none(self):
        assert derive_category({"fuel": D("0")}) == "none"


class TestSelectForProcessing:
    def _candidate(self, hours_ago: int, amount: str, **charge_overrides) -> ChargeCandidate:
        booking = make_ended_booking(
            trip_ended_at=NOW - timedelta(hours=hours_ago), pending_charges_amount=D(amount)
        )
        return ChargeCandidate(booking, make_trip_charge(booking, **charge_overrides))

    def test_oldest_first_then_largest(self):
        a = self._candidate(50, "50.00")
        b = self._candidate(50, "200.00")
        c = self._candidate(30, "500.00")
        selection = select_for_processing([c, a, b], ProcessMode.EXPIRED, NOW, 24, 2)
        assert selection.ready == [b, a, c]

    def test_hold_window_only_applies_to_expired_mode(self):
        fresh = self._candidate(2, "75.00")
        expired = select_for_processing([fresh], ProcessMode.EXPIRED, NOW, 24, 2)
        assert expired.skipped == [(fresh, "hold window has not elapsed")]
        assert select_for_processing([fresh], ProcessMode.ALL, NOW, 24, 2).ready == [fresh]

    def test_failed_charge_skips_hold_window(self):
        failed = self._candidate(2, "75.00", charge_status=ChargeStatus.FAILED, retry_count=1)
        assert select_for_processing([failed], ProcessMode.EXPIRED, NOW, 24, 2).ready == [failed]

    def test_retry_cap_reason(self):
        capped = self._candidate(
            50, "75.00", charge_status=ChargeStatus.REVIEW_REQUESTED, retry_count=2
        )
        selection = select_for_processing([capped], ProcessMode.ALL, NOW, 24, 2)
        assert selection.skipped == [(capped, "exceeded max retries (2/2)")]

    def test_missing_payment_method_skipped(self):
        booking = make_ended_booking(payment_method_id=None)
        candidate = ChargeCandidate(booking, make_trip_charge(booking))
        selection = select_for_processing([candidate], ProcessMode.ALL, NOW, 24, 2)
        assert selection.skipped == [(candidate, "no payment method on file")]

    def test_missing_trip_charge_skipped(self):
        candidate = ChargeCandidate(make_ended_booking(), None)
        selection = select_for_processing([candidate], ProcessMode.ALL, NOW, 24, 2)
        assert selection.skipped == [(candidate, "no open trip charge")]

    def test_unapproved_large_charge_waits_for_admin(self):
        big = self._candidate(50, "900.00", requires_approval=True)
        for mode in (ProcessMode.EXPIRED, ProcessMode.ALL):
            selection = select_for_processing([big], mode, NOW, 24, 2)
            assert selection.skipped == [(big, "requires admin approval")]

    def test_specific_mode_counts_as_approval(self):
        big = self._candidate(50, "900.00", requires_approval=True)
        assert select_for_processing([big], ProcessMode.SPECIFIC, NOW, 24, 2).ready == [big]

    def test_approved_large_charge_is_ready(self):
        big = self._candidate(50, "900.00", requires_approval=True, approved_at=NOW)
        assert select_for_processing([big], ProcessMode.EXPIRED, NOW, 24, 2).ready == [big]

    def test_disputed_charge_never_selected(self):
        disputed = self._candidate(50, "75.00", charge_status=ChargeStatus.DISPUTED)
        for mode in ProcessMode:
            selection = select_for_processing([disputed], mode, NOW, 24, 2)
            assert selection.skipped == [(disputed, "disputed by guest")]


# ---------------------------------------------------------------------------
# Enqueue
# ---------------------------------------------------------------------------


class TestRecordTripCharges:
    pytestmark = pytest.mark.anyio

    def _payload(self, **overrides) -> TripChargesCreate:
        base = dict(mileage_charge="45.00", fuel_charge="30.00", trip_ended_at=NOW)
        return TripChargesCreate(**{**base, **overrides})

    async def test_queues_charge_behind_hold_window(self, queue, store):
        booking = store.add_booking(make_booking())
        result = await queue.record_trip_charges(booking.id, self._payload(), "trip", now=NOW)

        assert result.total_amount == D("75.00")
        assert result.category == "multiple"
        assert result.hold_until == NOW + timedelta(hours=24)
        assert result.requires_approval is False

        charge = store.trip_charges[result.trip_charge_id]
        assert charge.charge_status == ChargeStatus.PENDING
        assert charge.mileage_charge == D("45.00")

        updated = store.bookings[booking.id]
        assert updated.payment_status == PaymentStatus.PENDING_CHARGES
        assert updated.pending_charges_amount == D("75.00")
        assert updated.trip_ended_at == NOW

        (notification,) = store.notifications
        assert notification.priority == NotificationPriority.MEDIUM
        assert notification.action_url.endswith(str(booking.id))
        assert "Mileage overage: $45.00" in store.messages[0]["message"]

    async def test_no_payment_method_is_urgent(self, queue, store):
        booking = store.add_booking(make_booking(payment_method_id=None))
        await queue.record_trip_charges(booking.id, self._payload(), "trip", now=NOW)
        assert store.notifications[0].priority == NotificationPriority.URGENT
        assert store.messages[0]["is_urgent"] is True

    async def test_large_total_requires_approval(self, queue, store):
        booking = store.add_booking(make_booking())
        result = await queue.record_trip_charges(
            booking.id, self._payload(damage_charge="600.00"), "trip", now=NOW
        )
        assert result.requires_approval is True

    async def test_zero_total_completes_booking(self, queue, store):
        booking = store.add_booking(make_booking())
        result = await queue.record_trip_charges(
            booking.id, self._payload(mileage_charge="0", fuel_charge="0"), "trip", now=NOW
        )
        assert result.trip_charge_id is None
        assert store.trip_charges == {}
        updated = store.bookings[booking.id]
        assert updated.status == BookingStatus.COMPLETED
        assert updated.payment_status == PaymentStatus.PAID

    async def test_duplicate_enqueue_conflicts(self, queue, store):
        booking = store.add_booking(make_booking())
        await queue.record_trip_charges(booking.id, self._payload(), "trip", now=NOW)
        with pytest.raises(ConflictError):
            await queue.record_trip_charges(booking.id, self._payload(), "trip", now=NOW)

    async def test_cancelled_booking_rejected(self, queue, store):
        booking = store.add_booking(make_booking(status=BookingStatus.CANCELLED))
        with pytest.raises(InvalidTransition):
            await queue.record_trip_charges(booking.id, self._payload(), "trip", now=NOW)


# ---------------------------------------------------------------------------
# Processing
# ---------------------------------------------------------------------------


class TestProcessCharges:
    pytestmark = pytest.mark.anyio

    async def test_successful_capture_settles_booking(self, queue, store, gateway, notifier):
        booking, charge = queued(store)
        result = await queue.process_charges(ProcessChargesRequest(), now=NOW)

        assert result.summary.successful == 1
        assert result.summary.total_charged == D("75.00")
        assert [c[0] for c in gateway.mutating_calls()] == ["authorize", "capture"]

        updated = store.bookings[booking.id]
        assert updated.status == BookingStatus.COMPLETED
        assert updated.payment_status == PaymentStatus.CHARGES_PAID
        assert updated.pending_charges_amount == D("0")
        stored = store.trip_charges[charge.id]
        assert stored.charge_status == ChargeStatus.CHARGED
        assert stored.gateway_charge_id == result.results[0].charge_id
        notifier.send_email.assert_awaited_once()
        assert notifier.send_email.call_args.args[1] == "trip_charges_processed"
        notifier.send_guest_message.assert_awaited_once()
        assert notifier.send_guest_message.call_args.args[0] == booking.guest_id
        assert "$75.00" in notifier.send_guest_message.call_args.args[2]

    async def test_charge_within_hold_window_waits(self, queue, store, gateway):
        queued(store, trip_ended_at=NOW - timedelta(hours=2))
        result = await queue.process_charges(ProcessChargesRequest(), now=NOW)
        assert result.summary.skipped == 1
        assert result.results[0].reason == "hold window has not elapsed"
        assert gateway.calls == []

    async def test_mode_all_ignores_hold_window(self, queue, store):
        queued(store, trip_ended_at=NOW - timedelta(hours=2))
        result = await queue.process_charges(ProcessChargesRequest(mode="all"), now=NOW)
        assert result.summary.successful == 1

    async def test_retry_cap_escalates_exactly_once(self, queue, store, gateway, notifier):
        booking, charge = queued(store)
        gateway.errors["authorize"] = GatewayError("card_declined")
        request = ProcessChargesRequest(max_retries=2)

        first = await queue.process_charges(request, now=NOW)
        second = await queue.process_charges(request, now=NOW)
        third = await queue.process_charges(request, now=NOW)

        assert first.results[0].status == ChargeOutcome.FAILED
        assert second.results[0].status == ChargeOutcome.FAILED
        assert third.results[0].status == ChargeOutcome.SKIPPED
        assert third.results[0].reason == "exceeded max retries (2/2)"

        high = [n for n in store.notifications if n.priority == NotificationPriority.HIGH]
        assert len(high) == 1
        assert store.trip_charges[charge.id].charge_status == ChargeStatus.REVIEW_REQUESTED
        assert store.trip_charges[charge.id].retry_count == 2
        assert store.bookings[booking.id].payment_status == PaymentStatus.PAYMENT_FAILED
        notifier.send_email.assert_awaited_once()
        assert notifier.send_email.call_args.args[1] == "trip_charges_failed"
        notifier.send_guest_message.assert_awaited_once()
        assert notifier.send_guest_message.call_args.args[:2] == (booking.guest_id, booking.id)
        assert "final automatic attempt" in notifier.send_guest_message.call_args.args[2]

    async def test_first_failure_is_not_final(self, queue, store, gateway):
        booking, charge = queued(store)
        gateway.errors["authorize"] = GatewayError("insufficient_funds")
        await queue.process_charges(ProcessChargesRequest(), now=NOW)

        assert store.trip_charges[charge.id].charge_status == ChargeStatus.FAILED
        assert store.bookings[booking.id].payment_failure_reason == "insufficient_funds"
        assert "retry automatically" in store.messages[-1]["message"]
        assert store.notifications == []
        assert store.trip_charges[charge.id].authorize_key is None

    async def test_dry_run_changes_nothing(self, queue, store, gateway):
        entries = [
            queued(store, pending_charges_amount=D(amount))
            for amount in ("100.00", "140.00", "180.00")
        ]
        result = await queue.process_charges(ProcessChargesRequest(dry_run=True), now=NOW)

        assert result.dry_run is True
        assert result.summary.successful == 3
        assert result.summary.total_charged == D("420.00")
        assert gateway.calls == []
        for booking, charge in entries:
            assert store.bookings[booking.id].payment_status == PaymentStatus.PENDING_CHARGES
            assert store.trip_charges[charge.id].charge_status == ChargeStatus.PENDING
        assert store.messages == []

    async def test_captured_intent_is_not_charged_again(self, queue, store, gateway):
        booking, charge = queued(store)
        store.trip_charges[charge.id] = charge.model_copy(update={"gateway_intent_id": "pi_prev"})
        gateway.add_intent(
            IntentStatus.SUCCEEDED, D("75.00"), intent_id="pi_prev", captured=D("75.00")
        )
        result = await queue.process_charges(ProcessChargesRequest(), now=NOW)

        assert result.results[0].charge_id == "pi_prev"
        assert gateway.mutating_calls() == []

    async def test_authorized_intent_is_captured_not_reauthorized(self, queue, store, gateway):
        booking, charge = queued(store)
        store.trip_charges[charge.id] = charge.model_copy(update={"gateway_intent_id": "pi_prev"})
        gateway.add_intent(IntentStatus.REQUIRES_CAPTURE, D("75.00"), intent_id="pi_prev")
        await queue.process_charges(ProcessChargesRequest(), now=NOW)
        assert gateway.mutating_calls() == [("capture", "pi_prev", None)]

    async def test_locked_charge_is_skipped(self, queue, store, lock, gateway):
        booking, charge = queued(store)
        lock.held.add((booking.id, charge.id))
        result = await queue.process_charges(ProcessChargesRequest(), now=NOW)
        assert result.results[0].reason == "already being processed"
        assert gateway.calls == []

    async def test_specific_mode_reports_unknown_bookings(self, queue, store):
        booking, _ = queued(store)
        unknown = uuid4()
        result = await queue.process_charges(
            ProcessChargesRequest(mode="specific", booking_ids=[booking.id, unknown]), now=NOW
        )
        by_id = {r.booking_id: r for r in result.results}
        assert by_id[booking.id].status == ChargeOutcome.SUCCESS
        assert by_id[unknown].reason == "no pending charges"

    async def test_waive_after_failed_attempt_captures_only_remainder(
        self, queue, store, gateway
    ):
        booking, charge = queued(store, pending_charges_amount=D("200.00"))
        store.trip_charges[charge.id] = charge.model_copy(
            update={
                "charge_status": ChargeStatus.FAILED,
                "retry_count": 1,
                "gateway_intent_id": "pi_prev",
            }
        )
        gateway.add_intent(IntentStatus.REQUIRES_CAPTURE, D("200.00"), intent_id="pi_prev")

        await queue.waive_charges(booking.id, D("25"), "admin", "goodwill", now=NOW)
        result = await queue.process_charges(ProcessChargesRequest(max_retries=3), now=NOW)

        (outcome,) = result.results
        assert outcome.status == ChargeOutcome.SUCCESS
        assert outcome.amount == D("150.00")
        assert result.summary.total_charged == D("150.00")
        assert gateway.mutating_calls() == [("capture", "pi_prev", D("150.00"))]
        assert gateway.intents["pi_prev"].amount_captured == D("150.00")

    async def test_overcaptured_intent_refunds_the_excess(self, queue, store, gateway):
        booking, charge = queued(store, pending_charges_amount=D("150.00"))
        store.trip_charges[charge.id] = charge.model_copy(update={"gateway_intent_id": "pi_prev"})
        gateway.add_intent(
            IntentStatus.SUCCEEDED, D("200.00"), intent_id="pi_prev", captured=D("200.00")
        )
        result = await queue.process_charges(ProcessChargesRequest(), now=NOW)

        assert result.results[0].amount == D("150.00")
        assert gateway.mutating_calls() == [("refund", "pi_prev", D("50.00"))]
        assert store.trip_charges[charge.id].charge_status == ChargeStatus.CHARGED

    async def test_undercaptured_intent_goes_to_failure(self, queue, store, gateway):
        booking, charge = queued(store, pending_charges_amount=D("150.00"))
        store.trip_charges[charge.id] = charge.model_copy(update={"gateway_intent_id": "pi_prev"})
        gateway.add_intent(
            IntentStatus.SUCCEEDED, D("100.00"), intent_id="pi_prev", captured=D("100.00")
        )
        result = await queue.process_charges(ProcessChargesRequest(), now=NOW)

        assert result.results[0].status == ChargeOutcome.FAILED
        assert "$150.00 is owed" in result.results[0].reason
        assert gateway.mutating_calls() == []

    async def test_smaller_stale_authorization_is_released(self, queue, store, gateway):
        booking, charge = queued(store, pending_charges_amount=D("120.00"))
        store.trip_charges[charge.id] = charge.model_copy(update={"gateway_intent_id": "pi_prev"})
        gateway.add_intent(IntentStatus.REQUIRES_CAPTURE, D("75.00"), intent_id="pi_prev")
        result = await queue.process_charges(ProcessChargesRequest(), now=NOW)

        assert result.results[0].status == ChargeOutcome.SUCCESS
        assert gateway.mutating_calls() == [
            ("cancel", "pi_prev"),
            ("authorize", "cus_guest", "pm_card", D("120.00")),
            ("capture", "pi_charge_1", None),
        ]
        assert store.trip_charges[charge.id].gateway_intent_id == "pi_charge_1"

    async def test_processing_intent_is_left_alone(self, queue, store, gateway):
        booking, charge = queued(store)
        store.trip_charges[charge.id] = charge.model_copy(update={"gateway_intent_id": "pi_prev"})
        gateway.add_intent(IntentStatus.PROCESSING, D("75.00"), intent_id="pi_prev")
        result = await queue.process_charges(ProcessChargesRequest(), now=NOW)

        assert result.results[0].status == ChargeOutcome.FAILED
        assert gateway.mutating_calls() == []

    async def test_lost_authorize_reply_is_replayed_not_duplicated(self, queue, store, gateway):
        booking, charge = queued(store)
        gateway.lost_responses.add("authorize")

        first = await queue.process_charges(ProcessChargesRequest(), now=NOW)
        assert first.results[0].status == ChargeOutcome.FAILED
        pending = store.trip_charges[charge.id]
        assert pending.authorize_key is not None
        assert pending.gateway_intent_id is None

        second = await queue.process_charges(ProcessChargesRequest(), now=NOW)
        assert second.results[0].status == ChargeOutcome.SUCCESS
        assert gateway.intents_authorized() == ["pi_charge_1"]
        assert gateway.intents["pi_charge_1"].amount_captured == D("75.00")
        settled = store.trip_charges[charge.id]
        assert settled.gateway_intent_id == "pi_charge_1"
        assert settled.authorize_key is None

    async def test_replayed_authorization_covers_a_reduced_amount(self, queue, store, gateway):
        booking, charge = queued(store)
        gateway.lost_responses.add("authorize")
        await queue.process_charges(ProcessChargesRequest(), now=NOW)

        await queue.waive_charges(booking.id, D("20"), "admin", "fuel was topped up", now=NOW)
        result = await queue.process_charges(ProcessChargesRequest(), now=NOW)

        assert result.results[0].amount == D("60.00")
        authorize_amounts = [c[3] for c in gateway.calls if c[0] == "authorize"]
        assert authorize_amounts == [D("75.00"), D("75.00")]
        assert gateway.intents_authorized() == ["pi_charge_1"]
        assert ("capture", "pi_charge_1", D("60.00")) in gateway.calls

    async def test_declined_authorization_gets_a_fresh_key(self, queue, store, gateway):
        booking, charge = queued(store)
        gateway.errors["authorize"] = GatewayError("card_declined")
        await queue.process_charges(ProcessChargesRequest(), now=NOW)
        del gateway.errors["authorize"]

        result = await queue.process_charges(ProcessChargesRequest(), now=NOW)

        assert result.results[0].status == ChargeOutcome.SUCCESS
        assert [k for k in gateway.keys if k.startswith("trip-charge:")] == [
            f"trip-charge:{charge.id}:7500:1"
        ]

    async def test_large_charge_waits_for_approval(self, queue, store, gateway):
        booking, charge = queued(store, pending_charges_amount=D("900.00"))
        store.trip_charges[charge.id] = charge.model_copy(update={"requires_approval": True})

        waiting = await queue.process_charges(ProcessChargesRequest(), now=NOW)
        assert waiting.results[0].reason == "requires admin approval"
        assert gateway.calls == []

        approved = await queue.approve_charges(booking.id, "admin", "photos checked", now=NOW)
        assert approved.amount == D("900.00")
        result = await queue.process_charges(ProcessChargesRequest(), now=NOW)
        assert result.results[0].status == ChargeOutcome.SUCCESS
        assert result.summary.total_charged == D("900.00")

    async def test_storage_error_on_one_charge_does_not_stop_batch(
        self, queue, store, gateway, lock, monkeypatch
    ):
        broken, broken_charge = queued(store, pending_charges_amount=D("100.00"))
        healthy, _ = queued(store, pending_charges_amount=D("50.00"))
        original = store.compare_and_set_trip_charge

        async def flaky(charge_id, *args, **fields):
            if charge_id == broken_charge.id:
                raise OperationalError("connection reset")
            return await original(charge_id, *args, **fields)

        monkeypatch.setattr(store, "compare_and_set_trip_charge", flaky)
        result = await queue.process_charges(ProcessChargesRequest(), now=NOW)

        by_id = {r.booking_id: r for r in result.results}
        assert by_id[broken.id].status == ChargeOutcome.ERROR
        assert by_id[healthy.id].status == ChargeOutcome.SUCCESS
        assert result.summary.errors == 1
        assert result.summary.successful == 1
        assert lock.held == set()

        # next sweep finds the captured intent instead of charging again
        monkeypatch.undo()
        retry = await queue.process_charges(ProcessChargesRequest(), now=NOW)
        assert retry.results[0].status == ChargeOutcome.SUCCESS
        assert retry.results[0].amount == D("100.00")
        assert len([c for c in gateway.calls if c[0] == "capture"]) == 2


# ---------------------------------------------------------------------------
# Query
# ---------------------------------------------------------------------------


class TestListPendingCharges:
    pytestmark = pytest.mark.anyio

    async def test_stats_and_filters(self, queue, store):
        old, _ = queued(store, pending_charges_amount=D("100.00"))
        recent = store.add_booking(
            make_ended_booking(
                trip_ended_at=NOW - timedelta(hours=2), pending_charges_amount=D("50.00")
            )
        )
        store.add_trip_charge(
            make_trip_charge(recent, charge_status=ChargeStatus.FAILED, retry_count=1)
        )
        queued(store, payment_method_id=None, pending_charges_amount=D("25.00"))

        everything = await queue.list_pending_charges(PendingChargeFilters(), now=NOW)
        assert everything.stats.total_pending_count == 3
        assert everything.stats.total_pending_amount == D("175.00")
        assert everything.stats.ready_to_process_count == 2
        assert everything.stats.failed_count == 1
        assert everything.stats.oldest_pending_at == old.trip_ended_at

        failed = await queue.list_pending_charges(
            PendingChargeFilters(status=ChargeQueueFilter.FAILED), now=NOW
        )
        assert [i.booking_id for i in failed.items] == [recent.id]

        older = await queue.list_pending_charges(
            PendingChargeFilters(older_than_hours=24), now=NOW
        )
        assert recent.id not in {i.booking_id for i in older.items}
        assert len(older.items) == 2

        limited = await queue.list_pending_charges(PendingChargeFilters(limit=1), now=NOW)
        assert len(limited.items) == 1
        assert limited.stats.total_pending_count == 3

    async def test_disputed_and_unapproved_are_not_ready(self, queue, store):
        disputed = store.add_booking(make_ended_booking())
        store.add_trip_charge(
            make_trip_charge(
                disputed, charge_status=ChargeStatus.DISPUTED, dispute_reason="never drove it"
            )
        )
        large = store.add_booking(make_ended_booking(pending_charges_amount=D("900.00")))
        store.add_trip_charge(make_trip_charge(large, requires_approval=True))

        everything = await queue.list_pending_charges(PendingChargeFilters(), now=NOW)
        assert everything.stats.ready_to_process_count == 0
        assert everything.stats.disputed_count == 1
        assert everything.stats.awaiting_approval_count == 1

        only_disputed = await queue.list_pending_charges(
            PendingChargeFilters(status=ChargeQueueFilter.DISPUTED), now=NOW
        )
        (item,) = only_disputed.items
        assert item.booking_id == disputed.id
        assert item.dispute_reason == "never drove it"

        awaiting = await queue.list_pending_charges(
            PendingChargeFilters(status=ChargeQueueFilter.AWAITING_APPROVAL), now=NOW
        )
        (item,) = awaiting.items
        assert item.booking_id == large.id
        assert item.requires_approval is True
        assert item.approved is False


# ---------------------------------------------------------------------------
# Admin clear / waive
# ---------------------------------------------------------------------------


class TestAdminActions:
    pytestmark = pytest.mark.anyio

    async def test_clear_waives_everything(self, queue, store, notifier):
        booking, charge = queued(store)
        result = await queue.clear_charges(booking.id, "admin", "goodwill", now=NOW)

        assert result.cleared_amount == D("75.00")
        assert result.cleared_charge_ids == [charge.id]
        updated = store.bookings[booking.id]
        assert updated.payment_status == PaymentStatus.CHARGES_CLEARED
        assert updated.status == BookingStatus.COMPLETED
        assert updated.pending_charges_amount == D("0")
        stored = store.trip_charges[charge.id]
        assert stored.charge_status == ChargeStatus.CLEARED
        assert stored.cleared_by == "admin"
        assert store.activity[-1]["action"] == "CHARGES_CLEARED"
        assert store.activity[-1]["metadata"]["reason"] == "goodwill"
        assert notifier.send_email.call_args.args[1] == "trip_charges_waived"

    async def test_clear_without_charges_conflicts(self, queue, store):
        booking = store.add_booking(make_booking())
        with pytest.raises(ConflictError):
            await queue.clear_charges(booking.id, "admin", "nothing to clear", now=NOW)

    async def test_partial_waive_keeps_remainder_queued(self, queue, store, gateway):
        booking, charge = queued(store, pending_charges_amount=D("200.00"))
        result = await queue.waive_charges(booking.id, D("25"), "admin", "fuel dispute", now=NOW)

        assert result.waived_amount == D("50.00")
        assert result.remaining_amount == D("150.00")
        assert store.trip_charges[charge.id].waived_amount == D("50.00")
        assert store.trip_charges[charge.id].charge_status == ChargeStatus.PENDING

        await queue.process_charges(ProcessChargesRequest(), now=NOW)
        assert gateway.calls[0] == ("authorize", "cus_guest", "pm_card", D("150.00"))

    async def test_waive_rejects_full_percentage(self, queue, store):
        booking, _ = queued(store)
        with pytest.raises(ValueError):
            await queue.waive_charges(booking.id, D("100"), "admin", "use clear", now=NOW)

    async def test_approve_needs_a_flagged_charge(self, queue, store):
        booking, _ = queued(store)
        with pytest.raises(ConflictError):
            await queue.approve_charges(booking.id, "admin", now=NOW)

    async def test_adjust_rewrites_components_and_pending(self, queue, store):
        booking, charge = queued(store, pending_charges_amount=D("200.00"))
        store.trip_charges[charge.id] = charge.model_copy(
            update={
                "fuel_charge": D("80.00"),
                "damage_charge": D("120.00"),
                "category": "multiple",
            }
        )
        result = await queue.adjust_charges(
            booking.id,
            ChargeAdjustments(damage_charge="40.00"),
            "admin",
            "scratch predates the trip",
            now=NOW,
        )

        assert result.original_amount == D("200.00")
        assert result.adjusted_amount == D("120.00")
        assert result.pending_amount == D("120.00")
        stored = store.trip_charges[charge.id]
        assert stored.damage_charge == D("40.00")
        assert stored.fuel_charge == D("80.00")
        assert stored.total_amount == D("120.00")
        assert stored.approved_by == "admin"
        assert store.bookings[booking.id].pending_charges_amount == D("120.00")
        assert "Original: $200.00, now: $120.00" in store.messages[-1]["message"]
        assert store.activity[-1]["action"] == "CHARGES_ADJUSTED"

    async def test_adjust_counts_earlier_waivers(self, queue, store):
        booking, charge = queued(store, pending_charges_amount=D("200.00"))
        await queue.waive_charges(booking.id, D("25"), "admin", "goodwill", now=NOW)
        result = await queue.adjust_charges(
            booking.id, ChargeAdjustments(fuel_charge="100.00"), "admin", "receipt", now=NOW
        )
        assert result.pending_amount == D("50.00")
        assert store.bookings[booking.id].pending_charges_amount == D("50.00")

    async def test_adjust_to_nothing_clears(self, queue, store):
        booking, charge = queued(store)
        result = await queue.adjust_charges(
            booking.id, ChargeAdjustments(fuel_charge="0"), "admin", "tank was full", now=NOW
        )
        assert result.pending_amount == D("0.00")
        assert result.payment_status == PaymentStatus.CHARGES_CLEARED
        assert store.trip_charges[charge.id].charge_status == ChargeStatus.CLEARED


# ---------------------------------------------------------------------------
# Guest disputes
# ---------------------------------------------------------------------------


class TestDisputes:
    pytestmark = pytest.mark.anyio

    def _fresh(self, store, **overrides):
        return queued(store, trip_ended_at=NOW - timedelta(hours=2), **overrides)

    async def _dispute(self, queue, booking):
        request = DisputeChargesRequest(reason="I returned it full", items=["fuel"])
        return await queue.dispute_charges(booking.id, make_guest(), request, now=NOW)

    async def test_dispute_holds_charge_for_review(self, queue, store, notifier):
        booking, charge = self._fresh(store)
        result = await self._dispute(queue, booking)

        assert result.charge_status == ChargeStatus.DISPUTED
        stored = store.trip_charges[charge.id]
        assert stored.charge_status == ChargeStatus.DISPUTED
        assert stored.disputed_items == ["fuel"]
        assert stored.dispute_reason == "I returned it full"
        (notification,) = store.notifications
        assert notification.type == "CHARGES_DISPUTED"
        assert notification.priority == NotificationPriority.HIGH
        assert "Fuel refill" in notification.message
        notifier.send_host_message.assert_awaited_once()
        assert store.activity[-1]["actor"] == str(GUEST_ID)

    async def test_disputed_charge_is_not_processed(self, queue, store, gateway):
        booking, _ = self._fresh(store)
        await self._dispute(queue, booking)
        result = await queue.process_charges(
            ProcessChargesRequest(mode="specific", booking_ids=[booking.id]), now=NOW
        )
        assert result.results[0].reason == "disputed by guest"
        assert gateway.calls == []

    async def test_dispute_after_hold_window_conflicts(self, queue, store):
        booking, _ = queued(store)
        with pytest.raises(ConflictError):
            await self._dispute(queue, booking)

    async def test_only_the_guest_can_dispute(self, queue, store):
        booking, _ = self._fresh(store)
        request = DisputeChargesRequest(reason="not mine")
        with pytest.raises(NotBookingOwner):
            await queue.dispute_charges(booking.id, make_guest(OTHER_USER_ID), request, now=NOW)

    async def test_failed_charge_cannot_be_disputed(self, queue, store):
        booking, charge = self._fresh(store)
        store.trip_charges[charge.id] = charge.model_copy(
            update={"charge_status": ChargeStatus.FAILED, "retry_count": 1}
        )
        with pytest.raises(ConflictError):
            await self._dispute(queue, booking)

    async def test_second_dispute_conflicts(self, queue, store):
        booking, _ = self._fresh(store)
        await self._dispute(queue, booking)
        with pytest.raises(ConflictError):
            await self._dispute(queue, booking)

    async def test_adjust_refused_while_disputed(self, queue, store):
        booking, _ = self._fresh(store)
        await self._dispute(queue, booking)
        with pytest.raises(ConflictError):
            await queue.adjust_charges(
                booking.id, ChargeAdjustments(fuel_charge="10"), "admin", "early", now=NOW
            )

    async def test_uphold_returns_charge_to_queue(self, queue, store, gateway, notifier):
        booking, charge = self._fresh(store)
        await self._dispute(queue, booking)
        result = await queue.resolve_dispute(
            booking.id,
            ResolveDisputeRequest(decision="uphold", reason="fuel receipt shows quarter tank"),
            "admin",
            now=NOW,
        )

        assert result.charge_status == ChargeStatus.PENDING
        assert result.pending_amount == D("75.00")
        stored = store.trip_charges[charge.id]
        assert stored.dispute_resolution.startswith("uphold")
        notifier.send_guest_message.assert_awaited_once()

        processed = await queue.process_charges(ProcessChargesRequest(mode="all"), now=NOW)
        assert processed.results[0].status == ChargeOutcome.SUCCESS

    async def test_waive_decision_clears(self, queue, store, notifier):
        booking, charge = self._fresh(store)
        await self._dispute(queue, booking)
        result = await queue.resolve_dispute(
            booking.id,
            ResolveDisputeRequest(decision=DisputeDecision.WAIVE, reason="guest was right"),
            "admin",
            now=NOW,
        )

        assert result.charge_status == ChargeStatus.CLEARED
        assert result.pending_amount == D("0.00")
        assert store.trip_charges[charge.id].charge_status == ChargeStatus.CLEARED
        assert store.bookings[booking.id].payment_status == PaymentStatus.CHARGES_CLEARED
        assert store.activity[-1]["action"] == "DISPUTE_RESOLVED"

    async def test_adjust_decision_requeues_corrected_amount(self, queue, store):
        booking, charge = self._fresh(store)
        await self._dispute(queue, booking)
        result = await queue.resolve_dispute(
            booking.id,
            ResolveDisputeRequest(
                decision="adjust",
                reason="half a tank, not empty",
                adjustments={"fuel_charge": "30.00"},
            ),
            "admin",
            now=NOW,
        )

        assert result.charge_status == ChargeStatus.PENDING
        assert result.pending_amount == D("30.00")
        stored = store.trip_charges[charge.id]
        assert stored.charge_status == ChargeStatus.PENDING
        assert stored.total_amount == D("30.00")
        assert store.bookings[booking.id].pending_charges_amount == D("30.00")

    async def test_resolve_without_dispute_conflicts(self, queue, store):
        booking, _ = self._fresh(store)
        with pytest.raises(ConflictError):
            await queue.resolve_dispute(
                booking.id,
                ResolveDisputeRequest(decision="uphold", reason="nothing to resolve"),
                "admin",
                now=NOW,
            )


class TestChargeRequests:
    def test_adjustments_need_a_component(self):
        with pytest.raises(ValidationError):
            ChargeAdjustments()

    def test_adjust_decision_requires_adjustments(self):
        with pytest.raises(ValidationError):
            ResolveDisputeRequest(decision="adjust", reason="missing amounts")

    def test_unknown_dispute_item_rejected(self):
        with pytest.raises(ValidationError):
            DisputeChargesRequest(reason="wrong", items=["tolls"])
