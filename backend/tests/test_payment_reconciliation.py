from datetime import timedelta

import pytest

from conftest import authorize, make_booking
from escrowrail.shared.models import BookingEvent, BookingStatus, PaymentState, ProcessorEvent
from escrowrail.api_gateway.services.escrow import PaymentTransientError
from escrowrail.escrow_jobs.payment_reconciliation import ABANDONED, PaymentReconciliationJob


@pytest.fixture
def job(services, clock):
    return PaymentReconciliationJob(services.store, services.state_machine, stale_after_minutes=30, clock=clock)


def _stuck_capture(services, booking, requester, processor):
    processor.unavailable["capture"] = 3
    with pytest.raises(PaymentTransientError):
        services.state_machine.transition(
            booking.id, BookingEvent.REQUESTER_CONFIRMS, requester, f"{booking.id}|confirm",
        )
    return services.store.get(booking.id)


def test_resumes_pending_capture(services, job, completed_booking, requester, processor):
    stuck = _stuck_capture(services, completed_booking, requester, processor)
    assert stuck.payment_state == PaymentState.CAPTURE_PENDING

    result = job.sweep()

    assert result.resumed == [completed_booking.id]
    booking = services.store.get(completed_booking.id)
    assert booking.status == BookingStatus.RELEASED
    assert booking.transition_log[-1].idempotency_key == f"{completed_booking.id}|confirm"
    assert processor.count("capture") == 1


def test_processor_still_down_keeps_pending(services, job, completed_booking, requester, processor):
    _stuck_capture(services, completed_booking, requester, processor)
    processor.unavailable["capture"] = 3

    result = job.sweep()

    assert result.still_pending == [completed_booking.id]
    assert services.store.get(completed_booking.id).payment_state == PaymentState.CAPTURE_PENDING


def test_resumes_pending_refund(services, job, held_booking, admin, processor):
    processor.unavailable["refund"] = 3
    with pytest.raises(PaymentTransientError):
        services.state_machine.transition(held_booking.id, BookingEvent.CANCEL, admin, f"{held_booking.id}|cancel")
    assert services.store.get(held_booking.id).payment_state == PaymentState.REFUND_PENDING

    job.sweep()

    booking = services.store.get(held_booking.id)
    assert booking.status == BookingStatus.CANCELLED
    assert booking.payment_state == PaymentState.REFUNDED
    assert booking.cancelled_by == admin.id


def test_permanent_failure_on_resume_restores_escrow(services, job, completed_booking, requester, processor):
    _stuck_capture(services, completed_booking, requester, processor)
    processor.capture_decline_code = "intent_not_capturable"

    result = job.sweep()

    assert result.failed == [completed_booking.id]
    booking = services.store.get(completed_booking.id)
    assert booking.status == BookingStatus.COMPLETED_AWAITING_CONFIRMATION
    assert booking.payment_state == PaymentState.HELD_IN_ESCROW
    assert booking.confirmation_deadline == completed_booking.confirmation_deadline


def test_fresh_authorization_is_left_alone(services, job, requester, processor, clock):
    processor.authorize_status = "processing"
    booking = make_booking(services)
    authorize(services, booking.id, requester)

    clock.advance(minutes=10)
    result = job.sweep()

    assert result.abandoned == []
    assert services.store.get(booking.id).payment_state == PaymentState.AUTHORIZATION_PENDING


def test_stale_authorization_is_abandoned_and_late_webhook_still_confirms(
    services, job, requester, processor, clock,
):
    processor.authorize_status = "processing"
    booking = make_booking(services)
    authorize(services, booking.id, requester)

    clock.advance(minutes=31)
    result = job.sweep()

    assert result.abandoned == [booking.id]
    stored = services.store.get(booking.id)
    assert stored.status == BookingStatus.PENDING
    assert stored.payment_state == PaymentState.UNPAID
    assert stored.last_payment_error == ABANDONED

    assert job.sweep().abandoned == []

    outcome = services.reconciler.handle(
        ProcessorEvent(id="evt_late", type="authorization_succeeded", related_intent_ref="pi_test_1")
    )
    assert outcome.acked
    stored = services.store.get(booking.id)
    assert stored.status == BookingStatus.CONFIRMED
    assert stored.payment_state == PaymentState.HELD_IN_ESCROW
    assert stored.payment_intent_ref == "pi_test_1"


def test_settled_bookings_are_ignored(services, job, completed_booking, clock):
    clock.advance(hours=2)
    result = job.sweep()
    assert result == type(result)()
    assert services.store.get(completed_booking.id).version == completed_booking.version
