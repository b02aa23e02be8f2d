import threading

from conftest import authorize, make_booking
from escrowrail.shared.models import BookingStatus, PaymentState, ProcessorEvent
from escrowrail.shared.file_store import FileStore
from escrowrail.api_gateway.services.booking_store import BookingLockedError
from escrowrail.api_gateway.services.webhook_reconciler import WebhookReconciler
from escrowrail.escrow_jobs.payment_reconciliation import PaymentReconciliationJob


def _event(event_id, event_type, intent_ref="pi_async", **payload):
    return ProcessorEvent(id=event_id, type=event_type, related_intent_ref=intent_ref, payload=payload)


def test_authorization_succeeded_confirms_pending_booking(services):
    booking = make_booking(services)

    outcome = services.reconciler.handle(_event("evt_1", "authorization_succeeded", booking_id=booking.id))

    assert outcome.acked
    assert outcome.detail == "applied"
    booking = services.store.get(booking.id)
    assert booking.status == BookingStatus.CONFIRMED
    assert booking.payment_state == PaymentState.HELD_IN_ESCROW
    assert booking.payment_intent_ref == "pi_async"
    assert booking.transition_log[-1].external_event_id == "evt_1"


def test_async_authorization_completed_by_webhook(services, requester, processor):
    processor.authorize_status = "processing"
    booking = make_booking(services)
    booking = authorize(services, booking.id, requester, method="pm_requires_action")
    assert booking.payment_state == PaymentState.AUTHORIZATION_PENDING

    # Located through the intent index, no booking id in the payload.
    outcome = services.reconciler.handle(_event("evt_1", "authorization_succeeded", intent_ref="pi_test_1"))

    assert outcome.acked
    booking = services.store.get(booking.id)
    assert booking.status == BookingStatus.CONFIRMED
    assert booking.payment_intent_ref == "pi_test_1"


def test_authorization_failed_returns_booking_to_unpaid(services, requester, processor):
    processor.authorize_status = "processing"
    booking = make_booking(services)
    authorize(services, booking.id, requester)

    outcome = services.reconciler.handle(
        _event("evt_2", "authorization_failed", intent_ref="pi_test_1", failure_code="card_declined")
    )

    assert outcome.acked
    booking = services.store.get(booking.id)
    assert booking.status == BookingStatus.PENDING
    assert booking.payment_state == PaymentState.UNPAID
    assert booking.last_payment_error == "card_declined"


def test_redelivered_event_is_deduplicated(services):
    booking = make_booking(services)
    event = _event("evt_1", "authorization_succeeded", booking_id=booking.id)

    services.reconciler.handle(event)
    second = services.reconciler.handle(event)

    assert second.acked
    assert second.detail == "duplicate"
    assert len(services.store.get(booking.id).transition_log) == 1


def test_late_authorization_for_held_booking_is_already_applied(services, held_booking):
    outcome = services.reconciler.handle(
        _event("evt_9", "authorization_succeeded", intent_ref=held_booking.payment_intent_ref)
    )
    assert outcome.acked
    assert outcome.detail == "already applied"
    assert services.store.get(held_booking.id).version == held_booking.version


def test_unknown_booking_asks_for_redelivery(services):
    outcome = services.reconciler.handle(_event("evt_3", "authorization_succeeded", intent_ref="pi_nobody"))

    assert not outcome.acked
    assert not services.reconciler.is_processed("evt_3")


def test_unmapped_event_type_is_acked(services):
    outcome = services.reconciler.handle(_event("evt_4", "charge.dispute.created"))
    assert outcome.acked
    assert outcome.detail == "unmapped"
    assert services.reconciler.is_processed("evt_4")


def test_refund_confirmation_only_records_ledger(services, held_booking):
    outcome = services.reconciler.handle(
        _event("evt_5", "refund_succeeded", intent_ref=held_booking.payment_intent_ref, amount=5000)
    )

    assert outcome.acked
    assert outcome.detail == "confirmed"
    assert services.store.get(held_booking.id).status == BookingStatus.CONFIRMED
    types = [e["type"] for e in services.ledger.get_entries_for_booking(held_booking.id)]
    assert "webhook.refund_succeeded" in types


def test_busy_booking_asks_for_redelivery(services, monkeypatch):
    booking = make_booking(services)

    def _locked(*args, **kwargs):
        raise BookingLockedError(booking.id)

    monkeypatch.setattr(services.state_machine, "transition", _locked)
    outcome = services.reconciler.handle(_event("evt_6", "authorization_succeeded", booking_id=booking.id))

    assert not outcome.acked
    assert not services.reconciler.is_processed("evt_6")


def test_dedup_ledger_prunes_expired_ids(services, clock):
    booking = make_booking(services)
    services.reconciler.handle(_event("evt_old", "refund_succeeded", booking_id=booking.id))

    clock.advance(days=31)
    services.reconciler.handle(_event("evt_new", "refund_succeeded", booking_id=booking.id))

    processed = FileStore.read_json(services.reconciler.processed_path)
    assert set(processed) == {"evt_new"}


def test_dedup_ledger_survives_restart(services, clock):
    booking = make_booking(services)
    services.reconciler.handle(_event("evt_1", "authorization_succeeded", booking_id=booking.id))

    fresh = WebhookReconciler(
        services.store, services.state_machine, services.ledger, services.settings.data_dir, clock=clock,
    )
    clock.advance(hours=1)
    assert fresh.handle(_event("evt_1", "authorization_succeeded", booking_id=booking.id)).detail == "duplicate"


def test_webhook_for_superseded_authorization_is_ignored(services, requester, processor, clock):
    processor.authorize_status = "processing"
    booking = make_booking(services)
    authorize(services, booking.id, requester, attempt=1)

    clock.advance(minutes=31)
    job = PaymentReconciliationJob(services.store, services.state_machine, stale_after_minutes=30, clock=clock)
    assert job.sweep().abandoned == [booking.id]
    booking = authorize(services, booking.id, requester, attempt=2)
    assert booking.authorization_intent_ref == "pi_test_2"

    stale = services.reconciler.handle(_event("evt_old", "authorization_succeeded", intent_ref="pi_test_1"))

    assert stale.acked
    assert stale.detail == "mismatch"
    assert services.store.get(booking.id).payment_state == PaymentState.AUTHORIZATION_PENDING

    current = services.reconciler.handle(_event("evt_new", "authorization_succeeded", intent_ref="pi_test_2"))

    assert current.detail == "applied"
    booking = services.store.get(booking.id)
    assert (booking.status, booking.payment_state) == (BookingStatus.CONFIRMED, PaymentState.HELD_IN_ESCROW)
    assert booking.payment_intent_ref == "pi_test_2"


def test_failure_for_superseded_authorization_is_ignored(services, requester, processor, clock):
    processor.authorize_status = "processing"
    booking = make_booking(services)
    authorize(services, booking.id, requester, attempt=1)
    clock.advance(minutes=31)
    PaymentReconciliationJob(services.store, services.state_machine, stale_after_minutes=30, clock=clock).sweep()
    authorize(services, booking.id, requester, attempt=2)

    outcome = services.reconciler.handle(
        _event("evt_old", "authorization_failed", intent_ref="pi_test_1", failure_code="card_declined")
    )

    assert outcome.detail == "mismatch"
    assert services.store.get(booking.id).payment_state == PaymentState.AUTHORIZATION_PENDING


def test_authorization_without_intent_is_not_applied(services):
    booking = make_booking(services)

    outcome = services.reconciler.handle(
        _event("evt_7", "authorization_succeeded", intent_ref=None, booking_id=booking.id)
    )

    assert outcome.acked
    assert outcome.detail == "mismatch"
    booking = services.store.get(booking.id)
    assert (booking.status, booking.payment_state) == (BookingStatus.PENDING, PaymentState.UNPAID)
    assert booking.payment_intent_ref is None
    assert services.reconciler.is_processed("evt_7")


def test_concurrent_redeliveries_record_one_ledger_row(services, held_booking):
    event = _event("evt_8", "refund_succeeded", intent_ref=held_booking.payment_intent_ref, amount=5000)
    barrier = threading.Barrier(4)
    outcomes = []

    def _deliver():
        barrier.wait()
        outcomes.append(services.reconciler.handle(event))

    threads = [threading.Thread(target=_deliver) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sorted(o.detail for o in outcomes) == ["confirmed", "duplicate", "duplicate", "duplicate"]
    rows = [e for e in services.ledger.get_entries_for_booking(held_booking.id)
            if e["type"] == "webhook.refund_succeeded"]
    assert len(rows) == 1
