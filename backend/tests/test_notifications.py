import asyncio

import httpx
import pytest

from conftest import complete
from escrowrail.shared.file_store import FileStore
from escrowrail.shared.models import BookingEvent
from escrowrail.api_gateway.services.notifications import NOTIFICATION_CREATED, NotificationNotFoundError
from escrowrail.escrow_jobs.notification_outbox import NotificationOutbox


class RecordingTransport:
    def __init__(self, failures=0):
        self.failures = failures
        self.published = []

    async def publish(self, user_id, notification):
        if self.failures > 0:
            self.failures -= 1
            raise httpx.ConnectError("realtime unreachable")
        self.published.append((user_id, notification["title"]))


def _titles(services, user_id):
    return [n.title for n in services.notification_store.list_for_user(user_id)]


def test_authorization_notifies_both_parties(services, held_booking):
    assert _titles(services, "usr_requester") == ["Payment Held"]
    assert _titles(services, "usr_fulfiller") == ["New Booking Confirmed"]


def test_release_notifies_payout(services, completed_booking, requester):
    services.state_machine.transition(
        completed_booking.id, BookingEvent.REQUESTER_CONFIRMS, requester, f"{completed_booking.id}|confirm",
    )

    fulfiller_inbox = services.notification_store.list_for_user("usr_fulfiller")
    received = [n for n in fulfiller_inbox if n.title == "Payment Received"]
    assert len(received) == 1
    assert "42.50 EUR" in received[0].message
    assert received[0].related_booking_id == completed_booking.id
    assert "Payment Released" in _titles(services, "usr_requester")


def test_requester_cancel_notifies_only_fulfiller(services, held_booking, requester):
    services.state_machine.transition(held_booking.id, BookingEvent.CANCEL, requester, "c1")

    assert "Booking Cancelled" in _titles(services, "usr_fulfiller")
    assert "Booking Cancelled" not in _titles(services, "usr_requester")


def test_emit_is_idempotent(services, held_booking):
    booking = services.store.get(held_booking.id)
    record = booking.transition_log[-1]

    assert services.notifier.emit(booking, record) == []
    assert len(services.notification_store.list_for_user("usr_requester")) == 1
    events = [e for e in FileStore.read_jsonl(services.ledger.outbox_path) if e["type"] == NOTIFICATION_CREATED]
    assert len(events) == 2


def test_intermediate_steps_are_silent(services, held_booking):
    booking = services.store.get(held_booking.id)
    requested = booking.transition_log[0]
    assert requested.cause == "authorization_requested"
    assert services.notifier.emit(booking, requested) == []


def test_mark_read(services, held_booking, fulfiller, clock):
    clock.advance(hours=1)
    complete(services, held_booking.id, fulfiller)
    inbox = services.notification_store.list_for_user("usr_requester")
    assert [n.title for n in inbox] == ["Service Completed", "Payment Held"]

    services.notification_store.mark_read("usr_requester", inbox[0].id)

    unread = services.notification_store.list_for_user("usr_requester", unread_only=True)
    assert [n.title for n in unread] == ["Payment Held"]


def test_mark_read_of_other_users_row_is_not_found(services, held_booking):
    theirs = services.notification_store.list_for_user("usr_fulfiller")[0]

    with pytest.raises(NotificationNotFoundError):
        services.notification_store.mark_read("usr_requester", theirs.id)
    assert not services.notification_store.list_for_user("usr_fulfiller")[0].read


def test_mark_all_read(services, held_booking, fulfiller):
    complete(services, held_booking.id, fulfiller)

    assert services.notification_store.mark_all_read("usr_requester") == 2
    assert services.notification_store.mark_all_read("usr_requester") == 0
    assert services.notification_store.list_for_user("usr_requester", unread_only=True) == []
    assert len(services.notification_store.list_for_user("usr_fulfiller", unread_only=True)) == 1


def test_outbox_delivers_each_event_once(services, held_booking):
    transport = RecordingTransport()
    outbox = NotificationOutbox(services.settings.data_dir, transport, backoff=[0])

    assert asyncio.run(outbox.process_pending()) == 2
    assert asyncio.run(outbox.process_pending()) == 0
    assert sorted(transport.published) == [
        ("usr_fulfiller", "New Booking Confirmed"),
        ("usr_requester", "Payment Held"),
    ]


def test_outbox_retries_transient_failures(services, held_booking):
    transport = RecordingTransport(failures=2)
    outbox = NotificationOutbox(services.settings.data_dir, transport, backoff=[0])

    asyncio.run(outbox.process_pending())

    assert len(transport.published) == 2
    assert FileStore.read_jsonl(outbox.dlq_path) == []


def test_outbox_dead_letters_after_max_retries(services, held_booking):
    transport = RecordingTransport(failures=3)
    outbox = NotificationOutbox(services.settings.data_dir, transport, max_retries=3, backoff=[0])

    asyncio.run(outbox.process_pending())

    dlq = FileStore.read_jsonl(outbox.dlq_path)
    assert len(dlq) == 1
    assert dlq[0]["dlq_reason"] == "max_retries_exceeded"
    assert len(transport.published) == 1
    # The inbox row is still there to poll.
    assert len(services.notification_store.list_for_user(dlq[0]["payload"]["user_id"])) == 1


def test_outbox_prunes_delivered_events_after_retention(services, held_booking, clock):
    transport = RecordingTransport()
    outbox = NotificationOutbox(services.settings.data_dir, transport, backoff=[0], retention_days=7, clock=clock)
    assert asyncio.run(outbox.process_pending()) == 2

    clock.advance(days=6)
    assert outbox.prune() == 0

    clock.advance(days=2)
    assert asyncio.run(outbox.process_pending()) == 0

    assert len(transport.published) == 2
    assert FileStore.read_json(outbox.processed_path) == {}
    assert [e for e in FileStore.read_jsonl(outbox.outbox_path) if e.get("type") == NOTIFICATION_CREATED] == []
