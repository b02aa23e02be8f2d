import threading
import typing

import pytest

from conftest import make_booking
from escrowrail.shared.file_store import FileStore
from escrowrail.shared.models import Booking, BookingStatus, InvariantViolationError, PaymentState
from escrowrail.api_gateway.services.booking_store import (
    BookingLockedError,
    BookingNotFoundError,
    BookingStore,
    ConcurrentModificationError,
)


def test_save_bumps_version(services):
    booking = make_booking(services)
    booking.cancellation_reason = "note"

    saved = services.store.save(booking)

    assert saved.version == 1
    assert services.store.get(booking.id).version == 1


def test_stale_write_is_rejected(services):
    booking = make_booking(services)
    first = services.store.get(booking.id)
    second = services.store.get(booking.id)

    services.store.save(first)
    with pytest.raises(ConcurrentModificationError):
        services.store.save(second)


def test_invalid_combination_is_never_written(services):
    booking = make_booking(services)
    booking.payment_state = PaymentState.RELEASED

    with pytest.raises(InvariantViolationError):
        services.store.save(booking)
    assert services.store.get(booking.id).payment_state == PaymentState.UNPAID


def test_missing_and_malformed_ids(services):
    with pytest.raises(BookingNotFoundError):
        services.store.get("bkg_nope")
    with pytest.raises(BookingNotFoundError):
        services.store.get("../etc/passwd")


def test_list_filters(services):
    a = make_booking(services)
    b = make_booking(services)
    b.status = BookingStatus.CANCELLED
    services.store.save(b)

    assert {x.id for x in services.store.list_bookings()} == {a.id, b.id}
    assert [x.id for x in services.store.list_bookings(status=BookingStatus.CANCELLED)] == [b.id]
    assert services.store.list_bookings(requester_id="usr_other") == []


def test_store_does_not_shadow_builtin_list():
    assert not hasattr(BookingStore, "list")
    hints = typing.get_type_hints(BookingStore.list_bookings)
    assert hints["return"] == list[Booking]


def test_intent_index(services):
    services.store.index_intent("pi_1", "bkg_1")
    assert services.store.find_by_intent("pi_1") == "bkg_1"
    assert services.store.find_by_intent("pi_2") is None
    # The index document is not mistaken for a booking.
    assert services.store.list_bookings() == []


def test_lock_is_reentrant_for_holder_and_exclusive_for_others(services, tmp_path):
    booking = make_booking(services)
    impatient = BookingStore(str(tmp_path), lock_timeout=0.1)
    errors = []

    def _other_thread():
        try:
            impatient.get(booking.id)
        except BookingLockedError as e:
            errors.append(e)

    with services.store.locked(booking.id):
        # Same thread re-enters.
        assert services.store.get(booking.id).id == booking.id
        worker = threading.Thread(target=_other_thread)
        worker.start()
        worker.join()

    assert len(errors) == 1
    assert impatient.get(booking.id).id == booking.id


def test_update_json_returns_mutator_result(tmp_path):
    path = str(tmp_path / "doc.json")

    def _bump(doc):
        doc["n"] = doc.get("n", 0) + 1
        return doc["n"]

    assert FileStore.update_json(path, _bump) == 1
    assert FileStore.update_json(path, _bump) == 2
    assert FileStore.read_json(path) == {"n": 2}
