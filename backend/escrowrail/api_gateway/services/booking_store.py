"""Booking store - one JSON document per booking holding the row and its transition log.

The status write and the transition-log append are a single atomic file
replace, and each booking has its own lock file, so work on different
bookings never contends.
"""

import logging
import os
from contextlib import contextmanager
from datetime import datetime
from typing import Iterator, Optional

from filelock import Timeout

from escrowrail.shared.file_store import FileStore
from escrowrail.shared.models import Booking, BookingStatus, PaymentState

logger = logging.getLogger("escrowrail.booking_store")


class BookingNotFoundError(Exception):
    def __init__(self, booking_id: str):
        self.booking_id = booking_id
        super().__init__(f"Booking {booking_id} not found")


class BookingLockedError(Exception):
    def __init__(self, booking_id: str):
        self.booking_id = booking_id
        super().__init__(f"Booking {booking_id} is busy, retry later")


class ConcurrentModificationError(Exception):
    def __init__(self, booking_id: str, expected: int, actual: int):
        self.booking_id = booking_id
        super().__init__(
            f"Booking {booking_id} changed concurrently (expected version {expected}, found {actual})"
        )


class BookingStore:

    def __init__(self, data_dir: str, lock_timeout: float = 30.0):
        self.bookings_dir = os.path.join(data_dir, "bookings")
        self.intent_index_path = os.path.join(self.bookings_dir, "_intent_index.json")
        self.lock_timeout = lock_timeout

    def _path(self, booking_id: str) -> str:
        if not booking_id or "/" in booking_id or booking_id.startswith("."):
            raise BookingNotFoundError(booking_id)
        return os.path.join(self.bookings_dir, f"{booking_id}.json")

    @contextmanager
    def locked(self, booking_id: str) -> Iterator[None]:
        """Exclusive hold on one booking, across threads and processes."""
        try:
            with FileStore.locked(self._path(booking_id), timeout=self.lock_timeout):
                yield
        except Timeout:
            raise BookingLockedError(booking_id)

    def create(self, booking: Booking) -> Booking:
        path = self._path(booking.id)
        with self.locked(booking.id):
            if os.path.exists(path):
                raise ValueError(f"Booking {booking.id} already exists")
            booking.check_invariants()
            FileStore._write_json_unlocked(path, booking.model_dump(mode="json"))
        logger.info(f"Created booking {booking.id} for service {booking.service_id}")
        return booking

    def get(self, booking_id: str) -> Booking:
        path = self._path(booking_id)
        with self.locked(booking_id):
            data = FileStore._read_json_unlocked(path, None)
        if data is None:
            raise BookingNotFoundError(booking_id)
        return Booking.model_validate(data)

    def save(self, booking: Booking) -> Booking:
        """Compare-and-swap write: the stored version must match the one the caller read."""
        path = self._path(booking.id)
        with self.locked(booking.id):
            current = FileStore._read_json_unlocked(path, None)
            if current is None:
                raise BookingNotFoundError(booking.id)
            if current.get("version", 0) != booking.version:
                raise ConcurrentModificationError(booking.id, booking.version, current.get("version", 0))
            booking.check_invariants()
            booking.version += 1
            FileStore._write_json_unlocked(path, booking.model_dump(mode="json"))
        return booking

    def list_bookings(
        self,
        status: Optional[BookingStatus] = None,
        requester_id: Optional[str] = None,
        fulfiller_id: Optional[str] = None,
    ) -> list[Booking]:
        bookings = []
        # Documents are only ever replaced atomically, so a lock-free read sees a whole row.
        for path in FileStore.list_json(self.bookings_dir):
            data = FileStore._read_json_unlocked(path, None)
            if not data:
                continue
            booking = Booking.model_validate(data)
            if status and booking.status != status:
                continue
            if requester_id and booking.requester_id != requester_id:
                continue
            if fulfiller_id and booking.fulfiller_id != fulfiller_id:
                continue
            bookings.append(booking)
        bookings.sort(key=lambda b: b.created_at, reverse=True)
        return bookings

    def due_for_auto_confirmation(self, now: datetime) -> list[Booking]:
        return [
            b for b in self.list_bookings(status=BookingStatus.COMPLETED_AWAITING_CONFIRMATION)
            if b.confirmation_deadline is not None and b.confirmation_deadline <= now
        ]

    def with_payment_in_flight(self) -> list[Booking]:
        return [
            b for b in self.list_bookings()
            if b.payment_state in (
                PaymentState.AUTHORIZATION_PENDING,
                PaymentState.CAPTURE_PENDING,
                PaymentState.REFUND_PENDING,
            )
        ]

    def index_intent(self, intent_ref: str, booking_id: str) -> None:
        def _add(index: dict) -> None:
            index[intent_ref] = booking_id
        FileStore.update_json(self.intent_index_path, _add)

    def find_by_intent(self, intent_ref: str) -> Optional[str]:
        index = FileStore.read_json(self.intent_index_path, default={})
        return index.get(intent_ref)
