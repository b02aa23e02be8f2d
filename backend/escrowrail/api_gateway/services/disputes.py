"""Dispute resolution - admin overrides fed through the same state machine as every other transition."""

import logging
from typing import Optional

from escrowrail.shared.models import (
    RESOLVED_DISPUTE_STATUSES,
    Actor,
    ActorRole,
    Booking,
    BookingEvent,
    BookingStatus,
    DisputeResolution,
)
from escrowrail.shared.settings import EscrowPolicy
from escrowrail.api_gateway.services.booking_store import BookingStore
from escrowrail.api_gateway.services.state_machine import BookingStateMachine, DuplicateEventError

logger = logging.getLogger("escrowrail.disputes")

RESOLUTION_EVENTS = {
    DisputeResolution.REFUND: BookingEvent.ADMIN_RESOLVES_REFUND,
    DisputeResolution.RELEASE: BookingEvent.ADMIN_RESOLVES_RELEASE,
}


class DisputeValidationError(Exception):
    pass


class DisputeNotFoundError(Exception):
    def __init__(self, booking_id: str):
        self.booking_id = booking_id
        super().__init__(f"Booking {booking_id} has no dispute")


class DisputeResolutionService:

    def __init__(self, store: BookingStore, state_machine: BookingStateMachine, policy: EscrowPolicy):
        self.store = store
        self.state_machine = state_machine
        self.policy = policy

    def open(self, booking_id: str, requester: Actor, reason: str) -> Booking:
        try:
            return self.state_machine.transition(
                booking_id, BookingEvent.REQUESTER_DISPUTES, requester, f"{booking_id}|dispute",
                reason=reason,
            )
        except DuplicateEventError as e:
            return e.booking

    def resolve(self, booking_id: str, resolution: str, admin_id: str, notes: Optional[str]) -> Booking:
        """Settle a dispute by refunding the requester or releasing the funds to the fulfiller.

        Re-submitting a resolution for a booking that is already resolved returns
        it unchanged, whichever resolution the repeat asks for.
        """
        try:
            resolution = DisputeResolution(resolution)
        except ValueError:
            raise DisputeValidationError(
                f"Resolution must be one of {', '.join(r.value for r in DisputeResolution)}"
            )

        notes = (notes or "").strip()
        if len(notes) < self.policy.min_resolution_notes_length:
            raise DisputeValidationError(
                f"Resolution notes must be at least {self.policy.min_resolution_notes_length} characters"
            )

        booking = self.store.get(booking_id)
        if booking.status in RESOLVED_DISPUTE_STATUSES:
            logger.info(f"Dispute on booking {booking_id} already resolved ({booking.dispute_resolution.value})")
            return booking

        admin = Actor(id=admin_id, role=ActorRole.ADMIN)
        try:
            booking = self.state_machine.transition(
                booking_id, RESOLUTION_EVENTS[resolution], admin, f"{booking_id}|resolve", notes=notes,
            )
        except DuplicateEventError as e:
            return e.booking

        logger.info(f"Dispute on booking {booking_id} resolved: {resolution.value} by {admin_id}")
        return booking

    def list_disputes(self, state: Optional[str] = None) -> list[Booking]:
        disputed = [b for b in self.store.list_bookings() if b.dispute_opened_at is not None]
        if state == "open":
            return [b for b in disputed if b.status == BookingStatus.DISPUTED]
        if state == "resolved":
            return [b for b in disputed if b.status in RESOLVED_DISPUTE_STATUSES]
        return disputed

    def get_dispute(self, booking_id: str) -> Booking:
        booking = self.store.get(booking_id)
        if booking.dispute_opened_at is None:
            raise DisputeNotFoundError(booking_id)
        return booking
