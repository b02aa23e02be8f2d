"""API response models."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel

from escrowrail.shared.models import Booking


class BookingResponse(BaseModel):
    id: str
    service_id: str
    requester_id: str
    fulfiller_id: str
    amount: int
    currency: str
    scheduled_date: datetime
    status: str
    payment_state: str
    payment_intent_ref: Optional[str] = None
    last_payment_error: Optional[str] = None
    proof_assets: list[str] = []
    confirmation_deadline: Optional[datetime] = None
    dispute_reason: Optional[str] = None
    dispute_opened_at: Optional[datetime] = None
    dispute_resolution: Optional[str] = None
    dispute_notes: Optional[str] = None
    dispute_resolved_at: Optional[datetime] = None
    dispute_resolved_by: Optional[str] = None
    cancelled_by: Optional[str] = None
    cancellation_reason: Optional[str] = None
    platform_fee: Optional[int] = None
    payout_amount: Optional[int] = None
    payment_in_flight: bool = False
    allowed_events: list[str] = []
    version: int
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_booking(cls, booking: Booking, allowed_events: Optional[list] = None) -> "BookingResponse":
        data = booking.model_dump(mode="json", exclude={"transition_log", "pending_operation"})
        return cls(
            **data,
            payment_in_flight=booking.pending_operation is not None,
            allowed_events=[e.value for e in allowed_events or []],
        )


class ListResponse(BaseModel):
    items: list
    total: int
    limit: int
    offset: int
