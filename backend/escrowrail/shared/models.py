"""Domain models, enums and the booking status/payment state constraints shared across services."""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# === Enums ===

class BookingStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    AWAITING_FULFILLMENT = "awaiting_fulfillment"
    COMPLETED_AWAITING_CONFIRMATION = "completed_awaiting_confirmation"
    RELEASED = "released"
    CANCELLED = "cancelled"
    DISPUTED = "disputed"
    RESOLVED_REFUND = "resolved_refund"
    RESOLVED_RELEASE = "resolved_release"


class PaymentState(str, Enum):
    UNPAID = "unpaid"
    AUTHORIZATION_PENDING = "authorization_pending"
    HELD_IN_ESCROW = "held_in_escrow"
    CAPTURE_PENDING = "capture_pending"
    RELEASED = "released"
    REFUNDED = "refunded"
    REFUND_PENDING = "refund_pending"


class BookingEvent(str, Enum):
    AUTHORIZATION_REQUESTED = "authorization_requested"
    PAYMENT_AUTHORIZED = "payment_authorized"
    PAYMENT_FAILED = "payment_failed"
    FULFILLER_SUBMITS_PROOF = "fulfiller_submits_proof"
    REQUESTER_CONFIRMS = "requester_confirms"
    DEADLINE_ELAPSED = "deadline_elapsed"
    REQUESTER_DISPUTES = "requester_disputes"
    ADMIN_RESOLVES_REFUND = "admin_resolves_refund"
    ADMIN_RESOLVES_RELEASE = "admin_resolves_release"
    CANCEL = "cancel"


class PaymentAction(str, Enum):
    AUTHORIZE = "authorize"
    CAPTURE = "capture"
    REFUND = "refund"


class ActorRole(str, Enum):
    REQUESTER = "requester"
    FULFILLER = "fulfiller"
    ADMIN = "admin"
    SYSTEM = "system"


class DisputeResolution(str, Enum):
    REFUND = "refund"
    RELEASE = "release"


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


TERMINAL_STATUSES = frozenset({
    BookingStatus.RELEASED,
    BookingStatus.CANCELLED,
    BookingStatus.RESOLVED_REFUND,
    BookingStatus.RESOLVED_RELEASE,
})

RESOLVED_DISPUTE_STATUSES = frozenset({
    BookingStatus.RESOLVED_REFUND,
    BookingStatus.RESOLVED_RELEASE,
})

MIN_PROOF_ASSETS = 1
MAX_PROOF_ASSETS = 10

PENDING_PAYMENT_STATES = frozenset({
    PaymentState.AUTHORIZATION_PENDING,
    PaymentState.CAPTURE_PENDING,
    PaymentState.REFUND_PENDING,
})


# === Status / payment joint constraint ===

ALLOWED_PAYMENT_STATES: dict[BookingStatus, frozenset[PaymentState]] = {
    BookingStatus.PENDING: frozenset({PaymentState.UNPAID, PaymentState.AUTHORIZATION_PENDING}),
    BookingStatus.CONFIRMED: frozenset({PaymentState.HELD_IN_ESCROW, PaymentState.REFUND_PENDING}),
    BookingStatus.AWAITING_FULFILLMENT: frozenset({PaymentState.HELD_IN_ESCROW, PaymentState.REFUND_PENDING}),
    BookingStatus.COMPLETED_AWAITING_CONFIRMATION: frozenset({
        PaymentState.HELD_IN_ESCROW, PaymentState.CAPTURE_PENDING,
    }),
    BookingStatus.DISPUTED: frozenset({
        PaymentState.HELD_IN_ESCROW, PaymentState.CAPTURE_PENDING, PaymentState.REFUND_PENDING,
    }),
    BookingStatus.RELEASED: frozenset({PaymentState.RELEASED}),
    BookingStatus.RESOLVED_RELEASE: frozenset({PaymentState.RELEASED}),
    BookingStatus.RESOLVED_REFUND: frozenset({PaymentState.REFUNDED}),
    BookingStatus.CANCELLED: frozenset({PaymentState.UNPAID, PaymentState.REFUNDED}),
}


class InvariantViolationError(Exception):
    def __init__(self, booking_id: str, detail: str):
        self.booking_id = booking_id
        self.detail = detail
        super().__init__(f"Booking {booking_id} invariant violated: {detail}")


# === Domain Models ===

class Actor(BaseModel):
    id: str
    role: ActorRole


SYSTEM_ACTOR = Actor(id="system", role=ActorRole.SYSTEM)


class TransitionRecord(BaseModel):
    sequence: int
    from_status: BookingStatus
    to_status: BookingStatus
    from_payment_state: PaymentState
    to_payment_state: PaymentState
    cause: str
    actor_id: str
    actor_role: ActorRole
    timestamp: datetime = Field(default_factory=utcnow)
    idempotency_key: Optional[str] = None
    external_event_id: Optional[str] = None


class PendingOperation(BaseModel):
    action: PaymentAction
    event: BookingEvent
    target_status: BookingStatus
    target_payment_state: PaymentState
    idempotency_key: str
    actor: Actor
    external_event_id: Optional[str] = None
    restore_deadline: Optional[datetime] = None
    details: dict = Field(default_factory=dict)
    started_at: datetime = Field(default_factory=utcnow)


class Booking(BaseModel):
    id: str = Field(default_factory=lambda: f"bkg_{uuid.uuid4().hex[:12]}")
    service_id: str
    requester_id: str
    fulfiller_id: str
    amount: int = Field(gt=0)
    currency: str = "EUR"
    scheduled_date: datetime
    status: BookingStatus = BookingStatus.PENDING
    payment_state: PaymentState = PaymentState.UNPAID
    payment_intent_ref: Optional[str] = None
    authorization_intent_ref: Optional[str] = None
    authorization_attempts: int = 0
    last_payment_error: Optional[str] = None
    proof_assets: list[str] = Field(default_factory=list)
    confirmation_deadline: Optional[datetime] = None
    dispute_reason: Optional[str] = None
    dispute_opened_at: Optional[datetime] = None
    dispute_resolution: Optional[DisputeResolution] = None
    dispute_notes: Optional[str] = None
    dispute_resolved_at: Optional[datetime] = None
    dispute_resolved_by: Optional[str] = None
    cancelled_by: Optional[str] = None
    cancellation_reason: Optional[str] = None
    platform_fee: Optional[int] = None
    payout_amount: Optional[int] = None
    pending_operation: Optional[PendingOperation] = None
    transition_log: list[TransitionRecord] = Field(default_factory=list)
    version: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def has_applied(self, idempotency_key: str) -> bool:
        return any(r.idempotency_key == idempotency_key for r in self.transition_log)

    def append_transition(
        self,
        to_status: BookingStatus,
        to_payment_state: PaymentState,
        cause: str,
        actor: Actor,
        idempotency_key: Optional[str] = None,
        external_event_id: Optional[str] = None,
        at: Optional[datetime] = None,
    ) -> TransitionRecord:
        record = TransitionRecord(
            sequence=len(self.transition_log) + 1,
            from_status=self.status,
            to_status=to_status,
            from_payment_state=self.payment_state,
            to_payment_state=to_payment_state,
            cause=cause,
            actor_id=actor.id,
            actor_role=actor.role,
            timestamp=at or utcnow(),
            idempotency_key=idempotency_key,
            external_event_id=external_event_id,
        )
        self.transition_log.append(record)
        self.status = to_status
        self.payment_state = to_payment_state
        self.updated_at = record.timestamp
        return record

    def check_invariants(self) -> None:
        allowed = ALLOWED_PAYMENT_STATES[self.status]
        if self.payment_state not in allowed:
            raise InvariantViolationError(
                self.id, f"payment_state {self.payment_state.value} not allowed with status {self.status.value}"
            )
        if self.proof_assets and not MIN_PROOF_ASSETS <= len(self.proof_assets) <= MAX_PROOF_ASSETS:
            raise InvariantViolationError(
                self.id, f"proof_assets must hold {MIN_PROOF_ASSETS}-{MAX_PROOF_ASSETS} references"
            )
        if self.confirmation_deadline is not None and self.status != BookingStatus.COMPLETED_AWAITING_CONFIRMATION:
            raise InvariantViolationError(self.id, "confirmation_deadline set outside completed_awaiting_confirmation")
        if (self.pending_operation is None) == (self.payment_state in (
            PaymentState.CAPTURE_PENDING, PaymentState.REFUND_PENDING,
        )):
            raise InvariantViolationError(self.id, "pending_operation must accompany capture/refund pending states")


class Notification(BaseModel):
    id: str
    user_id: str
    title: str
    message: str
    type: str = "info"
    created_at: datetime = Field(default_factory=utcnow)
    related_booking_id: Optional[str] = None
    read: bool = False


class ProcessorEvent(BaseModel):
    id: str
    type: str
    related_intent_ref: Optional[str] = None
    payload: dict = Field(default_factory=dict)


class LedgerEntry(BaseModel):
    event_id: str = Field(default_factory=lambda: f"evt_{uuid.uuid4().hex[:12]}")
    type: str
    ref: str
    booking_id: str
    amount: int
    currency: str = "EUR"
    correlation_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)
    metadata: dict = Field(default_factory=dict)


class OutboxEvent(BaseModel):
    event_id: str = Field(default_factory=lambda: f"oevt_{uuid.uuid4().hex[:12]}")
    type: str
    payload: dict
    correlation_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
