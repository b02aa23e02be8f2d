"""Booking state machine - the single entry point for every booking status change.

User actions, processor webhooks, scheduler ticks and admin resolutions all
call ``BookingStateMachine.transition``. A transition that moves money is
written in two steps: a provisional row (``capture_pending`` /
``refund_pending`` plus the pending operation) before the processor call,
then the final status, payment state and transition record in one atomic
write after it. A crash or an exhausted retry in between leaves a row the
reconciliation sweep can resume.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from escrowrail.shared.models import (
    MAX_PROOF_ASSETS,
    MIN_PROOF_ASSETS,
    Actor,
    ActorRole,
    Booking,
    BookingEvent,
    BookingStatus,
    DisputeResolution,
    PaymentAction,
    PaymentState,
    PendingOperation,
    utcnow,
)
from escrowrail.shared.settings import EscrowPolicy
from escrowrail.api_gateway.services.booking_store import BookingStore
from escrowrail.api_gateway.services.escrow import EscrowPaymentOrchestrator, PaymentFailedError, PayoutSplit

logger = logging.getLogger("escrowrail.state_machine")


class InvalidTransitionError(Exception):
    def __init__(self, booking_id: str, status: str, event: str, detail: str = ""):
        self.booking_id = booking_id
        self.status = status
        self.event = event
        self.detail = detail
        message = f"Invalid booking transition: {event} from {status}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)


class TransitionGuardError(InvalidTransitionError):
    """The event is legal in this state but its arguments or timing are not."""


class DuplicateEventError(Exception):
    def __init__(self, booking: Booking, idempotency_key: str):
        self.booking = booking
        self.idempotency_key = idempotency_key
        super().__init__(f"Booking {booking.id} already applied {idempotency_key}")


@dataclass(frozen=True)
class TransitionRule:
    source_payment_states: frozenset
    target_status: BookingStatus
    target_payment_state: PaymentState
    action: Optional[PaymentAction] = None


_HELD = frozenset({PaymentState.HELD_IN_ESCROW})

TRANSITION_RULES: dict[tuple[BookingStatus, BookingEvent], TransitionRule] = {
    (BookingStatus.PENDING, BookingEvent.AUTHORIZATION_REQUESTED): TransitionRule(
        frozenset({PaymentState.UNPAID}),
        BookingStatus.CONFIRMED, PaymentState.HELD_IN_ESCROW, PaymentAction.AUTHORIZE,
    ),
    (BookingStatus.PENDING, BookingEvent.PAYMENT_AUTHORIZED): TransitionRule(
        frozenset({PaymentState.UNPAID, PaymentState.AUTHORIZATION_PENDING}),
        BookingStatus.CONFIRMED, PaymentState.HELD_IN_ESCROW,
    ),
    (BookingStatus.PENDING, BookingEvent.PAYMENT_FAILED): TransitionRule(
        frozenset({PaymentState.AUTHORIZATION_PENDING}),
        BookingStatus.PENDING, PaymentState.UNPAID,
    ),
    (BookingStatus.CONFIRMED, BookingEvent.FULFILLER_SUBMITS_PROOF): TransitionRule(
        _HELD, BookingStatus.COMPLETED_AWAITING_CONFIRMATION, PaymentState.HELD_IN_ESCROW,
    ),
    (BookingStatus.AWAITING_FULFILLMENT, BookingEvent.FULFILLER_SUBMITS_PROOF): TransitionRule(
        _HELD, BookingStatus.COMPLETED_AWAITING_CONFIRMATION, PaymentState.HELD_IN_ESCROW,
    ),
    (BookingStatus.COMPLETED_AWAITING_CONFIRMATION, BookingEvent.REQUESTER_CONFIRMS): TransitionRule(
        _HELD, BookingStatus.RELEASED, PaymentState.RELEASED, PaymentAction.CAPTURE,
    ),
    (BookingStatus.COMPLETED_AWAITING_CONFIRMATION, BookingEvent.DEADLINE_ELAPSED): TransitionRule(
        _HELD, BookingStatus.RELEASED, PaymentState.RELEASED, PaymentAction.CAPTURE,
    ),
    (BookingStatus.COMPLETED_AWAITING_CONFIRMATION, BookingEvent.REQUESTER_DISPUTES): TransitionRule(
        _HELD, BookingStatus.DISPUTED, PaymentState.HELD_IN_ESCROW,
    ),
    (BookingStatus.DISPUTED, BookingEvent.ADMIN_RESOLVES_REFUND): TransitionRule(
        _HELD, BookingStatus.RESOLVED_REFUND, PaymentState.REFUNDED, PaymentAction.REFUND,
    ),
    (BookingStatus.DISPUTED, BookingEvent.ADMIN_RESOLVES_RELEASE): TransitionRule(
        _HELD, BookingStatus.RESOLVED_RELEASE, PaymentState.RELEASED, PaymentAction.CAPTURE,
    ),
    (BookingStatus.PENDING, BookingEvent.CANCEL): TransitionRule(
        frozenset({PaymentState.UNPAID}), BookingStatus.CANCELLED, PaymentState.UNPAID,
    ),
    (BookingStatus.CONFIRMED, BookingEvent.CANCEL): TransitionRule(
        _HELD, BookingStatus.CANCELLED, PaymentState.REFUNDED, PaymentAction.REFUND,
    ),
    (BookingStatus.AWAITING_FULFILLMENT, BookingEvent.CANCEL): TransitionRule(
        _HELD, BookingStatus.CANCELLED, PaymentState.REFUNDED, PaymentAction.REFUND,
    ),
}

# Raised by processor webhooks and scheduled jobs, never offered to API clients.
SYSTEM_EVENTS = frozenset({
    BookingEvent.PAYMENT_AUTHORIZED,
    BookingEvent.PAYMENT_FAILED,
    BookingEvent.DEADLINE_ELAPSED,
})

_PENDING_STATE_FOR = {
    PaymentAction.CAPTURE: PaymentState.CAPTURE_PENDING,
    PaymentAction.REFUND: PaymentState.REFUND_PENDING,
}


def _aware(dt: datetime) -> datetime:
    return dt if dt.tzinfo is not None else dt.replace(tzinfo=timezone.utc)


class BookingStateMachine:

    def __init__(self, store: BookingStore, escrow: EscrowPaymentOrchestrator,
                 policy: EscrowPolicy, notifier=None,
                 clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.escrow = escrow
        self.policy = policy
        self.notifier = notifier
        self._clock = clock

    def transition(self, booking_id: str, event, actor: Actor, idempotency_key: str, *,
                   external_event_id: Optional[str] = None, **details) -> Booking:
        event = BookingEvent(event)
        with self.store.locked(booking_id):
            booking = self.store.get(booking_id)
            if booking.has_applied(idempotency_key):
                raise DuplicateEventError(booking, idempotency_key)

            pending = booking.pending_operation
            if pending is not None:
                if pending.idempotency_key == idempotency_key:
                    logger.info(f"Resuming {pending.action.value} for booking {booking_id} on repeated request")
                    return self._complete_pending(booking)
                raise InvalidTransitionError(
                    booking_id, booking.status.value, event.value,
                    f"{pending.action.value} already in flight",
                )

            rule = self._rule_for(booking, event)
            self._check_guards(booking, event, actor, details)

            if rule.action is PaymentAction.AUTHORIZE:
                return self._authorize(booking, actor, idempotency_key, details)
            if rule.action is None:
                return self._apply(booking, rule, event, actor, idempotency_key, external_event_id, details)
            return self._move_money(booking, rule, event, actor, idempotency_key, external_event_id, details)

    def resume(self, booking_id: str) -> Booking:
        """Re-drive a capture/refund left pending by a crash or exhausted retries."""
        with self.store.locked(booking_id):
            booking = self.store.get(booking_id)
            if booking.pending_operation is None:
                return booking
            return self._complete_pending(booking)

    def allowed_events(self, booking: Booking, include_system: bool = False) -> list[BookingEvent]:
        if booking.pending_operation is not None:
            return []
        return [
            event for (status, event), rule in TRANSITION_RULES.items()
            if status == booking.status and booking.payment_state in rule.source_payment_states
            and (include_system or event not in SYSTEM_EVENTS)
        ]

    # --- validation ---

    def _rule_for(self, booking: Booking, event: BookingEvent) -> TransitionRule:
        rule = TRANSITION_RULES.get((booking.status, event))
        if rule is None or booking.payment_state not in rule.source_payment_states:
            raise InvalidTransitionError(
                booking.id, f"{booking.status.value}/{booking.payment_state.value}", event.value,
            )
        return rule

    def _check_guards(self, booking: Booking, event: BookingEvent, actor: Actor, details: dict) -> None:
        def reject(detail: str):
            raise TransitionGuardError(booking.id, booking.status.value, event.value, detail)

        if event is BookingEvent.AUTHORIZATION_REQUESTED:
            if not details.get("payment_method_ref"):
                reject("payment_method_ref is required")

        elif event in (BookingEvent.PAYMENT_AUTHORIZED, BookingEvent.PAYMENT_FAILED):
            # Only the latest authorization attempt may settle a pending booking.
            intent_ref = details.get("intent_ref")
            expected = booking.authorization_intent_ref
            if intent_ref and expected and intent_ref != expected:
                reject(f"intent {intent_ref} is not the current authorization {expected}")
            if event is BookingEvent.PAYMENT_AUTHORIZED and not (intent_ref or expected):
                reject("no authorization intent to hold funds on")

        elif event is BookingEvent.FULFILLER_SUBMITS_PROOF:
            if booking.proof_assets:
                reject("proof of completion was already submitted")
            assets = details.get("proof_assets") or []
            if not MIN_PROOF_ASSETS <= len(assets) <= MAX_PROOF_ASSETS:
                reject(f"between {MIN_PROOF_ASSETS} and {MAX_PROOF_ASSETS} proof assets required")
            if any(not isinstance(a, str) or not a.strip() for a in assets):
                reject("proof asset references must be non-empty")

        elif event is BookingEvent.DEADLINE_ELAPSED:
            as_of = details.pop("as_of", None) or self._clock()
            if booking.confirmation_deadline is None or _aware(booking.confirmation_deadline) > as_of:
                reject("confirmation deadline has not elapsed")

        elif event is BookingEvent.REQUESTER_DISPUTES:
            if not (details.get("reason") or "").strip():
                reject("a dispute reason is required")

        elif event is BookingEvent.CANCEL:
            if actor.role == ActorRole.REQUESTER:
                cutoff = timedelta(hours=self.policy.cancellation_cutoff_hours)
                if _aware(booking.scheduled_date) - self._clock() < cutoff:
                    reject(
                        f"requesters may cancel only {self.policy.cancellation_cutoff_hours}h "
                        f"before the scheduled date"
                    )

    # --- transitions ---

    def _apply(self, booking: Booking, rule: TransitionRule, event: BookingEvent, actor: Actor,
               idempotency_key: str, external_event_id: Optional[str], details: dict) -> Booking:
        now = self._clock()
        booking.append_transition(
            rule.target_status, rule.target_payment_state, event.value, actor,
            idempotency_key=idempotency_key, external_event_id=external_event_id, at=now,
        )
        self._apply_details(booking, event, actor, details, now)
        saved = self.store.save(booking)
        logger.info(f"Booking {booking.id}: {event.value} -> {saved.status.value}/{saved.payment_state.value}")
        self._notify(saved)
        return saved

    def _authorize(self, booking: Booking, actor: Actor, idempotency_key: str, details: dict) -> Booking:
        booking.authorization_attempts += 1
        booking.append_transition(
            BookingStatus.PENDING, PaymentState.AUTHORIZATION_PENDING,
            BookingEvent.AUTHORIZATION_REQUESTED.value, actor,
            idempotency_key=idempotency_key, at=self._clock(),
        )
        booking = self.store.save(booking)

        try:
            result = self.escrow.authorize(booking, details["payment_method_ref"])
        except PaymentFailedError as e:
            booking.last_payment_error = e.code
            booking.append_transition(
                BookingStatus.PENDING, PaymentState.UNPAID, BookingEvent.PAYMENT_FAILED.value, actor,
                at=self._clock(),
            )
            saved = self.store.save(booking)
            self._notify(saved)
            raise

        self.store.index_intent(result.intent_ref, booking.id)
        booking.authorization_intent_ref = result.intent_ref
        if not result.authorized:
            logger.info(
                f"Authorization for booking {booking.id} is {result.status}, waiting for processor confirmation"
            )
            return self.store.save(booking)

        now = self._clock()
        booking.append_transition(
            BookingStatus.CONFIRMED, PaymentState.HELD_IN_ESCROW, BookingEvent.PAYMENT_AUTHORIZED.value, actor,
            at=now,
        )
        self._apply_details(booking, BookingEvent.PAYMENT_AUTHORIZED, actor, {"intent_ref": result.intent_ref}, now)
        saved = self.store.save(booking)
        logger.info(f"Booking {booking.id} confirmed, {booking.amount} held on {result.intent_ref}")
        self._notify(saved)
        return saved

    def _move_money(self, booking: Booking, rule: TransitionRule, event: BookingEvent, actor: Actor,
                    idempotency_key: str, external_event_id: Optional[str], details: dict) -> Booking:
        booking.pending_operation = PendingOperation(
            action=rule.action,
            event=event,
            target_status=rule.target_status,
            target_payment_state=rule.target_payment_state,
            idempotency_key=idempotency_key,
            actor=actor,
            external_event_id=external_event_id,
            restore_deadline=booking.confirmation_deadline,
            details=details,
            started_at=self._clock(),
        )
        booking.confirmation_deadline = None
        booking.append_transition(
            booking.status, _PENDING_STATE_FOR[rule.action], f"{rule.action.value}_requested", actor,
            at=self._clock(),
        )
        booking = self.store.save(booking)
        return self._complete_pending(booking)

    def _complete_pending(self, booking: Booking) -> Booking:
        op = booking.pending_operation
        details = dict(op.details)
        try:
            if op.action is PaymentAction.CAPTURE:
                split: PayoutSplit = self.escrow.capture(booking)
                details["platform_fee"] = split.platform_fee
                details["payout_amount"] = split.payout_amount
            else:
                self.escrow.refund(booking)
        except PaymentFailedError as e:
            self._abandon_pending(booking, e)
            raise

        now = self._clock()
        booking.pending_operation = None
        booking.append_transition(
            op.target_status, op.target_payment_state, op.event.value, op.actor,
            idempotency_key=op.idempotency_key, external_event_id=op.external_event_id, at=now,
        )
        self._apply_details(booking, op.event, op.actor, details, now)
        saved = self.store.save(booking)
        logger.info(f"Booking {booking.id}: {op.event.value} -> {saved.status.value}/{saved.payment_state.value}")
        self._notify(saved)
        return saved

    def _abandon_pending(self, booking: Booking, error: PaymentFailedError) -> None:
        op = booking.pending_operation
        logger.error(f"{op.action.value} for booking {booking.id} failed permanently: {error.code}")
        booking.pending_operation = None
        booking.last_payment_error = error.code
        booking.append_transition(
            booking.status, PaymentState.HELD_IN_ESCROW, f"{op.action.value}_failed", op.actor,
            at=self._clock(),
        )
        if booking.status == BookingStatus.COMPLETED_AWAITING_CONFIRMATION:
            booking.confirmation_deadline = op.restore_deadline
        self.store.save(booking)

    def _apply_details(self, booking: Booking, event: BookingEvent, actor: Actor,
                       details: dict, now: datetime) -> None:
        if event is BookingEvent.PAYMENT_AUTHORIZED:
            intent_ref = details.get("intent_ref") or booking.authorization_intent_ref
            booking.payment_intent_ref = intent_ref
            booking.authorization_intent_ref = intent_ref
            booking.last_payment_error = None

        elif event is BookingEvent.PAYMENT_FAILED:
            booking.last_payment_error = details.get("failure_code") or "payment_failed"

        elif event is BookingEvent.FULFILLER_SUBMITS_PROOF:
            booking.proof_assets = [a.strip() for a in details["proof_assets"]]
            booking.confirmation_deadline = now + timedelta(hours=self.policy.confirmation_window_hours)

        elif event in (BookingEvent.REQUESTER_CONFIRMS, BookingEvent.DEADLINE_ELAPSED):
            booking.confirmation_deadline = None
            booking.platform_fee = details.get("platform_fee")
            booking.payout_amount = details.get("payout_amount")

        elif event is BookingEvent.REQUESTER_DISPUTES:
            booking.confirmation_deadline = None
            booking.dispute_reason = details["reason"].strip()
            booking.dispute_opened_at = now

        elif event in (BookingEvent.ADMIN_RESOLVES_REFUND, BookingEvent.ADMIN_RESOLVES_RELEASE):
            booking.dispute_resolution = (
                DisputeResolution.REFUND if event is BookingEvent.ADMIN_RESOLVES_REFUND
                else DisputeResolution.RELEASE
            )
            booking.dispute_notes = details.get("notes")
            booking.dispute_resolved_at = now
            booking.dispute_resolved_by = actor.id
            if event is BookingEvent.ADMIN_RESOLVES_RELEASE:
                booking.platform_fee = details.get("platform_fee")
                booking.payout_amount = details.get("payout_amount")

        elif event is BookingEvent.CANCEL:
            booking.cancelled_by = actor.id
            booking.cancellation_reason = details.get("reason")

    def _notify(self, booking: Booking) -> None:
        if self.notifier is None or not booking.transition_log:
            return
        try:
            self.notifier.emit(booking, booking.transition_log[-1])
        except Exception:
            logger.exception(f"Notification emission failed for booking {booking.id}, transition kept")
