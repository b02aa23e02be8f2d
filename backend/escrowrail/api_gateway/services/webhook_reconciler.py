"""Webhook reconciler - folds processor events into booking state under at-least-once delivery."""

import logging
import os
from datetime import datetime, timedelta
from typing import Callable, Optional

from filelock import Timeout
from pydantic import BaseModel

from escrowrail.shared.file_store import FileStore
from escrowrail.shared.models import SYSTEM_ACTOR, BookingEvent, ProcessorEvent, utcnow
from escrowrail.api_gateway.services.booking_store import (
    BookingLockedError,
    BookingNotFoundError,
    BookingStore,
    ConcurrentModificationError,
)
from escrowrail.api_gateway.services.escrow import PaymentFailedError, PaymentTransientError
from escrowrail.api_gateway.services.ledger import LedgerService
from escrowrail.api_gateway.services.state_machine import (
    BookingStateMachine,
    DuplicateEventError,
    InvalidTransitionError,
    TransitionGuardError,
)

logger = logging.getLogger("escrowrail.webhooks")

ACK = "ack"
RETRY = "retry"

EVENT_MAP = {
    "authorization_succeeded": BookingEvent.PAYMENT_AUTHORIZED,
    "authorization_failed": BookingEvent.PAYMENT_FAILED,
}

# Money already moved by our own call; the webhook only confirms it.
CONFIRMATION_ONLY = {"capture_succeeded", "refund_succeeded"}


class WebhookOutcome(BaseModel):
    status: str
    detail: str = ""
    booking_id: Optional[str] = None

    @property
    def acked(self) -> bool:
        return self.status == ACK


class WebhookReconciler:

    def __init__(self, store: BookingStore, state_machine: BookingStateMachine, ledger: LedgerService,
                 data_dir: str, retention_days: int = 30, lock_timeout: float = 30.0, clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.state_machine = state_machine
        self.ledger = ledger
        self.processed_path = os.path.join(data_dir, "webhooks", "processed.json")
        self.retention = timedelta(days=retention_days)
        self.lock_timeout = lock_timeout
        self._clock = clock

    def is_processed(self, event_id: str) -> bool:
        return event_id in FileStore.read_json(self.processed_path, default={})

    def _mark_processed(self, event: ProcessorEvent, outcome: WebhookOutcome) -> None:
        now = self._clock()
        cutoff = now - self.retention

        def _record(processed: dict) -> None:
            for event_id in [k for k, v in processed.items()
                             if datetime.fromisoformat(v["processed_at"]) < cutoff]:
                del processed[event_id]
            processed[event.id] = {
                "processed_at": now.isoformat(),
                "type": event.type,
                "booking_id": outcome.booking_id,
                "detail": outcome.detail,
            }

        FileStore.update_json(self.processed_path, _record)

    def recent(self, limit: int = 100) -> list[dict]:
        processed = FileStore.read_json(self.processed_path, default={})
        rows = [{"event_id": k, **v} for k, v in processed.items()]
        rows.sort(key=lambda r: r["processed_at"], reverse=True)
        return rows[:limit]

    def _locate(self, event: ProcessorEvent) -> Optional[str]:
        if event.related_intent_ref:
            booking_id = self.store.find_by_intent(event.related_intent_ref)
            if booking_id:
                return booking_id
        return event.payload.get("booking_id")

    def handle(self, event: ProcessorEvent) -> WebhookOutcome:
        """Apply one delivery. The dedup check, the transition and the dedup mark share one critical
        section, so concurrent redeliveries of an event are applied once."""
        lock = FileStore.lock(self.processed_path)
        try:
            lock.acquire(timeout=self.lock_timeout)
        except Timeout:
            logger.warning(f"Webhook {event.id} arrived while the dedup ledger was busy, asking for redelivery")
            return WebhookOutcome(status=RETRY, detail="busy")
        try:
            return self._handle(event)
        finally:
            lock.release()

    def _handle(self, event: ProcessorEvent) -> WebhookOutcome:
        if self.is_processed(event.id):
            logger.info(f"Duplicate webhook {event.id}, already processed")
            return WebhookOutcome(status=ACK, detail="duplicate")

        if event.type not in EVENT_MAP and event.type not in CONFIRMATION_ONLY:
            logger.info(f"Ignoring unmapped webhook {event.id} of type {event.type}")
            outcome = WebhookOutcome(status=ACK, detail="unmapped")
            self._mark_processed(event, outcome)
            return outcome

        booking_id = self._locate(event)
        if not booking_id:
            logger.warning(f"Webhook {event.id} ({event.type}) references no known booking, asking for redelivery")
            return WebhookOutcome(status=RETRY, detail="unknown booking")
        try:
            booking = self.store.get(booking_id)
        except BookingNotFoundError:
            logger.warning(f"Webhook {event.id} references missing booking {booking_id}, asking for redelivery")
            return WebhookOutcome(status=RETRY, detail="unknown booking", booking_id=booking_id)
        except BookingLockedError:
            return WebhookOutcome(status=RETRY, detail="booking busy", booking_id=booking_id)

        if event.type in CONFIRMATION_ONLY:
            outcome = WebhookOutcome(status=ACK, detail="confirmed", booking_id=booking_id)
        else:
            outcome = self._apply(event, booking_id)
        if outcome.acked:
            self.ledger.record(
                f"webhook.{event.type}",
                event.related_intent_ref or booking_id,
                booking_id,
                event.payload.get("amount", booking.amount),
                booking.currency,
                event_id=event.id,
                outcome=outcome.detail,
            )
            self._mark_processed(event, outcome)
        return outcome

    def _apply(self, event: ProcessorEvent, booking_id: str) -> WebhookOutcome:
        details = {"intent_ref": event.related_intent_ref}
        if event.type == "authorization_failed":
            details["failure_code"] = event.payload.get("failure_code")
        try:
            booking = self.state_machine.transition(
                booking_id, EVENT_MAP[event.type], SYSTEM_ACTOR, event.id,
                external_event_id=event.id, **details,
            )
        except DuplicateEventError:
            return WebhookOutcome(status=ACK, detail="duplicate", booking_id=booking_id)
        except TransitionGuardError as e:
            logger.warning(f"Webhook {event.id} does not apply to booking {booking_id}: {e.detail}")
            return WebhookOutcome(status=ACK, detail="mismatch", booking_id=booking_id)
        except InvalidTransitionError as e:
            logger.info(f"Webhook {event.id} already reflected in booking {booking_id} ({e.status})")
            return WebhookOutcome(status=ACK, detail="already applied", booking_id=booking_id)
        except (BookingLockedError, ConcurrentModificationError, PaymentTransientError) as e:
            logger.warning(f"Webhook {event.id} for booking {booking_id} deferred: {e}")
            return WebhookOutcome(status=RETRY, detail="busy", booking_id=booking_id)
        except PaymentFailedError as e:
            logger.error(f"Webhook {event.id} hit a payment failure on booking {booking_id}: {e.code}")
            return WebhookOutcome(status=ACK, detail=e.code, booking_id=booking_id)

        if event.related_intent_ref:
            self.store.index_intent(event.related_intent_ref, booking_id)
        logger.info(f"Webhook {event.id} applied: booking {booking_id} is {booking.status.value}")
        return WebhookOutcome(status=ACK, detail="applied", booking_id=booking_id)
