"""Escrow payment orchestrator - authorization holds, capture and refund against the processor.

Every operation is idempotent: it is a no-op when the booking already sits in
the target payment state or the ledger already records the operation, and
the processor call carries an idempotency key derived from the booking id and
the target state. Capture and refund exclude each other on a given intent.
"""

import logging
import time
from typing import Callable, Optional, TypeVar

from pydantic import BaseModel

from escrowrail.shared.models import Booking, PaymentState
from escrowrail.shared.settings import EscrowPolicy
from escrowrail.api_gateway.services.ledger import CAPTURED, REFUNDED, LedgerService
from escrowrail.api_gateway.services.processor_client import (
    ProcessorDeclinedError,
    ProcessorUnavailableError,
)

logger = logging.getLogger("escrowrail.escrow")

T = TypeVar("T")

AUTHORIZED_STATUSES = {"requires_capture", "authorized"}


class PaymentFailedError(Exception):
    def __init__(self, booking_id: str, code: str, detail: str = ""):
        self.booking_id = booking_id
        self.code = code
        self.detail = detail
        super().__init__(f"Payment failed for booking {booking_id}: {code}" + (f" ({detail})" if detail else ""))


class PaymentTransientError(Exception):
    def __init__(self, booking_id: str, operation: str, detail: str):
        self.booking_id = booking_id
        self.operation = operation
        self.detail = detail
        super().__init__(f"{operation} for booking {booking_id} still failing after retries: {detail}")


class AuthorizationResult(BaseModel):
    intent_ref: str
    status: str

    @property
    def authorized(self) -> bool:
        return self.status in AUTHORIZED_STATUSES


class PayoutSplit(BaseModel):
    platform_fee: int
    payout_amount: int


class EscrowPaymentOrchestrator:

    def __init__(self, processor, ledger: LedgerService, policy: EscrowPolicy,
                 max_retries: int = 3, backoff_seconds: float = 0.5,
                 sleep: Callable[[float], None] = time.sleep):
        self.processor = processor
        self.ledger = ledger
        self.policy = policy
        self.max_retries = max(1, max_retries)
        self.backoff_seconds = backoff_seconds
        self._sleep = sleep

    def _call(self, booking_id: str, operation: str, fn: Callable[[], T]) -> T:
        last_error: Optional[Exception] = None
        for attempt in range(self.max_retries):
            try:
                return fn()
            except ProcessorDeclinedError as e:
                logger.info(f"{operation} declined for booking {booking_id}: {e.code}")
                raise PaymentFailedError(booking_id, e.code, e.detail)
            except ProcessorUnavailableError as e:
                last_error = e
                logger.warning(
                    f"{operation} for booking {booking_id} failed (attempt {attempt + 1}/{self.max_retries}): {e}"
                )
                if attempt < self.max_retries - 1:
                    self._sleep(self.backoff_seconds * (2 ** attempt))
        raise PaymentTransientError(booking_id, operation, str(last_error))

    def authorize(self, booking: Booking, payment_method_ref: str) -> AuthorizationResult:
        if booking.payment_state == PaymentState.HELD_IN_ESCROW and booking.payment_intent_ref:
            return AuthorizationResult(intent_ref=booking.payment_intent_ref, status="requires_capture")

        key = f"{booking.id}|{PaymentState.HELD_IN_ESCROW.value}|{booking.authorization_attempts}"
        try:
            result = self._call(booking.id, "authorize", lambda: self.processor.authorize(
                amount=booking.amount,
                currency=booking.currency,
                payment_method_ref=payment_method_ref,
                idempotency_key=key,
                metadata={"booking_id": booking.id},
            ))
        except PaymentTransientError as e:
            self.ledger.record("payment.authorization_failed", booking.id, booking.id,
                               booking.amount, booking.currency, code="processor_unavailable")
            raise PaymentFailedError(booking.id, "processor_unavailable", e.detail)
        except PaymentFailedError as e:
            self.ledger.record("payment.authorization_failed", booking.id, booking.id,
                               booking.amount, booking.currency, code=e.code)
            raise

        outcome = AuthorizationResult(intent_ref=result.intent_ref, status=result.status)
        event_type = "payment.authorized" if outcome.authorized else "payment.authorization_pending"
        self.ledger.record(event_type, outcome.intent_ref, booking.id, booking.amount, booking.currency,
                           status=outcome.status, attempt=booking.authorization_attempts)
        logger.info(f"Authorization for booking {booking.id} -> {outcome.intent_ref} ({outcome.status})")
        return outcome

    def capture(self, booking: Booking) -> PayoutSplit:
        fee = self.policy.platform_fee(booking.amount)
        split = PayoutSplit(platform_fee=fee, payout_amount=booking.amount - fee)
        if booking.payment_state == PaymentState.RELEASED:
            return split

        intent_ref = booking.payment_intent_ref
        if not intent_ref:
            raise PaymentFailedError(booking.id, "missing_intent", "no authorization hold to capture")

        settled = self.ledger.settled_operation(intent_ref)
        if settled == REFUNDED:
            raise PaymentFailedError(booking.id, "settlement_conflict", f"{intent_ref} was already refunded")
        if settled == CAPTURED:
            logger.info(f"Capture of {intent_ref} already recorded, not calling processor again")
            return split

        key = f"{booking.id}|{PaymentState.RELEASED.value}"
        self._call(booking.id, "capture", lambda: self.processor.capture(intent_ref, key))
        self.ledger.record(CAPTURED, intent_ref, booking.id, booking.amount, booking.currency)
        self.ledger.record("payout.released", intent_ref, booking.id, split.payout_amount, booking.currency,
                           platform_fee=split.platform_fee, fulfiller_id=booking.fulfiller_id)
        logger.info(
            f"Captured {intent_ref} for booking {booking.id}: payout {split.payout_amount}, fee {split.platform_fee}"
        )
        return split

    def refund(self, booking: Booking, amount: Optional[int] = None) -> None:
        if booking.payment_state == PaymentState.REFUNDED:
            return

        intent_ref = booking.payment_intent_ref
        if not intent_ref:
            logger.info(f"Booking {booking.id} has no authorization hold, nothing to refund")
            return

        settled = self.ledger.settled_operation(intent_ref)
        if settled == CAPTURED:
            raise PaymentFailedError(booking.id, "settlement_conflict", f"{intent_ref} was already captured")
        if settled == REFUNDED:
            logger.info(f"Refund of {intent_ref} already recorded, not calling processor again")
            return

        refund_amount = amount if amount is not None else booking.amount
        key = f"{booking.id}|{PaymentState.REFUNDED.value}"
        result = self._call(booking.id, "refund", lambda: self.processor.refund(intent_ref, refund_amount, key))
        self.ledger.record(REFUNDED, intent_ref, booking.id, refund_amount, booking.currency,
                           refund_ref=result.refund_ref)
        logger.info(f"Refunded {refund_amount} on {intent_ref} for booking {booking.id}")
