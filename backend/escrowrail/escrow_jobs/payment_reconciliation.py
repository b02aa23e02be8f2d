"""Payment reconciliation sweep - finishes or unwinds money movements left in flight."""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from pydantic import BaseModel, Field

from escrowrail.shared.correlation import correlation_scope
from escrowrail.shared.models import SYSTEM_ACTOR, BookingEvent, PaymentState, utcnow
from escrowrail.api_gateway.services.booking_store import (
    BookingLockedError,
    BookingNotFoundError,
    BookingStore,
    ConcurrentModificationError,
)
from escrowrail.api_gateway.services.escrow import PaymentFailedError, PaymentTransientError
from escrowrail.api_gateway.services.state_machine import (
    BookingStateMachine,
    DuplicateEventError,
    InvalidTransitionError,
)

logger = logging.getLogger("escrow-jobs.payment_reconciliation")

ABANDONED = "authorization_abandoned"


class ReconcileResult(BaseModel):
    resumed: list[str] = Field(default_factory=list)
    abandoned: list[str] = Field(default_factory=list)
    still_pending: list[str] = Field(default_factory=list)
    failed: list[str] = Field(default_factory=list)
    skipped: list[str] = Field(default_factory=list)


class PaymentReconciliationJob:

    def __init__(self, store: BookingStore, state_machine: BookingStateMachine,
                 stale_after_minutes: int = 30, clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.state_machine = state_machine
        self.stale_after = timedelta(minutes=stale_after_minutes)
        self._clock = clock

    def sweep(self, now: Optional[datetime] = None) -> ReconcileResult:
        now = now or self._clock()
        result = ReconcileResult()
        for booking in self.store.with_payment_in_flight():
            try:
                if booking.payment_state == PaymentState.AUTHORIZATION_PENDING:
                    self._expire_authorization(booking, now, result)
                else:
                    self.state_machine.resume(booking.id)
                    result.resumed.append(booking.id)
                    logger.info(f"Resumed {booking.payment_state.value} for booking {booking.id}")
            except PaymentTransientError as e:
                logger.warning(f"Booking {booking.id} still waiting on the processor: {e}")
                result.still_pending.append(booking.id)
            except PaymentFailedError as e:
                logger.error(f"Booking {booking.id} payment failed permanently during reconciliation: {e.code}")
                result.failed.append(booking.id)
            except (DuplicateEventError, InvalidTransitionError, BookingNotFoundError,
                    BookingLockedError, ConcurrentModificationError) as e:
                logger.info(f"Skipping booking {booking.id}: {e}")
                result.skipped.append(booking.id)
        return result

    def _expire_authorization(self, booking, now: datetime, result: ReconcileResult) -> None:
        started = booking.updated_at
        if started.tzinfo is None:
            started = started.replace(tzinfo=timezone.utc)
        if now - started < self.stale_after:
            return
        self.state_machine.transition(
            booking.id, BookingEvent.PAYMENT_FAILED, SYSTEM_ACTOR,
            f"{booking.id}|abandon|{booking.authorization_attempts}",
            failure_code=ABANDONED,
        )
        result.abandoned.append(booking.id)
        logger.warning(f"Authorization for booking {booking.id} abandoned after {self.stale_after}")

    async def run_loop(self, interval: int = 120):
        logger.info(f"Payment reconciliation started (interval={interval}s)")
        while True:
            try:
                with correlation_scope("reconcile"):
                    await asyncio.to_thread(self.sweep)
            except Exception as e:
                logger.error(f"Payment reconciliation error: {e}")
            await asyncio.sleep(interval)
