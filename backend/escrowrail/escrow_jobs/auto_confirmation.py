"""Auto-confirmation sweep - releases escrow for bookings whose confirmation window has elapsed.

One periodic query replaces per-booking timers. A missed tick only delays a
release; concurrent sweeps in several processes collapse onto the same
``<booking_id>|autoconfirm`` idempotency key.
"""

import asyncio
import logging
from datetime import datetime
from typing import Callable, Optional

from pydantic import BaseModel, Field

from escrowrail.shared.correlation import correlation_scope
from escrowrail.shared.models import SYSTEM_ACTOR, BookingEvent, utcnow
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

logger = logging.getLogger("escrow-jobs.auto_confirmation")


class SweepResult(BaseModel):
    released: list[str] = Field(default_factory=list)
    skipped: list[str] = Field(default_factory=list)
    failed: list[str] = Field(default_factory=list)


class AutoConfirmationScheduler:

    def __init__(self, store: BookingStore, state_machine: BookingStateMachine,
                 clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.state_machine = state_machine
        self._clock = clock

    def sweep(self, now: Optional[datetime] = None) -> SweepResult:
        now = now or self._clock()
        result = SweepResult()
        due = self.store.due_for_auto_confirmation(now)
        if due:
            logger.info(f"{len(due)} booking(s) past their confirmation deadline")

        for booking in due:
            try:
                self.state_machine.transition(
                    booking.id, BookingEvent.DEADLINE_ELAPSED, SYSTEM_ACTOR, f"{booking.id}|autoconfirm",
                    as_of=now,
                )
                result.released.append(booking.id)
                logger.info(f"Auto-confirmed booking {booking.id}")
            except (DuplicateEventError, InvalidTransitionError, BookingNotFoundError) as e:
                # Confirmed, disputed or swept elsewhere since the query ran.
                logger.info(f"Skipping booking {booking.id}: {e}")
                result.skipped.append(booking.id)
            except (BookingLockedError, ConcurrentModificationError) as e:
                logger.info(f"Booking {booking.id} busy, next sweep will retry: {e}")
                result.skipped.append(booking.id)
            except (PaymentFailedError, PaymentTransientError) as e:
                logger.error(f"Auto-confirmation of booking {booking.id} failed: {e}")
                result.failed.append(booking.id)
        return result

    async def run_loop(self, interval: int = 300):
        logger.info(f"Auto-confirmation scheduler started (interval={interval}s)")
        while True:
            try:
                with correlation_scope("autoconfirm"):
                    result = await asyncio.to_thread(self.sweep)
                if result.released or result.failed:
                    logger.info(
                        f"Sweep done: {len(result.released)} released, {len(result.skipped)} skipped, "
                        f"{len(result.failed)} failed"
                    )
            except Exception as e:
                logger.error(f"Auto-confirmation sweep error: {e}")
            await asyncio.sleep(interval)
