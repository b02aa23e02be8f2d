from datetime import datetime, timedelta, timezone

import pytest

from escrowrail.shared.models import Actor, ActorRole, Booking, BookingEvent
from escrowrail.shared.settings import EscrowPolicy, Settings
from escrowrail.api_gateway.services.container import Services
from escrowrail.api_gateway.services.processor_client import (
    ProcessorDeclinedError,
    ProcessorResult,
    ProcessorUnavailableError,
)

START = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


class Clock:
    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeProcessor:
    """In-memory processor that honours idempotency keys and records every call that reaches it."""

    def __init__(self):
        self.calls = []
        self.authorize_status = "requires_capture"
        self.decline_code = None
        self.unavailable = {"authorize": 0, "capture": 0, "refund": 0}
        self.capture_decline_code = None
        self._results = {}
        self._counter = 0

    def _enter(self, op: str, key: str):
        self.calls.append((op, key))
        if self.unavailable[op] > 0:
            self.unavailable[op] -= 1
            raise ProcessorUnavailableError(f"{op} timed out")
        return self._results.get(key)

    def count(self, op: str) -> int:
        return len(self.effective(op))

    def effective(self, op: str) -> set:
        """Distinct idempotency keys that produced a successful operation."""
        return {k for k, r in self._results.items() if r[0] == op}

    def authorize(self, amount, currency, payment_method_ref, idempotency_key, metadata=None):
        cached = self._enter("authorize", idempotency_key)
        if cached:
            return cached[1]
        if self.decline_code:
            raise ProcessorDeclinedError(self.decline_code)
        self._counter += 1
        result = ProcessorResult(intent_ref=f"pi_test_{self._counter}", status=self.authorize_status)
        self._results[idempotency_key] = ("authorize", result)
        return result

    def capture(self, intent_ref, idempotency_key):
        cached = self._enter("capture", idempotency_key)
        if cached:
            return cached[1]
        if self.capture_decline_code:
            raise ProcessorDeclinedError(self.capture_decline_code)
        result = ProcessorResult(intent_ref=intent_ref, status="captured")
        self._results[idempotency_key] = ("capture", result)
        return result

    def refund(self, intent_ref, amount, idempotency_key):
        cached = self._enter("refund", idempotency_key)
        if cached:
            return cached[1]
        result = ProcessorResult(intent_ref=intent_ref, status="refunded", refund_ref=f"re_{intent_ref}")
        self._results[idempotency_key] = ("refund", result)
        return result

    def health(self):
        return {"processor_id": "fake", "circuit_state": "closed"}


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def processor():
    return FakeProcessor()


@pytest.fixture
def services(tmp_path, processor, clock):
    settings = Settings(data_dir=str(tmp_path), booking_lock_timeout_seconds=5)
    return Services(settings, EscrowPolicy(), processor=processor, clock=clock, sleep=lambda s: None)


@pytest.fixture
def requester():
    return Actor(id="usr_requester", role=ActorRole.REQUESTER)


@pytest.fixture
def fulfiller():
    return Actor(id="usr_fulfiller", role=ActorRole.FULFILLER)


@pytest.fixture
def admin():
    return Actor(id="usr_admin", role=ActorRole.ADMIN)


def make_booking(services, amount=5000, days_ahead=7) -> Booking:
    now = services.clock()
    return services.store.create(Booking(
        service_id="svc_dog_walk",
        requester_id="usr_requester",
        fulfiller_id="usr_fulfiller",
        amount=amount,
        scheduled_date=now + timedelta(days=days_ahead),
        created_at=now,
        updated_at=now,
    ))


def authorize(services, booking_id, requester, method="pm_card_visa", attempt=1) -> Booking:
    return services.state_machine.transition(
        booking_id, BookingEvent.AUTHORIZATION_REQUESTED, requester, f"{booking_id}|authorize|{attempt}",
        payment_method_ref=method,
    )


def complete(services, booking_id, fulfiller, assets=3) -> Booking:
    return services.state_machine.transition(
        booking_id, BookingEvent.FULFILLER_SUBMITS_PROOF, fulfiller, f"{booking_id}|proof",
        proof_assets=[f"https://cdn.example.com/proof/{booking_id}/{i}.jpg" for i in range(assets)],
    )


@pytest.fixture
def held_booking(services, requester):
    booking = make_booking(services)
    return authorize(services, booking.id, requester)


@pytest.fixture
def completed_booking(services, held_booking, fulfiller):
    return complete(services, held_booking.id, fulfiller)
