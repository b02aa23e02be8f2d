import pytest

from conftest import make_booking
from escrowrail.shared.models import BookingStatus, DisputeResolution, PaymentState
from escrowrail.api_gateway.services.disputes import DisputeNotFoundError, DisputeValidationError
from escrowrail.api_gateway.services.state_machine import InvalidTransitionError


@pytest.fixture
def disputed_booking(services, completed_booking, requester):
    return services.disputes.open(completed_booking.id, requester, "Walker never showed up")


def test_open_is_idempotent(services, disputed_booking, requester):
    again = services.disputes.open(disputed_booking.id, requester, "Walker never showed up")

    assert again.status == BookingStatus.DISPUTED
    assert again.version == disputed_booking.version
    causes = [r.cause for r in again.transition_log]
    assert causes.count("requester_disputes") == 1


def test_resolve_refund(services, disputed_booking, admin, processor):
    booking = services.disputes.resolve(disputed_booking.id, "refund", admin.id, "No proof of the walk")

    assert booking.status == BookingStatus.RESOLVED_REFUND
    assert booking.payment_state == PaymentState.REFUNDED
    assert booking.dispute_resolution == DisputeResolution.REFUND
    assert booking.dispute_notes == "No proof of the walk"
    assert booking.dispute_resolved_by == admin.id
    assert processor.count("refund") == 1
    assert processor.count("capture") == 0


def test_resolve_release_splits_payout(services, disputed_booking, admin, processor):
    booking = services.disputes.resolve(disputed_booking.id, "release", admin.id, "GPS trace confirms the walk")

    assert booking.status == BookingStatus.RESOLVED_RELEASE
    assert booking.payment_state == PaymentState.RELEASED
    assert booking.payout_amount == 4250
    assert processor.count("capture") == 1


@pytest.mark.parametrize("notes", ["", "   ", "ok", "  abc  "])
def test_resolution_notes_must_be_substantive(services, disputed_booking, admin, notes):
    with pytest.raises(DisputeValidationError):
        services.disputes.resolve(disputed_booking.id, "refund", admin.id, notes)
    assert services.store.get(disputed_booking.id).status == BookingStatus.DISPUTED


def test_unknown_resolution_rejected(services, disputed_booking, admin):
    with pytest.raises(DisputeValidationError):
        services.disputes.resolve(disputed_booking.id, "split", admin.id, "Half each seems fair")


def test_second_resolution_returns_first_outcome(services, disputed_booking, admin, processor):
    first = services.disputes.resolve(disputed_booking.id, "refund", admin.id, "No proof of the walk")
    second = services.disputes.resolve(disputed_booking.id, "release", admin.id, "Changed my mind entirely")

    assert second.status == BookingStatus.RESOLVED_REFUND
    assert second.version == first.version
    assert processor.count("refund") == 1
    assert processor.count("capture") == 0


def test_resolve_requires_open_dispute(services, completed_booking, admin):
    with pytest.raises(InvalidTransitionError):
        services.disputes.resolve(completed_booking.id, "refund", admin.id, "Nothing to resolve here")


def test_list_and_get(services, disputed_booking, admin):
    other = make_booking(services)

    assert [b.id for b in services.disputes.list_disputes("open")] == [disputed_booking.id]
    assert services.disputes.list_disputes("resolved") == []

    services.disputes.resolve(disputed_booking.id, "release", admin.id, "Photos show the work")

    assert services.disputes.list_disputes("open") == []
    assert [b.id for b in services.disputes.list_disputes("resolved")] == [disputed_booking.id]
    assert [b.id for b in services.disputes.list_disputes()] == [disputed_booking.id]
    assert services.disputes.get_dispute(disputed_booking.id).dispute_reason == "Walker never showed up"

    with pytest.raises(DisputeNotFoundError):
        services.disputes.get_dispute(other.id)
