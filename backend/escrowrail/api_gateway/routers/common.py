"""Shared router helpers: actor headers, party checks and service error translation."""

import logging

from fastapi import Header, HTTPException

from escrowrail.shared.models import Actor, ActorRole, Booking, InvariantViolationError
from escrowrail.api_gateway.services.booking_store import (
    BookingLockedError,
    BookingNotFoundError,
    ConcurrentModificationError,
)
from escrowrail.api_gateway.services.disputes import DisputeNotFoundError, DisputeValidationError
from escrowrail.api_gateway.services.escrow import PaymentFailedError, PaymentTransientError
from escrowrail.api_gateway.services.state_machine import InvalidTransitionError, TransitionGuardError

logger = logging.getLogger("escrowrail.api")

SERVICE_ERRORS = (
    BookingNotFoundError,
    DisputeNotFoundError,
    DisputeValidationError,
    InvalidTransitionError,
    BookingLockedError,
    ConcurrentModificationError,
    PaymentFailedError,
    PaymentTransientError,
    InvariantViolationError,
)


def to_http(e: Exception) -> HTTPException:
    if isinstance(e, (BookingNotFoundError, DisputeNotFoundError)):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, (TransitionGuardError, DisputeValidationError)):
        return HTTPException(status_code=422, detail=str(e))
    if isinstance(e, (InvalidTransitionError, BookingLockedError, ConcurrentModificationError)):
        return HTTPException(status_code=409, detail=str(e))
    if isinstance(e, PaymentFailedError):
        return HTTPException(status_code=402, detail={"code": e.code, "message": str(e)})
    if isinstance(e, PaymentTransientError):
        return HTTPException(status_code=503, detail=str(e))
    logger.error(f"Unexpected service error: {e}")
    return HTTPException(status_code=500, detail=str(e))


def require_party(booking: Booking, actor: Actor, *roles: ActorRole) -> None:
    """The actor must hold one of ``roles`` and, for requester/fulfiller, be that party on the booking."""
    if actor.role not in roles:
        raise HTTPException(status_code=403, detail=f"Role {actor.role.value} may not perform this action")
    if actor.role == ActorRole.REQUESTER and actor.id != booking.requester_id:
        raise HTTPException(status_code=403, detail="Only the booking's requester may perform this action")
    if actor.role == ActorRole.FULFILLER and actor.id != booking.fulfiller_id:
        raise HTTPException(status_code=403, detail="Only the booking's fulfiller may perform this action")


def get_actor(
    x_actor_id: str = Header(..., alias="X-Actor-Id"),
    x_actor_role: str = Header(..., alias="X-Actor-Role"),
) -> Actor:
    try:
        role = ActorRole(x_actor_role)
    except ValueError:
        raise HTTPException(status_code=401, detail=f"Unknown actor role '{x_actor_role}'")
    if role == ActorRole.SYSTEM:
        raise HTTPException(status_code=401, detail="The system actor cannot call the API")
    return Actor(id=x_actor_id, role=role)
