"""Bookings router - creation, lookup and the user-driven lifecycle actions."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query
from fastapi.responses import JSONResponse

from escrowrail.shared.models import Actor, ActorRole, Booking, BookingEvent, BookingStatus
from escrowrail.api_gateway.models.requests import (
    AuthorizeBookingRequest,
    CancelBookingRequest,
    CreateBookingRequest,
    DisputeBookingRequest,
    SubmitProofRequest,
)
from escrowrail.api_gateway.models.responses import BookingResponse, ListResponse
from escrowrail.api_gateway.routers.common import SERVICE_ERRORS, get_actor, require_party, to_http
from escrowrail.api_gateway.services.container import Services, get_services
from escrowrail.api_gateway.services.idempotency import IdempotencyConflictError
from escrowrail.api_gateway.services.state_machine import DuplicateEventError

logger = logging.getLogger("escrowrail.bookings")
router = APIRouter()


def _view(services: Services, booking: Booking) -> dict:
    allowed = services.state_machine.allowed_events(booking)
    return BookingResponse.from_booking(booking, allowed).model_dump(mode="json")


def _load(services: Services, booking_id: str) -> Booking:
    try:
        return services.store.get(booking_id)
    except SERVICE_ERRORS as e:
        raise to_http(e)


def _transition(services: Services, booking_id: str, event: BookingEvent, actor: Actor,
                idempotency_key: str, **details) -> dict:
    try:
        booking = services.state_machine.transition(booking_id, event, actor, idempotency_key, **details)
    except DuplicateEventError as e:
        logger.info(f"Repeated {event.value} for booking {booking_id}, returning current state")
        booking = e.booking
    except SERVICE_ERRORS as e:
        raise to_http(e)
    return _view(services, booking)


@router.post("", status_code=201)
def create_booking(
    req: CreateBookingRequest,
    actor: Actor = Depends(get_actor),
    idempotency_key: str = Header(..., alias="Idempotency-Key"),
    services: Services = Depends(get_services),
):
    if actor.role != ActorRole.REQUESTER:
        raise HTTPException(status_code=403, detail="Only requesters can book a service")

    request_hash = services.idempotency.compute_hash({
        "action": "create_booking",
        "requester_id": actor.id,
        **req.model_dump(mode="json"),
    })
    try:
        cached = services.idempotency.check(actor.id, idempotency_key, request_hash)
        if cached:
            return JSONResponse(cached.response, status_code=cached.status_code)
    except IdempotencyConflictError as e:
        raise HTTPException(status_code=422, detail=str(e))

    if req.fulfiller_id == actor.id:
        raise HTTPException(status_code=422, detail="A requester cannot book their own service")

    booking = services.store.create(Booking(
        service_id=req.service_id,
        requester_id=actor.id,
        fulfiller_id=req.fulfiller_id,
        amount=req.amount,
        currency=req.currency,
        scheduled_date=req.scheduled_date,
        created_at=services.clock(),
        updated_at=services.clock(),
    ))
    response = _view(services, booking)
    services.idempotency.store(actor.id, idempotency_key, request_hash, response, 201)
    return response


@router.get("")
def list_bookings(
    status: Optional[BookingStatus] = Query(None),
    requester_id: Optional[str] = Query(None),
    fulfiller_id: Optional[str] = Query(None),
    limit: int = Query(50, le=200),
    offset: int = Query(0, ge=0),
    services: Services = Depends(get_services),
):
    items = services.store.list_bookings(status=status, requester_id=requester_id, fulfiller_id=fulfiller_id)
    total = len(items)
    page = [_view(services, b) for b in items[offset:offset + limit]]
    return ListResponse(items=page, total=total, limit=limit, offset=offset)


@router.get("/{booking_id}")
def get_booking(booking_id: str, services: Services = Depends(get_services)):
    return _view(services, _load(services, booking_id))


@router.get("/{booking_id}/transitions")
def get_transitions(booking_id: str, services: Services = Depends(get_services)):
    booking = _load(services, booking_id)
    transitions = [r.model_dump(mode="json") for r in booking.transition_log]
    return {"booking_id": booking_id, "transitions": transitions, "total": len(transitions)}


@router.post("/{booking_id}/authorize")
def authorize_booking(
    booking_id: str,
    req: AuthorizeBookingRequest,
    actor: Actor = Depends(get_actor),
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    services: Services = Depends(get_services),
):
    booking = _load(services, booking_id)
    require_party(booking, actor, ActorRole.REQUESTER)
    # Each retry after a decline is a fresh attempt unless the client pins a key.
    key = idempotency_key or f"{booking_id}|authorize|{booking.authorization_attempts + 1}"
    return _transition(
        services, booking_id, BookingEvent.AUTHORIZATION_REQUESTED, actor, key,
        payment_method_ref=req.payment_method_ref,
    )


@router.post("/{booking_id}/proof")
def submit_proof(
    booking_id: str,
    req: SubmitProofRequest,
    actor: Actor = Depends(get_actor),
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    services: Services = Depends(get_services),
):
    booking = _load(services, booking_id)
    require_party(booking, actor, ActorRole.FULFILLER)
    return _transition(
        services, booking_id, BookingEvent.FULFILLER_SUBMITS_PROOF, actor,
        idempotency_key or f"{booking_id}|proof",
        proof_assets=req.proof_assets,
    )


@router.post("/{booking_id}/confirm")
def confirm_completion(
    booking_id: str,
    actor: Actor = Depends(get_actor),
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    services: Services = Depends(get_services),
):
    booking = _load(services, booking_id)
    require_party(booking, actor, ActorRole.REQUESTER)
    return _transition(
        services, booking_id, BookingEvent.REQUESTER_CONFIRMS, actor,
        idempotency_key or f"{booking_id}|confirm",
    )


@router.post("/{booking_id}/dispute")
def open_dispute(
    booking_id: str,
    req: DisputeBookingRequest,
    actor: Actor = Depends(get_actor),
    services: Services = Depends(get_services),
):
    booking = _load(services, booking_id)
    require_party(booking, actor, ActorRole.REQUESTER)
    try:
        booking = services.disputes.open(booking_id, actor, req.reason)
    except SERVICE_ERRORS as e:
        raise to_http(e)
    return _view(services, booking)


@router.post("/{booking_id}/cancel")
def cancel_booking(
    booking_id: str,
    req: Optional[CancelBookingRequest] = None,
    actor: Actor = Depends(get_actor),
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    services: Services = Depends(get_services),
):
    booking = _load(services, booking_id)
    require_party(booking, actor, ActorRole.REQUESTER, ActorRole.FULFILLER, ActorRole.ADMIN)
    return _transition(
        services, booking_id, BookingEvent.CANCEL, actor,
        idempotency_key or f"{booking_id}|cancel",
        reason=req.reason if req else None,
    )
