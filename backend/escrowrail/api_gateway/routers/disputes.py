"""Disputes router - review open disputes and resolve them (admin)."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from escrowrail.shared.models import Actor, ActorRole
from escrowrail.api_gateway.models.requests import ResolveDisputeRequest
from escrowrail.api_gateway.models.responses import BookingResponse, ListResponse
from escrowrail.api_gateway.routers.common import SERVICE_ERRORS, get_actor, to_http
from escrowrail.api_gateway.services.container import Services, get_services

logger = logging.getLogger("escrowrail.disputes")
router = APIRouter()


@router.get("")
def list_disputes(
    state: Optional[str] = Query(None, pattern="^(open|resolved)$"),
    limit: int = Query(50, le=200),
    offset: int = Query(0, ge=0),
    services: Services = Depends(get_services),
):
    items = services.disputes.list_disputes(state)
    total = len(items)
    page = [BookingResponse.from_booking(b).model_dump(mode="json") for b in items[offset:offset + limit]]
    return ListResponse(items=page, total=total, limit=limit, offset=offset)


@router.get("/{booking_id}")
def get_dispute(booking_id: str, services: Services = Depends(get_services)):
    try:
        booking = services.disputes.get_dispute(booking_id)
    except SERVICE_ERRORS as e:
        raise to_http(e)
    entries = services.ledger.get_entries_for_booking(booking_id)
    return {**BookingResponse.from_booking(booking).model_dump(mode="json"), "ledger_entries": entries}


@router.post("/{booking_id}/resolve")
def resolve_dispute(
    booking_id: str,
    req: ResolveDisputeRequest,
    actor: Actor = Depends(get_actor),
    services: Services = Depends(get_services),
):
    if actor.role != ActorRole.ADMIN:
        raise HTTPException(status_code=403, detail="Only admins can resolve disputes")

    try:
        booking = services.disputes.resolve(booking_id, req.resolution, actor.id, req.notes)
    except SERVICE_ERRORS as e:
        raise to_http(e)
    return BookingResponse.from_booking(booking).model_dump(mode="json")
