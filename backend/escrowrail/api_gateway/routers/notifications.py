"""Notifications router - the persisted inbox clients poll when real-time delivery is missed."""

from fastapi import APIRouter, Depends, HTTPException, Query

from escrowrail.shared.models import Actor
from escrowrail.api_gateway.routers.common import get_actor
from escrowrail.api_gateway.services.container import Services, get_services
from escrowrail.api_gateway.services.notifications import NotificationNotFoundError

router = APIRouter()


@router.get("")
def list_notifications(
    unread_only: bool = Query(False),
    actor: Actor = Depends(get_actor),
    services: Services = Depends(get_services),
):
    items = services.notification_store.list_for_user(actor.id, unread_only=unread_only)
    return {
        "items": [n.model_dump(mode="json") for n in items],
        "total": len(items),
        "unread": sum(1 for n in items if not n.read),
    }


@router.post("/read-all")
def mark_all_read(actor: Actor = Depends(get_actor), services: Services = Depends(get_services)):
    return {"updated": services.notification_store.mark_all_read(actor.id)}


@router.post("/{notification_id}/read")
def mark_read(
    notification_id: str,
    actor: Actor = Depends(get_actor),
    services: Services = Depends(get_services),
):
    try:
        notification = services.notification_store.mark_read(actor.id, notification_id)
    except NotificationNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return notification.model_dump(mode="json")
