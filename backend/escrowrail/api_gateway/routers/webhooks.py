"""Webhooks router - receives and validates payment processor webhooks."""

import hashlib
import hmac
import json
import logging

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from starlette.concurrency import run_in_threadpool

from escrowrail.shared.correlation import set_correlation_id
from escrowrail.shared.models import ProcessorEvent
from escrowrail.api_gateway.services.container import Services, get_services

logger = logging.getLogger("escrowrail.webhooks")
router = APIRouter()


def validate_signature(secret: str, payload: bytes, signature: str) -> bool:
    expected = hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()
    return hmac.compare_digest(f"sha256={expected}", signature)


@router.post("/processor")
async def receive_webhook(
    request: Request,
    x_webhook_signature: str = Header("", alias="X-Webhook-Signature"),
    x_correlation_id: str = Header("", alias="X-Correlation-Id"),
    services: Services = Depends(get_services),
):
    body = await request.body()

    secret = services.settings.webhook_secret
    if secret and not validate_signature(secret, body, x_webhook_signature):
        logger.warning("Invalid webhook signature")
        raise HTTPException(status_code=401, detail="Invalid webhook signature")

    if x_correlation_id:
        set_correlation_id(x_correlation_id)

    try:
        event = ProcessorEvent.model_validate(json.loads(body))
    except (ValueError, ValidationError) as e:
        raise HTTPException(status_code=400, detail=f"Malformed webhook: {e}")

    outcome = await run_in_threadpool(services.reconciler.handle, event)
    content = {"status": outcome.status, "detail": outcome.detail, "event_id": event.id}
    if not outcome.acked:
        return JSONResponse(content, status_code=503)
    return content
