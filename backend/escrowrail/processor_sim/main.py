"""Processor Simulator - fake manual-capture payment processor with failure injection and signed webhooks."""

import asyncio
import hashlib
import hmac
import json
import logging
import os
import random
import uuid
from typing import Optional

import httpx
from fastapi import BackgroundTasks, FastAPI, Header, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from escrowrail.shared.correlation import get_correlation_id
from escrowrail.shared.file_store import FileStore
from escrowrail.shared.middleware import CorrelationMiddleware
from escrowrail.shared.models import utcnow
from escrowrail.processor_sim.failure_injection import (
    DECLINE_REASONS,
    DECLINING_METHODS,
    REQUIRES_ACTION_METHOD,
    FailureConfig,
)

logging.basicConfig(level=os.environ.get("LOG_LEVEL", "INFO"))
logger = logging.getLogger("processor-sim")

app = FastAPI(title="EscrowRail Processor Simulator", version="1.0.0")
app.add_middleware(CorrelationMiddleware)

DATA_DIR = os.environ.get("DATA_DIR", "/app/data")
WEBHOOK_SECRET = os.environ.get("WEBHOOK_SECRET", "")
WEBHOOK_CALLBACK_URL = os.environ.get("WEBHOOK_CALLBACK_URL", "http://api-gateway:8026/webhooks/processor")
SEED = int(os.environ.get("SEED", 42))

rng = random.Random(SEED)


def _path(name: str) -> str:
    return os.path.join(DATA_DIR, "processor_sim", name)


def _read_sim_state() -> dict:
    return FileStore.read_json(_path("state.json"), default={
        "total_requests": 0,
        "total_successes": 0,
        "total_failures": 0,
        "last_request_at": None,
    })


def get_config() -> FailureConfig:
    state = _read_sim_state()
    return FailureConfig(**state.get("failure_config", {}))


def _count(outcome: str) -> None:
    def _bump(state: dict) -> None:
        state["total_requests"] = state.get("total_requests", 0) + 1
        key = "total_successes" if outcome == "success" else "total_failures"
        state[key] = state.get(key, 0) + 1
        state["last_request_at"] = utcnow().isoformat()

    FileStore.update_json(_path("state.json"), _bump)


def _replay(idempotency_key: str) -> Optional[JSONResponse]:
    stored = FileStore.read_json(_path("idempotency.json"), default={}).get(idempotency_key)
    if stored is None:
        return None
    logger.info(f"Replaying response for Idempotency-Key {idempotency_key}")
    return JSONResponse(stored["body"], status_code=stored["status_code"])


def _remember(idempotency_key: str, body: dict, status_code: int = 200) -> JSONResponse:
    def _put(keys: dict) -> None:
        keys[idempotency_key] = {"body": body, "status_code": status_code}

    FileStore.update_json(_path("idempotency.json"), _put)
    return JSONResponse(body, status_code=status_code)


def _get_intent(intent_ref: str) -> dict:
    intent = FileStore.read_json(_path("intents.json"), default={}).get(intent_ref)
    if intent is None:
        raise HTTPException(status_code=404, detail={"code": "intent_not_found", "message": intent_ref})
    return intent


def _save_intent(intent: dict) -> None:
    def _put(intents: dict) -> None:
        intent["updated_at"] = utcnow().isoformat()
        intents[intent["intent_ref"]] = intent

    FileStore.update_json(_path("intents.json"), _put)


async def _simulate_network(config: FailureConfig) -> None:
    latency = rng.randint(config.latency_ms_min, config.latency_ms_max)
    await asyncio.sleep(latency / 1000.0)

    if rng.random() < config.timeout_rate:
        logger.warning("Injected timeout")
        await asyncio.sleep(config.timeout_seconds)
        raise HTTPException(status_code=504, detail="Gateway timeout")

    if rng.random() < config.error_rate:
        logger.warning("Injected 500 error")
        _count("failure")
        raise HTTPException(status_code=500, detail="Internal processor error")


def sign_webhook(payload: str) -> str:
    signature = hmac.new(WEBHOOK_SECRET.encode(), payload.encode(), hashlib.sha256).hexdigest()
    return f"sha256={signature}"


async def _post_webhook(client: httpx.AsyncClient, payload: str) -> None:
    headers = {"Content-Type": "application/json", "X-Correlation-Id": get_correlation_id()}
    if WEBHOOK_SECRET:
        headers["X-Webhook-Signature"] = sign_webhook(payload)
    await client.post(WEBHOOK_CALLBACK_URL, content=payload, headers=headers, timeout=10.0)


async def send_webhook(event_type: str, intent_ref: str, data: dict, delay_ms: int = 0):
    if not WEBHOOK_CALLBACK_URL:
        return
    if delay_ms:
        await asyncio.sleep(delay_ms / 1000.0)

    payload = json.dumps({
        "id": f"evt_{uuid.uuid4().hex[:12]}",
        "type": event_type,
        "related_intent_ref": intent_ref,
        "payload": data,
        "created_at": utcnow().isoformat(),
    })
    try:
        async with httpx.AsyncClient() as client:
            await _post_webhook(client, payload)
            logger.info(f"Webhook sent: {event_type} for {intent_ref}")

            # Duplicate webhook injection
            if rng.random() < get_config().duplicate_webhook_rate:
                logger.info(f"Injecting duplicate webhook: {event_type}")
                await asyncio.sleep(0.5)
                await _post_webhook(client, payload)
    except httpx.HTTPError as e:
        logger.error(f"Webhook delivery failed: {e}")


async def _confirm_later(intent_ref: str, delay_ms: int):
    await asyncio.sleep(delay_ms / 1000.0)
    intent = _get_intent(intent_ref)
    if intent["status"] != "processing":
        return
    intent["status"] = "requires_capture"
    _save_intent(intent)
    await send_webhook("authorization_succeeded", intent_ref, {
        "booking_id": intent["metadata"].get("booking_id"),
        "amount": intent["amount"],
    })


# === Request Models ===

class CreateIntentRequest(BaseModel):
    amount: int
    currency: str = "EUR"
    payment_method_ref: str
    capture_method: str = "manual"
    metadata: dict = {}


class RefundIntentRequest(BaseModel):
    amount: Optional[int] = None


class InjectFailureRequest(BaseModel):
    timeout_rate: Optional[float] = None
    timeout_seconds: Optional[float] = None
    decline_rate: Optional[float] = None
    error_rate: Optional[float] = None
    duplicate_webhook_rate: Optional[float] = None
    latency_ms_min: Optional[int] = None
    latency_ms_max: Optional[int] = None
    async_confirmation_delay_ms: Optional[int] = None


# === Endpoints ===

@app.post("/intents")
async def create_intent(
    req: CreateIntentRequest,
    background_tasks: BackgroundTasks,
    idempotency_key: str = Header(..., alias="Idempotency-Key"),
):
    replay = _replay(idempotency_key)
    if replay is not None:
        return replay

    config = get_config()
    await _simulate_network(config)

    intent_ref = f"pi_{uuid.uuid4().hex[:16]}"
    booking_id = req.metadata.get("booking_id")

    reason = DECLINING_METHODS.get(req.payment_method_ref)
    if reason is None and rng.random() < config.decline_rate:
        reason = rng.choice(DECLINE_REASONS)
    if reason is not None:
        logger.info(f"Declined authorization {intent_ref}: {reason}")
        _count("failure")
        background_tasks.add_task(send_webhook, "authorization_failed", intent_ref, {
            "booking_id": booking_id,
            "failure_code": reason,
        })
        return _remember(idempotency_key, {"code": reason, "message": f"Authorization declined: {reason}"}, 402)

    status = "processing" if req.payment_method_ref == REQUIRES_ACTION_METHOD else "requires_capture"
    intent = {
        "intent_ref": intent_ref,
        "amount": req.amount,
        "currency": req.currency,
        "payment_method_ref": req.payment_method_ref,
        "capture_method": req.capture_method,
        "status": status,
        "amount_refunded": 0,
        "metadata": req.metadata,
        "created_at": utcnow().isoformat(),
    }
    _save_intent(intent)
    _count("success")

    if status == "processing":
        background_tasks.add_task(_confirm_later, intent_ref, config.async_confirmation_delay_ms)
    else:
        background_tasks.add_task(send_webhook, "authorization_succeeded", intent_ref, {
            "booking_id": booking_id,
            "amount": req.amount,
        })

    logger.info(f"Authorized hold {intent_ref} for {req.amount} {req.currency} ({status})")
    return _remember(idempotency_key, {"intent_ref": intent_ref, "status": status})


@app.post("/intents/{intent_ref}/capture")
async def capture_intent(
    intent_ref: str,
    background_tasks: BackgroundTasks,
    idempotency_key: str = Header(..., alias="Idempotency-Key"),
):
    replay = _replay(idempotency_key)
    if replay is not None:
        return replay

    await _simulate_network(get_config())
    intent = _get_intent(intent_ref)

    if intent["status"] == "captured":
        return _remember(idempotency_key, {"intent_ref": intent_ref, "status": "captured"})
    if intent["status"] != "requires_capture":
        return JSONResponse(
            {"code": "intent_not_capturable", "message": f"Intent is {intent['status']}"}, status_code=409,
        )

    intent["status"] = "captured"
    _save_intent(intent)
    _count("success")
    background_tasks.add_task(send_webhook, "capture_succeeded", intent_ref, {
        "booking_id": intent["metadata"].get("booking_id"),
        "amount": intent["amount"],
    })

    logger.info(f"Captured {intent_ref}")
    return _remember(idempotency_key, {"intent_ref": intent_ref, "status": "captured"})


@app.post("/intents/{intent_ref}/refund")
async def refund_intent(
    intent_ref: str,
    req: RefundIntentRequest,
    background_tasks: BackgroundTasks,
    idempotency_key: str = Header(..., alias="Idempotency-Key"),
):
    replay = _replay(idempotency_key)
    if replay is not None:
        return replay

    await _simulate_network(get_config())
    intent = _get_intent(intent_ref)

    amount = req.amount if req.amount is not None else intent["amount"]
    if intent["status"] not in ("requires_capture", "processing", "captured"):
        return JSONResponse(
            {"code": "intent_not_refundable", "message": f"Intent is {intent['status']}"}, status_code=409,
        )
    if amount > intent["amount"] - intent["amount_refunded"]:
        return JSONResponse(
            {"code": "amount_too_large", "message": "Refund exceeds the remaining amount"}, status_code=400,
        )

    # An uncaptured hold is voided; a captured charge is refunded.
    intent["status"] = "canceled" if intent["status"] != "captured" else "refunded"
    intent["amount_refunded"] += amount
    _save_intent(intent)
    _count("success")

    refund_ref = f"re_{uuid.uuid4().hex[:12]}"
    background_tasks.add_task(send_webhook, "refund_succeeded", intent_ref, {
        "booking_id": intent["metadata"].get("booking_id"),
        "refund_ref": refund_ref,
        "amount": amount,
    })

    logger.info(f"Refunded {amount} on {intent_ref} -> {refund_ref}")
    return _remember(idempotency_key, {"intent_ref": intent_ref, "status": intent["status"], "refund_ref": refund_ref})


@app.get("/intents/{intent_ref}")
async def get_intent(intent_ref: str):
    return _get_intent(intent_ref)


@app.post("/inject-failure")
async def inject_failure(req: InjectFailureRequest):
    updates = req.model_dump(exclude_none=True)
    new_config = get_config().model_copy(update=updates)

    def _put(state: dict) -> None:
        state["failure_config"] = new_config.model_dump()

    FileStore.update_json(_path("state.json"), _put)
    logger.info(f"Updated failure config: {updates}")
    return {"message": "Failure config updated", "config": new_config.model_dump()}


@app.get("/state")
async def get_state():
    state = _read_sim_state()
    state["failure_config"] = get_config().model_dump()
    return state


@app.get("/health")
async def health():
    return {"status": "healthy", "service": "processor-sim"}
