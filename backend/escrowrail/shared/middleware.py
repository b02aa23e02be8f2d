"""Shared middleware for correlation IDs, actor headers, and metrics."""

import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse

from escrowrail.shared.correlation import set_correlation_id, generate_correlation_id, get_correlation_id
from escrowrail.shared.file_store import FileStore
from escrowrail.shared.models import ActorRole

logger = logging.getLogger("escrowrail")

VALID_ROLES = {r.value for r in ActorRole if r != ActorRole.SYSTEM}


class CorrelationMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        cid = request.headers.get("X-Correlation-Id") or generate_correlation_id()
        set_correlation_id(cid)
        response = await call_next(request)
        response.headers["X-Correlation-Id"] = cid
        return response


class ActorHeaderMiddleware(BaseHTTPMiddleware):
    """Mutating requests must name the authenticated actor; identity itself is verified upstream."""

    EXEMPT_PATHS = {"/health", "/docs", "/openapi.json", "/redoc"}

    async def dispatch(self, request: Request, call_next):
        if request.url.path in self.EXEMPT_PATHS:
            return await call_next(request)
        if request.url.path.startswith("/webhooks/"):
            return await call_next(request)
        if request.method not in ("POST", "PUT", "PATCH", "DELETE"):
            return await call_next(request)
        actor_id = request.headers.get("X-Actor-Id")
        role = request.headers.get("X-Actor-Role")
        if not actor_id or not role:
            return JSONResponse(
                status_code=401,
                content={"error": "X-Actor-Id and X-Actor-Role headers required"},
            )
        if role not in VALID_ROLES:
            return JSONResponse(
                status_code=401,
                content={"error": f"Unknown actor role '{role}'"},
            )
        return await call_next(request)


class MetricsMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, metrics_path: str):
        super().__init__(app)
        self.metrics_path = metrics_path

    async def dispatch(self, request: Request, call_next):
        start = time.time()
        response = await call_next(request)
        duration_ms = round((time.time() - start) * 1000, 2)
        try:
            FileStore.append_jsonl(self.metrics_path, {
                "timestamp": time.time(),
                "method": request.method,
                "path": request.url.path,
                "status_code": response.status_code,
                "duration_ms": duration_ms,
                "correlation_id": get_correlation_id(),
            })
        except OSError:
            logger.warning(f"Could not record request metrics to {self.metrics_path}")
        return response
