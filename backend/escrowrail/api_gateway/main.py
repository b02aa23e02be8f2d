"""EscrowRail API Gateway - Main application entry point."""

import logging
import os
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from escrowrail.shared.middleware import ActorHeaderMiddleware, CorrelationMiddleware, MetricsMiddleware
from escrowrail.api_gateway.routers import audit, bookings, disputes, health, notifications, webhooks
from escrowrail.api_gateway.services.container import Services

logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO"),
    format="%(asctime)s %(name)s %(levelname)s %(message)s",
)

DATA_SUBDIRS = ["bookings", "ledger", "providers", "metrics", "outbox",
                "idempotency", "webhooks", "notifications"]


def create_app(services: Optional[Services] = None) -> FastAPI:
    services = services or Services.from_env()

    app = FastAPI(
        title="EscrowRail API Gateway",
        version="1.0.0",
        description="Booking lifecycle with escrowed payments",
    )
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Custom middleware (outermost first in execution order)
    app.add_middleware(
        MetricsMiddleware,
        metrics_path=os.path.join(services.settings.data_dir, "metrics", "service_metrics.jsonl"),
    )
    app.add_middleware(ActorHeaderMiddleware)
    app.add_middleware(CorrelationMiddleware)

    @app.on_event("startup")
    async def startup():
        for d in DATA_SUBDIRS:
            os.makedirs(os.path.join(services.settings.data_dir, d), exist_ok=True)
        logging.getLogger("escrowrail").info("API Gateway started, data dirs initialized")

    app.include_router(bookings.router, prefix="/bookings", tags=["Bookings"])
    app.include_router(disputes.router, prefix="/disputes", tags=["Disputes"])
    app.include_router(webhooks.router, prefix="/webhooks", tags=["Webhooks"])
    app.include_router(notifications.router, prefix="/notifications", tags=["Notifications"])
    app.include_router(health.router, tags=["Health"])
    app.include_router(audit.router, prefix="/audit", tags=["Audit"])
    return app


app = create_app()
