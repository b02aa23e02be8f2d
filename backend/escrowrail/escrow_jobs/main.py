"""Escrow Jobs - Background service running auto-confirmation, payment reconciliation and the notification outbox."""

import asyncio
import logging
import os

from escrowrail.api_gateway.services.container import Services
from escrowrail.api_gateway.services.notifications import RealtimeTransport
from escrowrail.escrow_jobs.auto_confirmation import AutoConfirmationScheduler
from escrowrail.escrow_jobs.notification_outbox import NotificationOutbox
from escrowrail.escrow_jobs.payment_reconciliation import PaymentReconciliationJob

logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO"),
    format="%(asctime)s %(name)s %(levelname)s %(message)s",
)
logger = logging.getLogger("escrow-jobs")


async def main():
    logger.info("Escrow Jobs service starting...")

    services = Services.from_env()
    settings = services.settings
    for d in ["bookings", "ledger", "outbox", "webhooks", "notifications"]:
        os.makedirs(os.path.join(settings.data_dir, d), exist_ok=True)

    scheduler = AutoConfirmationScheduler(services.store, services.state_machine)
    reconciliation = PaymentReconciliationJob(
        services.store, services.state_machine,
        stale_after_minutes=settings.authorization_stale_minutes,
    )
    outbox = NotificationOutbox(
        settings.data_dir,
        RealtimeTransport(settings.realtime_publish_url, timeout=settings.processor_timeout_seconds),
        retention_days=settings.outbox_retention_days,
    )

    # Run all background loops concurrently
    await asyncio.gather(
        scheduler.run_loop(interval=settings.auto_confirm_interval_seconds),
        reconciliation.run_loop(interval=settings.reconcile_interval_seconds),
        outbox.run_loop(interval=settings.outbox_interval_seconds),
    )


if __name__ == "__main__":
    asyncio.run(main())
