"""Builds the service graph once per process from Settings; routers reach it through ``get_services``."""

import time
from datetime import datetime
from typing import Callable, Optional

from fastapi import Request

from escrowrail.shared.models import utcnow
from escrowrail.shared.settings import EscrowPolicy, Settings
from escrowrail.api_gateway.services.booking_store import BookingStore
from escrowrail.api_gateway.services.disputes import DisputeResolutionService
from escrowrail.api_gateway.services.escrow import EscrowPaymentOrchestrator
from escrowrail.api_gateway.services.idempotency import IdempotencyService
from escrowrail.api_gateway.services.ledger import LedgerService
from escrowrail.api_gateway.services.notifications import NotificationDispatcher, NotificationStore
from escrowrail.api_gateway.services.processor_client import HttpProcessorClient
from escrowrail.api_gateway.services.state_machine import BookingStateMachine
from escrowrail.api_gateway.services.webhook_reconciler import WebhookReconciler


class Services:

    def __init__(self, settings: Settings, policy: EscrowPolicy, processor=None,
                 clock: Callable[[], datetime] = utcnow,
                 sleep: Callable[[float], None] = time.sleep):
        self.settings = settings
        self.policy = policy
        self.clock = clock
        data_dir = settings.data_dir

        self.store = BookingStore(data_dir, lock_timeout=settings.booking_lock_timeout_seconds)
        self.ledger = LedgerService(data_dir)
        self.idempotency = IdempotencyService(data_dir, clock=clock)
        self.processor = processor or HttpProcessorClient(
            settings.processor_url, data_dir, timeout=settings.processor_timeout_seconds,
        )
        self.escrow = EscrowPaymentOrchestrator(
            self.processor, self.ledger, policy,
            max_retries=settings.processor_max_retries,
            backoff_seconds=settings.processor_backoff_seconds,
            sleep=sleep,
        )
        self.notification_store = NotificationStore(data_dir)
        self.notifier = NotificationDispatcher(self.notification_store, self.ledger)
        self.state_machine = BookingStateMachine(self.store, self.escrow, policy, self.notifier, clock=clock)
        self.disputes = DisputeResolutionService(self.store, self.state_machine, policy)
        self.reconciler = WebhookReconciler(
            self.store, self.state_machine, self.ledger, data_dir,
            retention_days=settings.webhook_dedup_retention_days,
            lock_timeout=settings.booking_lock_timeout_seconds, clock=clock,
        )

    @classmethod
    def from_env(cls, processor=None) -> "Services":
        return cls(Settings.from_env(), EscrowPolicy.from_env(), processor=processor)


def get_services(request: Request) -> Services:
    return request.app.state.services
