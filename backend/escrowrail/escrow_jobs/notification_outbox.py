"""Notification outbox - delivers queued notifications to the real-time transport with retry/DLQ."""

import asyncio
import logging
import os
from datetime import datetime, timedelta
from typing import Callable

import httpx

from escrowrail.shared.correlation import correlation_scope, set_correlation_id
from escrowrail.shared.file_store import FileStore
from escrowrail.shared.models import utcnow
from escrowrail.api_gateway.services.notifications import NOTIFICATION_CREATED, RealtimeTransport

logger = logging.getLogger("escrow-jobs.outbox")

MAX_RETRIES = 3
RETRY_BACKOFF = [1, 3, 10]  # seconds


class NotificationOutbox:

    def __init__(self, data_dir: str, transport: RealtimeTransport,
                 max_retries: int = MAX_RETRIES, backoff: list = RETRY_BACKOFF,
                 retention_days: int = 7, clock: Callable[[], datetime] = utcnow):
        self.outbox_path = os.path.join(data_dir, "outbox", "events.jsonl")
        self.processed_path = os.path.join(data_dir, "outbox", "processed_events.json")
        self.dlq_path = os.path.join(data_dir, "outbox", "dlq.jsonl")
        self.transport = transport
        self.max_retries = max_retries
        self.backoff = backoff
        self.retention = timedelta(days=retention_days)
        self._clock = clock

    async def deliver(self, event: dict) -> bool:
        payload = event.get("payload", {})
        for attempt in range(self.max_retries):
            try:
                await self.transport.publish(payload["user_id"], payload["notification"])
                return True
            except httpx.HTTPError as e:
                logger.warning(f"Real-time delivery failed (attempt {attempt + 1}): {e}")

            if attempt < self.max_retries - 1:
                await asyncio.sleep(self.backoff[min(attempt, len(self.backoff) - 1)])
        return False

    def prune(self) -> int:
        """Forget events processed longer ago than the retention window, outbox rows first."""
        cutoff = self._clock() - self.retention
        processed = FileStore.read_json(self.processed_path, default={})
        expired = {event_id for event_id, entry in processed.items()
                   if datetime.fromisoformat(entry["processed_at"]) < cutoff}
        if not expired:
            return 0

        FileStore.rewrite_jsonl(self.outbox_path, lambda e: e.get("event_id") not in expired)

        def _forget(done: dict) -> None:
            for event_id in expired:
                done.pop(event_id, None)

        FileStore.update_json(self.processed_path, _forget)
        logger.info(f"Pruned {len(expired)} processed outbox events")
        return len(expired)

    async def process_pending(self) -> int:
        self.prune()
        events = [e for e in FileStore.read_jsonl(self.outbox_path) if e.get("type") == NOTIFICATION_CREATED]
        if not events:
            return 0

        processed = FileStore.read_json(self.processed_path, default={})
        pending = [e for e in events if e.get("event_id") not in processed]
        if not pending:
            return 0

        logger.info(f"Processing {len(pending)} outbox events")

        for event in pending:
            event_id = event["event_id"]
            if event.get("correlation_id"):
                set_correlation_id(event["correlation_id"])

            if await self.deliver(event):
                status = "delivered"
                logger.info(f"Delivered outbox event {event_id}")
            else:
                # The inbox row stays pollable; only the push is given up.
                FileStore.append_jsonl(self.dlq_path, {
                    **event,
                    "dlq_reason": "max_retries_exceeded",
                    "dlq_at": self._clock().isoformat(),
                })
                status = "dlq"
                logger.warning(f"Event {event_id} moved to DLQ")

            def _mark(done: dict, event_id=event_id, status=status) -> None:
                done[event_id] = {"processed_at": self._clock().isoformat(), "status": status}

            FileStore.update_json(self.processed_path, _mark)
        return len(pending)

    async def run_loop(self, interval: int = 5):
        logger.info(f"Notification outbox started (interval={interval}s)")
        while True:
            try:
                with correlation_scope("outbox"):
                    await self.process_pending()
            except Exception as e:
                logger.error(f"Notification outbox error: {e}")
            await asyncio.sleep(interval)
