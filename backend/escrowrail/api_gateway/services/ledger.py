"""Ledger service - immutable append-only record of money movements and the notification outbox."""

import os
from typing import Optional

from escrowrail.shared.correlation import get_correlation_id
from escrowrail.shared.file_store import FileStore
from escrowrail.shared.models import LedgerEntry, OutboxEvent

CAPTURED = "payment.captured"
REFUNDED = "payment.refunded"


class LedgerService:

    def __init__(self, data_dir: str):
        self.payments_path = os.path.join(data_dir, "ledger", "payments.jsonl")
        self.outbox_path = os.path.join(data_dir, "outbox", "events.jsonl")

    def write_entry(self, entry: LedgerEntry) -> None:
        if entry.correlation_id is None:
            entry.correlation_id = get_correlation_id()
        FileStore.append_jsonl(self.payments_path, entry.model_dump(mode="json"))

    def record(self, event_type: str, ref: str, booking_id: str, amount: int,
               currency: str, **metadata) -> LedgerEntry:
        entry = LedgerEntry(
            type=event_type,
            ref=ref,
            booking_id=booking_id,
            amount=amount,
            currency=currency,
            metadata=metadata,
        )
        self.write_entry(entry)
        return entry

    def get_entries_for_ref(self, ref: str) -> list[dict]:
        entries = FileStore.read_jsonl(self.payments_path)
        return [e for e in entries if e.get("ref") == ref]

    def get_entries_for_booking(self, booking_id: str) -> list[dict]:
        entries = FileStore.read_jsonl(self.payments_path)
        return [e for e in entries if e.get("booking_id") == booking_id]

    def settled_operation(self, intent_ref: Optional[str]) -> Optional[str]:
        """The terminal money operation already performed on an intent, if any."""
        if not intent_ref:
            return None
        for entry in self.get_entries_for_ref(intent_ref):
            if entry.get("type") in (CAPTURED, REFUNDED):
                return entry["type"]
        return None

    def emit_outbox_event(self, event_type: str, payload: dict) -> OutboxEvent:
        event = OutboxEvent(
            type=event_type,
            payload=payload,
            correlation_id=get_correlation_id(),
        )
        FileStore.append_jsonl(self.outbox_path, event.model_dump(mode="json"))
        return event

    def get_all_entries(self, limit: int = 100, offset: int = 0) -> tuple[list[dict], int]:
        entries = FileStore.read_jsonl(self.payments_path)
        total = len(entries)
        entries.reverse()  # newest first
        return entries[offset:offset + limit], total
