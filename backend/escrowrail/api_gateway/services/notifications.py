"""Notifications - persisted inbox rows per affected party, forwarded to the real-time transport via the outbox."""

import hashlib
import logging
import os
from typing import Optional

import httpx

from escrowrail.shared.file_store import FileStore
from escrowrail.shared.models import ActorRole, Booking, Notification, TransitionRecord
from escrowrail.api_gateway.services.ledger import LedgerService

logger = logging.getLogger("escrowrail.notifications")

NOTIFICATION_CREATED = "notification.created"

REQUESTER = "requester"
FULFILLER = "fulfiller"


def _money(amount: Optional[int], currency: str) -> str:
    return f"{(amount or 0) / 100:.2f} {currency}"


def _messages(booking: Booking, record: TransitionRecord) -> list[tuple[str, str, str, str]]:
    """(party, title, message, type) rows for one transition; empty for intermediate steps."""
    cause = record.cause
    service = booking.service_id
    amount = _money(booking.amount, booking.currency)

    if cause == "payment_authorized":
        return [
            (REQUESTER, "Payment Held", f"{amount} is held in escrow for {service}.", "success"),
            (FULFILLER, "New Booking Confirmed",
             f"Booking for {service} on {booking.scheduled_date.date().isoformat()} is paid and confirmed.", "info"),
        ]
    if cause == "payment_failed":
        return [
            (REQUESTER, "Payment Failed",
             f"Your payment for {service} did not go through ({booking.last_payment_error}). "
             f"You can retry with another payment method.", "error"),
        ]
    if cause == "fulfiller_submits_proof":
        return [
            (REQUESTER, "Service Completed",
             f"{service} was marked as completed. Confirm it or open a dispute before "
             f"{booking.confirmation_deadline.isoformat() if booking.confirmation_deadline else 'the deadline'}.",
             "info"),
        ]
    if cause in ("requester_confirms", "deadline_elapsed"):
        how = "confirmed by the requester" if cause == "requester_confirms" else "confirmed automatically"
        return [
            (FULFILLER, "Payment Received",
             f"You received {_money(booking.payout_amount, booking.currency)} for {service} ({how}).", "success"),
            (REQUESTER, "Payment Released", f"{amount} for {service} was released to the fulfiller.", "info"),
        ]
    if cause == "requester_disputes":
        return [
            (FULFILLER, "Booking Disputed",
             f"The requester disputed {service}: {booking.dispute_reason}. Funds stay in escrow until review.",
             "warning"),
            (REQUESTER, "Dispute Opened", f"Your dispute for {service} is under review.", "info"),
        ]
    if cause == "admin_resolves_refund":
        return [
            (REQUESTER, "Refund Issued", f"You received a refund of {amount} for {service}.", "success"),
            (FULFILLER, "Dispute Resolved", f"The dispute for {service} was resolved in favour of the requester.",
             "warning"),
        ]
    if cause == "admin_resolves_release":
        return [
            (FULFILLER, "Payment Received",
             f"You received {_money(booking.payout_amount, booking.currency)} for {service} after review.", "success"),
            (REQUESTER, "Dispute Resolved", f"The dispute for {service} was resolved in favour of the fulfiller.",
             "info"),
        ]
    if cause == "cancel":
        message = f"The booking for {service} on {booking.scheduled_date.date().isoformat()} was cancelled."
        if record.actor_role == ActorRole.REQUESTER:
            return [(FULFILLER, "Booking Cancelled", message, "warning")]
        if record.actor_role == ActorRole.FULFILLER:
            return [(REQUESTER, "Booking Cancelled", message, "warning")]
        return [
            (REQUESTER, "Booking Cancelled", message, "warning"),
            (FULFILLER, "Booking Cancelled", message, "warning"),
        ]
    return []


def notification_id(booking_id: str, sequence: int, user_id: str) -> str:
    digest = hashlib.sha256(f"{booking_id}|{sequence}|{user_id}".encode()).hexdigest()
    return f"ntf_{digest[:16]}"


class NotificationNotFoundError(Exception):
    def __init__(self, notification_id: str):
        self.notification_id = notification_id
        super().__init__(f"Notification {notification_id} not found")


class NotificationStore:

    def __init__(self, data_dir: str):
        self.path = os.path.join(data_dir, "notifications", "notifications.json")

    def add_missing(self, notifications: list[Notification]) -> list[Notification]:
        """Persist notifications whose id is not stored yet; returns the ones actually added."""
        def _add(rows: dict) -> list[Notification]:
            added = []
            for n in notifications:
                if n.id not in rows:
                    rows[n.id] = n.model_dump(mode="json")
                    added.append(n)
            return added

        return FileStore.update_json(self.path, _add)

    def list_for_user(self, user_id: str, unread_only: bool = False) -> list[Notification]:
        rows = FileStore.read_json(self.path, default={})
        items = [Notification.model_validate(r) for r in rows.values() if r["user_id"] == user_id]
        if unread_only:
            items = [n for n in items if not n.read]
        items.sort(key=lambda n: n.created_at, reverse=True)
        return items

    def mark_read(self, user_id: str, notification_id: str) -> Notification:
        def _mark(rows: dict) -> dict:
            row = rows.get(notification_id)
            # Another user's row is reported as missing.
            if row is None or row["user_id"] != user_id:
                raise NotificationNotFoundError(notification_id)
            row["read"] = True
            return row

        return Notification.model_validate(FileStore.update_json(self.path, _mark))

    def mark_all_read(self, user_id: str) -> int:
        def _mark(rows: dict) -> int:
            count = 0
            for row in rows.values():
                if row["user_id"] == user_id and not row["read"]:
                    row["read"] = True
                    count += 1
            return count

        return FileStore.update_json(self.path, _mark)


class NotificationDispatcher:

    def __init__(self, store: NotificationStore, ledger: LedgerService):
        self.store = store
        self.ledger = ledger

    def emit(self, booking: Booking, record: TransitionRecord) -> list[Notification]:
        parties = {REQUESTER: booking.requester_id, FULFILLER: booking.fulfiller_id}
        notifications = [
            Notification(
                id=notification_id(booking.id, record.sequence, parties[party]),
                user_id=parties[party],
                title=title,
                message=message,
                type=kind,
                created_at=record.timestamp,
                related_booking_id=booking.id,
            )
            for party, title, message, kind in _messages(booking, record)
        ]
        if not notifications:
            return []

        added = self.store.add_missing(notifications)
        for n in added:
            self.ledger.emit_outbox_event(
                NOTIFICATION_CREATED,
                {"user_id": n.user_id, "notification": n.model_dump(mode="json")},
            )
        if added:
            logger.info(f"Queued {len(added)} notification(s) for booking {booking.id} ({record.cause})")
        return added


class RealtimeTransport:
    """Pushes a notification to a user's live channel; log-only when no publish URL is configured."""

    def __init__(self, publish_url: Optional[str] = None, timeout: float = 5.0):
        self.publish_url = publish_url
        self.timeout = timeout

    async def publish(self, user_id: str, notification: dict) -> None:
        if not self.publish_url:
            logger.info(f"[realtime] {user_id}: {notification.get('title')}")
            return
        async with httpx.AsyncClient() as client:
            resp = await client.post(
                self.publish_url,
                json={"user_id": user_id, "event": "new_notification", "notification": notification},
                timeout=self.timeout,
            )
        resp.raise_for_status()
