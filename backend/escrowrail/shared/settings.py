"""Environment-driven configuration: runtime settings and the escrow policy."""

import os
from typing import Optional

from pydantic import BaseModel


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        return default


class EscrowPolicy(BaseModel):
    """Business rules fed into the state machine rather than hard-coded in it."""

    confirmation_window_hours: int = 24
    cancellation_cutoff_hours: int = 24
    platform_fee_percent: int = 15
    min_resolution_notes_length: int = 5

    @classmethod
    def from_env(cls) -> "EscrowPolicy":
        return cls(
            confirmation_window_hours=_env_int("CONFIRMATION_WINDOW_HOURS", 24),
            cancellation_cutoff_hours=_env_int("CANCELLATION_CUTOFF_HOURS", 24),
            platform_fee_percent=_env_int("PLATFORM_FEE_PERCENT", 15),
            min_resolution_notes_length=max(5, _env_int("MIN_RESOLUTION_NOTES_LENGTH", 5)),
        )

    def platform_fee(self, amount: int) -> int:
        return round(amount * self.platform_fee_percent / 100)


class Settings(BaseModel):
    data_dir: str = "/app/data"
    processor_url: str = "http://processor-sim:8030"
    processor_timeout_seconds: float = 5.0
    processor_max_retries: int = 3
    processor_backoff_seconds: float = 0.5
    webhook_secret: str = ""
    webhook_dedup_retention_days: int = 30
    realtime_publish_url: Optional[str] = None
    booking_lock_timeout_seconds: float = 30.0
    auto_confirm_interval_seconds: int = 300
    reconcile_interval_seconds: int = 120
    outbox_interval_seconds: int = 5
    outbox_retention_days: int = 7
    authorization_stale_minutes: int = 30

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            data_dir=os.environ.get("DATA_DIR", "/app/data"),
            processor_url=os.environ.get("PROCESSOR_URL", "http://processor-sim:8030"),
            processor_timeout_seconds=_env_float("PROCESSOR_TIMEOUT_SECONDS", 5.0),
            processor_max_retries=_env_int("PROCESSOR_MAX_RETRIES", 3),
            processor_backoff_seconds=_env_float("PROCESSOR_BACKOFF_SECONDS", 0.5),
            webhook_secret=os.environ.get("WEBHOOK_SECRET", ""),
            webhook_dedup_retention_days=_env_int("WEBHOOK_DEDUP_RETENTION_DAYS", 30),
            realtime_publish_url=os.environ.get("REALTIME_PUBLISH_URL") or None,
            booking_lock_timeout_seconds=_env_float("BOOKING_LOCK_TIMEOUT_SECONDS", 30.0),
            auto_confirm_interval_seconds=_env_int("AUTO_CONFIRM_INTERVAL_SECONDS", 300),
            reconcile_interval_seconds=_env_int("RECONCILE_INTERVAL_SECONDS", 120),
            outbox_interval_seconds=_env_int("OUTBOX_INTERVAL_SECONDS", 5),
            outbox_retention_days=_env_int("OUTBOX_RETENTION_DAYS", 7),
            authorization_stale_minutes=_env_int("AUTHORIZATION_STALE_MINUTES", 30),
        )
