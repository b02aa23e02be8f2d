"""Failure injection configuration and deterministic test cards for the processor simulator."""

from pydantic import BaseModel


class FailureConfig(BaseModel):
    timeout_rate: float = 0.0
    timeout_seconds: float = 15.0
    decline_rate: float = 0.0
    error_rate: float = 0.0
    duplicate_webhook_rate: float = 0.0
    latency_ms_min: int = 50
    latency_ms_max: int = 150
    async_confirmation_delay_ms: int = 500


DECLINE_REASONS = ["insufficient_funds", "card_declined", "expired_card", "do_not_honor"]

# Payment method refs with a fixed outcome regardless of the injected rates.
DECLINING_METHODS = {
    "pm_card_declined": "card_declined",
    "pm_insufficient_funds": "insufficient_funds",
    "pm_expired_card": "expired_card",
}
REQUIRES_ACTION_METHOD = "pm_requires_action"
