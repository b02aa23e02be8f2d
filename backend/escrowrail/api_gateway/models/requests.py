"""API request models."""

from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, Field, field_validator


class CreateBookingRequest(BaseModel):
    service_id: str
    fulfiller_id: str
    amount: int = Field(gt=0)
    currency: str = "EUR"
    scheduled_date: datetime

    @field_validator("scheduled_date")
    @classmethod
    def _assume_utc(cls, v: datetime) -> datetime:
        return v if v.tzinfo is not None else v.replace(tzinfo=timezone.utc)


class AuthorizeBookingRequest(BaseModel):
    payment_method_ref: str


class SubmitProofRequest(BaseModel):
    proof_assets: list[str]


class DisputeBookingRequest(BaseModel):
    reason: str


class CancelBookingRequest(BaseModel):
    reason: Optional[str] = None


class ResolveDisputeRequest(BaseModel):
    resolution: str  # "refund" or "release"
    notes: str = ""
