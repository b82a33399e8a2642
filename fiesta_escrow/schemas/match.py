"""
Pydantic schemas for match (reservation) endpoints.

Amounts are integer cents. A priced match returns the checkout data for its
payment hold at creation; the requester completes it client-side and then
calls POST /matches/{id}/payment/confirm.
"""

import uuid
from datetime import datetime, timezone
from typing import Literal

from pydantic import BaseModel, Field, field_validator


class MatchCreateRequest(BaseModel):
    """Request body for POST /matches."""
    experience_id: uuid.UUID
    participants: int = Field(default=1, ge=1, le=100)
    start_date: datetime | None = None
    # Order provider redirects the payer here after approval / cancellation
    return_url: str | None = None
    cancel_url: str | None = None

    @field_validator("start_date")
    @classmethod
    def start_date_in_future(cls, value: datetime | None) -> datetime | None:
        if value is None:
            return value
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        if value <= datetime.now(timezone.utc):
            raise ValueError("start_date must be in the future")
        return value


class MatchResponse(BaseModel):
    id: uuid.UUID
    experience_id: uuid.UUID
    requester_id: uuid.UUID
    host_id: uuid.UUID
    status: str
    participants: int
    total_price_cents: int
    external_payment_ref: str | None
    payment_provider: str | None
    start_date: datetime | None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class PaymentSessionResponse(BaseModel):
    external_id: str
    status: str
    client_secret: str | None = None
    approval_url: str | None = None


class MatchCreatedResponse(BaseModel):
    match: MatchResponse
    payment: PaymentSessionResponse | None


class MatchStatusResponse(BaseModel):
    match_id: uuid.UUID
    status: str


class PaymentConfirmResponse(BaseModel):
    match_id: uuid.UUID
    payment_status: str


class CancellationPreviewResponse(BaseModel):
    """What cancelling now would return to the requester."""
    match_id: uuid.UUID
    action: Literal["release_hold", "refund", "none"]
    policy: str | None = None
    refund_percent: int
    refund_cents: int
    hours_until_start: float | None = None
