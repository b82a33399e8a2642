"""
Pydantic schemas for dispute endpoints.
"""

import uuid
from datetime import datetime

from pydantic import BaseModel, Field, model_validator

from fiesta_escrow.models.dispute import DisputeOutcome, DisputeReason


class DisputeCreateRequest(BaseModel):
    """Request body for POST /disputes."""
    match_id: uuid.UUID
    reason: DisputeReason
    description: str = Field(min_length=10, max_length=2000)


class DisputeResolveRequest(BaseModel):
    """Request body for POST /disputes/{id}/resolve (admin only)."""
    outcome: DisputeOutcome
    refund_amount_cents: int | None = Field(default=None, gt=0)
    note: str | None = Field(default=None, max_length=2000)

    @model_validator(mode="after")
    def amount_matches_outcome(self):
        """A no_refund resolution cannot carry an amount."""
        if self.outcome == DisputeOutcome.NO_REFUND and self.refund_amount_cents is not None:
            raise ValueError("refund_amount_cents is not allowed with no_refund")
        return self


class DisputeCloseRequest(BaseModel):
    note: str | None = Field(default=None, max_length=2000)


class DisputeResponse(BaseModel):
    id: uuid.UUID
    match_id: uuid.UUID
    opened_by_id: uuid.UUID
    respondent_id: uuid.UUID
    reason: str
    description: str
    status: str
    refund_amount_cents: int
    resolution_note: str | None
    resolved_by_id: uuid.UUID | None
    resolved_at: datetime | None
    created_at: datetime

    model_config = {"from_attributes": True}
