"""
Pydantic schemas for ledger Transaction responses.

All monetary amounts are in integer cents (e.g., 10.50 EUR = 1050).
amount_cents is signed: credits are positive, debits negative.
"""

import uuid
from datetime import datetime

from pydantic import BaseModel


class TransactionResponse(BaseModel):
    """Public representation of a ledger transaction."""
    id: uuid.UUID
    wallet_id: uuid.UUID
    type: str
    amount_cents: int
    status: str
    external_ref: str | None
    related_match_id: uuid.UUID | None
    description: str | None
    created_at: datetime

    model_config = {"from_attributes": True}
