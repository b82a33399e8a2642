"""
Pydantic schemas for wallet, balance and top-up endpoints.

All monetary amounts are expressed in integer cents.
"""

import uuid
from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

from fiesta_escrow.schemas.transaction import TransactionResponse


class WalletResponse(BaseModel):
    """Wallet overview, including what the balance allows right now."""
    id: uuid.UUID
    balance_cents: int
    currency: str
    can_operate: bool
    platform_fee_cents: int
    min_topup_cents: int
    # How many platform fees the balance covers
    operations_available: int
    created_at: datetime


class BalanceResponse(BaseModel):
    wallet_id: uuid.UUID
    balance_cents: int
    currency: str


class CanOperateResponse(BaseModel):
    can_operate: bool
    balance_cents: int
    required_cents: int


class BalanceIntegrityResponse(BaseModel):
    """
    Stored balance vs. the sum of completed transactions.

    A False `match` indicates a data integrity issue.
    """
    wallet_id: uuid.UUID
    balance_cents: int
    computed_balance_cents: int
    match: bool
    currency: str


class TopUpRequest(BaseModel):
    """Request body for POST /wallet/topup."""
    amount_cents: int = Field(gt=0, description="Amount in cents; at least the minimum top-up")


class TopUpResponse(BaseModel):
    """Checkout data the client uses to pay the top-up."""
    external_id: str
    client_secret: str | None
    amount_cents: int
    status: str


class TopUpConfirmRequest(BaseModel):
    """Request body for POST /wallet/topup/confirm."""
    external_id: str = Field(min_length=1, max_length=255)


class TopUpConfirmResponse(BaseModel):
    status: Literal["completed", "pending", "failed"]
    duplicate: bool
    balance_cents: int
    transaction: TransactionResponse
