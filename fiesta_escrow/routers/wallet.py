"""
Wallet router — balance, history and top-ups for the authenticated member.

Endpoints:
  GET  /wallet                  — Wallet overview (balance, can_operate, fee)
  GET  /wallet/balance          — Live balance
  GET  /wallet/can-operate      — Access gate check
  GET  /wallet/transactions     — Ledger history, newest first
  POST /wallet/topup            — Start a top-up, returns the client secret
  POST /wallet/topup/confirm    — Settle a top-up after the client paid

Every endpoint is scoped to the caller's own wallet; there is no wallet id
in any path.
"""

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from fiesta_escrow.config import settings
from fiesta_escrow.database import get_db
from fiesta_escrow.dependencies import get_current_member, get_topup_gateway
from fiesta_escrow.exceptions import UnauthorizedError
from fiesta_escrow.models.transaction import TransactionType
from fiesta_escrow.models.user import User
from fiesta_escrow.payments.gateway import PaymentGatewayAdapter
from fiesta_escrow.schemas.transaction import TransactionResponse
from fiesta_escrow.schemas.wallet import (
    BalanceResponse,
    CanOperateResponse,
    TopUpConfirmRequest,
    TopUpConfirmResponse,
    TopUpRequest,
    TopUpResponse,
    WalletResponse,
)
from fiesta_escrow.services import topup_service, wallet_service

router = APIRouter()


@router.get(
    "",
    response_model=WalletResponse,
    summary="Get your wallet",
)
async def get_wallet(
    user: User = Depends(get_current_member),
    db: AsyncSession = Depends(get_db),
):
    """Wallet overview with the number of platform fees the balance covers."""
    wallet = await wallet_service.get_wallet_for_user(db, user.id)
    fee = settings.PLATFORM_FEE_CENTS
    return WalletResponse(
        id=wallet.id,
        balance_cents=wallet.balance_cents,
        currency=wallet.currency,
        can_operate=wallet.balance_cents >= fee,
        platform_fee_cents=fee,
        min_topup_cents=settings.MIN_TOPUP_CENTS,
        operations_available=wallet.balance_cents // fee,
        created_at=wallet.created_at,
    )


@router.get(
    "/balance",
    response_model=BalanceResponse,
    summary="Get your balance",
)
async def get_balance(
    user: User = Depends(get_current_member),
    db: AsyncSession = Depends(get_db),
):
    wallet = await wallet_service.get_wallet_for_user(db, user.id)
    return BalanceResponse(
        wallet_id=wallet.id,
        balance_cents=wallet.balance_cents,
        currency=wallet.currency,
    )


@router.get(
    "/can-operate",
    response_model=CanOperateResponse,
    summary="Check whether your balance covers one operation",
)
async def can_operate(
    user: User = Depends(get_current_member),
    db: AsyncSession = Depends(get_db),
):
    """
    The access gate. Evaluated live on every call: a debit that just
    completed is reflected immediately.
    """
    allowed = await wallet_service.can_operate(db, user.id)
    balance = await wallet_service.get_balance_for_user(db, user.id)
    return CanOperateResponse(
        can_operate=allowed,
        balance_cents=balance,
        required_cents=settings.PLATFORM_FEE_CENTS,
    )


@router.get(
    "/transactions",
    response_model=list[TransactionResponse],
    summary="List your wallet transactions",
)
async def list_transactions(
    status_filter: str | None = Query(None, alias="status", description="Filter by status"),
    type_filter: str | None = Query(None, alias="type", description="Filter by type"),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    user: User = Depends(get_current_member),
    db: AsyncSession = Depends(get_db),
):
    wallet = await wallet_service.get_wallet_for_user(db, user.id)
    return await wallet_service.list_transactions(
        db,
        wallet.id,
        status_filter=status_filter,
        type_filter=type_filter,
        limit=limit,
        offset=offset,
    )


@router.post(
    "/topup",
    response_model=TopUpResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Start a wallet top-up",
)
async def create_top_up(
    request: TopUpRequest,
    user: User = Depends(get_current_member),
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGatewayAdapter = Depends(get_topup_gateway),
):
    """
    Create a card payment for the top-up amount.

    The wallet is NOT credited here. Pay with the returned client_secret,
    then call POST /wallet/topup/confirm. Asking again for the same amount
    within a short window returns the same open payment.
    """
    session = await topup_service.create_top_up(db, gateway, user.id, request.amount_cents)
    return TopUpResponse(
        external_id=session.external_id,
        client_secret=session.client_secret,
        amount_cents=request.amount_cents,
        status=session.status.value,
    )


@router.post(
    "/topup/confirm",
    response_model=TopUpConfirmResponse,
    summary="Confirm a wallet top-up",
)
async def confirm_top_up(
    request: TopUpConfirmRequest,
    user: User = Depends(get_current_member),
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGatewayAdapter = Depends(get_topup_gateway),
):
    """
    Credit the wallet once the provider reports the payment succeeded.

    Safe to call repeatedly: later calls return the completed transaction
    with duplicate=true and never credit twice.
    """
    wallet = await wallet_service.get_wallet_for_user(db, user.id)
    owned = await wallet_service.find_keyed_transaction(
        db, TransactionType.WALLET_TOPUP, request.external_id
    )
    if owned is not None and owned.wallet_id != wallet.id:
        raise UnauthorizedError("This top-up belongs to another wallet")

    result = await topup_service.confirm_top_up(db, gateway, request.external_id)
    balance = await wallet_service.get_balance(db, wallet.id)
    return TopUpConfirmResponse(
        status=result.status,
        duplicate=result.duplicate,
        balance_cents=balance,
        transaction=TransactionResponse.model_validate(result.transaction),
    )
