"""
Admin router — read-only endpoints for platform-wide visibility.

All endpoints require ADMIN role. Admins can view any wallet, ledger entry
or match for auditing purposes but CANNOT move money from here; the only
admin write path is dispute resolution (see routers/disputes.py).

Endpoints:
  GET  /admin/wallets                          — List ALL wallets
  GET  /admin/wallets/{wallet_id}/balance      — Balance integrity check
  GET  /admin/wallets/{wallet_id}/transactions — Any wallet's ledger
  GET  /admin/transactions                     — List ALL transactions
  GET  /admin/transactions/{transaction_id}    — Get any transaction by ID
  GET  /admin/matches                          — List ALL matches

By consolidating all admin routes in one router, we avoid route-ordering
conflicts that arise when multiple routers share a prefix and have
overlapping parameterized paths.
"""

import uuid

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from fiesta_escrow.database import get_db
from fiesta_escrow.dependencies import require_admin
from fiesta_escrow.models.user import User
from fiesta_escrow.schemas.match import MatchResponse
from fiesta_escrow.schemas.transaction import TransactionResponse
from fiesta_escrow.schemas.wallet import BalanceIntegrityResponse, BalanceResponse
from fiesta_escrow.services import match_service, wallet_service

router = APIRouter()


# ---------------------------------------------------------------------------
# Wallet admin endpoints
# ---------------------------------------------------------------------------

@router.get(
    "/wallets",
    response_model=list[BalanceResponse],
    summary="[Admin] List all wallets",
)
async def admin_list_all_wallets(
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """
    List every wallet with its stored balance.

    This is a read-only auditing endpoint.
    """
    wallets = await wallet_service.admin_get_all_wallets(db)
    return [
        BalanceResponse(wallet_id=w.id, balance_cents=w.balance_cents, currency=w.currency)
        for w in wallets
    ]


@router.get(
    "/wallets/{wallet_id}/balance",
    response_model=BalanceIntegrityResponse,
    summary="[Admin] Verify a wallet's balance",
)
async def admin_verify_balance(
    wallet_id: uuid.UUID,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """
    Stored balance next to the sum of the wallet's completed transactions.
    `match: false` means the ledger and the balance disagree.
    """
    return await wallet_service.verify_balance(db, wallet_id)


@router.get(
    "/wallets/{wallet_id}/transactions",
    response_model=list[TransactionResponse],
    summary="[Admin] List any wallet's transactions",
)
async def admin_list_wallet_transactions(
    wallet_id: uuid.UUID,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    await wallet_service.get_wallet(db, wallet_id)
    return await wallet_service.list_transactions(db, wallet_id, limit=limit, offset=offset)


# ---------------------------------------------------------------------------
# Transaction admin endpoints
# ---------------------------------------------------------------------------

@router.get(
    "/transactions",
    response_model=list[TransactionResponse],
    summary="[Admin] List ALL transactions",
)
async def admin_list_all_transactions(
    status: str | None = Query(None, description="Filter by status"),
    type: str | None = Query(None, description="Filter by type"),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """
    List every ledger entry in the system.

    Supports filtering by status (pending/completed/failed/refunded) and
    type (wallet_topup/payment/commission/referral_credit/refund), plus
    pagination.
    """
    return await wallet_service.admin_get_all_transactions(
        db=db,
        status_filter=status,
        type_filter=type,
        limit=limit,
        offset=offset,
    )


@router.get(
    "/transactions/{transaction_id}",
    response_model=TransactionResponse,
    summary="[Admin] Get any transaction by ID",
)
async def admin_get_transaction(
    transaction_id: uuid.UUID,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return await wallet_service.admin_get_transaction(db=db, transaction_id=transaction_id)


# ---------------------------------------------------------------------------
# Match admin endpoints
# ---------------------------------------------------------------------------

@router.get(
    "/matches",
    response_model=list[MatchResponse],
    summary="[Admin] List ALL matches",
)
async def admin_list_all_matches(
    status: str | None = Query(None, description="Filter by status"),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return await match_service.admin_get_all_matches(
        db, status_filter=status, limit=limit, offset=offset
    )
