"""
Disputes router — open and follow disputes; admins review and resolve them.

Endpoints:
  POST /disputes                 — Open a dispute on a completed match (party)
  GET  /disputes                 — List disputes (own, or all for admins)
  GET  /disputes/{id}            — Dispute details
  POST /disputes/{id}/review     — [Admin] Mark under review
  POST /disputes/{id}/resolve    — [Admin] Resolve once, moving any refund
  POST /disputes/{id}/close      — [Admin] Close without moving money
"""

import uuid

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from fiesta_escrow.database import get_db
from fiesta_escrow.dependencies import (
    get_current_member,
    get_current_user,
    get_payment_gateway,
    require_admin,
)
from fiesta_escrow.models.user import User
from fiesta_escrow.payments.gateway import PaymentGatewayAdapter
from fiesta_escrow.schemas.dispute import (
    DisputeCloseRequest,
    DisputeCreateRequest,
    DisputeResolveRequest,
    DisputeResponse,
)
from fiesta_escrow.services import dispute_service

router = APIRouter()


@router.post(
    "",
    response_model=DisputeResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Open a dispute",
)
async def open_dispute(
    request: DisputeCreateRequest,
    user: User = Depends(get_current_member),
    db: AsyncSession = Depends(get_db),
):
    """
    Open a dispute on a completed match you took part in. A match can have
    at most one dispute; the other party becomes the respondent.
    """
    return await dispute_service.open_dispute(
        db,
        match_id=request.match_id,
        opened_by_id=user.id,
        reason=request.reason,
        description=request.description,
    )


@router.get(
    "",
    response_model=list[DisputeResponse],
    summary="List disputes",
)
async def list_disputes(
    status_filter: str | None = Query(None, alias="status", description="Filter by status"),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await dispute_service.list_disputes(
        db, user, status_filter=status_filter, limit=limit, offset=offset
    )


@router.get(
    "/{dispute_id}",
    response_model=DisputeResponse,
    summary="Get dispute details",
)
async def get_dispute(
    dispute_id: uuid.UUID,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await dispute_service.get_dispute(db, dispute_id, user)


# ---------------------------------------------------------------------------
# Admin actions
# ---------------------------------------------------------------------------

@router.post(
    "/{dispute_id}/review",
    response_model=DisputeResponse,
    summary="[Admin] Mark a dispute under review",
)
async def review_dispute(
    dispute_id: uuid.UUID,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return await dispute_service.mark_under_review(db, dispute_id, admin)


@router.post(
    "/{dispute_id}/resolve",
    response_model=DisputeResponse,
    summary="[Admin] Resolve a dispute",
)
async def resolve_dispute(
    dispute_id: uuid.UUID,
    request: DisputeResolveRequest,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGatewayAdapter = Depends(get_payment_gateway),
):
    """
    Resolve a dispute. Exactly one resolution is ever applied; a second
    attempt fails with 409.

    - **refund**: the requester gets the match total back (or refund_amount_cents)
    - **partial_refund**: refund_amount_cents is required
    - **no_refund**: nothing moves

    The refund is clawed back from the host's wallet.
    """
    return await dispute_service.resolve(
        db,
        gateway,
        dispute_id,
        admin,
        outcome=request.outcome,
        refund_amount_cents=request.refund_amount_cents,
        note=request.note,
    )


@router.post(
    "/{dispute_id}/close",
    response_model=DisputeResponse,
    summary="[Admin] Close a dispute",
)
async def close_dispute(
    dispute_id: uuid.UUID,
    request: DisputeCloseRequest,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return await dispute_service.close(db, dispute_id, admin, note=request.note)
