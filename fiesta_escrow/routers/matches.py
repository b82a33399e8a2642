"""
Matches router — request, pay for, and move reservations through their
lifecycle.

Endpoints:
  POST /matches                              — Request a match (creates the payment hold)
  GET  /matches                              — List your matches
  GET  /matches/{id}                         — Match details (parties only)
  GET  /matches/{id}/status                  — Current status
  POST /matches/{id}/payment/confirm         — Refresh the hold after checkout
  GET  /matches/{id}/payment                 — Resume an unfinished checkout
  GET  /matches/{id}/cancellation-preview    — What cancelling now would refund
  POST /matches/{id}/accept                  — Host accepts
  POST /matches/{id}/reject                  — Host rejects (releases the hold)
  POST /matches/{id}/cancel                  — Either party cancels
  POST /matches/{id}/complete                — Host completes (capture, payout, fee)

Ownership rules are enforced in match_service: only the host accepts,
rejects and completes; either party cancels; only the requester pays.
"""

import uuid

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from fiesta_escrow.database import get_db
from fiesta_escrow.dependencies import get_current_member, get_payment_gateway, get_pricing_service
from fiesta_escrow.models.user import User
from fiesta_escrow.payments.gateway import PaymentGatewayAdapter, PaymentSession
from fiesta_escrow.schemas.match import (
    CancellationPreviewResponse,
    MatchCreateRequest,
    MatchCreatedResponse,
    MatchResponse,
    MatchStatusResponse,
    PaymentConfirmResponse,
    PaymentSessionResponse,
)
from fiesta_escrow.services import match_service
from fiesta_escrow.services.pricing_service import PricingService

router = APIRouter()


def _session_response(session: PaymentSession) -> PaymentSessionResponse:
    return PaymentSessionResponse(
        external_id=session.external_id,
        status=session.status.value,
        client_secret=session.client_secret,
        approval_url=session.approval_url,
    )


# ---------------------------------------------------------------------------
# Request and read
# ---------------------------------------------------------------------------

@router.post(
    "",
    response_model=MatchCreatedResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Request a match",
)
async def request_match(
    request: MatchCreateRequest,
    user: User = Depends(get_current_member),
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGatewayAdapter = Depends(get_payment_gateway),
    pricing: PricingService = Depends(get_pricing_service),
):
    """
    Request to join an experience.

    The price is computed from the experience's group pricing tiers. For a
    priced experience the response carries the checkout data for the
    payment hold; nothing is charged until the host completes the match.
    `payment` is null for free experiences, or when the provider was
    unreachable (the host's accept will retry creating the hold).
    """
    match, session = await match_service.request_match(
        db,
        gateway,
        pricing,
        requester_id=user.id,
        experience_id=request.experience_id,
        participants=request.participants,
        start_date=request.start_date,
        return_url=request.return_url,
        cancel_url=request.cancel_url,
    )
    return MatchCreatedResponse(
        match=MatchResponse.model_validate(match),
        payment=_session_response(session) if session else None,
    )


@router.get(
    "",
    response_model=list[MatchResponse],
    summary="List your matches",
)
async def list_matches(
    role: str | None = Query(None, pattern="^(requester|host)$", description="Only matches where you have this role"),
    status_filter: str | None = Query(None, alias="status", description="Filter by status"),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    user: User = Depends(get_current_member),
    db: AsyncSession = Depends(get_db),
):
    return await match_service.list_matches(
        db, user.id, role=role, status_filter=status_filter, limit=limit, offset=offset
    )


@router.get(
    "/{match_id}",
    response_model=MatchResponse,
    summary="Get match details",
)
async def get_match(
    match_id: uuid.UUID,
    user: User = Depends(get_current_member),
    db: AsyncSession = Depends(get_db),
):
    return await match_service.get_match(db, match_id, user.id)


@router.get(
    "/{match_id}/status",
    response_model=MatchStatusResponse,
    summary="Get match status",
)
async def get_match_status(
    match_id: uuid.UUID,
    user: User = Depends(get_current_member),
    db: AsyncSession = Depends(get_db),
):
    match = await match_service.get_match(db, match_id, user.id)
    return MatchStatusResponse(match_id=match.id, status=match.status)


# ---------------------------------------------------------------------------
# Payment
# ---------------------------------------------------------------------------

@router.post(
    "/{match_id}/payment/confirm",
    response_model=PaymentConfirmResponse,
    summary="Confirm the payment hold",
)
async def confirm_payment(
    match_id: uuid.UUID,
    user: User = Depends(get_current_member),
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGatewayAdapter = Depends(get_payment_gateway),
):
    """
    Ask the provider for the hold's status after the requester finished
    checkout. Once it reports `authorized`, the host can accept.
    """
    payment_status = await match_service.confirm_payment(db, gateway, match_id, user.id)
    return PaymentConfirmResponse(match_id=match_id, payment_status=payment_status.value)


@router.get(
    "/{match_id}/payment",
    response_model=PaymentSessionResponse,
    summary="Resume checkout",
)
async def get_checkout(
    match_id: uuid.UUID,
    user: User = Depends(get_current_member),
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGatewayAdapter = Depends(get_payment_gateway),
):
    session = await match_service.get_checkout(db, gateway, match_id, user.id)
    return _session_response(session)


@router.get(
    "/{match_id}/cancellation-preview",
    response_model=CancellationPreviewResponse,
    summary="Preview a cancellation",
)
async def preview_cancellation(
    match_id: uuid.UUID,
    user: User = Depends(get_current_member),
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGatewayAdapter = Depends(get_payment_gateway),
):
    """
    What cancelling right now would return to the requester, without
    cancelling. An uncaptured hold is always released in full.
    """
    match = await match_service.get_match(db, match_id, user.id)
    calculation = await match_service.preview_cancellation(db, gateway, match_id, user.id)
    if calculation is None:
        action = "release_hold" if match.external_payment_ref else "none"
        return CancellationPreviewResponse(
            match_id=match_id,
            action=action,
            refund_percent=100 if match.external_payment_ref else 0,
            refund_cents=match.total_price_cents if match.external_payment_ref else 0,
        )
    return CancellationPreviewResponse(
        match_id=match_id,
        action="refund",
        policy=calculation.policy.value,
        refund_percent=calculation.refund_percent,
        refund_cents=calculation.refund_cents,
        hours_until_start=calculation.hours_until_start,
    )


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------

@router.post(
    "/{match_id}/accept",
    response_model=MatchResponse,
    summary="Accept a match (host)",
)
async def accept_match(
    match_id: uuid.UUID,
    user: User = Depends(get_current_member),
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGatewayAdapter = Depends(get_payment_gateway),
):
    """
    Accept a pending match. A priced match must have an authorized hold;
    otherwise this fails with 409 and the requester has to finish paying.
    """
    return await match_service.accept(db, gateway, match_id, user.id)


@router.post(
    "/{match_id}/reject",
    response_model=MatchResponse,
    summary="Reject a match (host)",
)
async def reject_match(
    match_id: uuid.UUID,
    user: User = Depends(get_current_member),
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGatewayAdapter = Depends(get_payment_gateway),
):
    return await match_service.reject(db, gateway, match_id, user.id)


@router.post(
    "/{match_id}/cancel",
    response_model=MatchResponse,
    summary="Cancel a match",
)
async def cancel_match(
    match_id: uuid.UUID,
    user: User = Depends(get_current_member),
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGatewayAdapter = Depends(get_payment_gateway),
):
    """
    Cancel a pending or accepted match. Use the cancellation preview to see
    the refund first.
    """
    return await match_service.cancel(db, gateway, match_id, user.id)


@router.post(
    "/{match_id}/complete",
    response_model=MatchResponse,
    summary="Complete a match (host)",
)
async def complete_match(
    match_id: uuid.UUID,
    user: User = Depends(get_current_member),
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGatewayAdapter = Depends(get_payment_gateway),
):
    """
    Mark an accepted match as completed.

    Captures the payment, credits you the total and charges the platform
    fee, all at once. Fails with 422 if your balance plus the payout does
    not cover the fee; nothing is captured in that case.
    """
    return await match_service.complete(db, gateway, match_id, user.id)
