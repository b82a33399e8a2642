"""
Dispute service — post-completion claims and their one-time resolution.

Either party of a completed match may open one dispute; the other party
becomes the respondent. Only admins move it further:

    open -> under_review -> resolved_refund | resolved_partial_refund
                            | resolved_no_refund | closed

Resolution money flow for a refund of R cents:
    debit  host       -R   type=refund   clawback of the payout
    credit requester  +R   type=refund   via the provider refund when the
                                         match was paid through a provider,
                                         otherwise a direct wallet credit
The host clawback runs first, so a host who already spent the payout fails
with InsufficientBalanceError before any provider call is made.

Resolution is exactly-once: it runs under the dispute's keyed lock and a
final dispute rejects any further attempt with AlreadyResolvedError.
"""

import uuid
from datetime import datetime, timezone

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from fiesta_escrow.events import EventType, event_bus
from fiesta_escrow.exceptions import (
    AlreadyResolvedError,
    ConflictError,
    EscrowAPIError,
    InvalidTransitionError,
    NotFoundError,
    ProviderError,
    UnauthorizedError,
    ValidationError,
)
from fiesta_escrow.locks import dispute_key, row_locks
from fiesta_escrow.models.dispute import (
    FINAL_DISPUTE_STATUSES,
    OUTCOME_STATUS,
    Dispute,
    DisputeOutcome,
    DisputeReason,
    DisputeStatus,
)
from fiesta_escrow.models.match import Match, MatchStatus
from fiesta_escrow.models.transaction import TransactionType
from fiesta_escrow.models.user import User, UserType
from fiesta_escrow.payments.gateway import PaymentGatewayAdapter
from fiesta_escrow.services import wallet_service

logger = structlog.get_logger(__name__)


def _require_admin(user: User) -> None:
    if user.user_type != UserType.ADMIN:
        raise UnauthorizedError("Only admins can manage disputes")


async def _load_dispute(db: AsyncSession, dispute_id: uuid.UUID) -> Dispute:
    result = await db.execute(
        select(Dispute)
        .where(Dispute.id == dispute_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    dispute = result.scalar_one_or_none()
    if dispute is None:
        raise NotFoundError("Dispute", dispute_id)
    return dispute


async def open_dispute(
    db: AsyncSession,
    match_id: uuid.UUID,
    opened_by_id: uuid.UUID,
    reason: DisputeReason,
    description: str,
) -> Dispute:
    """
    Open a dispute on a completed match.

    Raises:
        NotFoundError: If the match doesn't exist.
        UnauthorizedError: If the actor is not a party to the match.
        InvalidTransitionError: If the match is not completed.
        ConflictError: If the match already has a dispute.
    """
    match = await db.get(Match, match_id)
    if match is None:
        raise NotFoundError("Match", match_id)
    if opened_by_id not in (match.requester_id, match.host_id):
        raise UnauthorizedError("Only a party to the match can open a dispute")
    if match.status != MatchStatus.COMPLETED.value:
        raise InvalidTransitionError("match", match.id, match.status, "open a dispute on")

    existing = await db.execute(select(Dispute.id).where(Dispute.match_id == match_id))
    if existing.first() is not None:
        raise ConflictError("This match already has a dispute")

    respondent_id = match.host_id if opened_by_id == match.requester_id else match.requester_id
    dispute = Dispute(
        match_id=match_id,
        opened_by_id=opened_by_id,
        respondent_id=respondent_id,
        reason=DisputeReason(reason).value,
        description=description,
        status=DisputeStatus.OPEN.value,
    )
    db.add(dispute)
    await db.commit()

    logger.info(
        "Dispute opened",
        dispute_id=str(dispute.id),
        match_id=str(match_id),
        opened_by=str(opened_by_id),
        reason=dispute.reason,
    )
    await event_bus.publish(
        EventType.DISPUTE_OPENED,
        dispute_id=dispute.id,
        match_id=match_id,
        opened_by=opened_by_id,
        respondent_id=respondent_id,
        reason=dispute.reason,
    )
    return dispute


async def mark_under_review(db: AsyncSession, dispute_id: uuid.UUID, admin: User) -> Dispute:
    """Admin picks up an open dispute."""
    _require_admin(admin)
    async with row_locks.hold(dispute_key(dispute_id)):
        dispute = await _load_dispute(db, dispute_id)
        if dispute.status in FINAL_DISPUTE_STATUSES:
            raise AlreadyResolvedError(dispute.id, dispute.status)
        if dispute.status != DisputeStatus.OPEN.value:
            raise InvalidTransitionError("dispute", dispute.id, dispute.status, "review")
        dispute.status = DisputeStatus.UNDER_REVIEW.value
        await db.commit()
    logger.info("Dispute under review", dispute_id=str(dispute_id), admin_id=str(admin.id))
    return dispute


def _refund_amount(outcome: DisputeOutcome, requested: int | None, total: int) -> int:
    if outcome == DisputeOutcome.NO_REFUND:
        return 0
    if total <= 0:
        raise ValidationError("A free match cannot be refunded")
    if outcome == DisputeOutcome.REFUND:
        amount = total if requested is None else requested
    else:
        if requested is None:
            raise ValidationError("A partial refund needs refund_amount_cents")
        amount = requested
    if amount <= 0 or amount > total:
        raise ValidationError(f"Refund amount must be between 1 and {total} cents")
    return amount


async def resolve(
    db: AsyncSession,
    gateway: PaymentGatewayAdapter,
    dispute_id: uuid.UUID,
    admin: User,
    outcome: DisputeOutcome,
    refund_amount_cents: int | None = None,
    note: str | None = None,
) -> Dispute:
    """
    Resolve a dispute once, moving the refund if there is one.

    refund defaults to the full match total; partial_refund requires an
    amount in (0, total]; no_refund moves nothing.

    Raises:
        UnauthorizedError: If the actor is not an admin.
        AlreadyResolvedError: If the dispute is already resolved or closed.
        ValidationError: If the refund amount is out of range.
        InsufficientBalanceError: If the host cannot cover the clawback.
        ProviderError: If the provider refund fails; nothing changes.
    """
    _require_admin(admin)
    outcome = DisputeOutcome(outcome)
    admin_id = admin.id

    async with row_locks.hold(dispute_key(dispute_id)):
        dispute = await _load_dispute(db, dispute_id)
        if dispute.status in FINAL_DISPUTE_STATUSES:
            raise AlreadyResolvedError(dispute.id, dispute.status)

        match = await db.get(Match, dispute.match_id)
        amount = _refund_amount(outcome, refund_amount_cents, match.total_price_cents)
        previous_status = dispute.status
        target = OUTCOME_STATUS[outcome]
        requester_id = match.requester_id
        match_id = match.id

        try:
            if amount > 0:
                host_wallet = await wallet_service.get_wallet_for_user(db, match.host_id)
                requester_wallet = await wallet_service.get_wallet_for_user(db, requester_id)
                await wallet_service.debit(
                    db,
                    host_wallet.id,
                    amount,
                    TransactionType.REFUND,
                    related_match_id=match.id,
                    external_ref=f"dispute:{dispute.id}:clawback",
                    description="Dispute refund clawback",
                )
                if match.external_payment_ref:
                    await gateway.refund(
                        db,
                        match.external_payment_ref,
                        amount,
                        requester_wallet.id,
                        match.id,
                        idempotency_key=f"dispute-{dispute.id}",
                        description="Dispute refund",
                    )
                else:
                    await wallet_service.credit(
                        db,
                        requester_wallet.id,
                        amount,
                        TransactionType.REFUND,
                        external_ref=f"dispute:{dispute.id}:credit",
                        related_match_id=match.id,
                        description="Dispute refund",
                    )

            result = await db.execute(
                update(Dispute)
                .where(Dispute.id == dispute.id)
                .where(Dispute.status == previous_status)
                .values(
                    status=target.value,
                    refund_amount_cents=amount,
                    resolution_note=note,
                    resolved_by_id=admin_id,
                    resolved_at=datetime.now(timezone.utc),
                    updated_at=datetime.now(timezone.utc),
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise AlreadyResolvedError(dispute.id, previous_status)
        except ProviderError:
            await db.rollback()
            wallet = await wallet_service.get_wallet_for_user(db, requester_id)
            await wallet_service.record_failed(
                db,
                wallet.id,
                amount,
                TransactionType.REFUND,
                related_match_id=match_id,
                description="Dispute refund failed at provider",
            )
            await db.commit()
            raise
        except EscrowAPIError:
            await db.rollback()
            raise

        await db.commit()
        await db.refresh(dispute)

    logger.info(
        "Dispute resolved",
        dispute_id=str(dispute_id),
        outcome=outcome.value,
        refund_amount_cents=amount,
        admin_id=str(admin_id),
    )
    await event_bus.publish(
        EventType.DISPUTE_RESOLVED,
        dispute_id=dispute.id,
        match_id=dispute.match_id,
        outcome=outcome,
        status=dispute.status,
        refund_amount_cents=amount,
    )
    return dispute


async def close(
    db: AsyncSession,
    dispute_id: uuid.UUID,
    admin: User,
    note: str | None = None,
) -> Dispute:
    """Admin closes a dispute without moving money."""
    _require_admin(admin)
    async with row_locks.hold(dispute_key(dispute_id)):
        dispute = await _load_dispute(db, dispute_id)
        if dispute.status in FINAL_DISPUTE_STATUSES:
            raise AlreadyResolvedError(dispute.id, dispute.status)
        dispute.status = DisputeStatus.CLOSED.value
        dispute.resolution_note = note
        dispute.resolved_by_id = admin.id
        dispute.resolved_at = datetime.now(timezone.utc)
        await db.commit()

    logger.info("Dispute closed", dispute_id=str(dispute_id), admin_id=str(admin.id))
    await event_bus.publish(
        EventType.DISPUTE_RESOLVED,
        dispute_id=dispute.id,
        match_id=dispute.match_id,
        outcome=None,
        status=dispute.status,
        refund_amount_cents=0,
    )
    return dispute


async def get_dispute(db: AsyncSession, dispute_id: uuid.UUID, user: User) -> Dispute:
    """A dispute is visible to its two parties and to admins."""
    result = await db.execute(
        select(Dispute)
        .where(Dispute.id == dispute_id)
        .execution_options(populate_existing=True)
    )
    dispute = result.scalar_one_or_none()
    if dispute is None:
        raise NotFoundError("Dispute", dispute_id)
    if user.user_type != UserType.ADMIN and user.id not in (dispute.opened_by_id, dispute.respondent_id):
        raise UnauthorizedError("You are not a party to this dispute")
    return dispute


async def list_disputes(
    db: AsyncSession,
    user: User,
    status_filter: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[Dispute]:
    """Admins see every dispute; members see the ones they are party to."""
    query = select(Dispute).order_by(Dispute.created_at.desc()).limit(limit).offset(offset)
    if user.user_type != UserType.ADMIN:
        query = query.where((Dispute.opened_by_id == user.id) | (Dispute.respondent_id == user.id))
    if status_filter:
        query = query.where(Dispute.status == status_filter)
    result = await db.execute(query)
    return list(result.scalars().all())
