"""
Match service — the reservation state machine and its money movements.

Transitions:
    pending  --accept-->   accepted   (host; priced matches need a held payment)
    pending  --reject-->   rejected   (host; releases the hold)
    pending  --cancel-->   cancelled  (either party; releases the hold)
    accepted --cancel-->   cancelled  (either party; releases or refunds)
    accepted --complete--> completed  (host; capture, payout, commission)

Atomicity:
  Every transition runs as one unit of work:
    1. take the keyed lock for the match (locks.py)
    2. re-read the match row FOR UPDATE
    3. check actor and status
    4. perform provider calls and ledger movements
    5. flip the status with UPDATE ... WHERE status = :expected
    6. commit, then release the lock
  complete() is the exception to the order of 4 and 5: it captures after
  every local step, see below.
  Any domain error rolls the whole unit back, so a match is never left with
  half of its side effects. A ProviderError additionally leaves a failed
  Transaction behind for the audit trail. Domain events are published only
  after the commit.

  Because the lock is taken before anything is read, two concurrent
  complete() calls on the same match run one after the other: the second
  one sees status "completed" and fails with InvalidTransitionError, so the
  capture, payout and commission happen exactly once.

Completion money flow for a priced match (total T, platform fee F):
    credit host  +T   type=payment       keyed "payout:<match id>"
    debit  host  -F   type=commission    keyed "commission:<match id>"
    capture the hold                     provider
  A free match only charges the commission. The commission debit is a
  guarded UPDATE, so it fails (and nothing is captured) when a concurrent
  debit left the host unable to cover it.
"""

import uuid
from datetime import datetime, timezone

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from fiesta_escrow.config import settings
from fiesta_escrow.events import EventType, event_bus
from fiesta_escrow.exceptions import (
    ConflictError,
    EscrowAPIError,
    InvalidTransitionError,
    NotFoundError,
    PaymentNotAuthorizedError,
    ProviderError,
    UnauthorizedError,
    ValidationError,
)
from fiesta_escrow.locks import match_key, row_locks
from fiesta_escrow.models.experience import CancellationPolicy, Experience
from fiesta_escrow.models.match import Match, MatchStatus
from fiesta_escrow.models.payment_intent import PaymentContext, PaymentStatus
from fiesta_escrow.models.transaction import TransactionType
from fiesta_escrow.models.user import User
from fiesta_escrow.payments.gateway import PaymentGatewayAdapter, PaymentSession
from fiesta_escrow.services import wallet_service
from fiesta_escrow.services.cancellation_policy import RefundCalculation, calculate_refund
from fiesta_escrow.services.pricing_service import PricingService

logger = structlog.get_logger(__name__)

ACTIVE_STATUSES = (MatchStatus.PENDING.value, MatchStatus.ACCEPTED.value)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

async def _load_match(db: AsyncSession, match_id: uuid.UUID) -> Match:
    result = await db.execute(
        select(Match)
        .where(Match.id == match_id)
        .with_for_update()  # No-op on SQLite, locks row on PostgreSQL
        .execution_options(populate_existing=True)
    )
    match = result.scalar_one_or_none()
    if match is None:
        raise NotFoundError("Match", match_id)
    return match


def _require_status(match: Match, allowed: tuple[str, ...], action: str) -> None:
    if match.status not in allowed:
        raise InvalidTransitionError("match", match.id, match.status, action)


async def _set_status(
    db: AsyncSession,
    match: Match,
    expected: tuple[str, ...],
    target: MatchStatus,
    action: str,
) -> None:
    """Compare-and-set the match status; nothing else may have moved it."""
    result = await db.execute(
        update(Match)
        .where(Match.id == match.id)
        .where(Match.status.in_(expected))
        .values(status=target.value, updated_at=datetime.now(timezone.utc))
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise InvalidTransitionError("match", match.id, match.status, action)


async def _commit_and_reload(db: AsyncSession, match: Match) -> Match:
    await db.commit()
    await db.refresh(match)
    return match


async def _record_provider_failure(
    db: AsyncSession,
    user_id: uuid.UUID,
    amount_cents: int,
    txn_type: TransactionType,
    match_id: uuid.UUID | None,
    description: str,
) -> None:
    """Roll back the unit of work and keep only a failed audit Transaction."""
    await db.rollback()
    wallet = await wallet_service.get_wallet_for_user(db, user_id)
    await wallet_service.record_failed(
        db,
        wallet.id,
        amount_cents,
        txn_type,
        related_match_id=match_id,
        description=description,
    )
    await db.commit()


# ---------------------------------------------------------------------------
# Request
# ---------------------------------------------------------------------------

async def request_match(
    db: AsyncSession,
    gateway: PaymentGatewayAdapter,
    pricing: PricingService,
    requester_id: uuid.UUID,
    experience_id: uuid.UUID,
    participants: int = 1,
    start_date: datetime | None = None,
    return_url: str | None = None,
    cancel_url: str | None = None,
) -> tuple[Match, PaymentSession | None]:
    """
    Create a pending match and, when priced, its payment hold.

    The hold is only created here; the requester authorizes it client-side
    and the host cannot accept until the provider reports it authorized.

    Raises:
        NotFoundError: If the experience doesn't exist.
        ValidationError: Unpublished experience, own experience, participant
            count out of range, or no capacity left on start_date.
        ConflictError: If the requester already has an active match for it.
        ProviderError: If the hold cannot be created; no match is stored.
    """
    experience = await db.get(Experience, experience_id)
    if experience is None:
        raise NotFoundError("Experience", experience_id)
    if not experience.published:
        raise ValidationError("Experience is not available")
    if experience.host_id == requester_id:
        raise ValidationError("You cannot request your own experience")

    existing = await db.execute(
        select(Match.id)
        .where(Match.experience_id == experience_id)
        .where(Match.requester_id == requester_id)
        .where(Match.status.in_(ACTIVE_STATUSES))
    )
    if existing.first() is not None:
        raise ConflictError("You already have an active request for this experience")

    if start_date is not None:
        booked = await db.execute(
            select(func.count(Match.id))
            .where(Match.experience_id == experience_id)
            .where(Match.start_date == start_date)
            .where(Match.status.in_(ACTIVE_STATUSES))
        )
        if booked.scalar() >= experience.capacity:
            raise ValidationError("Experience is fully booked for this date")

    quote = await pricing.calculate_group_price(db, experience_id, participants)

    match = Match(
        experience_id=experience_id,
        requester_id=requester_id,
        host_id=experience.host_id,
        status=MatchStatus.PENDING.value,
        participants=participants,
        total_price_cents=quote.total_price_cents,
        start_date=start_date,
    )
    db.add(match)
    await db.flush()
    match_id = match.id
    title = experience.title

    session = None
    if quote.total_price_cents > 0:
        try:
            session = await gateway.create(
                db,
                PaymentContext.MATCH,
                match_id,
                quote.total_price_cents,
                description=title,
                return_url=return_url,
                cancel_url=cancel_url,
            )
        except ProviderError:
            await _record_provider_failure(
                db,
                requester_id,
                quote.total_price_cents,
                TransactionType.PAYMENT,
                None,
                "Payment hold could not be created",
            )
            raise
        match.external_payment_ref = session.external_id
        match.payment_provider = gateway.provider_name

    await db.commit()
    logger.info(
        "Match requested",
        match_id=str(match_id),
        experience_id=str(experience_id),
        requester_id=str(requester_id),
        total_price_cents=quote.total_price_cents,
    )
    return match, session


async def _open_hold(db: AsyncSession, gateway: PaymentGatewayAdapter, match: Match) -> PaymentSession:
    """Create a hold for a match that has none, or whose hold the provider cancelled."""
    previous = match.external_payment_ref
    session = await gateway.create(db, PaymentContext.MATCH, match.id, match.total_price_cents)
    match.external_payment_ref = session.external_id
    match.payment_provider = gateway.provider_name
    await db.flush()
    logger.info(
        "Payment hold opened",
        match_id=str(match.id),
        external_id=session.external_id,
        replaces=previous,
    )
    return session


async def confirm_payment(
    db: AsyncSession,
    gateway: PaymentGatewayAdapter,
    match_id: uuid.UUID,
    user_id: uuid.UUID | None = None,
    refresh: bool = False,
) -> PaymentStatus:
    """
    Refresh the hold status after the requester completed checkout.

    Idempotent: once the hold is authorized the stored status is returned,
    unless refresh is set (provider webhooks), which re-reads an authorized
    hold. A pending match whose hold failed gets a new one; the requester
    resumes checkout with it.
    user_id is None when called from a provider webhook.
    """
    async with row_locks.hold(match_key(match_id)):
        match = await _load_match(db, match_id)
        if user_id is not None and user_id != match.requester_id:
            raise UnauthorizedError("Only the requester can confirm this payment")
        if not match.external_payment_ref:
            raise ValidationError("This match has no payment to confirm")
        try:
            status = await gateway.confirm(db, match.external_payment_ref, refresh=refresh)
            if status == PaymentStatus.FAILED and match.status == MatchStatus.PENDING.value:
                session = await _open_hold(db, gateway, match)
                status = session.status
        except EscrowAPIError:
            await db.rollback()
            raise
        await db.commit()
    return status


async def get_checkout(
    db: AsyncSession,
    gateway: PaymentGatewayAdapter,
    match_id: uuid.UUID,
    user_id: uuid.UUID,
) -> PaymentSession:
    """Checkout data for resuming an unfinished payment (requester only)."""
    match = await get_match(db, match_id, user_id)
    if user_id != match.requester_id:
        raise UnauthorizedError("Only the requester can pay for this match")
    if not match.external_payment_ref:
        raise ValidationError("This match has no payment")
    return await gateway.checkout_session(db, match.external_payment_ref)


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------

async def accept(
    db: AsyncSession,
    gateway: PaymentGatewayAdapter,
    match_id: uuid.UUID,
    host_id: uuid.UUID,
) -> Match:
    """
    Host accepts a pending match.

    For a priced match the hold must be authorized. A missing hold (its
    creation failed at request time) or one the provider cancelled is
    replaced now and committed, and the call fails with
    PaymentNotAuthorizedError until the requester pays.

    Raises:
        UnauthorizedError: If the actor is not the host.
        InvalidTransitionError: If the match is not pending.
        PaymentNotAuthorizedError: If the payment is not held yet.
        ProviderError: If the provider cannot be reached.
    """
    async with row_locks.hold(match_key(match_id)):
        match = await _load_match(db, match_id)
        if match.host_id != host_id:
            raise UnauthorizedError("Only the host can accept this request")
        _require_status(match, (MatchStatus.PENDING.value,), "accept")

        requester_id = match.requester_id
        total = match.total_price_cents
        payment_status = None
        try:
            if match.is_priced:
                if match.external_payment_ref:
                    payment_status = await gateway.confirm(db, match.external_payment_ref)
                if payment_status in (None, PaymentStatus.FAILED):
                    session = await _open_hold(db, gateway, match)
                    await db.commit()
                    raise PaymentNotAuthorizedError(match_id, session.status.value)
                if payment_status != PaymentStatus.AUTHORIZED:
                    await db.commit()
                    raise PaymentNotAuthorizedError(match_id, payment_status.value)

            await _set_status(db, match, (MatchStatus.PENDING.value,), MatchStatus.ACCEPTED, "accept")
        except ProviderError:
            await _record_provider_failure(
                db, requester_id, total, TransactionType.PAYMENT, match_id,
                "Payment hold could not be verified",
            )
            raise
        except EscrowAPIError:
            await db.rollback()
            raise

        match = await _commit_and_reload(db, match)

    logger.info("Match accepted", match_id=str(match_id), host_id=str(host_id))
    await event_bus.publish(
        EventType.MATCH_ACCEPTED,
        match_id=match.id,
        host_id=match.host_id,
        requester_id=match.requester_id,
        total_price_cents=match.total_price_cents,
    )
    return match


async def reject(
    db: AsyncSession,
    gateway: PaymentGatewayAdapter,
    match_id: uuid.UUID,
    host_id: uuid.UUID,
) -> Match:
    """
    Host rejects a pending match, releasing any payment hold exactly once.

    Raises:
        UnauthorizedError: If the actor is not the host.
        InvalidTransitionError: If the match is not pending.
        ProviderError: If the hold cannot be released; the match stays pending.
    """
    async with row_locks.hold(match_key(match_id)):
        match = await _load_match(db, match_id)
        if match.host_id != host_id:
            raise UnauthorizedError("Only the host can reject this request")
        _require_status(match, (MatchStatus.PENDING.value,), "reject")

        requester_id = match.requester_id
        total = match.total_price_cents
        try:
            if match.external_payment_ref:
                wallet = await wallet_service.get_wallet_for_user(db, requester_id)
                await gateway.void(db, match.external_payment_ref, wallet.id, match.id)
            await _set_status(db, match, (MatchStatus.PENDING.value,), MatchStatus.REJECTED, "reject")
        except ProviderError:
            await _record_provider_failure(
                db, requester_id, total, TransactionType.REFUND, match_id,
                "Payment hold could not be released",
            )
            raise
        except EscrowAPIError:
            await db.rollback()
            raise

        match = await _commit_and_reload(db, match)

    logger.info("Match rejected", match_id=str(match_id), host_id=str(host_id))
    await event_bus.publish(
        EventType.MATCH_REJECTED,
        match_id=match.id,
        host_id=match.host_id,
        requester_id=match.requester_id,
    )
    return match


def _policy_for(experience: Experience | None) -> CancellationPolicy:
    if experience is not None and experience.cancellation_policy:
        return CancellationPolicy(experience.cancellation_policy)
    return CancellationPolicy(settings.DEFAULT_CANCELLATION_POLICY)


async def preview_cancellation(
    db: AsyncSession,
    gateway: PaymentGatewayAdapter,
    match_id: uuid.UUID,
    actor_id: uuid.UUID,
) -> RefundCalculation | None:
    """
    What a cancellation would refund right now, without changing anything.

    Returns None when nothing was captured: the hold (if any) is released
    in full.
    """
    match = await get_match(db, match_id, actor_id)
    _require_status(match, ACTIVE_STATUSES, "cancel")
    if not match.external_payment_ref:
        return None
    record = await gateway.get_record(db, match.external_payment_ref)
    if record.status != PaymentStatus.CAPTURED.value:
        return None
    experience = await db.get(Experience, match.experience_id)
    return calculate_refund(_policy_for(experience), match.total_price_cents, match.start_date)


async def cancel(
    db: AsyncSession,
    gateway: PaymentGatewayAdapter,
    match_id: uuid.UUID,
    actor_id: uuid.UUID,
) -> Match:
    """
    Either party cancels a pending or accepted match.

    An uncaptured hold is voided (the payer is never charged). If the funds
    were already captured, the requester is refunded according to the
    experience's cancellation policy.

    Raises:
        UnauthorizedError: If the actor is not a party to the match.
        InvalidTransitionError: If the match is already terminal.
        ProviderError: If the void or refund fails; the match is unchanged.
    """
    async with row_locks.hold(match_key(match_id)):
        match = await _load_match(db, match_id)
        if actor_id not in (match.requester_id, match.host_id):
            raise UnauthorizedError("Only a party to the match can cancel it")
        _require_status(match, ACTIVE_STATUSES, "cancel")

        requester_id = match.requester_id
        total = match.total_price_cents
        refund_cents = 0
        try:
            if match.external_payment_ref:
                wallet = await wallet_service.get_wallet_for_user(db, requester_id)
                record = await gateway.get_record(db, match.external_payment_ref)
                if record.status == PaymentStatus.CAPTURED.value:
                    experience = await db.get(Experience, match.experience_id)
                    calculation = calculate_refund(
                        _policy_for(experience), total, match.start_date
                    )
                    refund_cents = calculation.refund_cents
                    if refund_cents > 0:
                        await gateway.refund(
                            db,
                            match.external_payment_ref,
                            refund_cents,
                            wallet.id,
                            match.id,
                            idempotency_key=f"cancel-{match.id}",
                            description="Cancellation refund",
                        )
                else:
                    await gateway.void(db, match.external_payment_ref, wallet.id, match.id)
            await _set_status(db, match, ACTIVE_STATUSES, MatchStatus.CANCELLED, "cancel")
        except ProviderError:
            await _record_provider_failure(
                db, requester_id, total, TransactionType.REFUND, match_id,
                "Cancellation could not release the payment",
            )
            raise
        except EscrowAPIError:
            await db.rollback()
            raise

        match = await _commit_and_reload(db, match)

    logger.info(
        "Match cancelled",
        match_id=str(match_id),
        actor_id=str(actor_id),
        refund_cents=refund_cents,
    )
    await event_bus.publish(
        EventType.MATCH_CANCELLED,
        match_id=match.id,
        cancelled_by=actor_id,
        host_id=match.host_id,
        requester_id=match.requester_id,
        refund_cents=refund_cents,
    )
    return match


async def complete(
    db: AsyncSession,
    gateway: PaymentGatewayAdapter,
    match_id: uuid.UUID,
    host_id: uuid.UUID,
) -> Match:
    """
    Host marks an accepted match as completed.

    In one unit of work: credit the host the held total, debit the host
    the platform commission, flip the status, and capture the hold last.
    Every local step that can fail runs before the provider is called, so
    an unpayable commission never captures and a failed capture rolls the
    whole step back.

    Raises:
        UnauthorizedError: If the actor is not the host.
        InvalidTransitionError: If the match is not accepted (including a
            second, concurrent completion).
        InsufficientBalanceError: If the host cannot cover the commission.
        PaymentNotAuthorizedError: If the hold is no longer authorized.
        ProviderError: If the capture fails; nothing changes.
    """
    async with row_locks.hold(match_key(match_id)):
        match = await _load_match(db, match_id)
        if match.host_id != host_id:
            raise UnauthorizedError("Only the host can complete this match")
        _require_status(match, (MatchStatus.ACCEPTED.value,), "complete")

        fee = settings.PLATFORM_FEE_CENTS
        total = match.total_price_cents
        requester_id = match.requester_id
        host_wallet = await wallet_service.get_wallet_for_user(db, host_id)
        host_wallet_id = host_wallet.id

        try:
            record = None
            if match.external_payment_ref:
                record = await gateway.get_record(db, match.external_payment_ref)
                if record.status != PaymentStatus.AUTHORIZED.value:
                    raise PaymentNotAuthorizedError(match_id, record.status)
                await wallet_service.credit(
                    db,
                    host_wallet_id,
                    record.amount_cents,
                    TransactionType.PAYMENT,
                    external_ref=f"payout:{match.id}",
                    related_match_id=match.id,
                    description="Experience payout",
                )
            await wallet_service.debit(
                db,
                host_wallet_id,
                fee,
                TransactionType.COMMISSION,
                related_match_id=match.id,
                external_ref=f"commission:{match.id}",
                description="Platform commission",
            )
            referral = await _credit_referrer(db, requester_id, match.id)
            await _set_status(db, match, (MatchStatus.ACCEPTED.value,), MatchStatus.COMPLETED, "complete")
            if record is not None:
                await gateway.capture(db, record.external_id)
        except ProviderError:
            await _record_provider_failure(
                db, requester_id, total, TransactionType.PAYMENT, match_id,
                "Payment capture failed",
            )
            raise
        except EscrowAPIError:
            await db.rollback()
            raise

        match = await _commit_and_reload(db, match)
        balance = await wallet_service.get_balance(db, host_wallet_id)

    logger.info(
        "Match completed",
        match_id=str(match_id),
        host_id=str(host_id),
        payout_cents=total,
        commission_cents=fee,
    )
    await event_bus.publish(
        EventType.MATCH_COMPLETED,
        match_id=match.id,
        host_id=match.host_id,
        requester_id=match.requester_id,
        payout_cents=total,
        commission_cents=fee,
    )
    await event_bus.publish(
        EventType.WALLET_CHARGED,
        wallet_id=host_wallet_id,
        user_id=host_id,
        match_id=match.id,
        amount_cents=fee,
        balance_cents=balance,
    )
    if referral is not None:
        await event_bus.publish(
            EventType.WALLET_TOPPED_UP,
            wallet_id=referral.wallet_id,
            transaction_id=referral.id,
            amount_cents=referral.amount_cents,
            reason=TransactionType.REFERRAL_CREDIT.value,
        )
    return match


async def _credit_referrer(db: AsyncSession, requester_id: uuid.UUID, match_id: uuid.UUID):
    """
    Credit the referrer on the requester's first completed match.

    Keyed by the referred user, so it is paid at most once per referral.
    Returns the new Transaction, or None when nothing was credited.
    """
    requester = await db.get(User, requester_id)
    if requester is None or requester.referred_by_id is None:
        return None

    key = f"referral:{requester_id}"
    if await wallet_service.find_keyed_transaction(db, TransactionType.REFERRAL_CREDIT, key):
        return None

    referrer_wallet = await wallet_service.get_wallet_for_user(db, requester.referred_by_id)
    txn = await wallet_service.credit(
        db,
        referrer_wallet.id,
        settings.REFERRAL_CREDIT_CENTS,
        TransactionType.REFERRAL_CREDIT,
        external_ref=key,
        related_match_id=match_id,
        description="Referral reward",
    )
    logger.info(
        "Referral credited",
        referrer_id=str(requester.referred_by_id),
        referred_id=str(requester_id),
    )
    return txn


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------

async def get_status(db: AsyncSession, match_id: uuid.UUID) -> str:
    result = await db.execute(select(Match.status).where(Match.id == match_id))
    status = result.scalar_one_or_none()
    if status is None:
        raise NotFoundError("Match", match_id)
    return status


async def get_match(db: AsyncSession, match_id: uuid.UUID, user_id: uuid.UUID) -> Match:
    """Get a match, visible only to its two parties."""
    result = await db.execute(
        select(Match)
        .where(Match.id == match_id)
        .execution_options(populate_existing=True)
    )
    match = result.scalar_one_or_none()
    if match is None:
        raise NotFoundError("Match", match_id)
    if user_id not in (match.requester_id, match.host_id):
        raise UnauthorizedError("You are not a party to this match")
    return match


async def list_matches(
    db: AsyncSession,
    user_id: uuid.UUID,
    role: str | None = None,
    status_filter: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[Match]:
    """
    List the user's matches, newest first.

    role: "requester", "host" or None for both.
    """
    query = select(Match).order_by(Match.created_at.desc()).limit(limit).offset(offset)
    if role == "requester":
        query = query.where(Match.requester_id == user_id)
    elif role == "host":
        query = query.where(Match.host_id == user_id)
    else:
        query = query.where((Match.requester_id == user_id) | (Match.host_id == user_id))
    if status_filter:
        query = query.where(Match.status == status_filter)

    result = await db.execute(query)
    return list(result.scalars().all())


async def admin_get_all_matches(
    db: AsyncSession,
    status_filter: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[Match]:
    """[ADMIN ONLY] List matches across all users."""
    query = select(Match).order_by(Match.created_at.desc()).limit(limit).offset(offset)
    if status_filter:
        query = query.where(Match.status == status_filter)
    result = await db.execute(query)
    return list(result.scalars().all())
