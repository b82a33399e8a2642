"""
Top-up service — funding a wallet through the card provider.

Flow:
  1. create_top_up() creates an automatic-capture payment with the provider
     and records a PENDING wallet_topup Transaction keyed by the provider's
     external id. No money moves yet.
  2. The client completes the payment with the returned client secret.
  3. confirm_top_up() (called by the client, or by the provider webhook)
     asks the gateway for the payment status and, when the money is in,
     promotes the pending Transaction to completed and credits the wallet.

Idempotency:
  Confirmations for the same external id are serialized by a keyed lock and
  the credit itself is keyed by (wallet_topup, external id), so N
  confirmations credit the wallet exactly once. Later confirmations get the
  already-completed Transaction back with duplicate=True; that is a success,
  not an error.

Reuse:
  Asking for the same amount again within TOPUP_REUSE_MINUTES returns the
  still-open payment instead of creating another one. Older pending top-ups
  of the wallet are marked failed at that point so they cannot pile up.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from fiesta_escrow.config import settings
from fiesta_escrow.events import EventType, event_bus
from fiesta_escrow.exceptions import (
    EscrowAPIError,
    NotFoundError,
    ProviderError,
    ValidationError,
)
from fiesta_escrow.locks import intent_key, row_locks
from fiesta_escrow.models.payment_intent import PaymentContext, PaymentStatus
from fiesta_escrow.models.transaction import Transaction, TransactionStatus, TransactionType
from fiesta_escrow.payments.gateway import PaymentGatewayAdapter, PaymentSession
from fiesta_escrow.services import wallet_service

logger = structlog.get_logger(__name__)

# Provider statuses that mean the money has been taken
CREDITABLE_STATUSES = (PaymentStatus.CAPTURED, PaymentStatus.PROCESSING)

# Still waiting on the payer; a reused checkout must be in one of these
OPEN_STATUSES = (PaymentStatus.PENDING.value, PaymentStatus.REQUIRES_ACTION.value)


@dataclass
class TopUpResult:
    """Outcome of one confirmation attempt."""

    status: str  # "completed" | "pending" | "failed"
    transaction: Transaction
    duplicate: bool = False


async def create_top_up(
    db: AsyncSession,
    gateway: PaymentGatewayAdapter,
    user_id: uuid.UUID,
    amount_cents: int,
) -> PaymentSession:
    """
    Start a wallet top-up.

    Raises:
        ValidationError: If amount_cents is below MIN_TOPUP_CENTS.
        ProviderError: If the provider refuses to create the payment. A
            failed Transaction is kept for the audit trail.
    """
    if amount_cents < settings.MIN_TOPUP_CENTS:
        raise ValidationError(
            f"Minimum top-up is {settings.MIN_TOPUP_CENTS} cents"
        )

    wallet = await wallet_service.get_wallet_for_user(db, user_id)
    wallet_id = wallet.id

    reusable = await _reusable_session(db, gateway, wallet_id, amount_cents)
    if reusable is not None:
        logger.info(
            "Reusing open top-up",
            wallet_id=str(wallet_id),
            external_id=reusable.external_id,
            amount_cents=amount_cents,
        )
        return reusable

    try:
        session = await gateway.create(
            db,
            PaymentContext.TOPUP,
            wallet_id,
            amount_cents,
            reference_id=f"topup-{uuid.uuid4()}",
            description="Wallet top-up",
            manual_capture=False,
        )
    except ProviderError:
        await db.rollback()
        await wallet_service.record_failed(
            db,
            wallet_id,
            amount_cents,
            TransactionType.WALLET_TOPUP,
            description="Top-up could not be created with the provider",
        )
        await db.commit()
        raise

    await wallet_service.record_pending(
        db,
        wallet_id,
        amount_cents,
        TransactionType.WALLET_TOPUP,
        external_ref=session.external_id,
        description="Wallet top-up",
    )
    await db.commit()

    logger.info(
        "Top-up created",
        wallet_id=str(wallet_id),
        external_id=session.external_id,
        amount_cents=amount_cents,
    )
    return session


async def _reusable_session(
    db: AsyncSession,
    gateway: PaymentGatewayAdapter,
    wallet_id: uuid.UUID,
    amount_cents: int,
) -> PaymentSession | None:
    """Return an open checkout for the same amount, expiring stale ones."""
    cutoff = datetime.now(timezone.utc) - timedelta(minutes=settings.TOPUP_REUSE_MINUTES)
    result = await db.execute(
        select(Transaction)
        .where(Transaction.wallet_id == wallet_id)
        .where(Transaction.type == TransactionType.WALLET_TOPUP.value)
        .where(Transaction.status == TransactionStatus.PENDING.value)
        .order_by(Transaction.created_at.desc())
    )
    pending = list(result.scalars().all())

    for txn in pending:
        if _aware(txn.created_at) < cutoff:
            await wallet_service.mark_failed(db, txn)
            logger.info("Stale top-up expired", external_id=txn.external_ref)
            continue
        if txn.amount_cents != amount_cents:
            continue
        try:
            record = await gateway.get_record(db, txn.external_ref)
        except (NotFoundError, ValidationError):
            continue
        if record.status in OPEN_STATUSES:
            return gateway.checkout_session_from(record)
    return None


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


async def confirm_top_up(
    db: AsyncSession,
    gateway: PaymentGatewayAdapter,
    external_id: str,
) -> TopUpResult:
    """
    Settle a top-up from the provider's authoritative status.

    captured/processing -> wallet credited once (completed)
    requires_action/pending -> nothing moves (pending)
    failed -> pending Transaction marked failed

    Raises:
        NotFoundError: If no top-up exists for external_id.
        ProviderError: If the provider cannot be reached. The top-up stays
            pending so the confirmation can be retried.
    """
    async with row_locks.hold(intent_key(external_id)):
        txn = await wallet_service.find_keyed_transaction(
            db, TransactionType.WALLET_TOPUP, external_id
        )
        if txn is None:
            raise NotFoundError("Top-up", external_id)

        if txn.status == TransactionStatus.COMPLETED.value:
            logger.info("Duplicate top-up confirmation", external_id=external_id)
            return TopUpResult(status="completed", transaction=txn, duplicate=True)

        try:
            status = await gateway.confirm(db, external_id)

            if status in CREDITABLE_STATUSES:
                credited = await wallet_service.credit(
                    db,
                    txn.wallet_id,
                    txn.amount_cents,
                    TransactionType.WALLET_TOPUP,
                    external_ref=external_id,
                    description="Wallet top-up",
                )
                await db.commit()
            elif status == PaymentStatus.FAILED:
                await wallet_service.mark_failed(db, txn)
                await db.commit()
                logger.info("Top-up failed at provider", external_id=external_id)
                return TopUpResult(status="failed", transaction=txn)
            else:
                await db.commit()
                return TopUpResult(status="pending", transaction=txn)
        except IntegrityError:
            # Another process applied this credit first.
            await db.rollback()
            existing = await wallet_service.find_keyed_transaction(
                db, TransactionType.WALLET_TOPUP, external_id
            )
            if existing is None or existing.status != TransactionStatus.COMPLETED.value:
                raise
            return TopUpResult(status="completed", transaction=existing, duplicate=True)
        except EscrowAPIError:
            await db.rollback()
            raise

    balance = await wallet_service.get_balance(db, credited.wallet_id)
    await event_bus.publish(
        EventType.WALLET_TOPPED_UP,
        wallet_id=credited.wallet_id,
        transaction_id=credited.id,
        external_id=external_id,
        amount_cents=credited.amount_cents,
        balance_cents=balance,
    )
    return TopUpResult(status="completed", transaction=credited)
