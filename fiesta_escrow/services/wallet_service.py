"""
Wallet service — the escrow ledger and the access gate.

THIS IS THE MOST CRITICAL FILE IN THE PROJECT. Every change to a wallet
balance goes through credit() or debit() here, and each one writes exactly
one completed Transaction in the same database transaction. That keeps the
ledger invariant:

    wallet.balance_cents == sum(amount_cents of its completed transactions)

Atomic balance updates:
  Balances are never read, modified in Python and written back. A debit is a
  single conditional statement

      UPDATE wallets SET balance_cents = balance_cents - :amount
      WHERE id = :id AND balance_cents >= :amount

  and a rowcount of 0 means the funds were not there. Two concurrent debits
  can therefore never both succeed against funds that only cover one, on
  SQLite as well as on PostgreSQL.

Idempotent credits:
  A credit carrying an external_ref (provider payment id, refund id, or an
  internal key such as "payout:<match id>") is applied at most once:
    - a completed row for (type, external_ref) already exists: return it
    - a pending/failed row exists (a top-up awaiting confirmation): promote
      it to completed with a conditional UPDATE, then move the balance
    - nothing exists: insert a new completed row
  The UNIQUE(type, external_ref) constraint backs this up at the database
  level.

Access gate:
  can_operate() is the single check the rest of the product uses to decide
  whether a user may start a paid operation: balance >= one platform fee.

None of these functions commit; the calling service owns the transaction.

Admin read-only functions:
  Functions prefixed with `admin_` read any wallet without ownership
  scoping. The router layer enforces that only ADMIN users reach them.
"""

import uuid

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from fiesta_escrow.config import settings
from fiesta_escrow.exceptions import InsufficientBalanceError, NotFoundError, ValidationError
from fiesta_escrow.models.transaction import Transaction, TransactionStatus, TransactionType
from fiesta_escrow.models.wallet import Wallet

logger = structlog.get_logger(__name__)

# A keyed row in one of these statuses can still be promoted to completed
PROMOTABLE_STATUSES = (TransactionStatus.PENDING.value, TransactionStatus.FAILED.value)


# ---------------------------------------------------------------------------
# Wallet lookup
# ---------------------------------------------------------------------------

async def create_wallet(
    db: AsyncSession,
    owner_id: uuid.UUID,
    currency: str | None = None,
) -> Wallet:
    """Create an empty wallet. Called once per user at signup."""
    wallet = Wallet(
        owner_id=owner_id,
        balance_cents=0,
        currency=currency or settings.CURRENCY,
    )
    db.add(wallet)
    await db.flush()
    return wallet


async def get_wallet(db: AsyncSession, wallet_id: uuid.UUID) -> Wallet:
    """Load a wallet with its current committed balance."""
    result = await db.execute(
        select(Wallet)
        .where(Wallet.id == wallet_id)
        .execution_options(populate_existing=True)
    )
    wallet = result.scalar_one_or_none()
    if wallet is None:
        raise NotFoundError("Wallet", wallet_id)
    return wallet


async def get_wallet_for_user(db: AsyncSession, user_id: uuid.UUID) -> Wallet:
    result = await db.execute(
        select(Wallet)
        .where(Wallet.owner_id == user_id)
        .execution_options(populate_existing=True)
    )
    wallet = result.scalar_one_or_none()
    if wallet is None:
        raise NotFoundError("Wallet for user", user_id)
    return wallet


async def get_balance(db: AsyncSession, wallet_id: uuid.UUID) -> int:
    """Current balance in cents, read straight from the database."""
    result = await db.execute(
        select(Wallet.balance_cents).where(Wallet.id == wallet_id)
    )
    balance = result.scalar_one_or_none()
    if balance is None:
        raise NotFoundError("Wallet", wallet_id)
    return balance


async def get_balance_for_user(db: AsyncSession, user_id: uuid.UUID) -> int:
    result = await db.execute(
        select(Wallet.balance_cents).where(Wallet.owner_id == user_id)
    )
    balance = result.scalar_one_or_none()
    if balance is None:
        raise NotFoundError("Wallet for user", user_id)
    return balance


async def can_operate(db: AsyncSession, user_id: uuid.UUID) -> bool:
    """
    Access gate: may this user start an operation?

    True when the balance covers one platform fee. A user without a wallet
    cannot operate.
    """
    try:
        balance = await get_balance_for_user(db, user_id)
    except NotFoundError:
        return False
    return balance >= settings.PLATFORM_FEE_CENTS


# ---------------------------------------------------------------------------
# Ledger mutations
# ---------------------------------------------------------------------------

async def find_keyed_transaction(
    db: AsyncSession,
    txn_type: TransactionType,
    external_ref: str,
) -> Transaction | None:
    """Find the ledger row for an idempotency key, if one was written."""
    result = await db.execute(
        select(Transaction)
        .where(Transaction.type == txn_type.value)
        .where(Transaction.external_ref == external_ref)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def _apply_delta(db: AsyncSession, wallet_id: uuid.UUID, delta_cents: int) -> None:
    result = await db.execute(
        update(Wallet)
        .where(Wallet.id == wallet_id)
        .values(balance_cents=Wallet.balance_cents + delta_cents)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise NotFoundError("Wallet", wallet_id)


async def credit(
    db: AsyncSession,
    wallet_id: uuid.UUID,
    amount_cents: int,
    txn_type: TransactionType,
    external_ref: str | None = None,
    related_match_id: uuid.UUID | None = None,
    description: str | None = None,
) -> Transaction:
    """
    Add funds to a wallet and record a completed Transaction.

    With an external_ref the credit is idempotent: repeating it returns the
    Transaction written by the first call and leaves the balance unchanged.

    Raises:
        ValidationError: If amount_cents is not positive.
        NotFoundError: If the wallet doesn't exist.
    """
    if amount_cents <= 0:
        raise ValidationError("Credit amount must be positive")

    if external_ref is not None:
        existing = await find_keyed_transaction(db, txn_type, external_ref)
        if existing is not None:
            if existing.status == TransactionStatus.COMPLETED.value:
                logger.info(
                    "Duplicate credit ignored",
                    wallet_id=str(existing.wallet_id),
                    type=txn_type.value,
                    external_ref=external_ref,
                )
                return existing
            if existing.status in PROMOTABLE_STATUSES:
                return await _promote(db, existing, amount_cents, related_match_id, description)

    await _apply_delta(db, wallet_id, amount_cents)
    txn = Transaction(
        wallet_id=wallet_id,
        type=txn_type.value,
        amount_cents=amount_cents,
        status=TransactionStatus.COMPLETED.value,
        external_ref=external_ref,
        related_match_id=related_match_id,
        description=description,
    )
    db.add(txn)
    await db.flush()

    logger.info(
        "Wallet credited",
        wallet_id=str(wallet_id),
        type=txn_type.value,
        amount_cents=amount_cents,
        external_ref=external_ref,
    )
    return txn


async def _promote(
    db: AsyncSession,
    txn: Transaction,
    amount_cents: int,
    related_match_id: uuid.UUID | None,
    description: str | None,
) -> Transaction:
    """Complete a pending keyed row; only the caller that flips it moves money."""
    values = {"status": TransactionStatus.COMPLETED.value, "amount_cents": amount_cents}
    if related_match_id is not None:
        values["related_match_id"] = related_match_id
    if description is not None:
        values["description"] = description

    result = await db.execute(
        update(Transaction)
        .where(Transaction.id == txn.id)
        .where(Transaction.status.in_(PROMOTABLE_STATUSES))
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 1:
        await _apply_delta(db, txn.wallet_id, amount_cents)
        logger.info(
            "Pending credit completed",
            wallet_id=str(txn.wallet_id),
            type=txn.type,
            amount_cents=amount_cents,
            external_ref=txn.external_ref,
        )
    else:
        logger.info("Pending credit already completed", external_ref=txn.external_ref)

    await db.refresh(txn)
    return txn


async def debit(
    db: AsyncSession,
    wallet_id: uuid.UUID,
    amount_cents: int,
    txn_type: TransactionType,
    related_match_id: uuid.UUID | None = None,
    external_ref: str | None = None,
    description: str | None = None,
) -> Transaction:
    """
    Remove funds from a wallet and record a completed Transaction.

    The amount is stored negated on the Transaction. With an external_ref,
    repeating the debit returns the first Transaction unchanged.

    Raises:
        ValidationError: If amount_cents is not positive.
        InsufficientBalanceError: If the balance is below amount_cents. The
            balance is unchanged and no Transaction is written.
        NotFoundError: If the wallet doesn't exist.
    """
    if amount_cents <= 0:
        raise ValidationError("Debit amount must be positive")

    if external_ref is not None:
        existing = await find_keyed_transaction(db, txn_type, external_ref)
        if existing is not None and existing.status == TransactionStatus.COMPLETED.value:
            logger.info("Duplicate debit ignored", type=txn_type.value, external_ref=external_ref)
            return existing

    result = await db.execute(
        update(Wallet)
        .where(Wallet.id == wallet_id)
        .where(Wallet.balance_cents >= amount_cents)
        .values(balance_cents=Wallet.balance_cents - amount_cents)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        available = await get_balance(db, wallet_id)
        logger.info(
            "Debit declined",
            wallet_id=str(wallet_id),
            type=txn_type.value,
            requested_cents=amount_cents,
            available_cents=available,
        )
        raise InsufficientBalanceError(
            wallet_id=wallet_id,
            requested_cents=amount_cents,
            available_cents=available,
        )

    txn = Transaction(
        wallet_id=wallet_id,
        type=txn_type.value,
        amount_cents=-amount_cents,
        status=TransactionStatus.COMPLETED.value,
        external_ref=external_ref,
        related_match_id=related_match_id,
        description=description,
    )
    db.add(txn)
    await db.flush()

    logger.info(
        "Wallet debited",
        wallet_id=str(wallet_id),
        type=txn_type.value,
        amount_cents=amount_cents,
        external_ref=external_ref,
    )
    return txn


async def record_pending(
    db: AsyncSession,
    wallet_id: uuid.UUID,
    amount_cents: int,
    txn_type: TransactionType,
    external_ref: str,
    description: str | None = None,
) -> Transaction:
    """Record money expected from a provider. Not counted in the balance yet."""
    txn = Transaction(
        wallet_id=wallet_id,
        type=txn_type.value,
        amount_cents=amount_cents,
        status=TransactionStatus.PENDING.value,
        external_ref=external_ref,
        description=description,
    )
    db.add(txn)
    await db.flush()
    return txn


async def mark_failed(db: AsyncSession, txn: Transaction) -> Transaction:
    """Flag a pending row as failed. Completed rows are never touched."""
    await db.execute(
        update(Transaction)
        .where(Transaction.id == txn.id)
        .where(Transaction.status == TransactionStatus.PENDING.value)
        .values(status=TransactionStatus.FAILED.value)
        .execution_options(synchronize_session=False)
    )
    await db.refresh(txn)
    return txn


async def record_failed(
    db: AsyncSession,
    wallet_id: uuid.UUID,
    amount_cents: int,
    txn_type: TransactionType,
    related_match_id: uuid.UUID | None = None,
    description: str | None = None,
) -> Transaction:
    """
    Write a failed Transaction for the audit trail.

    Failed rows never carry an external_ref, so recording the same failure
    twice cannot block a later successful keyed movement.
    """
    txn = Transaction(
        wallet_id=wallet_id,
        type=txn_type.value,
        amount_cents=amount_cents,
        status=TransactionStatus.FAILED.value,
        related_match_id=related_match_id,
        description=description,
    )
    db.add(txn)
    await db.flush()
    logger.warning(
        "Failed movement recorded",
        wallet_id=str(wallet_id),
        type=txn_type.value,
        amount_cents=amount_cents,
        description=description,
    )
    return txn


async def record_reversal(
    db: AsyncSession,
    wallet_id: uuid.UUID,
    amount_cents: int,
    external_ref: str,
    related_match_id: uuid.UUID | None = None,
    description: str | None = None,
) -> Transaction:
    """
    Record a provider-side reversal that never reached the wallet.

    Used when an authorization hold is voided: the payer's card is released
    but the wallet balance does not change, so the row is written with
    status "refunded" and is excluded from the balance sum.
    """
    existing = await find_keyed_transaction(db, TransactionType.REFUND, external_ref)
    if existing is not None:
        return existing
    txn = Transaction(
        wallet_id=wallet_id,
        type=TransactionType.REFUND.value,
        amount_cents=amount_cents,
        status=TransactionStatus.REFUNDED.value,
        external_ref=external_ref,
        related_match_id=related_match_id,
        description=description,
    )
    db.add(txn)
    await db.flush()
    return txn


# ---------------------------------------------------------------------------
# History and integrity
# ---------------------------------------------------------------------------

async def list_transactions(
    db: AsyncSession,
    wallet_id: uuid.UUID,
    status_filter: str | None = None,
    type_filter: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[Transaction]:
    """List a wallet's transactions, newest first."""
    query = (
        select(Transaction)
        .where(Transaction.wallet_id == wallet_id)
        .order_by(Transaction.created_at.desc())
        .limit(limit)
        .offset(offset)
    )
    if status_filter:
        query = query.where(Transaction.status == status_filter)
    if type_filter:
        query = query.where(Transaction.type == type_filter)

    result = await db.execute(query)
    return list(result.scalars().all())


async def compute_balance(db: AsyncSession, wallet_id: uuid.UUID) -> int:
    """Sum of the wallet's completed transactions (amounts are signed)."""
    result = await db.execute(
        select(func.coalesce(func.sum(Transaction.amount_cents), 0))
        .where(Transaction.wallet_id == wallet_id)
        .where(Transaction.status == TransactionStatus.COMPLETED.value)
    )
    return result.scalar()


async def verify_balance(db: AsyncSession, wallet_id: uuid.UUID) -> dict:
    """
    Compare the stored balance against the ledger.

    Returns:
        Dict with wallet_id, balance_cents, computed_balance_cents, match,
        currency. A False match signals a data integrity issue.
    """
    wallet = await get_wallet(db, wallet_id)
    computed = await compute_balance(db, wallet_id)
    return {
        "wallet_id": wallet.id,
        "balance_cents": wallet.balance_cents,
        "computed_balance_cents": computed,
        "match": wallet.balance_cents == computed,
        "currency": wallet.currency,
    }


# ---------------------------------------------------------------------------
# Admin read-only functions
# ---------------------------------------------------------------------------

async def admin_get_all_wallets(db: AsyncSession) -> list[Wallet]:
    """[ADMIN ONLY] List every wallet."""
    result = await db.execute(select(Wallet).order_by(Wallet.created_at))
    return list(result.scalars().all())


async def admin_get_all_transactions(
    db: AsyncSession,
    status_filter: str | None = None,
    type_filter: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[Transaction]:
    """[ADMIN ONLY] List transactions across all wallets, newest first."""
    query = (
        select(Transaction)
        .order_by(Transaction.created_at.desc())
        .limit(limit)
        .offset(offset)
    )
    if status_filter:
        query = query.where(Transaction.status == status_filter)
    if type_filter:
        query = query.where(Transaction.type == type_filter)

    result = await db.execute(query)
    return list(result.scalars().all())


async def admin_get_transaction(db: AsyncSession, transaction_id: uuid.UUID) -> Transaction:
    """[ADMIN ONLY] Get any transaction by ID."""
    result = await db.execute(select(Transaction).where(Transaction.id == transaction_id))
    txn = result.scalar_one_or_none()
    if txn is None:
        raise NotFoundError("Transaction", transaction_id)
    return txn
