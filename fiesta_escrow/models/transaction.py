"""
Transaction model — the append-only wallet ledger.

Every balance movement creates a Transaction. Rows are never edited once
completed and never deleted: corrections are new compensating transactions
(for example a refund debit clawing back a payout).

Key fields:
  - type: payment | wallet_topup | commission | referral_credit | refund
  - amount_cents: SIGNED. Credits are positive, debits negative, so the
    wallet balance is simply the sum of completed amounts.
  - status: pending | completed | failed | refunded
  - external_ref: provider id (payment intent, order, refund) or an internal
    idempotency key. UNIQUE together with type — this is what makes a credit
    for the same provider event impossible to apply twice.
  - related_match_id: the reservation the movement belongs to, if any

Status semantics:
  - pending: a top-up created with the provider but not yet confirmed
  - completed: counted in the balance
  - failed: audit record of an attempt that moved no money
  - refunded: audit record of a provider-side reversal that never touched
    the wallet (a voided authorization). Not counted in the balance.
"""

import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import String, Integer, DateTime, ForeignKey, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from fiesta_escrow.database import Base


class TransactionType(str, enum.Enum):
    PAYMENT = "payment"
    WALLET_TOPUP = "wallet_topup"
    COMMISSION = "commission"
    REFERRAL_CREDIT = "referral_credit"
    REFUND = "refund"


class TransactionStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class Transaction(Base):
    __tablename__ = "transactions"

    __table_args__ = (
        # NULL external refs never collide, so only keyed movements are unique
        UniqueConstraint("type", "external_ref", name="uq_transactions_type_external_ref"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        primary_key=True,
        default=uuid.uuid4,
    )

    wallet_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("wallets.id"),
        nullable=False,
        index=True,
    )

    type: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
    )

    # Signed: positive = money into the wallet, negative = money out
    amount_cents: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )

    status: Mapped[str] = mapped_column(
        String(10),
        nullable=False,
        default=TransactionStatus.PENDING.value,
    )

    external_ref: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
        index=True,
    )

    related_match_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("matches.id"),
        nullable=True,
        index=True,
    )

    description: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )

    # Indexed for history pagination
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
        index=True,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
