"""
Wallet model — a user's platform balance.

Each wallet has:
  - Exactly one owner (UNIQUE owner_id): created with the user, never deleted
  - A balance in integer cents
  - A currency code (EUR by default, ISO 4217)

Balance management:
  `balance_cents` is the live balance read by the access gate. It is only
  ever changed by the ledger (services/wallet_service.py), in the same
  database transaction that appends the corresponding completed Transaction,
  so it always equals the sum of the wallet's completed transaction amounts.

  A CHECK constraint keeps the balance non-negative even if application code
  were to skip the conditional debit.
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import String, Integer, DateTime, ForeignKey, CheckConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from fiesta_escrow.database import Base


class Wallet(Base):
    __tablename__ = "wallets"

    __table_args__ = (
        CheckConstraint(
            "balance_cents >= 0",
            name="ck_wallets_non_negative_balance",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        primary_key=True,
        default=uuid.uuid4,
    )

    owner_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id"),
        unique=True,
        nullable=False,
    )

    balance_cents: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
    )

    currency: Mapped[str] = mapped_column(
        String(3),
        nullable=False,
        default="EUR",
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False,
    )

    # --- Relationships ---
    owner: Mapped["User"] = relationship(
        back_populates="wallet",
    )
