"""
PaymentIntentRecord — local mirror of one provider-side payment object.

Keyed by the provider's external id (payment intent id or order id). It
records which business object the payment belongs to (a match hold or a
wallet top-up) and the last status learned from the provider, so
confirmations can be answered idempotently:

  - the first confirmation that observes a settled status stores it
  - later confirmations return the stored status without calling the provider

The client secret (card) or approval URL (order) is stored encrypted so a
resumed checkout receives the same value.
"""

import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import String, Integer, DateTime, LargeBinary
from sqlalchemy.orm import Mapped, mapped_column

from fiesta_escrow.database import Base


class PaymentContext(str, enum.Enum):
    MATCH = "match"
    TOPUP = "topup"


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    AUTHORIZED = "authorized"
    CAPTURED = "captured"
    PROCESSING = "processing"
    REQUIRES_ACTION = "requires_action"
    FAILED = "failed"
    VOIDED = "voided"
    REFUNDED = "refunded"


# Statuses that can no longer change without an explicit capture/void/refund
SETTLED_PAYMENT_STATUSES = frozenset(
    {
        PaymentStatus.AUTHORIZED.value,
        PaymentStatus.CAPTURED.value,
        PaymentStatus.FAILED.value,
        PaymentStatus.VOIDED.value,
        PaymentStatus.REFUNDED.value,
    }
)


class PaymentIntentRecord(Base):
    __tablename__ = "payment_intents"

    external_id: Mapped[str] = mapped_column(
        String(255),
        primary_key=True,
    )

    # "card" or "order"
    provider: Mapped[str] = mapped_column(String(10), nullable=False)

    context: Mapped[str] = mapped_column(String(10), nullable=False)

    # Match id or wallet id, depending on context
    context_id: Mapped[uuid.UUID] = mapped_column(nullable=False, index=True)

    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)

    # Running total of provider refunds against this payment
    refunded_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=PaymentStatus.PENDING.value,
    )

    # Provider id of the authorization, replaced by the capture id once captured
    secondary_ref: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Fernet-encrypted client secret / approval URL
    encrypted_secret: Mapped[bytes | None] = mapped_column(LargeBinary, nullable=True)

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
