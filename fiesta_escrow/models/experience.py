"""
Experience model — what a host offers during a festival.

Experiences are created and edited by the catalogue side of the product; this
service only reads them to price a match, find its host, check capacity and
pick a cancellation policy.

Pricing:
  price_cents is the base price per person; NULL or 0 means the experience
  is free and matches for it never touch a payment provider. Optional
  GroupPricingTier rows override the per-person price for a participant
  range (see services/pricing_service.py).
"""

import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import String, Boolean, Integer, DateTime, ForeignKey, CheckConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from fiesta_escrow.database import Base


class CancellationPolicy(str, enum.Enum):
    """Refund rules for captured funds; see services/cancellation_policy.py."""
    FLEXIBLE = "flexible"
    MODERATE = "moderate"
    STRICT = "strict"
    NON_REFUNDABLE = "non_refundable"
    FULL = "full"


class Experience(Base):
    __tablename__ = "experiences"

    id: Mapped[uuid.UUID] = mapped_column(
        primary_key=True,
        default=uuid.uuid4,
    )

    host_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id"),
        nullable=False,
        index=True,
    )

    title: Mapped[str] = mapped_column(
        String(200),
        nullable=False,
    )

    price_cents: Mapped[int | None] = mapped_column(
        Integer,
        nullable=True,
    )

    # Concurrent active matches allowed for the same start date
    capacity: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=1,
    )

    min_participants: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=1,
    )

    max_participants: Mapped[int | None] = mapped_column(
        Integer,
        nullable=True,
    )

    published: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=True,
    )

    # NULL falls back to settings.DEFAULT_CANCELLATION_POLICY
    cancellation_policy: Mapped[str | None] = mapped_column(
        String(20),
        nullable=True,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )

    # --- Relationships ---
    pricing_tiers: Mapped[list["GroupPricingTier"]] = relationship(
        back_populates="experience",
        order_by="GroupPricingTier.min_people",
    )


class GroupPricingTier(Base):
    __tablename__ = "group_pricing_tiers"

    __table_args__ = (
        CheckConstraint("price_per_person_cents >= 0", name="ck_tiers_non_negative_price"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        primary_key=True,
        default=uuid.uuid4,
    )

    experience_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("experiences.id"),
        nullable=False,
        index=True,
    )

    min_people: Mapped[int] = mapped_column(Integer, nullable=False)

    # NULL = no upper bound
    max_people: Mapped[int | None] = mapped_column(Integer, nullable=True)

    price_per_person_cents: Mapped[int] = mapped_column(Integer, nullable=False)

    experience: Mapped["Experience"] = relationship(
        back_populates="pricing_tiers",
    )
