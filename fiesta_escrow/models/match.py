"""
Match model — a reservation linking a requester and a host around one experience.

Lifecycle (enforced by services/match_service.py):

    pending --accept--> accepted --complete--> completed
    pending --reject--> rejected
    {pending, accepted} --cancel--> cancelled

rejected, cancelled and completed are terminal.

Payment fields:
  - total_price_cents: priced once at request time; 0 for free experiences
  - external_payment_ref: the provider id of the hold (payment intent or
    order). Set when the hold is created and never changed afterwards.
  - payment_provider: which gateway created the hold ("card" or "order"),
    recorded for the audit trail only.
"""

import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import String, Integer, DateTime, ForeignKey, CheckConstraint
from sqlalchemy.orm import Mapped, mapped_column

from fiesta_escrow.database import Base


class MatchStatus(str, enum.Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


TERMINAL_MATCH_STATUSES = frozenset(
    {MatchStatus.REJECTED.value, MatchStatus.CANCELLED.value, MatchStatus.COMPLETED.value}
)


class Match(Base):
    __tablename__ = "matches"

    __table_args__ = (
        CheckConstraint("participants >= 1", name="ck_matches_participants"),
        CheckConstraint("total_price_cents >= 0", name="ck_matches_non_negative_price"),
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

    requester_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id"),
        nullable=False,
        index=True,
    )

    host_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id"),
        nullable=False,
        index=True,
    )

    status: Mapped[str] = mapped_column(
        String(10),
        nullable=False,
        default=MatchStatus.PENDING.value,
    )

    participants: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=1,
    )

    total_price_cents: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
    )

    external_payment_ref: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
        unique=True,
    )

    payment_provider: Mapped[str | None] = mapped_column(
        String(10),
        nullable=True,
    )

    # Used by the time-based cancellation policies
    start_date: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
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

    @property
    def is_priced(self) -> bool:
        return self.total_price_cents > 0
