"""
Dispute model — a post-completion claim on a match, resolved once by an admin.

One dispute per match (UNIQUE match_id). Opened by either party; the other
party becomes the respondent.

Status flow:
    open -> under_review -> resolved_refund | resolved_partial_refund
                            | resolved_no_refund | closed
    open -> resolved_* | closed

Once in any resolved_* or closed status the dispute is final.
"""

import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import String, Integer, DateTime, ForeignKey, Text
from sqlalchemy.orm import Mapped, mapped_column

from fiesta_escrow.database import Base


class DisputeStatus(str, enum.Enum):
    OPEN = "open"
    UNDER_REVIEW = "under_review"
    RESOLVED_REFUND = "resolved_refund"
    RESOLVED_PARTIAL_REFUND = "resolved_partial_refund"
    RESOLVED_NO_REFUND = "resolved_no_refund"
    CLOSED = "closed"


FINAL_DISPUTE_STATUSES = frozenset(
    {
        DisputeStatus.RESOLVED_REFUND.value,
        DisputeStatus.RESOLVED_PARTIAL_REFUND.value,
        DisputeStatus.RESOLVED_NO_REFUND.value,
        DisputeStatus.CLOSED.value,
    }
)


class DisputeReason(str, enum.Enum):
    NO_SHOW = "no_show"
    EXPERIENCE_MISMATCH = "experience_mismatch"
    SAFETY_CONCERN = "safety_concern"
    PAYMENT_ISSUE = "payment_issue"
    COMMUNICATION = "communication"
    OTHER = "other"


class DisputeOutcome(str, enum.Enum):
    REFUND = "refund"
    PARTIAL_REFUND = "partial_refund"
    NO_REFUND = "no_refund"


OUTCOME_STATUS = {
    DisputeOutcome.REFUND: DisputeStatus.RESOLVED_REFUND,
    DisputeOutcome.PARTIAL_REFUND: DisputeStatus.RESOLVED_PARTIAL_REFUND,
    DisputeOutcome.NO_REFUND: DisputeStatus.RESOLVED_NO_REFUND,
}


class Dispute(Base):
    __tablename__ = "disputes"

    id: Mapped[uuid.UUID] = mapped_column(
        primary_key=True,
        default=uuid.uuid4,
    )

    match_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("matches.id"),
        unique=True,
        nullable=False,
    )

    opened_by_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id"),
        nullable=False,
    )

    respondent_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id"),
        nullable=False,
    )

    reason: Mapped[str] = mapped_column(String(30), nullable=False)

    description: Mapped[str] = mapped_column(Text, nullable=False)

    status: Mapped[str] = mapped_column(
        String(30),
        nullable=False,
        default=DisputeStatus.OPEN.value,
    )

    refund_amount_cents: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
    )

    resolution_note: Mapped[str | None] = mapped_column(Text, nullable=True)

    resolved_by_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("users.id"),
        nullable=True,
    )

    resolved_at: Mapped[datetime | None] = mapped_column(
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
