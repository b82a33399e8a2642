"""
User model — the authentication identity and the owner of one wallet.

Each User is a login credential (email + hashed password) with a role. A
Wallet is created in the same database transaction as the User (see
services/auth_service.py), so every user always has exactly one wallet.

User types:
  - ADMIN: resolves disputes and reads the org-wide audit endpoints
  - MEMBER: travelers and hosts — the default role for signup

Referrals:
  Every user gets a unique referral_code at signup. A user who signs up with
  someone else's code records them as referred_by; the referrer is credited
  once, when the referred user's first match completes.
"""

import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import String, Boolean, DateTime, Enum, ForeignKey
from sqlalchemy.orm import Mapped, mapped_column, relationship

from fiesta_escrow.database import Base


class UserType(str, enum.Enum):
    """Role a user holds within the platform."""
    ADMIN = "admin"
    MEMBER = "member"


class User(Base):
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(
        primary_key=True,
        default=uuid.uuid4,
    )

    email: Mapped[str] = mapped_column(
        String(255),
        unique=True,
        nullable=False,
        index=True,
    )

    # Argon2id hash of the password (never store plaintext!)
    hashed_password: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )

    display_name: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
    )

    user_type: Mapped[UserType] = mapped_column(
        Enum(UserType),
        default=UserType.MEMBER,
        nullable=False,
    )

    # Soft-disable: deactivated users can't log in but their ledger is preserved
    is_active: Mapped[bool] = mapped_column(
        Boolean,
        default=True,
        nullable=False,
    )

    referral_code: Mapped[str] = mapped_column(
        String(12),
        unique=True,
        nullable=False,
    )

    referred_by_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("users.id"),
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

    # --- Relationships ---
    wallet: Mapped["Wallet"] = relationship(
        back_populates="owner",
        uselist=False,
    )
