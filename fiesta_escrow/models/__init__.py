"""
SQLAlchemy ORM models package.

All models are imported here so that:
  1. Base.metadata knows every table before create_all() runs
  2. Other modules can import from fiesta_escrow.models directly
"""

from fiesta_escrow.models.user import User, UserType  # noqa: F401
from fiesta_escrow.models.wallet import Wallet  # noqa: F401
from fiesta_escrow.models.experience import Experience, GroupPricingTier, CancellationPolicy  # noqa: F401
from fiesta_escrow.models.match import Match, MatchStatus  # noqa: F401
from fiesta_escrow.models.transaction import Transaction, TransactionType, TransactionStatus  # noqa: F401
from fiesta_escrow.models.dispute import Dispute, DisputeStatus, DisputeReason, DisputeOutcome  # noqa: F401
from fiesta_escrow.models.payment_intent import PaymentIntentRecord, PaymentContext, PaymentStatus  # noqa: F401
