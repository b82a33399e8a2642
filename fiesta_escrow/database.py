"""
Database engine, session management, and base model class.

This module sets up SQLAlchemy 2.0 with async support. Key components:

  - engine: The async database engine (connection pool for production DBs)
  - AsyncSessionLocal: Factory for creating async database sessions
  - Base: Declarative base class that all ORM models inherit from
  - get_db(): FastAPI dependency that provides a session per request

Session lifecycle:
  Each API request gets its own session via get_db(). The session commits on
  success and rolls back on unexpected exceptions. Domain errors
  (EscrowAPIError) still commit, so audit rows such as failed provider
  transactions survive the error response.

  Match transitions, dispute resolutions and provider confirmations commit
  inside the service while they still hold their keyed lock (see locks.py),
  so a concurrent request for the same row always reads the committed
  outcome.
"""

from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase

from fiesta_escrow.config import settings
from fiesta_escrow.exceptions import EscrowAPIError


# echo=True in debug mode logs all SQL statements
engine = create_async_engine(
    settings.DATABASE_URL,
    echo=settings.DEBUG,
)

# expire_on_commit=False prevents lazy-load errors after commit in async context
AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy ORM models."""
    pass


async def get_db():
    """
    FastAPI dependency that provides a database session.

    Usage in a route:
        @router.get("/wallet")
        async def read_wallet(db: AsyncSession = Depends(get_db)):
            ...
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except EscrowAPIError:
            # Business errors (e.g. ProviderError): commit so audit-trail
            # records like failed transactions are persisted.
            await session.commit()
            raise
        except Exception:
            await session.rollback()
            raise
