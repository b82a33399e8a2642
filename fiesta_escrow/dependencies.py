"""
FastAPI dependencies for authentication, authorization and collaborators.

Dependencies are reusable functions that FastAPI injects into route handlers:

  get_current_user (JWT -> User)
      ├── get_current_member (User -> User)   [MEMBER role]
      └── require_admin (User -> User)        [ADMIN role]

  get_payment_gateway  -> gateway backing match holds (PAYMENT_PROVIDER)
  get_topup_gateway    -> card gateway used for wallet top-ups
  get_pricing_service  -> group pricing for new matches

Role-based access control:
  - MEMBER: travelers and hosts. Wallet and match endpoints are scoped to
    the authenticated user's own data by the service layer.
  - ADMIN: resolves disputes and reads every wallet and transaction through
    /admin/*, but holds no wallet activity of their own, so member money
    endpoints reject admins.

Gateways are built once at startup (see main.py lifespan) and stored on
app.state; tests replace them through app.dependency_overrides.
"""

import uuid

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from fiesta_escrow.database import get_db
from fiesta_escrow.models.user import User, UserType
from fiesta_escrow.payments.gateway import PaymentGatewayAdapter
from fiesta_escrow.security import decode_access_token
from fiesta_escrow.services.pricing_service import GroupPricingService, PricingService


# OAuth2PasswordBearer tells FastAPI where to look for the token:
# the "Authorization: Bearer <token>" header. The tokenUrl points to
# the login endpoint (used by Swagger UI's "Authorize" button).
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login")


async def get_current_user(
    token: str = Depends(oauth2_scheme),
    db: AsyncSession = Depends(get_db),
) -> User:
    """
    Extract and validate the JWT token, then return the corresponding User.

    Raises:
        HTTPException 401: If the token is invalid or the user doesn't exist.
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    try:
        payload = decode_access_token(token)
        user_id_str: str | None = payload.get("sub")
        if user_id_str is None:
            raise credentials_exception
        user_id = uuid.UUID(user_id_str)
    except (JWTError, ValueError):
        raise credentials_exception

    result = await db.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()

    if user is None or not user.is_active:
        raise credentials_exception

    return user


async def get_current_member(
    user: User = Depends(get_current_user),
) -> User:
    """
    Require a MEMBER: used by every endpoint that moves money.

    Raises:
        HTTPException 403: If the user is an admin.
    """
    if user.user_type == UserType.ADMIN:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin accounts cannot use member wallet endpoints. "
                   "Use /admin/* endpoints for read-only access.",
        )
    return user


async def require_admin(
    user: User = Depends(get_current_user),
) -> User:
    """
    Require the authenticated user to have the ADMIN role.

    Raises:
        HTTPException 403: If the user is not an admin.
    """
    if user.user_type != UserType.ADMIN:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required",
        )
    return user


def get_payment_gateway(request: Request) -> PaymentGatewayAdapter:
    return request.app.state.payment_gateway


def get_topup_gateway(request: Request) -> PaymentGatewayAdapter:
    return request.app.state.topup_gateway


def get_pricing_service() -> PricingService:
    return GroupPricingService()
