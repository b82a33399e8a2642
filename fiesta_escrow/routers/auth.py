"""
Authentication router — signup and login endpoints.

These are the only public endpoints besides /health and the provider
webhooks. Everything else requires a valid JWT token.

Endpoints:
  POST /auth/signup  — Register a new user (opens their wallet) and get a token
  POST /auth/login   — Authenticate and get a token

Security audit notes:
  - Plaintext passwords exist only in memory during request processing;
    they are hashed before any database operation and never logged.
  - JWT tokens appear only in response bodies, which are not logged.
"""

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from fiesta_escrow.database import get_db
from fiesta_escrow.schemas.auth import (
    UserSignupRequest,
    UserLoginRequest,
    TokenResponse,
    SignupResponse,
)
from fiesta_escrow.services import auth_service, wallet_service

router = APIRouter()


@router.post(
    "/signup",
    response_model=SignupResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Register a new user",
)
async def signup(
    request: UserSignupRequest,
    db: AsyncSession = Depends(get_db),
):
    """
    Register a new member.

    Creates the User and an empty Wallet in a single atomic transaction.
    Returns a JWT token so the user is immediately logged in after signup.

    - **email**: Must be a valid email format and not already registered
    - **password**: Minimum 8 characters
    - **display_name**: Shown to the other party of a match
    - **referral_code**: Optional code of the user who invited you
    """
    user, token = await auth_service.signup(
        db=db,
        email=request.email,
        password=request.password,
        display_name=request.display_name,
        referral_code=request.referral_code,
    )
    wallet = await wallet_service.get_wallet_for_user(db, user.id)

    return SignupResponse(
        user_id=user.id,
        email=user.email,
        user_type=user.user_type.value,
        referral_code=user.referral_code,
        wallet_id=wallet.id,
        token=token,
    )


@router.post(
    "/login",
    response_model=TokenResponse,
    summary="Authenticate and get a token",
)
async def login(
    request: UserLoginRequest,
    db: AsyncSession = Depends(get_db),
):
    """
    Authenticate with email and password.

    Returns a JWT bearer token that must be included in the Authorization
    header for all subsequent requests:

        Authorization: Bearer <token>
    """
    user, token = await auth_service.login(
        db=db,
        email=request.email,
        password=request.password,
    )

    return TokenResponse(token=token)
