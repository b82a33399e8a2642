"""
Authentication service — signup and login business logic.

This module contains the core auth logic, separated from HTTP concerns.
The router calls these functions and translates the results into HTTP
responses, so the logic can be tested without spinning up a web server.

Signup flow:
  1. Check if email is already registered
  2. Resolve the optional referral code to the referring user
  3. Hash the password with Argon2id
  4. Create User + empty Wallet in a single database transaction
  5. Return a JWT token so the user is immediately logged in

Login flow:
  1. Look up user by email
  2. Verify password against stored hash
  3. Return a JWT token

Security notes:
  - Login returns the same error for "wrong password" and "email not found"
    to prevent user enumeration attacks
  - An unknown referral code is rejected rather than silently ignored, so a
    typo does not cost the referrer their reward
"""

import secrets
import string

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from fiesta_escrow.exceptions import DuplicateEmailError, InvalidCredentialsError, ValidationError
from fiesta_escrow.models.user import User, UserType
from fiesta_escrow.security import create_access_token, hash_password, verify_password
from fiesta_escrow.services import wallet_service

REFERRAL_CODE_ALPHABET = string.ascii_uppercase + string.digits
REFERRAL_CODE_LENGTH = 8


def _generate_referral_code() -> str:
    return "".join(secrets.choice(REFERRAL_CODE_ALPHABET) for _ in range(REFERRAL_CODE_LENGTH))


async def _unique_referral_code(db: AsyncSession) -> str:
    # Retry on collision; 36^8 codes make this effectively a single pass
    for _ in range(10):
        code = _generate_referral_code()
        existing = await db.execute(select(User.id).where(User.referral_code == code))
        if existing.first() is None:
            return code
    raise RuntimeError("Failed to generate a unique referral code")


async def signup(
    db: AsyncSession,
    email: str,
    password: str,
    display_name: str,
    referral_code: str | None = None,
) -> tuple[User, str]:
    """
    Register a new user and open their wallet.

    Both records are created in one transaction: if either fails, neither
    is persisted.

    Returns:
        Tuple of (User instance, JWT token string).

    Raises:
        DuplicateEmailError: If the email is already registered.
        ValidationError: If referral_code does not belong to any user.
    """
    result = await db.execute(select(User).where(User.email == email))
    if result.scalar_one_or_none():
        raise DuplicateEmailError(email)

    referred_by_id = None
    if referral_code:
        referrer = await db.execute(
            select(User.id).where(User.referral_code == referral_code.strip().upper())
        )
        referred_by_id = referrer.scalar_one_or_none()
        if referred_by_id is None:
            raise ValidationError("Unknown referral code")

    user = User(
        email=email,
        hashed_password=hash_password(password),
        display_name=display_name,
        user_type=UserType.MEMBER,
        referral_code=await _unique_referral_code(db),
        referred_by_id=referred_by_id,
    )
    db.add(user)
    # Flush to get the user.id assigned (needed for the wallet FK)
    await db.flush()

    await wallet_service.create_wallet(db, user.id)

    # "sub" (subject) is the standard claim for user identity
    token = create_access_token(data={"sub": str(user.id)})
    return user, token


async def login(
    db: AsyncSession,
    email: str,
    password: str,
) -> tuple[User, str]:
    """
    Authenticate a user and return a JWT token.

    Raises:
        InvalidCredentialsError: If email doesn't exist, the password is
            wrong, or the user is deactivated.
    """
    result = await db.execute(select(User).where(User.email == email))
    user = result.scalar_one_or_none()

    # Same error for every case: no user enumeration
    if not user:
        raise InvalidCredentialsError()

    if not verify_password(password, user.hashed_password):
        raise InvalidCredentialsError()

    if not user.is_active:
        raise InvalidCredentialsError()

    token = create_access_token(data={"sub": str(user.id)})
    return user, token
