"""
Security utilities: password hashing, JWT tokens, Fernet encryption and webhook signatures.

Four concerns are handled here:

1. PASSWORD HASHING (Argon2)
   - Passwords are never stored in plaintext
   - passlib's CryptContext manages the scheme; "deprecated='auto'" lets a
     future scheme take over without invalidating existing hashes

2. JWT TOKENS
   - After login, the user receives a signed JWT whose "sub" is the user ID
   - Signed with SECRET_KEY using HS256, expiring after
     ACCESS_TOKEN_EXPIRE_MINUTES

3. FERNET ENCRYPTION (AES-128-CBC + HMAC-SHA256)
   - Provider client secrets (the token a browser needs to confirm a card
     payment) are stored encrypted on the PaymentIntentRecord so a resumed
     checkout can be handed the same secret without re-creating the intent
   - The key is loaded from SECRET_ENCRYPTION_KEY, never hardcoded

4. WEBHOOK SIGNATURES (HMAC-SHA256)
   - Card provider webhooks carry a timestamped signature header; it is
     checked against CARD_PROVIDER_WEBHOOK_SECRET with a constant-time
     comparison
"""

import hashlib
import hmac
import time
from datetime import datetime, timedelta, timezone

from cryptography.fernet import Fernet
from jose import jwt
from passlib.context import CryptContext

from fiesta_escrow.config import settings


# ---------------------------------------------------------------------------
# 1. Password Hashing (Argon2)
# ---------------------------------------------------------------------------

pwd_context = CryptContext(schemes=["argon2"], deprecated="auto")


def hash_password(plain_password: str) -> str:
    """Hash a plaintext password using Argon2id."""
    return pwd_context.hash(plain_password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """Verify a plaintext password against a stored Argon2 hash."""
    return pwd_context.verify(plain_password, hashed_password)


# ---------------------------------------------------------------------------
# 2. JWT Tokens
# ---------------------------------------------------------------------------


def create_access_token(data: dict, expires_delta: timedelta | None = None) -> str:
    """
    Create a signed JWT access token.

    Args:
        data: Dictionary of claims to encode (must include "sub").
        expires_delta: Optional custom expiration time. Defaults to
                       ACCESS_TOKEN_EXPIRE_MINUTES from settings.
    """
    to_encode = data.copy()

    if expires_delta:
        expire = datetime.now(timezone.utc) + expires_delta
    else:
        expire = datetime.now(timezone.utc) + timedelta(
            minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES
        )

    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def decode_access_token(token: str) -> dict:
    """
    Decode and verify a JWT access token.

    Raises:
        JWTError: If the token is expired, tampered with, or invalid.
    """
    return jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])


# ---------------------------------------------------------------------------
# 3. Fernet Encryption (provider client secrets at rest)
# ---------------------------------------------------------------------------

_fernet = Fernet(settings.SECRET_ENCRYPTION_KEY.encode())


def encrypt_value(plaintext: str) -> bytes:
    """Encrypt a string for storage in a LargeBinary column."""
    return _fernet.encrypt(plaintext.encode())


def decrypt_value(ciphertext: bytes) -> str:
    """
    Decrypt a Fernet-encrypted value back to plaintext.

    Raises:
        cryptography.fernet.InvalidToken: If the data is corrupted or
            the encryption key doesn't match.
    """
    return _fernet.decrypt(ciphertext).decode()


# ---------------------------------------------------------------------------
# 4. Webhook Signatures (HMAC-SHA256)
# ---------------------------------------------------------------------------


def compute_webhook_signature(payload: bytes, timestamp: str, secret: str) -> str:
    """HMAC-SHA256 over "<timestamp>.<raw body>", hex encoded."""
    message = timestamp.encode() + b"." + payload
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


def verify_webhook_signature(
    payload: bytes,
    header: str | None,
    secret: str,
    tolerance_seconds: int,
    now: int | None = None,
) -> bool:
    """
    Check a "t=<unix ts>,v1=<hex sig>" signature header against the raw body.

    Any v1 entry may match (the provider sends several while rotating
    secrets). Timestamps further than tolerance_seconds from now are
    rejected to stop replays.
    """
    if not header:
        return False
    timestamp = None
    signatures = []
    for part in header.split(","):
        key, _, value = part.strip().partition("=")
        if key == "t":
            timestamp = value
        elif key == "v1":
            signatures.append(value)
    if timestamp is None or not signatures:
        return False
    try:
        skew = abs((now or int(time.time())) - int(timestamp))
    except ValueError:
        return False
    if skew > tolerance_seconds:
        return False
    expected = compute_webhook_signature(payload, timestamp, secret)
    return any(hmac.compare_digest(expected, candidate) for candidate in signatures)
