"""
Custom exception classes and FastAPI exception handlers.

The service layer raises domain-specific errors (like InsufficientBalanceError)
without importing HTTP concepts. The handlers registered here translate them
into consistent JSON responses: {"detail": ..., "error_type": ...}.

Every financial operation is all-or-nothing: when one of these is raised the
wallet and match rows are exactly as they were before the attempt. The only
rows that survive are audit records (e.g. a failed provider transaction).

Exception hierarchy:
    EscrowAPIError (base)
    ├── InsufficientBalanceError   — debit exceeds the wallet balance
    ├── InvalidTransitionError     — match/dispute action from a disallowed status
    ├── ProviderError              — external payment provider call failed
    ├── UnauthorizedError          — actor not party to the match/dispute
    ├── AlreadyResolvedError       — second resolution of one dispute
    ├── PaymentNotAuthorizedError  — accept() on a priced match with no held funds
    ├── NotFoundError              — wallet, match, dispute or intent missing
    ├── ValidationError            — business-rule input rejection
    ├── ConflictError              — an active match or dispute already exists
    ├── DuplicateEmailError
    └── InvalidCredentialsError

Duplicate provider confirmations are deliberately NOT an error: the second
caller simply receives the already-applied result.
"""

import uuid

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

logger = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# Base exception
# ---------------------------------------------------------------------------

class EscrowAPIError(Exception):
    """Base exception for all escrow domain errors."""

    status_code = 400
    error_type = "escrow_error"

    def __init__(self, detail: str = "An error occurred"):
        self.detail = detail
        super().__init__(self.detail)


# ---------------------------------------------------------------------------
# Domain exceptions
# ---------------------------------------------------------------------------

class InsufficientBalanceError(EscrowAPIError):
    """
    Raised when a debit would cause a negative balance.

    Attributes:
        wallet_id: The wallet that lacks sufficient funds.
        requested_cents: The amount the caller tried to debit.
        available_cents: The balance at the time of the attempt.
    """

    status_code = 422
    error_type = "insufficient_balance"

    def __init__(
        self,
        wallet_id: uuid.UUID,
        requested_cents: int,
        available_cents: int,
    ):
        self.wallet_id = wallet_id
        self.requested_cents = requested_cents
        self.available_cents = available_cents
        super().__init__(
            f"Insufficient balance: requested {requested_cents} cents, "
            f"available {available_cents} cents"
        )


class InvalidTransitionError(EscrowAPIError):
    """Raised when an action is requested from a status that does not allow it."""

    status_code = 409
    error_type = "invalid_transition"

    def __init__(self, entity: str, entity_id: uuid.UUID, current: str, action: str):
        self.entity = entity
        self.entity_id = entity_id
        self.current = current
        self.action = action
        super().__init__(f"Cannot {action} {entity} {entity_id} in status '{current}'")


class ProviderError(EscrowAPIError):
    """Raised when an external payment provider call fails."""

    status_code = 502
    error_type = "provider_error"

    def __init__(self, provider: str, detail: str, status: int | None = None):
        self.provider = provider
        self.provider_status = status
        super().__init__(f"{provider} provider error: {detail}")


class UnauthorizedError(EscrowAPIError):
    """Raised when an actor is not allowed to act on a match or dispute."""

    status_code = 403
    error_type = "unauthorized"

    def __init__(self, detail: str = "You are not allowed to perform this action"):
        super().__init__(detail)


class AlreadyResolvedError(EscrowAPIError):
    """Raised on a second resolution attempt for the same dispute."""

    status_code = 409
    error_type = "already_resolved"

    def __init__(self, dispute_id: uuid.UUID, status: str):
        self.dispute_id = dispute_id
        super().__init__(f"Dispute {dispute_id} is already resolved ({status})")


class PaymentNotAuthorizedError(EscrowAPIError):
    """Raised when a priced match is accepted before its payment is held."""

    status_code = 409
    error_type = "payment_not_authorized"

    def __init__(self, match_id: uuid.UUID, payment_status: str):
        self.match_id = match_id
        self.payment_status = payment_status
        super().__init__(
            f"Payment for match {match_id} is not authorized (status '{payment_status}')"
        )


class NotFoundError(EscrowAPIError):
    """Raised when a requested entity does not exist."""

    status_code = 404
    error_type = "not_found"

    def __init__(self, entity: str, entity_id):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} {entity_id} not found")


class ValidationError(EscrowAPIError):
    """Raised when input violates a business rule (minimum top-up, capacity...)."""

    error_type = "validation_error"


class ConflictError(EscrowAPIError):
    """Raised when the request would duplicate an active match or a dispute."""

    status_code = 409
    error_type = "conflict"


class DuplicateEmailError(EscrowAPIError):
    """Raised when attempting to register with an email that's already in use."""

    status_code = 409
    error_type = "duplicate_email"

    def __init__(self, email: str):
        self.email = email
        super().__init__(f"Email {email} is already registered")


class InvalidCredentialsError(EscrowAPIError):
    """Raised when login credentials are incorrect."""

    status_code = 401
    error_type = "invalid_credentials"

    def __init__(self):
        super().__init__("Invalid email or password")


# ---------------------------------------------------------------------------
# FastAPI exception handlers
# ---------------------------------------------------------------------------

def register_exception_handlers(app: FastAPI) -> None:
    """
    Register custom exception handlers with the FastAPI application.

    Each domain exception carries its own status code and error_type, so a
    single handler covers the hierarchy; a few add extra fields.
    """

    @app.exception_handler(InsufficientBalanceError)
    async def insufficient_balance_handler(
        request: Request, exc: InsufficientBalanceError
    ) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "detail": exc.detail,
                "error_type": exc.error_type,
                "requested_cents": exc.requested_cents,
                "available_cents": exc.available_cents,
            },
        )

    @app.exception_handler(InvalidTransitionError)
    async def invalid_transition_handler(
        request: Request, exc: InvalidTransitionError
    ) -> JSONResponse:
        logger.warning(
            "Rejected transition, possible duplicate submission",
            entity=exc.entity,
            entity_id=str(exc.entity_id),
            current=exc.current,
            action=exc.action,
            path=request.url.path,
        )
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "detail": exc.detail,
                "error_type": exc.error_type,
                "current_status": exc.current,
            },
        )

    @app.exception_handler(ProviderError)
    async def provider_error_handler(
        request: Request, exc: ProviderError
    ) -> JSONResponse:
        logger.error("Payment provider failure", provider=exc.provider, detail=exc.detail)
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.detail, "error_type": exc.error_type},
        )

    @app.exception_handler(EscrowAPIError)
    async def escrow_error_handler(
        request: Request, exc: EscrowAPIError
    ) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.detail, "error_type": exc.error_type},
        )
