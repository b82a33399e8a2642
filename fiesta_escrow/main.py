"""
FastAPI application factory and entry point.

This module creates and configures the FastAPI application:
  1. Lifespan manager — logging, DB table creation, payment gateways
  2. CORS middleware — allows frontend origins to make cross-origin requests
  3. Exception handlers — maps domain errors to HTTP responses
  4. Router registration — mounts all API endpoint groups

Running locally:
    uvicorn fiesta_escrow.main:app --reload

The --reload flag watches for file changes and restarts automatically,
which is ideal for development but should not be used in production.
"""

from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from fiesta_escrow.config import settings
from fiesta_escrow.database import engine, Base
from fiesta_escrow.exceptions import register_exception_handlers
from fiesta_escrow.logging_config import configure_logging
from fiesta_escrow.payments.gateway import build_payment_gateway
from fiesta_escrow.routers import admin, auth, disputes, matches, payments, wallet

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager (replaces deprecated @app.on_event).

    Startup:
      Configures logging and creates all database tables if they don't
      exist. This is a convenience for development; in production, you'd
      use Alembic migrations exclusively. Builds the payment gateways once
      so their HTTP connection pools are shared by every request.

    Shutdown:
      Closes provider HTTP clients and disposes of the database engine.
    """
    # --- Startup ---
    configure_logging()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    app.state.payment_gateway = build_payment_gateway()
    if app.state.payment_gateway.provider_name == "card":
        app.state.topup_gateway = app.state.payment_gateway
    else:
        app.state.topup_gateway = build_payment_gateway("card")
    logger.info(
        "Application started",
        payment_provider=app.state.payment_gateway.provider_name,
        currency=settings.CURRENCY,
    )
    yield
    # --- Shutdown ---
    await app.state.payment_gateway.client.aclose()
    if app.state.topup_gateway is not app.state.payment_gateway:
        await app.state.topup_gateway.client.aclose()
    await engine.dispose()


# Create the FastAPI application instance
app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Festival escrow API: wallets, payment holds, matches and disputes",
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware
# ---------------------------------------------------------------------------

# CORS: Allow specified frontend origins to make requests.
# In production, lock this down to your actual frontend domain(s).
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ---------------------------------------------------------------------------
# Exception handlers
# ---------------------------------------------------------------------------

register_exception_handlers(app)

# ---------------------------------------------------------------------------
# Routers
# ---------------------------------------------------------------------------

app.include_router(auth.router, prefix="/auth", tags=["Auth"])
app.include_router(wallet.router, prefix="/wallet", tags=["Wallet"])
app.include_router(matches.router, prefix="/matches", tags=["Matches"])
app.include_router(disputes.router, prefix="/disputes", tags=["Disputes"])
app.include_router(payments.router, prefix="/payments", tags=["Payments"])
app.include_router(admin.router, prefix="/admin", tags=["Admin"])


# ---------------------------------------------------------------------------
# Health check
# ---------------------------------------------------------------------------

@app.get("/health", tags=["Health"])
async def health_check():
    """
    Health check endpoint for deployment liveness checks (Kubernetes, Docker, etc.).

    Returns a simple JSON response indicating the service is running.
    """
    return {"status": "ok", "version": settings.APP_VERSION}
