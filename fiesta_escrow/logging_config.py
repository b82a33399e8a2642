"""
Structured logging setup.

Every module obtains its logger with ``structlog.get_logger(__name__)`` and
logs events as a short message plus key/value context:

    logger.info("Wallet credited", wallet_id=str(wallet.id), amount_cents=450)

configure_logging() is called once from the application lifespan. It routes
structlog through the standard library so uvicorn and SQLAlchemy output share
the same handler and level.
"""

import logging
import sys

import structlog

from fiesta_escrow.config import settings


def configure_logging(level: str | None = None, json_output: bool | None = None) -> None:
    """Configure structlog and the stdlib root logger."""
    level_name = (level or settings.LOG_LEVEL).upper()
    as_json = settings.LOG_JSON if json_output is None else json_output

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, level_name, logging.INFO),
    )

    renderer = (
        structlog.processors.JSONRenderer()
        if as_json
        else structlog.dev.ConsoleRenderer(colors=False)
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level_name, logging.INFO)
        ),
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
