"""
Provider webhooks — push notifications that a payment changed state.

A webhook is only a hint. The handler never trusts the status in the
payload; it extracts the payment id and runs the same confirmation the
client would (confirm_top_up / confirm_payment), which asks the provider
for the authoritative status. For a match hold this includes re-reading an
already authorized hold, so a provider-side cancellation is noticed.
A forged or replayed event can therefore at worst trigger a redundant
provider lookup, and confirmations are idempotent, so duplicate
deliveries are harmless.

Payload shapes:
    card:  {"type": "payment_intent.succeeded", "data": {"object": {"id": "pi_..."}}}
    order: {"event_type": "CHECKOUT.ORDER.APPROVED", "resource": {"id": "<order id>"}}
           payment events (PAYMENT.AUTHORIZATION.*, PAYMENT.CAPTURE.*) carry
           the order id in resource.supplementary_data.related_ids.order_id
"""

from dataclasses import dataclass

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from fiesta_escrow.exceptions import ValidationError
from fiesta_escrow.models.payment_intent import PaymentContext, PaymentIntentRecord
from fiesta_escrow.payments.gateway import PaymentGatewayAdapter
from fiesta_escrow.services import match_service, topup_service

logger = structlog.get_logger(__name__)

CARD_EVENTS = frozenset(
    {
        "payment_intent.succeeded",
        "payment_intent.amount_capturable_updated",
        "payment_intent.processing",
        "payment_intent.payment_failed",
        "payment_intent.canceled",
    }
)

ORDER_EVENTS = frozenset(
    {
        "CHECKOUT.ORDER.APPROVED",
        "CHECKOUT.ORDER.COMPLETED",
        "PAYMENT.AUTHORIZATION.CREATED",
        "PAYMENT.AUTHORIZATION.VOIDED",
        "PAYMENT.CAPTURE.COMPLETED",
        "PAYMENT.CAPTURE.DENIED",
    }
)


@dataclass
class WebhookResult:
    handled: bool
    external_id: str | None = None
    status: str | None = None


def extract_payment_id(provider: str, payload: dict) -> tuple[str | None, str | None]:
    """Return (event type, provider payment id) for a supported event, else (type, None)."""
    if provider == "card":
        event_type = payload.get("type")
        if event_type not in CARD_EVENTS:
            return event_type, None
        obj = (payload.get("data") or {}).get("object") or {}
        return event_type, obj.get("id")

    if provider == "order":
        event_type = payload.get("event_type")
        if event_type not in ORDER_EVENTS:
            return event_type, None
        resource = payload.get("resource") or {}
        if event_type.startswith("CHECKOUT.ORDER."):
            return event_type, resource.get("id")
        related = (resource.get("supplementary_data") or {}).get("related_ids") or {}
        return event_type, related.get("order_id")

    raise ValidationError(f"Unknown payment provider: {provider}")


async def handle_event(
    db: AsyncSession,
    provider: str,
    payload: dict,
    payment_gateway: PaymentGatewayAdapter,
    topup_gateway: PaymentGatewayAdapter,
) -> WebhookResult:
    """Route a provider event to the confirmation of the payment it names."""
    event_type, external_id = extract_payment_id(provider, payload)
    if external_id is None:
        logger.info("Webhook ignored", provider=provider, event_type=event_type)
        return WebhookResult(handled=False)

    result = await db.execute(
        select(PaymentIntentRecord.context, PaymentIntentRecord.context_id, PaymentIntentRecord.provider)
        .where(PaymentIntentRecord.external_id == external_id)
    )
    row = result.first()
    if row is None or row.provider != provider:
        logger.info(
            "Webhook for unknown payment",
            provider=provider,
            event_type=event_type,
            external_id=external_id,
        )
        return WebhookResult(handled=False, external_id=external_id)

    if row.context == PaymentContext.TOPUP.value:
        outcome = await topup_service.confirm_top_up(db, topup_gateway, external_id)
        status = outcome.status
    else:
        payment_status = await match_service.confirm_payment(
            db, payment_gateway, row.context_id, refresh=True
        )
        status = payment_status.value

    logger.info(
        "Webhook processed",
        provider=provider,
        event_type=event_type,
        external_id=external_id,
        context=row.context,
        status=status,
    )
    return WebhookResult(handled=True, external_id=external_id, status=status)
