"""
Payments router — provider webhook receiver.

Endpoints:
  POST /payments/webhooks/{provider}  — card or order provider event

Unauthenticated by JWT: providers call it directly. Card events are
signature-checked when CARD_PROVIDER_WEBHOOK_SECRET is set. Every event is
re-confirmed against the provider before anything moves (see
services/webhook_service.py), and unknown payments are acknowledged with
200 so the provider stops retrying.
"""

import json
from typing import Literal

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from fiesta_escrow.config import settings
from fiesta_escrow.database import get_db
from fiesta_escrow.dependencies import get_payment_gateway, get_topup_gateway
from fiesta_escrow.payments.gateway import PaymentGatewayAdapter
from fiesta_escrow.security import verify_webhook_signature
from fiesta_escrow.services import webhook_service

router = APIRouter()


class WebhookAck(BaseModel):
    received: bool = True
    handled: bool
    external_id: str | None = None
    status: str | None = None


@router.post(
    "/webhooks/{provider}",
    response_model=WebhookAck,
    summary="Receive a payment provider webhook",
)
async def receive_webhook(
    provider: Literal["card", "order"],
    request: Request,
    signature: str | None = Header(None, alias="Provider-Signature"),
    db: AsyncSession = Depends(get_db),
    payment_gateway: PaymentGatewayAdapter = Depends(get_payment_gateway),
    topup_gateway: PaymentGatewayAdapter = Depends(get_topup_gateway),
):
    body = await request.body()

    if provider == "card" and settings.CARD_PROVIDER_WEBHOOK_SECRET:
        if not verify_webhook_signature(
            body,
            signature,
            settings.CARD_PROVIDER_WEBHOOK_SECRET,
            settings.WEBHOOK_TOLERANCE_SECONDS,
        ):
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid signature")

    try:
        payload = json.loads(body)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Malformed JSON body")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Malformed JSON body")

    result = await webhook_service.handle_event(
        db, provider, payload, payment_gateway, topup_gateway
    )
    return WebhookAck(
        handled=result.handled,
        external_id=result.external_id,
        status=result.status,
    )
