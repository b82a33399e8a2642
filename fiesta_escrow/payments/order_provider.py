"""
Order provider client (checkout orders API).

Flow for a match hold:
  1. create() posts an order with intent AUTHORIZE and returns the payer
     approval URL.
  2. The payer approves on the provider's site (order status APPROVED).
  3. authorize() posts /authorize, which places the hold and yields an
     authorization id. Calling it again returns the existing authorization.
  4. capture()/void() act on the authorization; refund() acts on the
     capture id.

Authentication is OAuth2 client credentials. The access token is cached and
refreshed five minutes before it expires.

Raw statuses returned: CREATED, SAVED, PAYER_ACTION_REQUIRED, APPROVED,
COMPLETED, VOIDED. A COMPLETED order carries either an authorization id
(held) or a capture id (charged).
"""

import asyncio
import time

import httpx
import structlog

from fiesta_escrow.config import settings
from fiesta_escrow.exceptions import ProviderError
from fiesta_escrow.payments.base import (
    PaymentProviderClient,
    ProviderHTTPClient,
    ProviderPayment,
    format_minor_units,
)

logger = structlog.get_logger(__name__)

# Refresh the token this many seconds before the provider says it expires
TOKEN_REFRESH_MARGIN_SECONDS = 300


class OrderProviderClient(PaymentProviderClient):
    name = "order"

    def __init__(
        self,
        client_id: str | None = None,
        client_secret: str | None = None,
        base_url: str | None = None,
        brand_name: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.client_id = client_id or settings.ORDER_PROVIDER_CLIENT_ID
        self.client_secret = client_secret or settings.ORDER_PROVIDER_CLIENT_SECRET
        self.brand_name = brand_name or settings.ORDER_PROVIDER_BRAND_NAME
        self.http = ProviderHTTPClient(
            self.name,
            base_url or settings.order_provider_base_url,
            transport=transport,
        )
        self._access_token: str | None = None
        self._token_expires_at = 0.0
        self._token_lock = asyncio.Lock()

    # -------------------------------------------------------------------
    # Authentication
    # -------------------------------------------------------------------

    async def _get_access_token(self) -> str:
        async with self._token_lock:
            if self._access_token and time.monotonic() < self._token_expires_at:
                return self._access_token
            if not self.client_id or not self.client_secret:
                raise ProviderError(self.name, "order provider credentials are not configured")

            body = await self.http.request_json(
                "POST",
                "/v1/oauth2/token",
                data={"grant_type": "client_credentials"},
                auth=(self.client_id, self.client_secret),
            )
            self._access_token = body["access_token"]
            expires_in = int(body.get("expires_in", 0))
            self._token_expires_at = time.monotonic() + max(expires_in - TOKEN_REFRESH_MARGIN_SECONDS, 0)
            logger.debug("Order provider token refreshed", expires_in=expires_in)
            return self._access_token

    async def _headers(self, request_id: str | None = None) -> dict[str, str]:
        token = await self._get_access_token()
        headers = {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
        }
        if request_id:
            headers["PayPal-Request-Id"] = request_id
        return headers

    # -------------------------------------------------------------------
    # Response parsing
    # -------------------------------------------------------------------

    @staticmethod
    def _to_payment(body: dict) -> ProviderPayment:
        approval_url = None
        for link in body.get("links", []):
            if link.get("rel") in ("approve", "payer-action"):
                approval_url = link.get("href")
                break

        authorization_id = None
        capture_id = None
        for unit in body.get("purchase_units", []):
            payments = unit.get("payments", {})
            for authorization in payments.get("authorizations", []):
                if authorization.get("status") in ("CREATED", "CAPTURED", "PARTIALLY_CAPTURED"):
                    authorization_id = authorization["id"]
            for capture in payments.get("captures", []):
                if capture.get("status") in ("COMPLETED", "PENDING", "PARTIALLY_REFUNDED", "REFUNDED"):
                    capture_id = capture["id"]

        return ProviderPayment(
            external_id=body["id"],
            status=body.get("status", "CREATED"),
            approval_url=approval_url,
            authorization_id=authorization_id,
            capture_id=capture_id,
            raw=body,
        )

    # -------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------

    async def create(
        self,
        amount_cents: int,
        currency: str,
        *,
        reference_id: str,
        description: str | None = None,
        manual_capture: bool = True,
        return_url: str | None = None,
        cancel_url: str | None = None,
        metadata: dict[str, str] | None = None,
    ) -> ProviderPayment:
        purchase_unit = {
            "reference_id": reference_id,
            "custom_id": reference_id,
            "amount": {
                "currency_code": currency.upper(),
                "value": format_minor_units(amount_cents),
            },
        }
        if description:
            purchase_unit["description"] = description[:127]

        application_context = {
            "brand_name": self.brand_name,
            "user_action": "PAY_NOW",
            "shipping_preference": "NO_SHIPPING",
        }
        if return_url:
            application_context["return_url"] = return_url
        if cancel_url:
            application_context["cancel_url"] = cancel_url

        body = await self.http.request_json(
            "POST",
            "/v2/checkout/orders",
            json={
                "intent": "AUTHORIZE" if manual_capture else "CAPTURE",
                "purchase_units": [purchase_unit],
                "application_context": application_context,
            },
            headers=await self._headers(request_id=f"create-{reference_id}"),
        )
        payment = self._to_payment(body)
        payment.amount_cents = amount_cents
        return payment

    async def retrieve(self, external_id: str) -> ProviderPayment:
        body = await self.http.request_json(
            "GET",
            f"/v2/checkout/orders/{external_id}",
            headers=await self._headers(),
        )
        return self._to_payment(body)

    async def authorize(self, external_id: str) -> ProviderPayment:
        current = await self.retrieve(external_id)
        if current.authorization_id or current.capture_id:
            return current
        if current.status != "APPROVED":
            # Payer has not approved yet; nothing to authorize.
            return current

        body = await self.http.request_json(
            "POST",
            f"/v2/checkout/orders/{external_id}/authorize",
            json={},
            headers=await self._headers(request_id=f"authorize-{external_id}"),
        )
        payment = self._to_payment(body)
        if not payment.authorization_id:
            raise ProviderError(self.name, f"order {external_id} authorized without an authorization id")
        logger.info("Order authorized", order_id=external_id, authorization_id=payment.authorization_id)
        return payment

    async def capture(self, external_id: str, authorization_id: str | None = None) -> ProviderPayment:
        if not authorization_id:
            raise ProviderError(self.name, f"order {external_id} has no authorization to capture")
        body = await self.http.request_json(
            "POST",
            f"/v2/payments/authorizations/{authorization_id}/capture",
            json={"final_capture": True},
            headers=await self._headers(request_id=f"capture-{authorization_id}"),
        )
        return ProviderPayment(
            external_id=external_id,
            status=body.get("status", "COMPLETED"),
            authorization_id=authorization_id,
            capture_id=body["id"],
            raw=body,
        )

    async def void(self, external_id: str, authorization_id: str | None = None) -> None:
        if not authorization_id:
            # An unapproved order holds no funds and simply expires.
            logger.info("Order void skipped, no authorization", order_id=external_id)
            return
        await self.http.request_json(
            "POST",
            f"/v2/payments/authorizations/{authorization_id}/void",
            headers=await self._headers(request_id=f"void-{authorization_id}"),
        )

    async def refund(
        self,
        external_id: str,
        amount_cents: int,
        currency: str,
        *,
        capture_id: str | None = None,
        idempotency_key: str | None = None,
    ) -> str:
        if not capture_id:
            raise ProviderError(self.name, f"order {external_id} has no capture to refund")
        body = await self.http.request_json(
            "POST",
            f"/v2/payments/captures/{capture_id}/refund",
            json={
                "amount": {
                    "value": format_minor_units(amount_cents),
                    "currency_code": currency.upper(),
                },
                "note_to_payer": "Refund for your reservation",
            },
            headers=await self._headers(request_id=idempotency_key),
        )
        return body["id"]

    async def aclose(self) -> None:
        await self.http.aclose()
