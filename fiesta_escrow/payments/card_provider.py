"""
Card provider client (payment intents API).

Wire format: form-encoded requests, JSON responses, secret key as Bearer
token. A payment intent created with capture_method=manual becomes
"requires_capture" once the payer confirms it client-side with the returned
client_secret; that is the authorization hold used for matches. Top-ups use
automatic capture and go straight to "succeeded".

Raw statuses returned: requires_payment_method, requires_confirmation,
requires_action, processing, requires_capture, succeeded, canceled.
"""

import httpx

from fiesta_escrow.config import settings
from fiesta_escrow.exceptions import ProviderError
from fiesta_escrow.payments.base import PaymentProviderClient, ProviderHTTPClient, ProviderPayment


class CardProviderClient(PaymentProviderClient):
    name = "card"

    def __init__(
        self,
        secret_key: str | None = None,
        base_url: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.secret_key = secret_key or settings.CARD_PROVIDER_SECRET_KEY
        self.http = ProviderHTTPClient(
            self.name,
            base_url or settings.CARD_PROVIDER_BASE_URL,
            transport=transport,
        )

    def _headers(self, idempotency_key: str | None = None) -> dict[str, str]:
        if not self.secret_key:
            raise ProviderError(self.name, "card provider secret key is not configured")
        headers = {"Authorization": f"Bearer {self.secret_key}"}
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        return headers

    @staticmethod
    def _to_payment(body: dict) -> ProviderPayment:
        return ProviderPayment(
            external_id=body["id"],
            status=body["status"],
            amount_cents=body.get("amount"),
            client_secret=body.get("client_secret"),
            # A payment intent is its own authorization and capture handle
            authorization_id=body["id"] if body["status"] == "requires_capture" else None,
            capture_id=body["id"] if body["status"] == "succeeded" else None,
            raw=body,
        )

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
        form = {
            "amount": str(amount_cents),
            "currency": currency.lower(),
            "capture_method": "manual" if manual_capture else "automatic",
            "payment_method_types[]": "card",
        }
        if description:
            form["description"] = description
        for key, value in (metadata or {}).items():
            form[f"metadata[{key}]"] = value
        body = await self.http.request_json(
            "POST",
            "/v1/payment_intents",
            data=form,
            headers=self._headers(idempotency_key=f"create:{reference_id}"),
        )
        return self._to_payment(body)

    async def retrieve(self, external_id: str) -> ProviderPayment:
        body = await self.http.request_json(
            "GET",
            f"/v1/payment_intents/{external_id}",
            headers=self._headers(),
        )
        return self._to_payment(body)

    async def authorize(self, external_id: str) -> ProviderPayment:
        # The payer confirms card intents client-side; reading it back is enough.
        return await self.retrieve(external_id)

    async def capture(self, external_id: str, authorization_id: str | None = None) -> ProviderPayment:
        body = await self.http.request_json(
            "POST",
            f"/v1/payment_intents/{external_id}/capture",
            headers=self._headers(idempotency_key=f"capture:{external_id}"),
        )
        return self._to_payment(body)

    async def void(self, external_id: str, authorization_id: str | None = None) -> None:
        await self.http.request_json(
            "POST",
            f"/v1/payment_intents/{external_id}/cancel",
            data={"cancellation_reason": "requested_by_customer"},
            headers=self._headers(idempotency_key=f"cancel:{external_id}"),
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
        body = await self.http.request_json(
            "POST",
            "/v1/refunds",
            data={
                "payment_intent": external_id,
                "amount": str(amount_cents),
                "reason": "requested_by_customer",
            },
            headers=self._headers(idempotency_key=idempotency_key),
        )
        return body["id"]

    async def aclose(self) -> None:
        await self.http.aclose()
