"""
Provider client contract shared by the card and order payment providers.

A provider client is a thin async wrapper around one provider's REST API.
It knows nothing about matches, wallets or the ledger: it creates a payment
object, reads it back, and performs capture, void and refund. Everything it
returns is a ProviderPayment carrying the provider's RAW status string; the
gateway adapters (payments/gateway.py) map raw statuses onto PaymentStatus.

Failures of any kind (network error, timeout, 4xx/5xx response) surface as
ProviderError so callers only ever handle one exception type.

HTTP plumbing (timeouts, retries on 429/5xx, error extraction) lives in
ProviderHTTPClient so both concrete clients behave the same way on the wire.
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

import httpx
import structlog

from fiesta_escrow.config import settings
from fiesta_escrow.exceptions import ProviderError

logger = structlog.get_logger(__name__)


@dataclass
class ProviderPayment:
    """Snapshot of a provider-side payment object."""

    external_id: str
    status: str
    amount_cents: int | None = None
    # Card checkout: secret handed to the client SDK
    client_secret: str | None = None
    # Order checkout: URL the payer is redirected to for approval
    approval_url: str | None = None
    authorization_id: str | None = None
    capture_id: str | None = None
    raw: dict[str, Any] = field(default_factory=dict, repr=False)


class PaymentProviderClient(ABC):
    """Operations every payment provider must support."""

    name: str

    @abstractmethod
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
        """Create a payment object; manual_capture places a hold instead of charging."""

    @abstractmethod
    async def retrieve(self, external_id: str) -> ProviderPayment:
        """Read the current provider state without changing it."""

    @abstractmethod
    async def authorize(self, external_id: str) -> ProviderPayment:
        """
        Make sure an approved payment is held, then return its state.

        Must be idempotent: a payment that is already authorized (or further
        along) is returned unchanged.
        """

    @abstractmethod
    async def capture(self, external_id: str, authorization_id: str | None = None) -> ProviderPayment:
        """Capture a held authorization in full."""

    @abstractmethod
    async def void(self, external_id: str, authorization_id: str | None = None) -> None:
        """Release a held authorization without moving money."""

    @abstractmethod
    async def refund(
        self,
        external_id: str,
        amount_cents: int,
        currency: str,
        *,
        capture_id: str | None = None,
        idempotency_key: str | None = None,
    ) -> str:
        """Refund part or all of a captured payment. Returns the refund id."""

    async def aclose(self) -> None:
        """Release network resources held by the client."""


class ProviderHTTPClient:
    """
    httpx wrapper with provider-flavoured error handling.

    429 and 5xx responses are retried with exponential backoff up to
    max_retries times. Every mutating request carries an idempotency key
    header, so a retried POST can never charge twice.
    """

    def __init__(
        self,
        provider: str,
        base_url: str,
        *,
        timeout: float | None = None,
        max_retries: int | None = None,
        retry_backoff_seconds: float = 0.5,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.provider = provider
        self.client = httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout if timeout is not None else settings.PROVIDER_TIMEOUT_SECONDS,
            transport=transport,
        )
        self.max_retries = max_retries if max_retries is not None else settings.PROVIDER_MAX_RETRIES
        self.retry_backoff_seconds = retry_backoff_seconds

    async def request(self, method: str, url: str, **kwargs) -> httpx.Response:
        retries = 0
        backoff = self.retry_backoff_seconds
        while True:
            try:
                response = await self.client.request(method, url, **kwargs)
            except httpx.RequestError as exc:
                logger.warning(
                    "Provider request failed",
                    provider=self.provider,
                    method=method,
                    url=url,
                    error=str(exc),
                )
                raise ProviderError(self.provider, f"request error: {exc}") from exc

            retryable = response.status_code == 429 or response.status_code >= 500
            if retryable and retries < self.max_retries:
                retry_after = response.headers.get("Retry-After")
                wait = float(retry_after) if retry_after else backoff
                logger.info(
                    "Retrying provider request",
                    provider=self.provider,
                    url=url,
                    status=response.status_code,
                    attempt=retries + 1,
                )
                await asyncio.sleep(wait)
                retries += 1
                backoff *= 2
                continue

            if response.status_code >= 400:
                raise ProviderError(
                    self.provider,
                    self._error_message(response),
                    status=response.status_code,
                )
            return response

    async def request_json(self, method: str, url: str, **kwargs) -> dict[str, Any]:
        response = await self.request(method, url, **kwargs)
        if response.status_code == 204 or not response.content:
            return {}
        try:
            return response.json()
        except ValueError as exc:
            raise ProviderError(self.provider, "response is not valid JSON") from exc

    async def aclose(self) -> None:
        await self.client.aclose()

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return f"HTTP {response.status_code}"
        error = body.get("error")
        if isinstance(error, dict) and error.get("message"):
            return error["message"]
        if body.get("message"):
            return body["message"]
        if isinstance(error, str):
            return body.get("error_description") or error
        return f"HTTP {response.status_code}"


def format_minor_units(amount_cents: int) -> str:
    """12345 -> "123.45", the decimal string format order providers expect."""
    sign = "-" if amount_cents < 0 else ""
    amount_cents = abs(amount_cents)
    return f"{sign}{amount_cents // 100}.{amount_cents % 100:02d}"


def parse_minor_units(value: str) -> int:
    """"123.45" -> 12345. Raises ValueError on malformed input."""
    sign = -1 if value.startswith("-") else 1
    whole, _, fraction = value.lstrip("-").partition(".")
    if len(fraction) > 2 or not whole.isdigit() or (fraction and not fraction.isdigit()):
        raise ValueError(f"Invalid amount: {value!r}")
    return sign * (int(whole) * 100 + int(fraction.ljust(2, "0") or 0))
