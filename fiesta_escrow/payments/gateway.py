"""
Payment gateway adapters: one uniform interface over both providers.

Business flows (matches, top-ups, disputes) talk only to a
PaymentGatewayAdapter and never branch on which provider is configured.
The adapter:

  - persists a PaymentIntentRecord for every provider object it creates
  - maps each provider's raw status onto PaymentStatus
  - memoizes settled confirmations: once a record is authorized, captured,
    failed, voided or refunded, confirm() answers from the database. An
    authorization can still be cancelled on the provider side, so
    confirm(refresh=True) re-reads authorized records
  - makes capture and void idempotent by checking the stored status first
  - treats a hold the provider already cancelled as released: void() makes
    no provider call for it and capture() reports it as not authorized
  - writes the ledger side of reversals: a void leaves a "refunded" audit
    Transaction, a refund credits the payer's wallet keyed by the provider's
    refund id

Adapters never commit. The calling service decides the transaction
boundary, so a failure later in the same operation rolls back the record
changes made here.
"""

import uuid
from dataclasses import dataclass

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from fiesta_escrow.config import settings
from fiesta_escrow.exceptions import (
    NotFoundError,
    PaymentNotAuthorizedError,
    ProviderError,
    ValidationError,
)
from fiesta_escrow.models.payment_intent import (
    SETTLED_PAYMENT_STATUSES,
    PaymentContext,
    PaymentIntentRecord,
    PaymentStatus,
)
from fiesta_escrow.models.transaction import Transaction, TransactionType
from fiesta_escrow.payments.base import PaymentProviderClient, ProviderPayment
from fiesta_escrow.payments.card_provider import CardProviderClient
from fiesta_escrow.payments.order_provider import OrderProviderClient
from fiesta_escrow.security import decrypt_value, encrypt_value
from fiesta_escrow.services import wallet_service

logger = structlog.get_logger(__name__)


@dataclass
class PaymentSession:
    """What a client needs to complete a checkout."""

    external_id: str
    status: PaymentStatus
    client_secret: str | None = None
    approval_url: str | None = None


class PaymentGatewayAdapter:
    """Provider-independent payment operations backed by PaymentIntentRecord."""

    def __init__(self, client: PaymentProviderClient, currency: str | None = None):
        self.client = client
        self.currency = currency or settings.CURRENCY

    @property
    def provider_name(self) -> str:
        return self.client.name

    def map_status(self, payment: ProviderPayment) -> PaymentStatus:
        raise NotImplementedError

    async def _fetch_confirmation(self, external_id: str) -> ProviderPayment:
        return await self.client.retrieve(external_id)

    async def _released_by_provider(self, external_id: str) -> bool:
        """True when the provider reports the payment cancelled."""
        try:
            payment = await self.client.retrieve(external_id)
            return self.map_status(payment) == PaymentStatus.FAILED
        except ProviderError:
            return False

    # -------------------------------------------------------------------
    # Records
    # -------------------------------------------------------------------

    async def get_record(self, db: AsyncSession, external_id: str) -> PaymentIntentRecord:
        result = await db.execute(
            select(PaymentIntentRecord)
            .where(PaymentIntentRecord.external_id == external_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        record = result.scalar_one_or_none()
        if record is None:
            raise NotFoundError("Payment", external_id)
        if record.provider != self.provider_name:
            raise ValidationError(
                f"Payment {external_id} belongs to the {record.provider} provider"
            )
        return record

    async def checkout_session(self, db: AsyncSession, external_id: str) -> PaymentSession:
        """Rebuild the client checkout data for an existing payment."""
        record = await self.get_record(db, external_id)
        return self.checkout_session_from(record)

    def checkout_session_from(self, record: PaymentIntentRecord) -> PaymentSession:
        secret = decrypt_value(record.encrypted_secret) if record.encrypted_secret else None
        return PaymentSession(
            external_id=record.external_id,
            status=PaymentStatus(record.status),
            client_secret=secret if self.provider_name == "card" else None,
            approval_url=secret if self.provider_name == "order" else None,
        )

    # -------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------

    async def create(
        self,
        db: AsyncSession,
        context: PaymentContext,
        context_id: uuid.UUID,
        amount_cents: int,
        *,
        reference_id: str | None = None,
        description: str | None = None,
        manual_capture: bool = True,
        return_url: str | None = None,
        cancel_url: str | None = None,
    ) -> PaymentSession:
        """
        Create a provider payment and its local record.

        manual_capture=True places an authorization hold (match escrow);
        False charges immediately on confirmation (wallet top-up).
        """
        if amount_cents <= 0:
            raise ValidationError("Payment amount must be positive")

        reference_id = reference_id or f"{context.value}-{context_id}"
        payment = await self.client.create(
            amount_cents,
            self.currency,
            reference_id=reference_id,
            description=description,
            manual_capture=manual_capture,
            return_url=return_url,
            cancel_url=cancel_url,
            metadata={"context": context.value, "context_id": str(context_id)},
        )
        status = self.map_status(payment)
        secret = payment.client_secret or payment.approval_url

        record = PaymentIntentRecord(
            external_id=payment.external_id,
            provider=self.provider_name,
            context=context.value,
            context_id=context_id,
            amount_cents=amount_cents,
            status=status.value,
            secondary_ref=payment.capture_id or payment.authorization_id,
            encrypted_secret=encrypt_value(secret) if secret else None,
        )
        db.add(record)
        await db.flush()

        logger.info(
            "Payment created",
            provider=self.provider_name,
            external_id=payment.external_id,
            context=context.value,
            context_id=str(context_id),
            amount_cents=amount_cents,
            status=status.value,
        )
        return PaymentSession(
            external_id=payment.external_id,
            status=status,
            client_secret=payment.client_secret,
            approval_url=payment.approval_url,
        )

    async def confirm(self, db: AsyncSession, external_id: str, refresh: bool = False) -> PaymentStatus:
        """
        Return the payment's status, asking the provider only while unsettled.

        The first call that observes a settled status stores it; every later
        call returns that stored value without a provider round-trip. With
        refresh=True an authorized record is read again, so a provider-side
        cancellation of the hold is picked up.
        """
        record = await self.get_record(db, external_id)
        refreshable = refresh and record.status == PaymentStatus.AUTHORIZED.value
        if record.status in SETTLED_PAYMENT_STATUSES and not refreshable:
            logger.debug("Payment confirmation memoized", external_id=external_id, status=record.status)
            return PaymentStatus(record.status)

        if refreshable:
            payment = await self.client.retrieve(external_id)
        else:
            payment = await self._fetch_confirmation(external_id)
        status = self.map_status(payment)
        record.status = status.value
        if payment.capture_id or payment.authorization_id:
            record.secondary_ref = payment.capture_id or payment.authorization_id
        await db.flush()

        logger.info(
            "Payment confirmed",
            provider=self.provider_name,
            external_id=external_id,
            status=status.value,
        )
        return status

    async def capture(self, db: AsyncSession, external_id: str) -> PaymentIntentRecord:
        """Capture a held authorization. Capturing twice is a no-op."""
        record = await self.get_record(db, external_id)
        if record.status == PaymentStatus.CAPTURED.value:
            return record
        if record.status != PaymentStatus.AUTHORIZED.value:
            raise PaymentNotAuthorizedError(record.context_id, record.status)

        try:
            payment = await self.client.capture(external_id, record.secondary_ref)
        except ProviderError:
            if not await self._released_by_provider(external_id):
                raise
            record.status = PaymentStatus.FAILED.value
            await db.flush()
            raise PaymentNotAuthorizedError(record.context_id, record.status) from None
        record.status = PaymentStatus.CAPTURED.value
        record.secondary_ref = payment.capture_id or record.secondary_ref
        await db.flush()

        logger.info(
            "Payment captured",
            provider=self.provider_name,
            external_id=external_id,
            amount_cents=record.amount_cents,
        )
        return record

    async def void(
        self,
        db: AsyncSession,
        external_id: str,
        wallet_id: uuid.UUID,
        related_match_id: uuid.UUID | None = None,
    ) -> Transaction | None:
        """
        Release an uncaptured payment.

        Records a refund Transaction with status "refunded" on the payer's
        wallet (audit only, the wallet never held these funds). Returns None
        when the payment was already voided, so the provider is called and
        the audit row written exactly once.

        A failed payment was already cancelled by the provider: it is marked
        voided and audited without a provider call. When the provider refuses
        the void because it cancelled the hold in the meantime (an expired
        authorization), the same applies.
        """
        record = await self.get_record(db, external_id)
        if record.status == PaymentStatus.VOIDED.value:
            return None
        if record.status in (PaymentStatus.CAPTURED.value, PaymentStatus.REFUNDED.value):
            raise ValidationError(f"Payment {external_id} is captured; refund it instead")

        if record.status == PaymentStatus.FAILED.value:
            logger.info("Payment already released by provider", external_id=external_id)
        else:
            authorization_id = record.secondary_ref if record.status == PaymentStatus.AUTHORIZED.value else None
            try:
                await self.client.void(external_id, authorization_id)
            except ProviderError:
                if not await self._released_by_provider(external_id):
                    raise
                logger.info("Payment hold expired at provider", external_id=external_id)
        record.status = PaymentStatus.VOIDED.value
        await db.flush()

        txn = await wallet_service.record_reversal(
            db,
            wallet_id,
            record.amount_cents,
            external_ref=f"void:{external_id}",
            related_match_id=related_match_id,
            description="Payment hold released",
        )
        logger.info("Payment voided", provider=self.provider_name, external_id=external_id)
        return txn

    async def refund(
        self,
        db: AsyncSession,
        external_id: str,
        amount_cents: int,
        wallet_id: uuid.UUID,
        related_match_id: uuid.UUID | None = None,
        *,
        idempotency_key: str | None = None,
        description: str | None = None,
    ) -> Transaction:
        """
        Refund part or all of a captured payment.

        The payer's wallet is credited with a completed refund Transaction
        keyed by the provider's refund id, so the same provider refund can
        never be booked twice.
        """
        record = await self.get_record(db, external_id)
        if record.status not in (PaymentStatus.CAPTURED.value, PaymentStatus.REFUNDED.value):
            raise ValidationError(f"Payment {external_id} is not captured (status '{record.status}')")

        remaining = record.amount_cents - record.refunded_cents
        if amount_cents <= 0 or amount_cents > remaining:
            raise ValidationError(
                f"Refund amount must be between 1 and {remaining} cents"
            )

        refund_id = await self.client.refund(
            external_id,
            amount_cents,
            self.currency,
            capture_id=record.secondary_ref,
            idempotency_key=idempotency_key or f"refund-{external_id}-{record.refunded_cents}",
        )
        record.refunded_cents += amount_cents
        if record.refunded_cents == record.amount_cents:
            record.status = PaymentStatus.REFUNDED.value
        await db.flush()

        txn = await wallet_service.credit(
            db,
            wallet_id,
            amount_cents,
            TransactionType.REFUND,
            external_ref=refund_id,
            related_match_id=related_match_id,
            description=description or "Payment refund",
        )
        logger.info(
            "Payment refunded",
            provider=self.provider_name,
            external_id=external_id,
            refund_id=refund_id,
            amount_cents=amount_cents,
        )
        return txn


# ---------------------------------------------------------------------------
# Card provider
# ---------------------------------------------------------------------------

CARD_STATUS_MAP = {
    "requires_capture": PaymentStatus.AUTHORIZED,
    "succeeded": PaymentStatus.CAPTURED,
    "processing": PaymentStatus.PROCESSING,
    "requires_action": PaymentStatus.REQUIRES_ACTION,
    "requires_payment_method": PaymentStatus.REQUIRES_ACTION,
    "requires_confirmation": PaymentStatus.REQUIRES_ACTION,
    "canceled": PaymentStatus.FAILED,
}


class CardPaymentGateway(PaymentGatewayAdapter):
    """Payment intents: the payer confirms client-side with a client secret."""

    def map_status(self, payment: ProviderPayment) -> PaymentStatus:
        try:
            return CARD_STATUS_MAP[payment.status]
        except KeyError:
            raise ProviderError(self.provider_name, f"unexpected payment status '{payment.status}'") from None

    async def create_card_intent(
        self,
        db: AsyncSession,
        match_id: uuid.UUID,
        amount_cents: int,
        description: str | None = None,
    ) -> PaymentSession:
        return await self.create(
            db, PaymentContext.MATCH, match_id, amount_cents, description=description
        )

    async def confirm_card_intent(self, db: AsyncSession, external_id: str) -> PaymentStatus:
        return await self.confirm(db, external_id)


# ---------------------------------------------------------------------------
# Order provider
# ---------------------------------------------------------------------------

class OrderPaymentGateway(PaymentGatewayAdapter):
    """Checkout orders: the payer approves on the provider site, we authorize."""

    def map_status(self, payment: ProviderPayment) -> PaymentStatus:
        if payment.capture_id:
            return PaymentStatus.CAPTURED
        if payment.authorization_id:
            return PaymentStatus.AUTHORIZED
        if payment.status in ("CREATED", "SAVED", "PAYER_ACTION_REQUIRED"):
            return PaymentStatus.REQUIRES_ACTION
        if payment.status in ("APPROVED", "COMPLETED"):
            return PaymentStatus.PROCESSING
        if payment.status == "VOIDED":
            return PaymentStatus.FAILED
        raise ProviderError(self.provider_name, f"unexpected order status '{payment.status}'")

    async def _fetch_confirmation(self, external_id: str) -> ProviderPayment:
        # Confirming an order means placing the hold once the payer approved.
        return await self.client.authorize(external_id)

    async def create(self, db: AsyncSession, context: PaymentContext, context_id: uuid.UUID, amount_cents: int, **kwargs) -> PaymentSession:
        if not kwargs.get("manual_capture", True):
            raise ValidationError("The order provider only supports authorization holds")
        return await super().create(db, context, context_id, amount_cents, **kwargs)

    async def create_order(
        self,
        db: AsyncSession,
        match_id: uuid.UUID,
        amount_cents: int,
        return_url: str | None = None,
        cancel_url: str | None = None,
        description: str | None = None,
    ) -> PaymentSession:
        return await self.create(
            db,
            PaymentContext.MATCH,
            match_id,
            amount_cents,
            description=description,
            return_url=return_url,
            cancel_url=cancel_url,
        )

    async def authorize_order(self, db: AsyncSession, order_id: str) -> PaymentStatus:
        return await self.confirm(db, order_id)


def build_payment_gateway(provider: str | None = None) -> PaymentGatewayAdapter:
    """Build the gateway for a provider name ("card" or "order")."""
    provider = provider or settings.PAYMENT_PROVIDER
    if provider == "card":
        return CardPaymentGateway(CardProviderClient())
    if provider == "order":
        return OrderPaymentGateway(OrderProviderClient())
    raise ValueError(f"Unknown payment provider: {provider}")
