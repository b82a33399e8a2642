"""
Tests for the wallet ledger and the access gate.

These tests verify:
  - can_operate follows the live balance against the platform fee
  - Debits beyond the balance fail with InsufficientBalanceError and change nothing
  - Keyed credits are applied at most once
  - Pending rows are promoted, not duplicated
  - balance == sum(completed transactions) after any mix of movements
"""

import uuid

import pytest

from fiesta_escrow.config import settings
from fiesta_escrow.exceptions import InsufficientBalanceError, NotFoundError, ValidationError
from fiesta_escrow.models.transaction import TransactionStatus, TransactionType
from fiesta_escrow.services import auth_service, wallet_service


async def _member(db, email="wallet@example.com"):
    user, _ = await auth_service.signup(db, email, "SecurePass123!", "Wallet Owner")
    await db.commit()
    wallet = await wallet_service.get_wallet_for_user(db, user.id)
    return user, wallet


class TestAccessGate:
    """can_operate is balance >= one platform fee, evaluated live."""

    async def test_gate_follows_fee_debits(self, db_session):
        """5.00 with a 1.50 fee: 3 debits later 0.50 is left and the gate closes."""
        assert settings.PLATFORM_FEE_CENTS == 150
        user, wallet = await _member(db_session)
        await wallet_service.credit(
            db_session, wallet.id, 500, TransactionType.WALLET_TOPUP, external_ref="pi_seed"
        )
        await db_session.commit()
        assert await wallet_service.can_operate(db_session, user.id) is True

        await wallet_service.debit(db_session, wallet.id, 150, TransactionType.COMMISSION)
        await db_session.commit()
        assert await wallet_service.get_balance_for_user(db_session, user.id) == 350
        assert await wallet_service.can_operate(db_session, user.id) is True

        for _ in range(2):
            await wallet_service.debit(db_session, wallet.id, 150, TransactionType.COMMISSION)
        await db_session.commit()

        assert await wallet_service.get_balance_for_user(db_session, user.id) == 50
        assert await wallet_service.can_operate(db_session, user.id) is False

    async def test_new_wallet_cannot_operate(self, db_session):
        user, wallet = await _member(db_session)
        assert wallet.balance_cents == 0
        assert await wallet_service.can_operate(db_session, user.id) is False

    async def test_unknown_user_cannot_operate(self, db_session):
        assert await wallet_service.can_operate(db_session, uuid.uuid4()) is False

    async def test_balance_of_unknown_user_is_not_found(self, db_session):
        with pytest.raises(NotFoundError):
            await wallet_service.get_balance_for_user(db_session, uuid.uuid4())


class TestDebit:
    """Debits are conditional: they never overdraw."""

    async def test_overdraw_fails_without_side_effects(self, db_session):
        _, wallet = await _member(db_session)
        # rollback() expires loaded objects; keep the id as a plain value
        wallet_id = wallet.id
        await wallet_service.credit(db_session, wallet_id, 100, TransactionType.WALLET_TOPUP)
        await db_session.commit()

        with pytest.raises(InsufficientBalanceError) as exc_info:
            await wallet_service.debit(db_session, wallet_id, 150, TransactionType.COMMISSION)
        await db_session.rollback()

        assert exc_info.value.requested_cents == 150
        assert exc_info.value.available_cents == 100
        assert await wallet_service.get_balance(db_session, wallet_id) == 100
        txns = await wallet_service.list_transactions(db_session, wallet_id)
        assert [t.type for t in txns] == ["wallet_topup"]

    async def test_debit_stores_negative_amount(self, db_session):
        _, wallet = await _member(db_session)
        await wallet_service.credit(db_session, wallet.id, 1000, TransactionType.WALLET_TOPUP)
        txn = await wallet_service.debit(db_session, wallet.id, 150, TransactionType.COMMISSION)
        await db_session.commit()

        assert txn.amount_cents == -150
        assert txn.status == TransactionStatus.COMPLETED.value

    async def test_keyed_debit_applies_once(self, db_session):
        _, wallet = await _member(db_session)
        await wallet_service.credit(db_session, wallet.id, 1000, TransactionType.WALLET_TOPUP)
        first = await wallet_service.debit(
            db_session, wallet.id, 150, TransactionType.COMMISSION, external_ref="commission:m1"
        )
        second = await wallet_service.debit(
            db_session, wallet.id, 150, TransactionType.COMMISSION, external_ref="commission:m1"
        )
        await db_session.commit()

        assert first.id == second.id
        assert await wallet_service.get_balance(db_session, wallet.id) == 850

    @pytest.mark.parametrize("amount", [0, -5])
    async def test_non_positive_amounts_rejected(self, db_session, amount):
        _, wallet = await _member(db_session)
        with pytest.raises(ValidationError):
            await wallet_service.debit(db_session, wallet.id, amount, TransactionType.COMMISSION)
        with pytest.raises(ValidationError):
            await wallet_service.credit(db_session, wallet.id, amount, TransactionType.WALLET_TOPUP)


class TestIdempotentCredit:
    async def test_same_external_ref_credits_once(self, db_session):
        _, wallet = await _member(db_session)
        first = await wallet_service.credit(
            db_session, wallet.id, 2000, TransactionType.WALLET_TOPUP, external_ref="pi_123"
        )
        second = await wallet_service.credit(
            db_session, wallet.id, 2000, TransactionType.WALLET_TOPUP, external_ref="pi_123"
        )
        await db_session.commit()

        assert first.id == second.id
        assert await wallet_service.get_balance(db_session, wallet.id) == 2000

    async def test_same_ref_different_type_is_independent(self, db_session):
        _, wallet = await _member(db_session)
        await wallet_service.credit(
            db_session, wallet.id, 300, TransactionType.WALLET_TOPUP, external_ref="shared"
        )
        await wallet_service.credit(
            db_session, wallet.id, 200, TransactionType.REFUND, external_ref="shared"
        )
        await db_session.commit()
        assert await wallet_service.get_balance(db_session, wallet.id) == 500

    async def test_pending_row_is_promoted(self, db_session):
        """A pending top-up row is completed in place rather than duplicated."""
        _, wallet = await _member(db_session)
        pending = await wallet_service.record_pending(
            db_session, wallet.id, 2000, TransactionType.WALLET_TOPUP, external_ref="pi_777"
        )
        await db_session.commit()
        assert await wallet_service.get_balance(db_session, wallet.id) == 0

        credited = await wallet_service.credit(
            db_session, wallet.id, 2000, TransactionType.WALLET_TOPUP, external_ref="pi_777"
        )
        await db_session.commit()

        assert credited.id == pending.id
        assert credited.status == TransactionStatus.COMPLETED.value
        assert await wallet_service.get_balance(db_session, wallet.id) == 2000
        txns = await wallet_service.list_transactions(db_session, wallet.id)
        assert len(txns) == 1


class TestLedgerInvariant:
    async def test_balance_equals_sum_of_completed(self, db_session):
        _, wallet = await _member(db_session)
        await wallet_service.credit(db_session, wallet.id, 5000, TransactionType.WALLET_TOPUP, external_ref="pi_a")
        await wallet_service.debit(db_session, wallet.id, 150, TransactionType.COMMISSION)
        await wallet_service.credit(db_session, wallet.id, 500, TransactionType.REFERRAL_CREDIT)
        await wallet_service.record_pending(db_session, wallet.id, 999, TransactionType.WALLET_TOPUP, "pi_b")
        await wallet_service.record_failed(db_session, wallet.id, 777, TransactionType.PAYMENT)
        await wallet_service.record_reversal(db_session, wallet.id, 2500, external_ref="void:pi_c")
        await db_session.commit()

        report = await wallet_service.verify_balance(db_session, wallet.id)
        assert report["balance_cents"] == 5350
        assert report["computed_balance_cents"] == 5350
        assert report["match"] is True

    async def test_failed_rows_never_block_later_keyed_credit(self, db_session):
        _, wallet = await _member(db_session)
        await wallet_service.record_failed(db_session, wallet.id, 2000, TransactionType.WALLET_TOPUP)
        await wallet_service.credit(
            db_session, wallet.id, 2000, TransactionType.WALLET_TOPUP, external_ref="pi_retry"
        )
        await db_session.commit()
        assert await wallet_service.compute_balance(db_session, wallet.id) == 2000
