"""
Tests for dispute opening and one-time resolution.

These tests verify:
  - Only a party to a completed match can open a dispute, once
  - Only admins review, resolve and close
  - A partial refund claws back from the host and refunds the requester
  - A second resolution fails with 409 and moves no money
  - A host who spent the payout blocks the refund before the provider is called
"""

import asyncio
import uuid

import pytest

from fiesta_escrow.exceptions import AlreadyResolvedError
from fiesta_escrow.models.dispute import DisputeOutcome, DisputeReason
from fiesta_escrow.models.experience import Experience
from fiesta_escrow.models.user import User, UserType
from fiesta_escrow.services import auth_service, dispute_service, match_service, wallet_service
from fiesta_escrow.services.pricing_service import GroupPricingService


async def _completed_match(client, make_user, make_experience, provider, price_cents=2500):
    host = await make_user()
    requester = await make_user()
    experience = await make_experience(host.id, price_cents=price_cents)
    created = await client.post(
        "/matches", json={"experience_id": str(experience.id)}, headers=requester.headers
    )
    match = created.json()["match"]
    if created.json()["payment"]:
        provider.set_status(match["external_payment_ref"], "requires_capture")
    await client.post(f"/matches/{match['id']}/accept", headers=host.headers)
    done = await client.post(f"/matches/{match['id']}/complete", headers=host.headers)
    assert done.status_code == 200, done.text
    return host, requester, match["id"]


async def _open(client, user, match_id, reason="no_show"):
    return await client.post(
        "/disputes",
        json={
            "match_id": match_id,
            "reason": reason,
            "description": "The host never showed up at the meeting point.",
        },
        headers=user.headers,
    )


async def _balance(client, user):
    response = await client.get("/wallet", headers=user.headers)
    return response.json()["balance_cents"]


class TestOpenDispute:
    async def test_requester_opens_dispute(self, client, make_user, make_experience, provider, recorded_events):
        host, requester, match_id = await _completed_match(client, make_user, make_experience, provider)

        response = await _open(client, requester, match_id)
        assert response.status_code == 201
        data = response.json()
        assert data["status"] == "open"
        assert data["opened_by_id"] == str(requester.id)
        assert data["respondent_id"] == str(host.id)
        assert data["refund_amount_cents"] == 0
        assert recorded_events[-1].event_type.value == "DisputeOpened"

    async def test_one_dispute_per_match(self, client, make_user, make_experience, provider):
        host, requester, match_id = await _completed_match(client, make_user, make_experience, provider)
        await _open(client, requester, match_id)

        response = await _open(client, host, match_id, reason="communication")
        assert response.status_code == 409
        assert response.json()["error_type"] == "conflict"

    async def test_non_party_cannot_open(self, client, make_user, make_experience, provider):
        host, requester, match_id = await _completed_match(client, make_user, make_experience, provider)
        outsider = await make_user()
        response = await _open(client, outsider, match_id)
        assert response.status_code == 403

    async def test_match_must_be_completed(self, client, make_user, make_experience):
        host = await make_user()
        requester = await make_user()
        experience = await make_experience(host.id)
        created = await client.post(
            "/matches", json={"experience_id": str(experience.id)}, headers=requester.headers
        )
        response = await _open(client, requester, created.json()["match"]["id"])
        assert response.status_code == 409

    async def test_unknown_match(self, client, make_user):
        user = await make_user()
        response = await _open(client, user, str(uuid.uuid4()))
        assert response.status_code == 404

    async def test_description_too_short(self, client, make_user, make_experience, provider):
        host, requester, match_id = await _completed_match(client, make_user, make_experience, provider)
        response = await client.post(
            "/disputes",
            json={"match_id": match_id, "reason": "other", "description": "bad"},
            headers=requester.headers,
        )
        assert response.status_code == 422


class TestResolveDispute:
    async def test_partial_refund_then_second_resolution_fails(self, client, make_user, make_experience, provider, admin_user):
        """Partial refund of 22.50 on a 25.00 match; a second attempt is 409."""
        host, requester, match_id = await _completed_match(client, make_user, make_experience, provider)
        dispute = (await _open(client, requester, match_id)).json()
        assert await _balance(client, host) == 2350

        response = await client.post(
            f"/disputes/{dispute['id']}/resolve",
            json={"outcome": "partial_refund", "refund_amount_cents": 2250, "note": "Late start"},
            headers=admin_user.headers,
        )
        assert response.status_code == 200, response.text
        data = response.json()
        assert data["status"] == "resolved_partial_refund"
        assert data["refund_amount_cents"] == 2250
        assert data["resolved_by_id"] == str(admin_user.id)

        assert await _balance(client, requester) == 2250
        assert await _balance(client, host) == 100
        assert provider.calls["refund"] == 1

        again = await client.post(
            f"/disputes/{dispute['id']}/resolve",
            json={"outcome": "refund"},
            headers=admin_user.headers,
        )
        assert again.status_code == 409
        assert again.json()["error_type"] == "already_resolved"
        assert provider.calls["refund"] == 1
        assert await _balance(client, requester) == 2250
        assert await _balance(client, host) == 100

    async def test_host_without_funds_blocks_refund(self, client, make_user, make_experience, provider, admin_user):
        host, requester, match_id = await _completed_match(client, make_user, make_experience, provider)
        dispute = (await _open(client, requester, match_id)).json()

        # The host holds 23.50 after the commission; a full 25.00 refund cannot be clawed back
        response = await client.post(
            f"/disputes/{dispute['id']}/resolve",
            json={"outcome": "refund"},
            headers=admin_user.headers,
        )
        assert response.status_code == 422
        assert response.json()["error_type"] == "insufficient_balance"
        assert provider.calls["refund"] == 0

        detail = await client.get(f"/disputes/{dispute['id']}", headers=admin_user.headers)
        assert detail.json()["status"] == "open"

    async def test_no_refund_moves_nothing(self, client, make_user, make_experience, provider, admin_user):
        host, requester, match_id = await _completed_match(client, make_user, make_experience, provider)
        dispute = (await _open(client, requester, match_id)).json()

        response = await client.post(
            f"/disputes/{dispute['id']}/resolve",
            json={"outcome": "no_refund"},
            headers=admin_user.headers,
        )
        assert response.json()["status"] == "resolved_no_refund"
        assert await _balance(client, host) == 2350
        assert await _balance(client, requester) == 0

    async def test_no_refund_with_amount_is_422(self, client, make_user, make_experience, provider, admin_user):
        host, requester, match_id = await _completed_match(client, make_user, make_experience, provider)
        dispute = (await _open(client, requester, match_id)).json()
        response = await client.post(
            f"/disputes/{dispute['id']}/resolve",
            json={"outcome": "no_refund", "refund_amount_cents": 100},
            headers=admin_user.headers,
        )
        assert response.status_code == 422

    async def test_refund_above_total_rejected(self, client, make_user, make_experience, provider, admin_user):
        host, requester, match_id = await _completed_match(client, make_user, make_experience, provider)
        dispute = (await _open(client, requester, match_id)).json()
        response = await client.post(
            f"/disputes/{dispute['id']}/resolve",
            json={"outcome": "partial_refund", "refund_amount_cents": 2501},
            headers=admin_user.headers,
        )
        assert response.status_code == 400

    async def test_free_match_cannot_be_refunded(self, client, make_user, make_experience, provider, fund_wallet, admin_user):
        host = await make_user()
        requester = await make_user()
        await fund_wallet(host.wallet_id, 1000)
        experience = await make_experience(host.id, price_cents=None)
        created = await client.post(
            "/matches", json={"experience_id": str(experience.id)}, headers=requester.headers
        )
        match_id = created.json()["match"]["id"]
        await client.post(f"/matches/{match_id}/accept", headers=host.headers)
        await client.post(f"/matches/{match_id}/complete", headers=host.headers)
        dispute = (await _open(client, requester, match_id)).json()

        response = await client.post(
            f"/disputes/{dispute['id']}/resolve",
            json={"outcome": "refund"},
            headers=admin_user.headers,
        )
        assert response.status_code == 400

    async def test_provider_failure_keeps_dispute_open(self, client, make_user, make_experience, provider, admin_user):
        host, requester, match_id = await _completed_match(client, make_user, make_experience, provider)
        dispute = (await _open(client, requester, match_id)).json()
        provider.fail_on.add("refund")

        response = await client.post(
            f"/disputes/{dispute['id']}/resolve",
            json={"outcome": "partial_refund", "refund_amount_cents": 1000},
            headers=admin_user.headers,
        )
        assert response.status_code == 502
        assert await _balance(client, host) == 2350

        detail = await client.get(f"/disputes/{dispute['id']}", headers=requester.headers)
        assert detail.json()["status"] == "open"

    async def test_member_cannot_resolve(self, client, make_user, make_experience, provider):
        host, requester, match_id = await _completed_match(client, make_user, make_experience, provider)
        dispute = (await _open(client, requester, match_id)).json()
        response = await client.post(
            f"/disputes/{dispute['id']}/resolve",
            json={"outcome": "refund"},
            headers=requester.headers,
        )
        assert response.status_code == 403

    async def test_concurrent_resolutions_apply_once(self, file_session_factory, gateway, provider):
        async with file_session_factory() as db:
            host, _ = await auth_service.signup(db, "host@example.com", "SecurePass123!", "Host")
            requester, _ = await auth_service.signup(db, "guest@example.com", "SecurePass123!", "Guest")
            admin, _ = await auth_service.signup(db, "ops@example.com", "SecurePass123!", "Ops")
            admin.user_type = UserType.ADMIN
            experience = Experience(host_id=host.id, title="Flamenco night", price_cents=2500)
            db.add(experience)
            await db.commit()

            match, session = await match_service.request_match(
                db, gateway, GroupPricingService(), requester.id, experience.id
            )
            provider.set_status(session.external_id, "requires_capture")
            await match_service.accept(db, gateway, match.id, host.id)
            await match_service.complete(db, gateway, match.id, host.id)
            dispute = await dispute_service.open_dispute(
                db, match.id, requester.id, DisputeReason.NO_SHOW, "The host never showed up."
            )
            dispute_id, admin_id, requester_id = dispute.id, admin.id, requester.id

        async def resolve():
            async with file_session_factory() as db:
                acting_admin = await db.get(User, admin_id)
                return await dispute_service.resolve(
                    db, gateway, dispute_id, acting_admin, DisputeOutcome.PARTIAL_REFUND, 500
                )

        results = await asyncio.gather(resolve(), resolve(), return_exceptions=True)

        assert sum(isinstance(r, AlreadyResolvedError) for r in results) == 1
        assert provider.calls["refund"] == 1
        async with file_session_factory() as db:
            assert await wallet_service.get_balance_for_user(db, requester_id) == 500


class TestDisputeLifecycle:
    async def test_review_then_close(self, client, make_user, make_experience, provider, admin_user):
        host, requester, match_id = await _completed_match(client, make_user, make_experience, provider)
        dispute = (await _open(client, host, match_id, reason="communication")).json()

        reviewed = await client.post(f"/disputes/{dispute['id']}/review", headers=admin_user.headers)
        assert reviewed.json()["status"] == "under_review"

        closed = await client.post(
            f"/disputes/{dispute['id']}/close",
            json={"note": "Resolved between the parties"},
            headers=admin_user.headers,
        )
        assert closed.json()["status"] == "closed"
        assert closed.json()["resolution_note"] == "Resolved between the parties"

        reopened = await client.post(f"/disputes/{dispute['id']}/review", headers=admin_user.headers)
        assert reopened.status_code == 409

    async def test_visibility(self, client, make_user, make_experience, provider, admin_user):
        host, requester, match_id = await _completed_match(client, make_user, make_experience, provider)
        dispute = (await _open(client, requester, match_id)).json()
        outsider = await make_user()

        assert (await client.get(f"/disputes/{dispute['id']}", headers=host.headers)).status_code == 200
        assert (await client.get(f"/disputes/{dispute['id']}", headers=outsider.headers)).status_code == 403
        assert (await client.get("/disputes", headers=outsider.headers)).json() == []
        assert len((await client.get("/disputes", headers=admin_user.headers)).json()) == 1

    @pytest.mark.parametrize("action", ["review", "close"])
    async def test_member_cannot_manage(self, client, make_user, make_experience, provider, action):
        host, requester, match_id = await _completed_match(client, make_user, make_experience, provider)
        dispute = (await _open(client, requester, match_id)).json()
        response = await client.post(
            f"/disputes/{dispute['id']}/{action}", json={}, headers=host.headers
        )
        assert response.status_code == 403
