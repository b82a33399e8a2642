"""
Tests for the read-only admin endpoints and the health check.
"""

import uuid


class TestAdminWallets:
    async def test_list_wallets(self, client, make_user, fund_wallet, admin_user):
        member = await make_user()
        await fund_wallet(member.wallet_id, 1200)

        response = await client.get("/admin/wallets", headers=admin_user.headers)
        assert response.status_code == 200
        balances = {w["wallet_id"]: w["balance_cents"] for w in response.json()}
        assert balances[str(member.wallet_id)] == 1200
        assert balances[str(admin_user.wallet_id)] == 0

    async def test_balance_integrity(self, client, make_user, fund_wallet, admin_user):
        member = await make_user()
        await fund_wallet(member.wallet_id, 1200)

        response = await client.get(
            f"/admin/wallets/{member.wallet_id}/balance", headers=admin_user.headers
        )
        data = response.json()
        assert data["balance_cents"] == 1200
        assert data["computed_balance_cents"] == 1200
        assert data["match"] is True
        assert data["currency"] == "EUR"

    async def test_unknown_wallet(self, client, admin_user):
        response = await client.get(
            f"/admin/wallets/{uuid.uuid4()}/transactions", headers=admin_user.headers
        )
        assert response.status_code == 404


class TestAdminTransactions:
    async def test_filter_and_fetch(self, client, make_user, fund_wallet, admin_user, provider):
        member = await make_user()
        await fund_wallet(member.wallet_id, 1200)
        provider.fail_on.add("create")
        await client.post("/wallet/topup", json={"amount_cents": 900}, headers=member.headers)

        failed = await client.get(
            "/admin/transactions", params={"status": "failed"}, headers=admin_user.headers
        )
        assert [t["amount_cents"] for t in failed.json()] == [900]

        topups = await client.get(
            "/admin/transactions", params={"type": "wallet_topup"}, headers=admin_user.headers
        )
        assert len(topups.json()) == 2

        txn_id = failed.json()[0]["id"]
        single = await client.get(f"/admin/transactions/{txn_id}", headers=admin_user.headers)
        assert single.json()["status"] == "failed"

    async def test_members_are_forbidden(self, client, make_user):
        member = await make_user()
        for path in ("/admin/wallets", "/admin/transactions", "/admin/matches"):
            response = await client.get(path, headers=member.headers)
            assert response.status_code == 403


class TestHealth:
    async def test_health(self, client):
        response = await client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"
