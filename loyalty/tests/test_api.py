"""
HTTP API Tests
"""

import pytest
from fastapi.testclient import TestClient

from loyalty.api import create_app
from loyalty.config import Settings
from loyalty.service import LoyaltyService
from loyalty.settlement import SimulatedSettlementGateway


@pytest.fixture
def gateway():
    return SimulatedSettlementGateway()


@pytest.fixture
def client(gateway):
    service = LoyaltyService(gateway=gateway)
    app = create_app(service=service, settings=Settings())
    with TestClient(app) as test_client:
        yield test_client
    service.close()


def register(client, username="carol", wallet="CarolW"):
    response = client.post("/users", json={"username": username, "password": "pw", "wallet_address": wallet})
    assert response.status_code == 201
    return response.json()


def earn(client, user_id, amount):
    return client.post("/earn", json={
        "user_id": user_id, "business_id": 1, "token_id": 1, "amount": amount, "description": "Order",
    })


class TestSystem:
    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"


class TestUsersAndBusinesses:
    def test_create_user_hides_password(self, client):
        user = register(client)

        assert user["username"] == "carol"
        assert "password" not in user
        assert client.get(f"/users/{user['id']}").json() == user
        assert client.get("/users/wallet/CarolW").json() == user

    def test_duplicate_username(self, client):
        register(client)

        response = client.post("/users", json={"username": "carol", "password": "pw"})

        assert response.status_code == 409
        assert response.json()["error"] == "Conflict"

    def test_unknown_user(self, client):
        response = client.get("/users/404")

        assert response.status_code == 404
        assert response.json()["error"] == "NotFound"

    def test_business_listing_and_token(self, client):
        businesses = client.get("/businesses").json()
        token = client.get("/businesses/1/token").json()

        assert [b["name"] for b in businesses] == ["Coffee Shop"]
        assert token["symbol"] == "SLOY"

    def test_connect_wallet(self, client):
        register(client)

        assert client.get("/wallets/CarolW").json()["type"] == "user"
        assert client.get("/wallets/9xJ4rK...2VnM").json()["type"] == "business"
        assert client.get("/wallets/Nobody").json()["type"] == "new"


class TestEarnAndRedeem:
    def test_earn_then_balance(self, client):
        user = register(client)

        response = earn(client, user["id"], 200)

        assert response.status_code == 201
        assert response.json()["status"] == "completed"
        balance = client.get(f"/users/{user['id']}/balance", params={"token_id": 1}).json()
        assert balance["balance"] == 200

    def test_redeem_insufficient_balance(self, client):
        user = register(client)
        earn(client, user["id"], 50)

        response = client.post("/redeem", json={
            "user_id": user["id"], "business_id": 1, "reward_id": 2, "token_id": 1,
        })

        assert response.status_code == 400
        assert response.json()["error"] == "InsufficientBalance"

    def test_redeem_success(self, client):
        user = register(client)
        earn(client, user["id"], 200)

        response = client.post("/redeem", json={
            "user_id": user["id"], "business_id": 1, "reward_id": 2, "token_id": 1,
        })

        assert response.status_code == 201
        assert response.json()["amount"] == -150
        history = client.get(f"/users/{user['id']}/ledger").json()
        assert history["total_count"] == 2
        assert history["transactions"][0]["type"] == "redeem"

    def test_settlement_failure_reports_failed_transaction(self, client, gateway):
        user = register(client)
        gateway.fail_transfers = True

        response = earn(client, user["id"], 20)

        assert response.status_code == 502
        body = response.json()
        assert body["error"] == "SettlementFailure"
        assert body["transaction"]["status"] == "failed"
        assert client.get(f"/transactions/{body['transaction']['id']}").json()["status"] == "failed"

    def test_non_positive_earn(self, client):
        user = register(client)

        response = earn(client, user["id"], 0)

        assert response.status_code == 400
        assert response.json()["error"] == "ValidationError"

    def test_terminal_status_is_final(self, client):
        user = register(client)
        transaction = earn(client, user["id"], 10).json()

        response = client.patch(f"/transactions/{transaction['id']}/status", json={"status": "failed"})

        assert response.status_code == 400
        assert client.get(f"/transactions/{transaction['id']}").json()["status"] == "completed"


class TestTokensAndRewards:
    def test_create_token_and_mint_refusal(self, client):
        business = client.post("/businesses", json={"name": "Bakery", "wallet_address": "BakeW"}).json()
        token = client.post("/tokens", json={
            "business_id": business["id"], "name": "Bake", "symbol": "BAKE", "supply": 1000, "mintable": False,
        })

        assert token.status_code == 201
        response = client.post(f"/tokens/{token.json()['id']}/mint", json={"amount": 10})
        assert response.status_code == 400
        assert response.json()["error"] == "NotMintable"

    def test_mint(self, client):
        response = client.post("/tokens/1/mint", json={"amount": 10})

        assert response.json()["supply"] == 1_000_010

    def test_patch_reward(self, client):
        response = client.patch("/rewards/3", json={"token_cost": 120})

        assert response.status_code == 200
        assert response.json()["token_cost"] == 120
        assert response.json()["business_id"] == 1

    def test_patch_reward_rejects_unknown_fields(self, client):
        response = client.patch("/rewards/3", json={"business_id": 2})

        assert response.status_code == 422
        assert client.get("/rewards/3").json()["business_id"] == 1

    def test_business_transactions_most_recent_first(self, client):
        user = register(client)
        for amount in (5, 6, 7):
            earn(client, user["id"], amount)

        listed = client.get("/businesses/1/transactions").json()

        assert [t["amount"] for t in listed] == [7, 6, 5]

    def test_token_info_from_network(self, client):
        business = client.post("/businesses", json={"name": "Deli", "wallet_address": "DeliW"}).json()
        token = client.post("/tokens", json={
            "business_id": business["id"], "name": "Deli", "symbol": "DELI", "supply": 700, "decimals": 2,
        }).json()

        response = client.get(f"/tokens/{token['id']}/chain")

        assert response.status_code == 200
        assert response.json()["address"] == token["address"]
        assert response.json()["total_supply"] == 700

    def test_token_info_unknown_token(self, client):
        response = client.get("/tokens/99/chain")

        assert response.status_code == 404


class TestAppFactory:
    def test_importing_api_builds_no_app(self):
        """Apps are only built by create_app, so each entry point owns one service."""
        import loyalty.api

        assert not hasattr(loyalty.api, "app")

    def test_each_app_gets_its_own_service(self):
        first, second = create_app(settings=Settings()), create_app(settings=Settings())

        assert first.state.loyalty_service is not second.state.loyalty_service
        first.state.loyalty_service.close()
        second.state.loyalty_service.close()
