"""
Integration tests for the Mobile Money API
Tests end-to-end workflows using FastAPI TestClient
"""

import pytest
from decimal import Decimal
from fastapi.testclient import TestClient

from mobile_money.api import WalletSystem, create_app
from mobile_money.accounts import AccountRole
from mobile_money.config import MobileMoneyConfig


ADMIN = {"mobile_number": "01500000000", "email": "admin@example.com", "pin": "9999"}


@pytest.fixture
def system():
    """Wallet system on in-memory storage with a configured admin"""
    config = MobileMoneyConfig(
        database_url="memory://",
        jwt_secret="test-secret",
        admin_mobile_number=ADMIN["mobile_number"],
        admin_email=ADMIN["email"],
        admin_pin=ADMIN["pin"],
    )
    wallet_system = WalletSystem(config)
    yield wallet_system
    wallet_system.close()


@pytest.fixture
def client(system):
    with TestClient(create_app(system)) as test_client:
        yield test_client


def auth(client, identifier, pin):
    r = client.post("/login", json={"identifier": identifier, "pin": pin})
    assert r.status_code == 200, r.text
    return {"Authorization": f"Bearer {r.json()['access_token']}"}


def register(client, name, mobile, role="customer", pin="12345"):
    r = client.post("/register", json={
        "name": name,
        "mobile_number": mobile,
        "email": f"{name.lower()}@example.com",
        "pin": pin,
        "role": role,
    })
    assert r.status_code == 201, r.text
    return r.json()["account"]


def activate(client, email):
    admin = auth(client, ADMIN["email"], ADMIN["pin"])
    r = client.patch(f"/admin/accounts/{email}/activate", headers=admin)
    assert r.status_code == 200, r.text
    return r.json()["account"]


class TestHealthEndpoints:

    def test_health(self, client):
        r = client.get("/health")
        assert r.status_code == 200
        assert r.json()["status"] == "healthy"


class TestRegistrationAndLogin:

    def test_register_creates_pending_account(self, client):
        account = register(client, "Carol", "01711111111")
        assert account["status"] == "pending"
        assert account["balance"] == "0"
        assert "pin_hash" not in account

    def test_duplicate_registration_conflicts(self, client):
        register(client, "Carol", "01711111111")
        r = client.post("/register", json={
            "name": "Carol", "mobile_number": "01711111111",
            "email": "carol.two@example.com", "pin": "12345",
        })
        assert r.status_code == 409
        assert r.json() == {
            "detail": "User already exists!",
            "code": "conflict",
            "details": {"identifier": "01711111111"},
        }

    def test_admin_role_cannot_be_self_registered(self, client):
        r = client.post("/register", json={
            "name": "Mallory", "mobile_number": "01799999999",
            "email": "mallory@example.com", "pin": "12345", "role": "admin",
        })
        assert r.status_code == 422

    def test_bad_credentials(self, client):
        register(client, "Carol", "01711111111")
        r = client.post("/login", json={"identifier": "carol@example.com", "pin": "00000"})
        assert r.status_code == 401
        assert r.json()["code"] == "invalid_credentials"

    def test_me_requires_token(self, client):
        assert client.get("/me").status_code == 401
        r = client.get("/me", headers={"Authorization": "Bearer not-a-token"})
        assert r.status_code == 401

    def test_me_returns_own_account(self, client):
        register(client, "Carol", "01711111111")
        r = client.get("/me", headers=auth(client, "01711111111", "12345"))
        assert r.status_code == 200
        assert r.json()["email"] == "carol@example.com"


class TestAdminEndpoints:

    def test_activation_seeds_balance_once(self, client):
        register(client, "Carol", "01711111111")
        register(client, "Agent", "01899999999", role="agent")

        assert activate(client, "carol@example.com")["balance"] == "40"
        assert activate(client, "agent@example.com")["balance"] == "10000"

        admin = auth(client, ADMIN["email"], ADMIN["pin"])
        r = client.patch("/admin/accounts/carol@example.com/activate", headers=admin)
        assert r.status_code == 409

    def test_block_and_unknown_account(self, client):
        register(client, "Carol", "01711111111")
        admin = auth(client, ADMIN["email"], ADMIN["pin"])

        r = client.patch("/admin/accounts/carol@example.com/block", headers=admin)
        assert r.status_code == 200
        assert r.json()["account"]["status"] == "blocked"

        r = client.patch("/admin/accounts/ghost@example.com/block", headers=admin)
        assert r.status_code == 404

    def test_account_search(self, client):
        register(client, "Carol", "01711111111")
        register(client, "Dave", "01822222222")
        admin = auth(client, ADMIN["email"], ADMIN["pin"])

        r = client.get("/admin/accounts", params={"search": "0182"}, headers=admin)
        assert r.status_code == 200
        assert [a["name"] for a in r.json()["accounts"]] == ["Dave"]

    def test_admin_routes_deny_other_roles(self, client):
        register(client, "Carol", "01711111111")
        customer = auth(client, "01711111111", "12345")

        assert client.get("/admin/accounts", headers=customer).status_code == 403
        assert client.get("/admin/transactions", headers=customer).status_code == 403
        r = client.patch("/admin/accounts/carol@example.com/activate", headers=customer)
        assert r.status_code == 403

    def test_audit_chain_is_valid(self, client):
        register(client, "Carol", "01711111111")
        activate(client, "carol@example.com")
        admin = auth(client, ADMIN["email"], ADMIN["pin"])

        r = client.get("/admin/audit/verify", headers=admin)
        assert r.status_code == 200
        assert r.json()["valid"]


class TestTransferFlow:

    def setup_accounts(self, client):
        register(client, "Carol", "01711111111")
        register(client, "Dave", "01722222222")
        activate(client, "carol@example.com")
        activate(client, "dave@example.com")
        return auth(client, "01711111111", "12345")

    def test_send_money(self, client, system):
        carol = self.setup_accounts(client)

        r = client.post("/transfers", json={"recipient": "01722222222", "amount": "30", "pin": "12345"}, headers=carol)

        assert r.status_code == 201, r.text
        assert r.json()["transaction_id"]
        assert system.account_store.get_account("01711111111").balance == Decimal("10")
        assert system.account_store.get_account("01722222222").balance == Decimal("70")

        r = client.get("/transactions", headers=carol)
        assert r.json()["count"] == 1
        assert r.json()["transactions"][0]["type"] == "send-money"

        dave = auth(client, "dave@example.com", "12345")
        assert client.get("/transactions", headers=dave).json()["count"] == 1

    def test_wrong_pin_moves_nothing(self, client, system):
        carol = self.setup_accounts(client)

        r = client.post("/transfers", json={"recipient": "01722222222", "amount": "30", "pin": "11111"}, headers=carol)

        assert r.status_code == 422
        assert r.json()["code"] == "invalid_pin"
        assert system.account_store.get_account("01711111111").balance == Decimal("40")

    @pytest.mark.parametrize("payload,status_code,code", [
        ({"recipient": "01722222222", "amount": "41"}, 422, "insufficient_balance"),
        ({"recipient": "01799999999", "amount": "1"}, 404, "recipient_not_found"),
        ({"recipient": "01722222222", "amount": "0"}, 400, "invalid_amount"),
        ({"recipient": "carol@example.com", "amount": "1"}, 400, "validation_error"),
    ])
    def test_transfer_failures(self, client, payload, status_code, code):
        carol = self.setup_accounts(client)
        r = client.post("/transfers", json=dict(payload, pin="12345"), headers=carol)
        assert r.status_code == status_code
        assert r.json()["code"] == code

    def test_pending_sender_rejected(self, client):
        register(client, "Paula", "01733333333")
        register(client, "Dave", "01722222222")
        paula = auth(client, "01733333333", "12345")

        r = client.post("/transfers", json={"recipient": "01722222222", "amount": "1", "pin": "12345"}, headers=paula)

        assert r.status_code == 422
        assert r.json()["code"] == "sender_inactive"

    def test_admin_sees_all_transactions(self, client):
        carol = self.setup_accounts(client)
        client.post("/transfers", json={"recipient": "01722222222", "amount": "1", "pin": "12345"}, headers=carol)
        client.post("/transfers", json={"recipient": "01722222222", "amount": "2", "pin": "12345"}, headers=carol)

        admin = auth(client, ADMIN["email"], ADMIN["pin"])
        r = client.get("/admin/transactions", headers=admin)

        assert r.status_code == 200
        assert [t["amount"] for t in r.json()["transactions"]] == ["2", "1"]


class TestCashRequestFlow:

    def setup_accounts(self, client):
        register(client, "Carol", "01711111111")
        register(client, "Agent", "01899999999", role="agent")
        register(client, "Otto", "01888888888", role="agent")
        for email in ("carol@example.com", "agent@example.com", "otto@example.com"):
            activate(client, email)
        return (
            auth(client, "01711111111", "12345"),
            auth(client, "01899999999", "12345"),
            auth(client, "01888888888", "12345"),
        )

    def test_cash_in_approved_by_agent(self, client, system):
        carol, agent, _ = self.setup_accounts(client)

        r = client.post("/cash-requests", json={
            "agent": "01899999999", "amount": "200", "type": "cash-in", "pin": "12345"
        }, headers=carol)
        assert r.status_code == 201, r.text
        request_id = r.json()["request"]["request_id"]

        r = client.get("/agent/cash-requests", headers=agent)
        assert [req["request_id"] for req in r.json()["requests"]] == [request_id]

        r = client.post(f"/agent/cash-requests/{request_id}/resolve", json={"decision": "approve"}, headers=agent)
        assert r.status_code == 200, r.text
        body = r.json()
        assert body["request"]["status"] == "approved"
        assert body["request"]["transaction_id"] == body["settlement"]["transaction_id"]

        assert system.account_store.get_account("01711111111").balance == Decimal("240")
        assert system.account_store.get_account("01899999999").balance == Decimal("9800")

        r = client.post(f"/agent/cash-requests/{request_id}/resolve", json={"decision": "reject"}, headers=agent)
        assert r.status_code == 409
        assert r.json()["code"] == "already_resolved"

    def test_cash_out_beyond_balance_rejected_at_creation(self, client):
        carol, _, _ = self.setup_accounts(client)
        r = client.post("/cash-requests", json={
            "agent": "01899999999", "amount": "50", "type": "cash-out", "pin": "12345"
        }, headers=carol)
        assert r.status_code == 422
        assert r.json()["code"] == "insufficient_balance"

    def test_only_target_agent_may_resolve(self, client):
        carol, _, otto = self.setup_accounts(client)
        r = client.post("/cash-requests", json={
            "agent": "01899999999", "amount": "10", "type": "cash-out", "pin": "12345"
        }, headers=carol)
        request_id = r.json()["request"]["request_id"]

        r = client.post(f"/agent/cash-requests/{request_id}/resolve", json={"decision": "approve"}, headers=otto)
        assert r.status_code == 403

        r = client.post(f"/agent/cash-requests/{request_id}/resolve", json={"decision": "approve"}, headers=carol)
        assert r.status_code == 403

    def test_agents_and_admins_cannot_open_requests(self, client):
        _, _, otto = self.setup_accounts(client)
        admin = auth(client, ADMIN["email"], ADMIN["pin"])
        payload = {"agent": "01899999999", "amount": "500", "type": "cash-in", "pin": "12345"}

        assert client.post("/cash-requests", json=payload, headers=otto).status_code == 403
        r = client.post("/cash-requests", json=dict(payload, pin=ADMIN["pin"]), headers=admin)
        assert r.status_code == 403
        assert r.json()["code"] == "forbidden"

    def test_customer_sees_own_requests(self, client):
        carol, agent, _ = self.setup_accounts(client)
        client.post("/cash-requests", json={
            "agent": "agent@example.com", "amount": "5", "type": "cash-in", "pin": "12345"
        }, headers=carol)

        r = client.get("/cash-requests", headers=carol)
        assert r.json()["count"] == 1
        assert r.json()["requests"][0]["status"] == "pending"

    def test_unknown_request(self, client):
        _, agent, _ = self.setup_accounts(client)
        r = client.post("/agent/cash-requests/nope/resolve", json={"decision": "approve"}, headers=agent)
        assert r.status_code == 404


class TestAppLifecycle:

    def test_app_builds_and_closes_its_own_system(self, tmp_path):
        config = MobileMoneyConfig(database_url=f"sqlite:///{tmp_path}/wallet.db", jwt_secret="s")
        app = create_app(config=config)

        with TestClient(app) as client:
            assert client.get("/health").status_code == 200
            system = app.state.system
            system.identity.register("Carol", "01711111111", "carol@example.com", "12345",
                                     role=AccountRole.CUSTOMER)

        assert app.state.system is None
