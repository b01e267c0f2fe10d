"""
Integration tests for the Yield Ledger API
Tests end-to-end workflows using FastAPI TestClient
"""

import pytest
from fastapi.testclient import TestClient

from yield_ledger import config as config_module
from yield_ledger.api import create_app
from yield_ledger.clock import ManualClock
from yield_ledger.collaborators import AllowListAccessControl
from yield_ledger.config import YieldLedgerConfig
from yield_ledger.storage import InMemoryStorage
from yield_ledger.token import YieldBearingToken


ADMIN = "0xadmin"
ALICE = "0xalice"
BOB = "0xbob"
DEX = "0xdex"


@pytest.fixture
def clock():
    return ManualClock(10)


@pytest.fixture
def token(clock):
    token = YieldBearingToken(
        storage=InMemoryStorage(),
        access_control=AllowListAccessControl([ADMIN]),
        clock=clock,
        config=YieldLedgerConfig()
    )
    token.value_transfer.fund(ADMIN, 10 ** 24)
    token.mint(ADMIN, ALICE, 100)
    token.mint(ADMIN, BOB, 300)
    return token


@pytest.fixture
def client(token):
    return TestClient(create_app(token))


def as_caller(account):
    return {"X-Caller": account}


class TestHealthEndpoints:

    def test_health(self, client):
        r = client.get("/health")
        assert r.status_code == 200
        assert r.json()["status"] == "healthy"


class TestYieldFlow:
    """End-to-end deposit, settle and claim"""

    def test_deposit_settle_claim(self, client, clock):
        clock.set(20)
        r = client.post("/deposits", json={"amount": 1000}, headers=as_caller(ADMIN))
        assert r.status_code == 201
        assert r.json()["deposit"]["amount"] == "1000"
        assert r.json()["deposit"]["total_balance_seconds_snapshot"] == "4000"

        clock.set(21)
        r = client.get(f"/holders/{ALICE}")
        assert r.json()["pending_yield"] == "250"

        r = client.post(f"/holders/{BOB}/settle")
        assert r.status_code == 200
        assert r.json()["accrued"] == "750"
        assert r.json()["skipped"] is None

        r = client.post(f"/holders/{ALICE}/claim")
        assert r.json()["paid"] == "250"

        r = client.get(f"/holders/{ALICE}")
        data = r.json()
        assert data["yield_accrued"] == "250"
        assert data["yield_withdrawn"] == "250"
        assert data["pending_yield"] == "0"

    def test_same_instant_settle_reports_skip(self, client, clock):
        clock.set(20)
        client.post("/deposits", json={"amount": 1000}, headers=as_caller(ADMIN))
        r = client.post(f"/holders/{ALICE}/settle")
        assert r.json()["skipped"] == "same_instant_deposit"
        assert r.json()["accrued"] == "0"

    def test_deposit_listing(self, client, clock):
        for timestamp in (20, 30):
            clock.set(timestamp)
            client.post("/deposits", json={"amount": 5}, headers=as_caller(ADMIN))

        r = client.get("/deposits")
        assert [d["timestamp"] for d in r.json()] == [30, 20]
        assert client.get("/deposits/20").json()["previous_timestamp"] == 0
        assert client.get("/deposits/25").status_code == 404

        supply = client.get("/supply").json()
        assert supply["total_supply"] == "400"
        assert supply["last_deposit_timestamp"] == 30

    def test_zero_deposit(self, client):
        r = client.post("/deposits", json={"amount": 0}, headers=as_caller(ADMIN))
        assert r.status_code == 201
        assert r.json() == {"recorded": False, "deposit": None}


class TestErrors:

    def test_missing_caller(self, client):
        r = client.post("/deposits", json={"amount": 10})
        assert r.status_code == 401

    def test_unauthorized_deposit(self, client):
        r = client.post("/deposits", json={"amount": 10}, headers=as_caller(ALICE))
        assert r.status_code == 403
        assert r.json()["error"] == "UnauthorizedError"

    def test_negative_amount_rejected_by_validation(self, client):
        r = client.post("/deposits", json={"amount": -1}, headers=as_caller(ADMIN))
        assert r.status_code == 422

    def test_insufficient_balance(self, client):
        r = client.post("/transfers", json={"recipient": BOB, "amount": 1000},
                        headers=as_caller(ALICE))
        assert r.status_code == 400
        assert r.json()["error"] == "PreconditionError"

    def test_unfunded_deposit(self, client):
        r = client.post("/deposits", json={"amount": 10 ** 25}, headers=as_caller(ADMIN))
        assert r.status_code == 402


class TestIntermediaryEndpoints:

    def test_order_lifecycle(self, client, token):
        r = client.post("/intermediaries", json={"account": DEX}, headers=as_caller(ADMIN))
        assert r.status_code == 201
        assert token.is_intermediary(DEX)

        r = client.post(f"/intermediaries/{DEX}/orders",
                        json={"beneficiary": ALICE, "amount": 50}, headers=as_caller(DEX))
        assert r.json()["held"] == "50"
        assert client.get(f"/holders/{ALICE}").json()["held_by_intermediary"] == "50"

        r = client.post(f"/intermediaries/{DEX}/orders/release",
                        json={"beneficiary": ALICE, "amount": 60}, headers=as_caller(DEX))
        assert r.status_code == 409

        r = client.post(f"/intermediaries/{DEX}/orders/release",
                        json={"beneficiary": ALICE, "amount": 50}, headers=as_caller(DEX))
        assert r.json()["held"] == "0"
        assert token.beneficiary_of(DEX) is None

        r = client.delete(f"/intermediaries/{DEX}", headers=as_caller(ADMIN))
        assert r.status_code == 200
        assert not token.is_intermediary(DEX)

    def test_orders_only_by_intermediary_itself(self, client):
        client.post("/intermediaries", json={"account": DEX}, headers=as_caller(ADMIN))
        r = client.post(f"/intermediaries/{DEX}/orders",
                        json={"beneficiary": ALICE, "amount": 1}, headers=as_caller(BOB))
        assert r.status_code == 403

    def test_duplicate_registration(self, client):
        client.post("/intermediaries", json={"account": DEX}, headers=as_caller(ADMIN))
        r = client.post("/intermediaries", json={"account": DEX}, headers=as_caller(ADMIN))
        assert r.status_code == 400

    def test_transfer_to_intermediary(self, client, token, clock):
        client.post("/intermediaries", json={"account": DEX}, headers=as_caller(ADMIN))
        clock.set(12)
        r = client.post("/transfers", json={"recipient": DEX, "amount": 100},
                        headers=as_caller(ALICE))
        assert r.status_code == 200
        assert token.beneficiary_of(DEX) == ALICE
        assert token.balance_of(DEX) == 100


class TestDefaultConfiguredApp:
    """Drive the app exactly as run_server builds it"""

    @pytest.fixture
    def default_client(self, monkeypatch):
        monkeypatch.setenv("YIELD_LEDGER_ADMIN_ACCOUNTS", f'["{ADMIN}"]')
        monkeypatch.setenv("YIELD_LEDGER_DATABASE_URL", "memory")
        original = config_module.get_config()
        config_module.reload_config()
        try:
            yield TestClient(create_app())
        finally:
            config_module.config = original

    def test_admin_from_settings_can_operate(self, default_client):
        r = default_client.post("/mint", json={"recipient": ALICE, "amount": 100},
                                headers=as_caller(ADMIN))
        assert r.status_code == 201
        assert r.json()["balance"] == "100"
        assert r.json()["total_supply"] == "100"

        r = default_client.post("/custody/fund", json={"account": ADMIN, "amount": 1000},
                                headers=as_caller(ADMIN))
        assert r.json()["funds"] == "1000"

        r = default_client.post("/deposits", json={"amount": 1000}, headers=as_caller(ADMIN))
        assert r.status_code == 201
        assert r.json()["recorded"]

        r = default_client.post("/intermediaries", json={"account": DEX}, headers=as_caller(ADMIN))
        assert r.status_code == 201

        holder = default_client.get(f"/holders/{ALICE}").json()
        assert holder["balance"] == "100"

    def test_non_admin_rejected(self, default_client):
        r = default_client.post("/mint", json={"recipient": ALICE, "amount": 100},
                                headers=as_caller(ALICE))
        assert r.status_code == 403
        r = default_client.post("/custody/fund", json={"account": ALICE, "amount": 10},
                                headers=as_caller(ALICE))
        assert r.status_code == 403
