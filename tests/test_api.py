import json
from datetime import datetime
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from auth import issue_identity_token
from config import Settings
from container import build_container
from database import Database
from gemini import ReceiptScanner
from main import create_app
from schemas import IdentityClaims

NOW = datetime(2025, 5, 20, 12, 0)


class FakeResponse:
    def __init__(self, text):
        self.text = text


class FakeModel:
    def __init__(self, text):
        self.text = text

    def generate_content(self, contents, **kwargs):
        return FakeResponse(self.text)


def _container(**settings_overrides):
    values = dict(database_url="sqlite://", timezone="UTC", auth_secret="test-secret")
    values.update(settings_overrides)
    settings = Settings(**values)
    database = Database(settings.database_url)
    database.create_all()
    container = build_container(settings, database)
    container.clock = lambda: NOW
    return container


def _client(container) -> TestClient:
    return TestClient(create_app(container, start_scheduler=False))


def _auth(container, sub: str = "user_1") -> dict:
    claims = IdentityClaims(sub=sub, email=f"{sub}@example.com", name="Ada")
    return {"Authorization": f"Bearer {issue_identity_token(container.settings, claims)}"}


def _create_account(client, headers, name="Main", balance="1000.00", **extra):
    payload = {"name": name, "type": "CURRENT", "balance": balance}
    payload.update(extra)
    resp = client.post("/api/accounts", json=payload, headers=headers)
    assert resp.status_code == 201, resp.text
    return resp.json()


def _transaction(account_id, txn_type="EXPENSE", amount="150.00", **extra):
    payload = {
        "type": txn_type,
        "amount": amount,
        "description": "Groceries",
        "date": "2025-05-19T10:00:00",
        "account_id": account_id,
        "category": "groceries",
    }
    payload.update(extra)
    return payload


@pytest.fixture
def container():
    return _container()


@pytest.fixture
def client(container):
    with _client(container) as test_client:
        yield test_client


def test_requests_without_identity_are_unauthorized(client):
    resp = client.get("/api/accounts")
    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "UNAUTHORIZED"

    resp = client.get("/api/me", headers={"Authorization": "Bearer forged"})
    assert resp.status_code == 401


def test_me_creates_user_on_first_request(client, container):
    headers = _auth(container)
    first = client.get("/api/me", headers=headers).json()
    second = client.get("/api/me", headers=headers).json()
    assert first["id"] == second["id"]
    assert first["email"] == "user_1@example.com"


def test_email_claimed_by_another_identity_is_a_validation_error(client, container):
    client.get("/api/me", headers=_auth(container, "user_1"))
    claims = IdentityClaims(sub="user_2", email="user_1@example.com")
    token = issue_identity_token(container.settings, claims)

    resp = client.get("/api/me", headers={"Authorization": f"Bearer {token}"})
    assert resp.status_code == 422
    assert resp.json()["error"]["code"] == "VALIDATION_FAILED"


def test_account_and_transaction_flow(client, container):
    headers = _auth(container)
    account = _create_account(client, headers)
    assert account["is_default"] is True

    resp = client.post("/api/transactions", json=_transaction(account["id"]), headers=headers)
    assert resp.status_code == 201, resp.text
    txn = resp.json()

    detail = client.get(f"/api/accounts/{account['id']}", headers=headers).json()
    assert Decimal(detail["balance"]) == Decimal("850.00")
    assert detail["transaction_count"] == 1
    assert [t["id"] for t in detail["transactions"]] == [txn["id"]]

    resp = client.put(
        f"/api/transactions/{txn['id']}",
        json=_transaction(account["id"], "INCOME", "200.00", category="salary"),
        headers=headers,
    )
    assert resp.status_code == 200, resp.text
    listing = client.get("/api/accounts", headers=headers).json()
    assert Decimal(listing[0]["balance"]) == Decimal("1200.00")

    resp = client.post(
        "/api/transactions/bulk-delete", json={"ids": [txn["id"]]}, headers=headers
    )
    assert resp.json() == {"deleted": 1}
    detail = client.get(f"/api/accounts/{account['id']}", headers=headers).json()
    assert Decimal(detail["balance"]) == Decimal("1000.00")


def test_recurring_without_interval_is_rejected(client, container):
    headers = _auth(container)
    account = _create_account(client, headers)
    resp = client.post(
        "/api/transactions",
        json=_transaction(account["id"], is_recurring=True),
        headers=headers,
    )
    assert resp.status_code == 422
    assert resp.json()["error"]["code"] == "VALIDATION_FAILED"


def test_other_users_resources_are_not_found(client, container):
    owner = _auth(container, "owner")
    intruder = _auth(container, "intruder")
    account = _create_account(client, owner)
    txn = client.post(
        "/api/transactions", json=_transaction(account["id"]), headers=owner
    ).json()

    for resp in (
        client.get(f"/api/accounts/{account['id']}", headers=intruder),
        client.get(f"/api/transactions/{txn['id']}", headers=intruder),
        client.delete(f"/api/accounts/{account['id']}", headers=intruder),
        client.post(
            "/api/transactions/bulk-delete", json={"ids": [txn["id"]]}, headers=intruder
        ),
    ):
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "NOT_FOUND"


def test_default_account_switch_and_delete(client, container):
    headers = _auth(container)
    main = _create_account(client, headers, "Main")
    savings = _create_account(client, headers, "Savings")
    assert savings["is_default"] is False

    resp = client.post(f"/api/accounts/{savings['id']}/default", headers=headers)
    assert resp.json()["is_default"] is True

    assert client.delete(f"/api/accounts/{savings['id']}", headers=headers).status_code == 204
    listing = client.get("/api/accounts", headers=headers).json()
    assert [(a["id"], a["is_default"]) for a in listing] == [(main["id"], True)]


def test_transaction_listing_pages_and_filters(client, container):
    headers = _auth(container)
    account = _create_account(client, headers)
    for day in (1, 2, 3):
        client.post(
            "/api/transactions",
            json=_transaction(account["id"], date=f"2025-05-0{day}T09:00:00"),
            headers=headers,
        )

    page = client.get("/api/transactions?limit=2", headers=headers).json()
    assert len(page["items"]) == 2
    assert page["has_more"] is True
    assert page["items"][0]["date"].startswith("2025-05-03")

    custom = client.get(
        "/api/transactions?period=custom&start=2025-05-02&end=2025-05-02",
        headers=headers,
    ).json()
    assert len(custom["items"]) == 1

    resp = client.get("/api/transactions?period=fortnight", headers=headers)
    assert resp.status_code == 422


def test_rate_limited_creation():
    container = _container(rate_limit_capacity=2, rate_limit_refill=2)
    headers = _auth(container)
    with _client(container) as client:
        _create_account(client, headers, "One")
        _create_account(client, headers, "Two")
        resp = client.post(
            "/api/accounts",
            json={"name": "Three", "type": "SAVINGS", "balance": "0"},
            headers=headers,
        )
    assert resp.status_code == 429
    assert resp.json()["error"] == {
        "code": "RATE_LIMITED",
        "message": "Too many requests. Please try again later.",
    }


def test_bot_user_agent_is_blocked(client, container):
    headers = dict(_auth(container), **{"User-Agent": "curl/8.4.0"})
    resp = client.post(
        "/api/accounts",
        json={"name": "Main", "type": "CURRENT", "balance": "10"},
        headers=headers,
    )
    assert resp.status_code == 403
    assert resp.json()["error"]["code"] == "REQUEST_BLOCKED"


def test_budget_round_trip(client, container):
    headers = _auth(container)
    account = _create_account(client, headers)
    client.post("/api/transactions", json=_transaction(account["id"]), headers=headers)

    empty = client.get("/api/budget", headers=headers).json()
    assert empty["budget"] is None

    resp = client.put("/api/budget", json={"amount": "4000"}, headers=headers)
    assert Decimal(resp.json()["amount"]) == Decimal("4000")

    current = client.get(f"/api/budget?account_id={account['id']}", headers=headers).json()
    assert Decimal(current["budget"]["amount"]) == Decimal("4000")
    assert Decimal(current["current_expenses"]) == Decimal("150.00")

    resp = client.put("/api/budget", json={"amount": "0"}, headers=headers)
    assert resp.status_code == 422


def test_receipt_scan(client, container):
    payload = {
        "amount": 23.4,
        "date": "2025-05-18T12:30:00",
        "description": "Lunch",
        "merchantName": "Noodle Bar",
        "category": "food",
    }
    container.scanner = ReceiptScanner(FakeModel(json.dumps(payload)))
    headers = _auth(container)

    resp = client.post(
        "/api/receipts/scan",
        files={"file": ("receipt.png", b"\x89PNG", "image/png")},
        headers=headers,
    )
    assert resp.status_code == 200, resp.text
    body = resp.json()
    assert body["merchantName"] == "Noodle Bar"
    assert body["category"] == "food"

    resp = client.post(
        "/api/receipts/scan",
        files={"file": ("receipt.pdf", b"%PDF", "application/pdf")},
        headers=headers,
    )
    assert resp.status_code == 422


def test_receipt_scan_without_model_is_a_service_failure(client, container):
    resp = client.post(
        "/api/receipts/scan",
        files={"file": ("receipt.png", b"\x89PNG", "image/png")},
        headers=_auth(container),
    )
    assert resp.status_code == 502
    assert resp.json()["error"]["code"] == "EXTERNAL_SERVICE_FAILURE"


def test_seed_replaces_history_and_balance(client, container):
    headers = _auth(container)
    account = _create_account(client, headers)

    created = client.post("/api/seed", headers=headers).json()["created"]

    detail = client.get(f"/api/accounts/{account['id']}", headers=headers).json()
    assert detail["transaction_count"] == created
    assert 91 <= created <= 273
    signed = sum(
        Decimal(t["amount"]) if t["type"] == "INCOME" else -Decimal(t["amount"])
        for t in detail["transactions"]
    )
    assert Decimal(detail["balance"]) == signed
