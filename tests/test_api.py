from __future__ import annotations

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from toptake_credits.app import create_app
from toptake_credits.config import CreditSettings
from toptake_credits.db.memory import InMemoryDBManager
from toptake_credits.models.credits import CreditType


ADMIN_HEADERS = {"X-Admin-Token": "secret"}


@pytest.fixture
def api_db():
    return InMemoryDBManager()


@pytest_asyncio.fixture
async def client(api_db, tmp_path):
    settings = CreditSettings(
        ledger_log_path=tmp_path / "ledger.log",
        admin_token="secret",
        mongo_uri=None,
    )
    app = create_app(settings=settings, db=api_db)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


async def _grant(client, user_id, credit_type, amount, **extra):
    body = {"user_id": user_id, "credit_type": credit_type, "amount": amount, "reason": "support"}
    body.update(extra)
    return await client.post("/credits/admin/grant", json=body, headers=ADMIN_HEADERS)


@pytest.mark.asyncio
async def test_health(client):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


@pytest.mark.asyncio
async def test_balances_for_fresh_user(client):
    response = await client.get("/credits/fresh/balances")

    assert response.status_code == 200
    balances = response.json()["balances"]
    assert set(balances) == {t.value for t in CreditType}
    assert all(v == 0 for v in balances.values())


@pytest.mark.asyncio
async def test_single_balance_unknown_type(client):
    response = await client.get("/credits/u/balances/coins")
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_admin_grant_requires_token(client, api_db):
    body = {"user_id": "u", "credit_type": "boost", "amount": 1, "reason": "x"}

    assert (await client.post("/credits/admin/grant", json=body)).status_code == 403
    response = await client.post(
        "/credits/admin/grant", json=body, headers={"X-Admin-Token": "wrong"}
    )
    assert response.status_code == 403
    assert await api_db.get_balance("u", CreditType.BOOST) == 0


@pytest.mark.asyncio
async def test_admin_grant_with_key_is_idempotent(client):
    first = await _grant(client, "u", "boost", 2, idempotency_key="ticket-7")
    second = await _grant(client, "u", "boost", 2, idempotency_key="ticket-7")

    assert first.status_code == 200
    assert first.json()["id"] == second.json()["id"]
    response = await client.get("/credits/u/balances/boost")
    assert response.json()["balance"] == 2


@pytest.mark.asyncio
async def test_admin_grant_unknown_type(client):
    response = await _grant(client, "u", "coins", 1)
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_spend_success_and_insufficient(client):
    await _grant(client, "u", "delete", 1)

    response = await client.post(
        "/credits/spend", json={"user_id": "u", "credit_type": "delete"}
    )
    assert response.json() == {"spent": True, "balance": 0}

    response = await client.post(
        "/credits/spend", json={"user_id": "u", "credit_type": "delete"}
    )
    assert response.status_code == 200
    assert response.json() == {"spent": False, "balance": 0}


@pytest.mark.asyncio
async def test_spend_validation(client):
    response = await client.post(
        "/credits/spend", json={"user_id": "u", "credit_type": "gems"}
    )
    assert response.status_code == 400

    response = await client.post(
        "/credits/spend", json={"user_id": "u", "credit_type": "boost", "amount": 0}
    )
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_history_endpoint(client):
    for amount in (1, 2, 3):
        await _grant(client, "u", "anonymous", amount)

    response = await client.get("/credits/u/history", params={"limit": 2})

    assert response.status_code == 200
    page = response.json()
    assert page["total"] == 3
    assert [item["amount"] for item in page["items"]] == [3, 2]
    assert page["items"][0]["action"] == "purchase"

    response = await client.get("/credits/u/history", params={"limit": 0})
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_webhook_purchase_and_refund(client):
    event = {
        "kind": "purchase_completed",
        "external_transaction_id": "cs_1",
        "user_id": "u",
        "price": 2.99,
        "price_id": "price_anonymous_10",
    }

    for _ in range(2):
        response = await client.post("/credits/webhook", json=event)
        assert response.json() == {"received": True, "reconciliation_required": False}

    balance = await client.get("/credits/u/balances/anonymous")
    assert balance.json()["balance"] == 10
    purchases = (await client.get("/credits/u/purchases")).json()["items"]
    assert [p["status"] for p in purchases] == ["completed"]

    response = await client.post(
        "/credits/webhook", json={"kind": "refund_issued", "external_transaction_id": "cs_1"}
    )
    assert response.status_code == 200
    balance = await client.get("/credits/u/balances/anonymous")
    assert balance.json()["balance"] == 0


@pytest.mark.asyncio
async def test_webhook_unknown_price_needs_reconciliation(client, api_db):
    event = {
        "kind": "purchase_completed",
        "external_transaction_id": "cs_2",
        "user_id": "u",
        "price": 9.99,
        "price_id": "price_retired",
    }

    response = await client.post("/credits/webhook", json=event)

    assert response.status_code == 200
    assert response.json()["reconciliation_required"] is True
    assert await api_db.get_purchase_by_external_id("cs_2") is None


@pytest.mark.asyncio
async def test_webhook_malformed_payload(client):
    response = await client.post("/credits/webhook", json={"kind": "mystery"})
    assert response.status_code == 422
