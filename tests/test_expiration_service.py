from __future__ import annotations

from datetime import timedelta

import pytest

from toptake_credits.models.base import utcnow
from toptake_credits.models.credits import CreditAction, CreditType
from toptake_credits.models.ledger import LedgerEventType
from toptake_credits.models.purchase import PurchaseStatus


@pytest.mark.asyncio
async def test_sweep_expires_lapsed_purchases_once(db, recorder, expiration_service):
    now = utcnow()
    await recorder.record_completed_purchase(
        "txn_old", "u", "sneak_peek", 5, 3.99, expires_at=now - timedelta(hours=1)
    )
    await recorder.record_completed_purchase(
        "txn_new", "u", "sneak_peek", 2, 0.99, expires_at=now + timedelta(days=1)
    )
    await recorder.record_completed_purchase("txn_forever", "u", "boost", 1, 0.99)

    assert await expiration_service.expire_lapsed_purchases(as_of=now) == 5
    assert await expiration_service.expire_lapsed_purchases(as_of=now) == 0

    assert await db.get_balance("u", CreditType.SNEAK_PEEK) == 2
    assert await db.get_balance("u", CreditType.BOOST) == 1

    entry = await db.get_history_by_idempotency_key("expire:txn_old")
    assert entry.action == CreditAction.EXPIRE
    grant = await db.get_history_by_idempotency_key("txn_old")
    assert entry.related_history_id == grant.id

    sweeps = [e for e in db.ledger_entries if e.event_type == LedgerEventType.SYSTEM]
    assert len(sweeps) == 1


@pytest.mark.asyncio
async def test_sweep_clamps_spent_credits(db, recorder, ledger_service, expiration_service):
    now = utcnow()
    await recorder.record_completed_purchase(
        "txn_p", "u", "boost", 3, 1.99, expires_at=now - timedelta(minutes=5)
    )
    assert await ledger_service.spend("u", "boost", 2)

    assert await expiration_service.expire_lapsed_purchases(as_of=now) == 1
    assert await db.get_balance("u", CreditType.BOOST) == 0


@pytest.mark.asyncio
async def test_refunded_purchases_are_not_expired(db, recorder, expiration_service):
    now = utcnow()
    await recorder.record_completed_purchase(
        "txn_r", "u", "delete", 1, 0.99, expires_at=now - timedelta(days=1)
    )
    await recorder.record_refund("txn_r")

    assert await expiration_service.expire_lapsed_purchases(as_of=now) == 0
    assert await db.get_history_by_idempotency_key("expire:txn_r") is None


@pytest.mark.asyncio
async def test_sweep_stamps_purchase_as_expired(db, recorder, expiration_service):
    now = utcnow()
    await recorder.record_completed_purchase(
        "txn_s", "u", "anonymous", 4, 1.99, expires_at=now - timedelta(minutes=1)
    )
    assert [p.external_transaction_id for p in await db.get_lapsed_purchases(now)] == ["txn_s"]

    await expiration_service.expire_lapsed_purchases(as_of=now)

    purchase = await db.get_purchase_by_external_id("txn_s")
    assert purchase.expired_at is not None
    assert purchase.status == PurchaseStatus.COMPLETED
    assert await db.get_lapsed_purchases(now) == []
    assert await db.mark_purchase_expired("txn_s", now) is None


@pytest.mark.asyncio
async def test_failed_expiry_leaves_purchase_lapsed(db, recorder, expiration_service, monkeypatch):
    now = utcnow()
    await recorder.record_completed_purchase(
        "txn_f", "u", "boost", 2, 0.99, expires_at=now - timedelta(minutes=1)
    )

    async def broken_insert(entry):
        raise RuntimeError("history store down")

    monkeypatch.setattr(db, "insert_history_entry", broken_insert)
    with pytest.raises(RuntimeError):
        await expiration_service.expire_lapsed_purchases(as_of=now)
    monkeypatch.undo()

    purchase = await db.get_purchase_by_external_id("txn_f")
    assert purchase.expired_at is None
    assert await db.get_balance("u", CreditType.BOOST) == 2

    assert await expiration_service.expire_lapsed_purchases(as_of=now) == 2
    assert await db.get_balance("u", CreditType.BOOST) == 0
