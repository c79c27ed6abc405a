from __future__ import annotations

import pytest

from toptake_credits.cache.base import balances_cache_key
from toptake_credits.cache.memory import InMemoryAsyncCache
from toptake_credits.exceptions import ConfigurationError
from toptake_credits.models.credits import CreditType
from toptake_credits.services.query_service import CreditQueryService


@pytest.mark.asyncio
async def test_fresh_user_sees_every_type_at_zero(query_service):
    balances = await query_service.get_all_balances("fresh")

    assert {k.value: v for k, v in balances.items()} == {
        "anonymous": 0,
        "late_submit": 0,
        "sneak_peek": 0,
        "boost": 0,
        "extra_takes": 0,
        "delete": 0,
    }
    assert await query_service.get_balance("fresh", "delete") == 0


@pytest.mark.asyncio
async def test_unknown_type_lookup_fails(query_service):
    with pytest.raises(ConfigurationError):
        await query_service.get_balance("u", "coins")


@pytest.mark.asyncio
async def test_history_is_newest_first_and_paginated(ledger_service, query_service):
    for i in range(5):
        await ledger_service.grant("u", "boost", i + 1, f"grant {i}")

    page = await query_service.get_history("u", limit=2, offset=0)
    assert [e.description for e in page] == ["grant 4", "grant 3"]

    page = await query_service.get_history("u", limit=2, offset=4)
    assert [e.description for e in page] == ["grant 0"]

    result = await query_service.get_history_page("u", limit=2, offset=2)
    assert result.total == 5
    assert [e.description for e in result.items] == ["grant 2", "grant 1"]


@pytest.mark.asyncio
async def test_history_filtered_by_type(ledger_service, query_service):
    await ledger_service.grant("u", "boost", 1, "b")
    await ledger_service.grant("u", "delete", 1, "d")

    entries = await query_service.get_history("u", limit=10, credit_type="delete")

    assert [e.credit_type for e in entries] == [CreditType.DELETE]


@pytest.mark.asyncio
@pytest.mark.parametrize("limit,offset", [(0, 0), (201, 0), (10, -1)])
async def test_bad_pagination_rejected(query_service, limit, offset):
    with pytest.raises(ValueError):
        await query_service.get_history("u", limit=limit, offset=offset)


@pytest.mark.asyncio
async def test_cached_balances_refresh_after_mutation(cache, ledger_service, query_service):
    assert await query_service.get_balance("u", "boost") == 0
    assert await cache.get(balances_cache_key("u")) is not None

    await ledger_service.grant("u", "boost", 2, "setup")
    assert await cache.get(balances_cache_key("u")) is None
    assert await query_service.get_balance("u", "boost") == 2

    await ledger_service.spend("u", "boost", 1)
    assert await query_service.get_balance("u", "boost") == 1


@pytest.mark.asyncio
async def test_corrupted_cache_entry_is_replaced(db, ledger_service):
    cache = InMemoryAsyncCache()
    service = CreditQueryService(db=db, cache=cache)
    await ledger_service.grant("u", "anonymous", 3, "setup")
    await cache.set(balances_cache_key("u"), {"not-a-type": "x"})

    balances = await service.get_all_balances("u")

    assert balances[CreditType.ANONYMOUS] == 3


@pytest.mark.asyncio
async def test_cache_entries_expire():
    now = [100.0]
    cache = InMemoryAsyncCache(clock=lambda: now[0])
    await cache.set("k", 1, ttl_seconds=10)

    assert await cache.get("k") == 1
    now[0] += 10
    assert await cache.get("k") is None
    assert len(cache) == 0


@pytest.mark.asyncio
async def test_cache_evicts_least_recently_used():
    cache = InMemoryAsyncCache(max_entries=2)
    await cache.set("a", 1)
    await cache.set("b", 2)
    assert await cache.get("a") == 1

    await cache.set("c", 3)

    assert await cache.get("b") is None
    assert await cache.get("a") == 1
    assert len(cache) == 2


@pytest.mark.asyncio
async def test_partial_cache_entry_is_replaced(db, ledger_service):
    cache = InMemoryAsyncCache()
    service = CreditQueryService(db=db, cache=cache)
    await ledger_service.grant("u", "delete", 1, "setup")
    await cache.set(balances_cache_key("u"), {"boost": 4})

    assert await service.get_balance("u", "delete") == 1
    assert await service.get_balance("u", "boost") == 0


@pytest.mark.asyncio
async def test_empty_cache_is_filled_on_first_read(db):
    cache = InMemoryAsyncCache()
    service = CreditQueryService(db=db, cache=cache)
    assert len(cache) == 0

    assert await service.get_balance("u", "boost") == 0
    assert len(cache) == 1

    # Direct store writes bypass invalidation, so the cached value is served
    await db.increment_balance("u", CreditType.BOOST, 3)
    assert await service.get_balance("u", "boost") == 0
