from __future__ import annotations

from typing import Dict, List, Optional

from ..cache.base import AsyncCacheBackend, balances_cache_key
from ..db.base import BaseDBManager
from ..models.base import PaginatedResult
from ..models.credits import CreditHistoryEntry, CreditType
from ..models.purchase import CreditPurchase


class CreditQueryService:
    """
    Read-only projections for the credits panel, history and purchase
    screens. Balances come from the cache when present; the cache entry is
    dropped by the ledger service after every mutation.
    """

    def __init__(
        self,
        db: BaseDBManager,
        cache: Optional[AsyncCacheBackend] = None,
        cache_ttl_seconds: int = 300,
        max_page_size: int = 200,
    ) -> None:
        self._db = db
        self._cache = cache
        self._cache_ttl_seconds = cache_ttl_seconds
        self._max_page_size = max_page_size

    async def get_balance(self, user_id: str, credit_type: CreditType | str) -> int:
        credit_type = CreditType.parse(credit_type)
        balances = await self.get_all_balances(user_id)
        return balances[credit_type]

    async def get_all_balances(self, user_id: str) -> Dict[CreditType, int]:
        """Every credit type, with 0 for types the user never held."""
        cache_key = balances_cache_key(user_id)
        if self._cache is not None:
            cached = await self._cache.get(cache_key)
            if cached is not None:
                try:
                    balances = {CreditType(k): int(v) for k, v in cached.items()}
                except (AttributeError, TypeError, ValueError):
                    balances = {}
                if len(balances) == len(CreditType):
                    return balances
                await self._cache.delete(cache_key)

        stored = await self._db.get_balances(user_id)
        balances = {credit_type: stored.get(credit_type, 0) for credit_type in CreditType}
        if self._cache is not None:
            await self._cache.set(
                cache_key,
                {k.value: v for k, v in balances.items()},
                ttl_seconds=self._cache_ttl_seconds,
            )
        return balances

    async def get_history(
        self,
        user_id: str,
        limit: int = 50,
        offset: int = 0,
        credit_type: CreditType | str | None = None,
    ) -> List[CreditHistoryEntry]:
        """Newest first."""
        self._check_page(limit, offset)
        parsed = CreditType.parse(credit_type) if credit_type is not None else None
        return await self._db.get_history(user_id, limit, offset, credit_type=parsed)

    async def get_history_page(
        self,
        user_id: str,
        limit: int = 50,
        offset: int = 0,
        credit_type: CreditType | str | None = None,
    ) -> PaginatedResult:
        items = await self.get_history(user_id, limit, offset, credit_type)
        parsed = CreditType.parse(credit_type) if credit_type is not None else None
        total = await self._db.count_history(user_id, credit_type=parsed)
        return PaginatedResult(items=items, total=total, limit=limit, offset=offset)

    async def get_purchases(
        self, user_id: str, limit: int | None = None, offset: int = 0
    ) -> List[CreditPurchase]:
        """Newest first; all of them when `limit` is None."""
        if limit is not None:
            self._check_page(limit, offset)
        elif offset < 0:
            raise ValueError("offset must not be negative")
        return await self._db.get_purchases(user_id, limit=limit, offset=offset)

    def _check_page(self, limit: int, offset: int) -> None:
        if limit <= 0 or limit > self._max_page_size:
            raise ValueError(f"limit must be between 1 and {self._max_page_size}")
        if offset < 0:
            raise ValueError("offset must not be negative")
