from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Optional


class AsyncCacheBackend(ABC):
    """
    Minimal async cache abstraction used for read-heavy projections such as
    a user's credits panel. Never consulted on the mutation path: balance
    checks for spends always hit the store.
    """

    @abstractmethod
    async def get(self, key: str) -> Optional[Any]:
        ...

    @abstractmethod
    async def set(self, key: str, value: Any, ttl_seconds: int | None = None) -> None:
        ...

    @abstractmethod
    async def delete(self, key: str) -> None:
        ...


def balances_cache_key(user_id: str) -> str:
    return f"credit:user:{user_id}:balances"
