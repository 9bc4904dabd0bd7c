from typing import AsyncContextManager, Callable, Optional, Union

import redis.asyncio as redis
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ._sql import OrderStore as SqlOrderStore
from ._redis import OrderStore as RedisOrderStore

Gated = Callable[[], AsyncContextManager[None]]

OrderStore = Union[SqlOrderStore, RedisOrderStore]

BACKENDS = ("sql", "redis")


# Factory keeps server.py simple and constructor-agnostic:
def new_store(backend: str, *,
              sessions: Optional[async_sessionmaker[AsyncSession]] = None,
              gated: Optional[Gated] = None,
              r: Optional[redis.Redis] = None) -> OrderStore:
    if backend == "sql":
        if sessions is None:
            raise RuntimeError(
                "OrderStore(sql) requires sessions=async_sessionmaker"
            )
        if gated is None:
            raise RuntimeError("OrderStore(sql) requires gated=Gated")
        return SqlOrderStore(sessions=sessions, gated=gated)
    if backend == "redis":
        if r is None:
            raise RuntimeError("OrderStore(redis) requires r=redis.Redis")
        return RedisOrderStore(r)
    raise RuntimeError(f"unknown ORDER_BACKEND {backend!r}, want {BACKENDS}")


__all__ = [
    "OrderStore", "SqlOrderStore", "RedisOrderStore", "new_store", "BACKENDS"
]
