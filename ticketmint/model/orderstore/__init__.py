from typing import Optional

import redis.asyncio as redis

from ... import config
from ...infra.sql import SqlHandle
from .base import (
    OrderStore, UseResult, k_claim_lock, k_gate_invalid, k_gate_lock,
    k_gate_lockout, k_intent_lock, k_purchase_lock,
)

BACKEND = config.ORDER_BACKEND  # 'sql' | 'redis'

if BACKEND == "redis":
    from ._redis import OrderStore as _OrderStore
else:
    from ._sql import OrderStore as _OrderStore


# Factory keeps server.py simple and constructor-agnostic:
def new_store(*, sql: Optional[SqlHandle] = None,
              r: Optional[redis.Redis] = None) -> OrderStore:
    if BACKEND == "redis":
        if r is None:
            raise RuntimeError("OrderStore(redis) requires r=redis.Redis")
        return _OrderStore(r=r)
    if sql is None:
        raise RuntimeError("OrderStore(sql) requires sql=SqlHandle")
    return _OrderStore(sql=sql)


__all__ = [
    "BACKEND", "OrderStore", "UseResult", "new_store",
    "k_claim_lock", "k_gate_invalid", "k_gate_lock", "k_gate_lockout",
    "k_intent_lock", "k_purchase_lock",
]
