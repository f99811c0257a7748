from __future__ import annotations
from typing import Any, Dict, List, Optional

import orjson
import redis.asyncio as redis
from redis.exceptions import WatchError

from ...helpers import parse_iso
from ..order import Order
from .base import OrderStore as _OrderStore, k_order, k_token


IDX_CREATED = "idx:orders:created"

# delete only if we still hold it
_RELEASE_LUA = """
if redis.call('get', KEYS[1]) == ARGV[1] then
  return redis.call('del', KEYS[1])
end
return 0
"""


class OrderStore(_OrderStore):
    def __init__(self, r: redis.Redis) -> None:
        self.r = r

    async def _load(self, merchant_order_id: str) -> Optional[Order]:
        raw = await self.r.get(k_order(merchant_order_id))
        return Order.loads(raw) if raw else None

    async def _load_by_token(self, token_id: str) -> Optional[Order]:
        mid = await self.r.get(k_token(token_id))
        if not mid:
            return None
        return await self._load(mid)

    async def _insert(self, order: Order) -> bool:
        key = k_order(order.merchant_order_id)
        ok = await self.r.set(key, order.dumps(), nx=True)
        if not ok:
            return False
        pipe = self.r.pipeline(transaction=True)
        pipe.zadd(IDX_CREATED, {order.merchant_order_id: parse_iso(order.created_at)})
        if order.token_id:
            pipe.set(k_token(order.token_id), order.merchant_order_id)
        await pipe.execute()
        return True

    async def _replace(self, order: Order, expected: Order) -> bool:
        key = k_order(order.merchant_order_id)
        async with self.r.pipeline(transaction=True) as pipe:
            try:
                await pipe.watch(key)
                raw = await pipe.get(key)
                if not raw:
                    await pipe.unwatch()
                    return False
                current = Order.loads(raw)
                if (current.updated_at != expected.updated_at
                        or (current.tx_hash or "") != (expected.tx_hash or "")):
                    await pipe.unwatch()
                    return False
                pipe.multi()
                pipe.set(key, order.dumps())
                if order.token_id:
                    pipe.set(k_token(order.token_id), order.merchant_order_id)
                await pipe.execute()
                return True
            except WatchError:
                return False

    async def _load_used(self, key: str) -> Optional[Any]:
        raw = await self.r.get(key)
        if not raw:
            return None
        if not raw.lstrip().startswith("{"):
            # bare timestamp from older writers
            return raw
        return orjson.loads(raw)

    async def _insert_used(self, key: str, record: Dict[str, Any]) -> bool:
        ok = await self.r.set(key, orjson.dumps(record), nx=True)
        return bool(ok)

    async def _acquire(self, key: str, owner: str, ttl_seconds: int) -> bool:
        ok = await self.r.set(key, owner, nx=True, ex=max(1, int(ttl_seconds)))
        return bool(ok)

    async def _release(self, key: str, owner: str) -> None:
        await self.r.eval(_RELEASE_LUA, 1, key, owner)

    async def _bump(self, key: str, ttl_seconds: int) -> int:
        count = await self.r.incr(key)
        if count == 1:
            await self.r.expire(key, max(1, int(ttl_seconds)))
        return int(count)

    async def _set_flag(self, key: str, ttl_seconds: int) -> None:
        await self.r.set(key, "1", ex=max(1, int(ttl_seconds)))

    async def _flag_set(self, key: str) -> bool:
        return bool(await self.r.exists(key))

    async def _clear(self, key: str) -> None:
        await self.r.delete(key)

    async def ping(self) -> None:
        await self.r.ping()

    async def list_recent(self, limit: int = 200) -> List[Order]:
        mids = await self.r.zrevrange(IDX_CREATED, 0, max(0, limit - 1))
        if not mids:
            return []
        pipe = self.r.pipeline()
        for mid in mids:
            pipe.get(k_order(mid))
        rows = await pipe.execute()
        return [Order.loads(raw) for raw in rows if raw]
