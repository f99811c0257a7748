from __future__ import annotations
from typing import Any, Dict, List, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncSession

from ...helpers import now_ts
from ...infra.sql import SqlHandle
from ..order import Order
from .base import OrderStore as _OrderStore


# ------------------------------------------------------------------------------
# DDL (idempotent); valid on both sqlite and postgres
# ------------------------------------------------------------------------------
SQL_CREATE_ORDERS = r"""
CREATE TABLE IF NOT EXISTS orders (
  merchant_order_id TEXT PRIMARY KEY,
  token_id      TEXT,
  tx_hash       TEXT,
  ticket_state  TEXT NOT NULL,
  created_at    TEXT NOT NULL,
  updated_at    TEXT NOT NULL,
  doc           TEXT NOT NULL
);
"""

SQL_CREATE_IDX_ORDERS_TOKEN = r"""
CREATE INDEX IF NOT EXISTS idx_orders_token_id ON orders (token_id);
"""

SQL_CREATE_IDX_ORDERS_CREATED = r"""
CREATE INDEX IF NOT EXISTS idx_orders_created_at ON orders (created_at DESC);
"""

SQL_CREATE_USED_TICKETS = r"""
-- one row per (event, token) check-in; never updated
CREATE TABLE IF NOT EXISTS used_tickets (
  key      TEXT PRIMARY KEY,
  used_at  TEXT NOT NULL,
  owner    TEXT
);
"""

SQL_CREATE_LOCKS = r"""
CREATE TABLE IF NOT EXISTS locks (
  key         TEXT PRIMARY KEY,
  owner       TEXT NOT NULL,
  expires_at  DOUBLE PRECISION NOT NULL
);
"""

SQL_CREATE_COUNTERS = r"""
-- expiring counters and flags (gate lockout)
CREATE TABLE IF NOT EXISTS counters (
  key         TEXT PRIMARY KEY,
  value       INTEGER NOT NULL,
  expires_at  DOUBLE PRECISION NOT NULL
);
"""


async def create_schema(db_or_conn: AsyncSession | AsyncConnection):
    exec_ = db_or_conn.execute
    await exec_(text(SQL_CREATE_ORDERS))
    await exec_(text(SQL_CREATE_IDX_ORDERS_TOKEN))
    await exec_(text(SQL_CREATE_IDX_ORDERS_CREATED))
    await exec_(text(SQL_CREATE_USED_TICKETS))
    await exec_(text(SQL_CREATE_LOCKS))
    await exec_(text(SQL_CREATE_COUNTERS))


def _row_params(order: Order) -> Dict[str, Any]:
    return {
        "mid": order.merchant_order_id,
        "token_id": order.token_id,
        "tx_hash": order.tx_hash,
        "state": order.ticket_state,
        "created_at": order.created_at,
        "updated_at": order.updated_at,
        "doc": order.dumps().decode(),
    }


class OrderStore(_OrderStore):
    def __init__(self, sql: SqlHandle) -> None:
        self.sql = sql

    async def _load(self, merchant_order_id: str) -> Optional[Order]:
        async with self.sql.session() as db:
            doc = (await db.execute(text("""
              SELECT doc FROM orders WHERE merchant_order_id=:mid
            """), {"mid": merchant_order_id})).scalar_one_or_none()
        return Order.loads(doc) if doc else None

    async def _load_by_token(self, token_id: str) -> Optional[Order]:
        async with self.sql.session() as db:
            doc = (await db.execute(text("""
              SELECT doc FROM orders WHERE token_id=:tid
              ORDER BY created_at DESC LIMIT 1
            """), {"tid": token_id})).scalar_one_or_none()
        return Order.loads(doc) if doc else None

    async def _insert(self, order: Order) -> bool:
        async with self.sql.transaction() as db:
            row = (await db.execute(text("""
              INSERT INTO orders(
                merchant_order_id, token_id, tx_hash, ticket_state,
                created_at, updated_at, doc
              ) VALUES (
                :mid, :token_id, :tx_hash, :state,
                :created_at, :updated_at, :doc
              )
              ON CONFLICT (merchant_order_id) DO NOTHING
              RETURNING merchant_order_id
            """), _row_params(order))).first()
        return row is not None

    async def _replace(self, order: Order, expected: Order) -> bool:
        params = _row_params(order)
        params["exp_updated_at"] = expected.updated_at
        params["exp_tx_hash"] = expected.tx_hash or ""
        async with self.sql.transaction() as db:
            res = await db.execute(text("""
              UPDATE orders SET
                token_id=:token_id, tx_hash=:tx_hash,
                ticket_state=:state, updated_at=:updated_at, doc=:doc
              WHERE merchant_order_id=:mid
                AND updated_at=:exp_updated_at
                AND COALESCE(tx_hash, '')=:exp_tx_hash
            """), params)
        return res.rowcount == 1

    async def _load_used(self, key: str) -> Optional[Any]:
        async with self.sql.session() as db:
            row = (await db.execute(text("""
              SELECT used_at, owner FROM used_tickets WHERE key=:k
            """), {"k": key})).mappings().first()
        return dict(row) if row else None

    async def _insert_used(self, key: str, record: Dict[str, Any]) -> bool:
        async with self.sql.transaction() as db:
            row = (await db.execute(text("""
              INSERT INTO used_tickets(key, used_at, owner)
              VALUES(:k, :used_at, :owner)
              ON CONFLICT (key) DO NOTHING
              RETURNING key
            """), {
                "k": key,
                "used_at": record["used_at"],
                "owner": record.get("owner"),
            })).first()
        return row is not None

    async def _acquire(self, key: str, owner: str, ttl_seconds: int) -> bool:
        now = now_ts()
        async with self.sql.transaction() as db:
            # take over only an expired holder's row
            row = (await db.execute(text("""
              INSERT INTO locks(key, owner, expires_at)
              VALUES(:k, :owner, :exp)
              ON CONFLICT (key) DO UPDATE SET
                owner=EXCLUDED.owner, expires_at=EXCLUDED.expires_at
              WHERE locks.expires_at <= :now
              RETURNING key
            """), {
                "k": key, "owner": owner,
                "exp": now + max(1, int(ttl_seconds)), "now": now,
            })).first()
        return row is not None

    async def _release(self, key: str, owner: str) -> None:
        async with self.sql.transaction() as db:
            await db.execute(text("""
              DELETE FROM locks WHERE key=:k AND owner=:owner
            """), {"k": key, "owner": owner})

    async def _bump(self, key: str, ttl_seconds: int) -> int:
        now = now_ts()
        async with self.sql.transaction() as db:
            # an expired window restarts at 1
            value = (await db.execute(text("""
              INSERT INTO counters(key, value, expires_at)
              VALUES(:k, 1, :exp)
              ON CONFLICT (key) DO UPDATE SET
                value = CASE WHEN counters.expires_at <= :now
                             THEN 1 ELSE counters.value + 1 END,
                expires_at = CASE WHEN counters.expires_at <= :now
                                  THEN EXCLUDED.expires_at
                                  ELSE counters.expires_at END
              RETURNING value
            """), {
                "k": key, "exp": now + max(1, int(ttl_seconds)), "now": now,
            })).scalar_one()
        return int(value)

    async def _set_flag(self, key: str, ttl_seconds: int) -> None:
        async with self.sql.transaction() as db:
            await db.execute(text("""
              INSERT INTO counters(key, value, expires_at)
              VALUES(:k, 1, :exp)
              ON CONFLICT (key) DO UPDATE SET
                value=1, expires_at=EXCLUDED.expires_at
            """), {"k": key, "exp": now_ts() + max(1, int(ttl_seconds))})

    async def _flag_set(self, key: str) -> bool:
        async with self.sql.session() as db:
            row = (await db.execute(text("""
              SELECT 1 FROM counters WHERE key=:k AND expires_at > :now
            """), {"k": key, "now": now_ts()})).first()
        return row is not None

    async def _clear(self, key: str) -> None:
        async with self.sql.transaction() as db:
            await db.execute(text("DELETE FROM counters WHERE key=:k"), {"k": key})

    async def ping(self) -> None:
        await self.sql.ping()

    async def list_recent(self, limit: int = 200) -> List[Order]:
        async with self.sql.session() as db:
            rows = (await db.execute(text("""
              SELECT doc FROM orders ORDER BY created_at DESC LIMIT :lim
            """), {"lim": limit})).scalars().all()
        return [Order.loads(doc) for doc in rows]
