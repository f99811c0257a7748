from __future__ import annotations
import logging
import uuid
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, NamedTuple, Optional, Tuple

from ...errors import OrderNotFound, StoreConflict
from ...helpers import now_iso, same_address
from ...infra.timings import timeit
from ...lifecycle import (
    INTENT_CREATED, MINTED, PAID as STATE_PAID, STATE_RANK, TICKET_CLAIMED,
    InvalidTransition, apply_at_least_transition, ensure_ticket_state,
    infer_ticket_state,
)
from ...logs import log_event
from ..order import Order, ORDER_FIELDS, PAID, CLAIMED

logger = logging.getLogger(__name__)


# ---- keys
def k_order(mid: str) -> str: return f"order:{mid}"
def k_token(token_id: str) -> str: return f"order:token:{token_id}"
def k_used(event_id: str, token_id: str) -> str:
    return f"used:event:{event_id}:token:{token_id}"
def k_used_legacy(token_id: str) -> str: return f"used:token:{token_id}"
def k_purchase_lock(mid: str) -> str: return f"purchase:lock:{mid}"
def k_intent_lock(mid: str) -> str: return f"intent:lock:{mid}"
def k_claim_lock(token_or_mid: str) -> str: return f"claim:lock:{token_or_mid}"
def k_gate_lock(token_id: str) -> str: return f"gate:lock:{token_id}"
def k_gate_invalid(token_id: str) -> str: return f"gate:invalid:{token_id}"
def k_gate_lockout(token_id: str) -> str: return f"gate:lockout:{token_id}"


class UseResult(NamedTuple):
    already_used: bool
    used_at: str


def used_record(raw: Any) -> Optional[Dict[str, Any]]:
    """
    Canonical `{"used_at", "owner"}` form of a check-in marker. Older writers
    stored `{"usedAt", "owner"}` or just the timestamp.
    """
    if raw is None:
        return None
    if isinstance(raw, str):
        return {"used_at": raw, "owner": None} if raw.strip() else None
    used_at = raw.get("used_at") or raw.get("usedAt")
    if not used_at:
        return None
    return {"used_at": str(used_at), "owner": raw.get("owner")}


def _draft_fields(draft: Dict[str, Any]) -> Dict[str, Any]:
    unknown = set(draft) - ORDER_FIELDS
    if unknown:
        raise ValueError(f"unknown order fields: {sorted(unknown)}")
    if not draft.get("merchant_order_id"):
        raise ValueError("merchant_order_id is required")
    return dict(draft)


class OrderStore(ABC):
    """
    Backend-agnostic order persistence. Subclasses provide the storage
    primitives; the lifecycle rules live here so both backends behave the
    same. Records are only created or overwritten, never deleted.
    """

    # ------------------------------------------------------------------
    # storage primitives
    # ------------------------------------------------------------------
    @abstractmethod
    async def _load(self, merchant_order_id: str) -> Optional[Order]: ...

    @abstractmethod
    async def _load_by_token(self, token_id: str) -> Optional[Order]: ...

    # create if absent; True if this call created it
    @abstractmethod
    async def _insert(self, order: Order) -> bool: ...

    # overwrite only if the stored record still has expected's
    # updated_at and tx_hash
    @abstractmethod
    async def _replace(self, order: Order, expected: Order) -> bool: ...

    # raw stored marker; see used_record
    @abstractmethod
    async def _load_used(self, key: str) -> Optional[Any]: ...

    # set-once; True if this call wrote the record
    @abstractmethod
    async def _insert_used(self, key: str, record: Dict[str, Any]) -> bool: ...

    @abstractmethod
    async def _acquire(self, key: str, owner: str, ttl_seconds: int) -> bool: ...

    @abstractmethod
    async def _release(self, key: str, owner: str) -> None: ...

    # expiring counter; the window starts at the first bump
    @abstractmethod
    async def _bump(self, key: str, ttl_seconds: int) -> int: ...

    @abstractmethod
    async def _set_flag(self, key: str, ttl_seconds: int) -> None: ...

    @abstractmethod
    async def _flag_set(self, key: str) -> bool: ...

    @abstractmethod
    async def _clear(self, key: str) -> None: ...

    # raises when the backend is unreachable
    @abstractmethod
    async def ping(self) -> None: ...

    @abstractmethod
    async def list_recent(self, limit: int = 200) -> List[Order]: ...

    # ------------------------------------------------------------------
    # locking
    # ------------------------------------------------------------------
    @asynccontextmanager
    async def lock(self, key: str, ttl_seconds: int) -> AsyncIterator[bool]:
        """
        Scoped mutual exclusion across processes. Yields False when another
        holder owns the key; never blocks waiting for it. Released on every
        exit path; a crashed holder's lock expires after `ttl_seconds`.
        """
        owner = uuid.uuid4().hex
        async with timeit("store.lock.acquire"):
            acquired = await self._acquire(key, owner, ttl_seconds)
        try:
            yield acquired
        finally:
            if acquired:
                try:
                    await self._release(key, owner)
                except Exception:
                    # not fatal: the lock expires via its TTL
                    log_event(logger, "lock.release_failed", logging.WARNING,
                              exc_info=True, key=key)

    # ------------------------------------------------------------------
    # reads
    # ------------------------------------------------------------------
    async def get_by_merchant_id(self, merchant_order_id: str) -> Optional[Order]:
        async with timeit("store.get_order"):
            order = await self._load(merchant_order_id)
        return ensure_ticket_state(order) if order else None

    async def get_by_token_id(self, token_id: str) -> Optional[Order]:
        async with timeit("store.get_order_by_token"):
            order = await self._load_by_token(str(token_id))
        return ensure_ticket_state(order) if order else None

    # ------------------------------------------------------------------
    # writes
    # ------------------------------------------------------------------
    async def record_paid_order(self, draft: Dict[str, Any]) -> Tuple[Order, bool]:
        """
        Persist a successful mint. Returns (order, created).

        - no order yet: create it at `minted` (or `paid` without a token)
        - order without tx_hash: upgrade it to at least `minted`
        - order with tx_hash: returned unchanged (duplicate)
        """
        d = _draft_fields(draft)
        mid = d["merchant_order_id"]
        for k in ("ticket_state", "created_at", "updated_at"):
            d.pop(k, None)

        existing = await self.get_by_merchant_id(mid)
        if existing is None:
            now = now_iso()
            order = Order.from_doc({
                **d,
                "payment_status": PAID,
                "ticket_state": MINTED if d.get("token_id") else STATE_PAID,
                "created_at": now,
                "updated_at": now,
            })
            async with timeit("store.insert_order"):
                created = await self._insert(order)
            if created:
                return order, True
            existing = await self.get_by_merchant_id(mid)
            if existing is None:
                raise StoreConflict(f"order {mid} vanished after insert race")

        if existing.tx_hash:
            return existing, False

        patch = {
            k: v for k, v in d.items()
            if v is not None and k != "merchant_order_id"
        }
        patch["payment_status"] = PAID
        upgraded = apply_at_least_transition(existing, MINTED, patch)
        async with timeit("store.replace_order"):
            ok = await self._replace(upgraded, existing)
        if ok:
            return upgraded, False

        latest = await self.get_by_merchant_id(mid)
        if latest is not None and latest.tx_hash:
            # another writer recorded the mint first
            return latest, False
        raise StoreConflict(f"order {mid} changed during paid-order upgrade")

    async def record_order_status(self, draft: Dict[str, Any]) -> Tuple[Order, bool]:
        """Create-only placeholder for non-success notifications and intents."""
        d = _draft_fields(draft)
        mid = d["merchant_order_id"]
        existing = await self.get_by_merchant_id(mid)
        if existing is not None:
            return existing, False

        now = now_iso()
        for k in ("tx_hash", "token_id", "nft_address", "custody_address",
                  "claim_code_hash", "claim_expires_at", "claim_status",
                  "claimed_to", "claimed_at", "ticket_state", "created_at",
                  "updated_at"):
            d.pop(k, None)
        order = Order.from_doc({
            **d,
            "ticket_state": INTENT_CREATED,
            "created_at": now,
            "updated_at": now,
        })
        async with timeit("store.insert_order"):
            created = await self._insert(order)
        if created:
            return order, True
        latest = await self.get_by_merchant_id(mid)
        if latest is None:
            raise StoreConflict(f"order {mid} vanished after insert race")
        return latest, False

    async def persist_order(self, order: Order, expected: Order) -> Order:
        """Guarded overwrite of a record read earlier as `expected`."""
        if order.merchant_order_id != expected.merchant_order_id:
            raise ValueError("merchant_order_id is immutable")
        if expected.tx_hash and order.tx_hash != expected.tx_hash:
            raise StoreConflict("tx_hash is set once and never overwritten")
        async with timeit("store.replace_order"):
            ok = await self._replace(order, expected)
        if not ok:
            raise StoreConflict(
                f"order {order.merchant_order_id} changed concurrently"
            )
        return order

    async def mark_order_claimed(
        self, *, merchant_order_id: str, claimed_to: str, claimed_at: str,
        tx_hash: str, chain_claimed: Optional[bool] = None,
        chain_claim_tx_hash: Optional[str] = None,
        chain_claim_error: Optional[str] = None,
    ) -> Order:
        existing = await self.get_by_merchant_id(merchant_order_id)
        if existing is None:
            raise OrderNotFound("Order not found")

        current = infer_ticket_state(existing)
        if STATE_RANK[current] > STATE_RANK[TICKET_CLAIMED]:
            if not same_address(existing.claimed_to, claimed_to):
                raise InvalidTransition(current, TICKET_CLAIMED)
            return existing

        patch: Dict[str, Any] = {
            "claim_status": CLAIMED,
            "claimed_to": claimed_to,
            "claimed_at": claimed_at,
            "claim_tx_hash": tx_hash,
            "chain_claimed": chain_claimed,
            "chain_claim_tx_hash": chain_claim_tx_hash,
            "chain_claim_error": chain_claim_error,
        }
        if not existing.tx_hash:
            patch["tx_hash"] = tx_hash
        updated = apply_at_least_transition(existing, TICKET_CLAIMED, patch)
        return await self.persist_order(updated, existing)

    async def mark_token_used_once(self, event_id: str, token_id: str,
                                   owner: Optional[str] = None) -> UseResult:
        """First writer per (event, token) wins; later callers see its used_at."""
        key = k_used(str(event_id), str(token_id))

        legacy = used_record(await self._load_used(k_used_legacy(str(token_id))))
        if legacy is not None:
            # mirror the legacy record into the event-scoped key
            await self._insert_used(key, legacy)
            current = used_record(await self._load_used(key)) or legacy
            return UseResult(True, current["used_at"])

        now = now_iso()
        async with timeit("store.insert_used"):
            first = await self._insert_used(key, {"used_at": now, "owner": owner})
        if first:
            return UseResult(False, now)
        current = used_record(await self._load_used(key))
        if current is None:
            raise StoreConflict(f"used record {key} vanished after insert race")
        return UseResult(True, current["used_at"])

    # ------------------------------------------------------------------
    # gate lockout
    # ------------------------------------------------------------------
    async def is_locked_out(self, token_id: str) -> bool:
        return await self._flag_set(k_gate_lockout(str(token_id)))

    async def record_invalid_code(self, token_id: str, *, limit: int,
                                  window_seconds: int,
                                  lockout_seconds: int) -> bool:
        """Counts a wrong code for the token; True when this one locked it out."""
        key = k_gate_invalid(str(token_id))
        count = await self._bump(key, window_seconds)
        if count < limit:
            return False
        await self._set_flag(k_gate_lockout(str(token_id)), lockout_seconds)
        await self._clear(key)
        log_event(logger, "gate.lockout", logging.WARNING, token_id=str(token_id),
                  attempts=count)
        return True
