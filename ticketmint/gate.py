"""
Gate check-in.

A scanned ticket (tokenId + code) is checked against the chain and the order
record, then admitted at most once per (event, token). Outcomes are business
results, not errors: they come back as `GateResult` with `valid` true/false.
"""
from __future__ import annotations
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from . import config
from .audit import log_audit, operator_key_id
from .chain import ZERO_BYTES32, ChainClient
from .claimcode import claim_code_matches
from .errors import ChainCallFailed
from .helpers import now_iso, same_address, sha256_hex
from .intent import payment_id_for
from .lifecycle import (
    GATE_VALIDATED, STATE_RANK, TICKET_CLAIMED, apply_at_least_transition,
    apply_transition,
)
from .logs import emit_metric, log_event
from .model.order import CLAIMED, Order
from .model.orderstore import OrderStore, k_gate_lock
from .operators import ACCEPTED, REVOKED, OperatorKeys
from .ratelimit import RateLimiter

logger = logging.getLogger(__name__)

ROUTE = "/api/gate/verify"

# failures that count towards the per-token lockout
WRONG_CODE = frozenset({"invalid_code", "payment_mismatch"})


@dataclass(frozen=True)
class GateResult:
    valid: bool
    reason: str
    http_status: int = 200
    ok: bool = True
    token_id: str = "unknown"
    owner: Optional[str] = None
    claimed: Optional[bool] = None
    event_id: Optional[str] = None
    details: Optional[str] = None
    retry_after: Optional[int] = None

    def to_body(self, chain_id: int, debug: bool = False) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "ok": self.ok,
            "valid": self.valid,
            "reason": self.reason,
            "chainId": chain_id,
            "tokenId": self.token_id,
        }
        if self.owner is not None:
            body["owner"] = self.owner
        if self.claimed is not None:
            body["claimed"] = self.claimed
        if self.details:
            body["details"] = self.details
        if debug:
            body["eventId"] = self.event_id
        return body


def parse_token_id(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value >= 0 else None
    if isinstance(value, str) and value.strip():
        try:
            n = int(value.strip(), 0)
        except ValueError:
            return None
        return n if n >= 0 else None
    return None


def _is_claimed(order: Order) -> bool:
    return order.claim_status == CLAIMED or STATE_RANK[order.ticket_state] >= STATE_RANK[TICKET_CLAIMED]


class GateVerifier:
    def __init__(self, store: OrderStore, chain: ChainClient, *,
                 ip_limiter: Optional[RateLimiter] = None,
                 token_limiter: Optional[RateLimiter] = None,
                 operator_keys: Optional[OperatorKeys] = None,
                 lock_ttl: int = config.GATE_LOCK_TTL_SECONDS,
                 invalid_limit: int = config.GATE_INVALID_CODE_LIMIT,
                 invalid_window: int = config.GATE_INVALID_CODE_WINDOW_SECONDS,
                 lockout_seconds: int = config.GATE_LOCKOUT_SECONDS):
        self.store = store
        self.chain = chain
        self.ip_limiter = ip_limiter or RateLimiter(*config.GATE_RATE_LIMIT)
        self.token_limiter = token_limiter or RateLimiter(*config.GATE_RATE_LIMIT)
        self.operator_keys = (operator_keys if operator_keys is not None
                              else OperatorKeys.from_config())
        self.lock_ttl = lock_ttl
        self.invalid_limit = invalid_limit
        self.invalid_window = invalid_window
        self.lockout_seconds = lockout_seconds

    async def verify(self, payload: Any, *, ip: str,
                     headers: Mapping[str, str]) -> GateResult:
        started = time.monotonic()
        key_header = headers.get("x-operator-key") or ""
        ip_hash = sha256_hex(ip)
        ua = headers.get("user-agent")

        result = await self._verify(payload, ip, ip_hash, key_header)

        latency_ms = (time.monotonic() - started) * 1000
        if result.valid:
            log_event(logger, "gate.verify.success", token_id=result.token_id,
                      event_id=result.event_id, chain_id=config.CHAIN_ID,
                      ip_hash=ip_hash)
            emit_metric("gate_valid", route=ROUTE, token_id=result.token_id,
                        ip=ip, latency_ms=latency_ms)
        else:
            log_event(logger, f"gate.verify.fail.{result.reason}",
                      token_id=result.token_id, event_id=result.event_id,
                      chain_id=config.CHAIN_ID, ip_hash=ip_hash)
            if result.reason == "rate_limited":
                metric = "rate_limit_hit"
            elif result.reason == "temporarily_locked":
                metric = "lock_hit"
            else:
                metric = "gate_invalid"
            emit_metric(metric, route=ROUTE, reason=result.reason,
                        token_id=result.token_id, ip=ip, latency_ms=latency_ms)

        log_audit(
            route=ROUTE, reason=result.reason,
            operator_key_id=operator_key_id(key_header),
            event_id=result.event_id, token_id=result.token_id,
            ip_hash=ip_hash, ua_hash=sha256_hex(ua) if ua else None,
            request_id=headers.get("x-request-id"),
        )
        return result

    async def _verify(self, payload: Any, ip: str, ip_hash: str,
                      key_header: str) -> GateResult:
        if self.operator_keys.configured:
            state = self.operator_keys.check(key_header, ip_hash=ip_hash)
            if state == REVOKED:
                return GateResult(False, "revoked_key", 403, ok=False)
            if state != ACCEPTED:
                return GateResult(False, "unauthorized", 401, ok=False)

        rate = self.ip_limiter.check(f"{ROUTE}:{ip}")
        if not rate.ok:
            return GateResult(False, "rate_limited", 429, ok=False,
                              retry_after=-(-rate.retry_after_ms // 1000))

        if not isinstance(payload, dict):
            return GateResult(False, "invalid_json", 400, ok=False, details="Invalid JSON")
        token = parse_token_id(payload.get("tokenId"))
        if token is None:
            return GateResult(False, "invalid_token", 400, ok=False, details="Invalid tokenId")
        token_id = str(token)

        rate = self.token_limiter.check(f"{ROUTE}:{ip}:{token_id}")
        if not rate.ok:
            return GateResult(False, "rate_limited", 429, ok=False, token_id=token_id,
                              retry_after=-(-rate.retry_after_ms // 1000))

        code = payload.get("code")
        code = code.strip() if isinstance(code, str) else ""
        if not code:
            return GateResult(False, "missing_code", 400, ok=False, token_id=token_id,
                              details="Missing code")

        if await self.store.is_locked_out(token_id):
            return GateResult(False, "temporarily_locked", 429, ok=False,
                              token_id=token_id,
                              details="Too many invalid attempts")

        async with self.store.lock(k_gate_lock(token_id), self.lock_ttl) as acquired:
            if not acquired:
                return GateResult(False, "temporarily_locked", 429, ok=False,
                                  token_id=token_id,
                                  details="Verification already in progress")
            merchant_order_id = payload.get("merchantOrderId")
            result = await self._check_in(token, token_id, code, merchant_order_id)

        if result.reason in WRONG_CODE:
            await self.store.record_invalid_code(
                token_id, limit=self.invalid_limit,
                window_seconds=self.invalid_window,
                lockout_seconds=self.lockout_seconds,
            )
        return result

    async def _check_in(self, token: int, token_id: str, code: str,
                        merchant_order_id: Any) -> GateResult:
        try:
            info = await self.chain.ticket_info(token)
        except ChainCallFailed as exc:
            return GateResult(False, "onchain_error", token_id=token_id, details=str(exc))

        def fail(reason: str, details: str) -> GateResult:
            return GateResult(False, reason, token_id=token_id, owner=info.owner,
                              claimed=info.claimed, event_id=info.event_id,
                              details=details)

        if not info.payment_id or info.payment_id == ZERO_BYTES32:
            return fail("payment_missing", "Missing paymentId onchain")

        order = await self.store.get_by_token_id(token_id)
        if order is None and isinstance(merchant_order_id, str) and merchant_order_id.strip():
            order = await self.store.get_by_merchant_id(merchant_order_id.strip())
        if order is None:
            return fail("order_not_found", "Order not found for token")

        if order.claim_code_hash:
            if not claim_code_matches(code, order.claim_code_hash):
                return fail("invalid_code", "Invalid claim code")
        elif payment_id_for(code) != info.payment_id.lower():
            return fail("payment_mismatch", "Payment hash does not match")

        if not info.claimed:
            holder = order.claimed_to if _is_claimed(order) else order.buyer_address
            if not same_address(holder, info.owner):
                return fail("not_claimed", "Ticket not claimed")
            if STATE_RANK[order.ticket_state] < STATE_RANK[TICKET_CLAIMED]:
                # direct mint already held by the buyer
                now = now_iso()
                healed = apply_at_least_transition(order, TICKET_CLAIMED, {
                    "claim_status": CLAIMED,
                    "claimed_to": order.claimed_to or info.owner,
                    "claimed_at": order.claimed_at or now,
                })
                order = await self.store.persist_order(healed, order)

        if order.ticket_state == GATE_VALIDATED:
            return fail("already_used", "Ticket already used")
        if order.ticket_state != TICKET_CLAIMED:
            return fail("not_claimed", "Ticket not in claimed state")

        if order.claimed_to and not same_address(order.claimed_to, info.owner):
            if not (info.claimed and order.tx_hash):
                return fail("not_owner", "Owner does not match claimed address")
            # the chain moved the ticket after claim; follow the chain
            order = await self.store.mark_order_claimed(
                merchant_order_id=order.merchant_order_id,
                claimed_to=info.owner,
                claimed_at=now_iso(),
                tx_hash=order.claim_tx_hash or order.tx_hash,
                chain_claimed=order.chain_claimed,
                chain_claim_tx_hash=order.chain_claim_tx_hash,
                chain_claim_error=order.chain_claim_error,
            )
            log_event(logger, "gate.verify.owner_healed", token_id=token_id)

        event_id = info.event_id or order.event_id
        use = await self.store.mark_token_used_once(event_id, token_id, info.owner)
        patch = {
            "used_at": use.used_at,
            "used_by": info.owner,
            "gate_validated_at": use.used_at,
            "claim_status": order.claim_status or CLAIMED,
            "claimed_to": order.claimed_to or info.owner,
            "claimed_at": order.claimed_at or use.used_at,
        }
        if use.already_used:
            await self.store.persist_order(
                apply_at_least_transition(order, GATE_VALIDATED, patch), order
            )
            return fail("already_used", "Ticket already used")

        if not order.event_id:
            patch["event_id"] = event_id
        await self.store.persist_order(
            apply_transition(order, GATE_VALIDATED, patch), order
        )
        return GateResult(True, "valid", token_id=token_id, owner=info.owner,
                          claimed=info.claimed, event_id=event_id)
