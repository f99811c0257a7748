"""
Exactly-once issuance.

Both entry points follow the same discipline: a recorded txHash means
`duplicate`; otherwise the per-order purchase lock is taken (contention means
`pending`, never a wait), the order is re-read under the lock, the NFT is
minted and the result recorded. A reused payment id rejected by the contract
is also a `duplicate`.
"""
from __future__ import annotations
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from . import config
from .chain import ChainClient, MintResult
from .claimcode import generate_claim_code, hash_claim_code
from .errors import IntentExpired, InvalidWallet, MissingFields, SaleUnavailable
from .helpers import checksum_address, now_iso, now_ts, to_iso
from .intent import (
    TicketIntent, compute_order_id, intent_domain, payment_id_for,
    typed_data, verify_intent,
)
from .lifecycle import INTENT_CREATED, apply_at_least_transition
from .logs import log_event
from .model.order import CLAIMED, PENDING, UNCLAIMED, Order
from .model.orderstore import (
    OrderStore, k_intent_lock, k_purchase_lock,
)

logger = logging.getLogger(__name__)

PROCESSED = "processed"
DUPLICATE = "duplicate"
PENDING_STATUS = "pending"
REGISTERED = "registered"


@dataclass(frozen=True)
class PurchaseOutcome:
    status: str
    merchant_order_id: str
    tx_hash: Optional[str] = None
    order_id: Optional[str] = None
    token_id: Optional[str] = None
    # plaintext, handed to the caller once and never stored
    claim_code: Optional[str] = field(default=None, repr=False)
    message: Optional[str] = None

    @property
    def http_status(self) -> int:
        return 202 if self.status == PENDING_STATUS else 200

    def to_body(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "ok": True,
            "status": self.status,
            "paymentIntentId": self.merchant_order_id,
        }
        for key, value in (("txHash", self.tx_hash), ("orderId", self.order_id),
                           ("tokenId", self.token_id),
                           ("claimCode", self.claim_code),
                           ("message", self.message)):
            if value is not None:
                body[key] = value
        return body


@dataclass(frozen=True)
class PaymentRequest:
    """A verified fiat payment ready to be fulfilled."""
    merchant_order_id: str
    event_id: str
    split_slug: str
    amount_try: str
    buyer_address: Optional[str] = None

    def __post_init__(self):
        for name in ("merchant_order_id", "event_id", "split_slug"):
            if not str(getattr(self, name) or "").strip():
                raise MissingFields(f"Missing {name}")
        try:
            int(str(self.event_id))
        except ValueError:
            raise MissingFields("eventId must be numeric")


class PurchaseOrchestrator:
    def __init__(self, store: OrderStore, chain: ChainClient, *,
                 chain_id: int = config.CHAIN_ID,
                 lock_ttl: int = config.PURCHASE_LOCK_TTL_SECONDS,
                 intent_lock_ttl: int = config.INTENT_LOCK_TTL_SECONDS,
                 claim_ttl: int = config.CLAIM_TTL_SECONDS,
                 public_base_url: str = config.PUBLIC_BASE_URL):
        self.store = store
        self.chain = chain
        self.chain_id = chain_id
        self.lock_ttl = lock_ttl
        self.intent_lock_ttl = intent_lock_ttl
        self.claim_ttl = claim_ttl
        self.public_base_url = public_base_url.rstrip("/")

    def token_uri(self, event_id) -> str:
        return f"{self.public_base_url}/api/metadata/ticket/{event_id}"

    def _duplicate(self, order: Optional[Order], mid: str,
                   message: str = "Already processed") -> PurchaseOutcome:
        log_event(logger, "purchase.duplicate", merchant_order_id=mid)
        return PurchaseOutcome(
            DUPLICATE, mid,
            tx_hash=order.tx_hash if order else None,
            order_id=order.order_id if order else None,
            token_id=order.token_id if order else None,
            message=message,
        )

    def _pending(self, mid: str) -> PurchaseOutcome:
        log_event(logger, "purchase.pending", merchant_order_id=mid)
        return PurchaseOutcome(PENDING_STATUS, mid, message="Purchase in progress")

    async def _check_sale(self, intent: TicketIntent) -> None:
        cfg = await self.chain.read_event_config(intent.event_id)
        if not cfg.exists:
            raise SaleUnavailable(f"Event {intent.event_id} is not configured")
        if cfg.paused:
            raise SaleUnavailable(f"Event {intent.event_id} is paused")
        if cfg.price_wei <= 0:
            raise SaleUnavailable(f"Event {intent.event_id} has no price")
        if cfg.max_supply and cfg.minted >= cfg.max_supply:
            raise SaleUnavailable(f"Event {intent.event_id} is sold out")
        if intent.amount_wei < cfg.price_wei:
            raise SaleUnavailable("Intent amount is below the ticket price")

    def _recorded(self, order: Order, mint: MintResult, mid: str,
                  claim_code: Optional[str] = None) -> PurchaseOutcome:
        if order.tx_hash != mint.tx_hash:
            # an earlier writer's mint is the one on record
            log_event(logger, "purchase.late_write", logging.WARNING,
                      merchant_order_id=mid, tx_hash=mint.tx_hash,
                      recorded_tx_hash=order.tx_hash)
            return self._duplicate(order, mid)
        log_event(logger, "purchase.processed", merchant_order_id=mid,
                  tx_hash=mint.tx_hash, token_id=mint.token_id)
        return PurchaseOutcome(
            PROCESSED, mid, tx_hash=mint.tx_hash, order_id=order.order_id,
            token_id=mint.token_id, claim_code=claim_code,
        )

    # ------------------------------------------------------------------
    # signed intent (buyer wallet)
    # ------------------------------------------------------------------
    async def register_intent(self, intent: TicketIntent) -> Dict[str, Any]:
        if intent.deadline < now_ts():
            raise IntentExpired("Intent deadline has passed")
        mid = intent.merchant_order_id
        order_id = compute_order_id(mid, intent.buyer, intent.event_id, self.chain_id)
        domain = intent_domain(self.chain.nft_address, self.chain_id)

        async with self.store.lock(k_intent_lock(mid), self.intent_lock_ttl) as acquired:
            if not acquired:
                return {"ok": True, "status": PENDING_STATUS,
                        "paymentIntentId": mid, "orderId": order_id}
            order, created = await self.store.record_order_status({
                "merchant_order_id": mid,
                "order_id": order_id,
                "payment_id": payment_id_for(mid),
                "event_id": str(intent.event_id),
                "split_slug": intent.split_slug,
                "buyer_address": intent.buyer,
                "ticket_type": intent.ticket_type,
                "seat": intent.seat,
                "payment_status": PENDING,
                "intent_deadline": str(intent.deadline),
                "intent_amount_wei": str(intent.amount_wei),
            })
            if not created:
                order = await self.store.persist_order(
                    apply_at_least_transition(order, INTENT_CREATED), order
                )

        log_event(logger, "intent.registered", merchant_order_id=mid,
                  order_id=order.order_id, created=created)
        payload = typed_data(intent, domain)
        # uint256 values as decimal strings; JSON numbers stop at 64 bits
        payload["message"] = {
            k: str(v) if isinstance(v, int) else v
            for k, v in payload["message"].items()
        }
        return {
            "ok": True,
            "status": REGISTERED,
            "paymentIntentId": mid,
            "orderId": order.order_id or order_id,
            "ticketState": order.ticket_state,
            "typedData": payload,
        }

    async def purchase_with_intent(self, intent: TicketIntent,
                                   signature: str) -> PurchaseOutcome:
        domain = intent_domain(self.chain.nft_address, self.chain_id)
        verify_intent(intent, signature, domain)
        if intent.deadline < now_ts():
            raise IntentExpired("Intent deadline has passed")

        mid = intent.merchant_order_id
        existing = await self.store.get_by_merchant_id(mid)
        if existing is not None and existing.tx_hash:
            return self._duplicate(existing, mid)

        async with self.store.lock(k_purchase_lock(mid), self.lock_ttl) as acquired:
            if not acquired:
                return self._pending(mid)
            existing = await self.store.get_by_merchant_id(mid)
            if existing is not None and existing.tx_hash:
                return self._duplicate(existing, mid)

            await self._check_sale(intent)

            payment_id = payment_id_for(mid)
            mint = await self.chain.mint(
                to=intent.buyer, uri=self.token_uri(intent.event_id),
                event_id=intent.event_id, payment_id=payment_id,
            )
            if mint.already_used:
                return self._duplicate(existing, mid, "Payment already used on-chain")

            claimed_at = now_iso()
            order, _ = await self.store.record_paid_order({
                "merchant_order_id": mid,
                "order_id": compute_order_id(
                    mid, intent.buyer, intent.event_id, self.chain_id
                ),
                "payment_id": payment_id,
                "event_id": str(intent.event_id),
                "split_slug": intent.split_slug,
                "amount_try": str(intent.amount_wei),
                "buyer_address": intent.buyer,
                "ticket_type": intent.ticket_type,
                "seat": intent.seat,
                "intent_signature": signature.strip(),
                "intent_deadline": str(intent.deadline),
                "intent_amount_wei": str(intent.amount_wei),
                "tx_hash": mint.tx_hash,
                "token_id": mint.token_id,
                "nft_address": mint.nft_address,
                "claim_status": CLAIMED,
                "claimed_to": intent.buyer,
                "claimed_at": claimed_at,
            })
            return self._recorded(order, mint, mid)

    # ------------------------------------------------------------------
    # fiat payment (webhook / dev emitter)
    # ------------------------------------------------------------------
    async def process_payment(self, payment: PaymentRequest) -> PurchaseOutcome:
        mid = payment.merchant_order_id.strip()
        buyer = None
        if payment.buyer_address:
            buyer = checksum_address(payment.buyer_address)
            if buyer is None:
                raise InvalidWallet("Invalid buyer address")

        existing = await self.store.get_by_merchant_id(mid)
        if existing is not None and existing.tx_hash:
            return self._duplicate(existing, mid)

        async with self.store.lock(k_purchase_lock(mid), self.lock_ttl) as acquired:
            if not acquired:
                return self._pending(mid)
            existing = await self.store.get_by_merchant_id(mid)
            if existing is not None and existing.tx_hash:
                return self._duplicate(existing, mid)

            event_id = int(str(payment.event_id))
            recipient = buyer or self.chain.custody_address
            payment_id = payment_id_for(mid)
            mint = await self.chain.mint(
                to=recipient, uri=self.token_uri(event_id),
                event_id=event_id, payment_id=payment_id,
            )
            if mint.already_used:
                return self._duplicate(existing, mid, "Payment already used on-chain")

            claim_code = None
            draft: Dict[str, Any] = {
                "merchant_order_id": mid,
                "order_id": compute_order_id(mid, recipient, event_id, self.chain_id),
                "payment_id": payment_id,
                "event_id": str(event_id),
                "split_slug": payment.split_slug,
                "amount_try": str(payment.amount_try),
                "buyer_address": buyer,
                "tx_hash": mint.tx_hash,
                "token_id": mint.token_id,
                "nft_address": mint.nft_address,
            }
            if buyer:
                draft.update(claim_status=CLAIMED, claimed_to=buyer,
                             claimed_at=now_iso())
            else:
                draft.update(custody_address=recipient, claim_status=UNCLAIMED)
                if existing is None or not existing.claim_code_hash:
                    claim_code = generate_claim_code()
                    draft.update(
                        claim_code_hash=hash_claim_code(claim_code),
                        claim_expires_at=to_iso(now_ts() + self.claim_ttl),
                    )

            order, _ = await self.store.record_paid_order(draft)
            return self._recorded(order, mint, mid, claim_code)
