from __future__ import annotations
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from . import config
from .chain import ChainClient
from .claimcode import claim_code_matches
from .errors import (
    ChainCallFailed, ClaimExpired, ClaimFailed, InvalidCode, MissingFields,
    NotOwner, NotReady, OrderNotFound, OrderNotPaid,
)
from .helpers import now_iso, now_ts, parse_iso, same_address
from .intent import payment_id_for
from .lifecycle import GATE_VALIDATED, TICKET_CLAIMED, apply_at_least_transition
from .logs import log_event
from .model.order import CLAIMED, PAID, Order
from .model.orderstore import OrderStore, k_claim_lock

logger = logging.getLogger(__name__)

CLAIMED_STATUS = "claimed"
ALREADY_CLAIMED = "already_claimed"
NOT_REQUIRED = "not_required"
PENDING_STATUS = "pending"


@dataclass(frozen=True)
class ClaimOutcome:
    status: str
    merchant_order_id: str
    token_id: Optional[str] = None
    claimed_to: Optional[str] = None
    tx_hash: Optional[str] = None
    chain_claimed: Optional[bool] = None
    message: Optional[str] = None

    @property
    def http_status(self) -> int:
        return 202 if self.status == PENDING_STATUS else 200

    def to_body(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"ok": True, "status": self.status}
        for key, value in (("merchantOrderId", self.merchant_order_id),
                           ("tokenId", self.token_id),
                           ("claimedTo", self.claimed_to),
                           ("txHash", self.tx_hash),
                           ("chainClaimed", self.chain_claimed),
                           ("message", self.message)):
            if value is not None:
                body[key] = value
        if self.status in (CLAIMED_STATUS, ALREADY_CLAIMED, NOT_REQUIRED):
            body["claimed"] = True
        return body


def _is_claimed(order: Order) -> bool:
    return (order.claim_status == CLAIMED
            or order.ticket_state in (TICKET_CLAIMED, GATE_VALIDATED))


class ClaimOrchestrator:
    """Moves a custody-held ticket to its buyer, at most once per order."""

    def __init__(self, store: OrderStore, chain: ChainClient, *,
                 lock_ttl: int = config.CLAIM_LOCK_TTL_SECONDS):
        self.store = store
        self.chain = chain
        self.lock_ttl = lock_ttl

    def _already(self, order: Order, wallet: str) -> ClaimOutcome:
        if order.claimed_to and not same_address(order.claimed_to, wallet):
            raise NotOwner("Ticket was claimed by a different wallet")
        return ClaimOutcome(
            ALREADY_CLAIMED, order.merchant_order_id, token_id=order.token_id,
            claimed_to=order.claimed_to or wallet,
            tx_hash=order.claim_tx_hash or order.tx_hash,
            chain_claimed=order.chain_claimed,
            message="Already claimed",
        )

    def _check(self, order: Optional[Order], wallet: str,
               claim_code: Optional[str]) -> Optional[ClaimOutcome]:
        """Preconditions, in order; returns an outcome when no transfer is due."""
        if order is None:
            raise OrderNotFound("Order not found")
        if order.payment_status != PAID:
            raise OrderNotPaid("Order not paid")
        if _is_claimed(order):
            return self._already(order, wallet)
        if not order.custody_address or not order.claim_code_hash:
            return ClaimOutcome(
                NOT_REQUIRED, order.merchant_order_id, token_id=order.token_id,
                claimed_to=order.buyer_address,
                message="Ticket was minted directly to the buyer",
            )
        expires = parse_iso(order.claim_expires_at)
        if expires is not None and now_ts() > expires:
            raise ClaimExpired("Claim expired")
        if not order.token_id or not order.nft_address:
            raise NotReady("Order not ready for claim")
        if not claim_code:
            raise MissingFields("Claim code is required for custody mint")
        if not claim_code_matches(claim_code, order.claim_code_hash):
            raise InvalidCode("Invalid claimCode")
        return None

    async def _heal(self, order: Order, wallet: str) -> ClaimOutcome:
        # the wallet already holds the token, e.g. a transfer whose record
        # write never landed
        healed = apply_at_least_transition(order, TICKET_CLAIMED, {
            "claim_status": CLAIMED,
            "claimed_to": wallet,
            "claimed_at": order.claimed_at or now_iso(),
        })
        await self.store.persist_order(healed, order)
        log_event(logger, "claim.healed", merchant_order_id=order.merchant_order_id,
                  token_id=order.token_id)
        return ClaimOutcome(
            NOT_REQUIRED, order.merchant_order_id, token_id=order.token_id,
            claimed_to=wallet,
            message="Ticket already owned by buyer; no claim needed",
        )

    async def claim(self, merchant_order_id: str, claim_code: Optional[str],
                    wallet: str) -> ClaimOutcome:
        order = await self.store.get_by_merchant_id(merchant_order_id)
        early = self._check(order, wallet, claim_code)
        if early is not None:
            return early

        lock_key = k_claim_lock(order.token_id or order.merchant_order_id)
        async with self.store.lock(lock_key, self.lock_ttl) as acquired:
            if not acquired:
                log_event(logger, "claim.pending", merchant_order_id=merchant_order_id,
                          token_id=order.token_id)
                return ClaimOutcome(
                    PENDING_STATUS, merchant_order_id, token_id=order.token_id,
                    message="Claim already processing",
                )

            # a concurrent claim may have finished before we got the lock
            order = await self.store.get_by_merchant_id(merchant_order_id)
            early = self._check(order, wallet, claim_code)
            if early is not None:
                return early

            expected = (order.payment_id or payment_id_for(order.merchant_order_id)).lower()
            onchain = await self.chain.payment_id_of(int(order.token_id))
            if onchain.lower() != expected:
                raise InvalidCode("Claim does not match payment mapping")

            try:
                owner = await self.chain.owner_of(int(order.token_id))
            except ChainCallFailed as exc:
                raise NotReady("Unable to verify onchain owner",
                                status_code=500) from exc
            if same_address(owner, wallet):
                return await self._heal(order, wallet)
            if not same_address(owner, order.custody_address):
                log_event(logger, "claim.fail.not_owner", logging.WARNING,
                          merchant_order_id=merchant_order_id,
                          token_id=order.token_id)
                raise NotOwner("Ticket is owned by a different wallet")

            chain_claimed = False
            chain_claim_tx_hash = None
            chain_claim_error = None
            try:
                chain_claim_tx_hash = await self.chain.mark_claimed(int(order.token_id))
                chain_claimed = True
            except ChainCallFailed as exc:
                # the transfer decides ownership; the marker is informational
                chain_claim_error = str(exc)
                log_event(logger, "claim.marker_failed", logging.WARNING,
                          merchant_order_id=merchant_order_id,
                          token_id=order.token_id, stage=exc.stage)

            try:
                tx_hash = await self.chain.transfer_from_custody(
                    token_id=int(order.token_id), to=wallet
                )
            except ChainCallFailed as exc:
                log_event(logger, "claim.fail.claim_failed", logging.ERROR,
                          merchant_order_id=merchant_order_id,
                          token_id=order.token_id, stage=exc.stage)
                raise ClaimFailed("Claim failed") from exc

            await self.store.mark_order_claimed(
                merchant_order_id=merchant_order_id,
                claimed_to=wallet,
                claimed_at=now_iso(),
                tx_hash=tx_hash,
                chain_claimed=chain_claimed,
                chain_claim_tx_hash=chain_claim_tx_hash,
                chain_claim_error=chain_claim_error,
            )

        log_event(logger, "claim.success", merchant_order_id=merchant_order_id,
                  token_id=order.token_id, tx_hash=tx_hash)
        return ClaimOutcome(
            CLAIMED_STATUS, merchant_order_id, token_id=order.token_id,
            claimed_to=wallet, tx_hash=tx_hash, chain_claimed=chain_claimed,
        )
