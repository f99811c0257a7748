"""
Ticket lifecycle state machine.

    intent_created -> paid -> minted -> claimable -> claimed -> gate_validated

Transitions are pure: they return a new Order and never touch storage.
`apply_at_least_transition` is the replay-safe variant used by every writer
that may see the same event twice; it never moves a ticket backwards.

Caller contract: `apply_at_least_transition` only upgrades along a direct
edge. A target that outranks the current state but is not one hop away
(e.g. intent_created -> claimed) raises InvalidTransition instead of
silently skipping the intermediate states.
"""
from __future__ import annotations
from typing import Any, Dict, Optional

from .errors import TicketingError
from .helpers import now_iso, parse_iso
from .model.order import Order, ORDER_FIELDS, CLAIMED


INTENT_CREATED = "intent_created"
PAID = "paid"
MINTED = "minted"
CLAIMABLE = "claimable"
TICKET_CLAIMED = "claimed"
GATE_VALIDATED = "gate_validated"

STATE_ORDER = (
    INTENT_CREATED,
    PAID,
    MINTED,
    CLAIMABLE,
    TICKET_CLAIMED,
    GATE_VALIDATED,
)
STATE_RANK = {s: i for i, s in enumerate(STATE_ORDER)}

ALLOWED_TRANSITIONS = {
    INTENT_CREATED: frozenset({INTENT_CREATED, PAID, MINTED}),
    PAID: frozenset({PAID, MINTED, CLAIMABLE}),
    MINTED: frozenset({MINTED, CLAIMABLE, TICKET_CLAIMED}),
    CLAIMABLE: frozenset({CLAIMABLE, TICKET_CLAIMED}),
    TICKET_CLAIMED: frozenset({TICKET_CLAIMED, GATE_VALIDATED}),
    GATE_VALIDATED: frozenset({GATE_VALIDATED}),
}

# never part of a patch
_PROTECTED = frozenset({"merchant_order_id", "ticket_state", "created_at"})


class InvalidTransition(TicketingError):
    reason = "invalid_transition"
    status_code = 500

    def __init__(self, from_state: str, to_state: str):
        super().__init__(
            f"Invalid ticket state transition: {from_state} -> {to_state}"
        )
        self.from_state = from_state
        self.to_state = to_state


def infer_ticket_state(order: Order) -> str:
    """Back-fill the state of records written before ticket_state existed."""
    if order.ticket_state:
        return order.ticket_state
    claimed = order.claim_status == CLAIMED or order.chain_claimed is True
    if order.token_id and claimed:
        return TICKET_CLAIMED
    if order.token_id:
        return MINTED
    if order.tx_hash:
        return PAID
    return INTENT_CREATED


def ensure_ticket_state(order: Order) -> Order:
    state = infer_ticket_state(order)
    if order.ticket_state == state:
        return order
    return order.merged({"ticket_state": state})


def can_transition(from_state: str, to_state: str) -> bool:
    return to_state in ALLOWED_TRANSITIONS.get(from_state, ())


def at_least(current: str, desired: str) -> str:
    return current if STATE_RANK[current] >= STATE_RANK[desired] else desired


def _clean_patch(patch: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    if not patch:
        return {}
    unknown = set(patch) - ORDER_FIELDS
    if unknown:
        raise ValueError(f"unknown order fields in patch: {sorted(unknown)}")
    return {k: v for k, v in patch.items() if k not in _PROTECTED}


def _stamp(order: Order, updated_at: Optional[str]) -> str:
    ts = updated_at or now_iso()
    # updated_at never goes backwards, even with a skewed caller clock
    prev = parse_iso(order.updated_at)
    if prev is not None and prev > (parse_iso(ts) or 0.0):
        return order.updated_at
    return ts


def apply_transition(order: Order, to: str,
                     patch: Optional[Dict[str, Any]] = None,
                     updated_at: Optional[str] = None) -> Order:
    if to not in STATE_RANK:
        raise ValueError(f"unknown ticket state: {to}")
    current = infer_ticket_state(order)
    if not can_transition(current, to):
        raise InvalidTransition(current, to)
    changes = _clean_patch(patch)
    changes["ticket_state"] = to
    changes["updated_at"] = _stamp(order, updated_at)
    return order.merged(changes)


def apply_at_least_transition(order: Order, desired: str,
                              patch: Optional[Dict[str, Any]] = None,
                              updated_at: Optional[str] = None) -> Order:
    if desired not in STATE_RANK:
        raise ValueError(f"unknown ticket state: {desired}")
    current = infer_ticket_state(order)
    target = at_least(current, desired)
    if target == current:
        changes = _clean_patch(patch)
        changes["ticket_state"] = current
        changes["updated_at"] = _stamp(order, updated_at)
        return order.merged(changes)
    return apply_transition(order, target, patch, updated_at)
