from __future__ import annotations
from dataclasses import dataclass, asdict, fields, replace
from typing import Any, Dict, Optional

import orjson


# payment_status
PAID = "paid"
PENDING = "pending"
FAILED = "failed"

# claim_status
UNCLAIMED = "unclaimed"
CLAIMED = "claimed"


# ----------------------------
# Order record
# ----------------------------
@dataclass(frozen=True)
class Order:
    # identity
    merchant_order_id: str
    event_id: str = ""
    split_slug: str = ""
    order_id: Optional[str] = None
    payment_id: Optional[str] = None

    # commercial
    buyer_address: Optional[str] = None
    ticket_type: Optional[str] = None
    seat: Optional[str] = None
    amount_try: str = "0"
    payment_status: str = PENDING

    # signed intent
    intent_signature: Optional[str] = None
    intent_deadline: Optional[str] = None
    intent_amount_wei: Optional[str] = None

    # issuance
    tx_hash: Optional[str] = None
    token_id: Optional[str] = None
    nft_address: Optional[str] = None
    custody_address: Optional[str] = None

    # claim
    claim_code_hash: Optional[str] = None
    claim_status: Optional[str] = None
    claimed_to: Optional[str] = None
    claimed_at: Optional[str] = None
    claim_expires_at: Optional[str] = None
    claim_tx_hash: Optional[str] = None
    chain_claimed: Optional[bool] = None
    chain_claim_tx_hash: Optional[str] = None
    chain_claim_error: Optional[str] = None

    # check-in
    used_at: Optional[str] = None
    used_by: Optional[str] = None
    gate_validated_at: Optional[str] = None

    # lifecycle
    ticket_state: Optional[str] = None
    created_at: str = ""
    updated_at: str = ""

    def to_doc(self) -> Dict[str, Any]:
        return asdict(self)

    def dumps(self) -> bytes:
        return orjson.dumps(self.to_doc())

    @classmethod
    def from_doc(cls, doc: Dict[str, Any]) -> "Order":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in doc.items() if k in known})

    @classmethod
    def loads(cls, raw: bytes | str) -> "Order":
        return cls.from_doc(orjson.loads(raw))

    def merged(self, patch: Dict[str, Any]) -> "Order":
        if not patch:
            return self
        return replace(self, **patch)

    def public_view(self) -> Dict[str, Any]:
        """Status view without secrets or signatures."""
        doc = self.to_doc()
        for k in ("claim_code_hash", "intent_signature"):
            doc.pop(k, None)
        return doc


ORDER_FIELDS = frozenset(f.name for f in fields(Order))
