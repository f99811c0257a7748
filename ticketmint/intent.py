from __future__ import annotations
import re
from dataclasses import dataclass
from typing import Any, Dict, Optional

from eth_account import Account
from eth_account.messages import encode_typed_data
from web3 import Web3

from . import config
from .errors import InvalidPayload, InvalidSignature, InvalidWallet, MissingFields
from .helpers import checksum_address, hex32, is_bytes32_hex

_SIGNATURE = re.compile(r"^0x[0-9a-fA-F]{130}$")

INTENT_TYPES = {
    "EIP712Domain": [
        {"name": "name", "type": "string"},
        {"name": "version", "type": "string"},
        {"name": "chainId", "type": "uint256"},
        {"name": "verifyingContract", "type": "address"},
    ],
    "TicketIntent": [
        {"name": "buyer", "type": "address"},
        {"name": "splitSlug", "type": "string"},
        {"name": "merchantOrderId", "type": "string"},
        {"name": "eventId", "type": "uint256"},
        {"name": "amountWei", "type": "uint256"},
        {"name": "deadline", "type": "uint256"},
    ],
}


def _uint(payload: Dict[str, Any], key: str) -> int:
    value = payload.get(key)
    if value is None or value == "":
        raise MissingFields(f"Missing {key}")
    if isinstance(value, bool):
        raise InvalidPayload(f"Invalid {key}")
    try:
        n = int(value, 0) if isinstance(value, str) else int(value)
    except (TypeError, ValueError):
        raise InvalidPayload(f"Invalid {key}")
    if n < 0:
        raise InvalidPayload(f"Invalid {key}")
    return n


def _text(payload: Dict[str, Any], key: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str) or not value.strip():
        raise MissingFields(f"Missing {key}")
    return value.strip()


@dataclass(frozen=True)
class TicketIntent:
    buyer: str
    split_slug: str
    merchant_order_id: str
    event_id: int
    amount_wei: int
    deadline: int
    ticket_type: Optional[str] = None
    seat: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Any) -> "TicketIntent":
        if not isinstance(payload, dict):
            raise MissingFields("Missing intent")
        buyer = checksum_address(payload.get("buyer"))
        if buyer is None:
            raise InvalidWallet("Invalid buyer address")
        return cls(
            buyer=buyer,
            split_slug=_text(payload, "splitSlug"),
            merchant_order_id=_text(payload, "merchantOrderId"),
            event_id=_uint(payload, "eventId"),
            amount_wei=_uint(payload, "amountWei"),
            deadline=_uint(payload, "deadline"),
            ticket_type=(payload.get("ticketType") or None),
            seat=(payload.get("seat") or None),
        )

    def message(self) -> Dict[str, Any]:
        return {
            "buyer": self.buyer,
            "splitSlug": self.split_slug,
            "merchantOrderId": self.merchant_order_id,
            "eventId": self.event_id,
            "amountWei": self.amount_wei,
            "deadline": self.deadline,
        }


def intent_domain(verifying_contract: str,
                  chain_id: Optional[int] = None) -> Dict[str, Any]:
    contract = checksum_address(verifying_contract)
    if contract is None:
        raise ValueError("verifying contract is not an address")
    return {
        "name": config.INTENT_DOMAIN_NAME,
        "version": config.INTENT_DOMAIN_VERSION,
        "chainId": config.CHAIN_ID if chain_id is None else chain_id,
        "verifyingContract": contract,
    }


def typed_data(intent: TicketIntent, domain: Dict[str, Any]) -> Dict[str, Any]:
    """EIP-712 payload for the wallet's eth_signTypedData_v4."""
    return {
        "types": INTENT_TYPES,
        "primaryType": "TicketIntent",
        "domain": domain,
        "message": intent.message(),
    }


def recover_intent_signer(intent: TicketIntent, signature: str,
                          domain: Dict[str, Any]) -> str:
    sig = (signature or "").strip()
    if not _SIGNATURE.match(sig):
        raise InvalidSignature("Invalid signature")
    signable = encode_typed_data(full_message=typed_data(intent, domain))
    try:
        return Account.recover_message(signable, signature=sig)
    except Exception as exc:
        # bad v/r/s values surface as assorted eth_keys errors
        raise InvalidSignature("Invalid signature") from exc


def verify_intent(intent: TicketIntent, signature: str,
                  domain: Dict[str, Any]) -> None:
    """Fails closed: anything but the buyer's own signature is rejected."""
    signer = recover_intent_signer(intent, signature, domain)
    if signer != intent.buyer:
        raise InvalidSignature("Signer does not match buyer")


def compute_order_id(merchant_order_id: str, buyer: str, event_id: int,
                     chain_id: int) -> str:
    return hex32(Web3.solidity_keccak(
        ["string", "address", "uint256", "uint256"],
        [merchant_order_id, Web3.to_checksum_address(buyer), int(event_id), int(chain_id)],
    ))


def payment_id_for(merchant_order_id: str) -> str:
    """On-chain payment binding of an order (bytes32, lower-case hex)."""
    value = merchant_order_id.strip()
    if not value:
        raise ValueError("merchant_order_id is empty")
    if is_bytes32_hex(value):
        return value.lower()
    return hex32(Web3.keccak(text=value))
