import pytest
from eth_account import Account
from web3 import Web3

from ticketmint.errors import InvalidPayload, InvalidSignature, InvalidWallet, MissingFields
from ticketmint.intent import (
    TicketIntent, compute_order_id, intent_domain, payment_id_for,
    recover_intent_signer, verify_intent,
)

from tests.helpers import NFT_ADDRESS, intent_payload, make_intent, sign_intent


def test_signature_recovers_the_buyer():
    account = Account.create()
    intent = make_intent(account)
    sig = sign_intent(account, intent)
    domain = intent_domain(NFT_ADDRESS, 31337)
    assert recover_intent_signer(intent, sig, domain) == account.address
    verify_intent(intent, sig, domain)


def test_signature_is_bound_to_the_domain():
    account = Account.create()
    intent = make_intent(account)
    sig = sign_intent(account, intent, chain_id=1)
    with pytest.raises(InvalidSignature):
        verify_intent(intent, sig, intent_domain(NFT_ADDRESS, 31337))


def test_tampered_intent_fails():
    account = Account.create()
    intent = make_intent(account)
    sig = sign_intent(account, intent)
    tampered = make_intent(account, amount_wei=1, deadline=intent.deadline)
    with pytest.raises(InvalidSignature):
        verify_intent(tampered, sig, intent_domain(NFT_ADDRESS, 31337))


@pytest.mark.parametrize("sig", ["", "0x", "0x" + "zz" * 65, "0x" + "ab" * 64])
def test_malformed_signatures(sig):
    intent = make_intent(Account.create())
    with pytest.raises(InvalidSignature):
        recover_intent_signer(intent, sig, intent_domain(NFT_ADDRESS, 31337))


def test_from_payload_round_trip():
    account = Account.create()
    intent = make_intent(account)
    parsed = TicketIntent.from_payload(intent_payload(intent))
    assert parsed == intent


def test_from_payload_accepts_lowercase_buyer():
    account = Account.create()
    payload = intent_payload(make_intent(account))
    payload["buyer"] = account.address.lower()
    assert TicketIntent.from_payload(payload).buyer == account.address


@pytest.mark.parametrize("change,error", [
    ({"buyer": "not-an-address"}, InvalidWallet),
    ({"splitSlug": ""}, MissingFields),
    ({"merchantOrderId": None}, MissingFields),
    ({"eventId": "abc"}, InvalidPayload),
    ({"amountWei": -1}, InvalidPayload),
    ({"deadline": True}, InvalidPayload),
])
def test_from_payload_validation(change, error):
    payload = intent_payload(make_intent(Account.create()))
    payload.update(change)
    with pytest.raises(error):
        TicketIntent.from_payload(payload)


def test_from_payload_requires_an_object():
    with pytest.raises(MissingFields):
        TicketIntent.from_payload(None)


def test_order_id_matches_packed_keccak():
    buyer = "0x" + "33" * 20
    expected = "0x" + Web3.solidity_keccak(
        ["string", "address", "uint256", "uint256"], ["ord-1", buyer, 1, 31337]
    ).hex().removeprefix("0x")
    assert compute_order_id("ord-1", buyer, 1, 31337) == expected
    assert compute_order_id("ord-1", buyer, 1, 1) != expected


def test_payment_id():
    assert payment_id_for("ord-1") == "0x" + Web3.keccak(text="ord-1").hex().removeprefix("0x")
    raw = "0x" + "AB" * 32
    assert payment_id_for(raw) == raw.lower()
    with pytest.raises(ValueError):
        payment_id_for("  ")
