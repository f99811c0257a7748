import asyncio
import time

import pytest
from eth_account import Account

from ticketmint.claimcode import claim_code_matches, is_formatted_claim_code
from ticketmint.chain import EventConfig
from ticketmint.errors import IntentExpired, InvalidSignature, SaleUnavailable
from ticketmint.intent import compute_order_id, payment_id_for
from ticketmint.lifecycle import INTENT_CREATED, MINTED
from ticketmint.model.order import CLAIMED, PAID, PENDING, UNCLAIMED
from ticketmint.model.orderstore import k_purchase_lock
from ticketmint.purchase import PaymentRequest, PurchaseOrchestrator

from tests.helpers import BUYER, CUSTODY_ADDRESS, NFT_ADDRESS, make_intent, sign_intent


@pytest.fixture
def orchestrator(store, chain):
    return PurchaseOrchestrator(store, chain, chain_id=31337)


@pytest.fixture
def account():
    return Account.create()


async def test_signed_purchase_mints_to_buyer(orchestrator, store, chain, account):
    intent = make_intent(account)
    outcome = await orchestrator.purchase_with_intent(intent, sign_intent(account, intent))

    assert outcome.status == "processed"
    assert outcome.http_status == 200
    assert outcome.token_id == "1"
    assert outcome.claim_code is None
    assert chain.tokens[1]["owner"] == account.address
    assert chain.tokens[1]["payment_id"] == payment_id_for("ord-1")

    order = await store.get_by_merchant_id("ord-1")
    assert order.ticket_state == MINTED
    assert order.payment_status == PAID
    assert order.claim_status == CLAIMED
    assert order.claimed_to == account.address
    assert order.order_id == compute_order_id("ord-1", account.address, 1, 31337)


async def test_second_purchase_is_duplicate(orchestrator, chain, account):
    intent = make_intent(account)
    sig = sign_intent(account, intent)
    first = await orchestrator.purchase_with_intent(intent, sig)
    second = await orchestrator.purchase_with_intent(intent, sig)

    assert second.status == "duplicate"
    assert second.tx_hash == first.tx_hash
    assert chain.mint_calls == 1


async def test_concurrent_purchases_mint_once(orchestrator, store, chain, account):
    chain.mint_delay = 0.05
    intent = make_intent(account)
    sig = sign_intent(account, intent)

    results = await asyncio.gather(*[
        orchestrator.purchase_with_intent(intent, sig) for _ in range(8)
    ])
    statuses = [r.status for r in results]
    assert statuses.count("processed") == 1
    assert all(s in ("processed", "duplicate", "pending") for s in statuses)
    assert chain.mint_calls == 1

    order = await store.get_by_merchant_id("ord-1")
    processed = next(r for r in results if r.status == "processed")
    assert order.tx_hash == processed.tx_hash


async def test_contended_lock_answers_pending(orchestrator, store, account):
    intent = make_intent(account)
    async with store.lock(k_purchase_lock("ord-1"), 30):
        outcome = await orchestrator.purchase_with_intent(intent, sign_intent(account, intent))
    assert outcome.status == "pending"
    assert outcome.http_status == 202


async def test_reused_payment_id_is_duplicate(orchestrator, chain, account):
    chain.used_payments.add(payment_id_for("ord-1"))
    intent = make_intent(account)
    outcome = await orchestrator.purchase_with_intent(intent, sign_intent(account, intent))
    assert outcome.status == "duplicate"


async def test_signature_from_someone_else_is_rejected(orchestrator, account):
    intent = make_intent(account)
    with pytest.raises(InvalidSignature):
        await orchestrator.purchase_with_intent(intent, sign_intent(Account.create(), intent))


async def test_malformed_signature_is_rejected(orchestrator, account):
    with pytest.raises(InvalidSignature):
        await orchestrator.purchase_with_intent(make_intent(account), "0x1234")


async def test_expired_intent_is_rejected(orchestrator, chain, account):
    intent = make_intent(account, deadline=int(time.time()) - 5)
    with pytest.raises(IntentExpired):
        await orchestrator.purchase_with_intent(intent, sign_intent(account, intent))
    assert chain.mint_calls == 0


@pytest.mark.parametrize("cfg,amount", [
    (EventConfig(10**15, 100, True, 0, True), 10**15),
    (EventConfig(10**15, 100, False, 100, True), 10**15),
    (EventConfig(10**15, 100, False, 0, True), 10**14),
    (EventConfig(0, 100, False, 0, True), 10**15),
])
async def test_sale_constraints(orchestrator, chain, account, cfg, amount):
    chain.events[1] = cfg
    intent = make_intent(account, amount_wei=amount)
    with pytest.raises(SaleUnavailable) as e:
        await orchestrator.purchase_with_intent(intent, sign_intent(account, intent))
    assert e.value.status_code == 409
    assert chain.mint_calls == 0


async def test_unknown_event_is_unavailable(orchestrator, chain, account):
    intent = make_intent(account, event_id=99)
    with pytest.raises(SaleUnavailable):
        await orchestrator.purchase_with_intent(intent, sign_intent(account, intent))


async def test_register_intent_creates_placeholder(orchestrator, store, account):
    intent = make_intent(account)
    res = await orchestrator.register_intent(intent)
    assert res["status"] == "registered"
    assert res["typedData"]["primaryType"] == "TicketIntent"
    assert res["typedData"]["domain"]["verifyingContract"] == NFT_ADDRESS

    order = await store.get_by_merchant_id("ord-1")
    assert order.ticket_state == INTENT_CREATED
    assert order.payment_status == PENDING

    again = await orchestrator.register_intent(intent)
    assert again["orderId"] == res["orderId"]


async def test_purchase_after_intent_upgrades_placeholder(orchestrator, store, account):
    intent = make_intent(account)
    await orchestrator.register_intent(intent)
    outcome = await orchestrator.purchase_with_intent(intent, sign_intent(account, intent))
    assert outcome.status == "processed"
    order = await store.get_by_merchant_id("ord-1")
    assert order.ticket_state == MINTED


async def test_fiat_payment_without_wallet_mints_to_custody(orchestrator, store, chain):
    outcome = await orchestrator.process_payment(PaymentRequest(
        merchant_order_id="fiat-1", event_id="1", split_slug="main-hall",
        amount_try="150",
    ))
    assert outcome.status == "processed"
    assert is_formatted_claim_code(outcome.claim_code)
    assert chain.tokens[1]["owner"] == CUSTODY_ADDRESS

    order = await store.get_by_merchant_id("fiat-1")
    assert order.custody_address == CUSTODY_ADDRESS
    assert order.claim_status == UNCLAIMED
    assert order.claim_code_hash != outcome.claim_code
    assert claim_code_matches(outcome.claim_code, order.claim_code_hash)
    assert order.claim_expires_at


async def test_fiat_payment_with_wallet_is_claimed_directly(orchestrator, store, chain):
    outcome = await orchestrator.process_payment(PaymentRequest(
        merchant_order_id="fiat-2", event_id="1", split_slug="main-hall",
        amount_try="150", buyer_address=BUYER.lower(),
    ))
    assert outcome.claim_code is None
    order = await store.get_by_merchant_id("fiat-2")
    assert order.claimed_to == BUYER
    assert order.claim_code_hash is None


async def test_fiat_payment_is_idempotent(orchestrator, chain):
    req = PaymentRequest(merchant_order_id="fiat-3", event_id="1",
                         split_slug="main-hall", amount_try="150")
    first = await orchestrator.process_payment(req)
    second = await orchestrator.process_payment(req)
    assert second.status == "duplicate"
    assert second.claim_code is None
    assert second.tx_hash == first.tx_hash
    assert chain.mint_calls == 1
