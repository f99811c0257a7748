import asyncio

import pytest

from ticketmint import audit
from ticketmint.claim import ClaimOrchestrator
from ticketmint.gate import GateVerifier, parse_token_id
from ticketmint.lifecycle import GATE_VALIDATED, TICKET_CLAIMED
from ticketmint.model.orderstore import k_gate_lock
from ticketmint.operators import OperatorKeys
from ticketmint.purchase import PaymentRequest, PurchaseOrchestrator
from ticketmint.ratelimit import RateLimiter

from tests.helpers import BUYER, OTHER_WALLET

HEADERS = {"user-agent": "scanner/1.0"}


@pytest.fixture
def gate(store, chain):
    return GateVerifier(store, chain, ip_limiter=RateLimiter(100, 60),
                        token_limiter=RateLimiter(100, 60), operator_keys=OperatorKeys())


async def claimed_custody_ticket(store, chain, mid="fiat-1"):
    outcome = await PurchaseOrchestrator(store, chain).process_payment(PaymentRequest(
        merchant_order_id=mid, event_id="1", split_slug="main-hall", amount_try="150",
    ))
    await ClaimOrchestrator(store, chain).claim(mid, outcome.claim_code, BUYER)
    return outcome.token_id, outcome.claim_code


async def direct_ticket(store, chain, mid="fiat-2"):
    outcome = await PurchaseOrchestrator(store, chain).process_payment(PaymentRequest(
        merchant_order_id=mid, event_id="1", split_slug="main-hall",
        amount_try="150", buyer_address=BUYER,
    ))
    return outcome.token_id


async def verify(gate, token_id, code, **extra):
    payload = {"tokenId": token_id, "code": code, **extra}
    return await gate.verify(payload, ip="10.0.0.1", headers=HEADERS)


@pytest.mark.parametrize("value,expected", [
    (7, 7), ("7", 7), ("0x10", 16), (" 3 ", 3),
    (-1, None), ("abc", None), (True, None), (None, None), ("", None),
])
def test_parse_token_id(value, expected):
    assert parse_token_id(value) == expected


async def test_claimed_ticket_is_admitted_once(gate, store, chain):
    token_id, code = await claimed_custody_ticket(store, chain)

    first = await verify(gate, token_id, code)
    assert first.valid
    assert first.reason == "valid"
    assert first.owner == BUYER

    order = await store.get_by_merchant_id("fiat-1")
    assert order.ticket_state == GATE_VALIDATED
    assert order.used_at

    second = await verify(gate, token_id, code)
    assert not second.valid
    assert second.reason == "already_used"
    assert second.http_status == 200


async def test_direct_mint_is_checked_against_payment_id(gate, store, chain):
    token_id = await direct_ticket(store, chain)
    res = await verify(gate, token_id, "fiat-2")
    assert res.valid

    order = await store.get_by_merchant_id("fiat-2")
    assert order.ticket_state == GATE_VALIDATED


async def test_direct_mint_wrong_code(gate, store, chain):
    token_id = await direct_ticket(store, chain)
    res = await verify(gate, token_id, "someone-elses-order")
    assert res.reason == "payment_mismatch"
    order = await store.get_by_merchant_id("fiat-2")
    assert order.ticket_state != GATE_VALIDATED


async def test_wrong_claim_code(gate, store, chain):
    token_id, _ = await claimed_custody_ticket(store, chain)
    res = await verify(gate, token_id, "ABCD-EFGH-JKMN")
    assert res.reason == "invalid_code"


async def test_unclaimed_custody_ticket(gate, store, chain):
    outcome = await PurchaseOrchestrator(store, chain).process_payment(PaymentRequest(
        merchant_order_id="fiat-3", event_id="1", split_slug="main-hall", amount_try="1",
    ))
    res = await verify(gate, outcome.token_id, outcome.claim_code)
    assert res.reason == "not_claimed"


async def test_ticket_moved_without_chain_claim(gate, store, chain):
    token_id, code = await claimed_custody_ticket(store, chain)
    chain.tokens[int(token_id)]["owner"] = OTHER_WALLET
    chain.tokens[int(token_id)]["claimed"] = False
    res = await verify(gate, token_id, code)
    assert res.reason == "not_claimed"


async def test_owner_moved_after_chain_claim_is_followed(gate, store, chain):
    token_id, code = await claimed_custody_ticket(store, chain)
    chain.tokens[int(token_id)]["owner"] = OTHER_WALLET
    res = await verify(gate, token_id, code)
    assert res.valid
    order = await store.get_by_merchant_id("fiat-1")
    assert order.claimed_to == OTHER_WALLET


async def test_unknown_token_is_onchain_error(gate):
    res = await verify(gate, "999", "ABCD-EFGH-JKMN")
    assert res.reason == "onchain_error"
    assert not res.valid


async def test_order_lookup_falls_back_to_merchant_id(gate, store, chain):
    token_id, code = await claimed_custody_ticket(store, chain)
    chain.tokens[77] = dict(chain.tokens[int(token_id)])
    res = await verify(gate, "77", code, merchantOrderId="fiat-1")
    assert res.valid


async def test_missing_order(gate, chain, store):
    token_id = await direct_ticket(store, chain)
    chain.tokens[55] = dict(chain.tokens[int(token_id)])
    res = await verify(gate, "55", "fiat-2")
    assert res.reason == "order_not_found"


@pytest.mark.parametrize("payload,reason", [
    (None, "invalid_json"),
    ({"tokenId": "x", "code": "c"}, "invalid_token"),
    ({"tokenId": "1"}, "missing_code"),
    ({"tokenId": "1", "code": "   "}, "missing_code"),
])
async def test_malformed_requests(gate, payload, reason):
    res = await gate.verify(payload, ip="10.0.0.1", headers=HEADERS)
    assert res.reason == reason
    assert res.http_status == 400
    assert res.ok is False


async def test_operator_key_is_required_when_configured(store, chain):
    gate = GateVerifier(store, chain, operator_keys=OperatorKeys(["secret"]))
    res = await gate.verify({"tokenId": "1", "code": "c"}, ip="10.0.0.1",
                            headers={"x-operator-key": "wrong"})
    assert res.reason == "unauthorized"
    assert res.http_status == 401


async def test_token_rate_limit(store, chain):
    gate = GateVerifier(store, chain, ip_limiter=RateLimiter(100, 60),
                        token_limiter=RateLimiter(1, 60), operator_keys=OperatorKeys())
    await verify(gate, "1", "c")
    res = await verify(gate, "1", "c")
    assert res.reason == "rate_limited"
    assert res.http_status == 429
    assert res.retry_after >= 1


async def test_ip_rate_limit(store, chain):
    gate = GateVerifier(store, chain, ip_limiter=RateLimiter(1, 60),
                        token_limiter=RateLimiter(100, 60), operator_keys=OperatorKeys())
    await verify(gate, "1", "c")
    res = await verify(gate, "2", "c")
    assert res.reason == "rate_limited"


async def test_held_gate_lock(gate, store, chain):
    token_id, code = await claimed_custody_ticket(store, chain)
    async with store.lock(k_gate_lock(token_id), 10):
        res = await verify(gate, token_id, code)
    assert res.reason == "temporarily_locked"
    assert res.http_status == 429
    assert res.ok is False
    assert res.to_body(31337)["ok"] is False


async def test_concurrent_scans_admit_once(gate, store, chain):
    token_id, code = await claimed_custody_ticket(store, chain)
    results = await asyncio.gather(*[verify(gate, token_id, code) for _ in range(6)])
    assert sum(1 for r in results if r.valid) == 1
    assert all(r.reason in ("valid", "already_used", "temporarily_locked")
               for r in results)


async def test_decisions_are_audited(gate, store, chain):
    token_id, code = await claimed_custody_ticket(store, chain)
    await verify(gate, token_id, code)
    await verify(gate, token_id, "ABCD-EFGH-JKMN")

    events = audit.get_audit_events()
    assert [e["reason"] for e in events] == ["valid", "invalid_code"]
    assert events[0]["kind"] == "AUDIT"
    assert events[0]["tokenId"] == token_id
    assert events[0]["uaHash"] and "scanner" not in events[0]["uaHash"]
    assert events[0]["operatorKeyId"] == "unknown"


async def test_claimed_state_before_check_in(store, chain):
    token_id, _ = await claimed_custody_ticket(store, chain)
    order = await store.get_by_token_id(token_id)
    assert order.ticket_state == TICKET_CLAIMED


async def test_wrong_codes_from_many_ips_lock_the_token(store, chain):
    gate = GateVerifier(store, chain, ip_limiter=RateLimiter(100, 60),
                        token_limiter=RateLimiter(100, 60),
                        operator_keys=OperatorKeys(), invalid_limit=3)
    token_id = await direct_ticket(store, chain)

    for i in range(3):
        res = await gate.verify({"tokenId": token_id, "code": f"guess-{i}"},
                                ip=f"10.0.1.{i}", headers=HEADERS)
        assert res.reason == "payment_mismatch"

    res = await gate.verify({"tokenId": token_id, "code": "fiat-2"},
                            ip="10.0.2.1", headers=HEADERS)
    assert res.reason == "temporarily_locked"
    assert res.http_status == 429
    assert res.ok is False
    assert await store.is_locked_out(token_id)

    order = await store.get_by_merchant_id("fiat-2")
    assert order.ticket_state != GATE_VALIDATED


async def test_wrong_claim_codes_count_towards_lockout(store, chain):
    gate = GateVerifier(store, chain, ip_limiter=RateLimiter(100, 60),
                        token_limiter=RateLimiter(100, 60),
                        operator_keys=OperatorKeys(), invalid_limit=2)
    token_id, code = await claimed_custody_ticket(store, chain)

    await verify(gate, token_id, "ABCD-EFGH-JKMN")
    assert not await store.is_locked_out(token_id)
    await verify(gate, token_id, "ABCD-EFGH-JKMP")
    res = await verify(gate, token_id, code)
    assert res.reason == "temporarily_locked"


async def test_lockout_expires(store, chain):
    gate = GateVerifier(store, chain, ip_limiter=RateLimiter(100, 60),
                        token_limiter=RateLimiter(100, 60),
                        operator_keys=OperatorKeys(), invalid_limit=1,
                        lockout_seconds=1)
    token_id = await direct_ticket(store, chain)
    await verify(gate, token_id, "guess")
    assert (await verify(gate, token_id, "fiat-2")).reason == "temporarily_locked"

    await asyncio.sleep(1.2)
    res = await verify(gate, token_id, "fiat-2")
    assert res.valid


async def test_rotated_operator_keys_are_all_accepted(store, chain):
    keys = OperatorKeys(["old-key", "new-key"])
    gate = GateVerifier(store, chain, operator_keys=keys)
    for key in ("old-key", "new-key"):
        res = await gate.verify({"tokenId": "1", "code": "c"}, ip="10.0.0.1",
                                headers={"x-operator-key": key})
        assert res.reason != "unauthorized"


async def test_revoked_operator_key_is_rejected(store, chain):
    keys = OperatorKeys(["old-key", "new-key"], revoked=["old-key"])
    gate = GateVerifier(store, chain, operator_keys=keys)

    res = await gate.verify({"tokenId": "1", "code": "c"}, ip="10.0.0.1",
                            headers={"x-operator-key": "old-key"})
    assert res.reason == "revoked_key"
    assert res.http_status == 403
    assert res.ok is False

    res = await gate.verify({"tokenId": "1", "code": "c"}, ip="10.0.0.1",
                            headers={"x-operator-key": "new-key"})
    assert res.reason != "revoked_key"
