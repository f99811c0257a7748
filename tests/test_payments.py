from urllib.parse import parse_qsl, urlencode

import orjson

from ticketmint.payments import PayTR, Rejected, Verified, get_provider, paytr_hash

from tests.helpers import paytr_form

ENV = {
    "PAYTR_ENV": "test",
    "PAYTR_MERCHANT_KEY_TEST": "k",
    "PAYTR_MERCHANT_SALT_TEST": "s",
    "PAYTR_MERCHANT_ID_TEST": "42",
}


def body(fields):
    return urlencode(fields).encode()


def test_valid_notification_is_parsed():
    fields = paytr_form("ord-7", status="SUCCESS", salt="s", key="k",
                        extra={"buyer_address": "0xabc", "merchant_id": "42"})
    res = PayTR().verify_and_parse(body(fields), env=ENV)
    assert isinstance(res, Verified)
    assert res.merchant_order_id == "ord-7"
    assert res.status == "success"
    assert res.amount_try == "15000"
    assert res.buyer_address == "0xabc"


def test_json_body_is_accepted():
    fields = paytr_form("ord-8", salt="s", key="k")
    res = PayTR().verify_and_parse(orjson.dumps(fields), env=ENV)
    assert res.ok


def test_tampered_amount_fails_signature():
    fields = paytr_form("ord-7", salt="s", key="k")
    fields["total_amount"] = "1"
    res = PayTR().verify_and_parse(body(fields), env=ENV)
    assert isinstance(res, Rejected)
    assert res.reason == "Invalid signature"


def test_missing_fields_are_reported_in_order():
    p = PayTR()
    assert p.verify_and_parse(b"", env=ENV).reason == "Invalid body"
    assert p.verify_and_parse(body({"x": "1"}), env={}).reason == "Missing PayTR env"
    assert p.verify_and_parse(body({"status": "success"}), env=ENV).reason == "Missing merchantOrderId"
    assert p.verify_and_parse(body({"merchant_oid": "a"}), env=ENV).reason == "Missing status"
    assert p.verify_and_parse(
        body({"merchant_oid": "a", "status": "success"}), env=ENV
    ).reason == "Missing total_amount"
    assert p.verify_and_parse(
        body({"merchant_oid": "a", "status": "success", "total_amount": "1"}), env=ENV
    ).reason == "Missing hash"


def test_foreign_merchant_id_is_rejected():
    fields = paytr_form("ord-7", salt="s", key="k", extra={"merchant_id": "999"})
    res = PayTR().verify_and_parse(body(fields), env=ENV)
    assert res.reason == "Invalid merchant_id"


def test_prod_credentials_are_selected_by_env():
    env = {**ENV, "PAYTR_ENV": "prod", "PAYTR_MERCHANT_KEY_PROD": "pk",
           "PAYTR_MERCHANT_SALT_PROD": "ps"}
    fields = paytr_form("ord-9", salt="ps", key="pk")
    assert PayTR().verify_and_parse(body(fields), env=env).ok


def test_signed_notification_round_trips_through_verification():
    p = PayTR()
    signed = p.sign_notification(
        {"merchant_oid": "ord-3", "status": "success", "total_amount": "500"},
        env=ENV,
    )
    fields = dict(parse_qsl(signed))
    assert fields["hash"] == paytr_hash("ord-3", "s", "success", "500", "k")
    assert fields["merchant_id"] == "42"
    assert p.verify_and_parse(signed, env=ENV).ok


def test_default_provider_is_paytr():
    assert get_provider().name == "paytr"
