from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional, Union
from urllib.parse import parse_qsl, urlencode
import base64
import hashlib
import hmac
import os

import orjson


# ----------------------------
# Verification results
# ----------------------------
@dataclass(frozen=True)
class Verified:
    merchant_order_id: str
    status: str
    total_amount: str
    payment_amount: Optional[str] = None
    merchant_id: Optional[str] = None
    buyer_address: Optional[str] = None
    raw: Dict[str, str] = field(default_factory=dict)
    ok: bool = True

    @property
    def amount_try(self) -> str:
        return self.total_amount

    @property
    def incoming_amount(self) -> str:
        return self.payment_amount or self.total_amount


@dataclass(frozen=True)
class Rejected:
    reason: str
    ok: bool = False


VerifyResult = Union[Verified, Rejected]


# ----------------------------
# Payment Adapter Interface
# ----------------------------
class PaymentAdapter(ABC):
    name: str

    # never raises on malformed input; failures come back as Rejected
    @abstractmethod
    def verify_and_parse(self, raw_body: Union[bytes, str],
                         env: Optional[Mapping[str, str]] = None) -> VerifyResult:
        ...

    @abstractmethod
    def sign_notification(self, fields: Dict[str, str],
                          env: Optional[Mapping[str, str]] = None) -> str:
        ...


def parse_raw_body(raw_body: Union[bytes, str]) -> Optional[Dict[str, str]]:
    """Flat string map from a JSON object or a form-encoded body."""
    if isinstance(raw_body, bytes):
        try:
            raw_body = raw_body.decode()
        except UnicodeDecodeError:
            return None
    trimmed = raw_body.strip()
    if not trimmed:
        return None
    if trimmed.startswith("{"):
        try:
            parsed = orjson.loads(trimmed)
        except orjson.JSONDecodeError:
            return None
        if not isinstance(parsed, dict):
            return None
        return {
            k: v if isinstance(v, str) else str(v)
            for k, v in parsed.items() if v is not None
        }
    return dict(parse_qsl(trimmed, keep_blank_values=True))


# ----------------------------
# PayTR implementation
# ----------------------------
@dataclass(frozen=True)
class PaytrCredentials:
    merchant_key: Optional[str]
    merchant_salt: Optional[str]
    merchant_id: Optional[str]


def resolve_paytr_env(env: Mapping[str, str]) -> PaytrCredentials:
    mode = (env.get("PAYTR_ENV") or "test").lower()
    suffix = "PROD" if mode == "prod" else "TEST"

    def pick(name: str) -> Optional[str]:
        return env.get(f"{name}_{suffix}") or env.get(name) or None

    return PaytrCredentials(
        merchant_key=pick("PAYTR_MERCHANT_KEY"),
        merchant_salt=pick("PAYTR_MERCHANT_SALT"),
        merchant_id=pick("PAYTR_MERCHANT_ID"),
    )


def paytr_hash(merchant_order_id: str, salt: str, status: str,
               total_amount: str, key: str) -> str:
    token = f"{merchant_order_id}{salt}{status}{total_amount}"
    mac = hmac.new(key.encode(), token.encode(), hashlib.sha256).digest()
    return base64.b64encode(mac).decode()


class PayTR(PaymentAdapter):
    name = "paytr"

    def verify_and_parse(self, raw_body, env=None) -> VerifyResult:
        env = os.environ if env is None else env
        raw = parse_raw_body(raw_body)
        if not raw:
            return Rejected("Invalid body")

        creds = resolve_paytr_env(env)
        if not creds.merchant_key or not creds.merchant_salt:
            return Rejected("Missing PayTR env")

        merchant_order_id = raw.get("merchant_oid", "")
        if not merchant_order_id:
            return Rejected("Missing merchantOrderId")
        raw_status = raw.get("status", "")
        if not raw_status:
            return Rejected("Missing status")
        total_amount = raw.get("total_amount", "")
        if not total_amount:
            return Rejected("Missing total_amount")
        sig = raw.get("hash", "")
        if not sig:
            return Rejected("Missing hash")

        expected = paytr_hash(merchant_order_id, creds.merchant_salt,
                              raw_status, total_amount, creds.merchant_key)
        if not hmac.compare_digest(expected.encode(), sig.encode()):
            return Rejected("Invalid signature")

        payload_merchant_id = raw.get("merchant_id") or None
        if (payload_merchant_id and creds.merchant_id
                and payload_merchant_id != creds.merchant_id):
            return Rejected("Invalid merchant_id")

        return Verified(
            merchant_order_id=merchant_order_id,
            status=raw_status.lower(),
            total_amount=total_amount,
            payment_amount=raw.get("payment_amount") or None,
            merchant_id=creds.merchant_id,
            buyer_address=raw.get("buyerAddress") or raw.get("buyer_address") or None,
            raw=raw,
        )

    def sign_notification(self, fields, env=None) -> str:
        """Form-encoded body carrying a valid `hash`, as PayTR would post it."""
        env = os.environ if env is None else env
        creds = resolve_paytr_env(env)
        if not creds.merchant_key or not creds.merchant_salt:
            raise ValueError("Missing PayTR env")
        body = dict(fields)
        if creds.merchant_id:
            body.setdefault("merchant_id", creds.merchant_id)
        body["hash"] = paytr_hash(
            body["merchant_oid"], creds.merchant_salt, body["status"],
            body["total_amount"], creds.merchant_key,
        )
        return urlencode(body)


PROVIDERS: Dict[str, PaymentAdapter] = {PayTR.name: PayTR()}


def get_provider(name: Optional[str] = None) -> PaymentAdapter:
    name = (name or os.getenv("PAYMENT_PROVIDER") or PayTR.name).lower()
    provider = PROVIDERS.get(name)
    if provider is None:
        raise ValueError(f"unknown payment provider: {name}")
    return provider
