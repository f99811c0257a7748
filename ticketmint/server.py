from __future__ import annotations
import logging
import time
import uuid
from typing import Any, Dict, Optional, Tuple

import httpx
import orjson
import redis.asyncio as redis

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import ORJSONResponse

from . import audit, config
from .chain import ChainClient, Web3ChainClient
from .claim import ALREADY_CLAIMED, CLAIMED_STATUS, PENDING_STATUS, ClaimOrchestrator
from .errors import (
    ChainCallFailed, InvalidPayload, InvalidWallet, MissingFields, OrderNotFound,
    RateLimited, RevokedKey, ServerMisconfigured, StoreConflict, TicketingError,
    Unauthorized,
)
from .gate import GateVerifier
from .helpers import checksum_address, client_ip, sha256_hex
from .infra.sql import make_async_engine
from .infra.timings import aggregates, timeit
from .intent import TicketIntent
from .lifecycle import InvalidTransition
from .logs import emit_metric, log_event, setup_logging
from .model.order import CLAIMED, FAILED, PAID
from .model.orderstore import BACKEND as ORDER_BACKEND, OrderStore, new_store
from .operators import ACCEPTED, REVOKED, OperatorKeys
from .payments import get_provider
from .purchase import PaymentRequest, PurchaseOrchestrator
from .ratelimit import RateLimiter

setup_logging()
logger = logging.getLogger(__name__)

# ----------------------------
# Config & Constants
# ----------------------------
sql = make_async_engine(config.DATABASE_URL) if ORDER_BACKEND == "sql" else None

# process-local windows, reset on restart
intent_limiter = RateLimiter(*config.PURCHASE_RATE_LIMIT)
purchase_limiter = RateLimiter(*config.PURCHASE_RATE_LIMIT)
claim_limiter = RateLimiter(*config.CLAIM_RATE_LIMIT)
gate_ip_limiter = RateLimiter(*config.GATE_RATE_LIMIT)
gate_token_limiter = RateLimiter(*config.GATE_RATE_LIMIT)
operator_keys = OperatorKeys.from_config()

app = FastAPI(
    title="TicketMint",
    default_response_class=ORJSONResponse,
)


async def order_store() -> OrderStore:
    if ORDER_BACKEND == "redis":
        yield new_store(r=app.state.redis)
    else:
        yield new_store(sql=sql)


def chain_client() -> ChainClient:
    client = getattr(app.state, "chain", None)
    if client is None:
        raise ServerMisconfigured("Chain client is not configured")
    return client


# ---
# startup / shutdown
# ---
@app.on_event("startup")
async def _say_hello():
    log_event(logger, "startup", order_backend=ORDER_BACKEND,
              chain_id=config.CHAIN_ID,
              dev_endpoints=config.DEV_ENDPOINTS_ENABLED,
              audit_debug=config.AUDIT_DEBUG_ENABLED)


@app.on_event("startup")
async def _db_init():
    if sql is not None:
        from .model.orderstore._sql import create_schema
        async with sql.engine.begin() as conn:
            await create_schema(conn)


@app.on_event("startup")
async def _http_client_start():
    app.state.http = httpx.AsyncClient(
        timeout=5.0,
        limits=httpx.Limits(
            max_connections=64, max_keepalive_connections=64
        ),
    )


@app.on_event("startup")
async def _redis_start():
    if ORDER_BACKEND == "redis":
        app.state.redis = redis.from_url(
            config.REDIS_URL,
            decode_responses=True,
            max_connections=config.REDIS_MAX_CONN,
            socket_timeout=2.0,
            socket_connect_timeout=2.0,
            retry_on_timeout=True,
        )


@app.on_event("startup")
async def _chain_start():
    try:
        app.state.chain = Web3ChainClient.from_config()
    except ServerMisconfigured as exc:
        # chain-backed routes answer server_misconfigured until fixed
        app.state.chain = None
        log_event(logger, "startup.chain_misconfigured", logging.WARNING,
                  error=str(exc))


@app.on_event("shutdown")
async def _http_client_stop():
    http = getattr(app.state, "http", None)
    if http is not None:
        await http.aclose()
        app.state.http = None


@app.on_event("shutdown")
async def _redis_stop():
    r = getattr(app.state, "redis", None)
    if r is not None:
        await r.aclose()
        app.state.redis = None


@app.on_event("shutdown")
async def _db_stop():
    if sql is not None:
        await sql.engine.dispose()


# ----------------------------
# Errors
# ----------------------------
@app.exception_handler(TicketingError)
async def _ticketing_error(request: Request, exc: TicketingError):
    if isinstance(exc, (InvalidTransition, StoreConflict)):
        # a write got past the locking discipline
        log_event(logger, f"fault.{exc.reason}", logging.ERROR, exc_info=True,
                  route=request.url.path, error=str(exc))
    elif isinstance(exc, ChainCallFailed):
        log_event(logger, "chain.fail", logging.ERROR, route=request.url.path,
                  stage=exc.stage, error=str(exc))
    headers = None
    if isinstance(exc, RateLimited):
        headers = {"Retry-After": str(exc.retry_after_seconds)}
    return ORJSONResponse(exc.to_body(), status_code=exc.status_code,
                          headers=headers)


# ----------------------------
# Helpers
# ----------------------------
async def _json_body(request: Request) -> Dict[str, Any]:
    raw = await request.body()
    if not raw:
        raise InvalidPayload("Empty body", reason="empty_body")
    try:
        payload = orjson.loads(raw)
    except orjson.JSONDecodeError:
        raise InvalidPayload("Invalid JSON")
    if not isinstance(payload, dict):
        raise InvalidPayload("Invalid JSON")
    return payload


def _rate_limit(limiter: RateLimiter, route: str, ip: str, started: float) -> None:
    rate = limiter.check(f"{route}:{ip}")
    if not rate.ok:
        emit_metric("rate_limit_hit", route=route, reason="rate_limit", ip=ip,
                    latency_ms=(time.monotonic() - started) * 1000)
        raise RateLimited(rate.retry_after_ms)


def require_operator(request: Request) -> None:
    if not operator_keys.configured:
        raise Unauthorized("Operator key required")
    state = operator_keys.check(request.headers.get("x-operator-key"),
                                ip_hash=sha256_hex(client_ip(request.headers)))
    if state == REVOKED:
        raise RevokedKey("Operator key has been revoked")
    if state != ACCEPTED:
        raise Unauthorized("Operator key required")


def _purchase_metric(route: str, status: str, mid: str, ip: str,
                     started: float) -> None:
    emit_metric(f"purchase_{status}", route=route, merchant_order_id=mid, ip=ip,
                latency_ms=(time.monotonic() - started) * 1000)


def _outcome_response(outcome, include_claim_code: bool = True) -> ORJSONResponse:
    body = outcome.to_body()
    if not include_claim_code:
        body.pop("claimCode", None)
    return ORJSONResponse(body, status_code=outcome.http_status)


# ----------------------------
# Health / read endpoints
# ----------------------------
@app.get("/health")
async def health():
    return {"ok": True, "orderBackend": ORDER_BACKEND, "chainId": config.CHAIN_ID,
            "chainConfigured": getattr(app.state, "chain", None) is not None}


async def _check_dependency(name: str, call) -> Tuple[bool, Optional[str]]:
    try:
        await call
    except Exception as exc:
        # reported in the response; readiness never raises
        log_event(logger, "ready.check_failed", logging.WARNING,
                  dependency=name, error=str(exc))
        return False, str(exc)
    return True, None


@app.get("/ready")
async def ready(store: OrderStore = Depends(order_store)):
    started = time.monotonic()
    store_ok, store_error = await _check_dependency("store", store.ping())
    chain = getattr(app.state, "chain", None)
    if chain is None:
        rpc_ok, rpc_error = False, "Chain client is not configured"
    else:
        rpc_ok, rpc_error = await _check_dependency("rpc", chain.block_number())
    ok = store_ok and rpc_ok
    return ORJSONResponse({
        "ok": ok,
        "chainId": config.CHAIN_ID,
        "storeOk": store_ok,
        "rpcOk": rpc_ok,
        "storeError": store_error,
        "rpcError": rpc_error,
        "latency_ms": round((time.monotonic() - started) * 1000, 3),
    }, status_code=200 if ok else 503)


@app.get("/api/orders/{merchant_order_id}")
async def get_order(merchant_order_id: str,
                    store: OrderStore = Depends(order_store)):
    order = await store.get_by_merchant_id(merchant_order_id)
    if order is None:
        # not created yet (webhook still processing) -> let client keep polling
        raise OrderNotFound("Order not found")
    return {"ok": True, "order": order.public_view()}


# ----------------------------
# Signed-intent purchase
# ----------------------------
@app.post("/api/tickets/intent")
async def register_intent(request: Request,
                          store: OrderStore = Depends(order_store),
                          chain: ChainClient = Depends(chain_client)):
    route = "/api/tickets/intent"
    started = time.monotonic()
    ip = client_ip(request.headers)
    _rate_limit(intent_limiter, route, ip, started)

    payload = await _json_body(request)
    intent = TicketIntent.from_payload(payload.get("intent"))
    orchestrator = PurchaseOrchestrator(store, chain)
    result = await orchestrator.register_intent(intent)
    if result["status"] == PENDING_STATUS:
        emit_metric("lock_hit", route=route, reason="intent_lock",
                    merchant_order_id=intent.merchant_order_id, ip=ip)
        return ORJSONResponse(result, status_code=202)
    return result


@app.post("/api/tickets/purchase")
async def purchase(request: Request,
                   store: OrderStore = Depends(order_store),
                   chain: ChainClient = Depends(chain_client)):
    route = "/api/tickets/purchase"
    started = time.monotonic()
    ip = client_ip(request.headers)
    _rate_limit(purchase_limiter, route, ip, started)

    payload = await _json_body(request)
    intent = TicketIntent.from_payload(payload.get("intent"))
    signature = payload.get("signature")
    if not isinstance(signature, str) or not signature.strip():
        raise MissingFields("Missing signature")

    orchestrator = PurchaseOrchestrator(store, chain)
    async with timeit("route.purchase"):
        outcome = await orchestrator.purchase_with_intent(intent, signature)
    _purchase_metric(route, outcome.status, intent.merchant_order_id, ip, started)
    return _outcome_response(outcome)


# ----------------------------
# Custody claim
# ----------------------------
@app.post("/api/tickets/claim")
async def claim_ticket(request: Request,
                       store: OrderStore = Depends(order_store),
                       chain: ChainClient = Depends(chain_client)):
    route = "/api/tickets/claim"
    started = time.monotonic()
    ip = client_ip(request.headers)
    _rate_limit(claim_limiter, route, ip, started)

    payload = await _json_body(request)
    mid = payload.get("merchantOrderId")
    if not isinstance(mid, str) or not mid.strip():
        raise MissingFields("Missing merchantOrderId")
    mid = mid.strip()
    wallet = checksum_address(payload.get("walletAddress"))
    if wallet is None:
        raise InvalidWallet("Invalid walletAddress")
    code = payload.get("claimCode")
    code = code.strip() if isinstance(code, str) and code.strip() else None

    orchestrator = ClaimOrchestrator(store, chain)
    try:
        async with timeit("route.claim"):
            outcome = await orchestrator.claim(mid, code, wallet)
    except TicketingError as exc:
        log_event(logger, f"claim.fail.{exc.reason}", logging.WARNING,
                  merchant_order_id=mid, ip=ip)
        raise

    latency_ms = (time.monotonic() - started) * 1000
    if outcome.status == CLAIMED_STATUS:
        emit_metric("claim_ok", route=route, merchant_order_id=mid, ip=ip,
                    token_id=outcome.token_id, latency_ms=latency_ms)
    elif outcome.status == ALREADY_CLAIMED:
        emit_metric("claim_already", route=route, merchant_order_id=mid, ip=ip,
                    token_id=outcome.token_id, latency_ms=latency_ms)
    elif outcome.status == PENDING_STATUS:
        emit_metric("lock_hit", route=route, reason="claim_lock",
                    merchant_order_id=mid, ip=ip, latency_ms=latency_ms)
    return _outcome_response(outcome)


# ----------------------------
# Gate check-in
# ----------------------------
@app.post("/api/gate/verify")
async def gate_verify(request: Request,
                      store: OrderStore = Depends(order_store),
                      chain: ChainClient = Depends(chain_client)):
    raw = await request.body()
    try:
        payload = orjson.loads(raw) if raw else None
    except orjson.JSONDecodeError:
        payload = None

    verifier = GateVerifier(store, chain, ip_limiter=gate_ip_limiter,
                            token_limiter=gate_token_limiter,
                            operator_keys=operator_keys)
    async with timeit("route.gate_verify"):
        result = await verifier.verify(payload, ip=client_ip(request.headers),
                                       headers=request.headers)
    headers = None
    if result.retry_after is not None:
        headers = {"Retry-After": str(result.retry_after)}
    return ORJSONResponse(
        result.to_body(config.CHAIN_ID, debug=config.AUDIT_DEBUG_ENABLED),
        status_code=result.http_status, headers=headers,
    )


@app.get("/api/audit/gate")
async def audit_gate(limit: Optional[str] = None):
    if not config.AUDIT_DEBUG_ENABLED:
        raise HTTPException(404, detail="Not found")
    n = audit.parse_limit(limit)
    return {"ok": True, "limit": n, "events": audit.get_audit_events(n)}


# ----------------------------
# Webhook endpoint
# ----------------------------
@app.post("/payments/webhook")
async def payments_webhook(request: Request,
                           store: OrderStore = Depends(order_store)):
    route = "/payments/webhook"
    started = time.monotonic()
    raw = await request.body()

    verification = get_provider().verify_and_parse(raw)
    if not verification.ok:
        log_event(logger, "payment.webhook.rejected", logging.WARNING,
                  reason=verification.reason)
        if verification.reason == "Invalid signature":
            raise TicketingError(verification.reason,
                                 reason="invalid_signature", status_code=401)
        raise TicketingError(verification.reason,
                             reason="invalid_notification", status_code=400)

    fields = verification.raw
    mid = verification.merchant_order_id
    split_slug = fields.get("splitSlug") or fields.get("split_slug") or ""
    event_id = fields.get("eventId") or fields.get("event_id") or ""
    if not split_slug:
        raise MissingFields("Missing splitSlug")
    if not event_id:
        raise MissingFields("Missing eventId")

    existing = await store.get_by_merchant_id(mid)

    def decided(decision: str, status: str, **extra) -> Dict[str, Any]:
        log_event(logger, "payment.webhook", merchant_order_id=mid,
                  status=verification.status,
                  amount=verification.incoming_amount,
                  previous_state=existing.payment_status if existing else "none",
                  decision=decision, **extra)
        return {"ok": True, "status": status}

    if existing is not None:
        if existing.payment_status == PAID or existing.claim_status == CLAIMED:
            return decided("ignored", "duplicate", reason="duplicate")
        if existing.payment_status == FAILED and verification.status == "success":
            return decided("ignored", "ignored", reason="success_after_failure")
        recorded = existing.amount_try
        if recorded and recorded != "0" and recorded != str(verification.incoming_amount):
            return decided("flagged", "flagged", reason="amount_mismatch",
                           recorded_amount=recorded)

    if verification.status != "success":
        await store.record_order_status({
            "merchant_order_id": mid,
            "event_id": str(event_id),
            "split_slug": split_slug,
            "buyer_address": checksum_address(verification.buyer_address),
            "amount_try": str(verification.total_amount),
            "payment_status": verification.status,
        })
        return decided("recorded", "recorded")

    orchestrator = PurchaseOrchestrator(store, chain_client())
    buyer = verification.buyer_address or (existing.buyer_address if existing else None)
    outcome = await orchestrator.process_payment(PaymentRequest(
        merchant_order_id=mid,
        event_id=str(event_id),
        split_slug=split_slug,
        amount_try=str(verification.total_amount),
        buyer_address=buyer,
    ))
    decided(outcome.status, outcome.status)
    _purchase_metric(route, outcome.status, mid, "", started)
    # the provider is not the ticket holder
    return _outcome_response(outcome, include_claim_code=False)


# ----------------------------
# Dev payment emitter
# ----------------------------
@app.post("/payments/fake-pay")
async def fake_pay(request: Request,
                   store: OrderStore = Depends(order_store)):
    if not config.DEV_ENDPOINTS_ENABLED:
        raise HTTPException(404, detail="Not found")

    payload = await _json_body(request)
    mid = payload.get("merchantOrderId")
    if not isinstance(mid, str) or not mid.strip():
        raise MissingFields("Missing merchantOrderId")
    mid = mid.strip()
    event_id = str(payload.get("eventId") or 1)
    split_slug = str(payload.get("splitSlug") or "default")
    amount_try = str(payload.get("amountTry") or 1)
    buyer = payload.get("buyerAddress") or None
    status = str(payload.get("status") or "success")

    if config.PAYMENT_WEBHOOK_URL:
        fields = {
            "merchant_oid": mid,
            "status": status,
            "total_amount": amount_try,
            "split_slug": split_slug,
            "event_id": event_id,
            "idempotency_key": f"evt_{uuid.uuid4().hex}",
        }
        if buyer:
            fields["buyer_address"] = buyer
        body = get_provider().sign_notification(fields)
        client_http: httpx.AsyncClient = app.state.http
        try:
            resp = await client_http.post(
                config.PAYMENT_WEBHOOK_URL,
                content=body,
                headers={"content-type": "application/x-www-form-urlencoded"},
            )
        except httpx.HTTPError as exc:
            # the emitter can simply be called again
            log_event(logger, "payment.fake_pay.delivery_failed", logging.WARNING,
                      merchant_order_id=mid, error=str(exc))
            return ORJSONResponse(
                {"ok": False, "reason": "delivery_failed", "error": str(exc)},
                status_code=502,
            )
        return {"ok": resp.is_success, "delivered": True,
                "webhookStatus": resp.status_code}

    orchestrator = PurchaseOrchestrator(store, chain_client())
    outcome = await orchestrator.process_payment(PaymentRequest(
        merchant_order_id=mid,
        event_id=event_id,
        split_slug=split_slug,
        amount_try=amount_try,
        buyer_address=buyer,
    ))
    return _outcome_response(outcome)


# ----------------------------
# Admin
# ----------------------------
@app.get("/api/admin/orders")
async def api_admin_orders(limit: int = 200,
                           _: None = Depends(require_operator),
                           store: OrderStore = Depends(order_store)):
    limit = max(1, min(limit, 500))
    orders = await store.list_recent(limit)
    return {"items": [o.public_view() for o in orders], "limit": limit}


@app.get("/api/admin/timings")
async def api_admin_timings(_: None = Depends(require_operator)):
    return {"items": aggregates()}
