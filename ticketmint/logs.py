# ticketmint/logs.py
from __future__ import annotations
import logging
import re
import sys
from datetime import datetime, timezone
from typing import Any, Optional

import orjson

from . import config
from .helpers import sha256_hex

_REDACT_KEY = re.compile(
    r"(private|secret|claimcode|claim_code|preimage|operator_key|signature)",
    re.IGNORECASE,
)
_HEX64 = re.compile(r"^0x[0-9a-fA-F]{64}$")
REDACTED = "[REDACTED]"


def _redact_key(key: str) -> bool:
    if key.lower() in ("tokenid", "token_id"):
        return False
    # the hash is safe to log, the code is not
    if key.lower().endswith("_hash") and "claim" in key.lower():
        return False
    return _REDACT_KEY.search(key) is not None


def redact(value: Any, parent_key: Optional[str] = None) -> Any:
    if isinstance(value, str):
        if parent_key and _redact_key(parent_key):
            return REDACTED
        is_tx = bool(parent_key) and parent_key.lower().endswith(("tx_hash", "txhash"))
        if _HEX64.match(value) and not is_tx:
            return REDACTED
        return value
    if isinstance(value, BaseException):
        return {"name": type(value).__name__, "message": str(value)}
    if isinstance(value, dict):
        return {
            k: (REDACTED if _redact_key(str(k)) else redact(v, str(k)))
            for k, v in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [redact(v) for v in value]
    return value


class JsonLineFormatter(logging.Formatter):
    """One JSON object per line; structured fields come from `extra={"fields": ...}`."""

    def format(self, record: logging.LogRecord) -> str:
        rec = {
            "level": record.levelname.lower(),
            "message": record.getMessage(),
            "logger": record.name,
            "time": datetime.fromtimestamp(
                record.created, tz=timezone.utc
            ).isoformat(),
        }
        fields = getattr(record, "fields", None)
        if fields:
            rec.update(redact(fields))
        if record.exc_info:
            rec["exc"] = self.formatException(record.exc_info)
        return orjson.dumps(rec, default=str).decode()


def setup_logging(level: str | None = None) -> None:
    root = logging.getLogger("ticketmint")
    if getattr(root, "_ticketmint_configured", False):
        return
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonLineFormatter())
    root.addHandler(handler)
    root.setLevel(level or config.LOG_LEVEL)
    root.propagate = False
    root._ticketmint_configured = True


def log_event(logger: logging.Logger, message: str, level: int = logging.INFO,
              exc_info: bool = False, **fields: Any) -> None:
    logger.log(level, message, extra={"fields": fields}, exc_info=exc_info)


# ----------------------------
# Business metrics (log lines)
# ----------------------------
_metrics_log = logging.getLogger("ticketmint.metrics")

METRIC_EVENTS = frozenset({
    "rate_limit_hit", "lock_hit",
    "purchase_processed", "purchase_pending", "purchase_duplicate",
    "claim_ok", "claim_already",
    "gate_valid", "gate_invalid",
})


def emit_metric(event: str, *, route: str, reason: Optional[str] = None,
                merchant_order_id: Optional[str] = None,
                token_id: Optional[str] = None, ip: Optional[str] = None,
                latency_ms: Optional[float] = None) -> None:
    if not config.METRICS_ENABLED:
        return
    if event not in METRIC_EVENTS:
        raise ValueError(f"unknown metric event: {event}")
    payload: dict[str, Any] = {"event": event, "route": route.strip() or "unknown"}
    if reason:
        payload["reason"] = reason
    if merchant_order_id:
        payload["merchant_order_id_hash"] = sha256_hex(merchant_order_id)
    if token_id:
        payload["token_id"] = token_id
    if ip:
        payload["ip_hash"] = sha256_hex(ip.split(",")[0].strip())
    if latency_ms is not None:
        payload["latency_ms"] = int(latency_ms)
    log_event(_metrics_log, "metric", **payload)
