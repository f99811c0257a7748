# ticketmint/audit.py
from __future__ import annotations
import logging
from collections import deque
from typing import Any, Deque, Dict, List, Optional

from .helpers import now_iso, sha256_hex
from .logs import log_event

# Process-local ring: starts empty on every process start, never persisted.
RING_SIZE = 200
DEFAULT_LIMIT = 50

_EVENTS: Deque[Dict[str, Any]] = deque(maxlen=RING_SIZE)

logger = logging.getLogger(__name__)


def operator_key_id(operator_key: Optional[str]) -> str:
    key = (operator_key or "").strip()
    if not key:
        return "unknown"
    return sha256_hex(key)[:10]


def log_audit(*, route: str, reason: str, operator_key_id: str,
              event_id: Optional[str] = None, token_id: Optional[str] = None,
              ip_hash: Optional[str] = None, ua_hash: Optional[str] = None,
              request_id: Optional[str] = None) -> Dict[str, Any]:
    event = {
        "kind": "AUDIT",
        "ts": now_iso(),
        "route": route,
        "reason": reason,
        "operatorKeyId": operator_key_id,
        "eventId": event_id,
        "tokenId": token_id,
        "ipHash": ip_hash,
        "uaHash": ua_hash,
        "requestId": request_id,
    }
    _EVENTS.append(event)
    log_event(logger, "audit", **event)
    return event


def get_audit_events(limit: int = RING_SIZE) -> List[Dict[str, Any]]:
    if limit <= 0:
        return []
    return list(_EVENTS)[-limit:]


def parse_limit(value: Optional[str]) -> int:
    try:
        n = int(value) if value else DEFAULT_LIMIT
    except ValueError:
        return DEFAULT_LIMIT
    if n <= 0:
        return DEFAULT_LIMIT
    return min(n, RING_SIZE)


def reset() -> None:
    _EVENTS.clear()
