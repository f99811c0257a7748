"""
Operator keys for the gate scanner and the admin routes.

Keys come from `GATE_OPERATOR_KEY` plus the `GATE_OPERATOR_KEYS` list, so a
new key can be rolled out before the old one is dropped. A key listed in
`GATE_OPERATOR_REVOKED_KEYS` is rejected even while it is still listed as
active.
"""
from __future__ import annotations
import logging
import re
from typing import Iterable, Optional, Tuple

from . import config
from .audit import operator_key_id
from .helpers import ct_equal
from .logs import log_event

logger = logging.getLogger(__name__)

ACCEPTED = "accepted"
MISSING = "missing"
REVOKED = "revoked"
INVALID = "invalid"


def parse_key_list(raw: Optional[str]) -> Tuple[str, ...]:
    return tuple(k.strip() for k in re.split(r"[,\n]", raw or "") if k.strip())


class OperatorKeys:
    def __init__(self, active: Iterable[str] = (), revoked: Iterable[str] = ()):
        self.revoked = tuple(dict.fromkeys(k for k in revoked if k))
        self.active = tuple(
            k for k in dict.fromkeys(active) if k and k not in self.revoked
        )

    @classmethod
    def from_config(cls) -> "OperatorKeys":
        active = parse_key_list(config.GATE_OPERATOR_KEYS)
        if config.GATE_OPERATOR_KEY:
            active = (config.GATE_OPERATOR_KEY,) + active
        return cls(active, parse_key_list(config.GATE_OPERATOR_REVOKED_KEYS))

    @property
    def configured(self) -> bool:
        return bool(self.active or self.revoked)

    def check(self, supplied: Optional[str], *, ip_hash: str = "unknown") -> str:
        key = (supplied or "").strip()
        if not key:
            state = MISSING
        elif any(ct_equal(key, k) for k in self.revoked):
            state = REVOKED
        elif any(ct_equal(key, k) for k in self.active):
            return ACCEPTED
        else:
            state = INVALID
        log_event(logger, "operator_key.rejected", logging.WARNING, state=state,
                  key_id=operator_key_id(key), ip_hash=ip_hash)
        return state
