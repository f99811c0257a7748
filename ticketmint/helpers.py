import hashlib
import hmac
import time
from datetime import datetime, timezone
from typing import Optional

from web3 import Web3


# ----------------------------
# Helpers
# ----------------------------
def now_ts() -> float:
    return time.time()


def to_iso(ts: float | None) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def now_iso() -> str:
    return to_iso(now_ts())


def parse_iso(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.timestamp()


def ct_equal(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode(), b.encode())


def sha256_hex(value: str) -> str:
    return hashlib.sha256(value.encode()).hexdigest()


def hex32(value: bytes) -> str:
    # HexBytes.hex() dropped the 0x prefix in hexbytes 1.x
    return "0x" + bytes(value).hex()


def is_bytes32_hex(value: str) -> bool:
    v = value.strip()
    if len(v) != 66 or not v.startswith("0x"):
        return False
    try:
        int(v[2:], 16)
    except ValueError:
        return False
    return True


def checksum_address(value: Optional[str]) -> Optional[str]:
    """Checksummed form of `value`, or None if it is not an address."""
    if not value or not isinstance(value, str):
        return None
    v = value.strip()
    if not v.startswith("0x"):
        v = f"0x{v}"
    if not Web3.is_address(v):
        return None
    return Web3.to_checksum_address(v)


def same_address(a: Optional[str], b: Optional[str]) -> bool:
    ca, cb = checksum_address(a), checksum_address(b)
    return ca is not None and ca == cb


def client_ip(headers) -> str:
    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip() or "unknown"
    return headers.get("x-real-ip") or "unknown"
