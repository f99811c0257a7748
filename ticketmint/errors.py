from typing import Optional


class TicketingError(Exception):
    """Classified failure with a machine-readable reason and an HTTP status."""

    reason = "server_error"
    status_code = 500

    def __init__(self, message: Optional[str] = None, *,
                 reason: Optional[str] = None,
                 status_code: Optional[int] = None):
        if reason is not None:
            self.reason = reason
        if status_code is not None:
            self.status_code = status_code
        super().__init__(message or self.reason)

    def to_body(self) -> dict:
        return {"ok": False, "reason": self.reason, "error": str(self)}


# --- input validation (400)
class InvalidPayload(TicketingError):
    reason = "invalid_json"
    status_code = 400


class MissingFields(TicketingError):
    reason = "missing_fields"
    status_code = 400


class InvalidWallet(TicketingError):
    reason = "invalid_wallet"
    status_code = 400


class IntentExpired(TicketingError):
    reason = "intent_expired"
    status_code = 400


# --- authorization / proof
class InvalidSignature(TicketingError):
    reason = "invalid_signature"
    status_code = 401


class Unauthorized(TicketingError):
    reason = "unauthorized"
    status_code = 401


class RevokedKey(TicketingError):
    reason = "revoked_key"
    status_code = 403


# --- sale constraints
class SaleUnavailable(TicketingError):
    reason = "sale_unavailable"
    status_code = 409


class RateLimited(TicketingError):
    reason = "rate_limited"
    status_code = 429

    def __init__(self, retry_after_ms: int, message: str = "Rate limit exceeded"):
        super().__init__(message)
        self.retry_after_ms = retry_after_ms

    @property
    def retry_after_seconds(self) -> int:
        return max(0, -(-self.retry_after_ms // 1000))


class ServerMisconfigured(TicketingError):
    reason = "server_misconfigured"
    status_code = 500


# --- upstream / chain
class ChainCallFailed(TicketingError):
    reason = "chain_error"
    status_code = 500

    STAGES = ("simulate", "send", "receipt", "read")

    def __init__(self, stage: str, message: str):
        if stage not in self.STAGES:
            raise ValueError(f"unknown chain stage: {stage}")
        super().__init__(f"{stage}: {message}")
        self.stage = stage

    def to_body(self) -> dict:
        body = super().to_body()
        body["stage"] = self.stage
        return body


# --- consistency faults
class StoreConflict(TicketingError):
    """A guarded write lost its compare-and-set; the lock was bypassed."""
    reason = "store_conflict"
    status_code = 500


class OrderNotFound(TicketingError):
    reason = "order_not_found"
    status_code = 404


# --- claim flow
class OrderNotPaid(TicketingError):
    reason = "order_not_paid"
    status_code = 400


class NotReady(TicketingError):
    reason = "not_ready"
    status_code = 400


class InvalidCode(TicketingError):
    reason = "invalid_code"
    status_code = 401


class NotOwner(TicketingError):
    reason = "not_owner"
    status_code = 403


class ClaimExpired(TicketingError):
    reason = "claim_expired"
    status_code = 410


class ClaimFailed(TicketingError):
    reason = "claim_failed"
    status_code = 500
