import os

# ----------------------------
# Config & Constants
# ----------------------------


def _bool(name: str, default: bool) -> bool:
    val = os.getenv(name)
    if val is None or val == "":
        return default
    return val.strip().lower() == "true"


ORDER_BACKEND = os.getenv("ORDER_BACKEND", "sql").lower()  # 'sql' | 'redis'
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./orders.db")
DB_POOL_SIZE = int(os.getenv("DB_POOL_SIZE", "10"))
DB_MAX_OVERFLOW = int(os.getenv("DB_MAX_OVERFLOW", "10"))
DB_POOL_TIMEOUT = int(os.getenv("DB_POOL_TIMEOUT", "30"))
DB_GATE_LIMIT = int(os.getenv("DB_GATE_LIMIT", "0"))  # 0: pool size (1 on sqlite)
REDIS_URL = os.getenv("REDIS_URL", "redis://127.0.0.1:6379")
REDIS_MAX_CONN = int(os.getenv("REDIS_MAX_CONN", "512"))

RPC_URL = os.getenv("RPC_URL", "http://127.0.0.1:8545")
CHAIN_ID = int(os.getenv("CHAIN_ID", "31337"))
TICKET_NFT_ADDRESS = os.getenv("TICKET_NFT_ADDRESS", "")
TICKET_SALE_ADDRESS = os.getenv("TICKET_SALE_ADDRESS", "")
CHAIN_TX_TIMEOUT_SECONDS = int(os.getenv("CHAIN_TX_TIMEOUT_SECONDS", "120"))
BACKEND_WALLET_PRIVATE_KEY = os.getenv("BACKEND_WALLET_PRIVATE_KEY", "")
CUSTODY_WALLET_PRIVATE_KEY = os.getenv("CUSTODY_WALLET_PRIVATE_KEY", "")
CUSTODY_WALLET_ADDRESS = os.getenv("CUSTODY_WALLET_ADDRESS", "")

INTENT_DOMAIN_NAME = os.getenv("INTENT_DOMAIN_NAME", "TicketMint")
INTENT_DOMAIN_VERSION = os.getenv("INTENT_DOMAIN_VERSION", "1")
PUBLIC_BASE_URL = os.getenv("PUBLIC_BASE_URL", "http://localhost:8000")

CLAIM_TTL_SECONDS = int(os.getenv("CLAIM_TTL_SECONDS", "86400"))
INTENT_LOCK_TTL_SECONDS = int(os.getenv("INTENT_LOCK_TTL_SECONDS", "60"))
PURCHASE_LOCK_TTL_SECONDS = int(os.getenv("PURCHASE_LOCK_TTL_SECONDS", "120"))
CLAIM_LOCK_TTL_SECONDS = int(os.getenv("CLAIM_LOCK_TTL_SECONDS", "120"))
GATE_LOCK_TTL_SECONDS = int(os.getenv("GATE_LOCK_TTL_SECONDS", "10"))

GATE_OPERATOR_KEY = os.getenv("GATE_OPERATOR_KEY", "")
# comma or newline separated
GATE_OPERATOR_KEYS = os.getenv("GATE_OPERATOR_KEYS", "")
GATE_OPERATOR_REVOKED_KEYS = os.getenv("GATE_OPERATOR_REVOKED_KEYS", "")

GATE_INVALID_CODE_LIMIT = int(os.getenv("GATE_INVALID_CODE_LIMIT", "5"))
GATE_INVALID_CODE_WINDOW_SECONDS = int(os.getenv("GATE_INVALID_CODE_WINDOW_SECONDS", "900"))
GATE_LOCKOUT_SECONDS = int(os.getenv("GATE_LOCKOUT_SECONDS", "600"))
AUDIT_DEBUG_ENABLED = _bool("AUDIT_DEBUG_ENABLED", False)
DEV_ENDPOINTS_ENABLED = _bool("DEV_ENDPOINTS_ENABLED", False)
METRICS_ENABLED = _bool("METRICS_ENABLED", True)
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

PAYMENT_WEBHOOK_URL = os.getenv("PAYMENT_WEBHOOK_URL", "")

# (max requests, window seconds)
PURCHASE_RATE_LIMIT = (30, 60)
CLAIM_RATE_LIMIT = (10, 60)
GATE_RATE_LIMIT = (30, 60)
