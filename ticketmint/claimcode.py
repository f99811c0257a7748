import re
import secrets

from .helpers import ct_equal, sha256_hex

# no 0/O, 1/I/L
CLAIM_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
GROUP_SIZE = 4
GROUPS = 3
CODE_LENGTH = GROUP_SIZE * GROUPS

_FORMATTED = re.compile(
    rf"^[{CLAIM_CODE_ALPHABET}]{{4}}(?:-[{CLAIM_CODE_ALPHABET}]{{4}}){{2}}$"
)


def generate_claim_code() -> str:
    raw = "".join(
        CLAIM_CODE_ALPHABET[b & 31] for b in secrets.token_bytes(CODE_LENGTH)
    )
    return "-".join(
        raw[i:i + GROUP_SIZE] for i in range(0, CODE_LENGTH, GROUP_SIZE)
    )


def is_formatted_claim_code(value: str) -> bool:
    return _FORMATTED.match(value) is not None


def canonical_claim_code(value: str) -> str:
    """Upper-case XXXX-XXXX-XXXX form when the input is a formatted code
    (whitespace and hyphens tolerated), else the trimmed input unchanged."""
    v = value.strip()
    compact = re.sub(r"[\s-]", "", v).upper()
    if len(compact) == CODE_LENGTH and all(c in CLAIM_CODE_ALPHABET for c in compact):
        return "-".join(
            compact[i:i + GROUP_SIZE] for i in range(0, CODE_LENGTH, GROUP_SIZE)
        )
    return v


def hash_claim_code(value: str) -> str:
    return sha256_hex(canonical_claim_code(value))


def claim_code_matches(candidate: str, stored_hash: str) -> bool:
    if not candidate or not stored_hash:
        return False
    return ct_equal(hash_claim_code(candidate), stored_hash.lower())
