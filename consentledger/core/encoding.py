# consentledger/core/encoding.py
import base64
import re
from datetime import datetime, timezone

_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")


def b64url_encode(data: bytes) -> str:
    """Encode bytes to base64url (no padding, URL-safe)."""
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def b64url_decode(s: str) -> bytes:
    """Decode base64url string back to bytes."""
    padding = len(s) % 4
    if padding:
        s += "=" * (4 - padding)
    return base64.urlsafe_b64decode(s)


def is_address(value: str) -> bool:
    return isinstance(value, str) and bool(_ADDRESS_RE.match(value))


def normalize_address(value: str) -> str:
    """Lower-case a 0x-prefixed 20-byte hex principal id. Raises ValueError when malformed."""
    if not is_address(value):
        raise ValueError(f"Malformed address: {value!r}")
    return value.lower()


def utc_now() -> str:
    now = datetime.now(timezone.utc)
    return now.strftime("%Y-%m-%dT%H:%M:%S.") + f"{now.microsecond // 1000:03d}Z"
