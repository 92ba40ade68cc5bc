# consentledger/core/hashing.py
import hashlib

from consentledger.core.canon import canonical_json
from consentledger.core.types import LedgerEvent


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def event_hash(event: LedgerEvent) -> str:
    """hex(sha256(JCS(event))), the value the next event stores as prev_hash."""
    return sha256_hex(canonical_json(event.to_dict()))


def content_id(data: bytes) -> str:
    """Content address for blob payloads: identical bytes give identical ids."""
    return "b-" + sha256_hex(data)
