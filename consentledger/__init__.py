# consentledger/__init__.py
"""
Consent Ledger: owner-approved sharing of encrypted records between patients and providers.
Authorization lives on a hash-chained ledger; payloads live encrypted in a content-addressed blob store.

Record keys travel to approved providers wrapped with ECDH (secp256k1) + AES, never in the clear.
"""

__version__ = "0.1.0.dev0"
