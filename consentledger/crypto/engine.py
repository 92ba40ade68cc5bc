# consentledger/crypto/engine.py
"""
Record and key-wrapping cryptography.

- PBKDF2-HMAC-SHA256: owner secret -> 256-bit record key (random salt per derivation)
- ECDH (secp256k1) + HKDF + AES-256-CBC/PKCS7 + HMAC-SHA256: record key wrapped for one requester
- HKDF + AES-256-CBC/PKCS7 + HMAC-SHA256: record payload encryption under the record key,
  with the derivation salt stored in the blob header

Every ciphertext carries its own random IV. MACs are checked before any padding is
touched, so a wrong key always ends in DecryptionFailed instead of garbage bytes.
All functions are pure; nothing here keeps state between calls.
"""

import os
from dataclasses import dataclass
from typing import Optional, Tuple, Union

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, hmac, padding
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from consentledger.core.canon import canonical_json, parse_json_bytes
from consentledger.core.encoding import b64url_decode, b64url_encode
from consentledger.core.errors import DecryptionFailed, KeyDerivationFailed, ValidationError
from consentledger.crypto.keys import (
    PrincipalKeyPair,
    PrivateKeyLike,
    PublicKeyLike,
    load_private_key,
    load_public_key,
    public_key_bytes,
)

KEY_SIZE = 32
SALT_SIZE = 16
IV_SIZE = 16
MAC_SIZE = 32
PBKDF2_ITERATIONS = 600_000
MIN_SALT_SIZE = 8
MAX_SALT_SIZE = 255

WRAP_INFO = b"consentledger/key-wrap/v1"
CONTENT_INFO = b"consentledger/content/v1"
CONTENT_MAGIC = b"CLC1"
WRAP_FORMAT_VERSION = 1

KeyBytes = Union[bytes, bytearray, memoryview]


@dataclass(frozen=True)
class DerivedKey:
    """Password-derived record key plus the parameters needed to derive it again."""
    key: bytes
    salt: bytes
    iterations: int

    def __repr__(self):
        return f"DerivedKey(salt={self.salt.hex()}, iterations={self.iterations})"


@dataclass(frozen=True)
class WrappedKey:
    """A record key encrypted for one requester. Opaque to the ledger."""
    ephemeral_public_key: bytes
    iv: bytes
    ciphertext: bytes
    mac: bytes
    version: int = WRAP_FORMAT_VERSION

    def to_dict(self) -> dict:
        return {
            "v": self.version,
            "epk": b64url_encode(self.ephemeral_public_key),
            "iv": b64url_encode(self.iv),
            "ct": b64url_encode(self.ciphertext),
            "mac": b64url_encode(self.mac),
        }

    def to_bytes(self) -> bytes:
        return canonical_json(self.to_dict())

    @classmethod
    def from_bytes(cls, data: bytes) -> "WrappedKey":
        try:
            d = parse_json_bytes(bytes(data))
            wrapped = cls(
                ephemeral_public_key=b64url_decode(d["epk"]),
                iv=b64url_decode(d["iv"]),
                ciphertext=b64url_decode(d["ct"]),
                mac=b64url_decode(d["mac"]),
                version=int(d.get("v", WRAP_FORMAT_VERSION)),
            )
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            raise DecryptionFailed(f"Malformed wrapped key: {e}") from e
        if wrapped.version != WRAP_FORMAT_VERSION:
            raise DecryptionFailed(f"Unsupported wrapped key version {wrapped.version}")
        return wrapped


# --------- key derivation ----------

def derive_symmetric_key(
    secret: str,
    salt: Optional[bytes] = None,
    iterations: int = PBKDF2_ITERATIONS,
) -> DerivedKey:
    """
    Derive a 256-bit record key from an owner-chosen secret.

    A fresh random salt is drawn unless the caller passes back the salt persisted
    with an earlier derivation.
    """
    if not secret:
        raise KeyDerivationFailed("Secret must not be empty")
    if iterations < 1:
        raise KeyDerivationFailed(f"Invalid iteration count: {iterations}")
    salt = os.urandom(SALT_SIZE) if salt is None else bytes(salt)
    if len(salt) < MIN_SALT_SIZE:
        raise KeyDerivationFailed(f"Salt must be at least {MIN_SALT_SIZE} bytes")
    kdf = PBKDF2HMAC(algorithm=hashes.SHA256(), length=KEY_SIZE, salt=salt, iterations=iterations)
    return DerivedKey(key=kdf.derive(secret.encode("utf-8")), salt=salt, iterations=iterations)


def generate_symmetric_key() -> bytes:
    return os.urandom(KEY_SIZE)


def ecdh_shared_secret(my_private_key: PrivateKeyLike, their_public_key: PublicKeyLike) -> bytes:
    """Raw ECDH x-coordinate. Symmetric: ecdh(a, B) == ecdh(b, A)."""
    return load_private_key(my_private_key).exchange(ec.ECDH(), load_public_key(their_public_key))


def _split_keys(ikm: bytes, info: bytes, salt: Optional[bytes] = None) -> Tuple[bytes, bytes]:
    okm = HKDF(algorithm=hashes.SHA256(), length=2 * KEY_SIZE, salt=salt, info=info).derive(bytes(ikm))
    return okm[:KEY_SIZE], okm[KEY_SIZE:]


def _mac(key: bytes, *parts: bytes) -> bytes:
    h = hmac.HMAC(key, hashes.SHA256())
    for part in parts:
        h.update(part)
    return h.finalize()


def _verify_mac(key: bytes, tag: bytes, *parts: bytes) -> None:
    h = hmac.HMAC(key, hashes.SHA256())
    for part in parts:
        h.update(part)
    try:
        h.verify(tag)
    except InvalidSignature:
        raise DecryptionFailed("Authentication tag mismatch") from None


def _cbc_encrypt(key: bytes, iv: bytes, plaintext: bytes) -> bytes:
    padder = padding.PKCS7(algorithms.AES.block_size).padder()
    padded = padder.update(bytes(plaintext)) + padder.finalize()
    encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
    return encryptor.update(padded) + encryptor.finalize()


def _cbc_decrypt(key: bytes, iv: bytes, ciphertext: bytes) -> bytes:
    if not ciphertext or len(ciphertext) % IV_SIZE:
        raise DecryptionFailed("Ciphertext length is not a multiple of the block size")
    decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
    padded = decryptor.update(ciphertext) + decryptor.finalize()
    unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
    try:
        return unpadder.update(padded) + unpadder.finalize()
    except ValueError:
        raise DecryptionFailed("Invalid padding") from None


def _require_key(key: KeyBytes) -> bytes:
    key = bytes(key)
    if len(key) != KEY_SIZE:
        raise ValidationError(f"Symmetric key must be {KEY_SIZE} bytes, got {len(key)}")
    return key


# --------- key wrapping ----------

def wrap_key(
    symmetric_key: KeyBytes,
    recipient_public_key: PublicKeyLike,
    ephemeral: Optional[PrincipalKeyPair] = None,
) -> WrappedKey:
    """
    Encrypt a record key for one recipient.

    A new ephemeral key pair is generated per call unless one is supplied; callers
    must never pass the same ephemeral pair to two approvals.
    """
    symmetric_key = _require_key(symmetric_key)
    try:
        recipient = load_public_key(recipient_public_key)
    except (ValueError, TypeError) as e:
        raise ValidationError(f"Invalid recipient public key: {e}") from e
    ephemeral = ephemeral or PrincipalKeyPair.generate()
    epk = ephemeral.public_bytes()

    shared = ecdh_shared_secret(ephemeral.private_key, recipient)
    enc_key, mac_key = _split_keys(shared, WRAP_INFO, salt=epk)
    iv = os.urandom(IV_SIZE)
    ciphertext = _cbc_encrypt(enc_key, iv, symmetric_key)
    return WrappedKey(
        ephemeral_public_key=epk,
        iv=iv,
        ciphertext=ciphertext,
        mac=_mac(mac_key, epk, iv, ciphertext),
    )


def unwrap_key(wrapped: Union[WrappedKey, bytes], my_private_key: PrivateKeyLike) -> bytes:
    """Recover a record key. Any mismatch raises DecryptionFailed."""
    if not isinstance(wrapped, WrappedKey):
        wrapped = WrappedKey.from_bytes(wrapped)
    try:
        private_key = load_private_key(my_private_key)
        ephemeral_public = load_public_key(wrapped.ephemeral_public_key)
    except (ValueError, TypeError) as e:
        raise DecryptionFailed(f"Unusable key material: {e}") from e

    shared = ecdh_shared_secret(private_key, ephemeral_public)
    enc_key, mac_key = _split_keys(shared, WRAP_INFO, salt=public_key_bytes(ephemeral_public))
    _verify_mac(mac_key, wrapped.mac, wrapped.ephemeral_public_key, wrapped.iv, wrapped.ciphertext)
    key = _cbc_decrypt(enc_key, wrapped.iv, wrapped.ciphertext)
    if len(key) != KEY_SIZE:
        raise DecryptionFailed("Unwrapped key has the wrong length")
    return key


# --------- content encryption ----------

def encrypt_content(data: bytes, key: KeyBytes, salt: bytes = b"") -> bytes:
    """
    Blob layout: MAGIC || len(salt) || salt || iv || ciphertext || mac.

    `salt` is the PBKDF2 salt the record key was derived with, so the owner can
    derive the same key again from the blob alone. It is authenticated, not secret.
    """
    key = _require_key(key)
    salt = bytes(salt)
    if len(salt) > MAX_SALT_SIZE:
        raise ValidationError(f"Salt must be at most {MAX_SALT_SIZE} bytes")
    header = CONTENT_MAGIC + bytes([len(salt)]) + salt
    iv = os.urandom(IV_SIZE)
    enc_key, mac_key = _split_keys(key, CONTENT_INFO)
    ciphertext = _cbc_encrypt(enc_key, iv, data)
    return header + iv + ciphertext + _mac(mac_key, header, iv, ciphertext)


def _split_blob(blob: bytes) -> Tuple[bytes, bytes, bytes, bytes, bytes]:
    blob = bytes(blob)
    magic = len(CONTENT_MAGIC)
    if len(blob) <= magic or not blob.startswith(CONTENT_MAGIC):
        raise DecryptionFailed("Not an encrypted content blob")
    body = magic + 1 + blob[magic]
    if len(blob) < body + IV_SIZE + IV_SIZE + MAC_SIZE:
        raise DecryptionFailed("Not an encrypted content blob")
    header = blob[:body]
    iv = blob[body:body + IV_SIZE]
    return header, header[magic + 1:], iv, blob[body + IV_SIZE:-MAC_SIZE], blob[-MAC_SIZE:]


def content_salt(blob: bytes) -> bytes:
    """The key-derivation salt stored in a content blob; empty for raw keys."""
    return _split_blob(blob)[1]


def decrypt_content(blob: bytes, key: KeyBytes) -> bytes:
    key = _require_key(key)
    header, _, iv, ciphertext, tag = _split_blob(blob)
    enc_key, mac_key = _split_keys(key, CONTENT_INFO)
    _verify_mac(mac_key, tag, header, iv, ciphertext)
    return _cbc_decrypt(enc_key, iv, ciphertext)
