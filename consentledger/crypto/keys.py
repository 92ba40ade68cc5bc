# consentledger/crypto/keys.py
from dataclasses import dataclass
from typing import Union

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec

from consentledger.core.encoding import b64url_decode, b64url_encode
from consentledger.core.hashing import sha256_hex

CURVE = ec.SECP256K1()
PRIVATE_KEY_SIZE = 32
PUBLIC_KEY_SIZE = 65  # uncompressed SEC1 point: 0x04 || X || Y

PrivateKeyLike = Union["PrincipalKeyPair", ec.EllipticCurvePrivateKey, bytes, bytearray]
PublicKeyLike = Union[ec.EllipticCurvePublicKey, bytes, bytearray]


@dataclass(frozen=True)
class PrincipalKeyPair:
    """Long-term (or ephemeral) secp256k1 key pair of a principal."""
    private_key: ec.EllipticCurvePrivateKey

    @classmethod
    def generate(cls) -> "PrincipalKeyPair":
        return cls(ec.generate_private_key(CURVE))

    @classmethod
    def from_private_bytes(cls, data: bytes) -> "PrincipalKeyPair":
        if len(data) != PRIVATE_KEY_SIZE:
            raise ValueError(f"Private key must be {PRIVATE_KEY_SIZE} bytes, got {len(data)}")
        return cls(ec.derive_private_key(int.from_bytes(bytes(data), "big"), CURVE))

    @classmethod
    def from_private_b64url(cls, value: str) -> "PrincipalKeyPair":
        return cls.from_private_bytes(b64url_decode(value))

    @property
    def public_key(self) -> ec.EllipticCurvePublicKey:
        return self.private_key.public_key()

    def public_bytes(self) -> bytes:
        return public_key_bytes(self.public_key)

    def private_bytes(self) -> bytes:
        value = self.private_key.private_numbers().private_value
        return value.to_bytes(PRIVATE_KEY_SIZE, "big")

    def public_key_b64url(self) -> str:
        return b64url_encode(self.public_bytes())

    def private_key_b64url(self) -> str:
        return b64url_encode(self.private_bytes())

    def fingerprint(self) -> str:
        return public_key_fingerprint(self.public_bytes())


def generate_keypair() -> PrincipalKeyPair:
    return PrincipalKeyPair.generate()


def public_key_bytes(public_key: ec.EllipticCurvePublicKey) -> bytes:
    return public_key.public_bytes(
        encoding=serialization.Encoding.X962,
        format=serialization.PublicFormat.UncompressedPoint,
    )


def load_public_key(data: PublicKeyLike) -> ec.EllipticCurvePublicKey:
    """Parse a SEC1 encoded secp256k1 point. Raises ValueError when it is not on the curve."""
    if isinstance(data, ec.EllipticCurvePublicKey):
        return data
    return ec.EllipticCurvePublicKey.from_encoded_point(CURVE, bytes(data))


def load_private_key(data: PrivateKeyLike) -> ec.EllipticCurvePrivateKey:
    if isinstance(data, PrincipalKeyPair):
        return data.private_key
    if isinstance(data, ec.EllipticCurvePrivateKey):
        return data
    return PrincipalKeyPair.from_private_bytes(bytes(data)).private_key


def validate_public_key(data: bytes) -> bool:
    try:
        load_public_key(data)
        return True
    except (ValueError, TypeError):
        return False


def public_key_fingerprint(data: bytes) -> str:
    # First 16 bytes keep the display short
    return sha256_hex(bytes(data))[:32]
