# consentledger/core/errors.py
"""
Error taxonomy.

Ledger components revert with string-tagged reasons (`Reverted`), the same way a
contract call does. Those reason strings are a stable wire contract; callers on the
client side translate them into the typed classes below with `translate_revert`.
"""

from typing import Dict, Optional, Type


class ConsentLedgerError(Exception):
    """Base class for every error raised by consentledger."""
    code = "error"


class ValidationError(ConsentLedgerError):
    code = "validation"


# ── registration ────────────────────────────────────────────────────────────

class RegistrationError(ConsentLedgerError):
    code = "registration"


class AlreadyRegistered(RegistrationError):
    code = "already_registered"


class CrossRoleConflict(RegistrationError):
    code = "cross_role_conflict"


class NotRegistered(RegistrationError):
    code = "not_registered"


# ── authorization ───────────────────────────────────────────────────────────

class AuthorizationError(ConsentLedgerError):
    code = "authorization"


class NotVerified(AuthorizationError):
    code = "not_verified"


class Rejected(AuthorizationError):
    code = "rejected"


class NotAdmin(AuthorizationError):
    code = "not_admin"


class NotOwner(AuthorizationError):
    code = "not_owner"


class AccessNotGranted(AuthorizationError):
    code = "access_not_granted"


# ── crypto ──────────────────────────────────────────────────────────────────

class CryptoError(ConsentLedgerError):
    code = "crypto"


class DecryptionFailed(CryptoError):
    code = "decryption_failed"


class KeyDerivationFailed(CryptoError):
    code = "key_derivation_failed"


# ── network / external stores ───────────────────────────────────────────────

class NetworkError(ConsentLedgerError):
    code = "network"


class SubmitFailed(NetworkError):
    code = "submit_failed"


class NotFound(NetworkError):
    code = "not_found"


# ── ledger boundary ─────────────────────────────────────────────────────────

class StaleGrant(ConsentLedgerError):
    """Compare-and-set on a grant lost against a concurrent writer."""
    code = "stale_grant"


# Revert reasons emitted by the ledger components
CALLER_NOT_VERIFIED = "Caller is not a verified provider"
PROVIDER_REJECTED = "Provider has been rejected"
PROVIDER_ALREADY_REGISTERED = "Provider already registered"
PROVIDER_NOT_REGISTERED = "Provider not registered"
PATIENT_ALREADY_REGISTERED = "Patient already registered"
ADDRESS_IS_PATIENT = "Address is registered as a patient"
ADDRESS_IS_PROVIDER = "Address is registered as a provider"
PUBLIC_KEY_REQUIRED = "Public key required"
CALLER_NOT_ADMIN = "Caller is not the admin"
CALLER_NOT_REGISTERED = "Caller is not registered"
CALLER_NOT_PATIENT = "Caller is not a registered patient"
CALLER_NOT_OWNER = "Caller is not the patient"
CALLER_NOT_AUTHORIZED = "Caller is not authorized"
ACCESS_NOT_GRANTED = "Access not granted"
ENCRYPTED_KEY_REQUIRED = "Encrypted key required"
CONTENT_REF_REQUIRED = "Content reference required"

REVERT_REASONS: Dict[str, Type[ConsentLedgerError]] = {
    CALLER_NOT_VERIFIED: NotVerified,
    PROVIDER_REJECTED: Rejected,
    PROVIDER_ALREADY_REGISTERED: AlreadyRegistered,
    PROVIDER_NOT_REGISTERED: NotRegistered,
    PATIENT_ALREADY_REGISTERED: AlreadyRegistered,
    ADDRESS_IS_PATIENT: CrossRoleConflict,
    ADDRESS_IS_PROVIDER: CrossRoleConflict,
    PUBLIC_KEY_REQUIRED: ValidationError,
    CALLER_NOT_ADMIN: NotAdmin,
    CALLER_NOT_REGISTERED: NotRegistered,
    CALLER_NOT_PATIENT: NotOwner,
    CALLER_NOT_OWNER: NotOwner,
    CALLER_NOT_AUTHORIZED: AccessNotGranted,
    ACCESS_NOT_GRANTED: AccessNotGranted,
    ENCRYPTED_KEY_REQUIRED: ValidationError,
    CONTENT_REF_REQUIRED: ValidationError,
}


class Reverted(ConsentLedgerError):
    """A ledger call was rejected; `reason` is one of the stable strings above."""
    code = "reverted"

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason

    @property
    def error_class(self) -> Type[ConsentLedgerError]:
        return REVERT_REASONS.get(self.reason, SubmitFailed)


def translate_revert(exc: Reverted) -> ConsentLedgerError:
    """Map a ledger revert onto the typed taxonomy, keeping the reason as message."""
    translated = exc.error_class(exc.reason)
    translated.__cause__ = exc
    return translated


def error_code(exc: Optional[BaseException]) -> str:
    if exc is None:
        return ""
    return getattr(exc, "code", type(exc).__name__)
