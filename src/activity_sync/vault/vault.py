"""
Credential encryption at rest, legacy plaintext detection, and validity probes.

Stored values are one of three self-describing shapes:

    enc:v1:aes-256-gcm:<iv b64>:<ciphertext+tag b64>   current format
    <iv b64>:<tag b64>:<ciphertext b64>                previous AES-GCM layout
    anything else                                       legacy plaintext

`parse()` turns a stored string into a PlainSecret or EncryptedSecret. A value
carrying the `enc:` tag that does not parse, or any ciphertext that fails
authentication, raises CredentialCorrupted. Nothing that looks encrypted is
ever handed back as plaintext.

The key is CREDENTIAL_ENCRYPTION_KEY: 64 hex characters (32 bytes).
Generate one with `python -m activity_sync genkey`.
"""
import base64
import binascii
import logging
import os
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from activity_sync.config import get_settings
from activity_sync.errors import CredentialCorrupted, CredentialInvalid, EncryptionKeyError
from activity_sync.models.credential import Credential, Platform
from activity_sync.vault.formats import check_format

logger = logging.getLogger(__name__)

# ── Constants ─────────────────────────────────────────────────────────────────

TAG_PREFIX = "enc"
FORMAT_VERSION = "v1"
ALGORITHM = "aes-256-gcm"
IV_LENGTH = 12
LEGACY_IV_LENGTH = 16
LEGACY_TAG_LENGTH = 16

_KEY_RE = re.compile(r"^[0-9a-fA-F]{64}$")
_B64_RE = re.compile(r"^[A-Za-z0-9+/]+=*$")


# ── Tagged values ─────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class PlainSecret:
    """Legacy row stored before encryption was introduced."""

    value: str


@dataclass(frozen=True)
class EncryptedSecret:
    iv: bytes
    ciphertext: bytes  # includes the 16-byte GCM tag at the end
    algorithm: str = ALGORITHM
    legacy_layout: bool = False


StoredSecret = Union[PlainSecret, EncryptedSecret]


@dataclass(frozen=True)
class PlatformSecret:
    """Decrypted secret plus the credential's metadata, as handed to adapters."""

    platform: Platform
    value: str
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ValidationResult:
    is_valid: bool
    message: Optional[str] = None
    error: Optional[str] = None
    probe: Optional[str] = None  # ProbeOutcome value when a probe ran


def generate_key() -> str:
    """Return a fresh 32-byte key as 64 hex characters."""
    return os.urandom(32).hex()


def _b64decode(part: str) -> bytes:
    if not _B64_RE.match(part):
        raise ValueError("not base64")
    return base64.b64decode(part, validate=True)


# ── Main class ────────────────────────────────────────────────────────────────

class CredentialVault:
    """
    Encrypts and decrypts credential values.

    Usage:
        vault = CredentialVault()
        credential.value = vault.encrypt("my-api-key")
        secret = vault.reveal(credential)   # → PlatformSecret
    """

    def __init__(self, key_hex: Optional[str] = None):
        self._key_hex = key_hex

    def _key(self) -> bytes:
        key_hex = self._key_hex if self._key_hex is not None else get_settings().credential_encryption_key
        if not key_hex:
            raise EncryptionKeyError(
                "CREDENTIAL_ENCRYPTION_KEY is not set. "
                "Generate one with `python -m activity_sync genkey`."
            )
        if not _KEY_RE.match(key_hex):
            raise EncryptionKeyError(
                "CREDENTIAL_ENCRYPTION_KEY must be 64 hexadecimal characters (32 bytes)."
            )
        return bytes.fromhex(key_hex)

    # ── Format sniffing ───────────────────────────────────────────────────────

    def parse(self, value: str) -> StoredSecret:
        """
        Classify a stored value.

        Raises:
            CredentialCorrupted: if the value is empty, or carries the `enc:`
                tag but is not a well-formed v1 record.
        """
        if not value or not value.strip():
            raise CredentialCorrupted("Stored credential value is empty")

        if value.startswith(TAG_PREFIX + ":"):
            parts = value.split(":")
            if len(parts) != 5 or parts[1] != FORMAT_VERSION or parts[2] != ALGORITHM:
                raise CredentialCorrupted("Unrecognised encrypted credential header")
            try:
                iv = _b64decode(parts[3])
                ciphertext = _b64decode(parts[4])
            except (ValueError, binascii.Error) as exc:
                raise CredentialCorrupted("Encrypted credential is not valid base64") from exc
            if len(iv) != IV_LENGTH or len(ciphertext) <= 16:
                raise CredentialCorrupted("Encrypted credential has wrong IV or payload length")
            return EncryptedSecret(iv=iv, ciphertext=ciphertext)

        parts = value.split(":")
        if len(parts) == 3 and all(_B64_RE.match(p) for p in parts):
            try:
                iv, tag, body = (_b64decode(p) for p in parts)
            except (ValueError, binascii.Error) as exc:
                raise CredentialCorrupted("Legacy encrypted credential is not valid base64") from exc
            if len(iv) != LEGACY_IV_LENGTH or len(tag) != LEGACY_TAG_LENGTH:
                raise CredentialCorrupted("Legacy encrypted credential has wrong IV or tag length")
            return EncryptedSecret(iv=iv, ciphertext=body + tag, legacy_layout=True)

        return PlainSecret(value)

    def is_encrypted(self, value: str) -> bool:
        """True if the value is (or claims to be) ciphertext rather than legacy plaintext."""
        try:
            return isinstance(self.parse(value), EncryptedSecret)
        except CredentialCorrupted:
            return bool(value) and value.startswith(TAG_PREFIX + ":")

    # ── Encrypt / decrypt ─────────────────────────────────────────────────────

    def encrypt(self, plaintext: str) -> str:
        if not plaintext or not plaintext.strip():
            raise CredentialInvalid("Cannot encrypt an empty credential")
        iv = os.urandom(IV_LENGTH)
        ciphertext = AESGCM(self._key()).encrypt(iv, plaintext.encode("utf-8"), None)
        return ":".join([
            TAG_PREFIX,
            FORMAT_VERSION,
            ALGORITHM,
            base64.b64encode(iv).decode("ascii"),
            base64.b64encode(ciphertext).decode("ascii"),
        ])

    def decrypt(self, value: str) -> str:
        """
        Decrypt a stored value.

        Raises:
            CredentialCorrupted: for plaintext input, malformed records, or
                ciphertext that fails GCM authentication (wrong key, tampering).
        """
        secret = self.parse(value)
        if isinstance(secret, PlainSecret):
            raise CredentialCorrupted("Value is not encrypted")
        try:
            data = AESGCM(self._key()).decrypt(secret.iv, secret.ciphertext, None)
        except InvalidTag as exc:
            raise CredentialCorrupted(
                "Credential decryption failed: wrong key, tampered data or corrupted storage"
            ) from exc
        try:
            return data.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise CredentialCorrupted("Decrypted credential is not valid UTF-8") from exc

    def safe_encrypt(self, value: str) -> str:
        """Encrypt unless already encrypted (idempotent)."""
        if self.is_encrypted(value):
            return value
        return self.encrypt(value)

    def reveal(self, credential: Credential) -> PlatformSecret:
        """Plaintext secret for a stored credential; legacy plaintext passes through."""
        secret = self.parse(credential.value)
        if isinstance(secret, PlainSecret):
            plaintext = secret.value
        else:
            plaintext = self.decrypt(credential.value)
        return PlatformSecret(
            platform=credential.platform,
            value=plaintext,
            metadata=dict(credential.meta),
        )

    # ── Validation ────────────────────────────────────────────────────────────

    async def validate(self, credential: Credential, adapter) -> ValidationResult:
        """
        Check format offline, then run one cheap probe. Never performs a sync.

        Updates credential.is_valid / last_error / last_validated_at in place;
        the caller commits.
        """
        from activity_sync.adapters.base import ProbeOutcome

        try:
            secret = self.reveal(credential)
        except (CredentialCorrupted, EncryptionKeyError) as exc:
            return self._mark(credential, ValidationResult(is_valid=False, error=str(exc)))

        problem = check_format(credential.platform, secret.value, secret.metadata)
        if problem:
            return self._mark(credential, ValidationResult(is_valid=False, error=problem))

        outcome = await adapter.probe(secret)
        if outcome == ProbeOutcome.OK:
            result = ValidationResult(
                is_valid=True,
                message=f"{credential.platform.value} credential is valid",
                probe=outcome.value,
            )
        else:
            result = ValidationResult(
                is_valid=False,
                error=f"{credential.platform.value} probe failed: {outcome.value}",
                probe=outcome.value,
            )
        return self._mark(credential, result)

    @staticmethod
    def _mark(credential: Credential, result: ValidationResult) -> ValidationResult:
        credential.is_valid = result.is_valid
        credential.last_error = result.error
        credential.last_validated_at = datetime.utcnow()
        if result.is_valid:
            credential.failure_count = 0
        logger.info(
            "Validated credential %s (%s): %s",
            credential.id, credential.platform.value, "valid" if result.is_valid else result.error,
        )
        return result


def encrypt_legacy_rows(session, vault: Optional[CredentialVault] = None) -> int:
    """
    Encrypt every plaintext credential row in place.

    Rows whose value is already encrypted (either layout) are left alone.
    Returns the number of rows rewritten; the caller's session is committed.
    """
    from sqlmodel import select

    vault = vault or CredentialVault()
    migrated = 0
    for credential in session.exec(select(Credential)).all():
        if vault.is_encrypted(credential.value):
            continue
        credential.value = vault.encrypt(credential.value)
        credential.updated_at = datetime.utcnow()
        session.add(credential)
        migrated += 1
    session.commit()
    logger.info("Encrypted %d legacy plaintext credential(s)", migrated)
    return migrated
