"""
Error taxonomy for the sync engine.

Every class here maps onto one finalization rule in the orchestrator:

  CredentialError      → job FAILED, credential.failure_count += 1
  AdapterError         → FAILED on the first page, PARTIAL mid-stream
  LockContentionError  → no-op, points at the job that holds the lock
  PersistenceError     → job FAILED with stack captured

JobLogger guard errors (ForbiddenPatchError, JobSealedError) are programming
errors and propagate.
"""
from typing import Any, Dict, Optional


class SyncError(RuntimeError):
    """Base class for all engine errors."""

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.details: Dict[str, Any] = details or {}


# ── Credentials ───────────────────────────────────────────────────────────────

class CredentialError(SyncError):
    """Missing, corrupted or invalid secret."""


class CredentialMissing(CredentialError):
    """The credential row or one of its required fields does not exist."""


class CredentialCorrupted(CredentialError):
    """Stored value looks encrypted but cannot be decrypted or parsed."""


class CredentialInvalid(CredentialError):
    """Secret failed format checks or was rejected by the platform."""


class EncryptionKeyError(CredentialError):
    """CREDENTIAL_ENCRYPTION_KEY is unset or malformed."""


# ── Adapters ──────────────────────────────────────────────────────────────────

class AdapterError(SyncError):
    """A platform call failed after retries."""

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, details=details)
        self.status_code = status_code


class AuthRejected(AdapterError):
    """Platform rejected the credential (401/403, bad cookie, revoked token)."""


class PrivateProfile(AdapterError):
    """Credential is accepted but the profile hides the requested data."""


class RateLimited(AdapterError):
    """Platform signalled a (primary or secondary) rate limit."""

    def __init__(self, message: str, *, retry_after: Optional[float] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class Unreachable(AdapterError):
    """Network failure, timeout, or 5xx that persisted through retries."""


# ── Orchestration ─────────────────────────────────────────────────────────────

class LockContentionError(SyncError):
    """Another job already holds the credential's advisory lock."""

    def __init__(self, credential_id: int, job_id: Optional[int]):
        super().__init__(
            f"Credential {credential_id} is already syncing (job {job_id})",
            details={"credential_id": credential_id, "job_id": job_id},
        )
        self.credential_id = credential_id
        self.job_id = job_id


class PersistenceError(SyncError):
    """Unexpected database failure while writing synced records."""


# ── Job log guard ─────────────────────────────────────────────────────────────

class ForbiddenPatchError(ValueError):
    """updateStatus was asked to touch a field outside the mutable set."""


class JobSealedError(RuntimeError):
    """The job log already reached a terminal status."""
